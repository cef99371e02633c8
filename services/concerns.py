"""Canonical concern model: type aliases, quality features, provider normalization."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from services.geometry import normalize_bbox, parse_region, region_to_payload
from utils.parsing import _clamp01, _clamp_severity, _normalize_token, _round3

CANONICAL_TYPES = ("redness", "acne", "shine", "texture", "tone", "dryness", "barrier", "other")
QUALITY_SENSITIVITY = ("low", "medium", "high")
QUALITY_GRADES = ("pass", "degraded", "fail", "unknown")
VOTE_QUALITY_GRADES = {"pass", "degraded"}

TYPE_ALIASES: Dict[str, str] = {
    "redness": "redness",
    "irritation": "redness",
    "erythema": "redness",
    "acne": "acne",
    "breakout": "acne",
    "breakouts": "acne",
    "pimple": "acne",
    "shine": "shine",
    "oiliness": "shine",
    "sebum": "shine",
    "texture": "texture",
    "pores": "texture",
    "roughness": "texture",
    "tone": "tone",
    "dark_spots": "tone",
    "uneven_tone": "tone",
    "hyperpigmentation": "tone",
    "pigmentation": "tone",
    "dryness": "dryness",
    "flaking": "dryness",
    "dehydration": "dryness",
    "barrier": "barrier",
    "barrier_stress": "barrier",
    "sensitivity": "barrier",
    "other": "other",
}

DEFAULT_REGION_BBOX = {"x0": 0.18, "y0": 0.22, "x1": 0.82, "y1": 0.9}
MAX_REGIONS = 6
MAX_EVIDENCE_CHARS = 500
MAX_SOURCE_IDS = 12
MAX_NOTES = 10


def _normalize_concern_type(raw: Any) -> str:
    return TYPE_ALIASES.get(_normalize_token(raw), "other")


def _normalize_quality_grade(raw: Any) -> str:
    token = _normalize_token(raw)
    return token if token in QUALITY_GRADES else "unknown"


def _normalize_bucket(value: Any, fallback: str = "unknown") -> str:
    return _normalize_token(value, fallback)


def _normalize_quality_sensitivity(raw: Any, quality_grade: str) -> str:
    token = _normalize_token(raw)
    if token in QUALITY_SENSITIVITY:
        return token
    if quality_grade == "fail":
        return "high"
    if quality_grade == "degraded":
        return "medium"
    return "low"


def _sensitivity_rank(value: Any) -> int:
    token = _normalize_token(value)
    if token == "high":
        return 3
    if token == "medium":
        return 2
    return 1


def _first_present(source: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if source.get(key) is not None:
            return source[key]
    return None


def _normalize_quality_features(raw: Any) -> Dict[str, Any]:
    source = raw if isinstance(raw, Mapping) else {}
    exposure = _clamp01(_first_present(source, "exposure_score", "exposure", "brightness_score"))
    reflection = _clamp01(_first_present(source, "reflection_score", "glare_score", "specular_score"))
    filter_score = _clamp01(_first_present(source, "filter_score", "filter_probability", "synthetic_filter_score"))
    makeup = _first_present(source, "makeup_detected", "has_makeup")
    filter_detected = _first_present(source, "filter_detected", "has_filter")
    return {
        "exposure_score": _round3(exposure),
        "reflection_score": _round3(reflection),
        "filter_score": _round3(filter_score),
        "makeup_detected": bool(makeup) if makeup is not None else False,
        "filter_detected": bool(filter_detected) if filter_detected is not None else filter_score >= 0.55,
    }


def _quality_feature_snapshot(photo_quality: Any) -> Dict[str, Any]:
    """Derive quality features from a photo-quality block, filling grade-based defaults."""
    quality = photo_quality if isinstance(photo_quality, Mapping) else {}
    reasons = [_normalize_token(item) for item in quality.get("reasons") or [] if item is not None]
    grade = _normalize_token(quality.get("grade"))
    exposure = _first_present(quality, "exposure_score", "brightness_score")
    if exposure is None:
        exposure = 0.72 if grade == "pass" else 0.56 if grade == "degraded" else 0.42
    reflection = quality.get("reflection_score")
    if reflection is None:
        reflection = 0.7 if "specular" in reasons else 0.15
    filter_score = quality.get("filter_score")
    if filter_score is None:
        filter_score = 0.9 if "has_filter" in reasons else 0.12
    return _normalize_quality_features(
        {
            "exposure_score": exposure,
            "reflection_score": reflection,
            "filter_score": filter_score,
            "makeup_detected": quality.get("makeup_detected") is True,
            "filter_detected": quality.get("filter_detected") is True or "has_filter" in reasons,
        }
    )


def _string_list(values: Any, limit: int) -> List[str]:
    if not isinstance(values, list):
        return []
    out = [str(item).strip() for item in values if isinstance(item, str) and item.strip()]
    return out[:limit]


def _normalize_provider_concern(
    raw: Any,
    *,
    provider: str,
    index: int,
    quality_grade: str,
    provider_quality_features: Optional[Mapping[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """Normalize one provider concern into the canonical shape.

    Regions that fail strict parsing still contribute their ``bbox_norm`` when
    it normalizes; a concern left with no regions is dropped.
    """
    if not isinstance(raw, Mapping):
        return None
    regions: List[Dict[str, Any]] = []
    for payload in raw.get("regions") or []:
        region = parse_region(payload)
        if region is not None:
            regions.append(region_to_payload(region))
            continue
        if isinstance(payload, Mapping) and payload.get("bbox_norm") is not None:
            box = normalize_bbox(payload.get("bbox_norm"))
            if box is not None:
                regions.append({"kind": "bbox", "bbox_norm": box.to_dict()})
    if not regions:
        return None

    confidence = _clamp01(raw.get("confidence"))
    evidence = str(raw.get("evidence_text") or "").strip() or f"Signal from {provider}"
    features = raw.get("quality_features")
    provenance_in = raw.get("provenance") if isinstance(raw.get("provenance"), Mapping) else {}
    source_ids = _string_list(provenance_in.get("source_ids"), MAX_SOURCE_IDS) or [f"{provider}:{index}"]
    provenance: Dict[str, Any] = {"provider": provider, "source_ids": source_ids}
    if provenance_in.get("reviewer"):
        provenance["reviewer"] = str(provenance_in["reviewer"]).strip()
    if isinstance(provenance_in.get("notes"), list):
        provenance["notes"] = _string_list(provenance_in["notes"], MAX_NOTES)

    concern: Dict[str, Any] = {
        "concern_id": f"{provider}_{index}",
        "type": _normalize_concern_type(raw.get("type")),
        "regions": regions[:MAX_REGIONS],
        "raw_confidence": _round3(confidence),
        "severity": _round3(_clamp_severity(raw.get("severity"))),
        "confidence": _round3(confidence),
        "evidence_text": evidence[:MAX_EVIDENCE_CHARS],
        "quality_sensitivity": _normalize_quality_sensitivity(raw.get("quality_sensitivity"), quality_grade),
        "quality_features": _normalize_quality_features(
            features if isinstance(features, Mapping) else provider_quality_features
        ),
        "source_model": str(raw.get("source_model") or provider).strip() or provider,
        "provenance": provenance,
    }
    if raw.get("uncertain") is True:
        concern["uncertain"] = True
    return concern


def _map_finding_to_concern(
    finding: Any,
    *,
    index: int,
    quality_grade: str,
    quality_features: Mapping[str, Any],
    skin_bbox: Any = None,
) -> Optional[Dict[str, Any]]:
    """Translate a rule-based photo finding into a concern."""
    if not isinstance(finding, Mapping):
        return None
    concern_type = _normalize_concern_type(finding.get("issue_type"))
    confidence = _clamp01(finding.get("confidence"))
    regions: List[Dict[str, Any]] = []
    geometry = finding.get("geometry")
    if isinstance(geometry, Mapping):
        box = normalize_bbox(geometry.get("bbox_norm"))
        if box is not None:
            regions.append({"kind": "bbox", "bbox_norm": box.to_dict()})
        values = geometry.get("values")
        if geometry.get("type") == "grid" and isinstance(values, list):
            try:
                rows = max(1, min(64, int(geometry.get("rows"))))
                cols = max(1, min(64, int(geometry.get("cols"))))
            except (TypeError, ValueError):
                rows = cols = 0
            cells = [_round3(_clamp01(value)) for value in values[: rows * cols]]
            if rows and cols and len(cells) == rows * cols:
                regions.append({"kind": "heatmap", "rows": rows, "cols": cols, "values": cells})
    if not regions and skin_bbox is not None:
        box = normalize_bbox(skin_bbox)
        if box is not None:
            regions.append({"kind": "bbox", "bbox_norm": box.to_dict()})
    if not regions:
        regions.append({"kind": "bbox", "bbox_norm": dict(DEFAULT_REGION_BBOX)})

    uncertain = bool(finding.get("uncertain"))
    provenance: Dict[str, Any] = {
        "provider": "cv_provider",
        "source_ids": [str(finding.get("finding_id") or f"cv_finding_{index + 1}")],
    }
    if finding.get("subtype"):
        provenance["notes"] = [f"subtype:{finding['subtype']}"]
    concern: Dict[str, Any] = {
        "type": concern_type,
        "regions": regions,
        "raw_confidence": _round3(confidence),
        "severity": _round3(_clamp_severity(finding.get("severity"))),
        "confidence": _round3(confidence),
        "evidence_text": (str(finding.get("evidence") or "").strip() or f"CV signal {concern_type}")[:MAX_EVIDENCE_CHARS],
        "quality_sensitivity": _normalize_quality_sensitivity("high" if uncertain else None, quality_grade),
        "source_model": "cv_provider",
        "quality_features": dict(quality_features),
        "provenance": provenance,
    }
    if uncertain:
        concern["uncertain"] = True
    return concern
