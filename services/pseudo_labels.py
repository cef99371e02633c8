"""Pseudo-label factory: pairwise agreement metrics, pseudo-label harvesting and the artifact store."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from services.concerns import _normalize_concern_type, _sensitivity_rank
from services.geometry import (
    BBox,
    Heatmap,
    first_heatmap,
    heatmap_correlation,
    heatmap_kl_divergence,
    iou,
    normalize_bbox,
    normalize_heatmap_values,
    primary_bbox,
)
from utils.env import _env_bool, _env_float, _env_str
from utils.io import _append_ndjson, _load_json_metadata, _read_ndjson, _write_json_atomic
from utils.parsing import _clamp01, _clamp_severity, _coerce_float, _normalize_token, _round3

logger = logging.getLogger(__name__)

MODEL_OUTPUT_SCHEMA_VERSION = "aurora.diag.model_output.v1"
PSEUDO_LABEL_SCHEMA_VERSION = "aurora.diag.pseudo_label.v1"
AGREEMENT_SAMPLE_SCHEMA_VERSION = "aurora.diag.agreement_sample.v1"
MANIFEST_SCHEMA_VERSION = "aurora.diag.pseudo_label_manifest.v1"

DEFAULT_STORE_SUBDIR = Path("tmp") / "diag_pseudo_label_factory"
DEFAULT_REGION_IOU_THRESHOLD = 0.3
DEFAULT_AGREEMENT_THRESHOLD = 0.75
STORED_EVIDENCE_CHARS = 280
HEATMAP_SIGNATURE_VALUES = 64
COUNT_FIELDS = ("model_outputs", "pseudo_labels", "agreement_samples")

AGREEMENT_WEIGHTS = {"type": 0.4, "region": 0.35, "severity": 0.25}


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _random_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4()}"


def _bucket_label(value: Any) -> str:
    return str(value or "unknown").strip() or "unknown"


@dataclass(frozen=True)
class PseudoLabelSettings:
    enabled: bool
    base_dir: Path
    allow_roi: bool
    region_iou_threshold: float
    agreement_threshold: float

    def manifest_settings(self) -> Dict[str, Any]:
        return {
            "allow_roi": bool(self.allow_roi),
            "region_iou_threshold": _round3(self.region_iou_threshold),
            "agreement_threshold": _round3(self.agreement_threshold),
        }


def _load_pseudo_label_settings() -> PseudoLabelSettings:
    base_dir = _env_str("AURORA_PSEUDO_LABEL_DIR", "")
    threshold_name = "AURORA_PSEUDO_LABEL_MIN_AGREEMENT"
    if not _env_str(threshold_name, ""):
        threshold_name = "AURORA_PSEUDO_LABEL_AGREEMENT_THRESHOLD"
    return PseudoLabelSettings(
        enabled=_env_bool("AURORA_PSEUDO_LABEL_ENABLED", True),
        base_dir=Path(base_dir) if base_dir else Path.cwd() / DEFAULT_STORE_SUBDIR,
        allow_roi=_env_bool("AURORA_PSEUDO_LABEL_ALLOW_ROI", False),
        region_iou_threshold=_env_float(
            "AURORA_PSEUDO_LABEL_REGION_IOU_THRESHOLD", DEFAULT_REGION_IOU_THRESHOLD, minimum=0.05, maximum=0.95
        ),
        agreement_threshold=_env_float(threshold_name, DEFAULT_AGREEMENT_THRESHOLD, minimum=0.05, maximum=1.0),
    )


# --- Store ---------------------------------------------------------------------------

_STORE_LOCKS: Dict[str, threading.Lock] = {}
_STORE_LOCKS_GUARD = threading.Lock()


def _manifest_lock(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _STORE_LOCKS_GUARD:
        lock = _STORE_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _STORE_LOCKS[key] = lock
        return lock


class PseudoLabelStore:
    """Append-only NDJSON artifacts plus an atomically replaced manifest."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)
        self.manifest_path = self.base_dir / "manifest.json"
        self.model_outputs_path = self.base_dir / "model_outputs.ndjson"
        self.pseudo_labels_path = self.base_dir / "pseudo_labels.ndjson"
        self.agreement_samples_path = self.base_dir / "agreement_samples.ndjson"
        self._lock = _manifest_lock(self.manifest_path)

    def append_model_outputs(self, records: Sequence[Dict[str, Any]]) -> int:
        return _append_ndjson(self.model_outputs_path, records)

    def append_agreement_samples(self, records: Sequence[Dict[str, Any]]) -> int:
        return _append_ndjson(self.agreement_samples_path, records)

    def append_pseudo_labels(self, records: Sequence[Dict[str, Any]]) -> int:
        return _append_ndjson(self.pseudo_labels_path, records)

    def read_model_outputs(self) -> List[Dict[str, Any]]:
        return _read_ndjson(self.model_outputs_path)

    def read_agreement_samples(self) -> List[Dict[str, Any]]:
        return _read_ndjson(self.agreement_samples_path)

    def read_pseudo_labels(self) -> List[Dict[str, Any]]:
        return _read_ndjson(self.pseudo_labels_path)

    def read_manifest(self) -> Optional[Dict[str, Any]]:
        return _load_json_metadata(self.manifest_path)

    def update_manifest(self, settings: PseudoLabelSettings, delta: Mapping[str, Any]) -> Dict[str, Any]:
        """Read, merge count deltas and atomically replace the manifest."""
        with self._lock:
            manifest = self.read_manifest()
            if manifest is None:
                now = _iso_now()
                manifest = {"schema_version": MANIFEST_SCHEMA_VERSION, "created_at": now, "updated_at": now, "counts": {}}
            counts = manifest.get("counts") if isinstance(manifest.get("counts"), dict) else {}
            manifest["schema_version"] = MANIFEST_SCHEMA_VERSION
            manifest["updated_at"] = _iso_now()
            manifest["settings"] = settings.manifest_settings()
            manifest["counts"] = {
                name: max(0, int(_coerce_float(counts.get(name), 0.0) + _coerce_float(delta.get(name), 0.0)))
                for name in COUNT_FIELDS
            }
            _write_json_atomic(self.manifest_path, manifest)
        return manifest


# --- Agreement metrics ------------------------------------------------------------


def _concern_weight(concern: Mapping[str, Any]) -> float:
    return max(0.1, _clamp01(concern.get("confidence")) * (1.0 + _clamp_severity(concern.get("severity")) / 4.0))


def _heatmap_signature(regions: Any) -> Optional[Heatmap]:
    heatmap = first_heatmap(regions if isinstance(regions, list) else [])
    if heatmap is None:
        return None
    values = normalize_heatmap_values(heatmap.values, heatmap.rows * heatmap.cols)
    if values is None:
        return None
    return Heatmap(heatmap.rows, heatmap.cols, tuple(_round3(value) for value in values))


def _concern_bbox(concern: Mapping[str, Any]) -> Optional[BBox]:
    regions = concern.get("regions")
    box = primary_bbox(regions if isinstance(regions, list) else [])
    return box if box is not None else normalize_bbox(concern.get("region_hint_bbox"))


def _normalize_concern(concern: Any, index: int = 0) -> Dict[str, Any]:
    source = concern if isinstance(concern, Mapping) else {}
    provenance = source.get("provenance") if isinstance(source.get("provenance"), Mapping) else {}
    source_ids = provenance.get("source_ids") if isinstance(provenance.get("source_ids"), list) else []
    return {
        "idx": index,
        "type": _normalize_concern_type(source.get("type")),
        "severity": _round3(_clamp_severity(source.get("severity"))),
        "confidence": _round3(_clamp01(source.get("confidence"))),
        "bbox": _concern_bbox(source),
        "heatmap": _heatmap_signature(source.get("regions")),
        "evidence_text": str(source.get("evidence_text") or "").strip()[:500],
        "quality_sensitivity": str(source.get("quality_sensitivity") or "").strip() or "medium",
        "source_model": str(source.get("source_model") or "").strip() or None,
        "source_ids": [item for item in source_ids if isinstance(item, str) and item.strip()][:8],
    }


def _normalize_provider_output(output: Any) -> List[Dict[str, Any]]:
    concerns = output.get("concerns") if isinstance(output, Mapping) else None
    if not isinstance(concerns, list):
        return []
    return [_normalize_concern(concern, index) for index, concern in enumerate(concerns)]


def _group_by_type(concerns: Sequence[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for concern in concerns:
        grouped.setdefault(concern["type"], []).append(concern)
    return grouped


def _common_types(left: Mapping[str, Any], right: Mapping[str, Any]) -> List[str]:
    return sorted(concern_type for concern_type in left if concern_type in right)


def compute_type_level_agreement(left: Sequence[Dict[str, Any]], right: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """Weighted F1 and Jaccard over per-type confidence/severity mass."""
    left_weights = {t: _round3(sum(_concern_weight(c) for c in items)) for t, items in _group_by_type(left).items()}
    right_weights = {t: _round3(sum(_concern_weight(c) for c in items)) for t, items in _group_by_type(right).items()}
    union = list(dict.fromkeys(list(left_weights) + list(right_weights)))
    overlap = [t for t in left_weights if t in right_weights]
    tp = sum(min(left_weights.get(t, 0.0), right_weights.get(t, 0.0)) for t in union)
    left_total = sum(left_weights.values())
    right_total = sum(right_weights.values())
    precision = tp / left_total if left_total > 0 else 1.0
    recall = tp / right_total if right_total > 0 else 1.0
    f1 = 2 * precision * recall / (precision + recall) if precision + recall > 0 else 0.0
    return {
        "jaccard": _round3(len(overlap) / len(union) if union else 1.0),
        "weighted_f1": _round3(f1),
        "overlap_types": len(overlap),
        "union_types": len(union),
    }


def _merge_bbox_for_type(concerns: Sequence[Dict[str, Any]]) -> Optional[BBox]:
    boxed = [c for c in concerns if c["bbox"] is not None]
    if not boxed:
        return None
    total = sum(_concern_weight(c) for c in boxed)
    if total <= 0:
        return boxed[0]["bbox"]
    return normalize_bbox(
        tuple(sum(getattr(c["bbox"], name) * _concern_weight(c) for c in boxed) / total for name in ("x0", "y0", "x1", "y1"))
    )


def _strongest_heatmap(concerns: Sequence[Dict[str, Any]]) -> Optional[Heatmap]:
    with_heat = [c for c in concerns if c["heatmap"] is not None]
    if not with_heat:
        return None
    return max(with_heat, key=_concern_weight)["heatmap"]


def _weighted_severity(concerns: Sequence[Dict[str, Any]]) -> Dict[str, float]:
    total = sum(_concern_weight(c) for c in concerns)
    if total <= 0:
        return {"severity": 0.0, "confidence": 0.0}
    return {
        "severity": _round3(sum(c["severity"] * _concern_weight(c) for c in concerns) / total),
        "confidence": _round3(sum(c["confidence"] * _concern_weight(c) for c in concerns) / total),
    }


def _mean(values: Sequence[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def compute_region_level_agreement(left: Sequence[Dict[str, Any]], right: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """Geometry agreement over types present on both sides only."""
    left_grouped, right_grouped = _group_by_type(left), _group_by_type(right)
    common = _common_types(left_grouped, right_grouped)
    by_type: List[Dict[str, Any]] = []
    ious: List[float] = []
    corrs: List[float] = []
    kls: List[float] = []
    for concern_type in common:
        overlap = _round3(iou(_merge_bbox_for_type(left_grouped[concern_type]), _merge_bbox_for_type(right_grouped[concern_type])))
        left_heat = _strongest_heatmap(left_grouped[concern_type])
        right_heat = _strongest_heatmap(right_grouped[concern_type])
        corr = heatmap_correlation(left_heat, right_heat)
        kl = heatmap_kl_divergence(left_heat, right_heat)
        ious.append(overlap)
        if corr is not None:
            corrs.append(corr)
        if kl is not None:
            kls.append(kl)
        by_type.append({"type": concern_type, "iou": overlap, "heatmap_correlation": corr, "heatmap_kl": kl})

    mean_iou = _mean(ious) or 0.0
    mean_corr = _mean(corrs)
    mean_kl = _mean(kls)
    corr_component = 0.5 if mean_corr is None else _clamp01((mean_corr + 1.0) / 2.0)
    kl_component = 0.5 if mean_kl is None else _clamp01(1.0 - mean_kl / 4.0)
    score = 0.6 * mean_iou + 0.2 * corr_component + 0.2 * kl_component if common else 0.0
    return {
        "mean_iou": _round3(mean_iou),
        "heatmap_correlation": None if mean_corr is None else _round3(mean_corr),
        "heatmap_kl": None if mean_kl is None else _round3(mean_kl),
        "common_types": len(common),
        "score": _round3(score),
        "by_type": by_type,
    }


def compute_severity_level_agreement(left: Sequence[Dict[str, Any]], right: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    left_grouped, right_grouped = _group_by_type(left), _group_by_type(right)
    common = _common_types(left_grouped, right_grouped)
    if not common:
        return {"mae": 4, "interval_overlap": 0, "common_types": 0, "score": 0, "by_type": []}

    maes: List[float] = []
    overlaps: List[float] = []
    by_type: List[Dict[str, Any]] = []
    for concern_type in common:
        lhs = _weighted_severity(left_grouped[concern_type])
        rhs = _weighted_severity(right_grouped[concern_type])
        mae = abs(lhs["severity"] - rhs["severity"])
        left_width = max(0.25, 1.0 - lhs["confidence"])
        right_width = max(0.25, 1.0 - rhs["confidence"])
        left_lo, left_hi = max(0.0, lhs["severity"] - left_width), min(4.0, lhs["severity"] + left_width)
        right_lo, right_hi = max(0.0, rhs["severity"] - right_width), min(4.0, rhs["severity"] + right_width)
        overlap = max(0.0, min(left_hi, right_hi) - max(left_lo, right_lo))
        union = max(left_hi, right_hi) - min(left_lo, right_lo)
        ratio = overlap / union if union > 0 else 0.0
        maes.append(mae)
        overlaps.append(ratio)
        by_type.append(
            {
                "type": concern_type,
                "severity_left": lhs["severity"],
                "severity_right": rhs["severity"],
                "severity_mae": _round3(mae),
                "interval_overlap": _round3(ratio),
            }
        )
    mean_mae = sum(maes) / len(maes)
    mean_overlap = sum(overlaps) / len(overlaps)
    score = 0.5 * _clamp01(1.0 - mean_mae / 4.0) + 0.5 * _clamp01(mean_overlap)
    return {
        "mae": _round3(mean_mae),
        "interval_overlap": _round3(mean_overlap),
        "common_types": len(common),
        "score": _round3(score),
        "by_type": by_type,
    }


def _optional_round3(value: Any) -> Optional[float]:
    return None if value is None else _round3(value)


def compute_agreement_for_pair(left_output: Any, right_output: Any) -> Dict[str, Any]:
    """Three-level agreement between two provider outputs.

    Type-level scoring counts types seen on either side; region and severity
    scoring only look at types both sides reported.
    """
    left = _normalize_provider_output(left_output)
    right = _normalize_provider_output(right_output)
    type_level = compute_type_level_agreement(left, right)
    region_level = compute_region_level_agreement(left, right)
    severity_level = compute_severity_level_agreement(left, right)
    overall = _round3(
        AGREEMENT_WEIGHTS["type"] * type_level["weighted_f1"]
        + AGREEMENT_WEIGHTS["region"] * region_level["score"]
        + AGREEMENT_WEIGHTS["severity"] * severity_level["score"]
    )
    merged: Dict[str, Dict[str, Any]] = {}
    for row in region_level["by_type"] + severity_level["by_type"]:
        merged.setdefault(row["type"], {"type": row["type"]}).update(row)
    by_type = [
        {
            "type": row["type"],
            "iou": _optional_round3(row.get("iou")),
            "heatmap_correlation": _optional_round3(row.get("heatmap_correlation")),
            "heatmap_kl": _optional_round3(row.get("heatmap_kl")),
            "severity_mae": _optional_round3(row.get("severity_mae")),
            "interval_overlap": _optional_round3(row.get("interval_overlap")),
        }
        for _type, row in sorted(merged.items())
    ]
    return {
        "type_level": type_level,
        "region_level": {key: value for key, value in region_level.items() if key != "by_type"},
        "severity_level": {key: value for key, value in severity_level.items() if key != "by_type"},
        "overall": overall,
        "by_type": by_type,
    }


# --- Pseudo labels ----------------------------------------------------------------


def _build_pseudo_concern(
    left: Dict[str, Any],
    right: Dict[str, Any],
    *,
    region_iou: float,
    agreement_overall: float,
    left_provider: str,
    right_provider: str,
) -> Optional[Dict[str, Any]]:
    if left["bbox"] is not None and right["bbox"] is not None:
        merged_box = normalize_bbox(
            tuple((getattr(left["bbox"], name) + getattr(right["bbox"], name)) / 2.0 for name in ("x0", "y0", "x1", "y1"))
        )
    else:
        merged_box = left["bbox"] or right["bbox"]
    if merged_box is None:
        return None
    segments = list(dict.fromkeys(text for text in (left["evidence_text"], right["evidence_text"]) if text))
    source_ids = list(
        dict.fromkeys(
            (left["source_ids"] or [f"{left_provider}:{left['idx']}"])
            + (right["source_ids"] or [f"{right_provider}:{right['idx']}"])
        )
    )
    sensitivity = left["quality_sensitivity"]
    if _sensitivity_rank(right["quality_sensitivity"]) > _sensitivity_rank(sensitivity):
        sensitivity = right["quality_sensitivity"]
    return {
        "type": left["type"],
        "regions": [{"kind": "bbox", "bbox_norm": merged_box.to_dict()}],
        "severity": _round3((left["severity"] + right["severity"]) / 2.0),
        "confidence": _round3((left["confidence"] + right["confidence"]) / 2.0),
        "evidence_text": " | ".join(segments)[:500] or "cross-model consensus",
        "quality_sensitivity": sensitivity,
        "source_model": "pseudo_label_factory",
        "provenance": {
            "provider": "pseudo_label_factory",
            "source_ids": source_ids[:10],
            "notes": [
                f"matched_type:{left['type']}",
                f"region_iou:{_round3(region_iou)}",
                f"agreement_overall:{_round3(agreement_overall)}",
            ],
        },
    }


def generate_pseudo_labels_for_pair(
    left_output: Any,
    right_output: Any,
    *,
    quality_grade: Any,
    region_iou_threshold: float = DEFAULT_REGION_IOU_THRESHOLD,
) -> Dict[str, Any]:
    """Greedy one-to-one type+IoU matching between two outputs and merged pseudo concerns."""
    left = _normalize_provider_output(left_output)
    right = _normalize_provider_output(right_output)
    left_provider = str((left_output or {}).get("provider") or "gemini_provider")
    right_provider = str((right_output or {}).get("provider") or "gpt_provider")
    claimed: set = set()
    matches: List[Dict[str, Any]] = []
    pairs: List[tuple] = []
    for lhs in left:
        best_index, best_iou = -1, 0.0
        for idx, rhs in enumerate(right):
            if idx in claimed or rhs["type"] != lhs["type"]:
                continue
            overlap = _round3(iou(lhs["bbox"], rhs["bbox"]))
            if overlap > best_iou:
                best_index, best_iou = idx, overlap
        if best_index < 0 or best_iou < region_iou_threshold:
            continue
        claimed.add(best_index)
        pairs.append((lhs, right[best_index], best_iou))
        matches.append(
            {
                "type": lhs["type"],
                "gemini_idx": lhs["idx"],
                "gpt_idx": right[best_index]["idx"],
                "region_iou": _round3(best_iou),
            }
        )

    agreement = compute_agreement_for_pair(left_output, right_output)
    concerns = [
        concern
        for concern in (
            _build_pseudo_concern(
                lhs,
                rhs,
                region_iou=overlap,
                agreement_overall=agreement["overall"],
                left_provider=left_provider,
                right_provider=right_provider,
            )
            for lhs, rhs, overlap in pairs
        )
        if concern is not None
    ]
    return {
        "quality_eligible": _normalize_token(quality_grade) in {"pass", "degraded"},
        "matches": matches,
        "concerns": concerns,
        "agreement": agreement,
    }


def pseudo_label_decision(generated: Mapping[str, Any], agreement_threshold: float) -> Dict[str, bool]:
    """Eligible when quality passes and agreement clears the threshold; emitted when also matched."""
    overall = (generated.get("agreement") or {}).get("overall")
    agreement_pass = overall is not None and float(overall) >= agreement_threshold
    eligible = bool(generated.get("quality_eligible")) and agreement_pass
    return {"eligible": eligible, "emit": eligible and bool(generated.get("concerns"))}


# --- Records ------------------------------------------------------------------------


def sanitize_concern_for_storage(concern: Any, *, allow_roi: bool) -> Dict[str, Any]:
    source = concern if isinstance(concern, Mapping) else {}
    out: Dict[str, Any] = {
        "type": _normalize_concern_type(source.get("type")),
        "severity": _round3(_clamp_severity(source.get("severity"))),
        "confidence": _round3(_clamp01(source.get("confidence"))),
        "evidence_text": str(source.get("evidence_text") or "").strip()[:STORED_EVIDENCE_CHARS],
        "quality_sensitivity": str(source.get("quality_sensitivity") or "").strip() or "medium",
        "source_model": str(source.get("source_model") or "").strip() or None,
    }
    if allow_roi:
        out["regions"] = source.get("regions") if isinstance(source.get("regions"), list) else []
        return out
    box = primary_bbox(source.get("regions") if isinstance(source.get("regions"), list) else [])
    if box is not None:
        out["region_hint_bbox"] = box.to_dict()
    heatmap = _heatmap_signature(source.get("regions"))
    if heatmap is not None:
        out["region_hint_heatmap"] = {
            "rows": heatmap.rows,
            "cols": heatmap.cols,
            "signature": list(heatmap.values[:HEATMAP_SIGNATURE_VALUES]),
        }
    return out


def _derived_features(concerns: Sequence[Any]) -> Dict[str, Any]:
    normalized = [_normalize_concern(concern, index) for index, concern in enumerate(concerns)]
    count = len(normalized)
    return {
        "concern_count": count,
        "concern_types": sorted(dict.fromkeys(c["type"] for c in normalized)),
        "confidence_mean": _round3(sum(c["confidence"] for c in normalized) / count if count else 0.0),
        "severity_mean": _round3(sum(c["severity"] for c in normalized) / count if count else 0.0),
    }


def infer_model_name(output: Mapping[str, Any]) -> str:
    for key in ("model_name", "source_model", "model"):
        value = output.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    if output.get("provider") == "gemini_provider":
        return _env_str("DIAG_ENSEMBLE_GEMINI_MODEL", "gemini-2.0-flash")
    if output.get("provider") == "gpt_provider":
        return _env_str("DIAG_ENSEMBLE_GPT_MODEL", "gpt-4o-mini")
    return "cv_ruleset"


def infer_model_version(output: Mapping[str, Any]) -> str:
    value = output.get("model_version")
    return value.strip() if isinstance(value, str) and value.strip() else "v1"


def _optional_text(value: Any, limit: Optional[int] = None) -> Optional[str]:
    if not value:
        return None
    text = str(value)
    return text[:limit] if limit else text


def _optional_count(value: Any, *, positive: bool = False) -> Optional[int]:
    numeric = _coerce_float(value, float("nan"))
    if numeric != numeric:
        return None
    if positive and numeric <= 0:
        return None
    if not positive and numeric < 0:
        return None
    return int(numeric)


def build_model_output_record(
    output: Mapping[str, Any],
    *,
    inference_id: str,
    quality_grade: Any,
    skin_tone_bucket: Any,
    lighting_bucket: Any,
    allow_roi: bool,
) -> Dict[str, Any]:
    concerns = output.get("concerns") if isinstance(output.get("concerns"), list) else []
    latency = _coerce_float(output.get("latency_ms"), float("nan"))
    attempts = _optional_count(output.get("attempts"))
    failure_reason = _optional_text(output.get("failure_reason"))
    decision = output.get("decision")
    summary = " ".join(str(output.get("schema_error_summary") or "").split())
    return {
        "schema_version": MODEL_OUTPUT_SCHEMA_VERSION,
        "record_id": _random_id("mo"),
        "inference_id": inference_id,
        "created_at": _iso_now(),
        "provider": str(output.get("provider") or "unknown"),
        "model_name": infer_model_name(output),
        "model_version": infer_model_version(output),
        "quality_grade": _normalize_token(quality_grade, "unknown"),
        "skin_tone_bucket": _bucket_label(skin_tone_bucket),
        "lighting_bucket": _bucket_label(lighting_bucket),
        "output_json": {
            "ok": bool(output.get("ok")),
            "decision": str(decision)[:32] if decision else ("verify" if output.get("ok") else "unknown"),
            "concerns": [sanitize_concern_for_storage(concern, allow_roi=allow_roi) for concern in concerns],
            "flags": list(output.get("flags") or [])[:20] if isinstance(output.get("flags"), list) else [],
            "review": _optional_text(output.get("review"), 120),
            "failure_reason": failure_reason,
            "final_reason": _optional_text(output.get("final_reason")) or failure_reason,
            "raw_final_reason": _optional_text(output.get("raw_final_reason")),
            "verify_fail_reason": _optional_text(output.get("verify_fail_reason")),
            "schema_failed": bool(output.get("schema_failed")),
            "latency_ms": None if latency != latency else _round3(latency),
            "attempts": attempts,
            "provider_status_code": _optional_count(output.get("provider_status_code"), positive=True),
            "skipped_reason": _optional_text(output.get("skipped_reason")),
            "http_status_class": str(output["http_status_class"]).lower() if output.get("http_status_class") else None,
            "error_class": _optional_text(output.get("error_class"), 64),
            "image_bytes_len": _optional_count(output.get("image_bytes_len")),
            "request_payload_bytes_len": _optional_count(output.get("request_payload_bytes_len")),
            "response_bytes_len": _optional_count(output.get("response_bytes_len")),
            "schema_error_summary": summary[:120] or None,
            "trace_id": _optional_text(output.get("trace_id"), 96),
        },
        "derived_features": _derived_features(concerns),
    }


def build_agreement_sample_record(
    *,
    inference_id: str,
    quality_grade: Any,
    skin_tone_bucket: Any,
    lighting_bucket: Any,
    agreement: Optional[Dict[str, Any]],
    pseudo_label_eligible: bool,
    pseudo_label_emitted: bool,
    provider_pair: Sequence[Any],
) -> Dict[str, Any]:
    return {
        "schema_version": AGREEMENT_SAMPLE_SCHEMA_VERSION,
        "sample_id": _random_id("as"),
        "inference_id": inference_id,
        "created_at": _iso_now(),
        "quality_grade": _normalize_token(quality_grade, "unknown"),
        "skin_tone_bucket": _bucket_label(skin_tone_bucket),
        "lighting_bucket": _bucket_label(lighting_bucket),
        "metrics": agreement,
        "pseudo_label_eligible": bool(pseudo_label_eligible),
        "pseudo_label_emitted": bool(pseudo_label_emitted),
        "provider_pair": [_bucket_label(provider) for provider in provider_pair][:2],
    }


def build_pseudo_label_record(
    *,
    inference_id: str,
    quality_grade: Any,
    skin_tone_bucket: Any,
    lighting_bucket: Any,
    concerns: List[Dict[str, Any]],
    agreement: Dict[str, Any],
    matches: List[Dict[str, Any]],
    sources: List[Dict[str, Any]],
) -> Dict[str, Any]:
    return {
        "schema_version": PSEUDO_LABEL_SCHEMA_VERSION,
        "pseudo_label_id": _random_id("pl"),
        "inference_id": inference_id,
        "created_at": _iso_now(),
        "quality_grade": _normalize_token(quality_grade, "unknown"),
        "skin_tone_bucket": _bucket_label(skin_tone_bucket),
        "lighting_bucket": _bucket_label(lighting_bucket),
        "concerns": concerns,
        "agreement": agreement,
        "matches": matches,
        "sources": sources,
    }


def select_agreement_pair(outputs: Sequence[Any]) -> Optional[Dict[str, Any]]:
    """Prefer gemini+gpt (pseudo-label capable), then cv+gemini, then the first two outputs."""
    listed = [output for output in outputs or [] if isinstance(output, Mapping)]
    by_provider: Dict[str, Mapping[str, Any]] = {}
    for output in listed:
        by_provider.setdefault(str(output.get("provider") or ""), output)
    gemini, gpt, cv = by_provider.get("gemini_provider"), by_provider.get("gpt_provider"), by_provider.get("cv_provider")
    if gemini is not None and gpt is not None:
        return {"left": gemini, "right": gpt, "provider_pair": ["gemini_provider", "gpt_provider"], "supports_pseudo_labels": True}
    if cv is not None and gemini is not None:
        return {"left": cv, "right": gemini, "provider_pair": ["cv_provider", "gemini_provider"], "supports_pseudo_labels": False}
    if len(listed) >= 2:
        return {
            "left": listed[0],
            "right": listed[1],
            "provider_pair": [_bucket_label(listed[0].get("provider")), _bucket_label(listed[1].get("provider"))],
            "supports_pseudo_labels": False,
        }
    return None


def persist_pseudo_label_artifacts(
    provider_outputs: Sequence[Any],
    *,
    inference_id: Optional[str] = None,
    quality_grade: Any = None,
    skin_tone_bucket: Any = "unknown",
    lighting_bucket: Any = "unknown",
    settings: Optional[PseudoLabelSettings] = None,
    store: Optional[PseudoLabelStore] = None,
) -> Dict[str, Any]:
    """Append model outputs, one agreement sample and (when earned) a pseudo-label."""
    settings = settings or _load_pseudo_label_settings()
    if not settings.enabled:
        return {"ok": True, "enabled": False, "reason": "DISABLED_BY_FLAG"}
    outputs = [output for output in provider_outputs or [] if isinstance(output, Mapping)]
    if not outputs:
        return {"ok": True, "enabled": True, "reason": "NO_PROVIDER_OUTPUTS"}

    store = store or PseudoLabelStore(settings.base_dir)
    trace_id = str(inference_id or "").strip() or _random_id("inf")
    buckets = {"quality_grade": quality_grade, "skin_tone_bucket": skin_tone_bucket, "lighting_bucket": lighting_bucket}
    model_records = [
        build_model_output_record(output, inference_id=trace_id, allow_roi=settings.allow_roi, **buckets)
        for output in outputs
    ]
    store.append_model_outputs(model_records)

    agreement_record: Optional[Dict[str, Any]] = None
    pseudo_record: Optional[Dict[str, Any]] = None
    pair = select_agreement_pair(outputs)
    if pair is not None:
        eligible = emitted = False
        if pair["supports_pseudo_labels"]:
            generated = generate_pseudo_labels_for_pair(
                pair["left"],
                pair["right"],
                quality_grade=quality_grade,
                region_iou_threshold=settings.region_iou_threshold,
            )
            agreement = generated["agreement"]
            decision = pseudo_label_decision(generated, settings.agreement_threshold)
            eligible, emitted = decision["eligible"], decision["emit"]
            if emitted:
                pseudo_record = build_pseudo_label_record(
                    inference_id=trace_id,
                    concerns=generated["concerns"],
                    agreement=agreement,
                    matches=generated["matches"],
                    sources=[
                        {
                            "provider": provider,
                            "model_name": infer_model_name(output),
                            "model_version": infer_model_version(output),
                        }
                        for provider, output in zip(pair["provider_pair"], (pair["left"], pair["right"]))
                    ],
                    **buckets,
                )
        else:
            agreement = compute_agreement_for_pair(pair["left"], pair["right"])
        agreement_record = build_agreement_sample_record(
            inference_id=trace_id,
            agreement=agreement,
            pseudo_label_eligible=eligible,
            pseudo_label_emitted=emitted,
            provider_pair=pair["provider_pair"],
            **buckets,
        )

    if agreement_record is not None:
        store.append_agreement_samples([agreement_record])
    if pseudo_record is not None:
        store.append_pseudo_labels([pseudo_record])
    manifest = store.update_manifest(
        settings,
        {
            "model_outputs": len(model_records),
            "agreement_samples": 1 if agreement_record else 0,
            "pseudo_labels": 1 if pseudo_record else 0,
        },
    )
    logger.info(
        "Pseudo-label factory persisted %s model outputs for %s (agreement=%s pseudo_label=%s)",
        len(model_records),
        trace_id,
        agreement_record is not None,
        pseudo_record is not None,
    )
    return {
        "ok": True,
        "enabled": True,
        "inference_id": trace_id,
        "model_outputs_written": len(model_records),
        "agreement_written": agreement_record is not None,
        "pseudo_label_written": pseudo_record is not None,
        "manifest_counts": manifest.get("counts"),
    }
