"""Fusion engine: cluster provider concerns, fuse clusters, flag conflicts, emit the canonical result."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from models.schemas import CANONICAL_SCHEMA_VERSION, CanonicalResultSchema
from services.calibration import (
    CalibrationRuntime,
    calibrate_confidence,
    load_calibration_runtime,
    resolve_provider_weight,
    smooth_severity,
)
from services.concerns import (
    DEFAULT_REGION_BBOX,
    MAX_EVIDENCE_CHARS,
    MAX_NOTES,
    MAX_REGIONS,
    MAX_SOURCE_IDS,
    _normalize_provider_concern,
    _normalize_quality_grade,
    _normalize_quality_sensitivity,
)
from services.geometry import BBox, Polygon, first_heatmap, iou, normalize_bbox, parse_region, primary_bbox_from_concern
from services.providers import (
    CV_PROVIDER,
    GEMINI_PROVIDER,
    GPT_PROVIDER,
    ProviderAdapter,
    run_cv_provider,
    run_vision_provider,
)
from services.pseudo_labels import PseudoLabelSettings, PseudoLabelStore, persist_pseudo_label_artifacts
from utils.env import _env_bool, _env_float, _env_int, _env_str
from utils.parsing import _clamp01, _round3

logger = logging.getLogger(__name__)

PROVIDER_BASE_WEIGHT = {CV_PROVIDER: 0.7, GEMINI_PROVIDER: 1.0, GPT_PROVIDER: 1.05}

MODEL_RELIABILITY = {
    "redness": {"pass": 0.9, "degraded": 0.8, "fail": 0.55, "unknown": 0.7},
    "acne": {"pass": 0.82, "degraded": 0.7, "fail": 0.52, "unknown": 0.65},
    "shine": {"pass": 0.8, "degraded": 0.75, "fail": 0.55, "unknown": 0.66},
    "texture": {"pass": 0.78, "degraded": 0.66, "fail": 0.5, "unknown": 0.62},
    "tone": {"pass": 0.72, "degraded": 0.52, "fail": 0.42, "unknown": 0.56},
    "dryness": {"pass": 0.75, "degraded": 0.64, "fail": 0.48, "unknown": 0.58},
    "barrier": {"pass": 0.7, "degraded": 0.6, "fail": 0.45, "unknown": 0.55},
    "other": {"pass": 0.6, "degraded": 0.55, "fail": 0.4, "unknown": 0.5},
}

SEVERITY_SPREAD_CONFLICT = 1.5
REGION_DIVERGENCE_CONFLICT = 0.7
TYPE_CONFLICT_IOU = 0.35
AGREEMENT_MATCH_IOU = 0.2
UNCERTAIN_CONFIDENCE_FACTOR = 0.78
TYPE_CONFLICT_CONFIDENCE_FACTOR = 0.82
MIN_MEMBER_WEIGHT = 0.0001
MAX_CANONICAL_CONCERNS = 64
MAX_CANONICAL_CONFLICTS = 32
MAX_CONFLICT_PROVIDERS = 6
MAX_EVIDENCE_REGIONS = 96


@dataclass(frozen=True)
class FusionConfig:
    enabled: bool
    iou_threshold: float
    timeout_ms: int
    retries: int
    gemini_enabled: bool
    gemini_model: str
    gpt_enabled: bool
    gpt_model: str
    cv_model_version: str


def _load_fusion_config() -> FusionConfig:
    return FusionConfig(
        enabled=_env_bool("DIAG_ENSEMBLE", False),
        iou_threshold=_env_float("DIAG_ENSEMBLE_IOU_CLUSTER", 0.28, minimum=0.05, maximum=0.95),
        timeout_ms=_env_int("DIAG_ENSEMBLE_TIMEOUT_MS", 12000, minimum=1000, maximum=45000),
        retries=_env_int("DIAG_ENSEMBLE_RETRIES", 1, minimum=0, maximum=3),
        gemini_enabled=_env_bool("DIAG_ENSEMBLE_GEMINI_ENABLED", True),
        gemini_model=_env_str("DIAG_ENSEMBLE_GEMINI_MODEL", "gemini-2.0-flash"),
        gpt_enabled=_env_bool("DIAG_ENSEMBLE_GPT_ENABLED", True),
        gpt_model=_env_str("DIAG_ENSEMBLE_GPT_MODEL", "gpt-4o-mini"),
        cv_model_version=_env_str("DIAG_ENSEMBLE_CV_MODEL_VERSION", "v1"),
    )


def _reliability(provider: str, concern_type: str, quality_grade: str) -> float:
    base = PROVIDER_BASE_WEIGHT.get(provider, PROVIDER_BASE_WEIGHT[CV_PROVIDER])
    table = MODEL_RELIABILITY.get(concern_type, MODEL_RELIABILITY["other"])
    return base * table.get(quality_grade, table["unknown"])


@dataclass
class ClusterMember:
    concern: Dict[str, Any]
    provider: str


@dataclass
class Cluster:
    cluster_id: int
    type: str
    primary_box: Optional[BBox]
    quality_sensitivity: Optional[str]
    members: List[ClusterMember] = field(default_factory=list)


@dataclass
class WeightedMember:
    concern: Dict[str, Any]
    provider: str
    calibrated_confidence: float
    smoothed_severity: float
    weight: float


def cluster_concerns(concerns: Sequence[Dict[str, Any]], *, iou_threshold: float = 0.28) -> List[Cluster]:
    """Group by type (first-appearance order), then greedy-merge by IoU against each cluster's primary box."""
    by_type: Dict[str, List[Dict[str, Any]]] = {}
    for concern in concerns:
        by_type.setdefault(concern["type"], []).append(concern)

    clusters: List[Cluster] = []
    next_id = 0
    for concern_type, items in by_type.items():
        local: List[Cluster] = []
        for item in items:
            provider = str((item.get("provenance") or {}).get("provider") or "unknown")
            item_box = primary_bbox_from_concern(item)
            matched: Optional[Cluster] = None
            best = 0.0
            for cluster in local:
                overlap = iou(item_box, cluster.primary_box) if item_box and cluster.primary_box else 0.0
                if overlap >= iou_threshold and overlap >= best:
                    best = overlap
                    matched = cluster
            if matched is None:
                next_id += 1
                local.append(
                    Cluster(
                        cluster_id=next_id,
                        type=concern_type,
                        primary_box=item_box,
                        quality_sensitivity=item.get("quality_sensitivity"),
                        members=[ClusterMember(item, provider)],
                    )
                )
                continue
            matched.members.append(ClusterMember(item, provider))
            if matched.primary_box is None:
                matched.primary_box = item_box
            sensitivity = item.get("quality_sensitivity")
            if sensitivity == "high":
                matched.quality_sensitivity = "high"
            elif sensitivity == "medium" and matched.quality_sensitivity != "high":
                matched.quality_sensitivity = "medium"
        clusters.extend(local)
    return clusters


def merge_bboxes(items: Sequence[WeightedMember]) -> Optional[BBox]:
    total = 0.0
    sums = [0.0, 0.0, 0.0, 0.0]
    for item in items:
        box = primary_bbox_from_concern(item.concern)
        if box is None or item.weight <= 0:
            continue
        total += item.weight
        for idx, value in enumerate((box.x0, box.y0, box.x1, box.y1)):
            sums[idx] += value * item.weight
    if total <= 0:
        return None
    return normalize_bbox(tuple(value / total for value in sums))


def _first_polygon(concern: Mapping[str, Any]) -> Optional[Polygon]:
    for payload in concern.get("regions") or []:
        region = parse_region(payload)
        if isinstance(region, Polygon):
            return region
    return None


def merge_polygons(items: Sequence[WeightedMember]) -> Optional[Dict[str, Any]]:
    """Best-weighted polygon, averaged pointwise with polygons of the same length."""
    candidates = [(polygon, item.weight) for item in items for polygon in [_first_polygon(item.concern)] if polygon]
    if not candidates:
        return None
    candidates.sort(key=lambda entry: entry[1], reverse=True)
    best = candidates[0][0]
    compatible = [entry for entry in candidates if len(entry[0].points) == len(best.points)]
    if len(compatible) < 2:
        return {"kind": "polygon", "points": [{"x": x, "y": y} for x, y in best.points]}
    points = []
    for idx in range(len(best.points)):
        total = sx = sy = 0.0
        for polygon, weight in compatible:
            safe = max(MIN_MEMBER_WEIGHT, weight)
            total += safe
            sx += polygon.points[idx][0] * safe
            sy += polygon.points[idx][1] * safe
        points.append({"x": _round3(_clamp01(sx / total)), "y": _round3(_clamp01(sy / total))})
    return {"kind": "polygon", "points": points}


def merge_heatmaps(items: Sequence[WeightedMember]) -> Optional[Dict[str, Any]]:
    """Best-weighted heatmap, averaged cellwise with heatmaps of the same shape."""
    candidates = [(heatmap, item.weight) for item in items for heatmap in [first_heatmap(item.concern.get("regions") or [])] if heatmap]
    if not candidates:
        return None
    candidates.sort(key=lambda entry: entry[1], reverse=True)
    best = candidates[0][0]
    compatible = [
        entry
        for entry in candidates
        if entry[0].rows == best.rows and entry[0].cols == best.cols and len(entry[0].values) == len(best.values)
    ]
    values = []
    for idx in range(len(best.values)):
        total = value = 0.0
        for heatmap, weight in compatible:
            safe = max(MIN_MEMBER_WEIGHT, weight)
            total += safe
            value += _clamp01(heatmap.values[idx]) * safe
        values.append(_round3(value / max(total, MIN_MEMBER_WEIGHT)))
    return {"kind": "heatmap", "rows": best.rows, "cols": best.cols, "values": values}


def _weigh_members(
    cluster: Cluster,
    *,
    calibration_model: Optional[Mapping[str, Any]],
    quality_grade: str,
    tone_bucket: str,
    lighting_bucket: str,
) -> List[WeightedMember]:
    weighted: List[WeightedMember] = []
    for member in cluster.members:
        concern = member.concern
        calibrated = calibrate_confidence(
            calibration_model,
            provider=member.provider,
            quality_grade=quality_grade,
            tone_bucket=tone_bucket,
            lighting_bucket=lighting_bucket,
            quality_features=concern.get("quality_features"),
            raw_confidence=concern.get("raw_confidence", concern.get("confidence")),
        )
        smoothed = smooth_severity(calibration_model, severity=concern.get("severity"), calibrated_confidence=calibrated)
        provider_weight = resolve_provider_weight(
            calibration_model,
            provider=member.provider,
            concern_type=concern.get("type"),
            quality_grade=quality_grade,
            tone_bucket=tone_bucket,
        )
        weight = max(
            MIN_MEMBER_WEIGHT,
            _reliability(member.provider, concern["type"], quality_grade) * provider_weight * max(0.2, calibrated),
        )
        weighted.append(WeightedMember(concern, member.provider, calibrated, smoothed, weight))
    return weighted


def fuse_cluster(
    cluster: Cluster,
    *,
    quality_grade: str,
    conflicts: List[Dict[str, Any]],
    calibration_model: Optional[Mapping[str, Any]] = None,
    tone_bucket: str = "unknown",
    lighting_bucket: str = "unknown",
) -> Dict[str, Any]:
    """Fuse one cluster into a canonical concern, appending any severity/region conflicts."""
    items = _weigh_members(
        cluster,
        calibration_model=calibration_model,
        quality_grade=quality_grade,
        tone_bucket=tone_bucket,
        lighting_bucket=lighting_bucket,
    )
    total_weight = severity_sum = confidence_sum = 0.0
    max_severity, min_severity = 0.0, 4.0
    providers: Dict[str, None] = {}
    source_ids: Dict[str, None] = {}
    source_models: Dict[str, None] = {}
    notes: List[str] = []
    seed_text: Optional[str] = None
    seed_confidence = -1.0
    for item in items:
        concern = item.concern
        provenance = concern.get("provenance") or {}
        total_weight += item.weight
        severity_sum += item.smoothed_severity * item.weight
        confidence_sum += item.calibrated_confidence * item.weight
        max_severity = max(max_severity, item.smoothed_severity)
        min_severity = min(min_severity, item.smoothed_severity)
        providers.setdefault(str(provenance.get("provider") or "unknown"))
        source_models.setdefault(str(concern.get("source_model") or item.provider))
        for source_id in provenance.get("source_ids") or []:
            source_ids.setdefault(source_id)
        if seed_text is None or item.calibrated_confidence > seed_confidence:
            seed_text = concern.get("evidence_text")
            seed_confidence = item.calibrated_confidence
        if concern.get("uncertain"):
            notes.append("provider_marked_uncertain")

    regions: List[Dict[str, Any]] = []
    fused_box = merge_bboxes(items)
    if fused_box is not None:
        regions.append({"kind": "bbox", "bbox_norm": fused_box.to_dict()})
    for merged in (merge_polygons(items), merge_heatmaps(items)):
        if merged is not None:
            regions.append(merged)
    if not regions:
        regions.append({"kind": "bbox", "bbox_norm": dict(DEFAULT_REGION_BBOX)})

    provider_list = list(providers)
    spread = max_severity - min_severity
    if spread >= SEVERITY_SPREAD_CONFLICT:
        conflicts.append(
            {
                "conflict_id": f"conf_sev_{cluster.cluster_id}",
                "kind": "severity_disagreement",
                "type": cluster.type,
                "severity": _round3(min(1.0, spread / 4.0)),
                "message": f"Severity disagreement ({min_severity:.1f}-{max_severity:.1f}) across providers.",
                "providers": provider_list[:MAX_CONFLICT_PROVIDERS],
            }
        )

    divergence = 0.0
    for left, right in combinations(items, 2):
        box_a = primary_bbox_from_concern(left.concern)
        box_b = primary_bbox_from_concern(right.concern)
        if box_a is None or box_b is None:
            continue
        divergence = max(divergence, 1.0 - iou(box_a, box_b))
    if divergence >= REGION_DIVERGENCE_CONFLICT and len(provider_list) > 1:
        conflicts.append(
            {
                "conflict_id": f"conf_region_{cluster.cluster_id}",
                "kind": "region_disagreement",
                "type": cluster.type,
                "severity": _round3(min(1.0, divergence)),
                "message": "Region overlap is low between providers for this concern.",
                "providers": provider_list[:MAX_CONFLICT_PROVIDERS],
            }
        )

    uncertain = spread >= SEVERITY_SPREAD_CONFLICT or divergence >= REGION_DIVERGENCE_CONFLICT or bool(notes)
    confidence = confidence_sum / total_weight if total_weight > 0 else 0.0
    severity = severity_sum / total_weight if total_weight > 0 else 0.0
    fused: Dict[str, Any] = {
        "type": cluster.type,
        "regions": regions[:MAX_REGIONS],
        "severity": _round3(severity),
        "confidence": _round3(confidence * UNCERTAIN_CONFIDENCE_FACTOR if uncertain else confidence),
        "evidence_text": str(seed_text or f"Consensus signal from {', '.join(provider_list)}")[:MAX_EVIDENCE_CHARS],
        "quality_sensitivity": _normalize_quality_sensitivity(cluster.quality_sensitivity, quality_grade),
        "source_model": f"ensemble({'+'.join(source_models)})",
        "provenance": {
            "provider": "ensemble_aggregator",
            "source_ids": list(source_ids)[:MAX_SOURCE_IDS],
            "notes": notes[:MAX_NOTES],
            "providers": provider_list[:MAX_CONFLICT_PROVIDERS],
        },
    }
    if uncertain:
        fused["uncertain"] = True
    return fused


def compute_agreement_score(provider_outputs: Sequence[Mapping[str, Any]]) -> float:
    """Mean pairwise fraction of matched concerns across providers that produced any."""
    valid = [
        output
        for output in provider_outputs
        if isinstance(output, Mapping) and output.get("ok") and isinstance(output.get("concerns"), list) and output["concerns"]
    ]
    if len(valid) <= 1:
        return 1.0
    scores: List[float] = []
    for left, right in combinations(valid, 2):
        a, b = left["concerns"], right["concerns"]
        matches = 0
        for concern_a in a:
            box_a = primary_bbox_from_concern(concern_a)
            for concern_b in b:
                if concern_b.get("type") != concern_a.get("type"):
                    continue
                box_b = primary_bbox_from_concern(concern_b)
                if box_a is None or box_b is None or iou(box_a, box_b) >= AGREEMENT_MATCH_IOU:
                    matches += 1
                    break
        scores.append(matches / max(1, len(a), len(b)))
    return _round3(_clamp01(sum(scores) / max(1, len(scores))))


def make_provider_stat(output: Mapping[str, Any], concern_count: Optional[int] = None) -> Dict[str, Any]:
    try:
        latency = max(0.0, float(output.get("latency_ms") or 0))
    except (TypeError, ValueError):
        latency = 0.0
    count = concern_count if concern_count is not None else len(output.get("concerns") or [])
    stat: Dict[str, Any] = {
        "provider": str(output.get("provider") or "unknown"),
        "ok": bool(output.get("ok")),
        "latency_ms": _round3(latency),
        "concern_count": max(0, int(count)),
    }
    if output.get("schema_failed"):
        stat["schema_failed"] = True
    if output.get("failure_reason"):
        stat["failure_reason"] = str(output["failure_reason"])
    return stat


def _normalize_output_concerns(output: Mapping[str, Any], quality_grade: str) -> List[Dict[str, Any]]:
    provider = str(output.get("provider") or "unknown")
    normalized: List[Dict[str, Any]] = []
    for index, raw in enumerate(output.get("concerns") or []):
        concern = _normalize_provider_concern(
            raw,
            provider=provider,
            index=index,
            quality_grade=quality_grade,
            provider_quality_features=output.get("quality_features"),
        )
        if concern is not None:
            normalized.append(concern)
    return normalized


def _apply_type_conflicts(concerns: List[Dict[str, Any]], conflicts: List[Dict[str, Any]]) -> None:
    for (i, left), (j, right) in combinations(list(enumerate(concerns)), 2):
        if left["type"] == right["type"]:
            continue
        overlap = iou(primary_bbox_from_concern(left), primary_bbox_from_concern(right))
        if overlap < TYPE_CONFLICT_IOU:
            continue
        providers = list(
            dict.fromkeys(
                list((left.get("provenance") or {}).get("providers") or [])
                + list((right.get("provenance") or {}).get("providers") or [])
            )
        )
        conflicts.append(
            {
                "conflict_id": f"conf_type_{i + 1}_{j + 1}",
                "kind": "type_disagreement",
                "severity": _round3(min(1.0, overlap)),
                "message": f"Type disagreement in overlapping region: {left['type']} vs {right['type']}.",
                "providers": providers[:MAX_CONFLICT_PROVIDERS],
            }
        )
        for concern in (left, right):
            concern["uncertain"] = True
            concern["confidence"] = _round3(concern["confidence"] * TYPE_CONFLICT_CONFIDENCE_FACTOR)


def build_canonical(
    provider_outputs: Sequence[Mapping[str, Any]],
    *,
    quality_grade: Any,
    iou_threshold: float = 0.28,
    calibration_model: Optional[Mapping[str, Any]] = None,
    tone_bucket: str = "unknown",
    lighting_bucket: str = "unknown",
) -> Dict[str, Any]:
    """Fuse provider outputs into a validated canonical result.

    Returns ``{"ok", "canonical", "failure_reason"?}``. A canonical payload
    that fails validation is replaced by an empty, valid result. Outputs are
    fused in provider-name order, so caller ordering never changes the result.
    """
    grade = _normalize_quality_grade(quality_grade)
    normalized_outputs: List[Dict[str, Any]] = []
    stats: List[Dict[str, Any]] = []
    pooled: List[Dict[str, Any]] = []
    ordered = sorted(
        (output for output in provider_outputs if isinstance(output, Mapping)),
        key=lambda output: str(output.get("provider") or "unknown"),
    )
    for output in ordered:
        concerns = _normalize_output_concerns(output, grade)
        normalized_outputs.append({**output, "concerns": concerns})
        stats.append(make_provider_stat(output, len(concerns)))
        if output.get("ok"):
            pooled.extend(concerns)

    conflicts: List[Dict[str, Any]] = []
    fused = [
        fuse_cluster(
            cluster,
            quality_grade=grade,
            conflicts=conflicts,
            calibration_model=calibration_model,
            tone_bucket=tone_bucket,
            lighting_bucket=lighting_bucket,
        )
        for cluster in cluster_concerns(pooled, iou_threshold=iou_threshold)
    ]
    fused.sort(key=lambda concern: (-concern["severity"], -concern["confidence"]))
    fused = fused[:MAX_CANONICAL_CONCERNS]
    _apply_type_conflicts(fused, conflicts)

    canonical = {
        "schema_version": CANONICAL_SCHEMA_VERSION,
        "concerns": fused,
        "conflicts": conflicts[:MAX_CANONICAL_CONFLICTS],
        "provider_stats": stats,
        "agreement_score": compute_agreement_score(normalized_outputs),
    }
    try:
        validated = CanonicalResultSchema.model_validate(canonical)
    except ValidationError as exc:
        logger.warning("Canonical result failed validation: %s", exc.errors(include_url=False)[:3])
        fallback = {
            "schema_version": CANONICAL_SCHEMA_VERSION,
            "concerns": [],
            "conflicts": [],
            "provider_stats": stats,
            "agreement_score": 0.0,
        }
        return {"ok": False, "canonical": fallback, "failure_reason": "CANONICAL_SCHEMA_INVALID"}
    return {"ok": True, "canonical": validated.model_dump(mode="json", exclude_none=True)}


def build_evidence_regions_from_canonical(canonical: Optional[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Flatten canonical concerns into one entry per region."""
    out: List[Dict[str, Any]] = []
    for concern in (canonical or {}).get("concerns") or []:
        for region in concern.get("regions") or []:
            out.append(
                {
                    "concern_type": concern.get("type"),
                    "severity": concern.get("severity"),
                    "confidence": concern.get("confidence"),
                    "evidence_text": concern.get("evidence_text"),
                    "region": region,
                }
            )
    return out[:MAX_EVIDENCE_REGIONS]


def _gemini_draft(output: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "concerns": [
            {key: concern.get(key) for key in ("type", "severity", "confidence", "evidence_text", "regions")}
            for concern in output.get("concerns") or []
        ],
        "flags": list(output.get("flags") or []),
    }


def run_diagnosis_ensemble(
    *,
    image: Optional[bytes] = None,
    photo_quality: Optional[Mapping[str, Any]] = None,
    diagnosis: Optional[Mapping[str, Any]] = None,
    diagnosis_internal: Optional[Mapping[str, Any]] = None,
    inference_id: Optional[str] = None,
    skin_tone_bucket: str = "unknown",
    lighting_bucket: str = "unknown",
    gemini_adapter: Optional[ProviderAdapter] = None,
    gpt_adapter: Optional[ProviderAdapter] = None,
    config: Optional[FusionConfig] = None,
    calibration_runtime: Optional[CalibrationRuntime] = None,
    pseudo_label_settings: Optional[PseudoLabelSettings] = None,
    pseudo_label_store: Optional[PseudoLabelStore] = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """Run the cv provider plus the enabled vision providers and fuse their outputs."""
    config = config or _load_fusion_config()
    if not config.enabled:
        return {
            "ok": False,
            "enabled": False,
            "failure_reason": "DISABLED_BY_FLAG",
            "provider_stats": [],
            "agreement_score": None,
            "canonical": None,
        }

    runtime = load_calibration_runtime(runtime=calibration_runtime)
    if runtime.get("error"):
        logger.warning("Calibration runtime degraded to %s: %s", runtime.get("source"), runtime.get("error"))
    calibration_model = runtime.get("model") if runtime.get("enabled") else None

    quality = photo_quality if isinstance(photo_quality, Mapping) else {}
    diagnosis_quality = (diagnosis or {}).get("quality") if isinstance(diagnosis, Mapping) else None
    grade = _normalize_quality_grade(
        quality.get("grade") or (diagnosis_quality.get("grade") if isinstance(diagnosis_quality, Mapping) else None)
    )
    outputs: List[Dict[str, Any]] = [
        run_cv_provider(
            diagnosis=diagnosis,
            diagnosis_internal=diagnosis_internal,
            photo_quality=quality or None,
            model_version=config.cv_model_version,
        )
    ]
    vision_kwargs = {
        "image": image,
        "photo_quality": quality,
        "retries": config.retries,
        "timeout_ms": config.timeout_ms,
        "sleep_fn": sleep_fn,
    }
    gemini_output: Optional[Dict[str, Any]] = None
    if config.gemini_enabled:
        gemini_output = run_vision_provider(
            gemini_adapter,
            provider=GEMINI_PROVIDER,
            model_name=config.gemini_model,
            context={"quality_grade": grade},
            **vision_kwargs,
        )
        outputs.append(gemini_output)
    if config.gpt_enabled:
        context: Dict[str, Any] = {"quality_grade": grade}
        if gemini_output is not None and gemini_output.get("ok"):
            context["gemini_draft"] = _gemini_draft(gemini_output)
        outputs.append(
            run_vision_provider(gpt_adapter, provider=GPT_PROVIDER, model_name=config.gpt_model, context=context, **vision_kwargs)
        )

    built = build_canonical(
        outputs,
        quality_grade=grade,
        iou_threshold=config.iou_threshold,
        calibration_model=calibration_model,
        tone_bucket=skin_tone_bucket,
        lighting_bucket=lighting_bucket,
    )
    canonical = built["canonical"]

    pseudo_label_summary: Optional[Dict[str, Any]] = None
    try:
        pseudo_label_summary = persist_pseudo_label_artifacts(
            outputs,
            inference_id=inference_id,
            quality_grade=grade,
            skin_tone_bucket=skin_tone_bucket,
            lighting_bucket=lighting_bucket,
            settings=pseudo_label_settings,
            store=pseudo_label_store,
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning("Pseudo-label persistence failed: %s", exc)
        pseudo_label_summary = {"ok": False, "enabled": True, "reason": "PERSIST_FAILED"}

    result: Dict[str, Any] = {
        "ok": built["ok"],
        "enabled": True,
        "canonical": canonical,
        "provider_stats": canonical.get("provider_stats") or [],
        "agreement_score": canonical.get("agreement_score"),
        "pseudo_label_summary": pseudo_label_summary,
        "calibration": {
            "enabled": bool(runtime.get("enabled")),
            "source": runtime.get("source"),
            "error": runtime.get("error"),
            "model_version": (calibration_model or {}).get("model_version"),
        },
    }
    if built.get("failure_reason"):
        result["failure_reason"] = built["failure_reason"]
    return result
