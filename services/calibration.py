"""Confidence calibration: training, isotonic calibrators, provider weights and runtime loading."""

from __future__ import annotations

import errno
import json
import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from services.calibration_metrics import (
    _compute_brier_impl,
    _compute_ece_impl,
    _compute_grouped_ece_impl,
    _greedy_match_by_type_impl,
    _precision_recall_f1,
)
from services.concerns import _normalize_concern_type, _normalize_quality_features
from services.geometry import primary_bbox_from_concern
from utils.env import _env_bool, _env_str
from utils.io import _file_mtime_ns, _write_json_atomic
from utils.parsing import _clamp, _clamp01, _clamp_severity, _coerce_float, _normalize_token, _optional_float, _round3

logger = logging.getLogger(__name__)

CALIBRATION_SCHEMA_VERSION = "aurora.diag.calibration_model.v1"
DEFAULT_MODEL_VERSION_PREFIX = "diag_calibration_v1"
DEFAULT_MODEL_RELATIVE_PATH = Path("model_registry") / "diag_calibration_v1.json"
DEFAULT_MATCH_IOU = 0.3
DEFAULT_MIN_GROUP_SAMPLES = 24
MIN_GROUP_SAMPLES_FLOOR = 8
ISOTONIC_KIND = "isotonic_step_v1"
APPROVED_GOLD_STATUSES = {"approved", "gold", "accepted"}
FEATURE_FIELDS = [
    "raw_confidence",
    "exposure_score",
    "reflection_score",
    "filter_score",
    "tone_bucket",
    "lighting_bucket",
    "makeup_detected",
    "filter_detected",
]
FEATURE_DEFAULTS = {
    "tone_bucket": "unknown",
    "lighting_bucket": "unknown",
    "region_bucket": "unknown",
    "quality_grade": "unknown",
}
SEVERITY_SMOOTHING_DEFAULTS = {"min_scale": 0.72, "max_scale": 1, "confidence_gamma": 1}

_LATEST_MODEL_RE = re.compile(r"^calibrator_v\d{8}\.json$", re.IGNORECASE)


def _bucket(value: Any, fallback: str = "unknown") -> str:
    return _normalize_token(value, fallback)


def _flag_tokens(context: Mapping[str, Any]) -> Tuple[str, str]:
    return ("mk1" if context.get("makeup_detected") else "mk0", "ft1" if context.get("filter_detected") else "ft0")


def _key_provider_quality_tone_lighting_flags(ctx: Mapping[str, Any]) -> str:
    makeup, filt = _flag_tokens(ctx)
    return f"{ctx['provider']}|{ctx['quality_grade']}|{ctx['tone_bucket']}|{ctx['lighting_bucket']}|{makeup}|{filt}"


def _key_provider_quality_tone_lighting(ctx: Mapping[str, Any]) -> str:
    return f"{ctx['provider']}|{ctx['quality_grade']}|{ctx['tone_bucket']}|{ctx['lighting_bucket']}"


def _key_provider_quality_tone(ctx: Mapping[str, Any]) -> str:
    return f"{ctx['provider']}|{ctx['quality_grade']}|{ctx['tone_bucket']}"


def _key_provider_quality(ctx: Mapping[str, Any]) -> str:
    return f"{ctx['provider']}|{ctx['quality_grade']}"


def _key_provider(ctx: Mapping[str, Any]) -> str:
    return str(ctx["provider"])


# Most specific first; group levels live under calibration.by_group.
GROUP_LEVELS: List[Tuple[str, Callable[[Mapping[str, Any]], str]]] = [
    ("provider_quality_tone_lighting_flags", _key_provider_quality_tone_lighting_flags),
    ("provider_quality_tone_lighting", _key_provider_quality_tone_lighting),
    ("provider_quality_tone", _key_provider_quality_tone),
    ("provider_quality", _key_provider_quality),
]
HIERARCHY = [name for name, _ in GROUP_LEVELS] + ["provider", "global"]


def _bucket_context(
    *,
    provider: Any,
    quality_grade: Any,
    tone_bucket: Any,
    lighting_bucket: Any,
    makeup_detected: Any = False,
    filter_detected: Any = False,
) -> Dict[str, Any]:
    return {
        "provider": _bucket(provider, "unknown_provider"),
        "quality_grade": _bucket(quality_grade),
        "tone_bucket": _bucket(tone_bucket),
        "lighting_bucket": _bucket(lighting_bucket),
        "makeup_detected": bool(makeup_detected),
        "filter_detected": bool(filter_detected),
    }


def _row_context(row: Mapping[str, Any]) -> Dict[str, Any]:
    return _bucket_context(
        provider=row.get("provider"),
        quality_grade=row.get("quality_grade"),
        tone_bucket=row.get("tone_bucket"),
        lighting_bucket=row.get("lighting_bucket"),
        makeup_detected=row.get("makeup_detected"),
        filter_detected=row.get("filter_detected"),
    )


# --- Training data -----------------------------------------------------------------


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _normalize_concern_for_training(raw: Any, index: int = 0) -> Dict[str, Any]:
    concern = raw if isinstance(raw, Mapping) else {}
    return {
        "idx": index,
        "type": _normalize_concern_type(concern.get("type")),
        "severity": _round3(_clamp_severity(concern.get("severity"))),
        "confidence": _round3(_clamp01(concern.get("confidence"))),
        "bbox": primary_bbox_from_concern(concern),
    }


def _concerns_from_provider_record(record: Mapping[str, Any]) -> List[Dict[str, Any]]:
    output = _mapping(record.get("output_json"))
    raw = output.get("concerns") if isinstance(output.get("concerns"), list) else record.get("concerns")
    if not isinstance(raw, list):
        return []
    return [_normalize_concern_for_training(concern, idx) for idx, concern in enumerate(raw)]


def _concerns_from_gold_record(record: Mapping[str, Any]) -> List[Dict[str, Any]]:
    raw = record.get("concerns")
    if not isinstance(raw, list):
        raw = _mapping(record.get("canonical")).get("concerns")
    if not isinstance(raw, list):
        raw = _mapping(record.get("output_json")).get("concerns")
    if not isinstance(raw, list):
        return []
    return [_normalize_concern_for_training(concern, idx) for idx, concern in enumerate(raw)]


def _map_gold_by_inference(gold_labels: Sequence[Any]) -> Dict[str, Dict[str, Any]]:
    """Approved gold labels keyed by inference id; later rows win."""
    out: Dict[str, Dict[str, Any]] = {}
    for row in gold_labels or []:
        if not isinstance(row, dict):
            continue
        status = _normalize_token(row.get("qa_status") or row.get("status") or row.get("label_status") or "approved")
        if status and status not in APPROVED_GOLD_STATUSES:
            continue
        inference_id = str(row.get("inference_id") or row.get("inferenceId") or row.get("trace_id") or "").strip()
        if inference_id:
            out[inference_id] = row
    return out


def _quality_features_from_record(record: Mapping[str, Any], gold: Mapping[str, Any]) -> Dict[str, Any]:
    source = (
        _mapping(record.get("quality_features"))
        or _mapping(_mapping(record.get("output_json")).get("quality_features"))
        or _mapping(_mapping(record.get("metadata")).get("quality_features"))
        or _mapping(gold.get("quality_features"))
        or _mapping(_mapping(gold.get("metadata")).get("quality_features"))
    )
    merged = dict(source)
    if record.get("filter_detected") is not None:
        merged["filter_detected"] = record["filter_detected"]
    if record.get("makeup_detected") is not None:
        merged["makeup_detected"] = record["makeup_detected"]
    return _normalize_quality_features(merged)


def _paired_records(model_outputs: Sequence[Any], gold_by_inference: Mapping[str, Dict[str, Any]]):
    for record in model_outputs or []:
        if not isinstance(record, dict):
            continue
        inference_id = str(record.get("inference_id") or record.get("inferenceId") or "").strip()
        gold = gold_by_inference.get(inference_id) if inference_id else None
        if gold is None:
            continue
        yield inference_id, record, gold


def build_training_rows(
    model_outputs: Sequence[Any],
    gold_labels: Sequence[Any],
    *,
    iou_threshold: float = DEFAULT_MATCH_IOU,
) -> List[Dict[str, Any]]:
    """One row per provider concern, labelled 1 when it matched a gold concern."""
    rows: List[Dict[str, Any]] = []
    for inference_id, record, gold in _paired_records(model_outputs, _map_gold_by_inference(gold_labels)):
        gold_meta = _mapping(gold.get("metadata"))
        region_fallback = _bucket(gold_meta.get("region") or gold_meta.get("country") or gold.get("region_bucket"))
        features = _quality_features_from_record(record, gold)
        predictions = _concerns_from_provider_record(record)
        matching = _greedy_match_by_type_impl(predictions, _concerns_from_gold_record(gold), iou_threshold)
        for p_idx, pred in enumerate(predictions):
            rows.append(
                {
                    "inference_id": inference_id,
                    "provider": _bucket(record.get("provider"), "unknown_provider"),
                    "type": pred["type"],
                    "quality_grade": _bucket(record.get("quality_grade"), _bucket(gold.get("quality_grade"))),
                    "tone_bucket": _bucket(record.get("skin_tone_bucket"), _bucket(gold.get("skin_tone_bucket"))),
                    "lighting_bucket": _bucket(record.get("lighting_bucket"), _bucket(gold.get("lighting_bucket"))),
                    "region_bucket": _bucket(record.get("region_bucket"), region_fallback),
                    "raw_confidence": pred["confidence"],
                    "raw_severity": pred["severity"],
                    "exposure_score": features["exposure_score"],
                    "reflection_score": features["reflection_score"],
                    "filter_score": features["filter_score"],
                    "makeup_detected": features["makeup_detected"],
                    "filter_detected": features["filter_detected"],
                    "label": 1 if p_idx in matching.matched_pred else 0,
                }
            )
    return rows


def build_provider_performance_rows(
    model_outputs: Sequence[Any],
    gold_labels: Sequence[Any],
    *,
    iou_threshold: float = DEFAULT_MATCH_IOU,
) -> List[Dict[str, Any]]:
    """Per (record, type) TP/FP/FN counts over the union of predicted and gold types."""
    rows: List[Dict[str, Any]] = []
    for _inference_id, record, gold in _paired_records(model_outputs, _map_gold_by_inference(gold_labels)):
        predictions = _concerns_from_provider_record(record)
        gold_concerns = _concerns_from_gold_record(gold)
        matching = _greedy_match_by_type_impl(predictions, gold_concerns, iou_threshold)
        types = dict.fromkeys([pred["type"] for pred in predictions] + [item["type"] for item in gold_concerns])
        for concern_type in types:
            pred_idx = [i for i, pred in enumerate(predictions) if pred["type"] == concern_type]
            gold_idx = [i for i, item in enumerate(gold_concerns) if item["type"] == concern_type]
            tp = sum(1 for i in pred_idx if i in matching.matched_pred)
            rows.append(
                {
                    "provider": _bucket(record.get("provider"), "unknown_provider"),
                    "type": concern_type,
                    "quality_grade": _bucket(record.get("quality_grade"), _bucket(gold.get("quality_grade"))),
                    "tone_bucket": _bucket(record.get("skin_tone_bucket"), _bucket(gold.get("skin_tone_bucket"))),
                    "tp": tp,
                    "fp": max(0, len(pred_idx) - tp),
                    "fn": sum(1 for i in gold_idx if i not in matching.matched_gold),
                }
            )
    return rows


# --- Isotonic calibrators ------------------------------------------------------------


def _identity_calibrator() -> Dict[str, Any]:
    return {"kind": ISOTONIC_KIND, "x": [0, 1], "y": [0, 1], "samples": 0}


def fit_isotonic_calibrator(samples: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    """Pool-adjacent-violators fit of ``label`` against ``raw_confidence``.

    Knots are rounded to 3 decimals; blocks whose rounded knots collide are
    pooled so that every knot maps to exactly one value. The step function is
    padded to cover [0, 1].
    """
    points = sorted(
        (
            (
                _clamp01(sample.get("raw_confidence")),
                _clamp01(sample.get("label")),
                max(0.0001, _coerce_float(sample.get("weight") or 1, 1.0)),
            )
            for sample in samples or []
        ),
        key=lambda point: point[0],
    )
    if not points:
        return _identity_calibrator()

    # Each block: [x_max, sum_y, sum_w]
    blocks: List[List[float]] = []
    for x, y, w in points:
        blocks.append([x, y * w, w])
        while len(blocks) > 1 and blocks[-2][1] / blocks[-2][2] > blocks[-1][1] / blocks[-1][2]:
            curr = blocks.pop()
            blocks[-1][0] = curr[0]
            blocks[-1][1] += curr[1]
            blocks[-1][2] += curr[2]

    knots: List[List[float]] = []
    for x_max, sum_y, sum_w in blocks:
        knot_x = _round3(x_max)
        if knots and knots[-1][0] == knot_x:
            knots[-1][1] += sum_y
            knots[-1][2] += sum_w
        else:
            knots.append([knot_x, sum_y, sum_w])

    xs = [knot[0] for knot in knots]
    ys = [_round3(_clamp01(knot[1] / max(knot[2], 0.0001))) for knot in knots]
    if xs[0] > 0:
        xs.insert(0, 0.0)
        ys.insert(0, ys[0])
    if xs[-1] < 1:
        xs.append(1.0)
        ys.append(ys[-1])
    return {"kind": ISOTONIC_KIND, "x": xs, "y": ys, "samples": len(points)}


def predict_isotonic(calibrator: Optional[Mapping[str, Any]], raw_confidence: Any) -> float:
    """Step lookup: the first knot at or above ``raw_confidence``.

    An untrained calibrator (``samples == 0``) is the identity.
    """
    safe_raw = _clamp01(raw_confidence)
    if not isinstance(calibrator, Mapping) or calibrator.get("samples") == 0:
        return safe_raw
    xs, ys = calibrator.get("x"), calibrator.get("y")
    if not isinstance(xs, list) or not isinstance(ys, list) or not xs or len(xs) != len(ys):
        return safe_raw
    for knot_x, knot_y in zip(xs, ys):
        if safe_raw <= _coerce_float(knot_x, 0.0):
            return _clamp01(knot_y)
    return _clamp01(ys[-1])


def compute_ece(samples: Sequence[Mapping[str, Any]], selector: Callable[[Mapping[str, Any]], Any], bins: int = 10) -> float:
    return _compute_ece_impl(samples, selector, bins)


def compute_brier(samples: Sequence[Mapping[str, Any]], selector: Callable[[Mapping[str, Any]], Any]) -> float:
    return _compute_brier_impl(samples, selector)


def compute_grouped_ece(
    rows: Sequence[Mapping[str, Any]],
    selector: Callable[[Mapping[str, Any]], Any],
    group_fields: Sequence[str] = (),
) -> Dict[str, Dict[str, Any]]:
    return _compute_grouped_ece_impl(rows, selector, group_fields)


# --- Provider weights ---------------------------------------------------------------


def _f1_to_weight(tp: float, fp: float, fn: float) -> float:
    f1 = _precision_recall_f1(tp, fp, fn)["f1"]
    return _round3(_clamp(0.25 + 1.75 * f1, 0.25, 2.25))


def learn_provider_weights(perf_rows: Sequence[Mapping[str, Any]], *, min_samples: int = DEFAULT_MIN_GROUP_SAMPLES) -> Dict[str, Any]:
    by_provider_counts: Dict[str, Dict[str, float]] = {}
    by_bucket_counts: Dict[str, Dict[str, float]] = {}
    for row in perf_rows or []:
        provider = _bucket(row.get("provider"), "unknown_provider")
        bucket_key = "|".join(
            [
                provider,
                _bucket(row.get("type"), "other"),
                _bucket(row.get("quality_grade")),
                _bucket(row.get("tone_bucket")),
            ]
        )
        for table, key in ((by_provider_counts, provider), (by_bucket_counts, bucket_key)):
            counts = table.setdefault(key, {"tp": 0, "fp": 0, "fn": 0})
            for name in ("tp", "fp", "fn"):
                counts[name] += max(0, _coerce_float(row.get(name), 0.0))

    by_provider = {key: _f1_to_weight(c["tp"], c["fp"], c["fn"]) for key, c in by_provider_counts.items()}
    by_bucket: Dict[str, Dict[str, Any]] = {}
    for key, counts in by_bucket_counts.items():
        samples = counts["tp"] + counts["fp"] + counts["fn"]
        if samples < min_samples:
            continue
        by_bucket[key] = {
            "weight": _f1_to_weight(counts["tp"], counts["fp"], counts["fn"]),
            "samples": int(samples),
            "tp": int(counts["tp"]),
            "fp": int(counts["fp"]),
            "fn": int(counts["fn"]),
        }
    return {"default": 1, "by_provider": by_provider, "by_bucket": by_bucket}


# --- Model ------------------------------------------------------------------------------


def _group_rows(rows: Sequence[Dict[str, Any]], key_fn: Callable[[Mapping[str, Any]], str]) -> Dict[str, List[Dict[str, Any]]]:
    groups: Dict[str, List[Dict[str, Any]]] = {}
    for row in rows:
        groups.setdefault(key_fn(_row_context(row)), []).append(row)
    return groups


def _row_calibration_kwargs(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "provider": row.get("provider"),
        "quality_grade": row.get("quality_grade"),
        "tone_bucket": row.get("tone_bucket"),
        "lighting_bucket": row.get("lighting_bucket"),
        "quality_features": {
            "exposure_score": row.get("exposure_score"),
            "reflection_score": row.get("reflection_score"),
            "filter_score": row.get("filter_score"),
            "makeup_detected": row.get("makeup_detected"),
            "filter_detected": row.get("filter_detected"),
        },
        "raw_confidence": row.get("raw_confidence"),
    }


def train_calibration_model(
    model_outputs: Sequence[Any],
    gold_labels: Sequence[Any],
    *,
    iou_threshold: Optional[float] = None,
    min_group_samples: Optional[int] = None,
) -> Dict[str, Any]:
    """Fit the calibration model and return it with the rows it was trained on."""
    iou_thr = _clamp(_coerce_float(iou_threshold or DEFAULT_MATCH_IOU, DEFAULT_MATCH_IOU), 0.05, 0.95)
    min_samples = max(MIN_GROUP_SAMPLES_FLOOR, int(_coerce_float(min_group_samples or DEFAULT_MIN_GROUP_SAMPLES, DEFAULT_MIN_GROUP_SAMPLES)))

    rows = build_training_rows(model_outputs, gold_labels, iou_threshold=iou_thr)
    perf_rows = build_provider_performance_rows(model_outputs, gold_labels, iou_threshold=iou_thr)

    by_provider = {
        key: fit_isotonic_calibrator(samples)
        for key, samples in _group_rows(rows, _key_provider).items()
        if len(samples) >= min_samples
    }
    by_group: Dict[str, Dict[str, Any]] = {}
    for _level, key_fn in GROUP_LEVELS:
        for key, samples in _group_rows(rows, key_fn).items():
            if len(samples) >= min_samples:
                by_group[key] = fit_isotonic_calibrator(samples)

    now = datetime.now(timezone.utc)
    model: Dict[str, Any] = {
        "schema_version": CALIBRATION_SCHEMA_VERSION,
        "model_version": f"{DEFAULT_MODEL_VERSION_PREFIX}_{now.strftime('%Y%m%d%H%M%S')}",
        "created_at": now.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "training": {
            "samples_total": len(rows),
            "iou_threshold": _round3(iou_thr),
            "min_group_samples": min_samples,
            "baseline_metrics": {
                "ece": compute_ece(rows, lambda row: row["raw_confidence"]),
                "brier": compute_brier(rows, lambda row: row["raw_confidence"]),
            },
            "feature_fields": list(FEATURE_FIELDS),
        },
        "calibration": {
            "global": fit_isotonic_calibrator(rows),
            "by_provider": by_provider,
            "by_group": by_group,
            "hierarchy": list(HIERARCHY),
        },
        "provider_weights": learn_provider_weights(perf_rows, min_samples=min_samples),
        "severity_smoothing": dict(SEVERITY_SMOOTHING_DEFAULTS),
        "feature_defaults": dict(FEATURE_DEFAULTS),
    }

    calibrated_rows = [
        {**row, "calibrated_confidence": calibrate_confidence(model, **_row_calibration_kwargs(row))} for row in rows
    ]
    model["training"]["calibrated_metrics"] = {
        "ece": compute_ece(calibrated_rows, lambda row: row["calibrated_confidence"]),
        "brier": compute_brier(calibrated_rows, lambda row: row["calibrated_confidence"]),
    }
    logger.info(
        "Trained calibration model %s on %s rows (ece %.3f -> %.3f)",
        model["model_version"],
        len(rows),
        model["training"]["baseline_metrics"]["ece"],
        model["training"]["calibrated_metrics"]["ece"],
    )
    return {"model": model, "rows": rows, "calibrated_rows": calibrated_rows, "perf_rows": perf_rows}


def _is_valid_model(model: Any) -> bool:
    return isinstance(model, Mapping) and model.get("schema_version") == CALIBRATION_SCHEMA_VERSION


def resolve_calibrator(model: Mapping[str, Any], context: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    calibration = _mapping(model.get("calibration")) if isinstance(model, Mapping) else {}
    by_group = _mapping(calibration.get("by_group"))
    by_provider = _mapping(calibration.get("by_provider"))
    for _level, key_fn in GROUP_LEVELS:
        found = by_group.get(key_fn(context))
        if found:
            return found
    if by_provider.get(context["provider"]):
        return by_provider[context["provider"]]
    return calibration.get("global") or None


def apply_quality_adjustment(calibrated: float, quality_features: Any) -> float:
    q = _normalize_quality_features(quality_features)
    factor = 1.0
    factor += (q["exposure_score"] - 0.5) * 0.1
    factor -= q["reflection_score"] * 0.12
    factor -= q["filter_score"] * 0.16
    if q["makeup_detected"]:
        factor -= 0.05
    if q["filter_detected"]:
        factor -= 0.06
    return _clamp01(calibrated * _clamp(factor, 0.55, 1.12))


def calibrate_confidence(
    model: Optional[Mapping[str, Any]],
    *,
    provider: Any = None,
    quality_grade: Any = None,
    tone_bucket: Any = None,
    lighting_bucket: Any = None,
    quality_features: Any = None,
    raw_confidence: Any = None,
) -> float:
    safe_raw = _clamp01(raw_confidence)
    if not _is_valid_model(model):
        return _round3(safe_raw)
    features = quality_features if isinstance(quality_features, Mapping) else {}
    context = _bucket_context(
        provider=provider,
        quality_grade=quality_grade,
        tone_bucket=tone_bucket,
        lighting_bucket=lighting_bucket,
        makeup_detected=features.get("makeup_detected"),
        filter_detected=features.get("filter_detected"),
    )
    isotonic = predict_isotonic(resolve_calibrator(model, context), safe_raw)
    return _round3(apply_quality_adjustment(isotonic, features))


def resolve_provider_weight(
    model: Optional[Mapping[str, Any]],
    *,
    provider: Any = None,
    concern_type: Any = None,
    quality_grade: Any = None,
    tone_bucket: Any = None,
) -> float:
    """Provider weight for a bucket, falling back to the provider then the default."""
    weights = _mapping(model.get("provider_weights")) if isinstance(model, Mapping) else {}
    safe_provider = _bucket(provider, "unknown_provider")
    bucket_key = "|".join(
        [safe_provider, _normalize_concern_type(concern_type), _bucket(quality_grade), _bucket(tone_bucket)]
    )
    bucket = _mapping(weights.get("by_bucket")).get(bucket_key)
    bucket_weight = _optional_float(bucket.get("weight")) if isinstance(bucket, Mapping) else None
    if bucket_weight is not None:
        return _clamp(bucket_weight, 0.2, 2.5)
    provider_weight = _optional_float(_mapping(weights.get("by_provider")).get(safe_provider))
    if provider_weight is not None:
        return _clamp(provider_weight, 0.2, 2.5)
    return _clamp(_coerce_float(weights.get("default") or 1, 1.0), 0.2, 2.5)


def smooth_severity(model: Optional[Mapping[str, Any]], *, severity: Any, calibrated_confidence: Any) -> float:
    """Pull severity down for low-confidence concerns; never scales it up past max_scale."""
    safe_severity = _clamp_severity(severity)
    safe_confidence = _clamp01(calibrated_confidence)
    if not _is_valid_model(model):
        return _round3(safe_severity)
    smoothing = _mapping(model.get("severity_smoothing"))
    min_scale = _clamp(_coerce_float(smoothing.get("min_scale") or 0.72, 0.72), 0.5, 1.0)
    max_scale = _clamp(_coerce_float(smoothing.get("max_scale") or 1, 1.0), min_scale, 1.2)
    gamma = _clamp(_coerce_float(smoothing.get("confidence_gamma") or 1, 1.0), 0.5, 2.0)
    scale = min_scale + (max_scale - min_scale) * safe_confidence**gamma
    return _round3(_clamp_severity(safe_severity * scale))


def default_calibration_model() -> Dict[str, Any]:
    """Identity model used whenever a trained model is unavailable."""
    return {
        "schema_version": CALIBRATION_SCHEMA_VERSION,
        "model_version": f"{DEFAULT_MODEL_VERSION_PREFIX}_identity",
        "created_at": "1970-01-01T00:00:00.000Z",
        "training": {
            "samples_total": 0,
            "iou_threshold": DEFAULT_MATCH_IOU,
            "min_group_samples": DEFAULT_MIN_GROUP_SAMPLES,
            "baseline_metrics": {"ece": 0, "brier": 0},
            "calibrated_metrics": {"ece": 0, "brier": 0},
            "feature_fields": list(FEATURE_FIELDS),
        },
        "calibration": {
            "global": _identity_calibrator(),
            "by_provider": {},
            "by_group": {},
            "hierarchy": list(HIERARCHY),
        },
        "provider_weights": {"default": 1, "by_provider": {}, "by_bucket": {}},
        "severity_smoothing": dict(SEVERITY_SMOOTHING_DEFAULTS),
        "feature_defaults": dict(FEATURE_DEFAULTS),
    }


def write_calibration_model(model: Mapping[str, Any], path: Path) -> Path:
    _write_json_atomic(path, dict(model))
    return path


# --- Runtime loading --------------------------------------------------------------


def default_model_path(base_dir: Optional[Path] = None) -> Path:
    return (base_dir or Path.cwd()) / DEFAULT_MODEL_RELATIVE_PATH


def find_latest_calibrator_model(base_dir: Optional[Path] = None) -> Optional[Path]:
    registry = (base_dir or Path.cwd()) / "model_registry"
    try:
        names = sorted(
            (entry.name for entry in registry.iterdir() if entry.is_file() and _LATEST_MODEL_RE.match(entry.name)),
            reverse=True,
        )
    except OSError:
        return None
    return registry / names[0] if names else None


def load_calibration_model_from_path(path: Path) -> Tuple[Dict[str, Any], str, Optional[str]]:
    """Return ``(model, source, error)``; any failure yields the identity model."""
    try:
        parsed = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        code = errno.errorcode.get(exc.errno or 0, "LOAD_FAILED")
        logger.warning("Calibration model unavailable at %s: %s", path, code)
        return default_calibration_model(), "default_fallback", code
    except ValueError as exc:
        logger.warning("Calibration model at %s is not valid JSON: %s", path, exc)
        return default_calibration_model(), "default_fallback", "LOAD_FAILED"
    if not _is_valid_model(parsed):
        logger.warning("Calibration model at %s has an unexpected schema version", path)
        return default_calibration_model(), "default_fallback", "SCHEMA_MISMATCH"
    return parsed, str(path), None


@dataclass(frozen=True)
class CalibrationRuntimeConfig:
    enabled: bool
    model_path: str
    use_latest_version: bool


def _load_calibration_runtime_config() -> CalibrationRuntimeConfig:
    return CalibrationRuntimeConfig(
        enabled=_env_bool("DIAG_CALIBRATION_ENABLED", False),
        model_path=_env_str("DIAG_CALIBRATION_MODEL_PATH", ""),
        use_latest_version=_env_bool("DIAG_CALIBRATION_USE_LATEST_VERSION", True),
    )


class CalibrationRuntime:
    """Read-only model cache keyed by (path, mtime)."""

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self._base_dir = base_dir
        self._lock = threading.Lock()
        self._cache: Optional[Dict[str, Any]] = None

    def reset(self) -> None:
        with self._lock:
            self._cache = None

    def resolve_path(self, config: CalibrationRuntimeConfig, model_path: Optional[str] = None) -> Path:
        explicit = str(model_path or config.model_path or "").strip()
        if explicit:
            return Path(explicit)
        latest = find_latest_calibrator_model(self._base_dir) if config.use_latest_version else None
        return latest or default_model_path(self._base_dir)

    def load(
        self,
        *,
        enabled: Optional[bool] = None,
        model_path: Optional[str] = None,
        force_reload: bool = False,
    ) -> Dict[str, Any]:
        config = _load_calibration_runtime_config()
        is_enabled = config.enabled if enabled is None else bool(enabled)
        if not is_enabled:
            return {"enabled": False, "model": None, "source": None, "error": None}
        path = self.resolve_path(config, model_path)
        mtime = _file_mtime_ns(path)
        with self._lock:
            cached = self._cache
            if not force_reload and cached and cached["path"] == str(path) and cached["mtime"] == mtime:
                return {"enabled": True, "model": cached["model"], "source": cached["source"], "error": cached["error"]}
            model, source, error = load_calibration_model_from_path(path)
            self._cache = {"path": str(path), "mtime": mtime, "model": model, "source": source, "error": error}
        return {"enabled": True, "model": model, "source": source, "error": error}


_DEFAULT_RUNTIME = CalibrationRuntime()


def load_calibration_runtime(
    *,
    enabled: Optional[bool] = None,
    model_path: Optional[str] = None,
    force_reload: bool = False,
    runtime: Optional[CalibrationRuntime] = None,
) -> Dict[str, Any]:
    return (runtime or _DEFAULT_RUNTIME).load(enabled=enabled, model_path=model_path, force_reload=force_reload)


def reset_calibration_runtime() -> None:
    _DEFAULT_RUNTIME.reset()
