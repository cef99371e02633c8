"""Daily batch job: re-derive pseudo-labels and hard cases from the artifact store."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from services.pseudo_labels import (
    PseudoLabelStore,
    _iso_now,
    _load_pseudo_label_settings,
    compute_agreement_for_pair,
    generate_pseudo_labels_for_pair,
)
from utils.hashing import _hash_token
from utils.io import _write_json_atomic
from utils.parsing import _clamp01, _clamp_severity, _coerce_float, _optional_float, _parse_bool, _round3

logger = logging.getLogger(__name__)

DAILY_PSEUDO_SCHEMA_VERSION = "aurora.diag.pseudo_label_daily.v1"
DAILY_HARD_CASE_SCHEMA_VERSION = "aurora.diag.hard_case_daily.v1"
JOB_SUMMARY_SCHEMA_VERSION = "aurora.diag.pseudo_label_job_summary.v1"
DEFAULT_OUT_DIR = Path("reports") / "pseudo_label_job"

PREFERRED_PAIRS = (
    ("gemini_provider", "gpt_provider"),
    ("gemini_provider", "cv_provider"),
    ("gpt_provider", "cv_provider"),
)

FIX_SUMMARIES = {
    "LOW_AGREEMENT": "Recheck region alignment and issue type before labeling.",
    "QUALITY_NOT_ELIGIBLE": "Re-capture photo under daylight and avoid filters before labeling.",
    "NO_MATCHED_REGIONS": "No shared region match; verify issue region with manual QA.",
    "INSUFFICIENT_PROVIDER_OUTPUTS": "Need at least two provider outputs for agreement-based labeling.",
}

_ASSET_KEYS = ("asset_id", "photo_id", "upload_id", "source_asset_id")


@dataclass(frozen=True)
class JobOptions:
    store_dir: Path
    out_dir: Path
    date_key: str
    min_agreement: float
    region_iou_threshold: float
    allow_roi: bool


def normalize_date_key(value: Any) -> str:
    """``YYYYMMDD`` from ``YYYYMMDD`` / ``YYYY-MM-DD``; today (UTC) when empty."""
    raw = str(value or "").strip()
    if not raw:
        return datetime.now(timezone.utc).strftime("%Y%m%d")
    compact = raw.replace("-", "") if len(raw) == 10 and raw[4] == "-" and raw[7] == "-" else raw
    if len(compact) == 8 and compact.isdigit():
        return compact
    raise ValueError(f"invalid date value: {value}")


def _date_prefix(date_key: str) -> str:
    return f"{date_key[:4]}-{date_key[4:6]}-{date_key[6:]}"


def _token(value: Any, fallback: str) -> str:
    return str(value or "").strip() or fallback


def resolve_job_options(
    *,
    store_dir: Optional[str] = None,
    out_dir: Optional[str] = None,
    date: Any = None,
    min_agreement: Any = None,
    region_iou_threshold: Any = None,
    allow_roi: Any = None,
) -> JobOptions:
    settings = _load_pseudo_label_settings()
    date_key = normalize_date_key(date)
    return JobOptions(
        store_dir=Path(store_dir).resolve() if store_dir else settings.base_dir.resolve(),
        out_dir=(Path(out_dir) if out_dir else DEFAULT_OUT_DIR).resolve() / date_key,
        date_key=date_key,
        min_agreement=_coerce_float(min_agreement, settings.agreement_threshold, minimum=0.05, maximum=1.0),
        region_iou_threshold=_coerce_float(
            region_iou_threshold, settings.region_iou_threshold, minimum=0.05, maximum=0.95
        ),
        allow_roi=settings.allow_roi if allow_roi in (None, "") else _parse_bool(allow_roi),
    )


def restore_concern(concern: Any) -> Dict[str, Any]:
    """Rebuild a provider-shaped concern from its sanitized stored form."""
    source = concern if isinstance(concern, Mapping) else {}
    out: Dict[str, Any] = {
        "type": _token(source.get("type"), "other"),
        "severity": _clamp_severity(source.get("severity")),
        "confidence": _clamp01(source.get("confidence")),
        "evidence_text": str(source.get("evidence_text") or "").strip()[:500],
        "quality_sensitivity": _token(source.get("quality_sensitivity"), "medium"),
        "source_model": _token(source.get("source_model"), "unknown"),
        "provenance": {"source_ids": []},
    }
    if isinstance(source.get("regions"), list) and source["regions"]:
        out["regions"] = source["regions"]
    elif isinstance(source.get("region_hint_bbox"), Mapping):
        out["regions"] = [{"kind": "bbox", "bbox_norm": dict(source["region_hint_bbox"])}]
    else:
        out["regions"] = []
    return out


def output_from_record(record: Mapping[str, Any]) -> Dict[str, Any]:
    output = record.get("output_json") if isinstance(record.get("output_json"), Mapping) else {}
    concerns = output.get("concerns") if isinstance(output.get("concerns"), list) else []
    return {
        "provider": _token(record.get("provider"), "unknown_provider"),
        "model_name": _token(record.get("model_name"), "unknown_model"),
        "model_version": _token(record.get("model_version"), "v1"),
        "ok": bool(output.get("ok")),
        "concerns": [restore_concern(concern) for concern in concerns],
    }


def choose_provider_pair(outputs: Sequence[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
    by_provider: Dict[str, Dict[str, Any]] = {}
    for output in outputs:
        if output.get("provider"):
            by_provider.setdefault(output["provider"], output)
    for left, right in PREFERRED_PAIRS:
        if left in by_provider and right in by_provider:
            return [by_provider[left], by_provider[right]]
    providers = sorted(by_provider)
    if len(providers) < 2:
        return None
    return [by_provider[providers[0]], by_provider[providers[1]]]


def summarize_issue_type(
    sample: Optional[Mapping[str, Any]],
    generated: Mapping[str, Any],
    outputs: Sequence[Mapping[str, Any]],
) -> str:
    """Worst-agreeing type first (lowest IoU, then highest severity MAE)."""
    metrics = (sample or {}).get("metrics") if isinstance((sample or {}).get("metrics"), Mapping) else {}
    by_type = metrics.get("by_type") if isinstance(metrics.get("by_type"), list) else []
    scored = []
    for item in by_type:
        if not isinstance(item, Mapping):
            continue
        overlap = _optional_float(item.get("iou"))
        mae = _optional_float(item.get("severity_mae"))
        scored.append((1.0 if overlap is None else overlap, -(0.0 if mae is None else mae), _token(item.get("type"), "other")))
    if scored:
        return min(scored)[2]
    matches = generated.get("matches") or []
    if matches:
        return _token(matches[0].get("type"), "other")
    for output in outputs:
        concerns = output.get("concerns") or []
        if concerns:
            return _token(concerns[0].get("type"), "other")
    return "other"


def _resolve_asset_id(records: Sequence[Mapping[str, Any]]) -> Optional[str]:
    for row in records:
        output = row.get("output_json") if isinstance(row.get("output_json"), Mapping) else {}
        for candidate in [row.get("asset_id")] + [output.get(key) for key in _ASSET_KEYS]:
            token = str(candidate or "").strip()
            if token:
                return token
    return None


def _source_entries(outputs: Sequence[Mapping[str, Any]]) -> List[Dict[str, str]]:
    return [
        {
            "provider": _token(output.get("provider"), "unknown_provider"),
            "model_name": _token(output.get("model_name"), "unknown_model"),
            "model_version": _token(output.get("model_version"), "v1"),
        }
        for output in outputs
    ]


def build_daily_pseudo_record(
    *,
    date_key: str,
    inference_id: str,
    dims: Mapping[str, str],
    outputs: Sequence[Mapping[str, Any]],
    agreement_overall: float,
    threshold: float,
    generated: Mapping[str, Any],
) -> Dict[str, Any]:
    digest = hashlib.sha1(f"{inference_id}:{date_key}".encode("utf-8")).hexdigest()[:16]
    return {
        "schema_version": DAILY_PSEUDO_SCHEMA_VERSION,
        "pseudo_label_id": f"pld_{digest}",
        "created_at": _iso_now(),
        "date_key": date_key,
        "inference_id": inference_id,
        **dims,
        "agreement_overall": _round3(agreement_overall),
        "agreement_threshold": _round3(threshold),
        "concerns": list(generated.get("concerns") or []),
        "matches": list(generated.get("matches") or []),
        "sources": _source_entries(outputs),
    }


def build_daily_hard_case_record(
    *,
    date_key: str,
    inference_id: str,
    dims: Mapping[str, str],
    reason: str,
    issue_type: str,
    outputs: Sequence[Mapping[str, Any]],
    agreement_overall: float,
    include_roi: bool,
    records: Sequence[Mapping[str, Any]],
) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "schema_version": DAILY_HARD_CASE_SCHEMA_VERSION,
        "created_at": _iso_now(),
        "date_key": date_key,
        "inference_id": inference_id,
        "request_id_hash": _hash_token(inference_id) or None,
        "asset_id_hash": _hash_token(_resolve_asset_id(records)) or None,
        "disagreement_reason": reason,
        "issue_type": issue_type,
        "quality_summary": {
            "quality_grade": dims["quality_grade"],
            "tone_bucket": dims["skin_tone_bucket"],
            "lighting_bucket": dims["lighting_bucket"],
            "device_class": dims["device_class"],
        },
        "suggested_fix_summary": FIX_SUMMARIES.get(reason, "Manual review required."),
        "agreement_overall": _round3(agreement_overall),
        "providers": [_token(output.get("provider"), "unknown_provider") for output in outputs],
    }
    if include_roi:
        for row in records:
            output = row.get("output_json") if isinstance(row.get("output_json"), Mapping) else {}
            roi_uri = str(output.get("roi_uri") or row.get("roi_uri") or "").strip()
            if roi_uri:
                out["roi_uri"] = roi_uri
                break
    return out


def _write_lines(path: Path, records: Sequence[Dict[str, Any]]) -> None:
    payload = "".join(json.dumps(record, ensure_ascii=False) + "\n" for record in records)
    path.write_text(payload, encoding="utf-8")


def run_pseudo_label_job(options: JobOptions) -> Dict[str, Any]:
    """Process one UTC day of model outputs; writes the daily files and returns the summary."""
    prefix = _date_prefix(options.date_key)
    store = PseudoLabelStore(options.store_dir)
    model_outputs = [row for row in store.read_model_outputs() if str(row.get("created_at") or "").startswith(prefix)]
    samples = [row for row in store.read_agreement_samples() if str(row.get("created_at") or "").startswith(prefix)]

    sample_by_inference: Dict[str, Dict[str, Any]] = {}
    for sample in samples:
        inference_id = str(sample.get("inference_id") or "").strip()
        if inference_id:
            sample_by_inference[inference_id] = sample
    records_by_inference: Dict[str, List[Dict[str, Any]]] = {}
    for row in model_outputs:
        inference_id = str(row.get("inference_id") or "").strip()
        if inference_id:
            records_by_inference.setdefault(inference_id, []).append(row)

    pseudo_rows: List[Dict[str, Any]] = []
    hard_rows: List[Dict[str, Any]] = []
    counters = {
        "inferences_total": len(records_by_inference),
        "pseudo_labels_written": 0,
        "hard_cases_written": 0,
        "skipped_quality": 0,
        "skipped_low_agreement": 0,
        "skipped_no_match": 0,
        "skipped_insufficient_providers": 0,
    }

    for inference_id, records in records_by_inference.items():
        first = records[0]
        dims = {
            "quality_grade": _token(first.get("quality_grade"), "unknown").lower(),
            "skin_tone_bucket": _token(first.get("skin_tone_bucket"), "unknown"),
            "lighting_bucket": _token(first.get("lighting_bucket"), "unknown"),
            "device_class": _token(first.get("device_class"), "unknown"),
        }
        outputs = [output_from_record(record) for record in records]
        hard_case = {
            "date_key": options.date_key,
            "inference_id": inference_id,
            "dims": dims,
            "include_roi": options.allow_roi,
            "records": records,
        }
        pair = choose_provider_pair(outputs)
        if pair is None:
            counters["skipped_insufficient_providers"] += 1
            hard_rows.append(
                build_daily_hard_case_record(
                    reason="INSUFFICIENT_PROVIDER_OUTPUTS",
                    issue_type="other",
                    outputs=outputs,
                    agreement_overall=0.0,
                    **hard_case,
                )
            )
            continue

        sample = sample_by_inference.get(inference_id)
        stored_overall = _optional_float(((sample or {}).get("metrics") or {}).get("overall"))
        if stored_overall is None:
            stored_overall = _coerce_float(compute_agreement_for_pair(pair[0], pair[1]).get("overall"), 0.0)
        agreement_overall = stored_overall
        generated = generate_pseudo_labels_for_pair(
            pair[0],
            pair[1],
            quality_grade=dims["quality_grade"],
            region_iou_threshold=options.region_iou_threshold,
        )
        quality_eligible = bool(generated["quality_eligible"])
        agreement_pass = agreement_overall >= options.min_agreement
        has_matches = bool(generated["concerns"])
        if quality_eligible and agreement_pass and has_matches:
            pseudo_rows.append(
                build_daily_pseudo_record(
                    date_key=options.date_key,
                    inference_id=inference_id,
                    dims=dims,
                    outputs=pair,
                    agreement_overall=agreement_overall,
                    threshold=options.min_agreement,
                    generated=generated,
                )
            )
            counters["pseudo_labels_written"] += 1
            continue

        if not quality_eligible:
            reason = "QUALITY_NOT_ELIGIBLE"
            counters["skipped_quality"] += 1
        elif not agreement_pass:
            reason = "LOW_AGREEMENT"
            counters["skipped_low_agreement"] += 1
        else:
            reason = "NO_MATCHED_REGIONS"
            counters["skipped_no_match"] += 1
        hard_rows.append(
            build_daily_hard_case_record(
                reason=reason,
                issue_type=summarize_issue_type(sample, generated, pair),
                outputs=pair,
                agreement_overall=agreement_overall,
                **hard_case,
            )
        )

    counters["hard_cases_written"] = len(hard_rows)
    options.out_dir.mkdir(parents=True, exist_ok=True)
    pseudo_path = options.out_dir / "pseudo_labels_daily.ndjson"
    hard_path = options.out_dir / "hard_cases_daily.jsonl"
    summary_path = options.out_dir / "job_summary.json"
    _write_lines(pseudo_path, pseudo_rows)
    _write_lines(hard_path, hard_rows)

    summary = {
        "schema_version": JOB_SUMMARY_SCHEMA_VERSION,
        "generated_at": _iso_now(),
        "date_key": options.date_key,
        "config": {
            "min_agreement": _round3(options.min_agreement),
            "region_iou_threshold": _round3(options.region_iou_threshold),
            "allow_roi": options.allow_roi,
        },
        "source": {
            "store_dir": str(options.store_dir),
            "model_outputs_path": str(store.model_outputs_path),
            "agreement_samples_path": str(store.agreement_samples_path),
            "model_outputs_total": len(model_outputs),
            "agreement_samples_total": len(samples),
            "inferences_total": counters["inferences_total"],
        },
        "counters": counters,
        "outputs": {
            "pseudo_labels_daily": str(pseudo_path),
            "hard_cases_daily": str(hard_path),
            "job_summary": str(summary_path),
        },
    }
    _write_json_atomic(summary_path, summary)
    logger.info(
        "Pseudo-label job %s: %s pseudo labels, %s hard cases over %s inferences",
        options.date_key,
        counters["pseudo_labels_written"],
        counters["hard_cases_written"],
        counters["inferences_total"],
    )
    return summary
