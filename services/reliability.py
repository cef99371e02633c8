"""Reliability table builder and verifier vote gate.

The table aggregates persisted verifier model outputs, pairwise agreement
samples and gold labels into buckets keyed by
``issue_type|quality_grade|lighting_bucket|tone_bucket``. A bucket is eligible
for voting only when every gate condition holds; failed conditions are listed
by name in ``ineligible_reasons``.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from services.providers import GEMINI_PROVIDER
from services.pseudo_labels import DEFAULT_STORE_SUBDIR, PseudoLabelStore
from services.verify_guards import (
    VERIFY_AUTH_CIRCUIT_REASON,
    VERIFY_CIRCUIT_REASON,
    VERIFY_GUARD_REASON,
    VERIFY_INFLIGHT_GUARD_REASON,
)
from utils.env import _env_bool, _env_float, _env_int, _env_str
from utils.errors import _normalize_verify_fail_reason
from utils.io import _file_mtime_ns, _read_json_rows, _write_json_atomic
from utils.parsing import _coerce_float, _coerce_int, _normalize_token, _optional_float, _parse_bool, _round3

logger = logging.getLogger(__name__)

RELIABILITY_SCHEMA_VERSION = "aurora.diag.reliability.v1"
_DATE_PREFIX_RE = re.compile(r"^\d{4}(-\d{2}(-\d{2})?)?$")
DEFAULT_TABLE_PATH = Path("reports") / "reliability" / "reliability.json"
GUARD_REASONS = frozenset(
    {VERIFY_GUARD_REASON, VERIFY_CIRCUIT_REASON, VERIFY_AUTH_CIRCUIT_REASON, VERIFY_INFLIGHT_GUARD_REASON}
)


@dataclass(frozen=True)
class VoteGateConfig:
    vote_enabled: bool
    max_fail_rate: float
    min_agreement: float
    min_agreement_samples: int
    max_agreement_stddev: float
    min_gold_samples: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _load_vote_gate_config(overrides: Optional[Mapping[str, Any]] = None) -> VoteGateConfig:
    """Env defaults, with any key present in ``overrides`` taking precedence."""
    overrides = dict(overrides or {})
    cfg = VoteGateConfig(
        vote_enabled=_env_bool("DIAG_VERIFY_ENABLE_VOTE", False),
        max_fail_rate=_env_float("DIAG_VERIFY_VOTE_MAX_FAIL_RATE", 0.2, minimum=0.01, maximum=1.0),
        min_agreement=_env_float("DIAG_VERIFY_VOTE_MIN_AGREEMENT", 0.7, minimum=0.0, maximum=1.0),
        min_agreement_samples=_env_int("DIAG_VERIFY_VOTE_MIN_AGREEMENT_SAMPLES", 20, minimum=1, maximum=1_000_000),
        max_agreement_stddev=_env_float("DIAG_VERIFY_VOTE_MAX_AGREEMENT_STDDEV", 0.2, minimum=0.0, maximum=1.0),
        min_gold_samples=_env_int("DIAG_VERIFY_VOTE_MIN_GOLD_SAMPLES", 50, minimum=0, maximum=1_000_000),
    )
    if not overrides:
        return cfg
    values = cfg.to_dict()
    if "vote_enabled" in overrides:
        values["vote_enabled"] = _parse_bool(overrides["vote_enabled"])
    if "max_fail_rate" in overrides:
        values["max_fail_rate"] = _coerce_float(overrides["max_fail_rate"], cfg.max_fail_rate, minimum=0.01, maximum=1.0)
    if "min_agreement" in overrides:
        values["min_agreement"] = _coerce_float(overrides["min_agreement"], cfg.min_agreement, minimum=0.0, maximum=1.0)
    if "min_agreement_samples" in overrides:
        values["min_agreement_samples"] = max(1, _coerce_int(overrides["min_agreement_samples"], cfg.min_agreement_samples))
    if "max_agreement_stddev" in overrides:
        values["max_agreement_stddev"] = _coerce_float(
            overrides["max_agreement_stddev"], cfg.max_agreement_stddev, minimum=0.0, maximum=1.0
        )
    if "min_gold_samples" in overrides:
        values["min_gold_samples"] = max(0, _coerce_int(overrides["min_gold_samples"], cfg.min_gold_samples))
    return VoteGateConfig(**values)


def _dimension(value: Any) -> str:
    return _normalize_token(value, "unknown")


def normalize_issue_type(value: Any) -> str:
    return _normalize_token(value, "other")


def qlt_key(row: Mapping[str, Any]) -> str:
    return "|".join(
        (
            _dimension(row.get("quality_grade")),
            _dimension(row.get("lighting_bucket")),
            _dimension(row.get("tone_bucket") or row.get("skin_tone_bucket")),
        )
    )


def bucket_key(row: Mapping[str, Any]) -> str:
    return f"{normalize_issue_type(row.get('issue_type'))}|{qlt_key(row)}"


def _finite(values: Iterable[Any]) -> np.ndarray:
    nums = [v for v in (_optional_float(value) for value in values) if v is not None]
    return np.asarray(nums, dtype=float)


def _mean(values: Sequence[Any]) -> Optional[float]:
    arr = _finite(values)
    return _round3(arr.mean()) if arr.size else None


def _quantile(values: Sequence[Any], q: float) -> Optional[float]:
    arr = _finite(values)
    if not arr.size:
        return None
    return _round3(np.percentile(arr, min(1.0, max(0.0, q)) * 100.0, method="linear"))


def _stddev(values: Sequence[Any]) -> Optional[float]:
    arr = _finite(values)
    if arr.size < 2:
        return None
    return _round3(arr.std(ddof=0))


def _date_matches(created_at: Any, date_prefix: str, *, keep_undated: bool = False) -> bool:
    if not date_prefix:
        return True
    text = str(created_at or "")
    if not text and keep_undated:
        return True
    return text.startswith(date_prefix)


def _row_dimensions(row: Mapping[str, Any]) -> Dict[str, str]:
    return {
        "quality_grade": _dimension(row.get("quality_grade")),
        "lighting_bucket": _dimension(row.get("lighting_bucket")),
        "tone_bucket": _dimension(row.get("skin_tone_bucket") or row.get("tone_bucket")),
    }


def extract_verify_rows(model_outputs: Iterable[Mapping[str, Any]], *, date_prefix: str = "") -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for row in model_outputs or []:
        if not isinstance(row, Mapping) or not _date_matches(row.get("created_at"), date_prefix):
            continue
        if _normalize_token(row.get("provider")) != GEMINI_PROVIDER:
            continue
        output = row.get("output_json") if isinstance(row.get("output_json"), Mapping) else {}
        raw_reason = str(output.get("final_reason") or output.get("failure_reason") or "").strip().upper()
        is_guard = _normalize_token(output.get("decision")) == "skip" and raw_reason in GUARD_REASONS
        final_reason = str(output.get("final_reason") or "").strip().upper()
        has_failure = (
            output.get("ok") is False
            or output.get("schema_failed") is True
            or bool(str(output.get("failure_reason") or "").strip())
            or bool(final_reason and final_reason != "OK")
        )
        is_failure = not is_guard and has_failure
        out.append(
            {
                "created_at": str(row.get("created_at") or ""),
                "issue_type": "other",
                **_row_dimensions(row),
                "latency_ms": _optional_float(output.get("latency_ms")),
                "is_guard": is_guard,
                "is_failure": is_failure,
                "fail_reason": _normalize_verify_fail_reason(
                    output.get("verify_fail_reason") or output.get("final_reason") or output.get("failure_reason"),
                    provider_status_code=output.get("provider_status_code"),
                )
                if is_failure
                else None,
            }
        )
    return out


def extract_agreement_rows(agreement_samples: Iterable[Mapping[str, Any]], *, date_prefix: str = "") -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for sample in agreement_samples or []:
        if not isinstance(sample, Mapping) or not _date_matches(sample.get("created_at"), date_prefix):
            continue
        metrics = sample.get("metrics") if isinstance(sample.get("metrics"), Mapping) else {}
        overall = _optional_float(metrics.get("overall"))
        by_type = metrics.get("by_type") if isinstance(metrics.get("by_type"), list) else []
        dims = _row_dimensions(sample)
        types = [normalize_issue_type(item.get("type") if isinstance(item, Mapping) else None) for item in by_type] or ["other"]
        out.extend({"issue_type": issue_type, **dims, "agreement": overall} for issue_type in types)
    return out


def extract_gold_rows(gold_labels: Iterable[Mapping[str, Any]], *, date_prefix: str = "") -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for row in gold_labels or []:
        if not isinstance(row, Mapping) or not _date_matches(row.get("created_at"), date_prefix, keep_undated=True):
            continue
        concerns = row.get("concerns") if isinstance(row.get("concerns"), list) else []
        types = list(
            dict.fromkeys(normalize_issue_type(c.get("type") if isinstance(c, Mapping) else None) for c in concerns)
        ) or ["other"]
        dims = _row_dimensions(row)
        out.extend({"issue_type": issue_type, **dims} for issue_type in types)
    return out


def evaluate_bucket_eligibility(
    bucket: Mapping[str, Any],
    *,
    gate: VoteGateConfig,
    has_gold_data: bool,
) -> Dict[str, Any]:
    reasons: List[str] = []
    fail_rate = _optional_float(bucket.get("verify_fail_rate"))
    agreement_mean = _optional_float(bucket.get("agreement_mean"))
    agreement_stddev = _optional_float(bucket.get("agreement_stddev"))
    if not gate.vote_enabled:
        reasons.append("VOTE_DISABLED")
    if _coerce_int(bucket.get("verify_calls_total"), 0) <= 0:
        reasons.append("NO_VERIFY_CALLS")
    if fail_rate is None or fail_rate > gate.max_fail_rate:
        reasons.append("VERIFY_FAIL_RATE_HIGH")
    if _coerce_int(bucket.get("agreement_samples"), 0) < gate.min_agreement_samples:
        reasons.append("AGREEMENT_SAMPLES_LOW")
    if agreement_mean is None or agreement_mean < gate.min_agreement:
        reasons.append("AGREEMENT_LOW")
    if agreement_stddev is None or agreement_stddev > gate.max_agreement_stddev:
        reasons.append("AGREEMENT_UNSTABLE")
    if has_gold_data and _coerce_int(bucket.get("gold_samples"), 0) < gate.min_gold_samples:
        reasons.append("GOLD_SUPPORT_LOW")
    return {"eligible": not reasons, "reasons": reasons}


def _empty_verify_stats() -> Dict[str, Any]:
    return {"verify_calls_total": 0, "verify_fail_total": 0, "verify_guard_total": 0, "latencies": []}


def build_reliability_table(
    *,
    model_outputs: Iterable[Mapping[str, Any]] = (),
    agreement_samples: Iterable[Mapping[str, Any]] = (),
    gold_labels: Iterable[Mapping[str, Any]] = (),
    date_prefix: str = "",
    gate_overrides: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    date_prefix = str(date_prefix or "").strip()
    verify_rows = extract_verify_rows(model_outputs, date_prefix=date_prefix)
    agreement_rows = extract_agreement_rows(agreement_samples, date_prefix=date_prefix)
    gold_rows = extract_gold_rows(gold_labels, date_prefix=date_prefix)
    gate = _load_vote_gate_config(gate_overrides)

    verify_by_qlt: Dict[str, Dict[str, Any]] = {}
    for row in verify_rows:
        acc = verify_by_qlt.setdefault(qlt_key(row), _empty_verify_stats())
        if row["is_guard"]:
            acc["verify_guard_total"] += 1
            continue
        acc["verify_calls_total"] += 1
        if row["is_failure"]:
            acc["verify_fail_total"] += 1
        if row["latency_ms"] is not None:
            acc["latencies"].append(row["latency_ms"])

    issues_by_qlt: Dict[str, Dict[str, None]] = {}
    agreements_by_bucket: Dict[str, List[float]] = {}
    for row in agreement_rows:
        values = agreements_by_bucket.setdefault(bucket_key(row), [])
        if row["agreement"] is not None:
            values.append(row["agreement"])
        issues_by_qlt.setdefault(qlt_key(row), {})[row["issue_type"]] = None

    gold_by_bucket: Dict[str, int] = {}
    for row in gold_rows:
        key = bucket_key(row)
        gold_by_bucket[key] = gold_by_bucket.get(key, 0) + 1
        issues_by_qlt.setdefault(qlt_key(row), {})[row["issue_type"]] = None

    has_gold_data = bool(gold_rows)
    buckets: List[Dict[str, Any]] = []
    for qkey in dict.fromkeys(list(verify_by_qlt) + list(issues_by_qlt)):
        quality_grade, lighting, tone = qkey.split("|")
        stats = verify_by_qlt.get(qkey) or _empty_verify_stats()
        calls = stats["verify_calls_total"]
        for issue_type in sorted(issues_by_qlt.get(qkey) or {"other": None}):
            key = f"{issue_type}|{qkey}"
            agreements = agreements_by_bucket.get(key, [])
            bucket: Dict[str, Any] = {
                "bucket_key": key,
                "issue_type": issue_type,
                "quality_grade": quality_grade,
                "lighting_bucket": lighting,
                "tone_bucket": tone,
                "verify_calls_total": calls,
                "verify_fail_total": stats["verify_fail_total"],
                "verify_guard_total": stats["verify_guard_total"],
                "verify_fail_rate": _round3(stats["verify_fail_total"] / calls) if calls > 0 else None,
                "latency_p50_ms": _quantile(stats["latencies"], 0.5),
                "latency_p95_ms": _quantile(stats["latencies"], 0.95),
                "agreement_samples": len(agreements),
                "agreement_mean": _mean(agreements),
                "agreement_p50": _quantile(agreements, 0.5),
                "agreement_p90": _quantile(agreements, 0.9),
                "agreement_stddev": _stddev(agreements),
                "gold_samples": gold_by_bucket.get(key, 0),
            }
            decision = evaluate_bucket_eligibility(bucket, gate=gate, has_gold_data=has_gold_data)
            bucket["eligible_for_vote"] = decision["eligible"]
            bucket["ineligible_reasons"] = decision["reasons"]
            buckets.append(bucket)

    buckets.sort(key=lambda item: item["bucket_key"])
    summary = {
        "bucket_count": len(buckets),
        "has_gold_data": has_gold_data,
        "verify_calls_total": sum(1 for row in verify_rows if not row["is_guard"]),
        "verify_fail_total": sum(1 for row in verify_rows if row["is_failure"]),
        "verify_guard_total": sum(1 for row in verify_rows if row["is_guard"]),
        "agreement_rows_total": len(agreement_rows),
        "gold_rows_total": len(gold_rows),
        "eligible_bucket_count": sum(1 for bucket in buckets if bucket["eligible_for_vote"]),
    }
    return {
        "schema_version": RELIABILITY_SCHEMA_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "date_prefix": date_prefix or None,
        "gate_config": gate.to_dict(),
        "summary": summary,
        "buckets": buckets,
    }


def resolve_reliability_table_path(path: Optional[str] = None) -> Path:
    configured = str(path or "").strip() or _env_str("DIAG_VERIFY_RELIABILITY_TABLE_PATH", "")
    if configured:
        return Path(configured).resolve()
    return (Path.cwd() / DEFAULT_TABLE_PATH).resolve()


def write_reliability_table(table: Dict[str, Any], path: Path) -> Path:
    path = Path(path)
    if not path.suffix:
        path = path / "reliability.json"
    _write_json_atomic(path, table)
    logger.info("Wrote reliability table (%s buckets) to %s", len(table.get("buckets") or []), path)
    return path


class ReliabilityTableCache:
    """Caches the parsed table per resolved path; a changed mtime forces a re-read."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._mtime_ns: Optional[int] = None
        self._table: Optional[Dict[str, Any]] = None

    def reset(self) -> None:
        with self._lock:
            self._path = None
            self._mtime_ns = None
            self._table = None

    def load(self, path: Optional[str] = None) -> Optional[Dict[str, Any]]:
        resolved = resolve_reliability_table_path(path)
        mtime_ns = _file_mtime_ns(resolved)
        if mtime_ns is None:
            return None
        with self._lock:
            if self._table is not None and self._path == resolved and self._mtime_ns == mtime_ns:
                return self._table
        try:
            parsed = json.loads(resolved.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read reliability table %s: %s", resolved, exc)
            return None
        if not isinstance(parsed, dict) or not isinstance(parsed.get("buckets"), list):
            return None
        with self._lock:
            self._path = resolved
            self._mtime_ns = mtime_ns
            self._table = parsed
        return parsed


_TABLE_CACHE = ReliabilityTableCache()


def load_reliability_table(path: Optional[str] = None) -> Optional[Dict[str, Any]]:
    return _TABLE_CACHE.load(path)


def reset_reliability_cache() -> None:
    _TABLE_CACHE.reset()


def find_bucket(table: Optional[Mapping[str, Any]], dimensions: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    if not table or not isinstance(table.get("buckets"), list):
        return None
    target = bucket_key(dimensions)
    for item in table["buckets"]:
        if isinstance(item, dict) and str(item.get("bucket_key") or "") == target:
            return item
    return None


def should_use_verifier_in_vote(
    dimensions: Mapping[str, Any],
    *,
    table: Optional[Mapping[str, Any]] = None,
    table_path: Optional[str] = None,
    gate_overrides: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Vote-gate decision for one bucket. Unknown buckets are never trusted."""
    key = bucket_key(dimensions)
    table = table if table is not None else load_reliability_table(table_path)
    if not table:
        return {"use_in_vote": False, "reason": "RELIABILITY_TABLE_MISSING", "bucket_key": key}
    bucket = find_bucket(table, dimensions)
    if bucket is None:
        return {"use_in_vote": False, "reason": "BUCKET_NOT_FOUND", "bucket_key": key}
    summary = table.get("summary") if isinstance(table.get("summary"), Mapping) else {}
    decision = evaluate_bucket_eligibility(
        bucket,
        gate=_load_vote_gate_config(gate_overrides),
        has_gold_data=bool(summary.get("has_gold_data")),
    )
    return {
        "use_in_vote": decision["eligible"],
        "reason": "ELIGIBLE" if decision["eligible"] else decision["reasons"][0],
        "reasons": decision["reasons"],
        "bucket_key": key,
        "bucket": bucket,
    }


def normalize_date_prefix(raw: Any) -> str:
    """Accept ``YYYYMMDD`` or a ``YYYY[-MM[-DD]]`` prefix; empty means no filter."""
    token = str(raw or "").strip()
    if not token:
        return ""
    if len(token) == 8 and token.isdigit():
        return f"{token[:4]}-{token[4:6]}-{token[6:]}"
    if _DATE_PREFIX_RE.match(token):
        return token
    raise ValueError(f"invalid date prefix: {raw}")


def build_reliability_table_from_store(
    store_dir: Optional[str] = None,
    *,
    gold_labels_path: Optional[str] = None,
    date_prefix: Any = "",
    gate_overrides: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Build a table from a pseudo-label store directory.

    Offline builds force ``vote_enabled`` on so candidate buckets are visible
    even while runtime voting stays off; the runtime flag is kept in ``inputs``.
    """
    base_dir = Path(store_dir).resolve() if store_dir else (Path.cwd() / DEFAULT_STORE_SUBDIR).resolve()
    store = PseudoLabelStore(base_dir)
    gold_path = Path(gold_labels_path).resolve() if gold_labels_path else base_dir / "gold_labels.ndjson"
    model_outputs = store.read_model_outputs()
    agreement_samples = store.read_agreement_samples()
    gold_labels = _read_json_rows(gold_path)
    runtime_vote_enabled = _load_vote_gate_config(gate_overrides).vote_enabled
    table = build_reliability_table(
        model_outputs=model_outputs,
        agreement_samples=agreement_samples,
        gold_labels=gold_labels,
        date_prefix=normalize_date_prefix(date_prefix),
        gate_overrides={**dict(gate_overrides or {}), "vote_enabled": True},
    )
    table["inputs"] = {
        "manifest_path": str(store.manifest_path),
        "model_outputs_path": str(store.model_outputs_path),
        "agreement_samples_path": str(store.agreement_samples_path),
        "gold_labels_path": str(gold_path),
        "model_outputs_total": len(model_outputs),
        "agreement_samples_total": len(agreement_samples),
        "gold_labels_total": len(gold_labels),
        "runtime_vote_enabled": runtime_vote_enabled,
    }
    return table
