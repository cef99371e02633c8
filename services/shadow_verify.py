"""Shadow verification: compare the cv provider against one vision provider behind call guards."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from services.concerns import VOTE_QUALITY_GRADES, _normalize_quality_grade
from services.geometry import iou, primary_bbox_from_concern
from services.providers import GEMINI_PROVIDER, ProviderAdapter, run_cv_provider, run_vision_provider
from services.pseudo_labels import PseudoLabelSettings, PseudoLabelStore, persist_pseudo_label_artifacts
from services.verify_guards import (
    VERIFY_AUTH_CIRCUIT_REASON,
    VERIFY_CIRCUIT_REASON,
    VERIFY_GUARD_REASON,
    VERIFY_INFLIGHT_GUARD_REASON,
    VerifyGuards,
)
from utils.env import _env_bool, _env_float, _env_int, _env_str
from utils.errors import VERIFY_UNKNOWN, _normalize_http_status_class, _normalize_verify_fail_reason
from utils.hashing import _hash_token, _stable_unit_interval
from utils.io import _append_ndjson
from utils.parsing import _clamp01, _coerce_float, _coerce_int, _round3

logger = logging.getLogger(__name__)

VERIFY_SCHEMA_VERSION = "aurora.diag.verify_shadow.v1"
HARD_CASE_SCHEMA_VERSION = "aurora.diag.verify_hard_case.v1"
VERIFY_SAMPLE_SKIP_REASON = "VERIFY_SHADOW_SAMPLE_SKIP"
DEFAULT_HARD_CASE_PATH = Path("tmp") / "diag_verify" / "hard_cases.ndjson"

AGREE_MIN_IOU = 0.55
AGREE_MAX_SEVERITY_DELTA = 0.9
UNCERTAIN_MAX_SEVERITY_DELTA = 1.6
VERDICT_SCORES = {"agree": 1.0, "uncertain": 0.5, "disagree": 0.0}
MAX_DISAGREEMENT_REASONS = 10
MAX_SUGGESTED_FIXES = 8

_BIAS_NOTES = (
    ("possible_lighting_bias", "Lighting may affect confidence for this run."),
    ("possible_filter_bias", "Filter-like artifacts may affect visual interpretation."),
    ("possible_makeup_bias", "Makeup coverage may mask underlying skin texture/tone."),
)


@dataclass(frozen=True)
class VerifierConfig:
    enabled: bool
    shadow_mode: bool
    sample_rate: float
    iou_threshold: float
    timeout_ms: int
    retries: int
    hard_case_threshold: float
    max_calls_per_min: int
    max_calls_per_day: int
    model: str
    circuit_enabled: bool
    circuit_threshold: int
    circuit_cooldown_ms: int
    auth_circuit_enabled: bool
    auth_fail_rate_threshold: float
    auth_cooldown_ms: int
    auth_window_ms: int
    auth_min_samples: int
    max_inflight: int
    hard_case_path: Path


def _load_verifier_config() -> VerifierConfig:
    connect_ms = _env_int(
        "DIAG_VERIFY_CONNECT_TIMEOUT_MS",
        _env_int("DIAG_GEMINI_VERIFY_CONNECT_TIMEOUT_MS", 6000, minimum=500, maximum=60000),
        minimum=500,
        maximum=60000,
    )
    read_ms = _env_int(
        "DIAG_VERIFY_READ_TIMEOUT_MS",
        _env_int("DIAG_GEMINI_VERIFY_READ_TIMEOUT_MS", 12000, minimum=500, maximum=90000),
        minimum=500,
        maximum=90000,
    )
    shadow_enabled = _env_bool("DIAG_VERIFY_SHADOW_ENABLED", False)
    hard_case_path = _env_str("DIAG_GEMINI_VERIFY_HARD_CASE_PATH", "")
    return VerifierConfig(
        enabled=shadow_enabled or _env_bool("DIAG_GEMINI_VERIFY", False),
        shadow_mode=shadow_enabled or _env_bool("DIAG_SHADOW_MODE", False),
        sample_rate=_env_float("DIAG_VERIFY_SHADOW_SAMPLE_RATE", 0.01 if shadow_enabled else 1.0, minimum=0.0, maximum=1.0),
        iou_threshold=_env_float("DIAG_GEMINI_VERIFY_IOU_THRESHOLD", 0.3, minimum=0.05, maximum=0.95),
        timeout_ms=_env_int(
            "DIAG_VERIFY_TIMEOUT_MS",
            _env_int("DIAG_GEMINI_VERIFY_TIMEOUT_MS", max(1000, connect_ms + read_ms), minimum=1000, maximum=120000),
            minimum=1000,
            maximum=120000,
        ),
        retries=_env_int("DIAG_GEMINI_VERIFY_RETRIES", 1, minimum=0, maximum=3),
        hard_case_threshold=_env_float("DIAG_GEMINI_VERIFY_HARD_CASE_THRESHOLD", 0.55, minimum=0.0, maximum=1.0),
        max_calls_per_min=_env_int("DIAG_VERIFY_MAX_CALLS_PER_MIN", 60, minimum=0, maximum=1_000_000),
        max_calls_per_day=_env_int("DIAG_VERIFY_MAX_CALLS_PER_DAY", 10000, minimum=0, maximum=100_000_000),
        model=_env_str("DIAG_GEMINI_VERIFY_MODEL", _env_str("DIAG_ENSEMBLE_GEMINI_MODEL", "gemini-2.0-flash")),
        circuit_enabled=_env_bool("DIAG_VERIFY_5XX_CIRCUIT_ENABLED", True),
        circuit_threshold=_env_int("DIAG_VERIFY_5XX_CONSECUTIVE_THRESHOLD", 3, minimum=1, maximum=50),
        circuit_cooldown_ms=_env_int("DIAG_VERIFY_5XX_COOLDOWN_MS", 90000, minimum=1000, maximum=900000),
        auth_circuit_enabled=_env_bool("DIAG_VERIFY_AUTH_CIRCUIT_ENABLED", True),
        auth_fail_rate_threshold=_env_float("DIAG_VERIFY_AUTH_FAIL_RATE_THRESHOLD", 0.01, minimum=0.0, maximum=1.0),
        auth_cooldown_ms=_env_int("DIAG_VERIFY_AUTH_CIRCUIT_COOLDOWN_MS", 600000, minimum=10000, maximum=3600000),
        auth_window_ms=_env_int("DIAG_VERIFY_AUTH_FAIL_WINDOW_MS", 600000, minimum=60000, maximum=3600000),
        auth_min_samples=_env_int("DIAG_VERIFY_AUTH_FAIL_MIN_SAMPLES", 20, minimum=1, maximum=10000),
        max_inflight=_env_int("DIAG_VERIFY_MAX_INFLIGHT", 32, minimum=0, maximum=10000),
        hard_case_path=Path(hard_case_path) if hard_case_path else Path.cwd() / DEFAULT_HARD_CASE_PATH,
    )


def stable_shadow_sampling(
    sample_rate: Any,
    *,
    trace_id: Any = None,
    inference_id: Any = None,
    asset_id: Any = None,
) -> Dict[str, Any]:
    """Deterministic sampling on sha256(trace|inference|asset)."""
    rate = _clamp01(sample_rate)
    if rate >= 1:
        return {"selected": True, "bucket": 0.0}
    if rate <= 0:
        return {"selected": False, "bucket": 1.0}
    token = "|".join(str(value or "").strip() for value in (trace_id, inference_id, asset_id))
    bucket = _stable_unit_interval(token or "shadow-default")
    return {"selected": bucket < rate, "bucket": _round3(bucket)}


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _first_evidence(concerns: Sequence[Mapping[str, Any]]) -> str:
    for concern in concerns:
        text = str(concern.get("evidence_text") or "").strip()
        if text:
            return text
    return ""


def build_issue_comparisons(
    cv_concerns: Sequence[Mapping[str, Any]],
    verifier_concerns: Sequence[Mapping[str, Any]],
    *,
    iou_threshold: float = 0.3,
) -> List[Dict[str, Any]]:
    """One verdict row per concern type (sorted), comparing cv against the verifier."""
    by_type: Dict[str, Dict[str, List[Mapping[str, Any]]]] = {}
    for source, concerns in (("cv", cv_concerns), ("verifier", verifier_concerns)):
        for concern in concerns or []:
            concern_type = str(concern.get("type") or "other").strip() or "other"
            by_type.setdefault(concern_type, {"cv": [], "verifier": []})[source].append(concern)

    rows: List[Dict[str, Any]] = []
    for concern_type in sorted(by_type):
        left, right = by_type[concern_type]["cv"], by_type[concern_type]["verifier"]
        row: Dict[str, Any] = {
            "type": concern_type,
            "verdict": "uncertain",
            "iou": 0.0,
            "severity_delta": 0.0,
            "confidence_delta": 0.0,
            "evidence": "",
            "reason": "",
            "suggested_fix": {},
        }
        if not left or not right:
            missing = "cv" if not left else "gemini"
            row.update(
                verdict="disagree",
                reason=f"missing_in_{missing}",
                evidence=_first_evidence(right or left),
                suggested_fix={"type_change": f"{missing}_missing:{concern_type}", "confidence_adjust": -0.12},
            )
            rows.append(row)
            continue

        best_iou = 0.0
        best_pair = None
        for lhs in left:
            left_box = primary_bbox_from_concern(lhs)
            for rhs in right:
                right_box = primary_bbox_from_concern(rhs)
                if left_box is None or right_box is None:
                    continue
                overlap = iou(left_box, right_box)
                if overlap >= best_iou:
                    best_iou = overlap
                    best_pair = (lhs, rhs, right_box)

        severity_delta = abs(
            _mean([_coerce_float(c.get("severity"), 0.0) for c in left])
            - _mean([_coerce_float(c.get("severity"), 0.0) for c in right])
        )
        confidence_delta = abs(_mean([_clamp01(c.get("confidence")) for c in left]) - _mean([_clamp01(c.get("confidence")) for c in right]))
        row["iou"] = _round3(best_iou)
        row["severity_delta"] = _round3(severity_delta)
        row["confidence_delta"] = _round3(confidence_delta)
        row["evidence"] = _first_evidence([best_pair[1], best_pair[0]] if best_pair else list(right) + list(left))
        region_hint = best_pair[2].to_dict() if best_pair else None

        if best_pair is None or best_iou < iou_threshold:
            row.update(
                verdict="disagree",
                reason="region_mismatch",
                suggested_fix={"region_hint": region_hint, "confidence_adjust": -0.15},
            )
        elif best_iou >= AGREE_MIN_IOU and severity_delta <= AGREE_MAX_SEVERITY_DELTA:
            row.update(
                verdict="agree",
                reason="consistent",
                suggested_fix={"confidence_adjust": -0.03 if confidence_delta > 0.25 else 0},
            )
        elif severity_delta <= UNCERTAIN_MAX_SEVERITY_DELTA:
            row.update(
                verdict="uncertain",
                reason="severity_uncertain",
                suggested_fix={"region_hint": region_hint, "confidence_adjust": -0.06},
            )
        else:
            row.update(
                verdict="disagree",
                reason="severity_mismatch",
                suggested_fix={"region_hint": region_hint, "confidence_adjust": -0.12},
            )
        rows.append(row)
    return rows


def compute_verify_agreement_score(rows: Sequence[Mapping[str, Any]]) -> float:
    if not rows:
        return 1.0
    return _round3(sum(VERDICT_SCORES.get(row.get("verdict"), 0.0) for row in rows) / len(rows))


def collect_disagreement_reasons(rows: Sequence[Mapping[str, Any]]) -> List[str]:
    reasons = dict.fromkeys(
        str(row.get("reason") or "").strip()
        for row in rows
        if row.get("verdict") != "agree" and str(row.get("reason") or "").strip()
    )
    return list(reasons)[:MAX_DISAGREEMENT_REASONS]


def build_global_notes(flags: Any) -> List[str]:
    tokens = {str(flag or "").strip().lower() for flag in flags or [] if str(flag or "").strip()}
    return [note for flag, note in _BIAS_NOTES if flag in tokens][:3]


def build_verify_provider_stat(output: Mapping[str, Any]) -> Dict[str, Any]:
    ok = bool(output.get("ok"))
    final_reason = "OK" if ok else str(output.get("final_reason") or output.get("failure_reason") or VERIFY_UNKNOWN)
    stat: Dict[str, Any] = {
        "provider": str(output.get("provider") or "unknown"),
        "ok": ok,
        "latency_ms": _round3(max(0.0, _coerce_float(output.get("latency_ms"), 0.0))),
        "provider_status_code": _coerce_int(output.get("provider_status_code"), 200 if ok else 0),
        "http_status_class": _normalize_http_status_class(output.get("http_status_class"), final_reason),
        "attempts": max(1, _coerce_int(output.get("attempts"), 1)),
        "final_reason": final_reason,
        "concern_count": len(output.get("concerns") or []),
    }
    for key in ("image_bytes_len", "request_payload_bytes_len", "response_bytes_len"):
        if output.get(key) is not None:
            stat[key] = _coerce_int(output.get(key), 0)
    for key in ("error_class", "schema_error_summary", "failure_reason", "verify_fail_reason"):
        if output.get(key):
            stat[key] = str(output[key])
    if output.get("schema_failed"):
        stat["schema_failed"] = True
    return stat


def _derive_hard_case_reason(disagreement_reasons: Sequence[str], final_reason: Any, verify_fail_reason: Any) -> str:
    for reason in disagreement_reasons:
        if str(reason or "").strip():
            return str(reason).strip()
    return str(verify_fail_reason or final_reason or "").strip() or VERIFY_UNKNOWN


def _derive_hard_case_issue_type(rows: Sequence[Mapping[str, Any]], fallback_reason: str) -> str:
    disagreements = [row for row in rows if row.get("verdict") != "agree"]
    if not disagreements:
        if fallback_reason.startswith("QUALITY_"):
            return "quality"
        return "verify" if fallback_reason else "other"
    first = next((row for row in disagreements if str(row.get("type") or "").strip()), disagreements[0])
    return str(first.get("type") or "").strip().lower() or "other"


def append_hard_case_record(record: Dict[str, Any], path: Path) -> Path:
    _append_ndjson(path, [record])
    return path


def _skip_result(reason: str, *, enabled: bool = True, provider_status_code: int = 0, **extra: Any) -> Dict[str, Any]:
    return {
        "ok": False,
        "enabled": enabled,
        "called": False,
        "decision": "skip",
        "final_reason": reason,
        "provider_status_code": provider_status_code,
        "latency_ms": 0,
        "attempts": 0,
        "skipped_reason": reason,
        **extra,
    }


class ShadowVerifier:
    """Runs shadow verification calls; guards and the verifier adapter are injected."""

    def __init__(
        self,
        *,
        verifier_adapter: Optional[ProviderAdapter] = None,
        guards: Optional[VerifyGuards] = None,
        config: Optional[VerifierConfig] = None,
        cv_provider: Callable[..., Dict[str, Any]] = run_cv_provider,
        pseudo_label_settings: Optional[PseudoLabelSettings] = None,
        pseudo_label_store: Optional[PseudoLabelStore] = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.verifier_adapter = verifier_adapter
        self.guards = guards or VerifyGuards()
        self._config = config
        self._cv_provider = cv_provider
        self._pseudo_label_settings = pseudo_label_settings
        self._pseudo_label_store = pseudo_label_store
        self._sleep_fn = sleep_fn

    @property
    def config(self) -> VerifierConfig:
        return self._config or _load_verifier_config()

    def reset(self) -> None:
        self.guards.reset()

    def _persist(self, outputs: List[Dict[str, Any]], *, inference_id: Any, quality_grade: str, buckets: Dict[str, str]):
        try:
            return persist_pseudo_label_artifacts(
                outputs,
                inference_id=inference_id or None,
                quality_grade=quality_grade,
                settings=self._pseudo_label_settings,
                store=self._pseudo_label_store,
                **buckets,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Shadow verify persistence failed: %s", exc)
            return None

    def _guarded_skip(
        self,
        reason: str,
        *,
        inference_id: Any,
        quality_grade: str,
        buckets: Dict[str, str],
        provider_status_code: int = 0,
        **extra: Any,
    ) -> Dict[str, Any]:
        skip_output = {
            "ok": False,
            "provider": GEMINI_PROVIDER,
            "concerns": [],
            "decision": "skip",
            "attempts": 0,
            "latency_ms": 0,
            "provider_status_code": 0,
            "failure_reason": reason,
            "final_reason": reason,
            "verify_fail_reason": None,
        }
        persistence = self._persist([skip_output], inference_id=inference_id, quality_grade=quality_grade, buckets=buckets)
        logger.info("Shadow verify skipped: %s", reason)
        return _skip_result(reason, provider_status_code=provider_status_code, persistence=persistence, **extra)

    def run(
        self,
        *,
        image: Optional[bytes] = None,
        photo_quality: Optional[Mapping[str, Any]] = None,
        used_photos: bool = True,
        diagnosis: Optional[Mapping[str, Any]] = None,
        diagnosis_internal: Optional[Mapping[str, Any]] = None,
        inference_id: Optional[str] = None,
        trace_id: Optional[str] = None,
        asset_id: Optional[str] = None,
        skin_tone_bucket: str = "unknown",
        lighting_bucket: str = "unknown",
        verifier_adapter: Optional[ProviderAdapter] = None,
    ) -> Dict[str, Any]:
        """Run one verification; ``verifier_adapter`` overrides the instance adapter for this call."""
        cfg = self.config
        quality = photo_quality if isinstance(photo_quality, Mapping) else {}
        diagnosis_quality = (diagnosis or {}).get("quality") if isinstance(diagnosis, Mapping) else None
        grade = _normalize_quality_grade(
            quality.get("grade") or (diagnosis_quality.get("grade") if isinstance(diagnosis_quality, Mapping) else None)
        )
        buckets = {
            "skin_tone_bucket": str(skin_tone_bucket or "unknown").strip() or "unknown",
            "lighting_bucket": str(lighting_bucket or "unknown").strip() or "unknown",
        }

        if not cfg.enabled:
            return _skip_result("DISABLED_BY_FLAG", enabled=False)
        if not used_photos:
            return _skip_result("PHOTO_NOT_USED")
        if grade not in VOTE_QUALITY_GRADES:
            return _skip_result(f"QUALITY_{grade.upper()}")
        if not image:
            return _skip_result("MISSING_IMAGE_BUFFER")
        if cfg.shadow_mode:
            sample = stable_shadow_sampling(cfg.sample_rate, trace_id=trace_id, inference_id=inference_id, asset_id=asset_id)
            if not sample["selected"]:
                return _skip_result(VERIFY_SAMPLE_SKIP_REASON)

        skip_kwargs = {"inference_id": inference_id, "quality_grade": grade, "buckets": buckets}
        circuit = self.guards.upstream_circuit.snapshot(threshold=cfg.circuit_threshold, cooldown_ms=cfg.circuit_cooldown_ms)
        if cfg.circuit_enabled and circuit["is_open"]:
            return self._guarded_skip(VERIFY_CIRCUIT_REASON, provider_status_code=503, circuit_breaker=circuit, **skip_kwargs)
        auth_kwargs = {
            "threshold": cfg.auth_fail_rate_threshold,
            "cooldown_ms": cfg.auth_cooldown_ms,
            "window_ms": cfg.auth_window_ms,
            "min_samples": cfg.auth_min_samples,
        }
        auth = self.guards.auth_circuit.snapshot(**auth_kwargs)
        if cfg.auth_circuit_enabled and auth["is_open"]:
            return self._guarded_skip(VERIFY_AUTH_CIRCUIT_REASON, provider_status_code=403, auth_circuit_breaker=auth, **skip_kwargs)
        budget = self.guards.budget.reserve(max_per_minute=cfg.max_calls_per_min, max_per_day=cfg.max_calls_per_day)
        if not budget["allowed"]:
            return self._guarded_skip(VERIFY_GUARD_REASON, budget_guard=budget["usage"], **skip_kwargs)
        if not self.guards.inflight.acquire(cfg.max_inflight):
            return self._guarded_skip(VERIFY_INFLIGHT_GUARD_REASON, **skip_kwargs)

        try:
            cv_output = self._cv_provider(diagnosis=diagnosis, diagnosis_internal=diagnosis_internal, photo_quality=quality or None)
            verifier_output = run_vision_provider(
                verifier_adapter or self.verifier_adapter,
                provider=GEMINI_PROVIDER,
                model_name=cfg.model,
                image=image,
                photo_quality=quality,
                context={"quality_grade": grade, "mode": "shadow_verify"},
                retries=cfg.retries,
                timeout_ms=cfg.timeout_ms,
                sleep_fn=self._sleep_fn,
            )
        finally:
            self.guards.inflight.release()

        return self._finish(
            cfg,
            cv_output=cv_output,
            verifier_output=verifier_output,
            image=image,
            grade=grade,
            buckets=buckets,
            inference_id=inference_id,
            trace_id=trace_id,
            asset_id=asset_id,
            auth_kwargs=auth_kwargs,
        )

    def _finish(
        self,
        cfg: VerifierConfig,
        *,
        cv_output: Dict[str, Any],
        verifier_output: Dict[str, Any],
        image: bytes,
        grade: str,
        buckets: Dict[str, str],
        inference_id: Optional[str],
        trace_id: Optional[str],
        asset_id: Optional[str],
        auth_kwargs: Dict[str, Any],
    ) -> Dict[str, Any]:
        ok = bool(verifier_output.get("ok"))
        latency = _round3(max(0.0, _coerce_float(verifier_output.get("latency_ms"), 0.0)))
        attempts = max(1, _coerce_int(verifier_output.get("attempts"), cfg.retries + 1))
        status_code = _coerce_int(verifier_output.get("provider_status_code"), 200 if ok else 0)
        status_class = _normalize_http_status_class(
            verifier_output.get("http_status_class") or status_code, verifier_output.get("failure_reason") or ""
        )
        raw_final_reason = "OK" if ok else str(verifier_output.get("failure_reason") or VERIFY_UNKNOWN)
        verify_fail_reason = None
        if not ok:
            verify_fail_reason = _normalize_verify_fail_reason(
                raw_final_reason,
                provider_status_code=status_code,
                http_status_class=verifier_output.get("http_status_class"),
                error_class=verifier_output.get("error_class"),
            )
        final_reason = "OK" if ok else verify_fail_reason or VERIFY_UNKNOWN
        effective_trace = str(trace_id or inference_id or "").strip() or None
        stored_output = {
            **verifier_output,
            "final_reason": final_reason,
            "raw_final_reason": raw_final_reason,
            "verify_fail_reason": verify_fail_reason,
            "decision": "verify",
            "attempts": attempts,
            "provider_status_code": status_code,
            "latency_ms": latency,
            "http_status_class": status_class,
            "error_class": str(verifier_output.get("error_class") or "").strip() or None,
            "image_bytes_len": _coerce_int(verifier_output.get("image_bytes_len"), len(image)),
            "request_payload_bytes_len": _coerce_int(verifier_output.get("request_payload_bytes_len"), 0),
            "response_bytes_len": _coerce_int(verifier_output.get("response_bytes_len"), 0),
            "trace_id": effective_trace,
        }
        provider_stats = [build_verify_provider_stat(cv_output), build_verify_provider_stat(stored_output)]

        rows = build_issue_comparisons(
            cv_output.get("concerns") or [],
            verifier_output.get("concerns") or [],
            iou_threshold=cfg.iou_threshold,
        )
        agreement_score = compute_verify_agreement_score(rows)
        reasons = collect_disagreement_reasons(rows)
        verdict = {
            "schema_version": VERIFY_SCHEMA_VERSION,
            "per_issue": [
                {
                    "type": row["type"],
                    "verdict": row["verdict"],
                    "iou": row["iou"],
                    "severity_delta": row["severity_delta"],
                    "confidence_delta": row["confidence_delta"],
                    "evidence_text": row["evidence"],
                    "reason": row["reason"],
                    "suggested_fix": row["suggested_fix"],
                }
                for row in rows
            ],
            "suggested_fix": [{"type": row["type"], **row["suggested_fix"]} for row in rows if row["suggested_fix"]][
                :MAX_SUGGESTED_FIXES
            ],
            "global_notes": build_global_notes(verifier_output.get("flags")),
        }

        persistence = self._persist([cv_output, stored_output], inference_id=inference_id, quality_grade=grade, buckets=buckets)

        hard_case_path: Optional[Path] = None
        if not ok or agreement_score < cfg.hard_case_threshold or reasons:
            hard_reason = _derive_hard_case_reason(reasons, final_reason, verify_fail_reason)
            request_token = str(inference_id or "").strip()
            record = {
                "schema_version": HARD_CASE_SCHEMA_VERSION,
                "created_at": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
                "inference_id": request_token or None,
                "request_id_hash": _hash_token(request_token) or None,
                "asset_id_hash": _hash_token(asset_id) or None,
                "quality_grade": grade,
                "issue_type": _derive_hard_case_issue_type(rows, hard_reason),
                "disagreement_reason": hard_reason,
                "agreement_score": agreement_score,
                "disagreement_reasons": reasons,
                "provider_stats": provider_stats,
                "provider_status_code": status_code,
                "latency_ms": latency,
                "attempts": attempts,
                "final_reason": final_reason,
                "raw_final_reason": raw_final_reason,
                "verifier": verdict,
            }
            try:
                hard_case_path = append_hard_case_record(record, cfg.hard_case_path)
            except (OSError, TypeError, ValueError) as exc:
                logger.warning("Failed to write hard case record: %s", exc)

        if not ok:
            logger.warning(
                "Shadow verify provider failure trace=%s reason=%s raw=%s status=%s attempts=%s",
                effective_trace,
                verify_fail_reason,
                raw_final_reason,
                status_code,
                attempts,
            )
        circuit = self.guards.upstream_circuit.record(
            verify_fail_reason,
            enabled=cfg.circuit_enabled,
            threshold=cfg.circuit_threshold,
            cooldown_ms=cfg.circuit_cooldown_ms,
        )
        auth = self.guards.auth_circuit.record(verify_fail_reason, status_code, enabled=cfg.auth_circuit_enabled, **auth_kwargs)
        if circuit["opened_now"]:
            logger.warning("Shadow verify 5xx circuit opened: %s", circuit["snapshot"])
        if auth["opened_now"]:
            logger.warning("Shadow verify auth circuit opened: %s", auth["snapshot"])

        return {
            "ok": ok,
            "enabled": True,
            "called": True,
            "decision": "verify",
            "provider_status_code": status_code,
            "latency_ms": latency,
            "attempts": attempts,
            "final_reason": final_reason,
            "raw_final_reason": raw_final_reason,
            "verify_fail_reason": verify_fail_reason,
            "skipped_reason": None,
            "circuit_breaker": circuit["snapshot"],
            "auth_circuit_breaker": auth["snapshot"],
            "agreement_score": agreement_score,
            "disagreement_reasons": reasons,
            "verifier": verdict,
            "provider_stats": provider_stats,
            "hard_case_written": hard_case_path is not None,
            "hard_case_path": str(hard_case_path) if hard_case_path else None,
            "persistence": persistence,
        }
