"""Provider runners: the rule-based cv provider and a retrying wrapper for vision-language adapters."""

from __future__ import annotations

import concurrent.futures
import json
import logging
import re
import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import ValidationError

from models.schemas import ProviderPayload
from services.concerns import (
    _map_finding_to_concern,
    _normalize_provider_concern,
    _normalize_quality_grade,
    _quality_feature_snapshot,
)
from utils.env import _env_int
from utils.errors import (
    VERIFY_SCHEMA_INVALID,
    VISION_IMAGE_INVALID,
    VISION_MISSING_KEY,
    VISION_SCHEMA_INVALID,
    _classify_provider_failure,
)

logger = logging.getLogger(__name__)

CV_PROVIDER = "cv_provider"
GEMINI_PROVIDER = "gemini_provider"
GPT_PROVIDER = "gpt_provider"

BACKOFF_BASE_SECONDS = 0.2
SCHEMA_SUMMARY_CHARS = 120
DEFAULT_PROVIDER_MAX_WORKERS = 8

# Adapter signature: adapter(image_bytes, context) -> payload dict or JSON text.
ProviderAdapter = Callable[[bytes, Dict[str, Any]], Any]

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

_PROVIDER_EXECUTOR: Optional[concurrent.futures.ThreadPoolExecutor] = None
_PROVIDER_EXECUTOR_LOCK = threading.Lock()


class ProviderSchemaError(ValueError):
    def __init__(self, summary: Optional[str]) -> None:
        super().__init__(summary or "schema_invalid")
        self.summary = summary


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000.0, 3)


def _quality_grade(photo_quality: Any) -> str:
    quality = photo_quality if isinstance(photo_quality, Mapping) else {}
    return _normalize_quality_grade(quality.get("grade"))


def run_cv_provider(
    *,
    diagnosis: Optional[Mapping[str, Any]] = None,
    diagnosis_internal: Optional[Mapping[str, Any]] = None,
    photo_quality: Optional[Mapping[str, Any]] = None,
    model_version: str = "v1",
) -> Dict[str, Any]:
    """Map rule-based photo findings to concerns. Never raises."""
    started = time.monotonic()
    diagnosis = diagnosis if isinstance(diagnosis, Mapping) else {}
    internal = diagnosis_internal if isinstance(diagnosis_internal, Mapping) else {}
    findings = diagnosis.get("photo_findings") if isinstance(diagnosis.get("photo_findings"), list) else []
    quality = photo_quality if isinstance(photo_quality, Mapping) else diagnosis.get("quality") or {}
    grade = _quality_grade(quality)
    features = _quality_feature_snapshot(quality)
    base = {
        "provider": CV_PROVIDER,
        "model_name": "cv_ruleset",
        "model_version": model_version or "v1",
        "quality_features": features,
        "attempts": 1,
    }
    if not findings:
        return {
            **base,
            "ok": False,
            "concerns": [],
            "latency_ms": _elapsed_ms(started),
            "provider_status_code": 204,
            "failure_reason": "NO_FINDINGS",
        }
    concerns = [
        concern
        for concern in (
            _map_finding_to_concern(
                finding,
                index=index,
                quality_grade=grade,
                quality_features=features,
                skin_bbox=internal.get("skin_bbox_norm"),
            )
            for index, finding in enumerate(findings)
        )
        if concern is not None
    ]
    out = {
        **base,
        "ok": bool(concerns),
        "concerns": concerns,
        "latency_ms": _elapsed_ms(started),
        "provider_status_code": 200 if concerns else 422,
    }
    if not concerns:
        out["failure_reason"] = "NO_VALID_FINDINGS"
    return out


def _summarize_schema_error(detail: Any) -> Optional[str]:
    if isinstance(detail, ValidationError):
        raw = json.dumps(detail.errors(include_url=False, include_input=False), default=str)
    elif isinstance(detail, str):
        raw = detail
    else:
        raw = json.dumps(detail, default=str) if detail is not None else ""
    raw = re.sub(r"\s+", " ", raw).strip()
    return raw[:SCHEMA_SUMMARY_CHARS] or None


def _coerce_payload(raw: Any) -> Dict[str, Any]:
    """Accept a dict or JSON text (optionally wrapped in prose)."""
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    text = str(raw or "").strip()
    match = _JSON_OBJECT_RE.search(text)
    for candidate in [text] + ([match.group(0)] if match else []):
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise ProviderSchemaError("response_not_json_object")


def parse_provider_payload(raw: Any) -> ProviderPayload:
    payload = _coerce_payload(raw)
    try:
        return ProviderPayload.model_validate(payload)
    except ValidationError as exc:
        raise ProviderSchemaError(_summarize_schema_error(exc)) from exc


def _provider_executor() -> concurrent.futures.ThreadPoolExecutor:
    global _PROVIDER_EXECUTOR
    with _PROVIDER_EXECUTOR_LOCK:
        if _PROVIDER_EXECUTOR is None:
            _PROVIDER_EXECUTOR = concurrent.futures.ThreadPoolExecutor(
                max_workers=_env_int("DIAG_PROVIDER_MAX_WORKERS", DEFAULT_PROVIDER_MAX_WORKERS, minimum=1, maximum=64),
                thread_name_prefix="diag-provider",
            )
        return _PROVIDER_EXECUTOR


def _call_with_timeout(fn: Callable[[], Any], timeout_s: float) -> Any:
    # Shared bounded pool; hung adapters occupy at most max_workers threads.
    future = _provider_executor().submit(fn)
    try:
        return future.result(timeout=timeout_s)
    except concurrent.futures.TimeoutError:
        future.cancel()
        raise


def run_vision_provider(
    adapter: Optional[ProviderAdapter],
    *,
    provider: str,
    model_name: str,
    image: Optional[bytes],
    photo_quality: Optional[Mapping[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    retries: int = 1,
    timeout_ms: int = 12000,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """Call a vision-language adapter with retries, backoff and a per-attempt timeout.

    Schema failures return immediately without retrying. Any other exception is
    retried with ``0.2s * 2**attempt`` backoff; the last one is classified into
    the ``VISION_*`` taxonomy.
    """
    started = time.monotonic()
    features = _quality_feature_snapshot(photo_quality)
    grade = _quality_grade(photo_quality)
    image_len = len(image) if isinstance(image, (bytes, bytearray)) else 0
    base: Dict[str, Any] = {
        "provider": provider,
        "model_name": model_name,
        "model_version": "v1",
        "quality_features": features,
        "image_bytes_len": image_len,
    }

    def _failed(**fields: Any) -> Dict[str, Any]:
        return {**base, "ok": False, "concerns": [], "latency_ms": _elapsed_ms(started), **fields}

    if adapter is None:
        return _failed(
            attempts=0,
            provider_status_code=401,
            failure_reason=VISION_MISSING_KEY,
            http_status_class="4xx",
            error_class="MISSING_API_KEY",
            response_bytes_len=0,
        )
    if not image_len:
        return _failed(
            attempts=0,
            provider_status_code=400,
            failure_reason=VISION_IMAGE_INVALID,
            http_status_class="4xx",
            error_class="MISSING_IMAGE",
            response_bytes_len=0,
        )

    call_context = dict(context or {})
    call_context.setdefault("quality_grade", grade)
    attempts = max(1, int(retries) + 1)
    last_error: Optional[BaseException] = None
    for attempt in range(attempts):
        try:
            raw = _call_with_timeout(lambda: adapter(bytes(image), call_context), max(0.001, timeout_ms / 1000.0))
            response_len = len(raw.encode("utf-8")) if isinstance(raw, str) else len(json.dumps(raw, default=str).encode("utf-8"))
            payload = parse_provider_payload(raw)
        except ProviderSchemaError as exc:
            return _failed(
                attempts=attempt + 1,
                provider_status_code=200,
                failure_reason=VISION_SCHEMA_INVALID,
                verify_fail_reason=VERIFY_SCHEMA_INVALID,
                schema_failed=True,
                schema_error_summary=exc.summary,
                http_status_class="2xx",
                error_class="SCHEMA_INVALID",
            )
        except Exception as exc:  # noqa: BLE001
            last_error = exc
            logger.debug("Provider %s attempt %s failed: %s", provider, attempt + 1, exc)
            if attempt < attempts - 1:
                sleep_fn(BACKOFF_BASE_SECONDS * (2**attempt))
            continue

        concerns: List[Dict[str, Any]] = []
        for index, concern in enumerate(payload.model_dump(exclude_none=True)["concerns"]):
            normalized = _normalize_provider_concern(
                concern,
                provider=provider,
                index=index,
                quality_grade=grade,
                provider_quality_features=features,
            )
            if normalized is not None:
                concerns.append(normalized)
        out = {
            **base,
            "ok": True,
            "concerns": concerns,
            "flags": list(payload.flags or []),
            "latency_ms": _elapsed_ms(started),
            "attempts": attempt + 1,
            "provider_status_code": 200,
            "http_status_class": "2xx",
            "response_bytes_len": response_len,
        }
        if payload.review:
            out["review"] = payload.review
        return out

    failure = _classify_provider_failure(last_error or RuntimeError("provider_call_failed"))
    logger.warning("Provider %s failed after %s attempts: %s", provider, attempts, failure.reason)
    out = _failed(
        attempts=attempts,
        failure_reason=failure.reason,
        http_status_class=failure.status_class,
        error_class=failure.error_class,
        response_bytes_len=failure.response_bytes_len,
    )
    if failure.status_code is not None:
        out["provider_status_code"] = failure.status_code
    return out
