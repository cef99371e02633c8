"""Error helpers and provider failure taxonomy."""

from __future__ import annotations

import concurrent.futures
import re
from dataclasses import dataclass
from typing import Any, Optional

VISION_MISSING_KEY = "VISION_MISSING_KEY"
VISION_TIMEOUT = "VISION_TIMEOUT"
VISION_NETWORK_ERROR = "VISION_NETWORK_ERROR"
VISION_RATE_LIMITED = "VISION_RATE_LIMITED"
VISION_QUOTA_EXCEEDED = "VISION_QUOTA_EXCEEDED"
VISION_UPSTREAM_4XX = "VISION_UPSTREAM_4XX"
VISION_UPSTREAM_5XX = "VISION_UPSTREAM_5XX"
VISION_IMAGE_INVALID = "VISION_IMAGE_INVALID"
VISION_SCHEMA_INVALID = "VISION_SCHEMA_INVALID"
VISION_UNKNOWN = "VISION_UNKNOWN"

VERIFY_TIMEOUT = "TIMEOUT"
VERIFY_RATE_LIMIT = "RATE_LIMIT"
VERIFY_QUOTA = "QUOTA"
VERIFY_UPSTREAM_4XX = "UPSTREAM_4XX"
VERIFY_UPSTREAM_5XX = "UPSTREAM_5XX"
VERIFY_SCHEMA_INVALID = "SCHEMA_INVALID"
VERIFY_IMAGE_FETCH_FAILED = "IMAGE_FETCH_FAILED"
VERIFY_NETWORK_ERROR = "NETWORK_ERROR"
VERIFY_UNKNOWN = "UNKNOWN"

_NETWORK_ERROR_CODES = {"ENOTFOUND", "EAI_AGAIN", "ECONNRESET", "ECONNREFUSED", "EHOSTUNREACH", "EPROTO"}
_TIMEOUT_TEXT = re.compile(r"timed out|timeout|econnaborted|etimedout")
_NETWORK_TEXT = re.compile(r"enotfound|eai_again|dns|socket hang up|tls|certificate|self signed")
_AUTH_TEXT = re.compile(r"api key|credential|permission|forbidden|auth")
_RATE_LIMIT_TEXT = re.compile(r"rate.?limit")


class ProviderCallError(Exception):
    """Raised by provider adapters; carries what the failure classifier inspects."""

    def __init__(
        self,
        message: str = "",
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        response_body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.response_body = response_body


@dataclass(frozen=True)
class ProviderFailure:
    reason: str
    status_code: Optional[int]
    status_class: str
    error_class: str
    response_bytes_len: int = 0


def _contains_quota_hint(text: str) -> bool:
    token = str(text or "").lower()
    return any(hint in token for hint in ("quota", "insufficient_quota", "resource_exhausted", "billing", "monthly limit"))


def _contains_image_invalid_hint(text: str) -> bool:
    token = str(text or "").lower()
    return any(
        hint in token
        for hint in ("image", "mime", "invalid argument", "too large", "decode", "corrupt")
    )


def _infer_http_status_class(status_code: Optional[int], reason: str = "") -> str:
    code = int(status_code or 0)
    if "TIMEOUT" in str(reason or "").upper():
        return "timeout"
    if 200 <= code < 300:
        return "2xx"
    if 400 <= code < 500:
        return "4xx"
    if 500 <= code < 600:
        return "5xx"
    return "unknown"


def _extract_status_code(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        try:
            numeric = int(value)
        except (TypeError, ValueError):
            continue
        if numeric > 0:
            return numeric
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    try:
        numeric = int(value)
    except (TypeError, ValueError):
        return None
    return numeric if numeric > 0 else None


def _classify_provider_failure(exc: BaseException) -> ProviderFailure:
    """Map a provider exception onto the ``VISION_*`` taxonomy.

    Priority: timeout, network, auth, rate/quota, status-code bands, then
    keyword fallback over the message and response body.
    """
    status_code = _extract_status_code(exc)
    error_code = str(getattr(exc, "code", "") or "").strip()
    error_name = type(exc).__name__
    body = getattr(exc, "response_body", None)
    if body is None:
        response = getattr(exc, "response", None)
        body = getattr(response, "text", None)
    response_body = str(body or "")
    text = f"{exc} {response_body}".strip().lower()

    is_timeout = (
        isinstance(exc, (TimeoutError, concurrent.futures.TimeoutError))
        or error_code == "ETIMEDOUT"
        or bool(_TIMEOUT_TEXT.search(text))
    )
    is_network = (
        error_code in _NETWORK_ERROR_CODES
        or isinstance(exc, ConnectionError)
        or bool(_NETWORK_TEXT.search(text))
    )

    reason = VISION_UNKNOWN
    if is_timeout or status_code == 408:
        reason = VISION_TIMEOUT
    elif is_network:
        reason = VISION_NETWORK_ERROR
    elif status_code == 401:
        reason = VISION_MISSING_KEY
    elif status_code == 403:
        reason = VISION_MISSING_KEY if _AUTH_TEXT.search(text) else VISION_UPSTREAM_4XX
    elif status_code == 429:
        reason = VISION_QUOTA_EXCEEDED if _contains_quota_hint(text) else VISION_RATE_LIMITED
    elif status_code is not None and status_code >= 500:
        reason = VISION_UPSTREAM_5XX
    elif status_code is not None and status_code >= 400:
        reason = VISION_IMAGE_INVALID if _contains_image_invalid_hint(text) else VISION_UPSTREAM_4XX
    elif _contains_quota_hint(text):
        reason = VISION_QUOTA_EXCEEDED
    elif _RATE_LIMIT_TEXT.search(text):
        reason = VISION_RATE_LIMITED
    elif _contains_image_invalid_hint(text):
        reason = VISION_IMAGE_INVALID

    return ProviderFailure(
        reason=reason,
        status_code=status_code,
        status_class=_infer_http_status_class(status_code, reason),
        error_class=error_code or error_name or "UNKNOWN_ERROR",
        response_bytes_len=len(response_body.encode("utf-8")) if response_body else 0,
    )


def _normalize_http_status_class(value: Any, fallback_reason: str = "") -> str:
    token = str(value if value is not None else "").strip().lower()
    if token in {"2xx", "4xx", "5xx", "timeout", "unknown"}:
        return token
    try:
        code = int(float(token))
    except (TypeError, ValueError):
        code = 0
    if 200 <= code < 300:
        return "2xx"
    if 400 <= code < 500:
        return "4xx"
    if 500 <= code < 600:
        return "5xx"
    if "TIMEOUT" in str(fallback_reason or "").upper():
        return "timeout"
    return "unknown"


def _normalize_verify_fail_reason(
    reason: Any = None,
    *,
    provider_status_code: Any = None,
    http_status_class: Any = None,
    error_class: Any = None,
) -> str:
    """Collapse any provider-level reason into the bounded verify reason set."""
    try:
        status_code = int(provider_status_code or 0)
    except (TypeError, ValueError):
        status_code = 0
    status_class = str(http_status_class or "").strip().lower()
    error_token = str(error_class or "").strip().upper()
    token = str(reason or "").strip().upper()

    if not token:
        if status_code == 429:
            return VERIFY_RATE_LIMIT
        if status_code >= 500:
            return VERIFY_UPSTREAM_5XX
        if status_code >= 400:
            return VERIFY_UPSTREAM_4XX
        return VERIFY_UNKNOWN

    if "TIMEOUT" in token or token == "ETIMEDOUT":
        return VERIFY_TIMEOUT
    if "QUOTA" in token:
        return VERIFY_QUOTA
    if "RATE_LIMIT" in token or status_code == 429:
        return VERIFY_RATE_LIMIT
    if "SCHEMA_INVALID" in token:
        return VERIFY_SCHEMA_INVALID
    if any(hint in token for hint in ("MISSING_IMAGE", "IMAGE_FETCH", "PHOTO_DOWNLOAD", "VISION_IMAGE_INVALID")):
        return VERIFY_IMAGE_FETCH_FAILED
    if token == VERIFY_NETWORK_ERROR or "VISION_NETWORK_ERROR" in token or "DNS" in token:
        return VERIFY_NETWORK_ERROR
    if "UPSTREAM_5XX" in token or status_code >= 500:
        return VERIFY_UPSTREAM_5XX
    if "UPSTREAM_4XX" in token or "VISION_MISSING_KEY" in token or status_code >= 400:
        return VERIFY_UPSTREAM_4XX
    if status_class == "5xx":
        return VERIFY_UPSTREAM_5XX
    if status_class == "4xx":
        return VERIFY_UPSTREAM_4XX
    if any(hint in error_token for hint in ("TIMEOUT", "ETIMEDOUT", "ECONNABORTED", "DEADLINE_EXCEEDED")):
        return VERIFY_TIMEOUT
    if "RATE_LIMIT" in error_token or "TOO_MANY_REQUESTS" in error_token:
        return VERIFY_RATE_LIMIT
    if "QUOTA" in error_token or "RESOURCE_EXHAUSTED" in error_token:
        return VERIFY_QUOTA
    if any(
        hint in error_token
        for hint in ("PERMISSION_DENIED", "UNAUTHENTICATED", "INVALID_ARGUMENT", "FAILED_PRECONDITION", "FORBIDDEN")
    ):
        return VERIFY_UPSTREAM_4XX
    if any(hint in error_token for hint in ("UNAVAILABLE", "INTERNAL")):
        return VERIFY_UPSTREAM_5XX
    if any(
        hint in error_token
        for hint in ("NETWORK", "ENOTFOUND", "EAI_AGAIN", "ECONNRESET", "ECONNREFUSED", "FETCH_FAILED", "DNS")
    ):
        return VERIFY_NETWORK_ERROR
    if "REQUEST_FAILED" in token or "SERVICE_UNAVAILABLE" in token or "MISSING_DEP" in error_token:
        return VERIFY_UPSTREAM_5XX
    return VERIFY_UNKNOWN
