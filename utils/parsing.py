from __future__ import annotations

import math
import re
from typing import Any, Optional


def _coerce_int(value: Any, fallback: int, *, minimum: Optional[int] = None) -> int:
    try:
        result = int(value)
    except (TypeError, ValueError):
        result = fallback
    if minimum is not None and result < minimum:
        result = minimum
    return result


def _coerce_float(
    value: Any,
    fallback: float,
    *,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
) -> float:
    if isinstance(value, bool):
        value = float(value)
    try:
        result = float(value)
    except (TypeError, ValueError):
        result = fallback
    if not math.isfinite(result):
        result = fallback
    if minimum is not None:
        result = max(minimum, result)
    if maximum is not None:
        result = min(maximum, result)
    return result


def _optional_float(value: Any) -> Optional[float]:
    """Return a finite float or None; empty strings and None stay None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str) and not value.strip():
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(result):
        return None
    return result


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def _clamp01(value: Any) -> float:
    return _coerce_float(value, 0.0, minimum=0.0, maximum=1.0)


def _clamp_severity(value: Any) -> float:
    return _coerce_float(value, 0.0, minimum=0.0, maximum=4.0)


def _round3(value: Any) -> float:
    return round(_coerce_float(value, 0.0) * 1000.0) / 1000.0


def _normalize_token(value: Any, fallback: str = "") -> str:
    token = str(value if value is not None else "").strip().lower()
    return token or fallback


def _parse_bool(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _safe_token(value: Any, fallback: str, *, max_length: int = 64) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._:-]", "_", str(value or "").strip())[:max_length].strip("_")
    return cleaned or fallback
