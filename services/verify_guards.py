"""Call guards for the shadow verifier: budget windows, circuit breakers and an in-flight limiter.

Each guard owns its state and a lock so independent instances can be created
per service (and per test). ``VerifyGuards`` bundles one of each.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from utils.errors import VERIFY_UPSTREAM_4XX, VERIFY_UPSTREAM_5XX
from utils.parsing import _clamp01, _round3

VERIFY_GUARD_REASON = "VERIFY_BUDGET_GUARD"
VERIFY_CIRCUIT_REASON = "VERIFY_CIRCUIT_OPEN_UPSTREAM_5XX"
VERIFY_AUTH_CIRCUIT_REASON = "VERIFY_CIRCUIT_OPEN_AUTH_4XX"
VERIFY_INFLIGHT_GUARD_REASON = "VERIFY_INFLIGHT_GUARD"

MINUTE_MS = 60_000


def _now_ms() -> int:
    return int(time.time() * 1000)


def _utc_day_key(now_ms: int) -> str:
    return datetime.fromtimestamp(now_ms / 1000.0, tz=timezone.utc).strftime("%Y-%m-%d")


class BudgetGuard:
    """Per-UTC-minute and per-UTC-day call ceilings; a limit of 0 means unlimited."""

    def __init__(self, clock: Callable[[], int] = _now_ms) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._minute_window = 0
        self._minute_count = 0
        self._day_key = ""
        self._day_count = 0

    def reset(self) -> None:
        with self._lock:
            self._minute_window = 0
            self._minute_count = 0
            self._day_key = ""
            self._day_count = 0

    def _roll_windows(self, now_ms: int) -> None:
        minute_window = (now_ms // MINUTE_MS) * MINUTE_MS
        if minute_window != self._minute_window:
            self._minute_window = minute_window
            self._minute_count = 0
        day_key = _utc_day_key(now_ms)
        if day_key != self._day_key:
            self._day_key = day_key
            self._day_count = 0

    def reserve(self, *, max_per_minute: int, max_per_day: int, now_ms: Optional[int] = None) -> Dict[str, Any]:
        """Admit one call when both windows are below their ceilings, then count it."""
        limit_min = max(0, int(max_per_minute or 0))
        limit_day = max(0, int(max_per_day or 0))
        with self._lock:
            self._roll_windows(self._clock() if now_ms is None else int(now_ms))
            blocked = (limit_min > 0 and self._minute_count >= limit_min) or (
                limit_day > 0 and self._day_count >= limit_day
            )
            if not blocked:
                self._minute_count += 1
                self._day_count += 1
            usage = {
                "minute_count": self._minute_count,
                "minute_limit": limit_min,
                "day_count": self._day_count,
                "day_limit": limit_day,
            }
        return {"allowed": not blocked, "reason": VERIFY_GUARD_REASON if blocked else None, "usage": usage}


class UpstreamCircuit:
    """Opens for ``cooldown_ms`` after ``threshold`` consecutive upstream 5xx failures."""

    def __init__(self, clock: Callable[[], int] = _now_ms) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._consecutive = 0
        self._open_until = 0
        self._last_opened = 0

    def reset(self) -> None:
        with self._lock:
            self._consecutive = 0
            self._open_until = 0
            self._last_opened = 0

    def _snapshot(self, now_ms: int, threshold: int, cooldown_ms: int) -> Dict[str, Any]:
        is_open = self._open_until > now_ms
        return {
            "is_open": is_open,
            "open_until_ms": self._open_until,
            "remaining_ms": max(0, self._open_until - now_ms) if is_open else 0,
            "consecutive_5xx": self._consecutive,
            "threshold": max(1, int(threshold)),
            "cooldown_ms": max(1000, int(cooldown_ms)),
        }

    def snapshot(self, *, threshold: int = 3, cooldown_ms: int = 90_000, now_ms: Optional[int] = None) -> Dict[str, Any]:
        with self._lock:
            return self._snapshot(self._clock() if now_ms is None else int(now_ms), threshold, cooldown_ms)

    def record(
        self,
        verify_fail_reason: Optional[str],
        *,
        enabled: bool = True,
        threshold: int = 3,
        cooldown_ms: int = 90_000,
        now_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Count the outcome of one attempted call; returns ``{opened_now, snapshot}``."""
        now = self._clock() if now_ms is None else int(now_ms)
        safe_threshold = max(1, int(threshold))
        safe_cooldown = max(1000, int(cooldown_ms))
        opened = False
        with self._lock:
            if not enabled:
                self._consecutive = self._open_until = self._last_opened = 0
            elif verify_fail_reason == VERIFY_UPSTREAM_5XX:
                self._consecutive += 1
                if self._consecutive >= safe_threshold:
                    self._open_until = now + safe_cooldown
                    self._last_opened = now
                    self._consecutive = 0
                    opened = True
            else:
                self._consecutive = 0
            snapshot = self._snapshot(now, safe_threshold, safe_cooldown)
        return {"opened_now": opened, "snapshot": snapshot}


class AuthCircuit:
    """Opens when the 401/403 rate inside a fixed window exceeds ``threshold`` after ``min_samples`` attempts."""

    def __init__(self, clock: Callable[[], int] = _now_ms) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._window_start = 0
        self._total = 0
        self._failures = 0
        self._open_until = 0
        self._last_opened = 0

    def reset(self) -> None:
        with self._lock:
            self._window_start = 0
            self._total = 0
            self._failures = 0
            self._open_until = 0
            self._last_opened = 0

    def _roll_window(self, now_ms: int, window_ms: int) -> None:
        safe_window = max(60_000, int(window_ms))
        start = (now_ms // safe_window) * safe_window
        if start != self._window_start:
            self._window_start = start
            self._total = 0
            self._failures = 0

    def _snapshot(self, now_ms: int, threshold: float, cooldown_ms: int, window_ms: int, min_samples: int) -> Dict[str, Any]:
        is_open = self._open_until > now_ms
        rate = self._failures / self._total if self._total > 0 else 0.0
        return {
            "is_open": is_open,
            "open_until_ms": self._open_until,
            "remaining_ms": max(0, self._open_until - now_ms) if is_open else 0,
            "fail_rate": _round3(rate),
            "total_attempts": self._total,
            "auth_failures": self._failures,
            "threshold": _clamp01(threshold),
            "min_samples": max(1, int(min_samples)),
            "window_ms": max(60_000, int(window_ms)),
            "cooldown_ms": max(10_000, int(cooldown_ms)),
        }

    def snapshot(
        self,
        *,
        threshold: float = 0.01,
        cooldown_ms: int = 600_000,
        window_ms: int = 600_000,
        min_samples: int = 20,
        now_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        now = self._clock() if now_ms is None else int(now_ms)
        with self._lock:
            self._roll_window(now, window_ms)
            return self._snapshot(now, threshold, cooldown_ms, window_ms, min_samples)

    def record(
        self,
        verify_fail_reason: Optional[str],
        provider_status_code: Any,
        *,
        enabled: bool = True,
        threshold: float = 0.01,
        cooldown_ms: int = 600_000,
        window_ms: int = 600_000,
        min_samples: int = 20,
        now_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        now = self._clock() if now_ms is None else int(now_ms)
        opened = False
        try:
            status_code = int(provider_status_code or 0)
        except (TypeError, ValueError):
            status_code = 0
        with self._lock:
            if not enabled:
                self._window_start = self._total = self._failures = self._open_until = self._last_opened = 0
            else:
                self._roll_window(now, window_ms)
                self._total += 1
                if verify_fail_reason == VERIFY_UPSTREAM_4XX and status_code in (401, 403):
                    self._failures += 1
                rate = self._failures / self._total
                if self._open_until <= now and self._total >= max(1, int(min_samples)) and rate > _clamp01(threshold):
                    self._open_until = now + max(10_000, int(cooldown_ms))
                    self._last_opened = now
                    opened = True
            snapshot = self._snapshot(now, threshold, cooldown_ms, window_ms, min_samples)
        return {"opened_now": opened, "snapshot": snapshot}


class InflightLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    def reset(self) -> None:
        with self._lock:
            self._count = 0

    def acquire(self, max_inflight: int) -> bool:
        """Take a slot unless ``max_inflight`` (> 0) slots are already taken."""
        limit = max(0, int(max_inflight or 0))
        with self._lock:
            if limit > 0 and self._count >= limit:
                return False
            self._count += 1
            return True

    def release(self) -> None:
        with self._lock:
            self._count = max(0, self._count - 1)


@dataclass
class VerifyGuards:
    budget: BudgetGuard = field(default_factory=BudgetGuard)
    upstream_circuit: UpstreamCircuit = field(default_factory=UpstreamCircuit)
    auth_circuit: AuthCircuit = field(default_factory=AuthCircuit)
    inflight: InflightLimiter = field(default_factory=InflightLimiter)

    def reset(self) -> None:
        self.budget.reset()
        self.upstream_circuit.reset()
        self.auth_circuit.reset()
        self.inflight.reset()
