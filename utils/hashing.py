"""Hashing helpers."""

from __future__ import annotations

import hashlib


def _hash_token(value: object, *, length: int = 24) -> str:
    text = str(value or "").strip()
    if not text:
        return ""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:length]


def _stable_unit_interval(seed: str) -> float:
    """Map ``seed`` to [0, 1] using the first four bytes of its sha256 digest."""
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") / 0xFFFFFFFF
