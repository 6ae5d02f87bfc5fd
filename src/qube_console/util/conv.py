from __future__ import annotations

from typing import Any


def coerce_int(value: Any, *, default: int, min_value: int, max_value: int) -> int:
    """Coerce a loosely-typed settings value into an int clamped to [min_value, max_value]."""
    try:
        n = int(value)
    except Exception:
        n = int(default)
    if n < min_value:
        n = min_value
    if n > max_value:
        n = max_value
    return n
