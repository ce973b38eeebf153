from __future__ import annotations

from typing import Any


def clamp_int(value: Any, minimum: int, maximum: int, *, default: int) -> int:
    if isinstance(value, bool):
        parsed = int(default)
    else:
        try:
            parsed = int(value)
        except Exception:
            parsed = int(default)
    return max(int(minimum), min(int(maximum), parsed))


def clamp_float(value: Any, minimum: float, maximum: float, *, default: float) -> float:
    try:
        parsed = float(value)
    except Exception:
        parsed = float(default)
    if parsed != parsed:
        parsed = float(default)
    return max(float(minimum), min(float(maximum), parsed))


def clamp_unit(value: Any, *, default: float = 0.0) -> float:
    return clamp_float(value, 0.0, 1.0, default=default)


def clean_text(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()
