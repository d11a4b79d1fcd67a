"""Duration parsing for CLI and config values."""

from __future__ import annotations

import math


def parse_duration(value: str | float | int) -> float:
    """Parse a duration (e.g., '250ms', '30', '30s', '5m', '1h') to seconds."""
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.lower().strip()
        if not text:
            raise ValueError("Empty duration")
        multipliers = {
            "ms": 0.001,
            "s": 1.0,
            "m": 60.0,
            "h": 3600.0,
        }
        seconds = None
        # "ms" must be checked before "s" and "m"
        for suffix in ("ms", "s", "m", "h"):
            if text.endswith(suffix):
                seconds = float(text[: -len(suffix)].strip()) * multipliers[suffix]
                break
        if seconds is None:
            seconds = float(text)

    if not math.isfinite(seconds) or seconds <= 0:
        raise ValueError(f"Duration must be positive and finite, got {value!r}")
    return seconds
