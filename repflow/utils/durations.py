from __future__ import annotations

import re
from datetime import timedelta
from typing import Union

_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}
_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d|w)\s*$")

Duration = Union[str, int, float, timedelta]


def parse_duration(value: Duration) -> float:
    """Convert ``"30s"``, ``"5m"``, ``"3d"``, numbers or timedeltas to seconds."""
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value}")
        return float(value)
    match = _PATTERN.match(value)
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _UNITS[unit]
