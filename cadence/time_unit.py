from __future__ import annotations

import enum
from typing import Optional, Tuple


class TimeUnit(enum.Enum):
    MILLISECONDS = "milliseconds"
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"

    def to_millis(self, value: int) -> int:
        return value * _MILLIS_PER_UNIT[self]

    @property
    def suffix(self) -> str:
        return _UNIT_SUFFIX[self]


_MILLIS_PER_UNIT = {
    TimeUnit.MILLISECONDS: 1,
    TimeUnit.SECONDS: 1000,
    TimeUnit.MINUTES: 60_000,
    TimeUnit.HOURS: 3_600_000,
    TimeUnit.DAYS: 86_400_000,
}
SUFFIX_TO_UNIT = {
    "ms": TimeUnit.MILLISECONDS,
    "s": TimeUnit.SECONDS,
    "m": TimeUnit.MINUTES,
    "h": TimeUnit.HOURS,
    "d": TimeUnit.DAYS,
}
_UNIT_SUFFIX = {unit: suffix for suffix, unit in SUFFIX_TO_UNIT.items()}
_SUFFIX_HINTS = {
    "sec": "s",
    "second": "s",
    "seconds": "s",
    "min": "m",
    "minute": "m",
    "minutes": "m",
    "hr": "h",
    "hour": "h",
    "hours": "h",
    "day": "d",
    "days": "d",
    "millis": "ms",
    "millisecond": "ms",
    "milliseconds": "ms",
}


def to_millis(unit: TimeUnit, value: int) -> int:
    return unit.to_millis(value)


def _split_digits(text: str) -> Tuple[str, str]:
    pos = 0
    while pos < len(text) and text[pos] in "0123456789":
        pos += 1
    return text[:pos], text[pos:]


def parse_duration(value: str) -> Optional[Tuple[int, TimeUnit]]:
    """Parse shorthand like "500ms", "5s", "10m", "2h" or "7d".

    Only the lowercase suffixes are accepted; "5S", "5Sec" and "5MIN" are
    rejected rather than normalised.
    """
    digits, suffix = _split_digits(value)
    if not digits or not suffix:
        return None
    unit = SUFFIX_TO_UNIT.get(suffix)
    if unit is None:
        return None
    return int(digits), unit


def parse_unit_name(value: str) -> Optional[TimeUnit]:
    try:
        return TimeUnit(value.strip().lower())
    except ValueError:
        return None


def has_time_suffix(value: str) -> bool:
    return parse_duration(value) is not None


def describe_suffix_error(value: str) -> str:
    digits, suffix = _split_digits(value.strip())
    if not digits or not suffix:
        return f'"{value}" is not <digits><suffix>; valid suffixes: ms, s, m, h, d'
    if any(ch.isupper() for ch in suffix) and suffix.lower() in SUFFIX_TO_UNIT:
        return f'suffix "{suffix}" must be lowercase; use "{digits}{suffix.lower()}"'
    hint = _SUFFIX_HINTS.get(suffix.lower())
    if hint is not None:
        return f'invalid suffix "{suffix}"; did you mean "{digits}{hint}"?'
    return f'invalid suffix "{suffix}"; valid suffixes: ms, s, m, h, d'
