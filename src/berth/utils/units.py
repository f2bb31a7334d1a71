"""Parsing of human-readable durations and sizes."""

import re
from typing import Any, Optional


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|ms|s|m|h)")
_DURATION_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_SIZE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgtp]?)(i?b?)\s*$", re.IGNORECASE)
_SIZE_POWERS = {"": 0, "k": 1, "m": 2, "g": 3, "t": 4, "p": 5}


def parse_duration(value: Any) -> Optional[float]:
    """Parse a Compose duration (``30s``, ``1m30s``, ``1500ms``) into seconds.

    Bare numbers are taken as seconds. Returns None for anything unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip()
    if not text:
        return None
    if re.fullmatch(r"\d+(?:\.\d+)?", text):
        return float(text)

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            return None
        total += float(match.group(1)) * _DURATION_SECONDS[match.group(2)]
        position = match.end()
    if position != len(text):
        return None
    return total


def duration_to_ms(value: Any) -> Optional[int]:
    """Parse a duration into whole milliseconds."""
    seconds = parse_duration(value)
    if seconds is None:
        return None
    return int(round(seconds * 1000))


def parse_size(value: Any, binary: bool = True) -> Optional[int]:
    """Parse a size such as ``512m``, ``1g`` or ``12.5MiB`` into bytes.

    Compose and the Docker CLI use binary multiples for single-letter units;
    ``binary=False`` switches to decimal multiples, which is what
    ``docker stats`` prints for ``kB``/``MB``/``GB``.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)

    match = _SIZE.match(str(value))
    if not match:
        return None
    number, unit, suffix = match.groups()
    base = 1024 if binary or suffix.lower().startswith("i") else 1000
    return int(float(number) * base ** _SIZE_POWERS[unit.lower()])
