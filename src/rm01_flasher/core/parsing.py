"""
Centralized parsing helpers for command-line values.

The CLI imports these rather than re-implementing them.
"""

import re
from typing import Optional

_UNITS = {
    "": 1,
    "b": 1,
    "k": 1024, "kb": 1024, "kib": 1024,
    "m": 1024 ** 2, "mb": 1024 ** 2, "mib": 1024 ** 2,
    "g": 1024 ** 3, "gb": 1024 ** 3, "gib": 1024 ** 3,
    "t": 1024 ** 4, "tb": 1024 ** 4, "tib": 1024 ** 4,
}

_CAPACITY = re.compile(r"^(?P<number>\d+(?:\.\d+)?)\s*(?P<unit>[a-z]*)$")


def parse_capacity(value: Optional[str]) -> int:
    """
    Parse a storage capacity into bytes.

    Units are binary, as lsblk reports them.

    Accepts:
        - Plain bytes: "274877906944"
        - With unit: "256G", "256GiB", "256gb", "1T", "0.5T"

    Raises:
        ValueError: If value cannot be parsed.
    """
    text = (value or "").strip().lower()
    match = _CAPACITY.match(text)
    if not match or match.group("unit") not in _UNITS:
        raise ValueError(
            f"Invalid capacity '{value}'. Use bytes (274877906944) or a unit (256G, 1T)."
        )
    return int(float(match.group("number")) * _UNITS[match.group("unit")])


def parse_port(value: Optional[str]) -> Optional[str]:
    """
    Normalize a serial port argument.

    Accepts a full path ("/dev/ttyACM0") or a bare device name ("ttyACM0").
    Returns None for empty input.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if value.startswith("/") or value.upper().startswith("COM"):
        return value
    return f"/dev/{value}"
