"""
Core version compatibility.

Manifests declare ``minCoreVersion`` as a floor such as ``"0.4"``,
``"0.4.x"`` or ``"v0.3.2"``; missing, ``x`` and ``*`` parts count as 0.
"""

import re

CORE_VERSION = "0.4.0"
CORE_VERSION_SERIES = "0.4.x"

_LEADING_INT = re.compile(r"^\d+")

SemverTuple = tuple[int, int, int]


def _parse_int(part: str) -> int | None:
    match = _LEADING_INT.match(part)
    return int(match.group(0)) if match else None


def parse_semver(raw: str) -> SemverTuple | None:
    normalized = raw.strip().lower().removeprefix("v")
    parts = normalized.split(".")
    if len(parts) > 3:
        return None
    numbers: list[int] = []
    for part in parts:
        value = _parse_int(part)
        if value is None:
            return None
        numbers.append(value)
    while len(numbers) < 3:
        numbers.append(0)
    return numbers[0], numbers[1], numbers[2]


def parse_minimum_floor(raw: str) -> SemverTuple | None:
    normalized = raw.strip().lower().removeprefix("v")
    if not normalized:
        return None
    parts = normalized.split(".")
    if len(parts) > 3:
        return None
    floor: list[int] = []
    for index in range(3):
        part = parts[index] if index < len(parts) else ""
        if part in ("", "x", "*"):
            floor.append(0)
            continue
        value = _parse_int(part)
        if value is None:
            return None
        floor.append(value)
    return floor[0], floor[1], floor[2]


def is_core_version_compatible(min_core_version: str | None) -> bool:
    """Return True when this core satisfies the manifest's floor.

    A blank floor is always compatible; an unparseable one never is.
    """
    raw = str(min_core_version or "").strip()
    if not raw:
        return True
    current = parse_semver(CORE_VERSION)
    floor = parse_minimum_floor(raw)
    if current is None or floor is None:
        return False
    return current >= floor
