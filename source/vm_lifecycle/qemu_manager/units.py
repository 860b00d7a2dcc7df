"""
Disk size parsing and normalization.

Sizes reach the image tool in exactly one unit: whole gibibytes with an
explicit ``G`` suffix. Accepted inputs:

- ``10`` or ``"10"``: bare numbers are gibibytes, whatever their type
- ``"1536M"``, ``"20G"``, ``"1TiB"``, ``"2097152KB"``: binary units
- ``"1073741824B"``: bytes

Anything smaller than one gibibyte is rejected rather than rounded up.
"""

import math
import re

from ..models.disks import GIB

_UNITS = {"K": 1024, "M": 1024**2, "G": GIB, "T": 1024**4}
_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?)(I?B)?\s*$", re.IGNORECASE)


def parse_size(value: int | float | str) -> int:
    """Return the size in bytes, raising ValueError for anything unparseable."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid size: {value!r}")
    if isinstance(value, (int, float)):
        size = int(value * GIB)
    else:
        match = _SIZE_RE.match(str(value))
        if not match:
            raise ValueError(f"Invalid size: {value!r}")
        number, unit, suffix = match.groups()
        if unit:
            multiplier = _UNITS[unit.upper()]
        elif suffix:
            multiplier = 1
        else:
            multiplier = GIB
        size = int(float(number) * multiplier)
    if size <= 0:
        raise ValueError(f"Size must be positive: {value!r}")
    if size < GIB:
        raise ValueError(f"Size must be at least 1G: {value!r}")
    return size


def ceil_gib(size_bytes: int) -> int:
    return max(1, math.ceil(size_bytes / GIB))


def gib_arg(size_bytes: int) -> str:
    """Byte count as the `<N>G` argument qemu-img takes, rounded up."""
    return f"{ceil_gib(size_bytes)}G"


def normalize_gib(value: int | float | str) -> str:
    """Idempotent: ``normalize_gib(normalize_gib(x)) == normalize_gib(x)``."""
    return gib_arg(parse_size(value))


def gib_to_bytes(gib: int | float) -> int:
    return int(round(gib * GIB))
