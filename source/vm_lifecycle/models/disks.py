from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel

GIB = 1024**3


class DiskFormat(str, Enum):
    qcow2 = "qcow2"
    raw = "raw"
    vdi = "vdi"
    vmdk = "vmdk"

    @classmethod
    def parse(cls, value: "str | DiskFormat | None") -> "DiskFormat | None":
        """Return the matching format, or None when the value is not supported."""
        if isinstance(value, DiskFormat):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


def disk_key(name: str, fmt: "DiskFormat | str") -> str:
    fmt_value = fmt.value if isinstance(fmt, DiskFormat) else str(fmt)
    return f"{name}.{fmt_value}"


@dataclass
class DiskRecord:
    name: str
    format: DiskFormat
    size_bytes: int
    path: str
    created_at: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return disk_key(self.name, self.format)

    @property
    def size_gib(self) -> float:
        return self.size_bytes / GIB


class DiskOut(BaseModel):
    name: str
    format: DiskFormat
    size_bytes: int
    size_gib: float
    path: str
    created_at: float

    @staticmethod
    def from_record(disk: DiskRecord) -> "DiskOut":
        return DiskOut(
            name=disk.name,
            format=disk.format,
            size_bytes=disk.size_bytes,
            size_gib=disk.size_gib,
            path=disk.path,
            created_at=disk.created_at,
        )
