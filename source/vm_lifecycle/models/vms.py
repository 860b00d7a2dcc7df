from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .disks import DiskFormat, DiskRecord, disk_key


class VMState(str, Enum):
    stopped = "stopped"
    running = "running"


@dataclass
class DiskRef:
    """
    Value snapshot of the disk backing a VM.

    Launching only needs the resolved path, so the VM keeps its own copy
    instead of a live pointer into the disk index.
    """

    name: str
    format: DiskFormat
    path: str
    size_bytes: int

    @property
    def key(self) -> str:
        return disk_key(self.name, self.format)

    @staticmethod
    def from_disk(disk: DiskRecord) -> "DiskRef":
        return DiskRef(
            name=disk.name,
            format=disk.format,
            path=disk.path,
            size_bytes=disk.size_bytes,
        )


@dataclass
class VMRecord:
    id: str
    name: str
    cpu_cores: int
    memory_mb: int
    disk: DiskRef
    iso_path: str
    status: VMState = VMState.stopped
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    last_started: float | None = None


class VMCreate(BaseModel):
    name: str = Field(min_length=1)
    cpu_cores: int = Field(ge=1, json_schema_extra={"example": 2})
    memory_mb: int = Field(ge=1, json_schema_extra={"example": 2048})
    disk_name: str = Field(min_length=1)
    disk_format: DiskFormat
    iso_path: str = Field(min_length=1)


class VMUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(None, min_length=1)
    cpu_cores: int | None = Field(None, ge=1)
    memory_mb: int | None = Field(None, ge=1)


class LaunchSpec(BaseModel):
    cpu_cores: int
    memory_mb: int
    disk_path: str
    disk_format: DiskFormat
    iso_path: str
    display_mode: str = "sdl"
    log_path: str | None = None


class VMOut(BaseModel):
    id: str
    name: str
    cpu_cores: int
    memory_mb: int
    disk_name: str
    disk_format: DiskFormat
    disk_path: str
    disk_size_bytes: int
    iso_path: str
    status: VMState
    created_at: float
    updated_at: float
    last_started: float | None = None

    @staticmethod
    def from_record(vm: VMRecord) -> "VMOut":
        return VMOut(
            id=vm.id,
            name=vm.name,
            cpu_cores=vm.cpu_cores,
            memory_mb=vm.memory_mb,
            disk_name=vm.disk.name,
            disk_format=vm.disk.format,
            disk_path=vm.disk.path,
            disk_size_bytes=vm.disk.size_bytes,
            iso_path=vm.iso_path,
            status=vm.status,
            created_at=vm.created_at,
            updated_at=vm.updated_at,
            last_started=vm.last_started,
        )
