from __future__ import annotations

import logging
import os
import threading
import time
from copy import deepcopy
from typing import Any

from pydantic import ValidationError

from ..models import (
    DiskFormat,
    DiskRecord,
    DiskRef,
    ErrorKind,
    Result,
    VMCreate,
    VMRecord,
    VMState,
    VMUpdate,
)
from .disks import DiskStore, sanitize_disk_name
from .locks import KeyedLocks, disk_lock_key, vm_lock_key
from .store import DocumentStore, StoreError

logger = logging.getLogger(__name__)


def _present(value: Any) -> bool:
    return value is not None and not (isinstance(value, str) and not value.strip())


class VMStore:
    KEY = "vms"

    def __init__(
        self,
        store: DocumentStore,
        disk_store: DiskStore,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.store = store
        self.disk_store = disk_store
        self.locks = locks or disk_store.locks
        self._index_lock = threading.Lock()
        self._records: dict[str, VMRecord] = {}
        self._last_id = 0
        self._load()
        disk_store.add_resize_listener(self.refresh_disk_snapshots)

    # ---- (de)Serialization ----
    @staticmethod
    def _to_dict(vm: VMRecord) -> dict[str, object]:
        return {
            "id": vm.id,
            "name": vm.name,
            "cpu_cores": int(vm.cpu_cores),
            "memory_mb": int(vm.memory_mb),
            "disk": {
                "name": vm.disk.name,
                "format": vm.disk.format.value,
                "path": vm.disk.path,
                "size_bytes": int(vm.disk.size_bytes),
            },
            "iso_path": vm.iso_path,
            "status": vm.status.value,
            "created_at": float(vm.created_at),
            "updated_at": float(vm.updated_at),
            "last_started": (
                None if vm.last_started is None else float(vm.last_started)
            ),
        }

    @staticmethod
    def _from_dict(d: dict[str, Any]) -> VMRecord:
        disk = d["disk"]
        return VMRecord(
            id=str(d["id"]),
            name=str(d["name"]),
            cpu_cores=int(d["cpu_cores"]),
            memory_mb=int(d["memory_mb"]),
            disk=DiskRef(
                name=str(disk["name"]),
                format=DiskFormat(str(disk["format"])),
                path=str(disk["path"]),
                size_bytes=int(disk["size_bytes"]),
            ),
            iso_path=str(d["iso_path"]),
            status=VMState(str(d["status"])),
            created_at=float(d["created_at"]),
            updated_at=float(d["updated_at"]),
            last_started=(
                None if d.get("last_started") in (None, "") else float(d["last_started"])
            ),
        )

    # ---- Persistence ----
    def _load(self) -> None:
        doc = self.store.load(self.KEY) or {}
        for d in doc.get("vms", []):
            vm = self._from_dict(d)
            self._records[vm.id] = vm
            if vm.id.isdigit():
                self._last_id = max(self._last_id, int(vm.id))

    def _persist_locked(self) -> None:
        self.store.save(
            self.KEY, {"vms": [self._to_dict(v) for v in self._records.values()]}
        )

    def _commit(self, changes: dict[str, VMRecord | None]) -> None:
        """Apply a set of record changes as one save, undoing them on failure."""
        with self._index_lock:
            previous = {vm_id: self._records.get(vm_id) for vm_id in changes}
            for vm_id, vm in changes.items():
                if vm is None:
                    self._records.pop(vm_id, None)
                else:
                    self._records[vm_id] = vm
            try:
                self._persist_locked()
            except StoreError:
                for vm_id, vm in previous.items():
                    if vm is None:
                        self._records.pop(vm_id, None)
                    else:
                        self._records[vm_id] = vm
                raise

    def _next_id(self) -> str:
        """Millisecond timestamp, bumped so ids never repeat within the process."""
        with self._index_lock:
            self._last_id = max(int(time.time() * 1000), self._last_id + 1)
            return str(self._last_id)

    # ---- Operations ----
    def create(
        self,
        name: str | None = None,
        cpu_cores: int | None = None,
        memory_mb: int | None = None,
        disk_name: str | None = None,
        disk_format: str | DiskFormat | None = None,
        iso_path: str | None = None,
    ) -> Result[VMRecord]:
        raw = {
            "name": name,
            "cpu_cores": cpu_cores,
            "memory_mb": memory_mb,
            "disk_name": disk_name,
            "disk_format": disk_format,
            "iso_path": iso_path,
        }
        try:
            req = VMCreate.model_validate({k: v for k, v in raw.items() if _present(v)})
        except ValidationError as e:
            return Result.from_validation_error(e)

        disk_name = sanitize_disk_name(req.disk_name)
        with self.locks.hold(disk_lock_key(disk_name, req.disk_format)):
            disk = self.disk_store.get(req.disk_name, req.disk_format)
            if disk is None or not os.path.exists(disk.path):
                return Result.fail(
                    ErrorKind.disk_not_found,
                    f"Disk file not found: {req.disk_name}.{req.disk_format.value}",
                )
            if not os.path.isfile(req.iso_path):
                return Result.fail(
                    ErrorKind.iso_not_found, f"ISO file not found: {req.iso_path}"
                )

            vm = VMRecord(
                id=self._next_id(),
                name=req.name,
                cpu_cores=req.cpu_cores,
                memory_mb=req.memory_mb,
                disk=DiskRef.from_disk(disk),
                iso_path=req.iso_path,
                status=VMState.stopped,
            )
            self._commit({vm.id: vm})
            logger.info("VM %s (%s) created on disk %s", vm.id, vm.name, disk.key)
            return Result.success(deepcopy(vm))

    def get(self, vm_id: str) -> VMRecord | None:
        with self._index_lock:
            vm = self._records.get(vm_id)
        return deepcopy(vm) if vm is not None else None

    def list(self) -> list[VMRecord]:
        with self._index_lock:
            return [deepcopy(v) for v in self._records.values()]

    def referencing(self, name: str, fmt: DiskFormat | str) -> list[VMRecord]:
        disk_format = DiskFormat.parse(fmt)
        with self._index_lock:
            return [
                deepcopy(v)
                for v in self._records.values()
                if v.disk.name == name and v.disk.format == disk_format
            ]

    def put(self, vm: VMRecord) -> None:
        """Persist a mutated record. Raises StoreError if the save fails."""
        with self.locks.hold(vm_lock_key(vm.id)):
            vm.updated_at = time.time()
            self._commit({vm.id: deepcopy(vm)})

    def update(self, vm_id: str, changes: dict[str, Any]) -> Result[VMRecord]:
        try:
            req = VMUpdate.model_validate(changes)
        except ValidationError as e:
            return Result.from_validation_error(e)

        with self.locks.hold(vm_lock_key(vm_id)):
            vm = self.get(vm_id)
            if vm is None:
                return Result.fail(ErrorKind.not_found, f"VM not found: {vm_id}")
            for field_name, value in req.model_dump(exclude_none=True).items():
                setattr(vm, field_name, value)
            self.put(vm)
            return Result.success(vm)

    def delete(self, vm_id: str) -> Result[None]:
        with self.locks.hold(vm_lock_key(vm_id)):
            vm = self.get(vm_id)
            if vm is None:
                return Result.fail(ErrorKind.not_found, f"VM not found: {vm_id}")
            if vm.status == VMState.running:
                return Result.fail(
                    ErrorKind.vm_running, f"VM {vm_id} is running; stop it first"
                )
            self._commit({vm_id: None})
            logger.info("VM %s deleted", vm_id)
            return Result.success(None)

    def refresh_disk_snapshots(self, disk: DiskRecord) -> None:
        """Point every VM referencing ``disk`` at its current size and path."""
        ids = [vm.id for vm in self.referencing(disk.name, disk.format)]
        if not ids:
            return
        with self.locks.hold(*(vm_lock_key(vm_id) for vm_id in ids)):
            changes: dict[str, VMRecord | None] = {}
            now = time.time()
            for vm in self.referencing(disk.name, disk.format):
                vm.disk.size_bytes = disk.size_bytes
                vm.disk.path = disk.path
                vm.updated_at = now
                changes[vm.id] = vm
            self._commit(changes)
        logger.info("Disk %s snapshot refreshed on %d VM(s)", disk.key, len(changes))
