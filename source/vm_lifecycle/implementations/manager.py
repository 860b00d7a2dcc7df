from __future__ import annotations

import functools
import logging
import os
from copy import deepcopy
from typing import Any, Callable, TypeVar

import psutil

from ..models import (
    DiskFormat,
    DiskRecord,
    ErrorKind,
    IsoImage,
    MachineMetrics,
    ReconciliationDrift,
    Result,
    VMRecord,
)
from .disks import DiskStore, Listing, sanitize_disk_name
from .isos import IsoCatalog
from .locks import KeyedLocks, disk_lock_key, vm_lock_key
from .store import StoreError
from .supervisor import ProcessSupervisor
from .vms import VMStore

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Result[Any]])


def _store_faults_as_internal(operation: F) -> F:
    """Turn a document store fault into an ``internal`` failure."""

    @functools.wraps(operation)
    def wrapper(self, *args, **kwargs):
        try:
            return operation(self, *args, **kwargs)
        except StoreError as e:
            logger.exception("%s failed on the document store", operation.__name__)
            return Result.fail(ErrorKind.internal, f"Document store failure: {e}")

    return wrapper  # type: ignore[return-value]


class LifecycleManager:
    """
    Entry point for every disk and VM operation.

    Each operation runs inside the critical section of the entities it
    touches and reports its outcome as a ``Result``.
    """

    def __init__(
        self,
        disk_store: DiskStore,
        vm_store: VMStore,
        supervisor: ProcessSupervisor,
        iso_catalog: IsoCatalog | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.disk_store = disk_store
        self.vm_store = vm_store
        self.supervisor = supervisor
        self.iso_catalog = iso_catalog or IsoCatalog(disk_store.store)
        self.locks = locks or disk_store.locks

    # ---- Disks ----
    @_store_faults_as_internal
    def create_disk(
        self, name: str | None, fmt: str | DiskFormat | None, size: int | str | None
    ) -> Result[DiskRecord]:
        return self.disk_store.create(name, fmt, size).with_context("Create disk")

    @_store_faults_as_internal
    def list_disks(self) -> Result[Listing[DiskRecord]]:
        return Result.success(self.disk_store.list())

    @_store_faults_as_internal
    def resize_disk(
        self, name: str | None, fmt: str | DiskFormat | None, size: int | str | None
    ) -> Result[DiskRecord]:
        disk_format = DiskFormat.parse(fmt)
        if disk_format is None or not name or not isinstance(name, str):
            return self.disk_store.resize(name, fmt, size).with_context("Resize disk")

        sanitized = sanitize_disk_name(name)
        # VMs are created under the disk lock, so the referencing set is
        # stable once it is held.
        with self.locks.hold(disk_lock_key(sanitized, disk_format)):
            vm_keys = [
                vm_lock_key(vm.id)
                for vm in self.vm_store.referencing(sanitized, disk_format)
            ]
            with self.locks.hold(*vm_keys):
                res = self.disk_store.resize(sanitized, disk_format, size)
        return res.with_context("Resize disk")

    @_store_faults_as_internal
    def delete_disk(self, name: str | None, fmt: str | DiskFormat | None) -> Result[None]:
        return self.disk_store.delete(name, fmt).with_context("Delete disk")

    def available_disk_space(self) -> Result[float]:
        """Free space, in GiB, of the filesystem holding the disks directory."""
        path = self.disk_store.disks_dir
        while not os.path.exists(path) and os.path.dirname(path) != path:
            path = os.path.dirname(path)
        try:
            usage = psutil.disk_usage(path)
        except OSError as e:
            return Result.fail(
                ErrorKind.tool_error, f"Could not read disk usage of {path}: {e}"
            )
        return Result.success(round(usage.free / 1024**3, 2))

    # ---- VMs ----
    @_store_faults_as_internal
    def create_vm(
        self,
        name: str | None = None,
        cpu_cores: int | None = None,
        memory_mb: int | None = None,
        disk_name: str | None = None,
        disk_format: str | DiskFormat | None = None,
        iso_path: str | None = None,
    ) -> Result[VMRecord]:
        return self.vm_store.create(
            name=name,
            cpu_cores=cpu_cores,
            memory_mb=memory_mb,
            disk_name=disk_name,
            disk_format=disk_format,
            iso_path=iso_path,
        ).with_context("Create VM")

    def get_vm(self, vm_id: str) -> Result[VMRecord]:
        vm = self.vm_store.get(vm_id)
        if vm is None:
            return Result.fail(ErrorKind.not_found, f"VM not found: {vm_id}")
        return Result.success(vm)

    def list_vms(self) -> Result[list[VMRecord]]:
        return Result.success(self.vm_store.list())

    @_store_faults_as_internal
    def update_vm(
        self, vm_id: str, changes: dict[str, Any] | None = None, **fields: Any
    ) -> Result[VMRecord]:
        merged = dict(changes or {})
        merged.update(fields)
        return self.vm_store.update(vm_id, merged).with_context(f"Update VM {vm_id}")

    @_store_faults_as_internal
    def delete_vm(self, vm_id: str) -> Result[None]:
        return self.vm_store.delete(vm_id).with_context(f"Delete VM {vm_id}")

    @_store_faults_as_internal
    def start_vm(self, vm_id: str) -> Result[VMRecord]:
        with self.locks.hold(vm_lock_key(vm_id)):
            vm = self.vm_store.get(vm_id)
            if vm is None:
                return Result.fail(ErrorKind.not_found, f"VM not found: {vm_id}")
            before = deepcopy(vm)

            res = self.supervisor.start(vm)
            if not res.ok:
                if vm.status != before.status:
                    self.vm_store.put(vm)
                return res.with_context(f"Start VM {vm_id}")

            try:
                self.vm_store.put(vm)
            except StoreError:
                self.supervisor.abort(vm_id)
                raise
            return Result.success(vm)

    @_store_faults_as_internal
    def stop_vm(self, vm_id: str) -> Result[VMRecord]:
        with self.locks.hold(vm_lock_key(vm_id)):
            vm = self.vm_store.get(vm_id)
            if vm is None:
                return Result.fail(ErrorKind.not_found, f"VM not found: {vm_id}")

            res = self.supervisor.stop(vm)
            if not res.ok:
                return res.with_context(f"Stop VM {vm_id}")
            self.vm_store.put(vm)
            return Result.success(vm)

    def vm_metrics(self, vm_id: str) -> Result[MachineMetrics]:
        return self.supervisor.metrics(vm_id).with_context(f"Metrics of VM {vm_id}")

    # ---- Reconciliation ----
    @_store_faults_as_internal
    def reconcile(self) -> Result[list[ReconciliationDrift]]:
        return Result.success(self.supervisor.reconcile())

    def start_watch(self, interval: float | None = None) -> None:
        self.supervisor.start_watch(interval)

    def close(self) -> None:
        self.supervisor.stop_watch()

    # ---- ISOs ----
    def list_isos(self) -> Result[list[IsoImage]]:
        return Result.success(self.iso_catalog.list())

    @_store_faults_as_internal
    def register_iso(self, path: str | None, name: str | None = None) -> Result[IsoImage]:
        return self.iso_catalog.register(path, name).with_context("Register ISO")
