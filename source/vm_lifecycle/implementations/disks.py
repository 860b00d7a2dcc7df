from __future__ import annotations

import logging
import os
import re
import threading
import time
from collections.abc import Callable, Iterator
from copy import copy
from dataclasses import replace
from typing import Generic, TypeVar

from .. import settings
from ..models import DiskFormat, DiskRecord, ErrorKind, Result, disk_key
from ..qemu_manager import ImageTool, ceil_gib, gib_arg, gib_to_bytes, parse_size
from .locks import KeyedLocks, disk_lock_key
from .store import DocumentStore, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_FORMATS_HELP = ", ".join(f.value for f in DiskFormat)


class Listing(Generic[T]):
    """Finite sequence that builds its items on every iteration."""

    def __init__(self, keys: list[str], fetch: Callable[[str], T | None]) -> None:
        self._keys = keys
        self._fetch = fetch

    def __iter__(self) -> Iterator[T]:
        for key in self._keys:
            item = self._fetch(key)
            if item is not None:
                yield item

    def __len__(self) -> int:
        return sum(1 for _ in self)


def sanitize_disk_name(name: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("", name)


def _non_string_name(name: object) -> Result:
    return Result.fail(ErrorKind.invalid_name, f"Disk name must be a string: {name!r}")


class DiskStore:
    KEY = "disks"

    def __init__(
        self,
        store: DocumentStore,
        image_tool: ImageTool,
        disks_dir: str | None = None,
        locks: KeyedLocks | None = None,
        default_size_gib: int | None = None,
    ) -> None:
        self.store = store
        self.image_tool = image_tool
        self.locks = locks or KeyedLocks()
        self._disks_dir = disks_dir
        self._default_size_gib = default_size_gib
        self._index_lock = threading.Lock()
        self._records: dict[str, DiskRecord] = {}
        self._resize_listeners: list[Callable[[DiskRecord], None]] = []
        self._load()

    @property
    def disks_dir(self) -> str:
        return self._disks_dir or settings.VM_DISKS_DIR

    @property
    def default_size_bytes(self) -> int:
        gib = self._default_size_gib or settings.VM_DISK_DEFAULT_GIB
        return gib_to_bytes(gib)

    def path_for(self, name: str, fmt: DiskFormat) -> str:
        return os.path.join(self.disks_dir, f"{name}.{fmt.value}")

    def add_resize_listener(self, listener: Callable[[DiskRecord], None]) -> None:
        self._resize_listeners.append(listener)

    # ---- (de)Serialization ----
    @staticmethod
    def _to_dict(disk: DiskRecord) -> dict[str, object]:
        return {
            "name": disk.name,
            "format": disk.format.value,
            "size_bytes": int(disk.size_bytes),
            "path": disk.path,
            "created_at": float(disk.created_at),
        }

    @staticmethod
    def _from_dict(d: dict[str, object]) -> DiskRecord:
        return DiskRecord(
            name=str(d["name"]),
            format=DiskFormat(str(d["format"])),
            size_bytes=int(str(d["size_bytes"])),
            path=str(d["path"]),
            created_at=float(str(d["created_at"])),
        )

    # ---- Persistence ----
    def _load(self) -> None:
        doc = self.store.load(self.KEY) or {}
        for d in doc.get("disks", []):
            disk = self._from_dict(d)
            self._records[disk.key] = disk

    def _persist_locked(self) -> None:
        self.store.save(
            self.KEY, {"disks": [self._to_dict(d) for d in self._records.values()]}
        )

    def _commit(self, key: str, disk: DiskRecord | None) -> None:
        """Apply one index change and persist it, undoing it if the save fails."""
        with self._index_lock:
            previous = self._records.get(key)
            if disk is None:
                self._records.pop(key, None)
            else:
                self._records[key] = disk
            try:
                self._persist_locked()
            except StoreError:
                if previous is None:
                    self._records.pop(key, None)
                else:
                    self._records[key] = previous
                raise

    def _adopt_locked(self, name: str, fmt: DiskFormat, path: str) -> DiskRecord:
        try:
            created_at = os.path.getmtime(path)
        except OSError:
            created_at = time.time()
        disk = DiskRecord(
            name=name,
            format=fmt,
            size_bytes=self.default_size_bytes,
            path=path,
            created_at=created_at,
        )
        self._records[disk.key] = disk
        logger.info("Adopted unindexed disk file %s", path)
        return disk

    # ---- Operations ----
    def create(
        self, name: str | None, fmt: str | DiskFormat | None, size: int | str | None
    ) -> Result[DiskRecord]:
        disk_format = DiskFormat.parse(fmt)
        if disk_format is None:
            return Result.fail(
                ErrorKind.invalid_format,
                f"Invalid disk format {fmt!r}. Supported formats: {_FORMATS_HELP}",
            )
        if not name or not str(name).strip():
            return Result.fail(ErrorKind.missing_field, "Disk name is required")
        if size is None or size == "":
            return Result.fail(ErrorKind.missing_field, "Disk size is required")
        if not isinstance(name, str):
            return _non_string_name(name)

        sanitized = sanitize_disk_name(name)
        if not sanitized:
            return Result.fail(
                ErrorKind.invalid_name,
                f"Disk name {name!r} has no usable characters [A-Za-z0-9_-]",
            )
        if sanitized != name:
            logger.warning("Disk name was sanitized from %r to %r", name, sanitized)

        try:
            size_bytes = parse_size(size)
        except ValueError as e:
            return Result.fail(ErrorKind.invalid_size, str(e))

        key = disk_key(sanitized, disk_format)
        path = self.path_for(sanitized, disk_format)
        with self.locks.hold(disk_lock_key(sanitized, disk_format)):
            exists = key in self._records or os.path.exists(path)
            if exists and sanitized != name:
                return Result.fail(
                    ErrorKind.name_collision,
                    f"Disk name {name!r} sanitizes to the existing disk {key!r}",
                )
            if exists:
                return Result.fail(
                    ErrorKind.already_exists,
                    f"A disk with this name already exists: {key}",
                )

            os.makedirs(self.disks_dir, exist_ok=True)
            res = self.image_tool.create_image(
                path, disk_format.value, gib_arg(size_bytes)
            )
            if not res.ok:
                return Result.fail(
                    ErrorKind.tool_error, f"Failed to create disk: {res.error}"
                )

            final_bytes = (
                gib_to_bytes(res.size_gib)
                if res.size_gib
                else gib_to_bytes(ceil_gib(size_bytes))
            )
            disk = DiskRecord(
                name=sanitized,
                format=disk_format,
                size_bytes=final_bytes,
                path=path,
            )
            self._commit(key, disk)
            return Result.success(copy(disk))

    def get(self, name: str, fmt: str | DiskFormat) -> DiskRecord | None:
        disk_format = DiskFormat.parse(fmt)
        if disk_format is None or not name or not isinstance(name, str):
            return None
        sanitized = sanitize_disk_name(name)
        key = disk_key(sanitized, disk_format)
        with self._index_lock:
            disk = self._records.get(key)
            if disk is not None:
                return copy(disk)
            path = self.path_for(sanitized, disk_format)
            if not sanitized or not os.path.isfile(path):
                return None
            disk = self._adopt_locked(sanitized, disk_format, path)
            try:
                self._persist_locked()
            except StoreError:
                self._records.pop(key, None)
                raise
            return copy(disk)

    def list(self) -> Listing[DiskRecord]:
        """
        Reconcile the index with the disks directory and return the records.

        Image files missing from the index are adopted with the default size.
        Index entries whose file is gone are kept and returned as they are.
        """
        with self._index_lock:
            adopted = 0
            if os.path.isdir(self.disks_dir):
                for entry in sorted(os.listdir(self.disks_dir)):
                    stem, _, ext = entry.rpartition(".")
                    disk_format = DiskFormat.parse(ext)
                    if not stem or disk_format is None:
                        continue
                    if sanitize_disk_name(stem) != stem:
                        continue
                    path = os.path.join(self.disks_dir, entry)
                    if not os.path.isfile(path):
                        continue
                    if disk_key(stem, disk_format) not in self._records:
                        self._adopt_locked(stem, disk_format, path)
                        adopted += 1
            if adopted:
                self._persist_locked()
            keys = list(self._records)

        return Listing(keys, self._fetch)

    def _fetch(self, key: str) -> DiskRecord | None:
        with self._index_lock:
            disk = self._records.get(key)
        return copy(disk) if disk is not None else None

    def resize(
        self, name: str | None, fmt: str | DiskFormat | None, size: int | str | None
    ) -> Result[DiskRecord]:
        disk_format = DiskFormat.parse(fmt)
        if disk_format is None:
            return Result.fail(ErrorKind.invalid_format, f"Invalid disk format {fmt!r}")
        if not name:
            return Result.fail(ErrorKind.missing_field, "Disk name is required")
        if not isinstance(name, str):
            return _non_string_name(name)
        if size is None or size == "":
            return Result.fail(ErrorKind.missing_field, "New size is required")
        try:
            requested = parse_size(size)
        except ValueError as e:
            return Result.fail(ErrorKind.invalid_size, str(e))

        sanitized = sanitize_disk_name(name)
        key = disk_key(sanitized, disk_format)
        with self.locks.hold(disk_lock_key(sanitized, disk_format)):
            # an image file dropped into the directory is adopted, as in get()
            current = self.get(sanitized, disk_format)
            if current is None or not os.path.exists(current.path):
                return Result.fail(ErrorKind.not_found, f"Disk not found: {key}")
            if requested < current.size_bytes:
                return Result.fail(
                    ErrorKind.shrink_not_allowed,
                    f"Disk {key} is {current.size_bytes} bytes; "
                    f"shrinking to {requested} bytes is not allowed",
                )

            target = gib_to_bytes(ceil_gib(requested))
            if target != current.size_bytes:
                res = self.image_tool.resize_image(current.path, gib_arg(target))
                if not res.ok:
                    return Result.fail(
                        ErrorKind.tool_error, f"Failed to resize disk: {res.error}"
                    )
                updated = replace(current, size_bytes=target)
                self._commit(key, updated)
            else:
                updated = current

            for listener in self._resize_listeners:
                listener(copy(updated))
            return Result.success(copy(updated))

    def delete(self, name: str | None, fmt: str | DiskFormat | None) -> Result[None]:
        disk_format = DiskFormat.parse(fmt)
        if disk_format is None:
            return Result.fail(ErrorKind.invalid_format, f"Invalid disk format {fmt!r}")
        if not name:
            return Result.fail(ErrorKind.missing_field, "Disk name is required")
        if not isinstance(name, str):
            return _non_string_name(name)

        sanitized = sanitize_disk_name(name)
        key = disk_key(sanitized, disk_format)
        with self.locks.hold(disk_lock_key(sanitized, disk_format)):
            disk = self._records.get(key)
            path = disk.path if disk else self.path_for(sanitized, disk_format)
            if disk is None and not os.path.exists(path):
                return Result.fail(ErrorKind.not_found, f"Disk not found: {key}")
            if os.path.exists(path):
                try:
                    os.remove(path)
                except OSError as e:
                    return Result.fail(
                        ErrorKind.tool_error, f"Failed to delete disk file {path}: {e}"
                    )
            if disk is not None:
                self._commit(key, None)
            logger.info("Disk deleted: %s", key)
            return Result.success(None)
