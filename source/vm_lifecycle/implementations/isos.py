from __future__ import annotations

import logging
import os
import re
import threading
import time

from .. import settings
from ..models import ErrorKind, IsoImage, Result
from .store import DocumentStore, StoreError

logger = logging.getLogger(__name__)

_MIB = 1024 * 1024


def _describe(path: str, iso_id: str, name: str) -> IsoImage:
    stats = os.stat(path)
    return IsoImage(
        id=iso_id,
        name=name,
        path=path,
        size_mib=round(stats.st_size / _MIB),
        uploaded_at=stats.st_mtime,
    )


class IsoCatalog:
    """
    Install media known to the service: every ``*.iso`` in the ISO directory
    plus ISOs registered from arbitrary paths.
    """

    KEY = "isos"

    def __init__(self, store: DocumentStore, isos_dir: str | None = None) -> None:
        self.store = store
        self._isos_dir = isos_dir
        self._lock = threading.Lock()
        self._registered: dict[str, dict[str, str]] = {}
        doc = self.store.load(self.KEY) or {}
        for entry in doc.get("isos", []):
            self._registered[str(entry["id"])] = {
                "name": str(entry["name"]),
                "path": str(entry["path"]),
            }

    @property
    def isos_dir(self) -> str:
        return self._isos_dir or settings.VM_ISOS_DIR

    def list(self) -> list[IsoImage]:
        isos: list[IsoImage] = []
        seen: set[str] = set()
        if os.path.isdir(self.isos_dir):
            for entry in sorted(os.listdir(self.isos_dir)):
                path = os.path.join(self.isos_dir, entry)
                if not entry.lower().endswith(".iso") or not os.path.isfile(path):
                    continue
                iso_id = "iso_" + re.sub(r"\s+", "_", entry).lower()
                isos.append(_describe(path, iso_id, entry))
                seen.add(os.path.abspath(path))

        with self._lock:
            registered = list(self._registered.items())
        for iso_id, entry in registered:
            path = entry["path"]
            if os.path.abspath(path) in seen or not os.path.isfile(path):
                continue
            isos.append(_describe(path, iso_id, entry["name"]))
        return isos

    def register(self, path: str | None, name: str | None = None) -> Result[IsoImage]:
        if not path:
            return Result.fail(ErrorKind.missing_field, "ISO path is required")
        if not os.path.exists(path):
            return Result.fail(
                ErrorKind.iso_not_found, f"ISO file not found at path: {path}"
            )
        if not os.path.isfile(path):
            return Result.fail(
                ErrorKind.invalid_field, f"The path does not point to a file: {path}"
            )

        iso_id = f"custom_{int(time.time() * 1000)}"
        iso_name = name or os.path.basename(path)
        with self._lock:
            while iso_id in self._registered:
                iso_id += "_"
            self._registered[iso_id] = {"name": iso_name, "path": path}
            try:
                self.store.save(
                    self.KEY,
                    {
                        "isos": [
                            {"id": k, "name": v["name"], "path": v["path"]}
                            for k, v in self._registered.items()
                        ]
                    },
                )
            except StoreError:
                self._registered.pop(iso_id, None)
                raise
        logger.info("Registered ISO %s at %s", iso_name, path)
        return Result.success(_describe(path, iso_id, iso_name))
