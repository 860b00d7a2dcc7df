# conftest.py
import json
import pathlib
import sys
import time

import pytest

# ----------------------
# Path setup: make the `source/` directory importable so the service is
# available as the `vm_lifecycle` package.
# ----------------------
_THIS_DIR = pathlib.Path(__file__).resolve().parent
_SOURCE_ROOT = _THIS_DIR.parent.parent  # source/
if str(_SOURCE_ROOT) not in sys.path:
    sys.path.insert(0, str(_SOURCE_ROOT))

# After adjusting sys.path, import project modules
from vm_lifecycle import settings  # noqa: E402
from vm_lifecycle.implementations import (  # noqa: E402
    DiskStore,
    IsoCatalog,
    KeyedLocks,
    LifecycleManager,
    ProcessSupervisor,
    StoreError,
    VMStore,
)
from vm_lifecycle.models import LaunchSpec  # noqa: E402
from vm_lifecycle.qemu_manager import ImageResult, KillResult, LaunchResult  # noqa: E402


# ----------------------
# Test Utilities / Fakes
# ----------------------
class InMemoryDocumentStore:
    """Keeps JSON-round-tripped copies, like a real backend would."""

    def __init__(self):
        self.docs: dict[str, dict] = {}
        self.saves = 0
        self.fail_saves = False

    def load(self, key: str):
        doc = self.docs.get(key)
        return None if doc is None else json.loads(json.dumps(doc))

    def save(self, key: str, document: dict) -> None:
        if self.fail_saves:
            raise StoreError(f"backend unavailable while saving {key}")
        self.saves += 1
        self.docs[key] = json.loads(json.dumps(document))


class FakeImageTool:
    def __init__(self):
        self.calls: list[tuple] = []
        self.error: str | None = None

    def create_image(self, path: str, fmt: str, size_gib: str) -> ImageResult:
        self.calls.append(("create", path, fmt, size_gib))
        if self.error:
            return ImageResult(ok=False, error=self.error)
        pathlib.Path(path).write_bytes(b"")
        return ImageResult(ok=True, size_gib=float(size_gib.rstrip("G")))

    def resize_image(self, path: str, size_gib: str) -> ImageResult:
        self.calls.append(("resize", path, size_gib))
        if self.error:
            return ImageResult(ok=False, error=self.error)
        return ImageResult(ok=True, size_gib=float(size_gib.rstrip("G")))


class FakeLauncher:
    """Pretends to run QEMU: launched pids stay 'running' until killed."""

    def __init__(self):
        self.launched: list[LaunchSpec] = []
        self.killed: list[int] = []
        self.running: set[int] = set()
        self._next_pid = 4000
        self.launch_error: str | None = None
        self.kill_error: str | None = None
        self.kill_delay = 0.0
        self.list_error: Exception | None = None

    def launch(self, spec: LaunchSpec) -> LaunchResult:
        self.launched.append(spec)
        if self.launch_error:
            return LaunchResult(ok=False, error=self.launch_error)
        self._next_pid += 1
        self.running.add(self._next_pid)
        return LaunchResult(ok=True, pid=self._next_pid)

    def list_processes_by_name_pattern(self, pattern: str) -> list[int]:
        if self.list_error is not None:
            raise self.list_error
        return sorted(self.running)

    def kill(self, pid: int) -> KillResult:
        if self.kill_delay:
            time.sleep(self.kill_delay)
        self.killed.append(pid)
        if self.kill_error:
            return KillResult(ok=False, error=self.kill_error)
        self.running.discard(pid)
        return KillResult(ok=True)

    def crash(self, pid: int) -> None:
        """Simulate a VM process exiting outside the service's control."""
        self.running.discard(pid)


# ----------------------
# Shared Fixtures
# ----------------------
@pytest.fixture(autouse=True)
def vm_dirs(tmp_path, monkeypatch):
    """
    Point every data directory at a temp path so no test touches the
    package's own vm_data directory.
    """
    base = tmp_path / "vm_data"
    dirs = {
        "VM_BASE_DIR": base,
        "VM_DISKS_DIR": base / "disks",
        "VM_ISOS_DIR": base / "isos",
        "VM_STATE_DIR": base / "state",
        "VM_LOG_DIR": base / "logs",
    }
    for name, path in dirs.items():
        path.mkdir(parents=True, exist_ok=True)
        monkeypatch.setattr(settings, name, str(path), raising=False)
    monkeypatch.setattr(settings, "VM_STOP_TIMEOUT_S", 2.0, raising=False)
    monkeypatch.setattr(settings, "VM_DISK_DEFAULT_GIB", 10, raising=False)
    return {name: str(path) for name, path in dirs.items()}


@pytest.fixture
def doc_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def image_tool() -> FakeImageTool:
    return FakeImageTool()


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def locks() -> KeyedLocks:
    return KeyedLocks()


@pytest.fixture
def disk_store(doc_store, image_tool, locks) -> DiskStore:
    return DiskStore(doc_store, image_tool, locks=locks)


@pytest.fixture
def vm_store(doc_store, disk_store, locks) -> VMStore:
    return VMStore(doc_store, disk_store, locks=locks)


@pytest.fixture
def supervisor(vm_store, launcher, locks):
    sup = ProcessSupervisor(vm_store, launcher, locks=locks)
    yield sup
    sup.stop_watch(timeout=2.0)


@pytest.fixture
def manager(disk_store, vm_store, supervisor, doc_store, locks) -> LifecycleManager:
    return LifecycleManager(
        disk_store,
        vm_store,
        supervisor,
        iso_catalog=IsoCatalog(doc_store),
        locks=locks,
    )


@pytest.fixture
def iso_path(vm_dirs) -> str:
    path = pathlib.Path(vm_dirs["VM_ISOS_DIR"]) / "debian-12.iso"
    path.write_bytes(b"\0" * 2048)
    return str(path)
