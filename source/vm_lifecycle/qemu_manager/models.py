import time
from dataclasses import dataclass, field


@dataclass
class VMProc:
    """
    Lightweight handle to a VM process launched by this supervisor.
    Only lives in memory; a restarted service starts without any handles.
    """

    vm_id: str
    pid: int
    log_path: str | None = None
    started_at: float = field(default_factory=time.time)


@dataclass
class ImageResult:
    ok: bool
    size_gib: float | None = None
    error: str | None = None


@dataclass
class LaunchResult:
    ok: bool
    pid: int | None = None
    error: str | None = None


@dataclass
class KillResult:
    ok: bool
    error: str | None = None
