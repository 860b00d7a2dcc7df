import time

import psutil

from ..models import MachineMetrics


def human_bytes(n: float | None) -> str:
    if n is None:
        return "-"
    for unit in ("B", "KB", "MB", "GB", "TB", "PB"):
        if n < 1024 or unit == "PB":
            return f"{n:.1f} {unit}"
        n /= 1024.0
    return "-"


def safe(call, default=None):
    try:
        return call()
    except (psutil.AccessDenied, psutil.ZombieProcess, psutil.NoSuchProcess):
        return default


def collect_metrics(vm_id: str, pid: int) -> MachineMetrics:
    """Snapshot of a VM process. Raises psutil.NoSuchProcess if it is gone."""
    p = psutil.Process(pid)
    p.cpu_percent(interval=None)
    rss = safe(lambda: p.memory_info().rss)
    return MachineMetrics(
        vm_id=vm_id,
        pid=pid,
        ts=time.time(),
        cpu_percent=safe(lambda: p.cpu_percent(interval=None)),
        rss_bytes=rss,
        rss_human=human_bytes(rss),
        rss_mib=rss / (1024 * 1024) if rss else None,
        num_threads=safe(p.num_threads),
        io=safe(lambda: p.io_counters()._asdict()) or {},
    )
