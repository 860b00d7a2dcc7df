import fnmatch
import logging
import os
import subprocess
import threading
from typing import Protocol

import psutil

from .. import settings
from ..models.vms import LaunchSpec
from .models import KillResult, LaunchResult
from .qemu_args import vm_launch_args

logger = logging.getLogger(__name__)


class ProcessLauncher(Protocol):
    def launch(self, spec: LaunchSpec) -> LaunchResult: ...

    def list_processes_by_name_pattern(self, pattern: str) -> list[int]: ...

    def kill(self, pid: int) -> KillResult: ...


def _tail(path: str | None, lines: int = 40) -> str:
    if not path or not os.path.exists(path):
        return ""
    try:
        with open(path, "r", encoding="utf-8", errors="ignore") as f:
            return "".join(f.readlines()[-lines:]).strip()
    except OSError as e:
        logger.warning("Error reading the launch log %s: %s", path, e)
        return ""


class QemuProcessLauncher:
    """
    Spawns qemu-system detached from this process (own session, output to a
    log file) and terminates processes through psutil.
    """

    def __init__(self, spawn_grace_s: float | None = None, kill_wait_s: float | None = None):
        self._spawn_grace_s = spawn_grace_s
        self._kill_wait_s = kill_wait_s
        self._children: dict[int, subprocess.Popen[bytes]] = {}
        self._lock = threading.Lock()

    @property
    def spawn_grace_s(self) -> float:
        if self._spawn_grace_s is not None:
            return self._spawn_grace_s
        return settings.VM_SPAWN_GRACE_S

    @property
    def kill_wait_s(self) -> float:
        if self._kill_wait_s is not None:
            return self._kill_wait_s
        return settings.VM_KILL_WAIT_S

    def launch(self, spec: LaunchSpec) -> LaunchResult:
        args = vm_launch_args(spec)
        logger.info("Launching VM process: %s", " ".join(args))

        log_path = spec.log_path or os.devnull
        if spec.log_path:
            os.makedirs(os.path.dirname(spec.log_path) or ".", exist_ok=True)
        try:
            with open(log_path, "ab") as log:
                proc = subprocess.Popen(
                    args,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            logger.error("QEMU spawn exception: %s", e)
            return LaunchResult(ok=False, error=f"Failed to start QEMU: {e}")

        try:
            code = proc.wait(timeout=self.spawn_grace_s)
        except subprocess.TimeoutExpired:
            with self._lock:
                self._children[proc.pid] = proc
            logger.info("VM process started with pid %s", proc.pid)
            return LaunchResult(ok=True, pid=proc.pid)

        tail = _tail(spec.log_path)
        logger.error("QEMU exited during startup with code %s", code)
        message = f"QEMU exited during startup with code {code}"
        return LaunchResult(ok=False, error=f"{message}\n{tail}" if tail else message)

    def list_processes_by_name_pattern(self, pattern: str) -> list[int]:
        self._reap_exited()
        pids: list[int] = []
        for p in psutil.process_iter(["pid", "name", "status"]):
            # an unreaped child that is not ours still shows its old name
            if p.info.get("status") == psutil.STATUS_ZOMBIE:
                continue
            name = p.info.get("name") or ""
            if fnmatch.fnmatch(name, pattern):
                pids.append(int(p.info["pid"]))
        return pids

    def kill(self, pid: int) -> KillResult:
        try:
            proc = psutil.Process(pid)
            proc.terminate()
            try:
                proc.wait(timeout=self.kill_wait_s)
            except psutil.TimeoutExpired:
                logger.warning("Process %s ignored SIGTERM, killing", pid)
                proc.kill()
                proc.wait(timeout=self.kill_wait_s)
        except psutil.NoSuchProcess:
            pass
        except (psutil.AccessDenied, psutil.TimeoutExpired) as e:
            return KillResult(ok=False, error=f"Could not terminate pid {pid}: {e}")
        finally:
            self._reap(pid)
        return KillResult(ok=True)

    def _reap_exited(self) -> None:
        with self._lock:
            exited = [
                pid for pid, child in self._children.items() if child.poll() is not None
            ]
            for pid in exited:
                child = self._children.pop(pid)
                logger.info("VM process %s exited with code %s", pid, child.returncode)

    def _reap(self, pid: int) -> None:
        with self._lock:
            child = self._children.pop(pid, None)
        if child is not None:
            child.poll()
