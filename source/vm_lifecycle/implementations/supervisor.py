from __future__ import annotations

import logging
import os
import threading
import time

import psutil

from .. import settings
from ..models import (
    ErrorKind,
    LaunchSpec,
    MachineMetrics,
    ReconciliationDrift,
    Result,
    VMRecord,
    VMState,
)
from ..qemu_manager import ProcessLauncher, VMProc
from .locks import KeyedLocks, vm_lock_key
from .metrics import collect_metrics
from .store import StoreError
from .vms import VMStore

logger = logging.getLogger(__name__)


class ProcessSupervisor:
    """
    Launches, tracks and terminates the VM engine process of each VM.

    ``start`` and ``stop`` mutate the record they are given; persisting it is
    up to the caller. ``reconcile`` (and the watch thread) persist directly.
    """

    def __init__(
        self,
        vm_store: VMStore,
        launcher: ProcessLauncher,
        locks: KeyedLocks | None = None,
        process_pattern: str | None = None,
        stop_timeout_s: float | None = None,
        display_mode: str | None = None,
        log_dir: str | None = None,
    ) -> None:
        self.vm_store = vm_store
        self.launcher = launcher
        self.locks = locks or vm_store.locks
        self._process_pattern = process_pattern
        self._stop_timeout_s = stop_timeout_s
        self._display_mode = display_mode
        self._log_dir = log_dir
        self._lock = threading.Lock()
        self._handles: dict[str, VMProc] = {}
        self._starting: set[str] = set()
        self._watch_thread: threading.Thread | None = None
        self._watch_stop = threading.Event()

    @property
    def process_pattern(self) -> str:
        return self._process_pattern or settings.VM_PROCESS_PATTERN

    @property
    def stop_timeout_s(self) -> float:
        if self._stop_timeout_s is not None:
            return self._stop_timeout_s
        return settings.VM_STOP_TIMEOUT_S

    @property
    def display_mode(self) -> str:
        return self._display_mode or settings.VM_DISPLAY_MODE

    @property
    def log_dir(self) -> str:
        return self._log_dir or settings.VM_LOG_DIR

    # ---- Handles ----
    def handle(self, vm_id: str) -> VMProc | None:
        with self._lock:
            return self._handles.get(vm_id)

    def _drop_handle(self, vm_id: str) -> VMProc | None:
        with self._lock:
            return self._handles.pop(vm_id, None)

    def phase(self, vm_id: str) -> str:
        """``starting`` while a launch is in flight, else the persisted status."""
        with self._lock:
            if vm_id in self._starting:
                return "starting"
        vm = self.vm_store.get(vm_id)
        return vm.status.value if vm else VMState.stopped.value

    # ---- Start / Stop ----
    def start(self, vm: VMRecord) -> Result[VMRecord]:
        with self.locks.hold(vm_lock_key(vm.id)):
            if vm.status == VMState.running:
                # The previous process is not verified dead before relaunching.
                logger.warning(
                    "VM %s is already running; restarting without a liveness check",
                    vm.id,
                )
                vm.status = VMState.stopped
                self._drop_handle(vm.id)

            if not os.path.exists(vm.disk.path):
                return Result.fail(
                    ErrorKind.disk_missing,
                    f"Virtual disk not found: {vm.disk.key}. "
                    "The disk file may have been deleted or moved.",
                )
            if not vm.iso_path or not os.path.exists(vm.iso_path):
                return Result.fail(
                    ErrorKind.iso_missing, f"ISO file not found: {vm.iso_path}"
                )

            spec = LaunchSpec(
                cpu_cores=vm.cpu_cores,
                memory_mb=vm.memory_mb,
                disk_path=vm.disk.path,
                disk_format=vm.disk.format,
                iso_path=vm.iso_path,
                display_mode=self.display_mode,
                log_path=os.path.join(self.log_dir, f"vm-{vm.id}.log"),
            )

            with self._lock:
                self._starting.add(vm.id)
            try:
                res = self.launcher.launch(spec)
            finally:
                with self._lock:
                    self._starting.discard(vm.id)

            if not res.ok or res.pid is None:
                vm.status = VMState.stopped
                return Result.fail(
                    ErrorKind.launch_failed, res.error or "Failed to start QEMU"
                )

            with self._lock:
                self._handles[vm.id] = VMProc(
                    vm_id=vm.id, pid=res.pid, log_path=spec.log_path
                )
            vm.status = VMState.running
            vm.last_started = time.time()
            logger.info("VM %s started (pid %s)", vm.id, res.pid)
            return Result.success(vm)

    def stop(self, vm: VMRecord) -> Result[VMRecord]:
        """
        Terminate every process matching the engine pattern.

        This cannot tell apart VMs run by the same engine binary: stopping one
        VM stops them all.
        """
        with self.locks.hold(vm_lock_key(vm.id)):
            if vm.status != VMState.running:
                return Result.success(vm)

            outcome: dict[str, object] = {}

            def _run():
                try:
                    pids = self.launcher.list_processes_by_name_pattern(
                        self.process_pattern
                    )
                    failures = []
                    for pid in pids:
                        killed = self.launcher.kill(pid)
                        if not killed.ok:
                            failures.append(killed.error or f"pid {pid}")
                    outcome["pids"] = pids
                    outcome["failures"] = failures
                except Exception as e:  # pylint: disable=broad-except
                    outcome["error"] = str(e)

            worker = threading.Thread(target=_run, daemon=True, name=f"vm-stop-{vm.id}")
            worker.start()
            worker.join(self.stop_timeout_s)

            if worker.is_alive():
                return Result.fail(
                    ErrorKind.stop_timeout,
                    f"Stopping VM {vm.id} did not finish within {self.stop_timeout_s}s",
                )
            if "error" in outcome:
                return Result.fail(
                    ErrorKind.stop_failed, f"Failed to stop VM: {outcome['error']}"
                )
            failures = outcome.get("failures") or []
            if failures:
                return Result.fail(
                    ErrorKind.stop_failed,
                    "Failed to stop VM: " + "; ".join(str(f) for f in failures),
                )

            vm.status = VMState.stopped
            self._drop_handle(vm.id)
            logger.info(
                "VM %s stopped (%d QEMU process(es) terminated)",
                vm.id,
                len(outcome.get("pids") or []),
            )
            return Result.success(vm)

    def abort(self, vm_id: str) -> None:
        """Kill the process of a launch whose result could not be recorded."""
        handle = self._drop_handle(vm_id)
        if handle is None:
            return
        killed = self.launcher.kill(handle.pid)
        if not killed.ok:
            logger.error("Could not abort VM %s (pid %s): %s", vm_id, handle.pid, killed.error)

    # ---- Reconciliation ----
    def reconcile(self) -> list[ReconciliationDrift]:
        """
        Demote every VM persisted as running that has no plausible host process.

        With a handle, the handle's pid must still match the engine pattern.
        Without one (e.g. after a service restart) any matching process counts.
        """
        drifts: list[ReconciliationDrift] = []
        matches: set[int] | None = None

        for vm in self.vm_store.list():
            if vm.status != VMState.running:
                continue
            with self._lock:
                if vm.id in self._starting:
                    continue

            with self.locks.hold(vm_lock_key(vm.id)):
                current = self.vm_store.get(vm.id)
                if current is None or current.status != VMState.running:
                    continue
                if matches is None:
                    matches = set(
                        self.launcher.list_processes_by_name_pattern(
                            self.process_pattern
                        )
                    )

                handle = self.handle(vm.id)
                if handle is not None:
                    alive = handle.pid in matches
                    detail = f"pid {handle.pid} is gone"
                else:
                    alive = bool(matches)
                    detail = f"no process matches {self.process_pattern!r}"
                if alive:
                    continue

                current.status = VMState.stopped
                self.vm_store.put(current)
                self._drop_handle(vm.id)
                drift = ReconciliationDrift(
                    vm_id=vm.id,
                    persisted=VMState.running.value,
                    observed=VMState.stopped.value,
                    detail=detail,
                )
                logger.warning(
                    "Reconciliation drift on VM %s: persisted running but %s; "
                    "marked stopped",
                    vm.id,
                    detail,
                )
                drifts.append(drift)
        return drifts

    def start_watch(self, interval: float | None = None) -> None:
        """Reconcile now and then every ``interval`` seconds on a daemon thread."""
        if self._watch_thread is not None and self._watch_thread.is_alive():
            return
        every = interval if interval is not None else settings.VM_WATCH_INTERVAL_S
        self._watch_stop.clear()

        def _loop():
            while True:
                try:
                    self.reconcile()
                except StoreError as e:
                    logger.error("Reconciliation pass failed: %s", e)
                if self._watch_stop.wait(every):
                    return

        self._watch_thread = threading.Thread(
            target=_loop, daemon=True, name="vm-reconcile-watch"
        )
        self._watch_thread.start()

    def stop_watch(self, timeout: float | None = None) -> None:
        self._watch_stop.set()
        if self._watch_thread is not None:
            self._watch_thread.join(timeout)
            self._watch_thread = None

    def join_watch(self, timeout: float | None = None) -> None:
        """Block until the watch thread exits (or ``timeout`` elapses)."""
        thread = self._watch_thread
        if thread is not None:
            thread.join(timeout)

    # ---- Metrics ----
    def metrics(self, vm_id: str) -> Result[MachineMetrics]:
        handle = self.handle(vm_id)
        if handle is None:
            return Result.fail(
                ErrorKind.not_found, f"No process handle for VM {vm_id}; is it running?"
            )
        try:
            return Result.success(collect_metrics(vm_id, handle.pid))
        except psutil.NoSuchProcess:
            return Result.fail(ErrorKind.not_found, f"Process {handle.pid} is gone")
        except psutil.Error as e:
            return Result.fail(ErrorKind.tool_error, f"Issues with psutil: {e}")
