from __future__ import annotations

import argparse
import json
import logging
import sys

from . import settings
from .implementations import (
    DiskStore,
    DocumentStore,
    IsoCatalog,
    JsonFileDocumentStore,
    KeyedLocks,
    LifecycleManager,
    ProcessSupervisor,
    RedisDocumentStore,
    VMStore,
)
from .models import DiskOut, VMOut
from .qemu_manager import QemuImageTool, QemuProcessLauncher

logger = logging.getLogger(__name__)


def build_store() -> DocumentStore:
    if settings.REDIS_URL:
        return RedisDocumentStore(settings.REDIS_URL, settings.REDIS_PREFIX)
    return JsonFileDocumentStore(settings.VM_STATE_DIR)


def build_manager(store: DocumentStore | None = None) -> LifecycleManager:
    store = store or build_store()
    locks = KeyedLocks()
    disk_store = DiskStore(store, QemuImageTool(), locks=locks)
    vm_store = VMStore(store, disk_store, locks=locks)
    supervisor = ProcessSupervisor(vm_store, QemuProcessLauncher(), locks=locks)
    return LifecycleManager(
        disk_store, vm_store, supervisor, iso_catalog=IsoCatalog(store), locks=locks
    )


# ===== Commands =====
def _cmd_reconcile(manager: LifecycleManager, args: argparse.Namespace) -> int:
    res = manager.reconcile()
    if not res.ok:
        print(res.error.reason, file=sys.stderr)
        return 1
    for drift in res.value or []:
        print(f"{drift.vm_id}: {drift.persisted} -> {drift.observed} ({drift.detail})")
    print(f"{len(res.value or [])} VM(s) corrected")
    return 0


def _cmd_watch(manager: LifecycleManager, args: argparse.Namespace) -> int:
    manager.start_watch(args.interval)
    print("Watching VM processes, press Ctrl+C to stop")
    try:
        manager.supervisor.join_watch()
    except KeyboardInterrupt:
        pass
    finally:
        manager.close()
    return 0


def _cmd_status(manager: LifecycleManager, args: argparse.Namespace) -> int:
    disks = manager.list_disks()
    vms = manager.list_vms()
    if not disks.ok:
        print(disks.error.reason, file=sys.stderr)
        return 1
    payload = {
        "disks": [DiskOut.from_record(d).model_dump(mode="json") for d in disks.value],
        "vms": [VMOut.from_record(v).model_dump(mode="json") for v in vms.value or []],
    }
    print(json.dumps(payload, indent=2))
    return 0


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vm-lifecycle", description="VM and disk lifecycle maintenance"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("reconcile", help="demote VMs whose QEMU process is gone")
    p.set_defaults(func=_cmd_reconcile)

    p = sub.add_parser("watch", help="reconcile periodically until interrupted")
    p.add_argument(
        "--interval",
        type=float,
        default=None,
        help="seconds between passes (default: VM_WATCH_INTERVAL_S)",
    )
    p.set_defaults(func=_cmd_watch)

    p = sub.add_parser("status", help="print disks and VMs as JSON")
    p.set_defaults(func=_cmd_status)
    return parser


# ===== Entrypoint =====
def main(argv: list[str] | None = None, manager: LifecycleManager | None = None) -> int:
    args = _parser().parse_args(argv)
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    manager = manager or build_manager()
    return args.func(manager, args)


if __name__ == "__main__":
    sys.exit(main())
