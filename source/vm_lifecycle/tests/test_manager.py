import os
import threading
from collections import namedtuple

from vm_lifecycle.implementations import manager as manager_mod
from vm_lifecycle.models import (
    GIB,
    DiskOut,
    ErrorCategory,
    ErrorKind,
    VMOut,
    VMState,
)


def _vm(manager, iso_path, name="web", disk_name="root", disk_format="qcow2"):
    res = manager.create_vm(
        name=name,
        cpu_cores=2,
        memory_mb=2048,
        disk_name=disk_name,
        disk_format=disk_format,
        iso_path=iso_path,
    )
    assert res.ok, res.error
    return res.value


def test_end_to_end_lifecycle(manager, launcher, iso_path):
    disk = manager.create_disk("root", "qcow2", "10G").value
    assert disk.size_bytes == 10 * GIB

    vm = _vm(manager, iso_path)
    assert vm.status == VMState.stopped

    started = manager.start_vm(vm.id)
    assert started.ok, started.error
    assert manager.get_vm(vm.id).value.status == VMState.running
    assert len(launcher.running) == 1

    resized = manager.resize_disk("root", "qcow2", "20G")
    assert resized.ok, resized.error
    assert manager.get_vm(vm.id).value.disk.size_bytes == 20 * GIB

    stopped = manager.stop_vm(vm.id)
    assert stopped.ok, stopped.error
    assert manager.get_vm(vm.id).value.status == VMState.stopped
    assert launcher.running == set()

    assert manager.delete_vm(vm.id).ok
    assert manager.delete_disk("root", "qcow2").ok
    assert manager.list_vms().value == []
    assert list(manager.list_disks().value) == []


def test_create_disk_twice_is_a_conflict(manager):
    assert manager.create_disk("root", "qcow2", "10G").ok

    res = manager.create_disk("root", "qcow2", "10G")

    assert res.category == ErrorCategory.conflict
    assert res.error.reason.startswith("Create disk: ")
    assert len(manager.list_disks().value) == 1


def test_resize_smaller_fails_and_leaves_every_size(manager, iso_path):
    manager.create_disk("root", "qcow2", "10G")
    vm = _vm(manager, iso_path)

    res = manager.resize_disk("root", "qcow2", "5G")

    assert res.kind == ErrorKind.shrink_not_allowed
    assert [d.size_bytes for d in manager.list_disks().value] == [10 * GIB]
    assert manager.get_vm(vm.id).value.disk.size_bytes == 10 * GIB


def test_resize_updates_all_referencing_vms(manager, iso_path):
    manager.create_disk("root", "qcow2", "10G")
    ids = [_vm(manager, iso_path, name=f"vm{i}").id for i in range(3)]

    assert manager.resize_disk("root", "qcow2", "30G").ok

    for vm_id in ids:
        assert manager.get_vm(vm_id).value.disk.size_bytes == 30 * GIB


def test_resize_validation_passes_through(manager):
    assert manager.resize_disk("root", "vhd", "30G").kind == ErrorKind.invalid_format
    assert manager.resize_disk("", "qcow2", "30G").kind == ErrorKind.missing_field


def test_start_after_disk_file_removed(manager, launcher, iso_path):
    disk = manager.create_disk("root", "qcow2", "10G").value
    vm = _vm(manager, iso_path)
    os.remove(disk.path)

    res = manager.start_vm(vm.id)

    assert res.kind == ErrorKind.disk_missing
    assert res.category == ErrorCategory.not_found
    assert manager.get_vm(vm.id).value.status == VMState.stopped
    assert launcher.launched == []


def test_delete_running_vm_then_after_stop(manager, iso_path):
    manager.create_disk("root", "qcow2", "10G")
    vm = _vm(manager, iso_path)
    manager.start_vm(vm.id)

    res = manager.delete_vm(vm.id)
    assert res.kind == ErrorKind.vm_running
    assert res.category == ErrorCategory.conflict

    assert manager.stop_vm(vm.id).ok
    assert manager.delete_vm(vm.id).ok
    assert manager.get_vm(vm.id).kind == ErrorKind.not_found


def test_delete_disk_ignores_references(manager, iso_path):
    manager.create_disk("root", "qcow2", "10G")
    vm = _vm(manager, iso_path)
    manager.start_vm(vm.id)

    assert manager.delete_disk("root", "qcow2").ok
    assert manager.get_vm(vm.id).value.status == VMState.running


def test_reconcile_demotes_running_vm_without_process(manager, launcher, iso_path):
    manager.create_disk("root", "qcow2", "10G")
    vm = _vm(manager, iso_path)
    manager.start_vm(vm.id)
    launcher.running.clear()

    res = manager.reconcile()

    assert res.ok
    assert [d.vm_id for d in res.value] == [vm.id]
    assert manager.get_vm(vm.id).value.status == VMState.stopped


def test_start_failure_of_running_vm_persists_stopped(manager, launcher, iso_path):
    manager.create_disk("root", "qcow2", "10G")
    vm = _vm(manager, iso_path)
    manager.start_vm(vm.id)
    launcher.launch_error = "boom"

    res = manager.start_vm(vm.id)

    assert res.kind == ErrorKind.launch_failed
    assert res.error.reason == f"Start VM {vm.id}: boom"
    assert manager.get_vm(vm.id).value.status == VMState.stopped


def test_unknown_vm_operations(manager):
    assert manager.start_vm("404").kind == ErrorKind.not_found
    assert manager.stop_vm("404").kind == ErrorKind.not_found
    assert manager.update_vm("404", name="x").kind == ErrorKind.not_found
    assert manager.delete_vm("404").kind == ErrorKind.not_found


def test_update_vm_accepts_dict_or_keywords(manager, iso_path):
    manager.create_disk("root", "qcow2", "10G")
    vm = _vm(manager, iso_path)

    assert manager.update_vm(vm.id, {"name": "api"}, cpu_cores=4).ok
    updated = manager.get_vm(vm.id).value
    assert (updated.name, updated.cpu_cores) == ("api", 4)

    res = manager.update_vm(vm.id, iso_path="/other.iso")
    assert res.kind == ErrorKind.not_editable


def test_store_fault_is_reported_as_internal(manager, doc_store, caplog):
    doc_store.fail_saves = True

    with caplog.at_level("ERROR"):
        res = manager.create_disk("root", "qcow2", "10G")

    assert res.kind == ErrorKind.internal
    assert res.category == ErrorCategory.internal
    assert "backend unavailable" in res.error.reason
    assert "create_disk failed on the document store" in caplog.text


def test_failed_persist_after_launch_aborts_the_process(manager, launcher, doc_store, iso_path):
    manager.create_disk("root", "qcow2", "10G")
    vm = _vm(manager, iso_path)
    doc_store.fail_saves = True

    res = manager.start_vm(vm.id)

    assert res.kind == ErrorKind.internal
    assert launcher.running == set()
    assert len(launcher.killed) == 1
    doc_store.fail_saves = False
    assert manager.get_vm(vm.id).value.status == VMState.stopped
    assert manager.supervisor.handle(vm.id) is None


def test_concurrent_resize_and_start_stay_consistent(manager, iso_path):
    manager.create_disk("root", "qcow2", "10G")
    ids = [_vm(manager, iso_path, name=f"vm{i}").id for i in range(4)]
    errors = []

    def _resize():
        for gib in range(11, 21):
            res = manager.resize_disk("root", "qcow2", f"{gib}G")
            if not res.ok:
                errors.append(res.error)

    def _start(vm_id):
        res = manager.start_vm(vm_id)
        if not res.ok:
            errors.append(res.error)

    threads = [threading.Thread(target=_resize)]
    threads += [threading.Thread(target=_start, args=(i,)) for i in ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert errors == []
    for vm_id in ids:
        vm = manager.get_vm(vm_id).value
        assert vm.status == VMState.running
        assert vm.disk.size_bytes == 20 * GIB


def test_isos_listing_and_registration(manager, iso_path, tmp_path):
    external = tmp_path / "alpine.iso"
    external.write_bytes(b"\0" * 1024)

    res = manager.register_iso(str(external), "Alpine")
    assert res.ok
    assert res.value.id.startswith("custom_")

    listed = manager.list_isos().value
    assert [(i.name, i.path) for i in listed] == [
        ("debian-12.iso", iso_path),
        ("Alpine", str(external)),
    ]
    assert listed[0].id == "iso_debian-12.iso"

    assert manager.register_iso(None).kind == ErrorKind.missing_field
    assert manager.register_iso(str(tmp_path / "x.iso")).kind == ErrorKind.iso_not_found


def test_available_disk_space(manager, monkeypatch):
    usage = namedtuple("usage", "total used free percent")
    monkeypatch.setattr(
        manager_mod.psutil, "disk_usage", lambda p: usage(100, 50, 5 * 1024**3, 50.0)
    )

    res = manager.available_disk_space()

    assert res.ok and res.value == 5.0


def test_results_render_as_responses(manager):
    ok = manager.create_disk("root", "qcow2", "1G").to_response(
        lambda d: DiskOut.from_record(d).model_dump()
    )
    assert ok.ok and ok.data["size_bytes"] == GIB

    failed = manager.create_disk("root", "qcow2", "1G").to_response()
    assert failed.model_dump(mode="json")["category"] == "conflict"
    assert failed.kind == ErrorKind.already_exists


def test_vm_out_from_record(manager, iso_path):
    manager.create_disk("root", "qcow2", "10G")
    vm = _vm(manager, iso_path)

    out = VMOut.from_record(vm).model_dump(mode="json")

    assert out["name"] == "web"
    assert out["status"] == "stopped"
    assert out["disk_format"] == "qcow2"
    assert out["disk_size_bytes"] == 10 * GIB
