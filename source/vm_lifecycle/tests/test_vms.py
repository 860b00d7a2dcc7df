import os
import threading

import pytest

from vm_lifecycle.implementations import StoreError, VMStore
from vm_lifecycle.implementations.locks import disk_lock_key
from vm_lifecycle.models import GIB, ErrorCategory, ErrorKind, VMState


@pytest.fixture
def disk(disk_store):
    return disk_store.create("root", "qcow2", "10G").value


def _create(vm_store, default_iso_path, **overrides):
    params = dict(
        name="web",
        cpu_cores=2,
        memory_mb=2048,
        disk_name="root",
        disk_format="qcow2",
        iso_path=default_iso_path,
    )
    params.update(overrides)
    return vm_store.create(**params)


def test_create_vm_is_stopped_and_snapshots_the_disk(vm_store, disk, iso_path):
    res = _create(vm_store, iso_path)

    assert res.ok, res.error
    vm = res.value
    assert vm.status == VMState.stopped
    assert vm.last_started is None
    assert vm.disk.name == "root"
    assert vm.disk.path == disk.path
    assert vm.disk.size_bytes == 10 * GIB
    assert vm_store.get(vm.id) == vm


def test_ids_are_unique_and_increasing(vm_store, disk, iso_path):
    ids = [_create(vm_store, iso_path, name=f"vm{i}").value.id for i in range(5)]
    assert len(set(ids)) == 5
    assert [int(i) for i in ids] == sorted(int(i) for i in ids)


@pytest.mark.parametrize("missing", ["name", "cpu_cores", "memory_mb", "disk_name", "iso_path"])
def test_create_missing_fields(vm_store, disk, iso_path, missing):
    res = _create(vm_store, iso_path, **{missing: None})

    assert res.kind == ErrorKind.missing_field
    assert missing in res.error.reason


@pytest.mark.parametrize(
    "overrides",
    [{"cpu_cores": 0}, {"memory_mb": -1}, {"disk_format": "vhd"}],
)
def test_create_invalid_fields(vm_store, disk, iso_path, overrides):
    res = _create(vm_store, iso_path, **overrides)

    assert res.kind == ErrorKind.invalid_field
    assert res.category == ErrorCategory.validation


def test_create_with_unknown_or_vanished_disk(vm_store, disk, iso_path):
    assert _create(vm_store, iso_path, disk_name="other").kind == ErrorKind.disk_not_found

    os.remove(disk.path)
    res = _create(vm_store, iso_path)
    assert res.kind == ErrorKind.disk_not_found
    assert res.category == ErrorCategory.not_found


def test_create_with_missing_iso(vm_store, disk, tmp_path):
    res = _create(vm_store, str(tmp_path / "nope.iso"))
    assert res.kind == ErrorKind.iso_not_found


def test_list_keeps_creation_order(vm_store, disk, iso_path):
    first = _create(vm_store, iso_path, name="a").value
    second = _create(vm_store, iso_path, name="b").value
    assert [v.id for v in vm_store.list()] == [first.id, second.id]


def test_returned_records_are_copies(vm_store, disk, iso_path):
    vm = _create(vm_store, iso_path).value
    vm.name = "changed"
    vm.disk.size_bytes = 1
    stored = vm_store.get(vm.id)
    assert stored.name == "web"
    assert stored.disk.size_bytes == 10 * GIB


def test_update_editable_fields(vm_store, disk, iso_path):
    vm = _create(vm_store, iso_path).value

    res = vm_store.update(vm.id, {"name": "api", "memory_mb": 4096})

    assert res.ok
    stored = vm_store.get(vm.id)
    assert (stored.name, stored.cpu_cores, stored.memory_mb) == ("api", 2, 4096)
    assert stored.updated_at >= vm.updated_at


@pytest.mark.parametrize("field", ["iso_path", "disk", "status", "id"])
def test_update_rejects_non_editable_fields(vm_store, disk, iso_path, field):
    vm = _create(vm_store, iso_path).value

    res = vm_store.update(vm.id, {field: "x"})

    assert res.kind == ErrorKind.not_editable
    assert vm_store.get(vm.id) == vm


def test_update_validation_and_not_found(vm_store, disk, iso_path):
    vm = _create(vm_store, iso_path).value
    assert vm_store.update(vm.id, {"cpu_cores": 0}).kind == ErrorKind.invalid_field
    assert vm_store.update("missing", {"name": "x"}).kind == ErrorKind.not_found


def test_delete_stopped_vm(vm_store, disk, iso_path):
    vm = _create(vm_store, iso_path).value

    assert vm_store.delete(vm.id).ok
    assert vm_store.get(vm.id) is None
    assert vm_store.delete(vm.id).kind == ErrorKind.not_found


def test_delete_running_vm_is_a_conflict(vm_store, disk, iso_path):
    vm = _create(vm_store, iso_path).value
    vm.status = VMState.running
    vm_store.put(vm)

    res = vm_store.delete(vm.id)

    assert res.kind == ErrorKind.vm_running
    assert res.category == ErrorCategory.conflict
    assert vm_store.get(vm.id) is not None


def test_resize_refreshes_every_referencing_snapshot(vm_store, disk_store, disk, iso_path):
    a = _create(vm_store, iso_path, name="a").value
    b = _create(vm_store, iso_path, name="b").value
    disk_store.create("other", "raw", "1G")
    c = _create(vm_store, iso_path, name="c", disk_name="other", disk_format="raw").value

    assert disk_store.resize("root", "qcow2", "20G").ok

    assert vm_store.get(a.id).disk.size_bytes == 20 * GIB
    assert vm_store.get(b.id).disk.size_bytes == 20 * GIB
    assert vm_store.get(c.id).disk.size_bytes == 1 * GIB


def test_records_survive_a_restart(doc_store, disk_store, vm_store, disk, iso_path):
    vm = _create(vm_store, iso_path).value

    reloaded = VMStore(doc_store, disk_store)

    assert reloaded.get(vm.id) == vm
    # the id counter continues past persisted ids
    assert int(reloaded._next_id()) > int(vm.id)


def test_failed_save_restores_previous_record(vm_store, doc_store, disk, iso_path):
    vm = _create(vm_store, iso_path).value
    doc_store.fail_saves = True

    vm.name = "renamed"
    with pytest.raises(StoreError):
        vm_store.put(vm)

    assert vm_store.get(vm.id).name == "web"


def test_create_waits_on_the_sanitized_disk_lock(vm_store, locks, disk_store, iso_path):
    disk_store.create("testdisk", "qcow2", "1G")
    results = []
    worker = threading.Thread(
        target=lambda: results.append(_create(vm_store, iso_path, disk_name="test disk"))
    )

    with locks.hold(disk_lock_key("testdisk", "qcow2")):
        worker.start()
        worker.join(0.2)
        assert worker.is_alive()
    worker.join(5)

    assert results[0].ok, results[0].error
    assert results[0].value.disk.name == "testdisk"
