import threading

from vm_lifecycle.implementations import KeyedLocks


def test_locks_are_dropped_once_released():
    locks = KeyedLocks()

    with locks.hold("disk:a.raw", "vm:1"):
        assert len(locks) == 2
        with locks.hold("vm:1"):
            assert len(locks) == 2

    assert len(locks) == 0


def test_waiting_caller_keeps_the_lock_alive():
    locks = KeyedLocks()
    order = []

    def _second():
        with locks.hold("vm:1"):
            order.append("second")

    with locks.hold("vm:1"):
        worker = threading.Thread(target=_second)
        worker.start()
        worker.join(0.1)
        assert worker.is_alive()
        order.append("first")
    worker.join(5)

    assert order == ["first", "second"]
    assert len(locks) == 0


def test_hold_orders_keys_so_overlapping_sets_do_not_deadlock():
    locks = KeyedLocks()
    done = []

    def _take(keys):
        for _ in range(200):
            with locks.hold(*keys):
                pass
        done.append(keys)

    threads = [
        threading.Thread(target=_take, args=(("vm:1", "vm:2"),)),
        threading.Thread(target=_take, args=(("vm:2", "vm:1"),)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert len(done) == 2
    assert len(locks) == 0
