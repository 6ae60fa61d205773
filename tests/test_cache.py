import threading

from beepserver.cache import TASK_RUNNING_STORE, RunningTaskStore


def test_put_then_get_returns_same_object():
    store = RunningTaskStore()
    entry = object()
    store.put(7, entry)
    assert store.get(7) is entry
    assert 7 in store


def test_get_missing_returns_none():
    store = RunningTaskStore()
    assert store.get(99) is None
    assert 99 not in store


def test_put_replaces_existing_entry():
    store = RunningTaskStore()
    first, second = object(), object()
    store.put(1, first)
    store.put(1, second)
    assert store.get(1) is second
    assert len(store) == 1


def test_remove_forgets_entry_and_ignores_unknown():
    store = RunningTaskStore()
    store.put(3, "running")
    store.remove(3)
    store.remove(3)
    assert store.get(3) is None
    assert len(store) == 0


def test_items_is_a_snapshot():
    store = RunningTaskStore()
    store.put(1, "a")
    store.put(2, "b")
    snapshot = store.items()
    store.remove(1)
    assert sorted(snapshot) == [(1, "a"), (2, "b")]
    assert store.items() == [(2, "b")]


def test_concurrent_puts_keep_every_entry():
    store = RunningTaskStore()
    count = 200

    def worker(offset):
        for i in range(offset, count, 4):
            store.put(i, i)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(store) == count
    assert sorted(k for k, _ in store.items()) == list(range(count))


def test_global_store_is_shared_instance():
    TASK_RUNNING_STORE.put(-1, "probe")
    try:
        assert TASK_RUNNING_STORE.get(-1) == "probe"
    finally:
        TASK_RUNNING_STORE.remove(-1)
    assert TASK_RUNNING_STORE.get(-1) is None