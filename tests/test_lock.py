from __future__ import annotations

from pathlib import Path

import pytest

from claude_task.sync.lock import LockAlreadyHeld, LockRecord, LockStore


def make_record(task_id: str = "task-1", pid: int = 4242, timestamp: int = 1_000) -> LockRecord:
    return LockRecord(task_id=task_id, pid=pid, timestamp=timestamp, hostname="host")


def test_acquire_is_exclusive(tmp_path: Path) -> None:
    store = LockStore(clock=lambda: 1_000)
    lock_path = tmp_path / "meta" / "sync_lock"

    handle = store.acquire(lock_path, make_record("first"))
    with pytest.raises(LockAlreadyHeld):
        store.acquire(lock_path, make_record("second"))

    assert store.read(lock_path).task_id == "first"
    handle.release()
    assert not lock_path.exists()

    with store.acquire(lock_path, make_record("second")) as second:
        assert second.record.task_id == "second"
    assert not lock_path.exists()
    assert [path.name for path in lock_path.parent.iterdir()] == []


def test_stale_requires_age_and_dead_holder(tmp_path: Path) -> None:
    lock_path = tmp_path / "sync_lock"
    alive = {99999: False}
    store = LockStore(clock=lambda: 1_120, pid_alive=lambda pid: alive.get(pid, True))
    store.acquire(lock_path, make_record(pid=99999, timestamp=1_000))

    assert store.is_stale(lock_path, 60)
    assert not store.is_stale(lock_path, 300)

    alive[99999] = True
    assert not store.is_stale(lock_path, 60)


def test_corrupt_lock_is_stale_and_unreadable(tmp_path: Path) -> None:
    lock_path = tmp_path / "sync_lock"
    lock_path.write_text("{not json", encoding="utf-8")
    store = LockStore()

    assert store.read(lock_path) is None
    assert store.is_stale(lock_path, 60)


def test_missing_lock_is_not_stale_and_release_is_noop(tmp_path: Path) -> None:
    store = LockStore()
    lock_path = tmp_path / "sync_lock"

    assert store.read(lock_path) is None
    assert not store.is_stale(lock_path, 0)
    store.release(lock_path)


def test_reclaim_removes_only_stale_locks(tmp_path: Path) -> None:
    lock_path = tmp_path / "sync_lock"
    store = LockStore(clock=lambda: 1_120, pid_alive=lambda pid: pid != 99999)

    store.acquire(lock_path, make_record(pid=4242, timestamp=1_000))
    assert store.reclaim_stale(lock_path, 60) is False
    assert lock_path.exists()
    store.release(lock_path)

    store.acquire(lock_path, make_record(pid=99999, timestamp=1_000))
    assert store.reclaim_stale(lock_path, 60) is True
    assert not lock_path.exists()
    assert store.reclaim_stale(lock_path, 60) is False
    assert list(tmp_path.iterdir()) == []


def test_reclaim_restores_lock_taken_over_by_new_holder(tmp_path: Path, monkeypatch) -> None:
    lock_path = tmp_path / "sync_lock"
    store = LockStore(clock=lambda: 1_120, pid_alive=lambda pid: pid != 99999)
    fresh = make_record("winner", pid=4242, timestamp=1_110)
    store.acquire(lock_path, fresh)

    stale = make_record("crashed", pid=99999, timestamp=1_000)
    original_read = store.read
    reads = iter([stale])
    monkeypatch.setattr(store, "read", lambda path: next(reads, None) or original_read(path))

    assert store.reclaim_stale(lock_path, 60) is False
    assert original_read(lock_path) == fresh
    assert [path.name for path in tmp_path.iterdir()] == ["sync_lock"]
