"""Cross-process and cross-thread write lock behaviour."""

from __future__ import annotations

import os
import subprocess
import sys
import textwrap
import threading
import time
from pathlib import Path

import pytest

from tdcore.core import TodoDB
from tdcore.errors import LockTimeoutError
from tdcore.lock import LOCK_FILENAME, WriteLock, parse_holder_pid, process_alive
from tdcore.models import Issue
from tests._db_factory import make_db

_HOLDER_SCRIPT = textwrap.dedent(
    """
    import sys, time
    from tdcore.lock import WriteLock

    lock = WriteLock(sys.argv[1])
    lock.acquire(0.5)
    print("locked", flush=True)
    time.sleep(float(sys.argv[2]))
    lock.release()
    """
)


def _spawn_holder(todos_dir: Path, hold_seconds: float) -> subprocess.Popen[str]:
    proc = subprocess.Popen(
        [sys.executable, "-c", _HOLDER_SCRIPT, str(todos_dir), str(hold_seconds)],
        stdout=subprocess.PIPE,
        text=True,
    )
    assert proc.stdout is not None
    assert proc.stdout.readline().strip() == "locked"
    return proc


class TestWriteLock:
    def test_acquire_release_writes_holder(self, tmp_path: Path) -> None:
        lock = WriteLock(tmp_path)
        lock.acquire()
        try:
            assert lock.is_held
            holder = lock.holder()
            assert holder.startswith(f"pid:{os.getpid()} since:")
        finally:
            lock.release()
        assert not lock.is_held
        assert lock.holder() == ""

    def test_reentrant_in_same_thread(self, tmp_path: Path) -> None:
        lock = WriteLock(tmp_path)
        with lock.held():
            with lock.held():
                assert lock.is_held
            assert lock.is_held
        assert not lock.is_held

    def test_stale_holder_is_taken_over(self, tmp_path: Path) -> None:
        (tmp_path / LOCK_FILENAME).write_text("pid:999999999 since:2020-01-01T00:00:00Z\n")
        lock = WriteLock(tmp_path)
        with lock.held(0.2):
            assert lock.holder().startswith(f"pid:{os.getpid()}")

    def test_parse_holder_pid(self) -> None:
        assert parse_holder_pid("pid:123 since:x") == 123
        assert parse_holder_pid("garbage") is None
        assert parse_holder_pid("pid:abc") is None

    def test_process_alive(self) -> None:
        assert process_alive(os.getpid())
        assert not process_alive(0)


class TestCrossProcess:
    def test_second_process_times_out_with_holder_pid(self, tmp_path: Path) -> None:
        proc = _spawn_holder(tmp_path, 0.5)
        try:
            lock = WriteLock(tmp_path)
            start = time.monotonic()
            with pytest.raises(LockTimeoutError) as excinfo:
                lock.acquire(0.1)
            elapsed = time.monotonic() - start
        finally:
            proc.wait(timeout=10)

        message = str(excinfo.value)
        assert "timeout" in message
        assert f"pid:{proc.pid}" in message
        assert excinfo.value.holder.startswith(f"pid:{proc.pid}")
        assert 0.05 <= elapsed <= 0.15

    def test_acquire_after_release_is_fast(self, tmp_path: Path) -> None:
        proc = _spawn_holder(tmp_path, 0.1)
        proc.wait(timeout=10)
        lock = WriteLock(tmp_path)
        start = time.monotonic()
        lock.acquire(0.5)
        try:
            assert time.monotonic() - start < 0.05
        finally:
            lock.release()


class TestConcurrentWriters:
    def test_no_torn_updates(self, tmp_path: Path) -> None:
        make_db(tmp_path).close()
        counter = tmp_path / "counter.txt"
        counter.write_text("0")
        workers, iterations = 4, 25
        errors: list[BaseException] = []

        def work() -> None:
            lock = WriteLock(tmp_path / ".todos")
            try:
                for _ in range(iterations):
                    with lock.held(5.0):
                        value = int(counter.read_text())
                        counter.write_text(str(value + 1))
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=work) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert int(counter.read_text()) == workers * iterations

    def test_separate_handles_serialize_writes(self, tmp_path: Path) -> None:
        make_db(tmp_path).close()
        errors: list[BaseException] = []

        def work(n: int) -> None:
            db = TodoDB.open(tmp_path, lock_timeout=10.0)
            try:
                for i in range(10):
                    db.create_issue_logged(Issue(title=f"w{n}-{i}"), f"s{n}")
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)
            finally:
                db.close()

        threads = [threading.Thread(target=work, args=(n,)) for n in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        with TodoDB.open(tmp_path) as db:
            assert db.get_stats()["total"] == 30
            assert db.count_pending_events() == 30


class TestSharedHandleThreads:
    def test_other_thread_does_not_join_open_window(self, tmp_path: Path) -> None:
        db = make_db(tmp_path, lock_timeout=5.0, check_same_thread=False)
        window_open = threading.Event()
        created: list[str] = []
        errors: list[BaseException] = []

        def hold_then_fail() -> None:
            try:
                with db._write_txn():
                    window_open.set()
                    time.sleep(0.2)
                    raise RuntimeError("abort window")
            except RuntimeError:
                pass

        def create() -> None:
            window_open.wait(5.0)
            try:
                created.append(db.create_issue_logged(Issue(title="from other thread"), "s-other").id)
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)

        holder = threading.Thread(target=hold_then_fail)
        writer = threading.Thread(target=create)
        holder.start()
        writer.start()
        holder.join()
        writer.join()

        try:
            assert errors == []
            assert len(created) == 1
            row = db.conn.execute("SELECT COUNT(*) FROM issues WHERE id = ?", (created[0],)).fetchone()
            assert row[0] == 1
            assert [a.entity_id for a in db.get_actions_for_entity(created[0])] == [created[0]]
        finally:
            db.close()

    def test_nested_window_on_same_thread_still_joins(self, tmp_path: Path) -> None:
        db = make_db(tmp_path, check_same_thread=False)
        try:
            with pytest.raises(RuntimeError):
                with db._write_txn():
                    db.create_issue_logged(Issue(title="inner"), "s1")
                    raise RuntimeError("roll back both")
            assert db.get_stats()["total"] == 0
            assert db.count_pending_events() == 0
        finally:
            db.close()
