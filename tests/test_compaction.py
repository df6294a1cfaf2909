"""Compaction watchdog and the hot store lock."""

from datetime import datetime, timedelta
import threading
import time

import pytest

from storage.compaction import CompactionWatchdog
from storage.hot_store import HotStoreError
from storage.locks import ReadWriteLock

NOW = datetime(2026, 10, 19, 12, 0, 0)


def fill(store, count=500):
    store.append("wait_stats", [
        {"collection_time": NOW, "server_id": 1, "server_name": "primary",
         "wait_type": f"WAIT_{i}", "waiting_tasks_count": i}
        for i in range(count)
    ])


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class TestCompaction:
    """Rewriting the hot store keeps every row."""

    def test_compact_preserves_rows(self, store):
        fill(store)
        store.checkpoint()
        store.compact()

        assert store.row_count("wait_stats") == 500
        assert not store.database_path.with_name("hot.compact.duckdb").exists()
        # Still writable after reopening
        fill(store, 1)
        assert store.row_count("wait_stats") == 501

    def test_watchdog_runs_when_due(self, store):
        clock = FakeClock(NOW)
        watchdog = CompactionWatchdog(store, interval=timedelta(hours=24), size_warning_mb=1024, clock=clock)

        assert watchdog.run_if_due() is False
        clock.now = NOW + timedelta(hours=25)
        assert watchdog.run_if_due() is True
        assert watchdog.last_compaction == NOW + timedelta(hours=25)
        assert watchdog.run_if_due() is False

    def test_pause_flag_set_during_compaction(self, store, monkeypatch):
        pause = threading.Event()
        seen = []

        def fake_compact():
            seen.append(pause.is_set())
            return 0.0

        monkeypatch.setattr(store, "compact", fake_compact)
        CompactionWatchdog(store, timedelta(hours=1), 1024, pause_flag=pause).compact()

        assert seen == [True]
        assert not pause.is_set()

    def test_failure_clears_pause_flag(self, store, monkeypatch):
        pause = threading.Event()

        def broken():
            raise HotStoreError("Compaction failed: disk full")

        monkeypatch.setattr(store, "compact", broken)
        assert CompactionWatchdog(store, timedelta(hours=1), 1024, pause_flag=pause).compact() == 0.0
        assert not pause.is_set()

    def test_size_warning_logged_once(self, store, monkeypatch, caplog):
        monkeypatch.setattr(store, "size_mb", lambda: 2048.0)
        watchdog = CompactionWatchdog(store, timedelta(hours=24), size_warning_mb=1024)

        with caplog.at_level("WARNING", logger="storage.compaction"):
            watchdog.check_size()
            watchdog.check_size()

        warnings = [r for r in caplog.records if "warning threshold" in r.getMessage()]
        assert len(warnings) == 1


class TestReadWriteLock:
    """Shared/exclusive gate semantics."""

    def test_readers_share(self):
        lock = ReadWriteLock()
        lock.acquire_read()
        acquired = threading.Event()

        def reader():
            with lock.read():
                acquired.set()

        t = threading.Thread(target=reader)
        t.start()
        assert acquired.wait(timeout=2)
        t.join()
        lock.release_read()

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        lock.acquire_write()
        acquired = threading.Event()

        def reader():
            with lock.read():
                acquired.set()

        t = threading.Thread(target=reader)
        t.start()
        assert not acquired.wait(timeout=0.2)
        lock.release_write()
        assert acquired.wait(timeout=2)
        t.join()

    def test_writer_is_reentrant_and_may_read(self):
        lock = ReadWriteLock()
        with lock.write():
            with lock.write():
                with lock.read():
                    assert lock.write_locked
        assert not lock.write_locked

    def test_waiting_writer_blocks_new_readers(self):
        lock = ReadWriteLock()
        lock.acquire_read()
        order = []

        def writer():
            with lock.write():
                order.append("writer")

        def late_reader():
            with lock.read():
                order.append("reader")

        w = threading.Thread(target=writer)
        w.start()
        time.sleep(0.1)
        r = threading.Thread(target=late_reader)
        r.start()
        time.sleep(0.1)
        assert order == []

        lock.release_read()
        w.join(timeout=2)
        r.join(timeout=2)
        assert order == ["writer", "reader"]

    def test_release_by_other_thread_rejected(self):
        lock = ReadWriteLock()
        lock.acquire_write()
        errors = []

        def intruder():
            try:
                lock.release_write()
            except RuntimeError as e:
                errors.append(e)

        t = threading.Thread(target=intruder)
        t.start()
        t.join()
        lock.release_write()
        assert len(errors) == 1


@pytest.mark.parametrize("count", [0, 3])
def test_append_is_all_or_nothing(store, count):
    rows = [{"collection_time": NOW, "server_id": 1, "server_name": "primary", "wait_type": "A"}] * count
    rows.append({"collection_time": NOW, "server_id": 1, "server_name": "primary", "wait_type": None})

    with pytest.raises(HotStoreError):
        store.append("wait_stats", rows)
    assert store.row_count("wait_stats") == 0


def test_append_rejects_unknown_columns(store):
    with pytest.raises(HotStoreError):
        store.append("wait_stats", [{"collection_time": NOW, "server_id": 1, "server_name": "x",
                                     "wait_type": "A", "bogus": 1}])
