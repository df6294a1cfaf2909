"""Retention sweep over archive file names."""

from datetime import datetime, timedelta

import pytest

from storage.retention import RetentionSweeper, parse_archive_timestamp

NOW = datetime(2026, 10, 19, 12, 0, 0)


@pytest.mark.parametrize("name,expected", [
    ("20261019_143000_wait_stats.parquet", datetime(2026, 10, 19)),
    ("20260101_000000_1_deadlocks.parquet", datetime(2026, 1, 1)),
    ("2026-02_wait_stats.parquet", datetime(2026, 3, 1)),
    ("2026-12_cpu_utilization_stats.parquet", datetime(2027, 1, 1)),
    ("wait_stats_backup.parquet", None),
    ("2026-13_wait_stats.parquet", None),
])
def test_parse_archive_timestamp(name, expected):
    assert parse_archive_timestamp(name) == expected


def touch(directory, *names):
    for name in names:
        (directory / name).write_bytes(b"")


def test_sweep_deletes_only_expired(tmp_path):
    touch(
        tmp_path,
        "20260601_120000_wait_stats.parquet",   # expired
        "20261001_120000_wait_stats.parquet",   # kept
        "2026-06_memory_stats.parquet",         # expired legacy monthly
        "2026-07_memory_stats.parquet",         # month ends 2026-08-01, window starts 2026-07-21
        "notes_wait_stats.parquet",             # unparseable
    )
    sweeper = RetentionSweeper(tmp_path, clock=lambda: NOW)

    deleted = sweeper.sweep(timedelta(days=90))

    assert sorted(p.name for p in deleted) == [
        "20260601_120000_wait_stats.parquet",
        "2026-06_memory_stats.parquet",
    ]
    assert sorted(p.name for p in tmp_path.iterdir()) == [
        "20261001_120000_wait_stats.parquet",
        "2026-07_memory_stats.parquet",
        "notes_wait_stats.parquet",
    ]


def test_sweep_missing_directory(tmp_path):
    assert RetentionSweeper(tmp_path / "absent", clock=lambda: NOW).sweep(timedelta(days=1)) == []


def test_sweep_refreshes_store_views(store):
    old = store.archive_path / "20260101_000000_wait_stats.parquet"
    with store.read() as cur:
        cur.execute(
            "COPY (SELECT TIMESTAMP '2026-01-01 00:00:00' AS collection_time, 1 AS server_id, "
            "'primary' AS server_name, 'LCK_M_X' AS wait_type) "
            f"TO '{old.as_posix()}' (FORMAT PARQUET)"
        )
    store.refresh_archive_views()
    assert store.scalar("SELECT COUNT(*) FROM v_wait_stats") == 1

    RetentionSweeper(store.archive_path, store=store, clock=lambda: NOW).sweep(timedelta(days=90))

    assert not old.exists()
    assert store.scalar("SELECT COUNT(*) FROM v_wait_stats") == 0
