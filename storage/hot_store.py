"""
DuckDB hot store.

One root connection is opened per process; every operation runs on its own
cursor (a DuckDB cursor is an independent connection to the same database),
so collector threads can append concurrently. Access is gated by a
ReadWriteLock: appends and queries take the shared side, while archive,
compaction and reset take the exclusive side.

Archived Parquet files live next to the database (data/archive/ by default)
and are exposed through two views per table:

    archive_<table>  every Parquet file written for the table
    v_<table>        hot rows plus archived rows
"""

from contextlib import contextmanager
from datetime import datetime
import os
from pathlib import Path
import threading
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence
import duckdb
from sharedUtils.logger.logger import get_logger
from storage.locks import ReadWriteLock
from storage.schema import ARCHIVABLE_TABLES, TABLES, columns, create_statements

logger = get_logger(__name__)

BYTES_TO_MB = 1024 * 1024
ARCHIVE_DIR_NAME = "archive"
COMPACT_CATALOG = "compact_target"


class HotStoreError(Exception):
    """A hot store operation failed."""


def sql_path(path: Path) -> str:
    """Path as a single-quoted SQL string literal."""
    return "'" + Path(path).resolve().as_posix().replace("'", "''") + "'"


def sql_timestamp(value: datetime) -> str:
    """Timestamp as a SQL literal (COPY does not accept bound parameters)."""
    return f"TIMESTAMP '{value.strftime('%Y-%m-%d %H:%M:%S.%f')}'"


def archive_glob(archive_path: Path, table: str) -> str:
    """Quoted glob literal matching every archive file of a table."""
    pattern = f"{Path(archive_path).resolve().as_posix()}/*_{table}.parquet"
    return "'" + pattern.replace("'", "''") + "'"


class HotStore:
    """
    Embedded analytical store for recent samples.

    Attributes:
        database_path (Path): DuckDB database file
        archive_path (Path): directory holding archived Parquet files
        lock (ReadWriteLock): process-wide shared/exclusive gate
    """

    def __init__(self, database_path, archive_path=None):
        self.database_path = Path(database_path)
        self.archive_path = Path(archive_path) if archive_path else self.database_path.parent / ARCHIVE_DIR_NAME
        self.lock = ReadWriteLock()
        self._conn: Optional[duckdb.DuckDBPyConnection] = None
        self._conn_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def initialize(self) -> None:
        """Open the database, create missing tables and build archive views."""
        with self.lock.write():
            if self._conn is None:
                self._open()
            self._create_schema()
            self._build_archive_views()
        logger.info("Hot store ready at %s (%.1f MB)", self.database_path, self.size_mb())

    def _open(self) -> None:
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.archive_path.mkdir(parents=True, exist_ok=True)
        with self._conn_lock:
            self._conn = duckdb.connect(str(self.database_path))

    def _close(self) -> None:
        with self._conn_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _create_schema(self) -> None:
        with self.connection() as cur:
            for statement in create_statements():
                cur.execute(statement)

    def close(self) -> None:
        with self.lock.write():
            self._close()
        logger.debug("Hot store closed")

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    # ------------------------------------------------------------------ #
    # Access
    # ------------------------------------------------------------------ #

    @contextmanager
    def connection(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """
        Raw cursor without taking the lock.

        Callers must already hold a side of the lock (read(), write_lock()).
        """
        with self._conn_lock:
            if self._conn is None:
                raise HotStoreError("hot store is not initialized")
            cursor = self._conn.cursor()
        try:
            yield cursor
        finally:
            cursor.close()

    @contextmanager
    def read(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Cursor under the shared side of the lock."""
        with self.lock.read():
            with self.connection() as cursor:
                yield cursor

    @contextmanager
    def write_lock(self):
        """Hold the exclusive side: no appends or reads run meanwhile."""
        with self.lock.write():
            yield

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[tuple]:
        with self.read() as cur:
            result = cur.execute(sql, list(params)) if params else cur.execute(sql)
            return result.fetchall()

    def query_records(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        with self.read() as cur:
            result = cur.execute(sql, list(params)) if params else cur.execute(sql)
            names = [d[0] for d in result.description]
            return [dict(zip(names, row)) for row in result.fetchall()]

    def scalar(self, sql: str, params: Optional[Sequence[Any]] = None) -> Any:
        rows = self.query(sql, params)
        return rows[0][0] if rows else None

    def row_count(self, table: str) -> int:
        columns(table)  # validates the name
        return self.scalar(f"SELECT COUNT(*) FROM {table}")

    def append(self, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
        """
        Append a batch of rows in one transaction.

        Rows are dicts keyed by column name; missing columns are NULL. Either
        the whole batch commits or none of it does.

        Returns:
            Number of rows written

        Raises:
            HotStoreError: unknown table/columns or a failed insert
        """
        if not rows:
            return 0

        try:
            cols = columns(table)
        except KeyError as e:
            raise HotStoreError(str(e)) from e

        unknown = set().union(*(row.keys() for row in rows)) - set(cols)
        if unknown:
            raise HotStoreError(f"Unknown columns for {table}: {sorted(unknown)}")

        values = [tuple(row.get(c) for c in cols) for row in rows]
        sql = f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join('?' * len(cols))})"

        with self.read() as cur:
            cur.begin()
            try:
                cur.executemany(sql, values)
                cur.commit()
            except duckdb.Error as e:
                cur.rollback()
                raise HotStoreError(f"Append to {table} failed: {e}") from e

        return len(values)

    def checkpoint(self) -> bool:
        """Flush the WAL into the database file. Returns False if DuckDB refused."""
        try:
            with self.read() as cur:
                cur.execute("CHECKPOINT")
            return True
        except duckdb.Error as e:
            # Another transaction was still open; the next burst retries
            logger.debug("Checkpoint skipped: %s", e)
            return False

    # ------------------------------------------------------------------ #
    # Archive views
    # ------------------------------------------------------------------ #

    def archive_files(self, table: str) -> List[Path]:
        if not self.archive_path.exists():
            return []
        return sorted(self.archive_path.glob(f"*_{table}.parquet"))

    def refresh_archive_views(self) -> None:
        """Rebuild archive_<table> and v_<table> for the current file set."""
        with self.lock.write():
            self._build_archive_views()

    def _build_archive_views(self) -> None:
        with self.connection() as cur:
            for table in ARCHIVABLE_TABLES:
                if self.archive_files(table):
                    source = f"read_parquet({archive_glob(self.archive_path, table)}, union_by_name = true)"
                else:
                    # Same shape as the hot table, no rows
                    source = f"(SELECT * FROM {table} WHERE false)"
                try:
                    cur.execute(f"CREATE OR REPLACE VIEW archive_{table} AS SELECT * FROM {source}")
                    cur.execute(
                        f"CREATE OR REPLACE VIEW v_{table} AS "
                        f"SELECT * FROM {table} UNION ALL BY NAME SELECT * FROM archive_{table}"
                    )
                except duckdb.Error as e:
                    logger.error("Failed to build archive view for %s: %s", table, e)
        logger.debug("Archive views rebuilt from %s", self.archive_path)

    # ------------------------------------------------------------------ #
    # Space management
    # ------------------------------------------------------------------ #

    def size_mb(self) -> float:
        total = 0
        for path in (self.database_path, self._wal_path(self.database_path)):
            if path.exists():
                total += path.stat().st_size
        return total / BYTES_TO_MB

    @staticmethod
    def _wal_path(path: Path) -> Path:
        return Path(str(path) + ".wal")

    def compact(self) -> float:
        """
        Rewrite the database into a fresh file to reclaim space from deleted rows.

        Returns:
            Megabytes reclaimed
        """
        tmp_path = self.database_path.with_name(self.database_path.stem + ".compact.duckdb")

        with self.lock.write():
            before = self.size_mb()
            for stale in (tmp_path, self._wal_path(tmp_path)):
                if stale.exists():
                    stale.unlink()

            try:
                with self.connection() as cur:
                    cur.execute(f"ATTACH {sql_path(tmp_path)} AS {COMPACT_CATALOG}")
                    try:
                        for statement in create_statements(COMPACT_CATALOG):
                            cur.execute(statement)
                        for table in TABLES:
                            cur.execute(f"INSERT INTO {COMPACT_CATALOG}.{table} SELECT * FROM {table}")
                        cur.execute(f"CHECKPOINT {COMPACT_CATALOG}")
                    finally:
                        cur.execute(f"DETACH {COMPACT_CATALOG}")
            except (duckdb.Error, HotStoreError) as e:
                if tmp_path.exists():
                    tmp_path.unlink()
                raise HotStoreError(f"Compaction failed: {e}") from e

            self._close()
            os.replace(tmp_path, self.database_path)
            wal = self._wal_path(self.database_path)
            if wal.exists():
                wal.unlink()
            self._open()
            self._create_schema()
            self._build_archive_views()
            after = self.size_mb()

        logger.info("Compacted hot store: %.1f MB -> %.1f MB", before, after)
        return max(before - after, 0.0)

    def reset(self) -> None:
        """Delete the database file and start again from empty tables."""
        with self.lock.write():
            self._close()
            for path in (self.database_path, self._wal_path(self.database_path)):
                if path.exists():
                    path.unlink()
            self._open()
            self._create_schema()
            self._build_archive_views()
        logger.warning("Hot store reset to empty at %s", self.database_path)

    def __repr__(self) -> str:
        return f"HotStore(database_path='{self.database_path}', archive_path='{self.archive_path}')"
