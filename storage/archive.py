"""
Archive engine: move aged hot-store rows into immutable Parquet files.

Each table is archived under the hot store's exclusive write lock:

    1. count rows older than the cutoff (skip the table when zero)
    2. write <file>.pending.json describing the step
    3. COPY the rows to <YYYYMMDD_HHMMSS>_<table>.parquet (ZSTD)
    4. read the file back and compare its row count
    5. DELETE the rows from the hot table
    6. remove the pending marker

A crash between 3 and 6 leaves the marker behind. resume_pending() finds it:
if the file is complete the delete is replayed, otherwise the partial file is
removed and the rows stay hot for the next cycle. Either way no row ends up
both hot and archived.

Archive views are rebuilt before the write lock is released, so a reader
never sees rows gone from the hot table without the file being visible.
"""

from datetime import datetime, timedelta
from pathlib import Path
import threading
from typing import Callable, Dict, List, Optional, Sequence
import duckdb
from pydantic import BaseModel, Field, ValidationError
from sharedUtils.logger.logger import get_logger
from sharedUtils.sources.connector import utc_now
from storage.hot_store import HotStore, HotStoreError, sql_path, sql_timestamp
from storage.schema import ARCHIVABLE_TABLES, TIME_COLUMN

logger = get_logger(__name__)

FILE_PREFIX_FORMAT = "%Y%m%d_%H%M%S"
MARKER_SUFFIX = ".pending.json"

# Only one archive or reset may run at a time in this process
_ARCHIVE_LOCK = threading.Lock()


class ArchiveError(Exception):
    """An export could not be verified."""


class ArchiveMarker(BaseModel):
    """Journal entry for an export whose delete has not completed yet."""
    table: str
    file_name: str
    cutoff: datetime = Field(description="Rows on the old side of this were exported")
    inclusive: bool = Field(default=False, description="Cutoff itself was exported too")
    row_count: int
    created_at: datetime

    def where_clause(self) -> str:
        op = "<=" if self.inclusive else "<"
        return f"{TIME_COLUMN} {op} {sql_timestamp(self.cutoff)}"


class ArchiveEngine:
    """
    Exports aged rows to Parquet and removes them from the hot store.

    Attributes:
        store (HotStore): hot store whose archive_path receives the files
        tables (list): tables to archive
    """

    def __init__(
        self,
        store: HotStore,
        clock: Callable[[], datetime] = utc_now,
        tables: Optional[Sequence[str]] = None,
    ):
        self.store = store
        self.clock = clock
        self.tables = list(tables) if tables is not None else list(ARCHIVABLE_TABLES)

    @property
    def archive_path(self) -> Path:
        return self.store.archive_path

    # ------------------------------------------------------------------ #
    # Public operations
    # ------------------------------------------------------------------ #

    def archive(self, hot_data_age: timedelta) -> Dict[str, int]:
        """
        Archive every row older than now - hot_data_age.

        Returns:
            Rows archived per table (tables with nothing to archive omitted).
            Empty when another archive or reset is already running.
        """
        if not _ARCHIVE_LOCK.acquire(blocking=False):
            logger.warning("Archive already in progress, request dropped")
            return {}

        try:
            now = self.clock()
            cutoff = now - hot_data_age
            prefix = now.strftime(FILE_PREFIX_FORMAT)
            archived: Dict[str, int] = {}

            with self.store.write_lock():
                self._resume_pending_locked()

                for table in self.tables:
                    try:
                        rows = self._archive_table(table, prefix, cutoff, inclusive=False)
                    except (duckdb.Error, HotStoreError, ArchiveError, OSError) as e:
                        logger.error("Archive of %s failed: %s", table, e)
                        continue
                    if rows:
                        archived[table] = rows

                if archived:
                    self.store.refresh_archive_views()

            if archived:
                logger.info("Archived %d rows from %d tables (cutoff %s)",
                            sum(archived.values()), len(archived), cutoff)
            else:
                logger.debug("Nothing older than %s to archive", cutoff)
            return archived

        finally:
            _ARCHIVE_LOCK.release()

    def archive_all_and_reset(self) -> bool:
        """
        Export every row of every table, then delete and recreate the hot store.

        The store is only reset once every export has been verified. If any
        export fails, the files written by this attempt are removed and the
        store is left exactly as it was.

        Returns:
            True when the store was reset
        """
        if not _ARCHIVE_LOCK.acquire(blocking=False):
            logger.warning("Archive already in progress, reset request dropped")
            return False

        try:
            prefix = self.clock().strftime(FILE_PREFIX_FORMAT)
            written: List[Path] = []

            with self.store.write_lock():
                self._resume_pending_locked()
                size_before = self.store.size_mb()

                for table in self.tables:
                    try:
                        path = self._export_all(table, prefix)
                    except (duckdb.Error, HotStoreError, ArchiveError, OSError) as e:
                        logger.error("Full archive of %s failed, hot store left unchanged: %s", table, e)
                        self._discard(written)
                        return False
                    if path is not None:
                        written.append(path)

                self.store.reset()
                for path in written:
                    self._marker_path(path).unlink(missing_ok=True)

            logger.warning("Archived %d tables (%.1f MB hot store) and reset the hot store",
                           len(written), size_before)
            return True

        finally:
            _ARCHIVE_LOCK.release()

    def resume_pending(self) -> int:
        """Finish or roll back exports interrupted by a crash. Returns markers handled."""
        with _ARCHIVE_LOCK:
            with self.store.write_lock():
                return self._resume_pending_locked()

    def pending_markers(self) -> List[Path]:
        if not self.archive_path.exists():
            return []
        return sorted(self.archive_path.glob(f"*{MARKER_SUFFIX}"))

    # ------------------------------------------------------------------ #
    # Steps (callers hold the write lock)
    # ------------------------------------------------------------------ #

    def _archive_table(self, table: str, prefix: str, cutoff: datetime, inclusive: bool) -> int:
        op = "<=" if inclusive else "<"
        where = f"{TIME_COLUMN} {op} {sql_timestamp(cutoff)}"

        with self.store.connection() as cur:
            count = cur.execute(f"SELECT COUNT(*) FROM {table} WHERE {where}").fetchone()[0]
            if count == 0:
                return 0

            path = self._unique_path(prefix, table)
            marker = ArchiveMarker(
                table=table,
                file_name=path.name,
                cutoff=cutoff,
                inclusive=inclusive,
                row_count=count,
                created_at=self.clock(),
            )
            exported = self._export(cur, table, where, path, marker)

            deleted = cur.execute(f"DELETE FROM {table} WHERE {where}").fetchone()[0]
            if deleted != exported:
                logger.error("%s: exported %d rows but deleted %d", table, exported, deleted)

            self._marker_path(path).unlink(missing_ok=True)

        logger.info("Archived %d rows from %s to %s", deleted, table, path.name)
        return deleted

    def _export_all(self, table: str, prefix: str) -> Optional[Path]:
        with self.store.connection() as cur:
            count, newest = cur.execute(f"SELECT COUNT(*), MAX({TIME_COLUMN}) FROM {table}").fetchone()
            if count == 0:
                return None

            path = self._unique_path(prefix, table)
            marker = ArchiveMarker(
                table=table,
                file_name=path.name,
                cutoff=newest,
                inclusive=True,
                row_count=count,
                created_at=self.clock(),
            )
            self._export(cur, table, marker.where_clause(), path, marker)
        return path

    def _export(self, cur, table: str, where: str, path: Path, marker: ArchiveMarker) -> int:
        """COPY rows to a new file and verify it. Cleans up after itself on failure."""
        marker_path = self._marker_path(path)
        marker_path.write_text(marker.model_dump_json(indent=2))

        try:
            cur.execute(
                f"COPY (SELECT * FROM {table} WHERE {where} ORDER BY {TIME_COLUMN}) "
                f"TO {sql_path(path)} (FORMAT PARQUET, COMPRESSION ZSTD)"
            )
            exported = self._file_row_count(cur, path)
            if exported != marker.row_count:
                raise ArchiveError(f"{path.name} holds {exported} rows, expected {marker.row_count}")
        except Exception:
            path.unlink(missing_ok=True)
            marker_path.unlink(missing_ok=True)
            raise

        return exported

    def _resume_pending_locked(self) -> int:
        handled = 0
        for marker_path in self.pending_markers():
            try:
                marker = ArchiveMarker.model_validate_json(marker_path.read_text())
            except (OSError, ValidationError) as e:
                logger.error("Unreadable archive marker %s: %s", marker_path.name, e)
                continue

            path = self.archive_path / marker.file_name
            try:
                with self.store.connection() as cur:
                    complete = path.exists() and self._file_row_count(cur, path) == marker.row_count
                    if complete:
                        deleted = cur.execute(
                            f"DELETE FROM {marker.table} WHERE {marker.where_clause()}"
                        ).fetchone()[0]
                        logger.warning("Resumed archive of %s: deleted %d rows already in %s",
                                       marker.table, deleted, path.name)
                    else:
                        path.unlink(missing_ok=True)
                        logger.warning("Discarded incomplete archive file %s", marker.file_name)
                marker_path.unlink(missing_ok=True)
                handled += 1
            except (duckdb.Error, HotStoreError, OSError) as e:
                logger.error("Could not resume archive marker %s: %s", marker_path.name, e)

        if handled:
            self.store.refresh_archive_views()
        return handled

    # ------------------------------------------------------------------ #
    # Files
    # ------------------------------------------------------------------ #

    @staticmethod
    def _file_row_count(cur, path: Path) -> int:
        return cur.execute(f"SELECT COUNT(*) FROM read_parquet({sql_path(path)})").fetchone()[0]

    @staticmethod
    def _marker_path(path: Path) -> Path:
        return path.with_name(path.stem + MARKER_SUFFIX)

    def _unique_path(self, prefix: str, table: str) -> Path:
        self.archive_path.mkdir(parents=True, exist_ok=True)
        path = self.archive_path / f"{prefix}_{table}.parquet"
        n = 1
        while path.exists() or self._marker_path(path).exists():
            path = self.archive_path / f"{prefix}_{n}_{table}.parquet"
            n += 1
        return path

    def _discard(self, paths: Sequence[Path]) -> None:
        for path in paths:
            try:
                path.unlink(missing_ok=True)
                self._marker_path(path).unlink(missing_ok=True)
            except OSError as e:
                logger.error("Could not remove %s: %s", path.name, e)
