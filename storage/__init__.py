"""Hot store (DuckDB), Parquet archive, retention and compaction."""

from storage.archive import ArchiveEngine, ArchiveError, ArchiveMarker
from storage.compaction import CompactionWatchdog
from storage.hot_store import HotStore, HotStoreError
from storage.locks import ReadWriteLock
from storage.retention import RetentionSweeper, parse_archive_timestamp

__all__ = [
    'ArchiveEngine',
    'ArchiveError',
    'ArchiveMarker',
    'CompactionWatchdog',
    'HotStore',
    'HotStoreError',
    'ReadWriteLock',
    'RetentionSweeper',
    'parse_archive_timestamp',
]
