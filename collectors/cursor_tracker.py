"""Collection cursors: the newest timestamp already persisted per source/table."""

from datetime import datetime, timedelta
import threading
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar
from sharedUtils.logger.logger import get_logger
from storage.schema import columns

logger = get_logger(__name__)

DEFAULT_LOOKBACK = timedelta(minutes=10)

T = TypeVar("T")
CursorKey = Tuple[int, str, str]


class CollectionCursorTracker:
    """
    Tracks the high-water mark of each (source, table, column).

    The first lookup reads MAX(column) from v_<table>, so rows that were
    already archived still count as seen. After that the value is cached and
    moved forward by advance() whenever a collector appends rows. A cursor
    never moves backwards, even when archive or reset empties the hot table.
    """

    def __init__(self, store, default_lookback: timedelta = DEFAULT_LOOKBACK):
        self.store = store
        self.default_lookback = default_lookback
        self._cursors: Dict[CursorKey, Optional[datetime]] = {}
        self._lock = threading.Lock()

    def get_cursor(self, source_id: int, table: str, column: str) -> Optional[datetime]:
        """Latest persisted timestamp, or None when nothing was collected yet."""
        key = (source_id, table, column)
        with self._lock:
            if key in self._cursors and self._cursors[key] is not None:
                return self._cursors[key]

        if column not in columns(table):
            raise KeyError(f"{table} has no column {column}")

        value = self.store.scalar(
            f"SELECT MAX({column}) FROM v_{table} WHERE server_id = ?",
            [source_id],
        )

        with self._lock:
            current = self._cursors.get(key)
            if current is None or (value is not None and value > current):
                self._cursors[key] = value
            return self._cursors[key]

    def advance(self, source_id: int, table: str, column: str, value: Optional[datetime]) -> None:
        """Move a cursor forward after rows were appended."""
        if value is None:
            return
        key = (source_id, table, column)
        with self._lock:
            current = self._cursors.get(key)
            if current is None or value > current:
                self._cursors[key] = value
                logger.debug("Cursor %s/%s.%s -> %s", source_id, table, column, value)

    def lower_bound(self, cursor: Optional[datetime], now: datetime) -> datetime:
        """Server-side filter value: the cursor, or the default lookback window."""
        return cursor if cursor is not None else now - self.default_lookback

    def filter_newer(
        self,
        rows: Iterable[T],
        cursor: Optional[datetime],
        timestamp_of: Callable[[T], Optional[datetime]],
        now: Optional[datetime] = None,
    ) -> List[T]:
        """
        Client-side filter for computed timestamps.

        Keeps rows strictly newer than the cursor. Without a cursor, keeps rows
        inside the default lookback window when now is given, otherwise all.
        """
        if cursor is None and now is not None:
            cursor = now - self.default_lookback

        kept = []
        for row in rows:
            ts = timestamp_of(row)
            if ts is None:
                continue
            if cursor is None or ts > cursor:
                kept.append(row)
        return kept

    def forget(self, source_id: Optional[int] = None) -> None:
        """Drop cached cursors (all, or one source's) so they are re-read."""
        with self._lock:
            if source_id is None:
                self._cursors.clear()
            else:
                for key in [k for k in self._cursors if k[0] == source_id]:
                    del self._cursors[key]
