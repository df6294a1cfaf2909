"""Base class for metric collectors."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
import threading
import time
from typing import Any, Dict, List, Mapping, Optional
from pydantic import BaseModel, Field
from collectors.cursor_tracker import CollectionCursorTracker
from collectors.delta_store import CounterDeltaStore, DeltaSeed
from sharedUtils.config.models import CollectorsConfig
from sharedUtils.logger.logger import get_logger
from sharedUtils.sources.connector import QueryResult, SourceConnector, SqlQuery, check_cancelled, utc_now
from sharedUtils.sources.dialect import SourceDialect, dialect_for
from sharedUtils.sources.errors import CollectionCancelled, SourceError, SourceQueryError
from sharedUtils.sources.models import Source, SourceStatus, Topology
from storage.hot_store import HotStore, HotStoreError

logger = get_logger(__name__)

ERROR_MESSAGE_LIMIT = 4000  # Characters kept in collection_log.error_message


class CollectionStatus(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    PERMISSIONS = "PERMISSIONS"
    CANCELLED = "CANCELLED"
    SKIPPED = "SKIPPED"


class CollectionResult(BaseModel):
    """Outcome of one collector run against one source."""
    collector: str
    source_id: int
    source_name: str
    collection_time: datetime
    status: CollectionStatus
    rows_written: int = 0
    duration_ms: int = 0
    sql_duration_ms: int = 0
    store_duration_ms: int = 0
    error: Optional[str] = Field(default=None, description="Error text for failed runs")

    def to_log_row(self) -> Dict[str, Any]:
        """Row for the collection_log table."""
        return {
            "collection_time": self.collection_time,
            "server_id": self.source_id,
            "server_name": self.source_name,
            "collector_name": self.collector,
            "status": self.status.value,
            "rows_collected": self.rows_written,
            "duration_ms": self.duration_ms,
            "sql_duration_ms": self.sql_duration_ms,
            "store_duration_ms": self.store_duration_ms,
            "error_message": self.error[:ERROR_MESSAGE_LIMIT] if self.error else None,
        }


def effective_topology(source: Source, status: Optional[SourceStatus]) -> Topology:
    """Detected topology when the server told us, configured one otherwise."""
    detected = status.detected_topology if status is not None else None
    return detected or source.topology


@dataclass
class CollectionContext:
    """
    Everything one collector run needs to know about its source and cycle.

    Attributes:
        source: the monitored source
        status: connectivity check result for this cycle
        dialect: topology strategy resolved once for the source
        collection_time: wall clock of the cycle, shared by all rows written in it
        cancel: shutdown signal
    """
    source: Source
    status: SourceStatus
    dialect: SourceDialect
    collection_time: datetime
    cancel: threading.Event = field(default_factory=threading.Event)
    sql_duration_ms: int = 0

    @classmethod
    def for_source(
        cls,
        source: Source,
        status: Optional[SourceStatus] = None,
        collection_time: Optional[datetime] = None,
        cancel: Optional[threading.Event] = None,
    ) -> "CollectionContext":
        now = collection_time or utc_now()
        if status is None:
            status = SourceStatus(source_id=source.id, reachable=True, checked_at=now)
        return cls(
            source=source,
            status=status,
            dialect=dialect_for(effective_topology(source, status)),
            collection_time=now,
            cancel=cancel or threading.Event(),
        )

    @property
    def topology(self) -> Topology:
        return effective_topology(self.source, self.status)

    @property
    def utc_offset(self) -> timedelta:
        return timedelta(minutes=self.status.utc_offset_minutes)

    def to_utc(self, server_time: Optional[datetime]) -> Optional[datetime]:
        """Server local time (GETDATE(), msdb, DMV timestamps) to naive UTC."""
        return None if server_time is None else server_time - self.utc_offset

    def to_server_time(self, utc_time: Optional[datetime]) -> Optional[datetime]:
        """Naive UTC to the server's local clock, for filters on local-time columns."""
        return None if utc_time is None else utc_time + self.utc_offset


class BaseMetricCollector(ABC):
    """
    Abstract base class for metric collectors.

    Subclasses set NAME and TABLE and implement fetch(), which queries the
    source and returns finished rows (raw values plus delta_* columns). The
    base class appends them in a single batch, advances the cursor when
    CURSOR_COLUMN is set, and turns every failure into a CollectionResult so
    one broken collector never aborts the rest of the cycle.

    Attributes:
        NAME (str): collector name used in config and collection_log
        TABLE (str): hot store table written by this collector
        CURSOR_COLUMN (str): timestamp column tracked by the cursor, if any
        DELTA_SEEDS (list): where the delta baselines of this collector live
        EVENT_SESSION (str): event session this collector reads, if any
    """

    NAME = ""
    TABLE = ""
    CURSOR_COLUMN: Optional[str] = None
    DELTA_SEEDS: List[DeltaSeed] = []
    EVENT_SESSION: Optional[str] = None

    def __init__(
        self,
        connector: SourceConnector,
        store: HotStore,
        deltas: CounterDeltaStore,
        cursors: CollectionCursorTracker,
        settings: Optional[CollectorsConfig] = None,
        query_timeout: Optional[int] = None,
        sessions=None,
    ):
        self.connector = connector
        self.store = store
        self.deltas = deltas
        self.cursors = cursors
        self.settings = settings or CollectorsConfig()
        self.query_timeout = query_timeout
        self.sessions = sessions

        logger.debug("Initialised %s (table=%s)", self.__class__.__name__, self.TABLE)

    def supports(self, status: SourceStatus, topology: Topology) -> bool:
        """Whether this collector can run against a source. Override to gate."""
        return True

    @abstractmethod
    def fetch(self, context: CollectionContext) -> List[Dict[str, Any]]:
        """
        Query the source and build the rows to persist.

        Returns:
            Row dicts keyed by TABLE's column names

        Raises:
            SourceError: the source query failed
        """

    # ------------------------------------------------------------------ #
    # Helpers for subclasses
    # ------------------------------------------------------------------ #

    def query(self, context: CollectionContext, query: SqlQuery,
              params: Optional[Mapping[str, Any]] = None) -> QueryResult:
        """Run a query against the context's source, accumulating SQL time."""
        result = self.connector.execute(
            context.source, query, params, timeout=self.query_timeout, cancel=context.cancel
        )
        context.sql_duration_ms += result.duration_ms
        return result

    @staticmethod
    def base_row(context: CollectionContext) -> Dict[str, Any]:
        return {
            "collection_time": context.collection_time,
            "server_id": context.source.id,
            "server_name": context.source.name,
        }

    def delta(self, context: CollectionContext, metric: str, key: str, raw: Optional[int]) -> int:
        return self.deltas.compute_delta(context.source.id, metric, key, raw, context.collection_time)

    def cursor(self, context: CollectionContext) -> Optional[datetime]:
        return self.cursors.get_cursor(context.source.id, self.TABLE, self.CURSOR_COLUMN)

    # ------------------------------------------------------------------ #
    # Running
    # ------------------------------------------------------------------ #

    def run(self, context: CollectionContext) -> CollectionResult:
        """Collect once and describe what happened. Never raises."""
        started = time.perf_counter()
        store_ms = 0
        rows_written = 0
        error = None

        if not self.supports(context.status, context.topology):
            status = CollectionStatus.SKIPPED
        else:
            try:
                rows = self.fetch(context)
                check_cancelled(context.cancel)

                store_started = time.perf_counter()
                rows_written = self.store.append(self.TABLE, rows)
                store_ms = int((time.perf_counter() - store_started) * 1000)

                if self.CURSOR_COLUMN and rows:
                    newest = max(
                        (r[self.CURSOR_COLUMN] for r in rows if r.get(self.CURSOR_COLUMN) is not None),
                        default=None,
                    )
                    self.cursors.advance(context.source.id, self.TABLE, self.CURSOR_COLUMN, newest)

                status = CollectionStatus.SUCCESS

            except CollectionCancelled:
                status = CollectionStatus.CANCELLED
                logger.debug("%s: %s cancelled", context.source, self.NAME)
            except SourceQueryError as e:
                status = CollectionStatus.PERMISSIONS if e.is_permission_error else CollectionStatus.ERROR
                error = str(e)
                logger.warning("%s: %s failed: %s", context.source, self.NAME, e)
            except SourceError as e:
                status = CollectionStatus.ERROR
                error = str(e)
                logger.warning("%s: %s could not reach source: %s", context.source, self.NAME, e)
            except HotStoreError as e:
                status = CollectionStatus.ERROR
                error = str(e)
                logger.error("%s: %s could not write to the hot store: %s", context.source, self.NAME, e)
            except Exception as e:
                status = CollectionStatus.ERROR
                error = f"{type(e).__name__}: {e}"
                logger.error("%s: Error during %s collection: %s", context.source, self.NAME, e, exc_info=True)

        return CollectionResult(
            collector=self.NAME,
            source_id=context.source.id,
            source_name=context.source.name,
            collection_time=context.collection_time,
            status=status,
            rows_written=rows_written,
            duration_ms=int((time.perf_counter() - started) * 1000),
            sql_duration_ms=context.sql_duration_ms,
            store_duration_ms=store_ms,
            error=error,
        )

    def collect(
        self,
        source: Source,
        cancel: Optional[threading.Event] = None,
        status: Optional[SourceStatus] = None,
    ) -> int:
        """
        Collect once from a source.

        Returns:
            Rows written to the hot store (0 on any failure)
        """
        context = CollectionContext.for_source(source, status=status, cancel=cancel)
        return self.run(context).rows_written

    def __repr__(self) -> str:
        """String representation of the collector."""
        return f"{self.__class__.__name__}(name='{self.NAME}', table='{self.TABLE}')"


def as_int(value: Any, default: int = 0) -> int:
    """Coerce a nullable numeric column to int."""
    if value is None:
        return default
    return int(value)


def as_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)
