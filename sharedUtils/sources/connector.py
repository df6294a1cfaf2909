"""
Source connector: executes parametrized T-SQL against a monitored source.

The core only depends on the abstract SourceConnector. The SQLAlchemy
implementation keeps one pooled engine per source, created lazily and reused
across cycles, the same way a long-lived web process keeps its engine.

Cancellation is cooperative: the shutdown event is checked before a
connection is taken and again before the statement is sent. A statement that
is already running is bounded by the per-query timeout.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
import threading
import time
from typing import Any, Dict, List, Mapping, Optional
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sharedUtils.logger.logger import get_logger
from sharedUtils.sources.errors import (
    CollectionCancelled,
    SourceQueryError,
    SourceUnavailableError,
)
from sharedUtils.sources.models import Source, SourceStatus

logger = get_logger(__name__)

POOL_RECYCLE_SECONDS = 280  # Drop pooled connections before common idle timeouts
POOL_SIZE = 2               # Collectors for one source run sequentially
DEFAULT_QUERY_TIMEOUT = 30  # Seconds, when the caller passes none


@dataclass(frozen=True)
class SqlQuery:
    """A named T-SQL statement. The name identifies it in logs and test fakes."""
    name: str
    text: str


@dataclass
class QueryResult:
    """Tabular result of a source query."""
    columns: List[str] = field(default_factory=list)
    rows: List[tuple] = field(default_factory=list)
    duration_ms: int = 0

    def records(self) -> List[Dict[str, Any]]:
        """Rows as dicts keyed by column name; NULLs come back as None."""
        return [dict(zip(self.columns, row)) for row in self.rows]

    def first(self) -> Optional[Dict[str, Any]]:
        records = self.records()
        return records[0] if records else None

    def __len__(self) -> int:
        return len(self.rows)


SERVER_INFO_QUERY = SqlQuery(
    name="server_info",
    text="""
SELECT
    sqlserver_start_time = (SELECT sqlserver_start_time FROM sys.dm_os_sys_info),
    product_version = CONVERT(nvarchar(128), SERVERPROPERTY('ProductVersion')),
    major_version = CONVERT(int, SERVERPROPERTY('ProductMajorVersion')),
    engine_edition = CONVERT(int, SERVERPROPERTY('EngineEdition')),
    utc_offset_minutes = DATEDIFF(MINUTE, GETUTCDATE(), GETDATE()),
    is_aws_rds = CONVERT(bit, CASE WHEN DB_ID(N'rdsadmin') IS NULL THEN 0 ELSE 1 END)
""",
)


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the hot store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def check_cancelled(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise CollectionCancelled("shutdown requested")


class SourceConnector(ABC):
    """Abstract capability: run a query against a source, check reachability."""

    @abstractmethod
    def execute(
        self,
        source: Source,
        query: SqlQuery,
        params: Optional[Mapping[str, Any]] = None,
        timeout: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ) -> QueryResult:
        """
        Execute a query and return its rows.

        Raises:
            SourceUnavailableError: the source could not be reached
            SourceQueryError: the statement failed on the source
            CollectionCancelled: the cancel event was set
        """

    def check(self, source: Source, cancel: Optional[threading.Event] = None) -> SourceStatus:
        """Probe a source and describe it. Never raises for connectivity failures."""
        checked_at = utc_now()
        try:
            info = self.execute(source, SERVER_INFO_QUERY, cancel=cancel).first() or {}
        except CollectionCancelled:
            raise
        except SourceUnavailableError as e:
            return SourceStatus(source_id=source.id, checked_at=checked_at, error=str(e))
        except SourceQueryError as e:
            # Reachable, but the login cannot read server properties
            logger.warning("%s: server info query failed: %s", source, e)
            return SourceStatus(source_id=source.id, reachable=True, checked_at=checked_at, error=str(e))

        return SourceStatus(
            source_id=source.id,
            reachable=True,
            checked_at=checked_at,
            server_start_time=info.get("sqlserver_start_time"),
            product_version=info.get("product_version"),
            major_version=info.get("major_version") or 0,
            engine_edition=info.get("engine_edition") or 0,
            utc_offset_minutes=info.get("utc_offset_minutes") or 0,
            is_aws_rds=bool(info.get("is_aws_rds")),
        )

    def dispose(self) -> None:
        """Release pooled resources."""


class SqlAlchemySourceConnector(SourceConnector):
    """SourceConnector backed by one SQLAlchemy engine per source."""

    def __init__(self, connect_timeout: int = 15, query_timeout: int = DEFAULT_QUERY_TIMEOUT):
        self.connect_timeout = connect_timeout
        self.query_timeout = query_timeout
        self._engines: Dict[int, Engine] = {}
        self._lock = threading.Lock()

    def _engine_for(self, source: Source) -> Engine:
        engine = self._engines.get(source.id)
        if engine is None:
            with self._lock:
                engine = self._engines.get(source.id)
                if engine is None:
                    engine = create_engine(
                        source.url,
                        pool_size=POOL_SIZE,
                        pool_recycle=POOL_RECYCLE_SECONDS,
                        pool_pre_ping=True,
                        isolation_level="AUTOCOMMIT",  # event session DDL cannot run in a user transaction
                        connect_args=self._connect_args(source.url),
                    )
                    self._engines[source.id] = engine
                    logger.debug("Created engine for %s", source)
        return engine

    def _connect_args(self, url: str) -> Dict[str, Any]:
        if url.startswith("mssql+pyodbc"):
            return {"timeout": self.connect_timeout}
        if url.startswith("mssql+pymssql"):
            return {"login_timeout": self.connect_timeout}
        return {}

    @staticmethod
    def _apply_timeout(dbapi_connection: Any, timeout: int) -> None:
        # pyodbc exposes a per-connection query timeout attribute
        if hasattr(dbapi_connection, "timeout"):
            try:
                dbapi_connection.timeout = timeout
            except (AttributeError, TypeError):
                logger.debug("Driver connection does not accept a query timeout")

    def execute(
        self,
        source: Source,
        query: SqlQuery,
        params: Optional[Mapping[str, Any]] = None,
        timeout: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ) -> QueryResult:
        check_cancelled(cancel)
        engine = self._engine_for(source)

        try:
            connection = engine.connect()
        except SQLAlchemyError as e:
            raise SourceUnavailableError(f"{source}: {e}") from e

        started = time.perf_counter()
        try:
            with connection:
                check_cancelled(cancel)
                self._apply_timeout(connection.connection.driver_connection, timeout or self.query_timeout)
                result = connection.execute(text(query.text), dict(params or {}))
                if result.returns_rows:
                    columns = list(result.keys())
                    rows = [tuple(row) for row in result.fetchall()]
                else:
                    columns, rows = [], []
        except OperationalError as e:
            if e.connection_invalidated:
                raise SourceUnavailableError(f"{source}: {e.orig}") from e
            raise SourceQueryError(f"{query.name}: {e.orig}") from e
        except DBAPIError as e:
            raise SourceQueryError(f"{query.name}: {e.orig}") from e
        except SQLAlchemyError as e:
            raise SourceQueryError(f"{query.name}: {e}") from e

        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.debug("%s: %s returned %d rows in %dms", source, query.name, len(rows), duration_ms)
        return QueryResult(columns=columns, rows=rows, duration_ms=duration_ms)

    def dispose(self) -> None:
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()


__all__ = [
    "QueryResult",
    "SERVER_INFO_QUERY",
    "SourceConnector",
    "SqlAlchemySourceConnector",
    "SqlQuery",
    "check_cancelled",
    "utc_now",
]
