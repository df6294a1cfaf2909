"""Monitored sources: descriptors, dialects and the query connector."""

from sharedUtils.sources.connector import (
    QueryResult,
    SourceConnector,
    SqlAlchemySourceConnector,
    SqlQuery,
    check_cancelled,
    utc_now,
)
from sharedUtils.sources.dialect import (
    DatabaseScopedDialect,
    ServerScopedDialect,
    SourceDialect,
    dialect_for,
)
from sharedUtils.sources.errors import (
    CollectionCancelled,
    SourceError,
    SourceQueryError,
    SourceUnavailableError,
)
from sharedUtils.sources.models import Source, SourceStatus, Topology, source_id_for

__all__ = [
    'QueryResult',
    'SourceConnector',
    'SqlAlchemySourceConnector',
    'SqlQuery',
    'check_cancelled',
    'utc_now',
    'DatabaseScopedDialect',
    'ServerScopedDialect',
    'SourceDialect',
    'dialect_for',
    'CollectionCancelled',
    'SourceError',
    'SourceQueryError',
    'SourceUnavailableError',
    'Source',
    'SourceStatus',
    'Topology',
    'source_id_for',
]
