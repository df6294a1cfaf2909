"""
Topology dialects.

A source is either server-scoped (on-premises, Managed Instance, RDS) or
database-scoped (Azure SQL Database). The dialect is resolved once per source
and carries everything that differs between the two: which catalog views hold
event sessions, which deadlock event exists, and which DDL scope to use.

Session DDL and probes take the event to capture, so one dialect serves both
the deadlock and the blocked process sessions. Query names start with a
per-session prefix (xe_probe, bpr_probe, ...) so logs tell them apart.
"""

from typing import Optional
from sharedUtils.sources.connector import SqlQuery
from sharedUtils.sources.models import Topology

RING_BUFFER_TARGET = "ring_buffer"
BLOCKED_PROCESS_EVENT = "sqlserver.blocked_process_report"
DEFAULT_PREFIX = "xe"


def quote_name(name: str) -> str:
    """Bracket-quote an identifier the way QUOTENAME() does."""
    return "[" + name.replace("]", "]]") + "]"


class SourceDialect:
    """Base strategy. Subclasses fill in the scope specific names."""

    scope = ""               # ON SERVER / ON DATABASE
    deadlock_event = ""      # fully qualified event name
    blocked_process_event = BLOCKED_PROCESS_EVENT
    sessions_view = ""
    events_view = ""
    targets_view = ""
    running_sessions_view = ""
    running_targets_view = ""
    extra_session_options = ""
    database_scoped = False

    @staticmethod
    def event_name(event: str) -> str:
        """Event name without its package prefix, as stored in the catalog."""
        return event.split(".", 1)[1]

    @property
    def deadlock_event_name(self) -> str:
        return self.event_name(self.deadlock_event)

    def session_options(self, ring_buffer_kb: int) -> str:
        options = (
            f"MAX_MEMORY = {int(ring_buffer_kb)} KB, EVENT_RETENTION_MODE = ALLOW_SINGLE_EVENT_LOSS, "
            "MAX_DISPATCH_LATENCY = 5 SECONDS"
        )
        return options + self.extra_session_options

    def pick(self, server_query: SqlQuery, database_query: Optional[SqlQuery] = None) -> SqlQuery:
        """Choose the query variant for this scope."""
        if self.database_scoped and database_query is not None:
            return database_query
        return server_query

    def session_probe(self, event: Optional[str] = None, prefix: str = DEFAULT_PREFIX) -> SqlQuery:
        event_name = self.event_name(event or self.deadlock_event)
        return SqlQuery(
            name=f"{prefix}_probe",
            text=f"""
SELECT
    session_exists = (SELECT COUNT(*) FROM {self.sessions_view} WHERE name = :session_name),
    has_event = (
        SELECT COUNT(*)
        FROM {self.sessions_view} AS s
        JOIN {self.events_view} AS e ON e.event_session_id = s.event_session_id
        WHERE s.name = :session_name
        AND e.name = '{event_name}'
    ),
    has_ring_buffer = (
        SELECT COUNT(*)
        FROM {self.sessions_view} AS s
        JOIN {self.targets_view} AS t ON t.event_session_id = s.event_session_id
        WHERE s.name = :session_name
        AND t.name = '{RING_BUFFER_TARGET}'
    ),
    target_count = (
        SELECT COUNT(*)
        FROM {self.sessions_view} AS s
        JOIN {self.targets_view} AS t ON t.event_session_id = s.event_session_id
        WHERE s.name = :session_name
    ),
    is_running = (SELECT COUNT(*) FROM {self.running_sessions_view} WHERE name = :session_name)
""",
        )

    def create_session(self, session_name: str, ring_buffer_kb: int, event: Optional[str] = None,
                       prefix: str = DEFAULT_PREFIX) -> SqlQuery:
        return SqlQuery(
            name=f"{prefix}_create",
            text=f"""
CREATE EVENT SESSION {quote_name(session_name)} {self.scope}
ADD EVENT {event or self.deadlock_event}
ADD TARGET package0.{RING_BUFFER_TARGET} (SET max_memory = {int(ring_buffer_kb)})
WITH ({self.session_options(ring_buffer_kb)})
""",
        )

    def start_session(self, session_name: str, prefix: str = DEFAULT_PREFIX) -> SqlQuery:
        return SqlQuery(
            name=f"{prefix}_start",
            text=f"ALTER EVENT SESSION {quote_name(session_name)} {self.scope} STATE = START",
        )

    def drop_session(self, session_name: str, prefix: str = DEFAULT_PREFIX) -> SqlQuery:
        return SqlQuery(
            name=f"{prefix}_drop",
            text=f"DROP EVENT SESSION {quote_name(session_name)} {self.scope}",
        )

    def read_ring_buffer(self, prefix: str = DEFAULT_PREFIX) -> SqlQuery:
        return SqlQuery(
            name=f"{prefix}_ring_buffer",
            text=f"""
SELECT target_data = CONVERT(nvarchar(max), t.target_data)
FROM {self.running_targets_view} AS t
JOIN {self.running_sessions_view} AS s ON s.address = t.event_session_address
WHERE s.name = :session_name
AND t.target_name = '{RING_BUFFER_TARGET}'
""",
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class ServerScopedDialect(SourceDialect):
    """On-premises, Managed Instance and RDS: server-wide event sessions."""

    scope = "ON SERVER"
    deadlock_event = "sqlserver.xml_deadlock_report"
    sessions_view = "sys.server_event_sessions"
    events_view = "sys.server_event_session_events"
    targets_view = "sys.server_event_session_targets"
    running_sessions_view = "sys.dm_xe_sessions"
    running_targets_view = "sys.dm_xe_session_targets"
    extra_session_options = ", MEMORY_PARTITION_MODE = NONE, STARTUP_STATE = ON"


class DatabaseScopedDialect(SourceDialect):
    """Azure SQL Database: per-database sessions with a memory-only target."""

    scope = "ON DATABASE"
    deadlock_event = "sqlserver.database_xml_deadlock_report"
    sessions_view = "sys.database_event_sessions"
    events_view = "sys.database_event_session_events"
    targets_view = "sys.database_event_session_targets"
    running_sessions_view = "sys.dm_xe_database_sessions"
    running_targets_view = "sys.dm_xe_database_session_targets"
    database_scoped = True


_SERVER_SCOPED = ServerScopedDialect()
_DATABASE_SCOPED = DatabaseScopedDialect()


def dialect_for(topology: Topology) -> SourceDialect:
    """Resolve the dialect for a topology."""
    if topology == Topology.AZURE_SQL_DB:
        return _DATABASE_SCOPED
    return _SERVER_SCOPED
