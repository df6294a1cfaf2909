"""
Event capture session management.

Each source gets extended events sessions that record diagnostic events into
a memory-only ring buffer: one for deadlock reports, one for blocked process
reports. ensure() probes a session first and only issues DDL when the session
is missing, has the wrong shape for the source's topology, or is stopped:

    ABSENT       -> CREATE, START             -> RUNNING
    WRONG_SHAPE  -> DROP, CREATE, START       -> RUNNING
    STOPPED      -> START                     -> RUNNING
    RUNNING      -> nothing

A session has the right shape when it captures its event into exactly one
target, the ring buffer. Any failure is logged and reported as UNKNOWN; the
next ensure() starts over from the probe.
"""

from enum import Enum
import threading
from typing import Dict, Optional, Set
from sharedUtils.logger.logger import get_logger
from sharedUtils.sources.connector import QueryResult, SourceConnector, SqlQuery
from sharedUtils.sources.dialect import SourceDialect
from sharedUtils.sources.errors import CollectionCancelled, SourceError, SourceQueryError
from sharedUtils.sources.models import Source

logger = get_logger(__name__)

DEFAULT_SESSION_NAME = "SqlMon_Deadlock"
DEFAULT_BLOCKED_PROCESS_SESSION_NAME = "SqlMon_BlockedProcess"
DEFAULT_RING_BUFFER_KB = 4096
DEFAULT_BLOCKED_PROCESS_THRESHOLD = 5  # Seconds

BLOCKED_PROCESS_THRESHOLD_QUERY = SqlQuery(
    name="bpr_threshold",
    text="""
SET NOCOUNT ON;
DECLARE @threshold integer;
SELECT @threshold = CONVERT(integer, c.value_in_use)
FROM sys.configurations AS c
WHERE c.name = N'blocked process threshold (s)';
IF @threshold = 0
BEGIN
    EXECUTE sys.sp_configure N'show advanced options', 1;
    RECONFIGURE;
    EXECUTE sys.sp_configure N'blocked process threshold (s)', :threshold;
    RECONFIGURE;
END;
SELECT previous_threshold = @threshold;
""",
)


class SessionState(str, Enum):
    UNKNOWN = "unknown"
    ABSENT = "absent"
    WRONG_SHAPE = "wrong_shape"
    STOPPED = "stopped"
    RUNNING = "running"


def classify(probe: Optional[dict]) -> SessionState:
    """Map a probe row onto a session state."""
    if not probe:
        return SessionState.UNKNOWN
    if not probe.get("session_exists"):
        return SessionState.ABSENT
    if not probe.get("has_event") or not probe.get("has_ring_buffer"):
        return SessionState.WRONG_SHAPE
    if probe.get("target_count") != 1:
        return SessionState.WRONG_SHAPE
    if not probe.get("is_running"):
        return SessionState.STOPPED
    return SessionState.RUNNING


class DiagnosticSessionManager:
    """
    Keeps one event session present and running on each source.

    The base class manages the deadlock session. Subclasses pick another event
    through event_for() and a QUERY_PREFIX for their query names.
    """

    LABEL = "deadlock"
    QUERY_PREFIX = "xe"

    def __init__(
        self,
        connector: SourceConnector,
        session_name: str = DEFAULT_SESSION_NAME,
        ring_buffer_kb: int = DEFAULT_RING_BUFFER_KB,
    ):
        self.connector = connector
        self.session_name = session_name
        self.ring_buffer_kb = ring_buffer_kb
        self._states: Dict[int, SessionState] = {}
        self._lock = threading.Lock()

    def event_for(self, dialect: SourceDialect) -> str:
        return dialect.deadlock_event

    def state(self, source_id: int) -> SessionState:
        with self._lock:
            return self._states.get(source_id, SessionState.UNKNOWN)

    def _set_state(self, source_id: int, state: SessionState) -> SessionState:
        with self._lock:
            self._states[source_id] = state
        return state

    def _params(self) -> dict:
        return {"session_name": self.session_name}

    def probe(self, source: Source, dialect: SourceDialect,
              cancel: Optional[threading.Event] = None) -> SessionState:
        """Read-only check of the session. Raises SourceError on failure."""
        query = dialect.session_probe(self.event_for(dialect), prefix=self.QUERY_PREFIX)
        result = self.connector.execute(source, query, self._params(), cancel=cancel)
        return classify(result.first())

    def ensure(self, source: Source, dialect: SourceDialect,
               cancel: Optional[threading.Event] = None) -> SessionState:
        """
        Make sure the session exists with the right shape and is running.

        Never raises; failures leave the state UNKNOWN for a retry next cycle.

        Returns:
            The resulting SessionState
        """
        prefix = self.QUERY_PREFIX
        try:
            state = self.probe(source, dialect, cancel)

            if state == SessionState.RUNNING:
                return self._set_state(source.id, state)

            if state == SessionState.WRONG_SHAPE:
                logger.warning("%s: %s session %s has the wrong shape, recreating",
                               source, self.LABEL, self.session_name)
                self.connector.execute(source, dialect.drop_session(self.session_name, prefix), cancel=cancel)
                state = SessionState.ABSENT

            if state == SessionState.ABSENT:
                logger.info("%s: creating %s session %s %s",
                            source, self.LABEL, self.session_name, dialect.scope)
                create = dialect.create_session(
                    self.session_name, self.ring_buffer_kb, self.event_for(dialect), prefix
                )
                self.connector.execute(source, create, cancel=cancel)
                state = SessionState.STOPPED

            if state == SessionState.STOPPED:
                logger.info("%s: starting %s session %s", source, self.LABEL, self.session_name)
                self.connector.execute(source, dialect.start_session(self.session_name, prefix), cancel=cancel)
                state = SessionState.RUNNING

            return self._set_state(source.id, state)

        except CollectionCancelled:
            logger.debug("%s: %s session check cancelled", source, self.LABEL)
        except SourceError as e:
            logger.warning("%s: could not ensure %s session: %s", source, self.LABEL, e)

        return self._set_state(source.id, SessionState.UNKNOWN)

    def read_events(self, source: Source, dialect: SourceDialect,
                    cancel: Optional[threading.Event] = None) -> Optional[str]:
        """
        Ring buffer contents as an XML string, or None if the session has no target.

        Raises:
            SourceError: the query failed
        """
        result: QueryResult = self.connector.execute(
            source, dialect.read_ring_buffer(self.QUERY_PREFIX), self._params(), cancel=cancel
        )
        row = result.first()
        return row.get("target_data") if row else None

    def forget(self, source_id: int) -> None:
        with self._lock:
            self._states.pop(source_id, None)


class BlockedProcessSessionManager(DiagnosticSessionManager):
    """
    Blocked process report session.

    The event only fires once 'blocked process threshold (s)' is non-zero, so
    on server-scoped sources ensure() first turns it on when it is off. RDS
    refuses sp_configure; that is logged once and the session is still
    created (the threshold then has to come from the parameter group).
    """

    LABEL = "blocked process"
    QUERY_PREFIX = "bpr"

    def __init__(
        self,
        connector: SourceConnector,
        session_name: str = DEFAULT_BLOCKED_PROCESS_SESSION_NAME,
        ring_buffer_kb: int = DEFAULT_RING_BUFFER_KB,
        threshold_seconds: int = DEFAULT_BLOCKED_PROCESS_THRESHOLD,
    ):
        super().__init__(connector, session_name, ring_buffer_kb)
        self.threshold_seconds = threshold_seconds
        self._threshold_checked: Set[int] = set()

    def event_for(self, dialect: SourceDialect) -> str:
        return dialect.blocked_process_event

    def ensure(self, source: Source, dialect: SourceDialect,
               cancel: Optional[threading.Event] = None) -> SessionState:
        if self.threshold_seconds and not dialect.database_scoped:
            with self._lock:
                checked = source.id in self._threshold_checked
            if not checked:
                self._configure_threshold(source, cancel)
        return super().ensure(source, dialect, cancel)

    def _configure_threshold(self, source: Source, cancel: Optional[threading.Event]) -> None:
        try:
            result = self.connector.execute(
                source, BLOCKED_PROCESS_THRESHOLD_QUERY, {"threshold": self.threshold_seconds}, cancel=cancel
            )
        except SourceQueryError as e:
            logger.info("%s: cannot set the blocked process threshold (platform setting?): %s", source, e)
        except SourceError as e:
            # Unreachable or cancelled: try again on the next ensure()
            logger.debug("%s: blocked process threshold check skipped: %s", source, e)
            return
        else:
            row = result.first() or {}
            if not row.get("previous_threshold"):
                logger.info("%s: blocked process threshold set to %d seconds", source, self.threshold_seconds)

        with self._lock:
            self._threshold_checked.add(source.id)

    def forget(self, source_id: int) -> None:
        super().forget(source_id)
        with self._lock:
            self._threshold_checked.discard(source_id)
