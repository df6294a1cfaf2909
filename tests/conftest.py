"""Pytest configuration for test suite.

Ensures the project root is on ``sys.path`` so imports like ``import storage``
resolve correctly regardless of the working directory pytest chooses, and
provides a scripted source connector so no SQL Server is needed.
"""

from __future__ import annotations

from datetime import datetime
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import pytest


def _ensure_project_root_on_syspath() -> None:
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)
    if project_root_str not in sys.path:
        # Prepend to prefer local sources over site-packages
        sys.path.insert(0, project_root_str)


_ensure_project_root_on_syspath()

from collectors.cursor_tracker import CollectionCursorTracker  # noqa: E402
from collectors.delta_store import CounterDeltaStore  # noqa: E402
from sharedUtils.sources.connector import (  # noqa: E402
    QueryResult,
    SourceConnector,
    SqlQuery,
    check_cancelled,
)
from sharedUtils.sources.errors import SourceUnavailableError  # noqa: E402
from sharedUtils.sources.models import Source  # noqa: E402
from storage.hot_store import HotStore  # noqa: E402

DDL_QUERY_NAMES = {"xe_create", "xe_start", "xe_drop", "bpr_create", "bpr_start", "bpr_drop", "bpr_threshold"}

DEFAULT_SERVER_INFO = {
    "sqlserver_start_time": datetime(2026, 10, 1, 0, 0, 0),
    "product_version": "16.0.4135.4",
    "major_version": 16,
    "engine_edition": 3,
    "utc_offset_minutes": 0,
    "is_aws_rds": False,
}


def make_result(records: List[Dict[str, Any]]) -> QueryResult:
    """Build a QueryResult from row dicts."""
    columns: List[str] = []
    for record in records:
        for column in record:
            if column not in columns:
                columns.append(column)
    rows = [tuple(record.get(c) for c in columns) for record in records]
    return QueryResult(columns=columns, rows=rows, duration_ms=1)


class FakeConnector(SourceConnector):
    """
    Scripted connector routing queries by SqlQuery.name.

    respond(name, *steps) queues one step per call: a list of row dicts or an
    exception to raise. The last step repeats once the queue is exhausted.
    Unscripted queries return no rows (server_info returns DEFAULT_SERVER_INFO).
    """

    def __init__(self):
        self._steps: Dict[str, List[Any]] = {}
        self.executed: List[str] = []
        self.params: List[Optional[Dict[str, Any]]] = []
        self.unreachable = set()
        self.disposed = False
        self._lock = threading.Lock()

    def respond(self, name: str, *steps: Any) -> None:
        self._steps[name] = list(steps)

    def _next(self, name: str) -> Any:
        steps = self._steps.get(name)
        if not steps:
            return [DEFAULT_SERVER_INFO] if name == "server_info" else []
        return steps.pop(0) if len(steps) > 1 else steps[0]

    def execute(
        self,
        source: Source,
        query: SqlQuery,
        params: Optional[Mapping[str, Any]] = None,
        timeout: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ) -> QueryResult:
        check_cancelled(cancel)
        with self._lock:
            self.executed.append(query.name)
            self.params.append(dict(params) if params else None)
            if source.id in self.unreachable:
                raise SourceUnavailableError(f"{source}: login timeout expired")
            step = self._next(query.name)
        if isinstance(step, Exception):
            raise step
        return make_result(step)

    def count(self, name: str) -> int:
        return self.executed.count(name)

    @property
    def ddl_count(self) -> int:
        return sum(1 for name in self.executed if name in DDL_QUERY_NAMES)

    def dispose(self) -> None:
        self.disposed = True


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def source():
    return Source(name="primary", url="mssql+pyodbc://monitor@primary/master")


@pytest.fixture
def store(tmp_path):
    """Initialized hot store in a temporary directory."""
    hot = HotStore(tmp_path / "data" / "hot.duckdb")
    hot.initialize()
    yield hot
    hot.close()


@pytest.fixture
def deltas():
    return CounterDeltaStore()


@pytest.fixture
def cursors(store):
    return CollectionCursorTracker(store)
