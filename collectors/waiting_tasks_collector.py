"""Tasks waiting right now, with who is blocking them."""

from typing import Any, Dict, List
from collectors.base_data_collector import BaseMetricCollector, CollectionContext, as_int
from sharedUtils.sources.connector import SqlQuery

WAITING_TASKS_QUERY = SqlQuery(
    name="waiting_tasks",
    text="""
SET TRANSACTION ISOLATION LEVEL READ UNCOMMITTED;
SELECT
    session_id = wt.session_id,
    wait_type = wt.wait_type,
    wait_duration_ms = wt.wait_duration_ms,
    blocking_session_id = wt.blocking_session_id,
    database_name = d.name
FROM sys.dm_os_waiting_tasks AS wt
LEFT JOIN sys.dm_exec_requests AS er ON er.session_id = wt.session_id
LEFT JOIN sys.databases AS d ON d.database_id = er.database_id
WHERE wt.session_id >= 50
AND wt.session_id <> @@SPID
AND wt.wait_type IS NOT NULL
""",
)


class WaitingTasksCollector(BaseMetricCollector):
    """Point-in-time snapshot of user sessions that are waiting."""

    NAME = "waiting_tasks"
    TABLE = "waiting_tasks"

    def fetch(self, context: CollectionContext) -> List[Dict[str, Any]]:
        ignored = set(self.settings.ignored_wait_types)
        rows = []
        for record in self.query(context, WAITING_TASKS_QUERY).records():
            if record.get("wait_type") in ignored:
                continue
            row = self.base_row(context)
            row.update({
                "session_id": as_int(record.get("session_id")),
                "wait_type": record.get("wait_type"),
                "wait_duration_ms": as_int(record.get("wait_duration_ms")),
                "blocking_session_id": record.get("blocking_session_id") or None,
                "database_name": record.get("database_name"),
            })
            rows.append(row)
        return rows
