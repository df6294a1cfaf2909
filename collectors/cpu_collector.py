"""CPU utilization from the scheduler monitor ring buffer."""

from typing import Any, Dict, List
from collectors.base_data_collector import BaseMetricCollector, CollectionContext
from sharedUtils.sources.connector import SqlQuery

RING_BUFFER_SAMPLES = 60  # One sample per minute on the server side

RING_BUFFER_QUERY = SqlQuery(
    name="cpu_ring_buffer",
    text=f"""
SET NOCOUNT ON;
DECLARE @ms_ticks bigint = (SELECT ms_ticks FROM sys.dm_os_sys_info);
DECLARE @now datetime2(0) = SYSUTCDATETIME();

SELECT TOP ({RING_BUFFER_SAMPLES})
    sample_time = DATEADD(SECOND, -CONVERT(int, (@ms_ticks - rb.[timestamp]) / 1000), @now),
    sqlserver_cpu_utilization = rb.record.value('(./Record/SchedulerMonitorEvent/SystemHealth/ProcessUtilization)[1]', 'int'),
    system_idle = rb.record.value('(./Record/SchedulerMonitorEvent/SystemHealth/SystemIdle)[1]', 'int')
FROM (
    SELECT [timestamp], record = CONVERT(xml, record)
    FROM sys.dm_os_ring_buffers
    WHERE ring_buffer_type = N'RING_BUFFER_SCHEDULER_MONITOR'
    AND record LIKE N'%<SystemHealth>%'
) AS rb
ORDER BY rb.[timestamp] DESC
""",
)

RESOURCE_STATS_QUERY = SqlQuery(
    name="cpu_resource_stats",
    text=f"""
SELECT TOP ({RING_BUFFER_SAMPLES})
    sample_time = end_time,
    sqlserver_cpu_utilization = CONVERT(int, ROUND(avg_cpu_percent, 0)),
    system_idle = CONVERT(int, 100 - ROUND(avg_cpu_percent, 0))
FROM sys.dm_db_resource_stats
WHERE end_time > :since
ORDER BY end_time DESC
""",
)


class CpuCollector(BaseMetricCollector):
    """
    CPU samples.

    The ring buffer keeps its own history regardless of how often we poll, so
    the whole window is fetched every time and rows at or before the cursor
    are dropped here. The sample time is computed from ms_ticks, which the
    server cannot filter on reliably.
    """

    NAME = "cpu"
    TABLE = "cpu_utilization_stats"
    CURSOR_COLUMN = "sample_time"

    def fetch(self, context: CollectionContext) -> List[Dict[str, Any]]:
        cursor = self.cursor(context)

        if context.dialect.database_scoped:
            since = self.cursors.lower_bound(cursor, context.collection_time)
            records = self.query(context, RESOURCE_STATS_QUERY, {"since": since}).records()
        else:
            records = self.query(context, RING_BUFFER_QUERY).records()

        fresh = self.cursors.filter_newer(
            records, cursor, lambda r: r.get("sample_time"), now=context.collection_time
        )

        rows = []
        for record in sorted(fresh, key=lambda r: r["sample_time"]):
            sql_cpu = record.get("sqlserver_cpu_utilization") or 0
            idle = record.get("system_idle")
            other = max(100 - idle - sql_cpu, 0) if idle is not None else 0
            row = self.base_row(context)
            row.update({
                "sample_time": record["sample_time"],
                "sqlserver_cpu_utilization": sql_cpu,
                "other_process_cpu_utilization": other,
            })
            rows.append(row)

        return rows
