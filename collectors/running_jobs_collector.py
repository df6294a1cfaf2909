"""SQL Agent jobs that are currently executing, compared with their history."""

from typing import Any, Dict, List, Optional
from collectors.base_data_collector import BaseMetricCollector, CollectionContext, as_int
from sharedUtils.sources.connector import SqlQuery
from sharedUtils.sources.models import SourceStatus, Topology

LONG_RUNNING_FACTOR = 2.0  # Without a p95, "long" means twice the average

RUNNING_JOBS_QUERY = SqlQuery(
    name="running_jobs",
    text="""
SET NOCOUNT ON;
WITH history AS (
    SELECT
        h.job_id,
        duration_seconds = CONVERT(bigint,
            (h.run_duration / 10000) * 3600
            + ((h.run_duration / 100) % 100) * 60
            + (h.run_duration % 100))
    FROM msdb.dbo.sysjobhistory AS h
    WHERE h.step_id = 0
    AND h.run_status = 1
),
percentiles AS (
    SELECT DISTINCT
        job_id,
        p95_duration_seconds = PERCENTILE_CONT(0.95) WITHIN GROUP (ORDER BY duration_seconds)
            OVER (PARTITION BY job_id)
    FROM history
),
stats AS (
    SELECT
        h.job_id,
        avg_duration_seconds = AVG(h.duration_seconds),
        successful_run_count = COUNT_BIG(*),
        p95_duration_seconds = CONVERT(bigint, MAX(p.p95_duration_seconds))
    FROM history AS h
    JOIN percentiles AS p ON p.job_id = h.job_id
    GROUP BY h.job_id
)
SELECT
    job_name = j.name,
    job_id = CONVERT(varchar(36), j.job_id),
    job_enabled = CONVERT(bit, j.enabled),
    start_time = ja.start_execution_date,
    current_duration_seconds = DATEDIFF(SECOND, ja.start_execution_date, GETDATE()),
    avg_duration_seconds = s.avg_duration_seconds,
    p95_duration_seconds = s.p95_duration_seconds,
    successful_run_count = s.successful_run_count
FROM msdb.dbo.sysjobactivity AS ja
JOIN msdb.dbo.sysjobs AS j ON j.job_id = ja.job_id
LEFT JOIN stats AS s ON s.job_id = j.job_id
WHERE ja.session_id = (SELECT MAX(session_id) FROM msdb.dbo.syssessions)
AND ja.start_execution_date IS NOT NULL
AND ja.stop_execution_date IS NULL
""",
)


def is_running_long(current: int, avg: Optional[int], p95: Optional[int]) -> bool:
    if p95:
        return current > p95
    if avg:
        return current > avg * LONG_RUNNING_FACTOR
    return False


class RunningJobsCollector(BaseMetricCollector):
    """Snapshot of running Agent jobs. Azure SQL Database and RDS have no usable msdb."""

    NAME = "running_jobs"
    TABLE = "running_jobs"

    def supports(self, status: SourceStatus, topology: Topology) -> bool:
        return topology not in (Topology.AZURE_SQL_DB, Topology.AWS_RDS)

    def fetch(self, context: CollectionContext) -> List[Dict[str, Any]]:
        rows = []

        for record in self.query(context, RUNNING_JOBS_QUERY).records():
            current = as_int(record.get("current_duration_seconds"))
            avg = record.get("avg_duration_seconds")
            p95 = record.get("p95_duration_seconds")
            start_time = record.get("start_time")

            row = self.base_row(context)
            row.update({
                "job_name": record["job_name"],
                "job_id": record["job_id"],
                "job_enabled": bool(record.get("job_enabled")),
                "start_time": context.to_utc(start_time),  # msdb stores local server time
                "current_duration_seconds": current,
                "avg_duration_seconds": avg,
                "p95_duration_seconds": p95,
                "successful_run_count": as_int(record.get("successful_run_count")),
                "is_running_long": is_running_long(current, avg, p95),
                "percent_of_average": round(current * 100.0 / avg, 1) if avg else None,
            })
            rows.append(row)

        return rows
