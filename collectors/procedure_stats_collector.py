"""Stored procedure, trigger and function execution statistics."""

from typing import Any, Dict, List
from collectors.base_data_collector import BaseMetricCollector, CollectionContext
from collectors.delta_store import DeltaSeed
from collectors.query_stats_collector import merge_by_key
from sharedUtils.sources.connector import SqlQuery

PROCEDURE_STATS_QUERY = SqlQuery(
    name="procedure_stats",
    text="""
SELECT TOP (:top_n)
    database_name = DB_NAME(ps.database_id),
    schema_name = OBJECT_SCHEMA_NAME(ps.object_id, ps.database_id),
    object_name = OBJECT_NAME(ps.object_id, ps.database_id),
    object_type = ps.type_desc,
    cached_time = ps.cached_time,
    last_execution_time = ps.last_execution_time,
    execution_count = ps.execution_count,
    total_worker_time = ps.total_worker_time,
    total_elapsed_time = ps.total_elapsed_time,
    total_logical_reads = ps.total_logical_reads,
    total_physical_reads = ps.total_physical_reads,
    total_logical_writes = ps.total_logical_writes
FROM sys.dm_exec_procedure_stats AS ps
WHERE ps.database_id <> 32767
ORDER BY ps.total_worker_time DESC
""",
)

COUNTERS = {
    "execution_count":      ("procedure_stats_executions",      "delta_execution_count"),
    "total_worker_time":    ("procedure_stats_worker_time",     "delta_worker_time"),
    "total_elapsed_time":   ("procedure_stats_elapsed_time",    "delta_elapsed_time"),
    "total_logical_reads":  ("procedure_stats_logical_reads",   "delta_logical_reads"),
    "total_physical_reads": ("procedure_stats_physical_reads",  "delta_physical_reads"),
    "total_logical_writes": ("procedure_stats_logical_writes",  "delta_logical_writes"),
}

KEY_COLUMNS = ("database_name", "schema_name", "object_name")


class ProcedureStatsCollector(BaseMetricCollector):
    """Per-object deltas keyed by database.schema.object."""

    NAME = "procedure_stats"
    TABLE = "procedure_stats"
    DELTA_SEEDS = [
        DeltaSeed(metric, "procedure_stats", KEY_COLUMNS, raw)
        for raw, (metric, _) in COUNTERS.items()
    ]

    def fetch(self, context: CollectionContext) -> List[Dict[str, Any]]:
        records = self.query(
            context, PROCEDURE_STATS_QUERY, {"top_n": self.settings.top_procedures}
        ).records()

        # Objects dropped since they were cached resolve to NULL names
        named = [r for r in records if all(r.get(c) for c in KEY_COLUMNS)]
        merged = merge_by_key(named, KEY_COLUMNS, COUNTERS, "cached_time", "last_execution_time")

        rows = []
        for key, record in merged.items():
            row = self.base_row(context)
            for column in KEY_COLUMNS + ("object_type",):
                row[column] = record.get(column)
            row["cached_time"] = context.to_utc(record.get("cached_time"))
            row["last_execution_time"] = context.to_utc(record.get("last_execution_time"))
            for raw_column, (metric, delta_column) in COUNTERS.items():
                raw = record[raw_column]
                row[raw_column] = raw
                row[delta_column] = self.delta(context, metric, key, raw)
            rows.append(row)

        return rows
