"""Plan cache query statistics."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from collectors.base_data_collector import BaseMetricCollector, CollectionContext, as_int
from collectors.delta_store import DeltaSeed, make_key
from sharedUtils.sources.connector import SqlQuery
from sharedUtils.sources.models import SourceStatus, Topology

MIN_MAJOR_VERSION = 13  # total_spills and friends appeared in SQL Server 2016
QUERY_TEXT_LIMIT = 8000

QUERY_STATS_QUERY = SqlQuery(
    name="query_stats",
    text="""
SELECT TOP (:top_n)
    database_name = DB_NAME(CONVERT(int, pa.value)),
    query_hash = CONVERT(varchar(64), qs.query_hash, 1),
    query_plan_hash = CONVERT(varchar(64), qs.query_plan_hash, 1),
    creation_time = qs.creation_time,
    last_execution_time = qs.last_execution_time,
    execution_count = qs.execution_count,
    total_worker_time = qs.total_worker_time,
    total_elapsed_time = qs.total_elapsed_time,
    total_logical_reads = qs.total_logical_reads,
    total_logical_writes = qs.total_logical_writes,
    total_physical_reads = qs.total_physical_reads,
    total_rows = qs.total_rows,
    total_spills = qs.total_spills,
    query_text = SUBSTRING(
        st.text,
        (qs.statement_start_offset / 2) + 1,
        ((CASE qs.statement_end_offset WHEN -1 THEN DATALENGTH(st.text) ELSE qs.statement_end_offset END
          - qs.statement_start_offset) / 2) + 1
    )
FROM sys.dm_exec_query_stats AS qs
OUTER APPLY sys.dm_exec_sql_text(qs.sql_handle) AS st
OUTER APPLY (
    SELECT value FROM sys.dm_exec_plan_attributes(qs.plan_handle) WHERE attribute = N'dbid'
) AS pa
WHERE qs.last_execution_time >= :since
ORDER BY qs.total_worker_time DESC
""",
)

COUNTERS = {
    "execution_count":      ("query_stats_executions",      "delta_execution_count"),
    "total_worker_time":    ("query_stats_worker_time",     "delta_worker_time"),
    "total_elapsed_time":   ("query_stats_elapsed_time",    "delta_elapsed_time"),
    "total_logical_reads":  ("query_stats_logical_reads",   "delta_logical_reads"),
    "total_logical_writes": ("query_stats_logical_writes",  "delta_logical_writes"),
    "total_physical_reads": ("query_stats_physical_reads",  "delta_physical_reads"),
    "total_rows":           ("query_stats_rows",            "delta_rows"),
    "total_spills":         ("query_stats_spills",          "delta_spills"),
}

KEY_COLUMNS = ("query_hash", "query_plan_hash")


def _earliest(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None or b is None:
        return a or b
    return min(a, b)


def _latest(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None or b is None:
        return a or b
    return max(a, b)


def merge_by_key(records: List[Dict[str, Any]], key_columns, counter_columns,
                 first_seen: str, last_seen: str) -> Dict[str, Dict[str, Any]]:
    """
    Fold rows sharing a natural key into one, summing counters.

    The plan cache can hold several entries for one key (one per statement or
    per cached plan copy); a single delta per key per cycle needs their sum.
    """
    merged: Dict[str, Dict[str, Any]] = {}
    for record in records:
        key = make_key(*(record.get(c) for c in key_columns))
        existing = merged.get(key)
        if existing is None:
            merged[key] = dict(record)
            for column in counter_columns:
                merged[key][column] = as_int(record.get(column))
            continue
        for column in counter_columns:
            existing[column] += as_int(record.get(column))
        existing[first_seen] = _earliest(existing.get(first_seen), record.get(first_seen))
        existing[last_seen] = _latest(existing.get(last_seen), record.get(last_seen))
    return merged


class QueryStatsCollector(BaseMetricCollector):
    """Top queries by CPU that ran inside the lookback window, with deltas."""

    NAME = "query_stats"
    TABLE = "query_stats"
    DELTA_SEEDS = [
        DeltaSeed(metric, "query_stats", KEY_COLUMNS, raw)
        for raw, (metric, _) in COUNTERS.items()
    ]

    def supports(self, status: SourceStatus, topology: Topology) -> bool:
        if topology in (Topology.AZURE_SQL_DB, Topology.MANAGED_INSTANCE):
            return True
        # Unknown version (0) means the server info query failed; try anyway
        return status.major_version == 0 or status.major_version >= MIN_MAJOR_VERSION

    def fetch(self, context: CollectionContext) -> List[Dict[str, Any]]:
        # last_execution_time is on the server's local clock
        since = context.to_server_time(self.cursors.lower_bound(None, context.collection_time))
        records = self.query(
            context, QUERY_STATS_QUERY, {"top_n": self.settings.top_queries, "since": since}
        ).records()

        merged = merge_by_key(records, KEY_COLUMNS, COUNTERS, "creation_time", "last_execution_time")

        rows = []
        for key, record in merged.items():
            row = self.base_row(context)
            text = record.get("query_text")
            row.update({
                "database_name": record.get("database_name"),
                "query_hash": record.get("query_hash") or "",
                "query_plan_hash": record.get("query_plan_hash") or "",
                "creation_time": context.to_utc(record.get("creation_time")),
                "last_execution_time": context.to_utc(record.get("last_execution_time")),
                "query_text": text[:QUERY_TEXT_LIMIT] if text else None,
            })
            for raw_column, (metric, delta_column) in COUNTERS.items():
                raw = record[raw_column]
                row[raw_column] = raw
                row[delta_column] = self.delta(context, metric, key, raw)
            rows.append(row)

        return rows
