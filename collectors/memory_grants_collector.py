"""Resource semaphore (memory grant) pressure."""

from typing import Any, Dict, List
from collectors.base_data_collector import BaseMetricCollector, CollectionContext, as_float, as_int
from collectors.delta_store import DeltaSeed, make_key
from sharedUtils.sources.connector import SqlQuery

MEMORY_GRANTS_QUERY = SqlQuery(
    name="memory_grants",
    text="""
SELECT
    pool_id,
    resource_semaphore_id,
    target_memory_mb = target_memory_kb / 1024.0,
    total_memory_mb = total_memory_kb / 1024.0,
    available_memory_mb = available_memory_kb / 1024.0,
    granted_memory_mb = granted_memory_kb / 1024.0,
    used_memory_mb = used_memory_kb / 1024.0,
    grantee_count,
    waiter_count,
    timeout_error_count,
    forced_grant_count
FROM sys.dm_exec_query_resource_semaphores
""",
)

MEMORY_COLUMNS = (
    "target_memory_mb",
    "total_memory_mb",
    "available_memory_mb",
    "granted_memory_mb",
    "used_memory_mb",
)

COUNTERS = {
    "timeout_error_count":  ("memory_grant_timeouts",       "delta_timeout_error_count"),
    "forced_grant_count":   ("memory_grant_forced_grants",  "delta_forced_grant_count"),
}

KEY_COLUMNS = ("pool_id", "resource_semaphore_id")


class MemoryGrantsCollector(BaseMetricCollector):
    """Per pool/semaphore grant figures; timeout and forced-grant counters get deltas."""

    NAME = "memory_grants"
    TABLE = "memory_grant_stats"
    DELTA_SEEDS = [
        DeltaSeed(metric, "memory_grant_stats", KEY_COLUMNS, raw)
        for raw, (metric, _) in COUNTERS.items()
    ]

    def fetch(self, context: CollectionContext) -> List[Dict[str, Any]]:
        rows = []
        for record in self.query(context, MEMORY_GRANTS_QUERY).records():
            key = make_key(record["pool_id"], record["resource_semaphore_id"])
            row = self.base_row(context)
            row["pool_id"] = record["pool_id"]
            row["resource_semaphore_id"] = record["resource_semaphore_id"]
            for column in MEMORY_COLUMNS:
                row[column] = as_float(record.get(column))
            row["grantee_count"] = record.get("grantee_count")
            row["waiter_count"] = record.get("waiter_count")
            for raw_column, (metric, delta_column) in COUNTERS.items():
                raw = as_int(record.get(raw_column))
                row[raw_column] = raw
                row[delta_column] = self.delta(context, metric, key, raw)
            rows.append(row)
        return rows
