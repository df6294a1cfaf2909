"""Largest memory clerks by type."""

from typing import Any, Dict, List
from collectors.base_data_collector import BaseMetricCollector, CollectionContext, as_float
from sharedUtils.sources.connector import SqlQuery

TOP_CLERKS = 25
MIN_CLERK_KB = 1024  # Clerks below 1 MB are noise

MEMORY_CLERKS_QUERY = SqlQuery(
    name="memory_clerks",
    text="""
SET TRANSACTION ISOLATION LEVEL READ UNCOMMITTED;
SELECT TOP (:top_n)
    clerk_type = mc.type,
    memory_mb = SUM(mc.pages_kb) / 1024.0
FROM sys.dm_os_memory_clerks AS mc
GROUP BY mc.type
HAVING SUM(mc.pages_kb) > :min_kb
ORDER BY SUM(mc.pages_kb) DESC
""",
)


class MemoryClerksCollector(BaseMetricCollector):
    NAME = "memory_clerks"
    TABLE = "memory_clerks"

    def fetch(self, context: CollectionContext) -> List[Dict[str, Any]]:
        records = self.query(
            context, MEMORY_CLERKS_QUERY, {"top_n": TOP_CLERKS, "min_kb": MIN_CLERK_KB}
        ).records()

        rows = []
        for record in records:
            row = self.base_row(context)
            row["clerk_type"] = record["clerk_type"]
            row["memory_mb"] = as_float(record.get("memory_mb"))
            rows.append(row)
        return rows
