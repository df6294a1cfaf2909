"""Server memory snapshot."""

from typing import Any, Dict, List
from collectors.base_data_collector import BaseMetricCollector, CollectionContext, as_float
from sharedUtils.sources.connector import SqlQuery

_CLERK_AND_COUNTER_COLUMNS = """
    target_server_memory_mb = (
        SELECT cntr_value / 1024.0 FROM sys.dm_os_performance_counters
        WHERE counter_name = N'Target Server Memory (KB)'
    ),
    total_server_memory_mb = (
        SELECT cntr_value / 1024.0 FROM sys.dm_os_performance_counters
        WHERE counter_name = N'Total Server Memory (KB)'
    ),
    buffer_pool_mb = (
        SELECT SUM(pages_kb) / 1024.0 FROM sys.dm_os_memory_clerks
        WHERE type = N'MEMORYCLERK_SQLBUFFERPOOL'
    ),
    plan_cache_mb = (
        SELECT SUM(pages_kb) / 1024.0 FROM sys.dm_os_memory_clerks
        WHERE type IN (N'CACHESTORE_SQLCP', N'CACHESTORE_OBJCP')
    )"""

MEMORY_QUERY = SqlQuery(
    name="memory_stats",
    text=f"""
SELECT
    total_physical_memory_mb = osm.total_physical_memory_kb / 1024.0,
    available_physical_memory_mb = osm.available_physical_memory_kb / 1024.0,
    total_page_file_mb = osm.total_page_file_kb / 1024.0,
    available_page_file_mb = osm.available_page_file_kb / 1024.0,
    system_memory_state = osm.system_memory_state_desc,
    sql_memory_model = osi.sql_memory_model_desc,
{_CLERK_AND_COUNTER_COLUMNS}
FROM sys.dm_os_sys_memory AS osm
CROSS JOIN sys.dm_os_sys_info AS osi
""",
)

# Azure SQL Database hides host memory
DATABASE_MEMORY_QUERY = SqlQuery(
    name="memory_stats_database",
    text=f"""
SELECT
    total_physical_memory_mb = CONVERT(float, NULL),
    available_physical_memory_mb = CONVERT(float, NULL),
    total_page_file_mb = CONVERT(float, NULL),
    available_page_file_mb = CONVERT(float, NULL),
    system_memory_state = CONVERT(nvarchar(256), NULL),
    sql_memory_model = CONVERT(nvarchar(120), NULL),
{_CLERK_AND_COUNTER_COLUMNS}
""",
)

FLOAT_COLUMNS = (
    "total_physical_memory_mb",
    "available_physical_memory_mb",
    "total_page_file_mb",
    "available_page_file_mb",
    "target_server_memory_mb",
    "total_server_memory_mb",
    "buffer_pool_mb",
    "plan_cache_mb",
)


class MemoryCollector(BaseMetricCollector):
    """Point-in-time memory figures; no counters, no cursor."""

    NAME = "memory"
    TABLE = "memory_stats"

    def fetch(self, context: CollectionContext) -> List[Dict[str, Any]]:
        query = context.dialect.pick(MEMORY_QUERY, DATABASE_MEMORY_QUERY)
        record = self.query(context, query).first()
        if record is None:
            return []

        row = self.base_row(context)
        for column in FLOAT_COLUMNS:
            row[column] = as_float(record.get(column))
        row["system_memory_state"] = record.get("system_memory_state")
        row["sql_memory_model"] = record.get("sql_memory_model")
        return [row]
