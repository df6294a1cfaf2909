"""TempDB space usage and its heaviest session."""

from typing import Any, Dict, List
from collectors.base_data_collector import BaseMetricCollector, CollectionContext, as_float, as_int
from sharedUtils.sources.models import SourceStatus, Topology
from sharedUtils.sources.connector import SqlQuery

TEMPDB_QUERY = SqlQuery(
    name="tempdb_stats",
    text="""
SET TRANSACTION ISOLATION LEVEL READ UNCOMMITTED;
SELECT
    user_object_reserved_mb = SUM(dsu.user_object_reserved_page_count) * 8 / 1024.0,
    internal_object_reserved_mb = SUM(dsu.internal_object_reserved_page_count) * 8 / 1024.0,
    version_store_reserved_mb = SUM(dsu.version_store_reserved_page_count) * 8 / 1024.0,
    total_reserved_mb = SUM(dsu.user_object_reserved_page_count
                            + dsu.internal_object_reserved_page_count
                            + dsu.version_store_reserved_page_count) * 8 / 1024.0,
    unallocated_mb = SUM(dsu.unallocated_extent_page_count) * 8 / 1024.0,
    total_sessions = MAX(sessions.total_sessions),
    top_session_id = MAX(top_session.session_id),
    top_session_tempdb_mb = MAX(top_session.tempdb_mb)
FROM tempdb.sys.dm_db_file_space_usage AS dsu
CROSS JOIN (
    SELECT total_sessions = COUNT_BIG(*)
    FROM sys.dm_db_session_space_usage
    WHERE user_objects_alloc_page_count + internal_objects_alloc_page_count > 0
) AS sessions
OUTER APPLY (
    SELECT TOP (1)
        ssu.session_id,
        tempdb_mb = (ssu.user_objects_alloc_page_count + ssu.internal_objects_alloc_page_count) * 8 / 1024.0
    FROM sys.dm_db_session_space_usage AS ssu
    ORDER BY ssu.user_objects_alloc_page_count + ssu.internal_objects_alloc_page_count DESC
) AS top_session
""",
)

MB_COLUMNS = (
    "user_object_reserved_mb",
    "internal_object_reserved_mb",
    "version_store_reserved_mb",
    "total_reserved_mb",
    "unallocated_mb",
    "top_session_tempdb_mb",
)


class TempDbCollector(BaseMetricCollector):
    """One row per cycle: reserved space by kind, free space, top consumer."""

    NAME = "tempdb_stats"
    TABLE = "tempdb_stats"

    def supports(self, status: SourceStatus, topology: Topology) -> bool:
        # Azure SQL DB has no cross-database access to tempdb
        return topology != Topology.AZURE_SQL_DB

    def fetch(self, context: CollectionContext) -> List[Dict[str, Any]]:
        record = self.query(context, TEMPDB_QUERY).first()
        if record is None:
            return []

        row = self.base_row(context)
        for column in MB_COLUMNS:
            row[column] = as_float(record.get(column))
        row["total_sessions"] = as_int(record.get("total_sessions"))
        row["top_session_id"] = record.get("top_session_id")
        return [row]
