"""Wait statistics deltas."""

from typing import Any, Dict, List
from collectors.base_data_collector import BaseMetricCollector, CollectionContext, as_int
from collectors.delta_store import DeltaSeed, make_key
from sharedUtils.sources.connector import SqlQuery

WAIT_STATS_QUERY = SqlQuery(
    name="wait_stats",
    text="""
SELECT wait_type, waiting_tasks_count, wait_time_ms, signal_wait_time_ms
FROM sys.dm_os_wait_stats
WHERE waiting_tasks_count > 0
""",
)

DATABASE_WAIT_STATS_QUERY = SqlQuery(
    name="wait_stats_database",
    text="""
SELECT wait_type, waiting_tasks_count, wait_time_ms, signal_wait_time_ms
FROM sys.dm_db_wait_stats
WHERE waiting_tasks_count > 0
""",
)

COUNTERS = {
    "waiting_tasks_count":  ("wait_stats_tasks",        "delta_waiting_tasks"),
    "wait_time_ms":         ("wait_stats_wait_ms",      "delta_wait_time_ms"),
    "signal_wait_time_ms":  ("wait_stats_signal_ms",    "delta_signal_wait_time_ms"),
}


class WaitStatsCollector(BaseMetricCollector):
    """
    Per wait type deltas.

    Wait types listed in [collectors].ignored_wait_types are dropped before
    any delta is computed. Rows whose deltas are all zero are still written
    so the raw series stays continuous for seeding.
    """

    NAME = "wait_stats"
    TABLE = "wait_stats"
    DELTA_SEEDS = [
        DeltaSeed(metric, "wait_stats", ("wait_type",), raw)
        for raw, (metric, _) in COUNTERS.items()
    ]

    def fetch(self, context: CollectionContext) -> List[Dict[str, Any]]:
        ignored = set(self.settings.ignored_wait_types)
        query = context.dialect.pick(WAIT_STATS_QUERY, DATABASE_WAIT_STATS_QUERY)
        rows = []

        for record in self.query(context, query).records():
            wait_type = record["wait_type"]
            if wait_type.upper() in ignored:
                continue

            key = make_key(wait_type)
            row = self.base_row(context)
            row["wait_type"] = wait_type
            for raw_column, (metric, delta_column) in COUNTERS.items():
                raw = as_int(record.get(raw_column))
                row[raw_column] = raw
                row[delta_column] = self.delta(context, metric, key, raw)
            rows.append(row)

        return rows
