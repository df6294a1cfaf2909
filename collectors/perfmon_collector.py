"""Selected performance counters from sys.dm_os_performance_counters."""

from typing import Any, Dict, List
from collectors.base_data_collector import BaseMetricCollector, CollectionContext, as_int
from collectors.delta_store import DeltaSeed, make_key
from sharedUtils.sources.connector import SqlQuery

PERF_COUNTER_BULK_COUNT = 272696576  # cumulative "/sec" counters

COUNTER_NAMES = (
    "Batch Requests/sec",
    "SQL Compilations/sec",
    "SQL Re-Compilations/sec",
    "Page life expectancy",
    "Page reads/sec",
    "Page writes/sec",
    "Lazy writes/sec",
    "Lock Waits/sec",
    "Number of Deadlocks/sec",
    "User Connections",
    "Processes blocked",
    "Memory Grants Pending",
    "Log Flushes/sec",
    "Transactions/sec",
)

PERFMON_QUERY = SqlQuery(
    name="perfmon_stats",
    text="""
SELECT
    object_name = RTRIM(object_name),
    counter_name = RTRIM(counter_name),
    instance_name = RTRIM(instance_name),
    cntr_value = cntr_value,
    cntr_type = cntr_type
FROM sys.dm_os_performance_counters
WHERE RTRIM(counter_name) IN ({names})
AND (instance_name = N'' OR instance_name = N'_Total' OR object_name LIKE N'%Buffer Manager%')
""".format(names=", ".join("N'" + n.replace("'", "''") + "'" for n in COUNTER_NAMES)),
)

KEY_COLUMNS = ("object_name", "counter_name", "instance_name")
METRIC = "perfmon"


class PerfmonCollector(BaseMetricCollector):
    """
    Cumulative counters get a delta and the seconds since the last reading;
    point-in-time counters (page life expectancy, user connections) are
    stored raw with a NULL delta.
    """

    NAME = "perfmon"
    TABLE = "perfmon_stats"
    DELTA_SEEDS = [DeltaSeed(METRIC, "perfmon_stats", KEY_COLUMNS, "cntr_value")]

    def fetch(self, context: CollectionContext) -> List[Dict[str, Any]]:
        rows = []
        for record in self.query(context, PERFMON_QUERY).records():
            raw = as_int(record.get("cntr_value"))
            row = self.base_row(context)
            row.update({
                "object_name": record["object_name"],
                "counter_name": record["counter_name"],
                "instance_name": record.get("instance_name") or "",
                "cntr_value": raw,
                "delta_cntr_value": None,
                "sample_interval_seconds": None,
            })
            if record.get("cntr_type") == PERF_COUNTER_BULK_COUNT:
                key = make_key(row["object_name"], row["counter_name"], row["instance_name"])
                result = self.deltas.compute(context.source.id, METRIC, key, raw, context.collection_time)
                row["delta_cntr_value"] = result.delta
                row["sample_interval_seconds"] = result.elapsed_seconds
            rows.append(row)
        return rows
