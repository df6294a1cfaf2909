"""
Metric Collectors Package

This package contains the base metric collector class, the counter delta
store and cursor tracker they share, and one collector per metric family.
"""

from collectors.base_data_collector import (
    BaseMetricCollector,
    CollectionContext,
    CollectionResult,
    CollectionStatus,
)
from collectors.blocked_process_collector import BlockedProcessCollector
from collectors.cpu_collector import CpuCollector
from collectors.cursor_tracker import CollectionCursorTracker
from collectors.deadlock_collector import DeadlockCollector
from collectors.delta_store import CounterDeltaStore, DeltaSeed, make_key
from collectors.file_io_collector import FileIoCollector
from collectors.memory_clerks_collector import MemoryClerksCollector
from collectors.memory_collector import MemoryCollector
from collectors.memory_grants_collector import MemoryGrantsCollector
from collectors.perfmon_collector import PerfmonCollector
from collectors.procedure_stats_collector import ProcedureStatsCollector
from collectors.query_stats_collector import QueryStatsCollector
from collectors.running_jobs_collector import RunningJobsCollector
from collectors.tempdb_collector import TempDbCollector
from collectors.wait_stats_collector import WaitStatsCollector
from collectors.waiting_tasks_collector import WaitingTasksCollector

# Collector registry: name in [collectors].enabled_collectors -> class.
# Order is the order collectors run within one source.
COLLECTOR_REGISTRY = {
    cls.NAME: cls
    for cls in (
        CpuCollector,
        MemoryCollector,
        WaitStatsCollector,
        FileIoCollector,
        PerfmonCollector,
        MemoryGrantsCollector,
        MemoryClerksCollector,
        TempDbCollector,
        WaitingTasksCollector,
        QueryStatsCollector,
        ProcedureStatsCollector,
        DeadlockCollector,
        BlockedProcessCollector,
        RunningJobsCollector,
    )
}

__all__ = [
    "BaseMetricCollector",
    "CollectionContext",
    "CollectionResult",
    "CollectionStatus",
    "CollectionCursorTracker",
    "CounterDeltaStore",
    "DeltaSeed",
    "make_key",
    "BlockedProcessCollector",
    "CpuCollector",
    "DeadlockCollector",
    "FileIoCollector",
    "MemoryClerksCollector",
    "MemoryCollector",
    "MemoryGrantsCollector",
    "PerfmonCollector",
    "ProcedureStatsCollector",
    "QueryStatsCollector",
    "RunningJobsCollector",
    "TempDbCollector",
    "WaitStatsCollector",
    "WaitingTasksCollector",
    "COLLECTOR_REGISTRY",
]
