"""
Collection orchestrator.

The collection thread ticks every [collection].interval_seconds:

    connectivity check -> due collectors (sources in parallel, collectors of
    a source one after another) -> collection_log -> checkpoint
    -> stale baseline prune -> wake the maintenance thread

Each collector runs at most once per [collectors.intervals] entry, so a tick
only runs the collectors that are due. The maintenance thread runs archive,
full reset, retention and compaction when each is due; while compaction holds
the store, ticks are skipped.

Nothing raised by a collector, the archive engine, the retention sweeper or
the compaction watchdog escapes a tick; failures are logged and the next tick
runs as usual.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple
from pydantic import BaseModel
from collectors import COLLECTOR_REGISTRY
from collectors.base_data_collector import (
    BaseMetricCollector,
    CollectionContext,
    CollectionResult,
    CollectionStatus,
    effective_topology,
)
from collectors.cursor_tracker import CollectionCursorTracker
from collectors.delta_store import CounterDeltaStore, unique_seeds
from diagnostics.session_manager import BlockedProcessSessionManager, DiagnosticSessionManager
from sharedUtils.config.models import AppConfig
from sharedUtils.logger.logger import get_logger
from sharedUtils.sources.connector import SourceConnector, utc_now
from sharedUtils.sources.dialect import dialect_for
from sharedUtils.sources.errors import CollectionCancelled
from sharedUtils.sources.models import Source, SourceStatus
from storage.archive import ArchiveEngine
from storage.compaction import CompactionWatchdog
from storage.hot_store import HotStore, HotStoreError
from storage.retention import RetentionSweeper

logger = get_logger(__name__)

STOP_GRACE_SECONDS = 5  # Extra time allowed for the loop thread to exit
SCHEDULE_SLACK = timedelta(seconds=2)  # Absorbs tick drift so a collector is not pushed a whole tick late
STALE_BASELINE_CYCLES = 10  # Baselines unseen for this many runs of the slowest collector are dropped


class CollectorHealth(BaseModel):
    """Running tally of one collector against one source."""
    source_id: int
    source_name: str
    collector: str
    success_count: int = 0
    error_count: int = 0
    consecutive_errors: int = 0
    last_status: Optional[CollectionStatus] = None
    last_success_time: Optional[datetime] = None
    last_error_time: Optional[datetime] = None
    last_error: Optional[str] = None

    def record(self, result: CollectionResult) -> None:
        self.last_status = result.status
        if result.status == CollectionStatus.SUCCESS:
            self.success_count += 1
            self.consecutive_errors = 0
            self.last_success_time = result.collection_time
        elif result.status in (CollectionStatus.ERROR, CollectionStatus.PERMISSIONS):
            self.error_count += 1
            self.consecutive_errors += 1
            self.last_error_time = result.collection_time
            self.last_error = result.error


class CollectionService:
    """
    Drives collection and storage maintenance on a fixed period.

    Attributes:
        last_collection_time: cycle time of the last cycle with a successful collector
        deltas (CounterDeltaStore): baselines shared by all collectors
        cursors (CollectionCursorTracker): high-water marks shared by all collectors
    """

    def __init__(
        self,
        config: AppConfig,
        store: HotStore,
        connector: SourceConnector,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.store = store
        self.connector = connector
        self.clock = clock

        collection = config.collection
        storage = config.storage

        self.deltas = CounterDeltaStore()
        self.cursors = CollectionCursorTracker(store, timedelta(minutes=collection.default_lookback_minutes))
        diagnostics = config.diagnostics
        self.sessions = DiagnosticSessionManager(
            connector, diagnostics.session_name, diagnostics.ring_buffer_kb
        )
        self.event_sessions: Dict[str, DiagnosticSessionManager] = {
            "deadlock": self.sessions,
            "blocked_process": BlockedProcessSessionManager(
                connector,
                diagnostics.blocked_process_session_name,
                diagnostics.ring_buffer_kb,
                diagnostics.blocked_process_threshold_seconds,
            ),
        }
        self.archive = ArchiveEngine(store, clock=clock)
        self.retention = RetentionSweeper(store.archive_path, store=store, clock=clock)

        self._maintenance_pause = threading.Event()
        self.compaction = CompactionWatchdog(
            store,
            interval=timedelta(hours=storage.compaction_interval_hours),
            size_warning_mb=storage.size_warning_mb,
            min_free_disk_mb=storage.min_free_disk_mb,
            pause_flag=self._maintenance_pause,
            clock=clock,
        )

        self.collectors: List[BaseMetricCollector] = [
            cls(
                connector,
                store,
                self.deltas,
                self.cursors,
                settings=config.collectors,
                query_timeout=collection.query_timeout_seconds,
                sessions=self.event_sessions.get(cls.EVENT_SESSION),
            )
            for name, cls in COLLECTOR_REGISTRY.items()
            if name in config.collectors.enabled_collectors
        ]

        slowest = max([collection.interval_seconds] +
                      [config.collectors.interval_for(c.NAME) for c in self.collectors])
        self.baseline_ttl = timedelta(seconds=slowest * STALE_BASELINE_CYCLES)

        # Threading state
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._maintenance_thread: Optional[threading.Thread] = None
        self._maintenance_requested = threading.Event()
        self._cycle_lock = threading.Lock()
        self._user_paused = False
        self._collecting = False

        self.last_collection_time: Optional[datetime] = None
        self._last_archive: Optional[datetime] = None
        self._last_retention: Optional[datetime] = None

        self._statuses: Dict[int, SourceStatus] = {}
        self._health: Dict[Tuple[int, str], CollectorHealth] = {}
        self._last_run: Dict[Tuple[int, str], datetime] = {}
        self._state_lock = threading.Lock()

        logger.debug("CollectionService init with %d sources, collectors=%s",
                     len(self.sources), [c.NAME for c in self.collectors])

    # ------------------------------------------------------------------ #
    # State
    # ------------------------------------------------------------------ #

    @property
    def sources(self) -> List[Source]:
        return [s for s in self.config.sources if s.enabled]

    @property
    def is_paused(self) -> bool:
        return self._user_paused or self._maintenance_pause.is_set()

    @property
    def is_collecting(self) -> bool:
        return self._collecting

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def pause(self) -> None:
        logger.info("Collection paused")
        self._user_paused = True

    def resume(self) -> None:
        logger.info("Collection resumed")
        self._user_paused = False

    def source_statuses(self) -> Dict[int, SourceStatus]:
        with self._state_lock:
            return dict(self._statuses)

    def health_summary(self) -> List[CollectorHealth]:
        with self._state_lock:
            return [h.model_copy() for h in self._health.values()]

    def _record(self, result: CollectionResult) -> None:
        key = (result.source_id, result.collector)
        with self._state_lock:
            health = self._health.get(key)
            if health is None:
                health = CollectorHealth(
                    source_id=result.source_id, source_name=result.source_name, collector=result.collector
                )
                self._health[key] = health
            health.record(result)

    # ------------------------------------------------------------------ #
    # Collection
    # ------------------------------------------------------------------ #

    def seed_baselines(self) -> int:
        """Load counter baselines for every enabled collector from the hot store."""
        seeds = unique_seeds([seed for c in self.collectors for seed in c.DELTA_SEEDS])
        return self.deltas.seed_from_store(self.store, seeds)

    def due_collectors(self, source_id: int, now: datetime) -> List[BaseMetricCollector]:
        """Collectors whose interval has elapsed for a source, in run order."""
        settings = self.config.collectors
        with self._state_lock:
            due = []
            for collector in self.collectors:
                last = self._last_run.get((source_id, collector.NAME))
                interval = timedelta(seconds=settings.interval_for(collector.NAME))
                if last is None or now - last >= interval - SCHEDULE_SLACK:
                    due.append(collector)
            return due

    def _mark_run(self, source_id: int, name: str, now: datetime) -> None:
        with self._state_lock:
            self._last_run[(source_id, name)] = now

    def run_cycle(self, force: bool = False) -> List[CollectionResult]:
        """
        Collect once from every enabled source.

        Args:
            force: run every enabled collector, ignoring the per-collector schedule

        Returns:
            One result per due collector per reachable source; empty when
            paused or when another cycle is still running.
        """
        if self.is_paused:
            logger.debug("Collection paused, skipping cycle")
            return []

        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Previous collection cycle still running, skipping")
            return []

        try:
            self._collecting = True
            now = self.clock()
            sources = self.sources
            results: List[CollectionResult] = []

            if sources:
                workers = min(self.config.collection.max_parallel_sources, len(sources))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="collect") as pool:
                    futures = {pool.submit(self._collect_source, source, now, force): source for source in sources}
                    for future in as_completed(futures):
                        source = futures[future]
                        try:
                            results.extend(future.result())
                        except Exception as e:
                            logger.error("%s: Error during collection: %s", source, e, exc_info=True)

            self._write_collection_log(results)

            # Flush now, between bursts, rather than letting DuckDB do it mid-append
            self.store.checkpoint()

            if any(r.status == CollectionStatus.SUCCESS for r in results):
                self.last_collection_time = now

            self.deltas.prune(now - self.baseline_ttl)

            written = sum(r.rows_written for r in results)
            failed = sum(1 for r in results if r.status in (CollectionStatus.ERROR, CollectionStatus.PERMISSIONS))
            logger.info("Cycle complete: %d sources, %d rows, %d failed collectors",
                        len(sources), written, failed)
            return results

        finally:
            self._collecting = False
            self._cycle_lock.release()

    def _collect_source(self, source: Source, now: datetime, force: bool = False) -> List[CollectionResult]:
        collectors = self.collectors if force else self.due_collectors(source.id, now)
        if not collectors:
            return []

        try:
            status = self.connector.check(source, cancel=self._stop)
        except CollectionCancelled:
            return []

        with self._state_lock:
            self._statuses[source.id] = status

        if not status.reachable:
            logger.warning("%s unreachable, skipping this cycle: %s", source, status.error)
            return []

        dialect = dialect_for(effective_topology(source, status))

        for session in sorted({c.EVENT_SESSION for c in collectors if c.EVENT_SESSION}):
            self.event_sessions[session].ensure(source, dialect, cancel=self._stop)

        results = []
        for collector in collectors:
            if self._stop.is_set():
                break
            self._mark_run(source.id, collector.NAME, now)
            context = CollectionContext(
                source=source,
                status=status,
                dialect=dialect,
                collection_time=now,
                cancel=self._stop,
            )
            result = collector.run(context)
            self._record(result)
            results.append(result)
        return results

    def _write_collection_log(self, results: List[CollectionResult]) -> None:
        rows = [r.to_log_row() for r in results if r.status != CollectionStatus.SKIPPED]
        try:
            self.store.append("collection_log", rows)
        except HotStoreError as e:
            logger.error("Could not write collection log: %s", e)

    # ------------------------------------------------------------------ #
    # Maintenance
    # ------------------------------------------------------------------ #

    @staticmethod
    def _due(last: Optional[datetime], interval: timedelta, now: datetime) -> bool:
        return last is None or now - last >= interval

    def run_maintenance(self, now: Optional[datetime] = None) -> None:
        """Archive, reset, retention and compaction, each only when due."""
        now = now or self.clock()
        storage = self.config.storage

        if self._due(self._last_archive, timedelta(minutes=storage.archive_interval_minutes), now):
            self._last_archive = now
            self._guarded("archive", lambda: self.archive.archive(timedelta(days=storage.hot_data_days)))

        if self.store.size_mb() > storage.reset_threshold_mb:
            logger.warning("Hot store is above %d MB, archiving everything", storage.reset_threshold_mb)
            self._guarded("full reset", self.archive.archive_all_and_reset)

        if self._due(self._last_retention, timedelta(hours=storage.retention_interval_hours), now):
            self._last_retention = now
            self._guarded("retention", lambda: self.retention.sweep(timedelta(days=storage.archive_retention_days)))

        self._guarded("compaction", lambda: self.compaction.run_if_due(now))

    @staticmethod
    def _guarded(name: str, step: Callable[[], object]) -> None:
        try:
            step()
        except Exception as e:
            logger.error("Error during %s: %s", name, e, exc_info=True)

    # ------------------------------------------------------------------ #
    # Background loop
    # ------------------------------------------------------------------ #

    def _collection_loop(self) -> None:
        interval = self.config.collection.interval_seconds
        logger.info("Starting collection loop (interval=%ds)", interval)

        if self._stop.wait(self.config.collection.startup_delay_seconds):
            return

        while not self._stop.is_set():
            started = time.monotonic()

            try:
                self.run_cycle()
            except Exception as e:
                logger.error("Error during collection cycle: %s", e, exc_info=True)

            # A maintenance pass still running absorbs this request
            self._maintenance_requested.set()

            # Fixed period: sleep whatever is left of the interval
            self._stop.wait(max(interval - (time.monotonic() - started), 0))

        logger.info("Collection loop stopped")

    def _maintenance_loop(self) -> None:
        logger.info("Starting maintenance loop")

        while True:
            self._maintenance_requested.wait()
            self._maintenance_requested.clear()
            if self._stop.is_set():
                break

            try:
                self.run_maintenance()
            except Exception as e:
                logger.error("Error during maintenance: %s", e, exc_info=True)

        logger.info("Maintenance loop stopped")

    def start(self) -> None:
        """Prepare the store, seed baselines and start the collection and maintenance threads."""
        if self.is_running():
            logger.warning("CollectionService: Already running")
            return

        self.store.initialize()
        self.archive.resume_pending()
        self.seed_baselines()

        self._stop.clear()
        self._maintenance_requested.clear()
        self._maintenance_thread = threading.Thread(
            target=self._maintenance_loop,
            name="CollectionService-Maintenance",
            daemon=False,
        )
        self._maintenance_thread.start()
        self._thread = threading.Thread(
            target=self._collection_loop,
            name="CollectionService-Thread",
            daemon=False,
        )
        self._thread.start()
        logger.info("CollectionService started")

    def stop(self) -> None:
        """Signal shutdown (cancelling in-flight work) and wait for both loops to finish."""
        self._stop.set()
        self._maintenance_requested.set()

        timeout = self.config.collection.query_timeout_seconds + STOP_GRACE_SECONDS
        for thread in (self._thread, self._maintenance_thread):
            if thread and thread.is_alive():
                thread.join(timeout=timeout)
                if thread.is_alive():
                    logger.warning("CollectionService: %s did not stop cleanly", thread.name)
                else:
                    logger.info("CollectionService: %s stopped", thread.name)

        self._thread = None
        self._maintenance_thread = None
        self.connector.dispose()

    def __repr__(self) -> str:
        return f"CollectionService(sources={len(self.sources)}, collectors={len(self.collectors)})"
