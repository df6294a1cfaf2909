"""
Counter delta store.

SQL Server DMVs report cumulative counters since the instance last started.
Collectors feed every raw reading through compute_delta() to get the increase
since the previous reading of the same (source, metric, entity):

    first reading           -> 0, baseline set
    raw >= previous         -> raw - previous
    raw <  previous (reset) -> raw, as if counting from zero again

The baseline always moves to the new raw value. Baselines are in memory only;
seed_from_store() rebuilds them from the newest hot-store rows at start-up so
a process restart does not turn the next reading into a spike or a zero.
"""

from dataclasses import dataclass
from datetime import datetime
import threading
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple
from sharedUtils.logger.logger import get_logger

logger = get_logger(__name__)

LOCK_STRIPES = 64  # Independent locks; keys hash onto one of them
KEY_SEPARATOR = "|"

BaselineKey = Tuple[int, str, str]


def make_key(*parts: Any) -> str:
    """Entity key from its natural identity columns, e.g. make_key(db_id, file_id)."""
    return KEY_SEPARATOR.join("" if p is None else str(p) for p in parts)


class CounterBaseline(NamedTuple):
    raw_value: int
    timestamp: Optional[datetime]


class DeltaResult(NamedTuple):
    delta: int
    elapsed_seconds: Optional[float]


@dataclass(frozen=True)
class DeltaSeed:
    """
    Where a metric's last raw values live in the hot store.

    Attributes:
        metric: metric name passed to compute_delta()
        table: hot store table
        key_columns: columns joined with make_key() to form the entity key
        value_column: column holding the raw cumulative value
    """
    metric: str
    table: str
    key_columns: Tuple[str, ...]
    value_column: str


class CounterDeltaStore:
    """Thread-safe map of (source, metric, entity) -> CounterBaseline."""

    def __init__(self):
        self._baselines: Dict[BaselineKey, CounterBaseline] = {}
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def _lock_for(self, key: BaselineKey) -> threading.Lock:
        return self._locks[hash(key) % LOCK_STRIPES]

    def compute(
        self,
        source_id: int,
        metric: str,
        entity_key: str,
        raw_value: Optional[int],
        timestamp: Optional[datetime] = None,
    ) -> DeltaResult:
        """Delta plus the seconds elapsed since the previous reading."""
        raw = int(raw_value or 0)
        key = (source_id, metric, entity_key)

        with self._lock_for(key):
            previous = self._baselines.get(key)
            self._baselines[key] = CounterBaseline(raw, timestamp)

        if previous is None:
            return DeltaResult(0, None)

        delta = raw - previous.raw_value if raw >= previous.raw_value else raw

        elapsed = None
        if timestamp is not None and previous.timestamp is not None:
            elapsed = (timestamp - previous.timestamp).total_seconds()

        return DeltaResult(delta, elapsed)

    def compute_delta(
        self,
        source_id: int,
        metric: str,
        entity_key: str,
        raw_value: Optional[int],
        timestamp: Optional[datetime] = None,
    ) -> int:
        """Per-interval increase of a cumulative counter."""
        return self.compute(source_id, metric, entity_key, raw_value, timestamp).delta

    def seed(
        self,
        source_id: int,
        metric: str,
        entity_key: str,
        raw_value: Optional[int],
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Install a baseline without producing a delta."""
        key = (source_id, metric, entity_key)
        with self._lock_for(key):
            self._baselines[key] = CounterBaseline(int(raw_value or 0), timestamp)

    def baseline(self, source_id: int, metric: str, entity_key: str) -> Optional[CounterBaseline]:
        key = (source_id, metric, entity_key)
        with self._lock_for(key):
            return self._baselines.get(key)

    def seed_from_store(self, store, seeds: Iterable[DeltaSeed]) -> int:
        """
        Load the newest persisted raw value per (server, entity) for each seed.

        A seed whose query fails is logged and skipped; the affected metric
        simply starts from a fresh baseline.

        Returns:
            Number of baselines installed
        """
        total = 0
        for seed in seeds:
            try:
                rows = store.query(self._seed_sql(seed))
            except Exception as e:
                logger.warning("Could not seed %s from %s: %s", seed.metric, seed.table, e)
                continue

            for row in rows:
                server_id, collection_time, raw_value = row[0], row[1], row[2]
                self.seed(server_id, seed.metric, make_key(*row[3:]), raw_value, collection_time)
            total += len(rows)
            logger.debug("Seeded %d baselines for %s", len(rows), seed.metric)

        logger.info("Seeded %d counter baselines from the hot store", total)
        return total

    @staticmethod
    def _seed_sql(seed: DeltaSeed) -> str:
        keys = ", ".join(seed.key_columns)
        return (
            f"SELECT server_id, collection_time, {seed.value_column}, {keys} "
            f"FROM {seed.table} "
            f"QUALIFY row_number() OVER ("
            f"PARTITION BY server_id, {keys} ORDER BY collection_time DESC) = 1"
        )

    def prune(self, older_than: datetime) -> int:
        """
        Forget baselines last updated before a cutoff.

        Entities that stop reporting (dropped databases, evicted plans) would
        otherwise keep their baseline forever. An entity that comes back after
        being pruned starts again from a zero delta. Baselines without a
        timestamp are kept.

        Returns:
            Number of baselines removed
        """
        for lock in self._locks:
            lock.acquire()
        try:
            stale = [
                key for key, baseline in self._baselines.items()
                if baseline.timestamp is not None and baseline.timestamp < older_than
            ]
            for key in stale:
                del self._baselines[key]
        finally:
            for lock in self._locks:
                lock.release()

        if stale:
            logger.debug("Pruned %d stale counter baselines", len(stale))
        return len(stale)

    def clear(self) -> None:
        for lock in self._locks:
            lock.acquire()
        try:
            self._baselines.clear()
        finally:
            for lock in self._locks:
                lock.release()

    def __len__(self) -> int:
        return len(self._baselines)


def unique_seeds(seeds: Sequence[DeltaSeed]) -> List[DeltaSeed]:
    """Drop duplicate seed declarations, keeping the first."""
    seen = set()
    result = []
    for seed in seeds:
        if seed not in seen:
            seen.add(seed)
            result.append(seed)
    return result
