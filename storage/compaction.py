"""Periodic hot store compaction and size watchdog."""

from datetime import datetime, timedelta
import threading
from typing import Callable, Optional
import psutil
from sharedUtils.logger.logger import get_logger
from sharedUtils.sources.connector import utc_now
from storage.hot_store import BYTES_TO_MB, HotStore, HotStoreError

logger = get_logger(__name__)


class CompactionWatchdog:
    """
    Compacts the hot store on a fixed interval and watches its size in between.

    The shared pause flag is set for the duration of a compaction so the
    collection cycle skips its work instead of writing into a store that is
    being rewritten.

    Attributes:
        interval (timedelta): time between compactions
        size_warning_mb (int): warn once the store grows past this
        min_free_disk_mb (int): warn when the volume has less free space
    """

    def __init__(
        self,
        store: HotStore,
        interval: timedelta,
        size_warning_mb: int,
        min_free_disk_mb: int = 0,
        pause_flag: Optional[threading.Event] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.interval = interval
        self.size_warning_mb = size_warning_mb
        self.min_free_disk_mb = min_free_disk_mb
        self.pause_flag = pause_flag or threading.Event()
        self.clock = clock

        self.last_compaction: datetime = clock()
        self._size_warned = False
        self._disk_warned = False

    def is_due(self, now: Optional[datetime] = None) -> bool:
        return (now or self.clock()) - self.last_compaction >= self.interval

    def run_if_due(self, now: Optional[datetime] = None) -> bool:
        """Compact if the interval elapsed, otherwise just check sizes. Returns True if compacted."""
        now = now or self.clock()
        if self.is_due(now):
            self.compact(now)
            return True
        self.check_size()
        return False

    def compact(self, now: Optional[datetime] = None) -> float:
        """Compact under the pause flag. Failures are logged. Returns MB reclaimed."""
        reclaimed = 0.0
        logger.info("Pausing collection for hot store compaction")
        self.pause_flag.set()
        try:
            reclaimed = self.store.compact()
            self._size_warned = False
        except HotStoreError as e:
            logger.error("Hot store compaction failed: %s", e)
        finally:
            self.pause_flag.clear()
            self.last_compaction = now or self.clock()
            logger.info("Collection resumed after compaction")
        return reclaimed

    def check_size(self) -> float:
        """Warn (once per crossing) about store size and free disk space."""
        size_mb = self.store.size_mb()

        if size_mb > self.size_warning_mb:
            if not self._size_warned:
                logger.warning("Hot store is %.1f MB, above the %d MB warning threshold "
                               "(next compaction at %s)",
                               size_mb, self.size_warning_mb, self.last_compaction + self.interval)
                self._size_warned = True
        else:
            self._size_warned = False

        if self.min_free_disk_mb:
            free_mb = psutil.disk_usage(str(self.store.database_path.parent.resolve())).free / BYTES_TO_MB
            if free_mb < self.min_free_disk_mb:
                if not self._disk_warned:
                    logger.warning("Only %.0f MB free on the hot store volume (minimum %d MB)",
                                   free_mb, self.min_free_disk_mb)
                    self._disk_warned = True
            else:
                self._disk_warned = False

        return size_mb
