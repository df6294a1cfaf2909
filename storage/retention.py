"""Retention sweep over archived Parquet files."""

import calendar
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional
from sharedUtils.logger.logger import get_logger
from sharedUtils.sources.connector import utc_now

logger = get_logger(__name__)

DAILY_PREFIX_FORMAT = "%Y%m%d"   # 20261019_143000_wait_stats.parquet
MONTHLY_PREFIX_FORMAT = "%Y-%m"  # 2026-10_wait_stats.parquet (legacy)


def parse_archive_timestamp(name: str) -> Optional[datetime]:
    """
    Newest moment a file can hold data for, from its name prefix.

    A daily prefix yields that day; a legacy monthly prefix yields the first
    instant of the following month, so a monthly file only expires once the
    whole month is out of the window. Returns None for anything else.
    """
    try:
        return datetime.strptime(name[:8], DAILY_PREFIX_FORMAT)
    except ValueError:
        pass

    try:
        month = datetime.strptime(name[:7], MONTHLY_PREFIX_FORMAT)
    except ValueError:
        return None

    days = calendar.monthrange(month.year, month.month)[1]
    return month + timedelta(days=days)


class RetentionSweeper:
    """
    Deletes archive files older than the retention window.

    When a store is given, files are removed under its write lock and the
    archive views are rebuilt before the lock is released.
    """

    def __init__(self, archive_path, store=None, clock: Callable[[], datetime] = utc_now):
        self.archive_path = Path(archive_path)
        self.store = store
        self.clock = clock

    def sweep(self, retention: timedelta) -> List[Path]:
        """
        Delete expired files.

        Returns:
            Paths that were deleted
        """
        if not self.archive_path.exists():
            return []

        cutoff = self.clock() - retention

        if self.store is None:
            return self._sweep(cutoff)

        with self.store.write_lock():
            deleted = self._sweep(cutoff)
            if deleted:
                self.store.refresh_archive_views()
        return deleted

    def _sweep(self, cutoff: datetime) -> List[Path]:
        deleted = []
        skipped = 0

        for path in sorted(self.archive_path.glob("*.parquet")):
            stamp = parse_archive_timestamp(path.name)
            if stamp is None:
                skipped += 1
                logger.debug("Skipping archive file with unrecognised name: %s", path.name)
                continue
            if stamp >= cutoff:
                continue
            try:
                path.unlink()
                deleted.append(path)
                logger.info("Deleted expired archive file %s", path.name)
            except OSError as e:
                logger.error("Could not delete archive file %s: %s", path.name, e)

        if deleted or skipped:
            logger.info("Retention sweep: %d deleted, %d skipped (cutoff %s)",
                        len(deleted), skipped, cutoff)
        return deleted
