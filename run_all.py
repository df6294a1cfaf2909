#!/usr/bin/env python3
"""
SQL Server Telemetry Collector - Main Orchestrator

Starts and manages all components:
- Hot store (DuckDB) with its Parquet archive
- Collection service (connectivity checks, collectors, maintenance)

Usage:
    python run_all.py           # run until SIGINT / SIGTERM
    python run_all.py --once    # one collection cycle plus maintenance, then exit
"""

import argparse
import sys
import time
import signal

from service.collection_service import CollectionService
from sharedUtils.config import get_typed_config
from sharedUtils.logger.logger import get_logger
from sharedUtils.sources.connector import SqlAlchemySourceConnector
from storage.hot_store import HotStore

logger = get_logger(__name__)

SHUTDOWN_POLL_INTERVAL_SECONDS = 1  # How often the main loop checks for a stop signal

running = True


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Collect SQL Server telemetry into a local DuckDB store")
    parser.add_argument("--once", action="store_true",
                        help="run a single collection cycle and maintenance pass, then exit")
    return parser.parse_args(argv)


def build_service(config):
    """Create the store, connector and service from typed config."""
    storage = config.storage
    store = HotStore(storage.database_path, storage.archive_path or None)
    connector = SqlAlchemySourceConnector(
        connect_timeout=config.collection.connect_timeout_seconds,
        query_timeout=config.collection.query_timeout_seconds,
    )
    return CollectionService(config, store, connector)


def run_once(service: CollectionService) -> int:
    """Single pass used by --once. Returns an exit code."""
    service.store.initialize()
    service.archive.resume_pending()
    service.seed_baselines()

    results = service.run_cycle(force=True)
    service.run_maintenance()

    for result in results:
        logger.info("  %-16s %-24s %-11s %6d rows  %8.1f ms",
                    result.source_name, result.collector, result.status.value,
                    result.rows_written, result.duration_ms)

    if service.sources and not results:
        logger.error("No source was reachable")
        return 1
    return 0


def wait_for_shutdown(service: CollectionService):
    """Wait for a shutdown signal while the service runs in the background."""
    global running

    try:
        while running and service.is_running():
            time.sleep(SHUTDOWN_POLL_INTERVAL_SECONDS)
    except KeyboardInterrupt:
        logger.info("")
        logger.info("Interrupted by user")

    logger.info("Stopping collection service...")
    service.stop()


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global running
    _ = signum, frame  # Unused but required by signal.signal
    logger.info("")
    logger.info("Received shutdown signal. Stopping...")
    running = False


def cleanup(service):
    """Clean up resources on shutdown."""
    logger.info("Cleaning up resources...")

    if service is not None:
        try:
            service.connector.dispose()
            logger.info("✓ Source connections closed")
        except Exception as e:
            logger.error("Error closing source connections: %s", e)

        try:
            service.store.close()
            logger.info("✓ Hot store closed")
        except Exception as e:
            logger.error("Error closing hot store: %s", e)

    logger.info("Shutdown complete")


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)

    logger.info("=" * 60)
    logger.info("SQL Server Telemetry Collector - Starting")
    logger.info("=" * 60)
    logger.info("")

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    service = None
    try:
        config = get_typed_config()

        enabled = [s for s in config.sources if s.enabled]
        if not enabled:
            logger.error("No sources enabled in config.toml")
            return 1

        logger.info("Sources: %s", ", ".join(str(s) for s in enabled))
        logger.info("Collectors: %s", ", ".join(config.collectors.enabled_collectors))
        logger.info("Hot store: %s", config.storage.database_path)
        logger.info("")

        service = build_service(config)

        if args.once:
            return run_once(service)

        service.start()

        logger.info("✓ All components initialized successfully")
        logger.info("Press Ctrl+C to stop")
        logger.info("")

        wait_for_shutdown(service)

    except KeyboardInterrupt:
        logger.info("")
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error("Fatal error: %s", e, exc_info=True)
        return 1
    finally:
        cleanup(service)

    return 0


if __name__ == "__main__":
    sys.exit(main())
