"""
Deadlock reports from the ring buffer of the deadlock event session.

The ring buffer is read whole on every cycle and parsed here. Events at or
before the cursor were already stored and are dropped, which also covers the
case where the buffer still holds reports from long before this process
started (only the default lookback window is taken on a first run).
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import xml.etree.ElementTree as ET
from collectors.base_data_collector import BaseMetricCollector, CollectionContext
from diagnostics.session_manager import SessionState
from sharedUtils.logger.logger import get_logger

logger = get_logger(__name__)

DEADLOCK_EVENT_SUFFIX = "xml_deadlock_report"


def parse_event_time(value: Optional[str]) -> Optional[datetime]:
    """Event timestamps are ISO-8601 UTC, e.g. 2026-10-19T10:00:00.123Z."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_deadlocks(target_data: Optional[str]) -> List[Dict[str, Any]]:
    """
    Parse ring buffer XML into deadlock records.

    Returns:
        Dicts with deadlock_time, victim_process_id, victim_sql_text and
        deadlock_graph_xml, oldest first. Malformed events are skipped.
    """
    if not target_data:
        return []

    try:
        root = ET.fromstring(target_data)
    except ET.ParseError as e:
        logger.warning("Unreadable ring buffer contents: %s", e)
        return []

    deadlocks = []
    for event in root.iter("event"):
        if not (event.get("name") or "").endswith(DEADLOCK_EVENT_SUFFIX):
            continue

        event_time = parse_event_time(event.get("timestamp"))
        graph = event.find(".//deadlock")
        if event_time is None or graph is None:
            continue

        victim_id = None
        victim = graph.find("victim-list/victimProcess")
        if victim is not None:
            victim_id = victim.get("id")

        victim_sql = None
        if victim_id:
            for process in graph.iterfind("process-list/process"):
                if process.get("id") == victim_id:
                    inputbuf = process.find("inputbuf")
                    if inputbuf is not None and inputbuf.text:
                        victim_sql = inputbuf.text.strip()
                    break

        deadlocks.append({
            "deadlock_time": event_time,
            "victim_process_id": victim_id,
            "victim_sql_text": victim_sql,
            "deadlock_graph_xml": ET.tostring(graph, encoding="unicode"),
        })

    deadlocks.sort(key=lambda d: d["deadlock_time"])
    return deadlocks


class DeadlockCollector(BaseMetricCollector):
    """Deadlock graphs captured by the diagnostic session."""

    NAME = "deadlocks"
    EVENT_SESSION = "deadlock"
    TABLE = "deadlocks"
    CURSOR_COLUMN = "deadlock_time"

    def fetch(self, context: CollectionContext) -> List[Dict[str, Any]]:
        if self.sessions is None:
            return []

        if self.sessions.state(context.source.id) != SessionState.RUNNING:
            # Degraded: no capture session this cycle
            logger.debug("%s: deadlock session not running, nothing to read", context.source)
            return []

        target_data = self.sessions.read_events(context.source, context.dialect, context.cancel)
        events = parse_deadlocks(target_data)

        fresh = self.cursors.filter_newer(
            events, self.cursor(context), lambda d: d["deadlock_time"], now=context.collection_time
        )

        rows = []
        for event in fresh:
            row = self.base_row(context)
            row.update(event)
            rows.append(row)

        if rows:
            logger.info("%s: %d new deadlock(s)", context.source, len(rows))
        return rows
