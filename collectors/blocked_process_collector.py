"""
Blocked process reports from the ring buffer of the blocked process session.

SQL Server raises one report per blocked task every threshold interval, so a
long block shows up as a series of reports with increasing wait times. Like
deadlocks, the buffer is read whole and everything at or before the cursor
is dropped.
"""

from typing import Any, Dict, List, Optional
import xml.etree.ElementTree as ET
from collectors.base_data_collector import BaseMetricCollector, CollectionContext
from collectors.deadlock_collector import parse_event_time
from diagnostics.session_manager import SessionState
from sharedUtils.logger.logger import get_logger

logger = get_logger(__name__)

BLOCKED_PROCESS_EVENT_NAME = "blocked_process_report"

# Report column suffix -> process attribute, for both sides of the block
PROCESS_ATTRIBUTES = {
    "status": "status",
    "isolation_level": "isolationlevel",
    "client_app": "clientapp",
    "host_name": "hostname",
    "login_name": "loginname",
}


def _int_attr(element: Optional[ET.Element], name: str) -> Optional[int]:
    if element is None:
        return None
    try:
        return int(element.get(name))
    except (TypeError, ValueError):
        return None


def _inputbuf(process: Optional[ET.Element]) -> Optional[str]:
    if process is None:
        return None
    inputbuf = process.find("inputbuf")
    if inputbuf is None or not inputbuf.text:
        return None
    return inputbuf.text.strip()


def parse_report(report: ET.Element) -> Optional[Dict[str, Any]]:
    """Columns of one <blocked-process-report>, or None without a blocked process."""
    blocked = report.find("blocked-process/process")
    blocking = report.find("blocking-process/process")
    if blocked is None:
        return None

    row = {
        "database_name": blocked.get("currentdbname"),
        "blocked_spid": _int_attr(blocked, "spid"),
        "blocked_ecid": _int_attr(blocked, "ecid"),
        "blocking_spid": _int_attr(blocking, "spid"),
        "blocking_ecid": _int_attr(blocking, "ecid"),
        "wait_time_ms": _int_attr(blocked, "waittime"),
        "wait_resource": blocked.get("waitresource"),
        "lock_mode": blocked.get("lockMode"),
        "blocked_log_used": _int_attr(blocked, "logused"),
        "blocked_transaction_count": _int_attr(blocked, "trancount"),
        "blocked_sql_text": _inputbuf(blocked),
        "blocking_sql_text": _inputbuf(blocking),
        "blocked_process_report_xml": ET.tostring(report, encoding="unicode"),
    }
    for suffix, attribute in PROCESS_ATTRIBUTES.items():
        row[f"blocked_{suffix}"] = blocked.get(attribute)
        row[f"blocking_{suffix}"] = blocking.get(attribute) if blocking is not None else None
    return row


def parse_blocked_process_reports(target_data: Optional[str]) -> List[Dict[str, Any]]:
    """
    Parse ring buffer XML into blocked process report rows, oldest first.

    Events without a timestamp or without a blocked process are skipped.
    """
    if not target_data:
        return []

    try:
        root = ET.fromstring(target_data)
    except ET.ParseError as e:
        logger.warning("Unreadable blocked process ring buffer: %s", e)
        return []

    reports = []
    for event in root.iter("event"):
        if event.get("name") != BLOCKED_PROCESS_EVENT_NAME:
            continue
        event_time = parse_event_time(event.get("timestamp"))
        report = event.find(".//blocked-process-report")
        if event_time is None or report is None:
            continue
        parsed = parse_report(report)
        if parsed is None:
            continue
        parsed["event_time"] = event_time
        reports.append(parsed)

    reports.sort(key=lambda r: r["event_time"])
    return reports


class BlockedProcessCollector(BaseMetricCollector):
    """Blocking chains captured by the blocked process session."""

    NAME = "blocked_process_report"
    TABLE = "blocked_process_reports"
    CURSOR_COLUMN = "event_time"
    EVENT_SESSION = "blocked_process"

    def fetch(self, context: CollectionContext) -> List[Dict[str, Any]]:
        if self.sessions is None or self.sessions.state(context.source.id) != SessionState.RUNNING:
            logger.debug("%s: blocked process session not running, nothing to read", context.source)
            return []

        target_data = self.sessions.read_events(context.source, context.dialect, context.cancel)
        fresh = self.cursors.filter_newer(
            parse_blocked_process_reports(target_data),
            self.cursor(context),
            lambda r: r["event_time"],
            now=context.collection_time,
        )

        rows = []
        for report in fresh:
            row = self.base_row(context)
            row.update(report)
            rows.append(row)
        return rows
