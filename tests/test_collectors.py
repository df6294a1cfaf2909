"""Collector behaviour against a scripted connector and a real hot store."""

from datetime import datetime, timedelta

import pytest

from collectors.base_data_collector import CollectionContext, CollectionStatus
from collectors.blocked_process_collector import BlockedProcessCollector, parse_blocked_process_reports
from collectors.cpu_collector import CpuCollector
from collectors.deadlock_collector import DeadlockCollector, parse_deadlocks
from collectors.file_io_collector import FileIoCollector
from collectors.memory_clerks_collector import MemoryClerksCollector
from collectors.memory_collector import MemoryCollector
from collectors.memory_grants_collector import MemoryGrantsCollector
from collectors.perfmon_collector import PERF_COUNTER_BULK_COUNT, PerfmonCollector
from collectors.procedure_stats_collector import ProcedureStatsCollector
from collectors.query_stats_collector import QueryStatsCollector, merge_by_key
from collectors.running_jobs_collector import RunningJobsCollector, is_running_long
from collectors.tempdb_collector import TempDbCollector
from collectors.wait_stats_collector import WaitStatsCollector
from collectors.waiting_tasks_collector import WaitingTasksCollector
from conftest import FakeConnector, make_result
from diagnostics.session_manager import BlockedProcessSessionManager, DiagnosticSessionManager
from sharedUtils.config.models import CollectorsConfig
from sharedUtils.sources.errors import SourceQueryError, SourceUnavailableError
from sharedUtils.sources.models import SourceStatus, Topology

T0 = datetime(2026, 10, 19, 12, 0, 0)

DEADLOCK_XML = """
<RingBufferTarget truncated="0" eventCount="2">
  <event name="xml_deadlock_report" package="sqlserver" timestamp="2026-10-19T11:58:30.250Z">
    <data name="xml_report">
      <value>
        <deadlock>
          <victim-list><victimProcess id="process1a2b" /></victim-list>
          <process-list>
            <process id="process1a2b"><inputbuf>UPDATE dbo.Orders SET Status = 2 WHERE Id = 7</inputbuf></process>
            <process id="process3c4d"><inputbuf>UPDATE dbo.Customers SET Name = 'x' WHERE Id = 1</inputbuf></process>
          </process-list>
          <resource-list />
        </deadlock>
      </value>
    </data>
  </event>
  <event name="lock_timeout" package="sqlserver" timestamp="2026-10-19T11:59:00.000Z" />
</RingBufferTarget>
"""

BLOCKED_PROCESS_XML = """
<RingBufferTarget truncated="0" eventCount="3">
  <event name="blocked_process_report" package="sqlserver" timestamp="2026-10-19T11:57:10.500Z">
    <data name="duration"><value>12000000</value></data>
    <data name="blocked_process">
      <value>
        <blocked-process-report monitorLoop="41">
          <blocked-process>
            <process id="process7f1" waitresource="KEY: 5:72057594043236352 (8194443284a0)" waittime="12000"
                     spid="63" ecid="0" status="suspended" isolationlevel="read committed (2)" logused="248"
                     trancount="1" clientapp="OrdersApi" hostname="web01" loginname="orders"
                     currentdbname="Sales" lockMode="U">
              <inputbuf>UPDATE dbo.Orders SET Status = 3 WHERE Id = 7</inputbuf>
            </process>
          </blocked-process>
          <blocking-process>
            <process status="sleeping" spid="58" ecid="0" isolationlevel="serializable (4)"
                     clientapp="Reports" hostname="rpt01" loginname="reporting">
              <inputbuf>SELECT * FROM dbo.Orders WITH (UPDLOCK)</inputbuf>
            </process>
          </blocking-process>
        </blocked-process-report>
      </value>
    </data>
  </event>
  <event name="blocked_process_report" package="sqlserver" timestamp="2026-10-19T11:57:20.500Z">
    <data name="blocked_process">
      <value><blocked-process-report monitorLoop="42"><blocked-process /></blocked-process-report></value>
    </data>
  </event>
  <event name="xml_deadlock_report" package="sqlserver" timestamp="2026-10-19T11:58:00.000Z" />
</RingBufferTarget>
"""


def context_for(source, when=T0, **status):
    fields = {"source_id": source.id, "reachable": True, "checked_at": when, "major_version": 16,
              "engine_edition": 3}
    fields.update(status)
    return CollectionContext.for_source(source, status=SourceStatus(**fields), collection_time=when)


def make(cls, connector, store, deltas, cursors, **kwargs):
    return cls(connector, store, deltas, cursors, **kwargs)


class TestWaitStats:
    """Wait stats deltas and filtering."""

    def test_deltas_across_cycles(self, connector, store, deltas, cursors, source):
        connector.respond(
            "wait_stats",
            [{"wait_type": "LCK_M_X", "waiting_tasks_count": 100, "wait_time_ms": 1000, "signal_wait_time_ms": 10}],
            [{"wait_type": "LCK_M_X", "waiting_tasks_count": 140, "wait_time_ms": 1600, "signal_wait_time_ms": 12}],
            [{"wait_type": "LCK_M_X", "waiting_tasks_count": 90, "wait_time_ms": 900, "signal_wait_time_ms": 3}],
        )
        collector = make(WaitStatsCollector, connector, store, deltas, cursors)

        for minute in range(3):
            result = collector.run(context_for(source, T0 + timedelta(minutes=minute)))
            assert result.status == CollectionStatus.SUCCESS
            assert result.rows_written == 1

        rows = store.query(
            "SELECT delta_waiting_tasks, delta_wait_time_ms FROM wait_stats ORDER BY collection_time"
        )
        assert rows == [(0, 0), (40, 600), (90, 900)]

    def test_ignored_wait_types_dropped(self, connector, store, deltas, cursors, source):
        connector.respond("wait_stats", [
            {"wait_type": "SLEEP_TASK", "waiting_tasks_count": 5, "wait_time_ms": 5, "signal_wait_time_ms": 0},
            {"wait_type": "CXPACKET", "waiting_tasks_count": 5, "wait_time_ms": 5, "signal_wait_time_ms": 0},
        ])
        settings = CollectorsConfig(ignored_wait_types=["sleep_task"])
        collector = make(WaitStatsCollector, connector, store, deltas, cursors, settings=settings)

        assert collector.run(context_for(source)).rows_written == 1
        assert store.query("SELECT wait_type FROM wait_stats") == [("CXPACKET",)]
        assert deltas.baseline(source.id, "wait_stats_tasks", "SLEEP_TASK") is None

    def test_database_scoped_source_uses_database_query(self, connector, store, deltas, cursors, source):
        collector = make(WaitStatsCollector, connector, store, deltas, cursors)
        collector.run(context_for(source, engine_edition=5))
        assert connector.executed == ["wait_stats_database"]


class TestErrorMapping:
    """Failures become results, never exceptions."""

    def test_permission_error(self, connector, store, deltas, cursors, source):
        connector.respond("wait_stats", SourceQueryError(
            "[42000] VIEW SERVER STATE permission was denied on object 'server' (300)"))
        result = make(WaitStatsCollector, connector, store, deltas, cursors).run(context_for(source))

        assert result.status == CollectionStatus.PERMISSIONS
        assert "permission" in result.error
        assert store.row_count("wait_stats") == 0

    def test_query_error(self, connector, store, deltas, cursors, source):
        connector.respond("file_io_stats", SourceQueryError("Invalid object name (208)"))
        result = make(FileIoCollector, connector, store, deltas, cursors).run(context_for(source))
        assert result.status == CollectionStatus.ERROR

    def test_unreachable(self, connector, store, deltas, cursors, source):
        connector.unreachable.add(source.id)
        result = make(FileIoCollector, connector, store, deltas, cursors).run(context_for(source))
        assert result.status == CollectionStatus.ERROR

    def test_cancelled(self, connector, store, deltas, cursors, source):
        context = context_for(source)
        context.cancel.set()
        result = make(FileIoCollector, connector, store, deltas, cursors).run(context)
        assert result.status == CollectionStatus.CANCELLED
        assert connector.executed == []

    def test_log_row_shape(self, connector, store, deltas, cursors, source):
        connector.respond("wait_stats", SourceUnavailableError("gone"))
        result = make(WaitStatsCollector, connector, store, deltas, cursors).run(context_for(source))
        row = result.to_log_row()
        assert row["collector_name"] == "wait_stats"
        assert row["status"] == "ERROR"
        assert store.append("collection_log", [row]) == 1


class TestCpu:
    """Ring buffer samples are only stored once."""

    def _samples(self, newest, count=3):
        return [
            {"sample_time": newest - timedelta(minutes=i), "sqlserver_cpu_utilization": 20, "system_idle": 70}
            for i in range(count)
        ]

    def test_rerun_with_same_buffer_writes_nothing(self, connector, store, deltas, cursors, source):
        connector.respond("cpu_ring_buffer", self._samples(T0 - timedelta(minutes=1)))
        collector = make(CpuCollector, connector, store, deltas, cursors)

        first = collector.run(context_for(source, T0))
        second = collector.run(context_for(source, T0 + timedelta(minutes=1)))

        assert first.rows_written == 3
        assert second.status == CollectionStatus.SUCCESS
        assert second.rows_written == 0
        assert store.query("SELECT DISTINCT other_process_cpu_utilization FROM cpu_utilization_stats") == [(10,)]

    def test_only_newer_samples_appended(self, connector, store, deltas, cursors, source):
        connector.respond(
            "cpu_ring_buffer",
            self._samples(T0 - timedelta(minutes=1)),
            self._samples(T0 + timedelta(minutes=1)),
        )
        collector = make(CpuCollector, connector, store, deltas, cursors)

        collector.run(context_for(source, T0))
        assert collector.run(context_for(source, T0 + timedelta(minutes=2))).rows_written == 2
        assert store.row_count("cpu_utilization_stats") == 5

    def test_first_run_limited_to_lookback(self, connector, store, deltas, cursors, source):
        old = [{"sample_time": T0 - timedelta(hours=5), "sqlserver_cpu_utilization": 1, "system_idle": 99}]
        connector.respond("cpu_ring_buffer", old + self._samples(T0 - timedelta(minutes=1), count=2))
        collector = make(CpuCollector, connector, store, deltas, cursors)
        assert collector.run(context_for(source, T0)).rows_written == 2


class TestDeadlocks:
    """Deadlock parsing and gating on the capture session."""

    def test_parse_deadlocks(self):
        events = parse_deadlocks(DEADLOCK_XML)
        assert len(events) == 1
        event = events[0]
        assert event["deadlock_time"] == datetime(2026, 10, 19, 11, 58, 30, 250000)
        assert event["victim_process_id"] == "process1a2b"
        assert event["victim_sql_text"] == "UPDATE dbo.Orders SET Status = 2 WHERE Id = 7"
        assert event["deadlock_graph_xml"].startswith("<deadlock>")

    @pytest.mark.parametrize("data", [None, "", "<not xml"])
    def test_parse_nothing(self, data):
        assert parse_deadlocks(data) == []

    def test_database_scoped_event_name(self):
        data = DEADLOCK_XML.replace('name="xml_deadlock_report"', 'name="database_xml_deadlock_report"')
        assert len(parse_deadlocks(data)) == 1

    def test_not_read_without_running_session(self, connector, store, deltas, cursors, source):
        sessions = DiagnosticSessionManager(connector)
        collector = make(DeadlockCollector, connector, store, deltas, cursors, sessions=sessions)

        result = collector.run(context_for(source))
        assert result.status == CollectionStatus.SUCCESS
        assert result.rows_written == 0
        assert "xe_ring_buffer" not in connector.executed

    def test_collected_once(self, connector, store, deltas, cursors, source):
        connector.respond("xe_probe", [{"session_exists": 1, "has_event": 1, "has_ring_buffer": 1, "target_count": 1, "is_running": 1}])
        connector.respond("xe_ring_buffer", [{"target_data": DEADLOCK_XML}])
        sessions = DiagnosticSessionManager(connector)
        context = context_for(source)
        sessions.ensure(source, context.dialect)

        collector = make(DeadlockCollector, connector, store, deltas, cursors, sessions=sessions)
        assert collector.run(context).rows_written == 1
        assert collector.run(context_for(source, T0 + timedelta(minutes=1))).rows_written == 0
        assert store.row_count("deadlocks") == 1


class TestGating:
    """Collectors that do not apply to a topology are skipped."""

    def test_running_jobs_skipped_on_azure(self, connector, store, deltas, cursors, source):
        result = make(RunningJobsCollector, connector, store, deltas, cursors).run(
            context_for(source, engine_edition=5))
        assert result.status == CollectionStatus.SKIPPED
        assert connector.executed == []

    def test_running_jobs_skipped_on_rds(self, connector, store, deltas, cursors, source):
        result = make(RunningJobsCollector, connector, store, deltas, cursors).run(
            context_for(source, is_aws_rds=True))
        assert result.status == CollectionStatus.SKIPPED

    def test_query_stats_needs_2016(self, connector, store, deltas, cursors, source):
        collector = make(QueryStatsCollector, connector, store, deltas, cursors)
        assert collector.run(context_for(source, major_version=12)).status == CollectionStatus.SKIPPED
        assert collector.supports(SourceStatus(source_id=1, checked_at=T0, major_version=12),
                                  Topology.MANAGED_INSTANCE)

    def test_running_jobs_start_time_converted_to_utc(self, connector, store, deltas, cursors, source):
        connector.respond("running_jobs", [{
            "job_name": "nightly", "job_id": "A1", "job_enabled": 1,
            "start_time": datetime(2026, 10, 19, 14, 0, 0), "current_duration_seconds": 700,
            "avg_duration_seconds": 300, "p95_duration_seconds": 600, "successful_run_count": 20,
        }])
        collector = make(RunningJobsCollector, connector, store, deltas, cursors)
        collector.run(context_for(source, utc_offset_minutes=120))

        rows = store.query_records("SELECT start_time, is_running_long FROM running_jobs")
        assert rows == [{"start_time": datetime(2026, 10, 19, 12, 0, 0), "is_running_long": True}]


class TestKeyedCounters:
    """Entity keys and merged plan cache rows."""

    def test_merge_by_key_sums_duplicates(self):
        records = [
            {"query_hash": "0xA", "query_plan_hash": "0x1", "execution_count": 3,
             "creation_time": T0, "last_execution_time": T0},
            {"query_hash": "0xA", "query_plan_hash": "0x1", "execution_count": 4,
             "creation_time": T0 - timedelta(hours=1), "last_execution_time": T0 + timedelta(minutes=1)},
        ]
        merged = merge_by_key(records, ("query_hash", "query_plan_hash"), ["execution_count"],
                              "creation_time", "last_execution_time")
        assert list(merged) == ["0xA|0x1"]
        assert merged["0xA|0x1"]["execution_count"] == 7
        assert merged["0xA|0x1"]["creation_time"] == T0 - timedelta(hours=1)
        assert merged["0xA|0x1"]["last_execution_time"] == T0 + timedelta(minutes=1)

    def test_perfmon_delta_only_for_cumulative_counters(self, connector, store, deltas, cursors, source):
        def reading(batches):
            return [
                {"object_name": "SQLServer:SQL Statistics", "counter_name": "Batch Requests/sec",
                 "instance_name": "", "cntr_value": batches, "cntr_type": PERF_COUNTER_BULK_COUNT},
                {"object_name": "SQLServer:Buffer Manager", "counter_name": "Page life expectancy",
                 "instance_name": "", "cntr_value": 3000, "cntr_type": 65792},
            ]
        connector.respond("perfmon_stats", reading(1000), reading(1600))
        collector = make(PerfmonCollector, connector, store, deltas, cursors)

        collector.run(context_for(source, T0))
        collector.run(context_for(source, T0 + timedelta(seconds=60)))

        rows = store.query(
            "SELECT counter_name, delta_cntr_value, sample_interval_seconds FROM perfmon_stats "
            "WHERE collection_time = ? ORDER BY counter_name",
            [T0 + timedelta(seconds=60)],
        )
        assert rows == [("Batch Requests/sec", 600, 60.0), ("Page life expectancy", None, None)]


def test_is_running_long():
    assert is_running_long(700, 300, 600)
    assert not is_running_long(500, 300, 600)
    assert is_running_long(700, 300, None)
    assert not is_running_long(700, None, None)


def query_stats_record(last_run, executions, query_hash="0xA1", worker_time=None):
    return {
        "database_name": "Sales", "query_hash": query_hash, "query_plan_hash": "0x11",
        "creation_time": last_run - timedelta(hours=1), "last_execution_time": last_run,
        "execution_count": executions, "total_worker_time": worker_time or executions * 100,
        "total_elapsed_time": executions * 150, "total_logical_reads": executions * 20,
        "total_logical_writes": 0, "total_physical_reads": 1, "total_rows": executions,
        "total_spills": 0, "query_text": "SELECT 1",
    }


def procedure_record(name, executions, last_run=T0, cached=T0 - timedelta(hours=3)):
    return {
        "database_name": "Sales", "schema_name": "dbo", "object_name": name,
        "object_type": "SQL_STORED_PROCEDURE", "cached_time": cached, "last_execution_time": last_run,
        "execution_count": executions, "total_worker_time": executions * 10,
        "total_elapsed_time": executions * 12, "total_logical_reads": executions * 3,
        "total_physical_reads": 0, "total_logical_writes": executions,
    }


class ServerClockConnector(FakeConnector):
    """Applies the plan cache's last_execution_time >= :since filter like the server does."""

    def execute(self, source, query, params=None, timeout=None, cancel=None):
        result = super().execute(source, query, params, timeout, cancel)
        if query.name != "query_stats":
            return result
        return make_result([r for r in result.records() if r["last_execution_time"] >= params["since"]])


class TestServerClock:
    """Server local timestamps are compared and stored against UTC correctly."""

    def test_query_stats_window_uses_server_clock(self, store, deltas, cursors, source):
        connector = ServerClockConnector()
        # 06:58 on a UTC-5 server is 11:58 UTC, two minutes before the cycle
        connector.respond("query_stats", [query_stats_record(datetime(2026, 10, 19, 6, 58), executions=10)])
        collector = make(QueryStatsCollector, connector, store, deltas, cursors)

        result = collector.run(context_for(source, utc_offset_minutes=-300))

        assert result.rows_written == 1
        assert connector.params[-1]["since"] == datetime(2026, 10, 19, 6, 50)
        rows = store.query_records("SELECT creation_time, last_execution_time FROM query_stats")
        assert rows == [{
            "creation_time": datetime(2026, 10, 19, 10, 58),
            "last_execution_time": datetime(2026, 10, 19, 11, 58),
        }]

    def test_query_stats_utc_server_unchanged(self, connector, store, deltas, cursors, source):
        collector = make(QueryStatsCollector, connector, store, deltas, cursors,
                         settings=CollectorsConfig(top_queries=50))
        collector.run(context_for(source))
        assert connector.params[-1] == {"top_n": 50, "since": T0 - timedelta(minutes=10)}

    def test_procedure_times_converted_to_utc(self, connector, store, deltas, cursors, source):
        connector.respond("procedure_stats", [procedure_record(
            "usp_GetOrder", 5, last_run=datetime(2026, 10, 19, 13, 59), cached=datetime(2026, 10, 19, 9, 0)
        )])
        collector = make(ProcedureStatsCollector, connector, store, deltas, cursors)

        collector.run(context_for(source, utc_offset_minutes=120))

        rows = store.query_records("SELECT cached_time, last_execution_time FROM procedure_stats")
        assert rows == [{
            "cached_time": datetime(2026, 10, 19, 7, 0),
            "last_execution_time": datetime(2026, 10, 19, 11, 59),
        }]


class TestCounterFamilies:
    """Cumulative counters of each collector become per-interval deltas."""

    def test_query_stats_deltas_and_merge(self, connector, store, deltas, cursors, source):
        last_run = T0 - timedelta(minutes=1)
        connector.respond(
            "query_stats",
            [query_stats_record(last_run, 10), query_stats_record(last_run, 5)],
            [query_stats_record(last_run, 18), query_stats_record(last_run, 5),
             query_stats_record(last_run, 2, query_hash="0xB2")],
        )
        collector = make(QueryStatsCollector, connector, store, deltas, cursors)

        assert collector.run(context_for(source, T0)).rows_written == 1
        assert collector.run(context_for(source, T0 + timedelta(minutes=2))).rows_written == 2

        rows = store.query(
            "SELECT query_hash, execution_count, delta_execution_count, delta_worker_time FROM query_stats "
            "WHERE collection_time = ? ORDER BY query_hash",
            [T0 + timedelta(minutes=2)],
        )
        assert rows == [("0xA1", 23, 8, 800), ("0xB2", 2, 0, 0)]

    def test_memory_snapshot(self, connector, store, deltas, cursors, source):
        connector.respond("memory_stats", [{
            "total_physical_memory_mb": 65536.0, "available_physical_memory_mb": 8192.5,
            "total_page_file_mb": 70000.0, "available_page_file_mb": 9000.0,
            "system_memory_state": "Available physical memory is high", "sql_memory_model": "CONVENTIONAL",
            "target_server_memory_mb": 57344.0, "total_server_memory_mb": 57000.0,
            "buffer_pool_mb": 50000.0, "plan_cache_mb": None,
        }])
        collector = make(MemoryCollector, connector, store, deltas, cursors)

        assert collector.run(context_for(source)).rows_written == 1
        row = store.query_records("SELECT * FROM memory_stats")[0]
        assert row["available_physical_memory_mb"] == 8192.5
        assert row["plan_cache_mb"] is None
        assert row["sql_memory_model"] == "CONVENTIONAL"

    def test_memory_on_azure_uses_database_query(self, connector, store, deltas, cursors, source):
        make(MemoryCollector, connector, store, deltas, cursors).run(context_for(source, engine_edition=5))
        assert connector.executed == ["memory_stats_database"]

    def test_memory_grant_deltas_per_semaphore(self, connector, store, deltas, cursors, source):
        def grants(timeouts, forced):
            return [
                {"pool_id": 2, "resource_semaphore_id": 0, "granted_memory_mb": 512.0, "grantee_count": 3,
                 "waiter_count": 1, "timeout_error_count": timeouts, "forced_grant_count": forced},
                {"pool_id": 2, "resource_semaphore_id": 1, "granted_memory_mb": 0.0, "grantee_count": 0,
                 "waiter_count": 0, "timeout_error_count": 0, "forced_grant_count": 0},
            ]
        connector.respond("memory_grants", grants(3, 1), grants(5, 1))
        collector = make(MemoryGrantsCollector, connector, store, deltas, cursors)

        collector.run(context_for(source, T0))
        collector.run(context_for(source, T0 + timedelta(minutes=1)))

        rows = store.query(
            "SELECT resource_semaphore_id, delta_timeout_error_count, delta_forced_grant_count "
            "FROM memory_grant_stats ORDER BY collection_time, resource_semaphore_id"
        )
        assert rows == [(0, 0, 0), (1, 0, 0), (0, 2, 0), (1, 0, 0)]

    def test_procedure_stats_deltas(self, connector, store, deltas, cursors, source):
        unnamed = dict(procedure_record("gone", 1), object_name=None)
        connector.respond(
            "procedure_stats",
            [procedure_record("usp_GetOrder", 100), unnamed],
            [procedure_record("usp_GetOrder", 60), procedure_record("usp_GetOrder", 70), unnamed],
        )
        collector = make(ProcedureStatsCollector, connector, store, deltas, cursors)

        assert collector.run(context_for(source, T0)).rows_written == 1
        assert collector.run(context_for(source, T0 + timedelta(minutes=2))).rows_written == 1

        rows = store.query(
            "SELECT execution_count, delta_execution_count, delta_logical_writes "
            "FROM procedure_stats ORDER BY collection_time"
        )
        assert rows == [(100, 0, 0), (130, 30, 30)]

    def test_file_io_six_keyed_deltas(self, connector, store, deltas, cursors, source):
        def io(database_id, file_id, scale):
            return {
                "database_id": database_id, "file_id": file_id, "database_name": "Sales",
                "file_name": f"f{file_id}", "file_type": "ROWS", "physical_name": "D:\\data.mdf",
                "size_mb": 1024.0, "num_of_reads": 10 * scale, "num_of_writes": 20 * scale,
                "read_bytes": 4096 * scale, "write_bytes": 8192 * scale,
                "io_stall_read_ms": 3 * scale, "io_stall_write_ms": 7 * scale,
            }
        connector.respond(
            "file_io_stats",
            [io(5, 1, 1), io(5, 2, 10)],
            [io(5, 1, 4), io(5, 2, 2)],   # file 2 restarted from a lower count
        )
        collector = make(FileIoCollector, connector, store, deltas, cursors)

        collector.run(context_for(source, T0))
        collector.run(context_for(source, T0 + timedelta(minutes=1)))

        rows = store.query(
            "SELECT file_id, delta_reads, delta_writes, delta_read_bytes, delta_write_bytes, "
            "delta_stall_read_ms, delta_stall_write_ms FROM file_io_stats "
            "WHERE collection_time = ? ORDER BY file_id",
            [T0 + timedelta(minutes=1)],
        )
        assert rows == [
            (1, 30, 60, 12288, 24576, 9, 21),
            (2, 20, 40, 8192, 16384, 6, 14),
        ]
        assert deltas.baseline(source.id, "file_io_write_bytes", "5|1").raw_value == 4 * 8192


class TestBlockedProcess:
    """Blocked process reports from the ring buffer."""

    def test_parse_reports(self):
        reports = parse_blocked_process_reports(BLOCKED_PROCESS_XML)

        assert len(reports) == 1
        report = reports[0]
        assert report["event_time"] == datetime(2026, 10, 19, 11, 57, 10, 500000)
        assert report["database_name"] == "Sales"
        assert (report["blocked_spid"], report["blocking_spid"]) == (63, 58)
        assert report["wait_time_ms"] == 12000
        assert report["lock_mode"] == "U"
        assert report["blocked_transaction_count"] == 1
        assert report["blocked_sql_text"] == "UPDATE dbo.Orders SET Status = 3 WHERE Id = 7"
        assert report["blocking_isolation_level"] == "serializable (4)"
        assert report["blocking_login_name"] == "reporting"
        assert report["blocked_process_report_xml"].startswith("<blocked-process-report")

    @pytest.mark.parametrize("data", [None, "", "<RingBufferTarget", "<RingBufferTarget />"])
    def test_parse_nothing(self, data):
        assert parse_blocked_process_reports(data) == []

    def test_not_read_without_running_session(self, connector, store, deltas, cursors, source):
        sessions = BlockedProcessSessionManager(connector)
        collector = make(BlockedProcessCollector, connector, store, deltas, cursors, sessions=sessions)

        assert collector.run(context_for(source)).rows_written == 0
        assert "bpr_ring_buffer" not in connector.executed

    def test_collected_once(self, connector, store, deltas, cursors, source):
        connector.respond("bpr_probe", [{"session_exists": 1, "has_event": 1, "has_ring_buffer": 1,
                                         "target_count": 1, "is_running": 1}])
        connector.respond("bpr_ring_buffer", [{"target_data": BLOCKED_PROCESS_XML}])
        sessions = BlockedProcessSessionManager(connector)
        context = context_for(source)
        sessions.ensure(source, context.dialect)

        collector = make(BlockedProcessCollector, connector, store, deltas, cursors, sessions=sessions)
        assert collector.run(context).rows_written == 1
        assert collector.run(context_for(source, T0 + timedelta(minutes=1))).rows_written == 0
        assert store.query("SELECT blocked_spid, blocking_spid FROM blocked_process_reports") == [(63, 58)]


class TestSnapshots:
    """Point-in-time collectors: waiting tasks, tempdb and memory clerks."""

    def test_waiting_tasks(self, connector, store, deltas, cursors, source):
        connector.respond("waiting_tasks", [
            {"session_id": 63, "wait_type": "LCK_M_U", "wait_duration_ms": 12000,
             "blocking_session_id": 58, "database_name": "Sales"},
            {"session_id": 71, "wait_type": "PAGEIOLATCH_SH", "wait_duration_ms": 4,
             "blocking_session_id": 0, "database_name": "Sales"},
            {"session_id": 80, "wait_type": "SLEEP_TASK", "wait_duration_ms": 1000,
             "blocking_session_id": None, "database_name": None},
        ])
        settings = CollectorsConfig(ignored_wait_types=["SLEEP_TASK"])
        collector = make(WaitingTasksCollector, connector, store, deltas, cursors, settings=settings)

        assert collector.run(context_for(source)).rows_written == 2
        rows = store.query("SELECT session_id, blocking_session_id FROM waiting_tasks ORDER BY session_id")
        assert rows == [(63, 58), (71, None)]

    def test_tempdb(self, connector, store, deltas, cursors, source):
        connector.respond("tempdb_stats", [{
            "user_object_reserved_mb": 12.5, "internal_object_reserved_mb": 40.0,
            "version_store_reserved_mb": 2.0, "total_reserved_mb": 54.5, "unallocated_mb": 8000.0,
            "total_sessions": 14, "top_session_id": 63, "top_session_tempdb_mb": 38.0,
        }])
        collector = make(TempDbCollector, connector, store, deltas, cursors)

        assert collector.run(context_for(source)).rows_written == 1
        assert store.query("SELECT total_reserved_mb, total_sessions, top_session_id FROM tempdb_stats") == [
            (54.5, 14, 63)
        ]

    def test_tempdb_skipped_on_azure(self, connector, store, deltas, cursors, source):
        result = make(TempDbCollector, connector, store, deltas, cursors).run(context_for(source, engine_edition=5))
        assert result.status == CollectionStatus.SKIPPED
        assert connector.executed == []

    def test_memory_clerks(self, connector, store, deltas, cursors, source):
        connector.respond("memory_clerks", [
            {"clerk_type": "MEMORYCLERK_SQLBUFFERPOOL", "memory_mb": 50000.0},
            {"clerk_type": "CACHESTORE_SQLCP", "memory_mb": 1200.25},
        ])
        collector = make(MemoryClerksCollector, connector, store, deltas, cursors)

        assert collector.run(context_for(source)).rows_written == 2
        assert connector.params[-1] == {"top_n": 25, "min_kb": 1024}
        assert store.scalar("SELECT memory_mb FROM memory_clerks WHERE clerk_type = 'CACHESTORE_SQLCP'") == 1200.25
