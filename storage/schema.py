"""
Hot store table definitions.

Every metric table starts with collection_time, server_id and server_name.
Raw cumulative counters sit next to their delta_* columns. All timestamps
are naive UTC.
"""

from typing import Dict, List, Optional, Tuple

Column = Tuple[str, str]

COMMON_COLUMNS: List[Column] = [
    ("collection_time",  "TIMESTAMP NOT NULL"),
    ("server_id",        "INTEGER NOT NULL"),
    ("server_name",      "VARCHAR NOT NULL"),
]

TABLES: Dict[str, List[Column]] = {
    "cpu_utilization_stats": [
        ("sample_time",                     "TIMESTAMP NOT NULL"),
        ("sqlserver_cpu_utilization",       "INTEGER"),
        ("other_process_cpu_utilization",   "INTEGER"),
    ],
    "memory_stats": [
        ("total_physical_memory_mb",        "DOUBLE"),
        ("available_physical_memory_mb",    "DOUBLE"),
        ("total_page_file_mb",              "DOUBLE"),
        ("available_page_file_mb",          "DOUBLE"),
        ("system_memory_state",             "VARCHAR"),
        ("sql_memory_model",                "VARCHAR"),
        ("target_server_memory_mb",         "DOUBLE"),
        ("total_server_memory_mb",          "DOUBLE"),
        ("buffer_pool_mb",                  "DOUBLE"),
        ("plan_cache_mb",                   "DOUBLE"),
    ],
    "file_io_stats": [
        ("database_id",             "INTEGER NOT NULL"),
        ("file_id",                 "INTEGER NOT NULL"),
        ("database_name",           "VARCHAR"),
        ("file_name",               "VARCHAR"),
        ("file_type",               "VARCHAR"),
        ("physical_name",           "VARCHAR"),
        ("size_mb",                 "DOUBLE"),
        ("num_of_reads",            "BIGINT"),
        ("num_of_writes",           "BIGINT"),
        ("read_bytes",              "BIGINT"),
        ("write_bytes",             "BIGINT"),
        ("io_stall_read_ms",        "BIGINT"),
        ("io_stall_write_ms",       "BIGINT"),
        ("delta_reads",             "BIGINT"),
        ("delta_writes",            "BIGINT"),
        ("delta_read_bytes",        "BIGINT"),
        ("delta_write_bytes",       "BIGINT"),
        ("delta_stall_read_ms",     "BIGINT"),
        ("delta_stall_write_ms",    "BIGINT"),
    ],
    "wait_stats": [
        ("wait_type",                   "VARCHAR NOT NULL"),
        ("waiting_tasks_count",         "BIGINT"),
        ("wait_time_ms",                "BIGINT"),
        ("signal_wait_time_ms",         "BIGINT"),
        ("delta_waiting_tasks",         "BIGINT"),
        ("delta_wait_time_ms",          "BIGINT"),
        ("delta_signal_wait_time_ms",   "BIGINT"),
    ],
    "query_stats": [
        ("database_name",           "VARCHAR"),
        ("query_hash",              "VARCHAR NOT NULL"),
        ("query_plan_hash",         "VARCHAR NOT NULL"),
        ("creation_time",           "TIMESTAMP"),
        ("last_execution_time",     "TIMESTAMP"),
        ("execution_count",         "BIGINT"),
        ("total_worker_time",       "BIGINT"),
        ("total_elapsed_time",      "BIGINT"),
        ("total_logical_reads",     "BIGINT"),
        ("total_logical_writes",    "BIGINT"),
        ("total_physical_reads",    "BIGINT"),
        ("total_rows",              "BIGINT"),
        ("total_spills",            "BIGINT"),
        ("query_text",              "VARCHAR"),
        ("delta_execution_count",   "BIGINT"),
        ("delta_worker_time",       "BIGINT"),
        ("delta_elapsed_time",      "BIGINT"),
        ("delta_logical_reads",     "BIGINT"),
        ("delta_logical_writes",    "BIGINT"),
        ("delta_physical_reads",    "BIGINT"),
        ("delta_rows",              "BIGINT"),
        ("delta_spills",            "BIGINT"),
    ],
    "procedure_stats": [
        ("database_name",           "VARCHAR NOT NULL"),
        ("schema_name",             "VARCHAR NOT NULL"),
        ("object_name",             "VARCHAR NOT NULL"),
        ("object_type",             "VARCHAR"),
        ("cached_time",             "TIMESTAMP"),
        ("last_execution_time",     "TIMESTAMP"),
        ("execution_count",         "BIGINT"),
        ("total_worker_time",       "BIGINT"),
        ("total_elapsed_time",      "BIGINT"),
        ("total_logical_reads",     "BIGINT"),
        ("total_physical_reads",    "BIGINT"),
        ("total_logical_writes",    "BIGINT"),
        ("delta_execution_count",   "BIGINT"),
        ("delta_worker_time",       "BIGINT"),
        ("delta_elapsed_time",      "BIGINT"),
        ("delta_logical_reads",     "BIGINT"),
        ("delta_physical_reads",    "BIGINT"),
        ("delta_logical_writes",    "BIGINT"),
    ],
    "perfmon_stats": [
        ("object_name",             "VARCHAR NOT NULL"),
        ("counter_name",            "VARCHAR NOT NULL"),
        ("instance_name",           "VARCHAR NOT NULL"),
        ("cntr_value",              "BIGINT"),
        ("delta_cntr_value",        "BIGINT"),
        ("sample_interval_seconds", "DOUBLE"),
    ],
    "deadlocks": [
        ("deadlock_time",       "TIMESTAMP NOT NULL"),
        ("victim_process_id",   "VARCHAR"),
        ("victim_sql_text",     "VARCHAR"),
        ("deadlock_graph_xml",  "VARCHAR"),
    ],
    "running_jobs": [
        ("job_name",                    "VARCHAR NOT NULL"),
        ("job_id",                      "VARCHAR NOT NULL"),
        ("job_enabled",                 "BOOLEAN"),
        ("start_time",                  "TIMESTAMP"),
        ("current_duration_seconds",    "BIGINT"),
        ("avg_duration_seconds",        "BIGINT"),
        ("p95_duration_seconds",        "BIGINT"),
        ("successful_run_count",        "BIGINT"),
        ("is_running_long",             "BOOLEAN"),
        ("percent_of_average",          "DOUBLE"),
    ],
    "memory_grant_stats": [
        ("pool_id",                     "INTEGER NOT NULL"),
        ("resource_semaphore_id",       "INTEGER NOT NULL"),
        ("target_memory_mb",            "DOUBLE"),
        ("total_memory_mb",             "DOUBLE"),
        ("available_memory_mb",         "DOUBLE"),
        ("granted_memory_mb",           "DOUBLE"),
        ("used_memory_mb",              "DOUBLE"),
        ("grantee_count",               "INTEGER"),
        ("waiter_count",                "INTEGER"),
        ("timeout_error_count",         "BIGINT"),
        ("forced_grant_count",          "BIGINT"),
        ("delta_timeout_error_count",   "BIGINT"),
        ("delta_forced_grant_count",    "BIGINT"),
    ],
    "blocked_process_reports": [
        ("event_time",                  "TIMESTAMP NOT NULL"),
        ("database_name",               "VARCHAR"),
        ("blocked_spid",                "INTEGER"),
        ("blocked_ecid",                "INTEGER"),
        ("blocking_spid",               "INTEGER"),
        ("blocking_ecid",               "INTEGER"),
        ("wait_time_ms",                "BIGINT"),
        ("wait_resource",               "VARCHAR"),
        ("lock_mode",                   "VARCHAR"),
        ("blocked_status",              "VARCHAR"),
        ("blocked_isolation_level",     "VARCHAR"),
        ("blocked_log_used",            "BIGINT"),
        ("blocked_transaction_count",   "INTEGER"),
        ("blocked_client_app",          "VARCHAR"),
        ("blocked_host_name",           "VARCHAR"),
        ("blocked_login_name",          "VARCHAR"),
        ("blocked_sql_text",            "VARCHAR"),
        ("blocking_status",             "VARCHAR"),
        ("blocking_isolation_level",    "VARCHAR"),
        ("blocking_client_app",         "VARCHAR"),
        ("blocking_host_name",          "VARCHAR"),
        ("blocking_login_name",         "VARCHAR"),
        ("blocking_sql_text",           "VARCHAR"),
        ("blocked_process_report_xml",  "VARCHAR"),
    ],
    "waiting_tasks": [
        ("session_id",          "INTEGER NOT NULL"),
        ("wait_type",           "VARCHAR"),
        ("wait_duration_ms",    "BIGINT"),
        ("blocking_session_id", "INTEGER"),
        ("database_name",       "VARCHAR"),
    ],
    "tempdb_stats": [
        ("user_object_reserved_mb",     "DOUBLE"),
        ("internal_object_reserved_mb", "DOUBLE"),
        ("version_store_reserved_mb",   "DOUBLE"),
        ("total_reserved_mb",           "DOUBLE"),
        ("unallocated_mb",              "DOUBLE"),
        ("total_sessions",              "INTEGER"),
        ("top_session_id",              "INTEGER"),
        ("top_session_tempdb_mb",       "DOUBLE"),
    ],
    "memory_clerks": [
        ("clerk_type",  "VARCHAR NOT NULL"),
        ("memory_mb",   "DOUBLE"),
    ],
    "collection_log": [
        ("collector_name",      "VARCHAR NOT NULL"),
        ("status",              "VARCHAR NOT NULL"),
        ("rows_collected",      "INTEGER"),
        ("duration_ms",         "INTEGER"),
        ("sql_duration_ms",     "INTEGER"),
        ("store_duration_ms",   "INTEGER"),
        ("error_message",       "VARCHAR"),
    ],
}

# Every metric table ages out to Parquet on collection_time
ARCHIVABLE_TABLES: List[str] = list(TABLES)

TIME_COLUMN = "collection_time"


def columns(table: str) -> List[str]:
    """Ordered column names of a table."""
    if table not in TABLES:
        raise KeyError(f"Unknown hot store table: {table}")
    return [name for name, _ in COMMON_COLUMNS + TABLES[table]]


def create_table_sql(table: str, catalog: Optional[str] = None) -> str:
    qualified = f"{catalog}.{table}" if catalog else table
    body = ",\n    ".join(f"{name} {sql_type}" for name, sql_type in COMMON_COLUMNS + TABLES[table])
    return f"CREATE TABLE IF NOT EXISTS {qualified} (\n    {body}\n)"


def create_statements(catalog: Optional[str] = None) -> List[str]:
    """DDL for every table, optionally inside an attached catalog."""
    return [create_table_sql(table, catalog) for table in TABLES]
