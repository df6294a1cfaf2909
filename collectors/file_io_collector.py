"""Per-file I/O counters from sys.dm_io_virtual_file_stats."""

from typing import Any, Dict, List
from collectors.base_data_collector import BaseMetricCollector, CollectionContext, as_float, as_int
from collectors.delta_store import DeltaSeed, make_key
from sharedUtils.sources.connector import SqlQuery

FILE_IO_QUERY = SqlQuery(
    name="file_io_stats",
    text="""
SELECT
    database_id = vfs.database_id,
    file_id = vfs.file_id,
    database_name = DB_NAME(vfs.database_id),
    file_name = mf.name,
    file_type = mf.type_desc,
    physical_name = mf.physical_name,
    size_mb = vfs.size_on_disk_bytes / 1048576.0,
    num_of_reads = vfs.num_of_reads,
    num_of_writes = vfs.num_of_writes,
    read_bytes = vfs.num_of_bytes_read,
    write_bytes = vfs.num_of_bytes_written,
    io_stall_read_ms = vfs.io_stall_read_ms,
    io_stall_write_ms = vfs.io_stall_write_ms
FROM sys.dm_io_virtual_file_stats(NULL, NULL) AS vfs
LEFT JOIN sys.master_files AS mf
    ON mf.database_id = vfs.database_id
    AND mf.file_id = vfs.file_id
""",
)

DATABASE_FILE_IO_QUERY = SqlQuery(
    name="file_io_stats_database",
    text="""
SELECT
    database_id = vfs.database_id,
    file_id = vfs.file_id,
    database_name = DB_NAME(),
    file_name = df.name,
    file_type = df.type_desc,
    physical_name = df.physical_name,
    size_mb = vfs.size_on_disk_bytes / 1048576.0,
    num_of_reads = vfs.num_of_reads,
    num_of_writes = vfs.num_of_writes,
    read_bytes = vfs.num_of_bytes_read,
    write_bytes = vfs.num_of_bytes_written,
    io_stall_read_ms = vfs.io_stall_read_ms,
    io_stall_write_ms = vfs.io_stall_write_ms
FROM sys.dm_io_virtual_file_stats(DB_ID(), NULL) AS vfs
LEFT JOIN sys.database_files AS df ON df.file_id = vfs.file_id
""",
)

# raw column -> (metric name, delta column)
COUNTERS = {
    "num_of_reads":         ("file_io_reads",           "delta_reads"),
    "num_of_writes":        ("file_io_writes",          "delta_writes"),
    "read_bytes":           ("file_io_read_bytes",      "delta_read_bytes"),
    "write_bytes":          ("file_io_write_bytes",     "delta_write_bytes"),
    "io_stall_read_ms":     ("file_io_stall_read_ms",   "delta_stall_read_ms"),
    "io_stall_write_ms":    ("file_io_stall_write_ms",  "delta_stall_write_ms"),
}


class FileIoCollector(BaseMetricCollector):
    """File I/O deltas keyed by (database_id, file_id)."""

    NAME = "file_io"
    TABLE = "file_io_stats"
    DELTA_SEEDS = [
        DeltaSeed(metric, "file_io_stats", ("database_id", "file_id"), raw)
        for raw, (metric, _) in COUNTERS.items()
    ]

    def fetch(self, context: CollectionContext) -> List[Dict[str, Any]]:
        query = context.dialect.pick(FILE_IO_QUERY, DATABASE_FILE_IO_QUERY)
        rows = []

        for record in self.query(context, query).records():
            key = make_key(record["database_id"], record["file_id"])
            row = self.base_row(context)
            row.update({
                "database_id": record["database_id"],
                "file_id": record["file_id"],
                "database_name": record.get("database_name"),
                "file_name": record.get("file_name"),
                "file_type": record.get("file_type"),
                "physical_name": record.get("physical_name"),
                "size_mb": as_float(record.get("size_mb")),
            })
            for raw_column, (metric, delta_column) in COUNTERS.items():
                raw = as_int(record.get(raw_column))
                row[raw_column] = raw
                row[delta_column] = self.delta(context, metric, key, raw)
            rows.append(row)

        return rows
