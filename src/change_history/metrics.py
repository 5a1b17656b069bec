from prometheus_client import Counter

RECORDS_CAPTURED = Counter(
    "history_records_captured_total",
    "History records appended",
    ["action", "level"],
)
UPDATES_SUPPRESSED = Counter(
    "history_updates_suppressed_total",
    "Row updates not recorded because only ignored columns changed",
)
CAPTURE_FAILURES = Counter(
    "history_capture_failures_total",
    "Captures that failed and aborted the audited mutation",
    ["reason"],
)
PARTITIONS_CREATED = Counter("history_partitions_created_total", "Month partitions created")
INDEXES_CREATED = Counter("history_indexes_created_total", "Partition indexes created")
MAINTENANCE_RUNS = Counter("history_maintenance_runs_total", "Maintenance runs", ["operation"])
