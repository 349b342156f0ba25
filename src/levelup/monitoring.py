"""Prometheus metrics for the storage and learning core."""
from prometheus_client import Counter, Gauge, Histogram, start_http_server

# Cache metrics
cache_hits = Counter(
    "levelup_cache_hits_total",
    "Total number of cache hits",
)

cache_misses = Counter(
    "levelup_cache_misses_total",
    "Total number of cache misses",
)

cache_evictions = Counter(
    "levelup_cache_evictions_total",
    "Total number of cache entries removed",
    ["reason"],
)

cache_size_bytes = Gauge(
    "levelup_cache_size_bytes",
    "Estimated size of the in-memory cache in bytes",
)

# Storage metrics
storage_operations = Counter(
    "levelup_storage_operations_total",
    "Total number of storage operations",
    ["operation", "tier", "outcome"],
)

storage_operation_duration = Histogram(
    "levelup_storage_operation_duration_seconds",
    "Duration of storage facade operations in seconds",
    ["operation"],
    buckets=[0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)

remote_retries = Counter(
    "levelup_remote_retries_total",
    "Total number of retried remote storage calls",
    ["action"],
)

compression_bytes_saved = Counter(
    "levelup_compression_bytes_saved_total",
    "Total number of bytes saved by payload compression",
    ["algorithm"],
)

# Auto-save metrics
auto_save_flushes = Counter(
    "levelup_auto_save_flushes_total",
    "Total number of auto-save flushes",
    ["trigger"],
)

pending_changes = Gauge(
    "levelup_pending_changes",
    "Number of changes waiting in the auto-save queue",
)

requeued_changes = Counter(
    "levelup_requeued_changes_total",
    "Total number of changes re-queued after a failed flush",
    ["change_type"],
)

# Learning metrics
sessions_created = Counter(
    "levelup_learning_sessions_total",
    "Total number of learning sessions assembled",
    ["session_type"],
)

# Error metrics
error_count = Counter(
    "levelup_errors_total",
    "Total number of errors encountered",
    ["error_type"],
)


def start_monitoring(port: int = 9090) -> None:
    """Start the Prometheus metrics server."""
    start_http_server(port)
