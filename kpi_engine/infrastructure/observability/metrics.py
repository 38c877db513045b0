"""Prometheus metrics."""

from prometheus_client import Counter, Histogram

queries_total = Counter(
    "kpi_queries_total",
    "Total number of KPI queries by outcome",
    ["status"],
)

query_duration_seconds = Histogram(
    "kpi_query_duration_seconds",
    "Duration of KPI queries in seconds",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

cache_hits = Counter(
    "kpi_cache_hits_total",
    "Cache hits per tier",
    ["tier"],
)

cache_misses = Counter(
    "kpi_cache_misses_total",
    "Cache misses per tier",
    ["tier"],
)

cache_errors = Counter(
    "kpi_cache_errors_total",
    "Cache backend errors per tier",
    ["tier"],
)

partition_downloads = Counter(
    "kpi_partition_downloads_total",
    "Partition downloads from the object store by outcome",
    ["outcome"],
)

execution_strategy = Counter(
    "kpi_execution_strategy_total",
    "Executed statements per strategy",
    ["strategy"],
)

cache_invalidations = Counter(
    "kpi_cache_invalidations_total",
    "Cache invalidation events by origin",
    ["origin"],
)

partition_download_mb = Histogram(
    "kpi_partition_download_mb",
    "Size of downloaded partitions in MB",
    buckets=[0.1, 1, 10, 100, 1000],
)
