from prometheus_client import Counter, Gauge, Histogram

# -----------------------------
# Lag metrics
# -----------------------------
CHECKPOINT_LAG = Gauge(
    "ingestion_checkpoint_lag",
    "Block lag between chain head and ingestion checkpoint",
    ["chain", "job"],
)
CHAIN_LATEST_BLOCK = Gauge(
    "chain_latest_block",
    "Latest block number on chain",
    ["chain", "job"],
)
CHECKPOINT_BLOCK = Gauge(
    "ingestion_checkpoint",
    "Last committed block by ingestion job",
    ["chain", "job"],
)
INDEXER_MODE = Gauge(
    "ingestion_emergency_mode",
    "1 while the lag monitor holds the indexer in EMERGENCY mode",
    ["chain", "job"],
)
CRITICAL_LAG = Gauge(
    "ingestion_critical_lag_alert",
    "1 while lag is at or above the critical threshold",
    ["chain", "job"],
)
INDEX_THROUGHPUT = Gauge(
    "ingestion_blocks_per_second",
    "Smoothed checkpoint advance rate over the lag sample window",
    ["chain", "job"],
)

# -----------------------------
# Throughput
# -----------------------------
EVENTS_PERSISTED = Counter(
    "ingestion_events_persisted_total",
    "Events written to the store (duplicates excluded)",
    ["chain", "job", "event_kind"],
)
EVENTS_DROPPED = Counter(
    "ingestion_events_dropped_total",
    "Logs dropped before persistence",
    ["chain", "job", "reason"],
)
WINDOWS_COMMITTED = Counter(
    "ingestion_windows_committed_total",
    "Scan windows committed together with their checkpoint",
    ["chain", "job"],
)
WINDOW_FAILURES = Counter(
    "ingestion_window_failures_total",
    "Scan windows abandoned before commit",
    ["chain", "job", "reason"],
)
RANGE_SHRINKS = Counter(
    "ingestion_range_shrinks_total",
    "getLogs ranges halved after a range-too-large rejection",
    ["chain", "job", "event_kind"],
)

COMMIT_INTERVAL = Histogram(
    "commit_interval_sec",
    "Time between successful commits",
    ["chain", "job"],
    buckets=(0.5, 1, 2, 3, 5, 8, 13, 21, 34, 55),
)

WINDOW_LATENCY = Histogram(
    "ingestion_window_seconds",
    "Wall time to scan and commit one window",
    ["chain", "job"],
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 20, 60),
)

# -----------------------------
# RPC
# -----------------------------
RPC_REQUESTS = Counter(
    "rpc_requests_total",
    "RPC requests by endpoint",
    ["chain", "job", "rpc", "method"],
)
RPC_ERRORS = Counter(
    "rpc_errors_total",
    "RPC errors by endpoint",
    ["chain", "job", "rpc", "error_type"],
)
RPC_CIRCUIT_STATE = Gauge(
    "rpc_circuit_state",
    "Circuit state per endpoint (0=closed, 1=half_open, 2=open)",
    ["chain", "job", "rpc"],
)

# Histogram（低基数）
RPC_LATENCY = Histogram(
    "rpc_latency_ms",
    "RPC call latency",
    ["chain", "job", "rpc"],
    buckets=(50, 100, 200, 500, 1000, 2000, 5000, 10000, 20000),
)
