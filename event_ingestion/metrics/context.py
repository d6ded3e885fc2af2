from dataclasses import dataclass
from typing import Any

from . import definitions as m


@dataclass(frozen=True)
class MetricsContext:
    chain: str
    job: str

    # -------- Lag --------
    checkpoint_lag: Any
    chain_latest_block: Any
    checkpoint_block: Any
    indexer_mode: Any
    critical_lag: Any
    index_throughput: Any

    # -------- Throughput --------
    windows_committed: Any
    commit_interval: Any
    window_latency: Any

    # label 动态的保留原 metric
    events_persisted: Any
    events_dropped: Any
    window_failures: Any
    range_shrinks: Any

    # -------- RPC --------
    rpc_requests: Any
    rpc_errors: Any
    rpc_circuit_state: Any
    rpc_latency: Any

    @classmethod
    def for_job(cls, chain: str, job: str) -> "MetricsContext":
        base = dict(chain=chain, job=job)

        return cls(
            chain=chain,
            job=job,

            # Lag
            checkpoint_lag=m.CHECKPOINT_LAG.labels(**base),
            chain_latest_block=m.CHAIN_LATEST_BLOCK.labels(**base),
            checkpoint_block=m.CHECKPOINT_BLOCK.labels(**base),
            indexer_mode=m.INDEXER_MODE.labels(**base),
            critical_lag=m.CRITICAL_LAG.labels(**base),
            index_throughput=m.INDEX_THROUGHPUT.labels(**base),

            # Throughput
            windows_committed=m.WINDOWS_COMMITTED.labels(**base),
            commit_interval=m.COMMIT_INTERVAL.labels(**base),
            window_latency=m.WINDOW_LATENCY.labels(**base),

            events_persisted=m.EVENTS_PERSISTED,
            events_dropped=m.EVENTS_DROPPED,
            window_failures=m.WINDOW_FAILURES,
            range_shrinks=m.RANGE_SHRINKS,

            # RPC
            rpc_requests=m.RPC_REQUESTS,
            rpc_errors=m.RPC_ERRORS,
            rpc_circuit_state=m.RPC_CIRCUIT_STATE,
            rpc_latency=m.RPC_LATENCY,
        )

    # ===== lag helpers =====
    def observe_lag(self, chain_head: int, last_indexed_block: int):
        self.chain_latest_block.set(chain_head)
        self.checkpoint_block.set(last_indexed_block)
        self.checkpoint_lag.set(max(0, chain_head - last_indexed_block))

    def mode_set(self, emergency: bool):
        self.indexer_mode.set(1 if emergency else 0)

    def critical_set(self, active: bool):
        self.critical_lag.set(1 if active else 0)

    # ===== ingestion helpers =====
    def events_persisted_inc(self, event_kind: str, n: int = 1):
        self.events_persisted.labels(
            chain=self.chain,
            job=self.job,
            event_kind=event_kind,
        ).inc(n)

    def events_dropped_inc(self, reason: str, n: int = 1):
        if n:
            self.events_dropped.labels(
                chain=self.chain,
                job=self.job,
                reason=reason,
            ).inc(n)

    def window_failed_inc(self, reason: str):
        self.window_failures.labels(
            chain=self.chain,
            job=self.job,
            reason=reason,
        ).inc()

    def range_shrink_inc(self, event_kind: str):
        self.range_shrinks.labels(
            chain=self.chain,
            job=self.job,
            event_kind=event_kind,
        ).inc()

    # ===== RPC helpers =====
    def rpc_request_inc(self, rpc: str, method: str):
        self.rpc_requests.labels(
            chain=self.chain,
            job=self.job,
            rpc=rpc,
            method=method,
        ).inc()

    def rpc_error_inc(self, rpc: str, error_type: str):
        self.rpc_errors.labels(
            chain=self.chain,
            job=self.job,
            rpc=rpc,
            error_type=error_type,
        ).inc()

    def rpc_latency_observe(self, rpc: str, value_ms: float):
        self.rpc_latency.labels(
            chain=self.chain,
            job=self.job,
            rpc=rpc,
        ).observe(value_ms)

    def rpc_circuit_set(self, rpc: str, value: int):
        self.rpc_circuit_state.labels(
            chain=self.chain,
            job=self.job,
            rpc=rpc,
        ).set(value)
