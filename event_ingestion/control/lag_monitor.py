import time
import asyncio
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from event_ingestion.control.runtime_settings import RuntimeSettings
from event_ingestion.logging import log
from event_ingestion.metrics import MetricsContext
from event_ingestion.state import CheckpointStore
from event_ingestion.tracking import LatestBlockTracker


class IndexerMode(str, Enum):
    NORMAL = "NORMAL"
    EMERGENCY = "EMERGENCY"


@dataclass(frozen=True)
class LagSample:
    observed_at: float
    chain_head: int
    last_indexed_block: int
    lag_blocks: int


class LagMonitor:
    """
    Samples chain head vs. checkpoint on its own timer and flips the
    indexer between NORMAL and EMERGENCY.

    NORMAL -> EMERGENCY at lag >= emergency_threshold: batch size is
    multiplied (capped) and the poll interval divided.
    EMERGENCY -> NORMAL only once lag < recovery_threshold.
    lag >= critical_threshold raises a standing alert and changes nothing.
    """

    def __init__(
        self,
        tracker: LatestBlockTracker,
        store: CheckpointStore,
        settings: RuntimeSettings,
        *,
        metrics: MetricsContext,
        emergency_threshold: int = 50,
        recovery_threshold: int = 25,
        critical_threshold: int = 100,
        batch_multiplier: int = 3,
        max_batch_size: int = 500,
        poll_divider: float = 4.0,
        interval: float = 2.0,
        window: int = 30,
        clock: Callable[[], float] = time.time,
    ):
        if recovery_threshold >= emergency_threshold:
            raise ValueError(
                f"recovery_threshold {recovery_threshold} must be below "
                f"emergency_threshold {emergency_threshold}"
            )
        if critical_threshold < emergency_threshold:
            raise ValueError(
                f"critical_threshold {critical_threshold} must not be below "
                f"emergency_threshold {emergency_threshold}"
            )

        self.tracker = tracker
        self.store = store
        self.settings = settings
        self.metrics = metrics

        self.emergency_threshold = emergency_threshold
        self.recovery_threshold = recovery_threshold
        self.critical_threshold = critical_threshold
        self.batch_multiplier = batch_multiplier
        self.max_batch_size = max_batch_size
        self.poll_divider = poll_divider
        self.interval = interval
        self._clock = clock

        self.mode = IndexerMode.NORMAL
        self.critical = False
        self.emergency_activations = 0
        self.samples: deque[LagSample] = deque(maxlen=max(2, window))

        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    # --------------------------------------------------
    def evaluate(self, chain_head: int, last_indexed_block: int) -> LagSample:
        lag = max(0, chain_head - last_indexed_block)
        sample = LagSample(
            observed_at=self._clock(),
            chain_head=chain_head,
            last_indexed_block=last_indexed_block,
            lag_blocks=lag,
        )
        self.samples.append(sample)
        self.metrics.observe_lag(chain_head, last_indexed_block)

        if self.mode == IndexerMode.NORMAL and lag >= self.emergency_threshold:
            self._activate_emergency(lag)
        elif self.mode == IndexerMode.EMERGENCY and lag < self.recovery_threshold:
            self._deactivate_emergency(lag)

        if lag >= self.critical_threshold and not self.critical:
            self.critical = True
            self.metrics.critical_set(True)
            log.error(
                "🚨 critical_lag_alert",
                extra={
                    "lag_blocks": lag,
                    "critical_threshold": self.critical_threshold,
                    "chain_head": chain_head,
                    "last_indexed_block": last_indexed_block,
                    "hint": "automatic recovery is not keeping up; operator action required",
                },
            )
        elif lag < self.critical_threshold and self.critical:
            self.critical = False
            self.metrics.critical_set(False)
            log.info("critical_lag_cleared", extra={"lag_blocks": lag})

        bps = self.throughput_bps()
        if bps is not None:
            self.metrics.index_throughput.set(bps)
        return sample

    def _activate_emergency(self, lag: int):
        self.mode = IndexerMode.EMERGENCY
        self.emergency_activations += 1
        self.settings.enter_emergency(
            self.batch_multiplier, self.max_batch_size, self.poll_divider
        )
        self.metrics.mode_set(True)
        log.warning(
            "🚨 emergency_mode_activated",
            extra={
                "lag_blocks": lag,
                "batch_size": self.settings.batch_size,
                "poll_interval": self.settings.poll_interval,
                "activations": self.emergency_activations,
            },
        )

    def _deactivate_emergency(self, lag: int):
        self.mode = IndexerMode.NORMAL
        self.settings.exit_emergency()
        self.metrics.mode_set(False)
        log.info(
            "✅ emergency_mode_deactivated",
            extra={
                "lag_blocks": lag,
                "batch_size": self.settings.batch_size,
                "poll_interval": self.settings.poll_interval,
            },
        )

    def throughput_bps(self) -> float | None:
        """Checkpoint advance rate across the sample window."""
        if len(self.samples) < 2:
            return None
        first, last = self.samples[0], self.samples[-1]
        elapsed = last.observed_at - first.observed_at
        if elapsed <= 0:
            return None
        return (last.last_indexed_block - first.last_indexed_block) / elapsed

    # --------------------------------------------------
    async def tick(self) -> LagSample | None:
        chain_head = await self.tracker.refresh()
        checkpoint = await asyncio.to_thread(self.store.load)
        if checkpoint is None:
            return None
        return self.evaluate(chain_head, checkpoint.last_indexed_block)

    async def _loop(self):
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception as e:
                log.warning(
                    "⚠️ lag_monitor_tick_failed",
                    extra={"error_type": type(e).__name__, "error": str(e)[:200]},
                )
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def start(self):
        if not self._task:
            self._stop.clear()
            self._task = asyncio.create_task(self._loop())

    async def stop(self):
        self._stop.set()
        if self._task:
            await self._task
            self._task = None

    def status(self) -> dict:
        last = self.samples[-1] if self.samples else None
        return {
            "mode": self.mode.value,
            "critical": self.critical,
            "lag_blocks": last.lag_blocks if last else None,
            "throughput_bps": self.throughput_bps(),
            "emergency_activations": self.emergency_activations,
        }
