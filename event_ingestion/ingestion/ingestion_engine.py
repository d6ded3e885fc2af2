import time
import signal
import asyncio
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from event_ingestion.control import LagMonitor, RuntimeSettings
from event_ingestion.ingestion.persister import EventPersister, PersistenceError
from event_ingestion.ingestion.scanner import EventScanner, WindowScan
from event_ingestion.logging import log
from event_ingestion.metrics import MetricsContext
from event_ingestion.planning import (
    BlockRange,
    BoundedRangePlanner,
    CatchUpPlan,
    CatchUpSelector,
    CatchUpStrategy,
    next_window,
)
from event_ingestion.rpc_provider import NoHealthyEndpointError, RpcError
from event_ingestion.state import CheckpointError, CheckpointStore
from event_ingestion.tracking import LatestBlockTracker


class IngestionEngine:
    """
    Single-writer main loop.

    Window N+1 is planned from the committed checkpoint only after window
    N's events and checkpoint advance have committed in one transaction;
    a failed window is re-scanned from the same checkpoint.
    """

    def __init__(
        self,
        *,
        rpc,
        scanner: EventScanner,
        persister: EventPersister,
        store: CheckpointStore,
        settings: RuntimeSettings,
        tracker: LatestBlockTracker,
        selector: CatchUpSelector,
        metrics: MetricsContext,
        lag_monitor: Optional[LagMonitor] = None,
        confirmation_blocks: int = 0,
        error_backoff: float = 5.0,
        max_error_backoff: float = 30.0,
        no_endpoint_backoff: float = 10.0,
    ):
        self.rpc = rpc
        self.scanner = scanner
        self.persister = persister
        self.store = store
        self.settings = settings
        self.tracker = tracker
        self.selector = selector
        self.metrics = metrics
        self.lag_monitor = lag_monitor

        self.confirmation_blocks = confirmation_blocks
        self.error_backoff = error_backoff
        self.max_error_backoff = max(error_backoff, max_error_backoff)
        self.no_endpoint_backoff = no_endpoint_backoff

        self._stop = asyncio.Event()
        self._last_commit_at: float | None = None
        self._consecutive_failures = 0

    # --------------------------------------------------
    def safe_head(self, chain_head: int) -> int:
        return max(0, chain_head - self.confirmation_blocks)

    def error_delay(self) -> float:
        """Doubles with each consecutive window failure, capped."""
        if self._consecutive_failures <= 0:
            return 0.0
        delay = self.error_backoff * (2 ** (self._consecutive_failures - 1))
        return min(delay, self.max_error_backoff)

    async def prepare(self) -> CatchUpPlan:
        """Pick the restart strategy once and move the cursor accordingly."""
        chain_head = await self.tracker.refresh()
        checkpoint = await asyncio.to_thread(self.store.load)

        plan = self.selector.select(chain_head, checkpoint)
        await asyncio.to_thread(self.selector.apply, plan)

        if plan.strategy == CatchUpStrategy.FAST_CATCHUP:
            self.settings.enter_catch_up(
                plan.batch_size,
                plan.concurrency,
                until_block=self.safe_head(chain_head),
            )
        return plan

    # --------------------------------------------------
    async def run_once(self) -> Optional[int]:
        """
        Scan and commit the next window. Returns the committed end block,
        or None when the checkpoint is already at the safe head.
        """
        knobs = self.settings.snapshot()
        chain_head = await self.tracker.refresh()

        checkpoint = await asyncio.to_thread(self.store.load)
        if checkpoint is None:
            raise CheckpointError(f"checkpoint {self.store.indexer_name} not initialized")

        window = next_window(
            checkpoint.last_indexed_block,
            self.safe_head(chain_head),
            knobs.batch_size,
        )
        if window is None:
            return None

        started = time.perf_counter()
        scan = await self.scanner.scan_window(
            window.start_block,
            window.end_block,
            concurrency=knobs.concurrency,
        )
        written = await asyncio.to_thread(self.commit_window, scan)
        self._record_commit(window, scan, written, chain_head, time.perf_counter() - started)

        self.settings.finish_catch_up_if_reached(window.end_block)
        return window.end_block

    def commit_window(self, scan: WindowScan) -> int:
        """Events and checkpoint advance in one transaction."""
        try:
            with self.persister.engine.begin() as conn:
                written = self.persister.persist(scan.events, conn=conn)
                self.store.advance(scan.to_block, conn=conn)
        except SQLAlchemyError as e:
            raise PersistenceError(f"{type(e).__name__}: {e}") from e
        return written

    def _record_commit(self, window: BlockRange, scan: WindowScan, written: int, chain_head: int, elapsed: float):
        now = time.monotonic()
        if self._last_commit_at is not None:
            self.metrics.commit_interval.observe(now - self._last_commit_at)
        self._last_commit_at = now

        self.metrics.windows_committed.inc()
        self.metrics.window_latency.observe(elapsed)
        self.metrics.observe_lag(chain_head, window.end_block)

        log.info(
            "✅ window_committed",
            extra={
                "from_block": window.start_block,
                "to_block": window.end_block,
                "events": len(scan.events),
                "written": written,
                "duplicates": len(scan.events) - written,
                "decode_failures": scan.decode_failures,
                "failed_tx_dropped": scan.failed_tx_dropped,
                "per_target": scan.per_target_counts,
                "lag_blocks": max(0, chain_head - window.end_block),
                "elapsed_ms": round(elapsed * 1000, 1),
            },
        )

    # --------------------------------------------------
    async def run(self):
        log.info(
            "🚀 ingestion_engine_start",
            extra={
                "indexer": self.store.indexer_name,
                "targets": len(self.scanner.targets),
                "batch_size": self.settings.batch_size,
                "poll_interval": self.settings.poll_interval,
            },
        )
        self._install_signal_handlers()
        prepared = False

        try:
            while not self._stop.is_set():
                try:
                    if not prepared:
                        await self.prepare()
                        prepared = True
                        if self.lag_monitor is not None:
                            self.lag_monitor.start()

                    committed = await self.run_once()

                except NoHealthyEndpointError as e:
                    self.metrics.window_failed_inc("no_endpoint")
                    log.error(
                        "❌ no_healthy_endpoint",
                        extra={"error": str(e), "backoff_seconds": self.no_endpoint_backoff},
                    )
                    await self._sleep(self.no_endpoint_backoff)
                    continue

                except (RpcError, PersistenceError) as e:
                    reason = "persistence" if isinstance(e, PersistenceError) else "rpc"
                    self.metrics.window_failed_inc(reason)
                    self._consecutive_failures += 1
                    delay = self.error_delay()
                    log.warning(
                        "⚠️ window_failed",
                        extra={
                            "reason": reason,
                            "error_type": type(e).__name__,
                            "error": str(e)[:300],
                            "consecutive_failures": self._consecutive_failures,
                            "backoff_seconds": delay,
                        },
                    )
                    await self._sleep(delay)
                    continue

                except Exception:
                    log.exception("💥 ingestion_engine_fatal")
                    raise

                self._consecutive_failures = 0
                # caught up → poll; behind → next window immediately
                if committed is None or committed >= self.safe_head(self.tracker.get_cached() or 0):
                    await self._sleep(self.settings.poll_interval)
        finally:
            await self._shutdown()

    def stop(self):
        if not self._stop.is_set():
            log.info("🛑 stop_requested")
        self._stop.set()

    async def _sleep(self, seconds: float):
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                # not the main thread, or a platform without signal support
                pass

    async def _shutdown(self):
        log.info("🧹 ingestion_engine_shutdown")
        if self.lag_monitor is not None:
            await self.lag_monitor.stop()
        await self.rpc.close()

    # --------------------------------------------------
    # backfill: 不动 checkpoint
    # --------------------------------------------------
    async def backfill(
        self,
        from_block: int,
        to_block: int,
        *,
        batch_size: Optional[int] = None,
        range_id: Optional[int] = None,
    ) -> int:
        chain_head = await self.tracker.refresh()
        safe_head = self.safe_head(chain_head)
        if to_block > safe_head:
            raise ValueError(f"to_block {to_block} is beyond the safe head {safe_head}")

        planner = BoundedRangePlanner(from_block, to_block, batch_size or self.settings.batch_size)
        total = 0
        log.info(
            "⏪ backfill_start",
            extra={"from_block": from_block, "to_block": to_block, "range_id": range_id},
        )

        while not planner.exhausted:
            r = planner.next_range(safe_head)
            scan = await self.scanner.scan_window(
                r.start_block,
                r.end_block,
                concurrency=self.settings.concurrency,
            )
            written = await asyncio.to_thread(self.persister.persist, scan.events)
            total += written
            log.info(
                "backfill_range_done",
                extra={
                    "from_block": r.start_block,
                    "to_block": r.end_block,
                    "events": len(scan.events),
                    "written": written,
                },
            )

        if range_id is not None:
            await asyncio.to_thread(self.store.mark_backfilled, range_id)
        log.info("🏁 backfill_done", extra={"range_id": range_id, "written": total})
        return total

    async def backfill_pending(self) -> int:
        total = 0
        for r in await asyncio.to_thread(self.store.skipped):
            total += await self.backfill(r.from_block, r.to_block, range_id=r.id)
        return total

    # --------------------------------------------------
    async def status(self) -> dict:
        try:
            chain_head = await self.tracker.refresh()
        except RpcError as e:
            log.warning("status_head_unavailable", extra={"error": str(e)[:200]})
            chain_head = self.tracker.get_cached()

        checkpoint = await asyncio.to_thread(self.store.load)
        last = checkpoint.last_indexed_block if checkpoint else None
        monitor = self.lag_monitor.status() if self.lag_monitor else {}
        pending = await asyncio.to_thread(self.store.skipped)

        return {
            "indexer": self.store.indexer_name,
            "last_indexed_block": last,
            "chain_head": chain_head,
            "lag_blocks": max(0, chain_head - last) if chain_head is not None and last is not None else None,
            "mode": monitor.get("mode", "NORMAL"),
            "critical": monitor.get("critical", False),
            "throughput_bps": monitor.get("throughput_bps"),
            "pending_skipped_ranges": [
                {"id": r.id, "from_block": r.from_block, "to_block": r.to_block, "reason": r.reason}
                for r in pending
            ],
            "endpoints": self.rpc.status(),
        }
