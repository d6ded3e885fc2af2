"""
Restart strategy, decided once at process start from the distance between
the chain head and the committed checkpoint.

| block gap                       | strategy        |
|---------------------------------|-----------------|
| no checkpoint                   | FRESH_START     |
| <= 0                            | UP_TO_DATE      |
| 1 .. small_gap_limit            | NORMAL_CATCHUP  |
| small_gap_limit .. large_gap_limit | FAST_CATCHUP |
| > large_gap_limit               | SKIP_TO_RECENT  |

SKIP_TO_RECENT abandons the skipped range. It only happens when
``allow_skip_ahead`` is set, and the range is written to the skipped range
ledger so ``backfill`` can recover it later.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy.engine import Connection

from event_ingestion.logging import log
from event_ingestion.planning.range_planner import BlockRange
from event_ingestion.state import Checkpoint, CheckpointStore


class CatchUpStrategy(str, Enum):
    FRESH_START = "FRESH_START"
    UP_TO_DATE = "UP_TO_DATE"
    NORMAL_CATCHUP = "NORMAL_CATCHUP"
    FAST_CATCHUP = "FAST_CATCHUP"
    SKIP_TO_RECENT = "SKIP_TO_RECENT"


@dataclass(frozen=True)
class CatchUpPlan:
    strategy: CatchUpStrategy
    chain_head: int
    last_indexed_block: Optional[int]
    block_gap: Optional[int]
    time_gap: Optional[float]
    start_block: int
    batch_size: int
    concurrency: int
    skipped_range: Optional[BlockRange] = None

    @property
    def checkpoint_after_apply(self) -> int:
        # START_BLOCK=0 gives NOTHING_INDEXED so block 0 is still scanned
        return self.start_block - 1


class CatchUpSelector:
    def __init__(
        self,
        store: CheckpointStore,
        *,
        batch_size: int,
        max_batch_size: int,
        concurrency: int,
        max_concurrency: int,
        small_gap_limit: int = 10_000,
        large_gap_limit: int = 100_000,
        safety_margin: int = 1_000,
        fast_batch_multiplier: int = 5,
        fast_extra_concurrency: int = 4,
        allow_skip_ahead: bool = False,
        start_block: Optional[int] = None,
        confirmation_blocks: int = 0,
    ):
        if small_gap_limit >= large_gap_limit:
            raise ValueError(
                f"small_gap_limit {small_gap_limit} must be below large_gap_limit {large_gap_limit}"
            )
        if safety_margin < 0:
            raise ValueError("safety_margin must be >= 0")

        self.store = store
        self.batch_size = batch_size
        self.max_batch_size = max(batch_size, max_batch_size)
        self.concurrency = concurrency
        self.max_concurrency = max(concurrency, max_concurrency)
        self.small_gap_limit = small_gap_limit
        self.large_gap_limit = large_gap_limit
        self.safety_margin = safety_margin
        self.fast_batch_multiplier = fast_batch_multiplier
        self.fast_extra_concurrency = fast_extra_concurrency
        self.allow_skip_ahead = allow_skip_ahead
        self.start_block = start_block
        self.confirmation_blocks = confirmation_blocks

    def select(
        self,
        chain_head: int,
        checkpoint: Optional[Checkpoint],
        now: Optional[datetime] = None,
    ) -> CatchUpPlan:
        normal = dict(batch_size=self.batch_size, concurrency=self.concurrency)

        if checkpoint is None:
            start = self.start_block
            if start is None:
                start = max(0, chain_head - self.confirmation_blocks)
            return CatchUpPlan(
                strategy=CatchUpStrategy.FRESH_START,
                chain_head=chain_head,
                last_indexed_block=None,
                block_gap=None,
                time_gap=None,
                start_block=start,
                **normal,
            )

        last = checkpoint.last_indexed_block
        block_gap = chain_head - last
        time_gap = _seconds_since(checkpoint.updated_at, now)
        base = dict(
            chain_head=chain_head,
            last_indexed_block=last,
            block_gap=block_gap,
            time_gap=time_gap,
        )

        if block_gap <= 0:
            return CatchUpPlan(CatchUpStrategy.UP_TO_DATE, start_block=last + 1, **base, **normal)

        if block_gap <= self.small_gap_limit:
            return CatchUpPlan(CatchUpStrategy.NORMAL_CATCHUP, start_block=last + 1, **base, **normal)

        fast = dict(
            batch_size=min(self.batch_size * self.fast_batch_multiplier, self.max_batch_size),
            concurrency=min(self.concurrency + self.fast_extra_concurrency, self.max_concurrency),
        )

        if block_gap <= self.large_gap_limit:
            return CatchUpPlan(CatchUpStrategy.FAST_CATCHUP, start_block=last + 1, **base, **fast)

        target = chain_head - self.safety_margin
        if not self.allow_skip_ahead or target <= last:
            log.warning(
                "skip_to_recent_suppressed",
                extra={
                    "block_gap": block_gap,
                    "large_gap_limit": self.large_gap_limit,
                    "allow_skip_ahead": self.allow_skip_ahead,
                    "hint": "set ALLOW_SKIP_AHEAD=true to skip, or let fast catch-up run",
                },
            )
            return CatchUpPlan(CatchUpStrategy.FAST_CATCHUP, start_block=last + 1, **base, **fast)

        return CatchUpPlan(
            CatchUpStrategy.SKIP_TO_RECENT,
            start_block=target + 1,
            skipped_range=BlockRange(last + 1, target),
            **base,
            **normal,
        )

    def apply(self, plan: CatchUpPlan, conn: Optional[Connection] = None) -> Checkpoint:
        log.info(
            "🎯 catch_up_strategy",
            extra={
                "strategy": plan.strategy.value,
                "chain_head": plan.chain_head,
                "last_indexed_block": plan.last_indexed_block,
                "block_gap": plan.block_gap,
                "time_gap_sec": round(plan.time_gap, 1) if plan.time_gap is not None else None,
                "start_block": plan.start_block,
                "batch_size": plan.batch_size,
                "concurrency": plan.concurrency,
            },
        )

        if plan.strategy == CatchUpStrategy.FRESH_START:
            return self.store.initialize(plan.checkpoint_after_apply, conn=conn)

        if plan.strategy == CatchUpStrategy.SKIP_TO_RECENT:
            skipped = plan.skipped_range
            log.warning(
                "🚨 skip_to_recent",
                extra={
                    "from_block": skipped.start_block,
                    "to_block": skipped.end_block,
                    "blocks_skipped": skipped.size,
                    "note": "events in the skipped range are not indexed until backfilled",
                },
            )
            return self.store.override(
                plan.checkpoint_after_apply,
                reason=f"skip_to_recent: gap {plan.block_gap} > {self.large_gap_limit}",
                conn=conn,
            )

        return self.store.load(conn=conn)


def _seconds_since(ts: Optional[datetime], now: Optional[datetime]) -> Optional[float]:
    if ts is None:
        return None
    # SQLite hands back naive datetimes; they are written as UTC
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return (now - ts).total_seconds()
