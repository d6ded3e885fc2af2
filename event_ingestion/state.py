from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine

from event_ingestion.logging import log
from event_ingestion.schema import checkpoints, skipped_ranges, utcnow


# checkpoint of an indexer that must still scan block 0
NOTHING_INDEXED = -1


class CheckpointError(Exception):
    pass


class CheckpointRegressionError(CheckpointError):
    pass


@dataclass(frozen=True)
class Checkpoint:
    last_indexed_block: int
    updated_at: datetime


@dataclass(frozen=True)
class SkippedRange:
    id: int
    from_block: int
    to_block: int
    reason: str
    created_at: datetime
    backfilled_at: Optional[datetime]


@contextmanager
def transaction(engine: Engine, conn: Connection | None = None) -> Iterator[Connection]:
    """Join the caller's transaction, or open (and commit) a new one."""
    if conn is not None:
        yield conn
        return
    with engine.begin() as new_conn:
        yield new_conn


# -------------------------
# single source of truth
# 只有主循环推进; 只有 override 能回退
# -------------------------
class CheckpointStore:
    def __init__(self, engine: Engine, indexer_name: str = "default"):
        self.engine = engine
        self.indexer_name = indexer_name

    def load(self, conn: Connection | None = None) -> Checkpoint | None:
        with transaction(self.engine, conn) as c:
            row = c.execute(
                select(checkpoints.c.last_indexed_block, checkpoints.c.updated_at)
                .where(checkpoints.c.indexer_name == self.indexer_name)
            ).first()
        if row is None:
            return None
        return Checkpoint(last_indexed_block=int(row[0]), updated_at=row[1])

    def advance(self, block: int, conn: Connection | None = None) -> Checkpoint:
        """
        Move the checkpoint forward to ``block``. Called by the main loop
        inside the window's transaction.
        """
        if block < 0:
            raise CheckpointError(f"negative checkpoint {block}")

        with transaction(self.engine, conn) as c:
            current = self.load(conn=c)
            if current is not None and block < current.last_indexed_block:
                raise CheckpointRegressionError(
                    f"checkpoint {self.indexer_name} would move backwards: "
                    f"{current.last_indexed_block} -> {block}"
                )
            return self._write(c, block, exists=current is not None)

    def initialize(self, block: int, conn: Connection | None = None) -> Checkpoint:
        """Create the checkpoint row if it does not exist yet."""
        if block < NOTHING_INDEXED:
            raise CheckpointError(f"invalid checkpoint {block}")

        with transaction(self.engine, conn) as c:
            current = self.load(conn=c)
            if current is not None:
                return current
            log.info(
                "checkpoint_initialized",
                extra={"indexer": self.indexer_name, "last_indexed_block": block},
            )
            return self._write(c, block, exists=False)

    def override(
        self,
        block: int,
        *,
        reason: str,
        conn: Connection | None = None,
    ) -> Checkpoint:
        """
        Operator reset. May move the checkpoint in either direction; a
        forward jump records the unscanned range in indexer_skipped_ranges.
        """
        if block < NOTHING_INDEXED:
            raise CheckpointError(f"invalid checkpoint {block}")

        with transaction(self.engine, conn) as c:
            current = self.load(conn=c)
            previous = current.last_indexed_block if current else None

            if previous is not None and block > previous + 1:
                self.record_skip(previous + 1, block, reason, conn=c)

            log.warning(
                "checkpoint_override",
                extra={
                    "indexer": self.indexer_name,
                    "from_block": previous,
                    "to_block": block,
                    "reason": reason,
                },
            )
            return self._write(c, block, exists=current is not None)

    def _write(self, conn: Connection, block: int, *, exists: bool) -> Checkpoint:
        now = utcnow()
        if exists:
            conn.execute(
                update(checkpoints)
                .where(checkpoints.c.indexer_name == self.indexer_name)
                .values(last_indexed_block=block, updated_at=now)
            )
        else:
            conn.execute(
                insert(checkpoints).values(
                    indexer_name=self.indexer_name,
                    last_indexed_block=block,
                    updated_at=now,
                )
            )
        return Checkpoint(last_indexed_block=block, updated_at=now)

    # -------------------------
    # skipped range ledger
    # -------------------------
    def record_skip(
        self,
        from_block: int,
        to_block: int,
        reason: str,
        conn: Connection | None = None,
    ) -> int:
        with transaction(self.engine, conn) as c:
            result = c.execute(
                insert(skipped_ranges).values(
                    indexer_name=self.indexer_name,
                    from_block=from_block,
                    to_block=to_block,
                    reason=reason,
                    created_at=utcnow(),
                )
            )
            range_id = result.inserted_primary_key[0]
        log.warning(
            "⚠️ blocks_skipped",
            extra={
                "indexer": self.indexer_name,
                "range_id": range_id,
                "from_block": from_block,
                "to_block": to_block,
                "blocks": to_block - from_block + 1,
                "reason": reason,
            },
        )
        return range_id

    def skipped(self, pending_only: bool = True) -> list[SkippedRange]:
        query = (
            select(skipped_ranges)
            .where(skipped_ranges.c.indexer_name == self.indexer_name)
            .order_by(skipped_ranges.c.from_block)
        )
        if pending_only:
            query = query.where(skipped_ranges.c.backfilled_at.is_(None))

        with self.engine.connect() as c:
            rows = c.execute(query).mappings().all()
        return [
            SkippedRange(
                id=r["id"],
                from_block=int(r["from_block"]),
                to_block=int(r["to_block"]),
                reason=r["reason"],
                created_at=r["created_at"],
                backfilled_at=r["backfilled_at"],
            )
            for r in rows
        ]

    def mark_backfilled(self, range_id: int, conn: Connection | None = None):
        with transaction(self.engine, conn) as c:
            c.execute(
                update(skipped_ranges)
                .where(skipped_ranges.c.id == range_id)
                .values(backfilled_at=utcnow())
            )
        log.info("skipped_range_backfilled", extra={"range_id": range_id})
