from datetime import datetime, timedelta, timezone

import pytest

from event_ingestion.planning import BlockRange, CatchUpSelector, CatchUpStrategy
from event_ingestion.state import Checkpoint, CheckpointStore

HEAD = 1_000_000
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def checkpoint(block, age_sec=60):
    return Checkpoint(last_indexed_block=block, updated_at=NOW - timedelta(seconds=age_sec))


@pytest.fixture
def store(db):
    return CheckpointStore(db, "idx")


def selector(store, **kw):
    params = dict(
        batch_size=100,
        max_batch_size=500,
        concurrency=4,
        max_concurrency=16,
        small_gap_limit=10_000,
        large_gap_limit=100_000,
        safety_margin=1_000,
    )
    params.update(kw)
    return CatchUpSelector(store, **params)


def test_small_gap_is_normal_catch_up(store):
    plan = selector(store).select(HEAD, checkpoint(999_990), now=NOW)

    assert plan.strategy == CatchUpStrategy.NORMAL_CATCHUP
    assert plan.block_gap == 10
    assert plan.start_block == 999_991
    assert plan.batch_size == 100
    assert plan.time_gap == pytest.approx(60)


def test_medium_gap_is_fast_catch_up(store):
    plan = selector(store).select(HEAD, checkpoint(900_000), now=NOW)

    assert plan.strategy == CatchUpStrategy.FAST_CATCHUP
    assert plan.start_block == 900_001
    assert plan.batch_size == 500
    assert plan.concurrency == 8


def test_up_to_date(store):
    assert selector(store).select(HEAD, checkpoint(HEAD), now=NOW).strategy == CatchUpStrategy.UP_TO_DATE


def test_gap_boundaries(store):
    s = selector(store)
    assert s.select(HEAD, checkpoint(HEAD - 10_000), now=NOW).strategy == CatchUpStrategy.NORMAL_CATCHUP
    assert s.select(HEAD, checkpoint(HEAD - 10_001), now=NOW).strategy == CatchUpStrategy.FAST_CATCHUP
    assert s.select(HEAD, checkpoint(HEAD - 100_000), now=NOW).strategy == CatchUpStrategy.FAST_CATCHUP


def test_huge_gap_skips_to_recent_when_allowed(store):
    store.advance(1)
    s = selector(store, allow_skip_ahead=True)

    plan = s.select(HEAD, store.load(), now=NOW)
    assert plan.strategy == CatchUpStrategy.SKIP_TO_RECENT
    assert plan.skipped_range == BlockRange(2, 999_000)

    applied = s.apply(plan)
    assert applied.last_indexed_block == 999_000
    assert store.load().last_indexed_block == 999_000

    [skip] = store.skipped()
    assert (skip.from_block, skip.to_block) == (2, 999_000)


def test_huge_gap_without_permission_degrades_to_fast(store):
    store.advance(1)
    s = selector(store)

    plan = s.select(HEAD, store.load(), now=NOW)
    assert plan.strategy == CatchUpStrategy.FAST_CATCHUP
    assert s.apply(plan).last_indexed_block == 1
    assert store.skipped() == []


def test_skip_never_moves_checkpoint_backwards(store):
    s = selector(store, allow_skip_ahead=True, large_gap_limit=100, small_gap_limit=10, safety_margin=5_000)
    plan = s.select(HEAD, checkpoint(HEAD - 1_000), now=NOW)
    assert plan.strategy == CatchUpStrategy.FAST_CATCHUP


def test_fresh_start_uses_start_block_or_safe_head(store):
    plan = selector(store, start_block=500).select(HEAD, None)
    assert plan.strategy == CatchUpStrategy.FRESH_START
    assert selector(store).apply(plan).last_indexed_block == 499

    other = CheckpointStore(store.engine, "other")
    plan = selector(other, confirmation_blocks=3).select(HEAD, None)
    assert plan.start_block == HEAD - 3
    assert selector(other).apply(plan).last_indexed_block == HEAD - 4


def test_fresh_start_at_block_zero_scans_block_zero(store):
    plan = selector(store, start_block=0).select(HEAD, None)
    assert plan.start_block == 0
    assert plan.checkpoint_after_apply == -1
    assert selector(store).apply(plan).last_indexed_block == -1


def test_limits_are_validated(store):
    with pytest.raises(ValueError):
        selector(store, small_gap_limit=100, large_gap_limit=100)
