import asyncio

import pytest

from conftest import FakeClock, no_sleep
from event_ingestion.control import IndexerMode, LagMonitor, RuntimeSettings
from event_ingestion.rpc_provider import RpcManager, RpcPool
from event_ingestion.state import CheckpointStore
from event_ingestion.tracking import LatestBlockTracker


@pytest.fixture
def settings():
    return RuntimeSettings(batch_size=100, poll_interval=1.0, concurrency=4)


@pytest.fixture
def monitor(rpc, db, settings, metrics):
    return LagMonitor(
        LatestBlockTracker(rpc, metrics=metrics),
        CheckpointStore(db, "idx"),
        settings,
        metrics=metrics,
        emergency_threshold=50,
        recovery_threshold=25,
        critical_threshold=100,
        batch_multiplier=3,
        max_batch_size=500,
        poll_divider=4,
        clock=FakeClock(),
    )


def test_hysteresis(monitor, settings):
    head = 10_000

    monitor.evaluate(head, head - 49)
    assert monitor.mode == IndexerMode.NORMAL

    monitor.evaluate(head, head - 50)
    assert monitor.mode == IndexerMode.EMERGENCY
    assert settings.batch_size == 300
    assert settings.poll_interval == pytest.approx(0.25)

    # between recovery and emergency: stays EMERGENCY, knobs unchanged
    monitor.evaluate(head, head - 30)
    monitor.evaluate(head, head - 25)
    assert monitor.mode == IndexerMode.EMERGENCY
    assert settings.batch_size == 300

    monitor.evaluate(head, head - 24)
    assert monitor.mode == IndexerMode.NORMAL
    assert settings.batch_size == 100
    assert settings.poll_interval == pytest.approx(1.0)

    # back in the dead band after recovery: stays NORMAL
    monitor.evaluate(head, head - 40)
    assert monitor.mode == IndexerMode.NORMAL
    assert monitor.emergency_activations == 1


def test_emergency_batch_is_capped(monitor, settings):
    settings.batch_size = 200
    monitor.evaluate(1_000, 900)
    assert settings.batch_size == 500


def test_critical_alert_is_standing(monitor, settings):
    monitor.evaluate(10_000, 9_800)
    assert monitor.critical
    assert monitor.status()["critical"] is True

    # still above critical: no change
    monitor.evaluate(10_000, 9_850)
    assert monitor.critical

    monitor.evaluate(10_000, 9_950)
    assert not monitor.critical
    # critical does not change knobs beyond emergency
    assert settings.batch_size == 300


def test_threshold_validation(rpc, db, settings, metrics):
    tracker = LatestBlockTracker(rpc, metrics=metrics)
    store = CheckpointStore(db, "idx")
    with pytest.raises(ValueError):
        LagMonitor(tracker, store, settings, metrics=metrics, emergency_threshold=50, recovery_threshold=50)
    with pytest.raises(ValueError):
        LagMonitor(tracker, store, settings, metrics=metrics, emergency_threshold=50, recovery_threshold=10, critical_threshold=40)


def test_throughput_from_sample_window(monitor):
    clock = monitor._clock
    monitor.evaluate(1_000, 900)
    assert monitor.throughput_bps() is None

    clock.advance(10)
    monitor.evaluate(1_050, 950)
    assert monitor.throughput_bps() == pytest.approx(5.0)


async def test_tick_reads_head_and_checkpoint(monitor, chain):
    chain.head = 1_000
    assert await monitor.tick() is None

    monitor.store.advance(940)
    sample = await monitor.tick()
    assert sample.lag_blocks == 60
    assert monitor.mode == IndexerMode.EMERGENCY


async def test_tick_failures_do_not_stop_the_loop(monitor, chain, metrics):
    pool = RpcPool.from_urls(["http://primary", "http://secondary"], failure_threshold=1_000)
    monitor.tracker.rpc = RpcManager(pool, chain, metrics=metrics, max_retries=1, sleep=no_sleep)
    chain.down_urls.update({"http://primary", "http://secondary"})
    monitor.interval = 0.01
    monitor.store.advance(10)

    monitor.start()
    await asyncio.sleep(0.05)
    assert monitor._task is not None and not monitor._task.done()

    chain.down_urls.clear()
    chain.head = 100
    await asyncio.sleep(0.2)
    await monitor.stop()

    assert monitor.samples and monitor.samples[-1].lag_blocks == 90
