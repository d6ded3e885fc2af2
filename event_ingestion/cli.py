import json
import asyncio
from typing import Optional

import typer
from prometheus_client import start_http_server
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from event_ingestion.config import ConfigError, IndexerConfig, load_rpc_pool, load_scan_targets
from event_ingestion.control import LagMonitor, RuntimeSettings
from event_ingestion.ingestion import EventPersister, EventScanner, IngestionEngine
from event_ingestion.logging import log
from event_ingestion.metrics import MetricsContext
from event_ingestion.planning import CatchUpSelector
from event_ingestion.rpc_provider import AsyncRpcClient, RpcManager
from event_ingestion.schema import create_schema
from event_ingestion.state import CheckpointStore
from event_ingestion.tracking import LatestBlockTracker

app = typer.Typer(help="EVM event ingestion: replicate contract events into a relational store")


def _load_config() -> IndexerConfig:
    try:
        return IndexerConfig.from_env()
    except ConfigError as e:
        typer.echo(f"config error: {e}", err=True)
        raise typer.Exit(code=2)


def _create_engine(cfg: IndexerConfig) -> Engine:
    if cfg.database_url.startswith("sqlite"):
        # commits run on worker threads
        return create_engine(cfg.database_url, connect_args={"check_same_thread": False})
    return create_engine(cfg.database_url, pool_pre_ping=True)


def build_engine(cfg: IndexerConfig, db: Engine) -> IngestionEngine:
    metrics = MetricsContext.for_job(chain=cfg.chain, job=cfg.job_name)

    rpc = RpcManager(
        load_rpc_pool(cfg),
        AsyncRpcClient(timeout=cfg.rpc_timeout),
        metrics=metrics,
        max_retries=cfg.rpc_max_retries,
        base_delay=cfg.rpc_base_delay,
        max_delay=cfg.rpc_max_delay,
        jitter=cfg.rpc_jitter,
    )
    store = CheckpointStore(db, indexer_name=cfg.job_name)
    settings = RuntimeSettings(
        batch_size=cfg.batch_size,
        poll_interval=cfg.poll_interval,
        concurrency=cfg.scan_concurrency,
    )
    tracker = LatestBlockTracker(rpc, metrics=metrics)

    return IngestionEngine(
        rpc=rpc,
        scanner=EventScanner(
            rpc,
            load_scan_targets(cfg.scan_targets_path),
            metrics=metrics,
            initial_span=cfg.initial_range_span,
        ),
        persister=EventPersister(db, metrics=metrics),
        store=store,
        settings=settings,
        tracker=tracker,
        selector=CatchUpSelector(
            store,
            batch_size=cfg.batch_size,
            max_batch_size=cfg.max_batch_size,
            concurrency=cfg.scan_concurrency,
            max_concurrency=cfg.scan_concurrency * 4,
            small_gap_limit=cfg.small_gap_limit,
            large_gap_limit=cfg.large_gap_limit,
            safety_margin=cfg.skip_safety_margin,
            allow_skip_ahead=cfg.allow_skip_ahead,
            start_block=cfg.start_block,
            confirmation_blocks=cfg.confirmation_blocks,
        ),
        metrics=metrics,
        lag_monitor=LagMonitor(
            tracker,
            store,
            settings,
            metrics=metrics,
            emergency_threshold=cfg.emergency_lag_threshold,
            recovery_threshold=cfg.recovery_lag_threshold,
            critical_threshold=cfg.critical_lag_threshold,
            batch_multiplier=cfg.emergency_batch_multiplier,
            max_batch_size=cfg.max_batch_size,
            poll_divider=cfg.emergency_poll_divider,
            interval=cfg.lag_monitor_interval,
        ),
        confirmation_blocks=cfg.confirmation_blocks,
        error_backoff=cfg.error_backoff,
        max_error_backoff=cfg.max_error_backoff,
        no_endpoint_backoff=cfg.no_endpoint_backoff,
    )


def _build(cfg: IndexerConfig, db: Engine) -> IngestionEngine:
    try:
        return build_engine(cfg, db)
    except ConfigError as e:
        typer.echo(f"config error: {e}", err=True)
        raise typer.Exit(code=2)


@app.command()
def run():
    """Run the ingestion loop until SIGINT/SIGTERM."""
    cfg = _load_config()
    db = _create_engine(cfg)
    create_schema(db)
    engine = _build(cfg, db)

    # Prometheus metrics endpoint
    start_http_server(cfg.metrics_port)
    log.info(
        "▶️ job_start",
        extra={"chain": cfg.chain, "job": cfg.job_name, "metrics_port": cfg.metrics_port},
    )
    asyncio.run(engine.run())


@app.command()
def status():
    """Print checkpoint, chain head, lag and endpoint health as JSON."""
    cfg = _load_config()
    engine = _build(cfg, _create_engine(cfg))

    async def _status():
        try:
            return await engine.status()
        finally:
            await engine.rpc.close()

    typer.echo(json.dumps(asyncio.run(_status()), indent=2, default=str))


@app.command("set-checkpoint")
def set_checkpoint(
    block: int = typer.Argument(..., help="New last indexed block"),
    reason: str = typer.Option("manual override", "--reason", "-r", help="Recorded with the override"),
):
    """Operator reset of the checkpoint. A forward jump is recorded as a skipped range."""
    cfg = _load_config()
    db = _create_engine(cfg)
    create_schema(db)
    checkpoint = CheckpointStore(db, indexer_name=cfg.job_name).override(block, reason=reason)
    typer.echo(f"checkpoint {cfg.job_name} -> {checkpoint.last_indexed_block}")


@app.command()
def backfill(
    from_block: Optional[int] = typer.Option(None, "--from-block", help="Start block (inclusive)"),
    to_block: Optional[int] = typer.Option(None, "--to-block", help="End block (inclusive)"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", help="Blocks per window"),
):
    """Scan a block range without moving the checkpoint. Without a range, recover every recorded skip."""
    if (from_block is None) != (to_block is None):
        typer.echo("--from-block and --to-block go together", err=True)
        raise typer.Exit(code=2)

    cfg = _load_config()
    db = _create_engine(cfg)
    create_schema(db)
    engine = _build(cfg, db)

    async def _backfill():
        try:
            if from_block is None:
                return await engine.backfill_pending()
            return await engine.backfill(from_block, to_block, batch_size=batch_size)
        finally:
            await engine.rpc.close()

    written = asyncio.run(_backfill())
    typer.echo(f"backfill wrote {written} events")


@app.command("init-db")
def init_db():
    """Create tables and record the schema version."""
    cfg = _load_config()
    create_schema(_create_engine(cfg))
    typer.echo("schema ready")


if __name__ == "__main__":
    app()
