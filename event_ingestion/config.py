import os
import json
from dataclasses import dataclass
from typing import Optional

from event_ingestion.ingestion.scanner import ScanTarget
from event_ingestion.rpc_provider import RpcPool
from event_ingestion.web3_utils import EventSchema


class ConfigError(Exception):
    pass


def _get_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class IndexerConfig:
    chain: str
    job_name: str
    database_url: str
    rpc_config_path: Optional[str]
    rpc_urls: tuple[str, ...]
    scan_targets_path: str

    # window
    batch_size: int = 100
    max_batch_size: int = 500
    poll_interval: float = 1.0
    confirmation_blocks: int = 0
    scan_concurrency: int = 4
    initial_range_span: int = 2_000

    # lag monitor
    emergency_lag_threshold: int = 50
    recovery_lag_threshold: int = 25
    critical_lag_threshold: int = 100
    emergency_batch_multiplier: int = 3
    emergency_poll_divider: float = 4.0
    lag_monitor_interval: float = 2.0

    # RPC
    circuit_failure_threshold: int = 3
    circuit_cooldown_sec: float = 30.0
    rpc_timeout: float = 10.0
    rpc_max_retries: int = 5
    rpc_base_delay: float = 0.2
    rpc_max_delay: float = 10.0
    rpc_jitter: bool = True

    # catch-up
    small_gap_limit: int = 10_000
    large_gap_limit: int = 100_000
    skip_safety_margin: int = 1_000
    allow_skip_ahead: bool = False
    start_block: Optional[int] = None

    # main loop
    error_backoff: float = 5.0
    max_error_backoff: float = 30.0
    no_endpoint_backoff: float = 10.0
    metrics_port: int = 8000

    @classmethod
    def from_env(cls) -> "IndexerConfig":
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ConfigError("DATABASE_URL is required")

        rpc_config_path = os.getenv("RPC_CONFIG_PATH") or None
        rpc_urls = tuple(u.strip() for u in os.getenv("RPC_URLS", "").split(",") if u.strip())
        if not rpc_config_path and not rpc_urls:
            raise ConfigError("one of RPC_CONFIG_PATH or RPC_URLS is required")

        cfg = cls(
            chain=os.getenv("CHAIN", "bsc"),
            job_name=os.getenv("JOB_NAME", "event_ingestion"),
            database_url=database_url,
            rpc_config_path=rpc_config_path,
            rpc_urls=rpc_urls,
            scan_targets_path=os.getenv("SCAN_TARGETS_PATH", "config/scan_targets.json"),
            batch_size=_get_int("BATCH_SIZE", 100),
            max_batch_size=_get_int("MAX_BATCH_SIZE", 500),
            poll_interval=_get_float("POLL_INTERVAL", 1.0),
            confirmation_blocks=_get_int("CONFIRMATION_BLOCKS", 0),
            scan_concurrency=_get_int("SCAN_CONCURRENCY", 4),
            initial_range_span=_get_int("INITIAL_RANGE_SPAN", 2_000),
            emergency_lag_threshold=_get_int("EMERGENCY_LAG_THRESHOLD", 50),
            recovery_lag_threshold=_get_int("RECOVERY_LAG_THRESHOLD", 25),
            critical_lag_threshold=_get_int("CRITICAL_LAG_THRESHOLD", 100),
            emergency_batch_multiplier=_get_int("EMERGENCY_BATCH_MULTIPLIER", 3),
            emergency_poll_divider=_get_float("EMERGENCY_POLL_DIVIDER", 4.0),
            lag_monitor_interval=_get_float("LAG_MONITOR_INTERVAL", 2.0),
            circuit_failure_threshold=_get_int("CIRCUIT_FAILURE_THRESHOLD", 3),
            circuit_cooldown_sec=_get_float("CIRCUIT_COOLDOWN_SEC", 30.0),
            rpc_timeout=_get_float("RPC_TIMEOUT", 10.0),
            rpc_max_retries=_get_int("RPC_MAX_RETRIES", 5),
            rpc_base_delay=_get_float("RPC_BASE_DELAY", 0.2),
            rpc_max_delay=_get_float("RPC_MAX_DELAY", 10.0),
            rpc_jitter=_get_bool("RPC_JITTER", True),
            small_gap_limit=_get_int("SMALL_GAP_LIMIT", 10_000),
            large_gap_limit=_get_int("LARGE_GAP_LIMIT", 100_000),
            skip_safety_margin=_get_int("SKIP_SAFETY_MARGIN", 1_000),
            allow_skip_ahead=_get_bool("ALLOW_SKIP_AHEAD", False),
            start_block=_get_int("START_BLOCK", None),
            error_backoff=_get_float("ERROR_BACKOFF", 5.0),
            max_error_backoff=_get_float("MAX_ERROR_BACKOFF", 30.0),
            no_endpoint_backoff=_get_float("NO_ENDPOINT_BACKOFF", 10.0),
            metrics_port=_get_int("METRICS_PORT", 8000),
        )
        cfg.validate()
        return cfg

    def validate(self):
        if self.batch_size < 1:
            raise ConfigError("BATCH_SIZE must be >= 1")
        if self.max_batch_size < self.batch_size:
            raise ConfigError("MAX_BATCH_SIZE must be >= BATCH_SIZE")
        if self.recovery_lag_threshold >= self.emergency_lag_threshold:
            raise ConfigError("RECOVERY_LAG_THRESHOLD must be below EMERGENCY_LAG_THRESHOLD")
        if self.critical_lag_threshold < self.emergency_lag_threshold:
            raise ConfigError("CRITICAL_LAG_THRESHOLD must be >= EMERGENCY_LAG_THRESHOLD")
        if self.small_gap_limit >= self.large_gap_limit:
            raise ConfigError("SMALL_GAP_LIMIT must be below LARGE_GAP_LIMIT")
        if self.emergency_poll_divider <= 0:
            raise ConfigError("EMERGENCY_POLL_DIVIDER must be positive")
        if self.max_error_backoff < self.error_backoff:
            raise ConfigError("MAX_ERROR_BACKOFF must be >= ERROR_BACKOFF")


# -----------------------------
# RPC providers
# -----------------------------
def load_rpc_pool(cfg: IndexerConfig) -> RpcPool:
    if cfg.rpc_config_path:
        try:
            with open(cfg.rpc_config_path) as f:
                rpc_configs = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"cannot read {cfg.rpc_config_path}: {e}") from e
        try:
            return RpcPool.from_config(
                rpc_configs,
                cfg.chain,
                failure_threshold=cfg.circuit_failure_threshold,
                cooldown_sec=cfg.circuit_cooldown_sec,
            )
        except (RuntimeError, KeyError) as e:
            raise ConfigError(str(e)) from e

    return RpcPool.from_urls(
        list(cfg.rpc_urls),
        failure_threshold=cfg.circuit_failure_threshold,
        cooldown_sec=cfg.circuit_cooldown_sec,
    )


# -----------------------------
# Scan targets
# [{"name": "...", "address": "0x...", "events": ["Transfer(...)", ...]}]
# -----------------------------
def load_scan_targets(path: str) -> list[ScanTarget]:
    try:
        with open(path) as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"cannot read scan targets {path}: {e}") from e
    return parse_scan_targets(raw)


def parse_scan_targets(raw) -> list[ScanTarget]:
    if not isinstance(raw, list):
        raise ConfigError("scan targets must be a JSON list")

    targets = []
    seen = set()
    for contract in raw:
        try:
            name = contract["name"]
            address = contract["address"]
            signatures = contract["events"]
        except (KeyError, TypeError) as e:
            raise ConfigError(f"invalid scan target entry {contract!r}") from e

        for sig in signatures:
            try:
                schema = EventSchema.from_signature(sig)
            except ValueError as e:
                raise ConfigError(str(e)) from e

            key = (address.lower(), schema.name)
            if key in seen:
                raise ConfigError(f"duplicate scan target {name}.{schema.name}")
            seen.add(key)

            targets.append(ScanTarget(
                contract_address=address,
                contract_name=name,
                event_kind=schema.name,
                schema=schema,
            ))

    if not targets:
        raise ConfigError("no scan targets configured")
    return targets
