import os
import time
import uuid
import random
import asyncio
from enum import Enum
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import aiohttp

from event_ingestion.logging import log
from event_ingestion.metrics import MetricsContext
from event_ingestion.web3_utils import hex_to_int

# -----------------------------
# Exceptions
# -----------------------------
class RpcError(Exception): pass
class RpcRateLimitError(RpcError): pass
class RpcTransportError(RpcError): pass
class RpcTemporarilyUnavailable(RpcError): pass


class NoHealthyEndpointError(RpcError):
    """Every endpoint circuit is OPEN. Not retried inside the manager."""


class RpcResponseError(RpcError):
    def __init__(self, code, message: str):
        super().__init__(f"rpc error {code}: {message}")
        self.code = code
        self.message = message


class RangeTooLargeError(RpcResponseError):
    """Provider refused an eth_getLogs range; the caller must shrink it."""


RANGE_TOO_LARGE_PATTERNS = (
    "block range exceeds",
    "block range is too large",
    "range too large",
    "range is too large",
    "exceed maximum block range",
    "exceeds the range",
    "query returned more than",
    "too many blocks",
    "response size exceeded",
)
RATE_LIMIT_CODES = (-32005, -32016, -32090, 10007)


def raise_for_rpc_error(error: dict):
    """
    Map a JSON-RPC error object onto the exception taxonomy.

    Range rejections are checked first: several providers reuse -32005
    for both "limit exceeded" and "query returned more than N results".
    """
    code = error.get("code")
    message = str(error.get("message", ""))
    lowered = message.lower()

    if any(p in lowered for p in RANGE_TOO_LARGE_PATTERNS):
        raise RangeTooLargeError(code, message)
    if code in RATE_LIMIT_CODES or "rate limit" in lowered or "too many requests" in lowered:
        raise RpcRateLimitError(f"rpc error {code}: {message}")
    raise RpcResponseError(code, message)


# -----------------------------
# RPC Trace
# -----------------------------
@dataclass
class RpcTrace:
    method: str
    total_ms: float | None = None


# -----------------------------
# AsyncRpcClient
# 发送 JSON-RPC，返回 (result, trace)
# -----------------------------
class AsyncRpcClient:
    def __init__(self, timeout: float = 10):
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def call(self, url: str, method: str, params: list):
        trace = RpcTrace(method=method)
        payload = {
            "jsonrpc": "2.0",
            "id": str(uuid.uuid4()),
            "method": method,
            "params": params,
        }

        # 禁用 brotli，避免 aiohttp / brotli 兼容问题
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
        }

        session = await self._get_session()
        start = time.perf_counter()
        try:
            async with session.post(url, json=payload, headers=headers) as resp:
                if resp.status == 429:
                    raise RpcRateLimitError("HTTP 429 rate limited")
                if resp.status >= 500:
                    raise RpcTransportError(f"HTTP {resp.status}")
                try:
                    data = await resp.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError) as e:
                    # gateway / CDN pages (403, 404, captcha) are not JSON-RPC
                    raise RpcTransportError(f"HTTP {resp.status}: non-JSON body") from e
                status = resp.status
        except aiohttp.ClientError as e:
            raise RpcTransportError(f"{type(e).__name__}: {e}") from e

        trace.total_ms = (time.perf_counter() - start) * 1000

        if not isinstance(data, dict):
            raise RpcTransportError(f"malformed JSON-RPC response: {str(data)[:200]}")
        error = data.get("error")
        if isinstance(error, dict):
            raise_for_rpc_error(error)
        if error or status >= 400:
            raise RpcTransportError(f"HTTP {status}: {str(data)[:200]}")

        return data.get("result"), trace

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()


# -----------------------------
# Request budget: 最小间隔频率控制
# -----------------------------
class RequestBudget:
    def __init__(
        self,
        per_second: float | None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval = 1.0 / per_second if per_second else 0.0
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._next_available = 0.0

    async def acquire(self):
        if not self.min_interval:
            return
        async with self._lock:
            now = self._clock()
            if now < self._next_available:
                await self._sleep(self._next_available - now)
                now = self._clock()
            self._next_available = max(now, self._next_available) + self.min_interval


# -----------------------------
# RPC Endpoint + circuit breaker
# -----------------------------
class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


CIRCUIT_GAUGE = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


class RpcEndpoint:
    def __init__(
        self,
        name: str,
        url: str,
        priority: int = 1,
        *,
        failure_threshold: int = 3,
        cooldown_sec: float = 30.0,
        request_budget_per_second: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.url = url
        self.priority = priority
        self.request_budget_per_second = request_budget_per_second

        # Circuit breaker state
        self.failure_threshold = failure_threshold
        self.cooldown_sec = cooldown_sec
        self.consecutive_failures = 0
        self.circuit_state = CircuitState.CLOSED
        self.opened_at: float | None = None
        self.half_open_probe = False      # HALF_OPEN 探测锁, 确保冷却后只有一个请求能试探

        self._clock = clock
        self.budget = RequestBudget(request_budget_per_second, clock=clock)

    def selectable(self) -> bool:
        if self.circuit_state == CircuitState.CLOSED:
            return True

        if self.circuit_state == CircuitState.OPEN:
            # OPEN 状态：还在冷却
            if self._clock() - self.opened_at < self.cooldown_sec:
                return False
            # 冷却结束 → HALF_OPEN
            self.circuit_state = CircuitState.HALF_OPEN
            self.half_open_probe = False
            log.info("rpc_half_open", extra={"rpc": self.name})

        # HALF_OPEN 已被占用
        return not self.half_open_probe

    def begin_call(self):
        if self.circuit_state == CircuitState.HALF_OPEN:
            self.half_open_probe = True

    def abandon_call(self):
        # cancelled mid-flight: the trial proved nothing, let the next caller probe
        self.half_open_probe = False

    def on_success(self):
        # HALF_OPEN 成功 → CLOSED
        if self.circuit_state != CircuitState.CLOSED:
            log.info(
                "rpc_circuit_closed",
                extra={"rpc": self.name, "was": self.circuit_state.value},
            )
        self.consecutive_failures = 0
        self.circuit_state = CircuitState.CLOSED
        self.opened_at = None
        self.half_open_probe = False

    def on_failure(self):
        self.consecutive_failures += 1

        # HALF_OPEN 探测失败 → 立刻回 OPEN
        if self.circuit_state == CircuitState.HALF_OPEN:
            self._open()
        elif (
            self.circuit_state == CircuitState.CLOSED
            and self.consecutive_failures >= self.failure_threshold
        ):
            self._open()

    def _open(self):
        self.circuit_state = CircuitState.OPEN
        self.opened_at = self._clock()
        self.half_open_probe = False
        log.warning(
            "⚠️ rpc_circuit_open",
            extra={
                "rpc": self.name,
                "cooldown_sec": self.cooldown_sec,
                "fail_count": self.consecutive_failures,
            },
        )

    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "url": self.url,
            "priority": self.priority,
            "circuit_state": self.circuit_state.value,
            "consecutive_failures": self.consecutive_failures,
            "opened_at": self.opened_at,
        }


def build_rpc_url(cfg: dict) -> str:
    """
    Build final RPC URL from provider config.
    """
    base_url = cfg["base_url"]
    key_env = cfg.get("api_key_env")
    # Public RPC
    if not key_env:
        return base_url

    api_key = os.getenv(key_env)
    if not api_key:
        raise RuntimeError(
            f"Missing env var for RPC provider {cfg['name']}: {key_env}"
        )
    return f"{base_url.rstrip('/')}/{api_key}"


# -----------------------------
# RpcPool
# -----------------------------
class RpcPool:
    def __init__(self, endpoints: list[RpcEndpoint]):
        if not endpoints:
            raise ValueError("RpcPool needs at least one endpoint")
        self.endpoints = endpoints

    def pick_endpoints(self) -> list[RpcEndpoint]:
        """
        Selectable endpoints, highest priority first (config order on ties).
        """
        ordered = sorted(self.endpoints, key=lambda e: -e.priority)
        return [e for e in ordered if e.selectable()]

    def get(self, name: str) -> RpcEndpoint | None:
        for e in self.endpoints:
            if e.name == name:
                return e
        return None

    # ⭐ 工厂方法
    @classmethod
    def from_config(
        cls,
        rpc_configs: dict,
        chain: str,
        *,
        failure_threshold: int = 3,
        cooldown_sec: float = 30.0,
    ) -> "RpcPool":
        chain_cfg = rpc_configs.get("chains", {}).get(chain)
        if not chain_cfg:
            raise RuntimeError(f"Chain config not found: {chain}")

        endpoints = []
        for cfg in chain_cfg.get("providers", []):
            if not cfg.get("enabled", True):
                continue
            budget = cfg.get("request_budget_per_second")
            endpoints.append(
                RpcEndpoint(
                    name=cfg["name"],
                    url=build_rpc_url(cfg),
                    priority=int(cfg.get("priority", cfg.get("weight", 1))),
                    failure_threshold=failure_threshold,
                    cooldown_sec=cooldown_sec,
                    request_budget_per_second=float(budget) if budget else None,
                )
            )

        if not endpoints:
            raise RuntimeError(f"No RPC providers enabled for chain: {chain}")

        for e in endpoints:
            log.info(
                "rpc_enabled",
                extra={"chain": chain, "rpc": e.name, "priority": e.priority},
            )
        return cls(endpoints)

    @classmethod
    def from_urls(
        cls,
        urls: list[str],
        *,
        failure_threshold: int = 3,
        cooldown_sec: float = 30.0,
    ) -> "RpcPool":
        # earlier URLs win: priority descends with position
        return cls([
            RpcEndpoint(
                name=f"rpc{i}",
                url=url,
                priority=len(urls) - i,
                failure_threshold=failure_threshold,
                cooldown_sec=cooldown_sec,
            )
            for i, url in enumerate(urls)
        ])


TRANSIENT_ERRORS = (
    RpcRateLimitError,
    RpcTransportError,
    asyncio.TimeoutError,
    TimeoutError,
)


# -----------------------------
# RpcManager: 单一逻辑 client
# -----------------------------
class RpcManager:
    def __init__(
        self,
        pool: RpcPool,
        client=None,
        *,
        metrics: MetricsContext,
        max_retries: int = 5,
        base_delay: float = 0.2,
        max_delay: float = 10.0,
        jitter: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.pool = pool
        self.client = client or AsyncRpcClient()
        self.metrics = metrics
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._sleep = sleep
        self._rand = rand

    def backoff_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            delay += self._rand() * self.base_delay
        return delay

    async def call(self, method: str, params: list | None = None) -> Any:
        params = params or []
        last_exc = None

        for attempt in range(self.max_retries):
            endpoints = self.pool.pick_endpoints()
            if not endpoints:
                raise NoHealthyEndpointError(
                    f"no healthy RPC endpoint for {method}"
                ) from last_exc

            for ep in endpoints:
                # another in-flight call may have taken the half-open trial
                if not ep.selectable():
                    continue

                ep.begin_call()
                try:
                    await ep.budget.acquire()
                    self.metrics.rpc_request_inc(ep.name, method)
                    result, trace = await self.client.call(ep.url, method, params)

                except asyncio.CancelledError:
                    ep.abandon_call()
                    raise

                except RpcResponseError:
                    # the endpoint answered; range / param errors are the caller's problem
                    ep.on_success()
                    self._publish_state(ep)
                    raise

                except TRANSIENT_ERRORS as e:
                    ep.on_failure()
                    self._publish_state(ep)
                    self.metrics.rpc_error_inc(ep.name, type(e).__name__)
                    log.warning(
                        "rpc_failover",
                        extra={
                            "rpc": ep.name,
                            "method": method,
                            "attempt": attempt + 1,
                            "error_type": type(e).__name__,
                            "error": str(e)[:200],
                        },
                    )
                    last_exc = e
                    continue

                ep.on_success()
                self._publish_state(ep)
                if trace is not None and trace.total_ms is not None:
                    self.metrics.rpc_latency_observe(ep.name, trace.total_ms)
                return result

            # ❌ 本轮全部失败
            if attempt + 1 < self.max_retries:
                delay = self.backoff_delay(attempt)
                log.warning(
                    "rpc_round_failed",
                    extra={
                        "method": method,
                        "attempt": attempt + 1,
                        "max_retries": self.max_retries,
                        "backoff_seconds": round(delay, 3),
                    },
                )
                await self._sleep(delay)

        raise RpcTemporarilyUnavailable(
            f"{method} failed after {self.max_retries} attempts"
        ) from last_exc

    def _publish_state(self, ep: RpcEndpoint):
        self.metrics.rpc_circuit_set(ep.name, CIRCUIT_GAUGE[ep.circuit_state])

    # -------------------------------------------------
    # 🧱 Public APIs
    # -------------------------------------------------
    async def block_number(self) -> int:
        result = await self.call("eth_blockNumber", [])
        return hex_to_int(result)

    async def logs_in_range(
        self,
        address: str,
        topics: list,
        from_block: int,
        to_block: int,
    ) -> list[dict]:
        result = await self.call(
            "eth_getLogs",
            [{
                "address": address,
                "topics": topics,
                "fromBlock": hex(from_block),
                "toBlock": hex(to_block),
            }],
        )
        return result or []

    async def transaction_receipt(self, tx_hash: str) -> dict | None:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    def status(self) -> list[dict]:
        return [e.snapshot() for e in self.pool.endpoints]

    async def close(self):
        close = getattr(self.client, "close", None)
        if close is not None:
            await close()
