import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from event_ingestion.logging import log
from event_ingestion.metrics import MetricsContext
from event_ingestion.planning.range_planner import BlockRange
from event_ingestion.rpc_provider import RangeTooLargeError, RpcError
from event_ingestion.schema import utcnow
from event_ingestion.web3_utils import DecodeError, EventSchema, hex_to_int


class ReceiptUnavailableError(RpcError):
    """A receipt came back empty; the window cannot be judged and is retried."""


@dataclass(frozen=True)
class ScanTarget:
    contract_address: str
    contract_name: str
    event_kind: str
    schema: EventSchema

    @property
    def label(self) -> str:
        return f"{self.contract_name}.{self.event_kind}"


@dataclass(frozen=True)
class IndexedEvent:
    block_number: int
    transaction_hash: str
    log_index: int
    event_kind: str
    contract_address: str
    payload: dict
    observed_at: datetime
    contract_name: str | None = None
    transaction_status: str | None = None

    @property
    def natural_key(self) -> tuple:
        return (self.block_number, self.transaction_hash, self.log_index, self.event_kind)


@dataclass
class WindowScan:
    from_block: int
    to_block: int
    events: list[IndexedEvent] = field(default_factory=list)
    per_target_counts: dict[str, int] = field(default_factory=dict)
    decode_failures: int = 0
    failed_tx_dropped: int = 0


@dataclass
class _Candidate:
    target: ScanTarget
    raw: dict
    payload: dict


class EventScanner:
    """
    Pulls every (contract, event kind) target for one block window.

    Each target remembers the largest eth_getLogs span its provider has
    accepted; a rejected range is halved and the learned span kept for
    later windows. A window without rejections doubles it again, capped
    at ``initial_span``.
    """

    def __init__(
        self,
        rpc,
        targets: list[ScanTarget],
        *,
        metrics: MetricsContext,
        initial_span: int = 2_000,
        receipt_concurrency: int = 8,
    ):
        if initial_span < 1:
            raise ValueError("initial_span must be >= 1")
        self.rpc = rpc
        self.targets = list(targets)
        self.metrics = metrics
        self.initial_span = initial_span
        self.receipt_concurrency = receipt_concurrency
        self._spans: dict[str, int] = {}

    def span_for(self, target: ScanTarget) -> int:
        return self._spans.get(target.label, self.initial_span)

    # --------------------------------------------------
    async def scan_window(self, from_block: int, to_block: int, *, concurrency: int = 4) -> WindowScan:
        window = BlockRange(from_block, to_block)
        sem = asyncio.Semaphore(max(1, concurrency))

        async def run(target: ScanTarget):
            async with sem:
                return await self._scan_target(target, window)

        # 任何一个 target 失败 → 整个窗口失败
        per_target = await _all_or_cancel(run(t) for t in self.targets)

        scan = WindowScan(from_block=from_block, to_block=to_block)
        candidates: list[_Candidate] = []
        for target, (found, decode_failures) in zip(self.targets, per_target):
            candidates.extend(found)
            scan.decode_failures += decode_failures

        statuses = await self._receipt_statuses({c.raw["transactionHash"] for c in candidates})

        observed_at = utcnow()
        for c in candidates:
            tx_hash = c.raw["transactionHash"]
            status = statuses[tx_hash]
            if status == "failed":
                scan.failed_tx_dropped += 1
                log.debug(
                    "failed_tx_log_dropped",
                    extra={"tx": tx_hash, "event_kind": c.target.event_kind},
                )
                continue

            scan.events.append(IndexedEvent(
                block_number=hex_to_int(c.raw["blockNumber"]),
                transaction_hash=tx_hash,
                log_index=hex_to_int(c.raw["logIndex"]),
                event_kind=c.target.event_kind,
                contract_address=c.target.contract_address,
                payload=c.payload,
                observed_at=observed_at,
                contract_name=c.target.contract_name,
                transaction_status=status,
            ))
            label = c.target.label
            scan.per_target_counts[label] = scan.per_target_counts.get(label, 0) + 1

        scan.events.sort(key=lambda e: (e.block_number, e.log_index, e.event_kind))

        self.metrics.events_dropped_inc("decode_error", scan.decode_failures)
        self.metrics.events_dropped_inc("failed_tx", scan.failed_tx_dropped)
        return scan

    # --------------------------------------------------
    async def _scan_target(self, target: ScanTarget, window: BlockRange):
        found: list[_Candidate] = []
        decode_failures = 0

        for raw in await self._fetch_logs(target, window):
            if raw.get("removed"):
                continue
            try:
                payload = target.schema.decode(raw)
            except DecodeError as e:
                decode_failures += 1
                log.warning(
                    "⚠️ log_decode_failed",
                    extra={
                        "target": target.label,
                        "tx": raw.get("transactionHash"),
                        "log_index": raw.get("logIndex"),
                        "error": str(e)[:200],
                    },
                )
                continue
            found.append(_Candidate(target=target, raw=raw, payload=payload))

        return found, decode_failures

    async def _fetch_logs(self, target: ScanTarget, window: BlockRange) -> list[dict]:
        logs: list[dict] = []
        span = self.span_for(target)
        pending = list(window.split(span))
        shrunk = False

        while pending:
            chunk = pending.pop(0)
            try:
                logs.extend(await self.rpc.logs_in_range(
                    target.contract_address,
                    [target.schema.topic0],
                    chunk.start_block,
                    chunk.end_block,
                ))
            except RangeTooLargeError:
                if chunk.size == 1:
                    raise
                span = max(1, chunk.size // 2)
                shrunk = True
                self._spans[target.label] = span
                self.metrics.range_shrink_inc(target.event_kind)
                log.info(
                    "✂️ range_shrunk",
                    extra={
                        "target": target.label,
                        "from_block": chunk.start_block,
                        "to_block": chunk.end_block,
                        "new_span": span,
                    },
                )
                # remaining chunks were cut at the old span
                rest = BlockRange(chunk.start_block, window.end_block)
                pending = list(rest.split(span))

        # a clean window earns the span back, up to the configured maximum
        if not shrunk and span < self.initial_span:
            grown = min(span * 2, self.initial_span)
            self._spans[target.label] = grown
            log.info(
                "range_grown",
                extra={"target": target.label, "old_span": span, "new_span": grown},
            )

        return logs

    async def _receipt_statuses(self, tx_hashes: set[str]) -> dict[str, str]:
        # cache is per window
        statuses: dict[str, str] = {}
        sem = asyncio.Semaphore(self.receipt_concurrency)

        async def fetch(tx_hash: str):
            async with sem:
                receipt = await self.rpc.transaction_receipt(tx_hash)
            if receipt is None:
                raise ReceiptUnavailableError(f"receipt unavailable for {tx_hash}")
            status = receipt.get("status")
            # pre-Byzantium receipts carry no status
            if status is None or hex_to_int(status) == 1:
                statuses[tx_hash] = "success"
            else:
                statuses[tx_hash] = "failed"

        await _all_or_cancel(fetch(h) for h in sorted(tx_hashes))
        return statuses


async def _all_or_cancel(coros) -> list:
    """
    gather() that does not leave siblings running once one of them fails;
    an aborted window must not keep issuing RPC calls into the next one.
    """
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
