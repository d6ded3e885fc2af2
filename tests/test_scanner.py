import asyncio

import pytest

from conftest import TOKEN, FakeChain, make_log, no_sleep, tx_hash
from event_ingestion.ingestion.scanner import EventScanner, ReceiptUnavailableError, ScanTarget
from event_ingestion.rpc_provider import RangeTooLargeError, RpcManager, RpcPool, RpcResponseError


def manager(chain, metrics):
    return RpcManager(RpcPool.from_urls(["http://node"]), chain, metrics=metrics, max_retries=1, sleep=no_sleep)


async def test_range_shrink_converges_and_never_exceeds_limit(metrics, transfer_schema):
    limit = 700
    chain = FakeChain(head=20_000, max_range=limit)
    for block in (1, 2_500, 6_001, 9_999):
        chain.add_log(make_log(transfer_schema, block, 0, 0))

    target = ScanTarget(TOKEN, "USDT", "Transfer", transfer_schema)
    scanner = EventScanner(manager(chain, metrics), [target], metrics=metrics, initial_span=10_000)

    scan = await scanner.scan_window(0, 9_999)

    assert [e.block_number for e in scan.events] == [1, 2_500, 6_001, 9_999]
    assert chain.log_requests, "no successful getLogs"
    assert all(end - start + 1 <= limit for start, end in chain.log_requests)
    assert all(end - start + 1 <= scanner.span_for(target) for start, end in chain.log_requests)
    # successful requests tile the window exactly
    covered = sorted(chain.log_requests)
    assert covered[0][0] == 0 and covered[-1][1] == 9_999
    assert all(b[0] == a[1] + 1 for a, b in zip(covered, covered[1:]))

    # the learned span carries over to the next window without new rejections
    learned = scanner.span_for(target)
    assert learned <= limit
    chain.calls.clear()
    await scanner.scan_window(10_000, 10_000 + 3 * learned - 1)
    assert len([c for c in chain.calls if c[1] == "eth_getLogs"]) == 3


async def test_span_grows_back_after_clean_windows(metrics, transfer_schema):
    chain = FakeChain(head=100_000, max_range=10)
    target = ScanTarget(TOKEN, "USDT", "Transfer", transfer_schema)
    scanner = EventScanner(manager(chain, metrics), [target], metrics=metrics, initial_span=1_000)

    await scanner.scan_window(0, 999)
    assert scanner.span_for(target) <= 10

    # provider lifts its limit: each clean window doubles the span
    chain.max_range = None
    start = 1_000
    spans = []
    for _ in range(10):
        await scanner.scan_window(start, start + 999)
        spans.append(scanner.span_for(target))
        start += 1_000

    assert spans == sorted(spans)
    assert spans[-1] == 1_000

    chain.calls.clear()
    await scanner.scan_window(start, start + 999)
    assert len([c for c in chain.calls if c[1] == "eth_getLogs"]) == 1


async def test_single_block_rejection_is_reraised(metrics, transfer_schema):
    chain = FakeChain(head=100, max_range=0)
    target = ScanTarget(TOKEN, "USDT", "Transfer", transfer_schema)
    scanner = EventScanner(manager(chain, metrics), [target], metrics=metrics, initial_span=8)

    with pytest.raises(RangeTooLargeError):
        await scanner.scan_window(0, 7)
    assert scanner.span_for(target) == 1


async def test_removed_logs_and_decode_failures_are_dropped(metrics, targets, transfer_schema):
    chain = FakeChain(head=100)
    good = make_log(transfer_schema, 10, 0, 0)
    removed = make_log(transfer_schema, 10, 1, 1, removed=True)
    broken = make_log(transfer_schema, 11, 0, 0)
    broken["data"] = "0xdead"
    for raw in (good, removed, broken):
        chain.add_log(raw)

    scanner = EventScanner(manager(chain, metrics), targets, metrics=metrics)
    scan = await scanner.scan_window(0, 20)

    assert [e.transaction_hash for e in scan.events] == [good["transactionHash"]]
    assert scan.decode_failures == 1
    assert scan.per_target_counts == {"USDT.Transfer": 1}


async def test_failed_transactions_are_excluded(metrics, targets, transfer_schema, approval_schema):
    chain = FakeChain(head=100)
    ok = make_log(transfer_schema, 5, 0, 0)
    reverted = make_log(transfer_schema, 5, 1, 1)
    legacy = make_log(approval_schema, 6, 0, 0)
    chain.add_log(ok, status="0x1")
    chain.add_log(reverted, status="0x0")
    chain.add_log(legacy, status=None)

    scanner = EventScanner(manager(chain, metrics), targets, metrics=metrics)
    scan = await scanner.scan_window(0, 10)

    hashes = {e.transaction_hash for e in scan.events}
    assert reverted["transactionHash"] not in hashes
    assert hashes == {ok["transactionHash"], legacy["transactionHash"]}
    assert scan.failed_tx_dropped == 1
    assert all(e.transaction_status == "success" for e in scan.events)


async def test_receipts_fetched_once_per_transaction(metrics, targets, transfer_schema, approval_schema):
    chain = FakeChain(head=100)
    transfer = make_log(transfer_schema, 7, 0, 0)
    approval = make_log(approval_schema, 7, 0, 1)
    chain.add_log(transfer)
    chain.add_log(approval)
    assert transfer["transactionHash"] == approval["transactionHash"]

    scanner = EventScanner(manager(chain, metrics), targets, metrics=metrics)
    scan = await scanner.scan_window(0, 10)

    assert [(e.log_index, e.event_kind) for e in scan.events] == [(0, "Transfer"), (1, "Approval")]
    assert len([c for c in chain.calls if c[1] == "eth_getTransactionReceipt"]) == 1


async def test_missing_receipt_aborts_window(metrics, targets, transfer_schema):
    chain = FakeChain(head=100)
    raw = make_log(transfer_schema, 3, 0, 0)
    chain.add_log(raw)
    chain.receipts[raw["transactionHash"]] = None

    scanner = EventScanner(manager(chain, metrics), targets, metrics=metrics)
    with pytest.raises(ReceiptUnavailableError):
        await scanner.scan_window(0, 10)


async def test_target_failure_aborts_window(metrics, transfer_schema):
    chain = FakeChain(head=100)
    chain.add_log(make_log(transfer_schema, 3, 0, 0))

    class BrokenTargetRpc:
        def __init__(self, inner):
            self.inner = inner

        async def logs_in_range(self, address, topics, from_block, to_block):
            if address == "0xbad0000000000000000000000000000000000000":
                raise RpcResponseError(-32602, "invalid address")
            return await self.inner.logs_in_range(address, topics, from_block, to_block)

        async def transaction_receipt(self, h):
            return await self.inner.transaction_receipt(h)

    targets = [
        ScanTarget(TOKEN, "USDT", "Transfer", transfer_schema),
        ScanTarget("0xbad0000000000000000000000000000000000000", "Bad", "Transfer", transfer_schema),
    ]
    scanner = EventScanner(BrokenTargetRpc(manager(chain, metrics)), targets, metrics=metrics)

    with pytest.raises(RpcResponseError):
        await scanner.scan_window(0, 10)


def test_tx_hash_helper_is_stable():
    assert tx_hash(1, 0) == tx_hash(1, 0)
    assert tx_hash(1, 0) != tx_hash(1, 1)


async def test_failed_window_cancels_sibling_targets(metrics, transfer_schema):
    chain = FakeChain(head=100)
    released = asyncio.Event()
    cancelled = []

    class SlowAndBrokenRpc:
        async def logs_in_range(self, address, topics, from_block, to_block):
            if address == TOKEN:
                try:
                    await released.wait()
                except asyncio.CancelledError:
                    cancelled.append(address)
                    raise
                return []
            raise RpcResponseError(-32602, "invalid address")

        async def transaction_receipt(self, h):
            return None

    targets = [
        ScanTarget(TOKEN, "USDT", "Transfer", transfer_schema),
        ScanTarget("0xbad0000000000000000000000000000000000000", "Bad", "Transfer", transfer_schema),
    ]
    scanner = EventScanner(SlowAndBrokenRpc(), targets, metrics=metrics)

    with pytest.raises(RpcResponseError):
        await scanner.scan_window(0, 10, concurrency=2)
    assert cancelled == [TOKEN]
