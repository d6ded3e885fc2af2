import pytest
from eth_abi import encode as abi_encode
from sqlalchemy import create_engine
from web3 import Web3

from event_ingestion.ingestion.scanner import ScanTarget
from event_ingestion.metrics import MetricsContext
from event_ingestion.rpc_provider import (
    RpcManager,
    RpcPool,
    RpcTrace,
    RpcTransportError,
    raise_for_rpc_error,
)
from event_ingestion.schema import create_schema
from event_ingestion.web3_utils import EventSchema

TRANSFER_SIG = "Transfer(address indexed from, address indexed to, uint256 value)"
APPROVAL_SIG = "Approval(address indexed owner, address indexed spender, uint256 value)"

TOKEN = "0x55d398326f99059fF775485246999027B3197955"
ALICE = "0x1111111111111111111111111111111111111111"
BOB = "0x2222222222222222222222222222222222222222"


def topic_address(address: str) -> str:
    return "0x" + "0" * 24 + address.lower()[2:]


def make_log(schema: EventSchema, block: int, tx_index: int, log_index: int, *, address=TOKEN, value=1, removed=False) -> dict:
    return {
        "address": address,
        "topics": [schema.topic0, topic_address(ALICE), topic_address(BOB)],
        "data": "0x" + abi_encode(["uint256"], [value]).hex(),
        "blockNumber": hex(block),
        "transactionHash": tx_hash(block, tx_index),
        "logIndex": hex(log_index),
        "removed": removed,
    }


def tx_hash(block: int, tx_index: int) -> str:
    return Web3.to_hex(Web3.keccak(text=f"{block}:{tx_index}"))


class FakeChain:
    """
    In-process JSON-RPC transport with the AsyncRpcClient interface.

    Errors are raised through raise_for_rpc_error so the client's
    classification is exercised.
    """

    def __init__(self, head: int = 0, max_range: int | None = None):
        self.head = head
        self.max_range = max_range
        self.logs: list[dict] = []
        self.receipts: dict[str, dict | None] = {}
        self.down_urls: set[str] = set()
        self.calls: list[tuple[str, str, list]] = []
        self.log_requests: list[tuple[int, int]] = []
        self.closed = False

    def add_log(self, raw: dict, status: str | None = "0x1"):
        self.logs.append(raw)
        h = raw["transactionHash"]
        if h not in self.receipts:
            self.receipts[h] = {"transactionHash": h} if status is None else {"transactionHash": h, "status": status}

    async def call(self, url: str, method: str, params: list):
        self.calls.append((url, method, params))
        if url in self.down_urls:
            raise RpcTransportError(f"{url} unreachable")

        if method == "eth_blockNumber":
            return hex(self.head), RpcTrace(method=method, total_ms=1.0)

        if method == "eth_getLogs":
            flt = params[0]
            start, end = int(flt["fromBlock"], 16), int(flt["toBlock"], 16)
            if self.max_range is not None and end - start + 1 > self.max_range:
                raise_for_rpc_error({
                    "code": -32005,
                    "message": f"block range exceeds {self.max_range}",
                })
            self.log_requests.append((start, end))
            topic0 = flt["topics"][0]
            found = [
                dict(raw)
                for raw in self.logs
                if raw["address"].lower() == flt["address"].lower()
                and raw["topics"][0] == topic0
                and start <= int(raw["blockNumber"], 16) <= end
            ]
            return found, RpcTrace(method=method, total_ms=1.0)

        if method == "eth_getTransactionReceipt":
            return self.receipts.get(params[0]), RpcTrace(method=method, total_ms=1.0)

        raise_for_rpc_error({"code": -32601, "message": f"method {method} not found"})

    async def close(self):
        self.closed = True


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


async def no_sleep(_seconds: float):
    return None


@pytest.fixture
def metrics():
    return MetricsContext.for_job(chain="test", job="pytest")


@pytest.fixture
def db(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'indexer.db'}",
        connect_args={"check_same_thread": False},
    )
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def transfer_schema():
    return EventSchema.from_signature(TRANSFER_SIG)


@pytest.fixture
def approval_schema():
    return EventSchema.from_signature(APPROVAL_SIG)


@pytest.fixture
def targets(transfer_schema, approval_schema):
    return [
        ScanTarget(TOKEN, "USDT", "Transfer", transfer_schema),
        ScanTarget(TOKEN, "USDT", "Approval", approval_schema),
    ]


@pytest.fixture
def chain():
    return FakeChain(head=1_000)


@pytest.fixture
def rpc(chain, metrics):
    pool = RpcPool.from_urls(["http://primary", "http://secondary"])
    return RpcManager(pool, chain, metrics=metrics, max_retries=2, sleep=no_sleep)
