"""
Shared test fixtures for integration tests.

This file provides fixtures that span multiple components,
unlike component-specific fixtures in src/sniper_bot/{component}/tests/conftest.py

Nothing here touches a node: pools are in-memory reserve sources and the
feed runs over a scripted transport.
"""

import asyncio
import pytest
from decimal import Decimal

from sniper_bot.chain import PAIR_CREATED_TOPIC, PairReserves
from sniper_bot.ingestion import (
    ConnectionConfig,
    LogFilter,
    LogReceived,
    Transport,
    TransportKind,
)

WBNB = "0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c"
TOKEN = "0x" + "11" * 20
PAIR = "0x" + "22" * 20
WEI = 10**18


class InMemoryPools:
    """Reserve source backed by a dict; tests move prices by editing reserves."""

    def __init__(self):
        self.reserves = {}
        self.queries = 0

    def set_pool(self, pair_id, token, base_bnb, tokens):
        self.reserves[pair_id.lower()] = PairReserves(
            token0=WBNB,
            reserve0=int(Decimal(str(base_bnb)) * WEI),
            token1=token,
            reserve1=int(Decimal(str(tokens)) * WEI),
        )

    def scale_price(self, pair_id, factor):
        """Multiply the pool rate by `factor` (moves the base reserve)."""
        current = self.reserves[pair_id.lower()]
        self.reserves[pair_id.lower()] = PairReserves(
            token0=current.token0,
            reserve0=int(Decimal(current.reserve0) * Decimal(str(factor))),
            token1=current.token1,
            reserve1=current.reserve1,
        )

    async def query_reserves(self, pair_id):
        self.queries += 1
        return self.reserves[pair_id.lower()]


class ScriptedTransport(Transport):
    """
    In-memory feed transport; `fail_open` makes reconnects fail.

    mine() records a log the node can serve from get_logs() without pushing it
    over the subscription.
    """

    kind = TransportKind.STREAMING

    def __init__(self, url="wss://scripted"):
        super().__init__(url)
        self.fail_open = False
        self.open_calls = 0
        self.head = 100
        self.chain = []

    async def open(self, sink):
        self.open_calls += 1
        self._sink = sink
        self._failed = False
        self._closing = False
        if self.fail_open:
            raise ConnectionRefusedError(f"{self.url} refused")

    async def probe(self):
        return self.head

    async def subscribe(self, log_filter):
        return "0xsub"

    async def get_logs(self, log_filter, from_block, to_block=None):
        return [log for log in self.chain if int(log["blockNumber"], 16) >= from_block]

    async def close(self):
        self._closing = True

    def push_log(self, log):
        self._emit(LogReceived(self, log))

    def mine(self, log):
        self.chain.append(log)

    def drop(self):
        self._fail(ConnectionResetError("connection reset"))


def pair_created_log(tx_hash="0xcreate", log_index=0, token=TOKEN, pair=PAIR, block=100):
    return {
        "topics": [
            PAIR_CREATED_TOPIC,
            "0x" + "00" * 12 + WBNB[2:],
            "0x" + "00" * 12 + token[2:],
        ],
        "data": "0x" + "00" * 12 + pair[2:] + "00" * 31 + "01",
        "blockNumber": hex(block),
        "transactionHash": tx_hash,
        "logIndex": hex(log_index),
    }


async def wait_until(predicate, timeout: float = 2.0):
    async def _wait():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_wait(), timeout=timeout)


# =============================================================================
# Chain Fixtures
# =============================================================================


@pytest.fixture
def pools():
    """In-memory pools with one WBNB/TOKEN pair at 10 BNB : 1,000,000 tokens."""
    source = InMemoryPools()
    source.set_pool(PAIR, TOKEN, base_bnb=10, tokens=1_000_000)
    return source


@pytest.fixture
def log_factory():
    """Factory: log_factory(tx_hash="0xcreate", log_index=0, token=TOKEN, pair=PAIR, block=100)."""
    return pair_created_log


# =============================================================================
# Feed Fixtures
# =============================================================================


@pytest.fixture
def scripted_transport():
    return ScriptedTransport()


@pytest.fixture
def factory_filter():
    return LogFilter(
        address="0xcA143Ce32Fe78f1f7019d7d551a6402fC5350c73",
        topics=(PAIR_CREATED_TOPIC,),
    )


@pytest.fixture
def fast_connection_config():
    return ConnectionConfig(
        max_reconnect_attempts=3,
        reconnect_delay_seconds=0.01,
        connection_probe_timeout_seconds=0.1,
    )


@pytest.fixture
def waiter():
    """wait_until(predicate, timeout=2.0)."""
    return wait_until
