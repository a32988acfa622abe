"""
Ingestion test fixtures.

Transports are replaced by a scripted in-memory Transport so connection
behaviour (probe timeouts, drops, replays) can be driven from the test.
"""
import asyncio
import pytest

from sniper_bot.chain import PAIR_CREATED_TOPIC
from sniper_bot.ingestion import (
    ConnectionConfig,
    LogFilter,
    LogReceived,
    Transport,
    TransportError,
    TransportKind,
)


class ScriptedTransport(Transport):
    """
    In-memory transport.

    Flags:
        fail_open: open() raises
        hang_probe: probe() never answers
        fail_subscribe: subscribe() raises
        fail_get_logs: get_logs() raises

    `chain` holds logs the node knows about; get_logs() serves them by block.
    push_log() delivers over the live subscription only.
    """

    def __init__(self, url: str, kind: TransportKind = TransportKind.STREAMING):
        super().__init__(url)
        self.kind = kind
        self.fail_open = False
        self.hang_probe = False
        self.fail_subscribe = False
        self.fail_get_logs = False
        self.head = 42
        self.chain = []
        self.get_logs_calls = []
        self.open_calls = 0
        self.subscribe_calls = 0
        self.close_calls = 0

    async def open(self, sink):
        self.open_calls += 1
        self._sink = sink
        self._failed = False
        self._closing = False
        if self.fail_open:
            raise ConnectionRefusedError(f"{self.url} refused")

    async def probe(self) -> int:
        if self.hang_probe:
            await asyncio.sleep(3600)
        return self.head

    async def subscribe(self, log_filter) -> str:
        self.subscribe_calls += 1
        if self.fail_subscribe:
            raise TransportError("subscription rejected")
        return f"0xsub{self.subscribe_calls}"

    async def get_logs(self, log_filter, from_block, to_block=None):
        self.get_logs_calls.append(from_block)
        if self.fail_get_logs:
            raise TransportError("eth_getLogs rejected")
        return [
            log for log in self.chain
            if int(log["blockNumber"], 16) >= from_block
            and (to_block is None or int(log["blockNumber"], 16) <= to_block)
        ]

    async def close(self):
        self.close_calls += 1
        self._closing = True

    def push_log(self, log):
        """Deliver a log, even after close (simulates a late message)."""
        self._emit(LogReceived(self, log))

    def mine(self, log):
        """Record a log on chain without delivering it."""
        self.chain.append(log)

    def drop(self, error=None):
        self._fail(error or ConnectionResetError("connection reset"))


def make_log(log_index: int = 0, tx_hash: str = "0xabc", token_suffix: str = "11", block: int = 0x10):
    return {
        "topics": [
            PAIR_CREATED_TOPIC,
            "0x000000000000000000000000bb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c",
            "0x000000000000000000000000" + token_suffix * 20,
        ],
        "data": "0x" + "00" * 12 + "22" * 20 + "00" * 31 + "01",
        "blockNumber": hex(block),
        "transactionHash": tx_hash,
        "logIndex": hex(log_index),
    }


async def wait_for_phase(manager, phase, timeout: float = 2.0):
    """Poll until the manager reaches `phase`."""

    async def _wait():
        while manager.state.phase is not phase:
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_wait(), timeout=timeout)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def transport_factory():
    """Factory: transport_factory(url, kind=TransportKind.STREAMING)."""
    return ScriptedTransport


@pytest.fixture
def log_factory():
    """Factory: log_factory(log_index=0, tx_hash="0xabc", token_suffix="11", block=0x10)."""
    return make_log


@pytest.fixture
def phase_waiter():
    return wait_for_phase


@pytest.fixture
def log_filter():
    return LogFilter(
        address="0xcA143Ce32Fe78f1f7019d7d551a6402fC5350c73",
        topics=(PAIR_CREATED_TOPIC,),
    )


@pytest.fixture
def fast_config():
    """Short delays so reconnection tests run in milliseconds."""
    return ConnectionConfig(
        max_reconnect_attempts=3,
        reconnect_delay_seconds=0.01,
        connection_probe_timeout_seconds=0.05,
    )
