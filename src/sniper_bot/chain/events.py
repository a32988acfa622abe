"""
Factory event decoding.

PancakeSwap v2 emits:

    event PairCreated(address indexed token0, address indexed token1, address pair, uint)

token0/token1 arrive as 32-byte topics, the pair address and the pair index
are packed into the data field.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from web3 import Web3

# keccak("PairCreated(address,address,address,uint256)")
PAIR_CREATED_TOPIC = "0x0d3648bd0f6ba80134a33ba9275ac585d9d315f0ad8355cddefde31afa28d0e9"


class EventDecodeError(ValueError):
    """Raised when a log cannot be decoded as PairCreated."""
    pass


@dataclass(frozen=True)
class PairCreatedEvent:
    """
    A new pair discovered on the factory.

    Attributes:
        asset_a: token0 address (lower-case)
        asset_b: token1 address (lower-case)
        pair_id: Pair contract address (checksummed)
        block_ref: Block number the pair was created in
        tx_hash: Creating transaction hash
        log_index: Position of the log within the block
    """
    asset_a: str
    asset_b: str
    pair_id: str
    block_ref: int
    tx_hash: str
    log_index: int

    @property
    def event_key(self) -> tuple[str, int]:
        """Identity of the underlying log, stable across re-deliveries."""
        return (self.tx_hash, self.log_index)

    def other_asset(self, base_currency: str) -> Optional[str]:
        """Return the non-base asset if the pair trades against base_currency."""
        base = base_currency.lower()
        if self.asset_a == base:
            return self.asset_b
        if self.asset_b == base:
            return self.asset_a
        return None


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text if text.startswith("0x") else "0x" + text


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(str(value), 16)


def _topic_address(topic: Any) -> str:
    return "0x" + _hex(topic)[-40:].lower()


def decode_pair_created(log: Mapping[str, Any]) -> PairCreatedEvent:
    """
    Decode a raw eth log (JSON-RPC shape) into a PairCreatedEvent.

    Raises:
        EventDecodeError: The log is not a well-formed PairCreated log
    """
    try:
        topics = log["topics"]
        if len(topics) < 3 or _hex(topics[0]).lower() != PAIR_CREATED_TOPIC:
            raise EventDecodeError(f"Not a PairCreated log: {topics!r}")

        data = _hex(log["data"])[2:]
        if len(data) < 64:
            raise EventDecodeError(f"PairCreated data too short: {len(data)} chars")

        pair = Web3.to_checksum_address("0x" + data[24:64])

        return PairCreatedEvent(
            asset_a=_topic_address(topics[1]),
            asset_b=_topic_address(topics[2]),
            pair_id=pair,
            block_ref=_to_int(log.get("blockNumber", 0)),
            tx_hash=_hex(log.get("transactionHash", "")).lower(),
            log_index=_to_int(log.get("logIndex", 0)),
        )
    except EventDecodeError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise EventDecodeError(f"Malformed log: {e}") from e
