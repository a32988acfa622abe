"""
Chain Layer - External collaborators on BSC.

This module provides:
    - JsonRpcClient: Async JSON-RPC over HTTP (probes, filter polling)
    - PairReader: Reserve queries for PancakeSwap v2 pairs
    - SniperContract: Buy/sell/withdraw through the deployed sniper contract
    - SubmissionError / SubmissionErrorKind: Structured failure classification
    - PairCreatedEvent: Decoded factory discovery event
"""

from .rpc import JsonRpcClient, JsonRpcError, JsonRpcTransportError
from .contracts import (
    PairReader,
    PairReserves,
    SettlementReceipt,
    SniperContract,
    SubmissionError,
    SubmissionErrorKind,
    classify_submission_error,
    make_web3,
)
from .events import (
    PAIR_CREATED_TOPIC,
    EventDecodeError,
    PairCreatedEvent,
    decode_pair_created,
)

__all__ = [
    "JsonRpcClient",
    "JsonRpcError",
    "JsonRpcTransportError",
    "PairReader",
    "PairReserves",
    "SettlementReceipt",
    "SniperContract",
    "SubmissionError",
    "SubmissionErrorKind",
    "classify_submission_error",
    "make_web3",
    "PAIR_CREATED_TOPIC",
    "EventDecodeError",
    "PairCreatedEvent",
    "decode_pair_created",
]
