"""
Ingestion Layer - Live discovery of new pairs.

This module provides:
    - ConnectionManager: Feed state machine with fallback and reconnection
    - ConnectionState / ConnectionPhase / ConnectionConfig
    - WebSocketTransport: eth_subscribe over a websocket
    - HttpPollingTransport: Log filter polling over HTTP
"""

from .connection import (
    ConnectionConfig,
    ConnectionManager,
    ConnectionPhase,
    ConnectionState,
    FatalConnectionError,
)
from .transports import (
    FeedMessage,
    HttpPollingTransport,
    LogFilter,
    LogReceived,
    Transport,
    TransportError,
    TransportFailed,
    TransportKind,
    WebSocketTransport,
    build_transports,
)

__all__ = [
    "ConnectionConfig",
    "ConnectionManager",
    "ConnectionPhase",
    "ConnectionState",
    "FatalConnectionError",
    "FeedMessage",
    "HttpPollingTransport",
    "LogFilter",
    "LogReceived",
    "Transport",
    "TransportError",
    "TransportFailed",
    "TransportKind",
    "WebSocketTransport",
    "build_transports",
]
