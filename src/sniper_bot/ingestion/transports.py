"""
Event feed transports.

Two ways to follow factory logs, tried in priority order by the
ConnectionManager:

    WebSocketTransport   - eth_subscribe("logs") over a websocket (low latency)
    HttpPollingTransport - eth_newFilter + eth_getFilterChanges over HTTP (fallback)

Transports never drive reconnection themselves. They push LogReceived and
TransportFailed messages into the sink handed to open(); the manager's single
loop decides what to do with them. A transport can be reopened after close().

Both also answer eth_getLogs so the manager can backfill blocks missed while
the feed was down.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from sniper_bot.chain.rpc import JsonRpcClient, JsonRpcError

logger = logging.getLogger(__name__)


class TransportKind(str, Enum):
    """Transport family, in preference order."""
    STREAMING = "websocket"
    POLLING = "http_polling"


class TransportError(Exception):
    """Raised when a transport is used while not open, or drops."""
    pass


@dataclass(frozen=True)
class LogFilter:
    """eth log filter for the subscription."""
    address: str
    topics: Tuple[str, ...]

    def to_params(self, from_block: Optional[int] = None, to_block: Optional[int] = None) -> dict:
        params: Dict[str, Any] = {"address": self.address, "topics": list(self.topics)}
        if from_block is not None:
            params["fromBlock"] = hex(from_block)
        if to_block is not None:
            params["toBlock"] = hex(to_block)
        return params


@dataclass(frozen=True)
class LogReceived:
    """A raw log delivered by a transport."""
    transport: "Transport"
    log: Dict[str, Any]


@dataclass(frozen=True)
class TransportFailed:
    """The transport reported an error or unexpected closure."""
    transport: "Transport"
    error: BaseException


FeedMessage = Union[LogReceived, TransportFailed]
MessageSink = Callable[[FeedMessage], None]


class Transport(ABC):
    """Common interface for feed transports."""

    kind: TransportKind

    def __init__(self, url: str) -> None:
        self.url = url
        self._sink: Optional[MessageSink] = None
        self._failed = False
        self._closing = False

    @property
    def name(self) -> str:
        return f"{self.kind.value}:{self.url}"

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.url}>"

    @abstractmethod
    async def open(self, sink: MessageSink) -> None:
        """Establish the connection; messages go to `sink` from now on."""

    @abstractmethod
    async def probe(self) -> int:
        """Liveness probe (eth_blockNumber). Returns the head block."""

    @abstractmethod
    async def subscribe(self, log_filter: LogFilter) -> str:
        """Register the log subscription, clearing any stale one first."""

    @abstractmethod
    async def get_logs(
        self, log_filter: LogFilter, from_block: int, to_block: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Historical logs matching `log_filter` (eth_getLogs); `to_block` None means latest."""

    @abstractmethod
    async def close(self) -> None:
        """Release the connection. No failure is reported for a requested close."""

    def _emit(self, message: FeedMessage) -> None:
        if self._sink is not None:
            self._sink(message)

    def _fail(self, error: BaseException) -> None:
        """Report a failure once per open()."""
        if self._closing or self._failed:
            return
        self._failed = True
        self._emit(TransportFailed(self, error))


class WebSocketTransport(Transport):
    """
    Streaming transport over a JSON-RPC websocket.

    Liveness is maintained with websocket pings; a missed pong closes the
    connection, which is reported as a failure.
    """

    kind = TransportKind.STREAMING

    def __init__(
        self,
        url: str,
        request_timeout: float = 10.0,
        ping_interval: float = 20.0,
        ping_timeout: float = 10.0,
    ) -> None:
        super().__init__(url)
        self._request_timeout = request_timeout
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout

        self._ws = None
        self._receive_task: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._subscription_id: Optional[str] = None

    async def open(self, sink: MessageSink) -> None:
        self._sink = sink
        self._failed = False
        self._closing = False
        self._subscription_id = None

        self._ws = await websockets.connect(
            self.url,
            ping_interval=self._ping_interval,
            ping_timeout=self._ping_timeout,
            close_timeout=5,
            open_timeout=self._request_timeout,
        )
        self._receive_task = asyncio.create_task(
            self._receive_loop(), name=f"ws_receive:{self.url}"
        )
        logger.debug(f"WebSocket open: {self.url}")

    async def probe(self) -> int:
        result = await self._request("eth_blockNumber")
        return int(result, 16)

    async def subscribe(self, log_filter: LogFilter) -> str:
        if self._subscription_id:
            stale, self._subscription_id = self._subscription_id, None
            try:
                await self._request("eth_unsubscribe", [stale])
            except (JsonRpcError, TransportError, asyncio.TimeoutError) as e:
                logger.debug(f"Could not clear stale subscription {stale}: {e}")

        subscription_id = await self._request("eth_subscribe", ["logs", log_filter.to_params()])
        self._subscription_id = subscription_id
        logger.info(f"Subscribed to logs via {self.url} (id={subscription_id})")
        return subscription_id

    async def get_logs(
        self, log_filter: LogFilter, from_block: int, to_block: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        result = await self._request("eth_getLogs", [log_filter.to_params(from_block, to_block)])
        return [log for log in result or [] if isinstance(log, dict)]

    async def close(self) -> None:
        self._closing = True

        if self._receive_task:
            self._receive_task.cancel()
            await asyncio.gather(self._receive_task, return_exceptions=True)
            self._receive_task = None

        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportError("Transport closed"))
        self._pending.clear()

        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")
            self._ws = None

        self._subscription_id = None

    async def _request(self, method: str, params: Optional[list] = None) -> Any:
        if self._ws is None:
            raise TransportError(f"WebSocket {self.url} is not open")

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await self._ws.send(json.dumps({
                "jsonrpc": "2.0",
                "id": request_id,
                "method": method,
                "params": params or [],
            }))
            return await asyncio.wait_for(future, timeout=self._request_timeout)
        except ConnectionClosed as e:
            raise TransportError(f"WebSocket closed during {method}: {e}") from e
        finally:
            self._pending.pop(request_id, None)

    async def _receive_loop(self) -> None:
        try:
            while True:
                raw = await self._ws.recv()
                self._handle_message(raw)

        except asyncio.CancelledError:
            raise

        except ConnectionClosedOK as e:
            logger.info(f"WebSocket closed: {e}")
            self._fail(TransportError(f"WebSocket closed: {e}"))

        except ConnectionClosed as e:
            logger.warning(f"WebSocket connection closed with error: {e}")
            self._fail(e)

        except Exception as e:
            logger.error(f"Error in WebSocket receive loop: {e}")
            self._fail(e)

    def _handle_message(self, raw: Union[str, bytes]) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse message: {e}")
            return

        if not isinstance(data, dict):
            logger.debug(f"Unexpected message shape: {str(data)[:200]}")
            return

        request_id = data.get("id")
        if request_id is not None:
            future = self._pending.get(request_id)
            if future is None or future.done():
                return
            if data.get("error"):
                error = data["error"]
                future.set_exception(
                    JsonRpcError(str(error.get("message", error)), code=error.get("code"))
                )
            else:
                future.set_result(data.get("result"))
            return

        if data.get("method") == "eth_subscription":
            params = data.get("params") or {}
            if params.get("subscription") != self._subscription_id:
                # Leftover from a cleared subscription
                logger.debug(f"Dropping log for stale subscription {params.get('subscription')}")
                return
            log = params.get("result")
            if isinstance(log, dict):
                self._emit(LogReceived(self, log))
            return

        logger.debug(f"Unknown message: {str(data)[:200]}")


class HttpPollingTransport(Transport):
    """
    Request/response fallback: installs a log filter and polls for changes.

    The filter id survives close() so the next subscribe() can uninstall
    the stale filter before installing a new one.
    """

    kind = TransportKind.POLLING

    def __init__(
        self,
        url: str,
        poll_interval: float = 3.0,
        request_timeout: float = 10.0,
    ) -> None:
        super().__init__(url)
        self._poll_interval = poll_interval
        self._request_timeout = request_timeout

        self._client: Optional[JsonRpcClient] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._filter_id: Optional[str] = None

    async def open(self, sink: MessageSink) -> None:
        self._sink = sink
        self._failed = False
        self._closing = False
        self._client = JsonRpcClient(self.url, timeout=self._request_timeout)

    async def probe(self) -> int:
        return await self._require_client().block_number()

    async def subscribe(self, log_filter: LogFilter) -> str:
        client = self._require_client()
        await self._stop_polling()

        if self._filter_id:
            stale, self._filter_id = self._filter_id, None
            try:
                await client.call("eth_uninstallFilter", [stale])
            except JsonRpcError as e:
                logger.debug(f"Could not uninstall stale filter {stale}: {e}")

        filter_id = await client.call("eth_newFilter", [log_filter.to_params()])
        self._filter_id = filter_id
        self._poll_task = asyncio.create_task(
            self._poll_loop(filter_id), name=f"http_poll:{self.url}"
        )
        logger.info(f"Installed log filter via {self.url} (id={filter_id})")
        return filter_id

    async def get_logs(
        self, log_filter: LogFilter, from_block: int, to_block: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        result = await self._require_client().call(
            "eth_getLogs", [log_filter.to_params(from_block, to_block)]
        )
        return [log for log in result or [] if isinstance(log, dict)]

    async def close(self) -> None:
        self._closing = True
        await self._stop_polling()
        if self._client is not None:
            await self._client.close()
            self._client = None

    def _require_client(self) -> JsonRpcClient:
        if self._client is None:
            raise TransportError(f"HTTP transport {self.url} is not open")
        return self._client

    async def _stop_polling(self) -> None:
        if self._poll_task:
            self._poll_task.cancel()
            await asyncio.gather(self._poll_task, return_exceptions=True)
            self._poll_task = None

    async def _poll_loop(self, filter_id: str) -> None:
        try:
            while True:
                await asyncio.sleep(self._poll_interval)
                changes = await self._require_client().call("eth_getFilterChanges", [filter_id])
                for log in changes or []:
                    if isinstance(log, dict):
                        self._emit(LogReceived(self, log))

        except asyncio.CancelledError:
            raise

        except Exception as e:
            logger.warning(f"Polling {self.url} failed: {e}")
            self._fail(e)


def build_transports(
    ws_endpoints,
    http_endpoints,
    request_timeout: float = 10.0,
    poll_interval: float = 3.0,
) -> list[Transport]:
    """Transports in priority order: every websocket, then every HTTP endpoint."""
    transports: list[Transport] = [
        WebSocketTransport(url, request_timeout=request_timeout) for url in ws_endpoints
    ]
    transports.extend(
        HttpPollingTransport(url, poll_interval=poll_interval, request_timeout=request_timeout)
        for url in http_endpoints
    )
    return transports
