"""
JSON-RPC client for BSC nodes over HTTP.

Thin async wrapper used by the polling transport and for liveness probes.
Every call is bounded by the session timeout.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Optional

import aiohttp

logger = logging.getLogger(__name__)


class JsonRpcError(Exception):
    """Base exception for JSON-RPC failures."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class JsonRpcTransportError(JsonRpcError):
    """The node could not be reached or returned a non-JSON-RPC response."""
    pass


class JsonRpcClient:
    """
    Async JSON-RPC client.

    Usage:
        async with JsonRpcClient("https://bsc-dataseed1.binance.org/") as client:
            block = await client.block_number()
            logs = await client.call("eth_getFilterChanges", [filter_id])
    """

    def __init__(
        self,
        url: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
    ):
        """
        Initialize the client.

        Args:
            url: HTTP(S) endpoint of the node
            session: Optional aiohttp session (created if not provided)
            timeout: Total timeout per request in seconds
        """
        self.url = url
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "JsonRpcClient":
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the client session."""
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    async def call(self, method: str, params: Optional[list] = None) -> Any:
        """
        Issue a single JSON-RPC request.

        Raises:
            JsonRpcError: The node answered with an error object
            JsonRpcTransportError: HTTP failure, timeout, or malformed response
        """
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True

        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }

        try:
            async with self._session.post(self.url, json=payload) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise JsonRpcTransportError(
                        f"HTTP {response.status} from {self.url}: {text[:200]}",
                        code=response.status,
                    )
                body = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise JsonRpcTransportError(f"Timeout calling {method} on {self.url}") from e
        except aiohttp.ClientError as e:
            raise JsonRpcTransportError(f"{method} failed on {self.url}: {e}") from e

        if not isinstance(body, dict):
            raise JsonRpcTransportError(f"Malformed response to {method}: {body!r}")

        if body.get("error"):
            error = body["error"]
            raise JsonRpcError(
                f"{method}: {error.get('message', error)}",
                code=error.get("code"),
            )

        return body.get("result")

    async def block_number(self) -> int:
        """Current head block, used as the liveness probe."""
        result = await self.call("eth_blockNumber")
        return int(result, 16)
