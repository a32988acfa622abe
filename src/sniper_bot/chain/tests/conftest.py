"""
Chain layer test fixtures.

Nodes and contracts are mocked; no test opens a connection.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock


# =============================================================================
# Log Fixtures
# =============================================================================


@pytest.fixture
def pair_created_log():
    """Raw PairCreated log for WBNB/token as a node would deliver it."""
    return {
        "address": "0xca143ce32fe78f1f7019d7d551a6402fc5350c73",
        "topics": [
            "0x0d3648bd0f6ba80134a33ba9275ac585d9d315f0ad8355cddefde31afa28d0e9",
            "0x000000000000000000000000bb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c",
            "0x0000000000000000000000001111111111111111111111111111111111111111",
        ],
        "data": (
            "0x"
            "0000000000000000000000002222222222222222222222222222222222222222"
            "000000000000000000000000000000000000000000000000000000000001e240"
        ),
        "blockNumber": "0x2a",
        "transactionHash": "0xABCDEF",
        "logIndex": "0x3",
    }


# =============================================================================
# HTTP Fixtures
# =============================================================================


def _response(status=200, body=None, text=""):
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=body)
    response.text = AsyncMock(return_value=text)
    return response


@pytest.fixture
def make_session():
    """Factory for an aiohttp-like session whose post() yields one response."""

    def factory(status=200, body=None, text="", error=None):
        session = MagicMock()
        if error is not None:
            session.post.side_effect = error
        else:
            session.post.return_value.__aenter__.return_value = _response(status, body, text)
        session.close = AsyncMock()
        return session

    return factory
