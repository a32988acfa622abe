"""
Pricing test fixtures.

Reserve reads are served by an in-memory source; no test talks to a node.
"""
import pytest
from unittest.mock import AsyncMock

from sniper_bot.chain import PairReserves
from sniper_bot.pricing import PriceOracle

WBNB = "0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c"
TOKEN = "0x1111111111111111111111111111111111111111"
PAIR = "0x2222222222222222222222222222222222222222"
WEI = 10**18


# =============================================================================
# Reserve Fixtures
# =============================================================================


@pytest.fixture
def reserve_source():
    """Reserve source returning 10 BNB against 1,000,000 tokens (base in slot 0)."""
    source = AsyncMock()
    source.query_reserves = AsyncMock(
        return_value=PairReserves(
            token0=WBNB,
            reserve0=10 * WEI,
            token1=TOKEN,
            reserve1=1_000_000 * WEI,
        )
    )
    return source


@pytest.fixture
def oracle(reserve_source):
    """Oracle over the in-memory reserve source."""
    return PriceOracle(reserve_source, base_currency=WBNB, timeout=0.5)
