"""
Execution layer test fixtures.

The execution layer submits sells through the sniper contract.
All contract calls MUST be mocked in tests - never hit a node.
"""
import pytest
from unittest.mock import AsyncMock
from datetime import datetime, timezone, timedelta
from decimal import Decimal

from sniper_bot.chain import SettlementReceipt
from sniper_bot.execution import (
    ActionExecutor,
    ExecutorConfig,
    ExitConfig,
    Position,
    PositionStore,
)
from sniper_bot.pricing import PriceSample

TOKEN = "0x1111111111111111111111111111111111111111"
PAIR = "0x2222222222222222222222222222222222222222"
WEI = 10**18


def make_sample(rate, base_liquidity=Decimal("10")) -> PriceSample:
    """Price sample whose reserves are consistent with `rate` and liquidity."""
    rate = Decimal(str(rate))
    base_reserve = int(base_liquidity * WEI)
    counter_reserve = int(Decimal(base_reserve) / rate) if rate > 0 else 0
    return PriceSample(
        pair_id=PAIR,
        rate=rate,
        base_liquidity=base_liquidity,
        counter_liquidity=Decimal(counter_reserve) / WEI,
        base_reserve=base_reserve,
        counter_reserve=counter_reserve,
    )


@pytest.fixture
def sample_at():
    """Factory: sample_at(rate, base_liquidity=Decimal("10"))."""
    return make_sample


# =============================================================================
# Position Fixtures
# =============================================================================


@pytest.fixture
def position():
    """Fresh position: 1000 tokens bought at 1.0 BNB/token for 1 BNB."""
    return Position(
        asset_id=TOKEN,
        pair_id=PAIR,
        entry_price=Decimal("1.0"),
        entry_amount=1000,
        entry_cost=Decimal("1.0"),
        entry_time=datetime.now(timezone.utc),
        entry_receipt_id="0xbuy",
    )


@pytest.fixture
def aged_position():
    """Position held for two hours."""
    return Position(
        asset_id=TOKEN,
        pair_id=PAIR,
        entry_price=Decimal("1.0"),
        entry_amount=1000,
        entry_cost=Decimal("1.0"),
        entry_time=datetime.now(timezone.utc) - timedelta(hours=2),
    )


@pytest.fixture
def store():
    return PositionStore()


@pytest.fixture
def held(store, position):
    """Position registered with the store."""
    store.add(position)
    return position


@pytest.fixture
def exit_config():
    """Default policy: TP 100%, SL -50%, 60m hold, partial 50%, trail 30%."""
    return ExitConfig()


# =============================================================================
# Contract Fixtures
# =============================================================================


@pytest.fixture
def mock_contract():
    """Sniper contract whose sells settle with 0.9 BNB proceeds."""
    contract = AsyncMock()
    contract.sell = AsyncMock(
        return_value=SettlementReceipt(
            tx_hash="0xsell",
            status=1,
            block_number=100,
            proceeds=Decimal("0.9"),
        )
    )
    contract.balance_held = AsyncMock(return_value=1000)
    return contract


@pytest.fixture
def live_executor(mock_contract, store):
    """Executor submitting through the mock contract."""
    return ActionExecutor(
        mock_contract,
        store,
        ExecutorConfig(settlement_timeout_seconds=1.0, submission_grace_seconds=1.0, dry_run=False),
    )


@pytest.fixture
def dry_executor(store):
    """Paper-trading executor."""
    return ActionExecutor(None, store, ExecutorConfig(dry_run=True))
