"""
Core test fixtures.

The oracle and the sniper contract are mocked; the store, policy and
executor are real so scans exercise the full decision path.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock
from datetime import datetime, timezone
from decimal import Decimal

from sniper_bot.chain import PairCreatedEvent, SettlementReceipt
from sniper_bot.core import AcquisitionConfig, AcquisitionHandler, MonitorConfig, PositionMonitor
from sniper_bot.execution import ActionExecutor, ExecutorConfig, ExitConfig, Position, PositionStore
from sniper_bot.pricing import PriceSample

WBNB = "0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c"
WEI = 10**18


def make_sample(pair_id, rate, base_liquidity=Decimal("10")) -> PriceSample:
    rate = Decimal(str(rate))
    base_reserve = int(base_liquidity * WEI)
    counter_reserve = int(Decimal(base_reserve) / rate)
    return PriceSample(
        pair_id=pair_id,
        rate=rate,
        base_liquidity=base_liquidity,
        counter_liquidity=Decimal(counter_reserve) / WEI,
        base_reserve=base_reserve,
        counter_reserve=counter_reserve,
    )


def make_position(index: int, entry_price="1.0") -> Position:
    return Position(
        asset_id=f"0x{index:040x}",
        pair_id=f"0x{index + 1000:040x}",
        entry_price=Decimal(entry_price),
        entry_amount=1000,
        entry_cost=Decimal("1.0"),
        entry_time=datetime.now(timezone.utc),
    )


@pytest.fixture
def sample_for():
    """Factory: sample_for(pair_id, rate, base_liquidity=Decimal("10"))."""
    return make_sample


@pytest.fixture
def position_factory():
    """Factory: position_factory(index, entry_price="1.0")."""
    return make_position


# =============================================================================
# Exit Engine Fixtures
# =============================================================================


@pytest.fixture
def store():
    return PositionStore()


@pytest.fixture
def mock_oracle():
    """Oracle mock; tests set get_price side effects per pair."""
    oracle = MagicMock()
    oracle.get_price = AsyncMock()
    return oracle


@pytest.fixture
def mock_contract():
    """Sniper contract settling every sell and snipe."""
    contract = AsyncMock()
    contract.sell = AsyncMock(
        return_value=SettlementReceipt(tx_hash="0xsell", status=1, block_number=1, proceeds=Decimal("1.5"))
    )
    contract.gas_price = AsyncMock(return_value=5 * 10**9)
    contract.snipe = AsyncMock(
        return_value=SettlementReceipt(tx_hash="0xbuy", status=1, block_number=2, tokens_out=4_000 * WEI)
    )
    contract.balance_held = AsyncMock(return_value=4_000 * WEI)
    return contract


@pytest.fixture
def executor(mock_contract, store):
    return ActionExecutor(
        mock_contract,
        store,
        ExecutorConfig(settlement_timeout_seconds=1.0, submission_grace_seconds=1.0, dry_run=False),
    )


@pytest.fixture
def monitor(store, mock_oracle, executor):
    return PositionMonitor(
        store,
        mock_oracle,
        executor,
        exit_config=ExitConfig(),
        config=MonitorConfig(check_interval_seconds=0.01, stop_grace_seconds=1.0),
    )


# =============================================================================
# Acquisition Fixtures
# =============================================================================


@pytest.fixture
def pair_event():
    """PairCreated for WBNB / token."""
    return PairCreatedEvent(
        asset_a=WBNB,
        asset_b="0x1111111111111111111111111111111111111111",
        pair_id="0x2222222222222222222222222222222222222222",
        block_ref=100,
        tx_hash="0xcreate",
        log_index=0,
    )


@pytest.fixture
def acquisition_config():
    return AcquisitionConfig(
        base_currency_address=WBNB,
        snipe_amount_bnb=Decimal("0.05"),
        min_liquidity_for_entry=Decimal("0.5"),
        max_gas_price_gwei=Decimal("15"),
        settlement_timeout_seconds=1.0,
        rpc_timeout_seconds=1.0,
        dry_run=False,
    )


@pytest.fixture
def acquisition(store, mock_oracle, mock_contract, acquisition_config):
    return AcquisitionHandler(store, mock_oracle, mock_contract, acquisition_config)
