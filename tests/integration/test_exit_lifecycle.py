"""
Position lifecycle: discovery -> buy -> monitor -> exit.

Real oracle, store, policy and executor over in-memory pools. Prices are
moved by editing pool reserves between monitor cycles.
"""

import pytest
from decimal import Decimal
from unittest.mock import AsyncMock

from sniper_bot.chain import PairCreatedEvent, SettlementReceipt
from sniper_bot.core import (
    AcquisitionConfig,
    AcquisitionHandler,
    AcquisitionOutcome,
    MonitorConfig,
    PositionMonitor,
)
from sniper_bot.execution import ActionExecutor, ExecutorConfig, ExitConfig, PositionStore
from sniper_bot.pricing import PriceOracle

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]

WBNB = "0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c"
TOKEN = "0x" + "11" * 20
PAIR = "0x" + "22" * 20


def _event():
    return PairCreatedEvent(
        asset_a=WBNB,
        asset_b=TOKEN,
        pair_id=PAIR,
        block_ref=100,
        tx_hash="0xcreate",
        log_index=0,
    )


class Bot:
    """The exit engine plus acquisition, wired the way the entry point wires them."""

    def __init__(self, pools, contract=None, exit_config=None):
        self.pools = pools
        self.store = PositionStore()
        self.oracle = PriceOracle(pools, base_currency=WBNB, timeout=1.0)
        self.acquisition = AcquisitionHandler(
            self.store, self.oracle, None, AcquisitionConfig(dry_run=True)
        )
        self.executor = ActionExecutor(
            contract,
            self.store,
            ExecutorConfig(
                dry_run=contract is None,
                settlement_timeout_seconds=1.0,
                submission_grace_seconds=1.0,
            ),
        )
        self.monitor = PositionMonitor(
            self.store,
            self.oracle,
            self.executor,
            exit_config=exit_config or ExitConfig(),
            config=MonitorConfig(check_interval_seconds=60, stop_grace_seconds=1.0),
        )

    async def buy(self):
        outcome = await self.acquisition.handle_pair_created(_event())
        assert outcome == AcquisitionOutcome.ACQUIRED
        return self.store.get(TOKEN)


class TestTakeProfit:
    """Partial take profit, then the rest."""

    async def test_partial_then_full(self, pools):
        bot = Bot(pools)
        position = await bot.buy()
        bought = position.entry_amount
        assert position.entry_price == Decimal("0.00001")

        pools.scale_price(PAIR, 3)  # +200%
        first = await bot.monitor.run_cycle()

        assert first.exits_settled == 1
        assert first.results[0].record.reason == "take_profit"
        assert first.results[0].record.fraction == Decimal("0.5")
        assert position.partially_exited
        assert position.remaining_amount == bought - bought // 2
        assert position.last_sell_tax_percent == Decimal("0")
        assert TOKEN in bot.store

        second = await bot.monitor.run_cycle()

        assert second.exits_settled == 1
        assert second.results[0].record.fraction == Decimal("1")
        assert TOKEN not in bot.store
        assert position.closed

        summary = bot.store.summary()
        assert summary.total_sells == 2
        assert summary.profitable_sells == 2
        assert summary.total_profit > 0
        assert summary.held_count == 0

    async def test_no_partial_when_disabled(self, pools):
        bot = Bot(pools, exit_config=ExitConfig(enable_partial_exits=False))
        await bot.buy()

        pools.scale_price(PAIR, 3)
        report = await bot.monitor.run_cycle()

        assert report.results[0].record.fraction == Decimal("1")
        assert TOKEN not in bot.store


class TestLosses:
    """Stop loss and trailing stop."""

    async def test_stop_loss_sells_everything(self, pools):
        bot = Bot(pools)
        await bot.buy()

        pools.scale_price(PAIR, "0.4")  # -60%
        report = await bot.monitor.run_cycle()

        record = report.results[0].record
        assert record.reason == "stop_loss"
        assert record.fraction == Decimal("1")
        assert record.profit < 0
        assert TOKEN not in bot.store

    async def test_trailing_stop_after_peak(self, pools):
        bot = Bot(pools)
        position = await bot.buy()

        pools.scale_price(PAIR, "1.8")  # +80%, below take profit
        report = await bot.monitor.run_cycle()
        assert report.exits_attempted == 0
        assert position.highest_price_seen == Decimal("0.000018")

        pools.scale_price(PAIR, Decimal("2") / Decimal("3"))  # ~33% off the high, still +20%
        report = await bot.monitor.run_cycle()

        assert report.results[0].record.reason == "trailing_stop"
        assert TOKEN not in bot.store

    async def test_drained_pool_is_held(self, pools):
        """Below the exit liquidity floor nothing is sold, even deep underwater."""
        bot = Bot(pools)
        await bot.buy()

        pools.scale_price(PAIR, "0.04")  # 0.4 BNB left
        report = await bot.monitor.run_cycle()

        assert report.gated == 1
        assert report.exits_attempted == 0
        assert TOKEN in bot.store


class TestSellTax:
    """A heavily taxed partial sell holds back profit-taking, never loss exits."""

    async def test_realised_tax_gates_next_exit(self, pools):
        contract = AsyncMock()
        contract.sell = AsyncMock(
            return_value=SettlementReceipt(tx_hash="0xsell", status=1, block_number=5, proceeds=Decimal("0.03"))
        )
        bot = Bot(pools, contract=contract)
        position = await bot.buy()

        pools.scale_price(PAIR, 3)
        first = await bot.monitor.run_cycle()

        assert first.exits_settled == 1
        assert position.last_sell_tax_percent > Decimal("15")

        second = await bot.monitor.run_cycle()

        assert second.gated == 1
        assert contract.sell.await_count == 1
        assert TOKEN in bot.store

    async def test_stop_loss_still_fires_after_taxed_partial(self, pools):
        contract = AsyncMock()
        contract.sell = AsyncMock(
            return_value=SettlementReceipt(tx_hash="0xsell", status=1, block_number=5, proceeds=Decimal("0.03"))
        )
        bot = Bot(pools, contract=contract)
        position = await bot.buy()

        pools.scale_price(PAIR, 3)
        first = await bot.monitor.run_cycle()
        assert first.exits_settled == 1
        assert position.last_sell_tax_percent > Decimal("15")

        pools.scale_price(PAIR, "0.1")  # 0.3x entry, -70%
        second = await bot.monitor.run_cycle()

        assert second.exits_settled == 1
        assert second.results[0].record.reason == "stop_loss"
        assert second.results[0].record.fraction == Decimal("1")
        assert contract.sell.await_count == 2
        assert TOKEN not in bot.store


class TestManualOverride:
    """force_exit sells regardless of policy."""

    async def test_force_exit(self, pools):
        bot = Bot(pools)
        await bot.buy()

        result = await bot.monitor.force_exit(TOKEN)

        assert result.success
        assert result.record.reason == "manual_override"
        assert TOKEN not in bot.store

    async def test_force_exit_unknown_asset(self, pools):
        bot = Bot(pools)

        assert await bot.monitor.force_exit("0x" + "99" * 20) is None
