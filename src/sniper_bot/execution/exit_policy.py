"""
Exit policy evaluation.

Decides whether a position should be sold given its state and a fresh price
sample. First match wins; gates run before triggers:

    1. Liquidity gate    - base reserve below min_liquidity_for_exit -> hold
    2. Take profit       - partial once (if enabled), then full
    3. Stop loss         - always full
    4. Max hold time     - always full
    5. Trailing stop     - full, only while in profit

The sell-tax gate (last realised sell tax above max) suppresses take profit
and the trailing stop only. Stop loss and max hold still fire, so a taxed
position can always be unwound.

Take profit precedes the trailing stop, so a cycle where both are eligible
takes profit.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from sniper_bot.pricing import PriceSample
    from .position_store import Position

FULL_EXIT = Decimal("1")


class ExitReason(str, Enum):
    """Reason codes carried by an ExitDecision."""
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    MAX_HOLD_TIME = "max_hold_time"
    TRAILING_STOP = "trailing_stop"
    MANUAL_OVERRIDE = "manual_override"

    # Gates
    LOW_LIQUIDITY = "low_liquidity"
    HIGH_SELL_TAX = "high_sell_tax"

    HOLD = "hold"

    @property
    def is_gate(self) -> bool:
        return self in (ExitReason.LOW_LIQUIDITY, ExitReason.HIGH_SELL_TAX)


@dataclass
class ExitConfig:
    """Configuration for the exit policy."""

    take_profit_percent: Decimal = Decimal("100")  # Sell at 2x
    stop_loss_percent: Decimal = Decimal("-50")
    max_hold_duration: timedelta = timedelta(minutes=60)
    max_sell_tax_percent: Decimal = Decimal("15")
    min_liquidity_for_exit: Decimal = Decimal("0.5")  # BNB
    enable_partial_exits: bool = True
    partial_exit_fraction: Decimal = Decimal("0.5")
    trailing_stop_drop_percent: Decimal = Decimal("30")


@dataclass(frozen=True)
class ExitDecision:
    """Outcome of one policy evaluation. Consumed immediately, never stored."""

    should_exit: bool
    reason: ExitReason
    observed_price: Decimal
    profit_percent: Decimal
    exit_fraction: Optional[Decimal] = None

    @property
    def is_partial(self) -> bool:
        return self.should_exit and self.exit_fraction is not None and self.exit_fraction < FULL_EXIT


def _hold(reason: ExitReason, price: Decimal, profit: Decimal) -> ExitDecision:
    return ExitDecision(
        should_exit=False,
        reason=reason,
        observed_price=price,
        profit_percent=profit,
    )


def _exit(
    reason: ExitReason,
    price: Decimal,
    profit: Decimal,
    fraction: Decimal = FULL_EXIT,
) -> ExitDecision:
    return ExitDecision(
        should_exit=True,
        reason=reason,
        observed_price=price,
        profit_percent=profit,
        exit_fraction=fraction,
    )


def drop_from_high_percent(position: "Position", price: Decimal) -> Decimal:
    """Percent the price sits below the highest price seen."""
    high = position.highest_price_seen
    if not high or high <= 0:
        return Decimal("0")
    return (high - price) / high * 100


def evaluate_exit(
    position: "Position",
    sample: "PriceSample",
    config: ExitConfig,
    now: Optional[datetime] = None,
) -> ExitDecision:
    """
    Evaluate whether a position should be exited.

    Pure function of its inputs. The caller is expected to have recorded the
    sample on the position (running extremes) before calling.

    Args:
        position: Position to evaluate
        sample: Current price sample for the position's pair
        config: Exit policy configuration
        now: Evaluation time (defaults to current UTC time)

    Returns:
        ExitDecision; exit_fraction is set only when should_exit is True
    """
    now = now or datetime.now(timezone.utc)
    price = sample.rate
    profit = position.profit_percent(price)

    if sample.base_liquidity < config.min_liquidity_for_exit:
        return _hold(ExitReason.LOW_LIQUIDITY, price, profit)

    # Tax only holds back profit-taking; loss and time exits still sell,
    # which also re-measures the tax
    tax = position.last_sell_tax_percent
    tax_gated = tax is not None and tax > config.max_sell_tax_percent

    if profit >= config.take_profit_percent and not tax_gated:
        if config.enable_partial_exits and not position.partially_exited:
            fraction = config.partial_exit_fraction
        else:
            fraction = FULL_EXIT
        return _exit(ExitReason.TAKE_PROFIT, price, profit, fraction)

    # Stop loss is never partial
    if profit <= config.stop_loss_percent:
        return _exit(ExitReason.STOP_LOSS, price, profit)

    if now - position.entry_time >= config.max_hold_duration:
        return _exit(ExitReason.MAX_HOLD_TIME, price, profit)

    # Trailing stop only protects gains; underwater positions belong to stop loss
    if (
        not tax_gated
        and profit > 0
        and drop_from_high_percent(position, price) >= config.trailing_stop_drop_percent
    ):
        return _exit(ExitReason.TRAILING_STOP, price, profit)

    if tax_gated:
        return _hold(ExitReason.HIGH_SELL_TAX, price, profit)

    return _hold(ExitReason.HOLD, price, profit)


def manual_exit(position: "Position", sample: "PriceSample") -> ExitDecision:
    """Full exit decision for a manual override, bypassing every gate."""
    price = sample.rate
    return _exit(ExitReason.MANUAL_OVERRIDE, price, position.profit_percent(price))
