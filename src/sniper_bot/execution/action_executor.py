"""
Action Executor for sell settlement.

Submits a sell through the sniper contract, waits for settlement and applies
the outcome to the PositionStore:

    confirmed success  -> partial reduce or full close, SellRecord appended
    confirmed revert   -> REVERTED, position unchanged (retried next cycle)
    unsellable revert  -> UNSELLABLE, position abandoned, no SellRecord
    anything else      -> TRANSIENT, position unchanged (retried next cycle)

A TRANSIENT sell may still have landed on-chain. Before the next live sell of
that position the contract balance is read; tokens missing from it are booked
as an unconfirmed sell instead of being sold a second time.

The caller must hold the position's exclusive lock.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional, Protocol

from sniper_bot.chain.contracts import (
    SettlementReceipt,
    SubmissionError,
    SubmissionErrorKind,
    classify_submission_error,
)
from sniper_bot.pricing.oracle import PriceOracle

from .exit_policy import FULL_EXIT, ExitDecision, ExitReason
from .position_store import Position, PositionStore, SellRecord

if TYPE_CHECKING:
    from sniper_bot.pricing import PriceSample

logger = logging.getLogger(__name__)

# Settlement id of a sell inferred from the held balance rather than a receipt
UNCONFIRMED_SETTLEMENT_ID = "unconfirmed"


class TradingContract(Protocol):
    """The sniper contract functions the executor relies on."""

    async def sell(
        self, asset: str, amount: int, min_out: int = 0, deadline: Optional[int] = None
    ) -> SettlementReceipt: ...

    async def balance_held(self, asset: str) -> int: ...


class FailureKind(str, Enum):
    """Why a sell did not settle."""
    TRANSIENT = "transient"
    REVERTED = "reverted"
    UNSELLABLE = "unsellable"


_KIND_TO_FAILURE = {
    SubmissionErrorKind.TRANSIENT: FailureKind.TRANSIENT,
    SubmissionErrorKind.REVERTED: FailureKind.REVERTED,
    SubmissionErrorKind.UNSELLABLE: FailureKind.UNSELLABLE,
}


@dataclass
class ExecutorConfig:
    """Configuration for sell execution."""

    deadline_seconds: int = 300
    settlement_timeout_seconds: float = 120.0
    submission_grace_seconds: float = 30.0
    min_out: int = 0  # No slippage floor for exits
    dry_run: bool = True

    @property
    def action_timeout_seconds(self) -> float:
        """Upper bound for submit + settle."""
        return self.settlement_timeout_seconds + self.submission_grace_seconds


@dataclass
class SellResult:
    """Result of a sell attempt."""

    success: bool
    amount_sold: int = 0
    proceeds: Decimal = Decimal("0")
    settlement_id: Optional[str] = None
    failure: Optional[FailureKind] = None
    error: Optional[str] = None
    record: Optional[SellRecord] = None


def compute_sell_amount(remaining: int, fraction: Decimal) -> int:
    """
    floor(remaining * fraction) in integer arithmetic.

    A full fraction returns exactly `remaining` so no dust is left behind.
    """
    if fraction >= FULL_EXIT:
        return remaining
    numerator, denominator = fraction.as_integer_ratio()
    return remaining * numerator // denominator


class ActionExecutor:
    """
    Executes sells and records their outcome.

    Usage:
        executor = ActionExecutor(contract, store, ExecutorConfig(dry_run=False))

        async with store.exclusive(position.asset_id):
            result = await executor.execute_sell(position, Decimal("0.5"), ExitReason.TAKE_PROFIT)

        if not result.success:
            print(result.failure, result.error)
    """

    def __init__(
        self,
        contract: Optional[TradingContract],
        store: PositionStore,
        config: Optional[ExecutorConfig] = None,
    ) -> None:
        """
        Initialize the executor.

        Args:
            contract: Sniper contract adapter (may be None in dry-run)
            store: Position store to apply settled outcomes to
            config: Execution configuration
        """
        self._contract = contract
        self._store = store
        self._config = config or ExecutorConfig()

        if not self._config.dry_run and contract is None:
            raise ValueError("A contract is required when dry_run is disabled")

    async def execute_sell(
        self,
        position: Position,
        fraction: Decimal,
        reason: ExitReason,
        decision: Optional[ExitDecision] = None,
        sample: Optional["PriceSample"] = None,
    ) -> SellResult:
        """
        Sell `fraction` of a position's remaining amount.

        Args:
            position: Live position (caller holds its exclusive lock)
            fraction: Fraction of remaining amount, in (0, 1]
            reason: Exit reason recorded on the SellRecord
            decision: Decision that triggered the sell (exit price, profit)
            sample: Price sample used for dry-run proceeds and tax measurement

        Returns:
            SellResult describing the settlement
        """
        if not (Decimal("0") < fraction <= FULL_EXIT):
            raise ValueError(f"Exit fraction must be in (0, 1], got {fraction}")

        if not self._config.dry_run and position.unconfirmed_sell_amount is not None:
            reconciled = await self._reconcile_unconfirmed(position, reason)
            if reconciled is not None:
                return reconciled

        sell_amount = compute_sell_amount(position.remaining_amount, fraction)

        # A partial that floors to nothing (or everything) becomes a full exit
        if sell_amount <= 0 or sell_amount >= position.remaining_amount:
            sell_amount = position.remaining_amount
            fraction = FULL_EXIT

        if sell_amount <= 0:
            logger.warning(f"Nothing left to sell for {position.asset_id}")
            return SellResult(success=False, failure=FailureKind.UNSELLABLE, error="empty_position")

        exit_price = decision.observed_price if decision else position.last_observed_price
        profit_percent = (
            decision.profit_percent if decision else position.profit_percent(exit_price)
        )

        logger.info(
            f"SELL {position.asset_id}: reason={reason.value} fraction={fraction} "
            f"amount={sell_amount} price={exit_price:.10f} profit={profit_percent:.2f}%"
            f"{' [DRY RUN]' if self._config.dry_run else ''}"
        )

        if self._config.dry_run:
            receipt = self._simulate(sell_amount, position, sample)
        else:
            try:
                receipt = await asyncio.wait_for(
                    self._contract.sell(
                        position.asset_id,
                        sell_amount,
                        min_out=self._config.min_out,
                        deadline=int(time.time()) + self._config.deadline_seconds,
                    ),
                    timeout=self._config.action_timeout_seconds,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                return self._handle_submission_failure(position, e, sell_amount, reason)

        if not receipt.succeeded:
            logger.warning(f"Sell of {position.asset_id} reverted on-chain: {receipt.tx_hash}")
            return SellResult(
                success=False,
                settlement_id=receipt.tx_hash,
                failure=FailureKind.REVERTED,
                error="transaction_reverted",
            )

        return self._apply_settlement(
            position, sell_amount, fraction, reason, exit_price, profit_percent, receipt, sample
        )

    def _handle_submission_failure(
        self,
        position: Position,
        error: Exception,
        sell_amount: int,
        reason: ExitReason,
    ) -> SellResult:
        if isinstance(error, asyncio.TimeoutError):
            kind = SubmissionErrorKind.TRANSIENT
        else:
            kind = classify_submission_error(error)
        failure = _KIND_TO_FAILURE[kind]

        if failure is FailureKind.UNSELLABLE:
            logger.error(
                f"Sell of {position.asset_id} reverted in execution, likely unsellable "
                f"(honeypot / blocked transfer). Abandoning position: {error}"
            )
            self._store.abandon(position.asset_id)
        else:
            logger.warning(f"Sell of {position.asset_id} failed ({failure.value}): {error}")

        if failure is FailureKind.TRANSIENT:
            position.unconfirmed_sell_amount = sell_amount
            position.unconfirmed_sell_reason = reason.value

        return SellResult(success=False, failure=failure, error=str(error))

    async def _reconcile_unconfirmed(
        self, position: Position, reason: ExitReason
    ) -> Optional[SellResult]:
        """
        Settle a transiently failed sell against the held balance.

        Returns:
            None when the balance still covers the remaining amount (safe to
            resubmit), a successful SellResult when tokens left the contract,
            or a TRANSIENT failure when the balance cannot be read
        """
        try:
            balance = await asyncio.wait_for(
                self._contract.balance_held(position.asset_id),
                timeout=self._config.submission_grace_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                f"Cannot confirm earlier sell of {position.asset_id}; not resubmitting: {e}"
            )
            return SellResult(success=False, failure=FailureKind.TRANSIENT, error=str(e))

        earlier_reason = position.unconfirmed_sell_reason or reason.value
        position.unconfirmed_sell_amount = None
        position.unconfirmed_sell_reason = None

        sold = position.remaining_amount - balance
        if sold <= 0:
            logger.info(f"Earlier sell of {position.asset_id} did not land; resubmitting")
            return None

        remaining_before = position.remaining_amount
        exit_price = position.last_observed_price
        proceeds = exit_price * Decimal(sold) / Decimal(10) ** 18
        profit = proceeds - position.cost_basis(sold)
        profit_percent = position.profit_percent(exit_price)

        if balance <= 0:
            fraction = FULL_EXIT
            self._store.close(position.asset_id)
        else:
            fraction = Decimal(sold) / Decimal(remaining_before)
            self._store.reduce(position.asset_id, sold)

        record = SellRecord(
            asset_id=position.asset_id,
            reason=earlier_reason,
            entry_price=position.entry_price,
            exit_price=exit_price,
            profit=profit,
            profit_percent=profit_percent,
            proceeds=proceeds,
            fraction=fraction,
            amount_sold=sold,
            settlement_id=UNCONFIRMED_SETTLEMENT_ID,
        )
        self._store.record_sell(record)

        logger.warning(
            f"Earlier sell of {position.asset_id} landed unconfirmed: {sold} tokens gone, "
            f"~{proceeds:.4f} BNB estimated at the last observed price"
        )

        return SellResult(
            success=True,
            amount_sold=sold,
            proceeds=proceeds,
            settlement_id=UNCONFIRMED_SETTLEMENT_ID,
            record=record,
        )

    def _apply_settlement(
        self,
        position: Position,
        sell_amount: int,
        fraction: Decimal,
        reason: ExitReason,
        exit_price: Decimal,
        profit_percent: Decimal,
        receipt: SettlementReceipt,
        sample: Optional["PriceSample"],
    ) -> SellResult:
        proceeds = receipt.proceeds
        if proceeds is None:
            logger.warning(f"No Sold event in {receipt.tx_hash}; recording zero proceeds")
            proceeds = Decimal("0")
        elif sample is not None:
            expected = PriceOracle.quote_sell(sell_amount, sample)
            if expected > 0:
                tax = max(Decimal("0"), (expected - proceeds) / expected * 100)
                position.last_sell_tax_percent = tax
                logger.debug(f"Realised sell tax for {position.asset_id}: {tax:.2f}%")

        profit = proceeds - position.cost_basis(sell_amount)

        if fraction >= FULL_EXIT:
            self._store.close(position.asset_id)
        else:
            self._store.reduce(position.asset_id, sell_amount)

        record = SellRecord(
            asset_id=position.asset_id,
            reason=reason.value,
            entry_price=position.entry_price,
            exit_price=exit_price,
            profit=profit,
            profit_percent=profit_percent,
            proceeds=proceeds,
            fraction=fraction,
            amount_sold=sell_amount,
            settlement_id=receipt.tx_hash,
        )
        self._store.record_sell(record)

        logger.info(
            f"SELL SUCCESS {position.asset_id}: received={proceeds:.4f} BNB "
            f"pnl={'+' if profit >= 0 else ''}{profit:.4f} BNB ({profit_percent:.2f}%) "
            f"block={receipt.block_number} tx={receipt.tx_hash}"
        )

        return SellResult(
            success=True,
            amount_sold=sell_amount,
            proceeds=proceeds,
            settlement_id=receipt.tx_hash,
            record=record,
        )

    def _simulate(
        self,
        sell_amount: int,
        position: Position,
        sample: Optional["PriceSample"],
    ) -> SettlementReceipt:
        if sample is not None:
            proceeds = PriceOracle.quote_sell(sell_amount, sample)
        else:
            proceeds = position.last_observed_price * Decimal(sell_amount) / Decimal(10) ** 18
        return SettlementReceipt(
            tx_hash=f"dry_run_{uuid.uuid4().hex[:12]}",
            status=1,
            proceeds=proceeds,
        )
