"""
Position Store for tracking held tokens.

In-memory registry of open positions keyed by token address, plus the
append-only sell history. Mutation of a single position is serialised through
a per-asset lock; scans iterate over a snapshot so new acquisitions can be
added while a scan is running.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class DuplicatePositionError(Exception):
    """Raised when a live position already exists for an asset."""
    pass


class PositionNotFoundError(KeyError):
    """Raised when an asset has no live position."""
    pass


@dataclass
class Position:
    """Represents an open (or partially exited) holding."""

    asset_id: str
    pair_id: str
    entry_price: Decimal  # BNB per token
    entry_amount: int  # token base units
    entry_cost: Decimal  # BNB spent
    entry_time: datetime
    entry_receipt_id: Optional[str] = None
    remaining_amount: Optional[int] = None

    # Tracking - updated by the monitor only
    highest_price_seen: Optional[Decimal] = None
    lowest_price_seen: Optional[Decimal] = None
    last_observed_price: Optional[Decimal] = None
    last_checked_at: Optional[datetime] = None
    last_sell_tax_percent: Optional[Decimal] = None

    # A sell that failed transiently may still have landed; checked against
    # the held balance before anything is resubmitted
    unconfirmed_sell_amount: Optional[int] = None
    unconfirmed_sell_reason: Optional[str] = None

    # Status
    partially_exited: bool = False
    closed: bool = False

    def __post_init__(self) -> None:
        self.asset_id = self.asset_id.lower()
        if self.remaining_amount is None:
            self.remaining_amount = self.entry_amount
        if self.highest_price_seen is None:
            self.highest_price_seen = self.entry_price
        if self.lowest_price_seen is None:
            self.lowest_price_seen = self.entry_price
        if self.last_observed_price is None:
            self.last_observed_price = self.entry_price

        if self.entry_price <= 0:
            raise ValueError(f"Entry price must be positive, got {self.entry_price}")
        if not (0 <= self.remaining_amount <= self.entry_amount):
            raise ValueError(
                f"Remaining amount {self.remaining_amount} outside [0, {self.entry_amount}]"
            )

    def observe(self, price: Decimal, at: Optional[datetime] = None) -> None:
        """Record a price observation and update the running extremes."""
        self.last_observed_price = price
        self.last_checked_at = at or datetime.now(timezone.utc)
        if price > self.highest_price_seen:
            self.highest_price_seen = price
        if price < self.lowest_price_seen:
            self.lowest_price_seen = price

    def profit_percent(self, price: Decimal) -> Decimal:
        return (price - self.entry_price) / self.entry_price * 100

    def hold_duration_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.entry_time).total_seconds()

    def cost_basis(self, amount: int) -> Decimal:
        """Share of entry cost attributable to `amount` tokens."""
        if self.entry_amount <= 0:
            return Decimal("0")
        return self.entry_cost * Decimal(amount) / Decimal(self.entry_amount)


@dataclass(frozen=True)
class SellRecord:
    """Records a settled exit. Never mutated after it is appended."""

    asset_id: str
    reason: str
    entry_price: Decimal
    exit_price: Decimal
    profit: Decimal  # BNB
    profit_percent: Decimal
    proceeds: Decimal  # BNB received
    fraction: Decimal
    amount_sold: int
    settlement_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class HistorySummary:
    """Aggregate view of the sell history."""

    total_sells: int
    profitable_sells: int
    loss_sells: int
    win_rate: Decimal  # percent
    total_profit: Decimal  # BNB
    held_count: int


class PositionStore:
    """
    Tracks held positions and sell history.

    Handles:
    - Registering positions after a successful acquisition
    - Price observations (running highs/lows)
    - Partial reductions and full closes after settled sells
    - Abandoning unsellable positions
    - Win-rate / realised profit summary

    Usage:
        store = PositionStore()
        store.add(position)

        async with store.exclusive(position.asset_id):
            store.reduce(position.asset_id, sold_amount)

        for position in store.open_positions():  # snapshot
            ...
    """

    def __init__(self) -> None:
        # Live positions by lower-cased asset address
        self._positions: Dict[str, Position] = {}

        # One lock per asset, created lazily; dropped once the asset is untracked
        # and nobody holds or waits on it
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

        self._history: List[SellRecord] = []

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, asset_id: str) -> bool:
        return asset_id.lower() in self._positions

    @asynccontextmanager
    async def exclusive(self, asset_id: str) -> AsyncIterator[None]:
        """
        Hold the lock guarding mutation of one asset.

        Both the acquisition path and the monitor take it, so a buy and a
        sell can never interleave on the same asset.
        """
        key = asset_id.lower()
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._lock_users[key] = self._lock_users.get(key, 0) + 1

        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                if key not in self._positions:
                    self._locks.pop(key, None)

    def add(self, position: Position) -> Position:
        """
        Register a new live position.

        Raises:
            DuplicatePositionError: A live position already exists for the asset
        """
        if position.asset_id in self._positions:
            raise DuplicatePositionError(f"Already holding {position.asset_id}")

        self._positions[position.asset_id] = position
        logger.info(
            f"Tracking {position.asset_id}: amount={position.entry_amount} "
            f"entry_price={position.entry_price:.10f} cost={position.entry_cost} BNB"
        )
        return position

    def get(self, asset_id: str) -> Optional[Position]:
        return self._positions.get(asset_id.lower())

    def require(self, asset_id: str) -> Position:
        position = self.get(asset_id)
        if position is None:
            raise PositionNotFoundError(asset_id)
        return position

    def open_positions(self) -> List[Position]:
        """Snapshot of live, non-closed positions."""
        return [p for p in list(self._positions.values()) if not p.closed]

    def update(self, asset_id: str, price: Decimal, at: Optional[datetime] = None) -> Position:
        """Record a price observation for a live position."""
        position = self.require(asset_id)
        position.observe(price, at)
        return position

    def reduce(self, asset_id: str, amount: int) -> Position:
        """
        Apply a settled partial exit.

        The position stays live unless the reduction empties it.
        """
        position = self.require(asset_id)
        if amount <= 0 or amount > position.remaining_amount:
            raise ValueError(
                f"Cannot reduce {asset_id} by {amount} (remaining={position.remaining_amount})"
            )

        position.remaining_amount -= amount
        position.partially_exited = True

        if position.remaining_amount == 0:
            return self.close(asset_id)

        logger.info(f"Reduced {asset_id} by {amount}: remaining={position.remaining_amount}")
        return position

    def close(self, asset_id: str) -> Position:
        """Mark a position fully exited and stop tracking it."""
        position = self.require(asset_id)
        position.remaining_amount = 0
        position.closed = True
        self.remove(asset_id)
        logger.info(f"Closed {asset_id}")
        return position

    def abandon(self, asset_id: str) -> Position:
        """Force-close a position that cannot be sold. No sell record is written."""
        position = self.require(asset_id)
        position.remaining_amount = 0
        position.closed = True
        self.remove(asset_id)
        logger.warning(f"Abandoned {asset_id}: marked closed with nothing sold")
        return position

    def remove(self, asset_id: str) -> None:
        key = asset_id.lower()
        self._positions.pop(key, None)
        # A held lock is dropped by its last holder on release
        if key not in self._lock_users:
            self._locks.pop(key, None)

    def record_sell(self, record: SellRecord) -> None:
        self._history.append(record)

    @property
    def history(self) -> Tuple[SellRecord, ...]:
        return tuple(self._history)

    def summary(self) -> HistorySummary:
        """Count, win rate and aggregate realised profit of the sell history."""
        total = len(self._history)
        profitable = sum(1 for r in self._history if r.profit > 0)
        total_profit = sum((r.profit for r in self._history), Decimal("0"))
        win_rate = (
            (Decimal(profitable) / Decimal(total) * 100).quantize(Decimal("0.01"))
            if total
            else Decimal("0")
        )

        return HistorySummary(
            total_sells=total,
            profitable_sells=profitable,
            loss_sells=total - profitable,
            win_rate=win_rate,
            total_profit=total_profit,
            held_count=len(self._positions),
        )
