"""
Acquisition path for newly discovered pairs.

Handles the transformation from a PairCreated event to a tracked position:
1. Keep only pairs that trade against the base currency (WBNB)
2. Ignore pairs/assets already seen, held or in flight
3. Check pool liquidity and network gas price
4. Buy through the sniper contract's tax-checked snipe
5. Register the resulting position with the PositionStore
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional, Protocol, Set

from sniper_bot.chain.contracts import SettlementReceipt
from sniper_bot.execution import DuplicatePositionError, Position, PositionStore
from sniper_bot.pricing import PoolLiquidityError, PriceOracle, PriceUnavailableError

if TYPE_CHECKING:
    from sniper_bot.chain import PairCreatedEvent

logger = logging.getLogger(__name__)

WEI = Decimal(10) ** 18
GWEI = Decimal(10) ** 9


class SnipeContract(Protocol):
    """The sniper contract functions the acquisition path relies on."""

    async def gas_price(self) -> int: ...

    async def balance_held(self, asset: str) -> int: ...

    async def snipe(
        self,
        asset: str,
        value_wei: int,
        max_tax_percent: int,
        deadline: int,
        gas_price: Optional[int] = None,
        min_out: int = 0,
    ) -> SettlementReceipt: ...


class AcquisitionOutcome(str, Enum):
    """Result of handling one discovery event."""
    ACQUIRED = "acquired"
    IGNORED = "ignored"  # pair does not trade against base
    DUPLICATE = "duplicate"
    LOW_LIQUIDITY = "low_liquidity"
    GAS_TOO_HIGH = "gas_too_high"
    PRICE_UNAVAILABLE = "price_unavailable"
    FAILED = "failed"


@dataclass
class AcquisitionConfig:
    """Configuration for sniping new pairs."""

    base_currency_address: str = "0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c"  # WBNB
    snipe_amount_bnb: Decimal = Decimal("0.05")
    max_buy_tax_percent: int = 10
    min_liquidity_for_entry: Decimal = Decimal("0.5")  # BNB
    max_gas_price_gwei: Decimal = Decimal("15")
    gas_price_premium_percent: int = 20  # Outbid the base fee for speed
    deadline_seconds: int = 300
    settlement_timeout_seconds: float = 120.0
    rpc_timeout_seconds: float = 10.0
    dry_run: bool = True


class AcquisitionHandler:
    """
    Turns discovery events into positions.

    Every event is handled to completion inside this class; failures are
    logged and reported as an outcome, never raised into the feed.

    Usage:
        handler = AcquisitionHandler(store, oracle, contract, AcquisitionConfig())
        outcome = await handler.handle_pair_created(event)
    """

    def __init__(
        self,
        store: PositionStore,
        oracle: PriceOracle,
        contract: Optional[SnipeContract] = None,
        config: Optional[AcquisitionConfig] = None,
    ) -> None:
        self._store = store
        self._oracle = oracle
        self._contract = contract
        self._config = config or AcquisitionConfig()
        self._base = self._config.base_currency_address.lower()

        if not self._config.dry_run and contract is None:
            raise ValueError("A contract is required when dry_run is disabled")

        self._seen_pairs: Set[str] = set()
        self._in_flight: Set[str] = set()
        self.attempts = 0
        self.acquired = 0

    async def handle_pair_created(self, event: "PairCreatedEvent") -> AcquisitionOutcome:
        """Process one PairCreated event."""
        asset = event.other_asset(self._base)
        if asset is None:
            logger.debug(f"Ignoring non-BNB pair {event.pair_id}")
            return AcquisitionOutcome.IGNORED

        pair_key = event.pair_id.lower()
        if pair_key in self._seen_pairs or asset in self._in_flight or asset in self._store:
            logger.debug(f"Already handled {asset} (pair {event.pair_id})")
            return AcquisitionOutcome.DUPLICATE

        # Claimed before the first await so a replayed event can't start a second attempt
        self._seen_pairs.add(pair_key)
        self._in_flight.add(asset)
        self.attempts += 1

        logger.info(
            f"NEW TOKEN DETECTED: token={asset} pair={event.pair_id} "
            f"block={event.block_ref} tx={event.tx_hash}"
        )

        try:
            async with self._store.exclusive(asset):
                return await self._acquire(asset, event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Snipe error for {asset}: {e}")
            if "insufficient funds" in str(e).lower():
                logger.info("Add more BNB to the wallet or contract")
            return AcquisitionOutcome.FAILED
        finally:
            self._in_flight.discard(asset)

    async def _acquire(self, asset: str, event: "PairCreatedEvent") -> AcquisitionOutcome:
        config = self._config

        try:
            sample = await self._oracle.get_price(event.pair_id)
        except PoolLiquidityError as e:
            logger.info(f"SKIPPED {asset}: pool unusable ({e})")
            return AcquisitionOutcome.LOW_LIQUIDITY
        except PriceUnavailableError as e:
            logger.warning(f"SKIPPED {asset}: could not read reserves ({e})")
            return AcquisitionOutcome.PRICE_UNAVAILABLE

        logger.info(f"Liquidity: {sample.base_liquidity:.4f} BNB")
        if sample.base_liquidity < config.min_liquidity_for_entry:
            logger.info(
                f"SKIPPED {asset}: liquidity too low (min: {config.min_liquidity_for_entry} BNB)"
            )
            return AcquisitionOutcome.LOW_LIQUIDITY

        value_wei = int(config.snipe_amount_bnb * WEI)

        if config.dry_run:
            receipt = SettlementReceipt(
                tx_hash=f"dry_run_{uuid.uuid4().hex[:12]}",
                status=1,
                tokens_out=PriceOracle.quote_buy(value_wei, sample),
            )
        else:
            gas_price = await asyncio.wait_for(
                self._contract.gas_price(), timeout=config.rpc_timeout_seconds
            )
            gas_gwei = Decimal(gas_price) / GWEI
            logger.info(f"Gas: {gas_gwei:.2f} Gwei")

            if gas_gwei > config.max_gas_price_gwei:
                logger.info(f"SKIPPED {asset}: gas too high (max: {config.max_gas_price_gwei} Gwei)")
                return AcquisitionOutcome.GAS_TOO_HIGH

            logger.info(
                f"SNIPING {asset}: {config.snipe_amount_bnb} BNB, "
                f"max tax {config.max_buy_tax_percent}%"
            )
            receipt = await asyncio.wait_for(
                self._contract.snipe(
                    asset,
                    value_wei,
                    config.max_buy_tax_percent,
                    deadline=int(time.time()) + config.deadline_seconds,
                    gas_price=gas_price * (100 + config.gas_price_premium_percent) // 100,
                ),
                timeout=config.settlement_timeout_seconds + 30,
            )

        if not receipt.succeeded:
            logger.warning(f"Snipe of {asset} reverted: {receipt.tx_hash}")
            return AcquisitionOutcome.FAILED

        tokens = receipt.tokens_out
        if not tokens:
            tokens = await asyncio.wait_for(
                self._contract.balance_held(asset), timeout=config.rpc_timeout_seconds
            )
        if tokens <= 0:
            logger.warning(f"Snipe of {asset} settled but contract holds no tokens")
            return AcquisitionOutcome.FAILED

        entry_price = await self._entry_price(event.pair_id, value_wei, tokens)

        try:
            self._store.add(Position(
                asset_id=asset,
                pair_id=event.pair_id,
                entry_price=entry_price,
                entry_amount=tokens,
                entry_cost=config.snipe_amount_bnb,
                entry_time=datetime.now(timezone.utc),
                entry_receipt_id=receipt.tx_hash,
            ))
        except DuplicatePositionError:
            logger.warning(f"{asset} was registered concurrently; keeping existing position")
            return AcquisitionOutcome.DUPLICATE

        self.acquired += 1
        logger.info(
            f"SNIPE SUCCESS {asset}: tokens={tokens} block={receipt.block_number} "
            f"total snipes={self.acquired}"
        )
        return AcquisitionOutcome.ACQUIRED

    async def _entry_price(self, pair_id: str, value_wei: int, tokens: int) -> Decimal:
        """
        Pool rate right after the buy, so exits compare like with like.

        Falls back to the effective fill price if the pool can't be read.
        """
        try:
            sample = await self._oracle.get_price(pair_id)
            return sample.rate
        except (PriceUnavailableError, PoolLiquidityError) as e:
            logger.warning(f"Post-buy price unavailable for {pair_id}, using fill price: {e}")
            return Decimal(value_wei) / Decimal(tokens)
