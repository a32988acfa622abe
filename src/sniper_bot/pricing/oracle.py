"""
Price oracle backed by pair reserves.

Price is quoted in base currency (BNB) per token:

    rate = base_reserve / token_reserve

The reserve slot holding the base asset is resolved by comparing token0 and
token1 to the configured base currency, never by slot position.

Failure modes are reported as distinct exceptions so callers can tell a
flaky RPC (no decision this cycle) from a broken or drained pool (liquidity
gate).
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Protocol

logger = logging.getLogger(__name__)

WEI = Decimal(10) ** 18

# PancakeSwap v2 charges 0.25% to LPs on every swap
SWAP_FEE_NUMERATOR = 9975
SWAP_FEE_DENOMINATOR = 10000


class PriceUnavailableError(Exception):
    """Transient failure fetching reserves (RPC error or timeout)."""
    pass


class PoolLiquidityError(Exception):
    """Pool is malformed, does not trade against base, or has a zero reserve."""
    pass


class ReserveSource(Protocol):
    """Anything that can answer reserve queries (see chain.PairReader)."""

    async def query_reserves(self, pair_id: str): ...


@dataclass(frozen=True)
class PriceSample:
    """
    A single price observation.

    Attributes:
        pair_id: Pair the sample was taken from
        rate: Base currency per token
        base_liquidity: Base reserve in whole BNB
        counter_liquidity: Token reserve in whole tokens (18 decimals assumed)
        base_reserve: Raw base reserve (wei)
        counter_reserve: Raw token reserve (base units)
        observed_at: When the sample was taken
    """
    pair_id: str
    rate: Decimal
    base_liquidity: Decimal
    counter_liquidity: Decimal
    base_reserve: int
    counter_reserve: int
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PriceOracle:
    """
    Prices pairs from live reserve data.

    Usage:
        oracle = PriceOracle(PairReader(w3), base_currency=WBNB)

        try:
            sample = await oracle.get_price(pair_address)
        except PriceUnavailableError:
            ...  # skip this cycle
        except PoolLiquidityError:
            ...  # treat as liquidity gate
    """

    def __init__(
        self,
        reserves: ReserveSource,
        base_currency: str,
        timeout: float = 10.0,
    ) -> None:
        """
        Initialize the oracle.

        Args:
            reserves: Reserve source (pair contract reader)
            base_currency: Wrapped base currency address (WBNB)
            timeout: Upper bound for a reserve query in seconds
        """
        self._reserves = reserves
        self._base = base_currency.lower()
        self._timeout = timeout

    async def get_price(self, pair_id: str) -> PriceSample:
        """
        Get the current rate and liquidity depth of a pair.

        Raises:
            PriceUnavailableError: RPC failure or timeout
            PoolLiquidityError: Base asset not in pair or a reserve is zero
        """
        try:
            reserves = await asyncio.wait_for(
                self._reserves.query_reserves(pair_id),
                timeout=self._timeout,
            )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as e:
            raise PriceUnavailableError(
                f"Reserve query for {pair_id} timed out after {self._timeout}s"
            ) from e
        except Exception as e:
            raise PriceUnavailableError(f"Reserve query for {pair_id} failed: {e}") from e

        token0 = str(reserves.token0).lower()
        token1 = str(reserves.token1).lower()

        if token0 == self._base:
            base_reserve, counter_reserve = reserves.reserve0, reserves.reserve1
        elif token1 == self._base:
            base_reserve, counter_reserve = reserves.reserve1, reserves.reserve0
        else:
            raise PoolLiquidityError(
                f"Pair {pair_id} does not trade against base currency "
                f"({token0}, {token1})"
            )

        if base_reserve <= 0 or counter_reserve <= 0:
            raise PoolLiquidityError(
                f"Pair {pair_id} has an empty reserve "
                f"(base={base_reserve}, token={counter_reserve})"
            )

        return PriceSample(
            pair_id=pair_id,
            rate=Decimal(base_reserve) / Decimal(counter_reserve),
            base_liquidity=Decimal(base_reserve) / WEI,
            counter_liquidity=Decimal(counter_reserve) / WEI,
            base_reserve=base_reserve,
            counter_reserve=counter_reserve,
        )

    @staticmethod
    def quote_sell(amount: int, sample: PriceSample) -> Decimal:
        """
        Expected base currency out for selling `amount` tokens into the pool.

        Constant product with the LP fee, no transfer tax. Used for dry-run
        proceeds and to measure the realised sell tax after a settlement.
        """
        if amount <= 0:
            return Decimal("0")
        amount_in_with_fee = amount * SWAP_FEE_NUMERATOR
        numerator = amount_in_with_fee * sample.base_reserve
        denominator = sample.counter_reserve * SWAP_FEE_DENOMINATOR + amount_in_with_fee
        return Decimal(numerator // denominator) / WEI

    @staticmethod
    def quote_buy(value_wei: int, sample: PriceSample) -> int:
        """Expected tokens out (base units) for spending `value_wei`."""
        if value_wei <= 0:
            return 0
        amount_in_with_fee = value_wei * SWAP_FEE_NUMERATOR
        numerator = amount_in_with_fee * sample.counter_reserve
        denominator = sample.base_reserve * SWAP_FEE_DENOMINATOR + amount_in_with_fee
        return numerator // denominator
