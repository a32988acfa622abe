"""
Pricing Layer - Rates and liquidity depth from pair reserves.

This module provides:
    - PriceOracle: Reserve-based pricing with two-sided base asset lookup
    - PriceSample: One observation (rate, liquidity, raw reserves)
    - PriceUnavailableError: Transient RPC failure (skip this cycle)
    - PoolLiquidityError: Malformed or drained pool (liquidity gate)
"""

from .oracle import (
    PoolLiquidityError,
    PriceOracle,
    PriceSample,
    PriceUnavailableError,
)

__all__ = [
    "PoolLiquidityError",
    "PriceOracle",
    "PriceSample",
    "PriceUnavailableError",
]
