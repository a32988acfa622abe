"""
Bot configuration.

All recognised options live on a single frozen model that is validated before
any component is constructed. Component configs (exit policy, monitor,
executor, acquisition, connection) are derived from it so each component only
sees the knobs it uses.

Environment Variables:
    TAKE_PROFIT_PERCENT               Take profit threshold in percent (default: 100)
    STOP_LOSS_PERCENT                 Stop loss threshold in percent (default: -50)
    MAX_HOLD_MINUTES                  Exit after holding this long (default: 60)
    MAX_SELL_TAX_PERCENT              Don't sell if realised tax is above this (default: 15)
    MIN_LIQUIDITY_FOR_EXIT            Minimum BNB reserve to attempt an exit (default: 0.5)
    CHECK_INTERVAL_SECONDS            Position monitor cadence (default: 30)
    ENABLE_PARTIAL_EXITS              Sell a fraction at first take profit (default: true)
    PARTIAL_EXIT_FRACTION             Fraction sold on partial exit (default: 0.5)
    TRAILING_STOP_DROP_PERCENT        Drop from high that fires trailing stop (default: 30)
    MAX_RECONNECT_ATTEMPTS            Reconnects before fatal shutdown (default: 5)
    RECONNECT_DELAY_SECONDS           Delay between reconnects (default: 5)
    CONNECTION_PROBE_TIMEOUT_SECONDS  Liveness probe timeout per transport (default: 5)
    MAX_BACKFILL_BLOCKS               Blocks replayed with eth_getLogs after a reconnect (default: 5000)
    PRIVATE_KEY                       Wallet private key (required when DRY_RUN=false)
    SNIPER_CONTRACT                   Deployed sniper contract (required when DRY_RUN=false)
    DRY_RUN                           Paper trading mode (default: true)
"""
from __future__ import annotations

import math
import os
import re
from datetime import timedelta
from decimal import Decimal
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from sniper_bot.core.acquisition import AcquisitionConfig
from sniper_bot.core.position_monitor import MonitorConfig
from sniper_bot.execution.action_executor import ExecutorConfig
from sniper_bot.execution.exit_policy import ExitConfig
from sniper_bot.ingestion.connection import ConnectionConfig

BSC_CHAIN_ID = 56
PANCAKE_FACTORY = "0xcA143Ce32Fe78f1f7019d7d551a6402fC5350c73"
PANCAKE_ROUTER = "0x10ED43C718714eb63d5aA57B78B54704E256024E"
WBNB = "0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c"

DEFAULT_HTTP_ENDPOINTS: Tuple[str, ...] = (
    "https://bsc-dataseed1.binance.org/",
    "https://bsc-dataseed2.binance.org/",
    "https://bsc-dataseed3.binance.org/",
    "https://bsc-dataseed4.binance.org/",
    "https://rpc.ankr.com/bsc",
    "https://bsc.publicnode.com",
)
DEFAULT_WS_ENDPOINTS: Tuple[str, ...] = (
    "wss://bsc.publicnode.com",
)

_PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class ConfigInvalidError(Exception):
    """Raised when configuration fails validation. Fatal at startup."""


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.environ.get(name)
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


class BotConfig(BaseModel):
    """Complete, validated bot configuration."""

    model_config = ConfigDict(frozen=True)

    # Exit policy
    take_profit_percent: Decimal = Decimal("100")
    stop_loss_percent: Decimal = Decimal("-50")
    max_hold_minutes: float = 60.0
    max_sell_tax_percent: Decimal = Decimal("15")
    min_liquidity_for_exit: Decimal = Decimal("0.5")
    enable_partial_exits: bool = True
    partial_exit_fraction: Decimal = Decimal("0.5")
    trailing_stop_drop_percent: Decimal = Decimal("30")

    # Monitoring
    check_interval_seconds: float = 30.0

    # Connection
    max_reconnect_attempts: int = 5
    reconnect_delay_seconds: float = 5.0
    connection_probe_timeout_seconds: float = 5.0
    max_backfill_blocks: int = 5000
    http_endpoints: Tuple[str, ...] = DEFAULT_HTTP_ENDPOINTS
    ws_endpoints: Tuple[str, ...] = DEFAULT_WS_ENDPOINTS
    poll_interval_seconds: float = 3.0

    # RPC / settlement
    rpc_timeout_seconds: float = 10.0
    settlement_timeout_seconds: float = 120.0
    sell_gas_limit: int = 800_000

    # Acquisition
    snipe_amount_bnb: Decimal = Decimal("0.05")
    max_buy_tax_percent: int = 10
    min_liquidity_for_entry: Decimal = Decimal("0.5")
    max_gas_price_gwei: Decimal = Decimal("15")
    deadline_seconds: int = 300

    # Chain
    chain_id: int = BSC_CHAIN_ID
    factory_address: str = PANCAKE_FACTORY
    router_address: str = PANCAKE_ROUTER
    base_currency_address: str = WBNB

    # Wallet
    dry_run: bool = True
    private_key: Optional[str] = None
    sniper_contract: Optional[str] = None
    withdraw_on_shutdown: bool = True

    @field_validator(
        "take_profit_percent",
        "stop_loss_percent",
        "max_sell_tax_percent",
        "trailing_stop_drop_percent",
        "min_liquidity_for_exit",
        "min_liquidity_for_entry",
        "snipe_amount_bnb",
        "max_gas_price_gwei",
    )
    @classmethod
    def _finite_decimal(cls, value: Decimal) -> Decimal:
        if not value.is_finite():
            raise ValueError(f"must be finite, got {value}")
        return value

    @field_validator(
        "max_sell_tax_percent",
        "min_liquidity_for_exit",
        "min_liquidity_for_entry",
        "max_gas_price_gwei",
    )
    @classmethod
    def _non_negative_decimal(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError(f"must not be negative, got {value}")
        return value

    @field_validator("trailing_stop_drop_percent")
    @classmethod
    def _trailing_drop(cls, value: Decimal) -> Decimal:
        if not (Decimal("0") < value <= Decimal("100")):
            raise ValueError(f"must be in (0, 100], got {value}")
        return value

    @field_validator("partial_exit_fraction")
    @classmethod
    def _fraction(cls, value: Decimal) -> Decimal:
        if not value.is_finite() or not (Decimal("0") < value <= Decimal("1")):
            raise ValueError(f"must be in (0, 1], got {value}")
        return value

    @field_validator(
        "max_hold_minutes",
        "check_interval_seconds",
        "reconnect_delay_seconds",
        "connection_probe_timeout_seconds",
        "poll_interval_seconds",
        "rpc_timeout_seconds",
        "settlement_timeout_seconds",
    )
    @classmethod
    def _positive_duration(cls, value: float) -> float:
        if not math.isfinite(value) or value <= 0:
            raise ValueError(f"must be a positive duration, got {value}")
        return value

    @field_validator("snipe_amount_bnb")
    @classmethod
    def _positive_amount(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError(f"must be positive, got {value}")
        return value

    @field_validator("max_reconnect_attempts", "max_backfill_blocks")
    @classmethod
    def _attempts(cls, value: int) -> int:
        if value < 0:
            raise ValueError(f"must not be negative, got {value}")
        return value

    @field_validator("max_buy_tax_percent")
    @classmethod
    def _buy_tax(cls, value: int) -> int:
        if not (0 <= value <= 100):
            raise ValueError(f"must be in [0, 100], got {value}")
        return value

    @field_validator("deadline_seconds", "sell_gas_limit")
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError(f"must be positive, got {value}")
        return value

    @field_validator("factory_address", "router_address", "base_currency_address")
    @classmethod
    def _address(cls, value: str) -> str:
        if not _ADDRESS_RE.match(value):
            raise ValueError(f"invalid address format: {value}")
        return value

    @model_validator(mode="after")
    def _cross_checks(self) -> "BotConfig":
        if self.take_profit_percent <= 0:
            raise ValueError("take_profit_percent must be positive")
        if self.stop_loss_percent >= 0:
            raise ValueError("stop_loss_percent must be negative")
        if not self.http_endpoints and not self.ws_endpoints:
            raise ValueError("at least one RPC endpoint is required")

        if self.private_key is not None and not _PRIVATE_KEY_RE.match(self.private_key):
            raise ValueError("invalid private key format")
        if self.sniper_contract is not None and not _ADDRESS_RE.match(self.sniper_contract):
            raise ValueError("invalid contract address format")

        if not self.dry_run and (not self.private_key or not self.sniper_contract):
            raise ValueError("PRIVATE_KEY and SNIPER_CONTRACT are required when DRY_RUN=false")
        return self

    @classmethod
    def load(cls, **values) -> "BotConfig":
        """Construct and validate, translating failures into ConfigInvalidError."""
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigInvalidError(str(e)) from e

    @classmethod
    def from_env(cls) -> "BotConfig":
        """Load configuration from environment variables."""
        env = os.environ
        try:
            values = dict(
                take_profit_percent=Decimal(env.get("TAKE_PROFIT_PERCENT", "100")),
                stop_loss_percent=Decimal(env.get("STOP_LOSS_PERCENT", "-50")),
                max_hold_minutes=float(env.get("MAX_HOLD_MINUTES", "60")),
                max_sell_tax_percent=Decimal(env.get("MAX_SELL_TAX_PERCENT", "15")),
                min_liquidity_for_exit=Decimal(env.get("MIN_LIQUIDITY_FOR_EXIT", "0.5")),
                enable_partial_exits=env.get("ENABLE_PARTIAL_EXITS", "true").lower() == "true",
                partial_exit_fraction=Decimal(env.get("PARTIAL_EXIT_FRACTION", "0.5")),
                trailing_stop_drop_percent=Decimal(env.get("TRAILING_STOP_DROP_PERCENT", "30")),
                check_interval_seconds=float(env.get("CHECK_INTERVAL_SECONDS", "30")),
                max_reconnect_attempts=int(env.get("MAX_RECONNECT_ATTEMPTS", "5")),
                reconnect_delay_seconds=float(env.get("RECONNECT_DELAY_SECONDS", "5")),
                connection_probe_timeout_seconds=float(
                    env.get("CONNECTION_PROBE_TIMEOUT_SECONDS", "5")
                ),
                max_backfill_blocks=int(env.get("MAX_BACKFILL_BLOCKS", "5000")),
                http_endpoints=_env_list("BSC_HTTP_ENDPOINTS", DEFAULT_HTTP_ENDPOINTS),
                ws_endpoints=_env_list("BSC_WS_ENDPOINTS", DEFAULT_WS_ENDPOINTS),
                poll_interval_seconds=float(env.get("POLL_INTERVAL_SECONDS", "3")),
                rpc_timeout_seconds=float(env.get("RPC_TIMEOUT_SECONDS", "10")),
                settlement_timeout_seconds=float(env.get("SETTLEMENT_TIMEOUT_SECONDS", "120")),
                snipe_amount_bnb=Decimal(env.get("SNIPE_AMOUNT_BNB", "0.05")),
                max_buy_tax_percent=int(env.get("MAX_BUY_TAX_PERCENT", "10")),
                min_liquidity_for_entry=Decimal(env.get("MIN_LIQUIDITY_FOR_ENTRY", "0.5")),
                max_gas_price_gwei=Decimal(env.get("MAX_GAS_PRICE_GWEI", "15")),
                deadline_seconds=int(env.get("DEADLINE_SECONDS", "300")),
                dry_run=env.get("DRY_RUN", "true").lower() == "true",
                private_key=(env.get("PRIVATE_KEY") or "").strip() or None,
                sniper_contract=(env.get("SNIPER_CONTRACT") or "").strip() or None,
                withdraw_on_shutdown=env.get("WITHDRAW_ON_SHUTDOWN", "true").lower() == "true",
            )
        except (ArithmeticError, ValueError) as e:
            raise ConfigInvalidError(f"Malformed environment value: {e}") from e

        return cls.load(**values)

    def with_overrides(self, **changes) -> "BotConfig":
        """Return a re-validated copy with `changes` applied (e.g. CLI flags)."""
        values = self.model_dump()
        values.update(changes)
        return type(self).load(**values)

    @property
    def max_hold_duration(self) -> timedelta:
        return timedelta(minutes=self.max_hold_minutes)

    @property
    def exit_config(self) -> ExitConfig:
        """Get exit policy configuration."""
        return ExitConfig(
            take_profit_percent=self.take_profit_percent,
            stop_loss_percent=self.stop_loss_percent,
            max_hold_duration=self.max_hold_duration,
            max_sell_tax_percent=self.max_sell_tax_percent,
            min_liquidity_for_exit=self.min_liquidity_for_exit,
            enable_partial_exits=self.enable_partial_exits,
            partial_exit_fraction=self.partial_exit_fraction,
            trailing_stop_drop_percent=self.trailing_stop_drop_percent,
        )

    @property
    def monitor_config(self) -> MonitorConfig:
        """Get position monitor configuration."""
        return MonitorConfig(
            check_interval_seconds=self.check_interval_seconds,
            stop_grace_seconds=self.settlement_timeout_seconds + 60,
        )

    @property
    def executor_config(self) -> ExecutorConfig:
        """Get action executor configuration."""
        return ExecutorConfig(
            deadline_seconds=self.deadline_seconds,
            settlement_timeout_seconds=self.settlement_timeout_seconds,
            dry_run=self.dry_run,
        )

    @property
    def acquisition_config(self) -> AcquisitionConfig:
        """Get acquisition configuration."""
        return AcquisitionConfig(
            base_currency_address=self.base_currency_address,
            snipe_amount_bnb=self.snipe_amount_bnb,
            max_buy_tax_percent=self.max_buy_tax_percent,
            min_liquidity_for_entry=self.min_liquidity_for_entry,
            max_gas_price_gwei=self.max_gas_price_gwei,
            deadline_seconds=self.deadline_seconds,
            settlement_timeout_seconds=self.settlement_timeout_seconds,
            rpc_timeout_seconds=self.rpc_timeout_seconds,
            dry_run=self.dry_run,
        )

    @property
    def connection_config(self) -> ConnectionConfig:
        """Get connection manager configuration."""
        return ConnectionConfig(
            max_reconnect_attempts=self.max_reconnect_attempts,
            reconnect_delay_seconds=self.reconnect_delay_seconds,
            connection_probe_timeout_seconds=self.connection_probe_timeout_seconds,
            max_backfill_blocks=self.max_backfill_blocks,
            backfill_timeout_seconds=self.rpc_timeout_seconds,
        )
