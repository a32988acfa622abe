"""
Tests for bot configuration loading and validation.
"""
import pytest
from datetime import timedelta
from decimal import Decimal

from sniper_bot.config import BotConfig, ConfigInvalidError, DEFAULT_HTTP_ENDPOINTS

KEY = "0x" + "ab" * 32
CONTRACT = "0x" + "cd" * 20

ENV_VARS = (
    "TAKE_PROFIT_PERCENT", "STOP_LOSS_PERCENT", "MAX_HOLD_MINUTES", "MAX_SELL_TAX_PERCENT",
    "MIN_LIQUIDITY_FOR_EXIT", "CHECK_INTERVAL_SECONDS", "ENABLE_PARTIAL_EXITS",
    "PARTIAL_EXIT_FRACTION", "TRAILING_STOP_DROP_PERCENT", "MAX_RECONNECT_ATTEMPTS",
    "RECONNECT_DELAY_SECONDS", "CONNECTION_PROBE_TIMEOUT_SECONDS", "BSC_HTTP_ENDPOINTS",
    "BSC_WS_ENDPOINTS", "DRY_RUN", "PRIVATE_KEY", "SNIPER_CONTRACT",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestDefaults:
    """Tests for the default configuration."""

    def test_defaults_are_valid(self):
        config = BotConfig.load()

        assert config.dry_run is True
        assert config.take_profit_percent == Decimal("100")
        assert config.stop_loss_percent == Decimal("-50")
        assert config.max_reconnect_attempts == 5
        assert config.http_endpoints == DEFAULT_HTTP_ENDPOINTS

    def test_config_is_frozen(self):
        config = BotConfig.load()

        with pytest.raises(Exception):
            config.dry_run = False


class TestValidation:
    """Every bad value is rejected before any component is built."""

    @pytest.mark.parametrize("changes", [
        {"take_profit_percent": Decimal("0")},
        {"stop_loss_percent": Decimal("10")},
        {"partial_exit_fraction": Decimal("0")},
        {"partial_exit_fraction": Decimal("1.5")},
        {"trailing_stop_drop_percent": Decimal("0")},
        {"max_sell_tax_percent": Decimal("-1")},
        {"check_interval_seconds": 0},
        {"max_hold_minutes": float("inf")},
        {"max_reconnect_attempts": -1},
        {"max_backfill_blocks": -1},
        {"take_profit_percent": Decimal("NaN")},
        {"factory_address": "0x123"},
        {"http_endpoints": (), "ws_endpoints": ()},
        {"private_key": "not-a-key"},
    ])
    def test_rejects_invalid_values(self, changes):
        with pytest.raises(ConfigInvalidError):
            BotConfig.load(**changes)

    def test_live_mode_requires_credentials(self):
        with pytest.raises(ConfigInvalidError) as exc_info:
            BotConfig.load(dry_run=False)

        assert "SNIPER_CONTRACT" in str(exc_info.value)

    def test_live_mode_with_credentials(self):
        config = BotConfig.load(dry_run=False, private_key=KEY, sniper_contract=CONTRACT)

        assert config.dry_run is False

    def test_zero_reconnect_attempts_allowed(self):
        assert BotConfig.load(max_reconnect_attempts=0).max_reconnect_attempts == 0


class TestFromEnv:
    """Tests for environment loading."""

    def test_reads_overrides(self, clean_env):
        clean_env.setenv("TAKE_PROFIT_PERCENT", "250")
        clean_env.setenv("ENABLE_PARTIAL_EXITS", "false")
        clean_env.setenv("BSC_HTTP_ENDPOINTS", "https://a, https://b,")
        clean_env.setenv("MAX_RECONNECT_ATTEMPTS", "2")

        config = BotConfig.from_env()

        assert config.take_profit_percent == Decimal("250")
        assert config.enable_partial_exits is False
        assert config.http_endpoints == ("https://a", "https://b")
        assert config.max_reconnect_attempts == 2

    def test_malformed_number(self, clean_env):
        clean_env.setenv("MAX_HOLD_MINUTES", "soon")

        with pytest.raises(ConfigInvalidError):
            BotConfig.from_env()

    def test_malformed_decimal(self, clean_env):
        clean_env.setenv("STOP_LOSS_PERCENT", "a lot")

        with pytest.raises(ConfigInvalidError):
            BotConfig.from_env()

    def test_blank_key_treated_as_missing(self, clean_env):
        clean_env.setenv("PRIVATE_KEY", "   ")

        assert BotConfig.from_env().private_key is None


class TestOverrides:
    """Tests for with_overrides()."""

    def test_returns_revalidated_copy(self):
        config = BotConfig.load()

        updated = config.with_overrides(dry_run=False, private_key=KEY, sniper_contract=CONTRACT)

        assert updated.dry_run is False
        assert config.dry_run is True

    def test_invalid_override_rejected(self):
        with pytest.raises(ConfigInvalidError):
            BotConfig.load().with_overrides(dry_run=False)


class TestComponentConfigs:
    """Component configs carry the matching values."""

    def test_exit_config(self):
        config = BotConfig.load(max_hold_minutes=15, trailing_stop_drop_percent=Decimal("20"))

        exit_config = config.exit_config

        assert exit_config.max_hold_duration == timedelta(minutes=15)
        assert exit_config.trailing_stop_drop_percent == Decimal("20")
        assert exit_config.partial_exit_fraction == Decimal("0.5")

    def test_connection_config(self):
        config = BotConfig.load(
            max_reconnect_attempts=7,
            reconnect_delay_seconds=1.5,
            max_backfill_blocks=200,
            rpc_timeout_seconds=4,
        )

        connection = config.connection_config

        assert connection.max_reconnect_attempts == 7
        assert connection.reconnect_delay_seconds == 1.5
        assert connection.max_backfill_blocks == 200
        assert connection.backfill_timeout_seconds == 4

    def test_monitor_and_executor(self):
        config = BotConfig.load(check_interval_seconds=10, settlement_timeout_seconds=60)

        assert config.monitor_config.check_interval_seconds == 10
        assert config.monitor_config.stop_grace_seconds == 120
        assert config.executor_config.settlement_timeout_seconds == 60
        assert config.executor_config.dry_run is True

    def test_acquisition_config(self):
        config = BotConfig.load(snipe_amount_bnb=Decimal("0.1"))

        assert config.acquisition_config.snipe_amount_bnb == Decimal("0.1")
        assert config.acquisition_config.base_currency_address == config.base_currency_address
