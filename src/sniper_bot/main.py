"""
BSC Sniper Bot - Main Entry Point

Discovers new PancakeSwap pairs, buys them through the sniper contract and
runs the exit engine over everything it holds.

Usage:
    python -m sniper_bot.main [--dry-run | --live]
    python -m sniper_bot.main --mode feed     # Discovery + acquisition only
    python -m sniper_bot.main --mode monitor  # Exit engine only
    python -m sniper_bot.main --mode all      # Full system (default)

Configuration:
    Environment variables (see sniper_bot.config), optionally loaded from a
    .env file in the working directory.

    LOG_LEVEL                 Logging level (DEBUG/INFO/WARNING/ERROR)
    DRY_RUN                   Set to "false" for live trading (default: true)
    PRIVATE_KEY               Wallet key (live mode)
    SNIPER_CONTRACT           Deployed sniper contract (live mode)

Exit codes:
    0  clean shutdown
    1  fatal feed loss or unexpected error
    2  invalid configuration
"""

from __future__ import annotations

import argparse
import asyncio
import atexit
import fcntl
import logging
import os
import signal
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, Optional

# Configure logging before imports
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

from sniper_bot.chain import PAIR_CREATED_TOPIC, PairReader, SniperContract, make_web3  # noqa: E402
from sniper_bot.config import BotConfig, ConfigInvalidError  # noqa: E402
from sniper_bot.core import AcquisitionHandler, PositionMonitor  # noqa: E402
from sniper_bot.execution import ActionExecutor, PositionStore  # noqa: E402
from sniper_bot.ingestion import (  # noqa: E402
    ConnectionManager,
    ConnectionState,
    FatalConnectionError,
    LogFilter,
    build_transports,
)
from sniper_bot.pricing import PriceOracle  # noqa: E402

DEFAULT_PID_FILE = "/tmp/sniper-bot.pid"
HEARTBEAT_INTERVAL_SECONDS = 300

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2


class SingletonBotError(Exception):
    """Raised when another bot instance is already running."""
    pass


@contextmanager
def singleton_lock(pid_file: str = DEFAULT_PID_FILE) -> Generator[None, None, None]:
    """
    Hold the PID-file flock for the lifetime of the block.

    One sniper per wallet: a second instance fails fast here.

    Raises:
        SingletonBotError: The PID file is locked by a running sniper
    """
    pid_path = Path(pid_file)
    holder = pid_path.read_text().strip() if pid_path.exists() else ""

    handle = open(pid_path, "a+")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        handle.close()
        owner = f"pid {holder}" if holder else "unknown pid"
        raise SingletonBotError(f"Sniper already running ({owner}, lock {pid_file})")

    handle.seek(0)
    handle.truncate()
    handle.write(str(os.getpid()))
    handle.flush()

    def release() -> None:
        if handle.closed:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            logger.debug(f"PID file unlock failed: {e}")
        handle.close()
        pid_path.unlink(missing_ok=True)

    # Also release on interpreter exit paths that skip the finally below
    atexit.register(release)
    logger.info(f"Holding {pid_file} as pid {os.getpid()}")
    try:
        yield
    finally:
        release()
        atexit.unregister(release)


class SniperBot:
    """
    Main bot orchestrator.

    Manages the lifecycle of all components:
    - Chain access (web3 HTTP client, pair reader, sniper contract)
    - Exit engine (oracle, store, executor, position monitor)
    - Discovery feed (connection manager -> acquisition handler)
    """

    def __init__(self, config: BotConfig):
        self.config = config
        self.exit_code = EXIT_OK

        self._running = False
        self._shutdown_event = asyncio.Event()
        self._started_at: Optional[datetime] = None
        self._withdrawn = False

        # Components (initialized on start)
        self._store: Optional[PositionStore] = None
        self._oracle: Optional[PriceOracle] = None
        self._contract: Optional[SniperContract] = None
        self._executor: Optional[ActionExecutor] = None
        self._monitor: Optional[PositionMonitor] = None
        self._acquisition: Optional[AcquisitionHandler] = None
        self._connection: Optional[ConnectionManager] = None
        self._feed_task: Optional[asyncio.Task] = None

    @property
    def store(self) -> Optional[PositionStore]:
        return self._store

    async def start(self, mode: str = "all") -> None:
        """
        Start the bot and run until shutdown.

        Args:
            mode: "all", "feed", or "monitor"
        """
        logger.info("=" * 60)
        logger.info("BSC SNIPER BOT")
        logger.info("=" * 60)
        logger.info(f"Mode: {mode.upper()}")
        logger.info(f"Trading: {'DRY RUN' if self.config.dry_run else 'LIVE'}")
        logger.info(f"Snipe amount: {self.config.snipe_amount_bnb} BNB")
        logger.info(
            f"Take profit: {self.config.take_profit_percent}% | "
            f"Stop loss: {self.config.stop_loss_percent}% | "
            f"Max hold: {self.config.max_hold_minutes}m"
        )
        logger.info("=" * 60)

        self._running = True
        self._started_at = datetime.now(timezone.utc)
        self._shutdown_event.clear()

        self._setup_signal_handlers()

        try:
            self._init_components()

            if mode in ("all", "monitor"):
                await self._monitor.start()

            if self._shutdown_event.is_set():
                logger.info("Shutdown requested during startup")
                return

            if mode in ("all", "feed"):
                self._init_feed()

            logger.info("=" * 60)
            logger.info("Bot started successfully")
            logger.info("Press Ctrl+C to stop")
            logger.info("=" * 60)

            await self._run_loop()

        except Exception as e:
            logger.exception(f"Fatal error: {e}")
            self.exit_code = EXIT_FATAL
            raise
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the bot gracefully, then withdraw and report what is still held."""
        if not self._running:
            return

        logger.info("Shutting down...")
        self._running = False
        self._shutdown_event.set()

        if self._connection:
            try:
                await self._connection.stop()
            except Exception as e:
                logger.warning(f"Error stopping feed: {e}")

        if self._feed_task:
            self._feed_task.cancel()
            await asyncio.gather(self._feed_task, return_exceptions=True)
            self._feed_task = None

        if self._monitor:
            try:
                await self._monitor.stop()
            except Exception as e:
                logger.warning(f"Error stopping position monitor: {e}")

        await self._withdraw_once()
        self._report_positions()

        logger.info("Shutdown complete")

    async def handle_fatal(self, state: ConnectionState) -> None:
        """Fatal feed loss: withdraw once and shut down with a failure code."""
        logger.error(
            f"Feed unrecoverable after {state.reconnect_attempts} attempt(s): {state.last_error}"
        )
        self.exit_code = EXIT_FATAL
        await self._withdraw_once()
        self._shutdown_event.set()

    # =========================================================================
    # Component wiring
    # =========================================================================

    def _init_components(self) -> None:
        config = self.config
        rpc_url = config.http_endpoints[0]
        w3 = make_web3(rpc_url, timeout=config.rpc_timeout_seconds)
        logger.info(f"Chain RPC: {rpc_url}")

        self._oracle = PriceOracle(
            PairReader(w3),
            base_currency=config.base_currency_address,
            timeout=config.rpc_timeout_seconds,
        )
        self._store = PositionStore()

        if not config.dry_run:
            self._contract = SniperContract(
                w3,
                config.sniper_contract,
                config.private_key,
                chain_id=config.chain_id,
                settlement_timeout=config.settlement_timeout_seconds,
                sell_gas_limit=config.sell_gas_limit,
            )
            logger.info(f"Wallet: {self._contract.wallet_address}")
            logger.info(f"Contract: {self._contract.address}")

        self._executor = ActionExecutor(self._contract, self._store, config.executor_config)
        self._monitor = PositionMonitor(
            self._store,
            self._oracle,
            self._executor,
            exit_config=config.exit_config,
            config=config.monitor_config,
        )
        self._acquisition = AcquisitionHandler(
            self._store,
            self._oracle,
            self._contract,
            config.acquisition_config,
        )

    def _init_feed(self) -> None:
        config = self.config
        transports = build_transports(
            config.ws_endpoints,
            config.http_endpoints,
            request_timeout=config.rpc_timeout_seconds,
            poll_interval=config.poll_interval_seconds,
        )
        log_filter = LogFilter(address=config.factory_address, topics=(PAIR_CREATED_TOPIC,))

        self._connection = ConnectionManager(
            transports,
            log_filter,
            on_event=self._acquisition.handle_pair_created,
            on_fatal=self.handle_fatal,
            config=config.connection_config,
        )
        self._feed_task = asyncio.create_task(self._run_feed(), name="feed")

    async def _run_feed(self) -> None:
        try:
            await self._connection.run()
        except FatalConnectionError as e:
            logger.error(f"Feed stopped: {e}")
            self.exit_code = EXIT_FATAL
            self._shutdown_event.set()

    # =========================================================================
    # Run loop
    # =========================================================================

    async def _run_loop(self) -> None:
        """Wait for shutdown, logging a heartbeat periodically."""
        while self._running:
            try:
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=HEARTBEAT_INTERVAL_SECONDS,
                    )
                    break  # Shutdown requested
                except asyncio.TimeoutError:
                    pass

                self._log_heartbeat()

            except Exception as e:
                logger.error(f"Error in main loop: {e}")
                await asyncio.sleep(5)

    def _log_heartbeat(self) -> None:
        uptime = datetime.now(timezone.utc) - self._started_at
        connection = "off"
        if self._connection:
            state = self._connection.state
            connection = f"{state.phase.value}/{state.mode or '-'}"

        summary = self._store.summary()
        acquired = self._acquisition.acquired if self._acquisition else 0
        attempts = self._acquisition.attempts if self._acquisition else 0

        logger.info(
            f"Heartbeat: uptime={str(uptime).split('.')[0]} feed={connection} "
            f"snipes={acquired}/{attempts} held={len(self._store)} "
            f"sells={summary.total_sells} profit={summary.total_profit:.4f} BNB"
        )

    async def _withdraw_once(self) -> None:
        """Pull the contract's BNB back to the wallet (live mode, at most once)."""
        if self._withdrawn or self._contract is None or not self.config.withdraw_on_shutdown:
            return
        self._withdrawn = True

        logger.info("Withdrawing BNB from contract...")
        try:
            receipt = await asyncio.wait_for(
                self._contract.withdraw_base_currency(),
                timeout=self.config.settlement_timeout_seconds + 30,
            )
            if receipt.succeeded:
                logger.info(f"Withdrawal settled: {receipt.tx_hash}")
            else:
                logger.warning(f"Withdrawal reverted: {receipt.tx_hash}")
        except Exception as e:
            logger.error(f"Emergency withdrawal failed: {e}")

    def _report_positions(self) -> None:
        if not self._store:
            return

        positions = self._store.open_positions()
        summary = self._store.summary()
        logger.info(
            f"Session: {summary.total_sells} sells, win rate {summary.win_rate:.1f}%, "
            f"profit {summary.total_profit:.4f} BNB"
        )
        if not positions:
            return

        logger.warning(f"{len(positions)} position(s) still held:")
        for position in positions:
            logger.warning(
                f"  {position.asset_id}: remaining={position.remaining_amount} "
                f"entry={position.entry_price} last={position.last_observed_price}"
            )

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def handle_signal(sig):
            logger.info(f"Received signal {sig}")
            self._shutdown_event.set()

        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except NotImplementedError:
            logger.warning("Signal handlers unavailable on this loop; KeyboardInterrupt stops the bot")


def load_env_file(path: str = ".env") -> None:
    """Seed SNIPER_* and RPC settings from a dotenv file; real env vars win."""
    env_path = Path(path)
    if not env_path.is_file():
        return

    loaded = 0
    for raw in env_path.read_text().splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        if key not in os.environ:
            os.environ[key] = value.strip().strip("\"'")
            loaded += 1
    logger.info(f"Read {loaded} settings from {env_path}")


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="BSC Sniper Bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    trading = parser.add_mutually_exclusive_group()
    trading.add_argument(
        "--dry-run",
        action="store_true",
        help="Paper trading: simulate buys and sells (no transactions)",
    )
    trading.add_argument(
        "--live",
        action="store_true",
        help="Live trading (requires PRIVATE_KEY and SNIPER_CONTRACT)",
    )
    parser.add_argument(
        "--mode",
        choices=["all", "feed", "monitor"],
        default="all",
        help="Which services to run (default: all)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> BotConfig:
    """Environment configuration with command line overrides applied."""
    config = BotConfig.from_env()
    if args.dry_run:
        config = config.with_overrides(dry_run=True)
    elif args.live:
        config = config.with_overrides(dry_run=False)
    return config


async def main_async(args: argparse.Namespace) -> int:
    """Async main function."""
    try:
        config = load_config(args)
    except ConfigInvalidError as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_CONFIG

    bot = SniperBot(config)

    try:
        await bot.start(mode=args.mode)
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return EXIT_FATAL

    return bot.exit_code


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    load_env_file()

    args = parse_args(argv)

    if args.log_level:
        logging.getLogger().setLevel(getattr(logging, args.log_level))

    try:
        with singleton_lock():
            try:
                return asyncio.run(main_async(args))
            except KeyboardInterrupt:
                return EXIT_OK
    except SingletonBotError as e:
        logger.error(str(e))
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
