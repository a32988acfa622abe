"""
PositionMonitor - Periodic exit evaluation for held positions.

Every cycle:
- Snapshot open positions (new acquisitions may arrive mid-scan)
- For each position, under its exclusive lock:
    price via PriceOracle -> record observation -> evaluate_exit -> sell
- A failure on one position never aborts the rest of the scan

Only one scan runs at a time; a scan requested while another is in flight is
skipped, not queued.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional

from sniper_bot.execution import (
    ExitConfig,
    ExitReason,
    HistorySummary,
    Position,
    PositionStore,
    SellResult,
    evaluate_exit,
    manual_exit,
)
from sniper_bot.pricing import PoolLiquidityError, PriceUnavailableError

if TYPE_CHECKING:
    from sniper_bot.execution import ActionExecutor
    from sniper_bot.pricing import PriceOracle

logger = logging.getLogger(__name__)


@dataclass
class MonitorConfig:
    """Configuration for the position monitor."""

    check_interval_seconds: float = 30.0
    stop_grace_seconds: float = 180.0  # Max wait for an in-flight cycle on stop


@dataclass
class ScanReport:
    """What happened during one monitoring cycle."""

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    evaluated: int = 0
    price_failures: int = 0
    gated: int = 0
    exits_attempted: int = 0
    exits_settled: int = 0
    errors: int = 0
    results: List[SellResult] = field(default_factory=list)


class PositionMonitor:
    """
    Runs the exit policy over all held positions on a fixed cadence.

    Usage:
        monitor = PositionMonitor(store, oracle, executor, ExitConfig(), MonitorConfig())
        await monitor.start()
        # ... bot runs ...
        await monitor.stop()  # in-flight cycle finishes, no new cycle starts
    """

    def __init__(
        self,
        store: PositionStore,
        oracle: "PriceOracle",
        executor: "ActionExecutor",
        exit_config: Optional[ExitConfig] = None,
        config: Optional[MonitorConfig] = None,
    ) -> None:
        """
        Initialize the monitor.

        Args:
            store: Shared position store
            oracle: Price oracle for pair reserves
            executor: Executor used to submit sells
            exit_config: Exit policy configuration
            config: Monitor configuration (cadence)
        """
        self._store = store
        self._oracle = oracle
        self._executor = executor
        self._exit_config = exit_config or ExitConfig()
        self._config = config or MonitorConfig()

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._scan_lock = asyncio.Lock()
        self._cycles = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_scanning(self) -> bool:
        return self._scan_lock.locked()

    @property
    def cycles(self) -> int:
        """Number of completed scans."""
        return self._cycles

    async def start(self) -> None:
        """Start the periodic monitoring loop."""
        if self._running:
            logger.warning("PositionMonitor already running")
            return

        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._monitor_loop(), name="position_monitor")

        logger.info(
            f"Auto-seller started: take_profit={self._exit_config.take_profit_percent}% "
            f"stop_loss={self._exit_config.stop_loss_percent}% "
            f"max_hold={self._exit_config.max_hold_duration} "
            f"interval={self._config.check_interval_seconds}s"
        )

    async def stop(self) -> None:
        """
        Stop scheduling new cycles.

        A cycle already in flight is allowed to finish (bounded by
        stop_grace_seconds, after which it is cancelled).
        """
        if not self._running:
            return

        logger.info("Stopping position monitor...")
        self._running = False
        self._stop_event.set()

        if self._task and not self._task.done():
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._task),
                    timeout=self._config.stop_grace_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning("In-flight scan did not finish in time, cancelling")
                self._task.cancel()
                await asyncio.gather(self._task, return_exceptions=True)

        self._task = None
        logger.info("Position monitor stopped")

    async def _monitor_loop(self) -> None:
        interval = self._config.check_interval_seconds

        while self._running:
            try:
                # Wait for interval or stop
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                    break  # Stop requested
                except asyncio.TimeoutError:
                    pass

                if not self._running:
                    break

                await self.run_cycle()

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in position monitor loop: {e}")

    async def run_cycle(self) -> Optional[ScanReport]:
        """
        Evaluate every open position once.

        Returns:
            ScanReport, or None if another scan was already in flight
        """
        if self._scan_lock.locked():
            logger.info("Previous scan still running, skipping this cycle")
            return None

        async with self._scan_lock:
            report = ScanReport()
            positions = self._store.open_positions()

            if not positions:
                return report

            logger.info(f"Monitoring {len(positions)} position(s)...")

            for position in positions:
                try:
                    await self._check_position(position, report)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    report.errors += 1
                    logger.error(f"Error monitoring {position.asset_id}: {e}")

            self._cycles += 1
            return report

    async def _check_position(self, position: Position, report: ScanReport) -> None:
        asset_id = position.asset_id

        async with self._store.exclusive(asset_id):
            # May have been closed while we waited for the lock
            if position.closed or self._store.get(asset_id) is not position:
                return

            try:
                sample = await self._oracle.get_price(position.pair_id)
            except PriceUnavailableError as e:
                report.price_failures += 1
                logger.warning(f"Could not get price for {asset_id}: {e}")
                return
            except PoolLiquidityError as e:
                report.gated += 1
                logger.warning(f"{asset_id} - skipped, pool unusable: {e}")
                return

            self._store.update(asset_id, sample.rate, sample.observed_at)
            decision = evaluate_exit(position, sample, self._exit_config)
            report.evaluated += 1

            if not decision.should_exit:
                hold_minutes = position.hold_duration_seconds() / 60
                if decision.reason.is_gate:
                    report.gated += 1
                    logger.info(
                        f"{asset_id} - exit skipped ({decision.reason.value}): "
                        f"liquidity={sample.base_liquidity:.2f} BNB "
                        f"sell_tax={position.last_sell_tax_percent} "
                        f"profit={decision.profit_percent:.2f}%"
                    )
                else:
                    logger.info(
                        f"{asset_id[:10]}... | profit={decision.profit_percent:.2f}% "
                        f"| hold={hold_minutes:.1f}m"
                    )
                return

            report.exits_attempted += 1
            result = await self._executor.execute_sell(
                position,
                decision.exit_fraction,
                decision.reason,
                decision=decision,
                sample=sample,
            )
            report.results.append(result)

            if result.success:
                report.exits_settled += 1
            else:
                logger.warning(
                    f"Exit for {asset_id} not settled ({result.failure.value if result.failure else 'unknown'}): "
                    f"{result.error}"
                )

    async def force_exit(self, asset_id: str) -> Optional[SellResult]:
        """
        Sell an entire position now, ignoring the policy (manual override).

        Returns:
            SellResult, or None if the asset is not held or unpriceable
        """
        async with self._store.exclusive(asset_id):
            position = self._store.get(asset_id)
            if position is None:
                logger.warning(f"Token not found in watchlist: {asset_id}")
                return None

            try:
                sample = await self._oracle.get_price(position.pair_id)
            except (PriceUnavailableError, PoolLiquidityError) as e:
                logger.warning(f"Could not get price for {asset_id}: {e}")
                return None

            self._store.update(position.asset_id, sample.rate, sample.observed_at)
            decision = manual_exit(position, sample)

            return await self._executor.execute_sell(
                position,
                decision.exit_fraction,
                ExitReason.MANUAL_OVERRIDE,
                decision=decision,
                sample=sample,
            )

    def summary(self) -> HistorySummary:
        return self._store.summary()
