"""
Execution Layer - Position tracking, exit policy and sell settlement.

This module provides:
    - PositionStore: In-memory registry of held positions + sell history
    - Position: Position data class
    - SellRecord: Append-only record of a settled exit
    - HistorySummary: Count / win rate / realised profit
    - evaluate_exit: Pure exit policy (gates, then triggers)
    - ExitConfig: Exit policy configuration
    - ExitDecision / ExitReason: Policy outcome
    - ActionExecutor: Submit sells, classify settlement, apply outcome
    - ExecutorConfig: Configuration for sell execution
    - SellResult / FailureKind: Result of a sell attempt

Exit Policy:
    - Gates: low liquidity (never sell, log the skip); high realised sell tax
      holds back take profit and trailing stop only
    - Take profit: partial once (if enabled), then full
    - Stop loss / max hold time / trailing stop: always full
    - Trailing stop only fires while the position is in profit

Usage:
    from sniper_bot.execution import PositionStore, ActionExecutor, evaluate_exit

    decision = evaluate_exit(position, sample, ExitConfig())
    if decision.should_exit:
        async with store.exclusive(position.asset_id):
            await executor.execute_sell(position, decision.exit_fraction, decision.reason)
"""

# Position tracking
from .position_store import (
    DuplicatePositionError,
    HistorySummary,
    Position,
    PositionNotFoundError,
    PositionStore,
    SellRecord,
)

# Exit policy
from .exit_policy import (
    FULL_EXIT,
    ExitConfig,
    ExitDecision,
    ExitReason,
    evaluate_exit,
    manual_exit,
)

# Sell execution
from .action_executor import (
    ActionExecutor,
    ExecutorConfig,
    FailureKind,
    SellResult,
    compute_sell_amount,
)

__all__ = [
    # Position tracking
    "DuplicatePositionError",
    "HistorySummary",
    "Position",
    "PositionNotFoundError",
    "PositionStore",
    "SellRecord",
    # Exit policy
    "FULL_EXIT",
    "ExitConfig",
    "ExitDecision",
    "ExitReason",
    "evaluate_exit",
    "manual_exit",
    # Sell execution
    "ActionExecutor",
    "ExecutorConfig",
    "FailureKind",
    "SellResult",
    "compute_sell_amount",
]
