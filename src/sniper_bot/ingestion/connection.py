"""
ConnectionManager - Keeps a live PairCreated log subscription.

State machine:

    DISCONNECTED -> CONNECTING -> SUBSCRIBING -> LIVE
    LIVE -> DEGRADED -> RECONNECTING -> CONNECTING | FATAL_SHUTDOWN

A single loop owns the state. Transports push LogReceived / TransportFailed
messages onto one queue; the loop consumes them one at a time, so a transport
callback can never race a reconnection. Messages from a transport that is no
longer active are dropped.

Decoded events are de-duplicated by (tx_hash, log_index), so a log replayed
after a reconnect is delivered once. Delivery runs as a tracked task per
event, keeping acquisition work off the state-machine loop.

The manager tracks the highest block it has covered. When the feed degrades
that block becomes the resume point; after the next subscription is
acknowledged, eth_getLogs replays from it (inclusive, capped at
max_backfill_blocks behind the head) before the phase turns LIVE. Overlap
with what was already delivered falls to the same dedupe. A failed backfill
keeps the resume point for the following reconnect.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence, Set, Tuple

from sniper_bot.chain.events import EventDecodeError, PairCreatedEvent, decode_pair_created

from .transports import FeedMessage, LogFilter, LogReceived, Transport, TransportFailed

logger = logging.getLogger(__name__)


class ConnectionPhase(str, Enum):
    """Feed connection lifecycle phase."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    DEGRADED = "degraded"
    RECONNECTING = "reconnecting"
    FATAL_SHUTDOWN = "fatal_shutdown"


@dataclass
class ConnectionState:
    """Observable connection state. Mutated only by the ConnectionManager."""

    phase: ConnectionPhase = ConnectionPhase.DISCONNECTED
    mode: Optional[str] = None  # active transport kind
    endpoint: Optional[str] = None
    reconnect_attempts: int = 0
    last_error: Optional[str] = None
    live_since: Optional[datetime] = None


@dataclass
class ConnectionConfig:
    """Configuration for feed reconnection."""

    max_reconnect_attempts: int = 5
    reconnect_delay_seconds: float = 5.0
    connection_probe_timeout_seconds: float = 5.0
    dedupe_window: int = 10_000  # (tx_hash, log_index) keys remembered
    max_backfill_blocks: int = 5000
    backfill_timeout_seconds: float = 10.0


class FatalConnectionError(Exception):
    """The feed could not be (re)established and the bot must shut down."""

    def __init__(self, message: str, state: Optional[ConnectionState] = None):
        self.state = state
        super().__init__(message)


EventCallback = Callable[[PairCreatedEvent], Awaitable[Any]]
FatalCallback = Callable[[ConnectionState], Awaitable[None]]
StateCallback = Callable[[ConnectionPhase], Awaitable[None]]

_STOP = object()


class ConnectionManager:
    """
    Drives the feed state machine.

    Usage:
        manager = ConnectionManager(
            transports, log_filter,
            on_event=handler.handle_pair_created,
            on_fatal=bot.handle_fatal,
            config=ConnectionConfig(),
        )
        await manager.run()  # until stop(); raises FatalConnectionError
    """

    def __init__(
        self,
        transports: Sequence[Transport],
        log_filter: LogFilter,
        on_event: EventCallback,
        on_fatal: Optional[FatalCallback] = None,
        config: Optional[ConnectionConfig] = None,
        state: Optional[ConnectionState] = None,
        on_state_change: Optional[StateCallback] = None,
    ) -> None:
        if not transports:
            raise ValueError("At least one transport is required")

        self._transports = list(transports)
        self._filter = log_filter
        self._on_event = on_event
        self._on_fatal = on_fatal
        self._on_state_change = on_state_change
        self._config = config or ConnectionConfig()
        self.state = state or ConnectionState()

        self._messages: asyncio.Queue = asyncio.Queue()
        self._active: Optional[Transport] = None
        self._stop_event = asyncio.Event()
        self._stopping = False
        self._fatal_invoked = False
        self._connected_once = False

        # Highest block covered by the feed, and where to replay from after a drop
        self._last_block: Optional[int] = None
        self._resume_from: Optional[int] = None
        self._head: Optional[int] = None

        self._seen: "OrderedDict[Tuple[str, int], None]" = OrderedDict()
        self._event_tasks: Set[asyncio.Task] = set()

        self.events_delivered = 0
        self.duplicates_dropped = 0

    @property
    def active_transport(self) -> Optional[Transport]:
        return self._active

    @property
    def is_live(self) -> bool:
        return self.state.phase is ConnectionPhase.LIVE

    @property
    def last_block(self) -> Optional[int]:
        return self._last_block

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run(self) -> ConnectionState:
        """
        Run the state machine until stop() is called.

        Raises:
            FatalConnectionError: if the feed could not be re-established
        """
        self._stopping = False
        self._stop_event.clear()
        self._messages = asyncio.Queue()
        await self._set_phase(ConnectionPhase.CONNECTING)

        try:
            while not self._stopping:
                phase = self.state.phase

                if phase is ConnectionPhase.CONNECTING:
                    await self._step_connecting()
                elif phase is ConnectionPhase.SUBSCRIBING:
                    await self._step_subscribing()
                elif phase is ConnectionPhase.LIVE:
                    message = await self._messages.get()
                    if message is _STOP:
                        break
                    await self._handle_message(message)
                elif phase is ConnectionPhase.DEGRADED:
                    await self._release_active()
                    if self._resume_from is None:
                        self._resume_from = self._last_block
                    self.state.reconnect_attempts += 1
                    await self._set_phase(ConnectionPhase.RECONNECTING)
                elif phase is ConnectionPhase.RECONNECTING:
                    await self._step_reconnecting()
                elif phase is ConnectionPhase.FATAL_SHUTDOWN:
                    raise FatalConnectionError(
                        f"Feed connection lost: {self.state.last_error}", self.state
                    )
                else:
                    break
        finally:
            await self._release_active()

        if self.state.phase is not ConnectionPhase.FATAL_SHUTDOWN:
            await self._set_phase(ConnectionPhase.DISCONNECTED)
        return self.state

    async def stop(self) -> None:
        """Ask the loop to exit and wait for in-flight event handlers."""
        self._stopping = True
        self._stop_event.set()
        self._messages.put_nowait(_STOP)
        await self.wait_for_pending_events()

    async def wait_for_pending_events(self) -> None:
        """Wait until every dispatched event handler has finished."""
        while self._event_tasks:
            await asyncio.gather(*list(self._event_tasks), return_exceptions=True)

    # =========================================================================
    # State steps
    # =========================================================================

    async def _step_connecting(self) -> None:
        transport = await self._connect_first_available()

        if transport is not None:
            self._connected_once = True
            self._active = transport
            self.state.mode = transport.kind.value
            self.state.endpoint = transport.url
            await self._set_phase(ConnectionPhase.SUBSCRIBING)
            return

        if not self._connected_once:
            await self._enter_fatal("No endpoint answered on initial connect")
        else:
            await self._set_phase(ConnectionPhase.DEGRADED)

    async def _step_subscribing(self) -> None:
        transport = self._active
        try:
            await asyncio.wait_for(
                transport.subscribe(self._filter),
                timeout=self._config.connection_probe_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.state.last_error = f"subscribe failed on {transport.url}: {e}"
            logger.warning(f"Subscription via {transport.name} failed: {e}")
            await self._set_phase(ConnectionPhase.DEGRADED)
            return

        if self._resume_from is not None:
            await self._backfill(transport)
        if self._head is not None and (self._last_block is None or self._head > self._last_block):
            self._last_block = self._head

        self.state.reconnect_attempts = 0
        self.state.live_since = datetime.now(timezone.utc)
        await self._set_phase(ConnectionPhase.LIVE)
        logger.info(f"Listening for new pairs via {transport.name}")

    async def _backfill(self, transport: Transport) -> None:
        """Replay logs from the resume point through the new transport."""
        start = self._resume_from
        if self._head is not None and start < self._head - self._config.max_backfill_blocks:
            start = self._head - self._config.max_backfill_blocks
            logger.warning(
                f"Feed was down since block {self._resume_from}; "
                f"backfilling only from block {start}"
            )

        try:
            logs = await asyncio.wait_for(
                transport.get_logs(self._filter, start),
                timeout=self._config.backfill_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.state.last_error = f"backfill from block {start} failed on {transport.url}: {e}"
            logger.error(
                f"Backfill via {transport.name} failed, pairs created while "
                f"disconnected may be missed until the next reconnect: {e}"
            )
            return

        self._resume_from = None
        delivered = self.events_delivered
        for log in logs:
            self._deliver(log)
        logger.info(
            f"Backfilled {len(logs)} log(s) from block {start}, "
            f"{self.events_delivered - delivered} new"
        )

    async def _step_reconnecting(self) -> None:
        attempts = self.state.reconnect_attempts
        limit = self._config.max_reconnect_attempts

        if attempts > limit:
            await self._enter_fatal(f"Max reconnection attempts reached ({limit})")
            return

        delay = self._config.reconnect_delay_seconds
        logger.info(f"Reconnecting (attempt {attempts}/{limit}) in {delay}s...")

        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            return  # Stop requested
        except asyncio.TimeoutError:
            pass

        await self._set_phase(ConnectionPhase.CONNECTING)

    async def _enter_fatal(self, reason: str) -> None:
        self.state.last_error = reason
        self.state.mode = None
        self.state.endpoint = None
        await self._release_active()
        await self._set_phase(ConnectionPhase.FATAL_SHUTDOWN)
        logger.error(f"Feed connection fatal: {reason}")

        if self._fatal_invoked:
            return
        self._fatal_invoked = True

        if self._on_fatal:
            try:
                await self._on_fatal(self.state)
            except Exception as e:
                logger.error(f"Error in fatal shutdown handler: {e}")

    async def _set_phase(self, phase: ConnectionPhase) -> None:
        if self.state.phase is phase:
            return
        previous = self.state.phase
        self.state.phase = phase
        logger.info(f"Feed connection: {previous.value} -> {phase.value}")

        if self._on_state_change:
            try:
                await self._on_state_change(phase)
            except Exception as e:
                logger.error(f"Error in state change callback: {e}")

    # =========================================================================
    # Transports
    # =========================================================================

    async def _connect_first_available(self) -> Optional[Transport]:
        """Open transports in priority order; the first to answer a probe wins."""
        timeout = self._config.connection_probe_timeout_seconds

        for transport in self._transports:
            try:
                await asyncio.wait_for(self._open_and_probe(transport), timeout=timeout)
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                self.state.last_error = f"{transport.url} did not answer within {timeout}s"
                logger.warning(f"{transport.name} probe timed out")
                await self._close_quietly(transport)
                continue
            except Exception as e:
                self.state.last_error = f"{transport.url}: {e}"
                logger.warning(f"{transport.name} unavailable: {e}")
                await self._close_quietly(transport)
                continue

            return transport

        return None

    async def _open_and_probe(self, transport: Transport) -> None:
        await transport.open(self._sink)
        block = await transport.probe()
        self._head = block
        logger.info(f"Connected via {transport.name} (block {block})")

    def _sink(self, message: FeedMessage) -> None:
        self._messages.put_nowait(message)

    async def _release_active(self) -> None:
        if self._active is not None:
            transport, self._active = self._active, None
            await self._close_quietly(transport)

    async def _close_quietly(self, transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.debug(f"Error closing {transport.name}: {e}")

    # =========================================================================
    # Messages
    # =========================================================================

    async def _handle_message(self, message: FeedMessage) -> None:
        if message.transport is not self._active:
            logger.debug(f"Ignoring message from superseded transport {message.transport.name}")
            return

        if isinstance(message, TransportFailed):
            self.state.last_error = str(message.error) or type(message.error).__name__
            logger.warning(f"Feed transport {message.transport.name} failed: {self.state.last_error}")
            await self._set_phase(ConnectionPhase.DEGRADED)
            return

        if isinstance(message, LogReceived):
            self._deliver(message.log)

    def _deliver(self, log: dict) -> None:
        try:
            event = decode_pair_created(log)
        except EventDecodeError as e:
            logger.warning(f"Undecodable PairCreated log: {e}")
            return

        if self._last_block is None or event.block_ref > self._last_block:
            self._last_block = event.block_ref

        key = event.event_key
        if key in self._seen:
            self.duplicates_dropped += 1
            logger.debug(f"Duplicate event {key}, dropping")
            return

        self._seen[key] = None
        while len(self._seen) > self._config.dedupe_window:
            self._seen.popitem(last=False)

        self.events_delivered += 1
        task = asyncio.create_task(self._run_handler(event), name=f"pair_created:{event.pair_id}")
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)

    async def _run_handler(self, event: PairCreatedEvent) -> None:
        try:
            await self._on_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error handling PairCreated {event.pair_id}: {e}")
