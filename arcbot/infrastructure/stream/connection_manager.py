"""Resilient kline stream connection.

Features:
- History bootstrap before any live event (and gap-fill on every reconnect)
- Heartbeat (ping + pong timeout) and idle watchdog
- Reconnection with deterministic exponential backoff, bounded attempts
- Subscription set replayed as one batched SUBSCRIBE after every connect
- Single ordered event queue drained by `run()`

Every transport is tagged with a generation number. Events coming from a
superseded transport are dropped, so a forced terminate followed by the
socket's own close event produces exactly one reconnect.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Set, Tuple

from arcbot.infrastructure.binance.kline_codec import ControlAck, FrameDecodeError, control_frame, decode_frame
from arcbot.infrastructure.logging.logging import get_logger
from arcbot.infrastructure.stream.transport import (
    StreamTransport,
    TransportEvent,
    TransportEventType,
    TransportFactory,
)
from arcbot.infrastructure.utils.config import StreamConfig
from arcbot.models.market_models import Candle
from arcbot.services.execution.interfaces import ExchangeClient

HistoryHandler = Callable[[List[Candle]], Awaitable[None]]
CandleHandler = Callable[[Candle], Awaitable[None]]


class ConnectionPhase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class ReconnectExhaustedError(RuntimeError):
    def __init__(self, attempts: int) -> None:
        super().__init__(f"reconnect attempts exhausted after {attempts} tries")
        self.attempts = attempts


@dataclass
class ConnectionState:
    phase: ConnectionPhase = ConnectionPhase.DISCONNECTED
    attempt: int = 0
    last_message_time: float = 0.0
    subscriptions: Set[str] = field(default_factory=set)
    pending_pong: bool = False


class _Control(str, Enum):
    HISTORY = "history"
    STOP = "stop"
    FAILED = "failed"


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before reconnect `attempt` (1-based): base * 2^(attempt-1), capped."""
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


class ConnectionManager:
    def __init__(
        self,
        url: str,
        transport_factory: TransportFactory,
        exchange: ExchangeClient,
        *,
        symbol: str,
        interval: str,
        on_history: HistoryHandler,
        on_candle: CandleHandler,
        config: Optional[StreamConfig] = None,
        watchdog_interval: float = 30.0,
        history_limit: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._logger = get_logger("connection_manager", url=url)
        self._url = url
        self._transport_factory = transport_factory
        self._exchange = exchange
        self._symbol = symbol.upper()
        self._interval = interval
        self._on_history = on_history
        self._on_candle = on_candle
        self._cfg = config or StreamConfig()
        self._watchdog_interval = watchdog_interval
        self._history_limit = history_limit
        self._clock = clock

        self.state = ConnectionState()
        self._queue: asyncio.Queue[Tuple[int, Any, Any]] = asyncio.Queue()
        self._generation = 0
        self._closing = False
        self._transport: Optional[StreamTransport] = None
        self._request_ids = itertools.count(1)

        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._pong_timer: Optional[asyncio.Task[None]] = None
        self._watchdog_task: Optional[asyncio.Task[None]] = None
        self._backoff_task: Optional[asyncio.Task[None]] = None
        self._side_tasks: Set[asyncio.Task[Any]] = set()

    @property
    def phase(self) -> ConnectionPhase:
        return self.state.phase

    @property
    def is_connected(self) -> bool:
        return self.state.phase is ConnectionPhase.CONNECTED

    # ------------------------------------------------------------------ public

    async def connect(self) -> None:
        if self.state.phase is ConnectionPhase.RECONNECTING:
            self._cancel(self._backoff_task)
            self._backoff_task = None
        elif self.state.phase is not ConnectionPhase.DISCONNECTED:
            self._logger.warning("connect_ignored", phase=self.state.phase.value)
            return
        self._closing = False
        await self._open_transport()

    async def subscribe(self, channel: str) -> None:
        self.state.subscriptions.add(channel)
        if self.is_connected:
            await self._send_control("SUBSCRIBE", [channel])

    async def unsubscribe(self, channel: str) -> None:
        self.state.subscriptions.discard(channel)
        if self.is_connected:
            await self._send_control("UNSUBSCRIBE", [channel])

    async def close(self) -> None:
        self._closing = True
        self._stop_timers()
        self._cancel(self._backoff_task)
        self._backoff_task = None
        self._generation += 1

        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.terminate()

        self.state.phase = ConnectionPhase.DISCONNECTED
        self.state.pending_pong = False
        self._queue.put_nowait((self._generation, _Control.STOP, None))
        self._logger.info("ws_closed")

    async def run(self) -> None:
        """Drain the event queue in arrival order until close() or failure."""
        while True:
            generation, kind, payload = await self._queue.get()
            if kind is _Control.STOP:
                # queued before the latest connect()
                if generation < self._generation:
                    continue
                return
            if kind is _Control.FAILED:
                raise ReconnectExhaustedError(payload)
            if kind is _Control.HISTORY:
                await self._on_history(payload)
                continue
            await self._handle_message(payload)

    # --------------------------------------------------------------- internals

    async def _open_transport(self) -> None:
        self.state.phase = ConnectionPhase.CONNECTING
        self._generation += 1
        generation = self._generation
        self._logger.info("ws_connect", attempt=self.state.attempt)

        try:
            history = await self._exchange.get_historical_candles(
                self._symbol, self._interval, self._history_limit
            )
            if generation != self._generation or self._closing:
                return
            closed = sorted((c for c in history if c.is_closed), key=lambda c: c.open_time)
            self._queue.put_nowait((generation, _Control.HISTORY, closed))

            transport = self._transport_factory(lambda ev: self._on_transport_event(generation, ev))
            self._transport = transport
            await transport.connect(self._url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.error("ws_connect_failed", error=str(e))
            if generation == self._generation and not self._closing:
                self._begin_reconnect("connect_failed")
            return

        if self._closing or generation != self._generation:
            await transport.terminate()

    def _on_transport_event(self, generation: int, ev: TransportEvent) -> None:
        if generation != self._generation or self._closing:
            self._logger.debug("stale_transport_event", type=ev.type.value)
            return

        if ev.type is TransportEventType.OPEN:
            self._on_open()
        elif ev.type is TransportEventType.MESSAGE:
            self.state.last_message_time = self._clock()
            self._queue.put_nowait((generation, TransportEventType.MESSAGE, ev.data))
        elif ev.type is TransportEventType.PING:
            self.state.last_message_time = self._clock()
            if self._transport is not None:
                self._spawn(self._transport.pong())
        elif ev.type is TransportEventType.PONG:
            self.state.pending_pong = False
            self._cancel(self._pong_timer)
            self._pong_timer = None
            self._logger.debug("ws_pong")
        elif ev.type in (TransportEventType.CLOSE, TransportEventType.ERROR):
            self._logger.warning("ws_disconnected", type=ev.type.value, code=ev.code, reason=ev.reason)
            self._begin_reconnect(ev.type.value)

    def _on_open(self) -> None:
        self.state.phase = ConnectionPhase.CONNECTED
        self.state.attempt = 0
        self.state.last_message_time = self._clock()
        self.state.pending_pong = False
        self._logger.info("ws_connected", subscriptions=sorted(self.state.subscriptions))

        generation = self._generation
        if self.state.subscriptions:
            self._spawn(self._send_control("SUBSCRIBE", sorted(self.state.subscriptions)))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(generation))
        self._watchdog_task = asyncio.create_task(self._watchdog_loop(generation))

    def _begin_reconnect(self, reason: str) -> None:
        if self._closing or self.state.phase not in (ConnectionPhase.CONNECTING, ConnectionPhase.CONNECTED):
            return

        self._generation += 1
        self._stop_timers()
        transport, self._transport = self._transport, None
        if transport is not None:
            self._spawn(transport.terminate())

        self.state.phase = ConnectionPhase.RECONNECTING
        self.state.attempt += 1
        if self.state.attempt > self._cfg.max_reconnect_attempts:
            self.state.phase = ConnectionPhase.FAILED
            self._logger.error("reconnect_exhausted", attempts=self.state.attempt - 1, reason=reason)
            self._queue.put_nowait((self._generation, _Control.FAILED, self.state.attempt - 1))
            return

        delay = backoff_delay(self.state.attempt, self._cfg.base_delay, self._cfg.max_delay)
        self._logger.warning("reconnect_backoff", attempt=self.state.attempt, seconds=delay, reason=reason)
        self._backoff_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._backoff_task = None
        if self._closing:
            return
        await self._open_transport()

    async def _heartbeat_loop(self, generation: int) -> None:
        while generation == self._generation:
            await asyncio.sleep(self._cfg.ping_interval)
            if generation != self._generation or self._transport is None:
                return
            if self.state.pending_pong:
                # previous ping still within its pong deadline
                continue
            self.state.pending_pong = True
            self._pong_timer = asyncio.create_task(self._pong_deadline(generation))
            try:
                await self._transport.ping()
            except Exception as e:
                self._logger.warning("ws_ping_failed", error=str(e))
                self._begin_reconnect("ping_failed")
                return

    async def _pong_deadline(self, generation: int) -> None:
        await asyncio.sleep(self._cfg.pong_timeout)
        if generation == self._generation and self.state.pending_pong:
            self._logger.warning("heartbeat_timeout", timeout=self._cfg.pong_timeout)
            self._begin_reconnect("pong_timeout")

    async def _watchdog_loop(self, generation: int) -> None:
        while generation == self._generation:
            await asyncio.sleep(self._watchdog_interval)
            if generation != self._generation or not self.is_connected:
                return
            idle = self._clock() - self.state.last_message_time
            if idle > self._cfg.idle_threshold:
                self._logger.warning("idle_timeout", idle_seconds=round(idle, 1))
                self._begin_reconnect("idle")
                return

    async def _send_control(self, method: str, channels: Sequence[str]) -> None:
        transport = self._transport
        if transport is None:
            return
        req_id = next(self._request_ids)
        try:
            await transport.send(control_frame(method, channels, req_id))
        except Exception as e:
            # kept in the subscription set; replayed on the next connect
            self._logger.warning("control_send_failed", method=method, channels=list(channels), error=str(e))
            return
        self._logger.info("control_sent", method=method, channels=list(channels), id=req_id)

    async def _handle_message(self, raw: Any) -> None:
        try:
            decoded = decode_frame(raw)
        except FrameDecodeError as e:
            self._logger.warning("malformed_frame", error=str(e))
            return

        if isinstance(decoded, ControlAck):
            if decoded.error:
                self._logger.warning("control_rejected", id=decoded.request_id, error=decoded.error)
            else:
                self._logger.debug("control_ack", id=decoded.request_id)
            return
        if decoded is None:
            return
        if decoded.symbol and decoded.symbol != self._symbol:
            self._logger.debug("foreign_symbol_skipped", symbol=decoded.symbol)
            return
        await self._on_candle(decoded)

    def _stop_timers(self) -> None:
        for task in (self._heartbeat_task, self._pong_timer, self._watchdog_task):
            self._cancel(task)
        self._heartbeat_task = None
        self._pong_timer = None
        self._watchdog_task = None
        self.state.pending_pong = False

    @staticmethod
    def _cancel(task: Optional[asyncio.Task[Any]]) -> None:
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._side_tasks.add(task)
        task.add_done_callback(self._side_task_done)

    def _side_task_done(self, task: "asyncio.Task[Any]") -> None:
        self._side_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.warning("transport_call_failed", error=str(exc))
