"""Single-position state machine driven by signal updates.

FLAT -(open)-> OPENING -(ack)-> OPEN -(close)-> CLOSING -(ack)-> FLAT

The pending phases (OPENING/CLOSING) are reserved synchronously, before any
order task is scheduled, and block every other transition until the order
call returns. A failed order reverts to the last confirmed state and
re-raises; nothing is retried.

Per tick, while nothing is pending:
- exits first (reversal through both EMAs, stop-loss / take-profit); an exit
  consumes the tick
- crossover while FLAT opens in the crossover direction
- arc top/bottom closes an opposite position and opens the arc direction,
  unless the arc is stale relative to the last crossover
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Awaitable, Optional, Set

from arcbot.infrastructure.binance.rest_client import BinanceAPIError, is_known_state_error
from arcbot.infrastructure.logging.logging import get_logger
from arcbot.infrastructure.utils.config import TradingConfig
from arcbot.models.trade_models import Direction, Position, PositionPhase
from arcbot.services.execution.interfaces import ExchangeClient, SignalSink
from arcbot.services.risk.exit_rules import ExitReason, check_exit
from arcbot.services.risk.position_sizer import PositionSizer, floor_to_precision
from arcbot.services.strategy.signal_engine import Signal, SignalKind, SignalUpdate


class PositionStateError(RuntimeError):
    pass


class OrderSizeError(ValueError):
    pass


_CROSS_DIRECTION = {
    SignalKind.CROSS_UP: Direction.LONG,
    SignalKind.CROSS_DOWN: Direction.SHORT,
}
_ARC_DIRECTION = {
    SignalKind.ARC_TOP: Direction.SHORT,
    SignalKind.ARC_BOTTOM: Direction.LONG,
}


class PositionController:
    def __init__(self, exchange: ExchangeClient, sink: SignalSink, config: TradingConfig) -> None:
        self._logger = get_logger("position_controller")
        self.exchange = exchange
        self.sink = sink
        self.cfg = config
        self.symbol = config.symbol
        self.sizer = PositionSizer(position_size_fraction=config.position_size_fraction, leverage=config.leverage)

        self.position = Position(leverage=config.leverage)
        self.cross_reference_price: Optional[float] = None

        self._action_task: Optional[asyncio.Task[None]] = None
        self._notify_tasks: Set[asyncio.Task[Any]] = set()
        self.trades_opened = 0
        self.trades_closed = 0

    # ------------------------------------------------------------ operations

    async def open_position(self, direction: Direction, price: float) -> None:
        self._reserve(PositionPhase.OPENING)
        await self._run_open(direction, price)

    async def close_position(self, price: float, reason: str = "manual") -> None:
        prior = self._reserve(PositionPhase.CLOSING)
        await self._run_close(prior, price, reason)

    def evaluate_exits(
        self,
        price: float,
        ema_fast: Optional[float] = None,
        ema_slow: Optional[float] = None,
    ) -> Optional[ExitReason]:
        if self.position.phase is not PositionPhase.OPEN:
            return None
        return check_exit(
            direction=self.position.direction,
            entry_price=self.position.entry_price,
            price=price,
            leverage=self.position.leverage,
            ema_fast=ema_fast,
            ema_slow=ema_slow,
            stop_loss=self.cfg.stop_loss,
            take_profit=self.cfg.take_profit,
        )

    def on_tick(self, update: SignalUpdate) -> Optional["asyncio.Task[None]"]:
        """Decide on one signal update. Returns the scheduled order task, if any."""
        for s in update.signals:
            if s.kind.is_crossover:
                self.cross_reference_price = s.reference_price

        if self.position.pending:
            if update.signals:
                self._logger.debug("tick_ignored_pending", phase=self.position.phase.value)
            return None
        if not update.ready:
            return None

        price = update.price
        reason = self.evaluate_exits(price, update.ema_fast, update.ema_slow)
        if reason is not None:
            self._logger.info(
                "exit_triggered",
                reason=reason.value,
                direction=self.position.direction.value,
                price=price,
                entry_price=self.position.entry_price,
            )
            prior = self._reserve(PositionPhase.CLOSING)
            return self._launch(self._run_close(prior, price, reason.value))

        for s in update.signals:
            task = self._act_on_signal(s, update)
            if task is not None:
                return task
        return None

    async def sync_from_exchange(self) -> None:
        """Adopt a position that is already open on the exchange."""
        if self.position.pending:
            raise PositionStateError(f"cannot sync while {self.position.phase.value}")
        snap = await self.exchange.get_current_position(self.symbol)
        if snap is None:
            self.position = Position(leverage=self.cfg.leverage)
            self._logger.info("position_synced", phase=PositionPhase.FLAT.value)
            return
        self.position = Position(
            phase=PositionPhase.OPEN,
            direction=snap.direction,
            qty=snap.qty,
            entry_price=snap.entry_price,
            leverage=snap.leverage or self.cfg.leverage,
        )
        self._logger.info(
            "position_adopted",
            direction=snap.direction.value,
            qty=snap.qty,
            entry_price=snap.entry_price,
            leverage=snap.leverage,
        )

    async def wait_idle(self) -> None:
        pending = [t for t in (self._action_task, *self._notify_tasks) if t is not None and not t.done()]
        if pending:
            await asyncio.wait(pending)

    # -------------------------------------------------------------- decisions

    def _act_on_signal(self, signal: Signal, update: SignalUpdate) -> Optional["asyncio.Task[None]"]:
        price = update.price
        phase = self.position.phase

        if signal.kind.is_crossover:
            if phase is not PositionPhase.FLAT:
                return None
            direction = _CROSS_DIRECTION[signal.kind]
            self._logger.info("crossover_entry", kind=signal.kind.value, direction=direction.value, price=price)
            self._reserve(PositionPhase.OPENING)
            return self._launch(self._run_open(direction, price))

        target = _ARC_DIRECTION[signal.kind]
        if phase is PositionPhase.OPEN and self.position.direction is target:
            return None
        if not self._arc_is_fresh(signal, update):
            return None

        if phase is PositionPhase.OPEN:
            self._logger.info("arc_reversal", kind=signal.kind.value, direction=target.value, price=price)
            prior = self._reserve(PositionPhase.CLOSING)
            return self._launch(self._reverse(prior, target, price, signal.kind.value))

        self._logger.info("arc_entry", kind=signal.kind.value, direction=target.value, price=price)
        self._reserve(PositionPhase.OPENING)
        return self._launch(self._run_open(target, price))

    def _arc_is_fresh(self, signal: Signal, update: SignalUpdate) -> bool:
        """Reject an arc acted on after the EMAs already crossed in its direction,
        unless price is still near both the crossover and the arc's second extreme."""
        if update.ema_fast is None or update.ema_slow is None:
            return False
        if signal.kind is SignalKind.ARC_TOP:
            flipped = update.ema_fast < update.ema_slow
        else:
            flipped = update.ema_fast > update.ema_slow
        if not flipped:
            return True

        price = update.price
        ref = self.cross_reference_price
        if ref is None:
            self._logger.info("arc_discarded", kind=signal.kind.value, reason="no_crossover_reference")
            return False
        if abs(price - ref) > self.cfg.max_price_diff:
            self._logger.info(
                "arc_discarded",
                kind=signal.kind.value,
                reason="far_from_crossover",
                price=price,
                cross_price=ref,
                max_allowed=self.cfg.max_price_diff,
            )
            return False

        second = signal.second_extreme()
        if second is None or abs(price - second) > self.cfg.max_extreme_diff:
            self._logger.info(
                "arc_discarded",
                kind=signal.kind.value,
                reason="far_from_second_extreme",
                price=price,
                second_extreme=second,
                max_allowed=self.cfg.max_extreme_diff,
            )
            return False
        return True

    # -------------------------------------------------------------- execution

    def _reserve(self, phase: PositionPhase) -> Position:
        current = self.position
        if current.pending:
            raise PositionStateError(f"transition in progress ({current.phase.value})")
        if phase is PositionPhase.OPENING and current.phase is not PositionPhase.FLAT:
            raise PositionStateError(f"cannot open while {current.phase.value}")
        if phase is PositionPhase.CLOSING and current.phase is not PositionPhase.OPEN:
            raise PositionStateError(f"cannot close while {current.phase.value}")

        prior = replace(current)
        self.position = replace(current, phase=phase)
        return prior

    async def _run_open(self, direction: Direction, price: float) -> None:
        if direction is Direction.NONE:
            self.position = replace(self.position, phase=PositionPhase.FLAT)
            raise ValueError("direction must be LONG or SHORT")

        confirmed = False
        try:
            await self._ensure_leverage()
            balance = await self.exchange.get_account_balance()
            rules = await self.exchange.get_instrument_rules(self.symbol)
            decision = self.sizer.compute(available=balance.available, price=price, rules=rules)
            if not decision.allowed:
                raise OrderSizeError(decision.reason)

            self._logger.info(
                "opening_position",
                direction=direction.value,
                qty=decision.qty,
                price=price,
                available=balance.available,
                leverage=self.cfg.leverage,
            )
            ack = await self.exchange.place_market_order(self.symbol, direction.entry_side, decision.qty, False)

            self.position = Position(
                phase=PositionPhase.OPEN,
                direction=direction,
                qty=decision.qty,
                entry_price=float(price),
                leverage=self.cfg.leverage,
            )
            confirmed = True
            self.trades_opened += 1
            self._logger.info(
                "position_opened", direction=direction.value, qty=decision.qty, price=price, order_id=ack.order_id
            )
            self._notify(f"{self.symbol} open {direction.value} price:{price} qty:{decision.qty}")
        finally:
            if not confirmed:
                self.position = Position(leverage=self.cfg.leverage)

    async def _run_close(self, prior: Position, price: float, reason: str) -> None:
        confirmed = False
        try:
            snap = await self.exchange.get_current_position(self.symbol)
            if snap is None:
                self._logger.warning("position_missing_on_exchange", direction=prior.direction.value)
                self.position = Position(leverage=self.cfg.leverage)
                confirmed = True
                return

            rules = await self.exchange.get_instrument_rules(self.symbol)
            qty = floor_to_precision(snap.qty, rules.quantity_precision)
            if qty <= 0 or qty < rules.min_qty:
                raise OrderSizeError(f"close qty {qty} below min_qty {rules.min_qty}")

            ack = await self.exchange.place_market_order(self.symbol, snap.direction.exit_side, qty, True)

            if snap.direction is Direction.LONG:
                pnl = (price - snap.entry_price) * qty
            else:
                pnl = (snap.entry_price - price) * qty
            self.position = Position(leverage=self.cfg.leverage)
            confirmed = True
            self.trades_closed += 1
            self._logger.info(
                "position_closed",
                direction=snap.direction.value,
                qty=qty,
                price=price,
                entry_price=snap.entry_price,
                expected_pnl=round(pnl, 4),
                reason=reason,
                order_id=ack.order_id,
            )
            self._notify(
                f"{self.symbol} close {snap.direction.value} price:{price} qty:{qty} pnl:{pnl:.2f} reason:{reason}"
            )
        finally:
            if not confirmed:
                self.position = prior

    async def _reverse(self, prior: Position, direction: Direction, price: float, reason: str) -> None:
        await self._run_close(prior, price, reason)
        self._reserve(PositionPhase.OPENING)
        await self._run_open(direction, price)

    async def _ensure_leverage(self) -> None:
        try:
            await self.exchange.set_leverage(self.symbol, self.cfg.leverage)
        except BinanceAPIError as e:
            if not is_known_state_error(e):
                raise
            self._logger.debug("leverage_unchanged", code=e.code)

    def _launch(self, coro: Awaitable[None]) -> "asyncio.Task[None]":
        task = asyncio.ensure_future(coro)
        self._action_task = task
        task.add_done_callback(self._action_done)
        return task

    def _action_done(self, task: "asyncio.Task[None]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error(
                "position_action_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                phase=self.position.phase.value,
            )

    def _notify(self, text: str) -> None:
        task = asyncio.ensure_future(self.sink.notify(text))
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_done)

    def _notify_done(self, task: "asyncio.Task[Any]") -> None:
        self._notify_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._logger.warning("notify_failed", error=str(task.exception()))
