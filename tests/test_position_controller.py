"""Tests for arcbot/services/execution/position_controller.py"""

import asyncio

import pytest

from arcbot.infrastructure.binance.rest_client import BinanceAPIError
from arcbot.infrastructure.utils.config import TradingConfig
from arcbot.models.trade_models import AccountBalance, Direction, Position, PositionPhase, PositionSnapshot
from arcbot.services.execution.position_controller import (
    OrderSizeError,
    PositionController,
    PositionStateError,
)
from arcbot.services.strategy.signal_engine import Signal, SignalKind, SignalUpdate
from conftest import make_candle

TOP_WINDOW = (99.0, 101.0, 103.0, 102.0, 98.0)
BOTTOM_WINDOW = (101.0, 99.0, 97.0, 98.0, 102.0)


def _controller(exchange, sink, **overrides) -> PositionController:
    cfg = TradingConfig(**overrides)
    return PositionController(exchange, sink, cfg)


def _update(price, ema_fast, ema_slow, *kinds, window=()):
    signals = tuple(
        Signal(kind=k, timestamp=0, reference_price=price, window_fast=window if not k.is_crossover else ())
        for k in kinds
    )
    return SignalUpdate(candle=make_candle(price, closed=False), ema_fast=ema_fast, ema_slow=ema_slow, signals=signals)


def _set_open(controller, direction, entry=100.0, qty=1.0):
    controller.position = Position(
        phase=PositionPhase.OPEN, direction=direction, qty=qty, entry_price=entry, leverage=50
    )


def _snapshot(direction, qty=1.0, entry=100.0):
    return PositionSnapshot(direction=direction, qty=qty, entry_price=entry, leverage=50)


# ---------------------------------------------------------------------------
# open / close
# ---------------------------------------------------------------------------


class TestOpenPosition:
    @pytest.mark.asyncio
    async def test_crossover_up_while_flat_opens_long(self, mock_exchange, mock_sink):
        """prev 99 < 100, now 101 > 100 and FLAT: LONG at the current price."""
        ctl = _controller(mock_exchange, mock_sink)

        task = ctl.on_tick(_update(101.0, 101.0, 100.0, SignalKind.CROSS_UP))
        assert ctl.position.phase is PositionPhase.OPENING
        await task

        assert ctl.position.phase is PositionPhase.OPEN
        assert ctl.position.direction is Direction.LONG
        assert ctl.position.entry_price == 101.0
        # 1000 * 0.05 * 50 / 101 = 24.7524... floored to 3 decimals
        mock_exchange.place_market_order.assert_awaited_once_with("BTCUSDT", "BUY", 24.752, False)
        mock_exchange.set_leverage.assert_awaited_once_with("BTCUSDT", 50)
        assert ctl.cross_reference_price == 101.0

    @pytest.mark.asyncio
    async def test_crossover_down_opens_short(self, mock_exchange, mock_sink):
        ctl = _controller(mock_exchange, mock_sink)
        await ctl.on_tick(_update(99.0, 99.0, 100.0, SignalKind.CROSS_DOWN))
        assert ctl.position.direction is Direction.SHORT
        assert mock_exchange.place_market_order.await_args.args[1] == "SELL"

    @pytest.mark.asyncio
    async def test_second_open_rejected_while_opening_and_open(self, mock_exchange, mock_sink):
        ctl = _controller(mock_exchange, mock_sink)

        task = ctl.on_tick(_update(101.0, 101.0, 100.0, SignalKind.CROSS_UP))
        with pytest.raises(PositionStateError):
            await ctl.open_position(Direction.SHORT, 101.0)
        await task

        with pytest.raises(PositionStateError):
            await ctl.open_position(Direction.LONG, 101.0)
        assert mock_exchange.place_market_order.await_count == 1

    @pytest.mark.asyncio
    async def test_ticks_ignored_while_pending(self, mock_exchange, mock_sink):
        ctl = _controller(mock_exchange, mock_sink)

        task = ctl.on_tick(_update(101.0, 101.0, 100.0, SignalKind.CROSS_UP))
        assert ctl.on_tick(_update(101.0, 101.0, 100.0, SignalKind.ARC_BOTTOM, window=BOTTOM_WINDOW)) is None
        await task
        assert mock_exchange.place_market_order.await_count == 1

    @pytest.mark.asyncio
    async def test_below_min_qty_raises_and_reverts(self, mock_exchange, mock_sink):
        mock_exchange.get_account_balance.return_value = AccountBalance(available=0.001, margin=0.0, unrealized_profit=0.0)
        ctl = _controller(mock_exchange, mock_sink)

        with pytest.raises(OrderSizeError):
            await ctl.open_position(Direction.LONG, 50_000.0)

        assert ctl.position.phase is PositionPhase.FLAT
        mock_exchange.place_market_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_order_failure_reverts_to_flat(self, mock_exchange, mock_sink):
        mock_exchange.place_market_order.side_effect = BinanceAPIError(-2019, "Margin is insufficient.", 400)
        ctl = _controller(mock_exchange, mock_sink)

        with pytest.raises(BinanceAPIError):
            await ctl.open_position(Direction.LONG, 100.0)

        assert ctl.position.phase is PositionPhase.FLAT
        assert mock_exchange.place_market_order.await_count == 1

    @pytest.mark.asyncio
    async def test_unchanged_leverage_is_not_an_error(self, mock_exchange, mock_sink):
        mock_exchange.set_leverage.side_effect = BinanceAPIError(-4046, "No need to change margin type.", 400)
        ctl = _controller(mock_exchange, mock_sink)

        await ctl.open_position(Direction.SHORT, 100.0)

        assert ctl.position.phase is PositionPhase.OPEN

    @pytest.mark.asyncio
    async def test_open_notifies_sink(self, mock_exchange, mock_sink):
        ctl = _controller(mock_exchange, mock_sink)
        await ctl.open_position(Direction.LONG, 100.0)
        await ctl.wait_idle()

        mock_sink.notify.assert_awaited_once()
        assert "open long" in mock_sink.notify.await_args.args[0]

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_affect_position(self, mock_exchange, mock_sink):
        mock_sink.notify.side_effect = RuntimeError("sink down")
        ctl = _controller(mock_exchange, mock_sink)

        await ctl.open_position(Direction.LONG, 100.0)
        await asyncio.sleep(0)

        assert ctl.position.phase is PositionPhase.OPEN


class TestClosePosition:
    @pytest.mark.asyncio
    async def test_close_uses_exchange_quantity_reduce_only(self, mock_exchange, mock_sink):
        mock_exchange.get_current_position.return_value = _snapshot(Direction.LONG, qty=0.12345)
        ctl = _controller(mock_exchange, mock_sink)
        _set_open(ctl, Direction.LONG)

        await ctl.close_position(105.0)

        mock_exchange.place_market_order.assert_awaited_once_with("BTCUSDT", "SELL", 0.123, True)
        assert ctl.position.phase is PositionPhase.FLAT

    @pytest.mark.asyncio
    async def test_missing_exchange_position_goes_flat_without_order(self, mock_exchange, mock_sink):
        ctl = _controller(mock_exchange, mock_sink)
        _set_open(ctl, Direction.SHORT)

        await ctl.close_position(100.0)

        mock_exchange.place_market_order.assert_not_awaited()
        assert ctl.position.phase is PositionPhase.FLAT

    @pytest.mark.asyncio
    async def test_close_failure_reverts_to_open(self, mock_exchange, mock_sink):
        mock_exchange.get_current_position.return_value = _snapshot(Direction.LONG)
        mock_exchange.place_market_order.side_effect = BinanceAPIError(-1001, "Internal error", 500)
        ctl = _controller(mock_exchange, mock_sink)
        _set_open(ctl, Direction.LONG)

        with pytest.raises(BinanceAPIError):
            await ctl.close_position(100.0)

        assert ctl.position.phase is PositionPhase.OPEN
        assert ctl.position.direction is Direction.LONG

    @pytest.mark.asyncio
    async def test_close_while_flat_rejected(self, mock_exchange, mock_sink):
        ctl = _controller(mock_exchange, mock_sink)
        with pytest.raises(PositionStateError):
            await ctl.close_position(100.0)


# ---------------------------------------------------------------------------
# exits
# ---------------------------------------------------------------------------


class TestExits:
    @pytest.mark.asyncio
    async def test_long_closes_when_price_below_both_emas(self, mock_exchange, mock_sink):
        mock_exchange.get_current_position.return_value = _snapshot(Direction.LONG)
        ctl = _controller(mock_exchange, mock_sink)
        _set_open(ctl, Direction.LONG, entry=100.0)

        task = ctl.on_tick(_update(100.0, 100.5, 100.2))
        assert ctl.position.phase is PositionPhase.CLOSING
        await task

        assert ctl.position.phase is PositionPhase.FLAT
        assert mock_exchange.place_market_order.await_args.args[1:] == ("SELL", 1.0, True)

    @pytest.mark.asyncio
    async def test_short_closes_when_price_above_both_emas(self, mock_exchange, mock_sink):
        mock_exchange.get_current_position.return_value = _snapshot(Direction.SHORT)
        ctl = _controller(mock_exchange, mock_sink)
        _set_open(ctl, Direction.SHORT, entry=100.0)

        await ctl.on_tick(_update(100.0, 99.5, 99.8))

        assert mock_exchange.place_market_order.await_args.args[1] == "BUY"

    def test_stop_loss_and_take_profit_on_return_on_margin(self, mock_exchange, mock_sink):
        ctl = _controller(mock_exchange, mock_sink, stop_loss=0.02, take_profit=0.05)
        _set_open(ctl, Direction.LONG, entry=100.0)

        # 50x leverage: -0.1% price move is -5% on margin
        assert ctl.evaluate_exits(99.9, 99.0, 98.0).value == "stop_loss"
        assert ctl.evaluate_exits(100.2, 99.0, 98.0).value == "take_profit"
        assert ctl.evaluate_exits(100.01, 99.0, 98.0) is None

    def test_no_exit_while_flat(self, mock_exchange, mock_sink):
        ctl = _controller(mock_exchange, mock_sink)
        assert ctl.evaluate_exits(1.0, 100.0, 100.0) is None

    @pytest.mark.asyncio
    async def test_exit_consumes_the_tick(self, mock_exchange, mock_sink):
        """An exit and a signal on the same tick: only the close happens."""
        mock_exchange.get_current_position.return_value = _snapshot(Direction.SHORT)
        ctl = _controller(mock_exchange, mock_sink)
        _set_open(ctl, Direction.SHORT, entry=100.0)

        await ctl.on_tick(_update(101.0, 100.5, 100.2, SignalKind.CROSS_UP))

        assert mock_exchange.place_market_order.await_count == 1
        assert ctl.position.phase is PositionPhase.FLAT


# ---------------------------------------------------------------------------
# arcs
# ---------------------------------------------------------------------------


class TestArcs:
    @pytest.mark.asyncio
    async def test_arc_top_while_long_closes_then_opens_short(self, mock_exchange, mock_sink):
        mock_exchange.get_current_position.return_value = _snapshot(Direction.LONG, qty=2.0)
        ctl = _controller(mock_exchange, mock_sink)
        _set_open(ctl, Direction.LONG, entry=100.0, qty=2.0)
        ctl.cross_reference_price = 100.0

        task = ctl.on_tick(_update(100.0, 99.0, 100.0, SignalKind.ARC_TOP, window=TOP_WINDOW))
        assert task is not None
        await task

        orders = [c.args for c in mock_exchange.place_market_order.await_args_list]
        assert orders[0] == ("BTCUSDT", "SELL", 2.0, True)
        assert orders[1][1:] == ("SELL", 25.0, False)
        assert ctl.position.phase is PositionPhase.OPEN
        assert ctl.position.direction is Direction.SHORT

    @pytest.mark.asyncio
    async def test_arc_bottom_while_flat_opens_long(self, mock_exchange, mock_sink):
        ctl = _controller(mock_exchange, mock_sink)
        ctl.cross_reference_price = 100.0

        await ctl.on_tick(_update(100.0, 101.0, 100.0, SignalKind.ARC_BOTTOM, window=BOTTOM_WINDOW))

        assert ctl.position.direction is Direction.LONG

    def test_arc_top_while_short_does_nothing(self, mock_exchange, mock_sink):
        ctl = _controller(mock_exchange, mock_sink)
        _set_open(ctl, Direction.SHORT, entry=100.0)
        ctl.cross_reference_price = 100.0

        assert ctl.on_tick(_update(100.0, 99.0, 100.5, SignalKind.ARC_TOP, window=TOP_WINDOW)) is None

    def test_stale_arc_without_crossover_reference_discarded(self, mock_exchange, mock_sink):
        ctl = _controller(mock_exchange, mock_sink)
        assert ctl.on_tick(_update(100.0, 99.0, 100.0, SignalKind.ARC_TOP, window=TOP_WINDOW)) is None
        assert ctl.position.phase is PositionPhase.FLAT

    def test_stale_arc_far_from_crossover_discarded(self, mock_exchange, mock_sink):
        ctl = _controller(mock_exchange, mock_sink, max_price_diff=100.0)
        ctl.cross_reference_price = 250.0
        assert ctl.on_tick(_update(100.0, 99.0, 100.0, SignalKind.ARC_TOP, window=TOP_WINDOW)) is None

    def test_stale_arc_far_from_second_extreme_discarded(self, mock_exchange, mock_sink):
        ctl = _controller(mock_exchange, mock_sink, max_extreme_diff=1.0)
        ctl.cross_reference_price = 100.0
        # second highest EMA5 of the window is 102, price 100 is 2 away
        assert ctl.on_tick(_update(100.0, 99.0, 100.0, SignalKind.ARC_TOP, window=TOP_WINDOW)) is None

    @pytest.mark.asyncio
    async def test_crossover_records_reference_even_when_not_flat(self, mock_exchange, mock_sink):
        ctl = _controller(mock_exchange, mock_sink)
        _set_open(ctl, Direction.LONG, entry=100.0)

        ctl.on_tick(_update(100.0, 99.0, 99.5, SignalKind.CROSS_DOWN))

        assert ctl.cross_reference_price == 100.0


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------


class TestSync:
    @pytest.mark.asyncio
    async def test_adopts_open_exchange_position(self, mock_exchange, mock_sink):
        mock_exchange.get_current_position.return_value = PositionSnapshot(
            direction=Direction.SHORT, qty=0.5, entry_price=42_000.0, leverage=20
        )
        ctl = _controller(mock_exchange, mock_sink)

        await ctl.sync_from_exchange()

        assert ctl.position.phase is PositionPhase.OPEN
        assert ctl.position.direction is Direction.SHORT
        assert ctl.position.leverage == 20
        with pytest.raises(PositionStateError):
            await ctl.open_position(Direction.LONG, 42_000.0)

    @pytest.mark.asyncio
    async def test_no_exchange_position_stays_flat(self, mock_exchange, mock_sink):
        ctl = _controller(mock_exchange, mock_sink)
        await ctl.sync_from_exchange()
        assert ctl.position.phase is PositionPhase.FLAT
