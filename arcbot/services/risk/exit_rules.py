"""Per-tick exit policy for an open position."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from arcbot.models.trade_models import Direction


class ExitReason(str, Enum):
    REVERSAL = "reversal"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"


def unrealized_pnl_pct(direction: Direction, entry_price: float, price: float, leverage: int) -> float:
    """Return on margin as a fraction: price move relative to entry, times leverage.

    LONG profits when price rises, SHORT when it falls.
    """
    if entry_price <= 0:
        return 0.0
    move = (price - entry_price) / entry_price
    if direction is Direction.SHORT:
        move = -move
    elif direction is not Direction.LONG:
        return 0.0
    return move * leverage


def is_reversal(direction: Direction, price: float, ema_fast: Optional[float], ema_slow: Optional[float]) -> bool:
    if ema_fast is None or ema_slow is None:
        return False
    if direction is Direction.LONG:
        return price < ema_fast and price < ema_slow
    if direction is Direction.SHORT:
        return price > ema_fast and price > ema_slow
    return False


def check_exit(
    *,
    direction: Direction,
    entry_price: Optional[float],
    price: float,
    leverage: int,
    ema_fast: Optional[float],
    ema_slow: Optional[float],
    stop_loss: float,
    take_profit: float,
) -> Optional[ExitReason]:
    """
    REVERSAL: price on the wrong side of both EMAs.
    STOP_LOSS / TAKE_PROFIT: return on margin <= -stop_loss or >= take_profit.
    """
    if direction is Direction.NONE:
        return None

    if is_reversal(direction, price, ema_fast, ema_slow):
        return ExitReason.REVERSAL

    if entry_price is None:
        return None

    pnl = unrealized_pnl_pct(direction, entry_price, price, leverage)
    if pnl <= -stop_loss:
        return ExitReason.STOP_LOSS
    if pnl >= take_profit:
        return ExitReason.TAKE_PROFIT
    return None
