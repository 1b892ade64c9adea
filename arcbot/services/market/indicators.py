"""EMA computation and the bounded indicator history owned by the signal engine."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional, Sequence, Tuple

from arcbot.models.market_models import EmaPair

EMA_FAST_PERIOD = 5
EMA_SLOW_PERIOD = 50


def ema(values: Sequence[float], period: int) -> Optional[float]:
    """Last EMA of `values`, seeded with the SMA of the first `period` values.

    Returns None while fewer than `period` values exist.
    """
    if period <= 1:
        raise ValueError("period must be > 1")
    if len(values) < period:
        return None

    alpha = 2.0 / (period + 1.0)
    value = sum(values[:period]) / period
    for price in values[period:]:
        value = alpha * price + (1 - alpha) * value
    return value


def ema_pair(values: Sequence[float]) -> EmaPair:
    return EmaPair(
        ema_fast=ema(values, EMA_FAST_PERIOD),
        ema_slow=ema(values, EMA_SLOW_PERIOD),
    )


@dataclass
class IndicatorState:
    closing_price_window: int = 200
    ema_history_window: int = 20

    closing_prices: Deque[float] = field(init=False)
    ema_fast_history: Deque[float] = field(init=False)
    ema_slow_history: Deque[float] = field(init=False)
    previous_ema_fast: Optional[float] = None
    previous_ema_slow: Optional[float] = None
    last_closed_open_time: Optional[int] = None

    def __post_init__(self) -> None:
        if self.closing_price_window < EMA_SLOW_PERIOD:
            raise ValueError(f"closing_price_window must be >= {EMA_SLOW_PERIOD}")
        if self.ema_history_window < 5:
            raise ValueError("ema_history_window must be >= 5")
        self.closing_prices = deque(maxlen=self.closing_price_window)
        self.ema_fast_history = deque(maxlen=self.ema_history_window)
        self.ema_slow_history = deque(maxlen=self.ema_history_window)

    def commit_close(self, price: float) -> EmaPair:
        self.closing_prices.append(float(price))
        return ema_pair(list(self.closing_prices))

    def tentative(self, price: float) -> EmaPair:
        return ema_pair([*self.closing_prices, float(price)])

    def append_history(self, pair: EmaPair) -> None:
        self.ema_fast_history.append(float(pair.ema_fast))
        self.ema_slow_history.append(float(pair.ema_slow))
        self.previous_ema_fast = pair.ema_fast
        self.previous_ema_slow = pair.ema_slow

    def overwrite_last(self, pair: EmaPair) -> None:
        # provisional value of the still-open candle
        if not self.ema_fast_history or not self.ema_slow_history:
            return
        self.ema_fast_history[-1] = float(pair.ema_fast)
        self.ema_slow_history[-1] = float(pair.ema_slow)

    def window(self, size: int = 5) -> Optional[Tuple[List[float], List[float]]]:
        if len(self.ema_fast_history) < size or len(self.ema_slow_history) < size:
            return None
        return list(self.ema_fast_history)[-size:], list(self.ema_slow_history)[-size:]
