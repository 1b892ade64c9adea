"""Market domain models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Candle:
    symbol: str
    interval: str
    open_time: int          # epoch ms
    close_time: int         # epoch ms
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    is_closed: bool = False


@dataclass(frozen=True)
class EmaPair:
    ema_fast: Optional[float] = None
    ema_slow: Optional[float] = None

    @property
    def ready(self) -> bool:
        return self.ema_fast is not None and self.ema_slow is not None
