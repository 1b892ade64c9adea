from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Direction(str, Enum):
    LONG = "long"
    SHORT = "short"
    NONE = "none"

    @property
    def entry_side(self) -> str:
        return "BUY" if self is Direction.LONG else "SELL"

    @property
    def exit_side(self) -> str:
        return "SELL" if self is Direction.LONG else "BUY"


class PositionPhase(str, Enum):
    FLAT = "flat"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"


@dataclass
class Position:
    phase: PositionPhase = PositionPhase.FLAT
    direction: Direction = Direction.NONE
    qty: float = 0.0
    entry_price: Optional[float] = None
    leverage: int = 1

    @property
    def pending(self) -> bool:
        return self.phase in (PositionPhase.OPENING, PositionPhase.CLOSING)


@dataclass(frozen=True)
class AccountBalance:
    available: float
    margin: float
    unrealized_profit: float


@dataclass(frozen=True)
class PositionSnapshot:
    """Position as reported by the exchange."""

    direction: Direction
    qty: float
    entry_price: float
    leverage: int
    mark_price: Optional[float] = None
    unrealized_profit: float = 0.0


@dataclass(frozen=True)
class InstrumentRules:
    quantity_precision: int
    min_qty: float


@dataclass(frozen=True)
class OrderAck:
    order_id: int
