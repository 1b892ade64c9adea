"""Order quantity from account balance, leverage and the exchange lot rules."""

from __future__ import annotations

import math
from dataclasses import dataclass

from arcbot.models.trade_models import InstrumentRules


def floor_to_precision(value: float, precision: int) -> float:
    """Round down to `precision` decimals. Never rounds up, so an order never
    exceeds the sized amount."""
    if precision < 0:
        raise ValueError("precision must be >= 0")
    factor = 10 ** precision
    # absorb float noise before flooring
    return math.floor(round(value * factor, 6)) / factor


@dataclass(frozen=True)
class SizeDecision:
    allowed: bool
    qty: float
    notional: float
    reason: str


class PositionSizer:
    """qty = available * fraction * leverage / price, floored to the lot precision.

    Notes:
    - `fraction` is the share of available balance committed as margin.
    - A quantity below the exchange minimum is rejected, never rounded up.
    """

    def __init__(self, *, position_size_fraction: float, leverage: int) -> None:
        self.fraction = float(position_size_fraction)
        self.leverage = int(leverage)

    def compute(self, *, available: float, price: float, rules: InstrumentRules) -> SizeDecision:
        available = float(available)
        price = float(price)

        if available <= 0:
            return SizeDecision(False, 0.0, 0.0, "invalid_balance")
        if price <= 0:
            return SizeDecision(False, 0.0, 0.0, "invalid_price")

        notional = available * self.fraction * self.leverage
        qty = floor_to_precision(notional / price, rules.quantity_precision)

        if qty <= 0 or qty < rules.min_qty:
            return SizeDecision(False, qty, notional, f"below_min_qty qty={qty} min_qty={rules.min_qty}")

        return SizeDecision(True, qty, notional, "ok")
