"""In-memory metrics snapshot for the status API."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass
class MetricsSnapshot:
    symbol: str = ""
    interval: str = ""
    connection_phase: str = "disconnected"
    connected: bool = False
    reconnect_attempt: int = 0
    last_price: Optional[float] = None
    ema_fast: Optional[float] = None
    ema_slow: Optional[float] = None
    position_phase: str = "flat"
    position_direction: str = "none"
    position_qty: float = 0.0
    entry_price: Optional[float] = None
    candles_closed: int = 0
    signals_emitted: int = 0
    trades_opened: int = 0
    trades_closed: int = 0
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
