from __future__ import annotations

from typing import List, Optional, Protocol

from arcbot.models.market_models import Candle
from arcbot.models.trade_models import AccountBalance, InstrumentRules, OrderAck, PositionSnapshot


class ExchangeClient(Protocol):
    async def get_historical_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]: ...

    async def get_account_balance(self) -> AccountBalance: ...

    async def get_current_position(self, symbol: str) -> Optional[PositionSnapshot]: ...

    async def set_leverage(self, symbol: str, leverage: int) -> None: ...

    async def set_position_mode(self, hedge_enabled: bool) -> None: ...

    async def get_instrument_rules(self, symbol: str) -> InstrumentRules: ...

    async def place_market_order(self, symbol: str, side: str, qty: float, reduce_only: bool = False) -> OrderAck: ...


class SignalSink(Protocol):
    async def notify(self, text: str) -> None: ...
