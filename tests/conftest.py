"""
Shared test fixtures.

Provides:
- In-memory stream transport (records frames, lets tests inject events)
- Mock exchange client (AsyncMock) with sane defaults
- Candle / kline frame factories
"""

import json
from typing import List, Optional
from unittest.mock import AsyncMock

import pytest

from arcbot.infrastructure.stream.transport import TransportEvent, TransportEventType
from arcbot.models.market_models import Candle
from arcbot.models.trade_models import AccountBalance, InstrumentRules, OrderAck

HOUR_MS = 3_600_000
BASE_OPEN_TIME = 1_700_000_000_000


# ---------------------------------------------------------------------------
# Candles
# ---------------------------------------------------------------------------


def make_candle(
    close: float,
    index: int = 0,
    *,
    closed: bool = True,
    symbol: str = "BTCUSDT",
    interval: str = "1h",
) -> Candle:
    open_time = BASE_OPEN_TIME + index * HOUR_MS
    return Candle(
        symbol=symbol,
        interval=interval,
        open_time=open_time,
        close_time=open_time + HOUR_MS - 1,
        open=close,
        high=close,
        low=close,
        close=close,
        volume=1.0,
        is_closed=closed,
    )


def closed_series(closes: List[float], start_index: int = 0) -> List[Candle]:
    return [make_candle(c, start_index + i) for i, c in enumerate(closes)]


def kline_frame(close: float, index: int = 0, *, closed: bool = False, symbol: str = "BTCUSDT") -> str:
    open_time = BASE_OPEN_TIME + index * HOUR_MS
    return json.dumps(
        {
            "e": "kline",
            "E": open_time + 1000,
            "s": symbol,
            "k": {
                "t": open_time,
                "T": open_time + HOUR_MS - 1,
                "s": symbol,
                "i": "1h",
                "o": str(close),
                "c": str(close),
                "h": str(close),
                "l": str(close),
                "v": "12.5",
                "x": closed,
            },
        }
    )


# ---------------------------------------------------------------------------
# Stream transport
# ---------------------------------------------------------------------------


class FakeTransport:
    def __init__(self, emit, *, fail_connect: bool = False, auto_pong: bool = True) -> None:
        self.emit = emit
        self.fail_connect = fail_connect
        self.auto_pong = auto_pong
        self.url: Optional[str] = None
        self.sent: List[dict] = []
        self.pings = 0
        self.pongs = 0
        self.terminated = False

    async def connect(self, url: str) -> None:
        self.url = url
        if self.fail_connect:
            raise ConnectionRefusedError("refused")
        self.emit(TransportEvent(TransportEventType.OPEN))

    async def send(self, frame: str) -> None:
        self.sent.append(json.loads(frame))

    async def ping(self) -> None:
        self.pings += 1
        if self.auto_pong:
            self.emit(TransportEvent(TransportEventType.PONG))

    async def pong(self) -> None:
        self.pongs += 1

    async def terminate(self) -> None:
        self.terminated = True

    # test helpers
    def deliver(self, data: str) -> None:
        self.emit(TransportEvent(TransportEventType.MESSAGE, data=data))

    def drop(self, code: int = 1006, reason: str = "abnormal") -> None:
        self.emit(TransportEvent(TransportEventType.CLOSE, code=code, reason=reason))


class FakeTransportFactory:
    """Callable passed to ConnectionManager; keeps every transport it built."""

    def __init__(self, *, fail_connect: bool = False, auto_pong: bool = True) -> None:
        self.fail_connect = fail_connect
        self.auto_pong = auto_pong
        self.transports: List[FakeTransport] = []

    def __call__(self, emit) -> FakeTransport:
        t = FakeTransport(emit, fail_connect=self.fail_connect, auto_pong=self.auto_pong)
        self.transports.append(t)
        return t

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


# ---------------------------------------------------------------------------
# Exchange
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_exchange():
    exchange = AsyncMock()
    exchange.get_historical_candles.return_value = []
    exchange.get_account_balance.return_value = AccountBalance(available=1000.0, margin=0.0, unrealized_profit=0.0)
    exchange.get_instrument_rules.return_value = InstrumentRules(quantity_precision=3, min_qty=0.001)
    exchange.get_current_position.return_value = None
    exchange.place_market_order.return_value = OrderAck(order_id=42)
    exchange.set_leverage.return_value = None
    exchange.set_position_mode.return_value = None
    return exchange


@pytest.fixture
def mock_sink():
    return AsyncMock()
