"""Binance USDⓈ-M futures REST client (aiohttp).

Signed endpoints carry `timestamp` + `recvWindow`, an HMAC-SHA256 signature of
the query string and the `X-MBX-APIKEY` header. Exchange-side rejections are
raised as BinanceAPIError with the exchange error code; transport failures
surface as aiohttp.ClientError. Nothing is retried here.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from arcbot.infrastructure.binance.kline_codec import candles_from_rest
from arcbot.infrastructure.binance.signing import build_query, sign
from arcbot.infrastructure.logging.logging import get_logger
from arcbot.infrastructure.utils.timeutils import now_ms
from arcbot.models.market_models import Candle
from arcbot.models.trade_models import AccountBalance, Direction, InstrumentRules, OrderAck, PositionSnapshot

JsonDict = Dict[str, Any]

# -4046: no need to change margin type / leverage; -4059: no need to change position side
KNOWN_STATE_CODES = frozenset({-4046, -4059})
DEFAULT_QUANTITY_PRECISION = 3


class BinanceAPIError(RuntimeError):
    def __init__(self, code: Optional[int], message: str, status: Optional[int] = None) -> None:
        super().__init__(f"Binance error code={code} status={status}: {message}")
        self.code = code
        self.message = message
        self.status = status


def is_known_state_error(exc: BaseException) -> bool:
    """True when the exchange only reports that the requested state is already in place."""
    return isinstance(exc, BinanceAPIError) and exc.code in KNOWN_STATE_CODES


def format_qty(qty: float) -> str:
    text = f"{qty:.8f}".rstrip("0").rstrip(".")
    return text or "0"


def parse_instrument_rules(symbol_info: JsonDict) -> InstrumentRules:
    precision = symbol_info.get("quantityPrecision")
    min_qty = 0.0
    for f in symbol_info.get("filters") or []:
        if f.get("filterType") == "LOT_SIZE":
            min_qty = float(f.get("minQty") or 0.0)
            break
    return InstrumentRules(
        quantity_precision=int(precision) if precision is not None else DEFAULT_QUANTITY_PRECISION,
        min_qty=min_qty,
    )


def parse_position(symbol: str, account: JsonDict) -> Optional[PositionSnapshot]:
    for p in account.get("positions") or []:
        if p.get("symbol") != symbol:
            continue
        amt = float(p.get("positionAmt") or 0.0)
        if amt == 0:
            return None
        mark = p.get("markPrice")
        return PositionSnapshot(
            direction=Direction.LONG if amt > 0 else Direction.SHORT,
            qty=abs(amt),
            entry_price=float(p.get("entryPrice") or 0.0),
            leverage=int(float(p.get("leverage") or 1)),
            mark_price=float(mark) if mark is not None else None,
            unrealized_profit=float(p.get("unrealizedProfit") or 0.0),
        )
    return None


class BinanceRestClient:
    def __init__(
        self,
        *,
        api_key: str,
        api_secret: str,
        base_url: str = "https://fapi.binance.com",
        recv_window: int = 5000,
        timeout_sec: float = 15.0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._logger = get_logger("binance_rest")
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.recv_window = recv_window
        self._timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._clock = clock
        self._session: Optional[aiohttp.ClientSession] = None
        self._rules_cache: Dict[str, InstrumentRules] = {}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[JsonDict] = None,
        *,
        signed: bool = False,
    ) -> Any:
        params = dict(params or {})
        headers: Dict[str, str] = {}

        if signed:
            if not self.api_key or not self.api_secret:
                raise ValueError("Missing BINANCE__API_KEY or BINANCE__API_SECRET")
            params["timestamp"] = self._clock()
            params["recvWindow"] = self.recv_window
            query = build_query(params)
            query = f"{query}&signature={sign(self.api_secret, query)}"
            headers["X-MBX-APIKEY"] = self.api_key
        else:
            query = build_query(params)

        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{query}"

        session = await self._get_session()
        async with session.request(method, url, headers=headers) as response:
            text = await response.text()
            if response.status >= 400:
                raise self._to_api_error(response.status, text)
            if not text:
                return None
            return await response.json(content_type=None)

    @staticmethod
    def _to_api_error(status: int, text: str) -> BinanceAPIError:
        try:
            body = json.loads(text)
        except ValueError:
            return BinanceAPIError(None, text, status)
        if isinstance(body, dict):
            code = body.get("code")
            return BinanceAPIError(int(code) if code is not None else None, str(body.get("msg", text)), status)
        return BinanceAPIError(None, text, status)

    # ---------------- PUBLIC ----------------

    async def get_historical_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        rows = await self._request(
            "GET",
            "/fapi/v1/klines",
            {"symbol": symbol.upper(), "interval": interval, "limit": int(limit)},
        )
        candles = candles_from_rest(symbol, interval, rows or [], self._clock())
        self._logger.info("klines_fetched", symbol=symbol, interval=interval, count=len(candles))
        return candles

    async def get_instrument_rules(self, symbol: str) -> InstrumentRules:
        symbol = symbol.upper()
        cached = self._rules_cache.get(symbol)
        if cached is not None:
            return cached

        info = await self._request("GET", "/fapi/v1/exchangeInfo")
        for s in (info or {}).get("symbols") or []:
            if s.get("symbol") == symbol:
                rules = parse_instrument_rules(s)
                self._rules_cache[symbol] = rules
                return rules
        raise BinanceAPIError(None, f"symbol {symbol} not listed in exchangeInfo")

    # ---------------- SIGNED ----------------

    async def _account(self) -> JsonDict:
        return await self._request("GET", "/fapi/v2/account", signed=True) or {}

    async def get_account_balance(self) -> AccountBalance:
        account = await self._account()
        for asset in account.get("assets") or []:
            if asset.get("asset") == "USDT":
                return AccountBalance(
                    available=float(asset.get("availableBalance") or 0.0),
                    margin=float(asset.get("initialMargin") or 0.0),
                    unrealized_profit=float(asset.get("unrealizedProfit") or 0.0),
                )
        raise BinanceAPIError(None, "USDT asset missing from account")

    async def get_current_position(self, symbol: str) -> Optional[PositionSnapshot]:
        return parse_position(symbol.upper(), await self._account())

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        await self._request(
            "POST",
            "/fapi/v1/leverage",
            {"symbol": symbol.upper(), "leverage": int(leverage)},
            signed=True,
        )
        self._logger.info("leverage_set", symbol=symbol, leverage=leverage)

    async def set_position_mode(self, hedge_enabled: bool) -> None:
        await self._request(
            "POST",
            "/fapi/v1/positionSide/dual",
            {"dualSidePosition": "true" if hedge_enabled else "false"},
            signed=True,
        )
        self._logger.info("position_mode_set", hedge=hedge_enabled)

    async def place_market_order(self, symbol: str, side: str, qty: float, reduce_only: bool = False) -> OrderAck:
        params: JsonDict = {
            "symbol": symbol.upper(),
            "side": side.upper(),
            "type": "MARKET",
            "quantity": format_qty(qty),
        }
        if reduce_only:
            params["reduceOnly"] = "true"

        resp = await self._request("POST", "/fapi/v1/order", params, signed=True) or {}
        order_id = resp.get("orderId")
        if order_id is None:
            raise BinanceAPIError(None, f"order response without orderId: {resp}")
        self._logger.info("order_placed", symbol=symbol, side=side, qty=params["quantity"], reduce_only=reduce_only)
        return OrderAck(order_id=int(order_id))
