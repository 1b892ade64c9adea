"""Binance futures kline wire formats.

Stream event (raw or combined stream):
    {"e": "kline", "E": 1700000000000, "s": "BTCUSDT",
     "k": {"t": ..., "T": ..., "s": "BTCUSDT", "i": "1h",
           "o": "...", "c": "...", "h": "...", "l": "...", "v": "...", "x": false}}

REST /fapi/v1/klines row:
    [openTime, open, high, low, close, volume, closeTime, ...]
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from arcbot.models.market_models import Candle

JsonDict = Dict[str, Any]


class FrameDecodeError(ValueError):
    pass


@dataclass(frozen=True)
class ControlAck:
    """Reply to a SUBSCRIBE/UNSUBSCRIBE request."""

    request_id: Optional[int]
    result: Any = None
    error: Optional[JsonDict] = None


def decode_frame(raw: str | bytes) -> Candle | ControlAck | None:
    """Decode one stream frame.

    Returns a Candle for kline events, a ControlAck for request replies and
    None for well-formed events of other types. Raises FrameDecodeError for
    anything that cannot be parsed.
    """
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise FrameDecodeError(f"invalid json: {e}") from e

    if not isinstance(msg, dict):
        raise FrameDecodeError("frame is not an object")

    if "result" in msg or ("error" in msg and "id" in msg):
        req_id = msg.get("id")
        return ControlAck(
            request_id=req_id if isinstance(req_id, int) else None,
            result=msg.get("result"),
            error=msg.get("error") if isinstance(msg.get("error"), dict) else None,
        )

    # combined stream wrapper: {"stream": "...", "data": {...}}
    if isinstance(msg.get("data"), dict):
        msg = msg["data"]

    if msg.get("e") != "kline":
        return None

    return candle_from_event(msg)


def candle_from_event(msg: JsonDict) -> Candle:
    k = msg.get("k")
    if not isinstance(k, dict):
        raise FrameDecodeError("kline event without 'k' payload")
    try:
        return Candle(
            symbol=str(k.get("s") or msg.get("s") or "").upper(),
            interval=str(k.get("i") or ""),
            open_time=int(k["t"]),
            close_time=int(k["T"]),
            open=float(k["o"]),
            high=float(k["h"]),
            low=float(k["l"]),
            close=float(k["c"]),
            volume=float(k.get("v") or 0.0),
            is_closed=bool(k.get("x", False)),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise FrameDecodeError(f"malformed kline payload: {e}") from e


def candles_from_rest(symbol: str, interval: str, rows: Sequence[Sequence[Any]], now_ms: int) -> List[Candle]:
    """Parse /fapi/v1/klines rows. A row is closed once its close time has passed."""
    out: List[Candle] = []
    for row in rows:
        if not isinstance(row, (list, tuple)) or len(row) < 7:
            continue
        close_time = int(row[6])
        out.append(
            Candle(
                symbol=symbol.upper(),
                interval=interval,
                open_time=int(row[0]),
                close_time=close_time,
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
                is_closed=close_time < now_ms,
            )
        )
    out.sort(key=lambda c: c.open_time)
    return out


def control_frame(method: str, channels: Sequence[str], request_id: int) -> str:
    if method not in ("SUBSCRIBE", "UNSUBSCRIBE"):
        raise ValueError(f"unsupported method: {method}")
    return json.dumps({"method": method, "params": list(channels), "id": int(request_id)})
