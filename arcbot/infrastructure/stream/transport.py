"""Bidirectional stream transport.

The transport knows nothing about reconnects or subscriptions. It reports
everything that happens on the socket as TransportEvent values through the
`emit` callback it was built with; the ConnectionManager decides what to do.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed

from arcbot.infrastructure.logging.logging import get_logger


class TransportEventType(str, Enum):
    OPEN = "open"
    MESSAGE = "message"
    CLOSE = "close"
    ERROR = "error"
    PING = "ping"
    PONG = "pong"


@dataclass(frozen=True)
class TransportEvent:
    type: TransportEventType
    data: Optional[str] = None
    code: Optional[int] = None
    reason: Optional[str] = None


EmitFn = Callable[[TransportEvent], None]


class StreamTransport(Protocol):
    async def connect(self, url: str) -> None: ...

    async def send(self, frame: str) -> None: ...

    async def ping(self) -> None: ...

    async def pong(self) -> None: ...

    async def terminate(self) -> None: ...


TransportFactory = Callable[[EmitFn], StreamTransport]


class WebsocketsTransport:
    def __init__(self, emit: EmitFn, *, close_timeout: float = 5.0, max_queue: int = 256) -> None:
        self._logger = get_logger("ws_transport")
        self._emit = emit
        self._close_timeout = close_timeout
        self._max_queue = max_queue
        self._ws: Any = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._pong_task: Optional[asyncio.Task[None]] = None

    async def connect(self, url: str) -> None:
        self._ws = await websockets.connect(
            url,
            ping_interval=None,  # heartbeat is driven by the connection manager
            close_timeout=self._close_timeout,
            max_queue=self._max_queue,
        )
        self._emit(TransportEvent(TransportEventType.OPEN))
        self._reader_task = asyncio.create_task(self._reader_loop())

    async def send(self, frame: str) -> None:
        if self._ws is None:
            raise ConnectionError("websocket not open")
        await self._ws.send(frame)

    async def ping(self) -> None:
        if self._ws is None:
            raise ConnectionError("websocket not open")
        waiter = await self._ws.ping()
        self._pong_task = asyncio.create_task(self._await_pong(waiter))

    async def pong(self) -> None:
        # control-frame pings are answered by the library; PING events come from text pings
        if self._ws is None:
            return
        await self._ws.send("pong")

    async def terminate(self) -> None:
        for task in (self._reader_task, self._pong_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        self._reader_task = None
        self._pong_task = None

        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except (ConnectionClosed, OSError) as e:
            self._logger.debug("ws_close_error", error=str(e))

    async def _await_pong(self, waiter: "asyncio.Future[Any]") -> None:
        try:
            await waiter
        except ConnectionClosed:
            return
        self._emit(TransportEvent(TransportEventType.PONG))

    async def _reader_loop(self) -> None:
        ws = self._ws
        try:
            async for raw in ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                if raw == "ping":
                    self._emit(TransportEvent(TransportEventType.PING))
                    continue
                self._emit(TransportEvent(TransportEventType.MESSAGE, data=raw))
        except ConnectionClosed as e:
            rcvd = getattr(e, "rcvd", None)
            self._emit(
                TransportEvent(
                    TransportEventType.CLOSE,
                    code=getattr(rcvd, "code", None),
                    reason=getattr(rcvd, "reason", None) or str(e),
                )
            )
            return
        except Exception as e:
            self._logger.error("reader_loop_error", error=str(e))
            self._emit(TransportEvent(TransportEventType.ERROR, reason=str(e)))
            return
        # iterator exhausted: clean close from the peer
        self._emit(TransportEvent(TransportEventType.CLOSE, code=1000, reason="closed"))
