"""Best-effort trade notifications.

The sink never raises: a failed notification is logged and dropped, the
trading path does not depend on it.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import aiohttp

from arcbot.infrastructure.logging.logging import get_logger


class HttpSignalSink:
    """POSTs the message as the form field `text` to a configured URL."""

    def __init__(self, url: str, *, timeout_sec: float = 5.0) -> None:
        self._logger = get_logger("signal_sink")
        self.url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def notify(self, text: str) -> None:
        form = aiohttp.FormData()
        form.add_field("text", text)
        try:
            session = await self._get_session()
            async with session.post(self.url, data=form) as response:
                if response.status >= 400:
                    body = await response.text()
                    self._logger.warning("signal_sink_rejected", status=response.status, body=body[:200])
                    return
            self._logger.info("signal_sent", text=text)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._logger.warning("signal_sink_failed", error=str(e), text=text)


class NullSignalSink:
    def __init__(self) -> None:
        self._logger = get_logger("signal_sink")

    async def notify(self, text: str) -> None:
        self._logger.debug("signal_not_sent", text=text)

    async def close(self) -> None:
        return None
