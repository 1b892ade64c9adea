"""Trading engine: one symbol session wired end to end.

Flow: ConnectionManager -> SignalEngine -> PositionController -> exchange
(+ signal sink). Metrics are snapshotted to disk for the status API.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

from arcbot.infrastructure.binance.rest_client import BinanceAPIError, BinanceRestClient, is_known_state_error
from arcbot.infrastructure.logging.logging import bind_session, clear_session, configure_logging, get_logger
from arcbot.infrastructure.notify.signal_sink import HttpSignalSink, NullSignalSink
from arcbot.infrastructure.stream.connection_manager import ConnectionManager, ReconnectExhaustedError
from arcbot.infrastructure.stream.transport import TransportFactory, WebsocketsTransport
from arcbot.infrastructure.utils.config import AgentConfig, load_config
from arcbot.infrastructure.utils.timeutils import utc_now
from arcbot.models.market_models import Candle
from arcbot.services.execution.interfaces import ExchangeClient, SignalSink
from arcbot.services.execution.position_controller import PositionController
from arcbot.services.monitoring.metrics import MetricsSnapshot
from arcbot.services.monitoring.metrics_store import write_metrics
from arcbot.services.strategy.signal_engine import SignalEngine


class TradingSession:
    def __init__(
        self,
        config: AgentConfig,
        exchange: ExchangeClient,
        sink: SignalSink,
        *,
        transport_factory: TransportFactory = WebsocketsTransport,
        metrics_interval_sec: float = 5.0,
    ) -> None:
        self._log = get_logger("engine")
        self.config = config
        self.exchange = exchange
        self.sink = sink
        self.symbol = config.trading.symbol
        self.interval = config.trading.interval
        self._metrics_interval = metrics_interval_sec

        self.engine = SignalEngine(
            min_ema_diff=config.trading.min_ema_diff,
            closing_price_window=config.indicators.closing_price_window,
            ema_history_window=config.indicators.ema_history_window,
        )
        self.controller = PositionController(exchange, sink, config.trading)
        self.connection = ConnectionManager(
            config.binance.ws_url,
            transport_factory,
            exchange,
            symbol=self.symbol,
            interval=self.interval,
            on_history=self._on_history,
            on_candle=self._on_candle,
            config=config.stream,
        )
        self._last_price: Optional[float] = None

    async def prepare(self) -> None:
        """One-way position mode, leverage, adopt any open position, register the kline channel."""
        await self._normalized(self.exchange.set_position_mode(False), "position_mode")
        await self._normalized(self.exchange.set_leverage(self.symbol, self.config.trading.leverage), "leverage")
        await self.controller.sync_from_exchange()
        await self.connection.subscribe(self.config.kline_channel)

    async def run(self) -> None:
        await self.prepare()
        await self.connection.connect()
        self._log.info("engine_started", channel=self.config.kline_channel)
        await self.sink.notify(f"{self.symbol} trading agent started")

        metrics_task = asyncio.create_task(self._metrics_loop())
        try:
            await self.connection.run()
        finally:
            metrics_task.cancel()
            await self.connection.close()
            await self.controller.wait_idle()
            self._write_metrics()
            self._log.info("engine_stopped")

    async def stop(self) -> None:
        await self.connection.close()

    def snapshot(self) -> MetricsSnapshot:
        state = self.connection.state
        position = self.controller.position
        indicators = self.engine.state
        return MetricsSnapshot(
            symbol=self.symbol,
            interval=self.interval,
            connection_phase=state.phase.value,
            connected=self.connection.is_connected,
            reconnect_attempt=state.attempt,
            last_price=self._last_price,
            ema_fast=indicators.ema_fast_history[-1] if indicators.ema_fast_history else None,
            ema_slow=indicators.ema_slow_history[-1] if indicators.ema_slow_history else None,
            position_phase=position.phase.value,
            position_direction=position.direction.value,
            position_qty=position.qty,
            entry_price=position.entry_price,
            candles_closed=self.engine.candles_closed,
            signals_emitted=self.engine.signals_emitted,
            trades_opened=self.controller.trades_opened,
            trades_closed=self.controller.trades_closed,
            updated_at=utc_now().isoformat(),
        )

    async def _on_history(self, candles: list[Candle]) -> None:
        self.engine.warm_up(candles)

    async def _on_candle(self, candle: Candle) -> None:
        self._last_price = candle.close
        update = self.engine.on_candle(candle)
        self.controller.on_tick(update)

    async def _normalized(self, call, what: str) -> None:
        try:
            await call
        except BinanceAPIError as e:
            if not is_known_state_error(e):
                raise
            self._log.debug("exchange_state_unchanged", setting=what, code=e.code)

    async def _metrics_loop(self) -> None:
        while True:
            self._write_metrics()
            await asyncio.sleep(self._metrics_interval)

    def _write_metrics(self) -> None:
        try:
            write_metrics(self.snapshot().to_dict(), self.config.metrics_path)
        except OSError as e:
            self._log.warning("metrics_persist_failed", error=str(e))


async def run_engine(config_path: Path | None = None) -> int:
    """Run until stopped. Returns the process exit code."""
    config = load_config(config_path)
    configure_logging(config.log_level, json_logs=config.json_logs)
    bind_session(config.trading.symbol, config.trading.interval)
    log = get_logger("engine")
    log.info(
        "config_loaded",
        leverage=config.trading.leverage,
        position_size_fraction=config.trading.position_size_fraction,
        key_len=len(config.binance.api_key),
    )

    exchange = BinanceRestClient(
        api_key=config.binance.api_key,
        api_secret=config.binance.api_secret,
        base_url=config.binance.base_url,
        recv_window=config.binance.recv_window,
    )
    sink: HttpSignalSink | NullSignalSink
    if config.signal_sink.url:
        sink = HttpSignalSink(config.signal_sink.url, timeout_sec=config.signal_sink.timeout)
    else:
        sink = NullSignalSink()

    session = TradingSession(config, exchange, sink)
    try:
        await session.run()
    except ReconnectExhaustedError as e:
        log.error("engine_failed", error=str(e), attempts=e.attempts)
        return 1
    finally:
        await exchange.close()
        await sink.close()
        clear_session()
    return 0
