"""EMA5/EMA50 crossover and arc-reversal detection over a kline stream.

The engine owns the IndicatorState of one symbol session and is mutated only by
`on_candle` (live events) and `warm_up` (historical closed candles).

- Closed candle: the close is committed, EMAs are recomputed over the committed
  series and appended once to the bounded histories.
- Open candle: EMAs are recomputed tentatively over committed closes + the live
  price and overwrite the last history entries, so ticks never grow history.
- Crossovers are edge-triggered against the last committed EMA order.
- Arcs are strict local extrema of EMA5 in the last 5 history points.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from arcbot.infrastructure.logging.logging import get_logger
from arcbot.infrastructure.utils.timeutils import now_ms
from arcbot.models.market_models import Candle, EmaPair
from arcbot.services.market.indicators import IndicatorState

ARC_WINDOW = 5


class SignalKind(str, Enum):
    CROSS_UP = "cross_up"
    CROSS_DOWN = "cross_down"
    ARC_TOP = "arc_top"
    ARC_BOTTOM = "arc_bottom"

    @property
    def is_crossover(self) -> bool:
        return self in (SignalKind.CROSS_UP, SignalKind.CROSS_DOWN)


@dataclass(frozen=True)
class Signal:
    kind: SignalKind
    timestamp: int
    reference_price: float
    window_fast: Tuple[float, ...] = ()
    window_slow: Tuple[float, ...] = ()

    def second_extreme(self) -> Optional[float]:
        """Second-highest EMA5 of the window for tops, second-lowest for bottoms."""
        if len(self.window_fast) < 2:
            return None
        descending = self.kind is SignalKind.ARC_TOP
        return sorted(self.window_fast, reverse=descending)[1]


@dataclass(frozen=True)
class SignalUpdate:
    candle: Candle
    ema_fast: Optional[float] = None
    ema_slow: Optional[float] = None
    signals: Tuple[Signal, ...] = ()

    @property
    def price(self) -> float:
        return float(self.candle.close)

    @property
    def ready(self) -> bool:
        return self.ema_fast is not None and self.ema_slow is not None


def _sign(value: float) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


class CrossoverDetector:
    """Fires once per sign change of (fast - slow) relative to the committed order.

    The last emitted kind stays suppressed until the opposite edge fires or a
    candle closes back on the side it crossed from, so repeated ticks of an
    open candle that keep crossing never re-fire and a retracted tick cross
    does not block the next real one.
    """

    def __init__(self) -> None:
        self._committed_sign = 0
        self._last_kind: Optional[SignalKind] = None

    @property
    def last_kind(self) -> Optional[SignalKind]:
        return self._last_kind

    def evaluate(self, ema_fast: float, ema_slow: float) -> Optional[SignalKind]:
        current = _sign(ema_fast - ema_slow)
        if current == 0 or self._committed_sign == 0 or current == self._committed_sign:
            return None
        kind = SignalKind.CROSS_UP if current > 0 else SignalKind.CROSS_DOWN
        if kind == self._last_kind:
            return None
        self._last_kind = kind
        return kind

    def commit(self, ema_fast: float, ema_slow: float) -> None:
        # a tie keeps the previous side
        sign = _sign(ema_fast - ema_slow)
        if sign == 0:
            return
        self._committed_sign = sign
        if (self._last_kind is SignalKind.CROSS_UP and sign < 0) or (
            self._last_kind is SignalKind.CROSS_DOWN and sign > 0
        ):
            self._last_kind = None


def detect_arc(
    window_fast: Sequence[float],
    window_slow: Sequence[float],
    current_fast: float,
    current_slow: float,
    min_ema_diff: float,
) -> Optional[SignalKind]:
    """Classify the 5-point window as ARC_TOP, ARC_BOTTOM or None.

    Strict inequalities only: a middle point tied with any neighbour never
    qualifies. The middle point must sit at least `min_ema_diff` away from
    EMA50 at the same index.
    """
    if len(window_fast) < ARC_WINDOW or len(window_slow) < ARC_WINDOW:
        return None

    fast = list(window_fast)[-ARC_WINDOW:]
    slow = list(window_slow)[-ARC_WINDOW:]
    middle = fast[2]
    neighbours = fast[:2] + fast[3:]

    if all(middle > n for n in neighbours) and current_fast < current_slow:
        kind = SignalKind.ARC_TOP
    elif all(middle < n for n in neighbours) and current_fast > current_slow:
        kind = SignalKind.ARC_BOTTOM
    else:
        return None

    if abs(middle - slow[2]) < min_ema_diff:
        return None
    return kind


class SignalEngine:
    def __init__(
        self,
        *,
        min_ema_diff: float,
        closing_price_window: int = 200,
        ema_history_window: int = 20,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._log = get_logger("signal_engine")
        self.min_ema_diff = float(min_ema_diff)
        self.state = IndicatorState(
            closing_price_window=closing_price_window,
            ema_history_window=ema_history_window,
        )
        self._crossover = CrossoverDetector()
        self._last_arc: Optional[SignalKind] = None
        self._clock = clock
        self.candles_closed = 0
        self.signals_emitted = 0

    def warm_up(self, candles: Iterable[Candle]) -> int:
        """Commit historical closed candles without emitting signals.

        Candles not newer than the last committed one are skipped, so the same
        history can be replayed after a reconnect to fill a gap.
        """
        applied = 0
        for candle in sorted(candles, key=lambda c: c.open_time):
            if not candle.is_closed or self._is_stale(candle):
                continue
            self._apply_closed(candle, emit=False)
            applied += 1
        if applied:
            self._log.info(
                "history_applied",
                candles=applied,
                closes=len(self.state.closing_prices),
                ema_fast=self.state.previous_ema_fast,
                ema_slow=self.state.previous_ema_slow,
            )
        return applied

    def on_candle(self, candle: Candle) -> SignalUpdate:
        if self._is_stale(candle):
            self._log.debug("stale_candle_skipped", open_time=candle.open_time, closed=candle.is_closed)
            return SignalUpdate(candle=candle)
        if candle.is_closed:
            return self._apply_closed(candle, emit=True)
        return self._apply_open(candle)

    def _is_stale(self, candle: Candle) -> bool:
        last = self.state.last_closed_open_time
        return last is not None and candle.open_time <= last

    def _apply_closed(self, candle: Candle, *, emit: bool) -> SignalUpdate:
        self.state.last_closed_open_time = candle.open_time
        self.candles_closed += 1
        pair = self.state.commit_close(candle.close)
        if not pair.ready:
            return SignalUpdate(candle=candle, ema_fast=pair.ema_fast, ema_slow=pair.ema_slow)

        signals: List[Signal] = []
        if emit:
            signals.extend(self._crossover_signal(candle, pair))
        self.state.append_history(pair)
        self._crossover.commit(pair.ema_fast, pair.ema_slow)
        if emit:
            signals.extend(self._arc_signal(candle, pair))
        return self._emit(candle, pair, signals)

    def _apply_open(self, candle: Candle) -> SignalUpdate:
        pair = self.state.tentative(candle.close)
        if not pair.ready:
            return SignalUpdate(candle=candle, ema_fast=pair.ema_fast, ema_slow=pair.ema_slow)

        self.state.overwrite_last(pair)
        signals = self._crossover_signal(candle, pair) + self._arc_signal(candle, pair)
        return self._emit(candle, pair, signals)

    def _crossover_signal(self, candle: Candle, pair: EmaPair) -> List[Signal]:
        kind = self._crossover.evaluate(pair.ema_fast, pair.ema_slow)
        if kind is None:
            return []
        return [Signal(kind=kind, timestamp=self._clock(), reference_price=float(candle.close))]

    def _arc_signal(self, candle: Candle, pair: EmaPair) -> List[Signal]:
        window = self.state.window(ARC_WINDOW)
        if window is None:
            return []
        window_fast, window_slow = window
        kind = detect_arc(window_fast, window_slow, pair.ema_fast, pair.ema_slow, self.min_ema_diff)
        if kind is None or kind == self._last_arc:
            return []
        self._last_arc = kind
        return [
            Signal(
                kind=kind,
                timestamp=self._clock(),
                reference_price=float(candle.close),
                window_fast=tuple(window_fast),
                window_slow=tuple(window_slow),
            )
        ]

    def _emit(self, candle: Candle, pair: EmaPair, signals: List[Signal]) -> SignalUpdate:
        for s in signals:
            self.signals_emitted += 1
            self._log.info(
                "signal_detected",
                kind=s.kind.value,
                price=s.reference_price,
                ema_fast=round(pair.ema_fast, 6),
                ema_slow=round(pair.ema_slow, 6),
                closed=candle.is_closed,
            )
        return SignalUpdate(
            candle=candle,
            ema_fast=pair.ema_fast,
            ema_slow=pair.ema_slow,
            signals=tuple(signals),
        )
