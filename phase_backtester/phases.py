"""Market phase classifiers.

A classifier labels bar ``index`` of a quote series using only bars up to
``index``. Too little history yields ``MarketPhase.UNKNOWN``.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence
import math
import zlib

from .models import MarketPhase, Quote


class MarketPhaseClassifier(Protocol):
    def classify(self, quotes: Sequence[Quote], index: int) -> MarketPhase: ...


def stable_pick(candidates: Sequence[MarketPhase], quote: Quote) -> MarketPhase:
    """Deterministic tie break keyed on the quote timestamp (process independent)."""
    ordered = sorted(candidates, key=lambda p: list(MarketPhase).index(p))
    h = zlib.crc32(str(quote.time).encode("utf-8"))
    return ordered[h % len(ordered)]


def dominant_phase(quotes: Sequence[Quote], classifier: MarketPhaseClassifier) -> MarketPhase:
    """Majority vote of the classifier's per-bar labels across ``quotes``.

    UNKNOWN votes like any other label. Ties are broken by ``stable_pick`` on
    the first quote.
    """
    if not quotes:
        return MarketPhase.UNKNOWN
    votes = Counter(classifier.classify(quotes, i) for i in range(len(quotes)))
    top = max(votes.values())
    winners = [p for p, n in votes.items() if n == top]
    if len(winners) == 1:
        return winners[0]
    return stable_pick(winners, quotes[0])


@dataclass(frozen=True)
class SinglePhaseClassifier:
    phase: MarketPhase = MarketPhase.UNKNOWN

    def classify(self, quotes: Sequence[Quote], index: int) -> MarketPhase:
        return self.phase


def _window(quotes: Sequence[Quote], index: int, period: int) -> list[float]:
    return [q.close for q in quotes[max(0, index - period + 1):index + 1]]


def _slope(values: Sequence[float]) -> float:
    """Least-squares slope of values against 0..n-1."""
    n = len(values)
    if n < 2:
        return 0.0
    sx = n * (n - 1) / 2
    sx2 = (n - 1) * n * (2 * n - 1) / 6
    sy = sum(values)
    sxy = sum(i * v for i, v in enumerate(values))
    den = n * sx2 - sx * sx
    return (n * sxy - sx * sy) / den if den else 0.0


@dataclass(frozen=True)
class MovingAverageClassifier:
    short_period: int = 20
    long_period: int = 100
    sideways_threshold: float = 0.01

    def __post_init__(self):
        if not 0 < self.short_period < self.long_period:
            raise ValueError(f"need 0 < short_period < long_period (got {self.short_period}, {self.long_period})")

    def classify(self, quotes: Sequence[Quote], index: int) -> MarketPhase:
        if index < self.long_period:
            return MarketPhase.UNKNOWN
        long_w = _window(quotes, index, self.long_period)
        short_ma = sum(_window(quotes, index, self.short_period)) / self.short_period
        long_ma = sum(long_w) / self.long_period
        if long_ma == 0:
            return MarketPhase.UNKNOWN
        if abs((short_ma - long_ma) / long_ma) < self.sideways_threshold:
            return MarketPhase.SIDEWAYS
        if short_ma > long_ma and _slope(long_w) > 0:
            return MarketPhase.BULLISH
        return MarketPhase.BEARISH


@dataclass(frozen=True)
class VolatilityClassifier:
    """Bollinger band width (4 std / mean) with the period's price change as direction."""
    period: int = 20
    low_vol_threshold: float = 0.015
    high_vol_threshold: float = 0.035

    def classify(self, quotes: Sequence[Quote], index: int) -> MarketPhase:
        if index < self.period:
            return MarketPhase.UNKNOWN
        w = _window(quotes, index, self.period)
        mean = sum(w) / self.period
        if mean == 0:
            return MarketPhase.UNKNOWN
        std = math.sqrt(sum((x - mean) ** 2 for x in w) / self.period)
        width = std * 4 / mean
        start = quotes[index - self.period].close
        change = (quotes[index].close - start) / start if start else 0.0
        if width < self.low_vol_threshold:
            return MarketPhase.SIDEWAYS
        if width > self.high_vol_threshold and change > 0:
            return MarketPhase.BULLISH
        if width > self.high_vol_threshold and change < 0:
            return MarketPhase.BEARISH
        return MarketPhase.SIDEWAYS


@dataclass(frozen=True)
class CombinedClassifier:
    """Vote of several classifiers; UNKNOWN only when no classifier knows."""
    classifiers: tuple[MarketPhaseClassifier, ...]

    def classify(self, quotes: Sequence[Quote], index: int) -> MarketPhase:
        votes = Counter(c.classify(quotes, index) for c in self.classifiers)
        votes.pop(MarketPhase.UNKNOWN, None)
        if not votes:
            return MarketPhase.UNKNOWN
        top = max(votes.values())
        winners = [p for p, n in votes.items() if n == top]
        return winners[0] if len(winners) == 1 else stable_pick(winners, quotes[index])


@dataclass(frozen=True)
class MovingWindowClassifier:
    """Dominant known phase of ``base`` over the last ``window_size`` bars, if it reaches ``threshold``."""
    base: MarketPhaseClassifier
    window_size: int = 10
    threshold: float = 0.6

    def classify(self, quotes: Sequence[Quote], index: int) -> MarketPhase:
        if index < self.window_size:
            return MarketPhase.UNKNOWN
        votes = Counter(self.base.classify(quotes, index - k) for k in range(self.window_size))
        votes.pop(MarketPhase.UNKNOWN, None)
        best = MarketPhase.UNKNOWN
        best_n = 0
        for phase in MarketPhase:
            n = votes.get(phase, 0)
            if n / self.window_size >= self.threshold and n > best_n:
                best, best_n = phase, n
        return best


CLASSIFIERS: dict[str, Callable[..., MarketPhaseClassifier]] = {
    "single": SinglePhaseClassifier,
    "moving_average": MovingAverageClassifier,
    "volatility": VolatilityClassifier,
}


def get_classifier(key: str, **kwargs: Any) -> MarketPhaseClassifier:
    needle = key.strip().lower()
    if needle not in CLASSIFIERS:
        raise KeyError(f"Unknown classifier '{key}'. Known: {sorted(CLASSIFIERS)}")
    return CLASSIFIERS[needle](**kwargs)


def classify_series(quotes: Sequence[Quote], classifier: MarketPhaseClassifier) -> list[MarketPhase]:
    return [classifier.classify(quotes, i) for i in range(len(quotes))]
