"""Shared fixtures: synthetic quote series and a scripted strategy."""

import math

import pandas as pd
import pytest

from phase_backtester.models import Position, Quote


def make_quotes(closes, start="2024-01-01", freq="D", spread=0.005):
    """Candles with open = previous close and a symmetric high/low band."""
    times = pd.date_range(start, periods=len(closes), freq=freq)
    out = []
    prev = closes[0] if len(closes) else 0.0
    for t, c in zip(times, closes):
        o = prev
        hi = max(o, c) * (1 + spread)
        lo = min(o, c) * (1 - spread)
        out.append(Quote(time=t, open=float(o), high=float(hi), low=float(lo), close=float(c), volume=1000.0))
        prev = c
    return tuple(out)


class ScriptedStrategy:
    """Signals at fixed bars, fixed stop/target offsets and a fixed size."""

    def __init__(self, signals, size=10.0, stop_offset=10.0, target_offset=10.0, name="scripted"):
        self.signals = dict(signals)
        self.size = size
        self.stop_offset = stop_offset
        self.target_offset = target_offset
        self.name = name

    def generate_signal(self, quotes, index):
        return self.signals.get(index, 0)

    def calculate_stop_loss_price(self, is_long, quotes, index):
        price = quotes[index].close
        return price - self.stop_offset if is_long else price + self.stop_offset

    def calculate_take_profit_price(self, is_long, quotes, index):
        price = quotes[index].close
        return price + self.target_offset if is_long else price - self.target_offset

    def calculate_position_size(self, equity, quote, stop_price):
        return self.size

    def update_stop_loss(self, position: Position, quotes, index):
        return position.stop_price


@pytest.fixture
def quotes_from():
    return make_quotes


@pytest.fixture
def scripted():
    return ScriptedStrategy


@pytest.fixture
def flat_quotes():
    return make_quotes([100.0] * 100, spread=0.0)


@pytest.fixture
def rising_quotes():
    return make_quotes([100.0 * 1.01 ** i for i in range(100)])


@pytest.fixture
def wave_quotes():
    closes = [100.0 + 10.0 * math.sin(2 * math.pi * i / 40) + 0.05 * i for i in range(240)]
    return make_quotes(closes)
