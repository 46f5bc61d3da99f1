from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from phase_backtester.config import TradingParameters
from phase_backtester.indicators import sma_at
from phase_backtester.models import Quote

from .base import BaseStrategy

@dataclass(frozen=True)
class SmaCrossoverSettings:
    fast_period: int = 10
    slow_period: int = 50

    def __post_init__(self):
        if not 1 <= self.fast_period < self.slow_period:
            raise ValueError(f"need 1 <= fast_period < slow_period (got {self.fast_period}, {self.slow_period})")

class SmaCrossover(BaseStrategy):
    name = "SMA Crossover"

    def __init__(self, trading: TradingParameters | None = None, fast_period=10, slow_period=50):
        super().__init__(SmaCrossoverSettings(fast_period, slow_period), trading)

    def generate_signal(self, quotes: Sequence[Quote], index: int) -> int:
        fast, slow = self.settings.fast_period, self.settings.slow_period
        if index < slow or not self.warmed_up(index):
            return 0
        c = self.close_array(quotes)
        f, s = sma_at(c, index, fast), sma_at(c, index, slow)
        pf, ps = sma_at(c, index - 1, fast), sma_at(c, index - 1, slow)
        if pf <= ps and f > s:
            return 1
        if pf >= ps and f < s:
            return -1
        return 0
