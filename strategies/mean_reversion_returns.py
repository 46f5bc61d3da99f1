from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from phase_backtester.config import TradingParameters
from phase_backtester.models import Quote

from .base import BaseStrategy

@dataclass(frozen=True)
class MeanReversionReturnsSettings:
    lookback: int = 5
    long_only: bool = False

class MeanReversionReturns(BaseStrategy):
    name = "Mean Reversion on Returns"

    def __init__(self, trading: TradingParameters | None = None, lookback=5, long_only=False):
        super().__init__(MeanReversionReturnsSettings(lookback, long_only), trading)

    def generate_signal(self, quotes: Sequence[Quote], index: int) -> int:
        lookback = self.settings.lookback
        if index <= lookback or not self.warmed_up(index):
            return 0
        c = self.close_array(quotes)
        returns = c[index - lookback:index + 1] / c[index - lookback - 1:index] - 1.0
        avg_return = returns[:-1].mean()
        current = returns[-1]
        if avg_return > 0 and current < 0:
            return 1
        if avg_return < 0 and current > 0 and not self.settings.long_only:
            return -1
        return 0
