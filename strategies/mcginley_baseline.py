from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from phase_backtester.config import TradingParameters
from phase_backtester.indicators import mcginley
from phase_backtester.models import Quote

from .base import BaseStrategy

@dataclass(frozen=True)
class McGinleySettings:
    length: int = 14

class McGinleyBaseline(BaseStrategy):
    """Trade the close crossing the McGinley Dynamic line."""
    name = "McGinley Baseline"

    def __init__(self, trading: TradingParameters | None = None, length=14):
        super().__init__(McGinleySettings(length), trading)
        self._line: np.ndarray | None = None
        self._line_src: np.ndarray | None = None
        self._line_length = 0

    def line(self, quotes: Sequence[Quote]) -> np.ndarray:
        c = self.close_array(quotes)
        if self._line_src is not c or self._line_length != self.settings.length:
            self._line = mcginley(c, self.settings.length)
            self._line_src = c
            self._line_length = self.settings.length
        return self._line

    def generate_signal(self, quotes: Sequence[Quote], index: int) -> int:
        if index <= self.settings.length or not self.warmed_up(index):
            return 0
        c = self.close_array(quotes)
        md = self.line(quotes)
        was_above = c[index - 1] > md[index - 1]
        is_above = c[index] > md[index]
        if is_above and not was_above:
            return 1
        if was_above and not is_above:
            return -1
        return 0
