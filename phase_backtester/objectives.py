from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable
import math

from .models import BacktestResult

class PerformanceMetricType(str, Enum):
    SHARPE_RATIO = "sharpe_ratio"
    SORTINO_RATIO = "sortino_ratio"
    WIN_RATE = "win_rate"
    TOTAL_RETURN = "total_return"
    PROFIT_FACTOR = "profit_factor"
    MAXIMUM_DRAWDOWN = "max_drawdown"
    COMPOSITE_SCORE = "composite_score"

@dataclass(frozen=True)
class Objective:
    """Ranking metric. ``fn`` is already oriented so that higher is better."""
    name: PerformanceMetricType
    fn: Callable[[BacktestResult], float]
    help: str

    def __call__(self, result: BacktestResult) -> float:
        return self.fn(result)

def _finite(x: float, cap: float = 1e9) -> float:
    if x is None or (isinstance(x, float) and math.isnan(x)):
        return float("-inf")
    if isinstance(x, float) and math.isinf(x):
        return cap if x > 0 else -cap
    return float(x)

OBJECTIVES: dict[PerformanceMetricType, Objective] = {
    PerformanceMetricType.SHARPE_RATIO: Objective(PerformanceMetricType.SHARPE_RATIO, lambda r: _finite(r.sharpe_ratio), "Maximize annualized daily Sharpe ratio."),
    PerformanceMetricType.SORTINO_RATIO: Objective(PerformanceMetricType.SORTINO_RATIO, lambda r: _finite(r.sortino_ratio), "Maximize annualized daily Sortino ratio."),
    PerformanceMetricType.WIN_RATE: Objective(PerformanceMetricType.WIN_RATE, lambda r: _finite(r.win_rate), "Maximize win rate."),
    PerformanceMetricType.TOTAL_RETURN: Objective(PerformanceMetricType.TOTAL_RETURN, lambda r: _finite(r.total_return), "Maximize total return (final/initial - 1)."),
    PerformanceMetricType.PROFIT_FACTOR: Objective(PerformanceMetricType.PROFIT_FACTOR, lambda r: _finite(r.profit_factor), "Maximize profit factor (gross profit / gross loss)."),
    PerformanceMetricType.MAXIMUM_DRAWDOWN: Objective(PerformanceMetricType.MAXIMUM_DRAWDOWN, lambda r: _finite(-r.max_drawdown), "Minimize maximum drawdown (ranked on its negation)."),
    PerformanceMetricType.COMPOSITE_SCORE: Objective(PerformanceMetricType.COMPOSITE_SCORE, lambda r: _finite(r.total_return - 0.5 * r.max_drawdown), "Balanced score: total_return - 0.5 * max_drawdown."),
}

def get_objective(name: str | PerformanceMetricType) -> Objective:
    if isinstance(name, PerformanceMetricType):
        return OBJECTIVES[name]
    needle = str(name).strip().lower()
    for key, obj in OBJECTIVES.items():
        if needle in (key.value, key.name.lower()):
            return obj
    raise KeyError(f"Unknown objective '{name}'. Known: {sorted(k.value for k in OBJECTIVES)}")
