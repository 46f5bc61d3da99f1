from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence
import threading

import pandas as pd
from loguru import logger

from .config import TradingParameters
from .engine import backtest
from .metrics import aggregate_trades
from .models import BacktestResult, MarketPhase, ParameterPerformance, Quote, Trade, WalkForwardResult, WindowReport
from .objectives import PerformanceMetricType, get_objective
from .optimize import ParameterGrid, SearchConfig, StrategyFactory, evaluate_grid, grid_combinations, rank
from .phases import MarketPhaseClassifier, SinglePhaseClassifier, dominant_phase

SPACING_SAMPLE = 100

@dataclass(frozen=True)
class WalkForwardConfig:
    train_days: float = 60
    test_days: float = 30
    step_days: float = 30
    top_k: int = 10
    search: SearchConfig = field(default_factory=SearchConfig)

    def __post_init__(self):
        for name in ("train_days", "test_days", "step_days"):
            v = getattr(self, name)
            if not v > 0:
                raise ValueError(f"{name} must be > 0 (got {v})")
        if self.top_k < 1:
            raise ValueError(f"top_k must be >= 1 (got {self.top_k})")

class PhaseLeaderboard:
    """Best ParameterPerformance list per market phase, truncated to ``top_k``.

    ``merge`` is a locked read-merge-write so windows may be merged from
    several threads.
    """

    def __init__(self, top_k: int):
        self.top_k = top_k
        self._lock = threading.Lock()
        self._board: dict[MarketPhase, list[ParameterPerformance]] = {}

    def merge(self, phase: MarketPhase, performances: Sequence[ParameterPerformance]) -> list[ParameterPerformance]:
        with self._lock:
            merged = rank([*self._board.get(phase, []), *performances], self.top_k)
            self._board[phase] = merged
            return list(merged)

    def snapshot(self) -> dict[MarketPhase, list[ParameterPerformance]]:
        with self._lock:
            return {p: list(v) for p, v in self._board.items()}

def candle_seconds(quotes: Sequence[Quote], sample: int = SPACING_SAMPLE) -> float:
    """Average spacing of the first ``sample`` candles, in seconds (one day if under two candles)."""
    head = quotes[:sample]
    if len(head) < 2:
        return 86_400.0
    span = (pd.Timestamp(head[-1].time) - pd.Timestamp(head[0].time)).total_seconds()
    spacing = span / (len(head) - 1)
    if spacing <= 0:
        raise ValueError("Quotes must be strictly increasing in time to infer the timeframe.")
    return spacing

def days_to_candles(days: float, spacing_seconds: float, label: str = "window") -> int:
    n = int(days * 86_400.0 / spacing_seconds)
    if n < 1:
        raise ValueError(f"{label} of {days} days is shorter than one candle ({spacing_seconds:.0f}s)")
    return n

def window_count(total: int, train: int, test: int, step: int) -> int:
    if total < train + test:
        return 0
    return (total - train - test) // step + 1

def _param_drift(prev: dict[str, Any] | None, cur: dict[str, Any] | None) -> float:
    if not prev or not cur:
        return 0.0
    drift = 0.0
    for k in sorted(set(prev) | set(cur)):
        a = prev.get(k)
        b = cur.get(k)
        if a == b:
            continue
        if isinstance(a, (int, float)) and isinstance(b, (int, float)) and not isinstance(a, bool) and not isinstance(b, bool):
            drift += abs(float(a) - float(b))
        else:
            drift += 1.0
    return float(drift)

def walk_forward(
    quotes: Sequence[Quote],
    factory: StrategyFactory,
    params: TradingParameters,
    grid: ParameterGrid,
    classifier: MarketPhaseClassifier | None = None,
    metric: str | PerformanceMetricType = PerformanceMetricType.SHARPE_RATIO,
    wf_cfg: WalkForwardConfig = WalkForwardConfig(),
) -> WalkForwardResult:
    """Walk-forward optimization + OOS evaluation.

    For each window:
      1) Grid search the TRAIN slice, keep its top-K
      2) Vote the dominant phase of the TRAIN slice and merge the top-K
         into that phase's leaderboard
      3) Run the best parameters on the TEST slice (phase UNKNOWN)

    The OOS trades of all windows are re-sorted by exit time and rebuilt
    into one aggregate result.
    """
    classifier = classifier or SinglePhaseClassifier()
    grid_combinations(grid)
    get_objective(metric)

    spacing = candle_seconds(quotes)
    train_n = days_to_candles(wf_cfg.train_days, spacing, "train window")
    test_n = days_to_candles(wf_cfg.test_days, spacing, "test window")
    step_n = days_to_candles(wf_cfg.step_days, spacing, "step")
    n_windows = window_count(len(quotes), train_n, test_n, step_n)
    logger.info(
        f"Walk-forward over {len(quotes)} candles: train={train_n} test={test_n} step={step_n} "
        f"-> {n_windows} windows"
    )

    board = PhaseLeaderboard(wf_cfg.top_k)
    window_results: list[BacktestResult] = []
    reports: list[WindowReport] = []
    oos_trades: list[Trade] = []
    prev_best: dict[str, Any] | None = None

    for w in range(n_windows):
        start = w * step_n
        train = quotes[start:start + train_n]
        test = quotes[start + train_n:start + train_n + test_n]
        if len(train) < train_n or len(test) < test_n:
            logger.warning(f"Window {w}: undersized slice, skipped")
            continue
        logger.info(f"Window {w}: train {train[0].time} .. {train[-1].time}, test {test[0].time} .. {test[-1].time}")

        performances, _failures = evaluate_grid(train, grid, factory, metric, params, wf_cfg.search)
        top = rank(performances, wf_cfg.top_k)
        if not top:
            logger.warning(f"Window {w}: no surviving parameter combinations, skipped")
            continue

        phase = dominant_phase(train, classifier)
        board.merge(phase, top)
        best = top[0]

        test_result = backtest(test, factory(dict(best.parameters)), MarketPhase.UNKNOWN, params)
        window_results.append(test_result)
        oos_trades.extend(test_result.trades)

        train_ret = best.result.total_return
        decay = float(test_result.total_return / train_ret) if train_ret else None
        reports.append(WindowReport(
            window_id=w,
            train_start=train[0].time,
            train_end=train[-1].time,
            test_start=test[0].time,
            test_end=test[-1].time,
            phase=phase,
            best_parameters=dict(best.parameters),
            train_metric=best.metric,
            test_result=test_result,
            param_drift=_param_drift(prev_best, best.parameters),
            performance_decay=decay,
        ))
        prev_best = dict(best.parameters)
        logger.info(
            f"Window {w}: phase={phase.value} best={best.parameters} metric={best.metric:.4f} "
            f"oos_return={test_result.total_return:.2%} oos_trades={test_result.total_trades}"
        )

    aggregated = aggregate_trades(oos_trades, params.initial_capital, strategy_name="walk-forward")
    return WalkForwardResult(
        window_results=window_results,
        aggregated_result=aggregated,
        top_parameters_by_phase=board.snapshot(),
        windows=reports,
    )
