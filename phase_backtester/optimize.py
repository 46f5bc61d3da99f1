from __future__ import annotations

from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Literal, Sequence
import itertools
import os

import numpy as np
import pandas as pd
from loguru import logger

from .config import TradingParameters
from .engine import TradingStrategy, backtest
from .models import MarketPhase, ParameterPerformance, Quote
from .objectives import PerformanceMetricType, get_objective
from .params import ParamSpec, coerce

ExecutorKind = Literal["thread", "process"]
StrategyFactory = Callable[[dict[str, Any]], TradingStrategy]
ParameterGrid = dict[str, list[Any]]

@dataclass(frozen=True)
class SearchConfig:
    """Worker pool settings for a grid search.

    Simulations are pure-Python CPU work, so the ``"thread"`` pool runs them
    one at a time under the GIL. It starts fast and accepts any callable
    (lambdas, closures), which suits small grids and debugging. For real
    parallelism use ``"process"`` with a picklable factory such as
    ``StrategySurface.factory``.
    """
    top_k: int = 10
    max_workers: int | None = None     # None = os.cpu_count()
    executor: ExecutorKind = "thread"

    def __post_init__(self):
        if self.top_k < 1:
            raise ValueError(f"top_k must be >= 1 (got {self.top_k})")
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1 (got {self.max_workers})")
        if self.executor not in ("thread", "process"):
            raise ValueError(f"Unknown executor '{self.executor}'. Use 'thread' or 'process'.")

@dataclass(frozen=True)
class EvaluationFailure:
    parameters: dict[str, Any]
    error: str

def _frange(start: float, stop: float, step: float) -> list[float]:
    if step == 0:
        raise ValueError("step cannot be 0")
    vals = []
    x = start
    if step > 0:
        while x <= stop + 1e-12:
            vals.append(round(float(x), 12))
            x += step
    else:
        while x >= stop - 1e-12:
            vals.append(round(float(x), 12))
            x += step
    return vals

def auto_grid(ps: ParamSpec) -> list[Any]:
    """Candidate list from a ParamSpec's min/max/step (bools: both values)."""
    if ps.type == "bool":
        return [False, True]
    if ps.min is None or ps.max is None or ps.step is None:
        raise ValueError(f"Param '{ps.key}' has no min/max/step; cannot auto-grid.")
    if ps.type == "int":
        return list(range(int(ps.min), int(ps.max) + 1, int(ps.step)))
    if ps.type == "float":
        return _frange(float(ps.min), float(ps.max), float(ps.step))
    raise ValueError(f"Auto-grid not supported for type {ps.type}")

def parse_grid_tokens(tokens: list[str], schema: list[ParamSpec]) -> ParameterGrid:
    """Parse grid tokens like:
    - fast_period=5:20:5
    - risk_reward_ratio=1.5:3.0:0.5
    - long_only=true,false
    - slow_period=* (auto grid from ParamSpec min/max/step)
    """
    spec_map = {p.key: p for p in schema}
    grid: ParameterGrid = {}
    for tok in tokens:
        if "=" not in tok:
            raise ValueError(f"Bad grid token '{tok}'. Use key=...")
        key, rhs = tok.split("=", 1)
        key = key.strip()
        if key not in spec_map:
            raise KeyError(f"Unknown param '{key}'. Known: {sorted(spec_map.keys())}")
        ps = spec_map[key]
        rhs = rhs.strip()

        if rhs == "*":
            grid[key] = auto_grid(ps)
            continue

        if ":" in rhs:
            parts = [p.strip() for p in rhs.split(":")]
            if len(parts) != 3:
                raise ValueError(f"Bad range '{rhs}' for '{key}'. Use a:b:c")
            a, b, c = (float(parts[0]), float(parts[1]), float(parts[2]))
            if ps.type == "int":
                step = int(c)
                if step == 0:
                    raise ValueError("int range step cannot be 0")
                end = int(b) + (1 if step > 0 else -1)
                grid[key] = list(range(int(a), end, step))
            elif ps.type == "float":
                grid[key] = _frange(a, b, c)
            else:
                raise ValueError(f"Range grid not supported for type {ps.type}")
            continue

        parts = [p.strip() for p in rhs.split(",") if p.strip() != ""]
        grid[key] = [coerce(p, ps.type) for p in parts]
    return grid

def validate_grid(grid: ParameterGrid) -> ParameterGrid:
    """Check the grid and return it with every candidate collection as a list."""
    if not isinstance(grid, dict) or not grid:
        raise ValueError("Parameter grid is empty.")
    normalized: ParameterGrid = {}
    for key, values in grid.items():
        if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
            raise ValueError(f"Candidates for '{key}' must be a list (got {type(values).__name__}).")
        values = values.tolist() if isinstance(values, np.ndarray) else list(values)
        if len(values) == 0:
            raise ValueError(f"Parameter '{key}' has no candidate values.")
        seen: list[Any] = []
        for v in values:
            if any(type(v) is type(s) and v == s for s in seen):
                raise ValueError(f"Parameter '{key}' lists candidate {v!r} more than once.")
            seen.append(v)
        normalized[key] = values
    return normalized

def grid_combinations(grid: ParameterGrid) -> list[dict[str, Any]]:
    """Cartesian product of the grid; ``prod(len(values))`` distinct combinations."""
    grid = validate_grid(grid)
    keys = list(grid.keys())
    return [dict(zip(keys, combo)) for combo in itertools.product(*(grid[k] for k in keys))]

def evaluate_once(
    quotes: Sequence[Quote],
    factory: StrategyFactory,
    parameters: dict[str, Any],
    params: TradingParameters,
    metric: PerformanceMetricType,
    phase: MarketPhase = MarketPhase.UNKNOWN,
) -> ParameterPerformance:
    strategy = factory(dict(parameters))
    result = backtest(quotes, strategy, phase, params)
    return ParameterPerformance(dict(parameters), result, get_objective(metric)(result))

def _evaluate_unit(
    index: int,
    quotes: Sequence[Quote],
    factory: StrategyFactory,
    parameters: dict[str, Any],
    params: TradingParameters,
    metric: PerformanceMetricType,
    phase: MarketPhase,
) -> tuple[int, ParameterPerformance | EvaluationFailure]:
    try:
        return index, evaluate_once(quotes, factory, parameters, params, metric, phase)
    except Exception as exc:
        return index, EvaluationFailure(dict(parameters), f"{type(exc).__name__}: {exc}")

def _make_executor(cfg: SearchConfig) -> Executor:
    workers = cfg.max_workers or os.cpu_count() or 1
    if cfg.executor == "process":
        return ProcessPoolExecutor(max_workers=workers)
    return ThreadPoolExecutor(max_workers=workers)

def rank(performances: Iterable[ParameterPerformance], top_k: int | None = None) -> list[ParameterPerformance]:
    """Sort descending by metric; NaN ranks last. Order of equal metrics is stable."""
    def key(p: ParameterPerformance) -> float:
        return float("-inf") if p.metric != p.metric else p.metric
    ranked = sorted(performances, key=key, reverse=True)
    return ranked if top_k is None else ranked[:top_k]

def evaluate_grid(
    quotes: Sequence[Quote],
    grid: ParameterGrid,
    factory: StrategyFactory,
    metric: str | PerformanceMetricType = PerformanceMetricType.SHARPE_RATIO,
    params: TradingParameters = TradingParameters(),
    search_cfg: SearchConfig = SearchConfig(),
    phase: MarketPhase = MarketPhase.UNKNOWN,
) -> tuple[list[ParameterPerformance], list[EvaluationFailure]]:
    """Run every grid combination concurrently.

    Each combination gets its own strategy instance from ``factory``; the
    quote sequence is shared read-only. Failures are isolated per
    combination and returned alongside the unranked survivors, both in
    combination order.
    """
    metric_type = get_objective(metric).name
    combos = grid_combinations(grid)
    logger.info(f"Backtesting {len(combos)} parameter combinations ({search_cfg.executor} pool)")

    outcomes: list[ParameterPerformance | EvaluationFailure | None] = [None] * len(combos)
    with _make_executor(search_cfg) as pool:
        futures = [
            pool.submit(_evaluate_unit, i, quotes, factory, combo, params, metric_type, phase)
            for i, combo in enumerate(combos)
        ]
        for i, fut in enumerate(futures):
            try:
                _, outcome = fut.result()
            except Exception as exc:
                # pool-level failures (e.g. unpicklable factory) still stay per combination
                outcome = EvaluationFailure(dict(combos[i]), f"{type(exc).__name__}: {exc}")
            outcomes[i] = outcome

    performances = [o for o in outcomes if isinstance(o, ParameterPerformance)]
    failures = [o for o in outcomes if isinstance(o, EvaluationFailure)]
    for f in failures:
        logger.warning(f"Combination {f.parameters} failed: {f.error}")
    return performances, failures

def search_grid(
    quotes: Sequence[Quote],
    grid: ParameterGrid,
    factory: StrategyFactory,
    metric: str | PerformanceMetricType = PerformanceMetricType.SHARPE_RATIO,
    top_k: int | None = None,
    params: TradingParameters = TradingParameters(),
    search_cfg: SearchConfig = SearchConfig(),
    phase: MarketPhase = MarketPhase.UNKNOWN,
) -> list[ParameterPerformance]:
    """Exhaustive grid search; returns the best ``min(top_k, combinations)`` results.

    ``top_k`` defaults to ``search_cfg.top_k``. Ranking is higher-is-better
    for every metric (drawdown is ranked on its negation).
    """
    k = search_cfg.top_k if top_k is None else top_k
    if k < 1:
        raise ValueError(f"top_k must be >= 1 (got {k})")
    performances, _failures = evaluate_grid(quotes, grid, factory, metric, params, search_cfg, phase)
    return rank(performances, k)

def performances_frame(performances: Sequence[ParameterPerformance]) -> pd.DataFrame:
    """One row per ranked combination, parameters as ``param_*`` columns."""
    rows = []
    for p in performances:
        row = {"metric": p.metric}
        row.update(p.result.summary())
        for k, v in p.parameters.items():
            row[f"param_{k}"] = v
        rows.append(row)
    return pd.DataFrame(rows)
