"""Phase-aware trading backtester

- `backtest(...)` simulates one strategy over one quote series (one open
  position at a time, intrabar target/stop fills, taker fees, drawdown
  circuit breaker)
- `backtest_across_phases(...)` splits the bars by market phase, backtests
  each phase separately and merges the runs with a per-phase breakdown
- `search_grid(...)` runs every combination of a parameter grid
  concurrently and keeps the top-K by a ranking metric
- `walk_forward(...)` re-optimizes on rolling train windows, trades the
  winner out-of-sample and keeps the best parameters per market phase

Strategies live in the sibling `strategies` package and are reached
through the catalog (`get_strategy(key).factory(trading)`).
"""

from .catalog import list_strategies, get_strategy, StrategySurface
from .config import TradingParameters, configure_logging
from .params import ParamSpec, to_settings
from .models import (
    BacktestResult, MarketPhase, ParameterPerformance, Position, Quote, Trade, WalkForwardResult, WindowReport,
)
from .engine import TradingStrategy, backtest, backtest_across_phases, split_by_phase
from .metrics import compute_metrics, aggregate_trades, merge_phase_results
from .objectives import PerformanceMetricType, get_objective
from .optimize import search_grid, evaluate_grid, parse_grid_tokens, performances_frame, SearchConfig, EvaluationFailure
from .walkforward import walk_forward, WalkForwardConfig
from .phases import MarketPhaseClassifier, dominant_phase, get_classifier
from .data import load_csv_ohlcv, load_quotes, quotes_from_frame
