from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import pandas as pd


class MarketPhase(str, Enum):
    """Coarse market regime label."""
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    SIDEWAYS = "SIDEWAYS"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class Quote:
    time: Any
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass
class Position:
    """Open trade. Owned and mutated by a single simulation run."""
    entry_price: float
    size: float
    stop_price: float
    target_price: float
    is_long: bool
    entry_index: int
    phase: MarketPhase = MarketPhase.UNKNOWN
    price_history: list[float] = field(default_factory=list)
    entry_fee: float = 0.0

    @property
    def side(self) -> str:
        return "BUY" if self.is_long else "SELL"


@dataclass(frozen=True)
class Trade:
    entry_time: Any
    exit_time: Any
    entry_price: float
    exit_price: float
    size: float
    return_pct: float            # fee-adjusted, fraction of entry notional
    profit_amount: float         # fee-adjusted
    is_long: bool
    max_adverse_excursion: float
    max_favorable_excursion: float
    phase: MarketPhase = MarketPhase.UNKNOWN
    reason: str = ""

    @property
    def side(self) -> str:
        return "BUY" if self.is_long else "SELL"

    @property
    def duration_days(self) -> float:
        delta = pd.Timestamp(self.exit_time) - pd.Timestamp(self.entry_time)
        return delta.total_seconds() / 86_400.0


@dataclass(frozen=True)
class BacktestResult:
    initial_equity: float = 0.0
    final_equity: float = 0.0
    total_return: float = 0.0
    annualized_return: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    profit_factor: float = 0.0
    win_rate: float = 0.0
    max_drawdown: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    avg_win_amount: float = 0.0
    avg_loss_amount: float = 0.0
    avg_trade_amount: float = 0.0
    avg_trade_length: float = 0.0  # days
    strategy_name: str = ""
    halted: bool = False           # drawdown circuit breaker tripped
    trades: tuple[Trade, ...] = ()
    equity_curve: tuple[float, ...] = ()
    phase_results: dict[MarketPhase, "BacktestResult"] = field(default_factory=dict)

    def summary(self) -> dict[str, Any]:
        return {
            "final_equity": self.final_equity,
            "total_return": self.total_return,
            "annualized_return": self.annualized_return,
            "sharpe_ratio": self.sharpe_ratio,
            "sortino_ratio": self.sortino_ratio,
            "profit_factor": self.profit_factor,
            "win_rate": self.win_rate,
            "max_drawdown": self.max_drawdown,
            "total_trades": self.total_trades,
        }


@dataclass(frozen=True)
class ParameterPerformance:
    parameters: dict[str, Any]
    result: BacktestResult
    metric: float


@dataclass(frozen=True)
class WindowReport:
    window_id: int
    train_start: Any
    train_end: Any
    test_start: Any
    test_end: Any
    phase: MarketPhase
    best_parameters: dict[str, Any]
    train_metric: float
    test_result: BacktestResult
    param_drift: float = 0.0
    performance_decay: float | None = None


@dataclass(frozen=True)
class WalkForwardResult:
    window_results: list[BacktestResult]
    aggregated_result: BacktestResult
    top_parameters_by_phase: dict[MarketPhase, list[ParameterPerformance]]
    windows: list[WindowReport] = field(default_factory=list)

    def windows_frame(self) -> pd.DataFrame:
        """One row per walk-forward window, best params as ``param_*`` columns."""
        rows = []
        for w in self.windows:
            row = {
                "window_id": w.window_id,
                "train_start": w.train_start,
                "train_end": w.train_end,
                "test_start": w.test_start,
                "test_end": w.test_end,
                "phase": w.phase.value,
                "train_metric": w.train_metric,
                "param_drift": w.param_drift,
                "performance_decay": w.performance_decay,
            }
            for k, v in w.test_result.summary().items():
                row[f"test_{k}"] = v
            for k, v in w.best_parameters.items():
                row[f"param_{k}"] = v
            rows.append(row)
        return pd.DataFrame(rows)
