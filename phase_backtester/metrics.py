from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Sequence
import math
import sys

import numpy as np
import pandas as pd

from .models import BacktestResult, MarketPhase, Trade

TRADING_DAYS = 252
DAILY_RISK_FREE = 0.02 / 365
PROFIT_FACTOR_SENTINEL = sys.float_info.max

_EPS = 1e-12

def max_drawdown(equity_curve: Sequence[float]) -> float:
    """Largest (peak - equity) / peak, using only peaks seen so far."""
    if not equity_curve:
        return 0.0
    peak = equity_curve[0]
    max_dd = 0.0
    for e in equity_curve:
        peak = max(peak, e)
        dd = (peak - e) / peak if peak > 0 else 0.0
        max_dd = max(max_dd, dd)
    return max_dd

def equity_curve_from_trades(trades: Sequence[Trade], initial_equity: float) -> list[float]:
    curve = [float(initial_equity)]
    for t in trades:
        curve.append(curve[-1] + t.profit_amount)
    return curve

def annualize(initial_equity: float, final_equity: float, elapsed_days: float) -> float:
    """Compound growth over ``elapsed_days`` scaled to a 252-day year (0 under one day)."""
    if elapsed_days < 1 or initial_equity <= 0:
        return 0.0
    growth = final_equity / initial_equity
    if growth <= 0:
        return -1.0
    try:
        return math.pow(growth, TRADING_DAYS / elapsed_days) - 1.0
    except OverflowError:
        return PROFIT_FACTOR_SENTINEL

def sharpe_sortino(daily_returns: Iterable[float], risk_free: float = DAILY_RISK_FREE) -> tuple[float, float]:
    """Annualized Sharpe and Sortino ratios from a per-day return series.

    Both use population statistics. Downside deviation is the root mean square
    of the negative days over the full day count. A zero deviation yields 0.
    """
    r = np.asarray(list(daily_returns), dtype=float)
    if r.size == 0:
        return 0.0, 0.0
    excess = r.mean() - risk_free
    std = r.std()
    downside = math.sqrt(float(np.square(r[r < 0]).sum()) / r.size)
    sharpe = excess / std * math.sqrt(TRADING_DAYS) if std > _EPS else 0.0
    sortino = excess / downside * math.sqrt(TRADING_DAYS) if downside > _EPS else 0.0
    return float(sharpe), float(sortino)

def daily_returns_from_trades(trades: Sequence[Trade], initial_equity: float) -> dict[object, float]:
    """Per exit-day return: each trade's P&L over the equity after it, summed per day.

    Trades must already be in exit-time order.
    """
    out: dict[object, float] = {}
    equity = float(initial_equity)
    for t in trades:
        day = pd.Timestamp(t.exit_time).date()
        equity += t.profit_amount
        out[day] = out.get(day, 0.0) + (t.profit_amount / equity if equity else 0.0)
    return out

def compute_metrics(
    trades: Sequence[Trade],
    initial_equity: float,
    final_equity: float | None = None,
    strategy_name: str = "",
) -> BacktestResult:
    """Aggregate statistics of an ordered trade list.

    Trades are replayed in the given order to build the equity curve and the
    max drawdown. ``final_equity`` defaults to the replayed equity. Sharpe and
    Sortino are left at 0; they need a day-level series (see ``sharpe_sortino``).
    """
    curve = equity_curve_from_trades(trades, initial_equity)
    if final_equity is None:
        final_equity = curve[-1]
    total_return = (final_equity - initial_equity) / initial_equity if initial_equity else 0.0

    if not trades:
        return BacktestResult(
            initial_equity=float(initial_equity),
            final_equity=float(final_equity),
            total_return=float(total_return),
            strategy_name=strategy_name,
            equity_curve=tuple(curve),
        )

    wins = [t.profit_amount for t in trades if t.profit_amount > 0]
    losses = [-t.profit_amount for t in trades if t.profit_amount <= 0]
    gross_profit = sum(wins)
    gross_loss = sum(losses)
    total = len(trades)

    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    else:
        profit_factor = PROFIT_FACTOR_SENTINEL if gross_profit > 0 else 0.0

    first_entry = min(pd.Timestamp(t.entry_time) for t in trades)
    last_exit = max(pd.Timestamp(t.exit_time) for t in trades)
    elapsed = (last_exit - first_entry).total_seconds() / 86_400.0

    return BacktestResult(
        initial_equity=float(initial_equity),
        final_equity=float(final_equity),
        total_return=float(total_return),
        annualized_return=annualize(initial_equity, final_equity, elapsed),
        profit_factor=float(profit_factor),
        win_rate=len(wins) / total,
        max_drawdown=max_drawdown(curve),
        total_trades=total,
        winning_trades=len(wins),
        losing_trades=len(losses),
        avg_win_amount=gross_profit / len(wins) if wins else 0.0,
        avg_loss_amount=gross_loss / len(losses) if losses else 0.0,
        avg_trade_amount=(gross_profit - gross_loss) / total,
        avg_trade_length=sum(t.duration_days for t in trades) / total,
        strategy_name=strategy_name,
        trades=tuple(trades),
        equity_curve=tuple(curve),
    )

def aggregate_trades(trades: Iterable[Trade], initial_equity: float, strategy_name: str = "") -> BacktestResult:
    """Re-sort trades by exit time and rebuild one result, day-level ratios included."""
    ordered = sorted(trades, key=lambda t: pd.Timestamp(t.exit_time))
    result = compute_metrics(ordered, initial_equity, strategy_name=strategy_name)
    if not ordered:
        return result
    sharpe, sortino = sharpe_sortino(daily_returns_from_trades(ordered, initial_equity).values())
    return replace(result, sharpe_ratio=sharpe, sortino_ratio=sortino)

def merge_phase_results(results: Iterable[BacktestResult], initial_equity: float) -> BacktestResult:
    """Combine phase-tagged runs into one result with a per-phase breakdown."""
    breakdown: dict[MarketPhase, BacktestResult] = {}
    trades: list[Trade] = []
    for r in results:
        for phase, sub in r.phase_results.items():
            breakdown[phase] = sub
        trades.extend(r.trades)
    combined = aggregate_trades(trades, initial_equity, strategy_name="phase-merged")
    return replace(combined, phase_results=breakdown)
