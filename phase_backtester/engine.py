from __future__ import annotations

from dataclasses import replace
from typing import Protocol, Sequence, runtime_checkable

import pandas as pd
from loguru import logger

from .config import TradingParameters
from .metrics import compute_metrics, merge_phase_results, sharpe_sortino
from .models import BacktestResult, MarketPhase, Position, Quote, Trade
from .phases import MarketPhaseClassifier, classify_series

@runtime_checkable
class TradingStrategy(Protocol):
    name: str

    def generate_signal(self, quotes: Sequence[Quote], index: int) -> int: ...

    def calculate_stop_loss_price(self, is_long: bool, quotes: Sequence[Quote], index: int) -> float: ...

    def calculate_take_profit_price(self, is_long: bool, quotes: Sequence[Quote], index: int) -> float: ...

    def calculate_position_size(self, equity: float, quote: Quote, stop_price: float) -> float: ...

    def update_stop_loss(self, position: Position, quotes: Sequence[Quote], index: int) -> float: ...

def _excursions(history: list[float], is_long: bool, entry: float) -> tuple[float, float]:
    """(MAE, MFE) as fractions of the entry price; MAE <= 0 <= MFE."""
    mae = 0.0
    mfe = 0.0
    for p in history:
        move = (p - entry) / entry if is_long else (entry - p) / entry
        mae = min(mae, move)
        mfe = max(mfe, move)
    return mae, mfe

def _touched_exit(pos: Position, q: Quote) -> tuple[float, str] | None:
    """Take profit first, then stop; the fill is the touched level."""
    if (pos.is_long and q.high >= pos.target_price) or (not pos.is_long and q.low <= pos.target_price):
        return pos.target_price, "TakeProfit"
    if (pos.is_long and q.low <= pos.stop_price) or (not pos.is_long and q.high >= pos.stop_price):
        return pos.stop_price, "StopLoss"
    return None

def backtest(
    quotes: Sequence[Quote],
    strategy: TradingStrategy,
    phase: MarketPhase = MarketPhase.UNKNOWN,
    params: TradingParameters = TradingParameters(),
) -> BacktestResult:
    """Simulate one strategy over one quote series, at most one open position.

    Per candle: an open position exits at its target or stop when the bar
    touches it (target wins when both are touched), else the strategy may
    tighten the stop. Without a position (and past the first bar) the
    strategy's signal opens one at the close, unless its stop is not
    beyond the entry price. Entry and exit each pay
    ``taker_fee`` on notional. If realized equity falls more than
    ``max_drawdown`` below its running peak, the run halts and the partial
    result is returned. A position still open at the end is closed on the
    last processed bar.

    Sharpe/Sortino come from per-day equity returns, not the trade list.
    Deterministic for identical inputs.
    """
    equity = float(params.initial_capital)
    peak = equity
    trades: list[Trade] = []
    curve: list[float] = []
    daily_returns: dict[object, float] = {}
    current_day = None
    day_start_equity = equity
    halted = False

    position: Position | None = None

    def open_pos(i: int, signal: int):
        nonlocal position, equity
        q = quotes[i]
        is_long = signal > 0
        stop = float(strategy.calculate_stop_loss_price(is_long, quotes, i))
        if (is_long and not stop < q.close) or (not is_long and not stop > q.close):
            logger.debug(f"{strategy.name}: stop {stop} not beyond entry {q.close} at bar {i}, skipping entry")
            return
        size = float(strategy.calculate_position_size(equity, q, stop))
        if not size > 0:
            return
        target = float(strategy.calculate_take_profit_price(is_long, quotes, i))
        entry_fee = q.close * size * params.taker_fee
        equity -= entry_fee
        position = Position(
            entry_price=float(q.close),
            size=size,
            stop_price=stop,
            target_price=target,
            is_long=is_long,
            entry_index=i,
            phase=phase,
            entry_fee=entry_fee,
        )

    def close_pos(i: int, price: float, reason: str):
        nonlocal position, equity
        pos = position
        gross = (price - pos.entry_price) * pos.size if pos.is_long else (pos.entry_price - price) * pos.size
        exit_fee = price * pos.size * params.taker_fee
        equity += gross - exit_fee
        profit = gross - exit_fee - pos.entry_fee
        mae, mfe = _excursions(pos.price_history, pos.is_long, pos.entry_price)
        trades.append(Trade(
            entry_time=quotes[pos.entry_index].time,
            exit_time=quotes[i].time,
            entry_price=pos.entry_price,
            exit_price=float(price),
            size=pos.size,
            return_pct=profit / (pos.entry_price * pos.size),
            profit_amount=profit,
            is_long=pos.is_long,
            max_adverse_excursion=mae,
            max_favorable_excursion=mfe,
            phase=pos.phase,
            reason=reason,
        ))
        position = None

    last = -1
    for i, q in enumerate(quotes):
        last = i
        day = pd.Timestamp(q.time).date()
        if day != current_day:
            if current_day is not None:
                daily_returns[current_day] = (equity - day_start_equity) / day_start_equity
            current_day = day
            day_start_equity = equity

        if position is not None:
            position.price_history.append(q.close)
            hit = _touched_exit(position, q)
            if hit is not None:
                close_pos(i, hit[0], hit[1])
            else:
                new_stop = float(strategy.update_stop_loss(position, quotes, i))
                if (position.is_long and new_stop > position.stop_price) or (
                        not position.is_long and new_stop < position.stop_price):
                    position.stop_price = new_stop

        if position is None and i > 0:
            signal = int(strategy.generate_signal(quotes, i))
            if signal != 0:
                open_pos(i, signal)

        curve.append(equity)
        peak = max(peak, equity)
        drawdown = (peak - equity) / peak if peak > 0 else 0.0
        if drawdown > params.max_drawdown:
            logger.warning(
                f"{strategy.name}: drawdown {drawdown:.2%} exceeds {params.max_drawdown:.2%}, "
                f"halting at bar {i}/{len(quotes)}"
            )
            halted = True
            break

    if position is not None:
        q = quotes[last]
        hit = _touched_exit(position, q)
        if hit is not None:
            close_pos(last, hit[0], hit[1])
        else:
            close_pos(last, q.close, "EndOfData")
        curve[-1] = equity

    if current_day is not None:
        daily_returns[current_day] = (equity - day_start_equity) / day_start_equity

    result = compute_metrics(trades, params.initial_capital, equity, strategy_name=strategy.name)
    if trades:
        sharpe, sortino = sharpe_sortino(daily_returns.values())
        result = replace(result, sharpe_ratio=sharpe, sortino_ratio=sortino)
    result = replace(result, halted=halted, equity_curve=tuple(curve))
    return replace(result, phase_results={phase: result})

def split_by_phase(quotes: Sequence[Quote], classifier: MarketPhaseClassifier) -> dict[MarketPhase, tuple[Quote, ...]]:
    """Group bars by their phase label, time order kept. UNKNOWN bars are dropped."""
    groups: dict[MarketPhase, list[Quote]] = {}
    for q, label in zip(quotes, classify_series(quotes, classifier)):
        if label != MarketPhase.UNKNOWN:
            groups.setdefault(label, []).append(q)
    return {phase: tuple(bars) for phase, bars in groups.items()}

def backtest_across_phases(
    quotes: Sequence[Quote],
    strategy: TradingStrategy,
    classifier: MarketPhaseClassifier,
    params: TradingParameters = TradingParameters(),
) -> BacktestResult:
    """Backtest each phase's bars as their own series and merge the runs.

    Every run starts from ``initial_capital`` and tags its trades with the
    phase. The merged result keeps one entry per phase in ``phase_results``.
    """
    results = []
    for phase, phase_quotes in split_by_phase(quotes, classifier).items():
        logger.info(f"Backtesting {strategy.name} in {phase.value} phase with {len(phase_quotes)} quotes")
        results.append(backtest(phase_quotes, strategy, phase, params))
    merged = merge_phase_results(results, params.initial_capital)
    return replace(merged, strategy_name=strategy.name)
