"""
Simulation engine: fills, fees, circuit breaker and the zero-trade baselines.

Run with: python -m pytest tests/test_engine.py -v
"""

import math

import pandas as pd
import pytest

from phase_backtester.config import TradingParameters
from phase_backtester.engine import TradingStrategy, backtest, backtest_across_phases, split_by_phase
from phase_backtester.models import MarketPhase, Quote
from strategies import MeanReversionReturns, SmaCrossover


def bar(day, o, h, l, c):
    return Quote(time=pd.Timestamp("2024-01-01") + pd.Timedelta(days=day), open=o, high=h, low=l, close=c)


def series(*moves):
    """Two flat bars (entry happens on bar 1) followed by the given (o, h, l, c) bars."""
    bars = [bar(0, 100, 100, 100, 100), bar(1, 100, 100, 100, 100)]
    for i, m in enumerate(moves):
        bars.append(bar(i + 2, *m))
    return tuple(bars)


class TestFills:

    def test_take_profit_fills_at_target_with_fees(self, scripted):
        quotes = series((100, 111, 99, 105), (105, 105, 105, 105))
        result = backtest(quotes, scripted({1: 1}))

        assert result.total_trades == 1
        t = result.trades[0]
        assert t.reason == "TakeProfit"
        assert t.exit_price == 110
        expected = 100.0 - 100 * 10 * 0.00055 - 110 * 10 * 0.00055
        assert t.profit_amount == pytest.approx(expected)
        assert t.return_pct == pytest.approx(expected / 1000.0)
        assert result.final_equity == pytest.approx(100_000 + expected)

    def test_take_profit_wins_when_both_levels_touched(self, scripted):
        quotes = series((100, 111, 89, 100))
        result = backtest(quotes, scripted({1: 1}))
        assert result.trades[0].reason == "TakeProfit"
        assert result.trades[0].exit_price == 110

    def test_stop_loss_fills_at_stop(self, scripted):
        quotes = series((100, 105, 89, 95), (95, 95, 95, 95))
        result = backtest(quotes, scripted({1: 1}))
        t = result.trades[0]
        assert t.reason == "StopLoss"
        assert t.exit_price == 90
        assert t.profit_amount == pytest.approx(-100.0 - 0.55 - 90 * 10 * 0.00055)
        assert result.losing_trades == 1
        assert result.win_rate == 0.0

    def test_short_uses_mirrored_levels(self, scripted):
        quotes = series((100, 101, 89, 95))
        result = backtest(quotes, scripted({1: -1}))
        t = result.trades[0]
        assert not t.is_long
        assert t.side == "SELL"
        assert t.reason == "TakeProfit"
        assert t.exit_price == 90
        assert t.profit_amount > 0

    def test_open_position_is_closed_on_last_bar(self, scripted):
        quotes = series((100, 101, 99, 100.5), (100.5, 101, 99, 100.5))
        result = backtest(quotes, scripted({1: 1}))
        assert result.total_trades == 1
        t = result.trades[0]
        assert t.reason == "EndOfData"
        assert t.exit_price == 100.5
        assert t.exit_time == quotes[-1].time

    def test_no_signal_on_first_bar(self, scripted):
        quotes = series((100, 101, 99, 100))
        result = backtest(quotes, scripted({0: 1}))
        assert result.total_trades == 0

    def test_stop_never_loosens(self, scripted):
        class Loosening(scripted):
            def update_stop_loss(self, position, quotes, index):
                return position.stop_price - 50

        quotes = series((100, 101, 99, 100), (100, 101, 89, 92))
        result = backtest(quotes, Loosening({1: 1}))
        assert result.trades[0].reason == "StopLoss"
        assert result.trades[0].exit_price == 90

    def test_excursions_are_recorded(self, scripted):
        quotes = series((100, 101, 95, 96), (96, 104, 96, 103), (103, 111, 103, 103))
        t = backtest(quotes, scripted({1: 1})).trades[0]
        assert t.max_adverse_excursion == pytest.approx(-0.04)
        assert t.max_favorable_excursion == pytest.approx(0.03)

    def test_zero_size_opens_nothing(self, scripted):
        quotes = series((100, 111, 99, 105))
        result = backtest(quotes, scripted({1: 1}, size=0.0))
        assert result.total_trades == 0
        assert result.final_equity == 100_000

    @pytest.mark.parametrize("signal", [1, -1])
    def test_stop_at_entry_price_opens_nothing(self, scripted, signal):
        quotes = series((100, 111, 89, 105))
        result = backtest(quotes, scripted({1: signal}, stop_offset=0.0))
        assert result.total_trades == 0
        assert result.final_equity == 100_000


class TestCircuitBreaker:

    def test_halts_and_returns_partial_result(self, scripted):
        quotes = series(
            (100, 101, 89, 90),
            (90, 91, 89, 90),
            (90, 91, 89, 90),
            (90, 91, 89, 90),
        )
        params = TradingParameters(max_drawdown=0.05)
        result = backtest(quotes, scripted({1: 1, 3: 1}, size=1000.0), params=params)

        assert result.halted
        assert result.total_trades == 1
        assert result.trades[0].reason == "StopLoss"
        assert len(result.equity_curve) == 3
        assert result.final_equity < 100_000 * 0.95

    def test_not_halted_within_limit(self, scripted):
        quotes = series((100, 111, 99, 105))
        assert not backtest(quotes, scripted({1: 1})).halted


class TestBaselines:

    def test_empty_quotes(self, scripted):
        result = backtest((), scripted({}))
        assert result.total_trades == 0
        assert result.total_return == 0
        assert result.final_equity == result.initial_equity

    def test_flat_series_sma_crossover_has_no_trades(self, flat_quotes):
        result = backtest(flat_quotes, SmaCrossover(fast_period=10, slow_period=50))
        assert result.total_trades == 0

    def test_rising_series_long_only_mean_reversion_is_zero_baseline(self, rising_quotes):
        result = backtest(rising_quotes, MeanReversionReturns(lookback=5, long_only=True))
        assert result.total_trades == 0
        assert result.total_return == 0
        assert result.win_rate == 0
        assert result.profit_factor == 0
        assert result.max_drawdown == 0
        assert result.sharpe_ratio == 0
        assert result.sortino_ratio == 0
        assert result.annualized_return == 0

    def test_strategies_satisfy_protocol(self):
        assert isinstance(SmaCrossover(), TradingStrategy)
        assert isinstance(MeanReversionReturns(), TradingStrategy)


class TestDeterminism:

    def test_identical_inputs_give_identical_results(self, wave_quotes):
        a = backtest(wave_quotes, SmaCrossover(fast_period=5, slow_period=20))
        b = backtest(wave_quotes, SmaCrossover(fast_period=5, slow_period=20))
        assert a.total_trades > 0
        assert a == b

    def test_trades_are_well_formed(self, wave_quotes):
        result = backtest(wave_quotes, SmaCrossover(fast_period=5, slow_period=20))
        assert 0.0 <= result.win_rate <= 1.0
        assert result.winning_trades + result.losing_trades == result.total_trades
        for t in result.trades:
            assert t.size > 0
            assert pd.Timestamp(t.exit_time) >= pd.Timestamp(t.entry_time)
        assert math.isfinite(result.sharpe_ratio)
        assert math.isfinite(result.sortino_ratio)

    def test_phase_label_is_carried(self, wave_quotes):
        result = backtest(wave_quotes, SmaCrossover(fast_period=5, slow_period=20), MarketPhase.BULLISH)
        assert {t.phase for t in result.trades} == {MarketPhase.BULLISH}
        assert list(result.phase_results) == [MarketPhase.BULLISH]
        assert result.phase_results[MarketPhase.BULLISH].total_trades == result.total_trades


class HalfAndHalf:
    """First half of the bars BULLISH, the rest BEARISH, the first few UNKNOWN."""

    def __init__(self, n, warmup=5):
        self.n = n
        self.warmup = warmup

    def classify(self, quotes, index):
        if index < self.warmup:
            return MarketPhase.UNKNOWN
        return MarketPhase.BULLISH if index < self.n // 2 else MarketPhase.BEARISH


class TestAcrossPhases:

    def test_split_drops_unknown_and_keeps_order(self, wave_quotes):
        groups = split_by_phase(wave_quotes, HalfAndHalf(len(wave_quotes)))
        assert list(groups) == [MarketPhase.BULLISH, MarketPhase.BEARISH]
        assert groups[MarketPhase.BULLISH] == wave_quotes[5:120]
        assert groups[MarketPhase.BEARISH] == wave_quotes[120:]

    def test_each_phase_runs_on_its_own_bars(self, wave_quotes):
        strategy = SmaCrossover(fast_period=3, slow_period=15)
        result = backtest_across_phases(wave_quotes, strategy, HalfAndHalf(len(wave_quotes)))

        assert set(result.phase_results) == {MarketPhase.BULLISH, MarketPhase.BEARISH}
        bull = backtest(wave_quotes[5:120], SmaCrossover(fast_period=3, slow_period=15), MarketPhase.BULLISH)
        assert result.phase_results[MarketPhase.BULLISH].trades == bull.trades
        assert result.total_trades == sum(r.total_trades for r in result.phase_results.values())
        assert result.total_trades > 0
        assert {t.phase for t in result.trades} <= {MarketPhase.BULLISH, MarketPhase.BEARISH}
        assert result.strategy_name == strategy.name

    def test_merged_trades_are_chronological(self, wave_quotes):
        result = backtest_across_phases(wave_quotes, SmaCrossover(fast_period=3, slow_period=15),
                                        HalfAndHalf(len(wave_quotes)))
        exits = [pd.Timestamp(t.exit_time) for t in result.trades]
        assert exits == sorted(exits)

    def test_all_unknown_gives_empty_result(self, wave_quotes):
        result = backtest_across_phases(wave_quotes, SmaCrossover(), HalfAndHalf(0, warmup=len(wave_quotes)))
        assert result.total_trades == 0
        assert result.phase_results == {}
