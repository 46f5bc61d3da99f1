"""
Strategy catalog, reference strategies and the OHLCV data adapter.

Run with: python -m pytest tests/test_catalog.py -v
"""

import pickle

import pandas as pd
import pytest

from phase_backtester.catalog import get_strategy, list_strategies
from phase_backtester.config import TradingParameters
from phase_backtester.data import load_csv_ohlcv, load_quotes, quotes_from_frame
from phase_backtester.engine import backtest
from phase_backtester.indicators import atr
from phase_backtester.models import Position
from strategies import McGinleyBaseline, MeanReversionReturns, SmaCrossover


@pytest.fixture
def dipping_quotes(quotes_from):
    """30 rising bars with a small dip every fourth bar."""
    return quotes_from([100.0 + 0.25 * i - (0.6 if i % 4 == 3 else 0.0) for i in range(30)])


class TestCatalog:

    def test_keys(self):
        assert [s.key for s in list_strategies()] == ["sma_crossover", "mean_reversion_returns", "mcginley_baseline"]

    def test_lookup_by_name(self):
        assert get_strategy("SMA Crossover").key == "sma_crossover"

    def test_unknown_strategy(self):
        with pytest.raises(KeyError):
            get_strategy("martingale")

    def test_create_applies_overrides(self):
        s = get_strategy("sma_crossover").create(overrides={"fast_period": 5, "slow_period": "40", "use_trailing_stop": "true"})
        assert isinstance(s, SmaCrossover)
        assert s.settings.fast_period == 5
        assert s.settings.slow_period == 40
        assert s.risk.use_trailing_stop is True

    def test_create_strict_rejects_unknown(self):
        with pytest.raises(KeyError):
            get_strategy("sma_crossover").create(overrides={"fast": 5}, strict=True)

    def test_create_lenient_keeps_defaults(self):
        s = get_strategy("sma_crossover").create(overrides={"fast": 5})
        assert s.settings.fast_period == 10

    def test_create_checks_bounds(self):
        with pytest.raises(ValueError):
            get_strategy("mcginley_baseline").create(overrides={"length": 1000})

    def test_factory_is_picklable(self):
        factory = get_strategy("mean_reversion_returns").factory(TradingParameters(leverage=2.0))
        clone = pickle.loads(pickle.dumps(factory))
        s = clone({"lookback": 4, "long_only": True})
        assert isinstance(s, MeanReversionReturns)
        assert s.settings.lookback == 4
        assert s.trading.leverage == 2.0

    def test_default_grid(self):
        grid = get_strategy("sma_crossover").default_grid()
        assert grid["fast_period"] == list(range(5, 51, 5))
        assert grid["slow_period"] == list(range(20, 201, 20))

    def test_grid_tokens_include_risk_knobs(self):
        grid = get_strategy("mcginley_baseline").grid(["length=10,20", "risk_reward_ratio=1.5:2.5:0.5"])
        assert grid == {"length": [10, 20], "risk_reward_ratio": [1.5, 2.0, 2.5]}


class TestBaseStrategy:

    def test_stop_capped_by_max_stop_loss(self, quotes_from):
        quotes = quotes_from([100.0 + (10 if i % 2 else -10) for i in range(40)])
        s = SmaCrossover()
        stop = s.calculate_stop_loss_price(True, quotes, 30)
        assert stop == pytest.approx(quotes[30].close * 0.95)

    def test_take_profit_uses_risk_reward(self, wave_quotes):
        s = SmaCrossover()
        price = wave_quotes[100].close
        stop = s.calculate_stop_loss_price(False, wave_quotes, 100)
        target = s.calculate_take_profit_price(False, wave_quotes, 100)
        assert stop > price > target
        assert price - target == pytest.approx(max((stop - price) * 2.0, price * 0.005))

    def test_fixed_fraction_size(self, flat_quotes):
        s = SmaCrossover()
        size = s.calculate_position_size(100_000, flat_quotes[10], 95.0)
        assert size == pytest.approx(100_000 * 0.03 * 10 / 100.0)

    def test_risk_based_size(self, flat_quotes):
        s = SmaCrossover()
        s.apply_parameters({"use_risk_based_sizing": True})
        size = s.calculate_position_size(100_000, flat_quotes[10], 95.0)
        per_unit = 5.0 + 100 * 0.0005 + (100 + 95) * 0.00055
        assert size == pytest.approx(3000 / per_unit * 10)

    def test_tiny_equity_sizes_to_zero(self, flat_quotes):
        assert SmaCrossover().calculate_position_size(5.0, flat_quotes[10], 95.0) == 0.0

    def test_mcginley_baseline_trades_a_wave(self, wave_quotes):
        result = backtest(wave_quotes, McGinleyBaseline(length=10))
        assert result.total_trades > 0

    def test_sma_settings_validate(self):
        with pytest.raises(ValueError):
            SmaCrossover(fast_period=50, slow_period=20)

    def test_no_signal_before_atr_window(self, dipping_quotes):
        s = MeanReversionReturns(lookback=2)
        assert s.generate_signal(dipping_quotes, 3) == 0
        assert s.generate_signal(dipping_quotes, 15) == 1

    def test_risk_sizing_stays_bounded_on_short_history(self, dipping_quotes):
        s = MeanReversionReturns(lookback=2)
        s.apply_parameters({"use_risk_based_sizing": True})
        result = backtest(dipping_quotes, s)
        assert result.total_trades > 0
        for t in result.trades:
            assert pd.Timestamp(t.entry_time) >= pd.Timestamp(dipping_quotes[14].time)
            assert t.entry_price * t.size / 100_000 < 20


class TestTrailingStop:

    def position(self, is_long, stop):
        return Position(entry_price=100.0, size=1.0, stop_price=stop, target_price=0.0, is_long=is_long, entry_index=0)

    def trailing(self):
        s = SmaCrossover()
        s.apply_parameters({"use_trailing_stop": True})
        return s

    def test_long_stop_rises_with_price(self, rising_quotes):
        price = rising_quotes[60].close
        new = self.trailing().update_stop_loss(self.position(True, 50.0), rising_quotes, 60)
        assert new == pytest.approx(price - atr(rising_quotes, 60, 14) * 3.0)
        assert 50.0 < new < price

    def test_long_stop_never_loosens(self, rising_quotes):
        tight = rising_quotes[60].close - 0.01
        assert self.trailing().update_stop_loss(self.position(True, tight), rising_quotes, 60) == tight

    def test_short_stop_falls_with_price(self, rising_quotes):
        price = rising_quotes[60].close
        new = self.trailing().update_stop_loss(self.position(False, 1_000.0), rising_quotes, 60)
        assert new == pytest.approx(price + atr(rising_quotes, 60, 14) * 3.0)
        assert price < new < 1_000.0

    def test_short_stop_never_loosens(self, rising_quotes):
        tight = rising_quotes[60].close + 0.01
        assert self.trailing().update_stop_loss(self.position(False, tight), rising_quotes, 60) == tight

    def test_disabled_keeps_stop(self, rising_quotes):
        assert SmaCrossover().update_stop_loss(self.position(True, 50.0), rising_quotes, 60) == 50.0

    def test_no_atr_history_keeps_stop(self, rising_quotes):
        assert self.trailing().update_stop_loss(self.position(True, 50.0), rising_quotes, 5) == 50.0


class TestData:

    def test_load_csv_normalizes_columns(self, tmp_path):
        path = tmp_path / "bars.csv"
        path.write_text(
            "Time,Open,High,Low,Close\n"
            "2024-01-02,101,102,100,101.5\n"
            "2024-01-01,100,101,99,100.5\n"
        )
        df = load_csv_ohlcv(path)
        assert list(df.columns) == ["time", "open", "high", "low", "close", "volume"]
        assert df["close"].tolist() == [100.5, 101.5]
        assert (df["volume"] == 0.0).all()

    def test_missing_column(self, tmp_path):
        path = tmp_path / "bars.csv"
        path.write_text("time,open,high,low\n2024-01-01,1,1,1\n")
        with pytest.raises(ValueError):
            load_csv_ohlcv(path)

    def test_quotes_from_frame(self):
        df = pd.DataFrame({
            "time": pd.date_range("2024-01-01", periods=3, freq="D"),
            "open": [1.0, 2.0, 3.0],
            "high": [1.5, 2.5, 3.5],
            "low": [0.5, 1.5, 2.5],
            "close": [1.2, 2.2, 3.2],
        })
        quotes = quotes_from_frame(df)
        assert len(quotes) == 3
        assert quotes[1].close == 2.2
        assert quotes[0].volume == 0.0

    def test_quotes_must_be_strictly_increasing(self):
        df = pd.DataFrame({
            "time": pd.to_datetime(["2024-01-01", "2024-01-01", "2024-01-02"]),
            "open": [1.0] * 3, "high": [1.0] * 3, "low": [1.0] * 3, "close": [1.0] * 3,
        })
        with pytest.raises(ValueError):
            quotes_from_frame(df)

    def test_time_aliases_and_naive_times(self, tmp_path):
        path = tmp_path / "bars.csv"
        path.write_text(
            "Timestamp,OPEN,High,Low,Close,Volume\n"
            "2024-01-01 00:00,100,101,99,100.5,10\n"
            "2024-01-01 01:00,100.5,102,100,101,12\n"
            "2024-01-01 01:00,100.5,102,100,101.5,14\n"
        )
        df = load_csv_ohlcv(path, tz=None)
        assert len(df) == 2
        assert df["time"].dt.tz is None
        assert df["close"].tolist() == [100.5, 101.5]
        assert df["volume"].tolist() == [10.0, 14.0]

    def test_no_time_column(self, tmp_path):
        path = tmp_path / "bars.csv"
        path.write_text("when,open,high,low,close\n2024-01-01,1,1,1,1\n")
        with pytest.raises(ValueError):
            load_csv_ohlcv(path)

    def test_load_quotes(self, tmp_path):
        path = tmp_path / "bars.csv"
        path.write_text("date,open,high,low,close\n2024-01-02,2,2,2,2\n2024-01-01,1,1,1,1\n")
        quotes = load_quotes(path)
        assert [q.close for q in quotes] == [1.0, 2.0]
        assert pd.Timestamp(quotes[0].time).tzinfo is not None
