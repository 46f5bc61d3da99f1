from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import numpy as np

from phase_backtester.config import RISK_PARAMS, TradingParameters
from phase_backtester.indicators import atr, closes
from phase_backtester.models import Position, Quote
from phase_backtester.params import ParamSpec, to_settings

MIN_EQUITY = 10.0

@dataclass(frozen=True)
class RiskSettings:
    risk_reward_ratio: float = 2.0
    atr_length: int = 14
    atr_multiplier: float = 3.0
    use_trailing_stop: bool = False
    use_risk_based_sizing: bool = False

    @classmethod
    def from_trading(cls, trading: TradingParameters) -> "RiskSettings":
        return cls(
            risk_reward_ratio=trading.risk_reward_ratio,
            atr_length=trading.atr_length,
            atr_multiplier=trading.atr_multiplier,
            use_trailing_stop=trading.use_trailing_stop,
            use_risk_based_sizing=trading.use_risk_based_sizing,
        )

class BaseStrategy:
    """ATR stops, risk/reward targets and position sizing shared by all strategies.

    Subclasses pass their frozen settings dataclass to ``__init__``, set
    ``name`` and implement ``generate_signal``.
    """
    name = "base"

    def __init__(self, settings: Any, trading: TradingParameters | None = None):
        self.trading = trading or TradingParameters()
        self.risk = RiskSettings.from_trading(self.trading)
        self.settings = settings
        self._series: Sequence[Quote] | None = None
        self._closes: np.ndarray | None = None

    def apply_parameters(
        self,
        values: Mapping[str, Any],
        schema: list[ParamSpec] | None = None,
        strict: bool = False,
    ) -> None:
        """Route grid values to the strategy settings or the risk settings; missing keys keep defaults."""
        own = {k: v for k, v in values.items() if k not in _RISK_KEYS}
        risk = {k: v for k, v in values.items() if k in _RISK_KEYS}
        self.settings = to_settings(self.settings, own, schema, strict=strict)
        self.risk = to_settings(self.risk, risk, RISK_PARAMS, strict=strict)

    def close_array(self, quotes: Sequence[Quote]) -> np.ndarray:
        if self._series is not quotes or self._closes is None or len(self._closes) != len(quotes):
            self._series = quotes
            self._closes = closes(quotes)
        return self._closes

    def warmed_up(self, index: int) -> bool:
        """True once the ATR behind stops and sizing has a full window."""
        return index >= self.risk.atr_length

    def generate_signal(self, quotes: Sequence[Quote], index: int) -> int:
        raise NotImplementedError

    def calculate_stop_loss_price(self, is_long: bool, quotes: Sequence[Quote], index: int) -> float:
        price = quotes[index].close
        dist = atr(quotes, index, self.risk.atr_length) * self.risk.atr_multiplier
        atr_stop = price - dist if is_long else price + dist
        cap = price * self.trading.max_stop_loss
        return max(atr_stop, price - cap) if is_long else min(atr_stop, price + cap)

    def calculate_take_profit_price(self, is_long: bool, quotes: Sequence[Quote], index: int) -> float:
        price = quotes[index].close
        risk = abs(price - self.calculate_stop_loss_price(is_long, quotes, index))
        floor = price * self.trading.min_take_profit
        if is_long:
            return max(price + risk * self.risk.risk_reward_ratio, price + floor)
        return min(price - risk * self.risk.risk_reward_ratio, price - floor)

    def calculate_position_size(self, equity: float, quote: Quote, stop_price: float) -> float:
        """Size in units. Fixed fraction of equity, or risked amount over per-unit loss at the stop."""
        if equity < MIN_EQUITY or quote.close <= 0:
            return 0.0
        amount = equity * self.trading.risk_per_trade
        if not self.risk.use_risk_based_sizing:
            return amount * self.trading.leverage / quote.close
        per_unit = abs(quote.close - stop_price) + quote.close * self.trading.slippage
        per_unit += (quote.close + stop_price) * self.trading.taker_fee
        if per_unit <= 0:
            return 0.0
        return amount / per_unit * self.trading.leverage

    def update_stop_loss(self, position: Position, quotes: Sequence[Quote], index: int) -> float:
        if not self.risk.use_trailing_stop:
            return position.stop_price
        price = quotes[index].close
        dist = atr(quotes, index, self.risk.atr_length) * self.risk.atr_multiplier
        if dist <= 0:
            return position.stop_price
        if position.is_long:
            return max(position.stop_price, price - dist)
        return min(position.stop_price, price + dist)

_RISK_KEYS = {p.key for p in RISK_PARAMS}
