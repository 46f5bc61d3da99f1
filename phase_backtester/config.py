from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping
import sys

from loguru import logger

from .params import ParamSpec

LOG_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>"


@dataclass(frozen=True)
class TradingParameters:
    # Exchange
    taker_fee: float = 0.00055             # fraction of notional, charged on entry and exit
    slippage: float = 0.0005               # fraction of price, used by risk-based sizing

    # Position
    initial_capital: float = 100_000.0
    risk_per_trade: float = 0.03           # fraction of equity
    leverage: float = 10.0
    use_risk_based_sizing: bool = False

    # Risk
    max_drawdown: float = 0.20             # circuit breaker: halt the run beyond this
    risk_reward_ratio: float = 2.0
    atr_length: int = 14
    atr_multiplier: float = 3.0
    max_stop_loss: float = 0.05            # stop never further than this fraction of price
    min_take_profit: float = 0.005         # target at least this fraction away
    use_trailing_stop: bool = False

    def __post_init__(self):
        if self.initial_capital <= 0:
            raise ValueError(f"initial_capital must be > 0 (got {self.initial_capital})")
        for name in ("taker_fee", "slippage", "risk_per_trade", "max_stop_loss", "min_take_profit"):
            v = getattr(self, name)
            if v < 0 or v >= 1:
                raise ValueError(f"{name} must be in [0, 1) (got {v})")
        if self.leverage <= 0:
            raise ValueError(f"leverage must be > 0 (got {self.leverage})")
        if not 0 < self.max_drawdown <= 1:
            raise ValueError(f"max_drawdown must be in (0, 1] (got {self.max_drawdown})")
        if self.risk_reward_ratio <= 0:
            raise ValueError(f"risk_reward_ratio must be > 0 (got {self.risk_reward_ratio})")
        if self.atr_length < 1:
            raise ValueError(f"atr_length must be >= 1 (got {self.atr_length})")
        if self.atr_multiplier <= 0:
            raise ValueError(f"atr_multiplier must be > 0 (got {self.atr_multiplier})")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "TradingParameters":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise KeyError(f"Unknown trading parameter(s) {unknown}. Known: {sorted(known)}")
        return cls(**dict(values))


def configure_logging(level: str = "INFO", logfile: str | Path | None = None) -> None:
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level)
    if logfile is not None:
        logger.add(str(logfile), rotation="00:00", retention="30 days", level="DEBUG")


# Risk knobs a strategy may tune per grid combination (overriding TradingParameters).
RISK_PARAMS: list[ParamSpec] = [
    ParamSpec("risk_reward_ratio","float",2.0,label="Risk/reward",help="Target distance as a multiple of stop distance.",min=0.5,max=10,step=0.5),
    ParamSpec("atr_length","int",14,label="ATR length",help="Bars in the ATR average.",min=2,max=200,step=1),
    ParamSpec("atr_multiplier","float",3.0,label="ATR multiple",help="Stop distance in ATRs.",min=0.5,max=10,step=0.5),
    ParamSpec("use_trailing_stop","bool",False,label="Trailing stop",help="Trail the stop by ATR; it never loosens."),
    ParamSpec("use_risk_based_sizing","bool",False,label="Risk sizing",help="Size by stop distance instead of a fixed equity fraction."),
]
