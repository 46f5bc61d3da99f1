from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from typing import Any, Callable
import importlib

from .config import RISK_PARAMS, TradingParameters
from .optimize import ParameterGrid, auto_grid, parse_grid_tokens
from .params import ParamSpec

@dataclass(frozen=True)
class StrategySurface:
    key: str
    name: str
    description: str
    module: str
    cls: str
    params: list[ParamSpec]

    @property
    def schema(self) -> list[ParamSpec]:
        """Strategy params plus the shared risk knobs."""
        return [*self.params, *RISK_PARAMS]

    def load(self) -> type:
        mod = importlib.import_module(self.module)
        return getattr(mod, self.cls)

    def create(
        self,
        trading: TradingParameters | None = None,
        overrides: dict[str, Any] | None = None,
        strict: bool = False,
    ):
        strategy = self.load()(trading)
        strategy.apply_parameters(overrides or {}, self.params, strict=strict)
        return strategy

    def factory(self, trading: TradingParameters | None = None, strict: bool = False) -> Callable[[dict[str, Any]], Any]:
        """Parameters -> fresh strategy. Picklable, so it also works with the process executor."""
        return partial(_build, self.key, trading, strict)

    def default_grid(self) -> ParameterGrid:
        return {p.key: auto_grid(p) for p in self.params}

    def grid(self, tokens: list[str]) -> ParameterGrid:
        return parse_grid_tokens(tokens, self.schema)

def _build(key: str, trading: TradingParameters | None, strict: bool, parameters: dict[str, Any]):
    return get_strategy(key).create(trading, parameters, strict=strict)

_STRATEGIES: list[StrategySurface] = [
    StrategySurface(
        key="sma_crossover",
        name="SMA Crossover",
        description="Long when the fast SMA crosses above the slow SMA, short on the cross below.",
        module="strategies.sma_crossover",
        cls="SmaCrossover",
        params=[
            ParamSpec("fast_period","int",10,label="Fast",help="Fast SMA length (bars).",min=5,max=50,step=5),
            ParamSpec("slow_period","int",50,label="Slow",help="Slow SMA length (bars).",min=20,max=200,step=20),
        ],
    ),
    StrategySurface(
        key="mean_reversion_returns",
        name="Mean Reversion on Returns",
        description="Contrarian: when the recent average return is positive and the current return flips negative (or vice versa), fade it.",
        module="strategies.mean_reversion_returns",
        cls="MeanReversionReturns",
        params=[
            ParamSpec("lookback","int",5,label="Lookback",help="Number of prior bars used to compute average return.",min=2,max=20,step=2),
            ParamSpec("long_only","bool",False,label="Long only",help="Ignore short entries."),
        ],
    ),
    StrategySurface(
        key="mcginley_baseline",
        name="McGinley Baseline",
        description="Trend flip when the close crosses the McGinley Dynamic line.",
        module="strategies.mcginley_baseline",
        cls="McGinleyBaseline",
        params=[
            ParamSpec("length","int",14,label="Length",help="McGinley Dynamic length (bars).",min=5,max=50,step=5),
        ],
    ),
]

def list_strategies() -> list[StrategySurface]:
    return list(_STRATEGIES)

def get_strategy(key_or_name: str) -> StrategySurface:
    needle = key_or_name.strip().lower()
    s = next((x for x in _STRATEGIES if x.key == needle or x.name.lower() == needle), None)
    if not s:
        raise KeyError(f"Unknown strategy '{key_or_name}'. Known: {[x.key for x in _STRATEGIES]}")
    return s
