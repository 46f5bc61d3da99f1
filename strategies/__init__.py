from .base import BaseStrategy, RiskSettings, RISK_PARAMS
from .sma_crossover import SmaCrossover, SmaCrossoverSettings
from .mean_reversion_returns import MeanReversionReturns, MeanReversionReturnsSettings
from .mcginley_baseline import McGinleyBaseline, McGinleySettings
