from __future__ import annotations

from typing import Sequence

import numpy as np

from .models import Quote

def closes(quotes: Sequence[Quote]) -> np.ndarray:
    return np.fromiter((q.close for q in quotes), dtype=float, count=len(quotes))

def sma_at(values: np.ndarray, index: int, period: int) -> float:
    """Simple moving average of ``values[index-period+1 : index+1]``; NaN if not enough data."""
    if period < 1 or index < period - 1 or index >= len(values):
        return float("nan")
    return float(values[index - period + 1:index + 1].sum() / period)

def atr(quotes: Sequence[Quote], index: int, length: int) -> float:
    """Average true range over ``length`` bars ending at ``index`` (0 when history is short)."""
    if index < length or length < 1:
        return 0.0
    total = 0.0
    for i in range(index - length + 1, index + 1):
        cur, prev = quotes[i], quotes[i - 1]
        total += max(cur.high - cur.low, abs(cur.high - prev.close), abs(cur.low - prev.close))
    return total / length

def mcginley(values: np.ndarray, length: int) -> np.ndarray:
    """McGinley Dynamic by forward iteration.

    Seeded with the simple mean of the first ``length`` values, then
    md[i] = md[i-1] + (x - md[i-1]) / (length * (x / md[i-1]) ** 4).
    Entries before the seed are the running mean of the values seen so far.
    """
    n = len(values)
    out = np.empty(n, dtype=float)
    if n == 0:
        return out
    if length < 1:
        raise ValueError(f"length must be >= 1 (got {length})")
    seed_end = min(length, n)
    out[:seed_end] = np.cumsum(values[:seed_end]) / np.arange(1, seed_end + 1)
    md = out[seed_end - 1]
    for i in range(seed_end, n):
        x = values[i]
        if md != 0:
            md = md + (x - md) / (length * (x / md) ** 4)
        out[i] = md
    return out
