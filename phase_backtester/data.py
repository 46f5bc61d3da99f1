from __future__ import annotations

from pathlib import Path

import pandas as pd
from loguru import logger

from .models import Quote

PRICE_COLUMNS = ("open", "high", "low", "close")
TIME_ALIASES = ("time", "timestamp", "date", "datetime")

def _time_column(columns: list[str]) -> str:
    for alias in TIME_ALIASES:
        if alias in columns:
            return alias
    raise ValueError(f"No time column (one of {list(TIME_ALIASES)}). Present: {columns}")

def load_csv_ohlcv(path: str | Path, tz: str | None = "UTC") -> pd.DataFrame:
    """Read a bar CSV into a frame with columns time/open/high/low/close/volume.

    Headers match case-insensitively and the time column may be named
    time, timestamp, date or datetime. Rows come back in time order; on
    duplicate timestamps the last row wins. ``tz=None`` gives naive times.
    """
    path = Path(path)
    df = pd.read_csv(path)
    df.columns = [str(c).strip().lower() for c in df.columns]
    columns = list(df.columns)
    missing = [c for c in PRICE_COLUMNS if c not in columns]
    if missing:
        raise ValueError(f"{path.name}: missing price column(s) {missing}. Present: {columns}")

    times = pd.to_datetime(df[_time_column(columns)], utc=True)
    bars = pd.DataFrame({
        "time": times.dt.tz_convert(tz) if tz else times.dt.tz_localize(None),
        **{c: df[c].astype(float) for c in PRICE_COLUMNS},
        "volume": df["volume"].astype(float) if "volume" in columns else 0.0,
    })
    bars = bars.sort_values("time", kind="stable")
    dup = bars["time"].duplicated(keep="last")
    if dup.any():
        logger.warning(f"{path.name}: dropping {int(dup.sum())} rows with duplicate timestamps")
        bars = bars.loc[~dup]
    logger.debug(f"Loaded {len(bars)} bars from {path}")
    return bars.reset_index(drop=True)

def quotes_from_frame(df: pd.DataFrame) -> tuple[Quote, ...]:
    """Normalized frame -> immutable quote sequence. Times must be strictly increasing."""
    missing = [c for c in ("time",) + PRICE_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Missing column(s) {missing}. Present: {list(df.columns)}")
    t = pd.to_datetime(df["time"])
    if len(t) > 1 and not (t.diff().iloc[1:] > pd.Timedelta(0)).all():
        raise ValueError("Quote times must be strictly increasing.")
    vol = df["volume"] if "volume" in df.columns else pd.Series(0.0, index=df.index)
    return tuple(
        Quote(time=ts, open=float(o), high=float(h), low=float(l), close=float(c), volume=float(v))
        for ts, o, h, l, c, v in zip(t, df["open"], df["high"], df["low"], df["close"], vol)
    )

def load_quotes(path: str | Path, tz: str | None = "UTC") -> tuple[Quote, ...]:
    """CSV file straight to the quote tuple the engine consumes."""
    return quotes_from_frame(load_csv_ohlcv(path, tz))
