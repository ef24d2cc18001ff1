"""Indicator computation over close-price series.

All functions are pure: the full series goes in, a series of the same length
comes out, with NaN where the indicator is not yet defined.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

import numpy as np
import pandas as pd  # type: ignore[import-untyped]

PriceInput = Sequence[float] | pd.Series


def ema(prices: PriceInput, period: int) -> pd.Series:
    """Exponential moving average seeded with the SMA of the first `period` values."""
    series = _as_series(prices)
    _check_period(period)
    result = pd.Series(np.nan, index=series.index, dtype=float)
    if len(series) < period:
        return result

    seed = float(series.iloc[:period].mean())
    tail = series.iloc[period - 1 :].copy()
    tail.iloc[0] = seed
    # adjust=False gives ema[i] = (p[i] - ema[i-1]) * 2/(period+1) + ema[i-1]
    result.iloc[period - 1 :] = tail.ewm(span=period, adjust=False).mean().to_numpy()
    return result


def sma(prices: PriceInput, period: int) -> pd.Series:
    """Simple moving average over a trailing window."""
    series = _as_series(prices)
    _check_period(period)
    return series.rolling(window=period, min_periods=period).mean()


def rsi(prices: PriceInput, period: int = 14) -> pd.Series:
    """RSI from plain averages of the trailing `period` gains and losses.

    A window with no losses yields exactly 100.
    """
    series = _as_series(prices)
    _check_period(period)
    diffs = series.diff()
    gains = diffs.clip(lower=0.0)
    losses = (-diffs).clip(lower=0.0)
    avg_gain = gains.rolling(window=period, min_periods=period).mean()
    avg_loss = losses.rolling(window=period, min_periods=period).mean()

    rs = avg_gain / avg_loss.where(avg_loss != 0)
    values = 100.0 - 100.0 / (1.0 + rs)
    return values.mask(avg_loss == 0, 100.0)


def latest_indicators(closes: PriceInput) -> dict[str, float | None]:
    """Snapshot of the latest common indicator values; None where undefined."""
    series = _as_series(closes)
    if series.empty:
        raise ValueError("input_prices_empty")
    return {
        "price": float(series.iloc[-1]),
        "ema20": _last(ema(series, 20)),
        "ema50": _last(ema(series, 50)),
        "sma20": _last(sma(series, 20)),
        "rsi14": _last(rsi(series, 14)),
    }


def _as_series(prices: PriceInput) -> pd.Series:
    if isinstance(prices, pd.Series):
        return prices.astype(float).reset_index(drop=True)
    return pd.Series(list(prices), dtype=float)


def _check_period(period: int) -> None:
    if period < 1:
        raise ValueError("period_must_be_positive")


def _last(series: pd.Series) -> float | None:
    if series.empty:
        return None
    value = float(series.iloc[-1])
    return None if math.isnan(value) else value
