"""
Scoring of expanding-window forecasts against the held-out years.
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.tsa.stattools import acf

from ..model import log_rates

logger = logging.getLogger(__name__)


@dataclass
class DMTestResult:
    statistic: float
    pvalue: float
    alternative: str
    df: int
    horizon: int
    power: int


def forecast_errors(frame: pd.DataFrame, rates, ages: Sequence[float] | None = None) -> pd.DataFrame:
    """
    Attach realized log-rates, errors and interval coverage to a rolling table.

    A row with training length ``t`` and step ``h_ahead`` is scored against
    row ``t + h_ahead - 1`` (zero-based) of ``rates``.  Forecasts that run past
    the sample or hit a missing cell get NaN errors.
    """
    y = log_rates(rates)
    if ages is None:
        ages = np.arange(1, y.shape[1] + 1, dtype=float)
    column = {float(age): j for j, age in enumerate(ages)}

    rows = frame["t"].to_numpy(dtype=int) + frame["h_ahead"].to_numpy(dtype=int) - 1
    cols = np.array([column.get(float(age), -1) for age in frame["age"]])
    observed = np.full(len(frame), np.nan)
    valid = (rows < y.shape[0]) & (cols >= 0)
    observed[valid] = y[rows[valid], cols[valid]]

    out = frame.copy()
    out["observed"] = observed
    out["error"] = observed - out["fit"]
    inside = (observed >= out["lwr"].to_numpy()) & (observed <= out["upr"].to_numpy())
    out["covered"] = np.where(np.isnan(observed), np.nan, inside.astype(float))
    return out


def summarize_errors(errors: pd.DataFrame, by: str | Sequence[str] = "h_ahead") -> pd.DataFrame:
    """
    RMSE, MAE and empirical interval coverage per group.
    """
    scored = errors.dropna(subset=["error"])
    grouped = scored.groupby(by)
    return pd.DataFrame(
        {
            "rmse": grouped["error"].apply(lambda e: math.sqrt(np.mean(np.square(e)))),
            "mae": grouped["error"].apply(lambda e: float(np.mean(np.abs(e)))),
            "coverage": grouped["covered"].mean(),
            "n": grouped["error"].size(),
        }
    )


def _autocovariances(d: np.ndarray, lag_max: int) -> np.ndarray:
    return acf(d, nlags=lag_max, fft=False, adjusted=False) * np.var(d)


def dm_test(
    e1: Sequence[float],
    e2: Sequence[float],
    *,
    alternative: str = "two.sided",
    h: int = 1,
    power: int = 2,
) -> DMTestResult:
    """
    Diebold-Mariano test of equal accuracy with the Harvey-Leybourne-Newbold
    small-sample correction.

    ``alternative="less"`` tests whether the first forecast is more accurate.
    """
    if alternative not in {"two.sided", "less", "greater"}:
        raise ValueError("alternative must be 'two.sided', 'less', or 'greater'")
    if h < 1:
        raise ValueError(f"h ({h}) must be at least 1")

    d = np.abs(np.asarray(e1, dtype=float)) ** power - np.abs(np.asarray(e2, dtype=float)) ** power
    d = d[np.isfinite(d)]
    n = d.size
    if n < 2:
        raise ValueError("at least two paired errors are required")

    gamma = _autocovariances(d, h - 1)
    dv = (gamma[0] + 2.0 * np.sum(gamma[1:])) / n
    if dv <= 0:
        if h == 1:
            raise ValueError("Variance of the loss differential is zero")
        warnings.warn(
            f"Long-run variance for h = {h} is non-positive; retrying with h = {h - 1}",
            RuntimeWarning,
        )
        return dm_test(e1, e2, alternative=alternative, h=h - 1, power=power)

    correction = math.sqrt((n + 1 - 2 * h + h * (h - 1) / n) / n)
    statistic = correction * float(np.mean(d)) / math.sqrt(dv)
    df = n - 1
    if alternative == "two.sided":
        pvalue = 2.0 * stats.t.sf(abs(statistic), df=df)
    elif alternative == "less":
        pvalue = stats.t.cdf(statistic, df=df)
    else:
        pvalue = stats.t.sf(statistic, df=df)
    return DMTestResult(
        statistic=statistic,
        pvalue=float(pvalue),
        alternative=alternative,
        df=df,
        horizon=h,
        power=power,
    )


def compare_methods(first: pd.DataFrame, second: pd.DataFrame, power: int = 2) -> pd.DataFrame:
    """
    Diebold-Mariano comparison of two scored tables, one test per horizon.

    Rows are paired on ``(t, age, h_ahead)``; a negative statistic favours
    ``first``.
    """
    keys = ["t", "age", "h_ahead"]
    paired = first[keys + ["error"]].merge(
        second[keys + ["error"]], on=keys, suffixes=("_first", "_second")
    )
    records = []
    for h, group in paired.groupby("h_ahead"):
        result = dm_test(group["error_first"], group["error_second"], h=int(h), power=power)
        records.append(
            {"h_ahead": h, "statistic": result.statistic, "pvalue": result.pvalue, "n": len(group)}
        )
    logger.info("Compared forecasts over %d horizons.", len(records))
    return pd.DataFrame.from_records(records, columns=["h_ahead", "statistic", "pvalue", "n"])
