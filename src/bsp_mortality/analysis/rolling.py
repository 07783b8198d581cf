"""
Expanding-window forecasting experiment.

For every training length ``t`` in ``train..T-horizon`` the BSP model is fit on
the first ``t`` years and forecast ``horizon`` years ahead.  The forecasts are
stacked into one table so they can be scored against the held-out years.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from .. import data as data_module
from ..config import ForecastConfig, OptimizerConfig, PriorConfig
from ..exceptions import BSPError
from ..fit import as_generator
from ..forecast import fit_and_forecast
from ..kernels import CorrelationKernel, matern_kernel
from ..model import bsp_model

logger = logging.getLogger(__name__)


def training_lengths(n_periods: int, train: int, horizon: int) -> range:
    if train < 2:
        raise ValueError(f"train ({train}) must be at least 2")
    if horizon < 1:
        raise ValueError(f"horizon ({horizon}) must be at least 1")
    if train > n_periods - horizon:
        raise ValueError(
            f"train ({train}) + horizon ({horizon}) exceeds the {n_periods} available periods"
        )
    return range(train, n_periods - horizon + 1)


def rolling_forecasts(
    deaths,
    exposures,
    knots: Sequence[float],
    train: int,
    horizon: int,
    window: int = 25,
    rep: int = 5,
    method: str = "plugin",
    kernel: CorrelationKernel = matern_kernel,
    delta: float = 1.0,
    ages: Optional[Sequence[float]] = None,
    seed=None,
    max_workers: int = 1,
    optimizer: Optional[OptimizerConfig] = None,
    prior: Optional[PriorConfig] = None,
    config: Optional[ForecastConfig] = None,
    skip_failures: bool = False,
    **labels,
) -> pd.DataFrame:
    """
    Fit and forecast on expanding training samples.

    Parameters
    ----------
    deaths, exposures:
        ``(T, Z)`` matrices, years in rows.  DataFrames contribute their
        age header when ``ages`` is not given.
    knots:
        Interior knots of the age basis.
    train:
        Length of the first training sample.
    horizon:
        Forecast steps for every sample.
    window:
        Drift window; shortened to the training length when longer.
    skip_failures:
        Log and skip training samples whose fit or forecast fails instead of
        raising.
    labels:
        Constant columns added to the output (e.g. ``country="ITA"``).

    Returns
    -------
    DataFrame
        Columns ``t, age, h_ahead, fit, lwr, upr`` plus the label columns,
        where ``t`` is the number of training years.
    """
    rates = data_module.make_rates(deaths, exposures)
    if ages is None and isinstance(rates, pd.DataFrame):
        try:
            ages = rates.columns.to_numpy(dtype=float)
        except (TypeError, ValueError):
            ages = None
    rates = np.asarray(rates, dtype=float)
    lengths = training_lengths(rates.shape[0], train, horizon)
    rng = as_generator(seed)
    full = bsp_model(rates, knots, kernel=kernel, delta=delta, ages=ages)

    frames = []
    for t in lengths:
        logger.info("Training on %d years, forecasting %d ahead.", t, horizon)
        try:
            model = full.with_data(rates[:t])
            result = fit_and_forecast(
                model,
                horizon=horizon,
                rep=rep,
                window=min(window, t),
                method=method,
                seed=rng,
                max_workers=max_workers,
                optimizer=optimizer,
                prior=prior,
                config=config,
            )
        except BSPError as exc:
            if not skip_failures:
                raise
            logger.warning("Skipping training length %d: %s", t, exc)
            continue
        frame = result.forecast.to_frame()
        frame.insert(0, "t", t)
        frames.append(frame)
    return data_module.stack_forecasts(frames, **labels)
