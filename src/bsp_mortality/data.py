"""
Loading, rate construction and synthetic data for the BSP mortality model.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd

from .basis import build_age_basis
from .kernels import CorrelationKernel, correlation_matrix, matern_kernel
from .model import BSPParameters, local_trend_transition
from .state_space import StateSpace

logger = logging.getLogger(__name__)

DATA_ROOT = Path("data")


def _load_csv(path: Path, **kwargs) -> pd.DataFrame:
    if not path.exists():
        raise FileNotFoundError(f"Expected data file missing: {path}")
    return pd.read_csv(path, **kwargs)


def load_matrix(path: Path | str, index_col: int | str = 0) -> pd.DataFrame:
    """
    Read a year-by-age matrix (deaths or exposures) from CSV.

    The first column holds the years and the header the ages.  Blank cells
    and ``"."`` are read as missing.
    """
    frame = _load_csv(Path(path), index_col=index_col, na_values=["."])
    frame.index.name = "year"
    frame.columns.name = "age"
    try:
        frame.columns = frame.columns.astype(float)
    except (TypeError, ValueError):
        logger.debug("Age header of %s is not numeric; keeping labels.", path)
    frame = frame.apply(pd.to_numeric, errors="coerce")
    return frame.sort_index()


def make_rates(deaths, exposures):
    """
    Death rates ``deaths / exposures``.

    Cells with zero or missing exposure become NaN.  DataFrame inputs are
    aligned on their labels and a DataFrame is returned.
    """
    if isinstance(deaths, pd.DataFrame) or isinstance(exposures, pd.DataFrame):
        deaths_frame = pd.DataFrame(deaths)
        exposures_frame = pd.DataFrame(exposures)
        if deaths_frame.shape != exposures_frame.shape:
            raise ValueError(
                f"deaths {deaths_frame.shape} and exposures {exposures_frame.shape} differ in shape"
            )
        exposures_frame = exposures_frame.where(exposures_frame > 0)
        return deaths_frame / exposures_frame

    deaths = np.asarray(deaths, dtype=float)
    exposures = np.asarray(exposures, dtype=float)
    if deaths.shape != exposures.shape:
        raise ValueError(f"deaths {deaths.shape} and exposures {exposures.shape} differ in shape")
    rates = np.full(deaths.shape, np.nan)
    valid = np.isfinite(exposures) & (exposures > 0)
    rates[valid] = deaths[valid] / exposures[valid]
    return rates


def simulate_bsp(
    n_periods: int,
    ages: Sequence[float] | int,
    knots: Sequence[float],
    pars: BSPParameters,
    rng: np.random.Generator,
    kernel: CorrelationKernel = matern_kernel,
    delta: float = 1.0,
    level0: Sequence[float] | None = None,
    slope0: Sequence[float] | None = None,
    degree: int = 2,
):
    """
    Draw log-rates from the BSP local-trend model.

    The first state is fixed at ``(level0, slope0)``; when omitted the levels
    follow a declining log-mortality curve and the slopes are a common
    improvement of -0.02 per period.

    Returns
    -------
    rates : ndarray
        Death rates ``exp(y)`` with shape ``(n_periods, Z)``.
    states : ndarray
        Simulated (level, slope) states with shape ``(n_periods, 2(K+1))``.
    """
    basis = build_age_basis(ages, knots, degree)
    n_coef = basis.n_coef
    corr = correlation_matrix(basis.anchor_ages, kernel)
    if level0 is None:
        target = -6.0 + 0.08 * (basis.ages - basis.ages[0])
        level0, *_ = np.linalg.lstsq(basis.values, target, rcond=None)
    if slope0 is None:
        slope0 = np.full(n_coef, -0.02)
    a1 = np.concatenate([np.asarray(level0, dtype=float), np.asarray(slope0, dtype=float)])

    Z = np.hstack([basis.values, np.zeros((basis.n_ages, n_coef))])
    Q = np.zeros((2 * n_coef, 2 * n_coef))
    Q[:n_coef, :n_coef] = pars.sigma2_u * corr
    Q[n_coef:, n_coef:] = pars.sigma2_a * np.eye(n_coef)
    system = StateSpace(
        Z=Z,
        H=pars.sigma2_e * np.eye(basis.n_ages),
        T=local_trend_transition(n_coef, pars.lam * delta),
        Q=Q,
        a1=a1,
        P1=np.zeros((2 * n_coef, 2 * n_coef)),
    )
    states, y = system.simulate(n_periods, rng)
    return np.exp(y), states


def stack_forecasts(frames: Sequence[pd.DataFrame], **labels) -> pd.DataFrame:
    """
    Concatenate forecast tables and attach constant label columns.
    """
    if not frames:
        columns = ["t", "age", "h_ahead", "fit", "lwr", "upr", *labels]
        return pd.DataFrame(columns=columns)
    result = pd.concat(frames, ignore_index=True)
    for name, value in labels.items():
        result[name] = value
    return result
