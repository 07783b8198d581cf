"""
Extrapolation of the smoothed BSP coefficients with a random walk plus drift.

Two forecasters share one interface, ``forecaster.forecast(fit, smoothing,
window, horizon) -> ForecastResult``:

* ``PlugInForecaster`` fixes the drift at the median smoothed slope of the
  last ``window`` periods, estimates the level innovation variance on the
  smoothed levels and accumulates the forecast variance additively.
* ``SimulationForecaster`` draws posterior state paths, fits a secondary
  model in which the drift itself is a random walk, and propagates the
  uncertainty of level and drift through the stacked transition matrix.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, NamedTuple, Optional, Protocol, Tuple

import numpy as np
import pandas as pd
from scipy import linalg
from scipy.stats import multivariate_normal, norm

from .config import C_PENAL, INIT_VARIANCE, ForecastConfig, OptimizerConfig, PriorConfig
from .fit import FitResult, as_generator, fit_bsp, run_restarts, select_best
from .model import BSPModel, local_trend_transition
from .smoothing import SmoothingDistribution, smooth
from .state_space import StateSpace
from .util import enforce_symmetric, log_uniform_starts, log_variance_prior

logger = logging.getLogger(__name__)

MIN_VARIANCE_WINDOW = 2


@dataclass(frozen=True)
class ForecastResult:
    """
    Age-level forecasts for horizons ``1..h``.

    Attributes
    ----------
    mean:
        Point forecasts of the log-rates, shape ``(h, Z)``.
    variance:
        Forecast covariances across ages, shape ``(h, Z, Z)``.
    lower, upper:
        Pointwise interval bounds at ``level``, shape ``(h, Z)``.
    level:
        Confidence level of the intervals.
    ages:
        Age grid.
    coef_mean, coef_cov:
        Forecasts of the basis coefficients and their covariances.
    drift:
        Drift used for the first forecast step.
    hyperparameters:
        Variances estimated by the extrapolation model.
    method:
        Name of the forecaster.
    """

    mean: np.ndarray
    variance: np.ndarray
    lower: np.ndarray
    upper: np.ndarray
    level: float
    ages: np.ndarray
    coef_mean: np.ndarray
    coef_cov: np.ndarray
    drift: np.ndarray
    hyperparameters: Dict[str, float] = field(default_factory=dict)
    method: str = "plugin"

    @property
    def horizon(self) -> int:
        return int(self.mean.shape[0])

    @property
    def sd(self) -> np.ndarray:
        return np.sqrt(np.diagonal(self.variance, axis1=1, axis2=2))

    def to_frame(self) -> pd.DataFrame:
        """
        Long table with one row per age and horizon.
        """
        h, n_ages = self.mean.shape
        return pd.DataFrame(
            {
                "age": np.tile(self.ages, h),
                "h_ahead": np.repeat(np.arange(1, h + 1), n_ages),
                "fit": self.mean.ravel(),
                "lwr": self.lower.ravel(),
                "upr": self.upper.ravel(),
            }
        )


class Forecaster(Protocol):
    def forecast(
        self,
        fit: FitResult,
        smoothing: SmoothingDistribution,
        window: int,
        horizon: int,
    ) -> ForecastResult:
        ...


def _check_request(fit: FitResult, smoothing: SmoothingDistribution, window: int, horizon: int) -> None:
    n_periods = fit.model.n_periods
    if smoothing.n_periods != n_periods:
        raise ValueError(
            f"smoothing covers {smoothing.n_periods} periods but the fit has {n_periods}"
        )
    if not 1 <= window <= n_periods:
        raise ValueError(f"window ({window}) must be between 1 and {n_periods}")
    if horizon < 1:
        raise ValueError(f"horizon ({horizon}) must be at least 1")


def to_age_scale(
    coef_mean: np.ndarray,
    coef_cov: np.ndarray,
    Z_map: np.ndarray,
    sigma2_e: float,
    level: float,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Map coefficient forecasts to log-rates with pointwise normal intervals.
    """
    mean = coef_mean @ Z_map.T
    variance = sigma2_e * np.eye(Z_map.shape[0]) + np.einsum(
        "ij,tjk,lk->til", Z_map, coef_cov, Z_map
    )
    sd = np.sqrt(np.diagonal(variance, axis1=1, axis2=2))
    z = norm.ppf(0.5 + level / 2.0)
    return mean, variance, mean - z * sd, mean + z * sd


def propagate(
    mean: np.ndarray,
    cov: np.ndarray,
    transition: np.ndarray,
    innovation: np.ndarray,
    horizon: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    h-step predictive moments ``m_h = T m_h-1``, ``V_h = T V_h-1 T' + Q``.
    """
    m = mean.size
    means = np.zeros((horizon, m))
    covs = np.zeros((horizon, m, m))
    current_mean = np.asarray(mean, dtype=float)
    current_cov = np.asarray(cov, dtype=float)
    for h in range(horizon):
        current_mean = transition @ current_mean
        current_cov = enforce_symmetric(transition @ current_cov @ transition.T + innovation)
        means[h] = current_mean
        covs[h] = current_cov
    return means, covs


# ----------------------------------------------------------------------
# Plug-in drift
# ----------------------------------------------------------------------
def rwd_nll(
    theta: np.ndarray,
    levels: np.ndarray,
    mu0: np.ndarray,
    scale: float,
    drift: np.ndarray,
    corr: np.ndarray,
) -> float:
    """
    Negative log-likelihood of a random walk plus drift for the levels.

        level_1 ~ N(mu0, 10 I)
        level_t | level_t-1 ~ N(level_t-1 + scale * drift, sigma2 * corr)
    """
    try:
        sigma2 = math.exp(float(theta[0]))
        n_coef = levels.shape[1]
        llk = multivariate_normal.logpdf(levels[0], mean=mu0, cov=INIT_VARIANCE * np.eye(n_coef))
        if levels.shape[0] > 1:
            increments = levels[1:] - levels[:-1] - scale * drift
            llk += np.sum(
                multivariate_normal.logpdf(
                    increments, mean=np.zeros(n_coef), cov=sigma2 * corr
                )
            )
    except (ArithmeticError, ValueError):
        return C_PENAL
    value = -float(llk)
    return value if math.isfinite(value) else C_PENAL


def _secondary_config(config: ForecastConfig, optimizer: Optional[OptimizerConfig]) -> OptimizerConfig:
    optimizer = optimizer or OptimizerConfig()
    return dataclasses.replace(
        optimizer,
        rep=config.rep,
        start_low=config.start_low,
        start_high=config.start_high,
    )


class PlugInForecaster:
    """
    Random walk plus drift with the drift fixed at its point estimate.

    Parameters
    ----------
    config:
        Forecast settings (interval level, restarts, starting range).
    optimizer:
        Nelder-Mead settings and worker cap for the variance fit.
    seed:
        Seed or generator for the starting points.
    """

    method = "plugin"

    def __init__(
        self,
        config: Optional[ForecastConfig] = None,
        optimizer: Optional[OptimizerConfig] = None,
        seed=None,
    ) -> None:
        self.config = config or ForecastConfig()
        self.optimizer = _secondary_config(self.config, optimizer)
        self.rng = as_generator(seed)

    def forecast(
        self,
        fit: FitResult,
        smoothing: SmoothingDistribution,
        window: int,
        horizon: int,
    ) -> ForecastResult:
        _check_request(fit, smoothing, window, horizon)
        model = fit.model
        scale = fit.transition_scale
        levels = smoothing.level[-window:]
        drift = np.median(smoothing.slope[-window:], axis=0)

        # One level carries no increment, so the variance is fitted on the
        # last two periods while the point forecast keeps the requested window.
        fit_window = max(window, MIN_VARIANCE_WINDOW)
        if fit_window > smoothing.n_periods:
            raise ValueError(
                f"the level innovation variance needs at least {MIN_VARIANCE_WINDOW} "
                f"smoothed periods, got {smoothing.n_periods}"
            )
        if fit_window != window:
            logger.debug(
                "Window %d has no level increments; fitting sigma2_omega on the last %d periods.",
                window,
                fit_window,
            )
        fit_levels = smoothing.level[-fit_window:]

        starts = log_uniform_starts(
            self.rng, self.optimizer.rep, 1, self.optimizer.start_low, self.optimizer.start_high
        )
        outcomes = run_restarts(
            rwd_nll,
            starts,
            args=(fit_levels, fit_levels[0], scale, drift, model.corr),
            config=self.optimizer,
        )
        best = select_best(outcomes, "Random walk with drift fit")
        sigma2_omega = math.exp(float(best.theta[0]))
        W = sigma2_omega * model.corr

        P_last = smoothing.level_cov[-1]
        P_mean = smoothing.level_cov[-window:].mean(axis=0)
        n_coef = model.n_coef
        coef_mean = np.zeros((horizon, n_coef))
        coef_cov = np.zeros((horizon, n_coef, n_coef))
        current_mean = levels[-1]
        current_cov = P_last
        for h in range(horizon):
            current_mean = current_mean + scale * drift
            current_cov = current_cov + W + P_mean
            coef_mean[h] = current_mean
            coef_cov[h] = current_cov

        mean, variance, lower, upper = to_age_scale(
            coef_mean, coef_cov, model.Z_map, fit.pars.sigma2_e, self.config.level
        )
        logger.info(
            "Plug-in forecast: window=%d, horizon=%d, sigma2_omega=%.4g.",
            window,
            horizon,
            sigma2_omega,
        )
        return ForecastResult(
            mean=mean,
            variance=variance,
            lower=lower,
            upper=upper,
            level=self.config.level,
            ages=model.basis.ages,
            coef_mean=coef_mean,
            coef_cov=coef_cov,
            drift=drift,
            hyperparameters={"sigma2_omega": sigma2_omega},
            method=self.method,
        )


# ----------------------------------------------------------------------
# Simulated drift with its own random walk
# ----------------------------------------------------------------------
SECONDARY_NAMES = ("sigma2_omega", "sigma2_delta", "sigma2_psi")


def drift_system(
    theta: np.ndarray,
    a1: np.ndarray,
    P1: np.ndarray,
    scale: float,
    corr: np.ndarray,
) -> StateSpace:
    """
    Stacked (level, drift) model observed through noisy levels.

        level_t = level_t-1 + scale * drift_t-1 + omega_t,  omega_t ~ N(0, sigma2_omega corr)
        drift_t = drift_t-1 + eps_t,                      eps_t ~ N(0, sigma2_delta I)
        obs_t   = level_t + psi_t,                        psi_t ~ N(0, sigma2_psi I)
    """
    sigma2_omega, sigma2_delta, sigma2_psi = (math.exp(float(x)) for x in theta)
    n_coef = corr.shape[0]
    Z = np.hstack([np.eye(n_coef), np.zeros((n_coef, n_coef))])
    Q = linalg.block_diag(sigma2_omega * corr, sigma2_delta * np.eye(n_coef))
    return StateSpace(
        Z=Z,
        H=sigma2_psi * np.eye(n_coef),
        T=local_trend_transition(n_coef, scale),
        Q=Q,
        a1=a1,
        P1=P1,
    )


def drift_nll(
    theta: np.ndarray,
    obs: np.ndarray,
    a1: np.ndarray,
    P1: np.ndarray,
    scale: float,
    corr: np.ndarray,
    prior: PriorConfig,
) -> float:
    try:
        system = drift_system(theta, a1, P1, scale, corr)
        llk = system.loglik(obs)
        penalty = log_variance_prior(np.exp(theta), prior.shape, prior.scale)
    except (ArithmeticError, ValueError):
        return C_PENAL
    value = -llk - penalty
    return value if math.isfinite(value) else C_PENAL


class SimulationForecaster:
    """
    Random walk plus drift with a stochastic drift, fitted on posterior draws.

    Parameters
    ----------
    config:
        Forecast settings; ``nsim`` paths are drawn and the drift prior uses
        the ``lookback`` periods preceding the window.
    optimizer:
        Nelder-Mead settings and worker cap for the secondary fit.
    prior:
        Inverse-gamma penalty of the secondary variances.
    seed:
        Seed or generator for the posterior draws and the starting points.
    """

    method = "simulation"

    def __init__(
        self,
        config: Optional[ForecastConfig] = None,
        optimizer: Optional[OptimizerConfig] = None,
        prior: Optional[PriorConfig] = None,
        seed=None,
    ) -> None:
        self.config = config or ForecastConfig()
        self.optimizer = _secondary_config(self.config, optimizer)
        self.prior = prior or PriorConfig()
        self.rng = as_generator(seed)

    def drift_prior(self, slope_draws: np.ndarray, start: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        Mean and diagonal covariance of the drift before the window.

        Falls back to the window's own slopes when no earlier periods exist.
        """
        lookback_start = max(0, start - self.config.lookback)
        if lookback_start < start:
            sample = slope_draws[:, lookback_start:start, :]
        else:
            sample = slope_draws[:, start:, :]
        sample = sample.reshape(-1, sample.shape[-1])
        return sample.mean(axis=0), np.diag(sample.var(axis=0))

    def forecast(
        self,
        fit: FitResult,
        smoothing: SmoothingDistribution,
        window: int,
        horizon: int,
    ) -> ForecastResult:
        _check_request(fit, smoothing, window, horizon)
        model = fit.model
        scale = fit.transition_scale
        n_coef = model.n_coef
        start = model.n_periods - window

        draws = fit.system.simulate_posterior(model.y, self.config.nsim, self.rng)
        level_draws = draws[:, :, model.level_index()]
        slope_draws = draws[:, :, model.slope_index()]
        obs = level_draws[:, start:, :].mean(axis=0)
        drift_mean, drift_cov = self.drift_prior(slope_draws, start)

        a1 = np.concatenate([obs[0], drift_mean])
        P1 = linalg.block_diag(INIT_VARIANCE * np.eye(n_coef), drift_cov)
        starts = log_uniform_starts(
            self.rng, self.optimizer.rep, 3, self.optimizer.start_low, self.optimizer.start_high
        )
        outcomes = run_restarts(
            drift_nll,
            starts,
            args=(obs, a1, P1, scale, model.corr, self.prior),
            config=self.optimizer,
        )
        best = select_best(outcomes, "Stochastic drift fit")
        system = drift_system(best.theta, a1, P1, scale, model.corr)
        alpha, smoother_out, _ = system.smooth(obs)

        state_mean, state_cov = propagate(
            alpha[-1], smoother_out["V"][-1], system.T, system.Q, horizon
        )
        lvl = slice(0, n_coef)
        coef_mean = state_mean[:, lvl]
        coef_cov = state_cov[:, lvl, lvl]
        mean, variance, lower, upper = to_age_scale(
            coef_mean, coef_cov, model.Z_map, fit.pars.sigma2_e, self.config.level
        )
        hyperparameters = {
            name: math.exp(float(x)) for name, x in zip(SECONDARY_NAMES, best.theta)
        }
        logger.info(
            "Simulation forecast: window=%d, horizon=%d, nsim=%d, %s.",
            window,
            horizon,
            self.config.nsim,
            ", ".join(f"{k}={v:.4g}" for k, v in hyperparameters.items()),
        )
        return ForecastResult(
            mean=mean,
            variance=variance,
            lower=lower,
            upper=upper,
            level=self.config.level,
            ages=model.basis.ages,
            coef_mean=coef_mean,
            coef_cov=coef_cov,
            drift=alpha[-1, n_coef:],
            hyperparameters=hyperparameters,
            method=self.method,
        )


FORECASTERS = {
    PlugInForecaster.method: PlugInForecaster,
    SimulationForecaster.method: SimulationForecaster,
}


def make_forecaster(method: str = "plugin", **options) -> Forecaster:
    try:
        cls = FORECASTERS[method]
    except KeyError:
        raise ValueError(
            f"unknown forecast method {method!r}; choose from {sorted(FORECASTERS)}"
        ) from None
    return cls(**options)


def forecast(
    fit: FitResult,
    smoothing: SmoothingDistribution,
    window: int,
    horizon: int,
    method: str = "plugin",
    **options,
) -> ForecastResult:
    """
    Forecast ``horizon`` steps ahead from the last ``window`` smoothed periods.

    ``options`` are passed to the forecaster (``config``, ``optimizer``,
    ``seed`` and, for the simulation variant, ``prior``).
    """
    return make_forecaster(method, **options).forecast(fit, smoothing, window, horizon)


class FitAndForecast(NamedTuple):
    fit: FitResult
    smoothing: SmoothingDistribution
    forecast: ForecastResult


def fit_and_forecast(
    model: BSPModel,
    horizon: int,
    rep: int,
    window: int,
    method: str = "plugin",
    seed=None,
    max_workers: int = 1,
    optimizer: Optional[OptimizerConfig] = None,
    prior: Optional[PriorConfig] = None,
    config: Optional[ForecastConfig] = None,
) -> FitAndForecast:
    """
    Fit the BSP model, smooth it and forecast ``horizon`` steps ahead.

    One generator, created from ``seed``, feeds the fit and the forecast so
    the whole pipeline is reproducible.
    """
    rng = as_generator(seed)
    optimizer = optimizer or OptimizerConfig()
    optimizer = dataclasses.replace(optimizer, max_workers=max_workers)
    fit = fit_bsp(model, rep=rep, seed=rng, config=optimizer, prior=prior)
    smoothing = smooth(fit)
    options = {"config": config, "optimizer": optimizer, "seed": rng}
    if method == SimulationForecaster.method:
        options["prior"] = prior
    result = forecast(fit, smoothing, window, horizon, method=method, **options)
    return FitAndForecast(fit=fit, smoothing=smoothing, forecast=result)


__all__ = [
    "FORECASTERS",
    "FitAndForecast",
    "ForecastResult",
    "Forecaster",
    "PlugInForecaster",
    "SimulationForecaster",
    "drift_nll",
    "drift_system",
    "fit_and_forecast",
    "forecast",
    "make_forecaster",
    "propagate",
    "rwd_nll",
    "to_age_scale",
]
