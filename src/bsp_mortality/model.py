"""
BSP state space model: spline coefficients of log-mortality over age, each
following a local linear trend with kernel-correlated level innovations.

State vector (length ``2 (K + 1)``)::

    [level_0, ..., level_K, slope_0, ..., slope_K]

    level_t = level_t-1 + lam * delta * slope_t-1 + u_t,   u_t ~ N(0, sigma2_u C)
    slope_t = slope_t-1 + a_t,                             a_t ~ N(0, sigma2_a I)
    y_t     = Z_map level_t + e_t,                         e_t ~ N(0, sigma2_e I)

where ``C`` is the kernel correlation of the coefficients' anchor ages.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from scipy import linalg

from .basis import AgeBasis, build_age_basis
from .config import INIT_VARIANCE
from .kernels import CorrelationKernel, correlation_matrix, innovation_covariance, matern_kernel
from .state_space import StateSpace

logger = logging.getLogger(__name__)

PARAMETER_NAMES = ("lam", "sigma2_u", "sigma2_a", "sigma2_e")


@dataclass(frozen=True)
class BSPParameters:
    lam: float
    sigma2_u: float
    sigma2_a: float
    sigma2_e: float

    @property
    def variances(self) -> tuple[float, float, float]:
        return (self.sigma2_u, self.sigma2_a, self.sigma2_e)

    def as_dict(self) -> dict[str, float]:
        return {name: float(getattr(self, name)) for name in PARAMETER_NAMES}


def theta2pars(theta: Sequence[float]) -> BSPParameters:
    theta = np.asarray(theta, dtype=float).reshape(-1)
    if theta.size != len(PARAMETER_NAMES):
        raise ValueError(f"theta length {theta.size} does not match expected {len(PARAMETER_NAMES)}")
    return BSPParameters(*(math.exp(x) for x in theta))


def pars2theta(pars: BSPParameters) -> np.ndarray:
    return np.array([math.log(getattr(pars, name)) for name in PARAMETER_NAMES])


def local_trend_transition(n_coef: int, scale: float) -> np.ndarray:
    """
    Block transition ``[[I, scale I], [0, I]]`` of stacked (level, slope) states.
    """
    eye = np.eye(n_coef)
    zero = np.zeros((n_coef, n_coef))
    return np.block([[eye, scale * eye], [zero, eye]])


def log_rates(rates) -> np.ndarray:
    """
    Log of a rate matrix with non-positive or non-finite rates set to NaN.
    """
    rates = np.asarray(rates, dtype=float)
    out = np.full(rates.shape, np.nan)
    valid = np.isfinite(rates) & (rates > 0)
    out[valid] = np.log(rates[valid])
    return out


@dataclass(frozen=True)
class BSPModel:
    """
    Model skeleton: data, basis and kernel, with hyperparameters left open.

    Attributes
    ----------
    y:
        Log-rates ``(T, Z)``; NaN marks missing cells.
    basis:
        Age basis; ``basis.values`` is the observation map ``Z_map``.
    kernel:
        Correlation kernel over anchor-age distances.
    delta:
        Elapsed time per step.
    corr:
        Kernel correlation matrix of the coefficients ``(K + 1, K + 1)``.
    a1:
        Initial state mean.
    """

    y: np.ndarray
    basis: AgeBasis
    kernel: CorrelationKernel
    delta: float
    corr: np.ndarray
    a1: np.ndarray

    @property
    def n_coef(self) -> int:
        return self.basis.n_coef

    @property
    def n_states(self) -> int:
        return 2 * self.basis.n_coef

    @property
    def n_periods(self) -> int:
        return int(self.y.shape[0])

    @property
    def Z_map(self) -> np.ndarray:
        return self.basis.values

    def level_index(self) -> slice:
        return slice(0, self.n_coef)

    def slope_index(self) -> slice:
        return slice(self.n_coef, 2 * self.n_coef)

    def transition(self, lam: float) -> np.ndarray:
        return local_trend_transition(self.n_coef, lam * self.delta)

    def level_covariance(self, sigma2_u: float) -> np.ndarray:
        return innovation_covariance(sigma2_u, self.corr)

    def system(self, pars: BSPParameters) -> StateSpace:
        """
        State space system with the hyperparameters plugged in.
        """
        k1 = self.n_coef
        Z = np.hstack([self.Z_map, np.zeros((self.basis.n_ages, k1))])
        H = pars.sigma2_e * np.eye(self.basis.n_ages)
        Q = linalg.block_diag(self.level_covariance(pars.sigma2_u), pars.sigma2_a * np.eye(k1))
        P1 = INIT_VARIANCE * np.eye(self.n_states)
        return StateSpace(Z=Z, H=H, T=self.transition(pars.lam), Q=Q, a1=self.a1, P1=P1)

    def loglik(self, pars: BSPParameters) -> float:
        return self.system(pars).loglik(self.y)

    def with_data(self, rates) -> "BSPModel":
        """
        Same basis, kernel and time step on a different rate matrix.
        """
        return _assemble(rates, self.basis, self.kernel, self.delta, self.corr)


def _initial_levels(y: np.ndarray, Z_map: np.ndarray) -> np.ndarray:
    n_coef = Z_map.shape[1]
    for row in y:
        obs = np.isfinite(row)
        if obs.sum() >= n_coef:
            coef, *_ = np.linalg.lstsq(Z_map[obs], row[obs], rcond=None)
            return coef
    logger.debug("No year observes enough ages for a projection; starting levels at zero.")
    return np.zeros(n_coef)


def _assemble(rates, basis: AgeBasis, kernel, delta: float, corr: np.ndarray) -> BSPModel:
    rates = np.asarray(rates, dtype=float)
    if rates.ndim != 2:
        raise ValueError(f"rates must be a (T, Z) matrix, got shape {rates.shape}")
    if rates.shape[0] < 2:
        raise ValueError("at least two time periods are required")
    if rates.shape[1] != basis.n_ages:
        raise ValueError(
            f"rates have {rates.shape[1]} age columns but the basis covers {basis.n_ages} ages"
        )
    y = log_rates(rates)
    if not np.isfinite(y).any():
        raise ValueError("rates contain no positive finite observations")
    y.setflags(write=False)
    levels = _initial_levels(y, basis.values)
    a1 = np.concatenate([levels, np.zeros(basis.n_coef)])
    return BSPModel(y=y, basis=basis, kernel=kernel, delta=float(delta), corr=corr, a1=a1)


def bsp_model(
    rates,
    knots: Sequence[float],
    kernel: CorrelationKernel = matern_kernel,
    delta: float = 1.0,
    ages: Sequence[float] | int | None = None,
    degree: int = 2,
) -> BSPModel:
    """
    Build the BSP model skeleton from a ``(T, Z)`` rate matrix.

    Parameters
    ----------
    rates:
        Death rates (deaths over exposures), years in rows and ages in columns.
    knots:
        Interior knots of the quadratic age basis.
    kernel:
        Correlation kernel over anchor-age distances.
    delta:
        Elapsed time per step (1 for annual data).
    ages:
        Age grid; defaults to ``1..Z``.
    degree:
        Spline degree.
    """
    if delta <= 0:
        raise ValueError(f"delta ({delta}) must be positive")
    rates = np.asarray(rates, dtype=float)
    if rates.ndim != 2:
        raise ValueError(f"rates must be a (T, Z) matrix, got shape {rates.shape}")
    if ages is None:
        ages = rates.shape[1]
    basis = build_age_basis(ages, knots, degree)
    corr = correlation_matrix(basis.anchor_ages, kernel)
    corr.setflags(write=False)
    model = _assemble(rates, basis, kernel, delta, corr)
    logger.debug(
        "BSP model: %d periods, %d ages, %d coefficients.",
        model.n_periods,
        basis.n_ages,
        basis.n_coef,
    )
    return model


__all__ = [
    "BSPModel",
    "BSPParameters",
    "PARAMETER_NAMES",
    "bsp_model",
    "local_trend_transition",
    "log_rates",
    "pars2theta",
    "theta2pars",
]
