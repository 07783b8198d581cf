"""
Numerical helpers shared by the model, fitter and forecast engine.

The optimizer driver repeats Nelder-Mead until the objective stops improving;
the remaining helpers cover covariance factors, multivariate normal draws and
the inverse-gamma penalty.
"""

from __future__ import annotations

import logging
import math
from typing import Sequence

import numpy as np
from numpy.linalg import LinAlgError, cholesky
from scipy.optimize import OptimizeResult, minimize

logger = logging.getLogger(__name__)


def enforce_symmetric(matrix: np.ndarray) -> np.ndarray:
    """
    Symmetric part ``0.5 * (matrix + matrix.T)`` of a square matrix.
    """
    return 0.5 * (matrix + matrix.T)


def psd_factor(omega: np.ndarray) -> np.ndarray:
    """
    Matrix ``L`` with ``L @ L.T == omega`` for a positive semi-definite input.

    Uses the Cholesky factor when it exists and falls back to the symmetric
    eigendecomposition (negative round-off eigenvalues set to zero) for
    singular matrices.
    """
    omega = enforce_symmetric(np.asarray(omega, dtype=float))
    try:
        return cholesky(omega)
    except LinAlgError:
        eigenvalues, eigenvectors = np.linalg.eigh(omega)
        if np.min(eigenvalues) < -1e-8 * max(1.0, float(np.max(np.abs(eigenvalues)))):
            raise
        return eigenvectors * np.sqrt(np.clip(eigenvalues, 0.0, None))


def draw_normal(
    mu: Sequence[float],
    omega: np.ndarray,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Draw a sample from a multivariate normal distribution.
    """
    mu = np.asarray(mu, dtype=float)
    return mu + psd_factor(omega) @ rng.standard_normal(mu.size)


def logdinvgamma(x: float, alpha: float, beta: float) -> float:
    """
    Log-density of the Inverse-Gamma distribution evaluated at `x`.
    """
    return alpha * math.log(beta) - math.lgamma(alpha) - (alpha + 1) * math.log(x) - (
        beta / x
    )


def log_variance_prior(variances: Sequence[float], shape: float, scale: float) -> float:
    """
    Sum of independent inverse-gamma log-densities over variance components.
    """
    return float(sum(logdinvgamma(float(v), shape, scale) for v in variances))


def log_uniform_starts(
    rng: np.random.Generator,
    rep: int,
    dim: int,
    low: float,
    high: float,
) -> np.ndarray:
    """
    ``rep`` starting points of dimension ``dim``, uniform on ``[log(low), log(high)]``.
    """
    return rng.uniform(math.log(low), math.log(high), size=(rep, dim))


def get_optim(
    theta: Sequence[float],
    obj,
    *,
    args: Sequence | None = None,
    maxiter: int = 5000,
    simplex_step: float = 1.0,
    tol: float = 0.1,
    max_passes: int = 10,
) -> OptimizeResult:
    """
    Repeated Nelder-Mead passes until the objective stops improving.

    Each pass restarts the simplex around the best point found so far, which
    guards against the premature collapse Nelder-Mead is prone to on flat
    likelihood surfaces.  The returned result carries the totals over all
    passes.  A pass that fails to converge ends the loop; ``success`` is true
    when any earlier pass converged, and ``x`` is the best converged point.
    """
    args = tuple(args or ())
    theta = np.asarray(theta, dtype=float).reshape(-1)
    dim = theta.size

    def wrapped(x):
        return float(obj(x, *args))

    current_theta = theta
    current_val = wrapped(theta)
    improvement = -np.inf
    nit = 0
    nfev = 1
    passes = 0
    converged = False
    message = "no Nelder-Mead pass was run"
    while improvement < -tol and passes < max_passes:
        simplex = np.vstack([current_theta, current_theta + simplex_step * np.eye(dim)])
        res = minimize(
            wrapped,
            current_theta,
            method="Nelder-Mead",
            options={
                "maxiter": maxiter,
                "initial_simplex": simplex,
                "xatol": 1e-6,
                "fatol": 1e-8,
                "disp": False,
            },
        )
        passes += 1
        nit += int(res.nit)
        nfev += int(res.nfev)
        message = str(res.message)
        if not res.success:
            if converged:
                logger.debug("Refinement pass %d did not converge: %s", passes, message)
            break
        converged = True
        improvement = res.fun - current_val
        if res.fun < current_val:
            current_val = float(res.fun)
            current_theta = np.asarray(res.x, dtype=float)

    return OptimizeResult(
        x=current_theta,
        fun=current_val,
        success=converged,
        message=message,
        nit=nit,
        nfev=nfev,
        passes=passes,
    )
