"""
Posterior (smoothed) moments of the BSP states and of the fitted log-rates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .fit import FitResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SmoothingDistribution:
    """
    Smoothed moments for every period of the fit.

    Attributes
    ----------
    level, slope:
        Coefficient levels and slopes, shape ``(T, K + 1)``.
    level_cov, slope_cov:
        Their covariances, shape ``(T, K + 1, K + 1)``.
    state_cov:
        Covariance of the stacked (level, slope) state, ``(T, 2(K+1), 2(K+1))``.
    signal, signal_var:
        Fitted log-rates ``Z_map level_t`` with shape ``(T, Z)`` and their
        covariances ``(T, Z, Z)``.
    """

    level: np.ndarray
    slope: np.ndarray
    level_cov: np.ndarray
    slope_cov: np.ndarray
    state_cov: np.ndarray
    signal: np.ndarray
    signal_var: np.ndarray

    @property
    def n_periods(self) -> int:
        return int(self.level.shape[0])

    def signal_sd(self) -> np.ndarray:
        return np.sqrt(np.clip(np.diagonal(self.signal_var, axis1=1, axis2=2), 0.0, None))


def smooth(fit: FitResult) -> SmoothingDistribution:
    """
    Kalman filter and smoother over the fitted system.

    Raises :class:`~bsp_mortality.exceptions.SmoothingInstability` when the
    recursions lose positive definiteness.
    """
    model = fit.model
    alpha, smoother_out, _ = fit.system.smooth(model.y)
    V = smoother_out["V"]
    lvl = model.level_index()
    slp = model.slope_index()
    Z_map = model.Z_map

    level = alpha[:, lvl]
    level_cov = V[:, lvl, lvl]
    signal = level @ Z_map.T
    signal_var = np.einsum("ij,tjk,lk->til", Z_map, level_cov, Z_map)
    logger.debug("Smoothed %d periods.", alpha.shape[0])
    return SmoothingDistribution(
        level=level,
        slope=alpha[:, slp],
        level_cov=level_cov,
        slope_cov=V[:, slp, slp],
        state_cov=V,
        signal=signal,
        signal_var=signal_var,
    )


__all__ = ["SmoothingDistribution", "smooth"]
