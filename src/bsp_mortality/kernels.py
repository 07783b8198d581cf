"""
Correlation kernels over anchor-age distances.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np
from scipy.special import gamma, kv


@dataclass(frozen=True)
class MaternKernel:
    """
    Matérn correlation function ``distance -> correlation``.

    Parameters
    ----------
    nu:
        Smoothness.  The half-integer values 0.5, 1.5 and 2.5 use closed
        forms; any other positive value goes through the Bessel function.
    length_scale:
        Range of the correlation, in years of age.
    """

    nu: float = 1.5
    length_scale: float = 10.0

    def __post_init__(self):
        if self.nu <= 0:
            raise ValueError(f"nu ({self.nu}) must be positive")
        if self.length_scale <= 0:
            raise ValueError(f"length_scale ({self.length_scale}) must be positive")

    def __call__(self, x):
        d = np.abs(np.asarray(x, dtype=float)) / self.length_scale
        if self.nu == 0.5:
            out = np.exp(-d)
        elif self.nu == 1.5:
            s = math.sqrt(3.0) * d
            out = (1.0 + s) * np.exp(-s)
        elif self.nu == 2.5:
            s = math.sqrt(5.0) * d
            out = (1.0 + s + s**2 / 3.0) * np.exp(-s)
        else:
            s = math.sqrt(2.0 * self.nu) * d
            with np.errstate(invalid="ignore"):
                out = (2.0 ** (1.0 - self.nu) / gamma(self.nu)) * s**self.nu * kv(self.nu, s)
            out = np.where(s == 0.0, 1.0, out)
            out = np.nan_to_num(out, nan=0.0)
        out = np.clip(out, 0.0, 1.0)
        if np.ndim(out) == 0:
            return float(out)
        return out


matern_kernel = MaternKernel()

CorrelationKernel = Callable[[float], float]


def correlation_matrix(anchor_ages: Sequence[float], kernel: CorrelationKernel) -> np.ndarray:
    """
    Kernel correlation between every pair of coefficients.
    """
    anchors = np.asarray(anchor_ages, dtype=float).reshape(-1)
    n = anchors.size
    corr = np.eye(n)
    for i in range(n - 1):
        for j in range(i + 1, n):
            rho = float(kernel(abs(anchors[j] - anchors[i])))
            corr[i, j] = corr[j, i] = rho
    return corr


def innovation_covariance(sigma2: float, corr: np.ndarray) -> np.ndarray:
    """
    Coefficient innovation covariance ``sigma2 * corr``.
    """
    return float(sigma2) * np.asarray(corr, dtype=float)


__all__ = [
    "CorrelationKernel",
    "MaternKernel",
    "correlation_matrix",
    "innovation_covariance",
    "matern_kernel",
]
