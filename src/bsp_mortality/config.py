"""
Configuration containers for fitting and forecasting.

Defaults follow the settings of the published forecasting experiment:
five Nelder-Mead restarts, a 25 year drift window and 95% intervals.
"""

from __future__ import annotations

from dataclasses import dataclass

# Objective value returned for parameter vectors the filter cannot evaluate.
C_PENAL = 1e6

# Prior variance of the initial level and slope states.
INIT_VARIANCE = 10.0


@dataclass(frozen=True)
class OptimizerConfig:
    """Multi-start Nelder-Mead settings.

    Attributes:
        rep: Number of random starting points.
        max_workers: Worker processes for the restarts (<= 1 runs inline).
        maxiter: Iteration cap for a single Nelder-Mead pass.
        start_low: Lower bound (natural scale) of the starting variances.
        start_high: Upper bound (natural scale) of the starting variances.
        simplex_step: Edge length of the initial simplex in log space.
        tol: Improvement below which repeated passes stop.
        max_passes: Cap on repeated Nelder-Mead passes per restart.
    """

    rep: int = 5
    max_workers: int = 1
    maxiter: int = 5000
    start_low: float = 1e-4
    start_high: float = 1.0
    simplex_step: float = 1.0
    tol: float = 0.1
    max_passes: int = 10

    def __post_init__(self):
        if self.rep < 1:
            raise ValueError(f"rep ({self.rep}) must be at least 1")
        if self.maxiter < 0:
            raise ValueError(f"maxiter ({self.maxiter}) must be non-negative")
        if not 0 < self.start_low < self.start_high:
            raise ValueError(
                f"start range must satisfy 0 < start_low < start_high, got ({self.start_low}, {self.start_high})"
            )
        if self.simplex_step <= 0:
            raise ValueError(f"simplex_step ({self.simplex_step}) must be positive")
        if self.max_passes < 1:
            raise ValueError(f"max_passes ({self.max_passes}) must be at least 1")


@dataclass(frozen=True)
class PriorConfig:
    """Inverse-gamma penalty placed on every variance component."""

    shape: float = 1e-3
    scale: float = 1e-6

    def __post_init__(self):
        if self.shape <= 0 or self.scale <= 0:
            raise ValueError(f"shape ({self.shape}) and scale ({self.scale}) must be positive")


@dataclass(frozen=True)
class ForecastConfig:
    """Settings of the drift extrapolation step.

    Attributes:
        window: Number of most recent periods used to characterise the drift.
        horizon: Number of steps ahead to forecast.
        level: Confidence level of the reported intervals.
        lookback: Periods before the window used for the drift prior
            (simulation variant only).
        nsim: Posterior state paths drawn by the simulation variant.
        rep: Restarts of the secondary fit.
        start_low: Lower bound (natural scale) of the starting variances.
        start_high: Upper bound (natural scale) of the starting variances.
    """

    window: int = 25
    horizon: int = 10
    level: float = 0.95
    lookback: int = 25
    nsim: int = 100
    rep: int = 5
    start_low: float = 1e-2
    start_high: float = 2.0

    def __post_init__(self):
        if self.window < 1:
            raise ValueError(f"window ({self.window}) must be at least 1")
        if self.horizon < 1:
            raise ValueError(f"horizon ({self.horizon}) must be at least 1")
        if not 0 < self.level < 1:
            raise ValueError(f"level ({self.level}) must be in (0, 1)")
        if self.lookback < 0:
            raise ValueError(f"lookback ({self.lookback}) must be non-negative")
        if self.nsim < 1:
            raise ValueError(f"nsim ({self.nsim}) must be at least 1")
        if self.rep < 1:
            raise ValueError(f"rep ({self.rep}) must be at least 1")
        if not 0 < self.start_low < self.start_high:
            raise ValueError(
                f"start range must satisfy 0 < start_low < start_high, got ({self.start_low}, {self.start_high})"
            )
