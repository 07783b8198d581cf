"""
Error taxonomy shared by the basis, fitting, smoothing and forecasting code.
"""

from __future__ import annotations


class BSPError(Exception):
    """Base class for all errors raised by the package."""


class BasisConstructionError(BSPError, ValueError):
    """Invalid knot configuration or age grid for the spline basis."""


class OptimizationFailure(BSPError):
    """
    A single optimizer restart did not produce a usable optimum.

    Instances are stored in :class:`bsp_mortality.fit.RestartFailure` and
    are never raised out of a batch of restarts.
    """


class AllRestartsFailed(BSPError, RuntimeError):
    """Every restart of a fitting batch failed; no result is available."""

    def __init__(self, message: str, failures=()) -> None:
        super().__init__(message)
        self.failures = list(failures)


class SmoothingInstability(BSPError, ArithmeticError):
    """The filter or smoother lost positive definiteness or produced NaNs."""
