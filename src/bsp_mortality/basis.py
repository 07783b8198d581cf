"""
Quadratic spline basis over age.

The basis follows the `splines::bs(ages, knots, degree = 2)` convention used by
the BSP model: boundary knots at the youngest and oldest age, the first
B-spline dropped, and a constant column prepended to carry the baseline level
shared by all ages.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
from scipy.interpolate import BSpline

from .exceptions import BasisConstructionError


@dataclass(frozen=True)
class AgeBasis:
    """
    Spline basis evaluated on the age grid.

    Attributes
    ----------
    ages:
        Age grid of length ``Z``.
    knots:
        Interior knots.
    degree:
        Spline degree.
    values:
        Basis matrix with shape ``(Z, K + 1)``.  Column 0 is the intercept and
        columns ``1..K`` are spline terms scaled to a peak of one.
    anchor_ages:
        Age at which each column peaks; the intercept is anchored at 0.
    """

    ages: np.ndarray
    knots: np.ndarray
    degree: int
    values: np.ndarray
    anchor_ages: np.ndarray

    @property
    def n_coef(self) -> int:
        return int(self.values.shape[1])

    @property
    def n_ages(self) -> int:
        return int(self.values.shape[0])


def _check_grid(ages: np.ndarray, knots: np.ndarray, degree: int) -> None:
    if degree < 1:
        raise BasisConstructionError(f"degree must be >= 1, got {degree}")
    if ages.ndim != 1 or ages.size < 2:
        raise BasisConstructionError("the age grid must contain at least two ages")
    if np.any(np.diff(ages) <= 0):
        raise BasisConstructionError("the age grid must be strictly increasing")
    if knots.ndim != 1 or knots.size == 0:
        raise BasisConstructionError(
            f"at least one interior knot is required for a degree {degree} basis"
        )
    if np.any(~np.isfinite(knots)):
        raise BasisConstructionError("knots must be finite")
    if np.any(np.diff(knots) <= 0):
        raise BasisConstructionError(f"knots must be strictly increasing, got {knots.tolist()}")
    if knots[0] <= ages[0] or knots[-1] >= ages[-1]:
        raise BasisConstructionError(
            f"knots must lie strictly inside ({ages[0]}, {ages[-1]}), got {knots.tolist()}"
        )


def bspline_design(ages: np.ndarray, knots: np.ndarray, degree: int = 2) -> np.ndarray:
    """
    Raw B-spline design matrix without the first (intercept) column.
    """
    boundary_left = np.repeat(ages[0], degree + 1)
    boundary_right = np.repeat(ages[-1], degree + 1)
    knot_vector = np.concatenate([boundary_left, knots, boundary_right])
    design = BSpline.design_matrix(ages, knot_vector, degree).toarray()
    return design[:, 1:]


def build_age_basis(
    ages: Sequence[float] | int,
    knots: Sequence[float],
    degree: int = 2,
) -> AgeBasis:
    """
    Build the normalised basis and the anchor age of every coefficient.

    Parameters
    ----------
    ages:
        Age grid, or the number of ages ``A`` for the grid ``1..A``.
    knots:
        Interior knot ages, strictly increasing and strictly inside the grid.
    degree:
        Spline degree (2 for the BSP model).
    """
    knots_arr = np.asarray(knots, dtype=float).reshape(-1)
    if np.isscalar(ages):
        ages_arr = np.arange(1, int(ages) + 1, dtype=float)
    else:
        ages_arr = np.asarray(ages, dtype=float).reshape(-1)
    _check_grid(ages_arr, knots_arr, int(degree))

    design = bspline_design(ages_arr, knots_arr, int(degree))
    peaks = design.max(axis=0)
    if np.any(peaks <= 0):
        raise BasisConstructionError(
            "some basis functions vanish on the age grid; move the knots onto the grid range"
        )
    scaled = design / peaks
    values = np.column_stack([np.ones(ages_arr.size), scaled])
    anchors = np.concatenate([[0.0], ages_arr[np.argmax(scaled, axis=0)]])

    values.setflags(write=False)
    anchors.setflags(write=False)
    return AgeBasis(
        ages=ages_arr,
        knots=knots_arr,
        degree=int(degree),
        values=values,
        anchor_ages=anchors,
    )


__all__ = ["AgeBasis", "bspline_design", "build_age_basis"]
