import numpy as np
import pytest

from bsp_mortality.basis import build_age_basis
from bsp_mortality.kernels import (
    MaternKernel,
    correlation_matrix,
    innovation_covariance,
    matern_kernel,
)


def test_matern_at_zero_is_one():
    for nu in (0.5, 1.5, 2.5, 3.7):
        assert MaternKernel(nu=nu)(0.0) == pytest.approx(1.0)


def test_matern_decreases_with_distance():
    d = np.linspace(0.0, 100.0, 51)
    values = matern_kernel(d)
    assert np.all(np.diff(values) <= 0.0)
    assert np.all((values >= 0.0) & (values <= 1.0))


def test_matern_closed_form_matches_bessel_form():
    d = np.array([0.5, 3.0, 12.0])
    closed = MaternKernel(nu=1.5, length_scale=10.0)(d)
    bessel = MaternKernel(nu=1.5 + 1e-9, length_scale=10.0)(d)
    np.testing.assert_allclose(closed, bessel, rtol=1e-6)


def test_matern_exponential_case():
    assert MaternKernel(nu=0.5, length_scale=4.0)(4.0) == pytest.approx(np.exp(-1.0))


def test_matern_is_symmetric_in_distance():
    assert matern_kernel(-7.0) == matern_kernel(7.0)


@pytest.mark.parametrize("nu, length_scale", [(0.0, 1.0), (1.5, 0.0), (-1.0, 5.0)])
def test_matern_rejects_bad_parameters(nu, length_scale):
    with pytest.raises(ValueError):
        MaternKernel(nu=nu, length_scale=length_scale)


def test_correlation_matrix_is_positive_definite():
    basis = build_age_basis(np.arange(0, 101), [20, 40, 60, 80])
    corr = correlation_matrix(basis.anchor_ages, matern_kernel)
    np.testing.assert_allclose(np.diag(corr), 1.0)
    np.testing.assert_allclose(corr, corr.T)
    assert np.min(np.linalg.eigvalsh(corr)) > 0.0


def test_correlation_uses_anchor_distances():
    corr = correlation_matrix([0.0, 5.0, 15.0], matern_kernel)
    assert corr[0, 1] == pytest.approx(matern_kernel(5.0))
    assert corr[1, 2] == pytest.approx(matern_kernel(10.0))
    assert corr[0, 2] == pytest.approx(matern_kernel(15.0))


def test_innovation_covariance_scales_correlation():
    corr = correlation_matrix([0.0, 5.0, 15.0], matern_kernel)
    Q = innovation_covariance(0.3, corr)
    np.testing.assert_allclose(Q, 0.3 * corr)
    assert np.min(np.linalg.eigvalsh(Q)) > 0.0
