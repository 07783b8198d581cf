import numpy as np

from bsp_mortality.smoothing import smooth


def test_shapes(smoothing, model):
    n, k1 = model.n_periods, model.n_coef
    assert smoothing.n_periods == n
    assert smoothing.level.shape == (n, k1)
    assert smoothing.slope.shape == (n, k1)
    assert smoothing.level_cov.shape == (n, k1, k1)
    assert smoothing.state_cov.shape == (n, 2 * k1, 2 * k1)
    assert smoothing.signal.shape == (n, model.basis.n_ages)
    assert smoothing.signal_var.shape == (n, model.basis.n_ages, model.basis.n_ages)


def test_signal_is_basis_times_level(smoothing, model):
    np.testing.assert_allclose(smoothing.signal, smoothing.level @ model.Z_map.T)
    expected = model.Z_map @ smoothing.level_cov[4] @ model.Z_map.T
    np.testing.assert_allclose(smoothing.signal_var[4], expected)


def test_variances_are_non_negative(smoothing):
    assert np.all(np.diagonal(smoothing.level_cov, axis1=1, axis2=2) > -1e-10)
    assert np.all(np.diagonal(smoothing.slope_cov, axis1=1, axis2=2) > -1e-10)
    assert np.all(np.isfinite(smoothing.signal_sd()))


def test_signal_tracks_observed_log_rates(smoothing, model):
    assert np.nanmax(np.abs(smoothing.signal - model.y)) < 0.2


def test_smoothing_is_deterministic(fitted, smoothing):
    again = smooth(fitted)
    np.testing.assert_array_equal(again.level, smoothing.level)
    np.testing.assert_array_equal(again.level_cov, smoothing.level_cov)
