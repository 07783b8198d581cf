import numpy as np
import pytest

from bsp_mortality.config import INIT_VARIANCE
from bsp_mortality.model import (
    BSPParameters,
    bsp_model,
    local_trend_transition,
    log_rates,
    pars2theta,
    theta2pars,
)


def test_theta_round_trip():
    pars = BSPParameters(lam=0.8, sigma2_u=1e-3, sigma2_a=2e-5, sigma2_e=4e-4)
    back = theta2pars(pars2theta(pars))
    for name, value in pars.as_dict().items():
        assert getattr(back, name) == pytest.approx(value)


def test_theta_length_is_checked():
    with pytest.raises(ValueError):
        theta2pars([0.0, 0.0, 0.0])


def test_local_trend_transition_blocks():
    T = local_trend_transition(3, 0.5)
    np.testing.assert_array_equal(T[:3, :3], np.eye(3))
    np.testing.assert_array_equal(T[:3, 3:], 0.5 * np.eye(3))
    np.testing.assert_array_equal(T[3:, :3], np.zeros((3, 3)))
    np.testing.assert_array_equal(T[3:, 3:], np.eye(3))


def test_log_rates_masks_invalid_cells():
    out = log_rates([[0.01, 0.0], [np.nan, -1.0]])
    assert out[0, 0] == pytest.approx(np.log(0.01))
    assert np.isnan(out[0, 1]) and np.isnan(out[1, 0]) and np.isnan(out[1, 1])


def test_model_dimensions(model):
    assert model.n_coef == 5
    assert model.n_states == 10
    assert model.n_periods == 15
    assert model.Z_map.shape == (10, 5)
    assert model.a1.shape == (10,)
    np.testing.assert_array_equal(model.a1[model.slope_index()], 0.0)


def test_initial_levels_project_first_year(model):
    levels = model.a1[model.level_index()]
    expected, *_ = np.linalg.lstsq(model.Z_map, model.y[0], rcond=None)
    np.testing.assert_allclose(levels, expected)


def test_system_structure(model):
    pars = BSPParameters(lam=0.7, sigma2_u=2e-3, sigma2_a=1e-5, sigma2_e=5e-4)
    ss = model.system(pars)
    k1 = model.n_coef
    np.testing.assert_array_equal(ss.Z[:, :k1], model.Z_map)
    np.testing.assert_array_equal(ss.Z[:, k1:], 0.0)
    np.testing.assert_allclose(ss.H, 5e-4 * np.eye(10))
    np.testing.assert_allclose(ss.T[:k1, k1:], 0.7 * np.eye(k1))
    np.testing.assert_allclose(ss.Q[:k1, :k1], 2e-3 * model.corr)
    np.testing.assert_allclose(ss.Q[k1:, k1:], 1e-5 * np.eye(k1))
    np.testing.assert_array_equal(ss.Q[:k1, k1:], 0.0)
    np.testing.assert_allclose(ss.P1, INIT_VARIANCE * np.eye(2 * k1))
    assert np.min(np.linalg.eigvalsh(ss.Q)) > 0.0


def test_delta_scales_transition(rates, kernel):
    quarterly = bsp_model(rates, [4, 7], kernel=kernel, delta=0.25)
    T = quarterly.transition(2.0)
    np.testing.assert_allclose(T[:5, 5:], 0.5 * np.eye(5))


def test_with_data_reuses_basis_and_correlation(model, rates):
    shorter = model.with_data(rates[:8])
    assert shorter.n_periods == 8
    assert shorter.basis is model.basis
    assert shorter.corr is model.corr
    assert shorter.kernel is model.kernel


def test_missing_cells_are_tolerated(rates, kernel):
    holes = rates.copy()
    holes[3, 2] = np.nan
    holes[5, :] = 0.0
    m = bsp_model(holes, [4, 7], kernel=kernel)
    assert np.isnan(m.y[3, 2])
    assert np.all(np.isnan(m.y[5]))
    pars = BSPParameters(1.0, 1e-3, 1e-5, 1e-3)
    assert np.isfinite(m.loglik(pars))


@pytest.mark.parametrize(
    "bad",
    [
        np.ones(10),
        np.ones((1, 10)),
        np.ones((5, 9)),
        np.zeros((5, 10)),
    ],
)
def test_invalid_rates(bad):
    with pytest.raises(ValueError):
        bsp_model(bad, [4, 7], ages=np.arange(1, 11))


def test_invalid_delta(rates):
    with pytest.raises(ValueError):
        bsp_model(rates, [4, 7], delta=0.0)
