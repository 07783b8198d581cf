import numpy as np
import pytest

from bsp_mortality.config import ForecastConfig, OptimizerConfig
from bsp_mortality.exceptions import AllRestartsFailed
from bsp_mortality.forecast import (
    ForecastResult,
    PlugInForecaster,
    SimulationForecaster,
    forecast,
    make_forecaster,
    propagate,
    rwd_nll,
    to_age_scale,
)
from bsp_mortality.model import local_trend_transition

FAST = OptimizerConfig(maxiter=2000, max_passes=3)


def test_single_period_window_extrapolates_last_state(fitted, smoothing):
    result = forecast(fitted, smoothing, window=1, horizon=1, config=ForecastConfig(rep=2), seed=1)
    expected = smoothing.level[-1] + fitted.transition_scale * smoothing.slope[-1]
    np.testing.assert_allclose(result.coef_mean[0], expected, rtol=0, atol=1e-12)
    np.testing.assert_allclose(result.mean[0], fitted.model.Z_map @ expected, atol=1e-12)


def test_single_period_window_variance_does_not_depend_on_seed(fitted, smoothing):
    results = [
        forecast(fitted, smoothing, window=1, horizon=3, config=ForecastConfig(rep=2), seed=seed)
        for seed in (1, 2, 3)
    ]
    increment = (
        smoothing.level[-1] - smoothing.level[-2] - fitted.transition_scale * smoothing.slope[-1]
    )
    quad = increment @ np.linalg.solve(fitted.model.corr, increment)
    expected = quad / fitted.model.n_coef
    for result in results:
        assert result.hyperparameters["sigma2_omega"] == pytest.approx(expected, rel=1e-3)
        np.testing.assert_allclose(result.sd, results[0].sd, rtol=1e-3)
        np.testing.assert_allclose(result.coef_mean, results[0].coef_mean, atol=1e-12)


def test_plugin_forecast_shapes_and_intervals(fitted, smoothing):
    result = PlugInForecaster(optimizer=FAST, seed=2).forecast(fitted, smoothing, 8, 5)
    assert isinstance(result, ForecastResult)
    assert result.method == "plugin"
    assert result.mean.shape == (5, 10)
    assert result.variance.shape == (5, 10, 10)
    assert result.coef_cov.shape == (5, 5, 5)
    assert np.all(result.lower < result.mean)
    assert np.all(result.mean < result.upper)
    assert result.hyperparameters["sigma2_omega"] > 0.0


def test_plugin_variance_grows_with_horizon(fitted, smoothing):
    result = PlugInForecaster(optimizer=FAST, seed=2).forecast(fitted, smoothing, 8, 6)
    assert np.all(np.diff(result.sd, axis=0) >= 0.0)


def test_plugin_drift_is_median_slope(fitted, smoothing):
    result = PlugInForecaster(optimizer=FAST, seed=2).forecast(fitted, smoothing, 5, 2)
    np.testing.assert_allclose(result.drift, np.median(smoothing.slope[-5:], axis=0))
    step = result.coef_mean[1] - result.coef_mean[0]
    np.testing.assert_allclose(step, fitted.transition_scale * result.drift)


def test_forecasting_leaves_the_fit_untouched(fitted, smoothing):
    Z_before = fitted.model.Z_map.copy()
    Q_before = fitted.system.Q.copy()
    window = 5
    drifts = []
    for w in (window, 2 * window):
        result = PlugInForecaster(optimizer=FAST, seed=4).forecast(fitted, smoothing, w, 2)
        drifts.append(result.drift)
    np.testing.assert_array_equal(fitted.model.Z_map, Z_before)
    np.testing.assert_array_equal(fitted.system.Q, Q_before)
    assert not np.allclose(drifts[0], drifts[1])


def test_interval_width_matches_level(fitted, smoothing):
    narrow = PlugInForecaster(config=ForecastConfig(level=0.5), optimizer=FAST, seed=5)
    wide = PlugInForecaster(config=ForecastConfig(level=0.99), optimizer=FAST, seed=5)
    a = narrow.forecast(fitted, smoothing, 6, 3)
    b = wide.forecast(fitted, smoothing, 6, 3)
    np.testing.assert_allclose(a.mean, b.mean)
    assert np.all(b.upper - b.lower > a.upper - a.lower)


@pytest.mark.parametrize("forecaster_cls", [PlugInForecaster, SimulationForecaster])
def test_forced_failure_raises(fitted, smoothing, forecaster_cls):
    forecaster = forecaster_cls(
        config=ForecastConfig(rep=2, nsim=3),
        optimizer=OptimizerConfig(maxiter=0),
        seed=6,
    )
    with pytest.raises(AllRestartsFailed) as info:
        forecaster.forecast(fitted, smoothing, 5, 2)
    assert len(info.value.failures) == 2


@pytest.mark.parametrize("window, horizon", [(0, 1), (16, 1), (5, 0)])
def test_invalid_window_or_horizon(fitted, smoothing, window, horizon):
    with pytest.raises(ValueError):
        forecast(fitted, smoothing, window, horizon)


def test_unknown_method():
    with pytest.raises(ValueError):
        make_forecaster("arima")


def test_simulation_forecast(fitted, smoothing):
    forecaster = SimulationForecaster(
        config=ForecastConfig(nsim=10, rep=2, lookback=5), seed=8
    )
    result = forecaster.forecast(fitted, smoothing, 6, 4)
    assert result.method == "simulation"
    assert result.mean.shape == (4, 10)
    assert np.all(np.isfinite(result.variance))
    assert np.all(result.lower < result.upper)
    assert set(result.hyperparameters) == {"sigma2_omega", "sigma2_delta", "sigma2_psi"}
    assert result.drift.shape == (5,)
    assert np.all(np.diff(result.sd, axis=0) >= 0.0)


def test_simulation_forecast_is_reproducible(fitted, smoothing):
    config = ForecastConfig(nsim=5, rep=2)
    a = SimulationForecaster(config=config, seed=9).forecast(fitted, smoothing, 4, 2)
    b = SimulationForecaster(config=config, seed=9).forecast(fitted, smoothing, 4, 2)
    np.testing.assert_array_equal(a.mean, b.mean)


def test_drift_prior_falls_back_to_window():
    forecaster = SimulationForecaster(config=ForecastConfig(lookback=3))
    slopes = np.arange(24, dtype=float).reshape(2, 4, 3)
    mean, cov = forecaster.drift_prior(slopes, start=0)
    np.testing.assert_allclose(mean, slopes.reshape(-1, 3).mean(axis=0))
    mean, cov = forecaster.drift_prior(slopes, start=2)
    np.testing.assert_allclose(mean, slopes[:, :2].reshape(-1, 3).mean(axis=0))
    assert cov.shape == (3, 3)


def test_propagate_variance_is_monotone():
    n_coef = 3
    T = local_trend_transition(n_coef, 0.8)
    Q = np.diag([0.01, 0.02, 0.01, 1e-4, 1e-4, 1e-4])
    cov0 = np.diag([0.05, 0.05, 0.05, 1e-3, 1e-3, 1e-3])
    means, covs = propagate(np.r_[np.zeros(3), np.ones(3)], cov0, T, Q, horizon=8)
    np.testing.assert_allclose(means[:, :3], 0.8 * np.arange(1, 9)[:, None] * np.ones(3))
    level_var = np.diagonal(covs[:, :3, :3], axis1=1, axis2=2)
    assert np.all(np.diff(level_var, axis=0) > 0.0)


def test_to_age_scale_adds_observation_noise():
    Z_map = np.array([[1.0, 0.0], [1.0, 1.0]])
    mean, variance, lower, upper = to_age_scale(
        np.array([[1.0, 2.0]]), np.zeros((1, 2, 2)), Z_map, 0.04, 0.95
    )
    np.testing.assert_allclose(mean, [[1.0, 3.0]])
    np.testing.assert_allclose(variance[0], 0.04 * np.eye(2))
    np.testing.assert_allclose(upper - mean, 1.959964 * 0.2 * np.ones((1, 2)), rtol=1e-6)
    np.testing.assert_allclose(mean - lower, upper - mean)


def test_rwd_nll_prefers_empirical_variance(rng):
    corr = np.eye(2)
    increments = rng.normal(scale=0.1, size=(200, 2))
    levels = np.vstack([np.zeros(2), np.cumsum(increments, axis=0)])
    args = (levels, levels[0], 1.0, np.zeros(2), corr)
    at_truth = rwd_nll(np.log([0.01]), *args)
    assert at_truth < rwd_nll(np.log([1.0]), *args)
    assert at_truth < rwd_nll(np.log([1e-4]), *args)


def test_to_frame_layout(fitted, smoothing):
    result = PlugInForecaster(optimizer=FAST, seed=2).forecast(fitted, smoothing, 5, 3)
    frame = result.to_frame()
    assert list(frame.columns) == ["age", "h_ahead", "fit", "lwr", "upr"]
    assert len(frame) == 3 * 10
    row = frame[(frame["age"] == 4.0) & (frame["h_ahead"] == 2)]
    assert row["fit"].item() == pytest.approx(result.mean[1, 3])
