import numpy as np
import pandas as pd
import pytest

from bsp_mortality import master, setup_env
from bsp_mortality.config import ForecastConfig, OptimizerConfig


def test_ensure_directories(tmp_path):
    created = setup_env.ensure_directories(tmp_path)
    assert all(path.is_dir() for path in created)
    assert {path.name for path in created} == {"data", "results"}


def test_missing_python_packages():
    assert setup_env.missing_python_packages(["numpy", "surely_not_a_package_xyz"]) == [
        "surely_not_a_package_xyz"
    ]
    with pytest.raises(RuntimeError):
        setup_env.assert_dependencies(["surely_not_a_package_xyz"])


def _write_inputs(data_dir, rates):
    years = np.arange(1990, 1990 + rates.shape[0])
    ages = np.arange(1, rates.shape[1] + 1)
    exposures = np.full(rates.shape, 1e5)
    pd.DataFrame(rates * exposures, index=years, columns=ages).to_csv(data_dir / "deaths.csv")
    pd.DataFrame(exposures, index=years, columns=ages).to_csv(data_dir / "exposures.csv")


def test_load_inputs(tmp_path, rates):
    _write_inputs(tmp_path, rates)
    deaths, exposures = master.load_inputs(tmp_path)
    assert deaths.shape == rates.shape
    assert exposures.index[0] == 1990


@pytest.mark.slow
def test_run_all_writes_results(tmp_path, rates):
    (tmp_path / "data").mkdir()
    _write_inputs(tmp_path / "data", rates)
    master.run_all(
        tmp_path,
        knots=(4.0, 7.0),
        train=13,
        optimizer=OptimizerConfig(rep=2),
        config=ForecastConfig(window=5, horizon=2),
    )
    results = tmp_path / "results"
    forecast = pd.read_csv(results / "forecast.csv")
    assert list(forecast.columns) == ["year", "age", "h_ahead", "fit", "lwr", "upr"]
    assert forecast["year"].min() == 1990 + rates.shape[0]
    assert (results / "estimates.csv").exists()
    assert (results / "smoothed_log_rates.csv").exists()
    rolling = pd.read_csv(results / "rolling_forecasts.csv")
    assert sorted(rolling["t"].unique()) == [13]
    accuracy = pd.read_csv(results / "forecast_accuracy.csv")
    assert set(accuracy["method"]) == {"plugin", "simulation"}
    benchmark = pd.read_csv(results / "rolling_forecasts_simulation.csv")
    assert len(benchmark) == len(rolling)
    comparison = pd.read_csv(results / "forecast_comparison.csv")
    assert list(comparison.columns) == ["first", "second", "h_ahead", "statistic", "pvalue", "n"]
    assert sorted(comparison["h_ahead"]) == [1, 2]
    assert (comparison["n"] == rates.shape[1]).all()
    assert comparison["pvalue"].between(0.0, 1.0).all()
