"""
Staged workflow: fit, smooth and forecast one deaths/exposures data set, run
the expanding-window forecasting experiment for a method and its benchmark,
and score and compare them.

Inputs are two year-by-age CSV matrices, ``deaths.csv`` and ``exposures.csv``,
in the data directory.  Outputs are written to ``results/``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import pandas as pd

from . import data as data_module
from . import setup_env
from .analysis import evaluation, rolling
from .config import ForecastConfig, OptimizerConfig
from .exceptions import BSPError
from .fit import fit_bsp
from .forecast import forecast
from .model import bsp_model
from .smoothing import smooth

logger = logging.getLogger(__name__)

DEFAULT_KNOTS = (20.0, 40.0, 60.0, 80.0)


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
    )


def run_setup(base_path: Path | str = ".") -> None:
    """
    Ensure directories and validate package availability.
    """
    setup_env.ensure_directories(base_path)
    missing = setup_env.missing_python_packages()
    if missing:
        logger.warning(
            "Missing Python dependencies detected: %s. "
            "Install via `pip install -e .`.",
            ", ".join(missing),
        )


def load_inputs(data_dir: Path | str = data_module.DATA_ROOT) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Load the deaths and exposures matrices.
    """
    data_dir = Path(data_dir)
    deaths = data_module.load_matrix(data_dir / "deaths.csv")
    exposures = data_module.load_matrix(data_dir / "exposures.csv")
    logger.info(
        "Loaded %d years and %d ages from %s.", deaths.shape[0], deaths.shape[1], data_dir
    )
    return deaths, exposures


def run_forecast_stage(
    deaths: pd.DataFrame,
    exposures: pd.DataFrame,
    output_dir: Path,
    knots: Sequence[float],
    optimizer: OptimizerConfig,
    config: ForecastConfig,
    method: str,
    seed,
) -> pd.DataFrame:
    """
    Fit on the full sample and write smoothed rates, estimates and forecasts.
    """
    rates = data_module.make_rates(deaths, exposures)
    ages = rates.columns.to_numpy(dtype=float)
    model = bsp_model(rates.to_numpy(dtype=float), knots, ages=ages)
    fit = fit_bsp(model, seed=seed, config=optimizer)
    smoothing = smooth(fit)

    fitted = pd.DataFrame(smoothing.signal, index=rates.index, columns=rates.columns)
    fitted.to_csv(output_dir / "smoothed_log_rates.csv")
    pd.Series(fit.pars.as_dict(), name="estimate").to_csv(output_dir / "estimates.csv")

    window = min(config.window, model.n_periods)
    result = forecast(
        fit,
        smoothing,
        window,
        config.horizon,
        method=method,
        config=config,
        optimizer=optimizer,
        seed=seed,
    )
    table = result.to_frame()
    table.insert(0, "year", rates.index[-1] + table["h_ahead"])
    table.to_csv(output_dir / "forecast.csv", index=False)
    return table


def run_all(
    base_path: Path | str = ".",
    knots: Sequence[float] = DEFAULT_KNOTS,
    train: int | None = None,
    method: str = "plugin",
    seed: int = 1234,
    optimizer: OptimizerConfig | None = None,
    config: ForecastConfig | None = None,
    benchmark: str | None = "simulation",
) -> None:
    """
    Execute the staged workflow.

    The expanding-window stage runs ``method`` and, unless ``benchmark`` is
    None, the benchmark method on the same training samples.  The evaluation
    stage then scores both and compares them with Diebold-Mariano tests.
    """
    configure_logging()
    base_path = Path(base_path)
    run_setup(base_path)
    optimizer = optimizer or OptimizerConfig()
    config = config or ForecastConfig()
    output_dir = base_path / "results"
    deaths, exposures = load_inputs(base_path / "data")
    if train is None:
        train = max(2, deaths.shape[0] - 2 * config.horizon)
    methods = [method]
    if benchmark is not None and benchmark != method:
        methods.append(benchmark)

    def forecast_stage():
        run_forecast_stage(
            deaths, exposures, output_dir, knots, optimizer, config, method, seed
        )

    outputs = {}

    def rolling_stage():
        for name in methods:
            table = rolling.rolling_forecasts(
                deaths,
                exposures,
                knots,
                train=train,
                horizon=config.horizon,
                window=config.window,
                rep=optimizer.rep,
                method=name,
                seed=seed,
                max_workers=optimizer.max_workers,
                optimizer=optimizer,
                config=config,
                skip_failures=True,
            )
            filename = "rolling_forecasts.csv" if name == method else f"rolling_forecasts_{name}.csv"
            table.to_csv(output_dir / filename, index=False)
            outputs[name] = table

    def evaluation_stage():
        if method not in outputs:
            raise BSPError("no rolling forecasts to evaluate")
        rates = data_module.make_rates(deaths, exposures)
        values = rates.to_numpy(dtype=float)
        ages = rates.columns.to_numpy(dtype=float)
        scored = {
            name: evaluation.forecast_errors(table, values, ages)
            for name, table in outputs.items()
        }
        summary = pd.concat(
            {name: evaluation.summarize_errors(frame) for name, frame in scored.items()},
            names=["method"],
        )
        summary.to_csv(output_dir / "forecast_accuracy.csv")
        logger.info("Forecast accuracy by horizon:\n%s", summary.to_string())

        if len(scored) < 2:
            return
        if scored[benchmark].empty:
            raise BSPError(f"no {benchmark} forecasts to compare against")
        comparison = evaluation.compare_methods(scored[method], scored[benchmark])
        comparison.insert(0, "second", benchmark)
        comparison.insert(0, "first", method)
        comparison.to_csv(output_dir / "forecast_comparison.csv", index=False)
        logger.info("Diebold-Mariano comparison:\n%s", comparison.to_string(index=False))

    stages = [
        ("Full-sample fit and forecast", forecast_stage),
        ("Expanding-window forecasts", rolling_stage),
        ("Forecast evaluation", evaluation_stage),
    ]

    for label, func in stages:
        try:
            logger.info("Starting stage: %s", label)
            func()
        except BSPError as exc:
            logger.warning("Stage '%s' failed: %s", label, exc)
        else:
            logger.info("Completed stage: %s", label)

    logger.info("BSP mortality workflow finished.")


if __name__ == "__main__":
    run_all()
