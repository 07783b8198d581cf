"""
Environment bootstrap utilities.

Ensures the output directories of the forecasting workflow exist and checks
that the Python dependency stack can be imported.  Nothing is installed
automatically.
"""

from __future__ import annotations

import importlib.util
from pathlib import Path
from typing import Iterable

DEFAULT_DIRECTORIES = ("data", "results")

REQUIRED_PACKAGES = (
    "numpy",
    "pandas",
    "scipy",
    "statsmodels",
)


def ensure_directories(base_path: Path | str = ".",
                       directories: Iterable[str] = DEFAULT_DIRECTORIES) -> list[Path]:
    """
    Create the working directories if they do not yet exist.
    """
    base_path = Path(base_path)
    created = []
    for name in directories:
        target = base_path / name
        target.mkdir(parents=True, exist_ok=True)
        created.append(target)
    return created


def missing_python_packages(packages: Iterable[str] = REQUIRED_PACKAGES) -> list[str]:
    """
    Names from `packages` that are not installed, in the given order.
    """
    return [name for name in packages if importlib.util.find_spec(name) is None]


def assert_dependencies(packages: Iterable[str] = REQUIRED_PACKAGES) -> None:
    """
    Raise a RuntimeError if any required dependency is missing.
    """
    missing = missing_python_packages(packages)
    if missing:
        raise RuntimeError(
            f"Missing required Python packages: {', '.join(sorted(missing))}; "
            "install them with `pip install -e .`"
        )
