"""
Multi-start penalized maximum likelihood for the BSP hyperparameters.

Every restart is a pure function of its starting point and the read-only
model skeleton.  Restarts fan out on a process pool, come back as
``RestartSuccess`` or ``RestartFailure`` in submission order, and the best
success is selected.  A batch in which every restart failed raises
:class:`AllRestartsFailed`.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Union

import numpy as np

from .config import C_PENAL, OptimizerConfig, PriorConfig
from .exceptions import AllRestartsFailed, OptimizationFailure
from .model import BSPModel, BSPParameters, theta2pars
from .state_space import StateSpace
from .util import get_optim, log_uniform_starts, log_variance_prior

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RestartSuccess:
    index: int
    start: np.ndarray
    theta: np.ndarray
    value: float
    nit: int
    nfev: int
    message: str


@dataclass(frozen=True)
class RestartFailure:
    index: int
    start: np.ndarray
    reason: OptimizationFailure


RestartOutcome = Union[RestartSuccess, RestartFailure]


def _run_restart(
    index: int,
    start: np.ndarray,
    objective: Callable,
    args: tuple,
    config: OptimizerConfig,
) -> RestartOutcome:
    """
    Run one restart; numerical errors and non-convergence become failures.

    Defined at module level so that it can be pickled for the process pool.
    """
    try:
        res = get_optim(
            start,
            objective,
            args=args,
            maxiter=config.maxiter,
            simplex_step=config.simplex_step,
            tol=config.tol,
            max_passes=config.max_passes,
        )
    except (ArithmeticError, ValueError) as exc:
        return RestartFailure(index, start, OptimizationFailure(f"{type(exc).__name__}: {exc}"))
    if not res.success:
        return RestartFailure(index, start, OptimizationFailure(f"no convergence: {res.message}"))
    if not math.isfinite(res.fun) or res.fun >= C_PENAL:
        return RestartFailure(index, start, OptimizationFailure("optimum lies on the penalty wall"))
    return RestartSuccess(
        index=index,
        start=start,
        theta=np.asarray(res.x, dtype=float),
        value=float(res.fun),
        nit=int(res.nit),
        nfev=int(res.nfev),
        message=str(res.message),
    )


def run_restarts(
    objective: Callable,
    starts: np.ndarray,
    *,
    args: Sequence = (),
    config: OptimizerConfig,
) -> List[RestartOutcome]:
    """
    Optimize ``objective`` from every row of ``starts``.

    With ``config.max_workers <= 1`` the restarts run inline; otherwise they
    are submitted to a :class:`ProcessPoolExecutor` and joined in submission
    order, so the outcome list does not depend on completion order.
    """
    args = tuple(args)
    starts = np.atleast_2d(np.asarray(starts, dtype=float))
    n_workers = min(config.max_workers, starts.shape[0])
    if n_workers <= 1:
        return [_run_restart(i, start, objective, args, config) for i, start in enumerate(starts)]

    logger.debug("Running %d restarts on %d workers.", starts.shape[0], n_workers)
    with ProcessPoolExecutor(max_workers=n_workers) as executor:
        futures = [
            executor.submit(_run_restart, i, start, objective, args, config)
            for i, start in enumerate(starts)
        ]
        return [future.result() for future in futures]


def select_best(outcomes: Sequence[RestartOutcome], label: str) -> RestartSuccess:
    """
    Lowest objective among the successful restarts (ties go to the lower index).
    """
    successes = [o for o in outcomes if isinstance(o, RestartSuccess)]
    failures = [o for o in outcomes if isinstance(o, RestartFailure)]
    for failure in failures:
        logger.debug("%s: restart %d failed (%s).", label, failure.index, failure.reason)
    if failures:
        logger.warning(
            "%s: %d of %d optimization attempts failed.", label, len(failures), len(outcomes)
        )
    if not successes:
        raise AllRestartsFailed(
            f"{label}: all {len(outcomes)} optimization attempts failed.", failures
        )
    return min(successes, key=lambda o: (o.value, o.index))


def penalized_nll(theta: np.ndarray, model: BSPModel, prior: PriorConfig) -> float:
    """
    Negative log-likelihood plus an inverse-gamma penalty on the variances.
    """
    try:
        pars = theta2pars(theta)
        llk = model.loglik(pars)
        penalty = log_variance_prior(pars.variances, prior.shape, prior.scale)
    except (ArithmeticError, ValueError):
        return C_PENAL
    value = -llk - penalty
    if not math.isfinite(value):
        return C_PENAL
    return value


@dataclass(frozen=True)
class FitResult:
    """
    Fitted BSP model.

    Attributes
    ----------
    model:
        Model skeleton the fit was run on.
    system:
        State space system at the selected hyperparameters.
    pars:
        Selected hyperparameters.
    theta:
        Log-scale optimizer output (``pars == theta2pars(theta)``).
    value:
        Penalized negative log-likelihood at the optimum.
    loglik:
        Unpenalized log-likelihood at the optimum.
    outcomes:
        Outcome of every restart, in restart order.
    """

    model: BSPModel
    system: StateSpace
    pars: BSPParameters
    theta: np.ndarray
    value: float
    loglik: float
    outcomes: tuple = field(default_factory=tuple)

    @property
    def n_restarts(self) -> int:
        return len(self.outcomes)

    @property
    def failures(self) -> list[RestartFailure]:
        return [o for o in self.outcomes if isinstance(o, RestartFailure)]

    @property
    def n_failed(self) -> int:
        return len(self.failures)

    @property
    def transition_scale(self) -> float:
        """``lam * delta``, the drift propagation rate of every coefficient."""
        return self.pars.lam * self.model.delta


def as_generator(seed) -> np.random.Generator:
    if isinstance(seed, np.random.Generator):
        return seed
    return np.random.default_rng(seed)


def fit_bsp(
    model: BSPModel,
    rep: Optional[int] = None,
    seed=None,
    max_workers: Optional[int] = None,
    config: Optional[OptimizerConfig] = None,
    prior: Optional[PriorConfig] = None,
) -> FitResult:
    """
    Estimate ``(lam, sigma2_u, sigma2_a, sigma2_e)`` by multi-start penalized MLE.

    Parameters
    ----------
    model:
        Model skeleton from :func:`bsp_mortality.model.bsp_model`.
    rep:
        Number of restarts (overrides ``config.rep``).
    seed:
        Seed or ``numpy.random.Generator`` for the starting points.
    max_workers:
        Worker cap (overrides ``config.max_workers``).
    config, prior:
        Optimizer settings and inverse-gamma penalty.
    """
    config = config or OptimizerConfig()
    overrides = {}
    if rep is not None:
        overrides["rep"] = rep
    if max_workers is not None:
        overrides["max_workers"] = max_workers
    if overrides:
        config = dataclasses.replace(config, **overrides)
    prior = prior or PriorConfig()
    rng = as_generator(seed)

    starts = log_uniform_starts(rng, config.rep, 4, config.start_low, config.start_high)
    logger.info("Fitting BSP model with %d restarts.", config.rep)
    outcomes = run_restarts(penalized_nll, starts, args=(model, prior), config=config)
    best = select_best(outcomes, "BSP fit")

    pars = theta2pars(best.theta)
    system = model.system(pars)
    loglik = system.loglik(model.y)
    logger.info(
        "Selected restart %d: objective %.4f, lam=%.4g, sigma2_u=%.4g, sigma2_a=%.4g, sigma2_e=%.4g.",
        best.index,
        best.value,
        pars.lam,
        pars.sigma2_u,
        pars.sigma2_a,
        pars.sigma2_e,
    )
    return FitResult(
        model=model,
        system=system,
        pars=pars,
        theta=best.theta,
        value=best.value,
        loglik=loglik,
        outcomes=tuple(outcomes),
    )


__all__ = [
    "FitResult",
    "RestartFailure",
    "RestartOutcome",
    "RestartSuccess",
    "as_generator",
    "fit_bsp",
    "penalized_nll",
    "run_restarts",
    "select_best",
]
