import numpy as np
import pytest

from bsp_mortality.data import simulate_bsp
from bsp_mortality.fit import FitResult
from bsp_mortality.kernels import MaternKernel
from bsp_mortality.model import BSPParameters, bsp_model, pars2theta
from bsp_mortality.smoothing import smooth

KNOTS = (4.0, 7.0)
N_AGES = 10
TRUE_PARS = BSPParameters(lam=1.0, sigma2_u=1e-3, sigma2_a=1e-5, sigma2_e=1e-3)


@pytest.fixture
def rng():
    return np.random.default_rng(20240601)


@pytest.fixture(scope="session")
def kernel():
    return MaternKernel(nu=1.5, length_scale=2.0)


@pytest.fixture(scope="session")
def rates(kernel):
    rates, _ = simulate_bsp(
        n_periods=15,
        ages=N_AGES,
        knots=KNOTS,
        pars=TRUE_PARS,
        rng=np.random.default_rng(7),
        kernel=kernel,
    )
    return rates


@pytest.fixture(scope="session")
def model(rates, kernel):
    return bsp_model(rates, KNOTS, kernel=kernel)


@pytest.fixture(scope="session")
def fitted(model):
    """FitResult at the generating parameters, without running the optimizer."""
    system = model.system(TRUE_PARS)
    loglik = system.loglik(model.y)
    return FitResult(
        model=model,
        system=system,
        pars=TRUE_PARS,
        theta=pars2theta(TRUE_PARS),
        value=-loglik,
        loglik=loglik,
    )


@pytest.fixture(scope="session")
def smoothing(fitted):
    return smooth(fitted)
