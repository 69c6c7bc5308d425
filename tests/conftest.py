import gc

import numpy as np
import pytest

from sunbridge import SStolerances, cvode, ida, kinsol, linsolv
from sunbridge.engine.flags import Iteration, Lmm
from sunbridge.interop.registry import default_registry
from tests.system_fixtures import (
    build_decay_system,
    build_heat_system,
    build_index_one_dae,
    build_nonlinear_system,
    build_robertson_system,
    build_three_state_linear_system,
)

np.set_printoptions(linewidth=120, precision=12)


# --------------------------------------------------------------------------- #
#                               Problem fixtures                              #
# --------------------------------------------------------------------------- #
@pytest.fixture(scope="session")
def linear_system():
    return build_three_state_linear_system()


@pytest.fixture(scope="session")
def decay_system():
    return build_decay_system()


@pytest.fixture(scope="session")
def robertson_system():
    return build_robertson_system()


@pytest.fixture(scope="session")
def heat_system():
    return build_heat_system()


@pytest.fixture(scope="session")
def dae_system():
    return build_index_one_dae()


@pytest.fixture(scope="session")
def nonlinear_system():
    return build_nonlinear_system()


@pytest.fixture(scope="session")
def tight_tolerances():
    return SStolerances(1.0e-6, 1.0e-9)


# --------------------------------------------------------------------------- #
#                               Session fixtures                              #
# --------------------------------------------------------------------------- #
@pytest.fixture
def ode_session(linear_system):
    """BDF/Newton session on the linear system with its exact Jacobian."""
    session = cvode.Session.create(
        Lmm.BDF, Iteration.NEWTON, linear_system.rhs, linear_system.y0,
        linear_solver=linsolv.Dense(jac=linear_system.jac),
    )
    yield session
    session.close()


@pytest.fixture
def decay_session(decay_system):
    """Adams/functional session on scalar decay."""
    session = cvode.Session.create(
        Lmm.ADAMS, Iteration.FUNCTIONAL, decay_system.rhs, decay_system.y0,
        tolerances=SStolerances(1.0e-6, 1.0e-10),
    )
    yield session
    session.close()


@pytest.fixture
def dae_session(dae_system):
    session = ida.Session.create(
        dae_system.res, dae_system.y0, dae_system.yp0,
        tolerances=SStolerances(1.0e-6, 1.0e-9),
        linear_solver=linsolv.Dense(jac=dae_system.jac),
    )
    yield session
    session.close()


@pytest.fixture
def kinsol_session(nonlinear_system):
    session = kinsol.Session.create(
        nonlinear_system.sysfn, np.zeros(nonlinear_system.n),
        linear_solver=linsolv.Dense(jac=nonlinear_system.jac),
    )
    yield session
    session.close()


@pytest.fixture
def collect():
    """Run the garbage collector; returns the live session count after."""

    def _collect():
        gc.collect()
        return len(default_registry)

    return _collect
