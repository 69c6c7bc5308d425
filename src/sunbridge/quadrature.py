"""Quadratures integrated alongside an ODE session.

Quadrature variables ``yq`` satisfy ``yq' = fq(t, y)``: they depend on
the state but never feed back into it, so the engine integrates them
without including them in the nonlinear system. ``fq(t, y, yqdot)``
writes the derivatives into ``yqdot`` and may raise
:class:`~sunbridge.exceptions.RecoverableFailure`.

Every function except :func:`init` also accepts a
:class:`~sunbridge.adjoint.BackwardSession` whose quadrature was started
with :func:`sunbridge.adjoint.quad_init`.
"""

from typing import Callable, Tuple, Union

import numpy as np
from attrs import frozen

from sunbridge.common import SStolerances, SVtolerances, as_vector
from sunbridge.engine.flags import CallbackKind, CvFlag
from sunbridge.exceptions import QuadNotInitialized
from sunbridge.interop.bridge import run_guarded
from sunbridge.interop.callbacks import ProblemKind
from sunbridge.interop.views import scoped
from sunbridge.session import resolve


@frozen
class NoStepSizeControl:
    """Leave the quadratures out of the local error test."""


QuadTolerances = Union[NoStepSizeControl, SStolerances, SVtolerances]


def _quad_rhs(token, t, y, yqdot):
    session = resolve(token)
    with scoped(y, yqdot) as (yv, qv):
        return int(run_guarded(session, True, session.quad_fn, t, yv, qv))


def init(session, fq: Callable, yq0) -> None:
    """Start integrating quadratures with initial values ``yq0``.

    The quadratures are left out of error control until
    :func:`set_tolerances` says otherwise.
    """
    if session.problem is not ProblemKind.ODE:
        raise TypeError(
            "backward quadratures are started with "
            "sunbridge.adjoint.quad_init"
        )
    session._require_open()
    yq0 = as_vector(yq0, "yq0")
    session.quad_fn = fq
    session._check(session._set_callback(CallbackKind.QUAD_RHS, _quad_rhs))
    session._check(session.mem.quad_init(yq0))


def reinit(session, yq0) -> None:
    """Restart the quadratures from ``yq0``, keeping ``fq``."""
    session._guard("quadrature.reinit")
    session._check(session.mem.quad_reinit(as_vector(yq0, "yq0")))


def set_tolerances(session, tolerances: QuadTolerances) -> None:
    """Include the quadratures in the error test, or leave them out."""
    mem = session.mem
    if isinstance(tolerances, NoStepSizeControl):
        session._check(mem.quad_tolerances(None, None))
    elif isinstance(tolerances, (SStolerances, SVtolerances)):
        session._check(mem.quad_tolerances(tolerances.rtol,
                                           tolerances.atol))
    else:
        raise TypeError(
            f"unsupported quadrature tolerances {type(tolerances).__name__}"
        )


def _size(session) -> int:
    quad = session.mem.quad
    if quad is None:
        raise QuadNotInitialized(CvFlag.NO_QUAD,
                                 "quadrature integration is not active")
    return quad.n


def get(session) -> Tuple[np.ndarray, float]:
    """Quadratures at the time last reached, and that time."""
    out = np.zeros(_size(session))
    flag, t = session.mem.get_quad(out)
    session._check(flag)
    return out, t


def get_dky(session, t: float, k: int) -> np.ndarray:
    """``k``-th derivative of the interpolated quadratures at ``t``."""
    out = np.zeros(_size(session))
    session._check(session.mem.get_quad_dky(float(t), int(k), out))
    return out


def get_stats(session) -> dict:
    """``rhs_evals`` and ``err_test_fails`` of the quadratures."""
    _size(session)
    return dict(session.mem.quad_stats())


def get_num_rhs_evals(session) -> int:
    return get_stats(session)["rhs_evals"]


def get_num_err_test_fails(session) -> int:
    return get_stats(session)["err_test_fails"]
