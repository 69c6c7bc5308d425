"""Adjoint sensitivity analysis on top of a forward ODE session.

The forward session is integrated with :func:`forward_normal` or
:func:`forward_one_step`, which record the trajectory. Backward problems
created with :func:`init_backward` are then integrated from the final
time towards the initial one by :func:`backward_normal`, with the forward
state interpolated from the recording.

A :class:`BackwardSession` belongs to its forward session. It holds only
a weak reference to it and the engine index of its problem; it cannot be
closed on its own and stops working as soon as the forward session is
closed or collected. Backward callbacks receive the interpolated forward
state ``y`` before the backward state ``yb``:

* right-hand side ``fb(t, y, yb, ybdot)``, or with forward
  sensitivities ``fbs(t, y, ys, yb, ybdot)``;
* quadrature ``fqb(t, y, yb, qbdot)`` or ``fqbs(t, y, ys, yb, qbdot)``;
* linear solver callbacks as for forward sessions, with a
  :class:`~sunbridge.interop.callbacks.BackwardJacobianArg`; banded and
  band-block-diagonal local functions take ``(t, y, yb, gb)`` and the
  communication function ``(t, y, yb)``.
"""

import weakref
from enum import IntEnum
from typing import Callable, Dict, Optional, Tuple, Union

import numpy as np
from attrs import field, frozen, validators

from sunbridge import linsolv
from sunbridge.common import (
    AdvanceMode,
    BandRange,
    Outcome,
    SStolerances,
    SVtolerances,
    as_vector,
)
from sunbridge.engine.adjoint_mem import AdjointMem
from sunbridge.engine.flags import (
    BACKWARD_KINDS,
    CallbackKind,
    CvFlag,
    Iteration,
    Lmm,
    Task,
)
from sunbridge.exceptions import (
    AdjointNotInitialized,
    SessionClosedError,
    SunbridgeError,
)
from sunbridge.integrator import IntegratorSession
from sunbridge.interop.bridge import run_guarded, run_guarded_bool
from sunbridge.interop.callbacks import (
    BackwardJacobianArg,
    PrecSolveArg,
    ProblemKind,
)
from sunbridge.interop.registry import default_registry
from sunbridge.interop.views import BandMatrix, DenseMatrix, scoped
from sunbridge.options import IntegratorOptions
from sunbridge.session import resolve
from sunbridge.time_logger import TimeLogger


class Interpolation(IntEnum):
    """Reconstruction of the forward state between recorded steps."""

    HERMITE = 1
    POLYNOMIAL = 2


@frozen
class NoSens:
    """Backward function that does not use the forward sensitivities."""

    fn: Callable = field(validator=validators.is_callable())


@frozen
class WithSens:
    """Backward function that also receives the forward sensitivities."""

    fn: Callable = field(validator=validators.is_callable())


BackwardFn = Union[NoSens, WithSens]

_OUTCOMES = {
    CvFlag.SUCCESS: Outcome.CONTINUE,
    CvFlag.ROOT_RETURN: Outcome.ROOTS_FOUND,
    CvFlag.TSTOP_RETURN: Outcome.STOP_TIME_REACHED,
}

#: Forward callback kind to the kind registered for a backward problem.
_BACKWARD_KIND: Dict[CallbackKind, CallbackKind] = {
    forward: backward for backward, forward in BACKWARD_KINDS.items()
    if backward not in (CallbackKind.B_RHS_SENS,
                        CallbackKind.B_QUAD_RHS_SENS)
}


# ----------------------------------------------------------------------
# Trampolines
#
# The engine calls backward callbacks with the forward session's token
# and the index of the backward problem.


def _child(token, which):
    return resolve(token)._backward(which)


def _b_rhs(token, which, t, y, yb, ybdot):
    child = _child(token, which)
    with scoped(y, yb, ybdot) as (yv, ybv, outv):
        return int(run_guarded(child, True, child._rhs_fn, t, yv, ybv,
                               outv))


def _b_rhs_sens(token, which, t, y, ys, yb, ybdot):
    child = _child(token, which)
    with scoped(y, list(ys), yb, ybdot) as (yv, ysv, ybv, outv):
        return int(run_guarded(child, True, child._rhs_fn, t, yv, ysv, ybv,
                               outv))


def _b_quad_rhs(token, which, t, y, yb, qbdot):
    child = _child(token, which)
    with scoped(y, yb, qbdot) as (yv, ybv, outv):
        return int(run_guarded(child, True, child.quad_fn, t, yv, ybv,
                               outv))


def _b_quad_rhs_sens(token, which, t, y, ys, yb, qbdot):
    child = _child(token, which)
    with scoped(y, list(ys), yb, qbdot) as (yv, ysv, ybv, outv):
        return int(run_guarded(child, True, child.quad_fn, t, yv, ysv, ybv,
                               outv))


def _b_dense_jac(token, which, t, y, yb, fyb, jac, tmp1, tmp2, tmp3):
    child = _child(token, which)
    fn = child._table_callback(CallbackKind.DENSE_JAC, "jac")
    with scoped(y, yb, fyb, DenseMatrix(jac), [tmp1, tmp2, tmp3]) as \
            (yv, ybv, fybv, jv, tmp):
        arg = BackwardJacobianArg(t, yv, ybv, fybv, tmp)
        return int(run_guarded(child, True, fn, arg, jv))


def _b_band_jac(token, which, mupper, mlower, t, y, yb, fyb, jac, tmp1,
                tmp2, tmp3):
    child = _child(token, which)
    fn = child._table_callback(CallbackKind.BAND_JAC, "jac")
    with scoped(y, yb, fyb, BandMatrix(jac, mupper, mlower),
                [tmp1, tmp2, tmp3]) as (yv, ybv, fybv, jv, tmp):
        arg = BackwardJacobianArg(t, yv, ybv, fybv, tmp)
        return int(run_guarded(child, True, fn, BandRange(mupper, mlower),
                               arg, jv))


def _b_prec_setup(token, which, t, y, yb, fyb, jok, gamma, tmp1, tmp2,
                  tmp3):
    child = _child(token, which)
    fn = child._table_callback(CallbackKind.PREC_SETUP, "prec_setup")
    with scoped(y, yb, fyb, [tmp1, tmp2, tmp3]) as (yv, ybv, fybv, tmp):
        jcur, status = run_guarded_bool(
            child, fn, BackwardJacobianArg(t, yv, ybv, fybv, tmp),
            bool(jok), gamma)
    return int(status), jcur


def _b_prec_solve(token, which, t, y, yb, fyb, r, z, gamma, delta, lr,
                  tmp):
    child = _child(token, which)
    fn = child._table_callback(CallbackKind.PREC_SOLVE, "prec_solve")
    with scoped(y, yb, fyb, r, z, tmp) as (yv, ybv, fybv, rv, zv, tmpv):
        return int(run_guarded(
            child, True, fn, BackwardJacobianArg(t, yv, ybv, fybv, tmpv),
            PrecSolveArg(rv, gamma, delta, lr == 1), zv))


def _b_jac_times_vec(token, which, v, jv, t, y, yb, fyb, tmp):
    child = _child(token, which)
    fn = child._table_callback(CallbackKind.JAC_TIMES_VEC, "jac_times_vec")
    with scoped(v, jv, y, yb, fyb, tmp) as (vv, jvv, yv, ybv, fybv, tmpv):
        return int(run_guarded(
            child, True, fn, BackwardJacobianArg(t, yv, ybv, fybv, tmpv),
            vv, jvv))


def _b_bbd_local(token, which, t, y, yb, gb):
    child = _child(token, which)
    fn = child._table_callback(CallbackKind.BBD_LOCAL, "local_fn")
    with scoped(y, yb, gb) as (yv, ybv, gv):
        return int(run_guarded(child, True, fn, t, yv, ybv, gv))


def _b_bbd_comm(token, which, t, y, yb):
    child = _child(token, which)
    fn = child._table_callback(CallbackKind.BBD_COMM, "comm_fn")
    with scoped(y, yb) as (yv, ybv):
        return int(run_guarded(child, True, fn, t, yv, ybv))


# ----------------------------------------------------------------------
# Backward sessions


class BackwardSession(IntegratorSession):
    """One backward problem of a forward session.

    Obtained from :func:`init_backward`; never constructed directly.

    Attributes
    ----------
    which
        Index of the problem in the engine.
    uses_sens
        Whether the right-hand side receives forward sensitivities.
    """

    problem = ProblemKind.BACKWARD_ODE
    module = "CVODEA"
    unsupported_options = frozenset({"stop_time"})
    _ls_trampolines = {
        CallbackKind.DENSE_JAC: _b_dense_jac,
        CallbackKind.BAND_JAC: _b_band_jac,
        CallbackKind.PREC_SETUP: _b_prec_setup,
        CallbackKind.PREC_SOLVE: _b_prec_solve,
        CallbackKind.JAC_TIMES_VEC: _b_jac_times_vec,
        CallbackKind.BBD_LOCAL: _b_bbd_local,
        CallbackKind.BBD_COMM: _b_bbd_comm,
    }

    def __init__(self, parent, which: int, mem, rhs: BackwardFn,
                 time_logger: Optional[TimeLogger] = None) -> None:
        # The forward session owns the engine memory; no finalizer here.
        self._init_state(mem, time_logger or parent.time_logger)
        self._parent = weakref.ref(parent)
        self.which = which
        self._rhs_fn = rhs.fn
        self.uses_sens = isinstance(rhs, WithSens)
        self.quad_fn: Optional[Callable] = None
        self.options = IntegratorOptions()

    @property
    def parent(self):
        """The forward session; raises once it is closed."""
        self._require_open()
        return self._parent()

    @property
    def closed(self) -> bool:
        parent = self._parent()
        return self._closed or parent is None or parent.closed

    def _require_open(self) -> None:
        if self.closed:
            raise SessionClosedError(
                "BackwardSession is no longer usable: its forward session "
                "has been closed"
            )

    def _root(self):
        return self._parent()

    def _detach(self) -> None:
        """Called by the forward session when it frees the memory."""
        if self._closed:
            return
        self._closed = True
        default_registry.release(self._token)
        self._mem = None

    def close(self) -> None:
        raise SunbridgeError(
            "a BackwardSession is closed together with its forward session"
        )

    def __enter__(self):
        raise TypeError("BackwardSession is not a context manager; use "
                        "its forward session instead")

    def _set_callback(self, kind: CallbackKind,
                      fn: Optional[Callable]) -> int:
        adj = self._parent().adjoint
        return adj.set_callback_b(self.which, _BACKWARD_KIND[kind], fn)

    # ---------------------------------------------------------------------

    def reinit(self, tb0: float, yb0, linear_solver=None) -> None:
        """Restart the problem at ``(tb0, yb0)``, keeping its callbacks."""
        root = self._guard("reinit")
        yb0 = as_vector(yb0, "yb0")
        if yb0.shape[0] != self._mem.n:
            raise ValueError(
                f"yb0 has {yb0.shape[0]} components, expected "
                f"{self._mem.n}"
            )
        root._check(root.adjoint.reinit_b(self.which, float(tb0), yb0))
        if linear_solver is not None:
            self.set_linear_solver(linear_solver)

    def get(self) -> Tuple[np.ndarray, float]:
        """Backward state at the time last reached, and that time."""
        self._require_open()
        out = np.zeros(self._mem.n)
        flag, t = self._parent().adjoint.get_b(self.which, out)
        self._check(flag)
        return out, t

    def get_num_rhs_evals(self) -> int:
        return self.get_stats()["num_rhs_evals"]

    def __repr__(self) -> str:
        state = "closed" if self.closed else f"which={self.which}"
        return f"<BackwardSession {state}>"


# ----------------------------------------------------------------------
# Forward phase


def _adjoint(session) -> AdjointMem:
    session._require_open()
    if session.adjoint is None:
        raise AdjointNotInitialized(
            CvFlag.NO_ADJ, "adjoint.init has not been called on the session"
        )
    return session.adjoint


def init(session, nd: int,
         interpolation: Interpolation = Interpolation.HERMITE) -> None:
    """Start recording the forward trajectory every ``nd`` steps.

    Re-initialising discards the previous recording and every backward
    problem created from it.
    """
    session._guard("adjoint.init")
    if int(nd) < 1:
        raise ValueError("nd must be at least 1")
    session._close_children()
    session.adjoint = AdjointMem(session.mem, int(nd),
                                 int(Interpolation(interpolation)))


def set_no_sensitivity(session) -> None:
    """Do not record forward sensitivities for the backward problems."""
    session._check(_adjoint(session).set_no_sens())


def _forward(session, t_target: float,
             mode: AdvanceMode) -> Tuple[float, int, Outcome]:
    adj = _adjoint(session)
    flag, t, ncheck = session._engine_call(
        "adjoint_forward", adj.forward_advance, float(t_target), session.y,
        Task(mode), t_target=float(t_target), mode=mode.name)
    session._check(flag)
    session.t = t
    outcome = _OUTCOMES.get(flag, Outcome.CONTINUE)
    session._report_outcome(t, outcome)
    return t, ncheck, outcome


def forward_normal(session, t_target: float) -> Tuple[float, int, Outcome]:
    """Integrate the forward problem to ``t_target`` while recording.

    Returns
    -------
    t_reached, ncheck, outcome
        As :meth:`sunbridge.cvode.Session.advance`, plus the number of
        checkpoints recorded so far.
    """
    return _forward(session, t_target, AdvanceMode.NORMAL)


def forward_one_step(session,
                     t_target: float) -> Tuple[float, int, Outcome]:
    return _forward(session, t_target, AdvanceMode.ONE_STEP)


def get_y(session, t: float) -> np.ndarray:
    """Forward state interpolated from the recording at ``t``."""
    adj = _adjoint(session)
    out = np.zeros(session.mem.n)
    session._check(adj.get_forward_state(float(t), out))
    return out


def get_num_checkpoints(session) -> int:
    return _adjoint(session).num_checkpoints


# ----------------------------------------------------------------------
# Backward phase


def init_backward(
    session,
    lmm: Lmm,
    iteration: Iteration,
    tolerances: Union[SStolerances, SVtolerances],
    fb: BackwardFn,
    tb0: float,
    yb0,
    linear_solver=None,
    options: Optional[IntegratorOptions] = None,
) -> BackwardSession:
    """Create a backward problem starting at ``(tb0, yb0)``.

    ``tb0`` must lie within the interval covered by the forward
    integration. Newton iteration uses a dense solver unless
    ``linear_solver`` says otherwise.

    Raises
    ------
    NoForwardCall
        If the forward problem has not been integrated yet.
    BadFinalTime
        If ``tb0`` lies outside the recorded interval.
    """
    if not isinstance(fb, (NoSens, WithSens)):
        raise TypeError("fb must be NoSens or WithSens")
    if not isinstance(tolerances, (SStolerances, SVtolerances)):
        raise TypeError(
            f"unsupported tolerances {type(tolerances).__name__}"
        )
    adj = _adjoint(session)
    session._guard("adjoint.init_backward")
    yb0 = as_vector(yb0, "yb0")
    flag, which = adj.create_b(Lmm(lmm), Iteration(iteration))
    session._check(flag)
    child = BackwardSession(session, which, adj.backward_mem(which), fb)
    kind = CallbackKind.B_RHS_SENS if child.uses_sens else CallbackKind.B_RHS
    trampoline = _b_rhs_sens if child.uses_sens else _b_rhs
    try:
        session._check(adj.set_callback_b(which, kind, trampoline))
        session._check(adj.init_b(which, float(tb0), yb0, child.uses_sens))
        child.set_tolerances(tolerances)
        child._use_options(options)
        if linear_solver is not None:
            child.set_linear_solver(linear_solver)
        elif Iteration(iteration) == Iteration.NEWTON:
            child.set_linear_solver(linsolv.Dense())
    except BaseException:
        # The engine keeps the problem slot, but backward() skips it.
        adj.discard_b(which)
        child._detach()
        raise
    session.children.append(child)
    return child


def quad_init(child: BackwardSession, fqb: BackwardFn, yqb0) -> None:
    """Integrate quadratures alongside the backward problem.

    ``fqb`` must use the forward sensitivities exactly when the backward
    right-hand side does. The other :mod:`sunbridge.quadrature`
    functions work on ``child`` afterwards.
    """
    if not isinstance(fqb, (NoSens, WithSens)):
        raise TypeError("fqb must be NoSens or WithSens")
    if isinstance(fqb, WithSens) != child.uses_sens:
        raise ValueError(
            "backward quadratures must use forward sensitivities exactly "
            "when the backward right-hand side does"
        )
    child._require_open()
    yqb0 = as_vector(yqb0, "yqb0")
    adj = child._parent().adjoint
    child.quad_fn = fqb.fn
    if child.uses_sens:
        kind, trampoline = CallbackKind.B_QUAD_RHS_SENS, _b_quad_rhs_sens
    else:
        kind, trampoline = CallbackKind.B_QUAD_RHS, _b_quad_rhs
    child._check(child._mem.quad_init(yqb0))
    child._check(adj.set_callback_b(child.which, kind, trampoline))


def _backward(session, t_target: float, mode: AdvanceMode) -> None:
    adj = _adjoint(session)
    flag = session._engine_call(
        "adjoint_backward", adj.backward, float(t_target), Task(mode),
        t_target=float(t_target), mode=mode.name)
    session._check(flag)


def backward_normal(session, t_target: float) -> None:
    """Integrate every backward problem of ``session`` to ``t_target``.

    Read the results with :meth:`BackwardSession.get`.
    """
    _backward(session, t_target, AdvanceMode.NORMAL)


def backward_one_step(session, t_target: float) -> None:
    """Take one internal step of every backward problem."""
    _backward(session, t_target, AdvanceMode.ONE_STEP)
