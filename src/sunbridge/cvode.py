"""ODE sessions: integrating ``y' = f(t, y)``.

A :class:`Session` owns a CVODE-style engine memory. The right-hand side
``rhs(t, y, ydot)`` writes the derivative into ``ydot``; all arrays handed
to callbacks are :class:`~sunbridge.interop.views.ScopedView` objects that
stop working when the callback returns.

The module-level functions prefixed with an underscore are the
trampolines registered with the engine. Each one resolves the session
from the engine's user data token, wraps the engine buffers, calls the
user closure and folds the outcome into the engine's integer status.

Examples
--------
>>> def rhs(t, y, ydot):
...     ydot[0] = -y[0]
>>> with Session.create(Lmm.BDF, Iteration.NEWTON, rhs, [1.0],
...                     linear_solver=linsolv.Dense()) as s:
...     t, outcome = s.advance(1.0)
"""

from typing import Callable, Dict, Optional, Tuple

import numpy as np

from sunbridge import linsolv
from sunbridge.common import (
    AdvanceMode,
    BandRange,
    Outcome,
    default_tolerances,
)
from sunbridge.engine.cvode_mem import CvodeMem
from sunbridge.engine.flags import CallbackKind, CvFlag, Iteration, Lmm, Task
from sunbridge.exceptions import EngineInitFailure, StaleSessionReference
from sunbridge.integrator import ForwardIntegrator, Tolerances
from sunbridge.interop.bridge import run_guarded, run_guarded_bool
from sunbridge.interop.callbacks import JacobianArg, PrecSolveArg, ProblemKind
from sunbridge.interop.views import BandMatrix, DenseMatrix, scoped
from sunbridge.options import IntegratorOptions
from sunbridge.session import resolve
from sunbridge.time_logger import TimeLogger

_OUTCOMES = {
    CvFlag.SUCCESS: Outcome.CONTINUE,
    CvFlag.ROOT_RETURN: Outcome.ROOTS_FOUND,
    CvFlag.TSTOP_RETURN: Outcome.STOP_TIME_REACHED,
}


# ----------------------------------------------------------------------
# Trampolines


def _rhs(token, t, y, ydot):
    session = resolve(token)
    with scoped(y, ydot) as (yv, ydotv):
        return int(run_guarded(session, True, session._rhs_fn, t, yv,
                               ydotv))


def _roots(token, t, y, gout):
    session = resolve(token)
    with scoped(y, gout) as (yv, gv):
        return int(run_guarded(session, False, session._roots_fn, t, yv,
                               gv))


def _dense_jac(token, t, y, fy, jac, tmp1, tmp2, tmp3):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.DENSE_JAC, "jac")
    with scoped(y, fy, DenseMatrix(jac), [tmp1, tmp2, tmp3]) as \
            (yv, fyv, jv, tmp):
        return int(run_guarded(session, True, fn, JacobianArg(t, yv, fyv,
                                                              tmp), jv))


def _band_jac(token, mupper, mlower, t, y, fy, jac, tmp1, tmp2, tmp3):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.BAND_JAC, "jac")
    with scoped(y, fy, BandMatrix(jac, mupper, mlower),
                [tmp1, tmp2, tmp3]) as (yv, fyv, jv, tmp):
        return int(run_guarded(session, True, fn, BandRange(mupper, mlower),
                               JacobianArg(t, yv, fyv, tmp), jv))


def _prec_setup(token, t, y, fy, jok, gamma, tmp1, tmp2, tmp3):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.PREC_SETUP, "prec_setup")
    with scoped(y, fy, [tmp1, tmp2, tmp3]) as (yv, fyv, tmp):
        jcur, status = run_guarded_bool(session, fn,
                                        JacobianArg(t, yv, fyv, tmp),
                                        bool(jok), gamma)
    return int(status), jcur


def _prec_solve(token, t, y, fy, r, z, gamma, delta, lr, tmp):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.PREC_SOLVE, "prec_solve")
    with scoped(y, fy, r, z, tmp) as (yv, fyv, rv, zv, tmpv):
        return int(run_guarded(session, True, fn,
                               JacobianArg(t, yv, fyv, tmpv),
                               PrecSolveArg(rv, gamma, delta, lr == 1), zv))


def _jac_times_vec(token, v, jv, t, y, fy, tmp):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.JAC_TIMES_VEC,
                                 "jac_times_vec")
    with scoped(v, jv, y, fy, tmp) as (vv, jvv, yv, fyv, tmpv):
        return int(run_guarded(session, True, fn,
                               JacobianArg(t, yv, fyv, tmpv), vv, jvv))


def _bbd_local(token, t, y, glocal):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.BBD_LOCAL, "local_fn")
    with scoped(y, glocal) as (yv, gv):
        return int(run_guarded(session, True, fn, t, yv, gv))


def _bbd_comm(token, t, y):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.BBD_COMM, "comm_fn")
    with scoped(y) as yv:
        return int(run_guarded(session, True, fn, t, yv))


# ----------------------------------------------------------------------
# Sessions


class Session(ForwardIntegrator):
    """Forward ODE session.

    Create sessions with :meth:`create`. A session frees its engine memory
    when closed; use it as a context manager or call :meth:`close`.

    Attributes
    ----------
    y
        Solution at the time last returned by :meth:`advance`.
    options
        The :class:`~sunbridge.options.IntegratorOptions` in force.
    table
        Active callback table variant of the linear solver.
    """

    problem = ProblemKind.ODE
    _roots_trampoline = _roots
    _ls_trampolines: Dict[CallbackKind, Callable] = {
        CallbackKind.DENSE_JAC: _dense_jac,
        CallbackKind.BAND_JAC: _band_jac,
        CallbackKind.PREC_SETUP: _prec_setup,
        CallbackKind.PREC_SOLVE: _prec_solve,
        CallbackKind.JAC_TIMES_VEC: _jac_times_vec,
        CallbackKind.BBD_LOCAL: _bbd_local,
        CallbackKind.BBD_COMM: _bbd_comm,
    }

    def __init__(self, mem: CvodeMem, rhs: Callable,
                 time_logger: Optional[TimeLogger] = None) -> None:
        super().__init__(mem, time_logger)
        self._init_forward()
        self._rhs_fn = rhs
        self.y = np.zeros(mem.n)
        self.t = mem.tn
        self.children = []
        self.adjoint = None
        self.quad_fn: Optional[Callable] = None
        self.sens = None

    @classmethod
    def create(
        cls,
        lmm: Lmm,
        iteration: Iteration,
        rhs: Callable,
        y0,
        t0: float = 0.0,
        roots: Optional[Tuple[int, Callable]] = None,
        tolerances: Optional[Tolerances] = None,
        options: Optional[IntegratorOptions] = None,
        linear_solver=None,
        time_logger: Optional[TimeLogger] = None,
    ) -> "Session":
        """Create and initialise a session.

        Parameters
        ----------
        lmm
            ``Lmm.ADAMS`` for non-stiff, ``Lmm.BDF`` for stiff problems.
        iteration
            ``Iteration.NEWTON`` (needs a linear solver, Dense by
            default) or ``Iteration.FUNCTIONAL``.
        rhs
            Right-hand side ``rhs(t, y, ydot)``.
        y0
            Initial state.
        t0
            Initial time.
        roots
            Optional ``(nroots, g)`` with ``g(t, y, gout)`` writing the
            values of ``nroots`` root functions.
        tolerances
            Defaults to ``SStolerances(1e-4, 1e-8)``.
        options
            Optional inputs forwarded to the engine.
        linear_solver
            Linear solver configuration for Newton iteration.
        time_logger
            Logger timing the engine calls.

        Raises
        ------
        EngineInitFailure
            If the engine cannot create or initialise its memory.
        """
        mem = CvodeMem(Lmm(lmm), Iteration(iteration))
        y0 = np.array(y0, dtype=np.float64).ravel()
        flag = mem.init(float(t0), y0)
        if flag != CvFlag.SUCCESS:
            mem.free()
            raise EngineInitFailure(
                f"CVODE could not be initialised (flag {flag})"
            )
        session = cls(mem, rhs, time_logger)
        session.y[:] = y0
        try:
            session._check(session._set_callback(CallbackKind.RHS, _rhs))
            if roots is not None:
                session.root_init(*roots)
            session.set_tolerances(tolerances or default_tolerances())
            session._use_options(options)
            if linear_solver is not None:
                session.set_linear_solver(linear_solver)
            elif Iteration(iteration) == Iteration.NEWTON:
                session.set_linear_solver(linsolv.Dense())
        except BaseException:
            session.close()
            raise
        return session

    def _close_children(self) -> None:
        for child in self.children:
            child._detach()
        self.children.clear()
        if self.adjoint is not None:
            self.adjoint.free()
            self.adjoint = None

    def _replay(self) -> None:
        super()._replay()
        for child in self.children:
            child._replay()

    # Advancing -----------------------------------------------------------

    def advance(self, t_target: float,
                mode: AdvanceMode = AdvanceMode.NORMAL
                ) -> Tuple[float, Outcome]:
        """Integrate towards ``t_target``.

        Parameters
        ----------
        t_target
            Next time at which a solution is desired. In
            ``AdvanceMode.ONE_STEP`` it only sets the direction of the
            first step.
        mode
            Stop at ``t_target`` or after one internal step.

        Returns
        -------
        t_reached, outcome
            Time of the solution now in :attr:`y`, and why the engine
            returned.

        Raises
        ------
        SolverError
            A subclass matching the engine's failure flag.
        Exception
            Any exception raised by a callback, replayed unchanged.
        """
        self._require_open()
        mode = AdvanceMode(mode)
        flag, t = self._engine_call(
            "cvode_advance", self._mem.advance, float(t_target), self.y,
            Task(mode), t_target=float(t_target), mode=mode.name)
        self._check(flag)
        self.t = t
        outcome = _OUTCOMES.get(flag, Outcome.CONTINUE)
        self._report_outcome(t, outcome)
        return t, outcome

    def solve_normal(self, t_target: float) -> Tuple[float, Outcome]:
        return self.advance(t_target, AdvanceMode.NORMAL)

    def solve_one_step(self, t_target: float) -> Tuple[float, Outcome]:
        return self.advance(t_target, AdvanceMode.ONE_STEP)

    def get_y(self) -> np.ndarray:
        """Copy of the solution last returned by :meth:`advance`."""
        self._require_open()
        return self.y.copy()

    def reinit(self, t0: float, y0, roots: Optional[Tuple[int, Callable]]
               = None, linear_solver=None) -> None:
        """Restart the integration at ``(t0, y0)``.

        Callbacks, tolerances and the linear solver are kept unless
        replaced through ``roots`` or ``linear_solver``.

        Raises
        ------
        ValueError
            If ``y0`` does not have the session's problem size.
        """
        self._guard("reinit")
        y0 = np.array(y0, dtype=np.float64).ravel()
        if y0.shape[0] != self._mem.n:
            raise ValueError(
                f"y0 has {y0.shape[0]} components, expected {self._mem.n}"
            )
        self._check(self._mem.reinit(float(t0), y0))
        self.y[:] = y0
        self.t = float(t0)
        if roots is not None:
            self.root_init(*roots)
        if linear_solver is not None:
            self.set_linear_solver(linear_solver)

    # Statistics ----------------------------------------------------------

    def get_num_rhs_evals(self) -> int:
        return self.get_stats()["num_rhs_evals"]

    def get_work_space(self) -> Tuple[int, int]:
        return self.get_stats()["work_space"]

    def get_est_local_errors(self) -> np.ndarray:
        self._require_open()
        out = np.zeros(self._mem.n)
        self._check(self._mem.get_est_local_errors(out))
        return out

    # Backward problems ---------------------------------------------------

    def _backward(self, which: int):
        """Backward session for the engine's problem index ``which``."""
        for child in self.children:
            if child.which == which:
                return child
        raise StaleSessionReference(
            f"no backward problem {which} is attached to {self!r}"
        )
