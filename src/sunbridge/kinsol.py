"""Nonlinear systems ``F(u) = 0`` solved by Newton iteration.

The system function ``sysfn(u, fval)`` writes ``F(u)`` into ``fval`` and
may raise :class:`~sunbridge.exceptions.RecoverableFailure` to make the
solver shorten its step. Linear solver callbacks receive the current
iterate as a :class:`~sunbridge.interop.callbacks.KinJacobianArg`:

* Jacobians ``jac(arg, J)`` and ``jac(bandrange, arg, J)``;
* preconditioner ``setup(arg, scale)`` (no return value) and
  ``solve(arg, scale, v)``, where ``scale`` is a
  :class:`~sunbridge.interop.callbacks.KinSolveArg` and ``v`` holds the
  right-hand side on entry and the solution on return;
* Jacobian-vector products ``jtv(v, Jv, u, new_u)`` returning whether
  ``u`` changed since the previous call;
* band-block-diagonal functions ``local(u, g)`` and ``comm(u)``.

Only right preconditioning is available.
"""

from enum import Enum
from typing import Callable, Dict, Optional, Set, Tuple

import attrs
import numpy as np

from sunbridge import linsolv
from sunbridge.common import BandRange, as_vector
from sunbridge.engine.flags import CallbackKind, KinFlag, KinStrategy
from sunbridge.engine.kinsol_mem import KinsolMem
from sunbridge.exceptions import KINSOL_ERRORS, EngineInitFailure
from sunbridge.interop.bridge import run_guarded, run_guarded_bool
from sunbridge.interop.callbacks import (
    KinJacobianArg,
    KinSolveArg,
    ProblemKind,
)
from sunbridge.interop.views import BandMatrix, DenseMatrix, scoped
from sunbridge.options import NonlinearOptions
from sunbridge.session import BaseSession, ErrorReportingMixin, resolve
from sunbridge.time_logger import TimeLogger


class Result(Enum):
    """Successful outcomes of :meth:`Session.solve`."""

    SUCCESS = "success"
    INITIAL_GUESS_OK = "initial_guess_ok"
    STOPPED_ON_STEP_TOL = "stopped_on_step_tol"


_RESULTS = {
    KinFlag.SUCCESS: Result.SUCCESS,
    KinFlag.INITIAL_GUESS_OK: Result.INITIAL_GUESS_OK,
    KinFlag.STEP_LT_STPTOL: Result.STOPPED_ON_STEP_TOL,
}


# ----------------------------------------------------------------------
# Trampolines


def _sysfn(token, u, fval):
    session = resolve(token)
    with scoped(u, fval) as (uv, fv):
        return int(run_guarded(session, True, session._sysfn, uv, fv))


def _dense_jac(token, u, fu, jac, tmp1, tmp2):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.DENSE_JAC, "jac")
    with scoped(u, fu, DenseMatrix(jac), [tmp1, tmp2]) as \
            (uv, fuv, jv, tmp):
        return int(run_guarded(session, True, fn,
                               KinJacobianArg(uv, fuv, tmp), jv))


def _band_jac(token, mupper, mlower, u, fu, jac, tmp1, tmp2):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.BAND_JAC, "jac")
    with scoped(u, fu, BandMatrix(jac, mupper, mlower), [tmp1, tmp2]) as \
            (uv, fuv, jv, tmp):
        return int(run_guarded(session, True, fn, BandRange(mupper, mlower),
                               KinJacobianArg(uv, fuv, tmp), jv))


def _prec_setup(token, u, uscale, fu, fscale, tmp1, tmp2):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.PREC_SETUP, "prec_setup")
    with scoped(u, uscale, fu, fscale, [tmp1, tmp2]) as \
            (uv, usv, fuv, fsv, tmp):
        return int(run_guarded(session, True, fn,
                               KinJacobianArg(uv, fuv, tmp),
                               KinSolveArg(usv, fsv)))


def _prec_solve(token, u, uscale, fu, fscale, v, tmp):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.PREC_SOLVE, "prec_solve")
    with scoped(u, uscale, fu, fscale, v, tmp) as \
            (uv, usv, fuv, fsv, vv, tmpv):
        return int(run_guarded(session, True, fn,
                               KinJacobianArg(uv, fuv, tmpv),
                               KinSolveArg(usv, fsv), vv))


def _jac_times_vec(token, v, jv, u, new_u):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.JAC_TIMES_VEC,
                                 "jac_times_vec")
    with scoped(v, jv, u) as (vv, jvv, uv):
        changed, status = run_guarded_bool(session, fn, vv, jvv, uv,
                                           bool(new_u))
    return int(status), changed


def _bbd_local(token, u, glocal):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.BBD_LOCAL, "local_fn")
    with scoped(u, glocal) as (uv, gv):
        return int(run_guarded(session, True, fn, uv, gv))


def _bbd_comm(token, u):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.BBD_COMM, "comm_fn")
    with scoped(u) as uv:
        return int(run_guarded(session, True, fn, uv))


# ----------------------------------------------------------------------
# Sessions


class Session(ErrorReportingMixin, BaseSession):
    """Nonlinear solver session.

    Attributes
    ----------
    options
        The :class:`~sunbridge.options.NonlinearOptions` in force.
    """

    problem = ProblemKind.NONLINEAR
    flag_names = KinFlag
    error_table = KINSOL_ERRORS
    module = "KINSOL"
    _ls_trampolines: Dict[CallbackKind, Callable] = {
        CallbackKind.DENSE_JAC: _dense_jac,
        CallbackKind.BAND_JAC: _band_jac,
        CallbackKind.PREC_SETUP: _prec_setup,
        CallbackKind.PREC_SOLVE: _prec_solve,
        CallbackKind.JAC_TIMES_VEC: _jac_times_vec,
        CallbackKind.BBD_LOCAL: _bbd_local,
        CallbackKind.BBD_COMM: _bbd_comm,
    }

    def __init__(self, mem: KinsolMem, sysfn: Callable,
                 time_logger: Optional[TimeLogger] = None) -> None:
        super().__init__(mem, time_logger)
        self._sysfn = sysfn
        self.options = NonlinearOptions()

    @classmethod
    def create(
        cls,
        sysfn: Callable,
        u0,
        linear_solver=None,
        options: Optional[NonlinearOptions] = None,
        time_logger: Optional[TimeLogger] = None,
    ) -> "Session":
        """Create a solver for systems of the size of ``u0``.

        ``u0`` only fixes the problem size; the initial guess is passed
        to :meth:`solve`. A dense linear solver is attached unless
        ``linear_solver`` says otherwise.
        """
        mem = KinsolMem()
        u0 = as_vector(u0, "u0")
        flag = mem.init(u0)
        if flag != KinFlag.SUCCESS:
            mem.free()
            raise EngineInitFailure(
                f"KINSOL could not be initialised (flag {flag})"
            )
        session = cls(mem, sysfn, time_logger)
        try:
            session._check(session._set_callback(CallbackKind.SYSFN,
                                                 _sysfn))
            session._use_options(options)
            session.set_linear_solver(linear_solver or linsolv.Dense())
        except BaseException:
            session.close()
            raise
        return session

    @property
    def n(self) -> int:
        return self.mem.n

    # Options -------------------------------------------------------------

    def set_options(self, updates_dict: dict = None, silent: bool = False,
                    **kwargs) -> Set[str]:
        """Update :attr:`options` and forward the changes to the engine.

        Parameters
        ----------
        updates_dict : dict, optional
            Mapping of option names to new values.
        silent : bool, default=False
            Suppress errors for unrecognised parameters.
        **kwargs
            Additional options to update.

        Returns
        -------
        set[str]
            Names of options that were recognised and updated.
        """
        self._require_open()
        recognized = self.options.update(updates_dict, silent=silent,
                                         **kwargs)
        self._apply_options(recognized)
        return recognized

    def _apply_options(self, names) -> None:
        for name in sorted(names):
            value = getattr(self.options, name)
            if name == "constraints":
                self._check(self._mem.set_constraints(value))
            elif value is not None:
                self._check(self._mem.set_option(name, value))

    def _use_options(self, options: Optional[NonlinearOptions]) -> None:
        self.options = (NonlinearOptions() if options is None
                        else attrs.evolve(options))
        names = {name for name, _ in self.options.engine_items()}
        if self.options.constraints is not None:
            names.add("constraints")
        self._apply_options(names)

    def set_constraints(self, constraints) -> None:
        """Per-component sign constraints; see
        :class:`~sunbridge.options.NonlinearOptions`."""
        self.set_options(constraints=constraints)

    def set_linear_solver(self, config) -> None:
        """Attach a linear solver; see :func:`sunbridge.linsolv.attach`."""
        linsolv.attach(self, config)

    # Solving -------------------------------------------------------------

    def solve(self, u, linesearch: bool = False, u_scale=None,
              f_scale=None) -> Result:
        """Solve ``F(u) = 0`` starting from the guess in ``u``.

        Parameters
        ----------
        u
            Float64 array holding the initial guess; overwritten with the
            solution.
        linesearch
            Shorten Newton steps by a line search.
        u_scale, f_scale
            Positive scaling of ``u`` and ``F(u)``; ones by default.

        Raises
        ------
        SolverError
            A subclass matching the engine's failure flag.
        """
        self._require_open()
        n = self._mem.n
        if not isinstance(u, np.ndarray) or u.dtype != np.float64 or \
                u.shape != (n,):
            raise TypeError(
                f"u must be a float64 numpy array of shape ({n},)"
            )
        u_scale = np.ones(n) if u_scale is None else as_vector(u_scale)
        f_scale = np.ones(n) if f_scale is None else as_vector(f_scale)
        strategy = KinStrategy.LINESEARCH if linesearch else KinStrategy.NONE
        flag = self._engine_call(
            "kinsol_solve", self._mem.solve, u, strategy, u_scale, f_scale,
            strategy=strategy.name)
        self._check(flag)
        return _RESULTS.get(flag, Result.SUCCESS)

    # Statistics ----------------------------------------------------------

    def get_stats(self) -> dict:
        self._require_open()
        return dict(self._mem.stats())

    def get_num_func_evals(self) -> int:
        return self.get_stats()["func_evals"]

    def get_num_nonlin_solv_iters(self) -> int:
        return self.get_stats()["nonlin_solv_iters"]

    def get_num_beta_cond_fails(self) -> int:
        return self.get_stats()["beta_cond_fails"]

    def get_num_backtrack_ops(self) -> int:
        return self.get_stats()["backtrack_ops"]

    def get_func_norm(self) -> float:
        """Scaled norm of ``F`` at the last iterate."""
        return self.get_stats()["func_norm"]

    def get_step_length(self) -> float:
        return self.get_stats()["step_length"]

    def get_num_lin_solv_setups(self) -> int:
        return self.get_stats()["lin_solv_setups"]

    def get_work_space(self) -> Tuple[int, int]:
        return linsolv.get_work_space(self)
