"""DAE sessions: integrating ``F(t, y, y') = 0``.

The residual ``res(t, y, yp, r)`` writes ``F`` into ``r``. Other
callbacks follow the ODE ones, with the linearisation point given as a
:class:`~sunbridge.interop.callbacks.DaeJacobianArg`:

* root functions ``g(t, y, yp, gout)``;
* Jacobians ``jac(arg, J)`` and ``jac(bandrange, arg, J)`` of
  ``dF/dy + arg.coef * dF/dy'``;
* preconditioner ``setup(arg)`` (no return value) and
  ``solve(arg, solve_arg, z)`` with a
  :class:`~sunbridge.interop.callbacks.DaePrecSolveArg`;
* Jacobian-vector products ``jtv(arg, v, Jv)``, where ``arg.tmp`` is a
  pair;
* band-block-diagonal functions ``local(t, y, yp, g)`` and
  ``comm(t, y, yp)``.

Only left preconditioning is available, and the ODE-only options
(``max_hnil_warns``, ``stab_lim_det`` and ``min_step``) are rejected.
"""

from enum import IntEnum
from typing import Callable, Dict, Optional, Sequence, Tuple

import numpy as np

from sunbridge import linsolv
from sunbridge.common import (
    AdvanceMode,
    BandRange,
    Outcome,
    as_vector,
    default_tolerances,
)
from sunbridge.engine.flags import CallbackKind, IcOpt, IdaFlag, Task
from sunbridge.engine.ida_mem import IdaMem
from sunbridge.exceptions import IDA_ERRORS, EngineInitFailure
from sunbridge.integrator import ForwardIntegrator, Tolerances
from sunbridge.interop.bridge import run_guarded
from sunbridge.interop.callbacks import (
    DaeJacobianArg,
    DaePrecSolveArg,
    ProblemKind,
)
from sunbridge.interop.views import BandMatrix, DenseMatrix, scoped
from sunbridge.options import IntegratorOptions
from sunbridge.session import resolve
from sunbridge.time_logger import TimeLogger

_OUTCOMES = {
    IdaFlag.SUCCESS: Outcome.CONTINUE,
    IdaFlag.ROOT_RETURN: Outcome.ROOTS_FOUND,
    IdaFlag.TSTOP_RETURN: Outcome.STOP_TIME_REACHED,
}


class VarId(IntEnum):
    """Kind of each component, as passed to :meth:`Session.set_id`."""

    ALGEBRAIC = 0
    DIFFERENTIAL = 1


# ----------------------------------------------------------------------
# Trampolines


def _res(token, t, y, yp, r):
    session = resolve(token)
    with scoped(y, yp, r) as (yv, ypv, rv):
        return int(run_guarded(session, True, session._res_fn, t, yv, ypv,
                               rv))


def _roots(token, t, y, yp, gout):
    session = resolve(token)
    with scoped(y, yp, gout) as (yv, ypv, gv):
        return int(run_guarded(session, False, session._roots_fn, t, yv,
                               ypv, gv))


def _dense_jac(token, t, cj, y, yp, r, jac, tmp1, tmp2, tmp3):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.DENSE_JAC, "jac")
    with scoped(y, yp, r, DenseMatrix(jac), [tmp1, tmp2, tmp3]) as \
            (yv, ypv, rv, jv, tmp):
        return int(run_guarded(session, True, fn,
                               DaeJacobianArg(t, cj, yv, ypv, rv, tmp), jv))


def _band_jac(token, mupper, mlower, t, cj, y, yp, r, jac, tmp1, tmp2,
              tmp3):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.BAND_JAC, "jac")
    with scoped(y, yp, r, BandMatrix(jac, mupper, mlower),
                [tmp1, tmp2, tmp3]) as (yv, ypv, rv, jv, tmp):
        return int(run_guarded(session, True, fn, BandRange(mupper, mlower),
                               DaeJacobianArg(t, cj, yv, ypv, rv, tmp), jv))


def _prec_setup(token, t, y, yp, r, cj, tmp1, tmp2, tmp3):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.PREC_SETUP, "prec_setup")
    with scoped(y, yp, r, [tmp1, tmp2, tmp3]) as (yv, ypv, rv, tmp):
        return int(run_guarded(session, True, fn,
                               DaeJacobianArg(t, cj, yv, ypv, rv, tmp)))


def _prec_solve(token, t, y, yp, r, rvec, z, cj, delta, tmp):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.PREC_SOLVE, "prec_solve")
    with scoped(y, yp, r, rvec, z, tmp) as (yv, ypv, rv, rvecv, zv, tmpv):
        return int(run_guarded(session, True, fn,
                               DaeJacobianArg(t, cj, yv, ypv, rv, tmpv),
                               DaePrecSolveArg(rvecv, delta), zv))


def _jac_times_vec(token, t, y, yp, r, v, jv, cj, tmp1, tmp2):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.JAC_TIMES_VEC,
                                 "jac_times_vec")
    with scoped(y, yp, r, v, jv, [tmp1, tmp2]) as \
            (yv, ypv, rv, vv, jvv, tmp):
        return int(run_guarded(session, True, fn,
                               DaeJacobianArg(t, cj, yv, ypv, rv, tmp),
                               vv, jvv))


def _bbd_local(token, t, y, yp, glocal):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.BBD_LOCAL, "local_fn")
    with scoped(y, yp, glocal) as (yv, ypv, gv):
        return int(run_guarded(session, True, fn, t, yv, ypv, gv))


def _bbd_comm(token, t, y, yp):
    session = resolve(token)
    fn = session._table_callback(CallbackKind.BBD_COMM, "comm_fn")
    with scoped(y, yp) as (yv, ypv):
        return int(run_guarded(session, True, fn, t, yv, ypv))


# ----------------------------------------------------------------------
# Sessions


class Session(ForwardIntegrator):
    """DAE session.

    Attributes
    ----------
    y, yp
        Solution and its derivative at the time last returned by
        :meth:`advance`, or the values corrected by :meth:`calc_ic_y` and
        :meth:`calc_ic_ya_ydp`.
    """

    problem = ProblemKind.DAE
    flag_names = IdaFlag
    error_table = IDA_ERRORS
    module = "IDA"
    unsupported_options = frozenset({"max_hnil_warns", "stab_lim_det",
                                     "min_step"})
    _advance_event = "ida_advance"
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

    def __init__(self, mem: IdaMem, res: Callable,
                 time_logger: Optional[TimeLogger] = None) -> None:
        super().__init__(mem, time_logger)
        self._init_forward()
        self._res_fn = res
        self.y = np.zeros(mem.n)
        self.yp = np.zeros(mem.n)
        self.t = mem.tn

    @classmethod
    def create(
        cls,
        res: Callable,
        y0,
        yp0,
        t0: float = 0.0,
        roots: Optional[Tuple[int, Callable]] = None,
        tolerances: Optional[Tolerances] = None,
        options: Optional[IntegratorOptions] = None,
        linear_solver=None,
        time_logger: Optional[TimeLogger] = None,
    ) -> "Session":
        """Create and initialise a DAE session.

        ``y0`` and ``yp0`` should be consistent, i.e.
        ``F(t0, y0, yp0) = 0``, or be corrected by :meth:`calc_ic_y` or
        :meth:`calc_ic_ya_ydp` before the first step. A dense linear
        solver is attached unless ``linear_solver`` says otherwise.

        Raises
        ------
        EngineInitFailure
            If the engine cannot initialise its memory.
        """
        mem = IdaMem()
        y0 = as_vector(y0, "y0")
        yp0 = as_vector(yp0, "yp0")
        flag = mem.init(float(t0), y0, yp0)
        if flag != IdaFlag.SUCCESS:
            mem.free()
            raise EngineInitFailure(
                f"IDA could not be initialised (flag {flag})"
            )
        session = cls(mem, res, time_logger)
        session.y[:] = y0
        session.yp[:] = yp0
        try:
            session._check(session._set_callback(CallbackKind.RES, _res))
            if roots is not None:
                session.root_init(*roots)
            session.set_tolerances(tolerances or default_tolerances())
            session._use_options(options)
            session.set_linear_solver(linear_solver or linsolv.Dense())
        except BaseException:
            session.close()
            raise
        return session

    # Advancing -----------------------------------------------------------

    def advance(self, t_target: float,
                mode: AdvanceMode = AdvanceMode.NORMAL
                ) -> Tuple[float, Outcome]:
        """Integrate towards ``t_target``; updates :attr:`y` and
        :attr:`yp`.

        Returns
        -------
        t_reached, outcome
            As :meth:`sunbridge.cvode.Session.advance`.
        """
        self._require_open()
        mode = AdvanceMode(mode)
        flag, t = self._engine_call(
            "ida_advance", self._mem.advance, float(t_target), self.y,
            self.yp, Task(mode), t_target=float(t_target), mode=mode.name)
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
        self._require_open()
        return self.y.copy()

    def get_yp(self) -> np.ndarray:
        self._require_open()
        return self.yp.copy()

    def reinit(self, t0: float, y0, yp0,
               roots: Optional[Tuple[int, Callable]] = None,
               linear_solver=None) -> None:
        """Restart the integration at ``(t0, y0, yp0)``."""
        self._guard("reinit")
        y0 = as_vector(y0, "y0")
        yp0 = as_vector(yp0, "yp0")
        n = self._mem.n
        if y0.shape[0] != n or yp0.shape[0] != n:
            raise ValueError(f"y0 and yp0 must have {n} components")
        self._check(self._mem.reinit(float(t0), y0, yp0))
        self.y[:] = y0
        self.yp[:] = yp0
        self.t = float(t0)
        if roots is not None:
            self.root_init(*roots)
        if linear_solver is not None:
            self.set_linear_solver(linear_solver)

    # Algebraic components ------------------------------------------------

    def set_id(self, ids: Sequence[VarId]) -> None:
        """Mark each component as algebraic or differential."""
        self._require_open()
        values = np.array([float(VarId(i)) for i in ids])
        if values.shape[0] != self._mem.n:
            raise ValueError(
                f"ids has {values.shape[0]} entries, expected {self._mem.n}"
            )
        self._check(self._mem.set_id(values))

    def set_suppress_alg(self, suppress: bool) -> None:
        """Leave algebraic components out of the local error test; needs
        :meth:`set_id` first."""
        self._call(self._mem.set_suppress_alg, bool(suppress))

    def set_constraints(self, constraints) -> None:
        """Per-component sign constraints on ``y``, or None to drop them.

        Each entry is 0 (none), 1 (``>= 0``), -1 (``<= 0``), 2 (``> 0``)
        or -2 (``< 0``). They are enforced by :meth:`calc_ic_y`,
        :meth:`calc_ic_ya_ydp` and every step.
        """
        self._require_open()
        if constraints is not None:
            constraints = as_vector(constraints, "constraints")
            if constraints.shape[0] != self._mem.n:
                raise ValueError(
                    f"constraints has {constraints.shape[0]} entries, "
                    f"expected {self._mem.n}"
                )
            if not np.all(np.isin(constraints, (-2.0, -1.0, 0.0, 1.0, 2.0))):
                raise ValueError(
                    "constraints entries must be one of -2, -1, 0, 1 or 2"
                )
        self._check(self._mem.set_constraints(constraints))

    # Consistent initial conditions ---------------------------------------

    def _calc_ic(self, icopt: IcOpt, tout1: float) -> None:
        self._require_open()
        flag = self._engine_call("ida_calc_ic", self._mem.calc_ic, icopt,
                                 float(tout1), icopt=icopt.name,
                                 tout1=float(tout1))
        self._check(flag)
        self._check(self._mem.get_consistent_ic(self.y, self.yp))

    def calc_ic_y(self, tout1: float, y: Optional[np.ndarray] = None
                  ) -> np.ndarray:
        """Correct all of ``y0`` so that ``F(t0, y0, y0') = 0``, keeping
        ``y0'``.

        Parameters
        ----------
        tout1
            First output time; only its direction and distance from ``t0``
            are used.
        y
            Optional float64 array that receives the corrected ``y0``.

        Returns
        -------
        numpy.ndarray
            Copy of the corrected ``y0``, also stored in :attr:`y`.

        Raises
        ------
        IllegalInput
            If the integration has already started since the last
            (re)initialisation.
        """
        self._calc_ic(IcOpt.Y_INIT, tout1)
        if y is not None:
            y[:] = self.y
        return self.y.copy()

    def calc_ic_ya_ydp(self, tout1: float,
                       ids: Optional[Sequence[VarId]] = None,
                       y: Optional[np.ndarray] = None,
                       yp: Optional[np.ndarray] = None
                       ) -> Tuple[np.ndarray, np.ndarray]:
        """Compute the algebraic components of ``y0`` and the differential
        components of ``y0'`` from the differential components of ``y0``.

        ``ids`` marks each component as in :meth:`set_id` and is stored
        for :meth:`set_suppress_alg`; without it the ids set earlier are
        used. The residual must not depend on ``y'`` of algebraic
        components. ``y`` and ``yp`` optionally receive the corrected
        vectors.

        Returns
        -------
        y0, yp0
            Copies of the corrected vectors, also stored in :attr:`y` and
            :attr:`yp`.

        Raises
        ------
        IllegalInput
            If no ids are known, or the integration has already started.
        """
        if ids is not None:
            self.set_id(ids)
        self._calc_ic(IcOpt.YA_YDP_INIT, tout1)
        if y is not None:
            y[:] = self.y
        if yp is not None:
            yp[:] = self.yp
        return self.y.copy(), self.yp.copy()

    # Statistics ----------------------------------------------------------

    def get_num_res_evals(self) -> int:
        return self.get_stats()["num_res_evals"]

    def get_num_backtrack_ops(self) -> int:
        """Line-search backtracks made by the initial-condition
        calculations."""
        return self.get_stats()["num_backtrack_ops"]
