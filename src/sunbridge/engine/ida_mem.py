"""DAE integrator memory for residual problems ``F(t, y, y') = 0``.

:class:`IdaMem` uses variable-step BDF formulas of orders 1 and 2. With
the formula written as ``y = a + gamma * y'``, the corrector solves
``F(t, y, (y - a) * cj) = 0`` with ``cj = 1 / gamma`` by Newton iteration on
the iteration matrix ``dF/dy + cj * dF/dy'``.

:meth:`IdaMem.calc_ic` corrects inconsistent initial values at ``t0`` by
Newton iteration with a backtracking line search on the same linear
solver, with ``cj = 0`` when all of ``y`` is computed.
"""
import math
from typing import Callable, Dict, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from sunbridge.engine.errors import ErrorReporter
from sunbridge.engine.flags import (
    CallbackKind,
    GramSchmidt,
    IcOpt,
    IdaFlag,
    KrylovMethod,
    Lmm,
    PrecType,
    Task,
)
from sunbridge.engine.linear import (
    BandSolver,
    DenseSolver,
    SpilsSolver,
    dq_band_jacobian,
    dq_dense_jacobian,
)
from sunbridge.engine.multistep import (
    MAX_SUPPORTED_ORDER,
    UNIT_ROUNDOFF,
    History,
    hermite,
    step_coefficients,
    violates_constraints,
    wrms_norm,
)
from sunbridge.engine.precond import BBDPreconditioner, UserPreconditioner
from sunbridge.engine.roots import RootFinder

Array = NDArray[np.float64]

_SQRT_UROUND = math.sqrt(UNIT_ROUNDOFF)
_CJ_RATIO_LOW = 0.6
_CJ_RATIO_HIGH = 1.67
_SETUP_REFRESH_STEPS = 20

_RECOVER_RES = 1
_RECOVER_LS = 2
_RECOVER_CONV = 3
_RECOVER_CONSTR = 4

_IC_STEP_FRACTION = 0.001
_IC_CONV_FACTOR = 0.01
_IC_MAX_ITERS = 10
_IC_MAX_RETRIES = 5
_IC_RATE_MAX = 0.9
_IC_ALPHA = 1.0e-4
_IC_MIN_LAMBDA = 1.0e-5
_IC_H_SHRINK = 0.1

_ALLOWED_KINDS = frozenset({
    CallbackKind.RES,
    CallbackKind.ROOTS,
    CallbackKind.ERROR_HANDLER,
    CallbackKind.ERROR_WEIGHT,
    CallbackKind.DENSE_JAC,
    CallbackKind.BAND_JAC,
    CallbackKind.PREC_SETUP,
    CallbackKind.PREC_SOLVE,
    CallbackKind.JAC_TIMES_VEC,
    CallbackKind.BBD_LOCAL,
    CallbackKind.BBD_COMM,
})

_OPTION_DEFAULTS = {
    "max_ord": 5,
    "max_num_steps": 500,
    "init_step": 0.0,
    "max_step": 0.0,
    "max_err_test_fails": 10,
    "max_nonlin_iters": 4,
    "max_conv_fails": 10,
    "nonlin_conv_coef": 0.33,
    "max_first_rhs_retries": 5,
}


class IdaMem:
    """Opaque integrator memory for one DAE problem."""

    module = "IDA"

    def __init__(self) -> None:
        self.user_data = None
        self.callbacks: Dict[CallbackKind, Callable] = {}
        self.errors = ErrorReporter(self.module)
        self.initialized = False
        self.n = 0
        self.options = dict(_OPTION_DEFAULTS)
        self.tstop: Optional[float] = None
        self.tol_kind: Optional[str] = None
        self.rtol = 0.0
        self.atol = None
        self.id: Optional[Array] = None
        self.suppress_alg = False
        self.constraints: Optional[Array] = None
        self.linear_solver = None
        self.roots: Optional[RootFinder] = None
        self.tn = 0.0
        self.hist: Optional[History] = None
        self.ewt = np.zeros(0)
        self._reset_state()

    def _reset_state(self) -> None:
        self.h = 0.0
        self.hu = 0.0
        self.h0u = 0.0
        self.q = 1
        self.qu = 0
        self.nst = 0
        self.nre = 0
        self.nre_ls = 0
        self.nsetups = 0
        self.netf = 0
        self.nni = 0
        self.ncfn = 0
        self.nbacktr = 0
        self.tolsf = 1.0
        self._started = False
        self._cj = 0.0
        self._cj_setup = 0.0
        self._nstlp = 0
        self._ss = 20.0
        self._force_setup = True
        self._ls_point = (0.0, np.zeros(self.n), np.zeros(self.n),
                          np.zeros(self.n))

    def _fail(self, flag: int, function: str, message: str) -> int:
        self.errors.report(int(flag), function, message)
        return int(flag)

    def set_user_data(self, user_data) -> int:
        self.user_data = user_data
        self.errors.user_data = user_data
        return IdaFlag.SUCCESS

    def set_error_file(self, path: str, truncate: bool = True) -> int:
        if self.errors.set_file(path, truncate) != 0:
            return self._fail(IdaFlag.ILL_INPUT, "IDASetErrFile",
                              f"Cannot open error file {path}.")
        return IdaFlag.SUCCESS

    def set_callback(self, kind: CallbackKind,
                     fn: Optional[Callable]) -> int:
        try:
            kind = CallbackKind(kind)
        except ValueError:
            kind = None
        if kind not in _ALLOWED_KINDS:
            return self._fail(IdaFlag.ILL_INPUT, "IDASetCallback",
                              "Callback kind does not apply to a DAE "
                              "problem.")
        if fn is None:
            self.callbacks.pop(kind, None)
        else:
            self.callbacks[kind] = fn
        if kind == CallbackKind.ERROR_HANDLER:
            self.errors.handler = fn
        return IdaFlag.SUCCESS

    def init(self, t0: float, y0: Array, yp0: Array) -> int:
        y0 = np.array(y0, dtype=np.float64).ravel()
        yp0 = np.array(yp0, dtype=np.float64).ravel()
        if y0.size == 0 or y0.shape != yp0.shape:
            return self._fail(IdaFlag.ILL_INPUT, "IDAInit",
                              "y0 and yp0 must be non-empty and of equal "
                              "length.")
        self.n = y0.shape[0]
        self.tn = float(t0)
        self.hist = History(y0, yp0)
        self.ewt = np.zeros(self.n)
        self.initialized = True
        self._reset_state()
        return IdaFlag.SUCCESS

    def reinit(self, t0: float, y0: Array, yp0: Array) -> int:
        if not self.initialized:
            return self._fail(IdaFlag.NO_MALLOC, "IDAReInit",
                              "Attempt to call before IDAInit.")
        y0 = np.array(y0, dtype=np.float64).ravel()
        yp0 = np.array(yp0, dtype=np.float64).ravel()
        if y0.shape[0] != self.n or yp0.shape[0] != self.n:
            return self._fail(IdaFlag.ILL_INPUT, "IDAReInit",
                              f"y0 and yp0 must have {self.n} components.")
        self.tn = float(t0)
        self.hist = History(y0, yp0)
        self._reset_state()
        if self.roots is not None:
            self.roots.clear_info()
        return IdaFlag.SUCCESS

    def ss_tolerances(self, rtol: float, atol: float) -> int:
        if rtol < 0.0 or atol < 0.0:
            return self._fail(IdaFlag.ILL_INPUT, "IDASStolerances",
                              "Tolerances must be non-negative.")
        self.tol_kind, self.rtol, self.atol = "ss", float(rtol), float(atol)
        return IdaFlag.SUCCESS

    def sv_tolerances(self, rtol: float, atol: Array) -> int:
        atol = np.array(atol, dtype=np.float64).ravel()
        if rtol < 0.0 or np.any(atol < 0.0) or atol.shape[0] != self.n:
            return self._fail(IdaFlag.ILL_INPUT, "IDASVtolerances",
                              "Tolerances must be non-negative and abstol "
                              "must match the problem size.")
        self.tol_kind, self.rtol, self.atol = "sv", float(rtol), atol
        return IdaFlag.SUCCESS

    def wf_tolerances(self) -> int:
        if CallbackKind.ERROR_WEIGHT not in self.callbacks:
            return self._fail(IdaFlag.ILL_INPUT, "IDAWFtolerances",
                              "No error weight function is registered.")
        self.tol_kind = "wf"
        return IdaFlag.SUCCESS

    def set_option(self, name: str, value) -> int:
        if name not in self.options:
            return self._fail(IdaFlag.ILL_INPUT, "IDASetOption",
                              f"Unknown option {name}.")
        if name == "max_step" and value < 0:
            return self._fail(IdaFlag.ILL_INPUT, "IDASetOption",
                              "max_step must be non-negative.")
        if name == "max_first_rhs_retries" and value < 0:
            return self._fail(IdaFlag.ILL_INPUT, "IDASetOption",
                              f"{name} must be non-negative.")
        if name not in ("init_step", "max_step",
                        "max_first_rhs_retries") and value <= 0:
            value = _OPTION_DEFAULTS[name]
        self.options[name] = value
        return IdaFlag.SUCCESS

    def set_stop_time(self, tstop: Optional[float]) -> int:
        if not self.initialized:
            return self._fail(IdaFlag.NO_MALLOC, "IDASetStopTime",
                              "Attempt to call before IDAInit.")
        if tstop is not None and self._started and \
                (tstop - self.tn) * self.h < 0.0:
            return self._fail(IdaFlag.ILL_INPUT, "IDASetStopTime",
                              f"tstop = {tstop} is behind current "
                              f"t = {self.tn}.")
        self.tstop = None if tstop is None else float(tstop)
        return IdaFlag.SUCCESS

    def set_id(self, ids: Array) -> int:
        ids = np.array(ids, dtype=np.float64).ravel()
        if ids.shape[0] != self.n or not np.all(np.isin(ids, (0.0, 1.0))):
            return self._fail(IdaFlag.ILL_INPUT, "IDASetId",
                              "id must hold 0.0 (algebraic) or 1.0 "
                              "(differential) for every component.")
        self.id = ids
        return IdaFlag.SUCCESS

    def set_suppress_alg(self, suppress: bool) -> int:
        if suppress and self.id is None:
            return self._fail(IdaFlag.ILL_INPUT, "IDASetSuppressAlg",
                              "id must be set before suppressing algebraic "
                              "components.")
        self.suppress_alg = bool(suppress)
        return IdaFlag.SUCCESS

    def set_constraints(self, constraints: Optional[Array]) -> int:
        if constraints is None:
            self.constraints = None
            return IdaFlag.SUCCESS
        constraints = np.asarray(constraints, dtype=np.float64).ravel()
        if constraints.shape[0] != self.n or not np.all(
                np.isin(constraints, (-2.0, -1.0, 0.0, 1.0, 2.0))):
            return self._fail(IdaFlag.ILL_INPUT, "IDASetConstraints",
                              "Illegal values in constraints vector.")
        self.constraints = constraints
        return IdaFlag.SUCCESS

    @property
    def max_order(self) -> int:
        return max(1, min(self.options["max_ord"], MAX_SUPPORTED_ORDER))

    # ------------------------------------------------------------------
    # Roots

    def root_init(self, nroots: int) -> int:
        if not self.initialized:
            return self._fail(IdaFlag.NO_MALLOC, "IDARootInit",
                              "Attempt to call before IDAInit.")
        if nroots < 0:
            return self._fail(IdaFlag.ILL_INPUT, "IDARootInit",
                              "nrtfn must be non-negative.")
        self.roots = RootFinder(nroots) if nroots > 0 else None
        return IdaFlag.SUCCESS

    def set_root_direction(self, directions) -> int:
        directions = np.asarray(directions)
        if self.roots is None or directions.shape != (self.roots.nroots,):
            return self._fail(IdaFlag.ILL_INPUT, "IDASetRootDirection",
                              "rootdir does not match the root functions.")
        self.roots.set_directions(directions)
        return IdaFlag.SUCCESS

    def set_no_inactive_root_warn(self) -> int:
        if self.roots is not None:
            self.roots.warn_inactive = False
        return IdaFlag.SUCCESS

    def get_root_info(self, out) -> int:
        if self.roots is None:
            return self._fail(IdaFlag.ILL_INPUT, "IDAGetRootInfo",
                              "No root functions are configured.")
        out[:] = self.roots.info
        return IdaFlag.SUCCESS

    def _eval_roots(self, t: float, gout: Array) -> int:
        return self.callbacks[CallbackKind.ROOTS](
            self.user_data, t, self._interp(t, 0), self._interp(t, 1), gout)

    # ------------------------------------------------------------------
    # Linear solvers

    def set_linear_solver_dense(self) -> int:
        if not self.initialized:
            return self._fail(IdaFlag.NO_MALLOC, "IDADense",
                              "Attempt to call before IDAInit.")
        self.linear_solver = DenseSolver(self.n)
        self._force_setup = True
        return IdaFlag.SUCCESS

    def set_linear_solver_band(self, mupper: int, mlower: int) -> int:
        if not self.initialized:
            return self._fail(IdaFlag.NO_MALLOC, "IDABand",
                              "Attempt to call before IDAInit.")
        if not (0 <= mupper < self.n and 0 <= mlower < self.n):
            return self._fail(IdaFlag.ILL_INPUT, "IDABand",
                              "Illegal bandwidth parameter(s).")
        self.linear_solver = BandSolver(self.n, mupper, mlower)
        self._force_setup = True
        return IdaFlag.SUCCESS

    def set_linear_solver_spils(self, method: KrylovMethod,
                                maxl: int) -> int:
        if not self.initialized:
            return self._fail(IdaFlag.NO_MALLOC, "IDASpils",
                              "Attempt to call before IDAInit.")
        self.linear_solver = SpilsSolver(self.n, KrylovMethod(method), maxl,
                                         PrecType.LEFT)
        self._force_setup = True
        return IdaFlag.SUCCESS

    def _spils(self, function: str) -> Optional[SpilsSolver]:
        if not isinstance(self.linear_solver, SpilsSolver):
            self._fail(IdaFlag.ILL_INPUT, function,
                       "Linear solver memory is NULL or not iterative.")
            return None
        return self.linear_solver

    def set_user_prec(self) -> int:
        solver = self._spils("IDASpilsSetPreconditioner")
        if solver is None:
            return IdaFlag.ILL_INPUT
        solver.preconditioner = UserPreconditioner()
        return IdaFlag.SUCCESS

    def set_bbd_prec(self, mudq: int, mldq: int, mukeep: int, mlkeep: int,
                     dqrely: Optional[float]) -> int:
        solver = self._spils("IDABBDPrecInit")
        if solver is None:
            return IdaFlag.ILL_INPUT
        solver.preconditioner = BBDPreconditioner(
            self.n, mudq, mldq, mukeep, mlkeep, dqrely)
        return IdaFlag.SUCCESS

    def bbd_reinit(self, mudq: int, mldq: int,
                   dqrely: Optional[float]) -> int:
        solver = self._spils("IDABBDPrecReInit")
        if solver is None or not isinstance(solver.preconditioner,
                                            BBDPreconditioner):
            return self._fail(IdaFlag.ILL_INPUT, "IDABBDPrecReInit",
                              "BBD preconditioner memory is NULL.")
        solver.preconditioner.reinit(mudq, mldq, dqrely)
        self._force_setup = True
        return IdaFlag.SUCCESS

    def set_prec_type(self, pretype: PrecType) -> int:
        solver = self._spils("IDASpilsSetPrecType")
        if solver is None:
            return IdaFlag.ILL_INPUT
        pretype = PrecType(pretype)
        if pretype not in (PrecType.NONE, PrecType.LEFT):
            return self._fail(IdaFlag.ILL_INPUT, "IDASpilsSetPrecType",
                              "Only left preconditioning is supported.")
        solver.pretype = pretype
        return IdaFlag.SUCCESS

    def set_gs_type(self, gstype: GramSchmidt) -> int:
        solver = self._spils("IDASpilsSetGSType")
        if solver is None:
            return IdaFlag.ILL_INPUT
        solver.gs_type = GramSchmidt(gstype)
        return IdaFlag.SUCCESS

    def set_eps_lin(self, eplifac: float) -> int:
        solver = self._spils("IDASpilsSetEpsLin")
        if solver is None:
            return IdaFlag.ILL_INPUT
        if eplifac < 0.0:
            return self._fail(IdaFlag.ILL_INPUT, "IDASpilsSetEpsLin",
                              "eplifac < 0 illegal.")
        solver.eps_lin = eplifac if eplifac > 0.0 else 0.05
        return IdaFlag.SUCCESS

    def set_maxl(self, maxl: int) -> int:
        solver = self._spils("IDASpilsSetMaxl")
        if solver is None:
            return IdaFlag.ILL_INPUT
        solver.maxl = maxl if maxl > 0 else 5
        return IdaFlag.SUCCESS

    def ls_stats(self) -> dict:
        if self.linear_solver is None:
            return {}
        stats = dict(self.linear_solver.stats())
        stats["rhs_evals_ls"] = self.nre_ls
        stats["work_space"] = self.linear_solver.work_space()
        prec = getattr(self.linear_solver, "preconditioner", None)
        if isinstance(prec, BBDPreconditioner):
            stats["gfn_evals"] = prec.num_gfn_evals
            stats["prec_work_space"] = prec.work_space()
        return stats

    def jacobian(self) -> Optional[Array]:
        getter = getattr(self.linear_solver, "jacobian", None)
        return None if getter is None else getter()

    # Hooks used by the linear solver modules.

    def _increments(self, y: Array, yp: Array, scale: float) -> Array:
        inc = scale * np.maximum.reduce([
            np.abs(y), np.abs(self.h * yp), 1.0 / self.ewt])
        return np.where(self.h * yp < 0.0, -inc, inc)

    def _shifted_res(self, t: float, y: Array, yp: Array, cj: float):
        def evaluate(inc, out):
            self.nre_ls += 1
            return self._call_res(t, y + inc, yp + cj * inc, out)
        return evaluate

    def ls_dense_jac(self, jac: Array) -> int:
        t, y, yp, r = self._ls_point
        cb = self.callbacks.get(CallbackKind.DENSE_JAC)
        if cb is not None:
            return cb(self.user_data, t, self._cj, y, yp, r, jac,
                      np.zeros(self.n), np.zeros(self.n), np.zeros(self.n))
        return dq_dense_jacobian(r, self._increments(y, yp, _SQRT_UROUND),
                                 self._shifted_res(t, y, yp, self._cj), jac)

    def ls_band_jac(self, mupper: int, mlower: int, ab: Array) -> int:
        t, y, yp, r = self._ls_point
        cb = self.callbacks.get(CallbackKind.BAND_JAC)
        if cb is not None:
            return cb(self.user_data, mupper, mlower, t, self._cj, y, yp, r,
                      ab, np.zeros(self.n), np.zeros(self.n),
                      np.zeros(self.n))
        return dq_band_jacobian(r, self._increments(y, yp, _SQRT_UROUND),
                                self._shifted_res(t, y, yp, self._cj),
                                mupper, mlower, ab, mupper, mlower)

    def ls_newton_dense(self, jac: Array) -> Array:
        return jac.copy()

    def ls_newton_band(self, ab: Array, mupper: int, mlower: int) -> Array:
        return ab.copy()

    def ls_matvec(self, v: Array, out: Array) -> int:
        t, y, yp, r = self._ls_point
        cb = self.callbacks.get(CallbackKind.JAC_TIMES_VEC)
        if cb is not None:
            return cb(self.user_data, t, y, yp, r, v, out, self._cj,
                      np.zeros(self.n), np.zeros(self.n))
        norm = wrms_norm(v, self.ewt)
        if norm == 0.0:
            out[:] = 0.0
            return 0
        sig = 1.0 / norm
        shifted = np.zeros(self.n)
        self.nre_ls += 1
        flag = self._call_res(t, y + sig * v, yp + self._cj * sig * v,
                              shifted)
        if flag != 0:
            return flag
        out[:] = (shifted - r) / sig
        return 0

    def ls_psetup(self, jok: bool) -> Tuple[int, bool]:
        cb = self.callbacks.get(CallbackKind.PREC_SETUP)
        if cb is None:
            return 0, False
        t, y, yp, r = self._ls_point
        flag = cb(self.user_data, t, y, yp, r, self._cj, np.zeros(self.n),
                  np.zeros(self.n), np.zeros(self.n))
        return flag, True

    def ls_psolve(self, rvec: Array, z: Array, lr: int) -> int:
        cb = self.callbacks.get(CallbackKind.PREC_SOLVE)
        if cb is None:
            z[:] = rvec
            return 0
        t, y, yp, r = self._ls_point
        return cb(self.user_data, t, y, yp, r, rvec, z, self._cj,
                  self.ls_krylov_rtol(), np.zeros(self.n))

    def ls_krylov_rtol(self) -> float:
        return 0.05 * getattr(self.linear_solver, "eps_lin", 0.05)

    def bbd_comm(self) -> int:
        cb = self.callbacks.get(CallbackKind.BBD_COMM)
        if cb is None:
            return 0
        t, y, yp, _ = self._ls_point
        return cb(self.user_data, t, y, yp)

    def bbd_local(self, inc: Array, g: Array) -> int:
        cb = self.callbacks.get(CallbackKind.BBD_LOCAL)
        if cb is None:
            return -1
        t, y, yp, _ = self._ls_point
        return cb(self.user_data, t, y + inc, yp + self._cj * inc, g)

    def bbd_increments(self, dqrely: float) -> Array:
        _, y, yp, _ = self._ls_point
        return self._increments(y, yp, dqrely)

    # ------------------------------------------------------------------
    # Output

    def _interp(self, t: float, k: int) -> Array:
        hist = self.hist
        if self.nst == 0:
            if k == 0:
                return hist.y.copy()
            if k == 1:
                return hist.f.copy()
            return np.zeros(self.n)
        return hermite(t, self.tn - self.hu, hist.y_prev, hist.f_prev,
                       self.tn, hist.y, hist.f, k)

    def get_dky(self, t: float, k: int, out: Array) -> int:
        if not self.initialized:
            return self._fail(IdaFlag.NO_MALLOC, "IDAGetDky",
                              "Attempt to call before IDAInit.")
        if out is None:
            return self._fail(IdaFlag.BAD_DKY, "IDAGetDky",
                              "dky = NULL illegal.")
        if k < 0 or k > 3:
            return self._fail(IdaFlag.BAD_K, "IDAGetDky",
                              f"Illegal value for k: {k}.")
        fuzz = 100.0 * UNIT_ROUNDOFF * (abs(self.tn) + abs(self.hu))
        lo, hi = sorted((self.tn - self.hu, self.tn))
        if t < lo - fuzz or t > hi + fuzz:
            return self._fail(IdaFlag.BAD_T, "IDAGetDky",
                              f"Illegal value for t: {t} is not between "
                              f"{lo} and {hi}.")
        out[:] = self._interp(t, k)
        return IdaFlag.SUCCESS

    def stats(self) -> dict:
        return {
            "num_steps": self.nst,
            "num_res_evals": self.nre,
            "num_lin_solv_setups": self.nsetups,
            "num_err_test_fails": self.netf,
            "last_order": self.qu,
            "current_order": self.q,
            "actual_init_step": self.h0u,
            "last_step": self.hu,
            "current_step": self.h,
            "current_time": self.tn,
            "num_nonlin_solv_iters": self.nni,
            "num_nonlin_solv_conv_fails": self.ncfn,
            "num_backtrack_ops": self.nbacktr,
            "num_g_evals": 0 if self.roots is None else self.roots.num_evals,
            "tol_scale_factor": self.tolsf,
        }

    def get_err_weights(self, out: Array) -> int:
        out[:] = self.ewt
        return IdaFlag.SUCCESS

    # ------------------------------------------------------------------
    # Consistent initial conditions

    def calc_ic(self, icopt: IcOpt, tout1: float) -> int:
        """Correct ``(y0, y0')`` so that ``F(t0, y0, y0') = 0``.

        With ``YA_YDP_INIT`` the algebraic components of ``y`` and the
        differential components of ``y'`` are computed from the
        differential components of ``y``; with ``Y_INIT`` all of ``y`` is
        computed from ``y'``. ``tout1`` only sets the direction and scale
        of the first step. Must be called before the first step.
        """
        if not self.initialized:
            return self._fail(IdaFlag.NO_MALLOC, "IDACalcIC",
                              "Attempt to call before IDAInit.")
        try:
            icopt = IcOpt(icopt)
        except ValueError:
            return self._fail(IdaFlag.ILL_INPUT, "IDACalcIC",
                              "icopt has an illegal value.")
        if self._started:
            return self._fail(IdaFlag.ILL_INPUT, "IDACalcIC",
                              "Illegal call after the integration has "
                              "started; reinitialise first.")
        if CallbackKind.RES not in self.callbacks or self.tol_kind is None:
            return self._fail(IdaFlag.ILL_INPUT, "IDACalcIC",
                              "Residual function and tolerances must be "
                              "set.")
        if self.linear_solver is None:
            return self._fail(IdaFlag.LINIT_FAIL, "IDACalcIC",
                              "A linear solver must be attached.")
        if icopt == IcOpt.YA_YDP_INIT and self.id is None:
            return self._fail(IdaFlag.ILL_INPUT, "IDACalcIC",
                              "id must be set for the YA_YDP_INIT "
                              "correction.")
        t0 = self.tn
        tout1 = float(tout1)
        tdist = abs(tout1 - t0)
        if tdist < 2.0 * UNIT_ROUNDOFF * max(abs(t0), abs(tout1)):
            return self._fail(IdaFlag.ILL_INPUT, "IDACalcIC",
                              "tout1 too close to t0 to attempt initial "
                              "condition calculation.")
        y = self.hist.y.copy()
        yp = self.hist.f.copy()
        if self._update_ewt(y) != 0:
            return self._fail(IdaFlag.BAD_EWT, "IDACalcIC",
                              "Some initial ewt component = 0.0 illegal.")
        if violates_constraints(self.constraints, y):
            return self._fail(IdaFlag.ILL_INPUT, "IDACalcIC",
                              "y0 fails to satisfy constraints.")
        h = math.copysign(_IC_STEP_FRACTION * tdist, tout1 - t0)
        r = np.zeros(self.n)
        flag = self._res(t0, y, yp, r)
        if flag < 0:
            return self._fail(IdaFlag.RES_FAIL, "IDACalcIC",
                              f"At t = {t0}, the residual function failed "
                              f"unrecoverably.")
        if flag > 0:
            return self._fail(IdaFlag.FIRST_RES_FAIL, "IDACalcIC",
                              "The residual function failed at the first "
                              "call.")
        retries = 0
        try:
            while True:
                if icopt == IcOpt.YA_YDP_INIT:
                    self.h = h
                    self._cj = 1.0 / h
                else:
                    self._cj = 0.0
                result = self._ic_newton(icopt, t0, y, yp, r)
                if result == 0:
                    break
                if result < 0:
                    return self._fail(result, "IDACalcIC",
                                      f"At t = {t0}, the initial condition "
                                      f"calculation failed.")
                retries += 1
                if retries > _IC_MAX_RETRIES:
                    if result == _RECOVER_CONV:
                        return self._fail(
                            IdaFlag.CONV_FAIL, "IDACalcIC",
                            "Newton iterations failed to converge.")
                    return self._fail(
                        IdaFlag.NO_RECOVERY, "IDACalcIC",
                        "The residual or linear solver had a recoverable "
                        "failure that could not be recovered from.")
                if result != _RECOVER_CONV:
                    h *= _IC_H_SHRINK
        finally:
            self.h = 0.0
            self._force_setup = True
        self.hist = History(y, yp)
        return IdaFlag.SUCCESS

    def _ic_newton(self, icopt: IcOpt, t0: float, y: Array, yp: Array,
                   r: Array) -> int:
        # y, yp and r are updated in place with every accepted iterate.
        self._ls_point = (t0, y.copy(), yp.copy(), r.copy())
        lflag, _ = self.linear_solver.setup(self, True)
        self.nsetups += 1
        self._cj_setup = self._cj
        if lflag < 0:
            return IdaFlag.LSETUP_FAIL
        if lflag > 0:
            return _RECOVER_LS
        flag, delta = self._ic_direction(t0, y, yp, r)
        if flag != 0:
            return flag
        tol = _IC_CONV_FACTOR * self.options["nonlin_conv_coef"]
        fnorm = wrms_norm(delta, self.ewt)
        if fnorm <= tol:
            return 0
        for _ in range(_IC_MAX_ITERS):
            self.nni += 1
            flag, fnorm_new = self._ic_line_search(icopt, t0, y, yp, r,
                                                   delta, fnorm)
            if flag != 0:
                return flag
            if fnorm_new <= tol:
                return 0
            if fnorm_new > _IC_RATE_MAX * fnorm:
                return _RECOVER_CONV
            fnorm = fnorm_new
        return _RECOVER_CONV

    def _ic_direction(self, t0: float, y: Array, yp: Array,
                      r: Array) -> Tuple[int, Optional[Array]]:
        delta = r.copy()
        self._ls_point = (t0, y.copy(), yp.copy(), r.copy())
        lflag = self.linear_solver.solve(self, delta)
        if lflag < 0:
            return IdaFlag.LSOLVE_FAIL, None
        if lflag > 0:
            return _RECOVER_LS, None
        return 0, delta

    def _ic_line_search(self, icopt: IcOpt, t0: float, y: Array, yp: Array,
                        r: Array, delta: Array,
                        fnorm: float) -> Tuple[int, float]:
        if icopt == IcOpt.Y_INIT:
            dy, dyp = delta, np.zeros(self.n)
        else:
            algebraic = self.id == 0.0
            dy = np.where(algebraic, delta, 0.0)
            dyp = np.where(algebraic, 0.0, self._cj * delta)
        lam = 1.0
        while violates_constraints(self.constraints, y - lam * dy):
            lam *= 0.5
            if lam < _IC_MIN_LAMBDA:
                return IdaFlag.CONSTR_FAIL, fnorm
        r_new = np.zeros(self.n)
        while True:
            y_new = y - lam * dy
            yp_new = yp - lam * dyp
            flag = self._res(t0, y_new, yp_new, r_new)
            if flag < 0:
                return IdaFlag.RES_FAIL, fnorm
            if flag > 0:
                return _RECOVER_RES, fnorm
            flag, delta_new = self._ic_direction(t0, y_new, yp_new, r_new)
            if flag != 0:
                return flag, fnorm
            fnorm_new = wrms_norm(delta_new, self.ewt)
            if fnorm_new ** 2 <= (1.0 - 2.0 * _IC_ALPHA * lam) * fnorm ** 2:
                break
            lam *= 0.5
            self.nbacktr += 1
            if lam < _IC_MIN_LAMBDA:
                return IdaFlag.LINESEARCH_FAIL, fnorm
        y[:] = y_new
        yp[:] = yp_new
        r[:] = r_new
        delta[:] = delta_new
        return 0, fnorm_new

    def get_consistent_ic(self, yy: Optional[Array],
                          yp: Optional[Array]) -> int:
        if not self.initialized:
            return self._fail(IdaFlag.NO_MALLOC, "IDAGetConsistentIC",
                              "Attempt to call before IDAInit.")
        if self._started:
            return self._fail(IdaFlag.ILL_INPUT, "IDAGetConsistentIC",
                              "IDAGetConsistentIC can only be called "
                              "before IDASolve.")
        if yy is not None:
            yy[:] = self.hist.y
        if yp is not None:
            yp[:] = self.hist.f
        return IdaFlag.SUCCESS

    # ------------------------------------------------------------------
    # Integration

    def _call_res(self, t: float, y: Array, yp: Array, out: Array) -> int:
        return self.callbacks[CallbackKind.RES](self.user_data, t, y, yp,
                                                out)

    def _res(self, t: float, y: Array, yp: Array, out: Array) -> int:
        self.nre += 1
        return self._call_res(t, y, yp, out)

    def _update_ewt(self, y: Array) -> int:
        if self.tol_kind == "wf":
            ewt = np.zeros(self.n)
            cb = self.callbacks.get(CallbackKind.ERROR_WEIGHT)
            if cb is None or cb(self.user_data, y, ewt) != 0 or \
                    np.any(ewt <= 0.0):
                return -1
            self.ewt = ewt
            return 0
        tol = self.rtol * np.abs(y) + self.atol
        if np.any(tol <= 0.0):
            return -1
        self.ewt = 1.0 / tol
        return 0

    def _error_mask(self) -> Optional[Array]:
        if self.suppress_alg and self.id is not None:
            return self.id != 0.0
        return None

    def _finish(self, flag: int, tret: float, yout: Array,
                ypout: Array) -> Tuple[int, float]:
        yout[:] = self._interp(tret, 0)
        ypout[:] = self._interp(tret, 1)
        return int(flag), tret

    def _search_roots(self, t_hi: float) -> Tuple[int, Optional[float]]:
        if self.roots is None or self.roots.t_lo is None:
            return 0, None
        if (t_hi - self.roots.t_lo) * self.h <= 0.0:
            return 0, None
        flag, troot = self.roots.search(t_hi, self._eval_roots)
        if flag != 0:
            return self._fail(IdaFlag.RTFUNC_FAIL, "IDASolve",
                              f"At t = {t_hi}, the rootfinding routine "
                              f"failed in an unrecoverable manner."), None
        return 0, troot

    def _start(self, tout: float) -> int:
        t0 = self.tn
        if abs(tout - t0) < 2.0 * UNIT_ROUNDOFF * max(abs(t0), abs(tout)):
            return self._fail(IdaFlag.ILL_INPUT, "IDASolve",
                              "tout too close to t0 to start integration.")
        if self._update_ewt(self.hist.y) != 0:
            return self._fail(IdaFlag.BAD_EWT, "IDASolve",
                              "Some initial ewt component = 0.0 illegal.")
        r0 = np.zeros(self.n)
        retries = 0
        while True:
            flag = self._res(t0, self.hist.y.copy(), self.hist.f.copy(), r0)
            if flag == 0:
                break
            if flag < 0:
                return self._fail(IdaFlag.RES_FAIL, "IDASolve",
                                  f"At t = {t0}, the residual function "
                                  f"failed unrecoverably.")
            retries += 1
            if retries > self.options["max_first_rhs_retries"]:
                return self._fail(IdaFlag.FIRST_RES_FAIL, "IDASolve",
                                  "The residual function failed at the "
                                  "first call.")
        if self.roots is not None:
            g0 = np.zeros(self.roots.nroots)
            self.roots.num_evals += 1
            if self._eval_roots(t0, g0) != 0:
                return self._fail(IdaFlag.RTFUNC_FAIL, "IDASolve",
                                  f"At t = {t0}, the rootfinding routine "
                                  f"failed in an unrecoverable manner.")
            zeros = self.roots.start(t0, g0)
            if zeros and self.roots.warn_inactive:
                self.errors.report(
                    IdaFlag.WARNING, "IDASolve",
                    f"At the beginning of the problem, root function(s) "
                    f"{zeros} are identically zero and are inactive.")
        direction = 1.0 if tout > t0 else -1.0
        tdist = abs(tout - t0)
        if self.tstop is not None:
            tdist = min(tdist, abs(self.tstop - t0)) or tdist
        h0 = abs(self.options["init_step"])
        if h0 == 0.0:
            h0 = 0.001 * tdist
            ypnorm = wrms_norm(self.hist.f, self.ewt, self._error_mask())
            if ypnorm * h0 > 0.5:
                h0 = 0.5 / ypnorm
        if self.options["max_step"] > 0.0:
            h0 = min(h0, self.options["max_step"])
        self.h = direction * h0
        self.h0u = self.h
        self._started = True
        return 0

    def advance(self, tout: float, yout: Array, ypout: Array,
                itask: Task = Task.NORMAL) -> Tuple[int, float]:
        """Integrate towards ``tout``; return ``(flag, t_reached)``."""
        tout = float(tout)
        if not self.initialized:
            return self._fail(IdaFlag.NO_MALLOC, "IDASolve",
                              "Attempt to call before IDAInit."), self.tn
        if CallbackKind.RES not in self.callbacks or self.tol_kind is None:
            return self._fail(IdaFlag.ILL_INPUT, "IDASolve",
                              "Residual function and tolerances must be "
                              "set."), self.tn
        if np.shape(yout) != (self.n,) or np.shape(ypout) != (self.n,):
            return self._fail(IdaFlag.ILL_INPUT, "IDASolve",
                              "yret and ypret have the wrong shape."), self.tn
        if self.linear_solver is None:
            return self._fail(IdaFlag.LINIT_FAIL, "IDASolve",
                              "A linear solver must be attached."), self.tn
        if self.roots is not None and CallbackKind.ROOTS not in self.callbacks:
            return self._fail(IdaFlag.ILL_INPUT, "IDASolve",
                              "No root function is registered."), self.tn
        itask = Task(itask)
        if not self._started:
            flag = self._start(tout)
            if flag != 0:
                return self._finish(flag, self.tn, yout, ypout)
        else:
            reached = itask == Task.NORMAL and (self.tn - tout) * self.h >= 0
            flag, troot = self._search_roots(tout if reached else self.tn)
            if flag != 0:
                return self._finish(flag, self.tn, yout, ypout)
            if troot is not None:
                return self._finish(IdaFlag.ROOT_RETURN, troot, yout, ypout)
            if reached:
                if (tout - (self.tn - self.hu)) * self.h < 0.0:
                    return self._finish(
                        self._fail(IdaFlag.ILL_INPUT, "IDASolve",
                                   f"tout = {tout} too far back."),
                        self.tn, yout, ypout)
                return self._finish(IdaFlag.SUCCESS, tout, yout, ypout)

        nstloc = 0
        while True:
            if self.tstop is not None and self.tn == self.tstop:
                self.tstop = None
            if nstloc >= self.options["max_num_steps"]:
                return self._finish(
                    self._fail(IdaFlag.TOO_MUCH_WORK, "IDASolve",
                               f"At t = {self.tn}, mxstep steps taken "
                               f"before reaching tout."),
                    self.tn, yout, ypout)
            if self._update_ewt(self.hist.y) != 0:
                return self._finish(
                    self._fail(IdaFlag.BAD_EWT, "IDASolve",
                               f"At t = {self.tn}, some ewt component has "
                               f"become <= 0.0."), self.tn, yout, ypout)
            self.tolsf = UNIT_ROUNDOFF * wrms_norm(self.hist.y, self.ewt)
            if self.tolsf > 1.0:
                self.tolsf *= 10.0
                return self._finish(
                    self._fail(IdaFlag.TOO_MUCH_ACC, "IDASolve",
                               f"At t = {self.tn}, too much accuracy "
                               f"requested."), self.tn, yout, ypout)
            if self.tstop is not None and \
                    (self.tn + self.h - self.tstop) * self.h > 0.0:
                self.h = self.tstop - self.tn
            flag = self._step()
            if flag != 0:
                return self._finish(flag, self.tn, yout, ypout)
            nstloc += 1
            reached = itask == Task.NORMAL and (self.tn - tout) * self.h >= 0
            flag, troot = self._search_roots(tout if reached else self.tn)
            if flag != 0:
                return self._finish(flag, self.tn, yout, ypout)
            if troot is not None:
                return self._finish(IdaFlag.ROOT_RETURN, troot, yout, ypout)
            if reached:
                return self._finish(IdaFlag.SUCCESS, tout, yout, ypout)
            if self.tstop is not None and self.tn == self.tstop:
                self.tstop = None
                return self._finish(IdaFlag.TSTOP_RETURN, self.tn, yout,
                                    ypout)
            if itask == Task.ONE_STEP:
                return self._finish(IdaFlag.SUCCESS, self.tn, yout, ypout)

    def _step(self) -> int:
        ncf = nef = 0
        force = False
        while True:
            coef = step_coefficients(Lmm.BDF, self.q, self.h, self.hu)
            t_new = self.tn + self.h
            if self.tstop is not None and abs(t_new - self.tstop) <= \
                    4.0 * UNIT_ROUNDOFF * max(abs(self.tstop), abs(self.h)):
                t_new = self.tstop
            pred = self.hist.predict(coef)
            a = self.hist.constant_part(coef)
            self._cj = 1.0 / coef.gamma
            result, y_new = self._corrector(t_new, pred, a, force)
            if result < 0:
                return self._fail(result, "IDASolve",
                                  f"At t = {self.tn}, the corrector failed "
                                  f"unrecoverably.")
            if result == 0 and violates_constraints(self.constraints, y_new):
                result = _RECOVER_CONSTR
            at_min = abs(self.h) <= 4.0 * UNIT_ROUNDOFF * abs(self.tn)
            if result > 0:
                ncf += 1
                self.ncfn += 1
                if ncf >= self.options["max_conv_fails"] or at_min:
                    if result == _RECOVER_CONSTR:
                        return self._fail(
                            IdaFlag.CONSTR_FAIL, "IDASolve",
                            f"At t = {self.tn}, unable to satisfy the "
                            f"inequality constraints.")
                    if result == _RECOVER_RES:
                        return self._fail(
                            IdaFlag.REP_RES_ERR, "IDASolve",
                            f"At t = {self.tn}, repeated recoverable "
                            f"residual errors.")
                    return self._fail(
                        IdaFlag.CONV_FAIL, "IDASolve",
                        f"At t = {self.tn} and h = {self.h}, the corrector "
                        f"convergence failed repeatedly.")
                self.h *= 0.25
                force = True
                continue
            dsm = coef.error_constant * wrms_norm(y_new - pred, self.ewt,
                                                  self._error_mask())
            if dsm > 1.0:
                nef += 1
                self.netf += 1
                if nef >= self.options["max_err_test_fails"] or at_min:
                    return self._fail(
                        IdaFlag.ERR_FAIL, "IDASolve",
                        f"At t = {self.tn} and h = {self.h}, the error test "
                        f"failed repeatedly.")
                eta = max(0.1, min(0.9, 0.9 * dsm ** (-1.0 / (coef.order
                                                            + 1))))
                if nef >= 2:
                    self.q = 1
                    eta = min(eta, 0.25)
                self.h *= eta
                continue
            yp_new = (y_new - a) * self._cj
            self.tn = t_new
            self.hist.accept(y_new, yp_new)
            self.hu = coef.h
            self.qu = coef.order
            self.nst += 1
            eta = 0.9 * dsm ** (-1.0 / (coef.order + 1)) if dsm > 0 else 10.0
            eta = min(eta, 1.0 if (nef or ncf) else 10.0)
            if 1.0 <= eta < 1.5:
                eta = 1.0
            self.h *= eta
            if self.options["max_step"] > 0.0 and \
                    abs(self.h) > self.options["max_step"]:
                self.h = math.copysign(self.options["max_step"], self.h)
            if self.q < self.max_order and nef == 0:
                self.q += 1
            return 0

    def _corrector(self, t_new: float, pred: Array, a: Array,
                   force: bool) -> Tuple[int, Optional[Array]]:
        cj = self._cj
        y = pred.copy()
        yp = (y - a) * cj
        r = np.zeros(self.n)
        flag = self._res(t_new, y, yp, r)
        if flag > 0:
            return _RECOVER_RES, None
        if flag < 0:
            return IdaFlag.RES_FAIL, None
        ratio = cj / self._cj_setup if self._cj_setup else math.inf
        call_setup = (force or self._force_setup
                      or not _CJ_RATIO_LOW <= ratio <= _CJ_RATIO_HIGH
                      or self.nst >= self._nstlp + _SETUP_REFRESH_STEPS)
        self._ls_point = (t_new, y.copy(), yp.copy(), r.copy())
        if call_setup:
            lflag, _ = self.linear_solver.setup(self, True)
            self.nsetups += 1
            self._force_setup = False
            self._cj_setup = cj
            self._ss = 20.0
            self._nstlp = self.nst
            if lflag < 0:
                return IdaFlag.LSETUP_FAIL, None
            if lflag > 0:
                return _RECOVER_LS, None
        scale = 2.0 / (1.0 + cj / self._cj_setup)
        threshold = self.options["nonlin_conv_coef"]
        del_prev = 0.0
        for m in range(self.options["max_nonlin_iters"]):
            correction = -r
            self._ls_point = (t_new, y.copy(), yp.copy(), r.copy())
            lflag = self.linear_solver.solve(self, correction)
            if lflag < 0:
                return IdaFlag.LSOLVE_FAIL, None
            if lflag > 0:
                return _RECOVER_LS, None
            if not isinstance(self.linear_solver, SpilsSolver):
                correction *= scale
            y = y + correction
            yp = yp + cj * correction
            self.nni += 1
            delta = wrms_norm(correction, self.ewt)
            if m > 0:
                rate = (delta / del_prev) ** (1.0 / m)
                if rate > 0.9:
                    return _RECOVER_CONV, None
                if rate / (1.0 - rate) * delta <= threshold:
                    self._ss = rate / (1.0 - rate)
                    return 0, y
            else:
                if delta <= 100.0 * UNIT_ROUNDOFF * wrms_norm(y, self.ewt):
                    return 0, y
                if self._ss * delta <= threshold:
                    return 0, y
                del_prev = delta
            flag = self._res(t_new, y, yp, r)
            if flag > 0:
                return _RECOVER_RES, None
            if flag < 0:
                return IdaFlag.RES_FAIL, None
        return _RECOVER_CONV, None

    def free(self) -> None:
        self.errors.close()
        self.callbacks.clear()
        self.errors.handler = None
        self.initialized = False
