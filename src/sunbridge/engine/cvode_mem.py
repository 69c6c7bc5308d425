"""ODE integrator memory with quadrature and forward sensitivity extensions.

:class:`CvodeMem` integrates ``y' = f(t, y)`` with variable-step BDF or
Adams-Moulton formulas (orders 1 and 2, see
:mod:`sunbridge.engine.multistep`) and either Newton or functional
iteration for the corrector. All interaction goes through integer flags
(:class:`~sunbridge.engine.flags.CvFlag`) and callbacks registered with
:meth:`CvodeMem.set_callback`, each called as ``fn(user_data, *args)`` and
returning an integer status.
"""
import math
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from sunbridge.engine.errors import ErrorReporter
from sunbridge.engine.flags import (
    BACKWARD_KINDS,
    CallbackKind,
    ConvFail,
    CvFlag,
    GramSchmidt,
    Iteration,
    KrylovMethod,
    Lmm,
    PrecType,
    Task,
)
from sunbridge.engine.linear import (
    BandSolver,
    DenseSolver,
    DiagSolver,
    SpilsSolver,
    dq_band_jacobian,
    dq_dense_jacobian,
    identity_minus_gamma_band,
)
from sunbridge.engine.multistep import (
    MAX_SUPPORTED_ORDER,
    UNIT_ROUNDOFF,
    History,
    hermite,
    step_coefficients,
    wrms_norm,
)
from sunbridge.engine.precond import (
    BandPreconditioner,
    BBDPreconditioner,
    UserPreconditioner,
)
from sunbridge.engine.roots import RootFinder

Array = NDArray[np.float64]

_SQRT_UROUND = math.sqrt(UNIT_ROUNDOFF)

# Step size control.
_FIRST_STEP_GROWTH = 1.0e4
_STEP_GROWTH = 10.0
_MIN_ERR_ETA = 0.1
_CONV_FAIL_ETA = 0.25
_HYSTERESIS = 1.5

# Newton matrix refresh.
_SETUP_REFRESH_STEPS = 20
_JAC_REFRESH_STEPS = 50
_GAMMA_CHANGE_LIMIT = 0.3
_BAD_J_GAMMA_CHANGE = 0.2
_RATE_DECAY = 0.3
_DIVERGENCE = 2.0

# Internal reasons for a recoverable corrector failure.
_RECOVER_RHS = 1
_RECOVER_LS = 2
_RECOVER_CONV = 3
_RECOVER_QUAD = 4
_RECOVER_SENS = 5
_RETRY_WITH_SETUP = 6

_OPTION_DEFAULTS = {
    "max_ord": 0,
    "max_num_steps": 500,
    "max_hnil_warns": 10,
    "stab_lim_det": False,
    "init_step": 0.0,
    "min_step": 0.0,
    "max_step": 0.0,
    "max_err_test_fails": 7,
    "max_nonlin_iters": 3,
    "max_conv_fails": 10,
    "nonlin_conv_coef": 0.1,
    "max_first_rhs_retries": 5,
}

_DEFAULT_MAX_ORD = {Lmm.ADAMS: 12, Lmm.BDF: 5}


class _Quadrature:
    """Quadrature variables integrated alongside the state."""

    def __init__(self, yq0: Array) -> None:
        self.hist = History(yq0)
        self.errcon = False
        self.rtol = 0.0
        self.atol = None
        self.ewt = np.ones(yq0.shape[0])
        self.num_rhs_evals = 0
        self.num_err_test_fails = 0

    @property
    def n(self) -> int:
        return self.hist.n

    def update_ewt(self) -> int:
        if not self.errcon:
            return 0
        tol = self.rtol * np.abs(self.hist.y) + self.atol
        if np.any(tol <= 0.0):
            return -1
        self.ewt = 1.0 / tol
        return 0


class _Sensitivity:
    """Forward sensitivity vectors and their difference-quotient settings."""

    def __init__(self, ns: int, one_by_one: bool, ys0: List[Array]) -> None:
        self.ns = ns
        self.one_by_one = one_by_one
        self.method = 0
        self.hists = [History(y) for y in ys0]
        self.active = True
        self.p: Optional[Array] = None
        self.pbar = np.ones(ns)
        self.plist = np.arange(ns)
        self.centered = True
        self.rhomax = 0.0
        self.errcon = False
        self.tol_kind = "ee"
        self.rtol = 0.0
        self.atol: List = []
        self.ewt: List[Array] = [np.ones(h.n) for h in self.hists]
        self.max_nonlin_iters = 3
        self.num_rhs_evals = 0
        self.num_dq_rhs_evals = 0
        self.num_err_test_fails = 0
        self.num_nonlin_iters = 0
        self.num_conv_fails = 0

    def reset_counters(self) -> None:
        self.num_rhs_evals = 0
        self.num_dq_rhs_evals = 0
        self.num_err_test_fails = 0
        self.num_nonlin_iters = 0
        self.num_conv_fails = 0


class CvodeMem:
    """Opaque integrator memory for one ODE problem.

    Parameters
    ----------
    lmm
        Multistep family.
    iteration
        Corrector iteration.
    module
        Name used in error reports.
    """

    def __init__(self, lmm: Lmm, iteration: Iteration,
                 module: str = "CVODE") -> None:
        self.lmm = Lmm(lmm)
        self.iteration = Iteration(iteration)
        self.user_data = None
        self.callbacks: Dict[CallbackKind, Callable] = {}
        self.errors = ErrorReporter(module)
        self.initialized = False
        self.n = 0
        self.options = dict(_OPTION_DEFAULTS)
        self.tstop: Optional[float] = None
        self.tol_kind: Optional[str] = None
        self.rtol = 0.0
        self.atol = None
        self.linear_solver = None
        self.roots: Optional[RootFinder] = None
        self.quad: Optional[_Quadrature] = None
        self.sens: Optional[_Sensitivity] = None
        #: Called as ``step_hook(t, y, f)`` at the initial point and after
        #: every accepted step.
        self.step_hook: Optional[Callable] = None
        self.t0 = 0.0
        self.tn = 0.0
        self.t_ret_last = 0.0
        self.hist: Optional[History] = None
        self.ewt = np.zeros(0)
        self._reset_state()

    # ------------------------------------------------------------------
    # Setup

    def _reset_state(self) -> None:
        self.h = 0.0
        self.hu = 0.0
        self.h0u = 0.0
        self.q = 1
        self.qu = 0
        self.nst = 0
        self.nfe = 0
        self.nfe_ls = 0
        self.nsetups = 0
        self.netf = 0
        self.nni = 0
        self.ncfn = 0
        self.nhnil = 0
        self.tolsf = 1.0
        self.acor = np.zeros(self.n)
        self._started = False
        self._gamma = 0.0
        self._gammap = 0.0
        self._nstlp = 0
        self._nstlj = 0
        self._crate = 1.0
        self._jcur = False
        self._force_setup = True
        self._convfail = ConvFail.NO_FAILURES
        self._ls_point: Tuple[float, Array, Array] = (
            0.0, np.zeros(self.n), np.zeros(self.n)
        )

    def _fail(self, flag: int, function: str, message: str) -> int:
        self.errors.report(int(flag), function, message)
        return int(flag)

    def set_user_data(self, user_data) -> int:
        self.user_data = user_data
        self.errors.user_data = user_data
        return CvFlag.SUCCESS

    def set_error_file(self, path: str, truncate: bool = True) -> int:
        if self.errors.set_file(path, truncate) != 0:
            return self._fail(CvFlag.ILL_INPUT, "CVodeSetErrFile",
                              f"Cannot open error file {path}.")
        return CvFlag.SUCCESS

    def set_callback(self, kind: CallbackKind,
                     fn: Optional[Callable]) -> int:
        """Register ``fn`` for ``kind``; ``fn=None`` clears the slot."""
        try:
            kind = CallbackKind(kind)
        except ValueError:
            return self._fail(CvFlag.ILL_INPUT, "CVodeSetCallback",
                              f"Unknown callback kind {kind}.")
        if kind in BACKWARD_KINDS or kind in (CallbackKind.RES,
                                              CallbackKind.SYSFN):
            return self._fail(CvFlag.ILL_INPUT, "CVodeSetCallback",
                              f"Callback kind {kind.name} does not apply "
                              f"to a forward ODE problem.")
        if fn is None:
            self.callbacks.pop(kind, None)
        else:
            self.callbacks[kind] = fn
        if kind == CallbackKind.ERROR_HANDLER:
            self.errors.handler = fn
        return CvFlag.SUCCESS

    def init(self, t0: float, y0: Array) -> int:
        y0 = np.array(y0, dtype=np.float64).ravel()
        if y0.size == 0:
            return self._fail(CvFlag.ILL_INPUT, "CVodeInit",
                              "y0 has no components.")
        self.n = y0.shape[0]
        self.t0 = self.tn = self.t_ret_last = float(t0)
        self.hist = History(y0)
        self.ewt = np.zeros(self.n)
        self.initialized = True
        self._reset_state()
        return CvFlag.SUCCESS

    def reinit(self, t0: float, y0: Array) -> int:
        if not self.initialized:
            return self._fail(CvFlag.NO_MALLOC, "CVodeReInit",
                              "Attempt to call before CVodeInit.")
        y0 = np.array(y0, dtype=np.float64).ravel()
        if y0.shape[0] != self.n:
            return self._fail(CvFlag.ILL_INPUT, "CVodeReInit",
                              f"y0 has {y0.shape[0]} components, "
                              f"expected {self.n}.")
        self.t0 = self.tn = self.t_ret_last = float(t0)
        self.hist = History(y0)
        self._reset_state()
        if self.quad is not None:
            self.quad.hist.reset(self.quad.hist.y, np.zeros(self.quad.n))
        if self.sens is not None:
            for h in self.sens.hists:
                h.reset(h.y, np.zeros(h.n))
        if self.roots is not None:
            self.roots.clear_info()
        return CvFlag.SUCCESS

    # ------------------------------------------------------------------
    # Tolerances and options

    def ss_tolerances(self, rtol: float, atol: float) -> int:
        if rtol < 0.0 or atol < 0.0:
            return self._fail(CvFlag.ILL_INPUT, "CVodeSStolerances",
                              "Tolerances must be non-negative.")
        self.tol_kind = "ss"
        self.rtol = float(rtol)
        self.atol = float(atol)
        return CvFlag.SUCCESS

    def sv_tolerances(self, rtol: float, atol: Array) -> int:
        atol = np.array(atol, dtype=np.float64).ravel()
        if rtol < 0.0 or np.any(atol < 0.0):
            return self._fail(CvFlag.ILL_INPUT, "CVodeSVtolerances",
                              "Tolerances must be non-negative.")
        if atol.shape[0] != self.n:
            return self._fail(CvFlag.ILL_INPUT, "CVodeSVtolerances",
                              "abstol has the wrong length.")
        self.tol_kind = "sv"
        self.rtol = float(rtol)
        self.atol = atol
        return CvFlag.SUCCESS

    def wf_tolerances(self) -> int:
        if CallbackKind.ERROR_WEIGHT not in self.callbacks:
            return self._fail(CvFlag.ILL_INPUT, "CVodeWFtolerances",
                              "No error weight function is registered.")
        self.tol_kind = "wf"
        return CvFlag.SUCCESS

    def set_option(self, name: str, value) -> int:
        if name not in self.options:
            return self._fail(CvFlag.ILL_INPUT, "CVodeSetOption",
                              f"Unknown option {name}.")
        if name in ("min_step", "max_step") and value < 0:
            return self._fail(CvFlag.ILL_INPUT, "CVodeSetOption",
                              f"{name} must be non-negative.")
        if name == "max_first_rhs_retries" and value < 0:
            return self._fail(CvFlag.ILL_INPUT, "CVodeSetOption",
                              f"{name} must be non-negative.")
        if name in ("max_ord", "max_num_steps", "max_err_test_fails",
                    "max_nonlin_iters", "max_conv_fails",
                    "nonlin_conv_coef", "max_hnil_warns") and value <= 0:
            value = _OPTION_DEFAULTS[name]
        min_step = value if name == "min_step" else self.options["min_step"]
        max_step = value if name == "max_step" else self.options["max_step"]
        if max_step > 0.0 and min_step > max_step:
            return self._fail(CvFlag.ILL_INPUT, "CVodeSetOption",
                              "Inconsistent step size limits: "
                              "min_step > max_step.")
        self.options[name] = value
        return CvFlag.SUCCESS

    def set_stop_time(self, tstop: Optional[float]) -> int:
        if not self.initialized:
            return self._fail(CvFlag.NO_MALLOC, "CVodeSetStopTime",
                              "Attempt to call before CVodeInit.")
        if tstop is not None and self._started and self.h != 0.0:
            if (tstop - self.tn) * self.h < 0.0:
                return self._fail(
                    CvFlag.ILL_INPUT, "CVodeSetStopTime",
                    f"The value tstop = {tstop} is behind current "
                    f"t = {self.tn} in the direction of integration.")
        self.tstop = None if tstop is None else float(tstop)
        return CvFlag.SUCCESS

    @property
    def max_order(self) -> int:
        max_ord = self.options["max_ord"] or _DEFAULT_MAX_ORD[self.lmm]
        return max(1, min(max_ord, MAX_SUPPORTED_ORDER))

    # ------------------------------------------------------------------
    # Root finding

    def root_init(self, nroots: int) -> int:
        if not self.initialized:
            return self._fail(CvFlag.NO_MALLOC, "CVodeRootInit",
                              "Attempt to call before CVodeInit.")
        if nroots < 0:
            return self._fail(CvFlag.ILL_INPUT, "CVodeRootInit",
                              "nrtfn must be non-negative.")
        self.roots = RootFinder(nroots) if nroots > 0 else None
        return CvFlag.SUCCESS

    def set_root_direction(self, directions) -> int:
        if self.roots is None:
            return self._fail(CvFlag.ILL_INPUT, "CVodeSetRootDirection",
                              "No root functions are configured.")
        directions = np.asarray(directions)
        if directions.shape != (self.roots.nroots,):
            return self._fail(CvFlag.ILL_INPUT, "CVodeSetRootDirection",
                              "rootdir has the wrong length.")
        self.roots.set_directions(directions)
        return CvFlag.SUCCESS

    def set_no_inactive_root_warn(self) -> int:
        if self.roots is not None:
            self.roots.warn_inactive = False
        return CvFlag.SUCCESS

    def get_root_info(self, out) -> int:
        if self.roots is None:
            return self._fail(CvFlag.ILL_INPUT, "CVodeGetRootInfo",
                              "No root functions are configured.")
        out[:] = self.roots.info
        return CvFlag.SUCCESS

    def _eval_roots(self, t: float, gout: Array) -> int:
        y = self._interp(t, 0)
        return self.callbacks[CallbackKind.ROOTS](self.user_data, t, y, gout)

    # ------------------------------------------------------------------
    # Linear solvers

    def set_linear_solver_dense(self) -> int:
        if not self.initialized:
            return self._fail(CvFlag.NO_MALLOC, "CVDense",
                              "Attempt to call before CVodeInit.")
        self.linear_solver = DenseSolver(self.n)
        self._force_setup = True
        return CvFlag.SUCCESS

    def set_linear_solver_band(self, mupper: int, mlower: int) -> int:
        if not self.initialized:
            return self._fail(CvFlag.NO_MALLOC, "CVBand",
                              "Attempt to call before CVodeInit.")
        if not (0 <= mupper < self.n and 0 <= mlower < self.n):
            return self._fail(CvFlag.ILL_INPUT, "CVBand",
                              "Illegal bandwidth parameter(s).")
        self.linear_solver = BandSolver(self.n, mupper, mlower)
        self._force_setup = True
        return CvFlag.SUCCESS

    def set_linear_solver_diag(self) -> int:
        if not self.initialized:
            return self._fail(CvFlag.NO_MALLOC, "CVDiag",
                              "Attempt to call before CVodeInit.")
        self.linear_solver = DiagSolver(self.n)
        self._force_setup = True
        return CvFlag.SUCCESS

    def set_linear_solver_spils(self, method: KrylovMethod,
                                pretype: PrecType, maxl: int) -> int:
        if not self.initialized:
            return self._fail(CvFlag.NO_MALLOC, "CVSpils",
                              "Attempt to call before CVodeInit.")
        try:
            pretype = PrecType(pretype)
            method = KrylovMethod(method)
        except ValueError:
            return self._fail(CvFlag.ILL_INPUT, "CVSpils",
                              "Illegal value for pretype or method.")
        self.linear_solver = SpilsSolver(self.n, method, maxl, pretype)
        self._force_setup = True
        return CvFlag.SUCCESS

    def _spils(self, function: str) -> Optional[SpilsSolver]:
        if not isinstance(self.linear_solver, SpilsSolver):
            self._fail(CvFlag.ILL_INPUT, function,
                       "Linear solver memory is NULL or not iterative.")
            return None
        return self.linear_solver

    def set_user_prec(self) -> int:
        solver = self._spils("CVSpilsSetPreconditioner")
        if solver is None:
            return CvFlag.ILL_INPUT
        solver.preconditioner = UserPreconditioner()
        return CvFlag.SUCCESS

    def set_band_prec(self, mupper: int, mlower: int) -> int:
        solver = self._spils("CVBandPrecInit")
        if solver is None:
            return CvFlag.ILL_INPUT
        solver.preconditioner = BandPreconditioner(self.n, mupper, mlower)
        return CvFlag.SUCCESS

    def set_bbd_prec(self, mudq: int, mldq: int, mukeep: int, mlkeep: int,
                     dqrely: Optional[float]) -> int:
        solver = self._spils("CVBBDPrecInit")
        if solver is None:
            return CvFlag.ILL_INPUT
        solver.preconditioner = BBDPreconditioner(
            self.n, mudq, mldq, mukeep, mlkeep, dqrely)
        return CvFlag.SUCCESS

    def bbd_reinit(self, mudq: int, mldq: int,
                   dqrely: Optional[float]) -> int:
        solver = self._spils("CVBBDPrecReInit")
        if solver is None or not isinstance(solver.preconditioner,
                                            BBDPreconditioner):
            return self._fail(CvFlag.ILL_INPUT, "CVBBDPrecReInit",
                              "BBD preconditioner memory is NULL.")
        solver.preconditioner.reinit(mudq, mldq, dqrely)
        self._force_setup = True
        return CvFlag.SUCCESS

    def set_prec_type(self, pretype: PrecType) -> int:
        solver = self._spils("CVSpilsSetPrecType")
        if solver is None:
            return CvFlag.ILL_INPUT
        solver.pretype = PrecType(pretype)
        return CvFlag.SUCCESS

    def set_gs_type(self, gstype: GramSchmidt) -> int:
        solver = self._spils("CVSpilsSetGSType")
        if solver is None:
            return CvFlag.ILL_INPUT
        solver.gs_type = GramSchmidt(gstype)
        return CvFlag.SUCCESS

    def set_eps_lin(self, eplifac: float) -> int:
        solver = self._spils("CVSpilsSetEpsLin")
        if solver is None:
            return CvFlag.ILL_INPUT
        if eplifac < 0.0:
            return self._fail(CvFlag.ILL_INPUT, "CVSpilsSetEpsLin",
                              "eplifac < 0 illegal.")
        solver.eps_lin = eplifac if eplifac > 0.0 else 0.05
        return CvFlag.SUCCESS

    def set_maxl(self, maxl: int) -> int:
        solver = self._spils("CVSpilsSetMaxl")
        if solver is None:
            return CvFlag.ILL_INPUT
        solver.maxl = maxl if maxl > 0 else 5
        return CvFlag.SUCCESS

    def ls_stats(self) -> dict:
        """Counters of the attached linear solver and preconditioner."""
        if self.linear_solver is None:
            return {}
        stats = dict(self.linear_solver.stats())
        stats["rhs_evals_ls"] = self.nfe_ls
        lenrw, leniw = self.linear_solver.work_space()
        stats["work_space"] = (lenrw, leniw)
        prec = getattr(self.linear_solver, "preconditioner", None)
        if isinstance(prec, BandPreconditioner):
            stats["prec_rhs_evals"] = prec.num_rhs_evals
            stats["prec_work_space"] = prec.work_space()
        elif isinstance(prec, BBDPreconditioner):
            stats["gfn_evals"] = prec.num_gfn_evals
            stats["prec_work_space"] = prec.work_space()
        return stats

    # Hooks used by the linear solver modules.

    def _dq_increments(self, y: Array, scale: float) -> Array:
        inc = scale * np.maximum(np.abs(y), 1.0 / self.ewt)
        if self.h < 0.0:
            inc = -inc
        return inc

    def _shifted_rhs(self, t: float, y: Array):
        def evaluate(inc, out):
            self.nfe_ls += 1
            return self._call_rhs(t, y + inc, out)
        return evaluate

    def ls_dense_jac(self, jac: Array) -> int:
        t, y, fy = self._ls_point
        cb = self.callbacks.get(CallbackKind.DENSE_JAC)
        if cb is not None:
            return cb(self.user_data, t, y, fy, jac, np.zeros(self.n),
                      np.zeros(self.n), np.zeros(self.n))
        return dq_dense_jacobian(fy, self._dq_increments(y, _SQRT_UROUND),
                                 self._shifted_rhs(t, y), jac)

    def ls_band_jac(self, mupper: int, mlower: int, ab: Array) -> int:
        t, y, fy = self._ls_point
        cb = self.callbacks.get(CallbackKind.BAND_JAC)
        if cb is not None:
            return cb(self.user_data, mupper, mlower, t, y, fy, ab,
                      np.zeros(self.n), np.zeros(self.n), np.zeros(self.n))
        return dq_band_jacobian(fy, self._dq_increments(y, _SQRT_UROUND),
                                self._shifted_rhs(t, y), mupper, mlower,
                                ab, mupper, mlower)

    def ls_dq_band(self, mupper: int, mlower: int,
                   ab: Array) -> Tuple[int, int]:
        t, y, fy = self._ls_point
        before = self.nfe_ls
        flag = dq_band_jacobian(fy, self._dq_increments(y, _SQRT_UROUND),
                                self._shifted_rhs(t, y), mupper, mlower,
                                ab, mupper, mlower)
        evals = self.nfe_ls - before
        self.nfe_ls = before
        return flag, evals

    def ls_newton_dense(self, jac: Array) -> Array:
        return np.eye(self.n) - self._gamma * jac

    def ls_newton_band(self, ab: Array, mupper: int, mlower: int) -> Array:
        return identity_minus_gamma_band(ab, mupper, self._gamma)

    def ls_diag_jac(self, diag: Array) -> int:
        t, y, fy = self._ls_point
        inc = self._dq_increments(y, _SQRT_UROUND)
        shifted = np.zeros(self.n)
        self.nfe_ls += 1
        flag = self._call_rhs(t, y + inc, shifted)
        if flag != 0:
            return flag
        diag[:] = (shifted - fy) / inc
        return 0

    def ls_newton_diag(self, diag: Array) -> Array:
        return 1.0 - self._gamma * diag

    def ls_matvec(self, v: Array, out: Array) -> int:
        t, y, fy = self._ls_point
        jv = np.zeros(self.n)
        cb = self.callbacks.get(CallbackKind.JAC_TIMES_VEC)
        if cb is not None:
            flag = cb(self.user_data, v, jv, t, y, fy, np.zeros(self.n))
        else:
            norm = wrms_norm(v, self.ewt)
            if norm == 0.0:
                out[:] = v
                return 0
            sig = 1.0 / norm
            shifted = np.zeros(self.n)
            self.nfe_ls += 1
            flag = self._call_rhs(t, y + sig * v, shifted)
            jv = (shifted - fy) / sig
        if flag != 0:
            return flag
        out[:] = v - self._gamma * jv
        return 0

    def ls_psetup(self, jok: bool) -> Tuple[int, bool]:
        cb = self.callbacks.get(CallbackKind.PREC_SETUP)
        if cb is None:
            return 0, False
        t, y, fy = self._ls_point
        return cb(self.user_data, t, y, fy, jok, self._gamma,
                  np.zeros(self.n), np.zeros(self.n), np.zeros(self.n))

    def ls_psolve(self, r: Array, z: Array, lr: int) -> int:
        cb = self.callbacks.get(CallbackKind.PREC_SOLVE)
        if cb is None:
            z[:] = r
            return 0
        t, y, fy = self._ls_point
        return cb(self.user_data, t, y, fy, r, z, self._gamma,
                  self.ls_krylov_rtol(), lr, np.zeros(self.n))

    def ls_krylov_rtol(self) -> float:
        return 0.05 * getattr(self.linear_solver, "eps_lin", 0.05)

    def bbd_comm(self) -> int:
        cb = self.callbacks.get(CallbackKind.BBD_COMM)
        if cb is None:
            return 0
        t, y, _ = self._ls_point
        return cb(self.user_data, t, y)

    def bbd_local(self, inc: Array, g: Array) -> int:
        cb = self.callbacks.get(CallbackKind.BBD_LOCAL)
        if cb is None:
            return -1
        t, y, _ = self._ls_point
        return cb(self.user_data, t, y + inc, g)

    def bbd_increments(self, dqrely: float) -> Array:
        return self._dq_increments(self._ls_point[1], dqrely)

    def jacobian(self) -> Optional[Array]:
        """Jacobian used by the last setup of a direct linear solver."""
        getter = getattr(self.linear_solver, "jacobian", None)
        return None if getter is None else getter()

    # ------------------------------------------------------------------
    # Quadrature

    def quad_init(self, yq0: Array) -> int:
        if not self.initialized:
            return self._fail(CvFlag.NO_MALLOC, "CVodeQuadInit",
                              "Attempt to call before CVodeInit.")
        self.quad = _Quadrature(np.array(yq0, dtype=np.float64).ravel())
        return CvFlag.SUCCESS

    def quad_reinit(self, yq0: Array) -> int:
        if self.quad is None:
            return self._fail(CvFlag.NO_QUAD, "CVodeQuadReInit",
                              "Quadrature integration not activated.")
        yq0 = np.array(yq0, dtype=np.float64).ravel()
        if yq0.shape[0] != self.quad.n:
            return self._fail(CvFlag.ILL_INPUT, "CVodeQuadReInit",
                              "yQ0 has the wrong length.")
        self.quad.hist.reset(yq0, np.zeros(self.quad.n))
        self.quad.num_rhs_evals = 0
        self.quad.num_err_test_fails = 0
        return CvFlag.SUCCESS

    def quad_tolerances(self, rtol: Optional[float], atol) -> int:
        """Set quadrature tolerances; ``rtol`` None excludes them from
        error control."""
        if self.quad is None:
            return self._fail(CvFlag.NO_QUAD, "CVodeQuadTolerances",
                              "Quadrature integration not activated.")
        if rtol is None:
            self.quad.errcon = False
            return CvFlag.SUCCESS
        atol_arr = np.asarray(atol, dtype=np.float64)
        if rtol < 0.0 or np.any(atol_arr < 0.0):
            return self._fail(CvFlag.ILL_INPUT, "CVodeQuadTolerances",
                              "Tolerances must be non-negative.")
        if atol_arr.ndim == 1 and atol_arr.shape[0] != self.quad.n:
            return self._fail(CvFlag.ILL_INPUT, "CVodeQuadTolerances",
                              "abstolQ has the wrong length.")
        self.quad.errcon = True
        self.quad.rtol = float(rtol)
        self.quad.atol = atol_arr if atol_arr.ndim else float(atol_arr)
        return CvFlag.SUCCESS

    def get_quad(self, out: Array) -> Tuple[int, float]:
        if self.quad is None:
            return self._fail(CvFlag.NO_QUAD, "CVodeGetQuad",
                              "Quadrature integration not activated."), \
                self.t_ret_last
        return self.get_quad_dky(self.t_ret_last, 0, out), self.t_ret_last

    def get_quad_dky(self, t: float, k: int, out: Array) -> int:
        if self.quad is None:
            return self._fail(CvFlag.NO_QUAD, "CVodeGetQuadDky",
                              "Quadrature integration not activated.")
        flag = self._check_dky(t, k, out, "CVodeGetQuadDky")
        if flag != 0:
            return flag
        out[:] = self._interp_hist(self.quad.hist, t, k)
        return CvFlag.SUCCESS

    def quad_stats(self) -> dict:
        if self.quad is None:
            return {}
        return {"rhs_evals": self.quad.num_rhs_evals,
                "err_test_fails": self.quad.num_err_test_fails}

    def _quad_rhs(self, t: float, y: Array, out: Array) -> int:
        self.quad.num_rhs_evals += 1
        return self.callbacks[CallbackKind.QUAD_RHS](self.user_data, t, y,
                                                     out)

    # ------------------------------------------------------------------
    # Forward sensitivity

    def sens_init(self, ns: int, method: int, one_by_one: bool,
                  ys0: List[Array]) -> int:
        if not self.initialized:
            return self._fail(CvFlag.NO_MALLOC, "CVodeSensInit",
                              "Attempt to call before CVodeInit.")
        if ns <= 0 or len(ys0) != ns:
            return self._fail(CvFlag.ILL_INPUT, "CVodeSensInit",
                              "NS must be positive and match yS0.")
        vectors = [np.array(y, dtype=np.float64).ravel() for y in ys0]
        if any(v.shape[0] != self.n for v in vectors):
            return self._fail(CvFlag.ILL_INPUT, "CVodeSensInit",
                              "yS0 vectors have the wrong length.")
        self.sens = _Sensitivity(ns, one_by_one, vectors)
        self.sens.method = int(method)
        return CvFlag.SUCCESS

    def sens_reinit(self, method: int, ys0: List[Array]) -> int:
        if self.sens is None:
            return self._fail(CvFlag.NO_SENS, "CVodeSensReInit",
                              "Forward sensitivity analysis not activated.")
        if len(ys0) != self.sens.ns:
            return self._fail(CvFlag.ILL_INPUT, "CVodeSensReInit",
                              "yS0 has the wrong number of vectors.")
        for h, y in zip(self.sens.hists, ys0):
            y = np.array(y, dtype=np.float64).ravel()
            if y.shape[0] != self.n:
                return self._fail(CvFlag.ILL_INPUT, "CVodeSensReInit",
                                  "yS0 vectors have the wrong length.")
            h.reset(y, np.zeros(self.n))
        self.sens.method = int(method)
        self.sens.active = True
        self.sens.reset_counters()
        return CvFlag.SUCCESS

    def sens_toggle_off(self) -> int:
        if self.sens is not None:
            self.sens.active = False
        return CvFlag.SUCCESS

    def _need_sens(self, function: str) -> Optional[_Sensitivity]:
        if self.sens is None:
            self._fail(CvFlag.NO_SENS, function,
                       "Forward sensitivity analysis not activated.")
        return self.sens

    def set_sens_params(self, p: Optional[Array], pbar: Optional[Array],
                        plist: Optional[Array]) -> int:
        sens = self._need_sens("CVodeSetSensParams")
        if sens is None:
            return CvFlag.NO_SENS
        if pbar is not None:
            pbar = np.asarray(pbar, dtype=np.float64)
            if pbar.shape != (sens.ns,) or np.any(pbar == 0.0):
                return self._fail(CvFlag.ILL_INPUT, "CVodeSetSensParams",
                                  "pbar has zero components or the wrong "
                                  "length.")
            sens.pbar = pbar
        if plist is not None:
            plist = np.asarray(plist, dtype=np.int64)
            if plist.shape != (sens.ns,) or np.any(plist < 0):
                return self._fail(CvFlag.ILL_INPUT, "CVodeSetSensParams",
                                  "plist has negative components or the "
                                  "wrong length.")
            if p is not None and np.any(plist >= len(p)):
                return self._fail(CvFlag.ILL_INPUT, "CVodeSetSensParams",
                                  "plist refers beyond p.")
            sens.plist = plist
        sens.p = p
        return CvFlag.SUCCESS

    def set_sens_dq_method(self, centered: bool, rhomax: float) -> int:
        sens = self._need_sens("CVodeSetSensDQMethod")
        if sens is None:
            return CvFlag.NO_SENS
        if rhomax < 0.0:
            return self._fail(CvFlag.ILL_INPUT, "CVodeSetSensDQMethod",
                              "rhomax < 0 illegal.")
        sens.centered = bool(centered)
        sens.rhomax = float(rhomax)
        return CvFlag.SUCCESS

    def set_sens_err_con(self, errcon: bool) -> int:
        sens = self._need_sens("CVodeSetSensErrCon")
        if sens is None:
            return CvFlag.NO_SENS
        sens.errcon = bool(errcon)
        return CvFlag.SUCCESS

    def set_sens_max_nonlin_iters(self, maxcor: int) -> int:
        sens = self._need_sens("CVodeSetSensMaxNonlinIters")
        if sens is None:
            return CvFlag.NO_SENS
        sens.max_nonlin_iters = maxcor if maxcor > 0 else 3
        return CvFlag.SUCCESS

    def sens_tolerances(self, kind: str, rtol: float = 0.0,
                        atol=None) -> int:
        """``kind`` is ``"ss"`` (scalar per sensitivity), ``"sv"`` (vector
        per sensitivity) or ``"ee"`` (estimated from the state tolerances)."""
        sens = self._need_sens("CVodeSensTolerances")
        if sens is None:
            return CvFlag.NO_SENS
        if kind == "ee":
            sens.tol_kind = "ee"
            return CvFlag.SUCCESS
        if rtol < 0.0 or atol is None or len(atol) != sens.ns:
            return self._fail(CvFlag.ILL_INPUT, "CVodeSensTolerances",
                              "Need non-negative rtol and one abstol per "
                              "sensitivity.")
        values = [np.asarray(a, dtype=np.float64) for a in atol]
        if any(np.any(a < 0.0) for a in values):
            return self._fail(CvFlag.ILL_INPUT, "CVodeSensTolerances",
                              "abstolS has negative components.")
        if kind == "sv" and any(a.shape != (self.n,) for a in values):
            return self._fail(CvFlag.ILL_INPUT, "CVodeSensTolerances",
                              "abstolS vectors have the wrong length.")
        sens.tol_kind = kind
        sens.rtol = float(rtol)
        sens.atol = values
        return CvFlag.SUCCESS

    def get_sens(self, out: List[Array]) -> Tuple[int, float]:
        return (self.get_sens_dky(self.t_ret_last, 0, out),
                self.t_ret_last)

    def get_sens_dky(self, t: float, k: int, out: List[Array]) -> int:
        sens = self._need_sens("CVodeGetSensDky")
        if sens is None:
            return CvFlag.NO_SENS
        for i in range(sens.ns):
            flag = self.get_sens_dky1(t, k, i, out[i])
            if flag != 0:
                return flag
        return CvFlag.SUCCESS

    def get_sens1(self, i: int, out: Array) -> Tuple[int, float]:
        return (self.get_sens_dky1(self.t_ret_last, 0, i, out),
                self.t_ret_last)

    def get_sens_dky1(self, t: float, k: int, i: int, out: Array) -> int:
        sens = self._need_sens("CVodeGetSensDky1")
        if sens is None:
            return CvFlag.NO_SENS
        if not 0 <= i < sens.ns:
            return self._fail(CvFlag.BAD_IS, "CVodeGetSensDky1",
                              f"Illegal value for is: {i}.")
        flag = self._check_dky(t, k, out, "CVodeGetSensDky1")
        if flag != 0:
            return flag
        out[:] = self._interp_hist(sens.hists[i], t, k)
        return CvFlag.SUCCESS

    def sens_stats(self) -> dict:
        if self.sens is None:
            return {}
        s = self.sens
        return {
            "rhs_evals": s.num_rhs_evals,
            "num_rhs_evals_dq": s.num_dq_rhs_evals,
            "err_test_fails": s.num_err_test_fails,
            "nonlin_iters": s.num_nonlin_iters,
            "conv_fails": s.num_conv_fails,
        }

    def _update_sens_ewt(self) -> int:
        s = self.sens
        for i, h in enumerate(s.hists):
            if s.tol_kind == "ee":
                atol = self.atol if self.atol is not None else 0.0
                if self.tol_kind == "wf":
                    s.ewt[i] = self.ewt * abs(s.pbar[i])
                    continue
                tol = self.rtol * np.abs(h.y) + atol / abs(s.pbar[i])
            else:
                tol = s.rtol * np.abs(h.y) + s.atol[i]
            if np.any(tol <= 0.0):
                return -1
            s.ewt[i] = 1.0 / tol
        return 0

    def _sens_rhs(self, t: float, y: Array, ydot: Array,
                  ys: List[Array], out: List[Array]) -> int:
        s = self.sens
        if s.one_by_one:
            cb = self.callbacks.get(CallbackKind.SENS_RHS1)
            for i in range(s.ns):
                if cb is None:
                    flag = self._sens_dq1(t, y, ydot, i, ys[i], out[i])
                else:
                    s.num_rhs_evals += 1
                    flag = cb(self.user_data, t, y, ydot, i, ys[i], out[i],
                              np.zeros(self.n), np.zeros(self.n))
                if flag != 0:
                    return flag
            return 0
        cb = self.callbacks.get(CallbackKind.SENS_RHS)
        if cb is None:
            for i in range(s.ns):
                flag = self._sens_dq1(t, y, ydot, i, ys[i], out[i])
                if flag != 0:
                    return flag
            return 0
        s.num_rhs_evals += 1
        return cb(self.user_data, t, y, ydot, ys, out, np.zeros(self.n),
                  np.zeros(self.n))

    def _sens_dq1(self, t: float, y: Array, ydot: Array, i: int,
                  ys_i: Array, out: Array) -> int:
        """Directional difference quotient for sensitivity ``i``."""
        s = self.sens
        delta = math.sqrt(max(self.rtol, UNIT_ROUNDOFF))
        which = int(s.plist[i])
        pbar = abs(float(s.pbar[i]))
        psave = float(s.p[which])
        dp = pbar * delta
        norm = wrms_norm(ys_i, self.ewt) * pbar
        dy = pbar / max(norm, 1.0 / delta)
        step = min(dy, dp)
        forward = np.zeros(self.n)
        try:
            s.p[which] = psave + step
            s.num_dq_rhs_evals += 1
            flag = self._call_rhs(t, y + step * ys_i, forward)
            if flag != 0:
                return flag
            if not s.centered:
                out[:] = (forward - ydot) / step
                return 0
            backward = np.zeros(self.n)
            s.p[which] = psave - step
            s.num_dq_rhs_evals += 1
            flag = self._call_rhs(t, y - step * ys_i, backward)
            if flag != 0:
                return flag
            out[:] = (forward - backward) / (2.0 * step)
            return 0
        finally:
            s.p[which] = psave

    # ------------------------------------------------------------------
    # Output

    def _interp_hist(self, hist: History, t: float, k: int) -> Array:
        if self.nst == 0:
            if k == 0:
                return hist.y.copy()
            if k == 1:
                return hist.f.copy()
            return np.zeros(hist.n)
        return hermite(t, self.tn - self.hu, hist.y_prev, hist.f_prev,
                       self.tn, hist.y, hist.f, k)

    def _interp(self, t: float, k: int) -> Array:
        return self._interp_hist(self.hist, t, k)

    def _check_dky(self, t: float, k: int, out, function: str) -> int:
        if not self.initialized:
            return self._fail(CvFlag.NO_MALLOC, function,
                              "Attempt to call before CVodeInit.")
        if out is None:
            return self._fail(CvFlag.BAD_DKY, function, "dky = NULL illegal.")
        if k < 0 or k > 3:
            return self._fail(CvFlag.BAD_K, function,
                              f"Illegal value for k: {k}.")
        fuzz = 100.0 * UNIT_ROUNDOFF * (abs(self.tn) + abs(self.hu))
        if self.hu < 0.0:
            fuzz = -fuzz
        tp = self.tn - self.hu - fuzz
        tn1 = self.tn + fuzz
        if (t - tp) * (t - tn1) > 0.0:
            return self._fail(CvFlag.BAD_T, function,
                              f"Illegal value for t. t = {t} is not "
                              f"between tcur - hu = {self.tn - self.hu} "
                              f"and tcur = {self.tn}.")
        return 0

    def get_dky(self, t: float, k: int, out: Array) -> int:
        flag = self._check_dky(t, k, out, "CVodeGetDky")
        if flag != 0:
            return flag
        out[:] = self._interp(t, k)
        return CvFlag.SUCCESS

    def get_err_weights(self, out: Array) -> int:
        out[:] = self.ewt
        return CvFlag.SUCCESS

    def get_est_local_errors(self, out: Array) -> int:
        out[:] = self.acor
        return CvFlag.SUCCESS

    def stats(self) -> dict:
        lenrw = (4 + 2 * self.max_order) * self.n + 40
        return {
            "num_steps": self.nst,
            "num_rhs_evals": self.nfe,
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
            "num_g_evals": 0 if self.roots is None else self.roots.num_evals,
            "num_stab_lim_order_reds": 0,
            "tol_scale_factor": self.tolsf,
            "work_space": (lenrw, 50),
        }

    # ------------------------------------------------------------------
    # Integration

    def _call_rhs(self, t: float, y: Array, out: Array) -> int:
        return self.callbacks[CallbackKind.RHS](self.user_data, t, y, out)

    def _rhs(self, t: float, y: Array, out: Array) -> int:
        self.nfe += 1
        return self._call_rhs(t, y, out)

    def _update_ewt(self, y: Array) -> int:
        if self.tol_kind == "wf":
            ewt = np.zeros(self.n)
            cb = self.callbacks.get(CallbackKind.ERROR_WEIGHT)
            if cb is None or cb(self.user_data, y, ewt) != 0:
                return -1
            if np.any(ewt <= 0.0):
                return -1
            self.ewt = ewt
        else:
            tol = self.rtol * np.abs(y) + self.atol
            if np.any(tol <= 0.0):
                return -1
            self.ewt = 1.0 / tol
        if self.quad is not None and self.quad.update_ewt() != 0:
            return -1
        if self.sens is not None and self.sens.active:
            return self._update_sens_ewt()
        return 0

    def _validate(self, yout, function: str) -> int:
        if not self.initialized:
            return self._fail(CvFlag.NO_MALLOC, function,
                              "Attempt to call before CVodeInit.")
        if CallbackKind.RHS not in self.callbacks:
            return self._fail(CvFlag.ILL_INPUT, function,
                              "No right-hand side function is registered.")
        if self.tol_kind is None:
            return self._fail(CvFlag.ILL_INPUT, function,
                              "Tolerances have not been set.")
        if yout is None or np.shape(yout) != (self.n,):
            return self._fail(CvFlag.ILL_INPUT, function,
                              "yout has the wrong shape.")
        if self.iteration == Iteration.NEWTON and self.linear_solver is None:
            return self._fail(CvFlag.LINIT_FAIL, function,
                              "Newton iteration requires a linear solver.")
        if self.roots is not None and CallbackKind.ROOTS not in self.callbacks:
            return self._fail(CvFlag.ILL_INPUT, function,
                              "No root function is registered.")
        if self.quad is not None and (CallbackKind.QUAD_RHS
                                      not in self.callbacks):
            return self._fail(CvFlag.ILL_INPUT, function,
                              "No quadrature function is registered.")
        if self.sens is not None and self.sens.active:
            has_fn = (CallbackKind.SENS_RHS1 if self.sens.one_by_one
                      else CallbackKind.SENS_RHS) in self.callbacks
            if not has_fn and self.sens.p is None:
                return self._fail(CvFlag.ILL_INPUT, function,
                                  "Difference-quotient sensitivities need "
                                  "the problem parameters.")
        return 0

    def _start(self, tout: float) -> int:
        """Evaluate the initial derivatives and choose the first step."""
        t0 = self.tn
        if abs(tout - t0) < 2.0 * UNIT_ROUNDOFF * max(abs(t0), abs(tout)):
            return self._fail(CvFlag.TOO_CLOSE, "CVode",
                              "tout too close to t0 to start integration.")
        if self.tstop is not None and (self.tstop - t0) * (tout - t0) < 0.0:
            return self._fail(CvFlag.ILL_INPUT, "CVode",
                              f"The value tstop = {self.tstop} is behind "
                              f"current t = {t0} in the direction of "
                              f"integration.")
        y0 = self.hist.y.copy()
        f0 = np.zeros(self.n)
        retries = 0
        while True:
            flag = self._rhs(t0, y0, f0)
            if flag == 0:
                break
            if flag < 0:
                return self._fail(
                    CvFlag.RHSFUNC_FAIL, "CVode",
                    f"At t = {t0}, the right-hand side routine failed in "
                    f"an unrecoverable manner.")
            retries += 1
            if retries > self.options["max_first_rhs_retries"]:
                return self._fail(
                    CvFlag.FIRST_RHSFUNC_ERR, "CVode",
                    "The right-hand side routine failed at the first "
                    "call.")
        self.hist.reset(y0, f0)
        if self._update_ewt(y0) != 0:
            return self._fail(CvFlag.ILL_INPUT, "CVode",
                              "Initial ewt has component(s) equal to zero "
                              "(illegal).")
        if self.quad is not None:
            fq0 = np.zeros(self.quad.n)
            flag = self._quad_rhs(t0, y0, fq0)
            if flag < 0:
                return self._fail(CvFlag.QRHSFUNC_FAIL, "CVode",
                                  "The quadrature right-hand side routine "
                                  "failed in an unrecoverable manner.")
            if flag > 0:
                return self._fail(CvFlag.FIRST_QRHSFUNC_ERR, "CVode",
                                  "The quadrature right-hand side routine "
                                  "failed at the first call.")
            self.quad.hist.reset(self.quad.hist.y, fq0)
        if self.sens is not None and self.sens.active:
            ys0 = [h.y.copy() for h in self.sens.hists]
            fs0 = [np.zeros(self.n) for _ in ys0]
            flag = self._sens_rhs(t0, y0, f0, ys0, fs0)
            if flag < 0:
                return self._fail(CvFlag.SRHSFUNC_FAIL, "CVode",
                                  "The sensitivity right-hand side routine "
                                  "failed in an unrecoverable manner.")
            if flag > 0:
                return self._fail(CvFlag.FIRST_SRHSFUNC_ERR, "CVode",
                                  "The sensitivity right-hand side routine "
                                  "failed at the first call.")
            for h, y, f in zip(self.sens.hists, ys0, fs0):
                h.reset(y, f)
        if self.roots is not None:
            g0 = np.zeros(self.roots.nroots)
            self.roots.num_evals += 1
            if self._eval_roots(t0, g0) != 0:
                return self._fail(CvFlag.RTFUNC_FAIL, "CVode",
                                  f"At t = {t0}, the rootfinding routine "
                                  f"failed in an unrecoverable manner.")
            zeros = self.roots.start(t0, g0)
            if zeros and self.roots.warn_inactive:
                self.errors.report(
                    CvFlag.WARNING, "CVode",
                    f"At the beginning of the problem, root function(s) "
                    f"{zeros} are identically zero and are inactive.")
        direction = 1.0 if tout > t0 else -1.0
        h0 = abs(self.options["init_step"])
        if h0 == 0.0:
            flag, h0 = self._initial_step(tout, direction, f0)
            if flag != 0:
                return flag
        max_step = self.options["max_step"]
        if max_step > 0.0:
            h0 = min(h0, max_step)
        h0 = max(h0, self.options["min_step"])
        self.h = direction * h0
        self.h0u = self.h
        self.q = 1
        self._started = True
        if self.step_hook is not None:
            self.step_hook(t0, self.hist.y, self.hist.f)
        return 0

    def _initial_step(self, tout: float, direction: float,
                      f0: Array) -> Tuple[int, float]:
        t0 = self.tn
        tdist = abs(tout - t0)
        if self.tstop is not None:
            tdist = min(tdist, abs(self.tstop - t0)) or tdist
        hlb = 100.0 * UNIT_ROUNDOFF * max(abs(t0), abs(tout))
        hub = 0.1 * tdist
        if hub < hlb:
            return 0, math.sqrt(hlb * hub)
        hg = math.sqrt(hlb * hub)
        y0 = self.hist.y
        ydd = None
        for _ in range(4):
            f1 = np.zeros(self.n)
            flag = self._rhs(t0 + direction * hg, y0 + direction * hg * f0,
                             f1)
            if flag < 0:
                return self._fail(
                    CvFlag.RHSFUNC_FAIL, "CVode",
                    f"At t = {t0}, the right-hand side routine failed in "
                    f"an unrecoverable manner."), 0.0
            if flag > 0:
                hg *= 0.2
                continue
            ydd = wrms_norm((f1 - f0) / hg, self.ewt)
            break
        if ydd is None:
            return 0, max(hlb, hg)
        if ydd * hub * hub > 2.0:
            hnew = math.sqrt(2.0 / ydd)
        else:
            hnew = math.sqrt(hg * hub)
        return 0, min(max(0.5 * hnew, hlb), hub)

    def _finish(self, flag: int, tret: float, yout: Array) -> Tuple[int,
                                                                    float]:
        yout[:] = self._interp(tret, 0) if self.nst > 0 else self.hist.y
        self.t_ret_last = tret
        return int(flag), tret

    def _search_roots(self, t_hi: float) -> Tuple[int, Optional[float]]:
        if self.roots is None or self.roots.t_lo is None:
            return 0, None
        if (t_hi - self.roots.t_lo) * self.h <= 0.0:
            return 0, None
        flag, troot = self.roots.search(t_hi, self._eval_roots)
        if flag != 0:
            return self._fail(CvFlag.RTFUNC_FAIL, "CVode",
                              f"At t = {t_hi}, the rootfinding routine "
                              f"failed in an unrecoverable manner."), None
        return 0, troot

    def advance(self, tout: float, yout: Array,
                itask: Task = Task.NORMAL) -> Tuple[int, float]:
        """Integrate towards ``tout``; return ``(flag, t_reached)``.

        The solution at ``t_reached`` is written into ``yout``.
        """
        tout = float(tout)
        flag = self._validate(yout, "CVode")
        if flag != 0:
            return flag, self.tn
        itask = Task(itask)
        if not self._started:
            flag = self._start(tout)
            if flag != 0:
                return self._finish(flag, self.tn, yout)
        else:
            if self.tstop is not None and (self.tstop - self.tn) * self.h < 0:
                return self._finish(
                    self._fail(CvFlag.ILL_INPUT, "CVode",
                               f"The value tstop = {self.tstop} is behind "
                               f"current t = {self.tn}."), self.tn, yout)
            reached = itask == Task.NORMAL and (self.tn - tout) * self.h >= 0
            flag, troot = self._search_roots(tout if reached else self.tn)
            if flag != 0:
                return self._finish(flag, self.tn, yout)
            if troot is not None:
                return self._finish(CvFlag.ROOT_RETURN, troot, yout)
            if reached:
                if (tout - (self.tn - self.hu)) * self.h < 0.0 and \
                        self.nst > 0:
                    return self._finish(
                        self._fail(CvFlag.ILL_INPUT, "CVode",
                                   f"Trouble interpolating at tout = {tout}."
                                   f" tout too far back in direction of "
                                   f"integration."), self.tn, yout)
                return self._finish(CvFlag.SUCCESS, tout, yout)

        nstloc = 0
        while True:
            if self.tstop is not None and self.tn == self.tstop:
                self.tstop = None
            if nstloc >= self.options["max_num_steps"]:
                return self._finish(
                    self._fail(CvFlag.TOO_MUCH_WORK, "CVode",
                               f"At t = {self.tn}, mxstep steps taken "
                               f"before reaching tout."), self.tn, yout)
            if self._update_ewt(self.hist.y) != 0:
                return self._finish(
                    self._fail(CvFlag.ILL_INPUT, "CVode",
                               f"At t = {self.tn}, a component of ewt has "
                               f"become <= 0."), self.tn, yout)
            self.tolsf = UNIT_ROUNDOFF * wrms_norm(self.hist.y, self.ewt)
            if self.tolsf > 1.0:
                self.tolsf *= 2.0
                return self._finish(
                    self._fail(CvFlag.TOO_MUCH_ACC, "CVode",
                               f"At t = {self.tn}, too much accuracy "
                               f"requested."), self.tn, yout)
            if self.tstop is not None and \
                    (self.tn + self.h - self.tstop) * self.h > 0.0:
                self.h = self.tstop - self.tn
            if self.tn + self.h == self.tn:
                self.nhnil += 1
                if self.nhnil <= self.options["max_hnil_warns"]:
                    self.errors.report(
                        CvFlag.WARNING, "CVode",
                        f"Internal t = {self.tn} and h = {self.h} are such "
                        f"that t + h = t on the next step.")
            flag = self._step()
            if flag != 0:
                return self._finish(flag, self.tn, yout)
            nstloc += 1

            reached = itask == Task.NORMAL and (self.tn - tout) * self.h >= 0
            flag, troot = self._search_roots(tout if reached else self.tn)
            if flag != 0:
                return self._finish(flag, self.tn, yout)
            if troot is not None:
                return self._finish(CvFlag.ROOT_RETURN, troot, yout)
            if reached:
                return self._finish(CvFlag.SUCCESS, tout, yout)
            if self.tstop is not None and self.tn == self.tstop:
                self.tstop = None
                return self._finish(CvFlag.TSTOP_RETURN, self.tn, yout)
            if itask == Task.ONE_STEP:
                return self._finish(CvFlag.SUCCESS, self.tn, yout)

    def _step(self) -> int:
        """Take one successful step, shrinking ``h`` on failures."""
        ncf = nef = 0
        self._convfail = ConvFail.NO_FAILURES
        min_step = self.options["min_step"]
        while True:
            coef = step_coefficients(self.lmm, self.q, self.h, self.hu)
            t_new = self.tn + self.h
            if self.tstop is not None and \
                    abs(t_new - self.tstop) <= 4.0 * UNIT_ROUNDOFF * max(
                        abs(self.tstop), abs(self.h)):
                t_new = self.tstop
            pred = self.hist.predict(coef)
            a = self.hist.constant_part(coef)
            self._gamma = coef.gamma
            result, y_new = self._corrector(t_new, pred, a, coef)
            extras = None
            if result == 0:
                f_new = (y_new - a) / coef.gamma
                result, extras = self._extensions(t_new, y_new, f_new, coef)
            if result < 0:
                return self._unrecoverable(result)
            at_min = (abs(self.h) <= min_step * (1.0 + UNIT_ROUNDOFF)
                      or abs(self.h) <= 4.0 * UNIT_ROUNDOFF * abs(self.tn))
            if result > 0:
                ncf += 1
                self.ncfn += 1
                if self.sens is not None and result == _RECOVER_SENS:
                    self.sens.num_conv_fails += 1
                if ncf >= self.options["max_conv_fails"] or at_min:
                    return self._repeated_failure(result, at_min)
                self.h = self._clamp_step(self.h * _CONV_FAIL_ETA)
                self._convfail = (ConvFail.FAIL_BAD_J
                                  if result == _RECOVER_LS
                                  else ConvFail.FAIL_OTHER)
                continue

            dsm = coef.error_constant * wrms_norm(y_new - pred, self.ewt)
            dsm_ext = self._extension_error(extras, coef)
            dsm = max(dsm, dsm_ext)
            if dsm > 1.0:
                nef += 1
                self.netf += 1
                if nef >= self.options["max_err_test_fails"] or at_min:
                    return self._fail(
                        CvFlag.ERR_FAILURE, "CVode",
                        f"At t = {self.tn} and h = {self.h}, the error test "
                        f"failed repeatedly or with |h| = hmin.")
                eta = 0.9 * dsm ** (-1.0 / (coef.order + 1))
                eta = max(_MIN_ERR_ETA, min(0.9, eta))
                if nef >= 2:
                    self.q = 1
                    eta = min(eta, 0.25)
                self.h = self._clamp_step(self.h * eta)
                continue

            self._accept(t_new, y_new, f_new, pred, coef, extras)
            if dsm > 0.0:
                eta = 0.9 * dsm ** (-1.0 / (coef.order + 1))
            else:
                eta = _FIRST_STEP_GROWTH
            eta_max = _FIRST_STEP_GROWTH if self.nst == 1 else _STEP_GROWTH
            if nef > 0 or ncf > 0:
                eta_max = 1.0
            eta = min(eta, eta_max)
            if 1.0 <= eta < _HYSTERESIS:
                eta = 1.0
            self.h = self._clamp_step(self.h * eta)
            if self.q < self.max_order and nef == 0:
                self.q += 1
            return 0

    def _clamp_step(self, h: float) -> float:
        sign = 1.0 if h >= 0.0 else -1.0
        size = abs(h)
        if self.options["max_step"] > 0.0:
            size = min(size, self.options["max_step"])
        size = max(size, self.options["min_step"])
        return sign * size

    def _unrecoverable(self, flag: int) -> int:
        messages = {
            CvFlag.RHSFUNC_FAIL: "the right-hand side routine failed in an "
                                 "unrecoverable manner",
            CvFlag.LSETUP_FAIL: "the linear solver setup failed in an "
                                "unrecoverable manner",
            CvFlag.LSOLVE_FAIL: "the linear solver solve failed in an "
                                "unrecoverable manner",
            CvFlag.QRHSFUNC_FAIL: "the quadrature right-hand side routine "
                                  "failed in an unrecoverable manner",
            CvFlag.SRHSFUNC_FAIL: "the sensitivity right-hand side routine "
                                  "failed in an unrecoverable manner",
        }
        detail = messages.get(flag, "an unrecoverable failure occurred")
        return self._fail(flag, "CVode", f"At t = {self.tn}, {detail}.")

    def _repeated_failure(self, reason: int, at_min: bool) -> int:
        if reason == _RECOVER_RHS:
            flag = (CvFlag.UNREC_RHSFUNC_ERR if at_min
                    else CvFlag.REPTD_RHSFUNC_ERR)
            what = "right-hand side routine"
        elif reason == _RECOVER_QUAD:
            flag = (CvFlag.UNREC_QRHSFUNC_ERR if at_min
                    else CvFlag.REPTD_QRHSFUNC_ERR)
            what = "quadrature right-hand side routine"
        elif reason == _RECOVER_SENS:
            flag = (CvFlag.UNREC_SRHSFUNC_ERR if at_min
                    else CvFlag.REPTD_SRHSFUNC_ERR)
            what = "sensitivity right-hand side routine"
        else:
            return self._fail(
                CvFlag.CONV_FAILURE, "CVode",
                f"At t = {self.tn} and h = {self.h}, the corrector "
                f"convergence test failed repeatedly or with |h| = hmin.")
        return self._fail(flag, "CVode",
                          f"At t = {self.tn}, the {what} failed in a "
                          f"recoverable manner, but no recovery is possible.")

    def _corrector(self, t_new: float, pred: Array, a: Array,
                   coef) -> Tuple[int, Optional[Array]]:
        convfail = self._convfail
        newton = self.iteration == Iteration.NEWTON
        while True:
            y = pred.copy()
            fy = np.zeros(self.n)
            flag = self._rhs(t_new, y, fy)
            if flag > 0:
                return _RECOVER_RHS, None
            if flag < 0:
                return CvFlag.RHSFUNC_FAIL, None
            self._ls_point = (t_new, y.copy(), fy.copy())
            self._jcur = False
            if newton:
                dgamma = (abs(coef.gamma / self._gammap - 1.0)
                          if self._gammap else math.inf)
                call_setup = (
                    self._force_setup
                    or convfail != ConvFail.NO_FAILURES
                    or self.nst >= self._nstlp + _SETUP_REFRESH_STEPS
                    or dgamma > _GAMMA_CHANGE_LIMIT
                )
                if call_setup:
                    jbad = (
                        self.nst == 0
                        or self.nst > self._nstlj + _JAC_REFRESH_STEPS
                        or (convfail == ConvFail.FAIL_BAD_J
                            and dgamma < _BAD_J_GAMMA_CHANGE)
                        or convfail == ConvFail.FAIL_OTHER
                        or self._force_setup
                    )
                    lflag, jcur = self.linear_solver.setup(self, jbad)
                    self.nsetups += 1
                    self._force_setup = False
                    self._gammap = coef.gamma
                    self._nstlp = self.nst
                    self._crate = 1.0
                    self._jcur = jcur
                    if jcur:
                        self._nstlj = self.nst
                    if lflag < 0:
                        return CvFlag.LSETUP_FAIL, None
                    if lflag > 0:
                        return _RECOVER_LS, None
            result, y = self._iterate(t_new, y, fy, a, coef, newton)
            if result == _RETRY_WITH_SETUP:
                convfail = ConvFail.FAIL_BAD_J
                continue
            return result, y

    def _iterate(self, t_new: float, y: Array, fy: Array, a: Array, coef,
                 newton: bool) -> Tuple[int, Optional[Array]]:
        gamma = coef.gamma
        threshold = self.options["nonlin_conv_coef"] / coef.error_constant
        crate = self._crate
        del_prev = 0.0
        for m in range(self.options["max_nonlin_iters"]):
            correction = a + gamma * fy - y
            if newton:
                self._ls_point = (t_new, y.copy(), fy.copy())
                lflag = self.linear_solver.solve(self, correction)
                if lflag < 0:
                    return CvFlag.LSOLVE_FAIL, None
                if lflag > 0:
                    return (_RECOVER_LS if self._jcur
                            else _RETRY_WITH_SETUP), None
            y = y + correction
            self.nni += 1
            delta = wrms_norm(correction, self.ewt)
            if m > 0:
                crate = max(_RATE_DECAY * crate, delta / del_prev)
            if delta * min(1.0, crate) <= threshold:
                self._crate = crate
                return 0, y
            if m > 0 and delta > _DIVERGENCE * del_prev:
                break
            del_prev = delta
            flag = self._rhs(t_new, y, fy)
            if flag > 0:
                return _RECOVER_RHS, None
            if flag < 0:
                return CvFlag.RHSFUNC_FAIL, None
        if newton and not self._jcur:
            return _RETRY_WITH_SETUP, None
        return _RECOVER_CONV, None

    def _extensions(self, t_new: float, y_new: Array, f_new: Array,
                    coef) -> Tuple[int, dict]:
        extras = {}
        if self.quad is not None:
            hist = self.quad.hist
            pred = hist.predict(coef)
            a = hist.constant_part(coef)
            fq = np.zeros(self.quad.n)
            flag = self._quad_rhs(t_new, y_new, fq)
            if flag > 0:
                return _RECOVER_QUAD, extras
            if flag < 0:
                return CvFlag.QRHSFUNC_FAIL, extras
            extras["quad"] = (a + coef.gamma * fq, fq, pred)
        if self.sens is not None and self.sens.active:
            result, data = self._sens_corrector(t_new, y_new, f_new, coef)
            if result != 0:
                return result, extras
            extras["sens"] = data
        return 0, extras

    def _sens_corrector(self, t_new: float, y_new: Array, f_new: Array,
                        coef):
        s = self.sens
        gamma = coef.gamma
        preds = [h.predict(coef) for h in s.hists]
        consts = [h.constant_part(coef) for h in s.hists]
        ys = [p.copy() for p in preds]
        fs = [np.zeros(self.n) for _ in preds]
        newton = self.iteration == Iteration.NEWTON
        threshold = self.options["nonlin_conv_coef"] / coef.error_constant
        crate = 1.0
        del_prev = 0.0
        for m in range(s.max_nonlin_iters):
            flag = self._sens_rhs(t_new, y_new, f_new, ys, fs)
            if flag > 0:
                return _RECOVER_SENS, None
            if flag < 0:
                return CvFlag.SRHSFUNC_FAIL, None
            s.num_nonlin_iters += 1
            delta = 0.0
            for i in range(s.ns):
                correction = consts[i] + gamma * fs[i] - ys[i]
                if newton:
                    lflag = self.linear_solver.solve(self, correction)
                    if lflag < 0:
                        return CvFlag.LSOLVE_FAIL, None
                    if lflag > 0:
                        return _RECOVER_LS, None
                ys[i] = ys[i] + correction
                delta = max(delta, wrms_norm(correction, s.ewt[i]))
            if m > 0:
                crate = max(_RATE_DECAY * crate, delta / del_prev)
            if delta * min(1.0, crate) <= threshold:
                derivs = [(ys[i] - consts[i]) / gamma for i in range(s.ns)]
                return 0, (ys, derivs, preds)
            del_prev = delta
        return _RECOVER_CONV, None

    def _extension_error(self, extras: dict, coef) -> float:
        dsm = 0.0
        quad = extras.get("quad")
        if quad is not None and self.quad.errcon:
            yq, _, pred = quad
            dsm_q = coef.error_constant * wrms_norm(yq - pred, self.quad.ewt)
            if dsm_q > 1.0:
                self.quad.num_err_test_fails += 1
            dsm = max(dsm, dsm_q)
        sens = extras.get("sens")
        if sens is not None and self.sens.errcon:
            ys, _, preds = sens
            dsm_s = max(
                coef.error_constant * wrms_norm(y - p, w)
                for y, p, w in zip(ys, preds, self.sens.ewt)
            )
            if dsm_s > 1.0:
                self.sens.num_err_test_fails += 1
            dsm = max(dsm, dsm_s)
        return dsm

    def _accept(self, t_new: float, y_new: Array, f_new: Array,
                pred: Array, coef, extras: dict) -> None:
        self.tn = t_new
        self.hist.accept(y_new, f_new)
        quad = extras.get("quad")
        if quad is not None:
            self.quad.hist.accept(quad[0], quad[1])
        sens = extras.get("sens")
        if sens is not None:
            for h, y, f in zip(self.sens.hists, sens[0], sens[1]):
                h.accept(y, f)
        self.acor = coef.error_constant * (y_new - pred)
        self.hu = coef.h
        self.qu = coef.order
        self.nst += 1
        if self.step_hook is not None:
            self.step_hook(self.tn, self.hist.y, self.hist.f)

    def free(self) -> None:
        """Release the error stream and drop every registered callback."""
        self.errors.close()
        self.callbacks.clear()
        self.errors.handler = None
        self.step_hook = None
        self.initialized = False
