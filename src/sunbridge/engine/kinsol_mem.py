"""Nonlinear solver memory for systems ``F(u) = 0``.

:class:`KinsolMem` runs a modified Newton iteration: the iteration matrix
is refreshed every ``max_setup_calls`` iterations, steps are limited to
``max_newton_step`` in the scaled norm and, with the line search strategy,
shortened by backtracking until the Armijo condition holds.
"""
import math
from typing import Callable, Dict, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from sunbridge.engine.errors import ErrorReporter
from sunbridge.engine.flags import (
    CallbackKind,
    GramSchmidt,
    KinFlag,
    KinStrategy,
    KrylovMethod,
    PrecType,
)
from sunbridge.engine.linear import (
    BandSolver,
    DenseSolver,
    SpilsSolver,
    dq_band_jacobian,
    dq_dense_jacobian,
)
from sunbridge.engine.multistep import UNIT_ROUNDOFF, violates_constraints
from sunbridge.engine.precond import BBDPreconditioner, UserPreconditioner

Array = NDArray[np.float64]

_SQRT_UROUND = math.sqrt(UNIT_ROUNDOFF)
_ALPHA = 1.0e-4
_MAX_SYSFN_RETRIES = 5
_MAX_STEP_STREAK = 5
_CONSTRAINT_SHRINK = 0.9

_ALLOWED_KINDS = frozenset({
    CallbackKind.SYSFN,
    CallbackKind.ERROR_HANDLER,
    CallbackKind.DENSE_JAC,
    CallbackKind.BAND_JAC,
    CallbackKind.PREC_SETUP,
    CallbackKind.PREC_SOLVE,
    CallbackKind.JAC_TIMES_VEC,
    CallbackKind.BBD_LOCAL,
    CallbackKind.BBD_COMM,
})


def _default_options() -> dict:
    return {
        "func_norm_tol": UNIT_ROUNDOFF ** (1.0 / 3.0),
        "scaled_step_tol": UNIT_ROUNDOFF ** (2.0 / 3.0),
        "num_max_iters": 200,
        "max_setup_calls": 10,
        "max_newton_step": 0.0,
        "no_init_setup": False,
        "eta": 0.1,
    }


class KinsolMem:
    """Opaque solver memory for one nonlinear system."""

    module = "KINSOL"

    def __init__(self) -> None:
        self.user_data = None
        self.callbacks: Dict[CallbackKind, Callable] = {}
        self.errors = ErrorReporter(self.module)
        self.initialized = False
        self.n = 0
        self.options = _default_options()
        self.constraints: Optional[Array] = None
        self.linear_solver = None
        self.uscale = np.ones(0)
        self.fscale = np.ones(0)
        self._reset_counters()

    def _reset_counters(self) -> None:
        self.nfe = 0
        self.nfe_ls = 0
        self.nni = 0
        self.nsetups = 0
        self.nbcf = 0
        self.nbktrk = 0
        self.fnorm = 0.0
        self.stepl = 0.0
        self._u = np.zeros(self.n)
        self._fu = np.zeros(self.n)
        self._new_u = True

    def _fail(self, flag: int, function: str, message: str) -> int:
        self.errors.report(int(flag), function, message)
        return int(flag)

    def set_user_data(self, user_data) -> int:
        self.user_data = user_data
        self.errors.user_data = user_data
        return KinFlag.SUCCESS

    def set_error_file(self, path: str, truncate: bool = True) -> int:
        if self.errors.set_file(path, truncate) != 0:
            return self._fail(KinFlag.ILL_INPUT, "KINSetErrFile",
                              f"Cannot open error file {path}.")
        return KinFlag.SUCCESS

    def set_callback(self, kind: CallbackKind,
                     fn: Optional[Callable]) -> int:
        try:
            kind = CallbackKind(kind)
        except ValueError:
            kind = None
        if kind not in _ALLOWED_KINDS:
            return self._fail(KinFlag.ILL_INPUT, "KINSetCallback",
                              "Callback kind does not apply to a nonlinear "
                              "system.")
        if fn is None:
            self.callbacks.pop(kind, None)
        else:
            self.callbacks[kind] = fn
        if kind == CallbackKind.ERROR_HANDLER:
            self.errors.handler = fn
        return KinFlag.SUCCESS

    def init(self, template: Array) -> int:
        template = np.asarray(template, dtype=np.float64).ravel()
        if template.size == 0:
            return self._fail(KinFlag.ILL_INPUT, "KINInit",
                              "The template vector has no components.")
        self.n = template.shape[0]
        self.initialized = True
        self._reset_counters()
        return KinFlag.SUCCESS

    def set_option(self, name: str, value) -> int:
        if name not in self.options:
            return self._fail(KinFlag.ILL_INPUT, "KINSetOption",
                              f"Unknown option {name}.")
        defaults = _default_options()
        if name == "no_init_setup":
            self.options[name] = bool(value)
            return KinFlag.SUCCESS
        if value < 0:
            return self._fail(KinFlag.ILL_INPUT, "KINSetOption",
                              f"{name} must be non-negative.")
        self.options[name] = value if value > 0 else defaults[name]
        return KinFlag.SUCCESS

    def set_constraints(self, constraints: Optional[Array]) -> int:
        if constraints is None:
            self.constraints = None
            return KinFlag.SUCCESS
        constraints = np.asarray(constraints, dtype=np.float64).ravel()
        if constraints.shape[0] != self.n or not np.all(
                np.isin(constraints, (-2.0, -1.0, 0.0, 1.0, 2.0))):
            return self._fail(KinFlag.ILL_INPUT, "KINSetConstraints",
                              "Illegal values in constraints vector.")
        self.constraints = constraints
        return KinFlag.SUCCESS

    # ------------------------------------------------------------------
    # Linear solvers

    def set_linear_solver_dense(self) -> int:
        if not self.initialized:
            return self._fail(KinFlag.NO_MALLOC, "KINDense",
                              "Attempt to call before KINInit.")
        self.linear_solver = DenseSolver(self.n)
        return KinFlag.SUCCESS

    def set_linear_solver_band(self, mupper: int, mlower: int) -> int:
        if not self.initialized:
            return self._fail(KinFlag.NO_MALLOC, "KINBand",
                              "Attempt to call before KINInit.")
        if not (0 <= mupper < self.n and 0 <= mlower < self.n):
            return self._fail(KinFlag.ILL_INPUT, "KINBand",
                              "Illegal bandwidth parameter(s).")
        self.linear_solver = BandSolver(self.n, mupper, mlower)
        return KinFlag.SUCCESS

    def set_linear_solver_spils(self, method: KrylovMethod, pretype: PrecType,
                                maxl: int) -> int:
        if not self.initialized:
            return self._fail(KinFlag.NO_MALLOC, "KINSpils",
                              "Attempt to call before KINInit.")
        pretype = PrecType(pretype)
        if pretype not in (PrecType.NONE, PrecType.RIGHT):
            return self._fail(KinFlag.ILL_INPUT, "KINSpils",
                              "Only right preconditioning is supported.")
        self.linear_solver = SpilsSolver(self.n, KrylovMethod(method), maxl,
                                         pretype)
        return KinFlag.SUCCESS

    def _spils(self, function: str) -> Optional[SpilsSolver]:
        if not isinstance(self.linear_solver, SpilsSolver):
            self._fail(KinFlag.ILL_INPUT, function,
                       "Linear solver memory is NULL or not iterative.")
            return None
        return self.linear_solver

    def set_user_prec(self) -> int:
        solver = self._spils("KINSpilsSetPreconditioner")
        if solver is None:
            return KinFlag.ILL_INPUT
        solver.preconditioner = UserPreconditioner()
        return KinFlag.SUCCESS

    def set_bbd_prec(self, mudq: int, mldq: int, mukeep: int, mlkeep: int,
                     dqrely: Optional[float]) -> int:
        solver = self._spils("KINBBDPrecInit")
        if solver is None:
            return KinFlag.ILL_INPUT
        solver.preconditioner = BBDPreconditioner(
            self.n, mudq, mldq, mukeep, mlkeep, dqrely)
        return KinFlag.SUCCESS

    def bbd_reinit(self, mudq: int, mldq: int,
                   dqrely: Optional[float]) -> int:
        solver = self._spils("KINBBDPrecReInit")
        if solver is None or not isinstance(solver.preconditioner,
                                            BBDPreconditioner):
            return self._fail(KinFlag.ILL_INPUT, "KINBBDPrecReInit",
                              "BBD preconditioner memory is NULL.")
        solver.preconditioner.reinit(mudq, mldq, dqrely)
        return KinFlag.SUCCESS

    def set_prec_type(self, pretype: PrecType) -> int:
        solver = self._spils("KINSpilsSetPrecType")
        if solver is None:
            return KinFlag.ILL_INPUT
        pretype = PrecType(pretype)
        if pretype not in (PrecType.NONE, PrecType.RIGHT):
            return self._fail(KinFlag.ILL_INPUT, "KINSpilsSetPrecType",
                              "Only right preconditioning is supported.")
        solver.pretype = pretype
        return KinFlag.SUCCESS

    def set_gs_type(self, gstype: GramSchmidt) -> int:
        solver = self._spils("KINSpilsSetGSType")
        if solver is None:
            return KinFlag.ILL_INPUT
        solver.gs_type = GramSchmidt(gstype)
        return KinFlag.SUCCESS

    def set_maxl(self, maxl: int) -> int:
        solver = self._spils("KINSpilsSetMaxl")
        if solver is None:
            return KinFlag.ILL_INPUT
        solver.maxl = maxl if maxl > 0 else 5
        return KinFlag.SUCCESS

    def set_max_restarts(self, maxrs: int) -> int:
        solver = self._spils("KINSpilsSetMaxRestarts")
        if solver is None:
            return KinFlag.ILL_INPUT
        if maxrs < 0:
            return self._fail(KinFlag.ILL_INPUT, "KINSpilsSetMaxRestarts",
                              "maxrs < 0 illegal.")
        solver.max_restarts = int(maxrs)
        return KinFlag.SUCCESS

    def ls_stats(self) -> dict:
        if self.linear_solver is None:
            return {}
        stats = dict(self.linear_solver.stats())
        stats["rhs_evals_ls"] = self.nfe_ls
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

    def _increments(self, scale: float) -> Array:
        return scale * np.maximum(np.abs(self._u), 1.0 / self.uscale)

    def _shifted_sysfn(self):
        u = self._u

        def evaluate(inc, out):
            self.nfe_ls += 1
            return self._call_sysfn(u + inc, out)
        return evaluate

    def ls_dense_jac(self, jac: Array) -> int:
        cb = self.callbacks.get(CallbackKind.DENSE_JAC)
        if cb is not None:
            return cb(self.user_data, self._u, self._fu, jac,
                      np.zeros(self.n), np.zeros(self.n))
        return dq_dense_jacobian(self._fu, self._increments(_SQRT_UROUND),
                                 self._shifted_sysfn(), jac)

    def ls_band_jac(self, mupper: int, mlower: int, ab: Array) -> int:
        cb = self.callbacks.get(CallbackKind.BAND_JAC)
        if cb is not None:
            return cb(self.user_data, mupper, mlower, self._u, self._fu, ab,
                      np.zeros(self.n), np.zeros(self.n))
        return dq_band_jacobian(self._fu, self._increments(_SQRT_UROUND),
                                self._shifted_sysfn(), mupper, mlower, ab,
                                mupper, mlower)

    def ls_newton_dense(self, jac: Array) -> Array:
        return jac.copy()

    def ls_newton_band(self, ab: Array, mupper: int, mlower: int) -> Array:
        return ab.copy()

    def ls_matvec(self, v: Array, out: Array) -> int:
        cb = self.callbacks.get(CallbackKind.JAC_TIMES_VEC)
        if cb is not None:
            flag, new_u = cb(self.user_data, v, out, self._u, self._new_u)
            self._new_u = bool(new_u)
            return flag
        vnorm = float(np.linalg.norm(self.uscale * v))
        if vnorm == 0.0:
            out[:] = 0.0
            return 0
        unorm = float(np.linalg.norm(self.uscale * self._u))
        sig = _SQRT_UROUND * max(unorm, 1.0) / vnorm
        shifted = np.zeros(self.n)
        self.nfe_ls += 1
        flag = self._call_sysfn(self._u + sig * v, shifted)
        if flag != 0:
            return flag
        out[:] = (shifted - self._fu) / sig
        return 0

    def ls_psetup(self, jok: bool) -> Tuple[int, bool]:
        cb = self.callbacks.get(CallbackKind.PREC_SETUP)
        if cb is None:
            return 0, False
        flag = cb(self.user_data, self._u, self.uscale, self._fu,
                  self.fscale, np.zeros(self.n), np.zeros(self.n))
        return flag, True

    def ls_psolve(self, r: Array, z: Array, lr: int) -> int:
        z[:] = r
        cb = self.callbacks.get(CallbackKind.PREC_SOLVE)
        if cb is None:
            return 0
        return cb(self.user_data, self._u, self.uscale, self._fu,
                  self.fscale, z, np.zeros(self.n))

    def ls_krylov_rtol(self) -> float:
        return self.options["eta"]

    def bbd_comm(self) -> int:
        cb = self.callbacks.get(CallbackKind.BBD_COMM)
        if cb is None:
            return 0
        return cb(self.user_data, self._u)

    def bbd_local(self, inc: Array, g: Array) -> int:
        cb = self.callbacks.get(CallbackKind.BBD_LOCAL)
        if cb is None:
            return -1
        return cb(self.user_data, self._u + inc, g)

    def bbd_increments(self, dqrely: float) -> Array:
        return self._increments(dqrely)

    # ------------------------------------------------------------------
    # Solve

    def stats(self) -> dict:
        return {
            "func_evals": self.nfe,
            "nonlin_solv_iters": self.nni,
            "beta_cond_fails": self.nbcf,
            "backtrack_ops": self.nbktrk,
            "func_norm": self.fnorm,
            "step_length": self.stepl,
            "lin_solv_setups": self.nsetups,
        }

    def _call_sysfn(self, u: Array, out: Array) -> int:
        return self.callbacks[CallbackKind.SYSFN](self.user_data, u, out)

    def _sysfn(self, u: Array, out: Array) -> int:
        self.nfe += 1
        return self._call_sysfn(u, out)

    def _violates(self, u: Array) -> bool:
        return violates_constraints(self.constraints, u)

    def _constrain(self, u: Array, p: Array) -> Array:
        scale = 1.0
        for _ in range(60):
            if not self._violates(u + scale * p):
                break
            scale *= _CONSTRAINT_SHRINK
        return scale * p

    def _setup(self) -> int:
        self._ls_ready = False
        flag, _ = self.linear_solver.setup(self, True)
        self.nsetups += 1
        self._nni_setup = self.nni
        if flag != 0:
            return self._fail(KinFlag.LSETUP_FAIL, "KINSol",
                              "The linear solver setup failed.")
        self._ls_ready = True
        return 0

    def solve(self, u: Array, strategy: KinStrategy, u_scale: Array,
              f_scale: Array) -> int:
        """Solve ``F(u) = 0`` starting from ``u``, which is overwritten."""
        if not self.initialized:
            return self._fail(KinFlag.NO_MALLOC, "KINSol",
                              "Attempt to call before KINInit.")
        if CallbackKind.SYSFN not in self.callbacks:
            return self._fail(KinFlag.ILL_INPUT, "KINSol",
                              "No system function is registered.")
        if self.linear_solver is None:
            return self._fail(KinFlag.LINIT_FAIL, "KINSol",
                              "A linear solver must be attached.")
        if np.shape(u) != (self.n,) or np.shape(u_scale) != (self.n,) or \
                np.shape(f_scale) != (self.n,):
            return self._fail(KinFlag.ILL_INPUT, "KINSol",
                              "Vector arguments have the wrong shape.")
        u_scale = np.asarray(u_scale, dtype=np.float64)
        f_scale = np.asarray(f_scale, dtype=np.float64)
        if np.any(u_scale <= 0.0) or np.any(f_scale <= 0.0):
            return self._fail(KinFlag.ILL_INPUT, "KINSol",
                              "Scaling vectors must be positive.")
        if self._violates(u):
            return self._fail(KinFlag.ILL_INPUT, "KINSol",
                              "Initial guess does not satisfy the "
                              "constraints.")
        strategy = KinStrategy(strategy)
        self._reset_counters()
        self.uscale = u_scale.copy()
        self.fscale = f_scale.copy()
        fnormtol = self.options["func_norm_tol"]
        steptol = self.options["scaled_step_tol"]

        self._u = np.array(u, dtype=np.float64)
        self._fu = np.zeros(self.n)
        flag = self._sysfn(self._u, self._fu)
        if flag > 0:
            return self._fail(KinFlag.FIRST_SYSFUNC_ERR, "KINSol",
                              "The system function failed at the first "
                              "call.")
        if flag < 0:
            return self._fail(KinFlag.SYSFUNC_FAIL, "KINSol",
                              "The system function failed in an "
                              "unrecoverable manner.")
        self.fnorm = float(np.max(np.abs(self.fscale * self._fu)))
        if self.fnorm <= 0.01 * fnormtol:
            return KinFlag.INITIAL_GUESS_OK

        max_step = self.options["max_newton_step"]
        if max_step <= 0.0:
            max_step = 1000.0 * max(
                float(np.linalg.norm(self.uscale * self._u)), 1.0)
        streak = 0
        self._nni_setup = 0
        self._ls_ready = False
        if not self.options["no_init_setup"]:
            if self._setup() != 0:
                return KinFlag.LSETUP_FAIL
        elif not self._ls_ready:
            if self._setup() != 0:
                return KinFlag.LSETUP_FAIL

        while True:
            if self.nni - self._nni_setup >= self.options["max_setup_calls"]:
                if self._setup() != 0:
                    return KinFlag.LSETUP_FAIL
            fresh = self.nni == self._nni_setup
            p = -self._fu
            self._new_u = True
            lflag = self.linear_solver.solve(self, p)
            if lflag > 0 and not fresh:
                if self._setup() != 0:
                    return KinFlag.LSETUP_FAIL
                p = -self._fu
                lflag = self.linear_solver.solve(self, p)
            if lflag > 0:
                return self._fail(KinFlag.LINSOLV_NO_RECOVERY, "KINSol",
                                  "The linear solver failed to converge "
                                  "with a current Jacobian.")
            if lflag < 0:
                return self._fail(KinFlag.LSOLVE_FAIL, "KINSol",
                                  "The linear solver solve failed "
                                  "unrecoverably.")
            pnorm = float(np.linalg.norm(self.uscale * p))
            if pnorm > max_step:
                p *= max_step / pnorm
                pnorm = max_step
            p = self._constrain(self._u, p)
            self.nni += 1

            flag, u_new, f_new, step = self._global_step(p, strategy, steptol)
            if flag == KinFlag.STEP_LT_STPTOL and not fresh:
                if self._setup() != 0:
                    return KinFlag.LSETUP_FAIL
                continue
            if flag != 0:
                return flag
            self.stepl = step
            self._u, self._fu = u_new, f_new
            u[:] = u_new
            self.fnorm = float(np.max(np.abs(self.fscale * f_new)))
            if self.fnorm <= fnormtol:
                return KinFlag.SUCCESS
            rel_step = float(np.max(np.abs(step * p) / (
                np.abs(u_new) + 1.0 / self.uscale)))
            if rel_step <= steptol:
                if fresh:
                    return KinFlag.STEP_LT_STPTOL
                self._nni_setup = self.nni - self.options["max_setup_calls"]
            if self.nni >= self.options["num_max_iters"]:
                return self._fail(KinFlag.MAXITER_REACHED, "KINSol",
                                  "The maximum number of iterations was "
                                  "reached.")
            if pnorm >= 0.99 * max_step:
                streak += 1
                if streak >= _MAX_STEP_STREAK:
                    return self._fail(
                        KinFlag.MXNEWT_5X_EXCEEDED, "KINSol",
                        "Five consecutive steps have been taken that "
                        "satisfy a scaled step length test.")
            else:
                streak = 0

    def _global_step(self, p: Array, strategy: KinStrategy, steptol: float):
        """Return ``(flag, u_new, f_new, step_length)``."""
        u = self._u
        f_new = np.zeros(self.n)
        if strategy == KinStrategy.NONE:
            scale = 1.0
            for _ in range(_MAX_SYSFN_RETRIES + 1):
                u_new = u + scale * p
                flag = self._sysfn(u_new, f_new)
                if flag == 0:
                    return 0, u_new, f_new, scale
                if flag < 0:
                    return self._fail(KinFlag.SYSFUNC_FAIL, "KINSol",
                                      "The system function failed in an "
                                      "unrecoverable manner."), None, None, 0
                scale *= 0.5
            return self._fail(KinFlag.REPTD_SYSFUNC_ERR, "KINSol",
                              "The system function had repeated recoverable "
                              "errors."), None, None, 0

        f0 = 0.5 * float(np.sum((self.fscale * self._fu) ** 2))
        slope = -2.0 * f0
        rl = float(np.max(np.abs(p) / np.maximum(np.abs(u),
                                                  1.0 / self.uscale)))
        lam_min = steptol / rl if rl > 0.0 else 0.0
        lam = 1.0
        retries = 0
        while True:
            u_new = u + lam * p
            flag = self._sysfn(u_new, f_new)
            if flag < 0:
                return self._fail(KinFlag.SYSFUNC_FAIL, "KINSol",
                                  "The system function failed in an "
                                  "unrecoverable manner."), None, None, 0
            if flag > 0:
                retries += 1
                if retries > _MAX_SYSFN_RETRIES:
                    return self._fail(KinFlag.REPTD_SYSFUNC_ERR, "KINSol",
                                      "The system function had repeated "
                                      "recoverable errors."), None, None, 0
                lam *= 0.5
                self.nbktrk += 1
                continue
            f1 = 0.5 * float(np.sum((self.fscale * f_new) ** 2))
            if f1 <= f0 + _ALPHA * lam * slope:
                return 0, u_new, f_new, lam
            if lam < lam_min:
                return KinFlag.STEP_LT_STPTOL, None, None, 0
            denom = 2.0 * (f1 - f0 - slope * lam)
            lam_q = -slope * lam * lam / denom if denom > 0.0 else 0.5 * lam
            lam = min(0.5 * lam, max(0.1 * lam, lam_q))
            self.nbktrk += 1

    def free(self) -> None:
        self.errors.close()
        self.callbacks.clear()
        self.errors.handler = None
        self.initialized = False
