"""Linear solver modules used by the Newton iterations of the engine.

A linear solver module solves ``M x = b`` for the Newton matrix ``M`` of
its owner. Owners (the ODE, DAE and nonlinear solver memories) expose the
problem-specific pieces through ``ls_*`` hooks:

``ls_dense_jac(J)`` / ``ls_band_jac(mupper, mlower, ab)``
    Fill the problem Jacobian, from a user callback or by difference
    quotients. Return an integer status.
``ls_newton_dense(J)`` / ``ls_newton_band(ab, mupper, mlower)``
    Build the Newton matrix from the Jacobian.
``ls_diag_jac(d)`` / ``ls_newton_diag(d)``
    Diagonal approximation (ODE owners only).
``ls_matvec(v, out)``
    Newton matrix times ``v``, for Krylov iterations.
``ls_psetup(jok)`` / ``ls_psolve(r, z, lr)``
    User preconditioner setup and solve.
``ls_krylov_rtol()``
    Relative residual tolerance for Krylov iterations.

Every module returns 0 on success, a positive value when the owner may
retry with different parameters and a negative value otherwise.
"""
import warnings
from typing import Callable, Optional, Tuple

import numpy as np
from numpy.typing import NDArray
from scipy.linalg import LinAlgError, LinAlgWarning, lu_factor, lu_solve
from scipy.linalg import solve_banded
from scipy.sparse.linalg import LinearOperator, bicgstab, gmres, tfqmr

from sunbridge.engine.flags import GramSchmidt, KrylovMethod, PrecType

Array = NDArray[np.float64]

#: Krylov subspace dimension used when ``maxl <= 0``.
DEFAULT_MAXL = 5
DEFAULT_EPS_LIN = 0.05


class CallbackFailure(Exception):
    """Raised inside a Krylov iteration to abandon it with ``flag``."""

    def __init__(self, flag: int) -> None:
        super().__init__(flag)
        self.flag = flag


def dq_dense_jacobian(
    base: Array,
    increments: Array,
    evaluate: Callable[[Array, Array], int],
    jac: Array,
) -> int:
    """Fill ``jac`` column by column with forward difference quotients.

    ``evaluate(inc, out)`` evaluates the function at the base point shifted
    by ``inc`` and returns a status.
    """
    n = base.shape[0]
    shifted = np.empty(n)
    inc = np.zeros(n)
    for j in range(n):
        inc[j] = increments[j]
        flag = evaluate(inc, shifted)
        inc[j] = 0.0
        if flag != 0:
            return flag
        jac[:, j] = (shifted - base) / increments[j]
    return 0


def dq_band_jacobian(
    base: Array,
    increments: Array,
    evaluate: Callable[[Array, Array], int],
    mu_dq: int,
    ml_dq: int,
    ab: Array,
    mu_keep: int,
    ml_keep: int,
) -> int:
    """Banded difference quotients with column grouping.

    Columns ``j, j + width, ...`` with ``width = mu_dq + ml_dq + 1`` are
    perturbed together. Entries within ``(mu_keep, ml_keep)`` of the
    diagonal are stored in ``ab`` (LAPACK band layout, ``ab[mu_keep + i - j,
    j] = J[i, j]``).
    """
    n = base.shape[0]
    width = mu_dq + ml_dq + 1
    shifted = np.empty(n)
    ab.fill(0.0)
    for group in range(min(width, n)):
        columns = range(group, n, width)
        inc = np.zeros(n)
        for j in columns:
            inc[j] = increments[j]
        flag = evaluate(inc, shifted)
        if flag != 0:
            return flag
        for j in columns:
            i_lo = max(0, j - min(mu_dq, mu_keep))
            i_hi = min(n - 1, j + min(ml_dq, ml_keep))
            for i in range(i_lo, i_hi + 1):
                ab[mu_keep + i - j, j] = (shifted[i] - base[i]) / inc[j]
    return 0


def band_to_dense(ab: Array, mupper: int, mlower: int) -> Array:
    """Expand LAPACK band storage into a dense matrix."""
    n = ab.shape[1]
    dense = np.zeros((n, n))
    for j in range(n):
        for i in range(max(0, j - mupper), min(n, j + mlower + 1)):
            dense[i, j] = ab[mupper + i - j, j]
    return dense


def identity_minus_gamma_band(ab: Array, mupper: int, gamma: float) -> Array:
    """Band storage of ``I - gamma * J`` from band storage of ``J``."""
    newton = -gamma * ab
    newton[mupper, :] += 1.0
    return newton


class DenseSolver:
    """Direct solver on a dense Newton matrix with LU factorisation."""

    name = "dense"

    def __init__(self, n: int) -> None:
        self.n = n
        self.jac = np.zeros((n, n))
        self._saved_jac: Optional[Array] = None
        self._lu = None
        self.num_jac_evals = 0

    def setup(self, owner, jbad: bool) -> Tuple[int, bool]:
        jcur = False
        if jbad or self._saved_jac is None:
            self.jac.fill(0.0)
            flag = owner.ls_dense_jac(self.jac)
            self.num_jac_evals += 1
            if flag != 0:
                return flag, False
            self._saved_jac = self.jac.copy()
            jcur = True
        newton = owner.ls_newton_dense(self._saved_jac)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", LinAlgWarning)
            lu, piv = lu_factor(newton, check_finite=False)
        if not np.all(np.isfinite(lu)) or np.any(np.diag(lu) == 0.0):
            self._lu = None
            return 1, jcur
        self._lu = (lu, piv)
        return 0, jcur

    def solve(self, owner, b: Array) -> int:
        if self._lu is None:
            return -1
        b[:] = lu_solve(self._lu, b, check_finite=False)
        return 0

    def jacobian(self) -> Optional[Array]:
        """Copy of the Jacobian used by the last setup."""
        if self._saved_jac is None:
            return None
        return self._saved_jac.copy()

    def work_space(self) -> Tuple[int, int]:
        return 2 * self.n * self.n, self.n

    def stats(self) -> dict:
        return {"jac_evals": self.num_jac_evals}


class BandSolver:
    """Direct solver on a banded Newton matrix."""

    name = "band"

    def __init__(self, n: int, mupper: int, mlower: int) -> None:
        self.n = n
        self.mupper = mupper
        self.mlower = mlower
        self.jac = np.zeros((mupper + mlower + 1, n))
        self._saved_jac: Optional[Array] = None
        self._newton: Optional[Array] = None
        self.num_jac_evals = 0

    def setup(self, owner, jbad: bool) -> Tuple[int, bool]:
        jcur = False
        if jbad or self._saved_jac is None:
            self.jac.fill(0.0)
            flag = owner.ls_band_jac(self.mupper, self.mlower, self.jac)
            self.num_jac_evals += 1
            if flag != 0:
                return flag, False
            self._saved_jac = self.jac.copy()
            jcur = True
        self._newton = owner.ls_newton_band(
            self._saved_jac, self.mupper, self.mlower
        )
        if np.any(self._newton[self.mupper, :] == 0.0):
            return 1, jcur
        return 0, jcur

    def solve(self, owner, b: Array) -> int:
        if self._newton is None:
            return -1
        try:
            b[:] = solve_banded(
                (self.mlower, self.mupper), self._newton, b,
                check_finite=False,
            )
        except LinAlgError:
            return 1
        return 0

    def jacobian(self) -> Optional[Array]:
        if self._saved_jac is None:
            return None
        return band_to_dense(self._saved_jac, self.mupper, self.mlower)

    def work_space(self) -> Tuple[int, int]:
        return 2 * self.n * (2 * self.mupper + self.mlower + 2), self.n

    def stats(self) -> dict:
        return {"jac_evals": self.num_jac_evals}


class DiagSolver:
    """Diagonal approximation of the Newton matrix by difference quotients."""

    name = "diag"

    def __init__(self, n: int) -> None:
        self.n = n
        self._diag = np.ones(n)

    def setup(self, owner, jbad: bool) -> Tuple[int, bool]:
        approx = np.zeros(self.n)
        flag = owner.ls_diag_jac(approx)
        if flag != 0:
            return flag, False
        newton = owner.ls_newton_diag(approx)
        if np.any(np.abs(newton) < np.finfo(np.float64).tiny):
            return 1, True
        self._diag = newton
        return 0, True

    def solve(self, owner, b: Array) -> int:
        b /= self._diag
        return 0

    def work_space(self) -> Tuple[int, int]:
        return 3 * self.n, 0

    def stats(self) -> dict:
        return {}


class SpilsSolver:
    """Scaled, preconditioned Krylov iteration on the Newton matrix.

    Parameters
    ----------
    n
        Problem size.
    method
        GMRES, Bi-CGStab or TFQMR.
    maxl
        Maximum Krylov subspace dimension (``DEFAULT_MAXL`` if <= 0).
    pretype
        Side(s) on which the preconditioner is applied.
    """

    name = "spils"

    def __init__(self, n: int, method: KrylovMethod, maxl: int,
                 pretype: PrecType) -> None:
        self.n = n
        self.method = KrylovMethod(method)
        self.maxl = maxl if maxl > 0 else DEFAULT_MAXL
        self.pretype = PrecType(pretype)
        self.gs_type = GramSchmidt.MODIFIED
        self.eps_lin = DEFAULT_EPS_LIN
        self.max_restarts = 0
        self.preconditioner = None
        self.num_lin_iters = 0
        self.num_conv_fails = 0
        self.num_prec_evals = 0
        self.num_prec_solves = 0
        self.num_jtimes_evals = 0

    def setup(self, owner, jbad: bool) -> Tuple[int, bool]:
        if self.pretype == PrecType.NONE or self.preconditioner is None:
            return 0, False
        flag, jcur = self.preconditioner.setup(owner, not jbad)
        self.num_prec_evals += 1
        return flag, jcur

    def _psolve(self, owner, r: Array, lr: int) -> Array:
        z = np.zeros(self.n)
        if self.preconditioner is None:
            z[:] = r
            return z
        flag = self.preconditioner.solve(owner, r, z, lr)
        self.num_prec_solves += 1
        if flag != 0:
            raise CallbackFailure(flag)
        return z

    def solve(self, owner, b: Array) -> int:
        if not np.any(b):
            return 0
        left = self.pretype in (PrecType.LEFT, PrecType.BOTH)
        right = self.pretype in (PrecType.RIGHT, PrecType.BOTH)
        if self.preconditioner is None:
            left = right = False

        def apply(x):
            v = np.array(x, dtype=np.float64).ravel()
            if right:
                v = self._psolve(owner, v, 2)
            out = np.zeros(self.n)
            flag = owner.ls_matvec(v, out)
            self.num_jtimes_evals += 1
            if flag != 0:
                raise CallbackFailure(flag)
            if left:
                out = self._psolve(owner, out, 1)
            return out

        def count(_):
            self.num_lin_iters += 1

        operator = LinearOperator((self.n, self.n), matvec=apply,
                                  dtype=np.float64)
        rtol = owner.ls_krylov_rtol()
        try:
            rhs = self._psolve(owner, b, 1) if left else b.copy()
            if self.method == KrylovMethod.SPGMR:
                x, info = gmres(
                    operator, rhs, rtol=rtol, atol=0.0, restart=self.maxl,
                    maxiter=self.max_restarts + 1, callback=count,
                    callback_type="pr_norm",
                )
            elif self.method == KrylovMethod.SPBCG:
                x, info = bicgstab(operator, rhs, rtol=rtol, atol=0.0,
                                   maxiter=self.maxl, callback=count)
            else:
                x, info = tfqmr(operator, rhs, rtol=rtol, atol=0.0,
                                maxiter=self.maxl, callback=count)
            if right:
                x = self._psolve(owner, x, 2)
        except CallbackFailure as failure:
            return 1 if failure.flag > 0 else -1
        if info < 0 or not np.all(np.isfinite(x)):
            return -1
        if info > 0:
            self.num_conv_fails += 1
            return 1
        b[:] = x
        return 0

    def work_space(self) -> Tuple[int, int]:
        return self.n * (self.maxl + 5) + self.maxl * (self.maxl + 4) + 1, 0

    def stats(self) -> dict:
        return {
            "lin_iters": self.num_lin_iters,
            "conv_fails": self.num_conv_fails,
            "prec_evals": self.num_prec_evals,
            "prec_solves": self.num_prec_solves,
            "jtimes_evals": self.num_jtimes_evals,
        }
