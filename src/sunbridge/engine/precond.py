"""Preconditioners applied by :class:`~sunbridge.engine.linear.SpilsSolver`.

Each preconditioner has ``setup(owner, jok) -> (flag, jcur)`` and
``solve(owner, r, z, lr) -> flag``. ``jok`` tells the preconditioner that
saved Jacobian data may be reused. ``lr`` is 1 for a left solve and 2 for a
right solve.
"""
import math
from typing import Optional, Tuple

import numpy as np
from numpy.typing import NDArray
from scipy.linalg import LinAlgError, solve_banded

from sunbridge.engine.linear import dq_band_jacobian
from sunbridge.engine.multistep import UNIT_ROUNDOFF

Array = NDArray[np.float64]


class UserPreconditioner:
    """Forward setup and solve to the user callbacks of the owner."""

    name = "user"

    def setup(self, owner, jok: bool) -> Tuple[int, bool]:
        return owner.ls_psetup(jok)

    def solve(self, owner, r: Array, z: Array, lr: int) -> int:
        return owner.ls_psolve(r, z, lr)


def _band_solve(newton: Optional[Array], mupper: int, mlower: int,
                r: Array, z: Array) -> int:
    if newton is None:
        return -1
    try:
        z[:] = solve_banded((mlower, mupper), newton, r, check_finite=False)
    except (LinAlgError, ValueError):
        return 1
    if not np.all(np.isfinite(z)):
        return 1
    return 0


class BandPreconditioner:
    """Banded difference-quotient approximation of the Newton matrix.

    Available to ODE owners only; the owner evaluates the difference
    quotients through ``ls_dq_band``.
    """

    name = "band"

    def __init__(self, n: int, mupper: int, mlower: int) -> None:
        self.n = n
        self.mupper = min(max(mupper, 0), n - 1)
        self.mlower = min(max(mlower, 0), n - 1)
        self._saved: Optional[Array] = None
        self._newton: Optional[Array] = None
        self.num_rhs_evals = 0

    def setup(self, owner, jok: bool) -> Tuple[int, bool]:
        jcur = False
        if not jok or self._saved is None:
            ab = np.zeros((self.mupper + self.mlower + 1, self.n))
            flag, evals = owner.ls_dq_band(self.mupper, self.mlower, ab)
            self.num_rhs_evals += evals
            if flag != 0:
                return flag, False
            self._saved = ab
            jcur = True
        self._newton = owner.ls_newton_band(self._saved, self.mupper,
                                            self.mlower)
        return 0, jcur

    def solve(self, owner, r: Array, z: Array, lr: int) -> int:
        return _band_solve(self._newton, self.mupper, self.mlower, r, z)

    def work_space(self) -> Tuple[int, int]:
        return (2 * self.mupper + self.mlower + 2) * self.n, self.n


class BBDPreconditioner:
    """Band-block-diagonal preconditioner built from a local function.

    The owner evaluates the local approximation ``g`` through
    ``bbd_local(inc, g)`` at its current point shifted by ``inc``, and runs
    the communication step through ``bbd_comm()`` before the first
    evaluation of every setup. Difference quotients are taken within
    ``(mudq, mldq)`` and the band ``(mukeep, mlkeep)`` is retained.
    """

    name = "bbd"

    def __init__(self, n: int, mudq: int, mldq: int, mukeep: int,
                 mlkeep: int, dqrely: Optional[float] = None) -> None:
        self.n = n
        self.mudq = min(max(mudq, 0), n - 1)
        self.mldq = min(max(mldq, 0), n - 1)
        self.mukeep = min(max(mukeep, 0), n - 1)
        self.mlkeep = min(max(mlkeep, 0), n - 1)
        self.dqrely = _default_dqrely(dqrely)
        self._saved: Optional[Array] = None
        self._newton: Optional[Array] = None
        self.num_gfn_evals = 0

    def reinit(self, mudq: int, mldq: int,
               dqrely: Optional[float] = None) -> None:
        self.mudq = min(max(mudq, 0), self.n - 1)
        self.mldq = min(max(mldq, 0), self.n - 1)
        self.dqrely = _default_dqrely(dqrely)
        self.num_gfn_evals = 0

    def setup(self, owner, jok: bool) -> Tuple[int, bool]:
        jcur = False
        if not jok or self._saved is None:
            flag = owner.bbd_comm()
            if flag != 0:
                return flag, False
            base = np.zeros(self.n)
            flag = owner.bbd_local(np.zeros(self.n), base)
            self.num_gfn_evals += 1
            if flag != 0:
                return flag, False
            increments = owner.bbd_increments(self.dqrely)
            ab = np.zeros((self.mukeep + self.mlkeep + 1, self.n))

            def evaluate(inc, out):
                self.num_gfn_evals += 1
                return owner.bbd_local(inc, out)

            flag = dq_band_jacobian(base, increments, evaluate, self.mudq,
                                    self.mldq, ab, self.mukeep, self.mlkeep)
            if flag != 0:
                return flag, False
            self._saved = ab
            jcur = True
        self._newton = owner.ls_newton_band(self._saved, self.mukeep,
                                            self.mlkeep)
        return 0, jcur

    def solve(self, owner, r: Array, z: Array, lr: int) -> int:
        return _band_solve(self._newton, self.mukeep, self.mlkeep, r, z)

    def work_space(self) -> Tuple[int, int]:
        return (2 * self.mukeep + self.mlkeep + 2) * self.n + 2 * self.n, 0


def _default_dqrely(dqrely: Optional[float]) -> float:
    if dqrely is None or dqrely <= 0.0:
        return math.sqrt(UNIT_ROUNDOFF)
    return float(dqrely)
