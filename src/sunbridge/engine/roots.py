"""Location of sign changes of root functions between two integration points.

The root functions are evaluated on the interpolant of the last step. The
search follows the usual modified secant (Illinois) scheme and reports the
earliest root in the interval together with the direction of the crossing
for every function that changed sign there.
"""
from typing import Callable, List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from sunbridge.engine.multistep import UNIT_ROUNDOFF

Array = NDArray[np.float64]

#: Values stored in the root information array.
RISING = 1
FALLING = -1
NO_ROOT = 0


class RootFinder:
    """State of the root search for ``nroots`` functions.

    Parameters
    ----------
    nroots
        Number of root functions.
    """

    def __init__(self, nroots: int) -> None:
        self.nroots = nroots
        self.directions = np.zeros(nroots, dtype=np.int64)
        self.info = np.zeros(nroots, dtype=np.int64)
        self.active = np.ones(nroots, dtype=bool)
        self.warn_inactive = True
        self.t_lo: Optional[float] = None
        self.g_lo: Optional[Array] = None
        self.num_evals = 0

    def set_directions(self, directions) -> None:
        self.directions = np.asarray(directions, dtype=np.int64).copy()

    def start(self, t0: float, g0: Array) -> List[int]:
        """Record the values at the initial point.

        Returns the indices of functions that are identically zero at
        ``t0``; they stay inactive until they move away from zero.
        """
        self.t_lo = t0
        self.g_lo = np.array(g0, dtype=np.float64)
        self.info[:] = NO_ROOT
        zero = self.g_lo == 0.0
        self.active = ~zero
        return [int(i) for i in np.flatnonzero(zero)]

    def _reactivate(self, g: Array) -> None:
        """Activate functions that moved away from zero."""
        moved = (~self.active) & (g != 0.0)
        self.active |= moved
        self.g_lo[moved] = g[moved]

    def _crosses(self, g_lo: Array, g_hi: Array) -> Array:
        crossing = np.zeros(self.nroots, dtype=bool)
        for i in range(self.nroots):
            if not self.active[i]:
                continue
            if g_hi[i] == 0.0 or g_lo[i] * g_hi[i] < 0.0:
                rising = g_hi[i] > g_lo[i]
                direction = self.directions[i]
                if direction == 0 or (direction > 0) == rising:
                    crossing[i] = True
        return crossing

    def search(
        self,
        t_hi: float,
        evaluate: Callable[[float, Array], int],
    ) -> Tuple[int, Optional[float]]:
        """Look for a root in ``(t_lo, t_hi]``.

        ``evaluate(t, gout)`` fills the root functions at ``t`` from the
        interpolant and returns a status. Returns ``(flag, t_root)``;
        ``t_root`` is None when no root lies in the interval.
        """
        g_hi = np.zeros(self.nroots)
        flag = evaluate(t_hi, g_hi)
        self.num_evals += 1
        if flag != 0:
            return flag, None
        self._reactivate(g_hi)
        t_lo, g_lo = self.t_lo, self.g_lo.copy()
        crossing = self._crosses(g_lo, g_hi)
        if not crossing.any():
            self._advance_lo(t_hi, g_hi)
            return 0, None

        tol = 100.0 * UNIT_ROUNDOFF * max(abs(t_lo), abs(t_hi), 1.0)
        t_a, g_a = t_lo, g_lo
        t_b, g_b = t_hi, g_hi
        last_side = 0
        alpha = 1.0
        g_mid = np.zeros(self.nroots)
        for _ in range(200):
            if abs(t_b - t_a) <= tol:
                break
            weights = np.zeros(self.nroots)
            idx = np.flatnonzero(self._crosses(g_a, g_b))
            if idx.size == 0:
                break
            # earliest estimated crossing across the candidates
            t_mid = t_b
            for i in idx:
                denom = g_b[i] - alpha * g_a[i]
                if denom == 0.0:
                    continue
                weights[i] = t_b - (t_b - t_a) * g_b[i] / denom
                t_mid = min(t_mid, weights[i]) if t_b > t_a else max(
                    t_mid, weights[i])
            span = t_b - t_a
            lo_limit = t_a + 0.5 * tol * np.sign(span)
            hi_limit = t_b - 0.5 * tol * np.sign(span)
            if span > 0:
                t_mid = min(max(t_mid, lo_limit), hi_limit)
            else:
                t_mid = max(min(t_mid, lo_limit), hi_limit)
            flag = evaluate(t_mid, g_mid)
            self.num_evals += 1
            if flag != 0:
                return flag, None
            if self._crosses(g_a, g_mid).any():
                t_b, g_b = t_mid, g_mid.copy()
                alpha = 0.5 if last_side == -1 else 1.0
                last_side = -1
            else:
                t_a, g_a = t_mid, g_mid.copy()
                alpha = 2.0 if last_side == 1 else 1.0
                last_side = 1

        final = self._crosses(g_a, g_b)
        self.info[:] = NO_ROOT
        for i in np.flatnonzero(final):
            self.info[i] = RISING if g_b[i] > g_a[i] else FALLING
        self._advance_lo(t_b, g_b)
        # functions sitting exactly on zero at the root are inactive until
        # they leave it
        self.active &= g_b != 0.0
        self.active[final] = True
        return 0, t_b

    def _advance_lo(self, t: float, g: Array) -> None:
        self.t_lo = t
        self.g_lo = np.array(g, dtype=np.float64)

    def clear_info(self) -> None:
        self.info[:] = NO_ROOT
