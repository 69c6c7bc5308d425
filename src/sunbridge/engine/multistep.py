"""Variable-step multistep formulas shared by the ODE and DAE integrators.

The integrators use first- and second-order members of the BDF and
Adams-Moulton families. Every formula is written as

    y_new = a + gamma * f_new

where ``a`` collects the history and ``f_new`` is the derivative at the new
point, so the corrector solves ``y - gamma * f(t, y) = a``. The predictor is
an explicit extrapolation of the same order and the local error is
estimated as ``error_constant * (y_new - y_pred)``.
"""
import math
from typing import Optional

import attrs
import numpy as np
from numpy.typing import NDArray

from sunbridge.engine.flags import Lmm

UNIT_ROUNDOFF = float(np.finfo(np.float64).eps)
MAX_SUPPORTED_ORDER = 2

Array = NDArray[np.float64]


@attrs.frozen
class StepCoefficients:
    """Weights of one step of order ``order`` with size ``h``.

    Attributes
    ----------
    order
        Order of the formula.
    h
        Step size.
    gamma
        Coefficient of the new derivative in the corrector.
    weight_n, weight_nm1, weight_fn
        ``a = weight_n * y_n + weight_nm1 * y_nm1 + weight_fn * f_n``.
    error_constant
        Factor applied to the predictor/corrector difference.
    h_prev
        Size of the previous step (only used by second-order formulas).
    """

    order: int
    h: float
    gamma: float
    weight_n: float
    weight_nm1: float
    weight_fn: float
    error_constant: float
    h_prev: float = 0.0


def step_coefficients(
    lmm: Lmm, order: int, h: float, h_prev: float
) -> StepCoefficients:
    """Return the corrector and predictor weights for one step."""
    if order <= 1 or h_prev == 0.0:
        return StepCoefficients(
            order=1, h=h, gamma=h, weight_n=1.0, weight_nm1=0.0,
            weight_fn=0.0, error_constant=0.5, h_prev=h_prev,
        )
    if lmm == Lmm.ADAMS:
        return StepCoefficients(
            order=2, h=h, gamma=0.5 * h, weight_n=1.0, weight_nm1=0.0,
            weight_fn=0.5 * h, error_constant=1.0 / 6.0, h_prev=h_prev,
        )
    omega = h / h_prev
    denom = 1.0 + 2.0 * omega
    return StepCoefficients(
        order=2,
        h=h,
        gamma=h * (1.0 + omega) / denom,
        weight_n=(1.0 + omega) ** 2 / denom,
        weight_nm1=-(omega ** 2) / denom,
        weight_fn=0.0,
        error_constant=8.0 / 23.0,
        h_prev=h_prev,
    )


def wrms_norm(vector: Array, weights: Array,
              mask: Optional[Array] = None) -> float:
    """Weighted root-mean-square norm, optionally over a component mask."""
    if vector.size == 0:
        return 0.0
    scaled = vector * weights
    if mask is not None:
        scaled = scaled[mask]
        if scaled.size == 0:
            return 0.0
    return math.sqrt(float(np.dot(scaled, scaled)) / scaled.size)


def violates_constraints(constraints: Optional[Array], u: Array) -> bool:
    """Whether ``u`` breaks the sign constraints.

    Each constraint is 0 (none), 1 (``u >= 0``), -1 (``u <= 0``),
    2 (``u > 0``) or -2 (``u < 0``).
    """
    if constraints is None:
        return False
    c = constraints
    return bool(np.any(
        ((c == 1.0) & (u < 0.0)) | ((c == -1.0) & (u > 0.0))
        | ((c == 2.0) & (u <= 0.0)) | ((c == -2.0) & (u >= 0.0))
    ))


class History:
    """Current and previous values and derivatives of one solution vector.

    Quadrature and sensitivity vectors are advanced with the same formula
    as the state, so each keeps its own ``History``.
    """

    def __init__(self, value: Array, derivative: Optional[Array] = None):
        n = value.shape[0]
        self.y = np.array(value, dtype=np.float64)
        self.f = (np.zeros(n) if derivative is None
                  else np.array(derivative, dtype=np.float64))
        self.y_prev = self.y.copy()
        self.f_prev = self.f.copy()

    @property
    def n(self) -> int:
        return self.y.shape[0]

    def predict(self, coef: StepCoefficients) -> Array:
        pred = self.y + coef.h * self.f
        if coef.order >= 2 and coef.h_prev != 0.0:
            pred += (0.5 * coef.h * coef.h / coef.h_prev) * (
                self.f - self.f_prev
            )
        return pred

    def constant_part(self, coef: StepCoefficients) -> Array:
        a = coef.weight_n * self.y
        if coef.weight_nm1 != 0.0:
            a += coef.weight_nm1 * self.y_prev
        if coef.weight_fn != 0.0:
            a += coef.weight_fn * self.f
        return a

    def accept(self, y_new: Array, f_new: Array) -> None:
        self.y_prev, self.f_prev = self.y, self.f
        self.y = np.array(y_new, dtype=np.float64)
        self.f = np.array(f_new, dtype=np.float64)

    def reset(self, value: Array, derivative: Array) -> None:
        self.y = np.array(value, dtype=np.float64)
        self.f = np.array(derivative, dtype=np.float64)
        self.y_prev = self.y.copy()
        self.f_prev = self.f.copy()


def hermite(t: float, t0: float, y0: Array, f0: Array,
            t1: float, y1: Array, f1: Array, k: int) -> Array:
    """Derivative ``k`` (0-3) of the cubic Hermite interpolant at ``t``."""
    h = t1 - t0
    if h == 0.0:
        if k == 0:
            return np.array(y1, dtype=np.float64)
        if k == 1:
            return np.array(f1, dtype=np.float64)
        return np.zeros_like(y1, dtype=np.float64)
    s = (t - t0) / h
    dy = y1 - y0
    if k == 0:
        h00 = 2 * s ** 3 - 3 * s ** 2 + 1
        h10 = s ** 3 - 2 * s ** 2 + s
        h01 = -2 * s ** 3 + 3 * s ** 2
        h11 = s ** 3 - s ** 2
        return h00 * y0 + h10 * h * f0 + h01 * y1 + h11 * h * f1
    if k == 1:
        d00 = (6 * s ** 2 - 6 * s) / h
        d10 = 3 * s ** 2 - 4 * s + 1
        d01 = (-6 * s ** 2 + 6 * s) / h
        d11 = 3 * s ** 2 - 2 * s
        return d00 * y0 + d10 * f0 + d01 * y1 + d11 * f1
    if k == 2:
        return ((12 * s - 6) * (-dy) / h ** 2
                + (6 * s - 4) * f0 / h + (6 * s - 2) * f1 / h)
    return -12 * dy / h ** 3 + 6 * (f0 + f1) / h ** 2
