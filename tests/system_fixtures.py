"""Small problems with known behaviour shared by the session tests."""

from types import SimpleNamespace

import numpy as np
from scipy.linalg import expm


def build_three_state_linear_system():
    """``y' = A y`` with a lower triangular, well separated ``A``.

    The exact solution is ``expm(A t) y0``.
    """
    A = np.array([
        [-1.0, 0.0, 0.0],
        [0.5, -2.0, 0.0],
        [0.0, 0.25, -3.0],
    ])
    y0 = np.array([1.0, 0.5, 0.25])

    def rhs(t, y, ydot):
        ydot.assign(A @ np.asarray(y))

    def jac(arg, J):
        for i in range(3):
            for j in range(3):
                J[i, j] = A[i, j]

    def exact(t):
        return expm(A * t) @ y0

    return SimpleNamespace(A=A, y0=y0, rhs=rhs, jac=jac, exact=exact, n=3)


def build_decay_system(rate=1.0):
    """Scalar decay ``y' = -rate * y`` with ``y(0) = 1``."""

    def rhs(t, y, ydot):
        ydot[0] = -rate * y[0]

    def exact(t):
        return np.exp(-rate * t)

    return SimpleNamespace(rate=rate, y0=np.array([1.0]), rhs=rhs,
                           exact=exact, n=1)


def build_robertson_system():
    """Robertson's stiff chemical kinetics."""

    def rhs(t, y, ydot):
        y1, y2, y3 = y[0], y[1], y[2]
        ydot[0] = -0.04 * y1 + 1.0e4 * y2 * y3
        ydot[2] = 3.0e7 * y2 * y2
        ydot[1] = -ydot[0] - ydot[2]

    def jac(arg, J):
        y = arg.y
        J[0, 0] = -0.04
        J[0, 1] = 1.0e4 * y[2]
        J[0, 2] = 1.0e4 * y[1]
        J[2, 0] = 0.0
        J[2, 1] = 6.0e7 * y[1]
        J[2, 2] = 0.0
        J[1, 0] = 0.04
        J[1, 1] = -1.0e4 * y[2] - 6.0e7 * y[1]
        J[1, 2] = -1.0e4 * y[1]

    return SimpleNamespace(y0=np.array([1.0, 0.0, 0.0]), rhs=rhs, jac=jac,
                           n=3)


def build_heat_system(n=10, diffusion=0.1):
    """Method-of-lines heat equation with zero boundary values.

    The right-hand side is tridiagonal, so banded solvers and
    preconditioners with half-bandwidths of one are exact.
    """
    dx = 1.0 / (n + 1)
    c = diffusion / dx ** 2
    x = np.linspace(dx, 1.0 - dx, n)
    y0 = np.sin(np.pi * x)

    def laplacian(y):
        y = np.asarray(y)
        out = -2.0 * y
        out[1:] += y[:-1]
        out[:-1] += y[1:]
        return c * out

    def rhs(t, y, ydot):
        ydot.assign(laplacian(y))

    def local(t, y, g):
        g.assign(laplacian(y))

    def band_jac(bandrange, arg, J):
        for i in range(n):
            J[i, i] = -2.0 * c
            if i > 0:
                J[i, i - 1] = c
            if i < n - 1:
                J[i, i + 1] = c

    def jtv(arg, v, Jv):
        Jv.assign(laplacian(v))

    def exact(t):
        # Decay rate of the first mode of the discrete operator.
        lam = c * (2.0 * np.cos(np.pi * dx) - 2.0)
        return np.exp(lam * t) * y0

    return SimpleNamespace(n=n, c=c, y0=y0, rhs=rhs, local=local,
                           band_jac=band_jac, jtv=jtv, exact=exact,
                           laplacian=laplacian)


def build_index_one_dae():
    """``y0' = -y0`` with the algebraic constraint ``y1 = 2 y0``."""

    def res(t, y, yp, r):
        r[0] = yp[0] + y[0]
        r[1] = y[1] - 2.0 * y[0]

    def jac(arg, J):
        J[0, 0] = 1.0 + arg.coef
        J[0, 1] = 0.0
        J[1, 0] = -2.0
        J[1, 1] = 1.0

    y0 = np.array([1.0, 2.0])
    yp0 = np.array([-1.0, -2.0])

    def exact(t):
        e = np.exp(-t)
        return np.array([e, 2.0 * e])

    return SimpleNamespace(res=res, jac=jac, y0=y0, yp0=yp0, exact=exact,
                           n=2)


def build_nonlinear_system():
    """Intersection of the circle ``|u| = 2`` with the line ``u0 = u1``."""

    def sysfn(u, fval):
        fval[0] = u[0] ** 2 + u[1] ** 2 - 4.0
        fval[1] = u[0] - u[1]

    def jac(arg, J):
        u = arg.u
        J[0, 0] = 2.0 * u[0]
        J[0, 1] = 2.0 * u[1]
        J[1, 0] = 1.0
        J[1, 1] = -1.0

    solution = np.array([np.sqrt(2.0), np.sqrt(2.0)])
    return SimpleNamespace(sysfn=sysfn, jac=jac, solution=solution, n=2)
