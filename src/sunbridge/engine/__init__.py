"""Reference solver engine driven by the binding layer.

The engine keeps all of its state in opaque memory objects, reports every
outcome as an integer flag and calls back into registered functions as
``fn(user_data, *buffers) -> int``. The binding layer in :mod:`sunbridge`
only relies on that contract.

This package is a stand-in for a native solver library behind that
contract. Its numerical methods are simple (orders 1 and 2,
difference-quotient Jacobians, scipy Krylov iterations) and are not part
of the public interface; the binding layer never reaches past the memory
objects' entry points, flags and callback kinds.
"""

from sunbridge.engine.adjoint_mem import HERMITE, POLYNOMIAL, AdjointMem
from sunbridge.engine.cvode_mem import CvodeMem
from sunbridge.engine.flags import (
    BACKWARD_KINDS,
    LINEAR_SOLVER_KINDS,
    CallbackKind,
    CvFlag,
    GramSchmidt,
    IcOpt,
    IdaFlag,
    Iteration,
    KinFlag,
    KinStrategy,
    KrylovMethod,
    Lmm,
    PrecType,
    Task,
)
from sunbridge.engine.ida_mem import IdaMem
from sunbridge.engine.kinsol_mem import KinsolMem
from sunbridge.engine.multistep import UNIT_ROUNDOFF

__all__ = [
    "AdjointMem",
    "BACKWARD_KINDS",
    "CallbackKind",
    "CvFlag",
    "CvodeMem",
    "GramSchmidt",
    "HERMITE",
    "IcOpt",
    "IdaFlag",
    "IdaMem",
    "Iteration",
    "KinFlag",
    "KinStrategy",
    "KinsolMem",
    "KrylovMethod",
    "LINEAR_SOLVER_KINDS",
    "Lmm",
    "POLYNOMIAL",
    "PrecType",
    "Task",
    "UNIT_ROUNDOFF",
]
