"""Callback tables and the argument records passed to user callbacks.

A session holds exactly one *callback table*: a variant describing the
attached linear solver together with the user callbacks it needs. The
variants form a closed set and each one checks at construction that it is
valid for the problem kind it is built for, so combinations the engine
cannot honour (a diagonal solver on a DAE, say) cannot be represented.
Attaching another solver replaces the whole table.

The argument records bundle the scoped views handed to Jacobian,
preconditioner and Jacobian-vector callbacks. They are valid only for
the duration of one callback invocation.
"""

from enum import Enum
from typing import Callable, FrozenSet, Optional, Tuple, Union

from attrs import field, frozen, validators

from sunbridge.common import BandRange, Bandwidths
from sunbridge.engine.flags import CallbackKind, PrecType
from sunbridge.interop.views import ScopedView


class ProblemKind(Enum):
    """Kind of problem a session solves."""

    ODE = "ode"
    BACKWARD_ODE = "backward_ode"
    DAE = "dae"
    NONLINEAR = "nonlinear"


_ALL = frozenset(ProblemKind)
_ODE_ONLY = frozenset({ProblemKind.ODE, ProblemKind.BACKWARD_ODE})

#: Preconditioning sides each problem kind supports.
SUPPORTED_SIDES = {
    ProblemKind.ODE: frozenset(PrecType),
    ProblemKind.BACKWARD_ODE: frozenset(PrecType),
    ProblemKind.DAE: frozenset({PrecType.NONE, PrecType.LEFT}),
    ProblemKind.NONLINEAR: frozenset({PrecType.NONE, PrecType.RIGHT}),
}

_optional_callable = validators.optional(validators.is_callable())


def _problem_validator(instance, attribute, value) -> None:
    if not isinstance(value, ProblemKind):
        raise TypeError(f"problem must be a ProblemKind, got {value!r}")
    if value not in instance.allowed_problems:
        raise ValueError(
            f"{type(instance).__name__} is not available for "
            f"{value.value} problems"
        )


def _side_validator(instance, attribute, value) -> None:
    side = PrecType(value)
    if side not in SUPPORTED_SIDES[instance.problem]:
        raise ValueError(
            f"{side.name} preconditioning is not available for "
            f"{instance.problem.value} problems"
        )
    if instance.needs_preconditioner and side == PrecType.NONE:
        raise ValueError(
            f"{type(instance).__name__} needs a preconditioning side"
        )
    if not instance.allows_preconditioner and side != PrecType.NONE:
        raise ValueError(
            f"{type(instance).__name__} has no preconditioner to apply "
            f"on the {side.name} side"
        )


@frozen
class CallbackTable:
    """Base of the callback table variants."""

    allowed_problems = _ALL
    needs_preconditioner = False
    allows_preconditioner = True

    problem: ProblemKind = field(validator=_problem_validator)

    @property
    def registered_kinds(self) -> FrozenSet[CallbackKind]:
        """Linear solver callback kinds to register with the engine."""
        return frozenset()

    def _optional(self, **kinds) -> FrozenSet[CallbackKind]:
        return frozenset(
            CallbackKind[name] for name, fn in kinds.items()
            if fn is not None
        )


@frozen
class NoCallbacks(CallbackTable):
    """No linear solver attached."""


@frozen
class DenseCallbacks(CallbackTable):
    """Dense direct solver with an optional user Jacobian."""

    jac: Optional[Callable] = field(default=None,
                                    validator=_optional_callable)

    @property
    def registered_kinds(self) -> FrozenSet[CallbackKind]:
        return self._optional(DENSE_JAC=self.jac)


@frozen
class BandCallbacks(CallbackTable):
    """Banded direct solver with an optional user Jacobian."""

    bandrange: BandRange = field(
        validator=validators.instance_of(BandRange))
    jac: Optional[Callable] = field(default=None,
                                    validator=_optional_callable)

    @property
    def registered_kinds(self) -> FrozenSet[CallbackKind]:
        return self._optional(BAND_JAC=self.jac)


@frozen
class DiagCallbacks(CallbackTable):
    """Diagonal approximate Jacobian solver (ODE problems only)."""

    allowed_problems = _ODE_ONLY


@frozen
class SpilsCallbacks(CallbackTable):
    """Krylov solver without a preconditioner."""

    allows_preconditioner = False

    side: PrecType = field(default=PrecType.NONE, converter=PrecType,
                           validator=_side_validator)
    jac_times_vec: Optional[Callable] = field(default=None,
                                              validator=_optional_callable)

    @property
    def registered_kinds(self) -> FrozenSet[CallbackKind]:
        return self._optional(JAC_TIMES_VEC=self.jac_times_vec)


@frozen
class SpilsUserCallbacks(CallbackTable):
    """Krylov solver with a user-supplied preconditioner."""

    needs_preconditioner = True

    side: PrecType = field(converter=PrecType, validator=_side_validator)
    prec_solve: Callable = field(validator=validators.is_callable())
    prec_setup: Optional[Callable] = field(default=None,
                                           validator=_optional_callable)
    jac_times_vec: Optional[Callable] = field(default=None,
                                              validator=_optional_callable)

    @property
    def registered_kinds(self) -> FrozenSet[CallbackKind]:
        return frozenset({CallbackKind.PREC_SOLVE}) | self._optional(
            PREC_SETUP=self.prec_setup, JAC_TIMES_VEC=self.jac_times_vec)


@frozen
class SpilsBandedCallbacks(CallbackTable):
    """Krylov solver with the engine's banded preconditioner."""

    allowed_problems = _ODE_ONLY
    needs_preconditioner = True

    side: PrecType = field(converter=PrecType, validator=_side_validator)
    bandrange: BandRange = field(
        validator=validators.instance_of(BandRange))
    jac_times_vec: Optional[Callable] = field(default=None,
                                              validator=_optional_callable)

    @property
    def registered_kinds(self) -> FrozenSet[CallbackKind]:
        return self._optional(JAC_TIMES_VEC=self.jac_times_vec)


@frozen
class BBDCallbacks(CallbackTable):
    """Krylov solver with the band-block-diagonal preconditioner."""

    needs_preconditioner = True

    side: PrecType = field(converter=PrecType, validator=_side_validator)
    bandwidths: Bandwidths = field(
        validator=validators.instance_of(Bandwidths))
    local_fn: Callable = field(validator=validators.is_callable())
    comm_fn: Optional[Callable] = field(default=None,
                                        validator=_optional_callable)
    jac_times_vec: Optional[Callable] = field(default=None,
                                              validator=_optional_callable)

    @property
    def registered_kinds(self) -> FrozenSet[CallbackKind]:
        return frozenset({CallbackKind.BBD_LOCAL}) | self._optional(
            BBD_COMM=self.comm_fn, JAC_TIMES_VEC=self.jac_times_vec)


KRYLOV_TABLES = (SpilsCallbacks, SpilsUserCallbacks, SpilsBandedCallbacks,
                 BBDCallbacks)


# ----------------------------------------------------------------------
# Argument records

Tmp = Union[ScopedView, Tuple[ScopedView, ...]]


@frozen
class JacobianArg:
    """Linearisation point of an ODE: ``t``, ``y``, ``fy = f(t, y)``.

    ``tmp`` is a single work vector or a triple, depending on the
    callback kind.
    """

    t: float
    y: ScopedView
    fy: ScopedView
    tmp: Tmp


@frozen
class BackwardJacobianArg:
    """Linearisation point of a backward problem.

    ``y`` is the interpolated forward solution, ``yb`` the backward state
    and ``fyb`` the backward right-hand side.
    """

    t: float
    y: ScopedView
    yb: ScopedView
    fyb: ScopedView
    tmp: Tmp


@frozen
class DaeJacobianArg:
    """Linearisation point of a DAE; ``coef`` is ``cj = 1 / gamma``."""

    t: float
    coef: float
    y: ScopedView
    yp: ScopedView
    res: ScopedView
    tmp: Tmp


@frozen
class KinJacobianArg:
    """Current iterate ``u`` of a nonlinear system and ``fu = F(u)``."""

    u: ScopedView
    fu: ScopedView
    tmp: Tmp


@frozen
class PrecSolveArg:
    """Right-hand side and parameters of an ODE preconditioner solve.

    Attributes
    ----------
    rhs
        Vector ``r`` of the system ``P z = r``.
    gamma
        Scalar in the Newton matrix ``I - gamma J``.
    delta
        Tolerance the solve should meet.
    left
        True to solve with the left preconditioner, False for right.
    """

    rhs: ScopedView
    gamma: float
    delta: float
    left: bool


@frozen
class DaePrecSolveArg:
    """Right-hand side and tolerance of a DAE preconditioner solve."""

    rhs: ScopedView
    delta: float


@frozen
class KinSolveArg:
    """Scaling vectors of a nonlinear preconditioner setup or solve."""

    uscale: ScopedView
    fscale: ScopedView
