"""Linear solver and preconditioner configurations.

A configuration is an immutable description of the linear solver to
attach to a session. It knows which callback table variant it stands for
(:meth:`make_table`, which also rejects combinations the problem kind does
not support) and which engine calls create the solver
(:meth:`configure`). :func:`sunbridge.linsolv.attach` combines the two.
"""

from typing import Callable, ClassVar, Optional

from attrs import field, frozen, validators

from sunbridge._utils import default_dqrely, getype_validator
from sunbridge.common import BandRange, Bandwidths
from sunbridge.engine.flags import KrylovMethod, PrecType
from sunbridge.interop.callbacks import (
    BandCallbacks,
    BBDCallbacks,
    CallbackTable,
    DenseCallbacks,
    DiagCallbacks,
    ProblemKind,
    SpilsBandedCallbacks,
    SpilsCallbacks,
    SpilsUserCallbacks,
)

_optional_callable = validators.optional(validators.is_callable())


# ----------------------------------------------------------------------
# Direct solvers


@frozen
class Dense:
    """Dense direct solver.

    ``jac(arg, J)`` fills the dense Jacobian view ``J``; without it the
    engine approximates the Jacobian by difference quotients.
    """

    jac: Optional[Callable] = field(default=None,
                                    validator=_optional_callable)

    def make_table(self, problem: ProblemKind) -> CallbackTable:
        return DenseCallbacks(problem, self.jac)

    def configure(self, mem, problem: ProblemKind) -> int:
        return mem.set_linear_solver_dense()


@frozen
class Band:
    """Banded direct solver.

    ``jac(bandrange, arg, J)`` fills the entries of ``J`` inside the
    band.
    """

    bandrange: BandRange = field(validator=validators.instance_of(BandRange))
    jac: Optional[Callable] = field(default=None,
                                    validator=_optional_callable)

    def make_table(self, problem: ProblemKind) -> CallbackTable:
        return BandCallbacks(problem, self.bandrange, self.jac)

    def configure(self, mem, problem: ProblemKind) -> int:
        return mem.set_linear_solver_band(self.bandrange.mupper,
                                          self.bandrange.mlower)


@frozen
class Diag:
    """Diagonal difference-quotient approximation (ODE problems only)."""

    def make_table(self, problem: ProblemKind) -> CallbackTable:
        return DiagCallbacks(problem)

    def configure(self, mem, problem: ProblemKind) -> int:
        return mem.set_linear_solver_diag()


# ----------------------------------------------------------------------
# Preconditioners


@frozen
class Preconditioner:
    """Base of the preconditioner configurations."""

    side: PrecType = field(converter=PrecType)

    def make_table(self, problem: ProblemKind,
                   jac_times_vec: Optional[Callable]) -> CallbackTable:
        raise NotImplementedError

    def configure(self, mem) -> int:
        return 0


@frozen
class PrecNone(Preconditioner):
    """No preconditioning."""

    side: PrecType = field(default=PrecType.NONE, converter=PrecType)

    def make_table(self, problem, jac_times_vec):
        return SpilsCallbacks(problem, PrecType.NONE, jac_times_vec)


@frozen
class PrecUser(Preconditioner):
    """User preconditioner.

    ``solve(arg, solve_arg, z)`` solves ``P z = r`` with ``r`` in
    ``solve_arg.rhs``; the optional ``setup(arg, jok, gamma)`` prepares
    ``P`` and returns True if it recomputed Jacobian data. The DAE and
    nonlinear variants of the signatures are described with their
    sessions.
    """

    solve: Callable = field(kw_only=True,
                            validator=validators.is_callable())
    setup: Optional[Callable] = field(default=None, kw_only=True,
                                      validator=_optional_callable)

    def make_table(self, problem, jac_times_vec):
        return SpilsUserCallbacks(problem, self.side, self.solve,
                                  self.setup, jac_times_vec)

    def configure(self, mem) -> int:
        return mem.set_user_prec()


@frozen
class PrecBanded(Preconditioner):
    """Banded difference-quotient preconditioner built by the engine."""

    bandrange: BandRange = field(
        kw_only=True, validator=validators.instance_of(BandRange))

    def make_table(self, problem, jac_times_vec):
        return SpilsBandedCallbacks(problem, self.side, self.bandrange,
                                    jac_times_vec)

    def configure(self, mem) -> int:
        return mem.set_band_prec(self.bandrange.mupper,
                                 self.bandrange.mlower)


@frozen
class PrecBBD(Preconditioner):
    """Band-block-diagonal preconditioner; see :mod:`sunbridge.bbd`."""

    bandwidths: Bandwidths = field(
        kw_only=True, validator=validators.instance_of(Bandwidths))
    local_fn: Callable = field(kw_only=True,
                               validator=validators.is_callable())
    comm_fn: Optional[Callable] = field(default=None, kw_only=True,
                                        validator=_optional_callable)
    dqrely: float = field(default=None, kw_only=True,
                          converter=default_dqrely)

    def make_table(self, problem, jac_times_vec):
        return BBDCallbacks(problem, self.side, self.bandwidths,
                            self.local_fn, self.comm_fn, jac_times_vec)

    def configure(self, mem) -> int:
        bw = self.bandwidths
        return mem.set_bbd_prec(bw.mudq, bw.mldq, bw.mukeep, bw.mlkeep,
                                self.dqrely)


def prec_none() -> PrecNone:
    return PrecNone()


def prec_left(solve: Callable, setup: Optional[Callable] = None) -> PrecUser:
    return PrecUser(PrecType.LEFT, solve=solve, setup=setup)


def prec_right(solve: Callable,
               setup: Optional[Callable] = None) -> PrecUser:
    return PrecUser(PrecType.RIGHT, solve=solve, setup=setup)


def prec_both(solve: Callable, setup: Optional[Callable] = None) -> PrecUser:
    return PrecUser(PrecType.BOTH, solve=solve, setup=setup)


def banded_left(bandrange: BandRange) -> PrecBanded:
    return PrecBanded(PrecType.LEFT, bandrange=bandrange)


def banded_right(bandrange: BandRange) -> PrecBanded:
    return PrecBanded(PrecType.RIGHT, bandrange=bandrange)


def banded_both(bandrange: BandRange) -> PrecBanded:
    return PrecBanded(PrecType.BOTH, bandrange=bandrange)


# ----------------------------------------------------------------------
# Krylov solvers


@frozen
class Krylov:
    """Scaled preconditioned Krylov solver.

    Attributes
    ----------
    maxl
        Maximum Krylov subspace dimension; 0 selects the engine default.
    preconditioner
        One of the preconditioner configurations.
    jac_times_vec
        Optional Jacobian-vector product ``jtv(arg, v, Jv)``; without it
        the engine uses difference quotients.
    """

    method: ClassVar[KrylovMethod]

    maxl: int = field(default=0, validator=getype_validator(int, 0))
    preconditioner: Preconditioner = field(
        factory=prec_none,
        validator=validators.instance_of(Preconditioner))
    jac_times_vec: Optional[Callable] = field(default=None,
                                              validator=_optional_callable)

    def make_table(self, problem: ProblemKind) -> CallbackTable:
        return self.preconditioner.make_table(problem, self.jac_times_vec)

    def configure(self, mem, problem: ProblemKind) -> int:
        side = self.preconditioner.side
        if problem is ProblemKind.DAE:
            flag = mem.set_linear_solver_spils(self.method, self.maxl)
            if flag == 0:
                flag = mem.set_prec_type(side)
        else:
            flag = mem.set_linear_solver_spils(self.method, side, self.maxl)
        if flag != 0:
            return flag
        return self.preconditioner.configure(mem)


@frozen
class Spgmr(Krylov):
    """Restarted GMRES."""

    method = KrylovMethod.SPGMR


@frozen
class Spbcg(Krylov):
    """Bi-CGStab."""

    method = KrylovMethod.SPBCG


@frozen
class Sptfqmr(Krylov):
    """Transpose-free QMR."""

    method = KrylovMethod.SPTFQMR
