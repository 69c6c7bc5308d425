"""Attaching linear solvers to sessions and manipulating Krylov solvers.

Every function here takes a session. Attaching always replaces the whole
callback table, so no callback of the previous solver stays registered;
the Krylov functions derive a new table from the active one and install
it in the same way.
"""

from typing import Callable, Optional, Tuple

import attrs

from sunbridge.engine.flags import GramSchmidt, PrecType
from sunbridge.exceptions import LinearSolverStateError
from sunbridge.interop.callbacks import (
    KRYLOV_TABLES,
    BandCallbacks,
    DenseCallbacks,
    DiagCallbacks,
    NoCallbacks,
    ProblemKind,
    SpilsBandedCallbacks,
    SpilsUserCallbacks,
)


def attach(session, config) -> None:
    """Attach the linear solver described by ``config`` to ``session``.

    Parameters
    ----------
    session
        Any session; the configuration is checked against its problem
        kind before the engine is touched.
    config
        :class:`~sunbridge.linsolv.config.Dense`,
        :class:`~sunbridge.linsolv.config.Band`,
        :class:`~sunbridge.linsolv.config.Diag` or a Krylov
        configuration.

    Raises
    ------
    ValueError
        If the configuration is not available for the session's problem
        kind.
    """
    mem = session.mem
    table = config.make_table(session.problem)
    session._check(config.configure(mem, session.problem))
    session._install_table(table)


def _krylov_table(session, function: str):
    session._require_open()
    table = session.table
    if not isinstance(table, KRYLOV_TABLES):
        raise LinearSolverStateError(
            f"{function} needs a Krylov linear solver, but "
            f"{type(table).__name__} is active"
        )
    return table


def set_preconditioner(session, solve: Callable,
                       setup: Optional[Callable] = None) -> None:
    """Replace the preconditioner callbacks of a Krylov solver.

    The solver must have been attached with a preconditioning side; the
    side is kept.
    """
    table = _krylov_table(session, "set_preconditioner")
    if table.side == PrecType.NONE:
        raise LinearSolverStateError(
            "set_preconditioner needs a solver attached with a "
            "preconditioning side"
        )
    new_table = SpilsUserCallbacks(table.problem, table.side, solve, setup,
                                   table.jac_times_vec)
    session._check(session.mem.set_user_prec())
    session._install_table(new_table)


def set_jac_times_vec_fn(session, jac_times_vec: Callable) -> None:
    """Use ``jac_times_vec`` for Jacobian-vector products."""
    table = _krylov_table(session, "set_jac_times_vec_fn")
    session._install_table(attrs.evolve(table, jac_times_vec=jac_times_vec))


def clear_jac_times_vec_fn(session) -> None:
    """Go back to difference-quotient Jacobian-vector products.

    Does nothing if no product function is registered.
    """
    table = _krylov_table(session, "clear_jac_times_vec_fn")
    if table.jac_times_vec is None:
        return
    session._install_table(attrs.evolve(table, jac_times_vec=None))


def set_prec_type(session, side: PrecType) -> None:
    """Change the preconditioning side.

    Raises
    ------
    LinearSolverStateError
        If the solver was attached without a preconditioner and ``side``
        is not ``NONE``.
    """
    table = _krylov_table(session, "set_prec_type")
    side = PrecType(side)
    if not table.allows_preconditioner and side != PrecType.NONE:
        raise LinearSolverStateError(
            "set_prec_type needs a Krylov solver attached with a "
            "preconditioner"
        )
    new_table = attrs.evolve(table, side=side)
    session._check(session.mem.set_prec_type(new_table.side))
    session.table = new_table


def set_gs_type(session, gs_type: GramSchmidt) -> None:
    """Gram-Schmidt orthogonalisation used by GMRES."""
    _krylov_table(session, "set_gs_type")
    session._check(session.mem.set_gs_type(GramSchmidt(gs_type)))


def set_eps_lin(session, eps_lin: float) -> None:
    """Ratio between linear and nonlinear tolerances; 0 for the default."""
    _krylov_table(session, "set_eps_lin")
    if session.problem is ProblemKind.NONLINEAR:
        raise LinearSolverStateError(
            "the nonlinear solver sets its linear tolerance through its "
            "forcing term"
        )
    session._check(session.mem.set_eps_lin(float(eps_lin)))


def set_maxl(session, maxl: int) -> None:
    """Maximum Krylov subspace dimension; 0 for the default."""
    _krylov_table(session, "set_maxl")
    session._check(session.mem.set_maxl(int(maxl)))


def set_max_restarts(session, max_restarts: int) -> None:
    """GMRES restarts allowed per nonlinear iteration (nonlinear only)."""
    _krylov_table(session, "set_max_restarts")
    if session.problem is not ProblemKind.NONLINEAR:
        raise LinearSolverStateError(
            "max_restarts is only available for nonlinear problems"
        )
    session._check(session.mem.set_max_restarts(int(max_restarts)))


# ----------------------------------------------------------------------
# Statistics


def get_stats(session) -> dict:
    """All counters of the attached linear solver and preconditioner."""
    session._require_open()
    if isinstance(session.table, NoCallbacks):
        raise LinearSolverStateError("no linear solver is attached")
    return dict(session.mem.ls_stats())


def _counter(session, key: str, allowed, function: str) -> int:
    session._require_open()
    if not isinstance(session.table, allowed):
        raise LinearSolverStateError(
            f"{function} is not available for "
            f"{type(session.table).__name__}"
        )
    return get_stats(session)[key]


_DIRECT_TABLES = (DenseCallbacks, BandCallbacks)


def get_work_space(session) -> Tuple[int, int]:
    """Real and integer workspace of the linear solver."""
    return get_stats(session)["work_space"]


def get_num_jac_evals(session) -> int:
    return _counter(session, "jac_evals", _DIRECT_TABLES,
                    "get_num_jac_evals")


def get_num_rhs_evals(session) -> int:
    """Right-hand side (or residual, or system function) evaluations made
    for difference-quotient Jacobians and Jacobian-vector products."""
    return _counter(session, "rhs_evals_ls",
                    _DIRECT_TABLES + (DiagCallbacks,) + KRYLOV_TABLES,
                    "get_num_rhs_evals")


def get_num_lin_iters(session) -> int:
    return _counter(session, "lin_iters", KRYLOV_TABLES,
                    "get_num_lin_iters")


def get_num_conv_fails(session) -> int:
    return _counter(session, "conv_fails", KRYLOV_TABLES,
                    "get_num_conv_fails")


def get_num_prec_evals(session) -> int:
    return _counter(session, "prec_evals", KRYLOV_TABLES,
                    "get_num_prec_evals")


def get_num_prec_solves(session) -> int:
    return _counter(session, "prec_solves", KRYLOV_TABLES,
                    "get_num_prec_solves")


def get_num_jtimes_evals(session) -> int:
    return _counter(session, "jtimes_evals", KRYLOV_TABLES,
                    "get_num_jtimes_evals")


def get_jacobian(session):
    """Copy of the Jacobian used by the last setup of a direct solver, or
    None before the first setup."""
    session._require_open()
    if not isinstance(session.table, _DIRECT_TABLES):
        raise LinearSolverStateError(
            "get_jacobian needs a dense or banded linear solver"
        )
    return session.mem.jacobian()


def banded_stats(session) -> Tuple[int, Tuple[int, int]]:
    """``(rhs_evals, work_space)`` of the banded preconditioner."""
    stats = get_stats(session)
    if not isinstance(session.table, SpilsBandedCallbacks):
        raise LinearSolverStateError(
            "the banded preconditioner is not active"
        )
    return stats["prec_rhs_evals"], stats["prec_work_space"]

