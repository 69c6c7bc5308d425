"""Linear solver and preconditioner binding.

Attach a solver with :func:`attach` (or a session's
``set_linear_solver``)::

    session.set_linear_solver(linsolv.Dense(jac=my_jacobian))
    session.set_linear_solver(
        linsolv.Spgmr(maxl=10,
                      preconditioner=linsolv.prec_left(psolve, psetup)))

Krylov solvers can be adjusted afterwards through the ``set_*`` functions.
"""

from sunbridge.linsolv.binding import (
    attach,
    banded_stats,
    clear_jac_times_vec_fn,
    get_jacobian,
    get_num_conv_fails,
    get_num_jac_evals,
    get_num_jtimes_evals,
    get_num_lin_iters,
    get_num_prec_evals,
    get_num_prec_solves,
    get_num_rhs_evals,
    get_stats,
    get_work_space,
    set_eps_lin,
    set_gs_type,
    set_jac_times_vec_fn,
    set_max_restarts,
    set_maxl,
    set_prec_type,
    set_preconditioner,
)
from sunbridge.linsolv.config import (
    Band,
    Dense,
    Diag,
    Krylov,
    PrecBanded,
    PrecBBD,
    PrecNone,
    Preconditioner,
    PrecUser,
    Spbcg,
    Spgmr,
    Sptfqmr,
    banded_both,
    banded_left,
    banded_right,
    prec_both,
    prec_left,
    prec_none,
    prec_right,
)

__all__ = [
    "Band",
    "Dense",
    "Diag",
    "Krylov",
    "PrecBBD",
    "PrecBanded",
    "PrecNone",
    "PrecUser",
    "Preconditioner",
    "Spbcg",
    "Spgmr",
    "Sptfqmr",
    "attach",
    "banded_both",
    "banded_left",
    "banded_right",
    "banded_stats",
    "clear_jac_times_vec_fn",
    "get_jacobian",
    "get_num_conv_fails",
    "get_num_jac_evals",
    "get_num_jtimes_evals",
    "get_num_lin_iters",
    "get_num_prec_evals",
    "get_num_prec_solves",
    "get_num_rhs_evals",
    "get_stats",
    "get_work_space",
    "prec_both",
    "prec_left",
    "prec_none",
    "prec_right",
    "set_eps_lin",
    "set_gs_type",
    "set_jac_times_vec_fn",
    "set_max_restarts",
    "set_maxl",
    "set_prec_type",
    "set_preconditioner",
]
