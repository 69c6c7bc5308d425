"""Band-block-diagonal (BBD) preconditioner.

The engine approximates the Jacobian of a local version ``g`` of the
right-hand side by difference quotients over a band of half-bandwidths
``mudq``/``mldq`` and keeps a band of ``mukeep``/``mlkeep`` of the result
as preconditioner. Before evaluating ``local_fn`` it calls ``comm_fn``,
which performs any exchange of data with other partitions the local
function needs.

Callback signatures for an ODE session are ``local_fn(t, y, glocal)`` and
``comm_fn(t, y)``; backward, DAE and nonlinear sessions pass their own
state arguments (see their modules).
"""

from typing import Callable, Optional, Tuple

import attrs

from sunbridge._utils import default_dqrely
from sunbridge.common import Bandwidths
from sunbridge.engine.flags import PrecType
from sunbridge.exceptions import LinearSolverStateError
from sunbridge.interop.callbacks import BBDCallbacks
from sunbridge.linsolv.config import PrecBBD


def _make(side: PrecType, bandwidths: Bandwidths, local_fn: Callable,
          comm_fn: Optional[Callable], dqrely: Optional[float]) -> PrecBBD:
    return PrecBBD(side, bandwidths=bandwidths, local_fn=local_fn,
                   comm_fn=comm_fn, dqrely=dqrely)


def prec_left(bandwidths: Bandwidths, local_fn: Callable,
              comm_fn: Optional[Callable] = None,
              dqrely: Optional[float] = None) -> PrecBBD:
    """BBD preconditioning on the left.

    Parameters
    ----------
    bandwidths
        Difference-quotient and retained half-bandwidths.
    local_fn
        Local approximation of the right-hand side.
    comm_fn
        Optional communication step run before ``local_fn``.
    dqrely
        Relative increment of the difference quotients; defaults to the
        square root of the unit roundoff.
    """
    return _make(PrecType.LEFT, bandwidths, local_fn, comm_fn, dqrely)


def prec_right(bandwidths: Bandwidths, local_fn: Callable,
               comm_fn: Optional[Callable] = None,
               dqrely: Optional[float] = None) -> PrecBBD:
    return _make(PrecType.RIGHT, bandwidths, local_fn, comm_fn, dqrely)


def prec_both(bandwidths: Bandwidths, local_fn: Callable,
              comm_fn: Optional[Callable] = None,
              dqrely: Optional[float] = None) -> PrecBBD:
    return _make(PrecType.BOTH, bandwidths, local_fn, comm_fn, dqrely)


def _require_bbd(session, function: str) -> BBDCallbacks:
    session._require_open()
    table = session.table
    if not isinstance(table, BBDCallbacks):
        raise LinearSolverStateError(
            f"{function} needs the BBD preconditioner, but "
            f"{type(table).__name__} is active"
        )
    return table


def reinit(session, mudq: int, mldq: int,
           dqrely: Optional[float] = None) -> None:
    """Change the difference-quotient bandwidths and increment.

    The retained bandwidths and the callbacks stay as they are.

    Raises
    ------
    LinearSolverStateError
        If the BBD preconditioner is not the active one.
    """
    table = _require_bbd(session, "reinit")
    bandwidths = Bandwidths(mudq, mldq, table.bandwidths.mukeep,
                            table.bandwidths.mlkeep)
    session._check(session.mem.bbd_reinit(mudq, mldq,
                                           default_dqrely(dqrely)))
    session.table = attrs.evolve(table, bandwidths=bandwidths)


def get_work_space(session) -> Tuple[int, int]:
    """Workspace of the preconditioner."""
    _require_bbd(session, "get_work_space")
    return session.mem.ls_stats()["prec_work_space"]


def get_num_gfn_evals(session) -> int:
    """Calls of ``local_fn`` made for difference quotients."""
    _require_bbd(session, "get_num_gfn_evals")
    return session.mem.ls_stats()["gfn_evals"]
