"""Forward sensitivity analysis of an ODE session.

For parameters ``p`` of the right-hand side, the sensitivities
``s_i = dy/dp_i`` satisfy ``s_i' = J s_i + df/dp_i``. They are either
computed by user functions or, when none is given, approximated by the
engine with difference quotients. In the latter case the engine perturbs
the components of :attr:`SensParams.pvals` in place, so the right-hand
side must read its parameters from that same array.

Sensitivity functions come in two shapes:

* :class:`AllAtOnce` wraps ``fs(t, y, ydot, ys, ysdot, tmp)`` where
  ``ys`` and ``ysdot`` are tuples holding one view per sensitivity;
* :class:`OneByOne` wraps ``fs1(t, y, ydot, i, ys_i, ysdot_i, tmp)``,
  called once for each sensitivity ``i``.

In both ``tmp`` is a pair of scratch views. A wrapper holding ``None``
selects difference quotients for that shape.
"""

from enum import IntEnum
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np
from attrs import define, field, frozen, validators

from sunbridge._utils import getype_validator
from sunbridge.common import as_vector
from sunbridge.engine.flags import CallbackKind, CvFlag
from sunbridge.exceptions import SensNotInitialized
from sunbridge.interop.bridge import run_guarded
from sunbridge.interop.views import scoped
from sunbridge.session import resolve

_optional_callable = validators.optional(validators.is_callable())


class SensMethod(IntEnum):
    """How sensitivities are corrected within a step."""

    SIMULTANEOUS = 1
    STAGGERED = 2
    STAGGERED1 = 3


class DQMethod(IntEnum):
    """Difference-quotient scheme for sensitivity right-hand sides."""

    CENTERED = 1
    FORWARD = 2


@frozen
class AllAtOnce:
    """All sensitivity right-hand sides in one call."""

    fn: Optional[Callable] = field(default=None,
                                   validator=_optional_callable)


@frozen
class OneByOne:
    """One sensitivity right-hand side per call."""

    fn: Optional[Callable] = field(default=None,
                                   validator=_optional_callable)


SensRhs = Union[AllAtOnce, OneByOne]


def _optional_vector(value):
    if value is None:
        return None
    return np.asarray(value)


@frozen(eq=False)
class SensParams:
    """Problem parameters and their use in difference quotients.

    Attributes
    ----------
    pvals
        Parameter values read by the right-hand side. Kept by reference,
        not copied: the engine perturbs it during difference quotients.
    pbar
        Order of magnitude of each sensitivity parameter, used to scale
        the quotients and the error weights; ones by default.
    plist
        Index into ``pvals`` of each sensitivity parameter;
        ``0 .. ns-1`` by default.
    """

    pvals: Optional[np.ndarray] = field(default=None)
    pbar: Optional[np.ndarray] = field(default=None,
                                       converter=_optional_vector)
    plist: Optional[np.ndarray] = field(default=None,
                                        converter=_optional_vector)

    @pvals.validator
    def _check_pvals(self, attribute, value):
        if value is not None and not (isinstance(value, np.ndarray) and
                                      value.dtype == np.float64):
            raise TypeError(
                "pvals must be a float64 numpy array shared with the "
                "right-hand side"
            )


@frozen(eq=False)
class SStolerances:
    """Scalar relative tolerance and one absolute tolerance per
    sensitivity."""

    rtol: float = field(validator=getype_validator(float, 0.0))
    atol: Sequence[float] = field(converter=tuple)


@frozen(eq=False)
class SVtolerances:
    """Scalar relative tolerance and an absolute tolerance vector per
    sensitivity."""

    rtol: float = field(validator=getype_validator(float, 0.0))
    atol: Sequence[np.ndarray] = field(
        converter=lambda value: tuple(np.asarray(a, dtype=np.float64)
                                      for a in value))


@frozen
class EEtolerances:
    """Estimate the sensitivity tolerances from the state tolerances and
    :attr:`SensParams.pbar`."""


SensTolerances = Union[SStolerances, SVtolerances, EEtolerances]


@define
class SensState:
    """Sensitivity setup of a session, kept for its trampolines."""

    ns: int
    rhs: SensRhs
    params: Optional[SensParams] = None


# ----------------------------------------------------------------------
# Trampolines


def _sens_rhs(token, t, y, ydot, ys, ysdot, tmp1, tmp2):
    session = resolve(token)
    with scoped(y, ydot, list(ys), list(ysdot), [tmp1, tmp2]) as \
            (yv, ydotv, ysv, ysdotv, tmp):
        return int(run_guarded(session, True, session.sens.rhs.fn, t, yv,
                               ydotv, ysv, ysdotv, tmp))


def _sens_rhs1(token, t, y, ydot, i, ys_i, ysdot_i, tmp1, tmp2):
    session = resolve(token)
    with scoped(y, ydot, ys_i, ysdot_i, [tmp1, tmp2]) as \
            (yv, ydotv, ysv, ysdotv, tmp):
        return int(run_guarded(session, True, session.sens.rhs.fn, t, yv,
                               ydotv, int(i), ysv, ysdotv, tmp))


# ----------------------------------------------------------------------
# Setup


def _vectors(session, ys0) -> List[np.ndarray]:
    vectors = [as_vector(v, "ys0 vector") for v in ys0]
    n = session.mem.n
    if not vectors or any(v.shape[0] != n for v in vectors):
        raise ValueError(
            f"ys0 must hold at least one vector of {n} components"
        )
    return vectors


def _register(session, rhs: SensRhs) -> None:
    one_by_one = isinstance(rhs, OneByOne)
    session._check(session._set_callback(
        CallbackKind.SENS_RHS,
        _sens_rhs if not one_by_one and rhs.fn is not None else None))
    session._check(session._set_callback(
        CallbackKind.SENS_RHS1,
        _sens_rhs1 if one_by_one and rhs.fn is not None else None))


def _check_method(method: SensMethod, rhs: SensRhs) -> SensMethod:
    method = SensMethod(method)
    if method is SensMethod.STAGGERED1 and not isinstance(rhs, OneByOne):
        raise ValueError(
            "the STAGGERED1 method needs one-by-one sensitivity "
            "right-hand sides"
        )
    return method


def init(
    session,
    tolerances: SensTolerances,
    method: SensMethod,
    params: Optional[SensParams],
    rhs: SensRhs,
    ys0: Sequence,
) -> None:
    """Activate sensitivity analysis for ``len(ys0)`` parameters.

    Parameters
    ----------
    session
        Forward ODE session.
    tolerances
        Sensitivity tolerances; :class:`EEtolerances` derives them from
        the state tolerances.
    method
        Correction strategy.
    params
        Needed when ``rhs`` wraps ``None`` (difference quotients) or when
        the tolerances are estimated.
    rhs
        :class:`AllAtOnce` or :class:`OneByOne`.
    ys0
        Initial sensitivity vectors.

    Raises
    ------
    ValueError
        For ``STAGGERED1`` without one-by-one functions, or initial
        vectors of the wrong size.
    """
    if not isinstance(rhs, (AllAtOnce, OneByOne)):
        raise TypeError("rhs must be AllAtOnce or OneByOne")
    method = _check_method(method, rhs)
    session._require_open()
    vectors = _vectors(session, ys0)
    mem = session.mem
    session._check(mem.sens_init(len(vectors), int(method),
                                 isinstance(rhs, OneByOne), vectors))
    session.sens = SensState(len(vectors), rhs)
    _register(session, rhs)
    if params is not None:
        set_params(session, params)
    set_tolerances(session, tolerances)


def _state(session) -> SensState:
    session._require_open()
    if session.sens is None:
        raise SensNotInitialized(CvFlag.NO_SENS,
                                 "sensitivity analysis is not active")
    return session.sens


def reinit(session, method: SensMethod, ys0: Sequence) -> None:
    """Restart the sensitivities from ``ys0``; reactivates them after
    :func:`toggle_off`."""
    state = _state(session)
    method = _check_method(method, state.rhs)
    session._guard("sensitivity.reinit")
    vectors = _vectors(session, ys0)
    session._check(session.mem.sens_reinit(int(method), vectors))


def toggle_off(session) -> None:
    """Stop computing sensitivities until the next :func:`reinit`."""
    _state(session)
    session._check(session.mem.sens_toggle_off())


def set_params(session, params: SensParams) -> None:
    state = _state(session)
    session._check(session.mem.set_sens_params(params.pvals, params.pbar,
                                               params.plist))
    state.params = params


def set_tolerances(session, tolerances: SensTolerances) -> None:
    _state(session)
    mem = session.mem
    if isinstance(tolerances, EEtolerances):
        session._check(mem.sens_tolerances("ee"))
    elif isinstance(tolerances, SStolerances):
        session._check(mem.sens_tolerances("ss", tolerances.rtol,
                                           list(tolerances.atol)))
    elif isinstance(tolerances, SVtolerances):
        session._check(mem.sens_tolerances("sv", tolerances.rtol,
                                           list(tolerances.atol)))
    else:
        raise TypeError(
            f"unsupported sensitivity tolerances "
            f"{type(tolerances).__name__}"
        )


def set_err_con(session, errcon: bool) -> None:
    """Include the sensitivities in the local error test."""
    _state(session)
    session._check(session.mem.set_sens_err_con(bool(errcon)))


def set_dq_method(session, method: DQMethod, rhomax: float = 0.0) -> None:
    """Difference-quotient scheme; ``rhomax`` selects between the
    simultaneous and separate perturbation of ``y`` and ``p``."""
    _state(session)
    session._check(session.mem.set_sens_dq_method(
        DQMethod(method) is DQMethod.CENTERED, float(rhomax)))


def set_max_nonlin_iters(session, maxcor: int) -> None:
    """Nonlinear iterations allowed for the staggered corrector."""
    _state(session)
    session._check(session.mem.set_sens_max_nonlin_iters(int(maxcor)))


# ----------------------------------------------------------------------
# Output


def get(session) -> Tuple[List[np.ndarray], float]:
    """Sensitivities at the time last reached, and that time."""
    state = _state(session)
    out = [np.zeros(session.mem.n) for _ in range(state.ns)]
    flag, t = session.mem.get_sens(out)
    session._check(flag)
    return out, t


def get_dky(session, t: float, k: int) -> List[np.ndarray]:
    """``k``-th derivatives of the interpolated sensitivities at ``t``."""
    state = _state(session)
    out = [np.zeros(session.mem.n) for _ in range(state.ns)]
    session._check(session.mem.get_sens_dky(float(t), int(k), out))
    return out


def get1(session, i: int) -> Tuple[np.ndarray, float]:
    """Sensitivity ``i`` at the time last reached, and that time."""
    _state(session)
    out = np.zeros(session.mem.n)
    flag, t = session.mem.get_sens1(int(i), out)
    session._check(flag)
    return out, t


def get_dky1(session, t: float, k: int, i: int) -> np.ndarray:
    _state(session)
    out = np.zeros(session.mem.n)
    session._check(session.mem.get_sens_dky1(float(t), int(k), int(i), out))
    return out


def get_stats(session) -> dict:
    """Sensitivity counters: ``rhs_evals``, ``num_rhs_evals_dq``,
    ``err_test_fails``, ``nonlin_iters`` and ``conv_fails``."""
    _state(session)
    return dict(session.mem.sens_stats())


def get_num_rhs_evals(session) -> int:
    return get_stats(session)["rhs_evals"]


def get_num_rhs_evals_dq(session) -> int:
    """Right-hand side calls made for difference quotients."""
    return get_stats(session)["num_rhs_evals_dq"]


def get_num_err_test_fails(session) -> int:
    return get_stats(session)["err_test_fails"]


def get_nonlin_solv_stats(session) -> Tuple[int, int]:
    stats = get_stats(session)
    return stats["nonlin_iters"], stats["conv_fails"]
