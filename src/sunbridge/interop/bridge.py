"""Folding Python exceptions into the engine's integer callback protocol.

The engine expects every callback to return 0 (success), a positive value
(recoverable failure, the engine may retry) or a negative value
(unrecoverable failure, the engine unwinds). It cannot propagate Python
exceptions, so the guards below catch them, park the exception in the
owning session's ``last_error`` slot and return a status instead. Once the
engine call returns, the binding calls :func:`replay_captured` which
re-raises the parked exception unchanged.

Only :class:`Exception` subclasses are captured. Lifetime violations and
interpreter signals such as :class:`KeyboardInterrupt` derive from
:class:`BaseException` and unwind straight through the engine.
"""

import warnings
from enum import IntEnum
from typing import Any, Callable, Tuple

from sunbridge.exceptions import RecoverableFailure


class StatusCode(IntEnum):
    """Three-valued status returned to the engine by every callback."""

    SUCCESS = 0
    RECOVERABLE = 1
    UNRECOVERABLE = -1


def _capture(session, exc: Exception) -> StatusCode:
    # The first failure is the cause; later ones are usually fallout from
    # the engine unwinding.
    if session.last_error is None:
        session.last_error = exc
    return StatusCode.UNRECOVERABLE


def run_guarded(
    session, recoverable_ok: bool, f: Callable[..., Any], *args
) -> StatusCode:
    """Call ``f(*args)`` and translate the outcome into a status.

    Parameters
    ----------
    session
        Object with a ``last_error`` slot that receives captured
        exceptions.
    recoverable_ok
        Whether this callback kind may request a retry. When False a
        :class:`RecoverableFailure` is captured like any other exception.
    f, *args
        The user callback and its arguments.
    """
    try:
        f(*args)
    except RecoverableFailure as exc:
        if recoverable_ok:
            return StatusCode.RECOVERABLE
        return _capture(session, exc)
    except Exception as exc:
        return _capture(session, exc)
    return StatusCode.SUCCESS


def run_guarded_bool(
    session, f: Callable[..., Any], *args
) -> Tuple[bool, StatusCode]:
    """As :func:`run_guarded` for callbacks that also return a flag.

    Used for preconditioner setup, whose boolean result reports whether
    Jacobian data was recomputed. On any failure the flag is False.
    """
    try:
        result = bool(f(*args))
    except RecoverableFailure:
        return False, StatusCode.RECOVERABLE
    except Exception as exc:
        return False, _capture(session, exc)
    return result, StatusCode.SUCCESS


def run_informational(f: Callable[..., Any], *args) -> None:
    """Call an informational callback, discarding any exception.

    Error handlers must never let an exception escape into the engine;
    a failure is reported as a :class:`RuntimeWarning` instead.
    """
    try:
        f(*args)
    except Exception as exc:
        warnings.warn(
            f"Exception raised by informational callback {f!r} was "
            f"discarded: {exc!r}",
            RuntimeWarning,
            stacklevel=2,
        )


def replay_captured(session) -> None:
    """Re-raise and clear the exception parked in ``session.last_error``."""
    exc = session.last_error
    if exc is not None:
        session.last_error = None
        raise exc
