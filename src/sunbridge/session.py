"""Base class for sessions driving an engine memory.

A session owns one engine memory exclusively and frees it exactly once:
on :meth:`BaseSession.close`, on leaving a ``with`` block, or (with a
:class:`ResourceWarning`) when the session is garbage collected while
still open. The engine refers back to the session through an integer
token from :data:`~sunbridge.interop.registry.default_registry`, so the
engine memory never keeps the session alive.

Every call that enters the engine goes through the same sequence: check
the session is open, check no callback of the same session graph is
currently running, call the engine, replay any exception captured from a
callback and finally translate the engine flag into a
:class:`~sunbridge.exceptions.SolverError`.
"""

import warnings
import weakref
from typing import Callable, Dict, Mapping, Optional, Type

from sunbridge.common import ErrorDetails
from sunbridge.engine.flags import CallbackKind, CvFlag
from sunbridge.exceptions import (
    CVODE_ERRORS,
    CallbackTableMismatch,
    ReentrantCallError,
    SessionClosedError,
    SolverError,
    error_from_flag,
)
from sunbridge.interop.bridge import replay_captured, run_informational
from sunbridge.interop.callbacks import (
    CallbackTable,
    NoCallbacks,
    ProblemKind,
)
from sunbridge.interop.registry import default_registry
from sunbridge.time_logger import TimeLogger, default_timelogger


def _collect(mem, token: int, name: str) -> None:
    warnings.warn(
        f"{name} was garbage collected without being closed; its engine "
        f"memory has been freed",
        ResourceWarning,
        stacklevel=2,
    )
    default_registry.release(token)
    mem.free()


class BaseSession:
    """Shared lifetime, guard and callback table handling.

    Subclasses set the class attributes describing their engine and
    provide ``_ls_trampolines``, the trampolines for linear solver
    callback kinds.

    Parameters
    ----------
    mem
        Engine memory, owned from now on by the session.
    time_logger
        Logger timing every engine entry; defaults to the silent
        :data:`~sunbridge.time_logger.default_timelogger`.
    """

    problem: ProblemKind = ProblemKind.ODE
    flag_names: type = CvFlag
    error_table: Mapping[int, Type[SolverError]] = CVODE_ERRORS
    module: str = "CVODE"
    _ls_trampolines: Dict[CallbackKind, Callable] = {}

    def __init__(self, mem, time_logger: Optional[TimeLogger] = None):
        self._init_state(mem, time_logger)
        mem.set_user_data(self._token)
        self._finalizer = weakref.finalize(
            self, _collect, mem, self._token, type(self).__name__)
        self._finalizer.atexit = False

    def _init_state(self, mem, time_logger: Optional[TimeLogger]) -> None:
        self._mem = mem
        self.last_error: Optional[BaseException] = None
        self._closed = False
        self._in_engine = False
        self.table: CallbackTable = NoCallbacks(self.problem)
        if time_logger is None:
            time_logger = default_timelogger
        self.time_logger = time_logger
        self._token = default_registry.register(self)

    # ------------------------------------------------------------------
    # Lifetime

    @property
    def token(self) -> int:
        """User data token the engine uses to find this session."""
        return self._token

    @property
    def closed(self) -> bool:
        return self._closed

    def _close_children(self) -> None:
        pass

    def close(self) -> None:
        """Free the engine memory; calling it again does nothing.

        Raises
        ------
        ReentrantCallError
            If called from a callback while the engine is running.
        """
        if self._closed:
            return
        if self._root()._in_engine:
            raise ReentrantCallError(
                "a session cannot be closed from inside one of its "
                "callbacks"
            )
        self._close_children()
        self._finalizer.detach()
        default_registry.release(self._token)
        self._closed = True
        mem, self._mem = self._mem, None
        mem.free()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_open(self) -> None:
        if self._closed:
            raise SessionClosedError(
                f"{type(self).__name__} has been closed"
            )

    @property
    def mem(self):
        """The engine memory; raises :class:`SessionClosedError` once
        closed."""
        self._require_open()
        return self._mem

    # ------------------------------------------------------------------
    # Engine calls

    def _root(self) -> "BaseSession":
        """Session whose ``_in_engine`` flag guards the whole graph."""
        return self

    def _guard(self, what: str) -> "BaseSession":
        """Check the session is open and its graph is not in the engine."""
        self._require_open()
        root = self._root()
        if root._in_engine:
            raise ReentrantCallError(
                f"{what} called from inside a callback of the same "
                f"session"
            )
        return root

    def _engine_call(self, event: str, fn: Callable, *args, **metadata):
        """Call ``fn(*args)`` as a guarded, timed engine entry.

        ``fn`` is usually a bound method of the engine memory, so callers
        check the session is open before looking it up.
        """
        root = self._guard(event)
        root._in_engine = True
        self.time_logger.start_event(event, **metadata)
        try:
            return fn(*args)
        finally:
            root._in_engine = False
            self.time_logger.stop_event(event)

    def _replay(self) -> None:
        replay_captured(self)

    def _check(self, flag: int) -> int:
        """Replay captured exceptions, then raise for a failure flag."""
        self._replay()
        if flag < 0:
            raise error_from_flag(self.error_table, flag, self.flag_names,
                                  self.module)
        return flag

    def _call(self, fn: Callable, *args) -> int:
        """Open check, call, check; for engine calls that run no step."""
        self._require_open()
        return self._check(fn(*args))

    # ------------------------------------------------------------------
    # Callback table

    def _set_callback(self, kind: CallbackKind,
                      fn: Optional[Callable]) -> int:
        return self._mem.set_callback(kind, fn)

    def _install_table(self, table: CallbackTable) -> None:
        """Make ``table`` the active variant and register its trampolines.

        The kinds of the previous table are cleared first, so no callback
        of an earlier configuration stays registered.
        """
        for kind in self.table.registered_kinds:
            self._check(self._set_callback(kind, None))
        self.table = table
        for kind in table.registered_kinds:
            self._check(self._set_callback(kind,
                                           self._ls_trampolines[kind]))

    def _table_callback(self, kind: CallbackKind, name: str) -> Callable:
        table = self.table
        if kind not in table.registered_kinds:
            raise CallbackTableMismatch(
                f"engine invoked {kind.name} but the active "
                f"{type(table).__name__} does not provide it"
            )
        return getattr(table, name)

    def __repr__(self) -> str:
        state = "closed" if self._closed else f"token={self._token}"
        return f"<{type(self).__name__} {state}>"


def resolve(token: int) -> BaseSession:
    """Session registered under ``token``; used by the trampolines."""
    return default_registry.resolve(token)


# ----------------------------------------------------------------------
# Error reporting, shared by every session that owns its memory


def error_handler_trampoline(token, code, module, function, message):
    session = resolve(token)
    handler = session._error_handler
    if handler is not None:
        run_informational(handler,
                          ErrorDetails(code, module, function, message))


class ErrorReportingMixin:
    """Routing of the engine's error and warning messages."""

    _error_handler: Optional[Callable] = None

    def set_error_file(self, path: str, truncate: bool = True) -> None:
        """Write the engine's error and warning messages to ``path``."""
        self._call(self.mem.set_error_file, str(path), bool(truncate))

    def set_error_handler(
        self, handler: Callable[[ErrorDetails], None]
    ) -> None:
        """Receive engine messages as :class:`ErrorDetails` instead.

        Exceptions raised by ``handler`` are discarded with a
        :class:`RuntimeWarning`.
        """
        self._require_open()
        self._error_handler = handler
        self._check(self._set_callback(CallbackKind.ERROR_HANDLER,
                                       error_handler_trampoline))

    def clear_error_handler(self) -> None:
        """Go back to writing messages to the error stream."""
        self._require_open()
        self._error_handler = None
        self._check(self._set_callback(CallbackKind.ERROR_HANDLER, None))
