"""Textual error reporting for engine memories.

Each memory owns an :class:`ErrorReporter`. Messages go to a registered
error handler callback when one is set, otherwise they are written to the
reporter's stream (``sys.stderr`` unless redirected with
:meth:`ErrorReporter.set_file`).
"""
import sys
from typing import Callable, Optional, TextIO


class ErrorReporter:
    """Route engine diagnostics to a handler callback or a text stream.

    Parameters
    ----------
    module
        Module name reported with every message, e.g. ``"CVODE"``.
    """

    def __init__(self, module: str) -> None:
        self.module = module
        self.handler: Optional[Callable] = None
        self.user_data = None
        self._stream: Optional[TextIO] = None
        self._owns_stream = False

    @property
    def stream(self) -> TextIO:
        if self._stream is None:
            return sys.stderr
        return self._stream

    def set_file(self, path: str, truncate: bool) -> int:
        """Send messages to ``path``; -1 if it cannot be opened."""
        try:
            stream = open(path, "w" if truncate else "a")
        except OSError:
            return -1
        self.close()
        self._stream = stream
        self._owns_stream = True
        return 0

    def report(self, code: int, function: str, message: str) -> None:
        if self.handler is not None:
            self.handler(self.user_data, code, self.module, function, message)
            return
        kind = "WARNING" if code > 0 else "ERROR"
        stream = self.stream
        stream.write(
            f"\n[{self.module} {kind}]  {function}\n  {message}\n\n"
        )
        stream.flush()

    def close(self) -> None:
        if self._owns_stream and self._stream is not None:
            self._stream.close()
        self._stream = None
        self._owns_stream = False
