"""Marshaling between Python and the engine's C-style callback contract."""

from sunbridge.interop.bridge import (
    StatusCode,
    replay_captured,
    run_guarded,
    run_guarded_bool,
    run_informational,
)
from sunbridge.interop.callbacks import ProblemKind
from sunbridge.interop.registry import SessionRegistry, default_registry
from sunbridge.interop.views import BandMatrix, DenseMatrix, ScopedView, scoped

__all__ = [
    "BandMatrix",
    "DenseMatrix",
    "ProblemKind",
    "ScopedView",
    "SessionRegistry",
    "StatusCode",
    "default_registry",
    "replay_captured",
    "run_guarded",
    "run_guarded_bool",
    "run_informational",
    "scoped",
]
