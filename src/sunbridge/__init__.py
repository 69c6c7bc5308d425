"""
sunbridge: sessions and callbacks for ODE, DAE and nonlinear solvers
"""

from importlib.metadata import PackageNotFoundError, version

from sunbridge import (  # noqa
    adjoint,
    bbd,
    cvode,
    ida,
    kinsol,
    linsolv,
    quadrature,
    sensitivity,
)
from sunbridge.common import (  # noqa
    AdvanceMode,
    BandRange,
    Bandwidths,
    ErrorDetails,
    IntegratorStats,
    Outcome,
    RootDirection,
    RootEvent,
    Roots,
    SStolerances,
    SVtolerances,
    WFtolerances,
)
from sunbridge.exceptions import (  # noqa
    LifetimeViolation,
    RecoverableFailure,
    ReentrantCallError,
    SessionClosedError,
    SolverError,
    SunbridgeError,
)
from sunbridge.options import IntegratorOptions, NonlinearOptions  # noqa
from sunbridge.time_logger import TimeLogger, default_timelogger  # noqa

__all__ = [
    "adjoint",
    "bbd",
    "cvode",
    "ida",
    "kinsol",
    "linsolv",
    "quadrature",
    "sensitivity",
    "AdvanceMode",
    "Bandwidths",
    "BandRange",
    "ErrorDetails",
    "IntegratorOptions",
    "IntegratorStats",
    "LifetimeViolation",
    "NonlinearOptions",
    "Outcome",
    "RecoverableFailure",
    "ReentrantCallError",
    "SessionClosedError",
    "RootDirection",
    "RootEvent",
    "Roots",
    "SolverError",
    "SStolerances",
    "SunbridgeError",
    "SVtolerances",
    "TimeLogger",
    "WFtolerances",
    "default_timelogger",
]

try:
    __version__ = version("sunbridge")
except PackageNotFoundError:
    # Package is not installed
    __version__ = "unknown"
