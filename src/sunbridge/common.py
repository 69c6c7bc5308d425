"""Value records shared by every solver session.

These are small attrs records without identity: bandwidths, tolerance
specifications, root information and statistics. They are copied freely
and never hold engine buffers.
"""

from enum import Enum, IntEnum
from typing import Callable, Iterator, Sequence, Tuple

import numpy as np
from attrs import define, field, frozen, validators
from numpy.typing import ArrayLike

from sunbridge._utils import (
    float_array_converter,
    float_array_validator,
    getype_validator,
)
from sunbridge.engine.flags import Task


class AdvanceMode(IntEnum):
    """Stop exactly at the requested time, or after one internal step."""

    NORMAL = Task.NORMAL
    ONE_STEP = Task.ONE_STEP


class Outcome(Enum):
    """Successful return reasons of ``advance``."""

    CONTINUE = "continue"
    ROOTS_FOUND = "roots_found"
    STOP_TIME_REACHED = "stop_time_reached"


class RootEvent(IntEnum):
    """Crossing direction reported for one root function."""

    FALLING = -1
    NO_ROOT = 0
    RISING = 1


class RootDirection(IntEnum):
    """Crossings a root function should report."""

    DECREASING = -1
    INCREASING_OR_DECREASING = 0
    INCREASING = 1


class Roots:
    """Per-function root events of the last return with roots found.

    Parameters
    ----------
    nroots
        Number of root functions.
    """

    def __init__(self, nroots: int) -> None:
        self._info = np.zeros(nroots, dtype=np.int64)

    @classmethod
    def from_values(cls, values: Sequence[int]) -> "Roots":
        roots = cls(len(values))
        roots._info[:] = values
        return roots

    @property
    def buffer(self) -> np.ndarray:
        """Integer buffer filled by the engine."""
        return self._info

    def __len__(self) -> int:
        return self._info.shape[0]

    def __getitem__(self, i: int) -> RootEvent:
        return RootEvent(int(self._info[i]))

    def __iter__(self) -> Iterator[RootEvent]:
        return (RootEvent(int(v)) for v in self._info)

    def rising(self, i: int) -> bool:
        return self[i] == RootEvent.RISING

    def falling(self, i: int) -> bool:
        return self[i] == RootEvent.FALLING

    def any_found(self) -> bool:
        return bool(np.any(self._info != 0))

    def found(self) -> Tuple[int, ...]:
        """Indices of the functions with a root."""
        return tuple(int(i) for i in np.flatnonzero(self._info))

    def reset(self) -> None:
        self._info[:] = 0

    def __repr__(self) -> str:
        events = ", ".join(e.name for e in self)
        return f"Roots([{events}])"


@frozen
class ErrorDetails:
    """Message the engine hands to a registered error handler.

    ``error_code`` is positive for warnings and negative for errors.
    """

    error_code: int
    module_name: str
    function_name: str
    error_message: str

    @property
    def is_warning(self) -> bool:
        return self.error_code > 0


@frozen
class BandRange:
    """Upper and lower half-bandwidths of a banded matrix."""

    mupper: int = field(validator=getype_validator(int, 0))
    mlower: int = field(validator=getype_validator(int, 0))


@frozen
class Bandwidths:
    """Half-bandwidths of the band-block-diagonal preconditioner.

    ``mudq``/``mldq`` are used for the difference-quotient approximation,
    ``mukeep``/``mlkeep`` for the retained band matrix.
    """

    mudq: int = field(validator=getype_validator(int, 0))
    mldq: int = field(validator=getype_validator(int, 0))
    mukeep: int = field(validator=getype_validator(int, 0))
    mlkeep: int = field(validator=getype_validator(int, 0))


@frozen
class SStolerances:
    """Scalar relative and scalar absolute tolerance."""

    rtol: float = field(default=1.0e-4,
                        validator=getype_validator(float, 0.0))
    atol: float = field(default=1.0e-8,
                        validator=getype_validator(float, 0.0))


@frozen(eq=False)
class SVtolerances:
    """Scalar relative and per-component absolute tolerances."""

    rtol: float = field(validator=getype_validator(float, 0.0))
    atol: np.ndarray = field(converter=float_array_converter,
                             validator=float_array_validator)


@frozen
class WFtolerances:
    """Error weights computed by ``errw(y, ewt)``."""

    errw: Callable[[np.ndarray, np.ndarray], None] = field(
        validator=validators.is_callable()
    )


def default_tolerances() -> SStolerances:
    return SStolerances(1.0e-4, 1.0e-8)


@define
class IntegratorStats:
    """Grouped integrator counters, as returned by ``get_integrator_stats``."""

    steps: int = 0
    rhs_evals: int = 0
    linear_solver_setups: int = 0
    error_test_failures: int = 0
    last_internal_order: int = 0
    current_internal_order: int = 0
    initial_step_size: float = 0.0
    last_step_size: float = 0.0
    next_step_size: float = 0.0
    internal_time: float = 0.0

    @classmethod
    def from_engine(cls, stats: dict) -> "IntegratorStats":
        return cls(
            steps=stats["num_steps"],
            rhs_evals=stats.get("num_rhs_evals",
                                stats.get("num_res_evals", 0)),
            linear_solver_setups=stats["num_lin_solv_setups"],
            error_test_failures=stats["num_err_test_fails"],
            last_internal_order=stats["last_order"],
            current_internal_order=stats["current_order"],
            initial_step_size=stats["actual_init_step"],
            last_step_size=stats["last_step"],
            next_step_size=stats["current_step"],
            internal_time=stats["current_time"],
        )


def as_vector(values: ArrayLike, name: str = "vector") -> np.ndarray:
    """Return a contiguous float64 copy of ``values`` as a 1-D array."""
    array = np.array(values, dtype=np.float64)
    if array.ndim != 1 or array.size == 0:
        raise ValueError(f"{name} must be a non-empty 1-D array")
    return array
