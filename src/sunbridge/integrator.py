"""Session behaviour shared by the ODE, DAE and backward integrators.

:class:`IntegratorSession` covers what every integrator memory offers:
tolerances, optional inputs, the linear solver, interpolated output and
counters. :class:`ForwardIntegrator` adds what only a session owning its
memory can do: function tolerances, root finding, a stop time and the
engine's error reporting. Subclasses supply the trampolines for roots
and error weights, whose signatures differ between ODE and DAE problems.
"""

from typing import Callable, Optional, Sequence, Set, Tuple, Union

import attrs
import numpy as np

from sunbridge import linsolv
from sunbridge.common import (
    IntegratorStats,
    Outcome,
    RootDirection,
    Roots,
    SStolerances,
    SVtolerances,
    WFtolerances,
)
from sunbridge.engine.flags import CallbackKind
from sunbridge.interop.bridge import run_guarded
from sunbridge.interop.views import scoped
from sunbridge.options import IntegratorOptions
from sunbridge.session import BaseSession, ErrorReportingMixin, resolve

Tolerances = Union[SStolerances, SVtolerances, WFtolerances]


def error_weights_trampoline(token, y, ewt):
    session = resolve(token)
    with scoped(y, ewt) as (yv, ewtv):
        return int(run_guarded(session, False, session._errw_fn, yv, ewtv))


class IntegratorSession(BaseSession):
    """Operations on ``self._mem``, the integrator memory of the problem."""

    options: IntegratorOptions
    #: Options the integrator does not understand.
    unsupported_options: frozenset = frozenset()

    @property
    def n(self) -> int:
        """Number of state variables."""
        return self.mem.n

    # Tolerances ----------------------------------------------------------

    def set_tolerances(self, tolerances: Tolerances) -> None:
        """Set scalar/scalar or scalar/vector tolerances."""
        self._require_open()
        if isinstance(tolerances, SStolerances):
            self._check(self._mem.ss_tolerances(tolerances.rtol,
                                                tolerances.atol))
        elif isinstance(tolerances, SVtolerances):
            if tolerances.atol.shape[0] != self._mem.n:
                raise ValueError(
                    f"atol has {tolerances.atol.shape[0]} components, "
                    f"expected {self._mem.n}"
                )
            self._check(self._mem.sv_tolerances(tolerances.rtol,
                                                tolerances.atol))
        else:
            raise TypeError(
                f"unsupported tolerances {type(tolerances).__name__}"
            )

    # Options -------------------------------------------------------------

    def set_options(self, updates_dict: dict = None, silent: bool = False,
                    **kwargs) -> Set[str]:
        """Update :attr:`options` and forward the changes to the engine.

        Parameters
        ----------
        updates_dict : dict, optional
            Mapping of option names to new values.
        silent : bool, default=False
            Suppress errors for unrecognised parameters.
        **kwargs
            Additional options to update.

        Returns
        -------
        set[str]
            Names of options that were recognised and updated.

        Raises
        ------
        KeyError
            If an unrecognised parameter is supplied and ``silent`` is
            ``False``.
        ValueError
            If a recognised option does not apply to this integrator.
        """
        self._require_open()
        merged = dict(updates_dict or {}, **kwargs)
        self._reject_unsupported(
            name for name, value in merged.items() if value is not None)
        recognized = self.options.update(merged, silent=silent)
        self._apply_options(recognized)
        return recognized

    def _reject_unsupported(self, names) -> None:
        names = sorted(set(names) & self.unsupported_options)
        if names:
            raise ValueError(
                f"{type(self).__module__}.{type(self).__name__} does not "
                f"support the options {names}"
            )

    def _apply_options(self, names) -> None:
        for name in sorted(names):
            value = getattr(self.options, name)
            if name == "stop_time":
                self._check(self._mem.set_stop_time(value))
            elif value is not None:
                self._check(self._mem.set_option(name, value))

    def _use_options(self, options: Optional[IntegratorOptions]) -> None:
        self.options = (IntegratorOptions() if options is None
                        else attrs.evolve(options))
        names = {name for name, _ in self.options.engine_items()}
        if self.options.stop_time is not None:
            names.add("stop_time")
        self._reject_unsupported(names)
        self._apply_options(names)

    # Linear solver -------------------------------------------------------

    def set_linear_solver(self, config) -> None:
        """Attach a linear solver; see :func:`sunbridge.linsolv.attach`."""
        linsolv.attach(self, config)

    # Output and statistics -----------------------------------------------

    def get_dky(self, t: float, k: int) -> np.ndarray:
        """``k``-th derivative of the interpolated solution at ``t``.

        ``t`` must lie within the last internal step.
        """
        self._require_open()
        out = np.zeros(self._mem.n)
        self._check(self._mem.get_dky(float(t), int(k), out))
        return out

    def get_stats(self) -> dict:
        """All integrator counters reported by the engine."""
        self._require_open()
        return dict(self._mem.stats())

    def get_integrator_stats(self) -> IntegratorStats:
        return IntegratorStats.from_engine(self.get_stats())

    def get_num_steps(self) -> int:
        return self.get_stats()["num_steps"]

    def get_num_lin_solv_setups(self) -> int:
        return self.get_stats()["num_lin_solv_setups"]

    def get_num_err_test_fails(self) -> int:
        return self.get_stats()["num_err_test_fails"]

    def get_current_time(self) -> float:
        return self.get_stats()["current_time"]

    def get_nonlin_solv_stats(self) -> Tuple[int, int]:
        """Nonlinear iterations and nonlinear convergence failures."""
        stats = self.get_stats()
        return (stats["num_nonlin_solv_iters"],
                stats["num_nonlin_solv_conv_fails"])

    def get_tol_scale_factor(self) -> float:
        """Factor by which the tolerances should be scaled when the engine
        reports that too much accuracy was requested."""
        return self.get_stats()["tol_scale_factor"]

    def get_err_weights(self) -> np.ndarray:
        self._require_open()
        out = np.zeros(self._mem.n)
        self._check(self._mem.get_err_weights(out))
        return out


class ForwardIntegrator(ErrorReportingMixin, IntegratorSession):
    """An integrator session that owns its memory.

    Subclasses set ``_roots_trampoline`` and ``_advance_event`` and keep
    the root function in ``_roots_fn``.
    """

    _roots_trampoline: Callable
    _advance_event: str = "cvode_advance"

    def _init_forward(self) -> None:
        self._roots_fn: Optional[Callable] = None
        self._errw_fn: Optional[Callable] = None
        self._root_info = Roots(0)
        self.options = IntegratorOptions()

    # Tolerances ----------------------------------------------------------

    def set_tolerances(self, tolerances: Tolerances) -> None:
        """Set scalar/scalar, scalar/vector or function tolerances.

        With :class:`~sunbridge.common.WFtolerances` the engine calls
        ``errw(y, ewt)`` to compute the error weights; it must fill
        ``ewt`` with positive values.
        """
        self._require_open()
        if isinstance(tolerances, WFtolerances):
            self._errw_fn = tolerances.errw
            self._check(self._set_callback(CallbackKind.ERROR_WEIGHT,
                                           error_weights_trampoline))
            self._check(self._mem.wf_tolerances())
            return
        super().set_tolerances(tolerances)
        if self._errw_fn is not None:
            self._errw_fn = None
            self._check(self._set_callback(CallbackKind.ERROR_WEIGHT, None))

    # Roots ---------------------------------------------------------------

    @property
    def nroots(self) -> int:
        return len(self._root_info)

    def root_init(self, nroots: int, g: Optional[Callable] = None) -> None:
        """Use ``nroots`` root functions evaluated by ``g``.

        ``nroots = 0`` switches root finding off.
        """
        self._require_open()
        if nroots < 0:
            raise ValueError("nroots must be non-negative")
        if nroots > 0 and g is None:
            raise ValueError("a root function is needed when nroots > 0")
        self._check(self._mem.root_init(int(nroots)))
        self._roots_fn = g if nroots > 0 else None
        self._check(self._set_callback(
            CallbackKind.ROOTS,
            type(self)._roots_trampoline if nroots > 0 else None))
        self._root_info = Roots(nroots)

    def get_root_info(self) -> Roots:
        """Which root functions changed sign at the last root return."""
        self._require_open()
        self._check(self._mem.get_root_info(self._root_info.buffer))
        return Roots.from_values(self._root_info.buffer)

    def set_root_direction(
        self, directions: Union[RootDirection, Sequence[RootDirection]]
    ) -> None:
        """Restrict which crossings are reported, per root function or
        for all of them at once."""
        self._require_open()
        if isinstance(directions, (RootDirection, int)):
            directions = [directions] * self.nroots
        values = np.array([int(RootDirection(d)) for d in directions],
                          dtype=np.int64)
        self._check(self._mem.set_root_direction(values))

    def set_no_inactive_root_warn(self) -> None:
        """Silence the warning about root functions that are identically
        zero at the start."""
        self._call(self._mem.set_no_inactive_root_warn)

    def get_num_g_evals(self) -> int:
        return self.get_stats()["num_g_evals"]

    # Stop time -----------------------------------------------------------

    def set_stop_time(self, t_stop: float) -> None:
        """Never integrate past ``t_stop``."""
        self.set_options(stop_time=float(t_stop))

    def clear_stop_time(self) -> None:
        self.set_options(stop_time=None)

    def _report_outcome(self, t: float, outcome: Outcome) -> None:
        if outcome is Outcome.ROOTS_FOUND:
            self.time_logger.progress(self._advance_event, "roots found",
                                      t=t)
        elif outcome is Outcome.STOP_TIME_REACHED:
            self.time_logger.progress(self._advance_event,
                                      "stop time reached", t=t)
