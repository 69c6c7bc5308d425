"""Solver options as validated attrs configuration records.

Options left at ``None`` keep the engine's own default. Both records
follow the same update protocol: :meth:`update` accepts a dict and/or
keyword arguments, applies recognised keys through the field validators
and raises :class:`KeyError` for anything else unless ``silent``.
"""

from typing import Any, Iterator, Optional, Set, Tuple

import numpy as np
from attrs import define, field, fields, validators

from sunbridge._utils import in_attr, opt_getype_validator

_OptBool = validators.optional(validators.instance_of(bool))


def _update_fields(instance, updates_dict, silent, kwargs) -> Set[str]:
    if updates_dict is None:
        updates_dict = {}
    updates_dict = updates_dict.copy()
    updates_dict.update(kwargs)
    if updates_dict == {}:
        return set()

    recognized = set()
    for key, value in updates_dict.items():
        if in_attr(key, instance):
            setattr(instance, key, value)
            recognized.add(key)

    unrecognized = set(updates_dict) - recognized
    if unrecognized and not silent:
        raise KeyError(
            f"Unrecognized parameters in update: {unrecognized}. "
            "These parameters were not updated.",
        )
    return recognized


def _engine_items(instance, skip=()) -> Iterator[Tuple[str, Any]]:
    for attribute in fields(instance.__class__):
        value = getattr(instance, attribute.name)
        if value is None or attribute.name in skip:
            continue
        yield attribute.name, value


@define
class IntegratorOptions:
    """Optional inputs of the ODE and DAE integrators.

    Attributes
    ----------
    max_ord
        Maximum method order.
    max_num_steps
        Internal steps allowed before reaching the output time.
    max_hnil_warns
        Warnings issued when ``t + h == t`` (ODE only).
    stab_lim_det
        BDF stability limit detection (ODE only).
    init_step, min_step, max_step
        Step size bounds; ``min_step`` is ODE only.
    stop_time
        Value of the independent variable past which no solution is
        computed.
    max_err_test_fails, max_nonlin_iters, max_conv_fails
        Failure and iteration limits per step.
    nonlin_conv_coef
        Safety factor in the nonlinear convergence test.
    max_first_rhs_retries
        Recoverable failures tolerated at the first right-hand side or
        residual call.
    """

    max_ord: Optional[int] = field(default=None,
                                   validator=opt_getype_validator(int, 1))
    max_num_steps: Optional[int] = field(
        default=None, validator=opt_getype_validator(int, 1))
    max_hnil_warns: Optional[int] = field(
        default=None, validator=opt_getype_validator(int, 1))
    stab_lim_det: Optional[bool] = field(default=None, validator=_OptBool)
    init_step: Optional[float] = field(
        default=None, validator=opt_getype_validator(float, 0.0))
    min_step: Optional[float] = field(
        default=None, validator=opt_getype_validator(float, 0.0))
    max_step: Optional[float] = field(
        default=None, validator=opt_getype_validator(float, 0.0))
    stop_time: Optional[float] = field(
        default=None,
        validator=validators.optional(
            validators.instance_of((float, int, np.floating))),
    )
    max_err_test_fails: Optional[int] = field(
        default=None, validator=opt_getype_validator(int, 1))
    max_nonlin_iters: Optional[int] = field(
        default=None, validator=opt_getype_validator(int, 1))
    max_conv_fails: Optional[int] = field(
        default=None, validator=opt_getype_validator(int, 1))
    nonlin_conv_coef: Optional[float] = field(
        default=None, validator=opt_getype_validator(float, 0.0))
    max_first_rhs_retries: Optional[int] = field(
        default=None, validator=opt_getype_validator(int, 0))

    def __attrs_post_init__(self) -> None:
        self._check_step_limits()

    def _check_step_limits(self) -> None:
        if self.min_step is not None and self.max_step is not None and \
                self.max_step > 0.0 and self.min_step > self.max_step:
            raise ValueError(
                f"min_step ({self.min_step}) must not exceed max_step "
                f"({self.max_step})"
            )

    def update(
        self, updates_dict: dict = None, silent: bool = False, **kwargs
    ) -> Set[str]:
        """Update options with new values.

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
        """
        recognized = _update_fields(self, updates_dict, silent, kwargs)
        self._check_step_limits()
        return recognized

    def engine_items(self) -> Iterator[Tuple[str, Any]]:
        """``(name, value)`` pairs to forward to the engine's option table.

        The stop time is handled separately by the sessions.
        """
        return _engine_items(self, skip=("stop_time",))


def _constraints_converter(value):
    if value is None:
        return None
    return np.atleast_1d(np.asarray(value, dtype=np.float64)).ravel()


def _constraints_validator(instance, attribute, value) -> None:
    if value is None:
        return
    if not np.all(np.isin(value, (-2.0, -1.0, 0.0, 1.0, 2.0))):
        raise ValueError(
            f"{attribute.name} entries must be one of -2, -1, 0, 1 or 2"
        )


@define
class NonlinearOptions:
    """Optional inputs of the Newton nonlinear solver.

    Attributes
    ----------
    func_norm_tol
        Stopping tolerance on the scaled maximum norm of ``F(u)``.
    scaled_step_tol
        Stopping tolerance on the scaled step length.
    num_max_iters
        Maximum number of nonlinear iterations.
    max_setup_calls
        Iterations between refreshes of the linear solver.
    max_newton_step
        Maximum scaled length of a Newton step.
    no_init_setup
        Skip the linear solver setup before the first iteration.
    constraints
        Per-component constraint: 0 none, 1 ``>= 0``, -1 ``<= 0``,
        2 ``> 0``, -2 ``< 0``.
    """

    func_norm_tol: Optional[float] = field(
        default=None, validator=opt_getype_validator(float, 0.0))
    scaled_step_tol: Optional[float] = field(
        default=None, validator=opt_getype_validator(float, 0.0))
    num_max_iters: Optional[int] = field(
        default=None, validator=opt_getype_validator(int, 1))
    max_setup_calls: Optional[int] = field(
        default=None, validator=opt_getype_validator(int, 1))
    max_newton_step: Optional[float] = field(
        default=None, validator=opt_getype_validator(float, 0.0))
    no_init_setup: Optional[bool] = field(default=None, validator=_OptBool)
    constraints: Optional[np.ndarray] = field(
        default=None,
        converter=_constraints_converter,
        validator=_constraints_validator,
        eq=False,
    )

    def update(
        self, updates_dict: dict = None, silent: bool = False, **kwargs
    ) -> Set[str]:
        """Update options with new values; see
        :meth:`IntegratorOptions.update`."""
        return _update_fields(self, updates_dict, silent, kwargs)

    def engine_items(self) -> Iterator[Tuple[str, Any]]:
        """``(name, value)`` pairs to forward to the engine's option table.

        Constraints are passed to the engine separately.
        """
        return _engine_items(self, skip=("constraints",))

