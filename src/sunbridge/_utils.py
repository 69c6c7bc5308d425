"""Validators and converters shared by the attrs configuration classes."""

from typing import Any, Callable, Optional

import numpy as np
from attrs import fields

from sunbridge.engine.multistep import UNIT_ROUNDOFF


def in_attr(name, attrs_class_instance):
    """Checks if a name is in the attributes of a class instance."""
    field_names = {field.name for field in
                   fields(attrs_class_instance.__class__)}
    return name in field_names or ("_" + name) in field_names


def _coerce(dtype, value):
    if dtype is float and isinstance(value, (int, np.integer)) and not \
            isinstance(value, bool):
        return float(value)
    return value


def _type_check(attribute, value, dtype) -> None:
    value = _coerce(dtype, value)
    if isinstance(value, bool) and dtype is not bool:
        raise TypeError(
            f"{attribute.name} must be {dtype.__name__}, got bool"
        )
    if not isinstance(value, (dtype, np.generic)):
        raise TypeError(
            f"{attribute.name} must be {dtype.__name__}, "
            f"got {type(value).__name__}"
        )


def getype_validator(dtype, minimum) -> Callable[[Any, Any, Any], None]:
    """Validate that a value has ``dtype`` and is ``>= minimum``."""

    def _validator(instance, attribute, value):
        _type_check(attribute, value, dtype)
        if value < minimum:
            raise ValueError(
                f"{attribute.name} must be >= {minimum}, got {value}"
            )

    return _validator


def opt_getype_validator(dtype, minimum):
    """As :func:`getype_validator` but also accepting ``None``."""
    inner = getype_validator(dtype, minimum)

    def _validator(instance, attribute, value):
        if value is None:
            return
        inner(instance, attribute, value)

    return _validator


def float_array_converter(value) -> np.ndarray:
    """Return ``value`` as a one-dimensional float64 array."""
    return np.atleast_1d(np.asarray(value, dtype=np.float64)).ravel()


def float_array_validator(instance, attribute, value) -> None:
    """Validate a one-dimensional, finite, non-negative float array."""
    if not isinstance(value, np.ndarray) or value.ndim != 1:
        raise TypeError(f"{attribute.name} must be a 1-D array")
    if not np.all(np.isfinite(value)) or np.any(value < 0.0):
        raise ValueError(
            f"{attribute.name} must contain finite, non-negative values"
        )


def default_dqrely(dqrely: Optional[float]) -> float:
    """Relative difference-quotient increment, ``sqrt(unit_roundoff)`` if
    not given."""
    if dqrely is None or dqrely <= 0.0:
        return float(np.sqrt(UNIT_ROUNDOFF))
    return float(dqrely)
