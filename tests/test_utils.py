from types import SimpleNamespace

import numpy as np
import pytest
from attrs import define, field

from sunbridge._utils import (
    default_dqrely,
    float_array_converter,
    float_array_validator,
    getype_validator,
    in_attr,
    opt_getype_validator,
)
from sunbridge.engine.multistep import UNIT_ROUNDOFF


@define
class _Record:
    count: int = field(default=1, validator=getype_validator(int, 1))
    scale: float = field(default=0.0, validator=getype_validator(float, 0.0))
    limit: float = field(default=None,
                         validator=opt_getype_validator(float, 0.0))
    _hidden: int = 0


def test_in_attr():
    record = _Record()
    assert in_attr("count", record)
    assert in_attr("hidden", record)
    assert not in_attr("missing", record)


_VALIDATOR_CASES = [
    ({"count": 0}, ValueError, "below minimum"),
    ({"count": 1.0}, TypeError, "float for int"),
    ({"count": True}, TypeError, "bool for int"),
    ({"scale": -0.5}, ValueError, "negative float"),
    ({"scale": "1"}, TypeError, "string for float"),
    ({"limit": -1.0}, ValueError, "optional below minimum"),
]


@pytest.mark.parametrize("kwargs, error, test_name", _VALIDATOR_CASES,
                         ids=[case[2] for case in _VALIDATOR_CASES])
def test_validators_reject(kwargs, error, test_name):
    with pytest.raises(error):
        _Record(**kwargs)


def test_validators_accept():
    record = _Record(count=np.int64(3), scale=2, limit=None)
    assert record.count == 3
    record.limit = 0.5
    assert record.limit == 0.5


def test_float_array_converter():
    converted = float_array_converter(3)
    assert converted.dtype == np.float64
    assert converted.shape == (1,)
    assert float_array_converter([[1, 2], [3, 4]]).shape == (4,)


def test_float_array_validator():
    attribute = SimpleNamespace(name="atol")
    float_array_validator(None, attribute, np.array([0.0, 1.0]))
    with pytest.raises(TypeError):
        float_array_validator(None, attribute, [0.0, 1.0])
    with pytest.raises(ValueError):
        float_array_validator(None, attribute, np.array([np.inf]))


def test_default_dqrely():
    assert default_dqrely(None) == pytest.approx(np.sqrt(UNIT_ROUNDOFF))
    assert default_dqrely(0.0) == default_dqrely(None)
    assert default_dqrely(1e-4) == 1e-4
