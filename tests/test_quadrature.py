"""Tests for quadratures integrated alongside ODE sessions."""

import numpy as np
import pytest

from sunbridge import (
    RecoverableFailure,
    SStolerances,
    SVtolerances,
    quadrature,
)
from sunbridge.exceptions import (
    FirstQuadRhsFuncFailure,
    IllegalInput,
    QuadNotInitialized,
)


def _integral_of_state(t, y, yqdot):
    yqdot[0] = y[0]
    yqdot[1] = 2.0 * y[0]


def _expected(t):
    area = 1.0 - np.exp(-t)
    return np.array([area, 2.0 * area])


@pytest.fixture
def quad_session(decay_session):
    quadrature.init(decay_session, _integral_of_state, [0.0, 0.0])
    return decay_session


def test_integral_of_decay(quad_session):
    t, _ = quad_session.advance(1.0)
    yq, tq = quadrature.get(quad_session)
    assert tq == t == 1.0
    np.testing.assert_allclose(yq, _expected(1.0), rtol=1e-3)
    assert quadrature.get_num_rhs_evals(quad_session) > 0
    assert quadrature.get_num_err_test_fails(quad_session) == 0


def test_with_error_control(quad_session):
    quadrature.set_tolerances(quad_session, SStolerances(1e-6, 1e-10))
    quad_session.advance(2.0)
    yq, _ = quadrature.get(quad_session)
    np.testing.assert_allclose(yq, _expected(2.0), rtol=1e-3)
    stats = quadrature.get_stats(quad_session)
    assert set(stats) == {"rhs_evals", "err_test_fails"}


def test_vector_tolerances(quad_session):
    quadrature.set_tolerances(quad_session, SVtolerances(1e-6, [1e-10] * 2))
    quad_session.advance(1.0)
    with pytest.raises(IllegalInput):
        quadrature.set_tolerances(quad_session,
                                  SVtolerances(1e-6, [1e-10] * 3))


def test_switch_error_control_off(quad_session):
    quadrature.set_tolerances(quad_session, SStolerances(1e-6, 1e-10))
    quadrature.set_tolerances(quad_session, quadrature.NoStepSizeControl())
    quad_session.advance(1.0)
    np.testing.assert_allclose(quadrature.get(quad_session)[0],
                               _expected(1.0), rtol=1e-3)


def test_unsupported_tolerances(quad_session):
    with pytest.raises(TypeError):
        quadrature.set_tolerances(quad_session, 1e-6)


def test_derivative(quad_session):
    quad_session.advance(1.0)
    dyq = quadrature.get_dky(quad_session, 1.0, 1)
    np.testing.assert_allclose(dyq, [np.exp(-1.0), 2.0 * np.exp(-1.0)],
                               rtol=5e-2)


def test_reinit(quad_session):
    quad_session.advance(1.0)
    quad_session.reinit(0.0, [1.0])
    quadrature.reinit(quad_session, [1.0, 1.0])
    assert quadrature.get_num_rhs_evals(quad_session) == 0
    quad_session.advance(1.0)
    np.testing.assert_allclose(quadrature.get(quad_session)[0],
                               1.0 + _expected(1.0), rtol=1e-3)


def test_not_initialized(decay_session):
    with pytest.raises(QuadNotInitialized):
        quadrature.get(decay_session)
    with pytest.raises(QuadNotInitialized):
        quadrature.get_stats(decay_session)
    with pytest.raises(QuadNotInitialized):
        quadrature.reinit(decay_session, [0.0])


def test_empty_initial_values(decay_session):
    with pytest.raises(ValueError):
        quadrature.init(decay_session, _integral_of_state, [])


def test_recoverable_failure_at_first_call(decay_session):
    def fq(t, y, yqdot):
        raise RecoverableFailure()

    quadrature.init(decay_session, fq, [0.0])
    with pytest.raises(FirstQuadRhsFuncFailure):
        decay_session.advance(1.0)


def test_exception_is_replayed(decay_session):
    exc = OverflowError("quadrature")
    calls = []

    def fq(t, y, yqdot):
        calls.append(t)
        if len(calls) > 5:
            raise exc
        yqdot[0] = y[0]

    quadrature.init(decay_session, fq, [0.0])
    with pytest.raises(OverflowError) as info:
        decay_session.advance(1.0)
    assert info.value is exc
