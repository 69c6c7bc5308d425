"""Tests for forward sensitivity analysis.

The model is ``y' = -p0 y + p1`` with ``y(0) = 1``, ``p = (1, 0)``, so
``y = exp(-t)``, ``dy/dp0 = -t exp(-t)`` and ``dy/dp1 = 1 - exp(-t)``.
"""

import numpy as np
import pytest

from sunbridge import SStolerances, cvode, sensitivity
from sunbridge.engine.flags import Iteration, Lmm
from sunbridge.exceptions import (
    BadSensIdentifier,
    IllegalInput,
    SensNotInitialized,
)
from sunbridge.sensitivity import (
    AllAtOnce,
    DQMethod,
    EEtolerances,
    OneByOne,
    SensMethod,
    SensParams,
)


def _exact_sensitivities(t):
    e = np.exp(-t)
    return np.array([-t * e]), np.array([1.0 - e])


@pytest.fixture
def params():
    return np.array([1.0, 0.0])


@pytest.fixture
def session(params):
    def rhs(t, y, ydot):
        ydot[0] = -params[0] * y[0] + params[1]

    s = cvode.Session.create(Lmm.BDF, Iteration.NEWTON, rhs, [1.0],
                             tolerances=SStolerances(1e-6, 1e-10))
    yield s
    s.close()


def _all_at_once(params):
    def fs(t, y, ydot, ys, ysdot, tmp):
        ysdot[0][0] = -params[0] * ys[0][0] - y[0]
        ysdot[1][0] = -params[0] * ys[1][0] + 1.0
    return AllAtOnce(fs)


def _one_by_one(params):
    def fs1(t, y, ydot, i, ys_i, ysdot_i, tmp):
        forcing = -y[0] if i == 0 else 1.0
        ysdot_i[0] = -params[0] * ys_i[0] + forcing
    return OneByOne(fs1)


def _ys0():
    return [np.zeros(1), np.zeros(1)]


def _assert_sensitivities(session, t):
    (s0, s1), t_ret = sensitivity.get(session)
    assert t_ret == t
    exact0, exact1 = _exact_sensitivities(t)
    np.testing.assert_allclose(s0, exact0, rtol=1e-2, atol=1e-5)
    np.testing.assert_allclose(s1, exact1, rtol=1e-2, atol=1e-5)


class TestUserFunctions:
    @pytest.mark.parametrize("method", [SensMethod.SIMULTANEOUS,
                                        SensMethod.STAGGERED])
    def test_all_at_once(self, session, params, method):
        sensitivity.init(session,
                         sensitivity.SStolerances(1e-6, [1e-8, 1e-8]),
                         method, None, _all_at_once(params), _ys0())
        sensitivity.set_err_con(session, True)
        session.advance(1.0)
        _assert_sensitivities(session, 1.0)
        assert sensitivity.get_num_rhs_evals(session) > 0
        assert sensitivity.get_num_rhs_evals_dq(session) == 0

    @pytest.mark.parametrize("method", list(SensMethod))
    def test_one_by_one(self, session, params, method):
        sensitivity.init(session,
                         sensitivity.SVtolerances(1e-6, [[1e-8], [1e-8]]),
                         method, SensParams(params), _one_by_one(params),
                         _ys0())
        session.advance(1.0)
        _assert_sensitivities(session, 1.0)

    def test_staggered1_needs_one_by_one(self, session, params):
        with pytest.raises(ValueError):
            sensitivity.init(session, EEtolerances(), SensMethod.STAGGERED1,
                             SensParams(params), _all_at_once(params),
                             _ys0())
        assert session.sens is None

    def test_exception_is_replayed(self, session):
        exc = FloatingPointError("sensitivity")

        def fs(t, y, ydot, ys, ysdot, tmp):
            raise exc

        sensitivity.init(session, EEtolerances(), SensMethod.SIMULTANEOUS,
                         None, AllAtOnce(fs), _ys0())
        with pytest.raises(FloatingPointError) as info:
            session.advance(1.0)
        assert info.value is exc


class TestDifferenceQuotients:
    def test_estimated_from_parameters(self, session, params):
        sensitivity.init(session, EEtolerances(), SensMethod.SIMULTANEOUS,
                         SensParams(params, pbar=[1.0, 1.0]), AllAtOnce(),
                         _ys0())
        session.advance(1.0)
        _assert_sensitivities(session, 1.0)
        assert sensitivity.get_num_rhs_evals_dq(session) > 0
        assert sensitivity.get_num_rhs_evals(session) == 0
        np.testing.assert_array_equal(params, [1.0, 0.0])

    def test_forward_differences(self, session, params):
        sensitivity.init(session, EEtolerances(), SensMethod.STAGGERED,
                         SensParams(params), OneByOne(), _ys0())
        sensitivity.set_dq_method(session, DQMethod.FORWARD)
        session.advance(1.0)
        _assert_sensitivities(session, 1.0)

    def test_parameters_required(self, session):
        sensitivity.init(session, EEtolerances(), SensMethod.SIMULTANEOUS,
                         None, AllAtOnce(), _ys0())
        with pytest.raises(IllegalInput):
            session.advance(1.0)

    def test_plist_selects_parameters(self, session, params):
        sensitivity.init(session, EEtolerances(), SensMethod.SIMULTANEOUS,
                         SensParams(params, plist=[1]), AllAtOnce(),
                         [np.zeros(1)])
        session.advance(1.0)
        (s,), _ = sensitivity.get(session)
        np.testing.assert_allclose(s, _exact_sensitivities(1.0)[1],
                                   rtol=1e-2)

    def test_negative_rhomax(self, session, params):
        sensitivity.init(session, EEtolerances(), SensMethod.SIMULTANEOUS,
                         SensParams(params), AllAtOnce(), _ys0())
        with pytest.raises(IllegalInput):
            sensitivity.set_dq_method(session, DQMethod.CENTERED, -1.0)


class TestOutputs:
    @pytest.fixture
    def advanced(self, session, params):
        sensitivity.init(session, EEtolerances(), SensMethod.SIMULTANEOUS,
                         SensParams(params), _all_at_once(params), _ys0())
        session.advance(1.0)
        return session

    def test_single_sensitivity(self, advanced):
        s1, t = sensitivity.get1(advanced, 1)
        assert t == 1.0
        np.testing.assert_allclose(s1, _exact_sensitivities(1.0)[1],
                                   rtol=1e-2)
        with pytest.raises(BadSensIdentifier):
            sensitivity.get1(advanced, 2)

    def test_derivatives(self, advanced):
        d0, d1 = sensitivity.get_dky(advanced, 1.0, 1)
        # ds0/dt = (t - 1) exp(-t) and ds1/dt = exp(-t).
        np.testing.assert_allclose(d0, [0.0], atol=2e-2)
        np.testing.assert_allclose(d1, [np.exp(-1.0)], rtol=5e-2)
        np.testing.assert_allclose(sensitivity.get_dky1(advanced, 1.0, 1, 1),
                                   d1)

    def test_stats(self, advanced):
        stats = sensitivity.get_stats(advanced)
        assert set(stats) == {"rhs_evals", "num_rhs_evals_dq",
                              "err_test_fails", "nonlin_iters",
                              "conv_fails"}
        iters, fails = sensitivity.get_nonlin_solv_stats(advanced)
        assert iters > 0
        assert fails >= 0
        assert sensitivity.get_num_err_test_fails(advanced) == 0

    def test_toggle_off_and_reinit(self, advanced):
        before = sensitivity.get_num_rhs_evals(advanced)
        sensitivity.toggle_off(advanced)
        advanced.advance(2.0)
        assert sensitivity.get_num_rhs_evals(advanced) == before
        sensitivity.reinit(advanced, SensMethod.STAGGERED, _ys0())
        assert sensitivity.get_num_rhs_evals(advanced) == 0
        advanced.advance(3.0)
        assert sensitivity.get_num_rhs_evals(advanced) > 0

    def test_tuning(self, advanced):
        sensitivity.set_max_nonlin_iters(advanced, 5)
        assert advanced.mem.sens.max_nonlin_iters == 5
        sensitivity.set_tolerances(advanced,
                                   sensitivity.SStolerances(1e-5, [1e-8, 1e-8]))
        advanced.advance(1.5)


class TestValidation:
    def test_not_initialized(self, session):
        with pytest.raises(SensNotInitialized):
            sensitivity.get(session)
        with pytest.raises(SensNotInitialized):
            sensitivity.toggle_off(session)
        with pytest.raises(SensNotInitialized):
            sensitivity.get_stats(session)

    def test_pvals_must_be_float_array(self):
        with pytest.raises(TypeError):
            SensParams([1.0, 2.0])
        with pytest.raises(TypeError):
            SensParams(np.array([1, 2]))

    def test_initial_vectors_must_match(self, session, params):
        with pytest.raises(ValueError):
            sensitivity.init(session, EEtolerances(),
                             SensMethod.SIMULTANEOUS, SensParams(params),
                             AllAtOnce(), [np.zeros(2)])
        with pytest.raises(ValueError):
            sensitivity.init(session, EEtolerances(),
                             SensMethod.SIMULTANEOUS, SensParams(params),
                             AllAtOnce(), [])

    def test_rhs_wrapper_required(self, session):
        with pytest.raises(TypeError):
            sensitivity.init(session, EEtolerances(),
                             SensMethod.SIMULTANEOUS, None, None, _ys0())
