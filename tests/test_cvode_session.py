"""Tests for ODE sessions."""

import gc

import numpy as np
import pytest

from sunbridge import (
    ErrorDetails,
    IntegratorOptions,
    Outcome,
    RecoverableFailure,
    ReentrantCallError,
    RootDirection,
    RootEvent,
    SessionClosedError,
    SStolerances,
    SVtolerances,
    TimeLogger,
    WFtolerances,
    cvode,
    linsolv,
)
from sunbridge.common import AdvanceMode
from sunbridge.engine.flags import CvFlag, Iteration, Lmm
from sunbridge.exceptions import (
    BadK,
    BadT,
    FirstRhsFuncFailure,
    SolverError,
    TooMuchWork,
)
from sunbridge.interop.callbacks import DenseCallbacks
from sunbridge.interop.registry import default_registry


def _create(system, **kwargs):
    kwargs.setdefault("linear_solver", linsolv.Dense(jac=system.jac))
    return cvode.Session.create(Lmm.BDF, Iteration.NEWTON, system.rhs,
                                system.y0, **kwargs)


# --------------------------------------------------------------------------- #
#                               Integration                                   #
# --------------------------------------------------------------------------- #
class TestAdvance:
    """Integrating the linear system and reading results back."""

    def test_dense_exact_jacobian(self, ode_session, linear_system):
        """Dense solver with the exact Jacobian reaches the exact solution
        and keeps that Jacobian."""
        t, outcome = ode_session.advance(1.0)
        assert t == 1.0
        assert outcome is Outcome.CONTINUE
        np.testing.assert_allclose(ode_session.y, linear_system.exact(1.0),
                                   rtol=1e-2, atol=1e-4)
        np.testing.assert_array_equal(linsolv.get_jacobian(ode_session),
                                      linear_system.A)
        assert linsolv.get_num_jac_evals(ode_session) >= 1

    def test_jacobian_is_none_before_first_setup(self, ode_session):
        assert linsolv.get_jacobian(ode_session) is None

    def test_successive_outputs(self, ode_session, linear_system):
        for target in (0.25, 0.5, 0.75):
            t, _ = ode_session.solve_normal(target)
            assert t == target
            np.testing.assert_allclose(ode_session.get_y(),
                                       linear_system.exact(target),
                                       rtol=1e-2, atol=1e-4)
        assert ode_session.t == 0.75

    def test_get_y_is_a_copy(self, ode_session):
        ode_session.advance(0.1)
        y = ode_session.get_y()
        y[:] = 0.0
        assert np.any(ode_session.y != 0.0)

    def test_one_step_mode(self, ode_session):
        t, outcome = ode_session.solve_one_step(1.0)
        assert 0.0 < t < 1.0
        assert outcome is Outcome.CONTINUE
        assert ode_session.get_num_steps() == 1
        t2, _ = ode_session.advance(1.0, AdvanceMode.ONE_STEP)
        assert t2 > t

    def test_difference_quotient_jacobian(self, linear_system):
        with _create(linear_system, linear_solver=linsolv.Dense()) as s:
            s.advance(1.0)
            np.testing.assert_allclose(s.y, linear_system.exact(1.0),
                                       rtol=1e-2, atol=1e-4)
            np.testing.assert_allclose(linsolv.get_jacobian(s),
                                       linear_system.A, atol=1e-5)
            assert linsolv.get_num_rhs_evals(s) > 0

    def test_default_solver_for_newton(self, linear_system):
        with cvode.Session.create(Lmm.BDF, Iteration.NEWTON,
                                  linear_system.rhs, linear_system.y0) as s:
            assert isinstance(s.table, DenseCallbacks)
            s.advance(0.5)

    def test_functional_iteration(self, decay_session, decay_system):
        t, _ = decay_session.advance(1.0)
        np.testing.assert_allclose(decay_session.y[0], decay_system.exact(t),
                                   rtol=1e-3)
        assert decay_session.get_nonlin_solv_stats()[0] > 0

    def test_stiff_robertson(self, robertson_system):
        tolerances = SVtolerances(1e-4, [1e-8, 1e-12, 1e-6])
        with _create(robertson_system, tolerances=tolerances,
                     options=IntegratorOptions(max_num_steps=20000)) as s:
            s.advance(0.4)
            assert abs(s.y[0] - 0.98517) < 2e-3
            assert abs(np.sum(s.y) - 1.0) < 1e-4

    def test_reinit(self, ode_session, linear_system):
        ode_session.advance(0.5)
        ode_session.reinit(0.0, linear_system.y0)
        assert ode_session.t == 0.0
        np.testing.assert_array_equal(ode_session.y, linear_system.y0)
        assert ode_session.get_num_steps() == 0
        ode_session.advance(0.5)
        np.testing.assert_allclose(ode_session.y, linear_system.exact(0.5),
                                   rtol=1e-2, atol=1e-4)

    def test_reinit_wrong_size(self, ode_session):
        with pytest.raises(ValueError):
            ode_session.reinit(0.0, [1.0, 2.0])

    def test_too_close_output_time(self, linear_system):
        with _create(linear_system, t0=1.0) as s:
            with pytest.raises(SolverError) as info:
                s.advance(1.0)
            assert info.value.flag == CvFlag.TOO_CLOSE


class TestOutputsAndStats:
    def test_get_dky(self, ode_session, linear_system):
        ode_session.advance(1.0)
        np.testing.assert_allclose(ode_session.get_dky(1.0, 0),
                                   ode_session.y, rtol=1e-10)
        np.testing.assert_allclose(ode_session.get_dky(1.0, 1),
                                   linear_system.A @ ode_session.y,
                                   rtol=0.1, atol=1e-2)

    def test_get_dky_errors(self, ode_session):
        ode_session.advance(1.0)
        with pytest.raises(BadT):
            ode_session.get_dky(5.0, 0)
        with pytest.raises(BadK):
            ode_session.get_dky(1.0, 7)

    def test_stats(self, ode_session):
        ode_session.advance(1.0)
        stats = ode_session.get_integrator_stats()
        assert stats.steps == ode_session.get_num_steps() > 0
        assert stats.rhs_evals == ode_session.get_num_rhs_evals()
        assert stats.internal_time == ode_session.get_current_time() >= 1.0
        assert ode_session.get_num_lin_solv_setups() >= 1
        assert ode_session.get_num_err_test_fails() >= 0
        assert isinstance(ode_session.get_tol_scale_factor(), float)
        lenrw, leniw = ode_session.get_work_space()
        assert lenrw > 0 and leniw > 0

    def test_weights_and_local_errors(self, ode_session):
        ode_session.advance(0.5)
        assert np.all(ode_session.get_err_weights() > 0.0)
        assert ode_session.get_est_local_errors().shape == (3,)


# --------------------------------------------------------------------------- #
#                               Tolerances                                    #
# --------------------------------------------------------------------------- #
class TestTolerances:
    def test_vector_tolerances(self, ode_session, linear_system):
        ode_session.set_tolerances(SVtolerances(1e-5, [1e-8] * 3))
        ode_session.advance(1.0)
        np.testing.assert_allclose(ode_session.y, linear_system.exact(1.0),
                                   rtol=1e-2, atol=1e-4)

    def test_vector_tolerances_wrong_length(self, ode_session):
        with pytest.raises(ValueError):
            ode_session.set_tolerances(SVtolerances(1e-5, [1e-8, 1e-8]))

    def test_negative_tolerances_rejected(self):
        with pytest.raises(ValueError):
            SStolerances(-1.0, 1e-8)

    def test_weight_function(self, ode_session, linear_system):
        calls = []

        def errw(y, ewt):
            calls.append(1)
            ewt.assign(1.0 / (1e-4 * np.abs(np.asarray(y)) + 1e-8))

        ode_session.set_tolerances(WFtolerances(errw))
        ode_session.advance(1.0)
        assert calls
        np.testing.assert_allclose(ode_session.y, linear_system.exact(1.0),
                                   rtol=1e-2, atol=1e-4)

    def test_weight_function_failure_is_replayed(self, ode_session):
        exc = ArithmeticError("no weights")

        def errw(y, ewt):
            raise exc

        ode_session.set_tolerances(WFtolerances(errw))
        with pytest.raises(ArithmeticError) as info:
            ode_session.advance(1.0)
        assert info.value is exc


# --------------------------------------------------------------------------- #
#                               Options                                       #
# --------------------------------------------------------------------------- #
class TestOptions:
    def test_update_returns_recognised(self, ode_session):
        assert ode_session.set_options(max_num_steps=1000) == \
            {"max_num_steps"}
        assert ode_session.options.max_num_steps == 1000
        assert ode_session.set_options({"max_ord": 2}, init_step=1e-3) == \
            {"max_ord", "init_step"}

    def test_unknown_option(self, ode_session):
        with pytest.raises(KeyError):
            ode_session.set_options(not_an_option=1)
        assert ode_session.set_options(not_an_option=1, silent=True) == set()

    def test_inconsistent_step_limits(self, ode_session):
        with pytest.raises(ValueError):
            ode_session.set_options(min_step=1.0, max_step=0.1)

    def test_max_num_steps_limits_work(self, ode_session):
        ode_session.set_options(max_num_steps=2)
        with pytest.raises(TooMuchWork) as info:
            ode_session.advance(1.0)
        assert info.value.flag == CvFlag.TOO_MUCH_WORK

    def test_options_at_creation(self, linear_system):
        options = IntegratorOptions(max_step=0.01)
        with _create(linear_system, options=options) as s:
            s.advance(0.1)
            assert s.get_num_steps() >= 10
            assert s.options is not options

    def test_stop_time(self, ode_session):
        logger = TimeLogger()
        ode_session.time_logger = logger
        ode_session.set_stop_time(0.5)
        t, outcome = ode_session.advance(1.0)
        assert outcome is Outcome.STOP_TIME_REACHED
        assert t == pytest.approx(0.5)
        messages = [e.metadata["message"] for e in logger.events
                    if e.event_type == "progress"]
        assert messages == ["stop time reached"]
        t, outcome = ode_session.advance(1.0)
        assert (t, outcome) == (1.0, Outcome.CONTINUE)

    def test_clear_stop_time(self, ode_session):
        ode_session.set_stop_time(0.5)
        ode_session.clear_stop_time()
        assert ode_session.advance(1.0) == (1.0, Outcome.CONTINUE)


# --------------------------------------------------------------------------- #
#                               Roots                                         #
# --------------------------------------------------------------------------- #
def _half_crossing(t, y, gout):
    gout[0] = y[0] - 0.5


class TestRoots:
    def _session(self, system):
        return cvode.Session.create(
            Lmm.ADAMS, Iteration.FUNCTIONAL, system.rhs, system.y0,
            roots=(1, _half_crossing),
            tolerances=SStolerances(1e-6, 1e-10),
        )

    def test_root_found_then_continue(self, decay_system):
        logger = TimeLogger()
        with self._session(decay_system) as s:
            s.time_logger = logger
            assert s.nroots == 1
            t, outcome = s.advance(1.0)
            assert outcome is Outcome.ROOTS_FOUND
            assert t == pytest.approx(np.log(2.0), abs=1e-4)
            info = s.get_root_info()
            assert info[0] is RootEvent.FALLING
            assert info.found() == (0,)
            assert s.get_num_g_evals() > 0
            assert s.advance(1.0) == (1.0, Outcome.CONTINUE)
        assert any(e.metadata.get("message") == "roots found"
                   for e in logger.events)

    def test_direction_filter(self, decay_system):
        with self._session(decay_system) as s:
            s.set_root_direction(RootDirection.INCREASING)
            assert s.advance(1.0) == (1.0, Outcome.CONTINUE)

    def test_root_init_switches_off(self, decay_system):
        with self._session(decay_system) as s:
            s.root_init(0)
            assert s.nroots == 0
            assert s.advance(1.0)[1] is Outcome.CONTINUE

    def test_root_init_needs_function(self, decay_session):
        with pytest.raises(ValueError):
            decay_session.root_init(2)

    def test_root_function_cannot_request_retry(self, decay_system):
        def g(t, y, gout):
            raise RecoverableFailure()

        with cvode.Session.create(Lmm.ADAMS, Iteration.FUNCTIONAL,
                                  decay_system.rhs, decay_system.y0,
                                  roots=(1, g)) as s:
            with pytest.raises(RecoverableFailure):
                s.advance(1.0)


# --------------------------------------------------------------------------- #
#                               Callback failures                             #
# --------------------------------------------------------------------------- #
class TestCallbackFailures:
    def test_recoverable_first_calls(self, linear_system):
        """The first three right-hand side calls fail recoverably."""
        calls = {"n": 0}

        def rhs(t, y, ydot):
            calls["n"] += 1
            if calls["n"] <= 3:
                raise RecoverableFailure()
            linear_system.rhs(t, y, ydot)

        with cvode.Session.create(
                Lmm.BDF, Iteration.NEWTON, rhs, linear_system.y0,
                linear_solver=linsolv.Dense(jac=linear_system.jac)) as s:
            t, outcome = s.advance(1.0)
            assert (t, outcome) == (1.0, Outcome.CONTINUE)
            assert s.get_num_rhs_evals() == calls["n"]
            assert s.get_num_rhs_evals() > 3
            assert s.last_error is None
            np.testing.assert_allclose(s.y, linear_system.exact(1.0),
                                       rtol=1e-2, atol=1e-4)

    def test_first_call_retries_exhausted(self, linear_system):
        def rhs(t, y, ydot):
            raise RecoverableFailure()

        with cvode.Session.create(
                Lmm.BDF, Iteration.NEWTON, rhs, linear_system.y0,
                options=IntegratorOptions(max_first_rhs_retries=2)) as s:
            with pytest.raises(FirstRhsFuncFailure) as info:
                s.advance(1.0)
            assert info.value.flag == CvFlag.FIRST_RHSFUNC_ERR
            assert s.get_num_rhs_evals() == 3

    def test_exception_identity(self, linear_system):
        exc = ZeroDivisionError("in rhs")
        calls = {"n": 0}

        def rhs(t, y, ydot):
            calls["n"] += 1
            if calls["n"] == 10:
                raise exc
            linear_system.rhs(t, y, ydot)

        with cvode.Session.create(Lmm.BDF, Iteration.NEWTON, rhs,
                                  linear_system.y0) as s:
            with pytest.raises(ZeroDivisionError) as info:
                s.advance(1.0)
            assert info.value is exc
            assert s.last_error is None

    def test_jacobian_exception_identity(self, linear_system):
        exc = LookupError("jacobian")

        def jac(arg, J):
            raise exc

        with _create(linear_system, linear_solver=linsolv.Dense(jac)) as s:
            with pytest.raises(LookupError) as info:
                s.advance(1.0)
            assert info.value is exc

    def test_views_do_not_outlive_callback(self, linear_system):
        kept = []

        def rhs(t, y, ydot):
            kept.append(y)
            linear_system.rhs(t, y, ydot)

        with cvode.Session.create(Lmm.BDF, Iteration.NEWTON, rhs,
                                  linear_system.y0) as s:
            s.advance(0.1)
        assert kept and not any(v.valid for v in kept)


# --------------------------------------------------------------------------- #
#                               Lifetime                                      #
# --------------------------------------------------------------------------- #
class TestLifetime:
    def test_close_is_idempotent(self, linear_system):
        s = _create(linear_system)
        token = s.token
        s.close()
        s.close()
        assert s.closed
        assert token not in default_registry
        with pytest.raises(SessionClosedError):
            s.advance(1.0)
        with pytest.raises(SessionClosedError):
            s.mem
        with pytest.raises(SessionClosedError):
            s.get_stats()
        assert "closed" in repr(s)

    def test_context_manager_closes(self, linear_system):
        with _create(linear_system) as s:
            s.advance(0.1)
        assert s.closed

    def test_context_manager_closes_on_error(self, linear_system):
        with pytest.raises(RuntimeError):
            with _create(linear_system) as s:
                raise RuntimeError()
        assert s.closed

    def test_collected_session_warns(self, linear_system):
        s = _create(linear_system)
        token = s.token
        with pytest.warns(ResourceWarning):
            del s
            gc.collect()
        assert token not in default_registry

    def test_reentrant_advance(self, linear_system):
        holder = {}

        def rhs(t, y, ydot):
            linear_system.rhs(t, y, ydot)
            holder["s"].advance(2.0)

        with cvode.Session.create(Lmm.BDF, Iteration.NEWTON, rhs,
                                  linear_system.y0) as s:
            holder["s"] = s
            with pytest.raises(ReentrantCallError):
                s.advance(1.0)
        holder.clear()

    def test_close_from_callback(self, linear_system):
        holder = {}

        def rhs(t, y, ydot):
            linear_system.rhs(t, y, ydot)
            holder["s"].close()

        s = cvode.Session.create(Lmm.BDF, Iteration.NEWTON, rhs,
                                 linear_system.y0)
        holder["s"] = s
        with pytest.raises(ReentrantCallError):
            s.advance(1.0)
        assert not s.closed
        s.close()
        holder.clear()

    def test_queries_allowed_from_callback(self, linear_system):
        holder, seen = {}, []

        def rhs(t, y, ydot):
            linear_system.rhs(t, y, ydot)
            seen.append(holder["s"].get_num_rhs_evals())

        with cvode.Session.create(Lmm.BDF, Iteration.NEWTON, rhs,
                                  linear_system.y0) as s:
            holder["s"] = s
            s.advance(0.1)
        assert seen
        holder.clear()


# --------------------------------------------------------------------------- #
#                               Error reporting                               #
# --------------------------------------------------------------------------- #
class TestErrorReporting:
    def test_handler_receives_details(self, ode_session):
        received = []
        ode_session.set_error_handler(received.append)
        ode_session.set_options(max_num_steps=2)
        with pytest.raises(TooMuchWork):
            ode_session.advance(1.0)
        assert len(received) == 1
        details = received[0]
        assert isinstance(details, ErrorDetails)
        assert details.error_code == CvFlag.TOO_MUCH_WORK
        assert details.module_name == "CVODE"
        assert details.function_name == "CVode"
        assert not details.is_warning

    def test_failing_handler_warns(self, ode_session):
        def handler(details):
            raise ValueError("handler failed")

        ode_session.set_error_handler(handler)
        ode_session.set_options(max_num_steps=2)
        with pytest.warns(RuntimeWarning):
            with pytest.raises(TooMuchWork):
                ode_session.advance(1.0)

    def test_error_file(self, ode_session, tmp_path):
        path = tmp_path / "cvode.log"
        ode_session.set_error_file(path)
        ode_session.set_options(max_num_steps=2)
        with pytest.raises(TooMuchWork):
            ode_session.advance(1.0)
        ode_session.close()
        text = path.read_text()
        assert "CVODE ERROR" in text
        assert "mxstep" in text

    def test_clear_handler_restores_stream(self, ode_session, capsys):
        received = []
        ode_session.set_error_handler(received.append)
        ode_session.clear_error_handler()
        ode_session.set_options(max_num_steps=2)
        with pytest.raises(TooMuchWork):
            ode_session.advance(1.0)
        assert received == []
        assert "CVODE ERROR" in capsys.readouterr().err
