"""Tests for adjoint sensitivity analysis.

The forward problem is ``y' = -y`` on ``[0, 1]``. The backward problem
``yb' = yb`` with ``yb(1) = 1`` has ``yb(0) = exp(-1)``, the sensitivity
of ``y(1)`` to ``y(0)``.
"""

import numpy as np
import pytest

from sunbridge import (
    IntegratorOptions,
    SStolerances,
    SunbridgeError,
    adjoint,
    quadrature,
)
from sunbridge.adjoint import Interpolation, NoSens, WithSens
from sunbridge.engine.flags import Iteration, Lmm
from sunbridge.exceptions import (
    AdjointNotInitialized,
    BadFinalTime,
    BadOutputTime,
    IllegalInput,
    NoBackwardProblem,
    NoForwardCall,
    SessionClosedError,
)

TOLERANCES = SStolerances(1e-8, 1e-10)


def _fb(t, y, yb, ybdot):
    ybdot[0] = yb[0]


def _fqb(t, y, yb, qbdot):
    qbdot[0] = yb[0] * y[0]


def _init_backward(session, fb=NoSens(_fb), tb0=1.0, **kwargs):
    return adjoint.init_backward(session, Lmm.BDF, Iteration.NEWTON,
                                 TOLERANCES, fb, tb0, [1.0], **kwargs)


@pytest.fixture
def recorded(decay_session):
    adjoint.init(decay_session, 5)
    return decay_session


@pytest.fixture
def forward_done(recorded):
    adjoint.forward_normal(recorded, 1.0)
    return recorded


class TestForwardPhase:
    def test_records_checkpoints(self, recorded, decay_system):
        t, ncheck, _ = adjoint.forward_normal(recorded, 1.0)
        assert t == 1.0
        assert ncheck == adjoint.get_num_checkpoints(recorded)
        assert ncheck > 0
        np.testing.assert_allclose(recorded.y, decay_system.exact(1.0),
                                   rtol=1e-4)

    def test_one_step(self, recorded):
        t, _, _ = adjoint.forward_one_step(recorded, 1.0)
        assert 0.0 < t < 1.0
        assert recorded.t == t

    def test_interpolated_forward_state(self, forward_done, decay_system):
        y = adjoint.get_y(forward_done, 0.5)
        np.testing.assert_allclose(y, [decay_system.exact(0.5)], rtol=1e-4)
        with pytest.raises(BadOutputTime):
            adjoint.get_y(forward_done, 5.0)

    def test_needs_init(self, decay_session):
        with pytest.raises(AdjointNotInitialized):
            adjoint.forward_normal(decay_session, 1.0)
        with pytest.raises(AdjointNotInitialized):
            adjoint.get_num_checkpoints(decay_session)

    def test_invalid_checkpoint_spacing(self, decay_session):
        with pytest.raises(ValueError):
            adjoint.init(decay_session, 0)

    def test_polynomial_interpolation_accepted(self, decay_session):
        adjoint.init(decay_session, 1, Interpolation.POLYNOMIAL)
        adjoint.set_no_sensitivity(decay_session)
        adjoint.forward_normal(decay_session, 0.5)
        assert adjoint.get_num_checkpoints(decay_session) > 0


class TestBackwardPhase:
    def test_adjoint_of_decay(self, forward_done):
        child = _init_backward(forward_done)
        assert child.parent is forward_done
        assert forward_done.children == [child]
        adjoint.backward_normal(forward_done, 0.0)
        yb, t = child.get()
        assert t == pytest.approx(0.0, abs=1e-12)
        np.testing.assert_allclose(yb, [np.exp(-1.0)], rtol=1e-4)
        assert child.get_num_rhs_evals() > 0

    def test_backward_quadrature(self, forward_done):
        child = _init_backward(forward_done)
        adjoint.quad_init(child, NoSens(_fqb), [0.0])
        adjoint.backward_normal(forward_done, 0.0)
        qb, _ = quadrature.get(child)
        # The integrand is the constant exp(-1), integrated from 1 to 0.
        np.testing.assert_allclose(qb, [-np.exp(-1.0)], rtol=1e-3)

    def test_quadrature_must_match_sensitivity_use(self, forward_done):
        child = _init_backward(forward_done)
        with pytest.raises(ValueError):
            adjoint.quad_init(child, WithSens(lambda *args: None), [0.0])
        with pytest.raises(TypeError):
            adjoint.quad_init(child, _fqb, [0.0])

    def test_forward_quadrature_init_rejected(self, forward_done):
        child = _init_backward(forward_done)
        with pytest.raises(TypeError):
            quadrature.init(child, _fqb, [0.0])

    def test_one_step(self, forward_done):
        child = _init_backward(forward_done)
        adjoint.backward_one_step(forward_done, 0.0)
        _, t = child.get()
        assert 0.0 < t < 1.0

    def test_reinit(self, forward_done):
        child = _init_backward(forward_done)
        adjoint.backward_normal(forward_done, 0.0)
        child.reinit(1.0, [2.0])
        adjoint.backward_normal(forward_done, 0.0)
        yb, _ = child.get()
        np.testing.assert_allclose(yb, [2.0 * np.exp(-1.0)], rtol=1e-4)
        with pytest.raises(ValueError):
            child.reinit(1.0, [1.0, 2.0])

    def test_two_problems(self, forward_done):
        first = _init_backward(forward_done)
        second = _init_backward(forward_done, tb0=0.5)
        assert (first.which, second.which) == (0, 1)
        adjoint.backward_normal(forward_done, 0.0)
        np.testing.assert_allclose(second.get()[0], [np.exp(-0.5)],
                                   rtol=1e-4)

    def test_exception_is_replayed(self, forward_done):
        exc = ZeroDivisionError("backward")

        def fb(t, y, yb, ybdot):
            raise exc

        _init_backward(forward_done, fb=NoSens(fb))
        with pytest.raises(ZeroDivisionError) as info:
            adjoint.backward_normal(forward_done, 0.0)
        assert info.value is exc


class TestBackwardValidation:
    def test_before_forward_integration(self, recorded):
        with pytest.raises(NoForwardCall):
            _init_backward(recorded)

    def test_no_backward_problem(self, forward_done):
        with pytest.raises(NoBackwardProblem):
            adjoint.backward_normal(forward_done, 0.0)

    def test_final_time_outside_recording(self, forward_done):
        with pytest.raises(BadFinalTime):
            _init_backward(forward_done, tb0=5.0)

    def test_failed_problem_is_not_attached(self, forward_done):
        with pytest.raises(BadFinalTime):
            _init_backward(forward_done, tb0=5.0)
        assert forward_done.children == []
        child = _init_backward(forward_done)
        assert forward_done.children == [child]
        adjoint.backward_normal(forward_done, 0.0)
        yb, t = child.get()
        assert t == pytest.approx(0.0, abs=1e-12)
        np.testing.assert_allclose(yb, [np.exp(-1.0)], rtol=1e-4)

    def test_problem_rejected_after_engine_setup_is_skipped(self,
                                                            forward_done):
        with pytest.raises(ValueError):
            _init_backward(forward_done,
                           options=IntegratorOptions(stop_time=0.5))
        assert forward_done.children == []
        with pytest.raises(NoBackwardProblem):
            adjoint.backward_normal(forward_done, 0.0)

    def test_sensitivities_not_recorded(self, forward_done):
        with pytest.raises(IllegalInput):
            _init_backward(forward_done,
                           fb=WithSens(lambda t, y, ys, yb, ybdot: None))

    def test_wrapper_and_tolerances_checked(self, forward_done):
        with pytest.raises(TypeError):
            _init_backward(forward_done, fb=_fb)
        with pytest.raises(TypeError):
            adjoint.init_backward(forward_done, Lmm.BDF, Iteration.NEWTON,
                                  1e-6, NoSens(_fb), 1.0, [1.0])

    def test_stop_time_not_supported(self, forward_done):
        child = _init_backward(forward_done)
        with pytest.raises(ValueError):
            child.set_options(stop_time=0.5)


class TestBackwardLifetime:
    def test_cannot_close_directly(self, forward_done):
        child = _init_backward(forward_done)
        with pytest.raises(SunbridgeError):
            child.close()
        with pytest.raises(TypeError):
            with child:
                pass

    def test_unusable_after_parent_closes(self, forward_done):
        child = _init_backward(forward_done)
        forward_done.close()
        assert child.closed
        assert "closed" in repr(child)
        with pytest.raises(SessionClosedError):
            child.get()
        with pytest.raises(SessionClosedError):
            child.parent

    def test_reinitialising_adjoint_detaches_children(self, forward_done):
        child = _init_backward(forward_done)
        adjoint.init(forward_done, 5)
        assert child.closed
        assert forward_done.children == []
        with pytest.raises(SessionClosedError):
            child.get()
