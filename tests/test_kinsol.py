"""Tests for nonlinear solver sessions on ``|u| = 2``, ``u0 = u1``."""

import numpy as np
import pytest

from sunbridge import (
    NonlinearOptions,
    RecoverableFailure,
    SessionClosedError,
    kinsol,
    linsolv,
)
from sunbridge.exceptions import (
    FirstSystemFunctionFailure,
    IllegalInput,
    MaxIterationsReached,
)
from sunbridge.kinsol import Result


def _guess(*values):
    return np.array(values, dtype=np.float64)


class TestSolve:
    def test_newton_with_exact_jacobian(self, kinsol_session,
                                        nonlinear_system):
        u = _guess(1.0, 1.0)
        assert kinsol_session.solve(u) == Result.SUCCESS
        np.testing.assert_allclose(u, nonlinear_system.solution, rtol=1e-5)
        assert kinsol_session.get_num_nonlin_solv_iters() > 0
        assert kinsol_session.get_num_func_evals() > \
            kinsol_session.get_num_nonlin_solv_iters()
        assert kinsol_session.get_func_norm() < 1e-5
        assert linsolv.get_num_jac_evals(kinsol_session) >= 1

    def test_line_search(self, kinsol_session, nonlinear_system):
        u = _guess(1.0, 1.0)
        kinsol_session.solve(u, linesearch=True)
        np.testing.assert_allclose(u, nonlinear_system.solution, rtol=1e-5)
        assert kinsol_session.get_step_length() > 0.0

    def test_initial_guess_is_solution(self, kinsol_session,
                                       nonlinear_system):
        u = nonlinear_system.solution.copy()
        assert kinsol_session.solve(u) == Result.INITIAL_GUESS_OK
        assert kinsol_session.get_num_func_evals() == 1

    def test_difference_quotient_jacobian(self, nonlinear_system):
        with kinsol.Session.create(nonlinear_system.sysfn,
                                   np.zeros(nonlinear_system.n)) as s:
            u = _guess(1.0, 1.0)
            s.solve(u)
            np.testing.assert_allclose(u, nonlinear_system.solution,
                                       rtol=1e-5)
            assert linsolv.get_num_rhs_evals(s) > 0

    def test_krylov(self, nonlinear_system):
        with kinsol.Session.create(nonlinear_system.sysfn, np.zeros(2),
                                   linear_solver=linsolv.Spgmr()) as s:
            u = _guess(1.0, 1.0)
            s.solve(u)
            np.testing.assert_allclose(u, nonlinear_system.solution,
                                       rtol=1e-5)
            assert linsolv.get_num_lin_iters(s) > 0
            linsolv.set_max_restarts(s, 2)

    def test_only_right_preconditioning(self, kinsol_session):
        def solve(arg, scale, v):
            pass

        with pytest.raises(ValueError):
            linsolv.attach(kinsol_session,
                           linsolv.Spgmr(preconditioner=linsolv.prec_left(
                               solve)))

    def test_scaling(self, kinsol_session, nonlinear_system):
        u = _guess(1.0, 1.0)
        kinsol_session.solve(u, u_scale=[2.0, 2.0], f_scale=[0.5, 0.5])
        np.testing.assert_allclose(u, nonlinear_system.solution, rtol=1e-5)
        with pytest.raises(IllegalInput):
            kinsol_session.solve(_guess(1.0, 1.0), u_scale=[1.0, -1.0])


class TestArguments:
    @pytest.mark.parametrize("u", [[1.0, 1.0],
                                   np.array([1, 1]),
                                   np.ones(3)])
    def test_guess_must_be_float_array(self, kinsol_session, u):
        with pytest.raises(TypeError):
            kinsol_session.solve(u)

    def test_size(self, kinsol_session):
        assert kinsol_session.n == 2

    def test_closed_session(self, nonlinear_system):
        s = kinsol.Session.create(nonlinear_system.sysfn, np.zeros(2))
        s.close()
        with pytest.raises(SessionClosedError):
            s.solve(_guess(1.0, 1.0))


class TestOptions:
    def test_constraints(self, kinsol_session, nonlinear_system):
        kinsol_session.set_constraints([2, 2])
        u = _guess(0.5, 3.0)
        kinsol_session.solve(u)
        np.testing.assert_allclose(u, nonlinear_system.solution, rtol=1e-5)
        with pytest.raises(IllegalInput):
            kinsol_session.solve(_guess(-1.0, -1.0))

    def test_invalid_constraint_value(self, kinsol_session):
        with pytest.raises(ValueError):
            kinsol_session.set_constraints([3, 0])

    def test_iteration_limit(self, kinsol_session):
        assert kinsol_session.set_options(num_max_iters=1) == \
            {"num_max_iters"}
        with pytest.raises(MaxIterationsReached):
            kinsol_session.solve(_guess(1.0, 1.0))

    def test_unknown_option(self, kinsol_session):
        with pytest.raises(KeyError):
            kinsol_session.set_options(max_ord=3)
        assert kinsol_session.set_options(max_ord=3, silent=True) == set()

    def test_options_at_creation(self, nonlinear_system):
        options = NonlinearOptions(num_max_iters=1)
        with kinsol.Session.create(nonlinear_system.sysfn, np.zeros(2),
                                   options=options) as s:
            assert s.options == options
            assert s.options is not options
            with pytest.raises(MaxIterationsReached):
                s.solve(_guess(1.0, 1.0))


class TestStats:
    def test_keys_and_work_space(self, kinsol_session):
        kinsol_session.solve(_guess(1.0, 1.0))
        assert set(kinsol_session.get_stats()) == {
            "func_evals", "nonlin_solv_iters", "beta_cond_fails",
            "backtrack_ops", "func_norm", "step_length", "lin_solv_setups"}
        assert kinsol_session.get_num_lin_solv_setups() >= 1
        assert kinsol_session.get_num_beta_cond_fails() == 0
        assert kinsol_session.get_num_backtrack_ops() == 0
        assert kinsol_session.get_work_space() == (8, 2)


class TestCallbackFailures:
    def test_recoverable_failure_at_first_call(self):
        def sysfn(u, fval):
            raise RecoverableFailure()

        with kinsol.Session.create(sysfn, np.zeros(2)) as s:
            with pytest.raises(FirstSystemFunctionFailure):
                s.solve(_guess(1.0, 1.0))

    def test_recoverable_failure_shortens_step(self, nonlinear_system):
        calls = []

        def sysfn(u, fval):
            calls.append(1)
            if len(calls) == 2:
                raise RecoverableFailure()
            nonlinear_system.sysfn(u, fval)

        with kinsol.Session.create(sysfn, np.zeros(2),
                                   linear_solver=linsolv.Dense(
                                       nonlinear_system.jac)) as s:
            u = _guess(1.0, 1.0)
            s.solve(u)
            np.testing.assert_allclose(u, nonlinear_system.solution,
                                       rtol=1e-5)

    def test_exception_is_replayed(self, nonlinear_system):
        exc = ArithmeticError("system")

        def jac(arg, J):
            raise exc

        with kinsol.Session.create(nonlinear_system.sysfn, np.zeros(2),
                                   linear_solver=linsolv.Dense(jac)) as s:
            with pytest.raises(ArithmeticError) as info:
                s.solve(_guess(1.0, 1.0))
            assert info.value is exc
