"""Tests for DAE sessions on the index-one problem ``y0' = -y0``,
``y1 = 2 y0``."""

import numpy as np
import pytest

from sunbridge import (
    BandRange,
    IntegratorOptions,
    Outcome,
    RecoverableFailure,
    SStolerances,
    ida,
    linsolv,
)
from sunbridge.exceptions import (
    ConstraintFailure,
    FirstResFuncFailure,
    IllegalInput,
    TooMuchWork,
)
from sunbridge.ida import VarId


def _create(system, **kwargs):
    kwargs.setdefault("tolerances", SStolerances(1e-6, 1e-9))
    return ida.Session.create(system.res, system.y0, system.yp0, **kwargs)


class TestAdvance:
    def test_exact_jacobian(self, dae_session, dae_system):
        t, outcome = dae_session.advance(1.0)
        assert (t, outcome) == (1.0, Outcome.CONTINUE)
        np.testing.assert_allclose(dae_session.y, dae_system.exact(1.0),
                                   rtol=1e-3)
        np.testing.assert_allclose(dae_session.get_yp(),
                                   -dae_system.exact(1.0), rtol=1e-2)
        assert dae_session.get_num_res_evals() > 0

    def test_difference_quotient_jacobian(self, dae_system):
        with _create(dae_system) as s:
            s.advance(1.0)
            np.testing.assert_allclose(s.get_y(), dae_system.exact(1.0),
                                       rtol=1e-3)
            np.testing.assert_allclose(linsolv.get_jacobian(s)[1],
                                       [-2.0, 1.0], atol=1e-6)

    def test_band_solver(self, dae_system):
        with _create(dae_system,
                     linear_solver=linsolv.Band(BandRange(1, 1))) \
                as s:
            s.advance(1.0)
            np.testing.assert_allclose(s.y, dae_system.exact(1.0),
                                       rtol=1e-3)

    def test_krylov_solver(self, dae_system):
        with _create(dae_system, linear_solver=linsolv.Spgmr()) as s:
            s.advance(1.0)
            np.testing.assert_allclose(s.y, dae_system.exact(1.0),
                                       rtol=1e-3)
            assert linsolv.get_num_lin_iters(s) > 0

    def test_only_left_preconditioning(self, dae_session):
        def solve(arg, solve_arg, z):
            z.assign(solve_arg.rhs)

        with pytest.raises(ValueError):
            linsolv.attach(dae_session,
                           linsolv.Spgmr(preconditioner=linsolv.prec_right(
                               solve)))

    def test_one_step(self, dae_session):
        t, _ = dae_session.solve_one_step(1.0)
        assert 0.0 < t < 1.0
        assert dae_session.get_num_steps() == 1

    def test_reinit(self, dae_session, dae_system):
        dae_session.advance(1.0)
        dae_session.reinit(0.0, 2.0 * dae_system.y0, 2.0 * dae_system.yp0)
        assert dae_session.t == 0.0
        dae_session.advance(1.0)
        np.testing.assert_allclose(dae_session.y,
                                   2.0 * dae_system.exact(1.0), rtol=1e-3)
        with pytest.raises(ValueError):
            dae_session.reinit(0.0, [1.0], [1.0, 2.0])

    def test_integrator_stats(self, dae_session):
        dae_session.advance(1.0)
        stats = dae_session.get_integrator_stats()
        assert stats.rhs_evals == dae_session.get_num_res_evals()
        assert stats.steps == dae_session.get_num_steps()


class TestAlgebraicComponents:
    def test_suppress_algebraic_error(self, dae_session, dae_system):
        dae_session.set_id([VarId.DIFFERENTIAL, VarId.ALGEBRAIC])
        dae_session.set_suppress_alg(True)
        dae_session.advance(1.0)
        np.testing.assert_allclose(dae_session.y, dae_system.exact(1.0),
                                   rtol=1e-3)

    def test_suppress_needs_id(self, dae_session):
        with pytest.raises(IllegalInput):
            dae_session.set_suppress_alg(True)

    def test_id_validation(self, dae_session):
        with pytest.raises(ValueError):
            dae_session.set_id([VarId.DIFFERENTIAL])
        with pytest.raises(ValueError):
            dae_session.set_id([1, 2])


def _inconsistent(system, y0, yp0):
    return ida.Session.create(system.res, y0, yp0,
                              tolerances=SStolerances(1e-6, 1e-9),
                              linear_solver=linsolv.Dense(jac=system.jac))


class TestConsistentInitialConditions:
    def test_algebraic_values_and_derivatives(self, dae_system):
        with _inconsistent(dae_system, [1.0, 5.0], [0.0, 0.0]) as s:
            y, yp = s.calc_ic_ya_ydp(
                1.0, ids=[VarId.DIFFERENTIAL, VarId.ALGEBRAIC])
            np.testing.assert_allclose(y, [1.0, 2.0], atol=1e-6)
            assert yp[0] == pytest.approx(-1.0, abs=1e-6)
            assert yp[1] == 0.0
            np.testing.assert_array_equal(s.y, y)
            assert s.get_num_backtrack_ops() == 0
            s.advance(1.0)
            np.testing.assert_allclose(s.y, dae_system.exact(1.0),
                                       rtol=1e-3)

    def test_ids_are_kept_for_suppress_alg(self, dae_system):
        with _inconsistent(dae_system, [1.0, 5.0], [0.0, 0.0]) as s:
            s.calc_ic_ya_ydp(1.0,
                             ids=[VarId.DIFFERENTIAL, VarId.ALGEBRAIC])
            s.set_suppress_alg(True)

    def test_all_values_from_derivatives(self, dae_system):
        with _inconsistent(dae_system, [3.0, 0.0], dae_system.yp0) as s:
            out = np.zeros(2)
            y = s.calc_ic_y(1.0, y=out)
            np.testing.assert_allclose(y, dae_system.y0, atol=1e-8)
            np.testing.assert_array_equal(out, y)
            np.testing.assert_array_equal(s.yp, dae_system.yp0)
            s.advance(1.0)
            np.testing.assert_allclose(s.y, dae_system.exact(1.0),
                                       rtol=1e-3)

    def test_line_search_backtracks(self):
        def res(t, y, yp, r):
            r[0] = np.arctan(y[0])

        def jac(arg, J):
            J[0, 0] = 1.0 / (1.0 + arg.y[0] ** 2)

        with ida.Session.create(res, [2.0], [0.0],
                                tolerances=SStolerances(1e-6, 1e-9),
                                linear_solver=linsolv.Dense(jac=jac)) as s:
            y = s.calc_ic_y(1.0)
            assert abs(y[0]) < 1e-6
            assert s.get_num_backtrack_ops() > 0

    def test_needs_ids(self, dae_system):
        with _inconsistent(dae_system, [1.0, 5.0], [0.0, 0.0]) as s:
            with pytest.raises(IllegalInput):
                s.calc_ic_ya_ydp(1.0)

    def test_output_time_too_close(self, dae_system):
        with _inconsistent(dae_system, [3.0, 0.0], dae_system.yp0) as s:
            with pytest.raises(IllegalInput):
                s.calc_ic_y(0.0)

    def test_only_before_first_step(self, dae_session, dae_system):
        dae_session.advance(0.5)
        with pytest.raises(IllegalInput):
            dae_session.calc_ic_y(1.0)
        dae_session.reinit(0.0, [3.0, 0.0], dae_system.yp0)
        np.testing.assert_allclose(dae_session.calc_ic_y(1.0),
                                   dae_system.y0, atol=1e-8)


class TestConstraints:
    def test_validation(self, dae_session):
        with pytest.raises(ValueError):
            dae_session.set_constraints([1.0])
        with pytest.raises(ValueError):
            dae_session.set_constraints([1.0, 3.0])
        dae_session.set_constraints([1.0, 1.0])
        dae_session.set_constraints(None)

    def test_satisfied_constraints(self, dae_session, dae_system):
        dae_session.set_constraints([2.0, 2.0])
        dae_session.advance(1.0)
        np.testing.assert_allclose(dae_session.y, dae_system.exact(1.0),
                                   rtol=1e-3)

    def test_unsatisfiable_constraints(self, dae_session):
        dae_session.set_constraints([-2.0, 0.0])
        with pytest.raises(ConstraintFailure):
            dae_session.advance(1.0)

    def test_initial_values_checked(self, dae_system):
        with _inconsistent(dae_system, [1.0, 5.0], [0.0, 0.0]) as s:
            s.set_constraints([0.0, -1.0])
            with pytest.raises(IllegalInput):
                s.calc_ic_ya_ydp(
                    1.0, ids=[VarId.DIFFERENTIAL, VarId.ALGEBRAIC])


class TestOptions:
    @pytest.mark.parametrize("name, value", [("min_step", 1e-6),
                                             ("max_hnil_warns", 3),
                                             ("stab_lim_det", True)])
    def test_ode_only_options_rejected(self, dae_session, name, value):
        with pytest.raises(ValueError):
            dae_session.set_options({name: value})

    def test_rejected_at_creation(self, dae_system):
        with pytest.raises(ValueError):
            _create(dae_system, options=IntegratorOptions(min_step=1e-6))

    def test_max_num_steps(self, dae_session):
        assert dae_session.set_options(max_num_steps=2) == {"max_num_steps"}
        with pytest.raises(TooMuchWork):
            dae_session.advance(10.0)

    def test_stop_time(self, dae_session):
        dae_session.set_options(stop_time=0.5)
        t, outcome = dae_session.advance(1.0)
        assert outcome == Outcome.STOP_TIME_REACHED
        assert t == pytest.approx(0.5)


class TestRoots:
    def test_half_life(self, dae_system):
        def g(t, y, yp, gout):
            gout[0] = y[0] - 0.5

        with _create(dae_system, roots=(1, g)) as s:
            t, outcome = s.advance(2.0)
            assert outcome == Outcome.ROOTS_FOUND
            assert t == pytest.approx(np.log(2.0), rel=1e-4)
            assert s.get_root_info().found() == (0,)
            assert s.get_num_g_evals() > 0


class TestCallbackFailures:
    def test_first_residual_failure(self, dae_system):
        def res(t, y, yp, r):
            raise RecoverableFailure()

        with ida.Session.create(res, dae_system.y0, dae_system.yp0) as s:
            with pytest.raises(FirstResFuncFailure):
                s.advance(1.0)

    def test_exception_is_replayed(self, dae_system):
        exc = KeyError("residual")
        calls = []

        def res(t, y, yp, r):
            calls.append(t)
            if len(calls) > 3:
                raise exc
            dae_system.res(t, y, yp, r)

        with ida.Session.create(res, dae_system.y0, dae_system.yp0) as s:
            with pytest.raises(KeyError) as info:
                s.advance(1.0)
            assert info.value is exc
