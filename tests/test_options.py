"""Tests for option records and the shared value records."""

import numpy as np
import pytest

from sunbridge import (
    BandRange,
    Bandwidths,
    ErrorDetails,
    IntegratorOptions,
    IntegratorStats,
    NonlinearOptions,
    RootEvent,
    Roots,
    SStolerances,
    SVtolerances,
    WFtolerances,
)


class TestIntegratorOptions:
    def test_defaults_leave_engine_alone(self):
        options = IntegratorOptions()
        assert list(options.engine_items()) == []

    def test_update_returns_recognised(self):
        options = IntegratorOptions()
        updated = options.update({"max_ord": 3}, max_num_steps=50)
        assert updated == {"max_ord", "max_num_steps"}
        assert dict(options.engine_items()) == {"max_ord": 3,
                                                "max_num_steps": 50}

    def test_stop_time_is_not_an_engine_item(self):
        options = IntegratorOptions(stop_time=2.0, max_step=0.5)
        assert dict(options.engine_items()) == {"max_step": 0.5}

    def test_unknown_key(self):
        options = IntegratorOptions()
        with pytest.raises(KeyError):
            options.update(func_norm_tol=1e-3)
        assert options.update({"func_norm_tol": 1e-3, "max_ord": 2},
                              silent=True) == {"max_ord"}

    def test_empty_update(self):
        assert IntegratorOptions().update() == set()

    @pytest.mark.parametrize("kwargs, error", [
        ({"max_ord": 0}, ValueError),
        ({"max_ord": 2.5}, TypeError),
        ({"max_num_steps": True}, TypeError),
        ({"init_step": -1.0}, ValueError),
        ({"stab_lim_det": 1}, TypeError),
        ({"stop_time": "later"}, TypeError),
        ({"max_first_rhs_retries": -1}, ValueError),
    ])
    def test_validation(self, kwargs, error):
        with pytest.raises(error):
            IntegratorOptions(**kwargs)
        with pytest.raises(error):
            IntegratorOptions().update(kwargs)

    def test_integer_accepted_for_float(self):
        options = IntegratorOptions(max_step=1)
        assert options.max_step == 1

    def test_step_limits(self):
        with pytest.raises(ValueError):
            IntegratorOptions(min_step=1.0, max_step=0.5)
        options = IntegratorOptions(min_step=1.0)
        with pytest.raises(ValueError):
            options.update(max_step=0.5)
        # Zero means no limit.
        IntegratorOptions(min_step=1.0, max_step=0.0)


class TestNonlinearOptions:
    def test_constraints_converted(self):
        options = NonlinearOptions(constraints=[1, -2, 0])
        assert options.constraints.dtype == np.float64
        np.testing.assert_array_equal(options.constraints, [1.0, -2.0, 0.0])
        assert "constraints" not in dict(options.engine_items())

    def test_invalid_constraints(self):
        with pytest.raises(ValueError):
            NonlinearOptions(constraints=[0.5])
        options = NonlinearOptions()
        with pytest.raises(ValueError):
            options.update(constraints=[3])

    def test_update(self):
        options = NonlinearOptions()
        assert options.update(num_max_iters=20, no_init_setup=True) == \
            {"num_max_iters", "no_init_setup"}
        with pytest.raises(KeyError):
            options.update(max_ord=2)
        with pytest.raises(ValueError):
            options.update(func_norm_tol=-1.0)


class TestTolerances:
    def test_scalar(self):
        assert SStolerances() == SStolerances(1e-4, 1e-8)
        with pytest.raises(ValueError):
            SStolerances(-1e-6, 1e-8)
        with pytest.raises(TypeError):
            SStolerances("tight", 1e-8)

    def test_vector(self):
        tolerances = SVtolerances(1e-6, [1e-8, 1e-9])
        assert tolerances.atol.dtype == np.float64
        with pytest.raises(ValueError):
            SVtolerances(1e-6, [1e-8, -1.0])
        with pytest.raises(ValueError):
            SVtolerances(1e-6, [np.nan])

    def test_weight_function(self):
        with pytest.raises(TypeError):
            WFtolerances(None)


class TestBandRecords:
    def test_band_range(self):
        assert BandRange(2, 1) == BandRange(2, 1)
        with pytest.raises(TypeError):
            BandRange(1.5, 1)

    def test_bandwidths(self):
        with pytest.raises(ValueError):
            Bandwidths(1, 1, -1, 1)


class TestRootRecords:
    def test_roots_iteration_and_found(self):
        roots = Roots(3)
        roots.buffer[:] = [0, -1, 1]
        assert list(roots) == [RootEvent.NO_ROOT, RootEvent.FALLING,
                               RootEvent.RISING]
        assert roots.found() == (1, 2)
        assert roots[1] is RootEvent.FALLING
        roots.reset()
        assert roots.found() == ()


class TestErrorDetails:
    def test_warning_flag(self):
        assert ErrorDetails(99, "CVODE", "CVode", "msg").is_warning
        assert not ErrorDetails(-1, "CVODE", "CVode", "msg").is_warning


class TestIntegratorStats:
    def test_from_dae_counters(self):
        stats = IntegratorStats.from_engine({
            "num_steps": 4, "num_res_evals": 9, "num_lin_solv_setups": 2,
            "num_err_test_fails": 0, "last_order": 2, "current_order": 2,
            "actual_init_step": 1e-3, "last_step": 0.1, "current_step": 0.2,
            "current_time": 1.0,
        })
        assert stats.rhs_evals == 9
        assert stats.next_step_size == 0.2
