"""Tests for the callback table variants."""

import pytest

from sunbridge.common import BandRange, Bandwidths
from sunbridge.engine.flags import CallbackKind, PrecType
from sunbridge.interop.callbacks import (
    BandCallbacks,
    BBDCallbacks,
    DenseCallbacks,
    DiagCallbacks,
    NoCallbacks,
    ProblemKind,
    SpilsBandedCallbacks,
    SpilsCallbacks,
    SpilsUserCallbacks,
)


def noop(*args):
    pass


class TestRegisteredKinds:
    def test_no_callbacks(self):
        assert NoCallbacks(ProblemKind.ODE).registered_kinds == frozenset()

    def test_dense_with_and_without_jacobian(self):
        assert DenseCallbacks(ProblemKind.ODE).registered_kinds == \
            frozenset()
        assert DenseCallbacks(ProblemKind.ODE, noop).registered_kinds == \
            {CallbackKind.DENSE_JAC}

    def test_band(self):
        table = BandCallbacks(ProblemKind.DAE, BandRange(1, 1), noop)
        assert table.registered_kinds == {CallbackKind.BAND_JAC}

    def test_user_preconditioner(self):
        table = SpilsUserCallbacks(ProblemKind.ODE, PrecType.LEFT, noop,
                                   noop, noop)
        assert table.registered_kinds == {
            CallbackKind.PREC_SOLVE,
            CallbackKind.PREC_SETUP,
            CallbackKind.JAC_TIMES_VEC,
        }

    def test_bbd(self):
        table = BBDCallbacks(ProblemKind.ODE, PrecType.RIGHT,
                             Bandwidths(1, 1, 1, 1), noop)
        assert table.registered_kinds == {CallbackKind.BBD_LOCAL}
        table = BBDCallbacks(ProblemKind.ODE, PrecType.RIGHT,
                             Bandwidths(1, 1, 1, 1), noop, comm_fn=noop)
        assert CallbackKind.BBD_COMM in table.registered_kinds


class TestInvalidCombinations:
    """Combinations the engine cannot honour are not constructible."""

    def test_diag_only_for_odes(self):
        DiagCallbacks(ProblemKind.ODE)
        DiagCallbacks(ProblemKind.BACKWARD_ODE)
        with pytest.raises(ValueError):
            DiagCallbacks(ProblemKind.DAE)
        with pytest.raises(ValueError):
            DiagCallbacks(ProblemKind.NONLINEAR)

    def test_banded_preconditioner_only_for_odes(self):
        with pytest.raises(ValueError):
            SpilsBandedCallbacks(ProblemKind.DAE, PrecType.LEFT,
                                 BandRange(1, 1))

    @pytest.mark.parametrize("side", [PrecType.RIGHT, PrecType.BOTH])
    def test_dae_only_left(self, side):
        with pytest.raises(ValueError):
            SpilsUserCallbacks(ProblemKind.DAE, side, noop)

    @pytest.mark.parametrize("side", [PrecType.LEFT, PrecType.BOTH])
    def test_nonlinear_only_right(self, side):
        with pytest.raises(ValueError):
            SpilsUserCallbacks(ProblemKind.NONLINEAR, side, noop)

    def test_preconditioner_needs_side(self):
        with pytest.raises(ValueError):
            SpilsUserCallbacks(ProblemKind.ODE, PrecType.NONE, noop)
        with pytest.raises(ValueError):
            BBDCallbacks(ProblemKind.ODE, PrecType.NONE,
                         Bandwidths(1, 1, 1, 1), noop)

    def test_unpreconditioned_krylov_has_no_side(self):
        assert SpilsCallbacks(ProblemKind.DAE).side == PrecType.NONE
        with pytest.raises(ValueError):
            SpilsCallbacks(ProblemKind.ODE, PrecType.LEFT)

    def test_problem_must_be_problem_kind(self):
        with pytest.raises(TypeError):
            DenseCallbacks("ode")

    def test_callbacks_must_be_callable(self):
        with pytest.raises(TypeError):
            DenseCallbacks(ProblemKind.ODE, jac=3)
