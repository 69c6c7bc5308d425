"""Tests for scoped buffer views."""

import numpy as np
import pytest

from sunbridge.exceptions import InvalidatedViewError, LifetimeViolation
from sunbridge.interop.views import (
    BandMatrix,
    DenseMatrix,
    ScopedView,
    scoped,
)


class TestScopedView:
    """Reads, writes and numpy interplay while the view is valid."""

    def test_item_access_writes_through(self):
        buf = np.zeros(3)
        view = ScopedView(buf)
        view[1] = 2.5
        assert buf[1] == 2.5
        assert view[1] == 2.5
        assert len(view) == 3
        assert view.shape == (3,)

    def test_slices_are_copies(self):
        buf = np.arange(4.0)
        view = ScopedView(buf)
        part = view[1:3]
        part[:] = -1.0
        np.testing.assert_array_equal(buf, np.arange(4.0))

    def test_array_conversion_copies(self):
        buf = np.ones(2)
        arr = np.asarray(ScopedView(buf))
        arr[0] = 5.0
        assert buf[0] == 1.0

    def test_arithmetic_returns_ndarray(self):
        view = ScopedView(np.array([1.0, 2.0]))
        result = 2.0 * view + 1.0
        assert isinstance(result, np.ndarray)
        np.testing.assert_array_equal(result, [3.0, 5.0])

    def test_ufunc_out_writes_buffer(self):
        buf = np.array([1.0, 4.0])
        view = ScopedView(buf)
        np.sqrt(view, out=view)
        np.testing.assert_array_equal(buf, [1.0, 2.0])

    def test_assign_fill_copy(self):
        buf = np.zeros(3)
        view = ScopedView(buf)
        view.assign([1.0, 2.0, 3.0])
        np.testing.assert_array_equal(buf, [1.0, 2.0, 3.0])
        kept = view.copy()
        view.fill(0.0)
        np.testing.assert_array_equal(kept, [1.0, 2.0, 3.0])
        np.testing.assert_array_equal(buf, 0.0)

    def test_assign_from_other_view(self):
        src = ScopedView(np.array([7.0, 8.0]))
        dst_buf = np.zeros(2)
        ScopedView(dst_buf).assign(src)
        np.testing.assert_array_equal(dst_buf, [7.0, 8.0])


class TestScoped:
    """Lifetime of views handed out by ``scoped``."""

    def test_single_buffer_yielded_bare(self):
        with scoped(np.zeros(2)) as view:
            assert isinstance(view, ScopedView)

    def test_several_buffers_yield_tuple(self):
        with scoped(np.zeros(2), np.zeros(3)) as (a, b):
            assert len(a) == 2
            assert len(b) == 3

    def test_list_becomes_tuple_of_views(self):
        with scoped(np.zeros(1), [np.zeros(2), np.zeros(2)]) as (a, tmp):
            assert isinstance(tmp, tuple)
            assert all(isinstance(v, ScopedView) for v in tmp)

    def test_none_passes_through(self):
        with scoped(np.zeros(1), None) as (a, missing):
            assert missing is None

    def test_views_invalidated_on_exit(self):
        with scoped(np.zeros(2), [np.zeros(2)]) as (view, tmp):
            pass
        assert not view.valid
        with pytest.raises(InvalidatedViewError):
            view[0]
        with pytest.raises(InvalidatedViewError):
            tmp[0].fill(1.0)

    def test_views_invalidated_when_body_raises(self):
        with pytest.raises(RuntimeError):
            with scoped(np.zeros(2)) as view:
                raise RuntimeError("boom")
        with pytest.raises(InvalidatedViewError):
            np.asarray(view)

    def test_invalidated_error_is_not_an_exception(self):
        assert issubclass(InvalidatedViewError, LifetimeViolation)
        assert not issubclass(InvalidatedViewError, Exception)

    def test_repr_of_invalidated_view(self):
        with scoped(np.zeros(1)) as view:
            pass
        assert "invalidated" in repr(view)


class TestMatrices:
    """Dense and banded Jacobian views."""

    def test_dense_matrix(self):
        buf = np.zeros((2, 2))
        with scoped(DenseMatrix(buf)) as J:
            J[0, 1] = 3.0
            dense = J.to_dense()
        assert buf[0, 1] == 3.0
        dense[0, 1] = 0.0
        assert buf[0, 1] == 3.0

    def test_band_matrix_storage_layout(self):
        mupper, mlower, n = 1, 1, 4
        ab = np.zeros((mupper + mlower + 1, n))
        J = BandMatrix(ab, mupper, mlower)
        J[2, 1] = 5.0
        J[1, 2] = 6.0
        assert ab[mupper + 2 - 1, 1] == 5.0
        assert ab[mupper + 1 - 2, 2] == 6.0
        assert J[2, 1] == 5.0

    def test_band_matrix_rejects_outside_band(self):
        J = BandMatrix(np.zeros((3, 4)), 1, 1)
        assert J.in_band(1, 2)
        assert not J.in_band(0, 2)
        with pytest.raises(IndexError):
            J[0, 2] = 1.0
        with pytest.raises(IndexError):
            J[3, 0]
        with pytest.raises(IndexError):
            J[4, 4]

    def test_band_matrix_to_dense(self):
        J = BandMatrix(np.zeros((2, 3)), 0, 1)
        J[0, 0] = 1.0
        J[1, 0] = 2.0
        J[2, 2] = 3.0
        expected = np.array([
            [1.0, 0.0, 0.0],
            [2.0, 0.0, 0.0],
            [0.0, 0.0, 3.0],
        ])
        np.testing.assert_array_equal(J.to_dense(), expected)
