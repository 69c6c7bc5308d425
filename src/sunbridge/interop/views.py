"""Scoped, lifetime-bounded views over engine-owned buffers.

The engine reuses its work vectors and matrices between calls, so a buffer
handed to a callback is only meaningful while that callback runs.
:func:`scoped` wraps the buffers in :class:`ScopedView` objects for the
duration of a ``with`` block and invalidates them when the block exits,
whether the body returned or raised. Any later use raises
:class:`~sunbridge.exceptions.InvalidatedViewError`.

Views behave like one-dimensional (or, for matrices, two-dimensional)
numpy arrays for indexing, arithmetic and ufuncs. Results of arithmetic are
fresh ndarrays; ``__array__`` also returns a copy, so no reference to the
engine storage escapes through numpy. Writes go through item assignment,
:meth:`ScopedView.assign` or ufuncs with ``out=``.
"""

from contextlib import contextmanager
from typing import Iterator, Tuple

import numpy as np
from numpy.lib.mixins import NDArrayOperatorsMixin

from sunbridge.exceptions import InvalidatedViewError


class ScopedView(NDArrayOperatorsMixin):
    """Borrowed access to an engine buffer.

    Parameters
    ----------
    buffer
        Engine-owned storage. The view covers the whole logical range of
        the buffer at wrap time.
    """

    __slots__ = ("_buffer", "_valid")

    def __init__(self, buffer: np.ndarray) -> None:
        self._buffer = buffer
        self._valid = True

    @property
    def valid(self) -> bool:
        return self._valid

    def invalidate(self) -> None:
        self._valid = False
        self._buffer = None

    def _data(self) -> np.ndarray:
        if not self._valid:
            raise InvalidatedViewError(
                f"{type(self).__name__} used after the callback that "
                f"received it returned"
            )
        return self._buffer

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._data().shape

    @property
    def ndim(self) -> int:
        return self._data().ndim

    @property
    def size(self) -> int:
        return self._data().size

    @property
    def dtype(self) -> np.dtype:
        return self._data().dtype

    def __len__(self) -> int:
        return len(self._data())

    def __getitem__(self, key):
        value = self._data()[key]
        if isinstance(value, np.ndarray):
            return value.copy()
        return value

    def __setitem__(self, key, value) -> None:
        data = self._data()
        data[key] = _unwrap(value)

    def __iter__(self) -> Iterator:
        return iter(self._data().copy())

    def __array__(self, dtype=None, copy=None) -> np.ndarray:
        return np.array(self._data(), dtype=dtype, copy=True)

    def __array_ufunc__(self, ufunc, method, *inputs, **kwargs):
        args = [_unwrap(x) for x in inputs]
        out = kwargs.get("out")
        if out is not None:
            kwargs["out"] = tuple(_unwrap(o) for o in out)
        result = getattr(ufunc, method)(*args, **kwargs)
        if out is not None:
            return out[0] if len(out) == 1 else out
        return result

    def assign(self, values) -> None:
        """Overwrite every element with ``values`` (broadcast)."""
        self._data()[...] = _unwrap(values)

    def fill(self, value: float) -> None:
        self._data().fill(value)

    def copy(self) -> np.ndarray:
        """Detached copy that stays valid after the callback returns."""
        return self._data().copy()

    def __repr__(self) -> str:
        if not self._valid:
            return f"<invalidated {type(self).__name__}>"
        return f"{type(self).__name__}({self._buffer!r})"


class DenseMatrix(ScopedView):
    """View of a dense ``n x n`` Jacobian, indexed as ``J[i, j]``."""

    __slots__ = ()

    def to_dense(self) -> np.ndarray:
        return self.copy()


class BandMatrix(ScopedView):
    """View of a banded Jacobian in LAPACK band storage.

    Entry ``(i, j)`` of the matrix lives at ``ab[mupper + i - j, j]``.
    Indexing takes matrix coordinates; entries outside the band raise
    :class:`IndexError`.

    Parameters
    ----------
    buffer
        Band storage of shape ``(mupper + mlower + 1, n)``.
    mupper, mlower
        Half-bandwidths of the stored band.
    """

    __slots__ = ("mupper", "mlower")

    def __init__(self, buffer: np.ndarray, mupper: int, mlower: int) -> None:
        super().__init__(buffer)
        self.mupper = mupper
        self.mlower = mlower

    @property
    def n(self) -> int:
        return self._data().shape[1]

    def _locate(self, key) -> Tuple[int, int]:
        try:
            i, j = key
        except (TypeError, ValueError):
            raise IndexError("band matrices take (row, column) indices")
        n = self.n
        if not (0 <= i < n and 0 <= j < n):
            raise IndexError(f"({i}, {j}) is outside a {n}x{n} matrix")
        if i - j > self.mlower or j - i > self.mupper:
            raise IndexError(
                f"({i}, {j}) is outside the band (mupper={self.mupper}, "
                f"mlower={self.mlower})"
            )
        return self.mupper + i - j, j

    def __getitem__(self, key) -> float:
        row, col = self._locate(key)
        return float(self._data()[row, col])

    def __setitem__(self, key, value) -> None:
        row, col = self._locate(key)
        self._data()[row, col] = value

    def in_band(self, i: int, j: int) -> bool:
        return -self.mupper <= i - j <= self.mlower

    def to_dense(self) -> np.ndarray:
        ab = self._data()
        n = ab.shape[1]
        dense = np.zeros((n, n))
        for j in range(n):
            for i in range(max(0, j - self.mupper),
                           min(n, j + self.mlower + 1)):
                dense[i, j] = ab[self.mupper + i - j, j]
        return dense


def _unwrap(value):
    if isinstance(value, ScopedView):
        return value._data()
    return value


def _as_view(item):
    if item is None or isinstance(item, ScopedView):
        return item
    if isinstance(item, (list, tuple)):
        return tuple(_as_view(x) for x in item)
    return ScopedView(item)


def _invalidate(item) -> None:
    if item is None:
        return
    if isinstance(item, tuple):
        for x in item:
            _invalidate(x)
    else:
        item.invalidate()


@contextmanager
def scoped(*buffers):
    """Yield views over ``buffers`` and invalidate them when the block exits.

    Arrays are wrapped in :class:`ScopedView`; views (e.g. matrix views)
    are used as given; lists of arrays become tuples of views; None (an
    absent optional buffer) is passed through. A single item is yielded
    bare, several as a tuple.
    """
    views = tuple(_as_view(b) for b in buffers)
    try:
        yield views[0] if len(views) == 1 else views
    finally:
        for view in views:
            _invalidate(view)
