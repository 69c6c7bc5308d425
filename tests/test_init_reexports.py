"""Tests for __init__.py re-export modules across sunbridge."""

import pytest

import sunbridge
import sunbridge.engine
import sunbridge.interop
import sunbridge.linsolv
from sunbridge.common import SStolerances as _SStolerances
from sunbridge.cvode import Session as _CvodeSession
from sunbridge.engine.cvode_mem import CvodeMem as _CvodeMem
from sunbridge.exceptions import SolverError as _SolverError
from sunbridge.interop.registry import default_registry as _default_registry
from sunbridge.linsolv.binding import attach as _attach
from sunbridge.linsolv.config import Spgmr as _Spgmr
from sunbridge.time_logger import (
    TimeLogger as _TimeLogger,
    default_timelogger as _default_timelogger,
)


# ── sunbridge/__init__.py ───────────────────────────────── #


@pytest.mark.parametrize(
    "name",
    [
        "cvode",
        "ida",
        "kinsol",
        "adjoint",
        "sensitivity",
        "quadrature",
        "linsolv",
        "bbd",
        "SStolerances",
        "SolverError",
        "RecoverableFailure",
        "TimeLogger",
        "default_timelogger",
    ],
)
def test_sunbridge_all_contains(name):
    """sunbridge.__all__ lists expected public names."""
    assert name in sunbridge.__all__


def test_sunbridge_all_resolves():
    """Every name in __all__ is an attribute of the package."""
    for name in sunbridge.__all__:
        assert hasattr(sunbridge, name), name


def test_sunbridge_reexports_are_canonical():
    assert sunbridge.SStolerances is _SStolerances
    assert sunbridge.SolverError is _SolverError
    assert sunbridge.cvode.Session is _CvodeSession
    assert sunbridge.TimeLogger is _TimeLogger
    assert sunbridge.default_timelogger is _default_timelogger


def test_sunbridge_version_is_string():
    assert isinstance(sunbridge.__version__, str)
    assert len(sunbridge.__version__) > 0


# ── sub-packages ───────────────────────────────────────── #


def test_linsolv_reexports():
    assert sunbridge.linsolv.attach is _attach
    assert sunbridge.linsolv.Spgmr is _Spgmr
    for name in sunbridge.linsolv.__all__:
        assert hasattr(sunbridge.linsolv, name), name


def test_interop_reexports():
    assert sunbridge.interop.default_registry is _default_registry
    for name in sunbridge.interop.__all__:
        assert hasattr(sunbridge.interop, name), name


def test_engine_reexports():
    assert sunbridge.engine.CvodeMem is _CvodeMem
    for name in sunbridge.engine.__all__:
        assert hasattr(sunbridge.engine, name), name


def test_engine_documents_itself_as_stand_in():
    assert "stand-in for a native solver library" in \
        sunbridge.engine.__doc__
