"""Tests for folding callback exceptions into engine statuses."""

from types import SimpleNamespace

import pytest

from sunbridge.exceptions import InvalidatedViewError, RecoverableFailure
from sunbridge.interop.bridge import (
    StatusCode,
    replay_captured,
    run_guarded,
    run_guarded_bool,
    run_informational,
)


@pytest.fixture
def holder():
    return SimpleNamespace(last_error=None)


def _raise(exc):
    def fn(*args):
        raise exc
    return fn


class TestRunGuarded:
    def test_success(self, holder):
        calls = []
        status = run_guarded(holder, True, calls.append, 1)
        assert status == StatusCode.SUCCESS
        assert calls == [1]
        assert holder.last_error is None

    def test_recoverable_when_allowed(self, holder):
        status = run_guarded(holder, True, _raise(RecoverableFailure()))
        assert status == StatusCode.RECOVERABLE
        assert holder.last_error is None

    def test_recoverable_when_not_allowed(self, holder):
        exc = RecoverableFailure()
        status = run_guarded(holder, False, _raise(exc))
        assert status == StatusCode.UNRECOVERABLE
        assert holder.last_error is exc

    def test_other_exception_captured(self, holder):
        exc = ZeroDivisionError("x")
        assert run_guarded(holder, True, _raise(exc)) == -1
        assert holder.last_error is exc

    def test_first_error_is_kept(self, holder):
        first = ValueError("first")
        run_guarded(holder, True, _raise(first))
        run_guarded(holder, True, _raise(KeyError("second")))
        assert holder.last_error is first

    def test_lifetime_violation_propagates(self, holder):
        with pytest.raises(InvalidatedViewError):
            run_guarded(holder, True, _raise(InvalidatedViewError()))
        assert holder.last_error is None

    def test_keyboard_interrupt_propagates(self, holder):
        with pytest.raises(KeyboardInterrupt):
            run_guarded(holder, True, _raise(KeyboardInterrupt()))


class TestRunGuardedBool:
    def test_result_is_returned(self, holder):
        assert run_guarded_bool(holder, lambda: 1) == (True,
                                                      StatusCode.SUCCESS)
        assert run_guarded_bool(holder, lambda: None) == (False,
                                                         StatusCode.SUCCESS)

    def test_failures(self, holder):
        assert run_guarded_bool(holder, _raise(RecoverableFailure())) == (
            False, StatusCode.RECOVERABLE)
        exc = RuntimeError()
        assert run_guarded_bool(holder, _raise(exc)) == (
            False, StatusCode.UNRECOVERABLE)
        assert holder.last_error is exc


def test_run_informational_turns_exception_into_warning():
    with pytest.warns(RuntimeWarning, match="discarded"):
        run_informational(_raise(ValueError("handler broke")))


def test_replay_reraises_same_object_and_clears(holder):
    exc = ValueError("parked")
    holder.last_error = exc
    with pytest.raises(ValueError) as info:
        replay_captured(holder)
    assert info.value is exc
    assert holder.last_error is None
    replay_captured(holder)
