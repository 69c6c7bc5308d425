"""Adjoint sensitivity memory layered over a forward :class:`CvodeMem`.

The forward integration records every accepted step. Backward problems are
integrated by their own :class:`CvodeMem` instances, driven in reverse time,
with the forward solution reconstructed by Hermite interpolation over the
recorded steps. Backward callbacks are registered here by kind and called
as ``fn(user_data, which, ...)`` with the user data of the forward memory.
"""
import bisect
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from sunbridge.engine.cvode_mem import CvodeMem
from sunbridge.engine.flags import (
    BACKWARD_KINDS,
    CallbackKind,
    CvFlag,
    Iteration,
    Lmm,
    Task,
)
from sunbridge.engine.multistep import UNIT_ROUNDOFF, hermite

Array = NDArray[np.float64]

HERMITE = 1
POLYNOMIAL = 2


class _Trajectory:
    """Recorded forward steps ``(t, y, f)`` with optional sensitivities."""

    def __init__(self) -> None:
        self.times: List[float] = []
        self.states: List[Array] = []
        self.derivs: List[Array] = []
        self.sens: List[Optional[Tuple[List[Array], List[Array]]]] = []

    def clear(self) -> None:
        self.times.clear()
        self.states.clear()
        self.derivs.clear()
        self.sens.clear()

    def record(self, t: float, y: Array, f: Array, sens) -> None:
        if self.times and t == self.times[-1]:
            return
        self.times.append(float(t))
        self.states.append(np.array(y, dtype=np.float64))
        self.derivs.append(np.array(f, dtype=np.float64))
        self.sens.append(sens)

    @property
    def t_first(self) -> float:
        return self.times[0]

    @property
    def t_last(self) -> float:
        return self.times[-1]

    def contains(self, t: float) -> bool:
        lo, hi = sorted((self.t_first, self.t_last))
        fuzz = 100.0 * UNIT_ROUNDOFF * max(abs(lo), abs(hi), 1.0)
        return lo - fuzz <= t <= hi + fuzz

    def _segment(self, t: float) -> int:
        times = self.times
        forward = times[-1] >= times[0]
        if len(times) == 1:
            return 0
        if forward:
            idx = bisect.bisect_left(times, t)
        else:
            idx = bisect.bisect_left([-s for s in times], -t)
        return min(max(idx, 1), len(times) - 1)

    def state(self, t: float) -> Array:
        if len(self.times) == 1:
            return self.states[0].copy()
        i = self._segment(t)
        return hermite(t, self.times[i - 1], self.states[i - 1],
                       self.derivs[i - 1], self.times[i], self.states[i],
                       self.derivs[i], 0)

    def sensitivities(self, t: float) -> List[Array]:
        if len(self.times) == 1:
            return [y.copy() for y in self.sens[0][0]]
        i = self._segment(t)
        (ys0, fs0), (ys1, fs1) = self.sens[i - 1], self.sens[i]
        return [
            hermite(t, self.times[i - 1], a, fa, self.times[i], b, fb, 0)
            for a, fa, b, fb in zip(ys0, fs0, ys1, fs1)
        ]


class _Backward:
    """One backward problem and the memory integrating it."""

    def __init__(self, which: int, mem: CvodeMem) -> None:
        self.which = which
        self.mem = mem
        self.initialized = False
        self.uses_sens = False
        self.t_ret = 0.0
        self.y_ret: Optional[Array] = None


class AdjointMem:
    """Checkpointing and backward integration for one forward memory.

    Parameters
    ----------
    forward
        The forward integrator memory. Its ``step_hook`` is taken over to
        record the trajectory.
    nd
        Number of steps between checkpoints.
    interpolation
        ``HERMITE`` or ``POLYNOMIAL``.
    """

    def __init__(self, forward: CvodeMem, nd: int,
                 interpolation: int) -> None:
        self.forward = forward
        self.nd = max(1, int(nd))
        self.interpolation = interpolation
        self.trajectory = _Trajectory()
        self.problems: List[_Backward] = []
        self.callbacks: Dict[Tuple[int, CallbackKind], Callable] = {}
        self.forward_done = False
        self.record_sens = False
        self.no_sens = False
        self.t_final = forward.tn
        forward.step_hook = self._record

    def _fail(self, flag: int, function: str, message: str) -> int:
        return self.forward._fail(flag, function, message)

    def _record(self, t: float, y: Array, f: Array) -> None:
        sens = None
        mem = self.forward
        if self.record_sens and mem.sens is not None and mem.sens.active:
            sens = ([h.y.copy() for h in mem.sens.hists],
                    [h.f.copy() for h in mem.sens.hists])
        self.trajectory.record(t, y, f, sens)

    # ------------------------------------------------------------------
    # Forward phase

    def forward_advance(self, tout: float, yout: Array,
                        itask: Task) -> Tuple[int, float, int]:
        """Integrate the forward problem; return ``(flag, t, ncheck)``."""
        mem = self.forward
        if not mem._started:
            self.trajectory.clear()
            self.record_sens = (not self.no_sens and mem.sens is not None
                                and mem.sens.active)
        flag, tret = mem.advance(tout, yout, itask)
        if flag < 0:
            return flag, tret, self.num_checkpoints
        self.forward_done = True
        self.t_final = mem.tn
        return flag, tret, self.num_checkpoints

    def set_no_sens(self) -> int:
        """Do not record forward sensitivities for backward problems."""
        self.no_sens = True
        return CvFlag.SUCCESS

    @property
    def num_checkpoints(self) -> int:
        return max(0, len(self.trajectory.times) - 1) // self.nd

    def forward_state(self, t: float) -> Array:
        return self.trajectory.state(t)

    # ------------------------------------------------------------------
    # Backward problems

    def create_b(self, lmm: Lmm, iteration: Iteration) -> Tuple[int, int]:
        which = len(self.problems)
        mem = CvodeMem(lmm, iteration, module="CVODEA")
        mem.errors = self.forward.errors
        self.problems.append(_Backward(which, mem))
        return CvFlag.SUCCESS, which

    def _problem(self, which: int, function: str) -> Optional[_Backward]:
        if not 0 <= which < len(self.problems):
            self._fail(CvFlag.ILL_INPUT, function,
                       f"Illegal value for which: {which}.")
            return None
        return self.problems[which]

    def backward_mem(self, which: int) -> Optional[CvodeMem]:
        problem = self._problem(which, "CVodeGetAdjCVodeBmem")
        return None if problem is None else problem.mem

    def init_b(self, which: int, tb0: float, yb0: Array,
               uses_sens: bool = False) -> int:
        if not self.forward_done:
            return self._fail(CvFlag.NO_FWD, "CVodeInitB",
                              "CVodeF has not been called.")
        problem = self._problem(which, "CVodeInitB")
        if problem is None:
            return CvFlag.ILL_INPUT
        if not self.trajectory.contains(tb0):
            return self._fail(CvFlag.BAD_TB0, "CVodeInitB",
                              f"The initial time tB0 = {tb0} for problem "
                              f"{which} is outside the interval over which "
                              f"the forward problem was solved.")
        if uses_sens and not self.record_sens:
            return self._fail(CvFlag.ILL_INPUT, "CVodeInitB",
                              "The forward problem did not record "
                              "sensitivities.")
        flag = (problem.mem.reinit(tb0, yb0) if problem.initialized
                else problem.mem.init(tb0, yb0))
        if flag != 0:
            return flag
        problem.uses_sens = uses_sens
        problem.initialized = True
        problem.t_ret = float(tb0)
        problem.y_ret = np.array(yb0, dtype=np.float64).ravel()
        problem.mem.set_stop_time(self.trajectory.t_first)
        self._install(problem)
        return CvFlag.SUCCESS

    def reinit_b(self, which: int, tb0: float, yb0: Array) -> int:
        problem = self._problem(which, "CVodeReInitB")
        if problem is None:
            return CvFlag.ILL_INPUT
        if not problem.initialized:
            return self._fail(CvFlag.NO_BCK, "CVodeReInitB",
                              "CVodeInitB has not been called.")
        return self.init_b(which, tb0, yb0, problem.uses_sens)

    def discard_b(self, which: int) -> int:
        """Forget the set-up of problem ``which`` so ``backward`` skips it."""
        problem = self._problem(which, "CVodeDiscardB")
        if problem is None:
            return CvFlag.ILL_INPUT
        problem.initialized = False
        for key in [k for k in self.callbacks if k[0] == which]:
            del self.callbacks[key]
        return CvFlag.SUCCESS

    def set_callback_b(self, which: int, kind: CallbackKind,
                       fn: Optional[Callable]) -> int:
        """Register a backward callback for problem ``which``."""
        try:
            kind = CallbackKind(kind)
        except ValueError:
            kind = None
        if kind not in BACKWARD_KINDS:
            return self._fail(CvFlag.ILL_INPUT, "CVodeSetCallbackB",
                              "Not a backward callback kind.")
        problem = self._problem(which, "CVodeSetCallbackB")
        if problem is None:
            return CvFlag.ILL_INPUT
        if fn is None:
            self.callbacks.pop((which, kind), None)
        else:
            self.callbacks[(which, kind)] = fn
        if kind in (CallbackKind.B_RHS, CallbackKind.B_RHS_SENS):
            problem.uses_sens = kind == CallbackKind.B_RHS_SENS
        if problem.mem.initialized:
            self._install(problem)
        return CvFlag.SUCCESS

    def _install(self, problem: _Backward) -> None:
        """Register adapters for every backward callback on the child."""
        for kind, forward_kind in BACKWARD_KINDS.items():
            if kind in (CallbackKind.B_RHS_SENS,
                        CallbackKind.B_QUAD_RHS_SENS):
                continue
            sens_kind = {
                CallbackKind.B_RHS: CallbackKind.B_RHS_SENS,
                CallbackKind.B_QUAD_RHS: CallbackKind.B_QUAD_RHS_SENS,
            }.get(kind)
            fn = self.callbacks.get((problem.which, kind))
            if sens_kind is not None and problem.uses_sens:
                fn = self.callbacks.get((problem.which, sens_kind))
                kind = sens_kind
            adapter = (None if fn is None
                       else self._adapter(problem, kind, fn))
            problem.mem.set_callback(forward_kind, adapter)

    def _adapter(self, problem: _Backward, kind: CallbackKind,
                 fn: Callable) -> Callable:
        which = problem.which
        forward = self.forward
        state = self.trajectory.state
        sens = self.trajectory.sensitivities

        if kind in (CallbackKind.B_RHS, CallbackKind.B_QUAD_RHS):
            def adapter(_, t, yb, out):
                return fn(forward.user_data, which, t, state(t), yb, out)
        elif kind in (CallbackKind.B_RHS_SENS,
                      CallbackKind.B_QUAD_RHS_SENS):
            def adapter(_, t, yb, out):
                return fn(forward.user_data, which, t, state(t), sens(t),
                          yb, out)
        elif kind == CallbackKind.B_DENSE_JAC:
            def adapter(_, t, yb, fyb, jac, tmp1, tmp2, tmp3):
                return fn(forward.user_data, which, t, state(t), yb, fyb,
                          jac, tmp1, tmp2, tmp3)
        elif kind == CallbackKind.B_BAND_JAC:
            def adapter(_, mupper, mlower, t, yb, fyb, jac, tmp1, tmp2,
                        tmp3):
                return fn(forward.user_data, which, mupper, mlower, t,
                          state(t), yb, fyb, jac, tmp1, tmp2, tmp3)
        elif kind == CallbackKind.B_PREC_SETUP:
            def adapter(_, t, yb, fyb, jok, gamma, tmp1, tmp2, tmp3):
                return fn(forward.user_data, which, t, state(t), yb, fyb,
                          jok, gamma, tmp1, tmp2, tmp3)
        elif kind == CallbackKind.B_PREC_SOLVE:
            def adapter(_, t, yb, fyb, r, z, gamma, delta, lr, tmp):
                return fn(forward.user_data, which, t, state(t), yb, fyb, r,
                          z, gamma, delta, lr, tmp)
        elif kind == CallbackKind.B_JAC_TIMES_VEC:
            def adapter(_, v, jv, t, yb, fyb, tmp):
                return fn(forward.user_data, which, v, jv, t, state(t), yb,
                          fyb, tmp)
        elif kind == CallbackKind.B_BBD_LOCAL:
            def adapter(_, t, yb, gb):
                return fn(forward.user_data, which, t, state(t), yb, gb)
        else:
            def adapter(_, t, yb):
                return fn(forward.user_data, which, t, state(t), yb)
        return adapter

    def backward(self, tbout: float, itask: Task) -> int:
        """Integrate every initialized backward problem towards ``tbout``."""
        if not self.forward_done:
            return self._fail(CvFlag.NO_FWD, "CVodeB",
                              "CVodeF has not been called.")
        active = [p for p in self.problems if p.initialized]
        if not active:
            return self._fail(CvFlag.NO_BCK, "CVodeB",
                              "No backward problems have been defined.")
        if not self.trajectory.contains(tbout):
            return self._fail(CvFlag.GETY_BADT, "CVodeB",
                              f"tBout = {tbout} is outside the interval "
                              f"over which the forward problem was solved.")
        for problem in active:
            yout = np.zeros(problem.mem.n)
            flag, tret = problem.mem.advance(tbout, yout, itask)
            if flag == CvFlag.TSTOP_RETURN:
                flag = CvFlag.SUCCESS
            if flag < 0:
                return flag
            problem.t_ret = tret
            problem.y_ret = yout
        return CvFlag.SUCCESS

    def get_b(self, which: int, out: Array) -> Tuple[int, float]:
        problem = self._problem(which, "CVodeGetB")
        if problem is None:
            return CvFlag.ILL_INPUT, 0.0
        if problem.y_ret is None:
            return self._fail(CvFlag.NO_BCK, "CVodeGetB",
                              "CVodeInitB has not been called."), 0.0
        out[:] = problem.y_ret
        return CvFlag.SUCCESS, problem.t_ret

    def get_forward_state(self, t: float, out: Array) -> int:
        if not self.trajectory.times or not self.trajectory.contains(t):
            return self._fail(CvFlag.GETY_BADT, "CVodeGetAdjY",
                              f"t = {t} is outside the recorded interval.")
        out[:] = self.trajectory.state(t)
        return CvFlag.SUCCESS

    def free(self) -> None:
        for problem in self.problems:
            problem.mem.free()
        self.problems.clear()
        self.callbacks.clear()
        self.trajectory.clear()
        self.forward.step_hook = None
