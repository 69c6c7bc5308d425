"""Exception hierarchy of the binding layer.

Three families live here:

* :class:`RecoverableFailure` is raised *by user callbacks* to ask the
  engine to retry with adjusted internal parameters.
* :class:`SunbridgeError` covers misuse of the binding (closed sessions,
  re-entrant calls, invalid linear solver state) and, through
  :class:`SolverError`, every failure flag returned by the engine. Each
  engine flag has its own subclass carrying the raw ``flag``.
* :class:`LifetimeViolation` derives from :class:`BaseException`. It
  reports an ownership bug (a dead session token, a view used after its
  callback returned) and is never folded into an integer status by the
  callback guards.
"""

from typing import Dict, Mapping, Optional, Type

from sunbridge.engine.flags import CvFlag, IdaFlag, KinFlag


class RecoverableFailure(Exception):
    """Raised from a callback to request a retry.

    Only honoured by callback kinds the engine can retry (right-hand
    sides, residuals, system functions, Jacobians, preconditioners and
    Jacobian-vector products); elsewhere it is an ordinary error.
    """


# ----------------------------------------------------------------------
# Binding misuse


class SunbridgeError(Exception):
    """Base class for errors raised by sunbridge."""


class SessionClosedError(SunbridgeError):
    """An operation was attempted on a closed session."""


class ReentrantCallError(SunbridgeError):
    """A callback tried to re-enter the engine on its own session graph."""


class EngineInitFailure(SunbridgeError):
    """The engine could not allocate or initialise its memory."""


class LinearSolverStateError(SunbridgeError, ValueError):
    """The requested operation needs a different linear solver."""


# ----------------------------------------------------------------------
# Lifetime violations


class LifetimeViolation(BaseException):
    """Use of an object outside its lifetime; never recoverable."""


class StaleSessionReference(LifetimeViolation):
    """The engine referred to a session that has been collected."""


class InvalidatedViewError(LifetimeViolation):
    """A scoped buffer view was used after its callback returned."""


class CallbackTableMismatch(LifetimeViolation):
    """The engine invoked a callback the active table does not provide."""


# ----------------------------------------------------------------------
# Engine flags


class SolverError(SunbridgeError):
    """A failure flag returned by the engine.

    Parameters
    ----------
    flag
        Raw integer returned by the engine.
    message
        Optional description; defaults to the flag's name.
    """

    def __init__(self, flag: int, message: Optional[str] = None) -> None:
        self.flag = int(flag)
        if message is None:
            message = f"engine returned flag {self.flag}"
        super().__init__(message)


class TooMuchWork(SolverError):
    """Too many internal steps were needed to reach the output time."""


class TooMuchAccuracy(SolverError):
    """The requested accuracy cannot be met."""


class ErrFailure(SolverError):
    """Error test failures occurred too many times or at the minimum step."""


class ConvergenceFailure(SolverError):
    """Corrector convergence failed too many times or at the minimum step."""


class LinearInitFailure(SolverError):
    """The linear solver could not be initialised."""


class LinearSetupFailure(SolverError):
    """The linear solver setup failed unrecoverably."""


class LinearSolveFailure(SolverError):
    """The linear solver solve failed unrecoverably."""


class RhsFuncFailure(SolverError):
    """The right-hand side failed unrecoverably."""


class FirstRhsFuncFailure(SolverError):
    """The right-hand side kept failing at the first call."""


class RepeatedRhsFuncFailure(SolverError):
    """The right-hand side had repeated recoverable failures."""


class UnrecoverableRhsFuncFailure(SolverError):
    """The right-hand side failed recoverably with no way to recover."""


class RootFuncFailure(SolverError):
    """A root function failed."""


class MemoryFailure(SolverError):
    """The engine ran out of memory."""


class MemoryNull(SolverError):
    """The engine memory was missing."""


class IllegalInput(SolverError):
    """An input to the engine was illegal."""


class NotInitialized(SolverError):
    """The engine memory was used before it was initialised."""


class BadK(SolverError):
    """Illegal derivative order requested from the interpolant."""


class BadT(SolverError):
    """Requested time lies outside the last step."""


class BadDky(SolverError):
    """No output vector was given to the interpolant."""


class TooClose(SolverError):
    """The output time is too close to the initial time."""


class QuadNotInitialized(SolverError):
    """Quadrature integration has not been activated."""


class QuadRhsFuncFailure(SolverError):
    """The quadrature right-hand side failed unrecoverably."""


class FirstQuadRhsFuncFailure(SolverError):
    """The quadrature right-hand side failed at the first call."""


class RepeatedQuadRhsFuncFailure(SolverError):
    """The quadrature right-hand side had repeated recoverable failures."""


class UnrecoverableQuadRhsFuncFailure(SolverError):
    """The quadrature right-hand side failed with no way to recover."""


class SensNotInitialized(SolverError):
    """Forward sensitivity analysis has not been activated."""


class SensRhsFuncFailure(SolverError):
    """The sensitivity right-hand side failed unrecoverably."""


class FirstSensRhsFuncFailure(SolverError):
    """The sensitivity right-hand side failed at the first call."""


class RepeatedSensRhsFuncFailure(SolverError):
    """The sensitivity right-hand side had repeated recoverable failures."""


class UnrecoverableSensRhsFuncFailure(SolverError):
    """The sensitivity right-hand side failed with no way to recover."""


class BadSensIdentifier(SolverError):
    """A sensitivity index is out of range."""


class AdjointNotInitialized(SolverError):
    """Adjoint analysis has not been initialised."""


class NoForwardCall(SolverError):
    """A backward operation was requested before the forward integration."""


class NoBackwardProblem(SolverError):
    """No backward problem has been initialised."""


class BadFinalTime(SolverError):
    """The backward initial time lies outside the forward interval."""


class ForwardReinitFailure(SolverError):
    """Reinitialising the forward problem from a checkpoint failed."""


class ForwardFailure(SolverError):
    """The forward problem failed while recomputing the trajectory."""


class BadOutputTime(SolverError):
    """The backward output time lies outside the forward interval."""


class ResFuncFailure(SolverError):
    """The DAE residual failed unrecoverably."""


class FirstResFuncFailure(SolverError):
    """The DAE residual failed at the first call."""


class RepeatedResFuncFailure(SolverError):
    """The DAE residual had repeated recoverable failures."""


class ConstraintFailure(SolverError):
    """The inequality constraints could not be met."""


class InitialConditionLineSearchFailure(SolverError):
    """The initial-condition line search could not reduce the residual."""


class InitialConditionNoRecovery(SolverError):
    """A recoverable failure during the initial-condition calculation
    could not be recovered from."""


class BadErrorWeights(SolverError):
    """Some error weight became non-positive."""


class LineSearchNonConvergence(SolverError):
    """The line search could not find an acceptable iterate."""


class MaxIterationsReached(SolverError):
    """The maximum number of nonlinear iterations was reached."""


class MaxNewtonStepExceeded(SolverError):
    """Five consecutive steps reached the maximum Newton step length."""


class LineSearchBetaConditionFailure(SolverError):
    """The line search failed to satisfy the beta condition."""


class LinearSolverNoRecovery(SolverError):
    """The linear solver failed with a current Jacobian."""


class SystemFunctionFailure(SolverError):
    """The system function failed unrecoverably."""


class FirstSystemFunctionFailure(SolverError):
    """The system function failed at the first call."""


class RepeatedSystemFunctionFailure(SolverError):
    """The system function had repeated recoverable failures."""


CVODE_ERRORS: Dict[int, Type[SolverError]] = {
    CvFlag.TOO_MUCH_WORK: TooMuchWork,
    CvFlag.TOO_MUCH_ACC: TooMuchAccuracy,
    CvFlag.ERR_FAILURE: ErrFailure,
    CvFlag.CONV_FAILURE: ConvergenceFailure,
    CvFlag.LINIT_FAIL: LinearInitFailure,
    CvFlag.LSETUP_FAIL: LinearSetupFailure,
    CvFlag.LSOLVE_FAIL: LinearSolveFailure,
    CvFlag.RHSFUNC_FAIL: RhsFuncFailure,
    CvFlag.FIRST_RHSFUNC_ERR: FirstRhsFuncFailure,
    CvFlag.REPTD_RHSFUNC_ERR: RepeatedRhsFuncFailure,
    CvFlag.UNREC_RHSFUNC_ERR: UnrecoverableRhsFuncFailure,
    CvFlag.RTFUNC_FAIL: RootFuncFailure,
    CvFlag.MEM_FAIL: MemoryFailure,
    CvFlag.MEM_NULL: MemoryNull,
    CvFlag.ILL_INPUT: IllegalInput,
    CvFlag.NO_MALLOC: NotInitialized,
    CvFlag.BAD_K: BadK,
    CvFlag.BAD_T: BadT,
    CvFlag.BAD_DKY: BadDky,
    CvFlag.TOO_CLOSE: TooClose,
    CvFlag.NO_QUAD: QuadNotInitialized,
    CvFlag.QRHSFUNC_FAIL: QuadRhsFuncFailure,
    CvFlag.FIRST_QRHSFUNC_ERR: FirstQuadRhsFuncFailure,
    CvFlag.REPTD_QRHSFUNC_ERR: RepeatedQuadRhsFuncFailure,
    CvFlag.UNREC_QRHSFUNC_ERR: UnrecoverableQuadRhsFuncFailure,
    CvFlag.NO_SENS: SensNotInitialized,
    CvFlag.SRHSFUNC_FAIL: SensRhsFuncFailure,
    CvFlag.FIRST_SRHSFUNC_ERR: FirstSensRhsFuncFailure,
    CvFlag.REPTD_SRHSFUNC_ERR: RepeatedSensRhsFuncFailure,
    CvFlag.UNREC_SRHSFUNC_ERR: UnrecoverableSensRhsFuncFailure,
    CvFlag.BAD_IS: BadSensIdentifier,
    CvFlag.NO_ADJ: AdjointNotInitialized,
    CvFlag.NO_FWD: NoForwardCall,
    CvFlag.NO_BCK: NoBackwardProblem,
    CvFlag.BAD_TB0: BadFinalTime,
    CvFlag.REIFWD_FAIL: ForwardReinitFailure,
    CvFlag.FWD_FAIL: ForwardFailure,
    CvFlag.GETY_BADT: BadOutputTime,
}

IDA_ERRORS: Dict[int, Type[SolverError]] = {
    IdaFlag.TOO_MUCH_WORK: TooMuchWork,
    IdaFlag.TOO_MUCH_ACC: TooMuchAccuracy,
    IdaFlag.ERR_FAIL: ErrFailure,
    IdaFlag.CONV_FAIL: ConvergenceFailure,
    IdaFlag.LINIT_FAIL: LinearInitFailure,
    IdaFlag.LSETUP_FAIL: LinearSetupFailure,
    IdaFlag.LSOLVE_FAIL: LinearSolveFailure,
    IdaFlag.RES_FAIL: ResFuncFailure,
    IdaFlag.REP_RES_ERR: RepeatedResFuncFailure,
    IdaFlag.RTFUNC_FAIL: RootFuncFailure,
    IdaFlag.CONSTR_FAIL: ConstraintFailure,
    IdaFlag.FIRST_RES_FAIL: FirstResFuncFailure,
    IdaFlag.LINESEARCH_FAIL: InitialConditionLineSearchFailure,
    IdaFlag.NO_RECOVERY: InitialConditionNoRecovery,
    IdaFlag.MEM_NULL: MemoryNull,
    IdaFlag.MEM_FAIL: MemoryFailure,
    IdaFlag.ILL_INPUT: IllegalInput,
    IdaFlag.NO_MALLOC: NotInitialized,
    IdaFlag.BAD_EWT: BadErrorWeights,
    IdaFlag.BAD_K: BadK,
    IdaFlag.BAD_T: BadT,
    IdaFlag.BAD_DKY: BadDky,
}

KINSOL_ERRORS: Dict[int, Type[SolverError]] = {
    KinFlag.MEM_NULL: MemoryNull,
    KinFlag.ILL_INPUT: IllegalInput,
    KinFlag.NO_MALLOC: NotInitialized,
    KinFlag.MEM_FAIL: MemoryFailure,
    KinFlag.LINESEARCH_NONCONV: LineSearchNonConvergence,
    KinFlag.MAXITER_REACHED: MaxIterationsReached,
    KinFlag.MXNEWT_5X_EXCEEDED: MaxNewtonStepExceeded,
    KinFlag.LINESEARCH_BCFAIL: LineSearchBetaConditionFailure,
    KinFlag.LINSOLV_NO_RECOVERY: LinearSolverNoRecovery,
    KinFlag.LINIT_FAIL: LinearInitFailure,
    KinFlag.LSETUP_FAIL: LinearSetupFailure,
    KinFlag.LSOLVE_FAIL: LinearSolveFailure,
    KinFlag.SYSFUNC_FAIL: SystemFunctionFailure,
    KinFlag.FIRST_SYSFUNC_ERR: FirstSystemFunctionFailure,
    KinFlag.REPTD_SYSFUNC_ERR: RepeatedSystemFunctionFailure,
}


def error_from_flag(
    table: Mapping[int, Type[SolverError]],
    flag: int,
    flag_names: Optional[type] = None,
    module: str = "engine",
) -> SolverError:
    """Build the exception for a failure ``flag``.

    Parameters
    ----------
    table
        One of the flag-to-exception tables above.
    flag
        Raw engine flag.
    flag_names
        Enum used to name the flag in the message.
    module
        Engine module name for the message.
    """
    cls = table.get(int(flag), SolverError)
    name = str(flag)
    if flag_names is not None:
        try:
            name = f"{flag_names(flag).name} ({int(flag)})"
        except ValueError:
            pass
    return cls(flag, f"{module} returned {name}")
