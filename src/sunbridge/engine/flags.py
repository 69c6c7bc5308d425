"""Return codes, callback kinds and solver enumerations of the engine.

Every engine entry point returns one of the integer flags defined here and
every callback registered with the engine must return an integer status:
zero on success, a positive value for a recoverable failure and a negative
value for an unrecoverable one.

:class:`CallbackKind` is the registration order understood by
``set_callback``; the binding layer imports it from here rather than
keeping a copy of its own.
"""
from enum import IntEnum


class CallbackKind(IntEnum):
    """Slots in which a callback can be registered with an engine memory."""

    RHS = 0
    ROOTS = 1
    ERROR_HANDLER = 2
    ERROR_WEIGHT = 3
    DENSE_JAC = 4
    BAND_JAC = 5
    PREC_SETUP = 6
    PREC_SOLVE = 7
    JAC_TIMES_VEC = 8
    BBD_LOCAL = 9
    BBD_COMM = 10
    QUAD_RHS = 11
    SENS_RHS = 12
    SENS_RHS1 = 13
    # Backward problems, registered through the adjoint memory with a
    # ``which`` index identifying the problem.
    B_RHS = 14
    B_RHS_SENS = 15
    B_QUAD_RHS = 16
    B_QUAD_RHS_SENS = 17
    B_DENSE_JAC = 18
    B_BAND_JAC = 19
    B_PREC_SETUP = 20
    B_PREC_SOLVE = 21
    B_JAC_TIMES_VEC = 22
    B_BBD_LOCAL = 23
    B_BBD_COMM = 24
    # DAE residual and nonlinear system function.
    RES = 25
    SYSFN = 26


#: Callback kinds that belong to the linear solver rather than the problem.
LINEAR_SOLVER_KINDS = frozenset({
    CallbackKind.DENSE_JAC,
    CallbackKind.BAND_JAC,
    CallbackKind.PREC_SETUP,
    CallbackKind.PREC_SOLVE,
    CallbackKind.JAC_TIMES_VEC,
    CallbackKind.BBD_LOCAL,
    CallbackKind.BBD_COMM,
})

#: Backward callback kinds and the forward slot they drive on the
#: backward problem's own integrator memory.
BACKWARD_KINDS = {
    CallbackKind.B_RHS: CallbackKind.RHS,
    CallbackKind.B_RHS_SENS: CallbackKind.RHS,
    CallbackKind.B_QUAD_RHS: CallbackKind.QUAD_RHS,
    CallbackKind.B_QUAD_RHS_SENS: CallbackKind.QUAD_RHS,
    CallbackKind.B_DENSE_JAC: CallbackKind.DENSE_JAC,
    CallbackKind.B_BAND_JAC: CallbackKind.BAND_JAC,
    CallbackKind.B_PREC_SETUP: CallbackKind.PREC_SETUP,
    CallbackKind.B_PREC_SOLVE: CallbackKind.PREC_SOLVE,
    CallbackKind.B_JAC_TIMES_VEC: CallbackKind.JAC_TIMES_VEC,
    CallbackKind.B_BBD_LOCAL: CallbackKind.BBD_LOCAL,
    CallbackKind.B_BBD_COMM: CallbackKind.BBD_COMM,
}


class Lmm(IntEnum):
    """Linear multistep method family."""

    ADAMS = 1
    BDF = 2


class Iteration(IntEnum):
    """Nonlinear iteration used to solve the corrector equation."""

    FUNCTIONAL = 1
    NEWTON = 2


class Task(IntEnum):
    """Advance mode: stop at the requested time, or after one step."""

    NORMAL = 1
    ONE_STEP = 2


class ConvFail(IntEnum):
    """Reason passed to a linear solver setup."""

    NO_FAILURES = 0
    FAIL_BAD_J = 1
    FAIL_OTHER = 2


class PrecType(IntEnum):
    """Side(s) on which a Krylov solver applies its preconditioner."""

    NONE = 0
    LEFT = 1
    RIGHT = 2
    BOTH = 3


class GramSchmidt(IntEnum):
    """Orthogonalisation used by GMRES."""

    MODIFIED = 1
    CLASSICAL = 2


class KrylovMethod(IntEnum):
    """Krylov iteration used by the iterative linear solver."""

    SPGMR = 1
    SPBCG = 2
    SPTFQMR = 3


class IcOpt(IntEnum):
    """Which components a DAE initial-condition calculation corrects."""

    YA_YDP_INIT = 1
    Y_INIT = 2


class KinStrategy(IntEnum):
    """Global strategy applied to the Newton step."""

    NONE = 0
    LINESEARCH = 1


class CvFlag(IntEnum):
    """Return codes of the ODE integrator and its extensions."""

    SUCCESS = 0
    TSTOP_RETURN = 1
    ROOT_RETURN = 2
    WARNING = 99

    TOO_MUCH_WORK = -1
    TOO_MUCH_ACC = -2
    ERR_FAILURE = -3
    CONV_FAILURE = -4
    LINIT_FAIL = -5
    LSETUP_FAIL = -6
    LSOLVE_FAIL = -7
    RHSFUNC_FAIL = -8
    FIRST_RHSFUNC_ERR = -9
    REPTD_RHSFUNC_ERR = -10
    UNREC_RHSFUNC_ERR = -11
    RTFUNC_FAIL = -12

    MEM_FAIL = -20
    MEM_NULL = -21
    ILL_INPUT = -22
    NO_MALLOC = -23
    BAD_K = -24
    BAD_T = -25
    BAD_DKY = -26
    TOO_CLOSE = -27

    NO_QUAD = -30
    QRHSFUNC_FAIL = -31
    FIRST_QRHSFUNC_ERR = -32
    REPTD_QRHSFUNC_ERR = -33
    UNREC_QRHSFUNC_ERR = -34

    NO_SENS = -40
    SRHSFUNC_FAIL = -41
    FIRST_SRHSFUNC_ERR = -42
    REPTD_SRHSFUNC_ERR = -43
    UNREC_SRHSFUNC_ERR = -44
    BAD_IS = -45

    NO_ADJ = -101
    NO_FWD = -102
    NO_BCK = -103
    BAD_TB0 = -104
    REIFWD_FAIL = -105
    FWD_FAIL = -106
    GETY_BADT = -107


class IdaFlag(IntEnum):
    """Return codes of the DAE integrator."""

    SUCCESS = 0
    TSTOP_RETURN = 1
    ROOT_RETURN = 2
    WARNING = 99

    TOO_MUCH_WORK = -1
    TOO_MUCH_ACC = -2
    ERR_FAIL = -3
    CONV_FAIL = -4
    LINIT_FAIL = -5
    LSETUP_FAIL = -6
    LSOLVE_FAIL = -7
    RES_FAIL = -8
    REP_RES_ERR = -9
    RTFUNC_FAIL = -10
    CONSTR_FAIL = -11
    FIRST_RES_FAIL = -12
    LINESEARCH_FAIL = -13
    NO_RECOVERY = -14

    MEM_NULL = -20
    MEM_FAIL = -21
    ILL_INPUT = -22
    NO_MALLOC = -23
    BAD_EWT = -24
    BAD_K = -25
    BAD_T = -26
    BAD_DKY = -27


class KinFlag(IntEnum):
    """Return codes of the nonlinear solver."""

    SUCCESS = 0
    INITIAL_GUESS_OK = 1
    STEP_LT_STPTOL = 2
    WARNING = 99

    MEM_NULL = -1
    ILL_INPUT = -2
    NO_MALLOC = -3
    MEM_FAIL = -4
    LINESEARCH_NONCONV = -5
    MAXITER_REACHED = -6
    MXNEWT_5X_EXCEEDED = -7
    LINESEARCH_BCFAIL = -8
    LINSOLV_NO_RECOVERY = -9
    LINIT_FAIL = -10
    LSETUP_FAIL = -11
    LSOLVE_FAIL = -12
    SYSFUNC_FAIL = -13
    FIRST_SYSFUNC_ERR = -14
    REPTD_SYSFUNC_ERR = -15
