from .typs import (
    ModelDims,
    System,
    LQR,
    KLCostTerms,
    ControlLimits,
    iLQRParams,
    Gains,
    KLConfig,
    Trace,
    KLSolution,
    SolverStatus,
    symmetrise_matrix,
    symmetrise_tensor,
)

from .policy import (
    LinearGaussianPolicy,
    make_policy,
    init_policy,
    policy_action,
    entropy,
    kl_divergence,
    kl_cost_terms,
)

from .lqr import (
    BackwardPassResult,
    kl_backward_pass,
    lqr_backward_pass,
    calc_expected_change,
)

from .ilqr import (
    approx_lqr,
    ilqr_simulate,
    ilqr_forward_pass,
    forward_covariance,
    state_deviation,
    grad_norm,
)

from .dual import (
    DualBracket,
    GlobalDualUpdate,
    PerStepDualUpdate,
    AdamOptimizer,
    make_dual_update,
)

from .diagnostics import (
    NullDiagnostics,
    PrintDiagnostics,
)

from .ilqg_kl import (
    ilqg_kl_solver,
    backward_pass_with_retries,
)

from .utils import (
    keygen,
    initialise_stable_dynamics,
)
