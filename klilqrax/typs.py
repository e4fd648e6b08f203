"""Define data structures and types"""

from enum import Enum
from typing import NamedTuple, Callable, Any, Optional, Tuple, Union
from jax import Array
from jax.typing import ArrayLike
from flax import struct
from klilqrax.utils import linearise, quadratise


def symmetrise_tensor(x: Array) -> Array:
    """Symmetrise tensor"""
    assert x.ndim == 3
    return (x + x.transpose(0, 2, 1)) / 2


def symmetrise_matrix(x: Array) -> Array:
    """Symmetrise matrix"""
    assert x.ndim == 2
    return (x + x.T) / 2


class ModelDims(NamedTuple):
    """Model dimensions"""

    n: int
    m: int
    horizon: int
    dt: float


class Gains(NamedTuple):
    """Linear input gains"""

    K: ArrayLike
    k: ArrayLike


class System:
    """iLQG System

    cost : Callable
        running cost l(t, x, u, params)
    costf : Callable
        final state cost lf(xf, params)
    dynamics : Callable
        dynamical update f(t, x, u, params)
    dims : ModelDims
        evaluate time horizon, dt, state and input dimension
    lin_dyn, lin_cost, quad_cost, quad_dyn : Callable, optional
        derivative providers with signature (t, x, u, params); default to autodiff
    """

    def __init__(
        self,
        cost: Callable,
        costf: Callable,
        dynamics: Callable,
        dims: ModelDims,
        lin_dyn: Optional[Callable] = None,
        lin_cost: Optional[Callable] = None,
        quad_cost: Optional[Callable] = None,
        quad_dyn: Optional[Callable] = None,
    ):
        self.cost = cost
        self.costf = costf
        self.dynamics = dynamics
        self.dims = dims
        self.lin_dyn = linearise(self.dynamics) if lin_dyn is None else lin_dyn
        self.lin_cost = linearise(self.cost) if lin_cost is None else lin_cost
        self.quad_cost = quadratise(self.cost) if quad_cost is None else quad_cost
        self.quad_dyn = quadratise(self.dynamics) if quad_dyn is None else quad_dyn


class LQR(NamedTuple):
    """Local LQR approximation along a nominal trajectory

    Args:
        NamedTuple (jnp.ndarray): Dynamics and Cost parameters. Shape [T,X,Y].
            Fxx, Fxu, Fuu are optional second-order dynamics terms of shape
            [T,N,N,N], [T,N,N,M], [T,N,M,M].
    """

    A: Array
    B: Array
    Q: Array
    q: Array
    R: Array
    r: Array
    S: Array
    Qf: Array
    qf: Array
    Fxx: Optional[Array] = None
    Fxu: Optional[Array] = None
    Fuu: Optional[Array] = None

    def __call__(self):
        """Symmetrise quadratic costs"""
        return self._replace(
            Q=symmetrise_tensor(self.Q),
            R=symmetrise_tensor(self.R),
            Qf=symmetrise_matrix(self.Qf),
        )

    @property
    def second_order(self) -> bool:
        return self.Fxx is not None


class KLCostTerms(NamedTuple):
    """Quadratic expansion of the negative log-likelihood of a reference policy"""

    cx: Array
    cu: Array
    cxx: Array
    cxu: Array
    cuu: Array


class ControlLimits(NamedTuple):
    """Box limits on the control signal, broadcastable to [T,M]"""

    lower: ArrayLike
    upper: ArrayLike


class iLQRParams(NamedTuple):
    """Non-linear parameter struct"""

    x0: ArrayLike
    theta: Any


class SolverStatus(Enum):
    """Exit reason of the KL-constrained solver"""

    SATISFIED = 0
    ETA_SATURATED = 1
    MAX_ITERATIONS = 2


@struct.dataclass
class KLConfig:
    """Tunables of the KL-constrained iLQG solver

    kl_step : float
        bound on the KL-divergence between new and previous trajectory distribution
        (mean over time steps, or per time step when ``constrain_per_step``)
    constrain_per_step : bool
        enforce an independent bound at every time step
    max_iter : int
        outer iteration budget
    eta_bracket : Tuple[float, float, float]
        initial dual variable bracket (min, eta, max)
    del0 : float
        initial increment of eta after a failed backward pass
    gd_alpha : float
        step size of the log-space gradient ascent in per-step mode
    kl_tol : float
        relative tolerance on the global constraint
    per_step_max_ratio, per_step_mean_tol : float
        per-step convergence: all divergences < max_ratio * kl_step and
        mean violation < mean_tol * kl_step
    residual_margin : float
        relative margin above which remaining per-step violations are reported
    saturation_ratio : float
        eta is saturated once eta > saturation_ratio * eta_max
    second_order : bool
        include second-order dynamics terms in the backward pass
    """

    kl_step: float = struct.field(pytree_node=False, default=1.0)
    constrain_per_step: bool = struct.field(pytree_node=False, default=False)
    max_iter: int = struct.field(pytree_node=False, default=50)
    eta_bracket: Tuple[float, float, float] = struct.field(
        pytree_node=False, default=(1e-8, 1.0, 1e16)
    )
    del0: float = struct.field(pytree_node=False, default=1e-4)
    gd_alpha: float = struct.field(pytree_node=False, default=0.01)
    kl_tol: float = struct.field(pytree_node=False, default=0.1)
    per_step_max_ratio: float = struct.field(pytree_node=False, default=2.0)
    per_step_mean_tol: float = struct.field(pytree_node=False, default=0.1)
    residual_margin: float = struct.field(pytree_node=False, default=0.1)
    saturation_ratio: float = struct.field(pytree_node=False, default=0.999)
    second_order: bool = struct.field(pytree_node=False, default=False)


class Trace(NamedTuple):
    """Diagnostics of one outer iteration"""

    iteration: int
    time_derivs: float
    time_backward: float
    time_forward: float
    cost: float
    improvement: float
    expected_reduction: float
    reduce_ratio: float
    grad_norm: float
    divergence: float
    eta: Union[float, Array]
    entropy: float
    satisfied: bool


class KLSolution(NamedTuple):
    """Output of the KL-constrained iLQG solver"""

    Xs: Array
    Us: Array
    policy: Any
    Vx: Optional[Array]
    Vxx: Optional[Array]
    costs: Array
    trace: Tuple[Trace, ...]
    eta: Union[float, Array]
    satisfied: bool
    status: SolverStatus
    kl_exceeded: bool
    divergence: Optional[Array]
