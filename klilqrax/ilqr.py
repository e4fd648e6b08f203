"""Local approximation, rollouts and covariance propagation of the iLQG model"""

from typing import Callable, Optional, Tuple
import jax
from jax import Array, lax
import jax.numpy as jnp

from klilqrax.policy import LinearGaussianPolicy
from klilqrax.typs import (
    iLQRParams,
    System,
    LQR,
    ControlLimits,
    symmetrise_matrix,
)
from klilqrax.utils import time_map, broadcast_limits

jax.config.update("jax_enable_x64", True)  # double precision


def approx_lqr(
    model: System, Xs: Array, Us: Array, params: iLQRParams, second_order: bool = False
) -> LQR:
    """Approximate non-linear model as LQR by taylor expanding about state and
    control trajectories.

    Args:
        model (System): The system model
        Xs (Array): The state trajectory [T+1,N]
        Us (Array): The control trajectory [T,M]
        params (iLQRParams): The iLQR parameters
        second_order (bool): Also expand the dynamics to second order

    Returns:
        LQR: The LQR parameters.
    """
    theta = params.theta
    tps = jnp.arange(model.dims.horizon)

    (Fx, Fu) = time_map(model.lin_dyn)(tps, Xs[:-1], Us, theta)
    (Cx, Cu) = time_map(model.lin_cost)(tps, Xs[:-1], Us, theta)
    (Cxx, Cxu), (_, Cuu) = time_map(model.quad_cost)(tps, Xs[:-1], Us, theta)
    fCx = jax.jacrev(model.costf)(Xs[-1], theta)
    fCxx = jax.jacfwd(jax.jacrev(model.costf))(Xs[-1], theta)

    curvature = {}
    if second_order:
        (Fxx, Fxu), (_, Fuu) = time_map(model.quad_dyn)(tps, Xs[:-1], Us, theta)
        curvature = dict(Fxx=Fxx, Fxu=Fxu, Fuu=Fuu)

    # set-up LQR
    lqr_params = LQR(
        A=Fx,
        B=Fu,
        Q=Cxx,
        q=Cx,
        R=Cuu,
        r=Cu,
        S=Cxu,
        Qf=fCxx,
        qf=fCx,
        **curvature,
    )()

    return lqr_params


def ilqr_simulate(model: System, Us: Array, params: iLQRParams) -> Tuple[Tuple[Array, Array], Array]:
    """Simulate forward trajectory and per-step cost with nonlinear params

    Args:
        model (System): system model
        Us (ArrayLike): Input timeseries shape [Txm]
        params (iLQRParams): Parameters containing x_init and theta

    Returns:
        Tuple[[Array, Array], Array]: state and control trajectory, and the cost of every
            step [T+1] whose last entry is the final state cost.
    """
    x0, theta = params.x0, params.theta
    tps = jnp.arange(model.dims.horizon)

    def fwd_step(x, inputs):
        t, u = inputs
        nx = model.dynamics(t, x, u, theta)
        return nx, (nx, model.cost(t, x, u, theta))

    xf, (new_Xs, costs) = lax.scan(fwd_step, init=x0, xs=(tps, Us))
    costs = jnp.append(costs, model.costf(xf, theta))
    new_Xs = jnp.vstack([x0[None], new_Xs])
    return (new_Xs, Us), costs


def ilqr_forward_pass(
    model: System,
    params: iLQRParams,
    policy: LinearGaussianPolicy,
    Xs: Array,
    Us: Array,
    lims: Optional[ControlLimits] = None,
    diff_fun: Callable = jnp.subtract,
) -> Tuple[Tuple[Array, Array], Array]:
    """Roll out the mean of the new policy through the nonlinear dynamics.

    The control at every step is u_t = u_old,t + k_t + K_t diff_fun(x_t, x_old,t), clipped to
    the control limits when supplied. ``diff_fun`` measures the state deviation and can be
    replaced for state spaces with wrapped coordinates.

    Args:
        model (System): The nonlinear system model.
        params (iLQRParams): The parameters of the system.
        policy (LinearGaussianPolicy): policy with offsets relative to Us.
        Xs (Array): The nominal state trajectory [T+1,N].
        Us (Array): The nominal control trajectory [T,M].
        lims (ControlLimits, optional): absolute control limits.
        diff_fun (Callable, optional): state difference. Defaults to subtraction.

    Returns:
        Tuple[[Array, Array], Array]: new state and control trajectory, and the cost of
            every step [T+1].
    """
    x0, theta = params.x0, params.theta
    T, m = Us.shape
    tps = jnp.arange(T)
    if lims is not None:
        bounds = broadcast_limits(lims.lower, lims.upper, T, m)
    else:
        bounds = None

    def fwd_step(x_hat, inputs):
        t, x, u, K, k, bound = inputs
        u_hat = u + k + K @ diff_fun(x_hat, x)
        if bound is not None:
            u_hat = jnp.clip(u_hat, *bound)
        nx_hat = model.dynamics(t, x_hat, u_hat, theta)
        return nx_hat, (nx_hat, u_hat, model.cost(t, x_hat, u_hat, theta))

    xf, (new_Xs, new_Us, costs) = lax.scan(
        fwd_step, init=x0, xs=(tps, Xs[:-1], Us, policy.K, policy.k, bounds)
    )
    costs = jnp.append(costs, model.costf(xf, theta))
    new_Xs = jnp.vstack([x0[None], new_Xs])
    return (new_Xs, new_Us), costs


def forward_covariance(
    lqr: LQR,
    policy: LinearGaussianPolicy,
    x0_cov: Optional[Array] = None,
    dyn_cov: Optional[Array] = None,
) -> Array:
    """Joint state-control covariance of the closed-loop trajectory distribution.

    Propagates the state covariance through the local linear dynamics under the policy's
    feedback and noise, Sigma_x[t+1] = [A B] Sigma[t] [A B]^T + W[t].

    Args:
        lqr (LQR): local model along the nominal trajectory
        policy (LinearGaussianPolicy): closed-loop policy
        x0_cov (Array, optional): initial state covariance [N,N], zero by default
        dyn_cov (Array, optional): process noise covariance [N,N] or [T,N,N], zero by default

    Returns:
        Array: joint covariance of (x_t, u_t) [T,N+M,N+M]
    """
    T, n, _ = lqr.B.shape
    Sx0 = jnp.zeros((n, n)) if x0_cov is None else jnp.asarray(x0_cov, dtype=float)
    W = jnp.zeros((T, n, n)) if dyn_cov is None else jnp.broadcast_to(dyn_cov, (T, n, n))

    def cov_step(Sx, inputs):
        A, B, K, Sigma, W_t = inputs
        KS = K @ Sx
        joint = jnp.block([[Sx, KS.T], [KS, symmetrise_matrix(KS @ K.T + Sigma)]])
        F = jnp.hstack([A, B])
        nSx = symmetrise_matrix(F @ joint @ F.T + W_t)
        return nSx, joint

    _, joint = lax.scan(cov_step, Sx0, (lqr.A, lqr.B, policy.K, policy.Sigma, W))
    return joint


def state_deviation(Xs_new: Array, Xs: Array, diff_fun: Callable = jnp.subtract) -> Array:
    """Deviation of the new states from the nominal over the control horizon [T,N]"""
    return jax.vmap(diff_fun)(Xs_new[:-1], Xs[:-1])


def grad_norm(k: Array, Us: Array) -> Array:
    """Mean over time of the largest relative control correction"""
    return jnp.mean(jnp.max(jnp.abs(k) / (jnp.abs(Us) + 1), axis=1))
