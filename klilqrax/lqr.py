"""Riccati backward recursion with a dual variable on the KL-divergence to a previous policy"""

from typing import NamedTuple, Optional, Tuple
import jax
from jax import Array, lax
import jax.numpy as jnp
import jax.scipy.linalg as jsl
from jax.typing import ArrayLike
from jaxopt import BoxCDQP

from klilqrax.typs import (
    LQR,
    KLCostTerms,
    ControlLimits,
    symmetrise_matrix,
)
from klilqrax.policy import LinearGaussianPolicy
from klilqrax.utils import broadcast_limits, chol_is_pos_def

jax.config.update("jax_enable_x64", True)  # double precision

BOX_QP_MAXITER = 200
BOX_QP_TOL = 1e-10
FREE_TOL = 1e-8


class BackwardPassResult(NamedTuple):
    """Output of the backward pass

    diverge : Array
        1-indexed time step at which the control Hessian was not positive definite,
        0 if the pass succeeded
    policy : LinearGaussianPolicy
        new policy, offsets relative to the nominal controls
    Vx, Vxx : Array
        value function gradient [T+1,N] and Hessian [T+1,N,N]
    dV : Array
        predicted cost change [linear term, quadratic term]
    """

    diverge: Array
    policy: LinearGaussianPolicy
    Vx: Array
    Vxx: Array
    dV: Array


def calc_expected_change(dV: Array, alpha: float = 1.0) -> Array:
    """Expected change in cost for a step of size alpha"""
    return dV[0] * alpha + dV[1] * alpha**2


def _curvature(Vx: Array, F2: Tuple[Array, Array, Array]) -> Tuple[Array, Array, Array]:
    """Second-order dynamics correction Vx . f_xx, Vx . f_ux, Vx . f_uu"""
    Fxx, Fxu, Fuu = F2
    return (
        jnp.einsum("i,ijk->jk", Vx, Fxx),
        jnp.einsum("i,ijk->kj", Vx, Fxu),
        jnp.einsum("i,ijk->jk", Vx, Fuu),
    )


def box_qp_gains(
    Quu: Array, Qu: Array, Qux: Array, Quu_inv: Array, lower: Array, upper: Array
) -> Tuple[Array, Array]:
    """Offset and feedback under box limits on the control correction.

    The offset solves min 0.5 k^T Quu k + Qu^T k s.t. lower <= k <= upper. The feedback
    acts on the free (non-clamped) controls only, clamped rows are zero.
    """
    m = Qu.shape[0]
    k_init = jnp.clip(-Quu_inv @ Qu, lower, upper)
    qp = BoxCDQP(maxiter=BOX_QP_MAXITER, tol=BOX_QP_TOL)
    k = qp.run(k_init, params_obj=(Quu, Qu), params_ineq=(lower, upper)).params
    free = jnp.logical_and(k > lower + FREE_TOL, k < upper - FREE_TOL)
    Quu_free = jnp.where(jnp.outer(free, free), Quu, jnp.eye(m))
    K = -jnp.linalg.solve(Quu_free, jnp.where(free[:, None], Qux, 0.0))
    return k, K


@jax.jit
def kl_backward_pass(
    lqr: LQR,
    eta: ArrayLike,
    kl_terms: Optional[KLCostTerms] = None,
    lims: Optional[ControlLimits] = None,
    Us: Optional[Array] = None,
) -> BackwardPassResult:
    """Backward pass of the KL-constrained LQG problem.

    At every step the local objective is (1/eta_t) * cost + KL penalty, so a larger
    dual variable trades cost reduction for fidelity to the previous policy. The control
    Hessian Quu must be positive definite; its inverse is the new control covariance.
    Along with the optimisation recursion, the unscaled cost is evaluated
    under the new controller to predict the cost change dV.

    Args:
        lqr (LQR): local model along the nominal trajectory
        eta (ArrayLike): dual variable, scalar or [T]
        kl_terms (KLCostTerms, optional): KL penalty toward the previous policy,
            None for the plain LQR problem
        lims (ControlLimits, optional): absolute control limits
        Us (Array, optional): nominal controls [T,M], required to shift the limits

    Returns:
        BackwardPassResult: divergence flag, policy, value derivatives and dV
    """
    T, n, m = lqr.B.shape
    eta = jnp.broadcast_to(jnp.asarray(eta, dtype=float), (T,))
    if kl_terms is None:
        kl_terms = KLCostTerms(
            cx=jnp.zeros((T, n)),
            cu=jnp.zeros((T, m)),
            cxx=jnp.zeros((T, n, n)),
            cxu=jnp.zeros((T, n, m)),
            cuu=jnp.zeros((T, m, m)),
        )
    if lims is not None:
        Us = jnp.zeros((T, m)) if Us is None else Us
        lower, upper = broadcast_limits(lims.lower, lims.upper, T, m)
        bounds = (lower - Us, upper - Us)
    else:
        bounds = None
    F2 = (lqr.Fxx, lqr.Fxu, lqr.Fuu) if lqr.second_order else None

    def riccati_step(carry, inputs):
        Vx, Vxx, vc, Vc, dV = carry
        t, A, B, Q, q, R, r, S, eta_t, kl, bound, F2_t = inputs
        w = 1.0 / eta_t

        # scaled cost + KL penalty
        Qx = w * q + kl.cx + A.T @ Vx
        Qu = w * r + kl.cu + B.T @ Vx
        Qxx = w * Q + kl.cxx + A.T @ Vxx @ A
        Qux = w * S.T + kl.cxu.T + B.T @ Vxx @ A
        Quu = w * R + kl.cuu + B.T @ Vxx @ B

        # unscaled cost
        Qx_c = q + A.T @ vc
        Qu_c = r + B.T @ vc
        Qxx_c = Q + A.T @ Vc @ A
        Qux_c = S.T + B.T @ Vc @ A
        Quu_c = R + B.T @ Vc @ B

        if F2_t is not None:
            dxx, dux, duu = _curvature(Vx, F2_t)
            Qxx, Qux, Quu = Qxx + dxx, Qux + dux, Quu + duu
            dxx, dux, duu = _curvature(vc, F2_t)
            Qxx_c, Qux_c, Quu_c = Qxx_c + dxx, Qux_c + dux, Quu_c + duu

        Quu = symmetrise_matrix(Quu)
        L = jnp.linalg.cholesky(Quu)
        pos_def = chol_is_pos_def(L)
        Quu_inv = symmetrise_matrix(jsl.cho_solve((L, True), jnp.eye(m)))

        if bound is None:
            k = -Quu_inv @ Qu
            K = -Quu_inv @ Qux
        else:
            k, K = box_qp_gains(Quu, Qu, Qux, Quu_inv, *bound)

        Vx = Qx + K.T @ Quu @ k + K.T @ Qu + Qux.T @ k
        Vxx = symmetrise_matrix(Qxx + K.T @ Quu @ K + K.T @ Qux + Qux.T @ K)
        vc = Qx_c + K.T @ Quu_c @ k + K.T @ Qu_c + Qux_c.T @ k
        Vc = symmetrise_matrix(Qxx_c + K.T @ Quu_c @ K + K.T @ Qux_c + Qux_c.T @ K)
        dV = dV + jnp.array([k @ Qu_c, 0.5 * k @ Quu_c @ k])

        diverge = jnp.where(pos_def, 0, t + 1)
        return (Vx, Vxx, vc, Vc, dV), (K, k, Quu_inv, Quu, Vx, Vxx, diverge)

    w_f = 1.0 / eta[-1]
    init = (w_f * lqr.qf, w_f * lqr.Qf, lqr.qf, lqr.Qf, jnp.zeros(2))
    (_, _, _, _, dV), (K, k, Sigma, Sigma_inv, Vx, Vxx, diverge) = lax.scan(
        riccati_step,
        init=init,
        xs=(
            jnp.arange(T),
            lqr.A,
            lqr.B,
            lqr.Q,
            lqr.q,
            lqr.R,
            lqr.r,
            lqr.S,
            eta,
            kl_terms,
            bounds,
            F2,
        ),
        reverse=True,
    )
    policy = LinearGaussianPolicy(K=K, k=k, Sigma=Sigma, Sigma_inv=Sigma_inv)
    Vx = jnp.concatenate([Vx, w_f * lqr.qf[None]])
    Vxx = jnp.concatenate([Vxx, w_f * lqr.Qf[None]])
    return BackwardPassResult(jnp.max(diverge), policy, Vx, Vxx, dV)


def lqr_backward_pass(lqr: LQR, lims: Optional[ControlLimits] = None, Us: Optional[Array] = None):
    """Plain LQR backward pass: no KL penalty and unit dual variable"""
    return kl_backward_pass(lqr, 1.0, None, lims, Us)
