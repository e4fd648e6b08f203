"""Time-varying linear-Gaussian (TVLG) policy

A policy holds, for every time step t, the distribution over controls

    u_t ~ N(u_nom_t + k_t + K_t (x_t - x_nom_t), Sigma_t)

The offsets k are expressed relative to a frame of nominal controls. A solver that
works on deviations from a nominal trajectory uses ``relative_to`` to express the
previous policy in that frame (zero offsets) and ``shift`` to compose the correction
back onto the nominal controls. Both return new policies, the input is never mutated.
"""

from typing import NamedTuple, Optional
import jax
from jax import Array
import jax.numpy as jnp
import jax.random as jr
from jax.typing import ArrayLike

from klilqrax.typs import Gains, KLCostTerms, ModelDims, symmetrise_tensor
from klilqrax.utils import logdet_chol


class LinearGaussianPolicy(NamedTuple):
    """TVLG policy

    Args:
        K (Array): feedback gains [T,M,N]
        k (Array): offsets [T,M]
        Sigma (Array): control noise covariance [T,M,M]
        Sigma_inv (Array): precision [T,M,M]
    """

    K: Array
    k: Array
    Sigma: Array
    Sigma_inv: Array

    @property
    def horizon(self) -> int:
        return self.k.shape[0]

    @property
    def gains(self) -> Gains:
        return Gains(K=self.K, k=self.k)

    def scale(self, c: ArrayLike) -> "LinearGaussianPolicy":
        """Multiply the offsets by a scalar"""
        return self._replace(k=c * self.k)

    def shift(self, offsets: ArrayLike) -> "LinearGaussianPolicy":
        """Add ``offsets`` [T,M] to the offsets"""
        return self._replace(k=self.k + offsets)

    def relative_to(self, controls: ArrayLike) -> "LinearGaussianPolicy":
        """Express the offsets relative to a sequence of nominal controls [T,M]"""
        return self._replace(k=self.k - controls)


def make_policy(K: Array, k: Array, Sigma: Array) -> LinearGaussianPolicy:
    """Build policy and precision matrices from gains and covariances"""
    Sigma = symmetrise_tensor(jnp.asarray(Sigma))
    Sigma_inv = symmetrise_tensor(jnp.linalg.inv(Sigma))
    return LinearGaussianPolicy(K=jnp.asarray(K), k=jnp.asarray(k), Sigma=Sigma, Sigma_inv=Sigma_inv)


def init_policy(
    dims: ModelDims, Us: Optional[Array] = None, sigma: float = 1.0
) -> LinearGaussianPolicy:
    """Policy without feedback, offsets ``Us`` (zero if omitted) and isotropic noise"""
    T, n, m = dims.horizon, dims.n, dims.m
    k = jnp.zeros((T, m)) if Us is None else jnp.asarray(Us, dtype=float)
    eye = jnp.tile(jnp.eye(m), (T, 1, 1))
    return LinearGaussianPolicy(
        K=jnp.zeros((T, m, n)), k=k, Sigma=sigma * eye, Sigma_inv=eye / sigma
    )


def policy_action(
    policy: LinearGaussianPolicy,
    t: int,
    x: Array,
    x_nom: Array,
    u_nom: Array,
    key: Optional[Array] = None,
    diff_fun=jnp.subtract,
) -> Array:
    """Control of the maximum entropy controller at time ``t``.

    Returns the mean control when no random ``key`` is given, otherwise a sample
    u = u_nom + k + K dx + chol(Sigma) eps.
    """
    u = u_nom + policy.k[t] + policy.K[t] @ diff_fun(x, x_nom)
    if key is None:
        return u
    L = jnp.linalg.cholesky(policy.Sigma[t])
    return u + L @ jr.normal(key, u.shape)


def entropy(policy: LinearGaussianPolicy, per_step: bool = False) -> Array:
    """Differential entropy of the control noise, 0.5 logdet(2 pi e Sigma_t)"""
    m = policy.Sigma.shape[-1]
    logdets = logdet_chol(jnp.linalg.cholesky(policy.Sigma))
    ent = 0.5 * (m * jnp.log(2 * jnp.pi * jnp.e) + logdets)
    return ent if per_step else jnp.sum(ent)


def kl_divergence(
    new: LinearGaussianPolicy,
    prev: LinearGaussianPolicy,
    state_mean: Optional[Array] = None,
    state_cov: Optional[Array] = None,
    per_step: bool = True,
) -> Array:
    """Expected KL-divergence KL(new(u|x) || prev(u|x)) under a Gaussian state distribution.

    Both policies must be expressed in the same frame of nominal controls. The state
    distribution is given by the mean deviation from the nominal states ``state_mean``
    [T,N] and its covariance ``state_cov`` [T,N,N] (both zero if omitted, which reduces
    to the KL-divergence of the control distributions at the nominal states).

    Args:
        new (LinearGaussianPolicy): new policy
        prev (LinearGaussianPolicy): reference policy
        state_mean (Array, optional): mean state deviation [T,N]
        state_cov (Array, optional): state covariance [T,N,N]
        per_step (bool): return the divergence of every time step, else the sum

    Returns:
        Array: KL-divergence [T] or scalar
    """
    T, m, n = new.K.shape
    mu = jnp.zeros((T, n)) if state_mean is None else state_mean
    Sx = jnp.zeros((T, n, n)) if state_cov is None else state_cov

    def step_kl(K, k, Sigma, K0, k0, Sigma0, P0, mu_t, Sx_t):
        dK = K - K0
        dk = k - k0 + dK @ mu_t
        logdet_new = logdet_chol(jnp.linalg.cholesky(Sigma))
        logdet_prev = logdet_chol(jnp.linalg.cholesky(Sigma0))
        kl = 0.5 * (
            jnp.trace(P0 @ Sigma)
            - m
            + logdet_prev
            - logdet_new
            + dk @ P0 @ dk
            + jnp.trace(dK.T @ P0 @ dK @ Sx_t)
        )
        return jnp.maximum(kl, 0.0)

    kl = jax.vmap(step_kl)(
        new.K, new.k, new.Sigma, prev.K, prev.k, prev.Sigma, prev.Sigma_inv, mu, Sx
    )
    return kl if per_step else jnp.sum(kl)


def kl_cost_terms(policy: LinearGaussianPolicy) -> KLCostTerms:
    """Quadratic expansion of -log policy(u|x) in (dx, du), dropping constants.

    0.5 (du - K dx - k)^T P (du - K dx - k) = 0.5 [dx;du]^T C [dx;du] + [dx;du]^T c + const
    """
    K, k, P = policy.K, policy.k, policy.Sigma_inv
    KT = K.transpose(0, 2, 1)
    Pk = jnp.einsum("tij,tj->ti", P, k)
    return KLCostTerms(
        cx=jnp.einsum("tnm,tm->tn", KT, Pk),
        cu=-Pk,
        cxx=symmetrise_tensor(KT @ P @ K),
        cxu=-KT @ P,
        cuu=P,
    )
