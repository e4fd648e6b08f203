"""Derivative, random-problem and linear algebra helpers shared across the package"""

from typing import Callable, Tuple
import jax
from jax import Array
import jax.random as jr
import jax.numpy as jnp
from jax.typing import ArrayLike


def keygen(key, nkeys):
    """Split ``key`` into a fresh key and a generator of ``nkeys`` subkeys"""
    keys = jr.split(key, nkeys + 1)
    return keys[0], (k for k in keys[1:])


def initialise_stable_dynamics(
    key: Tuple[int, int], n_dim: int, T: int, radii: float = 0.6
) -> Array:
    """Time-invariant random state matrix tiled over the horizon [T, n, n].

    Args:
        key (Tuple[int,int]): random key
        n_dim (int): state dimensions
        T (int): horizon
        radii (float, optional): scale of the random part. Defaults to 0.6.
    """
    mat = jr.normal(key, (n_dim, n_dim)) * radii / jnp.sqrt(n_dim) - jnp.eye(n_dim)
    return jnp.tile(mat, (T, 1, 1))


def random_spd(key: Tuple[int, int], n_dim: int, T: int, jitter: float = 0.5) -> Array:
    """Stack of symmetric positive definite matrices [T, n, n]"""
    L = jr.normal(key, (T, n_dim, n_dim)) / jnp.sqrt(n_dim)
    return L @ L.transpose(0, 2, 1) + jitter * jnp.eye(n_dim)


def linearise(fun: Callable) -> Callable:
    """Jacobians of fun(t, x, u, theta) w.r.t. x and u"""
    return jax.jacrev(fun, argnums=(1, 2))


def quadratise(fun: Callable) -> Callable:
    """Hessian blocks ((f_xx, f_xu), (f_ux, f_uu)) of fun(t, x, u, theta).

    For a vector-valued ``fun`` (dynamics) the output dimension comes first, e.g.
    f_xu has shape [n, n, m].
    """
    return jax.jacfwd(jax.jacrev(fun, argnums=(1, 2)), argnums=(1, 2))


def time_map(fun: Callable) -> Callable:
    """Map fun(t, x, u, theta) over the leading time axis of t, x and u; theta is shared"""
    return jax.vmap(fun, in_axes=(0, 0, 0, None))


def broadcast_limits(lower: ArrayLike, upper: ArrayLike, T: int, m: int) -> Tuple[Array, Array]:
    """Control limits as float arrays of shape [T, m]"""
    return (
        jnp.broadcast_to(jnp.asarray(lower, dtype=float), (T, m)),
        jnp.broadcast_to(jnp.asarray(upper, dtype=float), (T, m)),
    )


def chol_is_pos_def(L: Array) -> Array:
    """Whether a cholesky factorisation succeeded: finite factor with positive diagonal"""
    return jnp.logical_and(jnp.all(jnp.isfinite(L)), jnp.all(jnp.diag(L) > 0))


def logdet_chol(L: Array) -> Array:
    """Log-determinant from a lower cholesky factor"""
    return 2 * jnp.sum(jnp.log(jnp.diagonal(L, axis1=-2, axis2=-1)), axis=-1)
