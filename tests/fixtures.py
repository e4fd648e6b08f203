"""Generate systems and policies for testing"""
import jax
import jax.numpy as jnp
import jax.random as jr
from jax import Array

from klilqrax.typs import System, ModelDims, iLQRParams, LQR
from klilqrax.policy import make_policy
from klilqrax.utils import keygen, random_spd, initialise_stable_dynamics

jax.config.update("jax_enable_x64", True)  # double precision


def integrator_system(horizon: int = 10, n: int = 2) -> System:
    """x' = x + u, cost x^2 + u^2, final cost x^2"""

    def cost(t: int, x: Array, u: Array, theta):
        return jnp.sum(x**2) + jnp.sum(u**2)

    def costf(x: Array, theta):
        return jnp.sum(x**2)

    def dynamics(t: int, x: Array, u: Array, theta):
        return x + u

    return System(cost, costf, dynamics, ModelDims(n=n, m=n, horizon=horizon, dt=1.0))


def integrator_params(n: int = 2) -> iLQRParams:
    return iLQRParams(x0=jnp.linspace(1.0, -0.5, n), theta=None)


def pendulum_system(horizon: int = 20, dt: float = 0.05) -> System:
    """Torque-controlled pendulum, upright target"""

    def cost(t: int, x: Array, u: Array, theta):
        return 0.1 * jnp.sum((x - jnp.array([jnp.pi, 0.0])) ** 2) + 0.01 * jnp.sum(u**2)

    def costf(x: Array, theta):
        return jnp.sum((x - jnp.array([jnp.pi, 0.0])) ** 2)

    def dynamics(t: int, x: Array, u: Array, theta):
        theta_, omega = x
        domega = -9.81 * jnp.sin(theta_) + u[0]
        return jnp.array([theta_ + dt * omega, omega + dt * domega])

    return System(cost, costf, dynamics, ModelDims(n=2, m=1, horizon=horizon, dt=dt))


def random_lqr(key, T: int, n: int, m: int) -> LQR:
    """Random convex LQR problem"""
    key, skeys = keygen(key, 9)
    A = initialise_stable_dynamics(next(skeys), n, T, radii=0.6)
    B = jr.normal(next(skeys), (T, n, m))
    Q = random_spd(next(skeys), n, T)
    R = random_spd(next(skeys), m, T)
    S = 0.05 * jr.normal(next(skeys), (T, n, m))
    q = jr.normal(next(skeys), (T, n))
    r = jr.normal(next(skeys), (T, m))
    Qf = random_spd(next(skeys), n, 1)[0]
    qf = jr.normal(next(skeys), (n,))
    return LQR(A=A, B=B, Q=Q, q=q, R=R, r=r, S=S, Qf=Qf, qf=qf)()


def random_policy(key, T: int, n: int, m: int):
    """Random policy with positive definite covariance"""
    key, skeys = keygen(key, 3)
    K = 0.5 * jr.normal(next(skeys), (T, m, n))
    k = jr.normal(next(skeys), (T, m))
    Sigma = random_spd(next(skeys), m, T)
    return make_policy(K, k, Sigma)
