"""Swing-up of a torque-limited pendulum with a KL-bounded maximum entropy controller"""

import logging
from jax import Array
import jax
import jax.numpy as jnp
import jax.random as jr

from klilqrax import (
    System,
    ModelDims,
    iLQRParams,
    KLConfig,
    ControlLimits,
    PrintDiagnostics,
    init_policy,
    policy_action,
    ilqg_kl_solver,
)
from klilqrax.utils import keygen

jax.config.update("jax_enable_x64", True)  # double precision


def problem_setup(horizon: int = 100, dt: float = 0.05) -> System:
    target = jnp.array([jnp.pi, 0.0])

    def dynamics(t: int, x: Array, u: Array, theta) -> Array:
        angle, omega = x
        domega = -theta["g"] / theta["l"] * jnp.sin(angle) - theta["b"] * omega + u[0]
        return jnp.array([angle + dt * omega, omega + dt * domega])

    def cost(t: int, x: Array, u: Array, theta):
        return 0.1 * jnp.sum((x - target) ** 2) + 0.01 * jnp.sum(u**2)

    def costf(x: Array, theta):
        return 10.0 * jnp.sum((x - target) ** 2)

    return System(cost, costf, dynamics, ModelDims(n=2, m=1, horizon=horizon, dt=dt))


def wrap_angle(a: Array, b: Array) -> Array:
    d = a - b
    return d.at[0].set(jnp.arctan2(jnp.sin(d[0]), jnp.cos(d[0])))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    key = jr.PRNGKey(seed=2340)
    key, skeys = keygen(key, 2)

    problem = problem_setup()
    params = iLQRParams(x0=jnp.zeros(2), theta={"g": 9.81, "l": 1.0, "b": 0.1})
    lims = ControlLimits(lower=-5.0, upper=5.0)
    policy = init_policy(problem.dims, 0.1 * jr.normal(next(skeys), (problem.dims.horizon, 1)))

    Xs, costs = None, None
    for episode in range(5):
        sol = ilqg_kl_solver(
            problem,
            params,
            policy,
            KLConfig(kl_step=2.0, constrain_per_step=episode % 2 == 1, gd_alpha=0.1),
            Xs_init=Xs,
            costs_init=costs,
            lims=lims,
            diff_fun=wrap_angle,
            diagnostics=PrintDiagnostics(),
        )
        policy, Xs, costs = sol.policy, sol.Xs, sol.costs

    # noisy closed-loop rollout of the final controller
    x = params.x0
    for t in range(problem.dims.horizon):
        key, subkey = jr.split(key)
        u = jnp.clip(policy_action(policy, t, x, Xs[t], jnp.zeros(1), key=subkey, diff_fun=wrap_angle), -5.0, 5.0)
        x = problem.dynamics(t, x, u, params.theta)
    print("final state", x)
