"""Dual variable updates enforcing the KL-divergence bound

Two interchangeable strategies share the same interface so the outer loop does not need
to know which one it holds:

- GlobalDualUpdate: one scalar dual variable adjusted by geometric bisection of the
  bracket [eta_min, eta, eta_max] against the mean KL-divergence.
- PerStepDualUpdate: one dual variable per time step, adjusted by Adam in log-space
  against the per-step constraint violation.

Both escalate eta after a failed backward pass through the shared ``DualBracket``, which
is mutated in place so that repeated failures accumulate across retries and iterations.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import NamedTuple, Optional
import jax.numpy as jnp
from jax import Array

from klilqrax.typs import KLConfig

LOGGER = logging.getLogger(__name__)


@dataclass
class DualBracket:
    """Mutable dual variable bracket, scalars or arrays of length T"""

    lower: Array
    eta: Array
    upper: Array
    delta: Array

    @classmethod
    def from_config(cls, config: KLConfig, horizon: Optional[int] = None) -> "DualBracket":
        """Copy of the configured bracket, per time step when ``horizon`` is given"""
        shape = () if horizon is None else (horizon,)
        lower, eta, upper = config.eta_bracket
        return cls(
            lower=jnp.full(shape, lower, dtype=float),
            eta=jnp.full(shape, eta, dtype=float),
            upper=jnp.full(shape, upper, dtype=float),
            delta=jnp.full(shape, config.del0, dtype=float),
        )

    def escalate(self, step: Optional[int] = None) -> None:
        """Increase eta by the current increment and double the increment.

        Only the dual variable of the 0-indexed ``step`` is changed when given.
        """
        if step is None:
            self.eta = self.eta + self.delta
            self.delta = 2 * self.delta
        else:
            self.eta = self.eta.at[step].add(self.delta[step])
            self.delta = self.delta.at[step].multiply(2.0)

    def reset_escalation(self, del0: float) -> None:
        self.delta = jnp.full_like(self.delta, del0)

    def saturated(self, ratio: float = 0.999) -> bool:
        """True once every dual variable exceeds ratio * eta_max"""
        return bool(jnp.all(self.eta > ratio * self.upper))

    def geometric_mean(self) -> Array:
        return jnp.sqrt(self.lower * self.upper)


class AdamState(NamedTuple):
    """First and second moment estimates"""

    m: Array
    v: Array


def adam_init(x: Array) -> AdamState:
    return AdamState(m=jnp.zeros_like(x), v=jnp.zeros_like(x))


def adam_update(
    state: AdamState,
    x: Array,
    grad: Array,
    iteration: int,
    alpha: float = 0.01,
    beta1: float = 0.9,
    beta2: float = 0.999,
    eps: float = 1e-8,
):
    """One Adam step x - alpha * m_hat / (sqrt(v_hat) + eps), iteration counts from 1"""
    m = beta1 * state.m + (1 - beta1) * grad
    v = beta2 * state.v + (1 - beta2) * grad**2
    m_hat = m / (1 - beta1**iteration)
    v_hat = v / (1 - beta2**iteration)
    return x - alpha * m_hat / (jnp.sqrt(v_hat) + eps), AdamState(m, v)


class AdamOptimizer:
    """Stateful Adam primitive: (x, grad, iteration) -> x"""

    def __init__(self, alpha: float = 0.01, beta1: float = 0.9, beta2: float = 0.999, eps: float = 1e-8):
        self.alpha = alpha
        self.beta1 = beta1
        self.beta2 = beta2
        self.eps = eps
        self.state = None

    def __call__(self, x: Array, grad: Array, iteration: int) -> Array:
        if self.state is None:
            self.state = adam_init(x)
        x, self.state = adam_update(
            self.state, x, grad, iteration, self.alpha, self.beta1, self.beta2, self.eps
        )
        return x


class DualUpdate(ABC):
    """Strategy proposing the next dual variable(s) and reporting constraint satisfaction"""

    def __init__(self, config: KLConfig):
        self.config = config

    @abstractmethod
    def init_bracket(self, horizon: int) -> DualBracket:
        ...

    def begin_iteration(self, bracket: DualBracket) -> None:
        """Hook called before the backward pass retries of every outer iteration"""

    @abstractmethod
    def on_divergence(self, bracket: DualBracket, diverge: int) -> bool:
        """Escalate eta after the backward pass failed at 1-indexed step ``diverge``.

        Returns True once the escalated dual variable exceeds its ceiling.
        """

    @abstractmethod
    def update(self, bracket: DualBracket, divergence: Array, iteration: int) -> bool:
        """Adjust eta given the per-step KL-divergence [T], return True if satisfied"""

    def saturated(self, bracket: DualBracket) -> bool:
        return bracket.saturated(self.config.saturation_ratio)


class GlobalDualUpdate(DualUpdate):
    """Single dual variable, bisection of the bracket in log-space"""

    def init_bracket(self, horizon: int) -> DualBracket:
        return DualBracket.from_config(self.config)

    def on_divergence(self, bracket: DualBracket, diverge: int) -> bool:
        bracket.escalate()
        LOGGER.debug("Inversion failed at timestep %d. eta: %.5g", diverge, float(bracket.eta))
        return self.saturated(bracket)

    def update(self, bracket: DualBracket, divergence: Array, iteration: int) -> bool:
        kl_step = self.config.kl_step
        if kl_step <= 0:
            return True
        kl_div = float(jnp.mean(divergence))
        constraint_violation = kl_div - kl_step
        if abs(constraint_violation) < self.config.kl_tol * kl_step:
            LOGGER.debug("KL: %12.7f / %12.7f, converged", kl_div, kl_step)
            return True
        if constraint_violation < 0:
            # eta was too big
            bracket.upper = bracket.eta
            bracket.eta = jnp.maximum(bracket.geometric_mean(), 0.1 * bracket.upper)
            reason = "too big"
        else:
            bracket.lower = bracket.eta
            bracket.eta = jnp.minimum(bracket.geometric_mean(), 10.0 * bracket.lower)
            reason = "too small"
        LOGGER.debug(
            "KL: %12.4f / %12.4f, eta %s, new eta: (%-5.3g < %-5.3g < %-5.3g)",
            kl_div,
            kl_step,
            reason,
            float(bracket.lower),
            float(bracket.eta),
            float(bracket.upper),
        )
        return False


class PerStepDualUpdate(DualUpdate):
    """One dual variable per time step, Adam ascent on log(eta)"""

    def __init__(self, config: KLConfig):
        super().__init__(config)
        self.optimizer = AdamOptimizer(alpha=config.gd_alpha)

    def init_bracket(self, horizon: int) -> DualBracket:
        return DualBracket.from_config(self.config, horizon)

    def begin_iteration(self, bracket: DualBracket) -> None:
        bracket.reset_escalation(self.config.del0)

    def on_divergence(self, bracket: DualBracket, diverge: int) -> bool:
        step = diverge - 1
        bracket.escalate(step)
        LOGGER.debug(
            "Inversion failed at timestep %d. mean eta: %.5g", diverge, float(jnp.mean(bracket.eta))
        )
        return bool(bracket.eta[step] > self.config.saturation_ratio * bracket.upper[step])

    def update(self, bracket: DualBracket, divergence: Array, iteration: int) -> bool:
        kl_step = self.config.kl_step
        constraint_violation = divergence - kl_step
        log_eta = self.optimizer(jnp.log(bracket.eta), -constraint_violation, iteration)
        bracket.eta = jnp.clip(jnp.exp(log_eta), bracket.lower, bracket.upper)
        # heuristic joint criterion, does not guarantee feasibility of every step
        return bool(
            jnp.all(divergence < self.config.per_step_max_ratio * kl_step)
            and jnp.mean(constraint_violation) < self.config.per_step_mean_tol * kl_step
        )


def make_dual_update(config: KLConfig) -> DualUpdate:
    """Select the dual variable strategy of the configured constraint mode"""
    if config.constrain_per_step:
        return PerStepDualUpdate(config)
    return GlobalDualUpdate(config)
