"""iLQG with a bound on the KL-divergence from a previous trajectory distribution

Solves the trajectory optimisation problem with a constraint on the KL-divergence
between the new time-varying linear-Gaussian controller and ``prev_policy``. The cost
is locally scaled by 1/eta, eta being the dual variable of the constraint; eta is
adjusted either globally by bisection or per time step by gradient ascent in log-space.

To use the result as a maximum entropy controller, sample
``u = Us[t] + K[t] (x - Xs[t]) + chol(Sigma[t]) eps`` (see ``policy_action``). Scaling
the cost by a constant changes the relative weight of cost and entropy: a larger cost
gives less noise since Sigma = inv(Quu).
"""

import logging
import time
from functools import partial
from typing import Callable, List, Optional, Tuple

import jax
from jax import Array
import jax.numpy as jnp

from klilqrax.diagnostics import NullDiagnostics
from klilqrax.dual import DualBracket, DualUpdate, make_dual_update
from klilqrax.ilqr import (
    approx_lqr,
    ilqr_simulate,
    ilqr_forward_pass,
    forward_covariance,
    state_deviation,
    grad_norm,
)
from klilqrax.lqr import BackwardPassResult, kl_backward_pass
from klilqrax.policy import (
    LinearGaussianPolicy,
    entropy,
    kl_cost_terms,
    kl_divergence,
)
from klilqrax.typs import (
    ControlLimits,
    KLConfig,
    KLCostTerms,
    KLSolution,
    LQR,
    SolverStatus,
    System,
    Trace,
    iLQRParams,
)

jax.config.update("jax_enable_x64", True)  # double precision

LOGGER = logging.getLogger(__name__)


def finish_diagnostics(diagnostics: Callable[[Trace], None], solution: KLSolution, elapsed: float):
    """Hand the final solution to sinks that report a summary; plain callables have none"""
    summary = getattr(diagnostics, "summary", None)
    if summary is not None:
        summary(solution, elapsed)


def backward_pass_with_retries(
    lqr: LQR,
    bracket: DualBracket,
    strategy: DualUpdate,
    kl_terms: Optional[KLCostTerms] = None,
    lims: Optional[ControlLimits] = None,
    Us: Optional[Array] = None,
) -> Tuple[BackwardPassResult, bool]:
    """Run the backward pass, escalating eta after every failure.

    Each failure restarts the whole pass from the final time step with the escalated
    dual variable(s) held in ``bracket``.

    Returns:
        Tuple[BackwardPassResult, bool]: result of the last attempt and whether eta hit
            its ceiling before the pass succeeded
    """
    while True:
        result = kl_backward_pass(lqr, bracket.eta, kl_terms, lims, Us)
        diverge = int(result.diverge)
        if diverge == 0:
            return result, False
        if strategy.on_divergence(bracket, diverge):
            LOGGER.info("EXIT: eta > eta_max (back_pass failed)")
            return result, True


def check_initial_trajectory(
    model: System,
    prev_policy: LinearGaussianPolicy,
    Xs_init: Optional[Array],
    costs_init: Optional[Array],
) -> None:
    """Validate the nominal trajectory before any iteration"""
    T = model.dims.horizon
    if prev_policy.horizon != T:
        raise ValueError(
            f"previous policy horizon {prev_policy.horizon} does not match model horizon {T}"
        )
    if Xs_init is None:
        if costs_init is not None:
            raise ValueError("Initial cost supplied without the pre-rolled initial trajectory")
        return
    if jnp.shape(Xs_init)[0] != T + 1:
        raise ValueError(
            "pre-rolled initial trajectory must be of correct length "
            f"(expected {T + 1} states, got {jnp.shape(Xs_init)[0]})"
        )
    if costs_init is None:
        raise ValueError("Initial trajectory supplied, initial cost must also be supplied")


def ilqg_kl_solver(
    model: System,
    params: iLQRParams,
    prev_policy: LinearGaussianPolicy,
    config: KLConfig = KLConfig(),
    Xs_init: Optional[Array] = None,
    costs_init: Optional[Array] = None,
    lims: Optional[ControlLimits] = None,
    diff_fun: Callable = jnp.subtract,
    covariance: Optional[Callable[[LQR, LinearGaussianPolicy], Array]] = None,
    derivatives: Optional[Callable[[Array, Array], LQR]] = None,
    diagnostics: Optional[Callable[[Trace], None]] = None,
) -> KLSolution:
    """Solve the KL-constrained iLQG problem around the previous trajectory distribution.

    The nominal controls are the offsets of ``prev_policy``; the nominal states are
    ``Xs_init`` when pre-rolled (with their per-step cost ``costs_init``), otherwise they
    are simulated from ``params.x0``. Dynamics and cost are expanded once along the
    nominal trajectory, then the backward pass, forward pass and dual variable update
    are repeated until the KL constraint is satisfied, eta saturates at its ceiling or
    the iteration budget runs out. Only invalid inputs raise.

    Args:
        model (System): system model
        params (iLQRParams): initial state and model parameters
        prev_policy (LinearGaussianPolicy): previous policy, offsets are the nominal controls
        config (KLConfig): tunables
        Xs_init (Array, optional): pre-rolled nominal states [T+1,N]
        costs_init (Array, optional): per-step cost of the pre-rolled trajectory [T+1]
        lims (ControlLimits, optional): control limits
        diff_fun (Callable, optional): state difference, defaults to subtraction
        covariance (Callable, optional): (lqr, policy) -> joint state-control covariance
            [T,N+M,N+M], defaults to ``forward_covariance`` without process noise
        derivatives (Callable, optional): (Xs, Us) -> LQR, defaults to ``approx_lqr``
        diagnostics (Callable, optional): sink receiving one Trace per iteration; its
            ``summary(solution, elapsed)`` is called at exit when the sink defines one

    Returns:
        KLSolution: new trajectory, policy (offsets are the new controls), value
            derivatives, per-step cost, trace and exit status
    """
    check_initial_trajectory(model, prev_policy, Xs_init, costs_init)
    n = model.dims.n
    kl_step = config.kl_step
    diagnostics = NullDiagnostics() if diagnostics is None else diagnostics
    covariance = forward_covariance if covariance is None else covariance
    if derivatives is None:
        derivatives = partial(approx_lqr, model, params=params, second_order=config.second_order)

    Us = jnp.asarray(prev_policy.k)
    if Xs_init is None:
        (Xs, _), costs = ilqr_simulate(model, Us, params)
    else:
        Xs, costs = jnp.asarray(Xs_init), jnp.asarray(costs_init)

    strategy = make_dual_update(config)
    bracket = strategy.init_bracket(model.dims.horizon)
    # corrections are computed relative to the nominal controls, so the previous
    # policy enters the KL terms with zero offsets
    prev_rel = prev_policy.relative_to(Us)
    kl_terms = kl_cost_terms(prev_rel)

    t_start = time.perf_counter()
    lqr = derivatives(Xs, Us)
    time_derivs = time.perf_counter() - t_start

    trace: List[Trace] = []
    accepted = None
    satisfied = False
    status = SolverStatus.MAX_ITERATIONS
    LOGGER.debug("begin iLQG-KL: kl_step=%g, per step=%s", kl_step, config.constrain_per_step)

    for iteration in range(1, config.max_iter + 1):
        strategy.begin_iteration(bracket)
        tic = time.perf_counter()
        result, gave_up = backward_pass_with_retries(lqr, bracket, strategy, kl_terms, lims, Us)
        time_backward = time.perf_counter() - tic
        if gave_up:
            status = SolverStatus.ETA_SATURATED
            break

        policy = result.policy
        g_norm = float(grad_norm(policy.k, Us))
        eta = bracket.eta

        tic = time.perf_counter()
        (Xs_new, Us_new), costs_new = ilqr_forward_pass(
            model, params, policy, Xs, Us, lims, diff_fun
        )
        joint_cov = covariance(lqr, policy)
        divergence = kl_divergence(
            policy,
            prev_rel,
            state_mean=state_deviation(Xs_new, Xs, diff_fun),
            state_cov=joint_cov[:, :n, :n],
        )
        delta_cost = float(jnp.sum(costs) - jnp.sum(costs_new))
        # according to the second order approximation
        expected_reduction = -float(jnp.sum(result.dV))
        if expected_reduction > 1e-10:
            reduce_ratio = delta_cost / expected_reduction
        else:
            LOGGER.warning("negative expected reduction: should not occur")
            reduce_ratio = float(jnp.sign(delta_cost))
        satisfied = strategy.update(bracket, divergence, iteration)
        time_forward = time.perf_counter() - tic

        record = Trace(
            iteration=iteration,
            time_derivs=time_derivs if iteration == 1 else 0.0,
            time_backward=time_backward,
            time_forward=time_forward,
            cost=float(jnp.sum(costs_new)),
            improvement=delta_cost,
            expected_reduction=expected_reduction,
            reduce_ratio=reduce_ratio,
            grad_norm=g_norm,
            divergence=float(jnp.mean(divergence)),
            eta=float(eta) if jnp.ndim(eta) == 0 else eta,
            entropy=float(entropy(policy)),
            satisfied=satisfied,
        )
        trace.append(record)
        diagnostics(record)
        accepted = (Xs_new, Us_new, costs_new, policy, result, divergence)

        if satisfied:
            status = SolverStatus.SATISFIED
            LOGGER.info("SUCCESS: abs(KL-divergence) < kl_step")
            break
        if strategy.saturated(bracket):
            status = SolverStatus.ETA_SATURATED
            LOGGER.info("EXIT: eta > eta_max")
            break
    else:
        LOGGER.info("EXIT: Maximum iterations reached.")

    if accepted is None:
        LOGGER.warning("no successful iteration, returning the nominal trajectory")
        solution = KLSolution(
            Xs=Xs,
            Us=Us,
            policy=prev_policy,
            Vx=None,
            Vxx=None,
            costs=costs,
            trace=tuple(trace),
            eta=bracket.eta,
            satisfied=False,
            status=status,
            kl_exceeded=False,
            divergence=None,
        )
        finish_diagnostics(diagnostics, solution, time.perf_counter() - t_start)
        return solution

    Xs_new, Us_new, costs_new, policy, result, divergence = accepted
    # the new controls become the nominal of the returned policy
    policy = policy._replace(k=Us_new)
    kl_exceeded = False
    if kl_step > 0:
        reported = divergence if config.constrain_per_step else jnp.mean(divergence)
        kl_exceeded = bool(
            jnp.any(
                (reported > kl_step)
                & (jnp.abs(reported - kl_step) > config.residual_margin * kl_step)
            )
        )
        if kl_exceeded:
            LOGGER.warning("KL divergence too high for some time steps when done")

    solution = KLSolution(
        Xs=Xs_new,
        Us=Us_new,
        policy=policy,
        Vx=result.Vx,
        Vxx=result.Vxx,
        costs=costs_new,
        trace=tuple(trace),
        eta=bracket.eta,
        satisfied=satisfied,
        status=status,
        kl_exceeded=kl_exceeded,
        divergence=divergence,
    )
    finish_diagnostics(diagnostics, solution, time.perf_counter() - t_start)
    return solution
