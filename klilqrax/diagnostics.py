"""Diagnostics sinks receiving one trace record per outer iteration"""

import math
from typing import Any

import jax.numpy as jnp

from klilqrax.typs import Trace

HEADER = (
    f"{'iteration':<14}{'est. cost':<14}{'reduction':<14}{'expected':<14}"
    f"{'gradient':<12}{'log10(η)':<12}{'divergence':<14}{'entropy':<12}"
)


class NullDiagnostics:
    """Discard every record"""

    def __call__(self, record: Trace) -> None:
        pass

    def summary(self, solution: Any, elapsed: float) -> None:
        pass


class PrintDiagnostics(NullDiagnostics):
    """Print a progress table, repeating the header every ``print_head`` rows"""

    def __init__(self, print_head: int = 10, print_period: int = 1):
        self.print_head = print_head
        self.print_period = print_period
        self.last_head = print_head

    def __call__(self, record: Trace) -> None:
        if record.iteration % self.print_period != 0:
            return
        if self.last_head == self.print_head:
            self.last_head = 0
            print(HEADER)
        log_eta = float(jnp.mean(jnp.log10(jnp.asarray(record.eta))))
        print(
            f"{record.iteration:<14d}{record.cost:<14.6g}{record.improvement:<14.3g}"
            f"{record.expected_reduction:<14.3g}{record.grad_norm:<12.3g}{log_eta:<12.2f}"
            f"{record.divergence:<14.3g}{record.entropy:<12.3g}"
        )
        self.last_head += 1

    def summary(self, solution: Any, elapsed: float) -> None:
        trace = solution.trace
        total_derivs = sum(r.time_derivs for r in trace)
        total_backward = sum(r.time_backward for r in trace)
        total_forward = sum(r.time_forward for r in trace)
        print(f"\nEXIT: {solution.status.name}")
        print(
            f"iterations:   {len(trace):<6d} final cost: {float(jnp.sum(solution.costs)):<12.7g}"
            f" eta: {float(jnp.mean(solution.eta)):<10.3g}"
        )
        if trace:
            print(f"gradient:     {trace[-1].grad_norm:<12.3g}")
        print(f"time / iter:  {1e3 * elapsed / max(len(trace), 1):<8.1f} ms")
        print(
            "timing:       derivs {:4.1f}%  back pass {:4.1f}%  fwd pass {:4.1f}%  other {:4.1f}%".format(
                *[
                    100 * t / elapsed if elapsed > 0 else math.nan
                    for t in (
                        total_derivs,
                        total_backward,
                        total_forward,
                        elapsed - total_derivs - total_backward - total_forward,
                    )
                ]
            )
        )
