"""
Newton-Raphson driver.

Start -> EvaluateResidual -> CheckConvergence -> {Converged | Diverged | ContinueIterating}
ContinueIterating -> SolveCorrection -> ApplyConstraints -> UpdateSolution -> EvaluateResidual

Converged: ||R||_2 <= abs_tol or ||R||_2 <= rel_tol * ||R_0||_2 (and the model
does not veto). Diverged: max_iterations reached, non-finite norm, or a model
request to reset the increment. Divergence is returned, not raised, so the
increment controller can cut back.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import numpy as np

from mfpde.core.context import ExecutionContext
from mfpde.core.errors import LinearSolveDidNotConverge, NonlinearDivergence
from mfpde.core.types import NonlinearConfig

from .linear_solve import LinearSolveStep
from .nonlinear_types import ConvergenceState, NewtonResult, NewtonStatus

logger = logging.getLogger(__name__)


class NonlinearProblem(Protocol):
    """What the driver needs from the discretized problem (flat owned arrays)."""

    def residual(self) -> np.ndarray: ...

    def jacobian_action(self, v: np.ndarray) -> np.ndarray: ...

    def preconditioner(self) -> Optional[np.ndarray]: ...

    def apply_correction(self, dx: np.ndarray) -> None: ...

    def before_iteration(self, iteration: int) -> None: ...

    def after_iteration(self, iteration: int) -> None: ...

    def accept_convergence(self, iteration: int) -> bool: ...

    def reset_requested(self) -> bool: ...


class NewtonRaphsonDriver:
    def __init__(
        self,
        cfg: NonlinearConfig,
        linear: LinearSolveStep,
        ctx: Optional[ExecutionContext] = None,
    ) -> None:
        self.cfg = cfg
        self.linear = linear
        self.ctx = ctx if ctx is not None else linear.ctx
        self.state = ConvergenceState()

    def _diverged(self, increment: int, reason: str) -> NewtonResult:
        st = self.state
        failure = NonlinearDivergence(increment, st.iteration_count, st.residual_norm, reason)
        logger.warning("%s", failure)
        return NewtonResult(
            status=NewtonStatus.DIVERGED,
            iterations=st.iteration_count,
            residual_norm=st.residual_norm,
            norm_history=list(st.norm_history),
            linear_iterations=list(st.linear_iterations),
            failure=failure,
        )

    def _converged(self) -> NewtonResult:
        st = self.state
        return NewtonResult(
            status=NewtonStatus.CONVERGED,
            iterations=st.iteration_count,
            residual_norm=st.residual_norm,
            norm_history=list(st.norm_history),
            linear_iterations=list(st.linear_iterations),
        )

    def solve(self, problem: NonlinearProblem, increment: int = 0) -> NewtonResult:
        cfg = self.cfg
        st = self.state
        st.reset()

        while True:
            with self.ctx.timer.section("newton: residual"):
                R = problem.residual()
            norm = self.ctx.norm(R)
            st.record(norm)
            self.ctx.info(
                "increment %d newton iter %d |R|=%.6e (|R0|=%.6e)",
                increment,
                st.iteration_count,
                norm,
                st.initial_norm,
            )

            if not np.isfinite(norm):
                return self._diverged(increment, "residual norm is not finite")

            small = norm <= cfg.abs_tol or norm <= cfg.rel_tol * st.initial_norm
            if small and problem.accept_convergence(st.iteration_count):
                return self._converged()
            if st.iteration_count >= cfg.max_iterations:
                return self._diverged(increment, f"max_iterations={cfg.max_iterations} reached")

            problem.before_iteration(st.iteration_count)
            inv_diag = problem.preconditioner()
            dx: Optional[np.ndarray]
            try:
                result = self.linear.solve(problem.jacobian_action, -R, inv_diag)
                dx = result.x
                st.linear_iterations.append(result.n_iter)
            except LinearSolveDidNotConverge as exc:
                st.linear_failures += 1
                st.linear_iterations.append(exc.n_iter)
                logger.warning("increment %d iter %d: %s", increment, st.iteration_count, exc)
                bad = 1.0 if exc.x is None or not np.all(np.isfinite(exc.x)) else 0.0
                dx = exc.x if self.ctx.allreduce_max(bad) == 0.0 else None

            st.iteration_count += 1
            if dx is not None:
                with self.ctx.timer.section("newton: update"):
                    problem.apply_correction(cfg.relaxation * dx)
            problem.after_iteration(st.iteration_count)
            if problem.reset_requested():
                return self._diverged(increment, "model requested an increment reset")
