"""
Increment/time controller with cutback.

Commit happens only after Newton convergence. On divergence the solution is
restored from the previous-increment storage, dt is multiplied by the cutback
factor and the increment is retried; a step below the cutback floor is fatal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

import numpy as np

from mfpde.core.context import ExecutionContext
from mfpde.core.errors import CutbackExhausted
from mfpde.core.types import CutbackConfig, TimeConfig

from .nonlinear_types import NewtonResult

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class IncrementState:
    current_increment: int = 0
    total_increments: int = 1
    current_time: float = 0.0
    time_step: float = 1.0
    final_time: Optional[float] = None


@dataclass(slots=True)
class AttemptRecord:
    increment: int
    time_step: float
    converged: bool
    iterations: int
    residual_norm: float


@dataclass(slots=True)
class IncrementOutput:
    """Snapshot handed to the output hook after every commit (arrays are copies)."""

    increment: int
    time: float
    time_step: float
    newton_iterations: int
    residual_norm: float
    fields: Dict[str, np.ndarray]
    support_points: Dict[str, np.ndarray]
    postprocessed: Dict[str, np.ndarray] = field(default_factory=dict)


@dataclass(slots=True)
class RunSummary:
    increments: int = 0
    time: float = 0.0
    attempts: List[AttemptRecord] = field(default_factory=list)
    cutbacks: int = 0

    @property
    def attempted_steps(self) -> List[float]:
        return [a.time_step for a in self.attempts]

    @property
    def newton_iterations(self) -> List[int]:
        return [a.iterations for a in self.attempts if a.converged]


class IncrementProblem(Protocol):
    def prepare_increment(self, increment: int, time: float, dt: float) -> None: ...

    def solve_increment(self, increment: int) -> NewtonResult: ...

    def commit_increment(self, state: IncrementState, result: NewtonResult) -> None: ...

    def restore_increment(self) -> None: ...


class IncrementController:
    def __init__(
        self,
        time_cfg: TimeConfig,
        cutback_cfg: CutbackConfig,
        ctx: Optional[ExecutionContext] = None,
    ) -> None:
        self.time_cfg = time_cfg
        self.cutback_cfg = cutback_cfg
        self.ctx = ctx if ctx is not None else ExecutionContext()
        self.state = IncrementState(
            current_increment=0,
            total_increments=int(time_cfg.total_increments),
            current_time=float(time_cfg.t0),
            time_step=float(time_cfg.time_step),
            final_time=time_cfg.final_time,
        )

    def _finished(self, max_increments: Optional[int]) -> bool:
        st = self.state
        if max_increments is not None and st.current_increment >= max_increments:
            return True
        if st.final_time is None:
            return st.current_increment >= st.total_increments
        return st.final_time - st.current_time <= 1.0e-12 * max(1.0, abs(st.final_time))

    def _clip(self, dt: float) -> float:
        st = self.state
        if st.final_time is None:
            return dt
        return min(dt, st.final_time - st.current_time)

    def run(self, problem: IncrementProblem, *, max_increments: Optional[int] = None) -> RunSummary:
        st = self.state
        cb = self.cutback_cfg
        summary = RunSummary(time=st.current_time)

        while not self._finished(max_increments):
            increment = st.current_increment + 1
            dt = st.time_step
            attempted: List[float] = []
            while True:
                step = self._clip(dt)
                attempted.append(step)
                problem.prepare_increment(increment, st.current_time + step, step)
                result = problem.solve_increment(increment)
                summary.attempts.append(
                    AttemptRecord(increment, step, result.converged, result.iterations, result.residual_norm)
                )
                if result.converged:
                    break

                problem.restore_increment()
                reduced = step * cb.factor
                if reduced < cb.floor:
                    raise CutbackExhausted(increment, reduced, cb.floor, attempted, result.failure)
                summary.cutbacks += 1
                logger.warning(
                    "increment %d: Newton diverged with dt=%.6g; retrying with dt=%.6g",
                    increment,
                    step,
                    reduced,
                )
                dt = reduced

            st.current_increment = increment
            st.current_time += step
            problem.commit_increment(st, result)
            if cb.growth > 1.0:
                dt = min(dt * cb.growth, float(self.time_cfg.time_step))
            st.time_step = dt
            self.ctx.info(
                "increment %d committed: t=%.6g dt=%.6g newton_its=%d |R|=%.3e",
                increment,
                st.current_time,
                step,
                result.iterations,
                result.residual_norm,
            )

        summary.increments = st.current_increment
        summary.time = st.current_time
        return summary
