"""
Nonlinear solver result types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from mfpde.core.errors import NonlinearDivergence


class NewtonStatus(str, Enum):
    CONVERGED = "converged"
    DIVERGED = "diverged"


@dataclass(slots=True)
class ConvergenceState:
    """Reset at the start of every increment."""

    iteration_count: int = 0
    residual_norm: float = float("nan")
    initial_norm: float = float("nan")
    norm_history: List[float] = field(default_factory=list)
    linear_iterations: List[int] = field(default_factory=list)
    linear_failures: int = 0

    def reset(self) -> None:
        self.iteration_count = 0
        self.residual_norm = float("nan")
        self.initial_norm = float("nan")
        self.norm_history.clear()
        self.linear_iterations.clear()
        self.linear_failures = 0

    def record(self, norm: float) -> None:
        if not self.norm_history:
            self.initial_norm = norm
        self.residual_norm = norm
        self.norm_history.append(norm)


@dataclass(slots=True)
class NewtonResult:
    status: NewtonStatus
    iterations: int
    residual_norm: float
    norm_history: List[float]
    linear_iterations: List[int]
    failure: Optional[NonlinearDivergence] = None

    @property
    def converged(self) -> bool:
        return self.status == NewtonStatus.CONVERGED
