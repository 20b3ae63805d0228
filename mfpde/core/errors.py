"""
Error taxonomy.

- Setup errors (duplicate/unknown field, malformed constraint, bad config) are fatal.
- LinearSolveDidNotConverge is recoverable: the Newton driver counts it as a failed iteration.
- NonlinearDivergence is recoverable at the increment level (cutback).
- CutbackExhausted is fatal and terminates the run.
"""

from __future__ import annotations

from typing import List, Optional, Sequence


class MfpdeError(Exception):
    """Base class for all framework errors."""


class SetupError(MfpdeError):
    """Fatal error raised while building fields, DOFs, constraints or configuration."""


class DuplicateFieldError(SetupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Field '{name}' is already registered.")
        self.name = name


class UnknownFieldError(SetupError, KeyError):
    def __init__(self, name: str, known: Sequence[str] = ()) -> None:
        super().__init__(f"Unknown field '{name}' (registered: {list(known)}).")
        self.name = name

    def __str__(self) -> str:
        return str(self.args[0])


class ConstraintError(SetupError):
    """Malformed constraint: cycle, non-relevant master, bad DOF index."""


class ConfigError(SetupError, ValueError):
    """Invalid configuration value or unknown configuration key."""


class KernelContractError(MfpdeError):
    """A kernel read or wrote a quantity its field flags do not declare."""


class LinearSolveDidNotConverge(MfpdeError):
    def __init__(self, message: str, *, n_iter: int, residual_norm: float, x=None) -> None:
        super().__init__(message)
        self.n_iter = int(n_iter)
        self.residual_norm = float(residual_norm)
        self.x = x


class NonlinearDivergence(MfpdeError):
    def __init__(self, increment: int, iteration: int, residual_norm: float, reason: str) -> None:
        super().__init__(
            f"Newton diverged at increment {increment}, iteration {iteration}: "
            f"{reason} (|R|={residual_norm:.3e})"
        )
        self.increment = int(increment)
        self.iteration = int(iteration)
        self.residual_norm = float(residual_norm)
        self.reason = reason


class CutbackExhausted(MfpdeError):
    def __init__(
        self,
        increment: int,
        time_step: float,
        floor: float,
        attempted: List[float],
        cause: Optional[NonlinearDivergence] = None,
    ) -> None:
        super().__init__(
            f"Increment {increment} failed: time step {time_step:.6g} would fall below the "
            f"cutback floor {floor:.6g} after attempts {attempted}"
            + (f" (last failure: {cause.reason})" if cause is not None else "")
        )
        self.increment = int(increment)
        self.time_step = float(time_step)
        self.floor = float(floor)
        self.attempted = list(attempted)
        self.cause = cause
