"""
Configuration dataclasses consumed by setup.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .errors import ConfigError

LINEAR_BACKENDS = ("native", "scipy", "petsc")
NATIVE_METHODS = ("cg", "bicgstab")
SCIPY_METHODS = ("cg", "gmres", "bicgstab", "lgmres")
PRECONDITIONERS = ("jacobi", "mass", "none")
JACOBIAN_MODES = ("kernel", "fd")


@dataclass(slots=True)
class TimeConfig:
    total_increments: int = 1
    time_step: float = 1.0
    final_time: Optional[float] = None
    t0: float = 0.0


@dataclass(slots=True)
class NonlinearConfig:
    abs_tol: float = 1.0e-10
    rel_tol: float = 1.0e-8
    max_iterations: int = 20
    relaxation: float = 1.0
    jacobian_mode: str = "kernel"
    fd_eps: float = 1.0e-7


@dataclass(slots=True)
class CutbackConfig:
    factor: float = 0.5
    floor: float = 1.0e-6
    growth: float = 1.0


@dataclass(slots=True)
class LinearConfig:
    backend: str = "native"
    method: str = "cg"
    rtol: float = 1.0e-10
    atol: float = 1.0e-14
    max_iterations: int = 1000
    preconditioner: str = "jacobi"
    restart: int = 30


@dataclass(slots=True)
class DiscretizationConfig:
    quadrature_degree: int = 2
    cell_batch_size: int = 0  # 0 -> all owned cells in one batch


@dataclass(slots=True)
class HistoryConfig:
    enabled: bool = False
    n_variables: int = 0


@dataclass(slots=True)
class SolverConfig:
    time: TimeConfig = field(default_factory=TimeConfig)
    nonlinear: NonlinearConfig = field(default_factory=NonlinearConfig)
    cutback: CutbackConfig = field(default_factory=CutbackConfig)
    linear: LinearConfig = field(default_factory=LinearConfig)
    discretization: DiscretizationConfig = field(default_factory=DiscretizationConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)

    def validate(self) -> "SolverConfig":
        t = self.time
        if t.total_increments < 1 and t.final_time is None:
            raise ConfigError(f"time.total_increments: must be >= 1, got {t.total_increments}")
        if not t.time_step > 0.0:
            raise ConfigError(f"time.time_step: must be positive, got {t.time_step}")
        if t.final_time is not None and not t.final_time > t.t0:
            raise ConfigError(f"time.final_time: must exceed t0={t.t0}, got {t.final_time}")

        nl = self.nonlinear
        if nl.abs_tol < 0.0 or nl.rel_tol < 0.0:
            raise ConfigError("nonlinear.abs_tol/rel_tol: tolerances must be non-negative")
        if nl.abs_tol == 0.0 and nl.rel_tol == 0.0:
            raise ConfigError("nonlinear.abs_tol/rel_tol: at least one tolerance must be positive")
        if nl.max_iterations < 1:
            raise ConfigError(f"nonlinear.max_iterations: must be >= 1, got {nl.max_iterations}")
        if not 0.0 < nl.relaxation <= 1.0:
            raise ConfigError(f"nonlinear.relaxation: must be in (0, 1], got {nl.relaxation}")
        if nl.jacobian_mode not in JACOBIAN_MODES:
            raise ConfigError(f"nonlinear.jacobian_mode: invalid value {nl.jacobian_mode!r}")
        if not nl.fd_eps > 0.0:
            raise ConfigError(f"nonlinear.fd_eps: must be positive, got {nl.fd_eps}")

        cb = self.cutback
        if not 0.0 < cb.factor < 1.0:
            raise ConfigError(f"cutback.factor: must be in (0, 1), got {cb.factor}")
        if not cb.floor > 0.0:
            raise ConfigError(f"cutback.floor: must be positive, got {cb.floor}")
        if cb.growth < 1.0:
            raise ConfigError(f"cutback.growth: must be >= 1, got {cb.growth}")

        lin = self.linear
        if lin.backend not in LINEAR_BACKENDS:
            raise ConfigError(f"linear.backend: invalid value {lin.backend!r}")
        if lin.backend == "native" and lin.method not in NATIVE_METHODS:
            raise ConfigError(f"linear.method: invalid value {lin.method!r} for native backend")
        if lin.backend in ("scipy", "petsc") and lin.method not in SCIPY_METHODS:
            raise ConfigError(f"linear.method: invalid value {lin.method!r} for {lin.backend} backend")
        if lin.preconditioner not in PRECONDITIONERS:
            raise ConfigError(f"linear.preconditioner: invalid value {lin.preconditioner!r}")
        if lin.rtol < 0.0 or lin.atol < 0.0:
            raise ConfigError("linear.rtol/atol: tolerances must be non-negative")
        if lin.max_iterations < 1:
            raise ConfigError(f"linear.max_iterations: must be >= 1, got {lin.max_iterations}")
        if lin.restart < 1:
            raise ConfigError(f"linear.restart: must be >= 1, got {lin.restart}")

        disc = self.discretization
        if disc.quadrature_degree < 1:
            raise ConfigError(f"discretization.quadrature_degree: must be >= 1, got {disc.quadrature_degree}")
        if disc.cell_batch_size < 0:
            raise ConfigError(f"discretization.cell_batch_size: must be >= 0, got {disc.cell_batch_size}")

        hist = self.history
        if hist.enabled and hist.n_variables < 1:
            raise ConfigError("history.n_variables: must be >= 1 when history.enabled")
        return self
