"""
Execution context passed through every call boundary (communicator, logger, timer).

comm=None runs serially; otherwise comm is an mpi4py communicator.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional

import numpy as np


@dataclass(slots=True)
class TimerSection:
    n_calls: int = 0
    wall: float = 0.0


class Timer:
    """Accumulates wall time per named section."""

    def __init__(self) -> None:
        self.sections: Dict[str, TimerSection] = {}

    @contextmanager
    def section(self, name: str) -> Iterator[None]:
        t0 = time.perf_counter()
        try:
            yield
        finally:
            sec = self.sections.setdefault(name, TimerSection())
            sec.n_calls += 1
            sec.wall += time.perf_counter() - t0

    def summary(self) -> Dict[str, Dict[str, float]]:
        return {k: {"n_calls": v.n_calls, "wall": v.wall} for k, v in self.sections.items()}

    def log_summary(self, logger: logging.Logger) -> None:
        if not self.sections:
            return
        logger.info("%-40s %8s %12s", "section", "calls", "wall [s]")
        for name, sec in sorted(self.sections.items(), key=lambda kv: -kv[1].wall):
            logger.info("%-40s %8d %12.4f", name, sec.n_calls, sec.wall)


@dataclass(slots=True)
class ExecutionContext:
    comm: Optional[Any] = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("mfpde"))
    timer: Timer = field(default_factory=Timer)

    @classmethod
    def world(cls, logger: Optional[logging.Logger] = None) -> "ExecutionContext":
        """Context on MPI.COMM_WORLD (requires mpi4py)."""
        from mfpde.parallel.mpi_bootstrap import bootstrap_mpi

        bootstrap_mpi()
        from mpi4py import MPI

        ctx = cls(comm=MPI.COMM_WORLD)
        if logger is not None:
            ctx.logger = logger
        return ctx

    @property
    def rank(self) -> int:
        return 0 if self.comm is None else int(self.comm.Get_rank())

    @property
    def size(self) -> int:
        return 1 if self.comm is None else int(self.comm.Get_size())

    @property
    def is_root(self) -> bool:
        return self.rank == 0

    def info(self, msg: str, *args: Any) -> None:
        """Rank-0 info message."""
        if self.is_root:
            self.logger.info(msg, *args)

    def allreduce_sum(self, value: float) -> float:
        if self.comm is None or self.size == 1:
            return float(value)
        return float(self.comm.allreduce(float(value)))

    def allreduce_max(self, value: float) -> float:
        if self.comm is None or self.size == 1:
            return float(value)
        return float(max(self.comm.allgather(float(value))))

    def dot(self, a: np.ndarray, b: np.ndarray) -> float:
        """Global dot product of owned entries."""
        return self.allreduce_sum(float(np.dot(a, b)))

    def norm(self, a: np.ndarray) -> float:
        return float(np.sqrt(max(self.dot(a, a), 0.0)))

    def norm_inf(self, a: np.ndarray) -> float:
        local = float(np.max(np.abs(a))) if a.size else 0.0
        return self.allreduce_max(local)

    def barrier(self) -> None:
        if self.comm is not None:
            self.comm.Barrier()
