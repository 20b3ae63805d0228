"""
Per-increment output:
- increments.csv: one row per committed increment (written by rank 0),
- fields/increment_XXXXXX.npz: gathered nodal fields in mesh node order.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional

import numpy as np

from mfpde.solvers.timestepper import IncrementOutput

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from mfpde.solvers.pde_solver import PDESolver

logger = logging.getLogger(__name__)


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def write_increment_row(path: Path, row: Dict[str, float]) -> None:
    """Append one row to a CSV, writing the header on first use."""
    _ensure_parent(path)
    write_header = not path.exists()
    with path.open("a", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=list(row.keys()))
        if write_header:
            writer.writeheader()
        writer.writerow(row)


def write_field_snapshot(path: Path, points: np.ndarray, fields: Dict[str, np.ndarray], **meta) -> None:
    _ensure_parent(path)
    data = {"points": np.asarray(points)}
    for name, arr in fields.items():
        data[f"field_{name}"] = np.asarray(arr)
    for key, value in meta.items():
        data[key] = np.asarray(value)
    np.savez(path, **data)


class IncrementWriter:
    """Output hook for PDESolver; every rank must call it (field gathering is collective)."""

    def __init__(self, run_dir: Path, *, write_fields: bool = True, every: int = 1) -> None:
        self.run_dir = Path(run_dir)
        self.write_fields = bool(write_fields)
        self.every = max(1, int(every))
        self.solver: Optional["PDESolver"] = None
        self.csv_path = self.run_dir / "increments.csv"
        self.n_written = 0

    def attach(self, solver: "PDESolver") -> None:
        self.solver = solver

    def __call__(self, out: IncrementOutput) -> None:
        if self.solver is None:
            raise RuntimeError("IncrementWriter.attach(solver) must be called before the run")
        solver = self.solver
        gathered = {name: solver.gather_solution(name) for name in out.fields}
        if not solver.ctx.is_root:
            return

        row: Dict[str, float] = {
            "increment": out.increment,
            "time": out.time,
            "dt": out.time_step,
            "newton_iterations": out.newton_iterations,
            "residual_norm": out.residual_norm,
        }
        for name, arr in gathered.items():
            row[f"{name}_min"] = float(np.min(arr)) if arr.size else float("nan")
            row[f"{name}_max"] = float(np.max(arr)) if arr.size else float("nan")
        write_increment_row(self.csv_path, row)

        if self.write_fields and out.increment % self.every == 0:
            path = self.run_dir / "fields" / f"increment_{out.increment:06d}.npz"
            write_field_snapshot(
                path,
                solver.mesh.points,
                gathered,
                increment=out.increment,
                time=out.time,
                **{f"post_{k}": v for k, v in out.postprocessed.items()},
            )
            logger.debug("wrote %s", path)
        self.n_written += 1
