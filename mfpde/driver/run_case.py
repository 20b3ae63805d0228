"""
Run one case described by a YAML file.

    python -m mfpde.driver.run_case cases/poisson_mms.yaml [--max-increments N] [--log-level INFO]
    mpiexec -n 4 python -m mfpde.driver.run_case cases/poisson_mms.yaml

Case file layout:

    case:     {id: str}
    paths:    {output_root: path relative to the case file}
    mesh:     {type: rectangle|interval, ...builder arguments}
    kernel:   {name: str, params: {...}}
    boundary: [{field, boundary, components?, type, ...}]
    initial:  {field_name: {type, ...}}
    output:   {fields: bool, every: int}
    solver:   {time, nonlinear, cutback, linear, discretization, history}
"""

from __future__ import annotations

import argparse
import logging
import shutil
import sys
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

from mfpde.core.config import config_from_mapping
from mfpde.core.context import ExecutionContext
from mfpde.core.errors import ConfigError, CutbackExhausted, SetupError
from mfpde.core.mesh import Mesh, interval_mesh, rectangle_mesh
from mfpde.core.types import SolverConfig
from mfpde.parallel.mpi_bootstrap import comm_world
from mfpde.physics.boundary import dirichlet_from_mapping
from mfpde.physics.initial import initial_from_mapping
from mfpde.physics.kernels import build_kernel
from mfpde.solvers.pde_solver import PDESolver

from .writers import IncrementWriter

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_CASE_KEYS = ("case", "paths", "mesh", "kernel", "boundary", "initial", "output", "solver")


@dataclass(slots=True)
class CaseSpec:
    case_id: str
    output_root: Path
    mesh: Dict[str, Any]
    kernel_name: str
    kernel_params: Dict[str, Any]
    boundary: List[Dict[str, Any]]
    initial: Dict[str, Dict[str, Any]]
    write_fields: bool
    output_every: int
    solver: SolverConfig = field(default_factory=SolverConfig)


# -----------------------------------------------------------------------------
# YAML loader
# -----------------------------------------------------------------------------
def _resolve_path(base: Path, value: str | Path) -> Path:
    path = Path(value)
    return path if path.is_absolute() else (base / path).resolve()


def load_case(cfg_path: str | Path) -> CaseSpec:
    cfg_file = Path(cfg_path).expanduser().resolve()
    raw = yaml.safe_load(cfg_file.read_text()) or {}
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{cfg_file}: expected a mapping at top level")
    unknown = sorted(set(raw) - set(_CASE_KEYS))
    if unknown:
        raise ConfigError(f"case file: unknown sections {unknown} (allowed: {list(_CASE_KEYS)})")
    base = cfg_file.parent

    kernel_raw = raw.get("kernel") or {}
    if "name" not in kernel_raw:
        raise ConfigError("kernel.name: missing")
    mesh_raw = dict(raw.get("mesh") or {})
    if not mesh_raw:
        raise ConfigError("mesh: missing")
    output_raw = raw.get("output") or {}

    return CaseSpec(
        case_id=str((raw.get("case") or {}).get("id", cfg_file.stem)),
        output_root=_resolve_path(base, (raw.get("paths") or {}).get("output_root", "out")),
        mesh=mesh_raw,
        kernel_name=str(kernel_raw["name"]),
        kernel_params=dict(kernel_raw.get("params") or {}),
        boundary=[dict(b) for b in (raw.get("boundary") or [])],
        initial={str(k): dict(v) for k, v in (raw.get("initial") or {}).items()},
        write_fields=bool(output_raw.get("fields", True)),
        output_every=int(output_raw.get("every", 1)),
        solver=config_from_mapping(raw.get("solver")),
    )


def build_mesh(spec: Mapping[str, Any]) -> Mesh:
    params = dict(spec)
    kind = str(params.pop("type", "rectangle")).strip().lower()
    try:
        if kind == "rectangle":
            return rectangle_mesh(**params)
        if kind == "interval":
            return interval_mesh(**params)
    except TypeError as exc:
        raise ConfigError(f"mesh: invalid parameters for '{kind}': {exc}") from exc
    raise ConfigError(f"mesh.type: invalid value {kind!r} (known: rectangle, interval)")


def _prepare_run_dir(spec: CaseSpec, cfg_path: str, ctx: ExecutionContext) -> Path:
    """Create the per-run output directory on rank 0 and copy the case file into it."""
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_dir = spec.output_root / spec.case_id / stamp
    if ctx.comm is not None:
        run_dir = Path(ctx.comm.bcast(str(run_dir), root=0))
    if ctx.is_root:
        run_dir.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copy2(cfg_path, run_dir / "config.yaml")
        except OSError as exc:  # pragma: no cover - best-effort copy
            logger.warning("Failed to copy case file to run dir: %s", exc)
    ctx.barrier()
    return run_dir


def _attach_file_log(run_dir: Path, level: int) -> None:
    log_path = run_dir / "run.log"
    root_logger = logging.getLogger()
    existing = [
        h for h in root_logger.handlers
        if isinstance(h, logging.FileHandler) and Path(h.baseFilename) == log_path
    ]
    if existing:
        return
    file_handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(file_handler)
    logger.info("Logging to file: %s", log_path)


def build_solver(spec: CaseSpec, ctx: ExecutionContext, writer: Optional[IncrementWriter] = None) -> PDESolver:
    mesh = build_mesh(spec.mesh)
    kernel = build_kernel(spec.kernel_name, spec.kernel_params)
    dirichlet = [dirichlet_from_mapping(b) for b in spec.boundary]
    solver = PDESolver(mesh, kernel, spec.solver, ctx, dirichlet=dirichlet, output_hook=writer)
    solver.setup()
    for name, init in spec.initial.items():
        solver.set_initial_condition(name, initial_from_mapping(init))
    if writer is not None:
        writer.attach(solver)
    return solver


def run_case(
    cfg_path: str,
    *,
    max_increments: Optional[int] = None,
    log_level: int | str = logging.INFO,
) -> int:
    """Run one case. Return 0 on success, 2 on a failed run, 99 on an unhandled error."""
    level = log_level
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)

    cfg_path = str(cfg_path)
    ctx = ExecutionContext(comm=comm_world(), logger=logging.getLogger("mfpde"))
    try:
        spec = load_case(cfg_path)
        run_dir = _prepare_run_dir(spec, cfg_path, ctx)
        if ctx.is_root:
            logger.info("Run directory: %s", run_dir)
            try:
                _attach_file_log(run_dir, level)
            except OSError as exc:
                logger.warning("Failed to set up file logging: %s", exc)

        writer = IncrementWriter(run_dir, write_fields=spec.write_fields, every=spec.output_every)
        solver = build_solver(spec, ctx, writer)
        summary = solver.run(max_increments=max_increments)

        if ctx.is_root:
            logger.info(
                "Completed run: %d increments, t=%.6g, %d cutbacks, attempted steps=%s",
                summary.increments,
                summary.time,
                summary.cutbacks,
                summary.attempted_steps,
            )
        return 0
    except (SetupError, CutbackExhausted) as exc:
        logger.error("Run failed: %s", exc)
        return 2
    except Exception as exc:
        tb = traceback.format_exc()
        logger.error("Unhandled exception:\n%s", tb)
        print(f"UNHANDLED EXCEPTION IN run_case: {type(exc).__name__}: {exc}", file=sys.stderr)
        return 99


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a matrix-free Newton-Raphson case.")
    parser.add_argument("cfg_path", help="Path to case YAML file.")
    parser.add_argument(
        "--max-increments",
        type=int,
        default=None,
        help="Optional cap on the number of committed increments.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (e.g., INFO, DEBUG).",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    lvl = getattr(logging, str(args.log_level).upper(), None)
    if not isinstance(lvl, int):
        lvl = logging.INFO
    return run_case(args.cfg_path, max_increments=args.max_increments, log_level=lvl)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
