"""
PETSc linear solve backend on a matrix-free Python shell operator.

- The operator is a PETSc "python" Mat whose mult() calls the matrix-free action.
- The preconditioner is a PETSc "python" PC applying an inverse diagonal.
- Tolerances use the unpreconditioned residual norm where the KSP supports it.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from mfpde.core.context import ExecutionContext
from mfpde.core.types import LinearConfig

from .linear_types import LinearSolveResult, MatVec

logger = logging.getLogger(__name__)

_KSP_TYPES = {"cg": "cg", "bicgstab": "bcgs", "gmres": "gmres", "lgmres": "lgmres"}


def require_petsc():
    from mfpde.parallel.mpi_bootstrap import bootstrap_mpi_before_petsc

    bootstrap_mpi_before_petsc()
    try:
        from petsc4py import PETSc
    except ImportError as exc:
        raise RuntimeError("petsc4py is required for linear.backend='petsc'.") from exc
    return PETSc


class _ShellOperator:
    """Python context for a PETSc shell Mat."""

    def __init__(self, apply: MatVec) -> None:
        self.apply = apply

    def mult(self, mat, X, Y) -> None:
        y = Y.getArray()
        y[:] = self.apply(np.array(X.getArray(readonly=True), dtype=np.float64))


class _ShellJacobi:
    """Python context for a PETSc shell PC: Y = inv_diag * X."""

    def __init__(self, inv_diag: np.ndarray) -> None:
        self.inv_diag = inv_diag

    def apply(self, pc, X, Y) -> None:
        y = Y.getArray()
        y[:] = self.inv_diag * X.getArray(readonly=True)


def solve_linear_petsc(
    ctx: ExecutionContext,
    A: MatVec,
    b: np.ndarray,
    inv_diag: Optional[np.ndarray],
    cfg: LinearConfig,
    x0: Optional[np.ndarray] = None,
) -> LinearSolveResult:
    PETSc = require_petsc()

    comm = PETSc.COMM_SELF if ctx.comm is None else PETSc.Comm(ctx.comm)
    n_local = int(b.shape[0])
    n_global = int(round(ctx.allreduce_sum(n_local)))

    mat = PETSc.Mat().createPython(((n_local, n_global), (n_local, n_global)), comm=comm)
    mat.setPythonContext(_ShellOperator(A))
    mat.setUp()

    ksp = PETSc.KSP().create(comm=comm)
    ksp.setOperators(mat)
    ksp_type = _KSP_TYPES.get(cfg.method, "gmres")
    ksp.setType(ksp_type)
    if ksp_type in ("gmres", "lgmres"):
        ksp.setGMRESRestart(int(cfg.restart))

    pc = ksp.getPC()
    if inv_diag is None:
        pc.setType("none")
    else:
        pc.setType("python")
        pc.setPythonContext(_ShellJacobi(np.asarray(inv_diag, dtype=np.float64)))

    if ksp_type == "cg":
        ksp.setNormType(PETSc.KSP.NormType.UNPRECONDITIONED)
    else:
        ksp.setPCSide(PETSc.PC.Side.RIGHT)
    ksp.setTolerances(rtol=cfg.rtol, atol=cfg.atol, max_it=cfg.max_iterations)
    ksp.setFromOptions()

    b_vec = PETSc.Vec().createWithArray(np.array(b, dtype=np.float64), size=(n_local, n_global), comm=comm)
    x_vec = b_vec.duplicate()
    x_vec.set(0.0)
    if x0 is not None:
        x_vec.getArray()[:] = x0
        ksp.setInitialGuessNonzero(True)

    ksp.solve(b_vec, x_vec)

    reason = int(ksp.getConvergedReason())
    converged = reason > 0
    n_iter = int(ksp.getIterationNumber())
    x = np.array(x_vec.getArray(readonly=True), dtype=np.float64)

    r = b - A(x)
    res_norm = ctx.norm(r)
    b_norm = ctx.norm(b)
    method = f"petsc.{ksp.getType()}+{pc.getType()}"

    if not converged:
        logger.debug("PETSc KSP not converged: reason=%d residual=%.3e ksp=%s", reason, res_norm, ksp.getType())

    ksp.destroy()
    mat.destroy()
    b_vec.destroy()
    x_vec.destroy()

    return LinearSolveResult(
        x=x,
        converged=converged,
        n_iter=n_iter,
        residual_norm=res_norm,
        rel_residual=res_norm / (b_norm + 1e-30),
        method=method,
        message=None if converged else f"PETSc KSP diverged (reason={reason})",
        diag={"reason": reason},
    )
