"""
Linear solve step for the Newton correction: A(x) = b with A given only as an
action on flat owned arrays.

Backends:
- native: preconditioned CG / BiCGStab with global reductions through the
  execution context (serial and MPI),
- scipy:  scipy.sparse.linalg Krylov solvers on a LinearOperator (serial only),
- petsc:  KSP on a Python shell matrix (see petsc_linear.py).

Convergence: ||b - A x|| <= max(rtol * ||b||, atol). Non-convergence raises
LinearSolveDidNotConverge carrying the last iterate.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from mfpde.core.context import ExecutionContext
from mfpde.core.errors import ConfigError, LinearSolveDidNotConverge
from mfpde.core.types import LinearConfig

from .linear_types import LinearSolveResult, MatVec

logger = logging.getLogger(__name__)


def _apply_pc(inv_diag: Optional[np.ndarray], r: np.ndarray) -> np.ndarray:
    return r.copy() if inv_diag is None else inv_diag * r


# -----------------------------------------------------------------------------
# Native Krylov solvers
# -----------------------------------------------------------------------------
def _initial_residual(A: MatVec, b: np.ndarray, x0: Optional[np.ndarray]):
    if x0 is None:
        return np.zeros_like(b), b.copy()
    x = np.array(x0, dtype=np.float64, copy=True)
    return x, b - A(x)


def solve_pcg(
    ctx: ExecutionContext,
    A: MatVec,
    b: np.ndarray,
    inv_diag: Optional[np.ndarray],
    *,
    rtol: float,
    atol: float,
    max_iter: int,
    x0: Optional[np.ndarray] = None,
) -> LinearSolveResult:
    x, r = _initial_residual(A, b, x0)
    b_norm = ctx.norm(b)
    tol = max(rtol * b_norm, atol)
    r_norm = ctx.norm(r)
    if r_norm <= tol:
        return LinearSolveResult(x, True, 0, r_norm, r_norm / (b_norm + 1e-30), "cg")

    z = _apply_pc(inv_diag, r)
    p = z.copy()
    rz = ctx.dot(r, z)
    message = None
    k = 0
    for k in range(1, max_iter + 1):
        Ap = A(p)
        pAp = ctx.dot(p, Ap)
        if not np.isfinite(pAp) or pAp <= 0.0:
            message = f"CG breakdown: p^T A p = {pAp:.3e} (operator not SPD?)"
            break
        alpha = rz / pAp
        x += alpha * p
        r -= alpha * Ap
        r_norm = ctx.norm(r)
        if r_norm <= tol:
            return LinearSolveResult(x, True, k, r_norm, r_norm / (b_norm + 1e-30), "cg")
        if not np.isfinite(r_norm):
            message = "CG residual is not finite"
            break
        z = _apply_pc(inv_diag, r)
        rz_new = ctx.dot(r, z)
        p = z + (rz_new / rz) * p
        rz = rz_new
    return LinearSolveResult(
        x, False, k, r_norm, r_norm / (b_norm + 1e-30), "cg",
        message=message or f"CG reached max_iterations={max_iter}",
    )


def solve_bicgstab(
    ctx: ExecutionContext,
    A: MatVec,
    b: np.ndarray,
    inv_diag: Optional[np.ndarray],
    *,
    rtol: float,
    atol: float,
    max_iter: int,
    x0: Optional[np.ndarray] = None,
) -> LinearSolveResult:
    """Right-preconditioned BiCGStab."""
    x, r = _initial_residual(A, b, x0)
    b_norm = ctx.norm(b)
    tol = max(rtol * b_norm, atol)
    r_norm = ctx.norm(r)
    if r_norm <= tol:
        return LinearSolveResult(x, True, 0, r_norm, r_norm / (b_norm + 1e-30), "bicgstab")

    r_hat = r.copy()
    rho = alpha = omega = 1.0
    v = np.zeros_like(b)
    p = np.zeros_like(b)
    message = None
    k = 0
    for k in range(1, max_iter + 1):
        rho_new = ctx.dot(r_hat, r)
        if rho_new == 0.0 or not np.isfinite(rho_new):
            message = "BiCGStab breakdown: rho = 0"
            break
        if k == 1:
            p = r.copy()
        else:
            p = r + (rho_new / rho) * (alpha / omega) * (p - omega * v)
        p_hat = _apply_pc(inv_diag, p)
        v = A(p_hat)
        denom = ctx.dot(r_hat, v)
        if denom == 0.0 or not np.isfinite(denom):
            message = "BiCGStab breakdown: r_hat^T v = 0"
            break
        alpha = rho_new / denom
        s = r - alpha * v
        x += alpha * p_hat
        s_norm = ctx.norm(s)
        if s_norm <= tol:
            return LinearSolveResult(x, True, k, s_norm, s_norm / (b_norm + 1e-30), "bicgstab")
        s_hat = _apply_pc(inv_diag, s)
        t = A(s_hat)
        tt = ctx.dot(t, t)
        if tt == 0.0 or not np.isfinite(tt):
            message = "BiCGStab breakdown: t = 0"
            r_norm = s_norm
            break
        omega = ctx.dot(t, s) / tt
        x += omega * s_hat
        r = s - omega * t
        r_norm = ctx.norm(r)
        if r_norm <= tol:
            return LinearSolveResult(x, True, k, r_norm, r_norm / (b_norm + 1e-30), "bicgstab")
        if omega == 0.0 or not np.isfinite(r_norm):
            message = "BiCGStab breakdown: omega = 0"
            break
        rho = rho_new
    return LinearSolveResult(
        x, False, k, r_norm, r_norm / (b_norm + 1e-30), "bicgstab",
        message=message or f"BiCGStab reached max_iterations={max_iter}",
    )


# -----------------------------------------------------------------------------
# SciPy backend
# -----------------------------------------------------------------------------
def solve_scipy(
    A: MatVec,
    b: np.ndarray,
    inv_diag: Optional[np.ndarray],
    cfg: LinearConfig,
    x0: Optional[np.ndarray] = None,
) -> LinearSolveResult:
    from scipy.sparse.linalg import LinearOperator, bicgstab, cg, gmres, lgmres

    n = b.shape[0]
    A_op = LinearOperator((n, n), matvec=A, dtype=np.float64)
    M_op = None
    if inv_diag is not None:
        M_op = LinearOperator((n, n), matvec=lambda r: inv_diag * np.ravel(r), dtype=np.float64)

    n_iter = 0

    def _count(*_args) -> None:
        nonlocal n_iter
        n_iter += 1

    method = cfg.method
    kwargs = dict(x0=x0, rtol=cfg.rtol, atol=cfg.atol, maxiter=cfg.max_iterations, M=M_op, callback=_count)
    if method == "cg":
        x, info = cg(A_op, b, **kwargs)
    elif method == "bicgstab":
        x, info = bicgstab(A_op, b, **kwargs)
    elif method == "gmres":
        x, info = gmres(A_op, b, restart=cfg.restart, callback_type="pr_norm", **kwargs)
    elif method == "lgmres":
        x, info = lgmres(A_op, b, **kwargs)
    else:
        raise ConfigError(f"linear.method: invalid value {method!r} for scipy backend")

    x = np.asarray(x, dtype=np.float64)
    r_norm = float(np.linalg.norm(b - A(x)))
    b_norm = float(np.linalg.norm(b))
    converged = info == 0
    return LinearSolveResult(
        x=x,
        converged=converged,
        n_iter=n_iter,
        residual_norm=r_norm,
        rel_residual=r_norm / (b_norm + 1e-30),
        method=f"scipy.{method}",
        message=None if converged else f"scipy {method} info={info}",
        diag={"info": int(info)},
    )


# -----------------------------------------------------------------------------
# Dispatcher
# -----------------------------------------------------------------------------
class LinearSolveStep:
    """Configured linear solver; `solve` raises LinearSolveDidNotConverge on failure."""

    def __init__(self, cfg: LinearConfig, ctx: Optional[ExecutionContext] = None) -> None:
        self.cfg = cfg
        self.ctx = ctx if ctx is not None else ExecutionContext()
        if cfg.backend == "scipy" and self.ctx.size > 1:
            raise ConfigError("linear.backend: 'scipy' is serial only; use 'native' or 'petsc' under MPI")
        if cfg.backend == "petsc":
            from .petsc_linear import require_petsc

            require_petsc()

    def solve(
        self,
        A: MatVec,
        b: np.ndarray,
        inv_diag: Optional[np.ndarray] = None,
        x0: Optional[np.ndarray] = None,
    ) -> LinearSolveResult:
        cfg = self.cfg
        b = np.asarray(b, dtype=np.float64)
        with self.ctx.timer.section("linear solve"):
            if cfg.backend == "native":
                solver = solve_pcg if cfg.method == "cg" else solve_bicgstab
                result = solver(
                    self.ctx, A, b, inv_diag,
                    rtol=cfg.rtol, atol=cfg.atol, max_iter=cfg.max_iterations, x0=x0,
                )
            elif cfg.backend == "scipy":
                result = solve_scipy(A, b, inv_diag, cfg, x0=x0)
            elif cfg.backend == "petsc":
                from .petsc_linear import solve_linear_petsc

                result = solve_linear_petsc(self.ctx, A, b, inv_diag, cfg, x0=x0)
            else:
                raise ConfigError(f"linear.backend: invalid value {cfg.backend!r}")

        logger.debug(
            "linear solve: method=%s converged=%s its=%d |r|=%.3e rel=%.3e",
            result.method,
            result.converged,
            result.n_iter,
            result.residual_norm,
            result.rel_residual,
        )
        if not result.converged:
            raise LinearSolveDidNotConverge(
                f"linear solve ({result.method}) did not converge after {result.n_iter} iterations: "
                f"|r|={result.residual_norm:.3e} ({result.message})",
                n_iter=result.n_iter,
                residual_norm=result.residual_norm,
                x=result.x,
            )
        return result
