from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from _helpers import affine_dirichlet, build_solver, constant_dirichlet, make_config

from mfpde.core.mesh import interval_mesh, rectangle_mesh
from mfpde.core.types import LinearConfig, NonlinearConfig
from mfpde.solvers.linear_solve import LinearSolveStep
from mfpde.solvers.newton import NewtonRaphsonDriver
from mfpde.solvers.nonlinear_types import NewtonStatus
from mfpde.physics.kernels import NonlinearDiffusionKernel, PoissonKernel


def _kirchhoff_1d(solver):
    """u + u^3/3 is linear in x for -(k(u) u')' = 0 with k = 1 + u^2, u(0)=0, u(1)=1."""
    u = solver.gather_solution("u")
    x = solver.mesh.points[:, 0]
    return u + u**3 / 3.0 - 4.0 * x / 3.0


def _solve(solver, increment=1):
    solver.prepare_increment(increment, float(increment), 1.0)
    return solver.newton.solve(solver, increment)


def _steady_diffusion(cfg, n=16):
    cfg.linear.method = "bicgstab"
    mesh = interval_mesh(n)
    return build_solver(
        mesh,
        NonlinearDiffusionKernel(k0=1.0, k1=1.0, transient=False),
        cfg,
        dirichlet=[constant_dirichlet("u", "left", 0.0), constant_dirichlet("u", "right", 1.0)],
    )


@pytest.mark.parametrize("cell_type", ["triangle", "quadrilateral"])
def test_affine_poisson_converges_in_one_iteration(cell_type):
    solver = build_solver(
        rectangle_mesh(6, 5, cell_type=cell_type),
        PoissonKernel(),
        make_config(linear={"rtol": 1e-12}),
        dirichlet=[affine_dirichlet("u", "boundary", 1.0, (1.0, 2.0))],
    )
    solver.set_initial_condition("u", lambda p: np.full(p.shape[0], 3.0))
    summary = solver.run()
    assert summary.newton_iterations == [1]
    exact = 1.0 + solver.mesh.points[:, 0] + 2.0 * solver.mesh.points[:, 1]
    np.testing.assert_allclose(solver.gather_solution("u"), exact, atol=1e-10)


def test_nonlinear_diffusion_matches_kirchhoff_solution():
    solver = _steady_diffusion(make_config(nonlinear={"abs_tol": 1e-12, "rel_tol": 1e-12}))
    result = _solve(solver, 1)
    assert result.converged
    assert result.iterations <= 8
    assert result.norm_history[-1] < result.norm_history[0]
    assert len(result.linear_iterations) == result.iterations
    np.testing.assert_allclose(_kirchhoff_1d(solver), 0.0, atol=1e-9)


def test_newton_converges_quadratically():
    solver = _steady_diffusion(make_config(nonlinear={"abs_tol": 1e-13, "rel_tol": 0.0}, linear={"rtol": 1e-12}))
    solver.set_initial_condition("u", lambda p: p[:, 0])
    result = _solve(solver, 1)
    h = np.asarray(result.norm_history)
    assert result.converged
    assert h.shape[0] >= 3
    r = h / h[0]
    for k in range(1, h.shape[0] - 1):
        if h[k + 1] > 1e-12:
            assert r[k + 1] <= 50.0 * r[k] ** 2


def test_fd_jacobian_mode_reaches_same_solution():
    solver = _steady_diffusion(make_config(nonlinear={"jacobian_mode": "fd", "abs_tol": 1e-11, "rel_tol": 1e-11}))
    result = _solve(solver, 1)
    assert result.converged
    np.testing.assert_allclose(_kirchhoff_1d(solver), 0.0, atol=1e-8)


def test_relaxation_slows_convergence():
    full = build_solver(
        interval_mesh(10),
        PoissonKernel(source=1.0),
        make_config(),
        dirichlet=[constant_dirichlet("u", "boundary", 0.0)],
    )
    damped = build_solver(
        interval_mesh(10),
        PoissonKernel(source=1.0),
        make_config(nonlinear={"relaxation": 0.5, "max_iterations": 60}),
        dirichlet=[constant_dirichlet("u", "boundary", 0.0)],
    )
    r_full = _solve(full)
    r_damped = _solve(damped)
    assert r_full.iterations == 1
    assert 20 < r_damped.iterations < 40
    np.testing.assert_allclose(damped.gather_solution("u"), full.gather_solution("u"), atol=1e-7)


def test_max_iterations_reports_divergence():
    solver = _steady_diffusion(make_config(nonlinear={"max_iterations": 1, "abs_tol": 1e-14, "rel_tol": 1e-14}))
    result = _solve(solver, 3)
    assert result.status == NewtonStatus.DIVERGED
    assert result.iterations == 1
    assert result.failure is not None
    assert result.failure.increment == 3
    assert "max_iterations=1" in result.failure.reason


def test_model_can_veto_convergence():
    class Veto(PoissonKernel):
        def test_convergence_after_iteration(self, iteration):
            return iteration >= 3

    solver = build_solver(
        interval_mesh(6),
        Veto(source=1.0),
        make_config(),
        dirichlet=[constant_dirichlet("u", "boundary", 0.0)],
    )
    result = _solve(solver, 1)
    assert result.converged
    assert result.iterations == 3


def test_model_reset_request_is_divergence():
    class Reset(PoissonKernel):
        def request_increment_reset(self):
            return True

    solver = build_solver(
        interval_mesh(6),
        Reset(source=1.0),
        make_config(),
        dirichlet=[constant_dirichlet("u", "boundary", 0.0)],
    )
    result = _solve(solver, 1)
    assert not result.converged
    assert "reset" in result.failure.reason


def test_iteration_hooks_called_in_order():
    calls = []

    class Hooked(PoissonKernel):
        def update_before_iteration(self, iteration):
            calls.append(("before", iteration))

        def update_after_iteration(self, iteration):
            calls.append(("after", iteration))

    solver = build_solver(
        interval_mesh(4),
        Hooked(source=1.0),
        make_config(),
        dirichlet=[constant_dirichlet("u", "boundary", 0.0)],
    )
    _solve(solver)
    assert calls == [("before", 0), ("after", 1)]


class _ScalarProblem:
    """R(x) = x^3 - 8 on one DOF, for driving the Newton loop without a mesh."""

    def __init__(self, x0=1.0):
        self.x = np.array([x0])

    def residual(self):
        return self.x**3 - 8.0

    def jacobian_action(self, v):
        return 3.0 * self.x**2 * v

    def preconditioner(self):
        return None

    def apply_correction(self, dx):
        self.x += dx

    def before_iteration(self, iteration):
        pass

    def after_iteration(self, iteration):
        pass

    def accept_convergence(self, iteration):
        return True

    def reset_requested(self):
        return False


def test_driver_on_scalar_problem():
    driver = NewtonRaphsonDriver(
        NonlinearConfig(abs_tol=1e-12, rel_tol=0.0, max_iterations=30),
        LinearSolveStep(LinearConfig(method="bicgstab", rtol=1e-14)),
    )
    problem = _ScalarProblem(x0=1.0)
    result = driver.solve(problem)
    assert result.converged
    assert problem.x[0] == pytest.approx(2.0, rel=1e-12)


def test_non_finite_residual_is_divergence():
    driver = NewtonRaphsonDriver(NonlinearConfig(), LinearSolveStep(LinearConfig()))
    problem = _ScalarProblem(x0=np.inf)
    result = driver.solve(problem)
    assert not result.converged
    assert result.iterations == 0
    assert "not finite" in result.failure.reason
