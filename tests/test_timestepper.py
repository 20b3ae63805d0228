from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from _helpers import build_solver, constant_dirichlet, make_config

from mfpde.assembly.history import QuadratureHistory
from mfpde.core.errors import CutbackExhausted, NonlinearDivergence
from mfpde.core.mesh import interval_mesh, rectangle_mesh
from mfpde.core.types import CutbackConfig, TimeConfig
from mfpde.physics.boundary import LinearRamp
from mfpde.physics.initial import tanh_front
from mfpde.physics.kernels import AllenCahnKernel, LinearElasticityKernel, NonlinearDiffusionKernel, PoissonKernel
from mfpde.assembly.constraints import DirichletCondition
from mfpde.solvers.nonlinear_types import NewtonResult, NewtonStatus
from mfpde.solvers.timestepper import IncrementController


class _FakeProblem:
    """Converges only for steps at or below `max_ok`."""

    def __init__(self, max_ok=float("inf")):
        self.max_ok = max_ok
        self.prepared = []
        self.committed = []
        self.restored = 0

    def prepare_increment(self, increment, time, dt):
        self.prepared.append((increment, time, dt))

    def solve_increment(self, increment):
        dt = self.prepared[-1][2]
        if dt <= self.max_ok:
            return NewtonResult(NewtonStatus.CONVERGED, 2, 1e-12, [1.0, 1e-12], [3, 3])
        failure = NonlinearDivergence(increment, 4, 1.0, "max_iterations=4 reached")
        return NewtonResult(NewtonStatus.DIVERGED, 4, 1.0, [1.0] * 5, [3] * 4, failure=failure)

    def commit_increment(self, state, result):
        self.committed.append((state.current_increment, state.current_time))

    def restore_increment(self):
        self.restored += 1


def test_cutback_sequence_then_exhausted():
    problem = _FakeProblem(max_ok=0.0)
    ctl = IncrementController(TimeConfig(total_increments=3, time_step=1.0), CutbackConfig(factor=0.5, floor=0.1))
    with pytest.raises(CutbackExhausted) as exc:
        ctl.run(problem)
    assert exc.value.attempted == [1.0, 0.5, 0.25, 0.125]
    assert exc.value.increment == 1
    assert exc.value.cause is not None and "max_iterations" in exc.value.cause.reason
    assert problem.restored == 4
    assert problem.committed == []
    assert ctl.state.current_increment == 0


def test_cutback_recovers_and_commits_after_convergence():
    problem = _FakeProblem(max_ok=0.3)
    ctl = IncrementController(
        TimeConfig(total_increments=2, time_step=1.0),
        CutbackConfig(factor=0.5, floor=1e-3, growth=2.0),
    )
    summary = ctl.run(problem)
    assert summary.increments == 2
    assert summary.attempted_steps == [1.0, 0.5, 0.25, 0.5, 0.25]
    assert summary.cutbacks == 3
    assert summary.newton_iterations == [2, 2]
    assert [c[0] for c in problem.committed] == [1, 2]
    assert summary.time == pytest.approx(0.5)


def test_solver_never_converging_exhausts_cutback_and_restores_each_attempt():
    class NeverConverges(PoissonKernel):
        def test_convergence_after_iteration(self, iteration):
            return False

    solver = build_solver(
        interval_mesh(6),
        NeverConverges(source=1.0),
        make_config(
            time={"total_increments": 1, "time_step": 1.0},
            nonlinear={"max_iterations": 2},
            cutback={"factor": 0.5, "floor": 0.1},
        ),
        dirichlet=[constant_dirichlet("u", "boundary", 0.0)],
    )
    solver.set_initial_condition("u", lambda p: np.full(p.shape[0], 0.25))
    at_prepare = []
    restored = []
    prepare, restore = solver.prepare_increment, solver.restore_increment

    def spy_prepare(increment, time, dt):
        at_prepare.append((dt, solver.solution[0].data.copy()))
        prepare(increment, time, dt)

    def spy_restore():
        before = solver.solution[0].data.copy()
        restore()
        restored.append((before, solver.solution[0].data.copy()))

    solver.prepare_increment = spy_prepare
    solver.restore_increment = spy_restore

    with pytest.raises(CutbackExhausted) as exc:
        solver.run()
    assert exc.value.increment == 1
    assert exc.value.attempted == [1.0, 0.5, 0.25, 0.125]
    assert [dt for dt, _u in at_prepare] == [1.0, 0.5, 0.25, 0.125]
    assert len(restored) == 4

    start = at_prepare[0][1]
    np.testing.assert_array_equal(start[[0, -1]], 0.0)
    np.testing.assert_array_equal(start[1:-1], 0.25)
    for _dt, u in at_prepare:
        np.testing.assert_array_equal(u, start)
    for before, after in restored:
        assert not np.allclose(before, start)
        np.testing.assert_array_equal(after, start)
    assert solver.controller.state.current_increment == 0


def test_final_time_clips_last_step():
    problem = _FakeProblem()
    ctl = IncrementController(TimeConfig(time_step=0.3, final_time=1.0), CutbackConfig())
    summary = ctl.run(problem)
    assert summary.increments == 4
    np.testing.assert_allclose(summary.attempted_steps, [0.3, 0.3, 0.3, 0.1])
    assert summary.time == pytest.approx(1.0)


def test_max_increments_caps_run():
    problem = _FakeProblem()
    ctl = IncrementController(TimeConfig(total_increments=10, time_step=0.1), CutbackConfig())
    summary = ctl.run(problem, max_increments=3)
    assert summary.increments == 3
    assert [p[0] for p in problem.prepared] == [1, 2, 3]


# -----------------------------------------------------------------------------
# Full solver runs
# -----------------------------------------------------------------------------
def test_transient_diffusion_commits_each_increment():
    outputs = []
    solver = build_solver(
        rectangle_mesh(6, 4, cell_type="quadrilateral"),
        NonlinearDiffusionKernel(k0=1.0, k1=1.0),
        make_config(time={"total_increments": 3, "time_step": 0.05}, linear={"method": "bicgstab"}),
        dirichlet=[
            DirichletCondition("u", "left", LinearRamp(end=1.0, length=0.1, over="time")),
            constant_dirichlet("u", "right", 0.0),
        ],
        output_hook=outputs.append,
    )
    summary = solver.run()
    assert summary.increments == 3
    assert [o.increment for o in outputs] == [1, 2, 3]
    np.testing.assert_allclose([o.time for o in outputs], [0.05, 0.1, 0.15])
    u = outputs[-1].fields["u"]
    assert u.shape == (solver.mesh.n_nodes,)
    assert outputs[-1].support_points["u"].shape == (solver.mesh.n_nodes, 2)
    left = solver.dofs.local_nodes_of_marker("left")
    np.testing.assert_allclose(solver.solution[0].data[left], 1.0)
    right = solver.dofs.local_nodes_of_marker("right")
    np.testing.assert_array_equal(solver.solution[0].data[right], 0.0)
    assert np.all(np.isfinite(u))
    # earlier snapshots are copies, not views of the live solution
    assert not np.allclose(outputs[0].fields["u"], u)


def test_explicit_allen_cahn_keeps_equilibrium_front():
    eps = 0.05
    mesh = interval_mesh(80)
    solver = build_solver(
        mesh,
        AllenCahnKernel(epsilon=eps),
        make_config(time={"total_increments": 50, "time_step": 1e-3}),
        dirichlet=[constant_dirichlet("phi", "left", -1.0), constant_dirichlet("phi", "right", 1.0)],
    )
    front = tanh_front(0.5, eps)
    solver.set_initial_condition("phi", front)
    summary = solver.run()
    assert summary.increments == 50
    assert summary.newton_iterations == [0] * 50
    phi = solver.gather_solution("phi")
    assert phi[0] == -1.0 and phi[-1] == 1.0
    assert np.all(np.abs(phi) <= 1.0 + 1e-8)
    np.testing.assert_allclose(phi, front(mesh.points), atol=0.05)


def test_history_commit_and_rollback():
    hist = QuadratureHistory(n_cells=2, n_q=3, n_variables=2)
    hist.trial_at(slice(0, 2), 1)[:, 0] = 5.0
    hist.commit()
    assert hist.committed[:, 1, 0].tolist() == [5.0, 5.0]
    hist.trial[...] = 9.0
    hist.rollback()
    np.testing.assert_array_equal(hist.trial, hist.committed)
    view = hist.committed_at(slice(0, 1), 1)
    with pytest.raises(ValueError):
        view[0, 0] = 1.0
    with pytest.raises(ValueError, match="n_variables"):
        QuadratureHistory(1, 1, 0)


def test_elasticity_history_tracks_max_strain_over_increments():
    cfg = make_config(
        time={"total_increments": 4, "time_step": 1.0},
        history={"enabled": True, "n_variables": 1},
    )
    solver = build_solver(
        rectangle_mesh(4, 2, lx=2.0, cell_type="quadrilateral"),
        LinearElasticityKernel(youngs_modulus=10.0, poisson_ratio=0.25),
        cfg,
        dirichlet=[
            constant_dirichlet("displacement", "left", 0.0),
            DirichletCondition("displacement", "right", LinearRamp(end=0.02, length=2.0), components=[0]),
        ],
    )
    peaks = []

    def record(_out):
        peaks.append(float(solver.history.committed.max()))

    solver.output_hook = record
    solver.run()
    # ramp to 0.02 over two increments then hold: the history variable never decreases
    assert len(peaks) == 4
    assert peaks[0] > 0.0
    assert peaks[1] == pytest.approx(2.0 * peaks[0], rel=1e-6)
    assert peaks[3] == pytest.approx(peaks[1], rel=1e-9)
    np.testing.assert_array_equal(solver.history.trial, solver.history.committed)


def test_restore_increment_rolls_back_solution_and_history():
    cfg = make_config(history={"enabled": True, "n_variables": 1})
    solver = build_solver(
        rectangle_mesh(2, 2, cell_type="quadrilateral"),
        LinearElasticityKernel(),
        cfg,
        dirichlet=[constant_dirichlet("displacement", "left", 0.0)],
    )
    solver.solution[0].data[:] = 0.3
    solver.history.trial[...] = 4.0
    solver.restore_increment()
    np.testing.assert_array_equal(solver.solution[0].data, 0.0)
    np.testing.assert_array_equal(solver.history.trial, 0.0)
