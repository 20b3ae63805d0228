"""
Distributed code paths on an in-process communicator (one thread per rank).
"""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from _helpers import affine_dirichlet, build_solver, constant_dirichlet, make_config, random_state, run_on_ranks

from mfpde.assembly.kernel import StepContext
from mfpde.core.fields import FieldRank, FieldRegistry
from mfpde.core.mesh import interval_mesh, partition_cells, rectangle_mesh
from mfpde.parallel.dof_manager import DOFManager
from mfpde.physics.kernels import NonlinearDiffusionKernel, PoissonKernel


def _registry():
    reg = FieldRegistry()
    reg.register_field("u", FieldRank.SCALAR)
    reg.register_field("disp", FieldRank.VECTOR)
    reg.freeze()
    return reg


@pytest.mark.parametrize("size", [2, 3])
def test_ghost_update_copies_owner_values_and_is_idempotent(size):
    mesh = rectangle_mesh(6, 4)

    def body(ctx):
        dofs = DOFManager(mesh, _registry(), ctx)
        vec = dofs.create_block_vector()
        for fi in range(2):
            ds = dofs.dof_set(fi)
            vec[fi].data[:] = -1.0
            vec[fi].owned[:] = ds.global_dofs[: ds.n_owned]
        dofs.ghost_update(vec)
        first = [v.data.copy() for v in vec]
        dofs.ghost_update(vec)
        second = [v.data.copy() for v in vec]
        return [dofs.dof_set(fi).global_dofs.astype(float) for fi in range(2)], first, second

    for expected, first, second in run_on_ranks(size, body):
        for fi in range(2):
            np.testing.assert_array_equal(first[fi], expected[fi])
            np.testing.assert_array_equal(second[fi], first[fi])


def test_ghost_accumulate_sums_on_owner_and_zeroes_ghosts():
    mesh = rectangle_mesh(6, 2)
    size = 3

    def body(ctx):
        dofs = DOFManager(mesh, _registry(), ctx)
        vec = dofs.create_vector(0)
        vec.data[:] = 1.0
        vec.accumulate_ghosts()
        part = dofs.partition
        return part.local_nodes[: part.n_owned].copy(), vec.owned.copy(), vec.ghosts.copy()

    results = run_on_ranks(size, body)
    # number of ranks holding each node as locally relevant
    owner = partition_cells(mesh, size)
    holders = np.zeros(mesh.n_nodes)
    for r in range(size):
        holders[np.unique(mesh.cells[owner == r])] += 1.0
    for owned_nodes, owned_vals, ghost_vals in results:
        np.testing.assert_array_equal(owned_vals, holders[owned_nodes])
        assert np.all(ghost_vals == 0.0)


def test_distributed_residual_matches_serial():
    mesh = rectangle_mesh(5, 4, cell_type="quadrilateral")
    cfg = make_config(time={"time_step": 0.1})

    def make(ctx):
        solver = build_solver(
            mesh,
            NonlinearDiffusionKernel(k0=1.0, k1=0.5, source=2.0),
            cfg,
            ctx,
            dirichlet=[constant_dirichlet("u", "left", 1.0)],
        )
        solver.operator.step = StepContext(time=0.1, dt=0.1, increment=1)
        random_state(solver, seed=3, scale=0.5)
        solver.old_solution[0].data *= 0.5
        solver.constraints.apply_to_solution(solver.solution)
        return solver

    def residual_by_mesh_node(solver):
        part = solver.dofs.partition
        return part.local_nodes[: part.n_owned].copy(), solver.residual()

    serial_nodes, serial_r = residual_by_mesh_node(make(None))
    expected = np.zeros(mesh.n_nodes)
    expected[serial_nodes] = serial_r

    for nodes, r in run_on_ranks(2, lambda ctx: residual_by_mesh_node(make(ctx))):
        np.testing.assert_allclose(r, expected[nodes], rtol=1e-12, atol=1e-12)


def test_distributed_newton_matches_serial_solution():
    mesh = rectangle_mesh(6, 6)
    cfg = make_config(
        nonlinear={"abs_tol": 1e-11, "rel_tol": 1e-10},
        linear={"method": "bicgstab", "rtol": 1e-12},
    )

    def run(ctx):
        solver = build_solver(
            mesh,
            NonlinearDiffusionKernel(k0=1.0, k1=1.0, source=4.0, transient=False),
            cfg,
            ctx,
            dirichlet=[affine_dirichlet("u", "boundary", 0.5, (1.0, 0.0))],
        )
        summary = solver.run()
        return summary.increments, solver.gather_solution("u")

    serial_incs, serial_u = run(None)
    results = run_on_ranks(3, run)
    for incs, u in results:
        assert incs == serial_incs == 1
        np.testing.assert_allclose(u, serial_u, rtol=1e-8, atol=1e-9)


def test_distributed_poisson_reproduces_affine_solution():
    mesh = interval_mesh(12)

    def run(ctx):
        solver = build_solver(
            mesh,
            PoissonKernel(),
            make_config(),
            ctx,
            dirichlet=[affine_dirichlet("u", "boundary", 2.0, (-3.0,))],
        )
        solver.run()
        return solver.gather_solution("u")

    for u in run_on_ranks(4, run):
        np.testing.assert_allclose(u, 2.0 - 3.0 * mesh.points[:, 0], atol=1e-10)
