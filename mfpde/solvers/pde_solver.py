"""
Top-level solver: owns the field registry, DOF manager, vectors, constraints,
matrix-free operator, optional quadrature history, and drives the increment
loop. It is the discretized problem seen by the Newton driver (flat owned
arrays of the implicit fields) and by the increment controller.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from mfpde.assembly.constraints import ConstraintManager, DirichletCondition, build_constraints
from mfpde.assembly.history import QuadratureHistory
from mfpde.assembly.kernel import Kernel, StepContext
from mfpde.assembly.matrix_free import MatrixFreeOperator
from mfpde.core.context import ExecutionContext
from mfpde.core.errors import SetupError
from mfpde.core.fields import FieldRegistry
from mfpde.core.mesh import Mesh
from mfpde.core.quadrature import quadrature_rule
from mfpde.core.types import SolverConfig
from mfpde.parallel.dof_manager import DOFManager

from .linear_solve import LinearSolveStep
from .newton import NewtonRaphsonDriver
from .nonlinear_types import NewtonResult
from .timestepper import IncrementController, IncrementOutput, IncrementState, RunSummary

logger = logging.getLogger(__name__)

OutputHook = Callable[[IncrementOutput], None]
PostProcess = Callable[["PDESolver"], Dict[str, np.ndarray]]
ConstraintBuilder = Callable[[ConstraintManager, DOFManager], None]


class PDESolver:
    def __init__(
        self,
        mesh: Mesh,
        kernel: Kernel,
        config: Optional[SolverConfig] = None,
        ctx: Optional[ExecutionContext] = None,
        *,
        dirichlet: Sequence[DirichletCondition] = (),
        constraint_builder: Optional[ConstraintBuilder] = None,
        cell_owner: Optional[np.ndarray] = None,
        output_hook: Optional[OutputHook] = None,
        postprocess: Optional[PostProcess] = None,
    ) -> None:
        self.mesh = mesh
        self.kernel = kernel
        self.config = (config if config is not None else SolverConfig()).validate()
        self.ctx = ctx if ctx is not None else ExecutionContext()
        self.dirichlet = list(dirichlet)
        self.constraint_builder = constraint_builder
        self.cell_owner = cell_owner
        self.output_hook = output_hook
        self.postprocess = postprocess

        self.registry = FieldRegistry()
        self._is_setup = False

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    def setup(self) -> "PDESolver":
        if self._is_setup:
            return self
        cfg = self.config
        ctx = self.ctx
        with ctx.timer.section("setup"):
            self.kernel.declare_fields(self.registry)
            if len(self.registry) == 0:
                raise SetupError(f"kernel '{self.kernel.name}' declared no fields")
            self.registry.freeze()
            self.kernel.bind(self.registry)

            self.dofs = DOFManager(self.mesh, self.registry, ctx, cell_owner=self.cell_owner)
            self.implicit: List[int] = [f.index for f in self.registry.implicit_fields()]
            self.explicit: List[int] = [f.index for f in self.registry.explicit_fields()]

            self.constraints = build_constraints(
                self.dofs,
                self.registry,
                self.dirichlet,
                ctx=ctx,
                builder=self.constraint_builder,
                time=cfg.time.t0,
            )

            self.history: Optional[QuadratureHistory] = None
            if cfg.history.enabled:
                n_q = quadrature_rule(self.mesh.cell_type, cfg.discretization.quadrature_degree)[1].shape[0]
                self.history = QuadratureHistory(
                    self.dofs.local_cell_range().shape[0], n_q, cfg.history.n_variables
                )

            self.operator = MatrixFreeOperator(
                self.dofs, self.registry, self.kernel, self.constraints, cfg, ctx, self.history
            )

            self.solution = self.dofs.create_block_vector()
            self.old_solution = self.dofs.create_block_vector()
            self.residual_vector = self.dofs.create_block_vector()
            self._direction = self.dofs.create_block_vector()
            self._jv = self.dofs.create_block_vector()
            self._correction = self.dofs.create_block_vector()
            self._explicit_rhs = self.dofs.create_block_vector()
            self._constrained_mask = self.constraints.owned_constrained_mask(self.implicit)

            self.linear = LinearSolveStep(cfg.linear, ctx)
            self.newton = NewtonRaphsonDriver(cfg.nonlinear, self.linear, ctx)
            self.controller = IncrementController(cfg.time, cfg.cutback, ctx)

        self._is_setup = True
        ctx.info(
            "setup done: fields=%s implicit dofs=%d (global %d) backend=%s/%s pc=%s",
            self.registry.names(),
            self.solution.flat_size(self.implicit),
            int(round(ctx.allreduce_sum(self.solution.flat_size(self.implicit)))),
            cfg.linear.backend,
            cfg.linear.method,
            cfg.linear.preconditioner,
        )
        return self

    def _require_setup(self) -> None:
        if not self._is_setup:
            raise SetupError("PDESolver.setup() must be called first")

    def set_initial_condition(self, field_name: str, func: Callable[[np.ndarray], np.ndarray]) -> None:
        """func(points (n, dim)) -> (n,) or (n, n_comp) values at the locally relevant nodes."""
        self._require_setup()
        fi = self.registry.index_of(field_name)
        vec = self.solution[fi]
        pts = self.dofs.node_points()
        vals = np.asarray(func(pts), dtype=np.float64)
        vec.nodal[:] = vals.reshape(pts.shape[0], -1) if vals.ndim > 0 else vals
        self.old_solution[fi].copy_from(vec)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    def run(self, *, max_increments: Optional[int] = None) -> RunSummary:
        self.setup()
        self.solution.update_ghosts()
        self.constraints.apply_to_solution(self.solution)
        self.old_solution.copy_from(self.solution)
        try:
            with self.ctx.timer.section("run"):
                summary = self.controller.run(self, max_increments=max_increments)
        finally:
            if self.ctx.is_root:
                self.ctx.timer.log_summary(logger)
        return summary

    # ------------------------------------------------------------------
    # NonlinearProblem
    # ------------------------------------------------------------------
    def residual(self) -> np.ndarray:
        self.operator.residual(self.solution, self.old_solution, self.residual_vector)
        return self.residual_vector.pack_owned(self.implicit)

    def jacobian_action(self, v: np.ndarray) -> np.ndarray:
        self._direction.unpack_owned(v, self.implicit)
        self.operator.jacobian_action(
            self.solution,
            self.old_solution,
            self._direction,
            self._jv,
            base_residual=self.residual_vector,
        )
        return self._jv.pack_owned(self.implicit)

    def preconditioner(self) -> Optional[np.ndarray]:
        kind = self.config.linear.preconditioner
        if kind == "none" or not self.implicit:
            return None
        if kind == "jacobi":
            diag = self.operator.jacobian_diagonal(self.solution, self.old_solution).pack_owned(self.implicit)
        else:
            diag = np.concatenate([self.operator.lumped_mass_dofs(i) for i in self.implicit])
        diag[self._constrained_mask] = 1.0
        tiny = np.abs(diag) <= 1.0e-300
        diag[tiny] = 1.0
        return 1.0 / diag

    def apply_correction(self, dx: np.ndarray) -> None:
        self._correction.unpack_owned(dx, self.implicit)
        self.constraints.distribute_correction(self._correction, self.solution, self.implicit)

    def before_iteration(self, iteration: int) -> None:
        self.kernel.update_before_iteration(iteration)

    def after_iteration(self, iteration: int) -> None:
        self.kernel.update_after_iteration(iteration)

    def accept_convergence(self, iteration: int) -> bool:
        return bool(self.kernel.test_convergence_after_iteration(iteration))

    def reset_requested(self) -> bool:
        return bool(self.kernel.request_increment_reset())

    # ------------------------------------------------------------------
    # IncrementProblem
    # ------------------------------------------------------------------
    def prepare_increment(self, increment: int, time: float, dt: float) -> None:
        self.operator.step = StepContext(time=float(time), dt=float(dt), increment=int(increment))
        self.kernel.update_before_increment(increment, time, dt)
        self.constraints.update_boundary_values(increment, time)
        self.solution.update_ghosts()
        self.constraints.apply_to_solution(self.solution)
        if self.explicit:
            self._explicit_update()

    def _explicit_update(self) -> None:
        rhs = self.operator.explicit_rhs(self.solution, self.old_solution, self._explicit_rhs)
        for i in self.explicit:
            self.solution[i].owned[:] = rhs[i].owned / self.operator.lumped_mass_dofs(i)
        self.solution.update_ghosts(self.explicit)
        self.constraints.apply_to_solution(self.solution, self.explicit)

    def solve_increment(self, increment: int) -> NewtonResult:
        return self.newton.solve(self, increment)

    def commit_increment(self, state: IncrementState, result: NewtonResult) -> None:
        self.old_solution.copy_from(self.solution)
        if self.history is not None:
            self.history.commit()
        if self.output_hook is not None:
            self.output_hook(self._make_output(state, result))
        self.kernel.update_after_increment(state.current_increment, state.current_time)

    def restore_increment(self) -> None:
        self.solution.copy_from(self.old_solution)
        if self.history is not None:
            self.history.rollback()

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------
    def solution_array(self, field_name: str) -> np.ndarray:
        """Copy of the owned nodal values of a field: (n_owned_nodes,) or (n_owned_nodes, n_comp)."""
        self._require_setup()
        fi = self.registry.index_of(field_name)
        vec = self.solution[fi]
        arr = vec.nodal[: self.dofs.partition.n_owned].copy()
        return arr[:, 0] if vec.n_comp == 1 else arr

    def owned_points(self) -> np.ndarray:
        return self.dofs.node_points()[: self.dofs.partition.n_owned].copy()

    def gather_solution(self, field_name: str) -> np.ndarray:
        """Full field in mesh node order on every rank (collective)."""
        self._require_setup()
        part = self.dofs.partition
        local = self.solution_array(field_name)
        owned_nodes = part.local_nodes[: part.n_owned]
        shape = (self.mesh.n_nodes,) + local.shape[1:]
        out = np.zeros(shape)
        if self.ctx.comm is None or self.ctx.size == 1:
            out[owned_nodes] = local
            return out
        for nodes, vals in self.ctx.comm.allgather((owned_nodes, local)):
            out[nodes] = vals
        return out

    def _make_output(self, state: IncrementState, result: NewtonResult) -> IncrementOutput:
        pts = self.owned_points()
        fields = {f.name: self.solution_array(f.name) for f in self.registry}
        post = self.postprocess(self) if self.postprocess is not None else {}
        return IncrementOutput(
            increment=state.current_increment,
            time=state.current_time,
            time_step=float(self.operator.step.dt),
            newton_iterations=result.iterations,
            residual_norm=result.residual_norm,
            fields=fields,
            support_points={name: pts for name in fields},
            postprocessed={k: np.array(v, copy=True) for k, v in post.items()},
        )
