"""
Matrix-free operator: residual, Jacobian action, Jacobian diagonal, explicit
right-hand side and lumped mass, all evaluated by cell loops over the locally
owned cells without forming a global matrix.

Per call:
1) refresh ghost entries of the inputs,
2) per cell batch, gather local values and interpolate values/gradients at
   each quadrature point according to the field read flags,
3) call the kernel once per quadrature point (vectorized over the batch),
4) integrate contributions according to the write flags and scatter-add into
   the locally relevant output,
5) condense constraints, accumulate ghost contributions on the owners.

Constrained rows of every operator action are the identity.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from mfpde.core.context import ExecutionContext
from mfpde.core.fields import Field, FieldRank, FieldRegistry
from mfpde.core.quadrature import CellGeometry, build_cell_geometry
from mfpde.core.types import SolverConfig
from mfpde.parallel.dof_manager import DOFManager
from mfpde.parallel.vectors import BlockVector

from .constraints import ConstraintManager
from .history import QuadratureHistory
from .kernel import Contributions, Kernel, QuadraturePoint, StepContext

logger = logging.getLogger(__name__)


class MatrixFreeOperator:
    def __init__(
        self,
        dofs: DOFManager,
        registry: FieldRegistry,
        kernel: Kernel,
        constraints: ConstraintManager,
        config: SolverConfig,
        ctx: Optional[ExecutionContext] = None,
        history: Optional[QuadratureHistory] = None,
    ) -> None:
        self.dofs = dofs
        self.registry = registry
        self.kernel = kernel
        self.constraints = constraints
        self.config = config
        self.ctx = ctx if ctx is not None else dofs.ctx
        self.history = history

        self.fields: List[Field] = list(registry)
        self.implicit: List[int] = [f.index for f in registry.implicit_fields()]
        self.explicit: List[int] = [f.index for f in registry.explicit_fields()]
        self.dim = dofs.mesh.dim

        with self.ctx.timer.section("matrix-free: geometry"):
            self.geometry = build_cell_geometry(
                dofs.mesh, dofs.local_cell_range(), config.discretization.quadrature_degree
            )
            self.nodal_geometry = build_cell_geometry(dofs.mesh, dofs.local_cell_range(), 1, nodal=True)
        self.local_cells = dofs.local_cells
        n_cells = self.geometry.n_cells
        batch = int(config.discretization.cell_batch_size) or max(n_cells, 1)
        self.batches: List[slice] = [slice(s, min(s + batch, n_cells)) for s in range(0, n_cells, batch)]

        if history is not None and history.trial.shape[:2] != (n_cells, self.geometry.n_q):
            raise ValueError(
                f"history shape {history.trial.shape[:2]} does not match (cells, quadrature points) "
                f"= {(n_cells, self.geometry.n_q)}"
            )

        mode = config.nonlinear.jacobian_mode
        if mode == "kernel" and not kernel.has_jacobian:
            self.ctx.info("kernel '%s' provides no jacobian_action; using finite differences", kernel.name)
            mode = "fd"
        self.jacobian_mode = mode
        self.fd_eps = float(config.nonlinear.fd_eps)

        self.step = StepContext()
        self._lumped: Optional[np.ndarray] = None

        logger.debug(
            "matrix-free operator: cells=%d batches=%d nq=%d implicit=%s explicit=%s jacobian=%s",
            n_cells,
            len(self.batches),
            self.geometry.n_q,
            [self.fields[i].name for i in self.implicit],
            [self.fields[i].name for i in self.explicit],
            self.jacobian_mode,
        )

    # ------------------------------------------------------------------
    # Interpolation / integration primitives
    # ------------------------------------------------------------------
    def _gather(self, vec: BlockVector, b: slice, fields: Sequence[int]) -> Dict[int, np.ndarray]:
        lc = self.local_cells[b]
        return {i: vec[i].nodal[lc] for i in fields}

    def _interp(
        self, ue: np.ndarray, b: slice, q: int, g: Optional[CellGeometry] = None
    ) -> Tuple[np.ndarray, np.ndarray]:
        if g is None:
            g = self.geometry
        val = np.einsum("v,cvk->ck", g.N[q], ue)
        grad = np.einsum("cvd,cvk->ckd", g.dNdx[b, q], ue)
        return val, grad

    def _present(self, i: int, val: np.ndarray, grad: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        if self.fields[i].rank == FieldRank.SCALAR:
            return val[:, 0], grad[:, 0, :]
        return val, grad

    def _read_fields(self) -> List[int]:
        return [f.index for f in self.fields if f.flags.reads]

    def _make_qp(
        self,
        cells: Dict[int, np.ndarray],
        old_cells: Dict[int, np.ndarray],
        b: slice,
        q: int,
        history_mode: str,
        g: Optional[CellGeometry] = None,
    ) -> QuadraturePoint:
        if g is None:
            g = self.geometry
        values: Dict[int, np.ndarray] = {}
        grads: Dict[int, np.ndarray] = {}
        olds: Dict[int, np.ndarray] = {}
        for i, ue in cells.items():
            val, grad = self._present(i, *self._interp(ue, b, q, g))
            values[i] = val
            grads[i] = grad
        for i, ue in old_cells.items():
            olds[i] = self._present(i, *self._interp(ue, b, q, g))[0]

        hist = hist_old = None
        if self.history is not None and history_mode != "none":
            hist_old = self.history.committed_at(b, q)
            if history_mode == "record":
                hist = self.history.trial_at(b, q)
            else:
                hist = self.history.trial_at(b, q).copy()
        return QuadraturePoint(
            self.fields, values, grads, olds, g.x_q[b, q], self.step, hist, hist_old
        )

    def _integrate(
        self, acc: Dict[int, np.ndarray], contrib: Contributions, b: slice, q: int, g: Optional[CellGeometry] = None
    ) -> None:
        if g is None:
            g = self.geometry
        jxw = g.JxW[b, q][:, None, None]
        for i, val in contrib.values.items():
            acc[i] += np.einsum("v,ck->cvk", g.N[q], val) * jxw
        for i, grad in contrib.gradients.items():
            acc[i] += np.einsum("cvd,ckd->cvk", g.dNdx[b, q], grad) * jxw

    def _new_acc(self, nb: int, fields: Sequence[int]) -> Dict[int, np.ndarray]:
        nv = self.local_cells.shape[1]
        return {i: np.zeros((nb, nv, self.dofs.dof_set(i).n_comp)) for i in fields}

    def _scatter(self, out: BlockVector, acc: Dict[int, np.ndarray], b: slice) -> None:
        lc = self.local_cells[b]
        for i, a in acc.items():
            np.add.at(out[i].nodal, lc, a)

    def _contributions(self, nb: int, writable: Sequence[int], purpose: str) -> Contributions:
        return Contributions(self.fields, writable, nb, self.dim, purpose)

    def _old_fields(self) -> List[int]:
        return [f.index for f in self.fields if f.flags.needs_old_value]

    # ------------------------------------------------------------------
    # Residual
    # ------------------------------------------------------------------
    def residual(
        self,
        state: BlockVector,
        old: BlockVector,
        out: BlockVector,
        *,
        record_history: bool = True,
    ) -> BlockVector:
        """R(state) for the implicit fields; constrained rows are zero."""
        with self.ctx.timer.section("matrix-free: residual"):
            state.update_ghosts()
            out.zero()
            reads = self._read_fields()
            olds = self._old_fields()
            hmode = "record" if record_history else "scratch"
            for b in self.batches:
                nb = b.stop - b.start
                cells = self._gather(state, b, reads)
                old_cells = self._gather(old, b, olds)
                acc = self._new_acc(nb, self.implicit)
                for q in range(self.geometry.n_q):
                    qp = self._make_qp(cells, old_cells, b, q, hmode)
                    contrib = self._contributions(nb, self.implicit, "residual")
                    self.kernel.residual(qp, contrib)
                    self._integrate(acc, contrib, b, q)
                self._scatter(out, acc, b)
            self.constraints.condense(out, self.implicit)
            out.accumulate_ghosts(self.implicit)
            self.constraints.apply_to_residual(out, self.implicit)
        return out

    # ------------------------------------------------------------------
    # Jacobian action
    # ------------------------------------------------------------------
    def _homogeneous_direction(self, direction: BlockVector) -> BlockVector:
        d = direction.copy()
        for i in self.explicit:
            d[i].zero()
        d.update_ghosts(self.implicit)
        self.constraints.distribute(d, homogeneous=True, fields=self.implicit)
        return d

    def jacobian_action(
        self,
        state: BlockVector,
        old: BlockVector,
        direction: BlockVector,
        out: BlockVector,
        *,
        base_residual: Optional[BlockVector] = None,
    ) -> BlockVector:
        """J(state) * direction on the implicit fields, identity on constrained rows."""
        if self.jacobian_mode == "fd":
            if base_residual is None:
                base_residual = self.residual(state, old, self.dofs.create_block_vector(), record_history=False)
            return self.jacobian_action_fd(state, old, direction, out, base_residual)

        with self.ctx.timer.section("matrix-free: jacobian action"):
            state.update_ghosts()
            d = self._homogeneous_direction(direction)
            out.zero()
            reads = self._read_fields()
            olds = self._old_fields()
            for b in self.batches:
                nb = b.stop - b.start
                cells = self._gather(state, b, reads)
                dcells = self._gather(d, b, reads)
                old_cells = self._gather(old, b, olds)
                zero_old = {i: np.zeros_like(v) for i, v in old_cells.items()}
                acc = self._new_acc(nb, self.implicit)
                for q in range(self.geometry.n_q):
                    qp = self._make_qp(cells, old_cells, b, q, "scratch")
                    dqp = self._make_qp(dcells, zero_old, b, q, "scratch")
                    contrib = self._contributions(nb, self.implicit, "jacobian action")
                    self.kernel.jacobian_action(qp, dqp, contrib)
                    self._integrate(acc, contrib, b, q)
                self._scatter(out, acc, b)
            self.constraints.condense(out, self.implicit)
            out.accumulate_ghosts(self.implicit)
            self.constraints.copy_constrained(direction, out, self.implicit)
        return out

    def jacobian_action_fd(
        self,
        state: BlockVector,
        old: BlockVector,
        direction: BlockVector,
        out: BlockVector,
        base_residual: BlockVector,
    ) -> BlockVector:
        """(R(u + h v) - R(u)) / h with h = eps * (1 + |u|) / |v|."""
        with self.ctx.timer.section("matrix-free: jacobian action (fd)"):
            d = self._homogeneous_direction(direction)
            v_norm = self.ctx.norm(d.pack_owned(self.implicit))
            out.zero()
            if v_norm == 0.0:
                self.constraints.copy_constrained(direction, out, self.implicit)
                return out
            u_norm = self.ctx.norm(state.pack_owned(self.implicit))
            h = self.fd_eps * (1.0 + u_norm) / v_norm

            perturbed = state.copy()
            for i in self.implicit:
                perturbed[i].data += h * d[i].data
            r1 = self.residual(perturbed, old, self.dofs.create_block_vector(), record_history=False)
            for i in self.implicit:
                out[i].data[:] = (r1[i].data - base_residual[i].data) / h
            self.constraints.copy_constrained(direction, out, self.implicit)
        return out

    # ------------------------------------------------------------------
    # Diagonal (preconditioner)
    # ------------------------------------------------------------------
    def _linearized_at_qp(
        self,
        qp: QuadraturePoint,
        dqp: QuadraturePoint,
        base: Optional[Contributions],
        cells: Dict[int, np.ndarray],
        dcells: Dict[int, np.ndarray],
        old_cells: Dict[int, np.ndarray],
        b: slice,
        q: int,
        nb: int,
    ) -> Contributions:
        if self.jacobian_mode == "kernel":
            contrib = self._contributions(nb, self.implicit, "jacobian diagonal")
            self.kernel.jacobian_action(qp, dqp, contrib)
            return contrib

        # local finite difference of the point residual
        scale = max((float(np.max(np.abs(v))) for v in cells.values() if v.size), default=0.0)
        h = self.fd_eps * (1.0 + scale)
        pert = {i: cells[i] + h * dcells[i] for i in cells}
        qp_h = self._make_qp(pert, old_cells, b, q, "scratch")
        r1 = self._contributions(nb, self.implicit, "jacobian diagonal")
        self.kernel.residual(qp_h, r1)
        diff = self._contributions(nb, self.implicit, "jacobian diagonal")
        for i, v in r1.values.items():
            diff.values[i] = (v - base.values.get(i, 0.0)) / h
        for i, g in r1.gradients.items():
            diff.gradients[i] = (g - base.gradients.get(i, 0.0)) / h
        return diff

    def jacobian_diagonal(self, state: BlockVector, old: BlockVector) -> BlockVector:
        """Diagonal of the Jacobian from local unit directions; constrained entries are 1."""
        out = self.dofs.create_block_vector()
        with self.ctx.timer.section("matrix-free: jacobian diagonal"):
            state.update_ghosts()
            g = self.geometry
            reads = self._read_fields()
            olds = self._old_fields()
            nv = self.local_cells.shape[1]
            for b in self.batches:
                nb = b.stop - b.start
                cells = self._gather(state, b, reads)
                old_cells = self._gather(old, b, olds)
                zero_cells = {i: np.zeros_like(v) for i, v in cells.items()}
                zero_old = {i: np.zeros_like(v) for i, v in old_cells.items()}
                qps = [self._make_qp(cells, old_cells, b, q, "scratch") for q in range(g.n_q)]
                bases: List[Optional[Contributions]] = [None] * g.n_q
                if self.jacobian_mode != "kernel":
                    for q in range(g.n_q):
                        bases[q] = self._contributions(nb, self.implicit, "jacobian diagonal")
                        self.kernel.residual(qps[q], bases[q])
                acc = self._new_acc(nb, self.implicit)
                for i in self.implicit:
                    if i not in cells:
                        continue
                    nc = self.dofs.dof_set(i).n_comp
                    for v in range(nv):
                        for k in range(nc):
                            dcells = dict(zero_cells)
                            unit = np.zeros_like(cells[i])
                            unit[:, v, k] = 1.0
                            dcells[i] = unit
                            for q in range(g.n_q):
                                dqp = self._make_qp(dcells, zero_old, b, q, "scratch")
                                c = self._linearized_at_qp(
                                    qps[q], dqp, bases[q], cells, dcells, old_cells, b, q, nb
                                )
                                jxw = g.JxW[b, q]
                                if i in c.values:
                                    acc[i][:, v, k] += g.N[q, v] * c.values[i][:, k] * jxw
                                if i in c.gradients:
                                    acc[i][:, v, k] += (
                                        np.einsum("cd,cd->c", g.dNdx[b, q, v], c.gradients[i][:, k, :]) * jxw
                                    )
                self._scatter(out, acc, b)
            out.accumulate_ghosts(self.implicit)
            for i in self.implicit:
                idx = self.constraints.constrained_dofs(i)
                if idx.size:
                    out[i].data[idx] = 1.0
        return out

    # ------------------------------------------------------------------
    # Explicit fields
    # ------------------------------------------------------------------
    def explicit_rhs(self, state: BlockVector, old: BlockVector, out: BlockVector) -> BlockVector:
        """Assembled right-hand side of the explicit fields (M_lumped u_new = rhs).

        Integrated with the vertex rule so the mass implied by the value terms is the
        lumped one. History is not visible to explicit updates.
        """
        g = self.nodal_geometry
        with self.ctx.timer.section("matrix-free: explicit rhs"):
            state.update_ghosts()
            out.zero()
            reads = self._read_fields()
            olds = self._old_fields()
            for b in self.batches:
                nb = b.stop - b.start
                cells = self._gather(state, b, reads)
                old_cells = self._gather(old, b, olds)
                acc = self._new_acc(nb, self.explicit)
                for q in range(g.n_q):
                    qp = self._make_qp(cells, old_cells, b, q, "none", g)
                    contrib = self._contributions(nb, self.explicit, "explicit update")
                    self.kernel.explicit_rhs(qp, contrib)
                    self._integrate(acc, contrib, b, q, g)
                self._scatter(out, acc, b)
            self.constraints.condense(out, self.explicit)
            out.accumulate_ghosts(self.explicit)
        return out

    def lumped_mass(self) -> np.ndarray:
        """Vertex-rule (diagonal) mass per locally owned node, computed once."""
        if self._lumped is None:
            with self.ctx.timer.section("matrix-free: lumped mass"):
                g = self.nodal_geometry
                nodal = np.zeros((self.dofs.partition.n_relevant, 1))
                cell_mass = np.einsum("qv,cq->cv", g.N, g.JxW)
                np.add.at(nodal[:, 0], self.local_cells, cell_mass)
                self.dofs.exchange.reverse_add(nodal)
                owned = nodal[: self.dofs.partition.n_owned, 0].copy()
            if np.any(owned <= 0.0):
                raise ValueError("lumped mass has non-positive entries; degenerate mesh")
            self._lumped = owned
        return self._lumped

    def lumped_mass_dofs(self, field_index: int) -> np.ndarray:
        """Lumped mass repeated per component, owned DOF layout of one field."""
        return np.repeat(self.lumped_mass(), self.dofs.dof_set(field_index).n_comp)
