"""
Affine constraints on locally relevant DOFs:

    u_c = g_c + sum_k w_ck * u_k

Dirichlet lines have no masters; hanging-node style lines carry (master, weight)
entries. Every rank stores the lines of all constrained DOFs it can see (owned
and ghost), so distributing values never needs communication beyond the ghost
update of the masters.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from mfpde.core.context import ExecutionContext
from mfpde.core.errors import ConstraintError
from mfpde.core.fields import FieldRegistry
from mfpde.parallel.dof_manager import DOFManager
from mfpde.parallel.vectors import BlockVector

logger = logging.getLogger(__name__)

BoundaryValueFunction = Callable[[np.ndarray, int, int, float], float]


@dataclass(slots=True)
class DirichletCondition:
    """
    Fixed values on a node set.

    boundary: a mesh node marker name, or a vectorized predicate on the
    coordinates of the mesh boundary nodes.
    function(point, component, increment, time) -> float
    """

    field: str
    boundary: Union[str, Callable[[np.ndarray], np.ndarray]]
    function: BoundaryValueFunction
    components: Optional[Sequence[int]] = None


@dataclass(slots=True)
class ConstraintLine:
    inhomogeneity: float = 0.0
    entries: List[Tuple[int, float]] = field(default_factory=list)
    source: Optional[int] = None  # index into the Dirichlet table, None for user lines


@dataclass(slots=True)
class _ResolvedLines:
    idx: np.ndarray
    inhom: np.ndarray
    row: np.ndarray      # line position of each (master, weight) entry
    masters: np.ndarray
    weights: np.ndarray

    @classmethod
    def empty(cls) -> "_ResolvedLines":
        z_i = np.zeros(0, dtype=np.int64)
        return cls(idx=z_i, inhom=np.zeros(0), row=z_i, masters=z_i, weights=np.zeros(0))


@dataclass(slots=True)
class _DirichletEntry:
    condition: DirichletCondition
    field_index: int
    dofs: np.ndarray
    components: np.ndarray
    points: np.ndarray


class ConstraintManager:
    def __init__(self, dofs: DOFManager, registry: FieldRegistry, ctx: Optional[ExecutionContext] = None) -> None:
        self.dofs = dofs
        self.registry = registry
        self.ctx = ctx if ctx is not None else dofs.ctx
        self._lines: List[Dict[int, ConstraintLine]] = [dict() for _ in registry]
        self._dirichlet: List[_DirichletEntry] = []
        self._resolved: List[_ResolvedLines] = [_ResolvedLines.empty() for _ in registry]
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _require_open(self) -> None:
        if self._closed:
            raise ConstraintError("constraints are closed; add lines before close()")

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------
    def add_dirichlet(self, condition: DirichletCondition) -> int:
        """Constrain the matching relevant DOFs; returns how many new lines were added here."""
        self._require_open()
        fi = self.registry.index_of(condition.field)
        ds = self.dofs.dof_set(fi)
        nc = ds.n_comp
        comps = np.arange(nc) if condition.components is None else np.asarray(condition.components, dtype=np.int64)
        if comps.size == 0 or comps.min() < 0 or comps.max() >= nc:
            raise ConstraintError(
                f"Dirichlet condition on '{condition.field}': components {comps.tolist()} out of range [0, {nc})"
            )

        if isinstance(condition.boundary, str):
            try:
                nodes = self.dofs.local_nodes_of_marker(condition.boundary)
            except KeyError as exc:
                raise ConstraintError(f"Dirichlet condition on '{condition.field}': {exc}") from None
        elif callable(condition.boundary):
            mesh_nodes = self.dofs.mesh.boundary_nodes()
            mask = np.asarray(condition.boundary(self.dofs.mesh.points[mesh_nodes]), dtype=bool)
            loc = self.dofs.partition.mesh_to_local[mesh_nodes[mask]]
            nodes = np.sort(loc[loc >= 0])
        else:
            raise ConstraintError(f"Dirichlet boundary must be a marker name or a predicate, got {condition.boundary!r}")

        local_dofs = (nodes[:, None] * nc + comps[None, :]).ravel()
        local_comps = np.tile(comps, nodes.shape[0])
        points = np.repeat(self.dofs.node_points()[nodes], comps.shape[0], axis=0)

        table = self._lines[fi]
        source = len(self._dirichlet)
        keep = np.ones(local_dofs.shape[0], dtype=bool)
        for k, d in enumerate(local_dofs.tolist()):
            line = table.get(d)
            if line is None:
                table[d] = ConstraintLine(source=source)
            elif line.source is None:
                raise ConstraintError(
                    f"DOF {int(ds.global_dofs[d])} of field '{condition.field}' already carries a "
                    "linear-combination constraint"
                )
            else:
                keep[k] = False
        self._dirichlet.append(
            _DirichletEntry(
                condition=condition,
                field_index=fi,
                dofs=local_dofs[keep],
                components=local_comps[keep],
                points=points[keep],
            )
        )
        return int(keep.sum())

    def add_line(
        self,
        field_name: str,
        dof: int,
        entries: Sequence[Tuple[int, float]] = (),
        inhomogeneity: float = 0.0,
    ) -> bool:
        """
        Add u[dof] = inhomogeneity + sum w * u[master] using global DOF indices
        of `field_name`. Lines for DOFs that are not relevant on this rank are
        ignored; returns whether the line was stored.
        """
        self._require_open()
        fi = self.registry.index_of(field_name)
        ds = self.dofs.dof_set(fi)
        if not 0 <= int(dof) < ds.n_global:
            raise ConstraintError(f"constrained DOF {dof} of field '{field_name}' out of range [0, {ds.n_global})")
        local = int(ds.global_to_local([dof])[0])
        if local < 0:
            return False
        if local in self._lines[fi]:
            raise ConstraintError(f"DOF {dof} of field '{field_name}' is already constrained")

        resolved_entries: List[Tuple[int, float]] = []
        for master, weight in entries:
            if not 0 <= int(master) < ds.n_global:
                raise ConstraintError(f"master DOF {master} of field '{field_name}' out of range [0, {ds.n_global})")
            if int(master) == int(dof):
                raise ConstraintError(f"DOF {dof} of field '{field_name}' cannot constrain itself")
            lm = int(ds.global_to_local([master])[0])
            if lm < 0:
                raise ConstraintError(
                    f"master DOF {master} of constrained DOF {dof} (field '{field_name}') is not locally "
                    f"relevant on rank {self.ctx.rank}"
                )
            resolved_entries.append((lm, float(weight)))
        self._lines[fi][local] = ConstraintLine(inhomogeneity=float(inhomogeneity), entries=resolved_entries)
        return True

    def close(self, increment: int = 0, time: float = 0.0) -> None:
        """Evaluate boundary values, resolve chains and freeze the constraint set."""
        if self._closed:
            return
        self._closed = True
        self.update_boundary_values(increment, time)
        n_lines = sum(len(t) for t in self._lines)
        n_lines = int(self.ctx.allreduce_sum(n_lines)) if self.ctx.size > 1 else n_lines
        self.ctx.info("constraints closed: %d lines (counted per relevant copy)", n_lines)

    def update_boundary_values(self, increment: int, time: float) -> None:
        """Re-query every Dirichlet function and rebuild the resolved arrays."""
        for src, entry in enumerate(self._dirichlet):
            table = self._lines[entry.field_index]
            func = entry.condition.function
            for d, c, p in zip(entry.dofs.tolist(), entry.components.tolist(), entry.points):
                table[d].inhomogeneity = float(func(p, int(c), int(increment), float(time)))
        self._resolve_all()

    # ------------------------------------------------------------------
    # Chain resolution
    # ------------------------------------------------------------------
    def _resolve_all(self) -> None:
        for fi, table in enumerate(self._lines):
            self._resolved[fi] = self._resolve_field(fi, table)

    def _resolve_field(self, fi: int, table: Dict[int, ConstraintLine]) -> _ResolvedLines:
        if not table:
            return _ResolvedLines.empty()
        done: Dict[int, Tuple[float, List[Tuple[int, float]]]] = {}
        visiting: set = set()
        gdofs = self.dofs.dof_set(fi).global_dofs

        def resolve(c: int) -> Tuple[float, List[Tuple[int, float]]]:
            if c in done:
                return done[c]
            if c in visiting:
                raise ConstraintError(
                    f"cyclic constraint through DOF {int(gdofs[c])} of field '{self.registry[fi].name}'"
                )
            visiting.add(c)
            line = table[c]
            inh = line.inhomogeneity
            acc: Dict[int, float] = defaultdict(float)
            for m, w in line.entries:
                if m in table:
                    m_inh, m_entries = resolve(m)
                    inh += w * m_inh
                    for k, wk in m_entries:
                        acc[k] += w * wk
                else:
                    acc[m] += w
            visiting.discard(c)
            done[c] = (inh, sorted(acc.items()))
            return done[c]

        idx = np.array(sorted(table), dtype=np.int64)
        inhom = np.empty(idx.shape[0])
        rows: List[int] = []
        masters: List[int] = []
        weights: List[float] = []
        for pos, c in enumerate(idx.tolist()):
            inh, ents = resolve(c)
            inhom[pos] = inh
            for m, w in ents:
                rows.append(pos)
                masters.append(m)
                weights.append(w)
        return _ResolvedLines(
            idx=idx,
            inhom=inhom,
            row=np.asarray(rows, dtype=np.int64),
            masters=np.asarray(masters, dtype=np.int64),
            weights=np.asarray(weights, dtype=np.float64),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def constrained_dofs(self, field_index: int) -> np.ndarray:
        return self._resolved[field_index].idx

    def inhomogeneities(self, field_index: int) -> np.ndarray:
        return self._resolved[field_index].inhom

    def owned_constrained_mask(self, fields: Sequence[int]) -> np.ndarray:
        """Flat mask over the owned entries of `fields` (BlockVector.pack_owned layout)."""
        parts = []
        for fi in fields:
            n = self.dofs.dof_set(fi).n_owned
            mask = np.zeros(n, dtype=bool)
            idx = self._resolved[fi].idx
            mask[idx[idx < n]] = True
            parts.append(mask)
        return np.concatenate(parts) if parts else np.zeros(0, dtype=bool)

    # ------------------------------------------------------------------
    # Vector operations
    # ------------------------------------------------------------------
    def _fields(self, fields: Optional[Sequence[int]]) -> Sequence[int]:
        return range(len(self._lines)) if fields is None else fields

    def distribute(self, vector: BlockVector, *, homogeneous: bool = False, fields: Optional[Sequence[int]] = None) -> None:
        """Set constrained entries from their masters (masters must be ghost-current)."""
        for fi in self._fields(fields):
            r = self._resolved[fi]
            if r.idx.size == 0:
                continue
            data = vector[fi].data
            vals = np.zeros(r.idx.shape[0]) if homogeneous else r.inhom.copy()
            if r.masters.size:
                vals += np.bincount(r.row, weights=r.weights * data[r.masters], minlength=r.idx.shape[0])
            data[r.idx] = vals

    def condense(self, vector: BlockVector, fields: Optional[Sequence[int]] = None) -> None:
        """Apply the transpose of the constraint map to cell-loop output (before ghost accumulation)."""
        for fi in self._fields(fields):
            r = self._resolved[fi]
            if r.idx.size == 0:
                continue
            data = vector[fi].data
            if r.masters.size:
                np.add.at(data, r.masters, r.weights * data[r.idx][r.row])
            data[r.idx] = 0.0

    def apply_to_residual(self, residual: BlockVector, fields: Optional[Sequence[int]] = None) -> None:
        for fi in self._fields(fields):
            idx = self._resolved[fi].idx
            if idx.size:
                residual[fi].data[idx] = 0.0

    def apply_to_solution(self, solution: BlockVector, fields: Optional[Sequence[int]] = None) -> None:
        """Make constrained entries exact: u_c = g_c + sum w u_k."""
        self.distribute(solution, homogeneous=False, fields=fields)

    def copy_constrained(self, src: BlockVector, dst: BlockVector, fields: Optional[Sequence[int]] = None) -> None:
        """dst[c] = src[c] for constrained c (identity rows of an operator action)."""
        for fi in self._fields(fields):
            idx = self._resolved[fi].idx
            if idx.size:
                dst[fi].data[idx] = src[fi].data[idx]

    def distribute_correction(
        self,
        correction: BlockVector,
        solution: BlockVector,
        fields: Optional[Sequence[int]] = None,
    ) -> None:
        """Add an owned correction to the solution, refresh ghosts and re-apply the constraints exactly."""
        sel = list(self._fields(fields))
        for fi in sel:
            solution[fi].owned[:] += correction[fi].owned
        solution.update_ghosts(sel)
        self.apply_to_solution(solution, sel)


def build_constraints(
    dofs: DOFManager,
    registry: FieldRegistry,
    conditions: Sequence[DirichletCondition],
    *,
    ctx: Optional[ExecutionContext] = None,
    builder: Optional[Callable[[ConstraintManager, DOFManager], None]] = None,
    increment: int = 0,
    time: float = 0.0,
) -> ConstraintManager:
    """Closed manager from Dirichlet conditions plus optional user lines added by `builder`."""
    manager = ConstraintManager(dofs, registry, ctx)
    for cond in conditions:
        manager.add_dirichlet(cond)
    if builder is not None:
        builder(manager, dofs)
    manager.close(increment=increment, time=time)
    logger.debug(
        "constraints closed: %s",
        {f.name: int(manager.constrained_dofs(f.index).size) for f in registry},
    )
    return manager
