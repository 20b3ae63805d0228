"""
Mesh partition + per-field DOF numbering.

Conventions:
- Cells are owned by the rank given by the partitioner; only owned cells are evaluated.
- A node is owned by the lowest rank among the owners of its adjacent cells.
- Nodes are renumbered so that each rank owns a contiguous global range.
- Local node numbering: owned nodes first (ascending global id), then ghosts (ascending global id).
- DOFs are node-major per field: global dof = global_node * n_comp + component.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from mfpde.core.context import ExecutionContext
from mfpde.core.fields import Field, FieldRegistry
from mfpde.core.mesh import Mesh, partition_cells

from .ghost_exchange import GhostExchange
from .vectors import BlockVector, DistributedVector

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class NodePartition:
    rank: int
    size: int
    cell_owner: np.ndarray          # (n_cells,)
    node_owner: np.ndarray          # (n_nodes,)
    global_node: np.ndarray         # mesh node id -> global (renumbered) id
    node_offsets: np.ndarray        # (size + 1,) owned global range per rank
    owned_cells: np.ndarray         # mesh cell ids owned by this rank
    ghost_cells: np.ndarray         # cells owned elsewhere touching owned nodes
    local_nodes: np.ndarray         # local id -> mesh node id
    mesh_to_local: np.ndarray       # mesh node id -> local id (-1 if not relevant)
    n_owned: int
    local_cells: np.ndarray         # (n_owned_cells, nv) local node ids
    send: Dict[int, np.ndarray] = field(default_factory=dict)
    recv: Dict[int, np.ndarray] = field(default_factory=dict)

    @property
    def n_relevant(self) -> int:
        return int(self.local_nodes.shape[0])

    @property
    def n_ghost(self) -> int:
        return self.n_relevant - self.n_owned

    @property
    def owned_range(self) -> tuple:
        return int(self.node_offsets[self.rank]), int(self.node_offsets[self.rank + 1])


def compute_node_owner(mesh: Mesh, cell_owner: np.ndarray, size: int) -> np.ndarray:
    node_owner = np.full(mesh.n_nodes, size, dtype=np.int64)
    nv = mesh.cells.shape[1]
    np.minimum.at(node_owner, mesh.cells.ravel(), np.repeat(cell_owner, nv))
    orphans = np.flatnonzero(node_owner == size)
    if orphans.size:
        raise ValueError(f"mesh has {orphans.size} nodes not attached to any cell (first: {orphans[:5].tolist()})")
    return node_owner


def _relevant_nodes_of(mesh: Mesh, cell_owner: np.ndarray, r: int) -> np.ndarray:
    return np.unique(mesh.cells[cell_owner == r].ravel())


def build_partition(mesh: Mesh, cell_owner: np.ndarray, rank: int, size: int) -> NodePartition:
    """Pure function of the replicated mesh; every rank computes its own view."""
    cell_owner = np.asarray(cell_owner, dtype=np.int64)
    if cell_owner.shape != (mesh.n_cells,):
        raise ValueError(f"cell_owner must have shape ({mesh.n_cells},), got {cell_owner.shape}")
    if cell_owner.size and (cell_owner.min() < 0 or cell_owner.max() >= size):
        raise ValueError(f"cell_owner values must lie in [0, {size})")

    node_owner = compute_node_owner(mesh, cell_owner, size)
    order = np.lexsort((np.arange(mesh.n_nodes), node_owner))
    global_node = np.empty(mesh.n_nodes, dtype=np.int64)
    global_node[order] = np.arange(mesh.n_nodes, dtype=np.int64)
    counts = np.bincount(node_owner, minlength=size)
    node_offsets = np.concatenate([[0], np.cumsum(counts)]).astype(np.int64)

    owned_cells = np.flatnonzero(cell_owner == rank)
    owned_nodes = order[node_offsets[rank]:node_offsets[rank + 1]]
    relevant = _relevant_nodes_of(mesh, cell_owner, rank)
    ghost_nodes = relevant[node_owner[relevant] != rank]
    ghost_nodes = ghost_nodes[np.argsort(global_node[ghost_nodes], kind="stable")]
    local_nodes = np.concatenate([owned_nodes, ghost_nodes]).astype(np.int64)

    mesh_to_local = np.full(mesh.n_nodes, -1, dtype=np.int64)
    mesh_to_local[local_nodes] = np.arange(local_nodes.shape[0], dtype=np.int64)

    is_owned_node = node_owner == rank
    touches_owned = np.any(is_owned_node[mesh.cells], axis=1)
    ghost_cells = np.flatnonzero(touches_owned & (cell_owner != rank))

    send: Dict[int, np.ndarray] = {}
    recv: Dict[int, np.ndarray] = {}
    for other in range(size):
        if other == rank:
            continue
        theirs = _relevant_nodes_of(mesh, cell_owner, other)
        shared_out = theirs[node_owner[theirs] == rank]
        if shared_out.size:
            shared_out = shared_out[np.argsort(global_node[shared_out], kind="stable")]
            send[other] = mesh_to_local[shared_out]
        shared_in = ghost_nodes[node_owner[ghost_nodes] == other]
        if shared_in.size:
            recv[other] = mesh_to_local[shared_in]

    return NodePartition(
        rank=int(rank),
        size=int(size),
        cell_owner=cell_owner,
        node_owner=node_owner,
        global_node=global_node,
        node_offsets=node_offsets,
        owned_cells=owned_cells,
        ghost_cells=ghost_cells,
        local_nodes=local_nodes,
        mesh_to_local=mesh_to_local,
        n_owned=int(owned_nodes.shape[0]),
        local_cells=mesh_to_local[mesh.cells[owned_cells]],
        send=send,
        recv=recv,
    )


@dataclass(slots=True)
class DofSet:
    """Owned and relevant DOFs of one field on this rank."""

    field: Field
    n_comp: int
    n_owned_nodes: int
    n_relevant_nodes: int
    global_offset: int      # first owned global dof
    n_global: int
    global_dofs: np.ndarray  # local dof -> global dof

    @property
    def n_owned(self) -> int:
        return self.n_owned_nodes * self.n_comp

    @property
    def n_relevant(self) -> int:
        return self.n_relevant_nodes * self.n_comp

    @property
    def owned_range(self) -> tuple:
        return self.global_offset, self.global_offset + self.n_owned

    def global_to_local(self, gdofs) -> np.ndarray:
        """Local indices of the given global dofs; -1 where not relevant here."""
        gdofs = np.atleast_1d(np.asarray(gdofs, dtype=np.int64))
        out = np.full(gdofs.shape, -1, dtype=np.int64)
        if self.global_dofs.size == 0:
            return out
        order = np.argsort(self.global_dofs, kind="stable")
        sorted_g = self.global_dofs[order]
        pos = np.minimum(np.searchsorted(sorted_g, gdofs), sorted_g.shape[0] - 1)
        found = sorted_g[pos] == gdofs
        out[found] = order[pos[found]]
        return out


class DOFManager:
    """
    Distributed mesh view and DOF sets for every registered field.

    The mesh is replicated; `cell_owner` defaults to a coordinate partition
    over the communicator size.
    """

    def __init__(
        self,
        mesh: Mesh,
        registry: FieldRegistry,
        ctx: Optional[ExecutionContext] = None,
        *,
        cell_owner: Optional[np.ndarray] = None,
    ) -> None:
        self.mesh = mesh
        self.registry = registry
        self.ctx = ctx if ctx is not None else ExecutionContext()
        size, rank = self.ctx.size, self.ctx.rank
        if cell_owner is None:
            cell_owner = partition_cells(mesh, size)

        with self.ctx.timer.section("dofs: partition"):
            self.partition = build_partition(mesh, cell_owner, rank, size)
        part = self.partition
        self.exchange = GhostExchange(self.ctx, part.send, part.recv, part.n_owned)

        self.dof_sets: List[DofSet] = []
        for fld in registry:
            nc = fld.n_components(mesh.dim)
            comps = np.arange(nc, dtype=np.int64)
            gnodes = part.global_node[part.local_nodes]
            self.dof_sets.append(
                DofSet(
                    field=fld,
                    n_comp=nc,
                    n_owned_nodes=part.n_owned,
                    n_relevant_nodes=part.n_relevant,
                    global_offset=int(part.node_offsets[rank]) * nc,
                    n_global=mesh.n_nodes * nc,
                    global_dofs=(gnodes[:, None] * nc + comps[None, :]).ravel(),
                )
            )

        self.ctx.info(
            "DOF manager: %d cells, %d nodes, %d fields, %d ranks",
            mesh.n_cells,
            mesh.n_nodes,
            len(registry),
            size,
        )
        logger.debug(
            "rank %d: owned cells=%d ghost cells=%d owned nodes=%d ghost nodes=%d",
            rank,
            part.owned_cells.shape[0],
            part.ghost_cells.shape[0],
            part.n_owned,
            part.n_ghost,
        )

    # ------------------------------------------------------------------
    # Mesh view
    # ------------------------------------------------------------------
    def local_cell_range(self) -> np.ndarray:
        """Mesh ids of the locally owned cells (the only cells evaluated here)."""
        return self.partition.owned_cells

    @property
    def ghost_cells(self) -> np.ndarray:
        return self.partition.ghost_cells

    @property
    def local_cells(self) -> np.ndarray:
        return self.partition.local_cells

    def node_points(self) -> np.ndarray:
        """Coordinates of locally relevant nodes, local order."""
        return self.mesh.points[self.partition.local_nodes]

    def local_nodes_of_marker(self, marker: str) -> np.ndarray:
        nodes = self.mesh.marked_nodes(marker)
        loc = self.partition.mesh_to_local[nodes]
        return np.sort(loc[loc >= 0])

    # ------------------------------------------------------------------
    # DOFs
    # ------------------------------------------------------------------
    def dof_set(self, field_index: int) -> DofSet:
        return self.dof_sets[field_index]

    def global_dof(self, field_index: int, mesh_node: int, component: int = 0) -> int:
        ds = self.dof_sets[field_index]
        if not 0 <= component < ds.n_comp:
            raise ValueError(f"component {component} out of range for field '{ds.field.name}'")
        return int(self.partition.global_node[int(mesh_node)]) * ds.n_comp + int(component)

    def support_points(self, field_index: int) -> np.ndarray:
        """Coordinates of every locally relevant DOF of a field, (n_relevant_dofs, dim)."""
        nc = self.dof_sets[field_index].n_comp
        return np.repeat(self.node_points(), nc, axis=0)

    # ------------------------------------------------------------------
    # Vectors and ghost traffic
    # ------------------------------------------------------------------
    def create_vector(self, field_index: int) -> DistributedVector:
        return DistributedVector(self.dof_sets[field_index], self.exchange)

    def create_block_vector(self) -> BlockVector:
        return BlockVector([self.create_vector(f.index) for f in self.registry])

    def ghost_update(self, vector) -> None:
        """Forward scatter owner values into ghost entries (blocking, collective)."""
        vector.update_ghosts()

    def ghost_accumulate(self, vector) -> None:
        """Reverse scatter-add of ghost contributions into owners (blocking, collective)."""
        vector.accumulate_ghosts()
