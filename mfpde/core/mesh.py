"""
Unstructured mesh container, simple builders and a cell partitioner.

The mesh is replicated on every rank; partitioning assigns each cell an owner
rank. Supported cell types: interval (2 nodes), triangle (3), quadrilateral (4,
counter-clockwise), tetrahedron (4).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

import numpy as np

FloatArray = np.ndarray
IntArray = np.ndarray

CELL_NODES = {"interval": 2, "triangle": 3, "quadrilateral": 4, "tetrahedron": 4}
CELL_DIM = {"interval": 1, "triangle": 2, "quadrilateral": 2, "tetrahedron": 3}


@dataclass(slots=True)
class Mesh:
    points: FloatArray
    cells: IntArray
    cell_type: str
    node_markers: Dict[str, IntArray] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.points = np.asarray(self.points, dtype=np.float64)
        if self.points.ndim == 1:
            self.points = self.points[:, None]
        self.cells = np.asarray(self.cells, dtype=np.int64)
        if self.cell_type not in CELL_NODES:
            raise ValueError(f"Unsupported cell type {self.cell_type!r}; known: {sorted(CELL_NODES)}")
        if self.cells.ndim != 2 or self.cells.shape[1] != CELL_NODES[self.cell_type]:
            raise ValueError(
                f"cells must have shape (n, {CELL_NODES[self.cell_type]}) for {self.cell_type}, "
                f"got {self.cells.shape}"
            )
        if self.points.shape[1] != CELL_DIM[self.cell_type]:
            raise ValueError(
                f"{self.cell_type} mesh requires {CELL_DIM[self.cell_type]}D points, got {self.points.shape[1]}D"
            )
        if self.cells.size and (self.cells.min() < 0 or self.cells.max() >= self.n_nodes):
            raise ValueError("cell connectivity references nodes outside the point array")
        if self.n_cells == 0:
            raise ValueError("mesh has no cells")

    @property
    def dim(self) -> int:
        return int(self.points.shape[1])

    @property
    def n_nodes(self) -> int:
        return int(self.points.shape[0])

    @property
    def n_cells(self) -> int:
        return int(self.cells.shape[0])

    def cell_centroids(self) -> FloatArray:
        return self.points[self.cells].mean(axis=1)

    def boundary_nodes(self) -> IntArray:
        """Nodes on facets that belong to exactly one cell."""
        facets = _cell_facets(self.cells, self.cell_type)
        key = np.sort(facets, axis=-1).reshape(-1, facets.shape[-1])
        uniq, counts = np.unique(key, axis=0, return_counts=True)
        return np.unique(uniq[counts == 1].ravel())

    def mark_nodes(self, name: str, predicate: Callable[[FloatArray], np.ndarray], *, boundary_only: bool = True) -> IntArray:
        """Register a named node set from a vectorized predicate on coordinates."""
        candidates = self.boundary_nodes() if boundary_only else np.arange(self.n_nodes)
        mask = np.asarray(predicate(self.points[candidates]), dtype=bool)
        nodes = candidates[mask]
        self.node_markers[name] = nodes
        return nodes

    def marked_nodes(self, name: str) -> IntArray:
        if name not in self.node_markers:
            raise KeyError(f"Unknown node marker '{name}' (known: {sorted(self.node_markers)})")
        return self.node_markers[name]


def _cell_facets(cells: IntArray, cell_type: str) -> IntArray:
    if cell_type == "interval":
        return cells[:, [[0], [1]]]
    if cell_type == "triangle":
        return cells[:, [[0, 1], [1, 2], [2, 0]]]
    if cell_type == "quadrilateral":
        return cells[:, [[0, 1], [1, 2], [2, 3], [3, 0]]]
    return cells[:, [[0, 1, 2], [0, 1, 3], [0, 2, 3], [1, 2, 3]]]


# -----------------------------------------------------------------------------
# Builders
# -----------------------------------------------------------------------------
def interval_mesh(n: int, a: float = 0.0, b: float = 1.0) -> Mesh:
    if n < 1:
        raise ValueError(f"interval_mesh requires n >= 1, got {n}")
    x = np.linspace(a, b, n + 1)
    cells = np.stack([np.arange(n), np.arange(1, n + 1)], axis=1)
    mesh = Mesh(points=x[:, None], cells=cells, cell_type="interval")
    tol = 1.0e-12 * max(1.0, abs(b - a))
    mesh.mark_nodes("left", lambda p: np.abs(p[:, 0] - a) < tol)
    mesh.mark_nodes("right", lambda p: np.abs(p[:, 0] - b) < tol)
    mesh.node_markers["boundary"] = mesh.boundary_nodes()
    return mesh


def rectangle_mesh(
    nx: int,
    ny: int,
    lx: float = 1.0,
    ly: float = 1.0,
    cell_type: str = "triangle",
) -> Mesh:
    """Structured grid on [0,lx]x[0,ly] stored as an unstructured mesh."""
    if nx < 1 or ny < 1:
        raise ValueError(f"rectangle_mesh requires nx, ny >= 1, got ({nx}, {ny})")
    xs = np.linspace(0.0, lx, nx + 1)
    ys = np.linspace(0.0, ly, ny + 1)
    X, Y = np.meshgrid(xs, ys, indexing="xy")
    points = np.column_stack([X.ravel(), Y.ravel()])

    def nid(i, j):
        return j * (nx + 1) + i

    i, j = np.meshgrid(np.arange(nx), np.arange(ny), indexing="xy")
    i = i.ravel()
    j = j.ravel()
    n0, n1, n2, n3 = nid(i, j), nid(i + 1, j), nid(i + 1, j + 1), nid(i, j + 1)
    if cell_type == "quadrilateral":
        cells = np.stack([n0, n1, n2, n3], axis=1)
    elif cell_type == "triangle":
        lower = np.stack([n0, n1, n2], axis=1)
        upper = np.stack([n0, n2, n3], axis=1)
        cells = np.empty((2 * lower.shape[0], 3), dtype=np.int64)
        cells[0::2] = lower
        cells[1::2] = upper
    else:
        raise ValueError(f"rectangle_mesh supports 'triangle' or 'quadrilateral', got {cell_type!r}")

    mesh = Mesh(points=points, cells=cells, cell_type=cell_type)
    tx = 1.0e-12 * max(1.0, lx)
    ty = 1.0e-12 * max(1.0, ly)
    mesh.mark_nodes("left", lambda p: np.abs(p[:, 0]) < tx)
    mesh.mark_nodes("right", lambda p: np.abs(p[:, 0] - lx) < tx)
    mesh.mark_nodes("bottom", lambda p: np.abs(p[:, 1]) < ty)
    mesh.mark_nodes("top", lambda p: np.abs(p[:, 1] - ly) < ty)
    mesh.node_markers["boundary"] = mesh.boundary_nodes()
    return mesh


# -----------------------------------------------------------------------------
# Partitioning
# -----------------------------------------------------------------------------
def partition_cells(mesh: Mesh, n_parts: int, *, axis: Optional[int] = None) -> IntArray:
    """
    Deterministic coordinate partition: sort centroids along the longest axis
    (ties broken by cell id) and cut into n_parts contiguous chunks.
    """
    n_parts = int(n_parts)
    if n_parts < 1:
        raise ValueError(f"n_parts must be >= 1, got {n_parts}")
    if n_parts > mesh.n_cells:
        raise ValueError(
            f"Partition fails: {mesh.n_cells} cells < {n_parts} parts. Refine the mesh or use fewer ranks."
        )
    owner = np.zeros(mesh.n_cells, dtype=np.int64)
    if n_parts == 1:
        return owner
    centroids = mesh.cell_centroids()
    if axis is None:
        extent = mesh.points.max(axis=0) - mesh.points.min(axis=0)
        axis = int(np.argmax(extent))
    order = np.lexsort((np.arange(mesh.n_cells), centroids[:, axis]))
    for part, chunk in enumerate(np.array_split(order, n_parts)):
        owner[chunk] = part
    return owner
