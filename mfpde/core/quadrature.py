"""
Reference elements (P1 simplices, Q1 quadrilateral), quadrature rules and
per-cell mapping data.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .mesh import Mesh

FloatArray = np.ndarray


def _gauss_01(n: int) -> Tuple[FloatArray, FloatArray]:
    """Gauss-Legendre rule with n points on [0, 1]."""
    t, w = np.polynomial.legendre.leggauss(int(n))
    return 0.5 * (t + 1.0), 0.5 * w


def _n_gauss(degree: int) -> int:
    return max(1, int(math.ceil((degree + 1) / 2.0)))


def quadrature_rule(cell_type: str, degree: int) -> Tuple[FloatArray, FloatArray]:
    """Return (points (nq, dim), weights (nq,)) on the reference cell."""
    degree = int(degree)
    if degree < 1:
        raise ValueError(f"quadrature degree must be >= 1, got {degree}")

    if cell_type == "interval":
        x, w = _gauss_01(_n_gauss(degree))
        return x[:, None], w

    if cell_type == "quadrilateral":
        x, w = _gauss_01(_n_gauss(degree))
        X, Y = np.meshgrid(x, x, indexing="ij")
        W = np.outer(w, w)
        return np.column_stack([X.ravel(), Y.ravel()]), W.ravel()

    if cell_type == "triangle":
        if degree == 1:
            return np.array([[1.0 / 3.0, 1.0 / 3.0]]), np.array([0.5])
        if degree == 2:
            pts = np.array([[1.0 / 6.0, 1.0 / 6.0], [2.0 / 3.0, 1.0 / 6.0], [1.0 / 6.0, 2.0 / 3.0]])
            return pts, np.full(3, 1.0 / 6.0)
        # collapsed (Duffy) Gauss rule, exact for any degree
        n = _n_gauss(degree + 1)
        u, wu = _gauss_01(n)
        v, wv = _gauss_01(n)
        U, V = np.meshgrid(u, v, indexing="ij")
        W = np.outer(wu, wv) * (1.0 - U)
        return np.column_stack([U.ravel(), (V * (1.0 - U)).ravel()]), W.ravel()

    if cell_type == "tetrahedron":
        if degree == 1:
            return np.array([[0.25, 0.25, 0.25]]), np.array([1.0 / 6.0])
        n = _n_gauss(degree + 2)
        g, wg = _gauss_01(n)
        U, V, Wc = np.meshgrid(g, g, g, indexing="ij")
        WU, WV, WW = np.meshgrid(wg, wg, wg, indexing="ij")
        xi = U
        eta = V * (1.0 - U)
        zeta = Wc * (1.0 - U) * (1.0 - V)
        weight = WU * WV * WW * (1.0 - U) ** 2 * (1.0 - V)
        return np.column_stack([xi.ravel(), eta.ravel(), zeta.ravel()]), weight.ravel()

    raise ValueError(f"No quadrature rule for cell type {cell_type!r}")


_REFERENCE_VERTICES = {
    "interval": np.array([[0.0], [1.0]]),
    "triangle": np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]]),
    "quadrilateral": np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]]),
    "tetrahedron": np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]]),
}
_REFERENCE_VOLUME = {"interval": 1.0, "triangle": 0.5, "quadrilateral": 1.0, "tetrahedron": 1.0 / 6.0}


def nodal_rule(cell_type: str) -> Tuple[FloatArray, FloatArray]:
    """Vertex (trapezoidal) rule; the resulting mass matrix is diagonal."""
    if cell_type not in _REFERENCE_VERTICES:
        raise ValueError(f"No nodal rule for cell type {cell_type!r}")
    pts = _REFERENCE_VERTICES[cell_type]
    return pts.copy(), np.full(pts.shape[0], _REFERENCE_VOLUME[cell_type] / pts.shape[0])


def shape_functions(cell_type: str, xi: FloatArray) -> Tuple[FloatArray, FloatArray]:
    """Return N (nq, nv) and dN/dxi (nq, nv, dim) at reference points xi (nq, dim)."""
    xi = np.atleast_2d(np.asarray(xi, dtype=np.float64))
    nq = xi.shape[0]

    if cell_type == "interval":
        x = xi[:, 0]
        N = np.column_stack([1.0 - x, x])
        dN = np.broadcast_to(np.array([[-1.0], [1.0]]), (nq, 2, 1)).copy()
        return N, dN

    if cell_type == "triangle":
        x, y = xi[:, 0], xi[:, 1]
        N = np.column_stack([1.0 - x - y, x, y])
        dN = np.broadcast_to(np.array([[-1.0, -1.0], [1.0, 0.0], [0.0, 1.0]]), (nq, 3, 2)).copy()
        return N, dN

    if cell_type == "quadrilateral":
        x, y = xi[:, 0], xi[:, 1]
        N = np.column_stack([(1 - x) * (1 - y), x * (1 - y), x * y, (1 - x) * y])
        dN = np.empty((nq, 4, 2))
        dN[:, 0] = np.column_stack([-(1 - y), -(1 - x)])
        dN[:, 1] = np.column_stack([(1 - y), -x])
        dN[:, 2] = np.column_stack([y, x])
        dN[:, 3] = np.column_stack([-y, (1 - x)])
        return N, dN

    if cell_type == "tetrahedron":
        x, y, z = xi[:, 0], xi[:, 1], xi[:, 2]
        N = np.column_stack([1.0 - x - y - z, x, y, z])
        ref = np.array([[-1.0, -1.0, -1.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
        dN = np.broadcast_to(ref, (nq, 4, 3)).copy()
        return N, dN

    raise ValueError(f"No shape functions for cell type {cell_type!r}")


@dataclass(slots=True)
class CellGeometry:
    """Mapping data for a set of cells, computed once at setup."""

    cells: np.ndarray      # (nc,) mesh cell ids
    N: FloatArray          # (nq, nv)
    dNdx: FloatArray       # (nc, nq, nv, dim)
    JxW: FloatArray        # (nc, nq)
    x_q: FloatArray        # (nc, nq, dim)

    @property
    def n_q(self) -> int:
        return int(self.N.shape[0])

    @property
    def n_cells(self) -> int:
        return int(self.cells.shape[0])


def build_cell_geometry(mesh: Mesh, cells: np.ndarray, degree: int, *, nodal: bool = False) -> CellGeometry:
    cells = np.asarray(cells, dtype=np.int64)
    xi, w = nodal_rule(mesh.cell_type) if nodal else quadrature_rule(mesh.cell_type, degree)
    N, dN = shape_functions(mesh.cell_type, xi)
    X = mesh.points[mesh.cells[cells]]                      # (nc, nv, dim)

    J = np.einsum("cvi,qvj->cqij", X, dN)                   # (nc, nq, dim, dim)
    if cells.size == 0:
        nq, nv = N.shape
        dim = mesh.dim
        return CellGeometry(
            cells=cells,
            N=N,
            dNdx=np.zeros((0, nq, nv, dim)),
            JxW=np.zeros((0, nq)),
            x_q=np.zeros((0, nq, dim)),
        )
    detJ = np.linalg.det(J)
    scale = float(np.max(np.abs(X))) ** mesh.dim if X.size else 1.0
    degenerate = np.any(np.abs(detJ) <= 1.0e-14 * max(scale, 1.0e-300), axis=1)
    if np.any(degenerate):
        raise ValueError(
            f"Degenerate mesh: zero-volume cells detected (first ids: {cells[degenerate][:5].tolist()})"
        )
    invJ = np.linalg.inv(J)
    dNdx = np.einsum("qvj,cqji->cqvi", dN, invJ)
    JxW = np.abs(detJ) * w[None, :]
    x_q = np.einsum("qv,cvi->cqi", N, X)
    return CellGeometry(cells=cells, N=N, dNdx=dNdx, JxW=JxW, x_q=x_q)
