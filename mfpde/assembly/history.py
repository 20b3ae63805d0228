"""
Per-quadrature-point history storage (trial/committed pairs).
"""

from __future__ import annotations

import numpy as np


class QuadratureHistory:
    """
    Arrays of shape (n_cells, n_q, n_variables) for the locally owned cells.

    Kernels read `committed` (values at the last converged increment) and
    write `trial`. The increment controller commits on convergence and rolls
    back on cutback.
    """

    def __init__(self, n_cells: int, n_q: int, n_variables: int) -> None:
        if n_variables < 1:
            raise ValueError(f"n_variables must be >= 1, got {n_variables}")
        shape = (int(n_cells), int(n_q), int(n_variables))
        self.committed = np.zeros(shape, dtype=np.float64)
        self.trial = np.zeros(shape, dtype=np.float64)

    @property
    def n_variables(self) -> int:
        return int(self.trial.shape[2])

    def trial_at(self, cells: slice, q: int) -> np.ndarray:
        return self.trial[cells, q]

    def committed_at(self, cells: slice, q: int) -> np.ndarray:
        view = self.committed[cells, q]
        view.flags.writeable = False
        return view

    def commit(self) -> None:
        self.committed[...] = self.trial

    def rollback(self) -> None:
        self.trial[...] = self.committed

    def fill(self, values) -> None:
        self.committed[...] = values
        self.trial[...] = self.committed
