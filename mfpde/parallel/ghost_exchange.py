"""
Point-to-point ghost exchange on node-based arrays.

Both sides of every rank pair list the shared nodes in ascending global id,
so the plan is built from the replicated mesh without any communication.
"""

from __future__ import annotations

import logging
from typing import Dict

import numpy as np

from mfpde.core.context import ExecutionContext

logger = logging.getLogger(__name__)


class GhostExchange:
    """
    send[r]: local ids of owned nodes that rank r holds as ghosts.
    recv[r]: local ids of this rank's ghost nodes owned by rank r.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        send: Dict[int, np.ndarray],
        recv: Dict[int, np.ndarray],
        n_owned: int,
    ) -> None:
        self.ctx = ctx
        self.send = {int(r): np.asarray(v, dtype=np.int64) for r, v in send.items() if len(v)}
        self.recv = {int(r): np.asarray(v, dtype=np.int64) for r, v in recv.items() if len(v)}
        self.n_owned = int(n_owned)

    @property
    def active(self) -> bool:
        return self.ctx.comm is not None and self.ctx.size > 1

    def _alltoall(self, payload: Dict[int, np.ndarray]) -> list:
        size = self.ctx.size
        sendbuf = [payload.get(r) for r in range(size)]
        return self.ctx.comm.alltoall(sendbuf)

    def forward(self, nodal: np.ndarray) -> None:
        """Copy owner values into ghost slots (in place). Collective."""
        if not self.active:
            return
        out = {r: np.ascontiguousarray(nodal[idx]) for r, idx in self.send.items()}
        received = self._alltoall(out)
        for r, idx in self.recv.items():
            data = received[r]
            if data is None or data.shape[0] != idx.shape[0]:
                raise RuntimeError(
                    f"ghost exchange mismatch from rank {r}: expected {idx.shape[0]} nodes, "
                    f"got {None if data is None else data.shape[0]}"
                )
            nodal[idx] = data

    def reverse_add(self, nodal: np.ndarray) -> None:
        """Add ghost contributions into the owners, then zero the ghost slots. Collective."""
        if not self.active:
            nodal[self.n_owned:] = 0.0
            return
        out = {r: np.ascontiguousarray(nodal[idx]) for r, idx in self.recv.items()}
        received = self._alltoall(out)
        for r, idx in self.send.items():
            data = received[r]
            if data is None or data.shape[0] != idx.shape[0]:
                raise RuntimeError(
                    f"ghost accumulate mismatch from rank {r}: expected {idx.shape[0]} nodes, "
                    f"got {None if data is None else data.shape[0]}"
                )
            np.add.at(nodal, idx, data)
        nodal[self.n_owned:] = 0.0
