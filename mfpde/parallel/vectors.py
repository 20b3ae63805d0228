"""
Distributed vectors.

A DistributedVector stores all locally relevant DOFs of one field; the first
`n_owned` entries are owned, the tail is the read-only ghost mirror. Ghost
entries are refreshed by `update_ghosts()` before any cell-loop read.

A BlockVector groups one DistributedVector per registered field (registry
order) and packs selected fields' owned entries into flat arrays for the
linear solver.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterator, List, Optional, Sequence

import numpy as np

if TYPE_CHECKING:
    from .dof_manager import DofSet
    from .ghost_exchange import GhostExchange


class DistributedVector:
    __slots__ = ("dofs", "exchange", "data")

    def __init__(self, dofs: "DofSet", exchange: "GhostExchange", data: Optional[np.ndarray] = None) -> None:
        self.dofs = dofs
        self.exchange = exchange
        if data is None:
            data = np.zeros(dofs.n_relevant, dtype=np.float64)
        data = np.asarray(data, dtype=np.float64)
        if data.shape != (dofs.n_relevant,):
            raise ValueError(f"vector data must have shape ({dofs.n_relevant},), got {data.shape}")
        self.data = data

    @property
    def n_comp(self) -> int:
        return self.dofs.n_comp

    @property
    def nodal(self) -> np.ndarray:
        """(n_relevant_nodes, n_comp) view."""
        return self.data.reshape(-1, self.dofs.n_comp)

    @property
    def owned(self) -> np.ndarray:
        return self.data[: self.dofs.n_owned]

    @property
    def ghosts(self) -> np.ndarray:
        return self.data[self.dofs.n_owned:]

    def update_ghosts(self) -> None:
        self.exchange.forward(self.nodal)

    def accumulate_ghosts(self) -> None:
        self.exchange.reverse_add(self.nodal)

    def zero(self) -> None:
        self.data[:] = 0.0

    def copy(self) -> "DistributedVector":
        return DistributedVector(self.dofs, self.exchange, self.data.copy())

    def copy_from(self, other: "DistributedVector") -> None:
        self.data[:] = other.data

    def __repr__(self) -> str:
        return (
            f"DistributedVector(field={self.dofs.field.name!r}, owned={self.dofs.n_owned}, "
            f"relevant={self.dofs.n_relevant})"
        )


class BlockVector:
    """One DistributedVector per field, indexed by field index."""

    __slots__ = ("blocks",)

    def __init__(self, blocks: Sequence[DistributedVector]) -> None:
        self.blocks: List[DistributedVector] = list(blocks)

    def __getitem__(self, field_index: int) -> DistributedVector:
        return self.blocks[field_index]

    def __iter__(self) -> Iterator[DistributedVector]:
        return iter(self.blocks)

    def __len__(self) -> int:
        return len(self.blocks)

    def update_ghosts(self, fields: Optional[Sequence[int]] = None) -> None:
        for i in self._sel(fields):
            self.blocks[i].update_ghosts()

    def accumulate_ghosts(self, fields: Optional[Sequence[int]] = None) -> None:
        for i in self._sel(fields):
            self.blocks[i].accumulate_ghosts()

    def zero(self) -> None:
        for b in self.blocks:
            b.zero()

    def copy(self) -> "BlockVector":
        return BlockVector([b.copy() for b in self.blocks])

    def copy_from(self, other: "BlockVector") -> None:
        for mine, theirs in zip(self.blocks, other.blocks):
            mine.copy_from(theirs)

    # ------------------------------------------------------------------
    # Flat owned layout for the linear solver
    # ------------------------------------------------------------------
    def flat_size(self, fields: Sequence[int]) -> int:
        return int(sum(self.blocks[i].dofs.n_owned for i in fields))

    def pack_owned(self, fields: Sequence[int]) -> np.ndarray:
        if not fields:
            return np.zeros(0, dtype=np.float64)
        return np.concatenate([self.blocks[i].owned for i in fields])

    def unpack_owned(self, flat: np.ndarray, fields: Sequence[int], *, add: bool = False) -> None:
        """Write (or add) a flat owned array back into the selected blocks; ghosts are not touched."""
        flat = np.asarray(flat, dtype=np.float64)
        expected = self.flat_size(fields)
        if flat.shape != (expected,):
            raise ValueError(f"flat vector must have shape ({expected},), got {flat.shape}")
        pos = 0
        for i in fields:
            n = self.blocks[i].dofs.n_owned
            if add:
                self.blocks[i].owned[:] += flat[pos:pos + n]
            else:
                self.blocks[i].owned[:] = flat[pos:pos + n]
            pos += n

    def _sel(self, fields: Optional[Sequence[int]]) -> Sequence[int]:
        return range(len(self.blocks)) if fields is None else fields
