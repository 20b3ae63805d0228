"""
Field registry.

Principles:
- Fields are registered once during setup and are immutable afterwards.
- Registration order defines the cell-loop order and the output order.
- Names are resolved to integer indices once; hot loops use indices only.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List

from .errors import DuplicateFieldError, SetupError, UnknownFieldError


class FieldRank(str, Enum):
    SCALAR = "scalar"
    VECTOR = "vector"


class TemporalKind(str, Enum):
    IMPLICIT = "implicit"
    EXPLICIT = "explicit"


@dataclass(frozen=True, slots=True)
class FieldFlags:
    """What the cell loop reads for a field and what the kernel writes back."""

    needs_value: bool = True
    needs_gradient: bool = False
    needs_old_value: bool = False
    produces_value: bool = True
    produces_gradient: bool = False

    @property
    def reads(self) -> bool:
        return self.needs_value or self.needs_gradient or self.needs_old_value

    @property
    def writes(self) -> bool:
        return self.produces_value or self.produces_gradient


@dataclass(frozen=True, slots=True)
class Field:
    index: int
    name: str
    rank: FieldRank
    kind: TemporalKind
    flags: FieldFlags

    def n_components(self, dim: int) -> int:
        return 1 if self.rank == FieldRank.SCALAR else int(dim)

    @property
    def is_implicit(self) -> bool:
        return self.kind == TemporalKind.IMPLICIT

    @property
    def is_explicit(self) -> bool:
        return self.kind == TemporalKind.EXPLICIT


class FieldRegistry:
    """Append-only, order-preserving list of fields."""

    def __init__(self) -> None:
        self._fields: List[Field] = []
        self._index: Dict[str, int] = {}
        self._frozen = False

    def register_field(
        self,
        name: str,
        rank: FieldRank | str = FieldRank.SCALAR,
        kind: TemporalKind | str = TemporalKind.IMPLICIT,
        flags: FieldFlags | None = None,
    ) -> Field:
        if self._frozen:
            raise SetupError(f"Cannot register field '{name}': registry is frozen after setup.")
        if not isinstance(name, str) or not name:
            raise SetupError(f"Field name must be a non-empty string, got {name!r}")
        if name in self._index:
            raise DuplicateFieldError(name)
        try:
            rank_e = FieldRank(rank)
            kind_e = TemporalKind(kind)
        except ValueError as exc:
            raise SetupError(f"Invalid field definition for '{name}': {exc}") from exc

        fld = Field(
            index=len(self._fields),
            name=name,
            rank=rank_e,
            kind=kind_e,
            flags=flags if flags is not None else FieldFlags(),
        )
        self._fields.append(fld)
        self._index[name] = fld.index
        return fld

    def index_of(self, name: str) -> int:
        try:
            return self._index[name]
        except KeyError:
            raise UnknownFieldError(name, self.names()) from None

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def names(self) -> List[str]:
        return [f.name for f in self._fields]

    def implicit_fields(self) -> List[Field]:
        return [f for f in self._fields if f.is_implicit]

    def explicit_fields(self) -> List[Field]:
        return [f for f in self._fields if f.is_explicit]

    def __getitem__(self, index: int) -> Field:
        return self._fields[index]

    def __iter__(self) -> Iterator[Field]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)
