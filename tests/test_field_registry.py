from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mfpde.core.errors import DuplicateFieldError, SetupError, UnknownFieldError
from mfpde.core.fields import FieldFlags, FieldRank, FieldRegistry, TemporalKind


def _assert_unchanged(reg):
    assert len(reg) == 3
    assert reg.names() == ["u", "disp", "c"]
    assert [reg.index_of(n) for n in ("u", "disp", "c")] == [0, 1, 2]


def _registry():
    reg = FieldRegistry()
    reg.register_field("u", FieldRank.SCALAR, TemporalKind.IMPLICIT)
    reg.register_field("disp", "vector", "implicit", FieldFlags(needs_gradient=True))
    reg.register_field("c", FieldRank.SCALAR, TemporalKind.EXPLICIT)
    return reg


def test_registration_order_defines_indices():
    reg = _registry()
    assert reg.names() == ["u", "disp", "c"]
    assert [reg.index_of(n) for n in ("u", "disp", "c")] == [0, 1, 2]
    assert reg[1].rank == FieldRank.VECTOR
    assert reg[1].n_components(2) == 2
    assert reg[0].n_components(3) == 1
    assert [f.name for f in reg.implicit_fields()] == ["u", "disp"]
    assert [f.name for f in reg.explicit_fields()] == ["c"]


def test_duplicate_name_rejected():
    reg = _registry()
    with pytest.raises(DuplicateFieldError, match="'u' is already registered"):
        reg.register_field("u")
    _assert_unchanged(reg)
    with pytest.raises(DuplicateFieldError):
        reg.register_field("disp", FieldRank.SCALAR, TemporalKind.EXPLICIT)
    _assert_unchanged(reg)
    assert reg[1].rank == FieldRank.VECTOR


def test_unknown_name_lists_registered_fields():
    reg = _registry()
    with pytest.raises(UnknownFieldError) as exc:
        reg.index_of("temperature")
    assert "temperature" in str(exc.value)
    assert "disp" in str(exc.value)
    assert isinstance(exc.value, KeyError)
    _assert_unchanged(reg)


def test_frozen_registry_rejects_new_fields():
    reg = _registry()
    reg.freeze()
    assert reg.frozen
    with pytest.raises(SetupError, match="frozen"):
        reg.register_field("late")


def test_invalid_rank_or_kind():
    reg = _registry()
    with pytest.raises(SetupError, match="Invalid field definition"):
        reg.register_field("q", rank="tensor")
    _assert_unchanged(reg)
    with pytest.raises(SetupError, match="Invalid field definition"):
        reg.register_field("q", kind="semi-implicit")
    _assert_unchanged(reg)
    # the rejected name stays free
    assert reg.register_field("q").index == 3


def test_flags_summaries():
    flags = FieldFlags(needs_value=False, needs_gradient=False, produces_value=False)
    assert not flags.reads
    assert not flags.writes
    assert FieldFlags(needs_old_value=True, needs_value=False).reads
