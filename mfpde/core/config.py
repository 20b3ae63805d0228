"""
YAML/mapping -> SolverConfig.

Unknown keys are rejected so that typos never silently fall back to defaults.
"""

from __future__ import annotations

from dataclasses import fields as dc_fields
from pathlib import Path
from typing import Any, Mapping, Optional, Type, TypeVar

import yaml

from .errors import ConfigError
from .types import (
    CutbackConfig,
    DiscretizationConfig,
    HistoryConfig,
    LinearConfig,
    NonlinearConfig,
    SolverConfig,
    TimeConfig,
)

T = TypeVar("T")

_SECTIONS = {
    "time": TimeConfig,
    "nonlinear": NonlinearConfig,
    "cutback": CutbackConfig,
    "linear": LinearConfig,
    "discretization": DiscretizationConfig,
    "history": HistoryConfig,
}


def _coerce(section: str, key: str, value: Any, default: Any) -> Any:
    if value is None:
        if default is None:
            return None
        raise ConfigError(f"{section}.{key}: value must not be null")
    try:
        if isinstance(default, bool):
            if not isinstance(value, bool):
                raise TypeError(f"expected bool, got {type(value).__name__}")
            return value
        if isinstance(default, int):
            if isinstance(value, bool) or int(value) != value:
                raise TypeError(f"expected int, got {value!r}")
            return int(value)
        if isinstance(default, float) or default is None:
            if isinstance(value, bool):
                raise TypeError("expected float, got bool")
            return float(value)
        if isinstance(default, str):
            return str(value).strip().lower()
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{section}.{key}: invalid value {value!r} ({exc})") from exc
    return value


def _build_section(name: str, cls: Type[T], raw: Optional[Mapping[str, Any]]) -> T:
    obj = cls()
    if raw is None:
        return obj
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{name}: expected a mapping, got {type(raw).__name__}")
    known = {f.name for f in dc_fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"{name}: unknown keys {unknown} (allowed: {sorted(known)})")
    for key, value in raw.items():
        setattr(obj, key, _coerce(name, key, value, getattr(obj, key)))
    return obj


def config_from_mapping(raw: Optional[Mapping[str, Any]]) -> SolverConfig:
    """Build and validate a SolverConfig from a nested mapping."""
    raw = raw or {}
    if not isinstance(raw, Mapping):
        raise ConfigError(f"solver: expected a mapping, got {type(raw).__name__}")
    unknown = sorted(set(raw) - set(_SECTIONS))
    if unknown:
        raise ConfigError(f"solver: unknown sections {unknown} (allowed: {sorted(_SECTIONS)})")
    sections = {name: _build_section(name, cls, raw.get(name)) for name, cls in _SECTIONS.items()}
    return SolverConfig(**sections).validate()


def load_config(path: str | Path) -> SolverConfig:
    """Load a SolverConfig from a YAML file (top-level 'solver' key or bare sections)."""
    cfg_file = Path(path).expanduser().resolve()
    raw = yaml.safe_load(cfg_file.read_text()) or {}
    if "solver" in raw:
        raw = raw["solver"]
    return config_from_mapping(raw)
