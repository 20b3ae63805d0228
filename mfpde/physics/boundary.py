"""
Boundary value functions: f(point, component, increment, time) -> float.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

import numpy as np

from mfpde.assembly.constraints import DirichletCondition
from mfpde.core.errors import ConfigError


@dataclass(frozen=True, slots=True)
class Constant:
    value: float = 0.0

    def __call__(self, point: np.ndarray, component: int, increment: int, time: float) -> float:
        return self.value


@dataclass(frozen=True, slots=True)
class ComponentValues:
    """One constant per vector component."""

    values: tuple

    def __call__(self, point: np.ndarray, component: int, increment: int, time: float) -> float:
        return float(self.values[component])


@dataclass(frozen=True, slots=True)
class Affine:
    """value + gradient . x"""

    value: float
    gradient: tuple

    def __call__(self, point: np.ndarray, component: int, increment: int, time: float) -> float:
        g = np.asarray(self.gradient, dtype=np.float64)
        return float(self.value + np.dot(g[: point.shape[0]], point))


@dataclass(frozen=True, slots=True)
class LinearRamp:
    """
    Ramp from `start` to `end`, driven by the increment number (over=increment)
    or by time (over=time); held at `end` afterwards.
    """

    end: float
    length: float
    start: float = 0.0
    over: str = "increment"

    def __call__(self, point: np.ndarray, component: int, increment: int, time: float) -> float:
        s = float(increment if self.over == "increment" else time) / self.length
        s = min(max(s, 0.0), 1.0)
        return self.start + s * (self.end - self.start)


def boundary_function_from_mapping(spec: Mapping[str, Any]):
    kind = str(spec.get("type", "constant")).strip().lower()
    if kind == "constant":
        value = spec.get("value", 0.0)
        if isinstance(value, (list, tuple)):
            return ComponentValues(tuple(float(v) for v in value))
        return Constant(float(value))
    if kind == "affine":
        return Affine(float(spec.get("value", 0.0)), tuple(float(g) for g in spec.get("gradient", ())))
    if kind == "ramp":
        over = str(spec.get("over", "increment")).strip().lower()
        if over not in ("increment", "time"):
            raise ConfigError(f"boundary.ramp.over: invalid value {over!r}")
        length = float(spec.get("length", 1.0))
        if not length > 0.0:
            raise ConfigError(f"boundary.ramp.length: must be positive, got {length}")
        return LinearRamp(float(spec["end"]), length, float(spec.get("start", 0.0)), over)
    raise ConfigError(f"boundary.type: invalid value {kind!r} (known: constant, affine, ramp)")


def dirichlet_from_mapping(spec: Mapping[str, Any], default_field: Optional[str] = None) -> DirichletCondition:
    """{field, boundary, components?, type, ...} -> DirichletCondition."""
    field_name = spec.get("field", default_field)
    if not field_name:
        raise ConfigError("boundary.field: missing")
    if "boundary" not in spec:
        raise ConfigError(f"boundary on '{field_name}': missing 'boundary' marker")
    comps: Optional[Sequence[int]] = spec.get("components")
    return DirichletCondition(
        field=str(field_name),
        boundary=str(spec["boundary"]),
        function=boundary_function_from_mapping(spec),
        components=None if comps is None else [int(c) for c in comps],
    )
