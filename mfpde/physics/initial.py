"""
Initial condition builders: func(points (n, dim)) -> values.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping

import numpy as np
from scipy import special

from mfpde.core.errors import ConfigError

InitialFunction = Callable[[np.ndarray], np.ndarray]


def constant(value) -> InitialFunction:
    v = np.asarray(value, dtype=np.float64)

    def f(points: np.ndarray) -> np.ndarray:
        return np.broadcast_to(v, (points.shape[0],) + v.shape).copy()

    return f


def affine(value: float, gradient) -> InitialFunction:
    g = np.asarray(gradient, dtype=np.float64)

    def f(points: np.ndarray) -> np.ndarray:
        return value + points @ g[: points.shape[1]]

    return f


def tanh_front(position: float, width: float, axis: int = 0) -> InitialFunction:
    """phi = tanh((x_axis - position) / (sqrt(2) width)), the Allen-Cahn equilibrium profile."""

    def f(points: np.ndarray) -> np.ndarray:
        return np.tanh((points[:, axis] - position) / (np.sqrt(2.0) * width))

    return f


def erfc_profile(inner: float, outer: float, position: float, width: float, axis: int = 0) -> InitialFunction:
    """inner + (outer - inner) * (1 - erfc((x - position) / width) / 2): smooth step from inner to outer."""

    def f(points: np.ndarray) -> np.ndarray:
        xi = (points[:, axis] - position) / width
        return inner + (outer - inner) * (1.0 - 0.5 * special.erfc(xi))

    return f


def initial_from_mapping(spec: Mapping[str, Any]) -> InitialFunction:
    kind = str(spec.get("type", "constant")).strip().lower()
    try:
        if kind == "constant":
            return constant(spec.get("value", 0.0))
        if kind == "affine":
            return affine(float(spec.get("value", 0.0)), spec.get("gradient", ()))
        if kind == "tanh":
            return tanh_front(float(spec["position"]), float(spec["width"]), int(spec.get("axis", 0)))
        if kind == "erfc":
            return erfc_profile(
                float(spec["inner"]),
                float(spec["outer"]),
                float(spec["position"]),
                float(spec["width"]),
                int(spec.get("axis", 0)),
            )
    except KeyError as exc:
        raise ConfigError(f"initial.{kind}: missing key {exc}") from None
    raise ConfigError(f"initial.type: invalid value {kind!r} (known: constant, affine, tanh, erfc)")
