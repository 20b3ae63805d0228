"""
Physics kernels.

- PoissonKernel:             -div(k grad u) = f                     (implicit, linear)
- NonlinearDiffusionKernel:  (u - u_old)/dt - div(k(u) grad u) = f,  k(u) = k0 + k1 u^2
- AllenCahnKernel:           phi_t = eps^2 lap(phi) + phi - phi^3   (explicit forward Euler)
- CoupledReactionKernel:     implicit u with source a*c, explicit c with decay -b*c*u
- LinearElasticityKernel:    -div(sigma(u)) = b, sigma = lam tr(eps) I + 2 mu eps
                             (optional history: max equivalent strain)

Sign convention (see assembly.kernel): value terms multiply the test function,
gradient terms multiply its gradient.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Type, Union

import numpy as np

from mfpde.assembly.kernel import Contributions, Kernel, QuadraturePoint
from mfpde.core.errors import ConfigError
from mfpde.core.fields import FieldFlags, FieldRank, FieldRegistry, TemporalKind

Source = Union[float, Callable[[np.ndarray, float], np.ndarray]]


def _eval_source(source: Source, x: np.ndarray, time: float) -> np.ndarray:
    if callable(source):
        return np.asarray(source(x, time), dtype=np.float64)
    return np.full(x.shape[0], float(source))


def polynomial_source(coeffs: Sequence[float]) -> Callable[[np.ndarray, float], np.ndarray]:
    """f(x) = c0 + c1 x0 + c2 x1 + ... (affine in the coordinates)."""
    c = np.asarray(coeffs, dtype=np.float64)

    def f(x: np.ndarray, time: float) -> np.ndarray:
        return c[0] + x @ c[1:1 + x.shape[1]]

    return f


class PoissonKernel(Kernel):
    name = "poisson"

    def __init__(self, field: str = "u", coefficient: float = 1.0, source: Source = 0.0) -> None:
        self.field_name = field
        self.k = float(coefficient)
        self.source = source
        self.u = -1

    def declare_fields(self, registry: FieldRegistry) -> None:
        registry.register_field(
            self.field_name,
            FieldRank.SCALAR,
            TemporalKind.IMPLICIT,
            FieldFlags(needs_value=False, needs_gradient=True, produces_value=True, produces_gradient=True),
        )

    def bind(self, registry: FieldRegistry) -> None:
        self.u = registry.index_of(self.field_name)

    def residual(self, qp: QuadraturePoint, out: Contributions) -> None:
        out.set_gradient(self.u, self.k * qp.gradient(self.u))
        out.set_value(self.u, -_eval_source(self.source, qp.x, qp.time))

    def jacobian_action(self, qp: QuadraturePoint, dqp: QuadraturePoint, out: Contributions) -> None:
        out.set_gradient(self.u, self.k * dqp.gradient(self.u))


class NonlinearDiffusionKernel(Kernel):
    """Backward Euler in time; set transient=False for the steady problem."""

    name = "nonlinear_diffusion"

    def __init__(
        self,
        field: str = "u",
        k0: float = 1.0,
        k1: float = 1.0,
        source: Source = 0.0,
        transient: bool = True,
    ) -> None:
        self.field_name = field
        self.k0 = float(k0)
        self.k1 = float(k1)
        self.source = source
        self.transient = bool(transient)
        self.u = -1

    def declare_fields(self, registry: FieldRegistry) -> None:
        registry.register_field(
            self.field_name,
            FieldRank.SCALAR,
            TemporalKind.IMPLICIT,
            FieldFlags(
                needs_value=True,
                needs_gradient=True,
                needs_old_value=self.transient,
                produces_value=True,
                produces_gradient=True,
            ),
        )

    def bind(self, registry: FieldRegistry) -> None:
        self.u = registry.index_of(self.field_name)

    def conductivity(self, u: np.ndarray) -> np.ndarray:
        return self.k0 + self.k1 * u * u

    def residual(self, qp: QuadraturePoint, out: Contributions) -> None:
        u = qp.value(self.u)
        grad = qp.gradient(self.u)
        out.set_gradient(self.u, self.conductivity(u)[:, None] * grad)
        val = -_eval_source(self.source, qp.x, qp.time)
        if self.transient:
            val = val + (u - qp.old_value(self.u)) / qp.dt
        out.set_value(self.u, val)

    def jacobian_action(self, qp: QuadraturePoint, dqp: QuadraturePoint, out: Contributions) -> None:
        u = qp.value(self.u)
        grad = qp.gradient(self.u)
        du = dqp.value(self.u)
        dgrad = dqp.gradient(self.u)
        dk = 2.0 * self.k1 * u
        out.set_gradient(self.u, self.conductivity(u)[:, None] * dgrad + (dk * du)[:, None] * grad)
        if self.transient:
            out.set_value(self.u, du / qp.dt)


class AllenCahnKernel(Kernel):
    name = "allen_cahn"

    def __init__(self, field: str = "phi", epsilon: float = 0.05) -> None:
        self.field_name = field
        self.eps2 = float(epsilon) ** 2
        self.phi = -1

    def declare_fields(self, registry: FieldRegistry) -> None:
        registry.register_field(
            self.field_name,
            FieldRank.SCALAR,
            TemporalKind.EXPLICIT,
            FieldFlags(needs_value=True, needs_gradient=True, produces_value=True, produces_gradient=True),
        )

    def bind(self, registry: FieldRegistry) -> None:
        self.phi = registry.index_of(self.field_name)

    def explicit_rhs(self, qp: QuadraturePoint, out: Contributions) -> None:
        phi = qp.value(self.phi)
        out.set_value(self.phi, phi + qp.dt * (phi - phi**3))
        out.set_gradient(self.phi, -qp.dt * self.eps2 * qp.gradient(self.phi))


class CoupledReactionKernel(Kernel):
    """
    u (implicit, steady):  -div(k grad u) = a * c
    c (explicit):          c_t = -b * c * u
    """

    name = "coupled_reaction"

    def __init__(self, k: float = 1.0, a: float = 1.0, b: float = 1.0) -> None:
        self.k = float(k)
        self.a = float(a)
        self.b = float(b)
        self.u = -1
        self.c = -1

    def declare_fields(self, registry: FieldRegistry) -> None:
        registry.register_field(
            "u",
            FieldRank.SCALAR,
            TemporalKind.IMPLICIT,
            FieldFlags(needs_value=True, needs_gradient=True, produces_value=True, produces_gradient=True),
        )
        registry.register_field(
            "c",
            FieldRank.SCALAR,
            TemporalKind.EXPLICIT,
            FieldFlags(needs_value=True, produces_value=True),
        )

    def bind(self, registry: FieldRegistry) -> None:
        self.u = registry.index_of("u")
        self.c = registry.index_of("c")

    def residual(self, qp: QuadraturePoint, out: Contributions) -> None:
        out.set_gradient(self.u, self.k * qp.gradient(self.u))
        out.set_value(self.u, -self.a * qp.value(self.c))

    def jacobian_action(self, qp: QuadraturePoint, dqp: QuadraturePoint, out: Contributions) -> None:
        out.set_gradient(self.u, self.k * dqp.gradient(self.u))

    def explicit_rhs(self, qp: QuadraturePoint, out: Contributions) -> None:
        c = qp.value(self.c)
        u = qp.value(self.u)
        out.set_value(self.c, c - qp.dt * self.b * c * u)


class LinearElasticityKernel(Kernel):
    """Small-strain isotropic elasticity; history variable 0 tracks the max equivalent strain."""

    name = "linear_elasticity"

    def __init__(
        self,
        field: str = "displacement",
        youngs_modulus: float = 1.0,
        poisson_ratio: float = 0.3,
        body_force: Optional[Sequence[float]] = None,
    ) -> None:
        E = float(youngs_modulus)
        nu = float(poisson_ratio)
        if not -1.0 < nu < 0.5:
            raise ConfigError(f"kernel.poisson_ratio: must be in (-1, 0.5), got {nu}")
        self.field_name = field
        self.lam = E * nu / ((1.0 + nu) * (1.0 - 2.0 * nu))
        self.mu = E / (2.0 * (1.0 + nu))
        self.body_force = None if body_force is None else np.asarray(body_force, dtype=np.float64)
        self.u = -1

    def declare_fields(self, registry: FieldRegistry) -> None:
        registry.register_field(
            self.field_name,
            FieldRank.VECTOR,
            TemporalKind.IMPLICIT,
            FieldFlags(
                needs_value=False,
                needs_gradient=True,
                produces_value=self.body_force is not None,
                produces_gradient=True,
            ),
        )

    def bind(self, registry: FieldRegistry) -> None:
        self.u = registry.index_of(self.field_name)

    def stress(self, grad: np.ndarray) -> np.ndarray:
        eps = 0.5 * (grad + np.swapaxes(grad, 1, 2))
        tr = np.trace(eps, axis1=1, axis2=2)
        dim = grad.shape[1]
        return self.lam * tr[:, None, None] * np.eye(dim)[None] + 2.0 * self.mu * eps

    def residual(self, qp: QuadraturePoint, out: Contributions) -> None:
        grad = qp.gradient(self.u)
        out.set_gradient(self.u, self.stress(grad))
        if self.body_force is not None:
            out.set_value(self.u, -self.body_force[None, :])
        if qp.history is not None:
            eps = 0.5 * (grad + np.swapaxes(grad, 1, 2))
            eq = np.sqrt(np.einsum("cij,cij->c", eps, eps))
            qp.history[:, 0] = np.maximum(qp.history_old[:, 0], eq)

    def jacobian_action(self, qp: QuadraturePoint, dqp: QuadraturePoint, out: Contributions) -> None:
        out.set_gradient(self.u, self.stress(dqp.gradient(self.u)))


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------
KERNELS: Dict[str, Type[Kernel]] = {
    PoissonKernel.name: PoissonKernel,
    NonlinearDiffusionKernel.name: NonlinearDiffusionKernel,
    AllenCahnKernel.name: AllenCahnKernel,
    CoupledReactionKernel.name: CoupledReactionKernel,
    LinearElasticityKernel.name: LinearElasticityKernel,
}


def build_kernel(name: str, params: Optional[Mapping[str, Any]] = None) -> Kernel:
    """Instantiate a kernel by name; a `source` list becomes an affine source term."""
    key = str(name).strip().lower()
    if key not in KERNELS:
        raise ConfigError(f"kernel.name: invalid value {name!r} (known: {sorted(KERNELS)})")
    kwargs = dict(params or {})
    if isinstance(kwargs.get("source"), (list, tuple)):
        kwargs["source"] = polynomial_source(kwargs["source"])
    try:
        return KERNELS[key](**kwargs)
    except TypeError as exc:
        raise ConfigError(f"kernel.params: invalid parameters for '{key}': {exc}") from exc
