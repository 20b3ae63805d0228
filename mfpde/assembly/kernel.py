"""
Kernel contract between the matrix-free operator and the physics.

A kernel is called once per quadrature point, vectorized over a batch of
cells. Shapes seen by the kernel (nb = cells in the batch, nc = components,
d = spatial dimension):

    scalar field: value (nb,)      gradient (nb, d)
    vector field: value (nb, nc)   gradient (nb, nc, d)

Residual convention: R_i = sum_q JxW * (value_out . N_i + gradient_out : dN_i/dx).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import numpy as np

from mfpde.core.errors import KernelContractError
from mfpde.core.fields import Field, FieldRegistry


@dataclass(frozen=True, slots=True)
class StepContext:
    """Time/increment data visible to kernels during one evaluation."""

    time: float = 0.0
    dt: float = 0.0
    increment: int = 0


class QuadraturePoint:
    """Interpolated field data at one quadrature point for a batch of cells."""

    __slots__ = ("_fields", "_values", "_gradients", "_old", "x", "time", "dt", "increment", "history", "history_old")

    def __init__(
        self,
        fields: Sequence[Field],
        values: Dict[int, np.ndarray],
        gradients: Dict[int, np.ndarray],
        old_values: Dict[int, np.ndarray],
        x: np.ndarray,
        step: StepContext,
        history: Optional[np.ndarray] = None,
        history_old: Optional[np.ndarray] = None,
    ) -> None:
        self._fields = fields
        self._values = values
        self._gradients = gradients
        self._old = old_values
        self.x = x
        self.time = step.time
        self.dt = step.dt
        self.increment = step.increment
        self.history = history
        self.history_old = history_old

    @property
    def n_cells(self) -> int:
        return int(self.x.shape[0])

    def _field(self, i: int) -> Field:
        try:
            return self._fields[i]
        except IndexError:
            raise KernelContractError(f"field index {i} is not registered") from None

    def value(self, i: int) -> np.ndarray:
        fld = self._field(i)
        if not fld.flags.needs_value:
            raise KernelContractError(f"kernel read the value of field '{fld.name}' without needs_value")
        return self._values[i]

    def gradient(self, i: int) -> np.ndarray:
        fld = self._field(i)
        if not fld.flags.needs_gradient:
            raise KernelContractError(f"kernel read the gradient of field '{fld.name}' without needs_gradient")
        return self._gradients[i]

    def old_value(self, i: int) -> np.ndarray:
        fld = self._field(i)
        if not fld.flags.needs_old_value:
            raise KernelContractError(
                f"kernel read the previous-increment value of field '{fld.name}' without needs_old_value"
            )
        return self._old[i]


class Contributions:
    """Write side of a kernel call; values/gradients are integrated against test functions."""

    __slots__ = ("_fields", "_writable", "_nb", "_dim", "values", "gradients", "_purpose")

    def __init__(self, fields: Sequence[Field], writable: Sequence[int], nb: int, dim: int, purpose: str) -> None:
        self._fields = fields
        self._writable = frozenset(int(i) for i in writable)
        self._nb = int(nb)
        self._dim = int(dim)
        self._purpose = purpose
        self.values: Dict[int, np.ndarray] = {}
        self.gradients: Dict[int, np.ndarray] = {}

    def _check(self, i: int, what: str) -> Field:
        try:
            fld = self._fields[i]
        except IndexError:
            raise KernelContractError(f"field index {i} is not registered") from None
        if i not in self._writable:
            raise KernelContractError(
                f"{self._purpose} may not write field '{fld.name}' ({fld.kind.value} field)"
            )
        if not getattr(fld.flags, f"produces_{what}"):
            raise KernelContractError(f"kernel wrote the {what} of field '{fld.name}' which does not produce it")
        return fld

    def set_value(self, i: int, arr) -> None:
        fld = self._check(i, "value")
        nc = fld.n_components(self._dim)
        a = np.asarray(arr, dtype=np.float64)
        if fld.rank.value == "scalar":
            a = np.broadcast_to(a, (self._nb,))[:, None]
        else:
            a = np.broadcast_to(a, (self._nb, nc))
        self.values[i] = a

    def set_gradient(self, i: int, arr) -> None:
        fld = self._check(i, "gradient")
        nc = fld.n_components(self._dim)
        a = np.asarray(arr, dtype=np.float64)
        if fld.rank.value == "scalar":
            a = np.broadcast_to(a, (self._nb, self._dim))[:, None, :]
        else:
            a = np.broadcast_to(a, (self._nb, nc, self._dim))
        self.gradients[i] = a


class Kernel:
    """
    Base class for physics kernels. Subclasses register their fields in
    `declare_fields`, resolve names to indices in `bind`, and implement
    `residual` (implicit fields) and/or `explicit_rhs` (explicit fields).

    `jacobian_action(qp, dqp, out)` is the linearization of `residual` at qp in
    direction dqp; when it is not overridden the operator falls back to finite
    differences.
    """

    name = "kernel"

    def declare_fields(self, registry: FieldRegistry) -> None:
        raise NotImplementedError

    def bind(self, registry: FieldRegistry) -> None:
        pass

    def residual(self, qp: QuadraturePoint, out: Contributions) -> None:
        pass

    def jacobian_action(self, qp: QuadraturePoint, dqp: QuadraturePoint, out: Contributions) -> None:
        raise NotImplementedError

    def explicit_rhs(self, qp: QuadraturePoint, out: Contributions) -> None:
        pass

    @property
    def has_jacobian(self) -> bool:
        return type(self).jacobian_action is not Kernel.jacobian_action

    # ------------------------------------------------------------------
    # Model hooks
    # ------------------------------------------------------------------
    def update_before_increment(self, increment: int, time: float, dt: float) -> None:
        pass

    def update_after_increment(self, increment: int, time: float) -> None:
        pass

    def update_before_iteration(self, iteration: int) -> None:
        pass

    def update_after_iteration(self, iteration: int) -> None:
        pass

    def test_convergence_after_iteration(self, iteration: int) -> bool:
        """Return False to veto convergence at this iteration."""
        return True

    def request_increment_reset(self) -> bool:
        """Return True to abandon the current increment (treated as divergence)."""
        return False
