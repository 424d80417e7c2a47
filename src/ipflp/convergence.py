"""Convergence measures of a primal-dual iterate."""

from __future__ import annotations

from dataclasses import asdict, dataclass
import logging
from typing import Dict, Optional, Tuple

import numpy as np

from .backends import Backend
from .diagnostics import LogContext

logger = logging.getLogger(__name__)

Array = np.ndarray


@dataclass(frozen=True)
class ConvergenceMeasures:
    mu: float
    primal_obj: float
    dual_obj: float
    obj_conv: float
    rb_conv: float
    rc_conv: float

    @property
    def rel_error(self) -> float:
        """Largest of the three relative criteria."""
        return max(self.obj_conv, self.rb_conv, self.rc_conv)

    def as_dict(self) -> Dict[str, float]:
        out = asdict(self)
        out["rel_error"] = self.rel_error
        return out


def residuals(backend: Backend, b: Array, c: Array, x: Array, y: Array, z: Array) -> Tuple[Array, Array]:
    """``r_b = A x - b`` and ``r_c = A^T y - z + c`` in the backend's layout."""
    rb = backend.multiply(x) - b
    rc = backend.multiply_transpose(y) - z + c
    return rb, rc


def measure(
    backend: Backend,
    b: Array,
    c: Array,
    x: Array,
    y: Array,
    z: Array,
    rb: Array,
    rc: Array,
    b_norm: Optional[float] = None,
    c_norm: Optional[float] = None,
) -> ConvergenceMeasures:
    b_norm = backend.norm2(b) if b_norm is None else b_norm
    c_norm = backend.norm2(c) if c_norm is None else c_norm
    mu = backend.dot(x, z) / backend.n
    primal_obj = backend.dot(c, x)
    dual_obj = -backend.dot(b, y)
    obj_conv = abs(primal_obj - dual_obj) / (1.0 + abs(primal_obj))
    rb_conv = backend.norm2(rb) / (1.0 + b_norm)
    rc_conv = backend.norm2(rc) / (1.0 + c_norm)
    return ConvergenceMeasures(mu, primal_obj, dual_obj, obj_conv, rb_conv, rc_conv)


def direction_errors(
    backend: Backend,
    x: Array,
    z: Array,
    dx: Array,
    dy: Array,
    dz: Array,
    rb: Array,
    rc: Array,
    rmu: Array,
) -> Tuple[float, float, float]:
    """Relative residuals of the three Newton equations for a computed step."""
    err_b = backend.multiply(dx) + rb
    err_c = backend.multiply_transpose(dy) - dz + rc
    err_mu = x * dz + z * dx + rmu
    return (
        backend.norm2(err_b) / (1.0 + backend.norm2(rb)),
        backend.norm2(err_c) / (1.0 + backend.norm2(rc)),
        backend.norm2(err_mu) / (1.0 + backend.norm2(rmu)),
    )


def log_iteration(log: LogContext, iteration: int, measures: ConvergenceMeasures) -> None:
    log.output(
        "iter %d: mu=%.3e primal=%.6e dual=%.6e |obj|=%.3e |rb|=%.3e |rc|=%.3e",
        iteration,
        measures.mu,
        measures.primal_obj,
        measures.dual_obj,
        measures.obj_conv,
        measures.rb_conv,
        measures.rc_conv,
    )


__all__ = ["ConvergenceMeasures", "residuals", "measure", "direction_errors", "log_iteration"]
