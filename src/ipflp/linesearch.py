"""Ratio test and safeguarded line search for the IPF step."""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from .backends import Backend
from .config import LineSearchSettings
from .diagnostics import LogContext

logger = logging.getLogger(__name__)

Array = np.ndarray


def max_step_in_positive_cone(
    v: Array, dv: Array, upper_bound: float = 1.0, backend: Optional[Backend] = None
) -> float:
    """Largest ``alpha <= upper_bound`` with ``v + alpha * dv >= 0``.

    Only entries with ``dv < 0`` bound the step. With a distributed backend
    the minimum is taken over all ranks.
    """
    v = np.asarray(v, dtype=float)
    dv = np.asarray(dv, dtype=float)
    mask = dv < 0.0
    ratios = -v[mask] / dv[mask]
    if backend is not None:
        alpha = backend.min_value(ratios)
    else:
        alpha = float(np.min(ratios)) if ratios.size else np.inf
    return float(min(upper_bound, alpha))


def ipf_line_search(
    backend: Backend,
    x: Array,
    y: Array,
    z: Array,
    dx: Array,
    dy: Array,
    dz: Array,
    rb: Array,
    rc: Array,
    upper_bound: float,
    b_tol: float,
    c_tol: float,
    settings: Optional[LineSearchSettings] = None,
    log: Optional[LogContext] = None,
) -> float:
    """Backtrack from ``upper_bound`` until the step keeps the iterate acceptable.

    A step ``alpha`` is accepted when the trial point stays in the wide
    neighbourhood ``x o z >= gamma * mu(alpha)``, reduces complementarity by
    ``mu(alpha) <= (1 - alpha / psi) mu`` and does not let the primal and dual
    residuals outgrow ``beta * mu(alpha) / mu`` times their current size
    (or ``b_tol`` / ``c_tol``, whichever is larger). Returns 0 when no
    candidate within ``max_backtracks`` qualifies.
    """
    settings = settings or LineSearchSettings()
    log = log or LogContext(logger)
    n = backend.n

    mu = backend.dot(x, z) / n
    rb_norm = backend.norm2(rb)
    rc_norm = backend.norm2(rc)
    # Residuals are affine in alpha.
    drb = backend.multiply(dx)
    drc = backend.multiply_transpose(dy) - dz

    alpha = float(upper_bound)
    for _ in range(settings.max_backtracks):
        x_a = x + alpha * dx
        z_a = z + alpha * dz
        mu_a = backend.dot(x_a, z_a) / n

        centrality = backend.min_value(x_a * z_a - settings.gamma * mu_a)
        decrease = mu_a <= (1.0 - alpha / settings.psi) * mu
        rb_a = backend.norm2(rb + alpha * drb)
        rc_a = backend.norm2(rc + alpha * drc)
        ratio = mu_a / mu if mu > 0.0 else 0.0
        primal_ok = rb_a <= max(settings.beta * rb_norm * ratio, b_tol)
        dual_ok = rc_a <= max(settings.beta * rc_norm * ratio, c_tol)

        if centrality >= 0.0 and decrease and primal_ok and dual_ok:
            log.output("Line search accepted alpha=%.3e (mu=%.3e)", alpha, mu_a)
            return alpha
        alpha /= settings.step_ratio

    log.output("Line search found no acceptable step below %.3e", upper_bound)
    return 0.0


__all__ = ["max_step_in_positive_cone", "ipf_line_search"]
