"""Starting points for the path-following iteration."""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import numpy as np

from .backends import Backend
from .config import KKTSystem, RegQSDSettings
from .diagnostics import LogContext
from .exceptions import IPFConvergenceError
from .factor import FactorizationFailure, SymbolicFactorization
from .kkt import regularization

logger = logging.getLogger(__name__)

Array = np.ndarray

_EPS = float(np.finfo(float).eps)


def standard_shift(backend: Backend, v: Array) -> bool:
    """Push ``v`` into the interior when it is not safely positive.

    If ``min(v) <= sqrt(eps) * max(||v||, 1)`` the vector is shifted so that its
    smallest entry becomes one. Returns ``True`` when a shift was applied.
    """
    gamma = np.sqrt(_EPS) * max(backend.norm2(v), 1.0)
    alpha = -backend.min_value(v)
    if alpha >= -gamma:
        v += alpha + 1.0
        return True
    return False


def mehrotra_shift(backend: Backend, x: Array, z: Array, shift_x: bool, shift_z: bool) -> None:
    """Mehrotra's starting-point heuristic applied to the selected components."""
    if shift_x:
        x += max(-1.5 * backend.min_value(x), 0.0)
    if shift_z:
        z += max(-1.5 * backend.min_value(z), 0.0)
    xz = backend.dot(x, z)
    sum_x = backend.allreduce_sum(float(np.sum(x)))
    sum_z = backend.allreduce_sum(float(np.sum(z)))
    dx = 0.5 * xz / sum_z if sum_z > 0.0 else 0.0
    dz = 0.5 * xz / sum_x if sum_x > 0.0 else 0.0
    if shift_x:
        x += dx
    if shift_z:
        z += dz
    # Degenerate data (e.g. b = 0) can leave zeros behind.
    if shift_x and backend.num_nonpositive(x):
        standard_shift(backend, x)
    if shift_z and backend.num_nonpositive(z):
        standard_shift(backend, z)


def initialize(
    backend: Backend,
    b: Array,
    c: Array,
    x: Array,
    y: Array,
    z: Array,
    primal_init: bool = False,
    dual_init: bool = False,
    standard_shift_init: bool = True,
    qsd: Optional[RegQSDSettings] = None,
    log: Optional[LogContext] = None,
) -> Optional[SymbolicFactorization]:
    """Fill in the cold components of ``(x, y, z)`` in place.

    The cold primal point is the least-norm solution of ``A x = b`` and the
    cold dual point the least-norm ``z`` with ``A^T y - z + c = 0``; both come
    from the augmented system ``[[I, A^T], [A, 0]]``, factored once. Sparse
    backends regularize that system like the AUGMENTED Newton system and
    return its symbolic analysis so the main loop can reuse it.
    """
    log = log or LogContext(logger)
    qsd = qsd or RegQSDSettings()
    symbolic: Optional[SymbolicFactorization] = None

    pairs: List[Tuple[Array, Array]] = []
    if not primal_init:
        pairs.append((np.zeros(backend.n_local), np.asarray(b, dtype=float)))
    if not dual_init:
        pairs.append((np.asarray(c, dtype=float), np.zeros(backend.m_local)))

    if pairs:
        reg = regularization(KKTSystem.AUGMENTED, backend.m, backend.n, qsd) if backend.sparse else None
        solutions, symbolic = backend.solve_init_system(pairs, reg=reg, reanalyze=backend.sparse)
        if isinstance(solutions, FactorizationFailure):
            raise IPFConvergenceError(f"Could not solve the initialization system: {solutions.reason}")
        it = iter(solutions)
        if not primal_init:
            x_cold, _ = next(it)
            x[:] = x_cold
        if not dual_init:
            z_cold, u = next(it)
            z[:] = z_cold
            y[:] = -u

    if standard_shift_init:
        shifted_x = standard_shift(backend, x)
        shifted_z = standard_shift(backend, z)
    else:
        mehrotra_shift(backend, x, z, shift_x=not primal_init, shift_z=not dual_init)
        shifted_x, shifted_z = not primal_init, not dual_init
    log.output(
        "Initialized with ||x||=%.3e ||y||=%.3e ||z||=%.3e (shifted x: %s, shifted z: %s)",
        backend.norm2(x),
        backend.norm2(y),
        backend.norm2(z),
        shifted_x,
        shifted_z,
    )
    return symbolic


__all__ = ["initialize", "standard_shift", "mehrotra_shift"]
