"""Infeasible path-following (IPF) solver for direct-form linear programs.

Solves the primal/dual pair

    minimize    c^T x                 maximize    -b^T y
    subject to  A x = b,  x >= 0      subject to  A^T y - z + c = 0,  z >= 0

with a single control loop shared by every backend (dense or sparse, serial
or distributed). Each iteration forms one of the FULL, AUGMENTED or NORMAL
reductions of the Newton system, factors it, takes the largest safeguarded
step that keeps ``x`` and ``z`` strictly positive and checks the relative
objective gap and residuals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Dict, List, Optional, Union

import numpy as np

from .backends import Backend, make_backend
from .config import IPFSettings, KKTSystem
from .convergence import ConvergenceMeasures, direction_errors, log_iteration, measure, residuals
from .diagnostics import LogContext
from .distributed import DistMatrix
from .equilibrate import geom_equil
from .exceptions import IPFConvergenceError, IPFLogicError
from .factor import FactorizationFailure, SymbolicFactorization
from .initialize import initialize
from .kkt import expand_solution, regularization
from .linesearch import ipf_line_search, max_step_in_positive_cone
from .problem import MatrixLike

logger = logging.getLogger(__name__)

Array = np.ndarray


@dataclass
class IPFResult:
    """Final iterate and run summary.

    ``x``, ``y`` and ``z`` are the caller's arrays (updated in place) in the
    caller's scaling. ``rel_error`` and ``history`` are measured on the
    internally equilibrated problem when equilibration is enabled.

    ``relaxed`` marks a run that stopped short of ``target_tol`` but within
    ``min_tol``. When it stops on ``max_its`` the returned iterate is the last
    one whose error was measured; no further Newton step is taken.
    """

    x: Array
    y: Array
    z: Array
    converged: bool
    iterations: int
    rel_error: float
    relaxed: bool = False
    primal_obj: float = float("nan")
    dual_obj: float = float("nan")
    history: List[Dict[str, float]] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "relaxed" if self.relaxed else "optimal"


def _iterate_array(v: Optional[Array], size: int, name: str) -> Array:
    if v is None:
        return np.zeros(size, dtype=float)
    if not isinstance(v, np.ndarray) or v.dtype != np.float64 or v.ndim != 1:
        raise ValueError(f"{name} must be a 1D float64 ndarray (it is updated in place).")
    if v.shape[0] != size:
        raise ValueError(f"{name} must have length {size}, got {v.shape[0]}.")
    return v


class IPFSolver:
    """Primal-dual infeasible path-following LP solver."""

    def __init__(self, settings: Optional[IPFSettings] = None) -> None:
        self.settings = settings or IPFSettings()
        self.settings.validate()

    def solve(
        self,
        A: Union[MatrixLike, DistMatrix],
        b: Array,
        c: Array,
        x: Optional[Array] = None,
        y: Optional[Array] = None,
        z: Optional[Array] = None,
    ) -> IPFResult:
        """Solve the LP, overwriting ``x``, ``y`` and ``z`` with the solution.

        ``A`` may be a dense ndarray, a scipy sparse matrix or a ``DistMatrix``
        (in which case every rank calls ``solve`` with its local slices).
        Missing iterate arrays are allocated; they must be supplied when the
        matching warm-start flag is set.

        Raises:
            IPFLogicError: If a warm-started ``x`` or ``z`` is not strictly
                positive, or an iterate leaves the cone during the solve.
            IPFConvergenceError: If ``min_tol`` cannot be reached.
        """
        s = self.settings
        log = LogContext(logger, verbose=s.print)
        backend = make_backend(A, s.qsd)

        b = np.array(b, dtype=float).reshape(-1)
        c = np.array(c, dtype=float).reshape(-1)
        if b.shape[0] != backend.m_local or c.shape[0] != backend.n_local:
            raise ValueError(
                f"b and c must have lengths {backend.m_local} and {backend.n_local}, "
                f"got {b.shape[0]} and {c.shape[0]}."
            )
        if s.primal_init and x is None:
            raise ValueError("primal_init requires an initial x.")
        if s.dual_init and (y is None or z is None):
            raise ValueError("dual_init requires initial y and z.")
        x = _iterate_array(x, backend.n_local, "x")
        y = _iterate_array(y, backend.m_local, "y")
        z = _iterate_array(z, backend.n_local, "z")

        if s.primal_init or s.dual_init:
            x_bad = backend.num_nonpositive(x) if s.primal_init else 0
            z_bad = backend.num_nonpositive(z) if s.dual_init else 0
            if x_bad or z_bad:
                raise IPFLogicError(
                    f"{x_bad} entries of x were nonpositive and {z_bad} entries of z were nonpositive"
                )

        d_row: Optional[Array] = None
        d_col: Optional[Array] = None
        if s.equilibrate:
            d_row, d_col = geom_equil(backend)
            b[:] = backend.diagonal_solve(d_row, b)
            c[:] = backend.diagonal_solve(d_col, c)
            if s.primal_init:
                x[:] = backend.diagonal_scale(d_col, x)
            if s.dual_init:
                y[:] = backend.diagonal_scale(d_row, y)
                z[:] = backend.diagonal_solve(d_col, z)
        try:
            return self._iterate(backend, b, c, x, y, z, log)
        finally:
            if d_row is not None:
                x[:] = backend.diagonal_solve(d_col, x)
                y[:] = backend.diagonal_solve(d_row, y)
                z[:] = backend.diagonal_scale(d_col, z)

    def _needs_analysis(self, num_its: int, symbolic: Optional[SymbolicFactorization]) -> bool:
        """Whether the sparse symbolic analysis is (re)computed this iteration.

        FULL and NORMAL analyze once, at iteration 0. AUGMENTED shares its
        pattern with the initialization system and reuses that analysis
        unless both warm-start flags skipped the initialization solve.
        """
        if num_its != 0:
            return symbolic is None
        s = self.settings
        if s.system is KKTSystem.AUGMENTED:
            return (s.primal_init and s.dual_init) or symbolic is None
        return True

    def _soft_failure(self, rel_error: float, num_its: int, reason: str) -> None:
        """Raise unless the current iterate already meets ``min_tol``."""
        if rel_error <= self.settings.min_tol:
            logger.info(
                "%s; accepting iterate with relative error %.3e <= min_tol=%g",
                reason,
                rel_error,
                self.settings.min_tol,
            )
            return
        raise IPFConvergenceError(
            f"Could not achieve minimum tolerance of {self.settings.min_tol:g} ({reason})",
            rel_error=rel_error,
            iterations=num_its,
        )

    def _iterate(
        self,
        backend: Backend,
        b: Array,
        c: Array,
        x: Array,
        y: Array,
        z: Array,
        log: LogContext,
    ) -> IPFResult:
        s = self.settings
        inner = log.nested()
        b_norm = backend.norm2(b)
        c_norm = backend.norm2(c)

        symbolic = initialize(
            backend,
            b,
            c,
            x,
            y,
            z,
            primal_init=s.primal_init,
            dual_init=s.dual_init,
            standard_shift_init=s.standard_shift,
            qsd=s.qsd,
            log=inner,
        )
        reg = regularization(s.system, backend.m, backend.n, s.qsd) if backend.sparse else None

        history: List[Dict[str, float]] = []
        measures: Optional[ConvergenceMeasures] = None
        rel_error = 1.0
        converged = False
        relaxed = False
        num_its = 0
        for num_its in range(s.max_its + 1):
            x_bad = backend.num_nonpositive(x)
            z_bad = backend.num_nonpositive(z)
            if x_bad or z_bad:
                raise IPFLogicError(
                    f"{x_bad} entries of x were nonpositive and {z_bad} entries of z were nonpositive"
                )
            if num_its == 0:
                backend.refresh_mult_meta()

            rb, rc = residuals(backend, b, c, x, y, z)
            measures = measure(backend, b, c, x, y, z, rb, rc, b_norm, c_norm)
            rel_error = measures.rel_error
            history.append({"iter": float(num_its), **measures.as_dict()})
            log_iteration(log, num_its, measures)

            if rel_error <= s.target_tol:
                converged = True
                break
            if num_its == s.max_its:
                if rel_error > s.min_tol:
                    raise IPFConvergenceError(
                        f"Maximum number of iterations ({s.max_its}) exceeded without "
                        f"achieving min_tol={s.min_tol:g}",
                        rel_error=rel_error,
                        iterations=num_its,
                    )
                relaxed = True
                break

            rmu = x * z - s.centering * measures.mu
            reanalyze = backend.sparse and self._needs_analysis(num_its, symbolic)
            blocks, symbolic = backend.solve_kkt(
                s.system, x, z, rc, rb, rmu, reg=reg, symbolic=symbolic, reanalyze=reanalyze
            )
            if isinstance(blocks, FactorizationFailure):
                logger.warning("Newton system solve failed at iteration %d: %s", num_its, blocks.reason)
                self._soft_failure(rel_error, num_its, blocks.reason)
                relaxed = True
                break
            dx, dy, dz = expand_solution(s.system, blocks, x, z, rc, rmu, backend.multiply_transpose)

            if inner.active():
                err_b, err_c, err_mu = direction_errors(backend, x, z, dx, dy, dz, rb, rc, rmu)
                inner.output(
                    "direction errors: |A dx + r_b|=%.3e |A^T dy - dz + r_c|=%.3e |x dz + z dx + r_mu|=%.3e",
                    err_b,
                    err_c,
                    err_mu,
                )

            alpha_primal = max_step_in_positive_cone(x, dx, 1.0, backend)
            alpha_dual = max_step_in_positive_cone(z, dz, 1.0, backend)
            alpha_max = min(alpha_primal, alpha_dual)
            inner.output("alpha_max = %.3e", alpha_max)
            alpha = ipf_line_search(
                backend,
                x,
                y,
                z,
                dx,
                dy,
                dz,
                rb,
                rc,
                0.99 * alpha_max,
                s.target_tol * (1.0 + b_norm),
                s.target_tol * (1.0 + c_norm),
                s.line_search,
                inner,
            )
            history[-1]["alpha"] = alpha
            backend.axpy(alpha, dx, x)
            backend.axpy(alpha, dy, y)
            backend.axpy(alpha, dz, z)
            if alpha == 0.0:
                self._soft_failure(rel_error, num_its, "line search made no progress")
                relaxed = True
                break

        return IPFResult(
            x=x,
            y=y,
            z=z,
            converged=converged or relaxed,
            iterations=num_its,
            rel_error=rel_error,
            relaxed=relaxed,
            primal_obj=measures.primal_obj if measures is not None else float("nan"),
            dual_obj=measures.dual_obj if measures is not None else float("nan"),
            history=history,
        )


def ipf(
    A: Union[MatrixLike, DistMatrix],
    b: Array,
    c: Array,
    x: Optional[Array] = None,
    y: Optional[Array] = None,
    z: Optional[Array] = None,
    settings: Optional[IPFSettings] = None,
) -> IPFResult:
    """Functional wrapper around :class:`IPFSolver`."""
    return IPFSolver(settings).solve(A, b, c, x, y, z)


__all__ = ["IPFResult", "IPFSolver", "ipf"]
