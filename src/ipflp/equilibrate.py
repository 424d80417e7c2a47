"""Geometric diagonal equilibration of constraint and KKT matrices."""

from __future__ import annotations

from typing import TYPE_CHECKING, Tuple

import numpy as np
import scipy.sparse as sp

from .problem import MatrixLike

if TYPE_CHECKING:  # pragma: no cover
    from .backends import Backend

Array = np.ndarray


def abs_extrema(A: MatrixLike, axis: int) -> Tuple[Array, Array]:
    """Largest and smallest nonzero magnitude along ``axis``.

    Rows/columns without nonzeros report ``(0, inf)``.
    """
    if A.shape[axis] == 0:
        size = A.shape[1 - axis]
        return np.zeros(size), np.full(size, np.inf)
    if sp.issparse(A):
        mag = sp.csr_matrix(abs(A))
        mag.eliminate_zeros()
        max_abs = np.asarray(mag.max(axis=axis).toarray()).reshape(-1)
        inv = mag.copy()
        inv.data = 1.0 / inv.data
        inv_max = np.asarray(inv.max(axis=axis).toarray()).reshape(-1)
        with np.errstate(divide="ignore"):
            min_abs = np.where(inv_max > 0, 1.0 / np.where(inv_max > 0, inv_max, 1.0), np.inf)
        return max_abs, min_abs
    mag = np.abs(np.asarray(A, dtype=float))
    max_abs = mag.max(axis=axis)
    masked = np.where(mag > 0, mag, np.inf)
    min_abs = masked.min(axis=axis)
    return max_abs, min_abs


def geometric_scale(max_abs: Array, min_abs: Array) -> Array:
    """sqrt(max * min) where the line has nonzeros, 1 elsewhere."""
    active = (max_abs > 0) & np.isfinite(min_abs)
    out = np.ones_like(max_abs, dtype=float)
    out[active] = np.sqrt(max_abs[active] * min_abs[active])
    return out


def _ratio(max_abs: Array, min_abs: Array) -> Array:
    active = (max_abs > 0) & np.isfinite(min_abs)
    return max_abs[active] / min_abs[active]


def geom_equil(backend: "Backend", max_iter: int = 6, rel_tol: float = 0.9) -> Tuple[Array, Array]:
    """Equilibrate the backend's matrix in place.

    On return ``A_original = diag(d_row) A_scaled diag(d_col)``. Both scaling
    vectors are in the backend's local layout.
    """
    d_row = np.ones(backend.m_local, dtype=float)
    d_col = np.ones(backend.n_local, dtype=float)

    col_max, col_min = backend.abs_extrema(axis=0)
    max_ratio = backend.max_value(_ratio(col_max, col_min))
    for _ in range(max_iter):
        col_scale = geometric_scale(*backend.abs_extrema(axis=0))
        d_col *= col_scale
        backend.scale_matrix(None, col_scale)

        row_scale = geometric_scale(*backend.abs_extrema(axis=1))
        d_row *= row_scale
        backend.scale_matrix(row_scale, None)

        col_max, col_min = backend.abs_extrema(axis=0)
        new_ratio = backend.max_value(_ratio(col_max, col_min))
        if not new_ratio < rel_tol * max_ratio:
            break
        max_ratio = new_ratio

    # Normalize so that every nonzero column has unit max-norm.
    col_max, _ = backend.abs_extrema(axis=0)
    col_scale = np.where(col_max > 0, col_max, 1.0)
    d_col *= col_scale
    backend.scale_matrix(None, col_scale)
    return d_row, d_col


def _scale_symmetric(J: sp.csr_matrix, s: Array) -> None:
    """In-place ``J <- diag(s) J diag(s)`` that leaves the stored pattern intact."""
    rows = np.repeat(np.arange(J.shape[0]), np.diff(J.indptr))
    J.data *= s[rows] * s[J.indices]


def symmetric_geom_equil(J: MatrixLike, max_iter: int = 6, rel_tol: float = 0.9) -> Tuple[sp.csr_matrix, Array]:
    """Symmetric equilibration ``J = D J_scaled D`` of a sparse symmetric matrix."""
    J = sp.csr_matrix(J, dtype=float, copy=True)
    n = J.shape[0]
    d = np.ones(n, dtype=float)

    row_max, row_min = abs_extrema(J, axis=1)
    max_ratio = np.max(_ratio(row_max, row_min), initial=1.0)
    for _ in range(max_iter):
        row_max, row_min = abs_extrema(J, axis=1)
        scale = np.sqrt(geometric_scale(row_max, row_min))
        d *= scale
        _scale_symmetric(J, 1.0 / scale)

        row_max, row_min = abs_extrema(J, axis=1)
        new_ratio = np.max(_ratio(row_max, row_min), initial=1.0)
        if not new_ratio < rel_tol * max_ratio:
            break
        max_ratio = new_ratio

    row_max, _ = abs_extrema(J, axis=1)
    scale = np.sqrt(np.where(row_max > 0, row_max, 1.0))
    d *= scale
    _scale_symmetric(J, 1.0 / scale)
    return J, d


__all__ = ["abs_extrema", "geometric_scale", "geom_equil", "symmetric_geom_equil"]
