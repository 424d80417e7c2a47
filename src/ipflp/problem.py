"""Data structures and helpers for standard-form linear programs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

import numpy as np
import scipy.sparse as sp

ArrayLike = np.ndarray
MatrixLike = Union[np.ndarray, sp.spmatrix]


def as_matrix(A: object, name: str = "A") -> MatrixLike:
    """Return ``A`` as a float ndarray or a float CSR matrix."""
    if sp.issparse(A):
        out = sp.csr_matrix(A, dtype=float)
        out.sum_duplicates()
        return out
    arr = np.asarray(A, dtype=float)
    if arr.ndim == 1:
        arr = arr.reshape(1, -1)
    if arr.ndim != 2:
        raise ValueError(f"{name} must be a 2D matrix, got shape {arr.shape}")
    return arr


def as_vector(v: object, size: int, name: str) -> np.ndarray:
    arr = np.asarray(v, dtype=float).reshape(-1)
    if arr.shape[0] != size:
        raise ValueError(f"{name} must have length {size}, got {arr.shape[0]}.")
    return arr


@dataclass(frozen=True)
class LPProblem:
    """Linear program in direct conic (standard) form.

    The primal/dual pair solved throughout the project is

        minimize    c^T x                 maximize    -b^T y
        subject to  A x = b,  x >= 0      subject to  A^T y - z + c = 0,  z >= 0

    ``A`` may be a dense ndarray or any scipy sparse matrix (stored as CSR).
    """

    A: MatrixLike
    b: ArrayLike
    c: ArrayLike
    name: str = "unnamed"

    def __post_init__(self) -> None:
        A = as_matrix(self.A)
        m, n = A.shape
        object.__setattr__(self, "A", A)
        object.__setattr__(self, "b", as_vector(self.b, m, "b"))
        object.__setattr__(self, "c", as_vector(self.c, n, "c"))

    @property
    def m(self) -> int:
        """Number of equality constraints."""
        return int(self.A.shape[0])

    @property
    def n(self) -> int:
        """Number of primal variables."""
        return int(self.A.shape[1])

    @property
    def is_sparse(self) -> bool:
        return sp.issparse(self.A)

    def primal_objective(self, x: ArrayLike) -> float:
        return float(self.c @ np.asarray(x, dtype=float))

    def dual_objective(self, y: ArrayLike) -> float:
        return -float(self.b @ np.asarray(y, dtype=float))

    def residuals(self, x: ArrayLike, y: ArrayLike, z: ArrayLike) -> tuple[np.ndarray, np.ndarray]:
        """Return the primal (r_b = Ax - b) and dual (r_c = A^T y - z + c) residuals."""
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float)
        z = np.asarray(z, dtype=float)
        r_b = self.A @ x - self.b
        r_c = self.A.T @ y - z + self.c
        return np.asarray(r_b).reshape(-1), np.asarray(r_c).reshape(-1)

    def relative_errors(self, x: ArrayLike, y: ArrayLike, z: ArrayLike) -> tuple[float, float, float]:
        """Objective gap, primal and dual relative residuals of a candidate solution."""
        r_b, r_c = self.residuals(x, y, z)
        primal = self.primal_objective(x)
        dual = self.dual_objective(y)
        obj_conv = abs(primal - dual) / (1.0 + abs(primal))
        rb_conv = float(np.linalg.norm(r_b)) / (1.0 + float(np.linalg.norm(self.b)))
        rc_conv = float(np.linalg.norm(r_c)) / (1.0 + float(np.linalg.norm(self.c)))
        return obj_conv, rb_conv, rc_conv


__all__ = ["LPProblem", "as_matrix", "as_vector"]
