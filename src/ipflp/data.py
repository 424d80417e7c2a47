"""Random LP instances with known interior points."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import scipy.sparse as sp

from .problem import LPProblem


@dataclass(frozen=True)
class FeasibleLP:
    """An LP together with a strictly feasible primal-dual certificate."""

    problem: LPProblem
    x: np.ndarray
    y: np.ndarray
    z: np.ndarray


def _random_sparse(m: int, n: int, density: float, rng: np.random.Generator) -> sp.csr_matrix:
    nnz = int(round(density * m * n))
    rows = rng.integers(0, m, size=nnz)
    cols = rng.integers(0, n, size=nnz)
    vals = rng.standard_normal(nnz)
    A = sp.coo_matrix((vals, (rows, cols)), shape=(m, n)).tocsr()
    # A leading identity block keeps the rows independent.
    A = A + sp.eye(m, n, format="csr")
    A.sum_duplicates()
    return sp.csr_matrix(A)


def random_feasible_lp(
    m: int,
    n: int,
    density: Optional[float] = None,
    seed: Optional[int] = None,
    name: str = "random",
) -> FeasibleLP:
    """Build an LP whose primal and dual are both strictly feasible.

    ``A`` is dense Gaussian when ``density`` is ``None`` and a CSR matrix with
    roughly ``density * m * n`` random entries (plus an identity block)
    otherwise. ``b = A x0`` and ``c = z0 - A^T y0`` for positive ``x0, z0``,
    so an optimal solution exists.
    """
    if m < 1 or n < m:
        raise ValueError("need 1 <= m <= n.")
    if density is not None and not (0.0 <= density <= 1.0):
        raise ValueError("density must be in [0, 1].")
    rng = np.random.default_rng(seed)
    if density is None:
        A = rng.standard_normal((m, n))
    else:
        A = _random_sparse(m, n, density, rng)

    x0 = rng.uniform(0.5, 1.5, size=n)
    y0 = rng.standard_normal(m)
    z0 = rng.uniform(0.5, 1.5, size=n)
    b = np.asarray(A @ x0).reshape(-1)
    c = z0 - np.asarray(A.T @ y0).reshape(-1)
    return FeasibleLP(LPProblem(A, b, c, name=name), x0, y0, z0)


def centered_start(problem: LPProblem) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Positive warm start ``x = s e, y = 0, z = s e`` scaled to the data."""
    scale = max(1.0, float(np.linalg.norm(problem.b)) / max(problem.n, 1) ** 0.5)
    dual_scale = max(1.0, float(np.linalg.norm(problem.c)) / max(problem.n, 1) ** 0.5)
    x = np.full(problem.n, scale, dtype=float)
    y = np.zeros(problem.m, dtype=float)
    z = np.full(problem.n, dual_scale, dtype=float)
    return x, y, z


__all__ = ["FeasibleLP", "random_feasible_lp", "centered_start"]
