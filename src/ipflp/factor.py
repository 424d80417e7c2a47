"""Factorization and solve engines for the Newton systems.

Dense systems are solved directly with a symmetric indefinite solve. Sparse
systems are regularized into quasi-definite form, factored with ``qdldl`` and
then refined against the unregularized matrix.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Callable, Optional, Tuple, Union
import warnings

import numpy as np
import qdldl
import scipy.linalg
import scipy.sparse as sp
from scipy.sparse.csgraph import reverse_cuthill_mckee

from .config import RegQSDSettings
from .equilibrate import symmetric_geom_equil
from .exceptions import IPFLogicError
from .problem import MatrixLike

logger = logging.getLogger(__name__)

Array = np.ndarray


@dataclass(frozen=True)
class FactorizationFailure:
    """Error arm of a factor/solve result."""

    reason: str

    def __bool__(self) -> bool:
        return False


def _finite_or_failure(u: Array, what: str) -> Union[Array, FactorizationFailure]:
    if not np.all(np.isfinite(u)):
        return FactorizationFailure(f"{what} produced non-finite entries")
    return u


# ---------------------------------------------------------------------------
# Dense
# ---------------------------------------------------------------------------


class DenseFactorization:
    def __init__(self, J: Array) -> None:
        self.J = np.asarray(J, dtype=float)

    def solve(self, rhs: Array) -> Union[Array, FactorizationFailure]:
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", scipy.linalg.LinAlgWarning)
                u = scipy.linalg.solve(self.J, rhs, assume_a="sym", check_finite=False)
        except (np.linalg.LinAlgError, ValueError) as exc:
            return FactorizationFailure(f"dense symmetric solve failed: {exc}")
        return _finite_or_failure(u, "dense symmetric solve")


class DenseFactorizer:
    """Unregularized direct solve; no symbolic phase."""

    def factor(
        self,
        J: MatrixLike,
        reg: Optional[Array] = None,
        symbolic: Optional["SymbolicFactorization"] = None,
        reanalyze: bool = False,
    ) -> Tuple[Union[DenseFactorization, FactorizationFailure], Optional["SymbolicFactorization"]]:
        J = J.toarray() if sp.issparse(J) else np.asarray(J, dtype=float)
        if not np.all(np.isfinite(J)):
            return FactorizationFailure("KKT matrix has non-finite entries"), symbolic
        return DenseFactorization(J), symbolic


# ---------------------------------------------------------------------------
# Sparse symbolic analysis
# ---------------------------------------------------------------------------


def elimination_tree(upper: sp.csc_matrix) -> Tuple[Array, int]:
    """Elimination tree and nonzero count of L for an upper-triangular CSC pattern.

    Returns ``(parent, lnz)`` where ``parent[i] == -1`` marks a root. Each
    column's row subtree is walked once, so ``lnz`` counts the strictly lower
    entries of the unit factor exactly.
    """
    n = upper.shape[0]
    parent = np.full(n, -1, dtype=np.int64)
    flag = np.full(n, -1, dtype=np.int64)
    counts = np.zeros(n, dtype=np.int64)
    indptr, indices = upper.indptr, upper.indices
    for j in range(n):
        flag[j] = j
        for p in range(indptr[j], indptr[j + 1]):
            i = int(indices[p])
            if i > j:
                raise IPFLogicError("elimination_tree expects an upper-triangular pattern")
            while flag[i] != j:
                if parent[i] == -1:
                    parent[i] = j
                counts[i] += 1
                flag[i] = j
                i = int(parent[i])
    return parent, int(counts.sum())


def _permute(J: sp.spmatrix, perm: Array) -> sp.csc_matrix:
    # Relabelling COO triplets keeps explicit zeros in the pattern.
    coo = sp.coo_matrix(J)
    inv_perm = np.empty_like(perm)
    inv_perm[perm] = np.arange(perm.shape[0], dtype=perm.dtype)
    Jp = sp.csc_matrix((coo.data, (inv_perm[coo.row], inv_perm[coo.col])), shape=J.shape)
    Jp.sort_indices()
    return Jp


def _with_diagonal(J: sp.spmatrix, values: Array) -> sp.csr_matrix:
    """``J + diag(values)`` on the union pattern, cancelled entries included."""
    coo = sp.coo_matrix(J)
    idx = np.arange(J.shape[0])
    return sp.csr_matrix(
        (
            np.concatenate([coo.data, values]),
            (np.concatenate([coo.row, idx]), np.concatenate([coo.col, idx])),
        ),
        shape=J.shape,
    )


def _upper_pattern(Jp: sp.csc_matrix) -> sp.csc_matrix:
    upper = sp.triu(Jp, format="csc")
    upper.sort_indices()
    return upper


@dataclass(eq=False)
class SymbolicFactorization:
    """Reusable ordering and elimination structure of a sparse KKT pattern.

    ``perm`` maps permuted positions to original ones and ``inv_perm`` is its
    inverse. ``handle`` holds the numeric LDL object so later factorizations
    only redo the numeric phase.
    """

    perm: Array
    inv_perm: Array
    etree: Array
    lnz: int
    indptr: Array
    indices: Array
    handle: Optional[Any] = field(default=None, repr=False)

    @property
    def size(self) -> int:
        return int(self.perm.shape[0])

    def matches(self, upper: sp.csc_matrix) -> bool:
        return (
            upper.shape[0] == self.size
            and np.array_equal(upper.indptr, self.indptr)
            and np.array_equal(upper.indices, self.indices)
        )


def analyze(J: MatrixLike) -> SymbolicFactorization:
    """Fill-reducing ordering plus elimination tree for a symmetric pattern."""
    J = sp.csr_matrix(J)
    J.sort_indices()
    perm = np.asarray(reverse_cuthill_mckee(J, symmetric_mode=True), dtype=np.int64)
    inv_perm = np.empty_like(perm)
    inv_perm[perm] = np.arange(perm.shape[0], dtype=np.int64)
    upper = _upper_pattern(_permute(J, perm))
    etree, lnz = elimination_tree(upper)
    logger.debug("Symbolic analysis: n=%d, nnz(triu)=%d, nnz(L)=%d", J.shape[0], upper.nnz, lnz)
    return SymbolicFactorization(
        perm=perm,
        inv_perm=inv_perm,
        etree=etree,
        lnz=lnz,
        indptr=upper.indptr.copy(),
        indices=upper.indices.copy(),
    )


# ---------------------------------------------------------------------------
# Refinement
# ---------------------------------------------------------------------------


def solve_with_iterative_refinement(
    J: MatrixLike,
    solve: Callable[[Array], Array],
    rhs: Array,
    rel_tol: float,
    max_its: int,
) -> Array:
    """Classical refinement of ``J u = rhs`` using an approximate inverse ``solve``.

    Stops once the residual is below ``rel_tol * ||rhs||`` or stops decreasing.
    """
    rhs_norm = float(np.linalg.norm(rhs))
    u = solve(rhs)
    if rhs_norm == 0.0:
        return u
    residual = rhs - J @ u
    res_norm = float(np.linalg.norm(residual))
    for it in range(max_its):
        if res_norm <= rel_tol * rhs_norm:
            break
        u_new = u + solve(residual)
        residual_new = rhs - J @ u_new
        res_new = float(np.linalg.norm(residual_new))
        if not res_new < res_norm:
            logger.debug("Refinement stalled after %d steps at relative residual %.3e", it, res_norm / rhs_norm)
            break
        u, residual, res_norm = u_new, residual_new, res_new
    return u


def reg_qsd_solve_after(
    J_orig: MatrixLike,
    d: Optional[Array],
    ldl_solve: Callable[[Array], Array],
    rhs: Array,
    rel_tol: float,
    max_its: int,
) -> Array:
    """Recover the unregularized solution from a regularized, scaled factorization.

    ``ldl_solve`` inverts ``diag(d)^-1 J_orig diag(d)^-1 + diag(reg)``; it is
    used as a preconditioner for refinement against ``J_orig`` itself.
    """
    if d is None:
        return solve_with_iterative_refinement(J_orig, ldl_solve, rhs, rel_tol, max_its)
    d_inv = 1.0 / d

    def precondition(r: Array) -> Array:
        return d_inv * ldl_solve(d_inv * r)

    return solve_with_iterative_refinement(J_orig, precondition, rhs, rel_tol, max_its)


# ---------------------------------------------------------------------------
# Sparse numeric factorization
# ---------------------------------------------------------------------------


class SparseFactorization:
    def __init__(
        self,
        J_orig: sp.spmatrix,
        symbolic: SymbolicFactorization,
        reg: Optional[Array],
        d: Optional[Array],
        qsd: RegQSDSettings,
    ) -> None:
        self.J_orig = J_orig
        self.symbolic = symbolic
        self.reg = reg
        self.d = d
        self.qsd = qsd

    def ldl_solve(self, r: Array) -> Array:
        perm, inv_perm = self.symbolic.perm, self.symbolic.inv_perm
        return np.asarray(self.symbolic.handle.solve(r[perm]))[inv_perm]

    def solve(self, rhs: Array) -> Union[Array, FactorizationFailure]:
        rhs = np.asarray(rhs, dtype=float)
        try:
            if self.reg is None:
                u = solve_with_iterative_refinement(
                    self.J_orig, self.ldl_solve, rhs, self.qsd.rel_tol_refine, self.qsd.max_refine_its
                )
            else:
                u = reg_qsd_solve_after(
                    self.J_orig, self.d, self.ldl_solve, rhs, self.qsd.rel_tol_refine, self.qsd.max_refine_its
                )
        except (RuntimeError, ValueError, ArithmeticError) as exc:
            return FactorizationFailure(f"sparse LDL solve failed: {exc}")
        return _finite_or_failure(u, "sparse LDL solve")


class SparseFactorizer:
    """Regularized quasi-definite LDL^T with a reusable symbolic phase."""

    def __init__(self, qsd: Optional[RegQSDSettings] = None) -> None:
        self.qsd = qsd or RegQSDSettings()

    def factor(
        self,
        J_orig: MatrixLike,
        reg: Optional[Array] = None,
        symbolic: Optional[SymbolicFactorization] = None,
        reanalyze: bool = False,
    ) -> Tuple[Union[SparseFactorization, FactorizationFailure], Optional[SymbolicFactorization]]:
        """Factor ``J_orig`` (plus ``diag(reg)`` when given).

        With ``reanalyze`` set a fresh symbolic analysis replaces ``symbolic``;
        otherwise the cached one is reused and must match the pattern.
        """
        J_orig = sp.csr_matrix(J_orig, dtype=float)
        if not np.all(np.isfinite(J_orig.data)):
            return FactorizationFailure("KKT matrix has non-finite entries"), symbolic

        d: Optional[Array] = None
        J = J_orig
        if reg is not None:
            if self.qsd.equilibrate:
                J, d = symmetric_geom_equil(J_orig)
            J = _with_diagonal(J, reg)

        if reanalyze:
            symbolic = analyze(J)
        elif symbolic is None:
            raise IPFLogicError("Sparse factorization requested without a symbolic analysis")

        Jp = _permute(J, symbolic.perm)
        if not symbolic.matches(_upper_pattern(Jp)):
            logger.warning(
                "KKT sparsity pattern differs from the cached symbolic analysis (n=%d); "
                "refusing to reuse it.",
                symbolic.size,
            )
            return FactorizationFailure("sparsity pattern changed since symbolic analysis"), symbolic

        try:
            if symbolic.handle is None:
                symbolic.handle = qdldl.Solver(Jp)
            else:
                symbolic.handle.update(Jp)
        except (RuntimeError, ValueError, ArithmeticError) as exc:
            symbolic.handle = None
            return FactorizationFailure(f"LDL factorization failed: {exc}"), symbolic

        return SparseFactorization(J_orig, symbolic, reg, d, self.qsd), symbolic


__all__ = [
    "FactorizationFailure",
    "DenseFactorization",
    "DenseFactorizer",
    "SymbolicFactorization",
    "elimination_tree",
    "analyze",
    "solve_with_iterative_refinement",
    "reg_qsd_solve_after",
    "SparseFactorization",
    "SparseFactorizer",
]
