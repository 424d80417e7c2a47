"""Linear-algebra backends driving the shared IPF control loop.

A backend owns (a copy of) the constraint matrix and provides every vector
and matrix kernel the solver needs, plus factor-and-solve for the Newton and
starting-point systems. Vectors handed to a backend are always in its local
layout: full vectors for the serial backends, this rank's slices for the
distributed ones (primal entries by ``col_ranges``, dual entries by
``row_ranges``).
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence, Tuple, Union

import numpy as np
import scipy.sparse as sp

from .config import KKTSystem, RegQSDSettings
from .distributed import DistMatrix, MultMeta, gather_matrix, gather_vector
from .equilibrate import abs_extrema
from .factor import DenseFactorizer, FactorizationFailure, SparseFactorizer, SymbolicFactorization
from .kkt import INITIAL_LAYOUT, initial_system, kkt_form
from .problem import MatrixLike, as_matrix

logger = logging.getLogger(__name__)

Array = np.ndarray
SolveResult = Tuple[Union[Tuple[Array, ...], FactorizationFailure], Optional[SymbolicFactorization]]


class Backend:
    """Serial reference implementation of the backend contract."""

    sparse = False
    distributed = False

    def __init__(self, A: MatrixLike, qsd: Optional[RegQSDSettings] = None) -> None:
        A = as_matrix(A)
        self.A = A.copy()
        self.qsd = qsd or RegQSDSettings()
        self.factorizer = SparseFactorizer(self.qsd) if self.sparse else DenseFactorizer()

    # -- shape -----------------------------------------------------------
    @property
    def m(self) -> int:
        return int(self.A.shape[0])

    @property
    def n(self) -> int:
        return int(self.A.shape[1])

    @property
    def m_local(self) -> int:
        return self.m

    @property
    def n_local(self) -> int:
        return self.n

    @property
    def rank(self) -> int:
        return 0

    # -- reductions ------------------------------------------------------
    def allreduce_sum(self, value: Any) -> Any:
        return value

    def dot(self, u: Array, v: Array) -> float:
        return float(self.allreduce_sum(float(np.dot(u, v))))

    def norm2(self, v: Array) -> float:
        return float(np.sqrt(self.allreduce_sum(float(np.dot(v, v)))))

    def num_nonpositive(self, v: Array) -> int:
        return int(self.allreduce_sum(int(np.count_nonzero(v <= 0.0))))

    def _all_values(self, value: float) -> List[float]:
        return [value]

    def min_value(self, v: Array) -> float:
        local = float(np.min(v)) if np.size(v) else np.inf
        return float(min(self._all_values(local)))

    def max_value(self, v: Array) -> float:
        local = float(np.max(v)) if np.size(v) else -np.inf
        return float(max(self._all_values(local)))

    # -- elementwise -----------------------------------------------------
    def axpy(self, alpha: float, x: Array, y: Array) -> None:
        """In-place ``y += alpha * x``."""
        y += alpha * x

    def diagonal_scale(self, d: Array, v: Array) -> Array:
        return d * v

    def diagonal_solve(self, d: Array, v: Array) -> Array:
        return v / d

    # -- layout ----------------------------------------------------------
    def gather_primal(self, v: Array) -> Array:
        return np.asarray(v, dtype=float)

    def gather_dual(self, v: Array) -> Array:
        return np.asarray(v, dtype=float)

    def local_primal(self, v: Array) -> Array:
        return v

    def local_dual(self, v: Array) -> Array:
        return v

    def global_matrix(self) -> MatrixLike:
        return self.A

    # -- products --------------------------------------------------------
    def refresh_mult_meta(self) -> None:
        """Recompute communication metadata for ``multiply`` (no-op when serial)."""

    def multiply(self, x: Array) -> Array:
        return np.asarray(self.A @ x).reshape(-1)

    def multiply_transpose(self, y: Array) -> Array:
        return np.asarray(self.A.T @ y).reshape(-1)

    # -- equilibration ---------------------------------------------------
    def abs_extrema(self, axis: int) -> Tuple[Array, Array]:
        return abs_extrema(self.A, axis)

    def scale_matrix(self, row: Optional[Array], col: Optional[Array]) -> None:
        """Divide rows by ``row`` and columns by ``col`` (local layout)."""
        if row is not None:
            if sp.issparse(self.A):
                self.A = sp.csr_matrix(sp.diags(1.0 / row) @ self.A)
            else:
                self.A = self.A / row[:, None]
        if col is not None:
            col = self.gather_primal(col)
            if sp.issparse(self.A):
                self.A = sp.csr_matrix(self.A @ sp.diags(1.0 / col))
            else:
                self.A = self.A / col[None, :]

    # -- factor and solve ------------------------------------------------
    def _split_local(self, blocks: Sequence[Array], layout: Sequence[str]) -> Tuple[Array, ...]:
        return tuple(
            self.local_primal(block) if kind == "primal" else self.local_dual(block)
            for block, kind in zip(blocks, layout)
        )

    def solve_kkt(
        self,
        system: KKTSystem,
        x: Array,
        z: Array,
        rc: Array,
        rb: Array,
        rmu: Array,
        reg: Optional[Array] = None,
        symbolic: Optional[SymbolicFactorization] = None,
        reanalyze: bool = False,
    ) -> SolveResult:
        """Build, factor and solve one Newton system.

        Returns the solution blocks of the reduced system (local layout, in
        the form's block order) or a ``FactorizationFailure``, together with
        the symbolic analysis to keep for later iterations.
        """
        form = kkt_form(system)
        A = self.global_matrix()
        x, z = self.gather_primal(x), self.gather_primal(z)
        rc, rmu = self.gather_primal(rc), self.gather_primal(rmu)
        rb = self.gather_dual(rb)

        J = form.matrix(A, x, z)
        rhs = form.rhs(A, x, z, rc, rb, rmu)
        factorization, symbolic = self.factorizer.factor(J, reg, symbolic, reanalyze)
        if isinstance(factorization, FactorizationFailure):
            return factorization, symbolic
        solution = factorization.solve(rhs)
        if isinstance(solution, FactorizationFailure):
            return solution, symbolic
        blocks = form.split(solution, self.m, self.n)
        return self._split_local(blocks, form.layout), symbolic

    def solve_init_system(
        self,
        rhs_pairs: Sequence[Tuple[Array, Array]],
        reg: Optional[Array] = None,
        symbolic: Optional[SymbolicFactorization] = None,
        reanalyze: bool = False,
    ) -> Tuple[Union[List[Tuple[Array, Array]], FactorizationFailure], Optional[SymbolicFactorization]]:
        """Solve ``[[I, A^T], [A, 0]] [u; v] = [f; g]`` for each ``(f, g)`` pair.

        One factorization serves every right-hand side.
        """
        J = initial_system(self.global_matrix())
        factorization, symbolic = self.factorizer.factor(J, reg, symbolic, reanalyze)
        if isinstance(factorization, FactorizationFailure):
            return factorization, symbolic
        out: List[Tuple[Array, Array]] = []
        for f, g in rhs_pairs:
            rhs = np.concatenate([self.gather_primal(f), self.gather_dual(g)])
            solution = factorization.solve(rhs)
            if isinstance(solution, FactorizationFailure):
                return solution, symbolic
            u, v = self._split_local((solution[: self.n], solution[self.n :]), INITIAL_LAYOUT)
            out.append((u, v))
        return out, symbolic


class DenseBackend(Backend):
    """Serial backend over a dense ndarray."""

    def __init__(self, A: MatrixLike, qsd: Optional[RegQSDSettings] = None) -> None:
        if sp.issparse(A):
            A = A.toarray()
        super().__init__(A, qsd)


class SparseBackend(Backend):
    """Serial backend over a CSR matrix with regularized sparse LDL^T."""

    sparse = True

    def __init__(self, A: MatrixLike, qsd: Optional[RegQSDSettings] = None) -> None:
        super().__init__(sp.csr_matrix(A, dtype=float), qsd)


class DistributedBackend(Backend):
    """SPMD backend: row-distributed ``A`` with replicated factorizations.

    ``A x`` uses a cached ``MultMeta`` schedule; ``A^T y`` sums local partial
    products across ranks and keeps this rank's slice. KKT systems are
    assembled from gathered pieces and factored identically on every rank so
    that all ranks take the same control-flow decisions.
    """

    distributed = True

    def __init__(self, A: DistMatrix, qsd: Optional[RegQSDSettings] = None) -> None:
        if not isinstance(A, DistMatrix):
            raise TypeError("distributed backends require a DistMatrix.")
        self.comm = A.comm
        self.row_ranges = A.row_ranges
        self.col_ranges = A.col_ranges
        self._shape = A.shape
        self._global: Optional[MatrixLike] = None
        self.mult_meta: Optional[MultMeta] = None
        super().__init__(self._convert(A.local), qsd)

    def _convert(self, local: MatrixLike) -> MatrixLike:
        return local

    @property
    def m(self) -> int:
        return int(self._shape[0])

    @property
    def n(self) -> int:
        return int(self._shape[1])

    @property
    def m_local(self) -> int:
        start, stop = self.row_ranges[self.rank]
        return stop - start

    @property
    def n_local(self) -> int:
        start, stop = self.col_ranges[self.rank]
        return stop - start

    @property
    def rank(self) -> int:
        return int(self.comm.Get_rank())

    def allreduce_sum(self, value: Any) -> Any:
        return self.comm.allreduce(value)

    def _all_values(self, value: float) -> List[float]:
        return list(self.comm.allgather(value))

    def gather_primal(self, v: Array) -> Array:
        return gather_vector(v, self.comm)

    def gather_dual(self, v: Array) -> Array:
        return gather_vector(v, self.comm)

    def local_primal(self, v: Array) -> Array:
        start, stop = self.col_ranges[self.rank]
        return np.array(v[start:stop], dtype=float)

    def local_dual(self, v: Array) -> Array:
        start, stop = self.row_ranges[self.rank]
        return np.array(v[start:stop], dtype=float)

    def global_matrix(self) -> MatrixLike:
        if self._global is None:
            self._global = gather_matrix(self.A, self.comm)
        return self._global

    def refresh_mult_meta(self) -> None:
        self.mult_meta = MultMeta.build(self.A, self.comm, self.col_ranges)

    def multiply(self, x: Array) -> Array:
        if self.mult_meta is None:
            self.refresh_mult_meta()
        return self.mult_meta.multiply(np.asarray(x, dtype=float), self.comm)

    def multiply_transpose(self, y: Array) -> Array:
        partial = np.asarray(self.A.T @ y, dtype=float).reshape(-1)
        return self.local_primal(self.allreduce_sum(partial))

    def abs_extrema(self, axis: int) -> Tuple[Array, Array]:
        max_abs, min_abs = abs_extrema(self.A, axis)
        if axis == 1:
            return max_abs, min_abs
        # Column extrema combine contributions from every row block.
        max_all = np.max(np.vstack(self.comm.allgather(max_abs)), axis=0)
        min_all = np.min(np.vstack(self.comm.allgather(min_abs)), axis=0)
        return self.local_primal(max_all), self.local_primal(min_all)

    def scale_matrix(self, row: Optional[Array], col: Optional[Array]) -> None:
        super().scale_matrix(row, col)
        self._global = None
        self.mult_meta = None


class DistDenseBackend(DistributedBackend):
    """Distributed backend whose local row block is a dense ndarray."""

    def _convert(self, local: MatrixLike) -> MatrixLike:
        return local.toarray() if sp.issparse(local) else np.asarray(local, dtype=float)


class DistSparseBackend(DistributedBackend):
    """Distributed backend whose local row block is CSR."""

    sparse = True

    def _convert(self, local: MatrixLike) -> MatrixLike:
        return sp.csr_matrix(local, dtype=float)


def make_backend(A: Union[MatrixLike, DistMatrix], qsd: Optional[RegQSDSettings] = None) -> Backend:
    """Pick the backend matching the type of ``A``."""
    if isinstance(A, DistMatrix):
        if sp.issparse(A.local):
            return DistSparseBackend(A, qsd)
        return DistDenseBackend(A, qsd)
    if sp.issparse(A):
        return SparseBackend(A, qsd)
    return DenseBackend(A, qsd)


__all__ = [
    "Backend",
    "DenseBackend",
    "SparseBackend",
    "DistributedBackend",
    "DistDenseBackend",
    "DistSparseBackend",
    "make_backend",
]
