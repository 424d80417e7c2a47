"""Row-partitioned problem data and communication schedules for SPMD solves.

Every rank owns a contiguous block of constraint rows (with all columns) and a
contiguous block of primal entries. Any communicator exposing the mpi4py
lowercase collectives (``Get_rank``, ``Get_size``, ``allreduce``,
``allgather``, ``alltoall``, ``bcast``) can be used.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple

import numpy as np
import scipy.sparse as sp

from .problem import MatrixLike, as_matrix, as_vector

try:  # Optional dependency.
    from mpi4py import MPI
except Exception:  # pragma: no cover - optional dependency path
    MPI = None  # type: ignore[assignment]

Array = np.ndarray
Range = Tuple[int, int]


def has_mpi4py() -> bool:
    """Return ``True`` when ``mpi4py`` is importable."""
    return MPI is not None


def world_comm() -> Any:
    """Return ``MPI.COMM_WORLD``.

    Raises:
        ModuleNotFoundError: If ``mpi4py`` is unavailable.
    """
    if MPI is None:
        raise ModuleNotFoundError(
            "mpi4py is required for distributed solves. Install it with `pip install ipflp[mpi]`."
        )
    return MPI.COMM_WORLD


def block_ranges(total: int, size: int) -> Tuple[Range, ...]:
    """Split ``range(total)`` into ``size`` contiguous, nearly even blocks."""
    if size <= 0:
        raise ValueError("size must be positive.")
    base, extra = divmod(int(total), int(size))
    ranges: List[Range] = []
    start = 0
    for rank in range(size):
        stop = start + base + (1 if rank < extra else 0)
        ranges.append((start, stop))
        start = stop
    return tuple(ranges)


def owner_of(indices: Array, ranges: Sequence[Range]) -> Array:
    """Rank owning each global index."""
    starts = np.array([start for start, _ in ranges], dtype=np.int64)
    return np.searchsorted(starts, indices, side="right") - 1


@dataclass
class DistMatrix:
    """Local row block of a row-partitioned constraint matrix."""

    local: MatrixLike
    comm: Any
    row_ranges: Tuple[Range, ...]
    col_ranges: Tuple[Range, ...]

    def __post_init__(self) -> None:
        self.local = as_matrix(self.local, name="local block")
        self.row_ranges = tuple((int(a), int(b)) for a, b in self.row_ranges)
        self.col_ranges = tuple((int(a), int(b)) for a, b in self.col_ranges)
        size = self.comm.Get_size()
        if len(self.row_ranges) != size or len(self.col_ranges) != size:
            raise ValueError("row_ranges and col_ranges need one entry per rank.")
        start, stop = self.row_ranges[self.rank]
        if self.local.shape != (stop - start, self.shape[1]):
            raise ValueError(
                f"local block has shape {self.local.shape}, expected {(stop - start, self.shape[1])}."
            )

    @property
    def rank(self) -> int:
        return int(self.comm.Get_rank())

    @property
    def shape(self) -> Tuple[int, int]:
        return self.row_ranges[-1][1], self.col_ranges[-1][1]

    @property
    def row_range(self) -> Range:
        return self.row_ranges[self.rank]

    @property
    def col_range(self) -> Range:
        return self.col_ranges[self.rank]


def distribute_problem(A: MatrixLike, b: Array, c: Array, comm: Any) -> Tuple[DistMatrix, Array, Array]:
    """Cut global ``(A, b, c)`` into the pieces this rank passes to the solver."""
    A = as_matrix(A)
    m, n = A.shape
    b = as_vector(b, m, "b")
    c = as_vector(c, n, "c")
    size = comm.Get_size()
    rank = comm.Get_rank()
    row_ranges = block_ranges(m, size)
    col_ranges = block_ranges(n, size)
    r0, r1 = row_ranges[rank]
    c0, c1 = col_ranges[rank]
    local = A[r0:r1]
    if sp.issparse(local):
        local = sp.csr_matrix(local)
    return DistMatrix(local, comm, row_ranges, col_ranges), b[r0:r1].copy(), c[c0:c1].copy()


@dataclass
class MultMeta:
    """Communication schedule for ``A x`` with row-distributed ``A``.

    ``needed`` lists the global columns touched by the local rows,
    ``recv_counts[r]`` how many of them rank ``r`` supplies (in ``needed``
    order) and ``send_indices[r]`` which local primal entries this rank ships
    to rank ``r``.
    """

    needed: Array
    recv_counts: Tuple[int, ...]
    send_indices: Tuple[Array, ...]
    compressed: MatrixLike

    @classmethod
    def build(cls, local: MatrixLike, comm: Any, col_ranges: Sequence[Range]) -> "MultMeta":
        size = comm.Get_size()
        rank = comm.Get_rank()
        if sp.issparse(local):
            needed = np.unique(sp.csr_matrix(local).indices).astype(np.int64)
        else:
            needed = np.flatnonzero(np.any(np.asarray(local) != 0.0, axis=0)).astype(np.int64)
        owners = owner_of(needed, col_ranges)
        requests = [needed[owners == r] for r in range(size)]
        incoming = comm.alltoall(requests)
        start = col_ranges[rank][0]
        send_indices = tuple(np.asarray(req, dtype=np.int64) - start for req in incoming)
        compressed = local[:, needed]
        if sp.issparse(compressed):
            compressed = sp.csr_matrix(compressed)
        return cls(
            needed=needed,
            recv_counts=tuple(int(req.shape[0]) for req in requests),
            send_indices=send_indices,
            compressed=compressed,
        )

    def multiply(self, x_local: Array, comm: Any) -> Array:
        outgoing = [x_local[idx] for idx in self.send_indices]
        incoming = comm.alltoall(outgoing)
        x_needed = np.concatenate([np.asarray(part, dtype=float) for part in incoming])
        return np.asarray(self.compressed @ x_needed).reshape(-1)


def gather_vector(local: Array, comm: Any) -> Array:
    parts = comm.allgather(np.asarray(local, dtype=float))
    return np.concatenate(parts)


def gather_matrix(local: MatrixLike, comm: Any) -> MatrixLike:
    parts = comm.allgather(local)
    if sp.issparse(local):
        return sp.csr_matrix(sp.vstack(parts, format="csr"))
    return np.vstack(parts)


__all__ = [
    "MPI",
    "has_mpi4py",
    "world_comm",
    "block_ranges",
    "owner_of",
    "DistMatrix",
    "distribute_problem",
    "MultMeta",
    "gather_vector",
    "gather_matrix",
]
