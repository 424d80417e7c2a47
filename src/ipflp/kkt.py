"""Newton systems for the direct-form LP primal-dual pair.

With residuals r_b = Ax - b, r_c = A^T y - z + c and r_mu = x o z - sigma mu e,
the Newton step (dx, dy, dz) satisfies

    A dx            = -r_b
    A^T dy - dz     = -r_c
    z o dx + x o dz = -r_mu

Three symmetric reductions are available:

    FULL        | 0    A^T  -I      | | dx |   | -r_c       |
                | A    0     0      | | dy | = | -r_b       |
                | -I   0    -X/Z    | | dz |   | r_mu / z   |

    AUGMENTED   | Z/X  A^T |  | dx |   | -r_c - r_mu / x |
                | A    0   |  | dy | = | -r_b            |,   dz = -(r_mu + z o dx) / x

    NORMAL      A (X/Z) A^T dy = A (X/Z)(-r_c - r_mu / x) + r_b,
                dz = A^T dy + r_c,   dx = -(r_mu + x o dz) / z

Each reduction has a builder, a right-hand side and an expansion that
recovers the eliminated unknowns exactly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from .config import KKTSystem, RegQSDSettings
from .exceptions import IPFLogicError
from .problem import MatrixLike

Array = np.ndarray


def _identity(n: int, sparse: bool) -> MatrixLike:
    return sp.identity(n, format="csr") if sparse else np.eye(n)


def _diag(values: Array, sparse: bool) -> MatrixLike:
    return sp.diags(values, format="csr") if sparse else np.diag(values)


def full_kkt(A: MatrixLike, x: Array, z: Array) -> MatrixLike:
    m, n = A.shape
    if sp.issparse(A):
        eye = _identity(n, True)
        return sp.bmat(
            [
                [None, A.T, -eye],
                [A, None, None],
                [-eye, None, _diag(-x / z, True)],
            ],
            format="csr",
        )
    return np.block(
        [
            [np.zeros((n, n)), A.T, -np.eye(n)],
            [A, np.zeros((m, m)), np.zeros((m, n))],
            [-np.eye(n), np.zeros((n, m)), np.diag(-x / z)],
        ]
    )


def full_kkt_rhs(A: MatrixLike, x: Array, z: Array, rc: Array, rb: Array, rmu: Array) -> Array:
    return np.concatenate([-rc, -rb, rmu / z])


def augmented_kkt(A: MatrixLike, x: Array, z: Array) -> MatrixLike:
    m, n = A.shape
    if sp.issparse(A):
        return sp.bmat([[_diag(z / x, True), A.T], [A, None]], format="csr")
    return np.block([[np.diag(z / x), A.T], [A, np.zeros((m, m))]])


def augmented_kkt_rhs(A: MatrixLike, x: Array, z: Array, rc: Array, rb: Array, rmu: Array) -> Array:
    return np.concatenate([-rc - rmu / x, -rb])


def normal_pattern(A: sp.spmatrix) -> sp.csr_matrix:
    """Structural pattern of ``|A| |A|^T``; it depends on ``A`` alone."""
    ones = sp.csr_matrix(A, dtype=float, copy=True)
    ones.data[:] = 1.0
    pattern = sp.csr_matrix(ones @ ones.T)
    pattern.sort_indices()
    return pattern


def normal_kkt(A: MatrixLike, x: Array, z: Array) -> MatrixLike:
    d = x / z
    if sp.issparse(A):
        # Cancelled entries stay stored: the pattern depends on A alone.
        pattern = normal_pattern(A)
        values = sp.csr_matrix(A @ sp.diags(d) @ A.T)
        rows = np.repeat(np.arange(pattern.shape[0]), np.diff(pattern.indptr))
        data = np.asarray(values[rows, pattern.indices], dtype=float).reshape(-1)
        return sp.csr_matrix((data, pattern.indices, pattern.indptr), shape=pattern.shape)
    return (A * d) @ A.T


def normal_kkt_rhs(A: MatrixLike, x: Array, z: Array, rc: Array, rb: Array, rmu: Array) -> Array:
    g = -rc - rmu / x
    return np.asarray(A @ ((x / z) * g)).reshape(-1) + rb


def initial_system(A: MatrixLike) -> MatrixLike:
    """Augmented system [[I, A^T], [A, 0]] used by the starting-point solves."""
    m, n = A.shape
    if sp.issparse(A):
        return sp.bmat([[_identity(n, True), A.T], [A, None]], format="csr")
    return np.block([[np.eye(n), A.T], [A, np.zeros((m, m))]])


@dataclass(frozen=True)
class KKTForm:
    """Builder, right-hand side and block layout of one reduction."""

    system: KKTSystem
    matrix: Callable[[MatrixLike, Array, Array], MatrixLike]
    rhs: Callable[..., Array]
    # "primal" blocks have length n, "dual" blocks length m.
    layout: Tuple[str, ...]

    def size(self, m: int, n: int) -> int:
        return sum(n if kind == "primal" else m for kind in self.layout)

    def split(self, solution: Array, m: int, n: int) -> Tuple[Array, ...]:
        blocks = []
        start = 0
        for kind in self.layout:
            stop = start + (n if kind == "primal" else m)
            blocks.append(solution[start:stop])
            start = stop
        return tuple(blocks)


_FORMS = {
    KKTSystem.FULL: KKTForm(KKTSystem.FULL, full_kkt, full_kkt_rhs, ("primal", "dual", "primal")),
    KKTSystem.AUGMENTED: KKTForm(KKTSystem.AUGMENTED, augmented_kkt, augmented_kkt_rhs, ("primal", "dual")),
    KKTSystem.NORMAL: KKTForm(KKTSystem.NORMAL, normal_kkt, normal_kkt_rhs, ("dual",)),
}

INITIAL_LAYOUT = ("primal", "dual")


def kkt_form(system: KKTSystem) -> KKTForm:
    try:
        return _FORMS[system]
    except KeyError:
        raise IPFLogicError("Invalid KKT system choice") from None


def regularization(system: KKTSystem, m: int, n: int, qsd: RegQSDSettings) -> Optional[Array]:
    """Quasi-definite diagonal shift: +reg_primal on primal rows, -reg_dual elsewhere.

    The normal equations are positive definite and are not regularized.
    """
    if system is KKTSystem.NORMAL:
        return None
    size = kkt_form(system).size(m, n)
    reg = np.full(size, -qsd.reg_dual, dtype=float)
    reg[:n] = qsd.reg_primal
    return reg


def expand_solution(
    system: KKTSystem,
    blocks: Tuple[Array, ...],
    x: Array,
    z: Array,
    rc: Array,
    rmu: Array,
    multiply_transpose: Callable[[Array], Array],
) -> Tuple[Array, Array, Array]:
    """Recover (dx, dy, dz) from the blocks of a reduced solve.

    All vectors may be local slices; ``multiply_transpose`` evaluates A^T v in
    the same layout.
    """
    if system is KKTSystem.FULL:
        dx, dy, dz = blocks
        return dx, dy, dz
    if system is KKTSystem.AUGMENTED:
        dx, dy = blocks
        dz = -(rmu + z * dx) / x
        return dx, dy, dz
    if system is KKTSystem.NORMAL:
        (dy,) = blocks
        dz = multiply_transpose(dy) + rc
        dx = -(rmu + x * dz) / z
        return dx, dy, dz
    raise IPFLogicError("Invalid KKT system choice")


__all__ = [
    "KKTForm",
    "kkt_form",
    "full_kkt",
    "full_kkt_rhs",
    "augmented_kkt",
    "augmented_kkt_rhs",
    "normal_pattern",
    "normal_kkt",
    "normal_kkt_rhs",
    "initial_system",
    "INITIAL_LAYOUT",
    "regularization",
    "expand_solution",
]
