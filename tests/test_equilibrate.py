import numpy as np
import pytest
import scipy.sparse as sp

from ipflp.backends import DenseBackend, SparseBackend
from ipflp.equilibrate import abs_extrema, geom_equil, geometric_scale, symmetric_geom_equil


def _badly_scaled(seed=0, m=4, n=9):
    rng = np.random.default_rng(seed)
    A = rng.standard_normal((m, n))
    A *= np.logspace(-3, 3, m)[:, None]
    A *= np.logspace(2, -2, n)[None, :]
    return A


def test_abs_extrema_skips_zeros_and_flags_empty_lines():
    A = np.array([[0.0, -4.0, 0.5], [0.0, 0.0, 0.0]])
    for mat in (A, sp.csr_matrix(A)):
        row_max, row_min = abs_extrema(mat, axis=1)
        np.testing.assert_allclose(row_max, [4.0, 0.0])
        assert row_min[0] == pytest.approx(0.5)
        assert np.isinf(row_min[1])
        col_max, col_min = abs_extrema(mat, axis=0)
        np.testing.assert_allclose(col_max, [0.0, 4.0, 0.5])
        assert np.isinf(col_min[0])


def test_geometric_scale_defaults_to_one_for_empty_lines():
    out = geometric_scale(np.array([4.0, 0.0]), np.array([1.0, np.inf]))
    np.testing.assert_allclose(out, [2.0, 1.0])


@pytest.mark.parametrize("sparse", [False, True])
def test_geom_equil_reconstructs_matrix_and_normalizes_columns(sparse):
    A = _badly_scaled()
    backend = SparseBackend(sp.csr_matrix(A)) if sparse else DenseBackend(A)
    d_row, d_col = geom_equil(backend)
    scaled = backend.A.toarray() if sparse else backend.A
    np.testing.assert_allclose(d_row[:, None] * scaled * d_col[None, :], A, rtol=1e-12)
    np.testing.assert_allclose(np.abs(scaled).max(axis=0), 1.0, rtol=1e-12)

    def spread(M):
        mags = np.abs(M[M != 0])
        return mags.max() / mags.min()

    assert spread(scaled) < spread(A)


def test_geom_equil_leaves_the_callers_matrix_alone():
    A = _badly_scaled(seed=1)
    original = A.copy()
    geom_equil(DenseBackend(A))
    np.testing.assert_array_equal(A, original)


def test_symmetric_geom_equil():
    rng = np.random.default_rng(3)
    M = rng.standard_normal((6, 6)) * np.logspace(-2, 2, 6)[:, None]
    J = sp.csr_matrix(M + M.T)
    scaled, d = symmetric_geom_equil(J)
    np.testing.assert_allclose((scaled - scaled.T).toarray(), 0.0, atol=1e-14)
    np.testing.assert_allclose(d[:, None] * scaled.toarray() * d[None, :], J.toarray(), rtol=1e-12, atol=1e-14)
    assert np.all(d > 0)


def test_symmetric_geom_equil_keeps_stored_zeros():
    J = sp.csr_matrix(
        (np.array([4.0, 0.0, 0.0, 9.0]), np.array([0, 1, 0, 1]), np.array([0, 2, 4])), shape=(2, 2)
    )
    scaled, d = symmetric_geom_equil(J)
    np.testing.assert_array_equal(scaled.indptr, J.indptr)
    np.testing.assert_array_equal(scaled.indices, J.indices)
    np.testing.assert_allclose(scaled.diagonal(), 1.0)
    np.testing.assert_allclose(d, [2.0, 3.0])
