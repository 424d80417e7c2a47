import numpy as np
import pytest
import scipy.sparse as sp
from scipy.io import savemat

from ipflp.cli import _field, load_lp_from_mat, main
from ipflp.data import random_feasible_lp


def test_random_subcommand_solves(capsys):
    code = main(["random", "--m", "5", "--n", "12", "--seed", "3", "--centering", "0.3"])
    out = capsys.readouterr().out
    assert code == 0
    assert "status: optimal" in out
    assert "m=5, n=12" in out


def test_random_sparse_subcommand_with_normal_system(capsys):
    code = main(
        ["random", "--m", "6", "--n", "14", "--density", "0.3", "--system", "normal", "--equilibrate"]
    )
    out = capsys.readouterr().out
    assert code == 0
    assert "sparse=True" in out


def test_solve_from_mat_with_struct_keys(tmp_path, capsys):
    inst = random_feasible_lp(4, 9, seed=5)
    prob = inst.problem
    path = tmp_path / "lp.mat"
    savemat(str(path), {"lp": {"A": prob.A, "b": prob.b, "c": prob.c}})

    loaded = load_lp_from_mat(path, key_A="lp.A", key_b="lp.b", key_c="lp.c", sparse=True)
    assert loaded.is_sparse
    assert loaded.name == "lp"
    np.testing.assert_allclose(loaded.A.toarray(), prob.A)

    code = main(
        [
            "solve",
            "--mat",
            str(path),
            "--mat-key-A",
            "lp.A",
            "--mat-key-b",
            "lp.b",
            "--mat-key-c",
            "lp.c",
            "--centering",
            "0.3",
            "--mehrotra-init",
        ]
    )
    assert code == 0
    assert "status: optimal" in capsys.readouterr().out


def test_solve_keeps_sparse_matrices_sparse(tmp_path):
    inst = random_feasible_lp(3, 7, density=0.5, seed=6)
    path = tmp_path / "sparse.mat"
    savemat(str(path), {"A": sp.csc_matrix(inst.problem.A), "b": inst.problem.b, "c": inst.problem.c})
    loaded = load_lp_from_mat(path)
    assert loaded.is_sparse


def test_missing_struct_field_names_the_path():
    with pytest.raises(KeyError, match="lp.x"):
        _field({"lp": {"A": 1}}, "lp.x")
    with pytest.raises(KeyError, match="lp.A.B"):
        _field({"lp": {"A": 1}}, "lp.A.B")


def test_failure_returns_nonzero(capsys):
    code = main(
        ["random", "--m", "4", "--n", "9", "--max-its", "0", "--target-tol", "1e-14", "--min-tol", "1e-13"]
    )
    assert code == 1
    assert "solver failed" in capsys.readouterr().out
