import logging

import numpy as np
import pytest
import scipy.sparse as sp

import ipflp.factor as factor_mod
import ipflp.solver as solver_mod
from ipflp import IPFSettings, IPFSolver, KKTSystem, centered_start, ipf, random_feasible_lp
from ipflp.backends import Backend
from ipflp.exceptions import IPFConvergenceError, IPFLogicError
from ipflp.factor import FactorizationFailure


def _solve(problem, **kwargs):
    kwargs.setdefault("centering", 0.3)
    settings = IPFSettings(**kwargs)
    return IPFSolver(settings).solve(problem.A, problem.b, problem.c)


def _assert_optimal(problem, result, tol=1e-6):
    assert result.converged
    assert np.all(result.x > 0) and np.all(result.z > 0)
    obj, rb, rc = problem.relative_errors(result.x, result.y, result.z)
    assert max(obj, rb, rc) <= tol


def test_concrete_two_variable_lp_from_centered_warm_start(tiny_lp):
    A, b, c = tiny_lp
    x = np.array([0.5, 0.5])
    y = np.array([-0.5])
    z = np.array([0.5, 0.5])
    settings = IPFSettings(primal_init=True, dual_init=True, centering=0.3)
    result = ipf(A, b, c, x, y, z, settings)
    assert result.converged and not result.relaxed
    assert result.x is x and result.y is y and result.z is z
    assert c @ x == pytest.approx(1.0, abs=1e-6)
    assert x.sum() == pytest.approx(1.0, abs=1e-7)
    assert y[0] == pytest.approx(-1.0, abs=1e-6)
    assert result.iterations < 60
    assert result.primal_obj == pytest.approx(1.0, abs=1e-6)


@pytest.mark.parametrize("system", list(KKTSystem))
def test_dense_cold_start_converges_for_every_system(system):
    inst = random_feasible_lp(6, 15, seed=11)
    result = _solve(inst.problem, system=system)
    _assert_optimal(inst.problem, result)
    assert result.history[0]["iter"] == 0.0
    assert result.history[-1]["rel_error"] == pytest.approx(result.rel_error)


@pytest.mark.parametrize("system", list(KKTSystem))
def test_sparse_cold_start_converges_for_every_system(system):
    inst = random_feasible_lp(8, 20, density=0.25, seed=5)
    assert inst.problem.is_sparse
    result = _solve(inst.problem, system=system)
    _assert_optimal(inst.problem, result)

    dense = _solve(
        type(inst.problem)(inst.problem.A.toarray(), inst.problem.b, inst.problem.c), system=system
    )
    assert result.primal_obj == pytest.approx(dense.primal_obj, rel=1e-6, abs=1e-6)


def test_system_choice_invariance_from_warm_start():
    inst = random_feasible_lp(5, 12, seed=21)
    prob = inst.problem
    solutions = []
    for system in KKTSystem:
        x, y, z = np.ones(12), np.zeros(5), np.ones(12)
        settings = IPFSettings(system=system, primal_init=True, dual_init=True, centering=0.3)
        ipf(prob.A, prob.b, prob.c, x, y, z, settings)
        solutions.append((x, y, z))
    for x, y, z in solutions[1:]:
        np.testing.assert_allclose(x, solutions[0][0], atol=1e-5)
        np.testing.assert_allclose(y, solutions[0][1], atol=1e-5)


@pytest.mark.parametrize("sparse", [False, True])
def test_equilibration_invariance(sparse):
    inst = random_feasible_lp(6, 14, density=0.4 if sparse else None, seed=13)
    prob = inst.problem
    # Scale rows and columns badly so equilibration has real work to do.
    rows = np.logspace(-2, 2, prob.m)
    cols = np.logspace(1, -1, prob.n)
    A = sp.diags(rows) @ prob.A @ sp.diags(cols) if sparse else rows[:, None] * prob.A * cols[None, :]
    scaled = type(prob)(A, rows * prob.b, cols * prob.c)

    plain = _solve(scaled)
    equil = _solve(scaled, equilibrate=True)
    _assert_optimal(scaled, plain, tol=1e-6)
    # Residuals of the equilibrated run are only controlled in the scaled space.
    _assert_optimal(scaled, equil, tol=1e-3)
    assert scaled.primal_objective(equil.x) == pytest.approx(scaled.primal_objective(plain.x), rel=1e-5, abs=1e-5)


def test_nonpositive_warm_start_is_rejected_before_any_linear_algebra(monkeypatch, tiny_lp):
    A, b, c = tiny_lp

    def boom(*args, **kwargs):
        raise AssertionError("initializer must not run")

    monkeypatch.setattr(solver_mod, "initialize", boom)
    monkeypatch.setattr(solver_mod, "geom_equil", boom)
    x = np.array([0.5, 0.0])
    with pytest.raises(IPFLogicError, match="1 entries of x were nonpositive"):
        ipf(A, b, c, x, np.zeros(1), np.ones(2), IPFSettings(primal_init=True, equilibrate=True))
    z = np.array([-1.0, 1.0])
    with pytest.raises(IPFLogicError, match="1 entries of z were nonpositive"):
        ipf(A, b, c, np.ones(2), np.zeros(1), z, IPFSettings(dual_init=True))


def test_zero_iterations_with_strict_min_tol_is_fatal():
    inst = random_feasible_lp(4, 9, seed=3)
    with pytest.raises(IPFConvergenceError) as info:
        _solve(inst.problem, max_its=0, target_tol=1e-14, min_tol=1e-12)
    assert info.value.iterations == 0
    assert info.value.rel_error > 1e-12


def test_zero_iterations_with_loose_min_tol_is_a_soft_success():
    inst = random_feasible_lp(4, 9, seed=3)
    result = _solve(inst.problem, max_its=0, target_tol=1e-14, min_tol=1e6)
    assert result.relaxed and result.converged
    assert result.status == "relaxed"
    assert result.iterations == 0


def _failing_solve_kkt(self, *args, **kwargs):
    return FactorizationFailure("forced failure"), kwargs.get("symbolic")


def test_factorization_failure_below_min_tol_is_accepted(monkeypatch, caplog):
    inst = random_feasible_lp(4, 9, seed=9)
    monkeypatch.setattr(Backend, "solve_kkt", _failing_solve_kkt)
    with caplog.at_level(logging.WARNING, logger="ipflp.solver"):
        result = _solve(inst.problem, min_tol=1e6)
    assert result.relaxed
    assert result.iterations == 0
    assert "forced failure" in caplog.text


def test_factorization_failure_above_min_tol_is_fatal(monkeypatch):
    inst = random_feasible_lp(4, 9, seed=9)
    monkeypatch.setattr(Backend, "solve_kkt", _failing_solve_kkt)
    with pytest.raises(IPFConvergenceError, match="forced failure"):
        _solve(inst.problem, min_tol=1e-10)


def test_stalled_line_search_applies_min_tol_policy(monkeypatch):
    inst = random_feasible_lp(4, 9, seed=9)
    monkeypatch.setattr(solver_mod, "ipf_line_search", lambda *args, **kwargs: 0.0)
    with pytest.raises(IPFConvergenceError, match="no progress"):
        _solve(inst.problem, min_tol=1e-10)
    result = _solve(inst.problem, min_tol=1e6)
    assert result.relaxed


def _count_analyses(monkeypatch):
    calls = []
    original = factor_mod.analyze

    def counting(J):
        calls.append(J.shape[0])
        return original(J)

    monkeypatch.setattr(factor_mod, "analyze", counting)
    return calls


def test_augmented_reuses_the_initializer_analysis(monkeypatch):
    inst = random_feasible_lp(6, 15, density=0.3, seed=17)
    calls = _count_analyses(monkeypatch)
    result = _solve(inst.problem, system=KKTSystem.AUGMENTED)
    assert result.converged
    assert calls == [6 + 15]


def test_augmented_with_full_warm_start_analyzes_at_iteration_zero(monkeypatch):
    inst = random_feasible_lp(6, 15, density=0.3, seed=17)
    prob = inst.problem
    calls = _count_analyses(monkeypatch)
    x, y, z = inst.x.copy(), inst.y.copy(), inst.z.copy()
    x += 0.5
    settings = IPFSettings(system=KKTSystem.AUGMENTED, primal_init=True, dual_init=True, centering=0.3)
    result = ipf(prob.A, prob.b, prob.c, x, y, z, settings)
    assert result.converged
    assert calls == [6 + 15]


@pytest.mark.parametrize("system, size", [(KKTSystem.FULL, 6 + 2 * 15), (KKTSystem.NORMAL, 6)])
def test_full_and_normal_analyze_once_at_iteration_zero(monkeypatch, system, size):
    inst = random_feasible_lp(6, 15, density=0.3, seed=17)
    calls = _count_analyses(monkeypatch)
    result = _solve(inst.problem, system=system)
    assert result.converged
    assert calls == [6 + 15, size]


def test_equilibration_is_undone_on_the_fatal_path():
    inst = random_feasible_lp(4, 9, seed=19)
    prob = inst.problem
    x, y, z = inst.x.copy(), inst.y.copy(), inst.z.copy()
    settings = IPFSettings(
        primal_init=True, dual_init=True, equilibrate=True, max_its=0, target_tol=1e-14, min_tol=1e-13
    )
    with pytest.raises(IPFConvergenceError):
        ipf(prob.A * 100.0, prob.b * 100.0, prob.c, x, y, z, settings)
    np.testing.assert_allclose(x, inst.x, rtol=1e-12)
    np.testing.assert_allclose(y, inst.y, rtol=1e-12)
    np.testing.assert_allclose(z, inst.z, rtol=1e-12)


def test_iterates_must_be_float_arrays(tiny_lp):
    A, b, c = tiny_lp
    with pytest.raises(ValueError):
        ipf(A, b, c, np.array([1, 1]), None, None)
    with pytest.raises(ValueError):
        ipf(A, b, c, np.ones(3), None, None)
    with pytest.raises(ValueError):
        ipf(A, b, c, None, None, None, IPFSettings(primal_init=True))


def test_print_flag_routes_diagnostics_to_info(caplog, tiny_lp):
    A, b, c = tiny_lp
    with caplog.at_level(logging.INFO, logger="ipflp"):
        ipf(A, b, c, settings=IPFSettings(print=True, centering=0.3))
    assert "iter 0" in caplog.text
    assert "direction errors" in caplog.text


def test_centered_warm_start_converges_without_initialization(monkeypatch):
    inst = random_feasible_lp(5, 11, seed=37)
    prob = inst.problem
    x, y, z = centered_start(prob)
    assert np.all(x > 0) and np.all(z > 0)
    calls = []
    original = solver_mod.initialize

    def spy(backend, *args, **kwargs):
        symbolic = original(backend, *args, **kwargs)
        calls.append(symbolic)
        return symbolic

    monkeypatch.setattr(solver_mod, "initialize", spy)
    settings = IPFSettings(primal_init=True, dual_init=True, centering=0.3)
    result = ipf(prob.A, prob.b, prob.c, x, y, z, settings)
    _assert_optimal(prob, result)
    assert calls == [None]


def test_sparse_normal_equations_survive_cancelled_entries():
    A = sp.csr_matrix(np.array([[1.0, 1.0, 1.0, 0.0], [1.0, -1.0, 0.0, 1.0]]))
    b = np.asarray(A @ np.ones(4)).reshape(-1)
    c = np.array([1.0, 2.0, 1.0, 1.0])
    settings = IPFSettings(system=KKTSystem.NORMAL, primal_init=True, dual_init=True, centering=0.3)

    # A (X/Z) A^T has an exactly zero off-diagonal entry at this start.
    x, y, z = np.ones(4), np.zeros(2), np.ones(4)
    result = ipf(A, b, c, x, y, z, settings)
    assert result.converged and not result.relaxed

    xd, yd, zd = np.ones(4), np.zeros(2), np.ones(4)
    dense = ipf(A.toarray(), b, c, xd, yd, zd, settings)
    assert result.primal_obj == pytest.approx(dense.primal_obj, rel=1e-6, abs=1e-6)
    np.testing.assert_allclose(A @ x, b, atol=1e-6)


def test_relaxed_stop_at_max_its_returns_the_measured_iterate():
    inst = random_feasible_lp(4, 9, seed=3)
    prob = inst.problem
    x = np.full(prob.n, 2.0)
    y = np.full(prob.m, 0.5)
    z = np.full(prob.n, 3.0)
    start = (x.copy(), y.copy(), z.copy())
    settings = IPFSettings(primal_init=True, dual_init=True, max_its=0, target_tol=1e-14, min_tol=1e6)
    result = ipf(prob.A, prob.b, prob.c, x, y, z, settings)
    assert result.relaxed
    np.testing.assert_array_equal(x, start[0])
    np.testing.assert_array_equal(y, start[1])
    np.testing.assert_array_equal(z, start[2])


def test_equilibrated_warm_start_is_returned_in_caller_scaling(monkeypatch):
    inst = random_feasible_lp(4, 9, seed=3)
    prob = inst.problem
    x = np.full(prob.n, 2.0)
    y = np.full(prob.m, 0.5)
    z = np.full(prob.n, 3.0)
    start = (x.copy(), y.copy(), z.copy())
    calls = []
    original = Backend.diagonal_scale

    def spy(self, d, v):
        calls.append(d.shape)
        return original(self, d, v)

    monkeypatch.setattr(Backend, "diagonal_scale", spy)
    settings = IPFSettings(
        primal_init=True, dual_init=True, equilibrate=True, max_its=0, target_tol=1e-14, min_tol=1e6
    )
    ipf(prob.A, prob.b, prob.c, x, y, z, settings)
    assert len(calls) == 3
    np.testing.assert_allclose(x, start[0], rtol=1e-12)
    np.testing.assert_allclose(y, start[1], rtol=1e-12)
    np.testing.assert_allclose(z, start[2], rtol=1e-12)
