"""Command-line entry point: solve an LP from a MAT file or a random instance."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Dict, Sequence

import numpy as np
import scipy.sparse as sp
from scipy.io import loadmat

from .config import IPFSettings, KKTSystem
from .data import random_feasible_lp
from .exceptions import IPFConvergenceError, IPFLogicError
from .problem import LPProblem
from .solver import IPFResult, IPFSolver

logger = logging.getLogger(__name__)


def _read_mat(path: str | Path) -> Dict[str, Any]:
    # simplify_cells turns MATLAB structs into nested dicts.
    raw = loadmat(str(path), simplify_cells=True)
    return {k: v for k, v in raw.items() if not k.startswith("__")}


def _field(data: Dict[str, Any], dotted: str) -> Any:
    """Resolve a dotted struct path such as ``lp.A``."""
    parts = dotted.split(".")
    cur: Any = data
    for depth, part in enumerate(parts, start=1):
        if not isinstance(cur, dict) or part not in cur:
            raise KeyError(f"MAT file has no field '{'.'.join(parts[:depth])}'")
        cur = cur[part]
    return cur


def load_lp_from_mat(
    mat_path: str | Path,
    key_A: str = "A",
    key_b: str = "b",
    key_c: str = "c",
    sparse: bool = False,
) -> LPProblem:
    """Load ``A, b, c`` from a MAT file; keys may be dotted struct paths."""
    data = _read_mat(mat_path)
    A = _field(data, key_A)
    if sp.issparse(A):
        A = sp.csr_matrix(A, dtype=float)
    elif sparse:
        A = sp.csr_matrix(np.atleast_2d(np.asarray(A, dtype=float)))
    b = np.atleast_1d(np.asarray(_field(data, key_b), dtype=float)).reshape(-1)
    c = np.atleast_1d(np.asarray(_field(data, key_c), dtype=float)).reshape(-1)
    return LPProblem(A, b, c, name=Path(mat_path).stem)


def _add_solver_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--system",
        choices=[s.value for s in KKTSystem],
        default=KKTSystem.AUGMENTED.value,
        help="Reduction of the Newton system factored every iteration.",
    )
    parser.add_argument("--equilibrate", action="store_true", default=False)
    parser.add_argument("--max-its", type=int, default=1000)
    parser.add_argument("--target-tol", type=float, default=None)
    parser.add_argument("--min-tol", type=float, default=None)
    parser.add_argument("--centering", type=float, default=0.9)
    parser.add_argument(
        "--mehrotra-init",
        action="store_true",
        default=False,
        help="Use Mehrotra's starting-point heuristic instead of the standard shift.",
    )
    parser.add_argument("--verbose", action="store_true", default=False, help="Print iteration diagnostics.")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ipflp", description="Infeasible path-following LP solver.")
    sub = parser.add_subparsers(dest="command", required=True)

    p_solve = sub.add_parser("solve", help="Solve min c^T x s.t. Ax=b, x>=0 loaded from a MAT file.")
    p_solve.add_argument("--mat", type=str, required=True)
    p_solve.add_argument("--mat-key-A", type=str, default="A")
    p_solve.add_argument("--mat-key-b", type=str, default="b")
    p_solve.add_argument("--mat-key-c", type=str, default="c")
    p_solve.add_argument("--sparse", action="store_true", default=False, help="Store A as CSR.")
    _add_solver_args(p_solve)
    p_solve.set_defaults(func=_cmd_solve)

    p_random = sub.add_parser("random", help="Solve a random strictly feasible LP.")
    p_random.add_argument("--m", type=int, default=20)
    p_random.add_argument("--n", type=int, default=50)
    p_random.add_argument("--density", type=float, default=None, help="Sparse A with this density.")
    p_random.add_argument("--seed", type=int, default=0)
    _add_solver_args(p_random)
    p_random.set_defaults(func=_cmd_random)
    return parser


def _settings_from_args(args: argparse.Namespace) -> IPFSettings:
    kwargs: Dict[str, Any] = dict(
        system=str(args.system),
        equilibrate=bool(args.equilibrate),
        max_its=int(args.max_its),
        centering=float(args.centering),
        standard_shift=not bool(args.mehrotra_init),
        print=bool(args.verbose),
    )
    if args.target_tol is not None:
        kwargs["target_tol"] = float(args.target_tol)
    if args.min_tol is not None:
        kwargs["min_tol"] = float(args.min_tol)
    return IPFSettings(**kwargs)


def _report(problem: LPProblem, result: IPFResult) -> None:
    print(f"problem: {problem.name} (m={problem.m}, n={problem.n}, sparse={problem.is_sparse})")
    print(f"status: {result.status}")
    print(f"iterations: {result.iterations}")
    print(f"primal objective: {problem.primal_objective(result.x):.10g}")
    print(f"dual objective: {problem.dual_objective(result.y):.10g}")
    print(f"relative error: {result.rel_error:.3e}")


def _run(problem: LPProblem, args: argparse.Namespace) -> int:
    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(message)s")
    try:
        settings = _settings_from_args(args)
        result = IPFSolver(settings).solve(problem.A, problem.b, problem.c)
    except (IPFConvergenceError, IPFLogicError, ValueError) as exc:
        print(f"solver failed: {exc}")
        return 1
    _report(problem, result)
    return 0


def _cmd_solve(args: argparse.Namespace) -> int:
    problem = load_lp_from_mat(
        args.mat,
        key_A=args.mat_key_A,
        key_b=args.mat_key_b,
        key_c=args.mat_key_c,
        sparse=bool(args.sparse),
    )
    return _run(problem, args)


def _cmd_random(args: argparse.Namespace) -> int:
    instance = random_feasible_lp(int(args.m), int(args.n), density=args.density, seed=int(args.seed))
    return _run(instance.problem, args)


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
