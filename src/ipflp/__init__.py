"""Primal-dual infeasible path-following solver for linear programs.

The stable top-level API is the solver entry points plus their settings and
result types. Backends, factorization engines and the distributed helpers
remain available from their submodules (for example ``ipflp.backends`` or
``ipflp.distributed``).
"""

from .config import IPFSettings, KKTSystem, LineSearchSettings, RegQSDSettings
from .data import FeasibleLP, centered_start, random_feasible_lp
from .distributed import DistMatrix, distribute_problem, has_mpi4py
from .exceptions import IPFConvergenceError, IPFLogicError
from .problem import LPProblem
from .solver import IPFResult, IPFSolver, ipf

__all__ = [
    "IPFSettings",
    "KKTSystem",
    "LineSearchSettings",
    "RegQSDSettings",
    "LPProblem",
    "FeasibleLP",
    "random_feasible_lp",
    "centered_start",
    "DistMatrix",
    "distribute_problem",
    "has_mpi4py",
    "IPFConvergenceError",
    "IPFLogicError",
    "IPFResult",
    "IPFSolver",
    "ipf",
]
