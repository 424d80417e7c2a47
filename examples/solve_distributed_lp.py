"""Row-distributed solve; run with e.g. ``mpiexec -n 4 python solve_distributed_lp.py``."""

from __future__ import annotations

from ipflp import IPFSettings, distribute_problem, ipf, random_feasible_lp
from ipflp.distributed import world_comm


if __name__ == "__main__":
    comm = world_comm()
    # Every rank builds the same instance from the shared seed.
    instance = random_feasible_lp(40, 120, density=0.05, seed=11)
    problem = instance.problem
    A_local, b_local, c_local = distribute_problem(problem.A, problem.b, problem.c, comm)
    result = ipf(A_local, b_local, c_local, settings=IPFSettings(centering=0.3))
    if comm.Get_rank() == 0:
        print(f"ranks={comm.Get_size()} status={result.status} its={result.iterations} obj={result.primal_obj:.8f}")
