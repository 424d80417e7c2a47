"""Solve one random LP with every KKT reduction (serial sanity check)."""

from __future__ import annotations

import logging

import numpy as np

from ipflp import IPFSettings, KKTSystem, ipf, random_feasible_lp


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING, format="%(name)s: %(message)s")
    instance = random_feasible_lp(30, 80, density=0.1, seed=7)
    problem = instance.problem
    for system in KKTSystem:
        settings = IPFSettings(system=system, centering=0.3, equilibrate=True)
        result = ipf(problem.A, problem.b, problem.c, settings=settings)
        obj, rb, rc = problem.relative_errors(result.x, result.y, result.z)
        print(
            f"{system.value:>9s}: status={result.status} its={result.iterations} "
            f"obj={problem.primal_objective(result.x):.8f} "
            f"rel=({obj:.1e}, {rb:.1e}, {rc:.1e}) min(x)={np.min(result.x):.1e}"
        )
