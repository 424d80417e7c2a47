"""Error types raised by the LP interior-point solver."""

from __future__ import annotations


class IPFLogicError(ValueError):
    """Contract violation: the iterate left the positive cone or the
    configuration names an unknown KKT system. Never retried."""


class IPFConvergenceError(RuntimeError):
    """Numerical non-convergence with the relative error above ``min_tol``."""

    def __init__(self, message: str, rel_error: float | None = None, iterations: int | None = None) -> None:
        super().__init__(message)
        self.rel_error = rel_error
        self.iterations = iterations


__all__ = ["IPFLogicError", "IPFConvergenceError"]
