"""Solver configuration dataclasses.

Defaults follow the usual choices for infeasible path-following: tolerances
are powers of machine epsilon and the centering parameter is conservative.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging

import numpy as np

from .exceptions import IPFLogicError

logger = logging.getLogger(__name__)

_EPS = float(np.finfo(float).eps)


class KKTSystem(Enum):
    """Which reduction of the Newton system is factored each iteration."""

    FULL = "full"
    AUGMENTED = "augmented"
    NORMAL = "normal"

    @classmethod
    def coerce(cls, value: "KKTSystem | str") -> "KKTSystem":
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        if key.endswith("_kkt"):
            key = key[: -len("_kkt")]
        for member in cls:
            if member.value == key:
                return member
        raise IPFLogicError(f"system must be one of {{'full', 'augmented', 'normal'}}, got {value!r}.")


@dataclass
class LineSearchSettings:
    """Parameters of the safeguarded IPF line search."""

    gamma: float = 1e-3  # x_i z_i >= gamma * mu neighbourhood
    beta: float = 2.0  # allowed growth of infeasibility relative to mu
    psi: float = 100.0  # mu(alpha) <= (1 - alpha/psi) mu
    step_ratio: float = 1.5
    max_backtracks: int = 100

    def validate(self) -> None:
        if not (0.0 < self.gamma < 1.0):
            raise ValueError("gamma must be in (0, 1).")
        if self.beta < 1.0:
            raise ValueError("beta must be at least one.")
        if self.psi <= 0.0:
            raise ValueError("psi must be positive.")
        if self.step_ratio <= 1.0:
            raise ValueError("step_ratio must be larger than one.")
        if self.max_backtracks < 0:
            raise ValueError("max_backtracks must be nonnegative.")


@dataclass
class RegQSDSettings:
    """Regularization and refinement controls for sparse quasi-definite solves."""

    reg_primal: float = _EPS**0.5
    reg_dual: float = _EPS**0.5
    rel_tol_refine: float = _EPS**0.8
    max_refine_its: int = 50
    equilibrate: bool = True

    def validate(self) -> None:
        if self.reg_primal < 0.0 or self.reg_dual < 0.0:
            raise ValueError("regularization magnitudes must be nonnegative.")
        if self.rel_tol_refine <= 0.0:
            raise ValueError("rel_tol_refine must be positive.")
        if self.max_refine_its < 0:
            raise ValueError("max_refine_its must be nonnegative.")


@dataclass
class IPFSettings:
    """Control structure for the infeasible path-following LP solver."""

    primal_init: bool = False
    dual_init: bool = False
    min_tol: float = _EPS**0.3
    target_tol: float = _EPS**0.5
    max_its: int = 1000
    centering: float = 0.9
    system: KKTSystem = KKTSystem.AUGMENTED
    equilibrate: bool = False
    standard_shift: bool = True
    print: bool = False
    line_search: LineSearchSettings = field(default_factory=LineSearchSettings)
    qsd: RegQSDSettings = field(default_factory=RegQSDSettings)

    def __post_init__(self) -> None:
        self.system = KKTSystem.coerce(self.system)
        self.validate()

    def validate(self) -> None:
        if self.max_its < 0:
            raise ValueError("max_its must be nonnegative.")
        if self.target_tol <= 0.0 or self.min_tol <= 0.0:
            raise ValueError("target_tol and min_tol must be positive.")
        if not (0.0 < self.centering <= 1.0):
            raise ValueError("centering must be in (0, 1].")
        if self.min_tol < self.target_tol:
            logger.warning(
                "min_tol=%g is stricter than target_tol=%g; the relaxed fallback will never trigger.",
                self.min_tol,
                self.target_tol,
            )
        self.line_search.validate()
        self.qsd.validate()


__all__ = ["KKTSystem", "LineSearchSettings", "RegQSDSettings", "IPFSettings"]
