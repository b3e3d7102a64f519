"""
Exceptions raised by the imputation, fitting and pooling stages.

Every error carries the offending variable (when there is one) and the stage
it was raised in ("imputation" or "model"), so that a failed replicate can be
reported without guessing.
"""

from __future__ import annotations

from typing import Any


class MIRegError(Exception):
    """Base class for analysis errors."""

    def __init__(self, message: str, variable: str | None = None, stage: str | None = None):
        self.variable = variable
        self.stage = stage
        prefix = []
        if stage:
            prefix.append(f"[{stage}]")
        if variable:
            prefix.append(f"'{variable}':")
        super().__init__(" ".join(prefix + [message]) if prefix else message)


class InsufficientVariability(MIRegError):
    """Spline knots cannot be placed: too few distinct observed values."""


class ImputationModelFitError(MIRegError):
    """A conditional imputation regression has a rank-deficient design."""


class SingularDesignError(MIRegError):
    """The final model design matrix is not of full column rank."""


class FormulaError(MIRegError):
    """Invalid formula: unknown variable, outcome among covariates, bad knots."""


class AnalysisCancelled(MIRegError):
    """Raised when an analysis is stopped between replicates."""

    def __init__(self, message: str, completed: list[Any] | None = None):
        super().__init__(message)
        self.completed = list(completed or [])
