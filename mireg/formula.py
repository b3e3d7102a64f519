"""
Model formula with explicitly tagged covariate terms.

A formula is an outcome name plus an ordered tuple of terms. Each term says
how the covariate enters the design:

    Linear("sbp")                 one column (dummy-coded if the column is categorical)
    Spline("age", knots=4)        restricted cubic spline, knots-1 columns
    Categorical("stage", "I")     indicator columns against a reference level

Example:
    >>> f = Formula("mrs", (Spline("age", 4), Linear("sex"), Categorical("stage")))
    >>> str(f)
    'mrs ~ rcs(age, 4) + sex + catg(stage)'
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

import pandas as pd

from config import CONFIG
from mireg.errors import FormulaError


@dataclass(frozen=True)
class Linear:
    """Covariate entering with a single slope (or dummies if non-numeric)."""

    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Spline:
    """Covariate entering as a restricted cubic spline with `knots` knots (default CONFIG['modeling.default_knots'])."""

    name: str
    knots: int = field(default_factory=lambda: CONFIG.get("modeling.default_knots", 4))

    def __str__(self) -> str:
        return f"rcs({self.name}, {self.knots})"


@dataclass(frozen=True)
class Categorical:
    """Covariate coded as indicators against `reference` (first sorted level if None)."""

    name: str
    reference: Any = None

    def __str__(self) -> str:
        return f"catg({self.name})"


Term = Union[Linear, Spline, Categorical]


@dataclass(frozen=True)
class Formula:
    """Outcome variable and ordered covariate terms."""

    outcome: str
    terms: tuple = field(default_factory=tuple)

    def __post_init__(self):
        # Accept lists for convenience, store an immutable tuple
        object.__setattr__(self, "terms", tuple(self.terms))

    @property
    def covariates(self) -> list[str]:
        return [t.name for t in self.terms]

    @property
    def variables(self) -> list[str]:
        return [self.outcome] + self.covariates

    @property
    def spline_terms(self) -> list[Spline]:
        return [t for t in self.terms if isinstance(t, Spline)]

    def validate(self, df: pd.DataFrame | None = None) -> None:
        """
        Check the formula's invariants, and its columns against `df` when given.

        Raises:
            FormulaError: outcome among covariates, duplicated covariate,
                unknown term type, knot count < 3, unknown column or a spline
                on a non-numeric column.
        """
        if not self.outcome:
            raise FormulaError("Outcome variable not specified", stage="model")

        if not self.terms:
            raise FormulaError("At least one covariate term is required", stage="model")

        seen: set[str] = set()
        for t in self.terms:
            if not isinstance(t, (Linear, Spline, Categorical)):
                raise FormulaError(f"Unsupported term type: {type(t).__name__}", stage="model")
            if t.name == self.outcome:
                raise FormulaError(
                    "Outcome variable cannot be in covariate list",
                    variable=t.name,
                    stage="model",
                )
            if t.name in seen:
                raise FormulaError("Covariate listed more than once", variable=t.name, stage="model")
            seen.add(t.name)
            if isinstance(t, Spline) and (not isinstance(t.knots, int) or t.knots < 3):
                raise FormulaError(
                    f"Spline knot count must be an integer >= 3 (got {t.knots!r})",
                    variable=t.name,
                    stage="model",
                )

        if df is None:
            return

        missing_cols = [c for c in self.variables if c not in df.columns]
        if missing_cols:
            raise FormulaError(
                f"Columns not found in data: {missing_cols}",
                variable=missing_cols[0],
                stage="model",
            )

        for t in self.spline_terms:
            if not pd.api.types.is_numeric_dtype(df[t.name]) or pd.api.types.is_bool_dtype(df[t.name]):
                raise FormulaError("Spline terms require a numeric column", variable=t.name, stage="model")

    def __str__(self) -> str:
        return f"{self.outcome} ~ {' + '.join(str(t) for t in self.terms)}"
