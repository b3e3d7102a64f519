"""
Frozen design specification.

A DesignSpec turns a table into a numeric design matrix. It is built once
from the observed values of the original (incomplete) table: spline knots,
categorical levels and effect limits (lower/upper quartile) are frozen at
that point and reused unchanged for every completed table. Both the
imputation engine and the model fitter consume it, so a covariate is always
represented by the same columns.

Every column is described by a ColumnInfo whose `kind` is one of
intercept, threshold, linear, nonlinear or level.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import numpy as np
import pandas as pd

from mireg.errors import FormulaError
from mireg.formula import Categorical, Formula, Linear, Spline, Term
from mireg.missing_data import is_categorical
from mireg.spline_basis import RCSBasis

INTERCEPT = "Intercept"


@dataclass(frozen=True)
class ColumnInfo:
    """Metadata for one design (or parameter) column."""

    name: str
    covariate: str | None
    kind: str
    level: Any = None

    @property
    def is_nuisance(self) -> bool:
        """Intercept and ordinal threshold parameters carry no covariate effect."""
        return self.kind in ("intercept", "threshold")


def _quartile_limits(observed: np.ndarray) -> tuple[float, float]:
    low, high = np.quantile(observed, [0.25, 0.75])
    if high <= low:
        low, high = float(np.min(observed)), float(np.max(observed))
    return float(low), float(high)


def _observed_levels(series: pd.Series) -> list:
    observed = series.dropna()
    if isinstance(series.dtype, pd.CategoricalDtype):
        present = set(observed.unique())
        return [c for c in series.cat.categories if c in present]
    levels = list(pd.unique(observed))
    try:
        return sorted(levels)
    except TypeError:
        return sorted(levels, key=str)


class LinearEncoder:
    """Single numeric column."""

    def __init__(self, name: str, limits: tuple[float, float]):
        self.name = name
        self.limits = limits

    @classmethod
    def fit(cls, series: pd.Series) -> "LinearEncoder":
        observed = pd.to_numeric(series, errors="coerce").dropna().to_numpy(dtype=float)
        if len(observed) == 0:
            raise FormulaError("No observed values", variable=series.name)
        return cls(str(series.name), _quartile_limits(observed))

    @property
    def columns(self) -> list[ColumnInfo]:
        return [ColumnInfo(self.name, self.name, "linear")]

    def encode(self, values) -> np.ndarray:
        return np.asarray(values, dtype=float).reshape(-1, 1)


class SplineEncoder:
    """Restricted cubic spline columns with frozen knots."""

    def __init__(self, basis: RCSBasis, limits: tuple[float, float]):
        self.name = basis.name
        self.basis = basis
        self.limits = limits

    @classmethod
    def fit(cls, series: pd.Series, n_knots: int, stage: str | None = None) -> "SplineEncoder":
        basis = RCSBasis.fit(series, n_knots, name=str(series.name), stage=stage)
        observed = pd.to_numeric(series, errors="coerce").dropna().to_numpy(dtype=float)
        return cls(basis, _quartile_limits(observed))

    @property
    def columns(self) -> list[ColumnInfo]:
        names = self.basis.column_names
        return [ColumnInfo(names[0], self.name, "linear")] + [
            ColumnInfo(n, self.name, "nonlinear") for n in names[1:]
        ]

    def encode(self, values) -> np.ndarray:
        return self.basis.transform(values)


class CategoricalEncoder:
    """Indicator columns for every non-reference level."""

    def __init__(self, name: str, levels: Sequence[Any], reference: Any):
        self.name = name
        self.levels = list(levels)
        self.reference = reference

    @classmethod
    def fit(cls, series: pd.Series, reference: Any = None) -> "CategoricalEncoder":
        levels = _observed_levels(series)
        name = str(series.name)
        if len(levels) < 2:
            raise FormulaError(f"Categorical variable needs >= 2 observed levels (got {levels})", variable=name)
        if reference is None:
            reference = levels[0]
        elif reference not in levels:
            raise FormulaError(f"Reference level {reference!r} not observed", variable=name)
        return cls(name, levels, reference)

    @property
    def comparison_levels(self) -> list:
        return [lv for lv in self.levels if lv != self.reference]

    @property
    def columns(self) -> list[ColumnInfo]:
        return [ColumnInfo(f"{self.name}={lv}", self.name, "level", lv) for lv in self.comparison_levels]

    def encode(self, values) -> np.ndarray:
        arr = pd.Series(values).to_numpy(dtype=object)
        known = np.zeros(len(arr), dtype=bool)
        for lv in self.levels:
            known |= arr == lv
        if not known.all():
            unknown = pd.unique(arr[~known])
            raise ValueError(f"Column '{self.name}' has levels not seen at design time: {list(unknown)[:5]}")
        return np.column_stack([(arr == lv).astype(float) for lv in self.comparison_levels])


def build_encoder(term: Term, series: pd.Series, stage: str = "model"):
    """Create the frozen encoder for one tagged term."""
    if isinstance(term, Spline):
        return SplineEncoder.fit(series, term.knots, stage=stage)
    if isinstance(term, Categorical):
        return CategoricalEncoder.fit(series, term.reference)
    if isinstance(term, Linear):
        if is_categorical(series):
            return CategoricalEncoder.fit(series)
        return LinearEncoder.fit(series)
    raise FormulaError(f"Unsupported term type: {type(term).__name__}", variable=getattr(term, "name", None))


class DesignSpec:
    """Ordered encoders plus an optional intercept column."""

    def __init__(self, encoders: Sequence[Any], intercept: bool = True):
        self.encoders = list(encoders)
        self.intercept = intercept
        self._by_name = {e.name: e for e in self.encoders}

        cols: list[ColumnInfo] = [ColumnInfo(INTERCEPT, None, "intercept")] if intercept else []
        for enc in self.encoders:
            cols.extend(enc.columns)
        self.columns = cols

    @classmethod
    def from_terms(
        cls,
        terms: Iterable[Term],
        df: pd.DataFrame,
        intercept: bool = True,
        stage: str = "model",
    ) -> "DesignSpec":
        """Freeze encoders for `terms` from the observed values of `df`."""
        return cls([build_encoder(t, df[t.name], stage=stage) for t in terms], intercept=intercept)

    @classmethod
    def from_formula(cls, formula: Formula, df: pd.DataFrame, intercept: bool = True) -> "DesignSpec":
        formula.validate(df)
        return cls.from_terms(formula.terms, df, intercept=intercept, stage="model")

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    @property
    def covariates(self) -> list[str]:
        return [e.name for e in self.encoders]

    def encoder(self, name: str):
        return self._by_name[name]

    def transform(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Design matrix for a table without missing cells in the used columns.

        Raises:
            ValueError: If a used column still has missing values.
        """
        parts = []
        if self.intercept:
            parts.append(np.ones((len(df), 1)))
        for enc in self.encoders:
            col = df[enc.name]
            if col.isna().any():
                raise ValueError(f"Column '{enc.name}' has {int(col.isna().sum())} missing values")
            parts.append(enc.encode(col.to_numpy()))
        matrix = np.column_stack(parts) if parts else np.empty((len(df), 0))
        return pd.DataFrame(matrix, columns=self.column_names, index=df.index)

    def blocks(self) -> dict[str, list[int]]:
        """Column positions belonging to each covariate."""
        out: dict[str, list[int]] = {}
        for i, c in enumerate(self.columns):
            if c.covariate is not None:
                out.setdefault(c.covariate, []).append(i)
        return out

    def nonlinear_blocks(self) -> dict[str, list[int]]:
        """Positions of the nonlinear columns of each spline covariate."""
        out: dict[str, list[int]] = {}
        for i, c in enumerate(self.columns):
            if c.kind == "nonlinear":
                out.setdefault(c.covariate, []).append(i)
        return out

    def contrast(self, covariate: str, low: Any, high: Any) -> np.ndarray:
        """
        Vector d such that d @ beta is the effect of moving `covariate` from
        `low` to `high` with all other covariates fixed.
        """
        enc = self.encoder(covariate)
        d = np.zeros(len(self.columns))
        idx = self.blocks()[covariate]
        d[idx] = enc.encode([high])[0] - enc.encode([low])[0]
        return d
