"""
Results table for a pooled fit.

One row per covariate effect, in formula order:
- continuous covariates (linear or spline): effect of moving from the lower
  to the upper quartile of the observed values (min/max when they coincide);
- categorical covariates: one row per non-reference level against the
  reference level;
- spline covariates: an extra "Nonlinear" row with the test of the
  nonlinear columns.

Effects are odds ratios (exponentiated) for the ordinal family and raw
differences for the linear family. Test columns carry the pooled joint Wald
test of the whole covariate, so every row of a covariate shows the same
multi-df test. The statistic is reported in the form its p-value is taken
from: F = b' T^-1 b / k with denominator df when the test has a finite
denominator df (linear fits, and any pooled test over M > 1 replicates), the
chi-square b' T^-1 b with an empty denominator df otherwise.

Intercept and ordinal threshold parameters never produce rows: covariates
are taken from the non-nuisance columns (ColumnInfo.is_nuisance), not from
parameter labels.
"""

from __future__ import annotations

import numpy as np
import pandas as pd

from config import CONFIG
from mireg.design import CategoricalEncoder, DesignSpec, SplineEncoder
from mireg.formatting import format_ci, format_level, format_number, format_p_value
from mireg.pooling import PooledResult

RESULT_COLUMNS = [
    "Variable",
    "Component",
    "Reference",
    "Comparison",
    "Effect",
    "CI Lower",
    "CI Upper",
    "Statistic",
    "df",
    "df Denominator",
    "P-value",
]


def reported_covariates(pooled: PooledResult) -> list[str]:
    """Covariates owning at least one non-nuisance column, in column order."""
    return list(dict.fromkeys(c.covariate for c in pooled.columns if not c.is_nuisance))


def _full_contrast(pooled: PooledResult, d: np.ndarray) -> np.ndarray:
    # Ordinal thresholds follow the design columns and get zero weight
    full = np.zeros(len(pooled.coef))
    full[: len(d)] = d
    return full


def _test_columns(test) -> dict:
    """F form when the test has a finite denominator df, chi-square form otherwise."""
    f_test = np.isfinite(test.df_denominator)
    return {
        "Statistic": test.f_statistic if f_test else test.statistic,
        "df": test.df,
        "df Denominator": test.df_denominator if f_test else np.nan,
        "P-value": test.p_value,
    }


def build_results_table(
    pooled: PooledResult,
    design: DesignSpec,
    labels: dict[str, str] | None = None,
    ci_level: float | None = None,
    include_nonlinear: bool = True,
) -> pd.DataFrame:
    """
    Flatten a PooledResult into the results table.

    Args:
        pooled: Pooled fit
        design: The frozen design the fits were made with
        labels: Optional display labels per variable
        ci_level: Interval coverage (default CONFIG['modeling.ci_level'])
        include_nonlinear: Add the nonlinear-test row for spline covariates

    Returns:
        DataFrame with columns RESULT_COLUMNS
    """
    labels = labels or {}
    ci_level = ci_level or CONFIG.get("modeling.ci_level", 0.95)
    n_design = len(design.columns)
    if list(pooled.coef.index[:n_design]) != design.column_names:
        raise ValueError("Pooled result does not match the design columns")

    exponentiate = pooled.family == "ordinal"
    rows = []

    def effect_row(name, component, reference, comparison, d, test):
        est = pooled.contrast(_full_contrast(pooled, d))
        lower, upper = est.confidence_interval(ci_level)
        effect = est.estimate
        if exponentiate:
            effect, lower, upper = np.exp(effect), np.exp(lower), np.exp(upper)
        rows.append(
            {
                "Variable": labels.get(name, name),
                "Component": component,
                "Reference": reference,
                "Comparison": comparison,
                "Effect": float(effect),
                "CI Lower": float(lower),
                "CI Upper": float(upper),
                **_test_columns(test),
            }
        )

    for name in reported_covariates(pooled):
        enc = design.encoder(name)
        test = pooled.term_tests[name]

        if isinstance(enc, CategoricalEncoder):
            for level in enc.comparison_levels:
                d = design.contrast(name, enc.reference, level)
                effect_row(name, "Effect", enc.reference, level, d, test)
        else:
            low, high = enc.limits
            effect_row(name, "Effect", low, high, design.contrast(name, low, high), test)

        if include_nonlinear and isinstance(enc, SplineEncoder):
            rows.append(
                {
                    "Variable": labels.get(name, name),
                    "Component": "Nonlinear",
                    "Reference": None,
                    "Comparison": None,
                    "Effect": np.nan,
                    "CI Lower": np.nan,
                    "CI Upper": np.nan,
                    **_test_columns(pooled.nonlinear_tests[name]),
                }
            )

    return pd.DataFrame(rows, columns=RESULT_COLUMNS)


def format_results_table(table: pd.DataFrame, digits: int = 2) -> pd.DataFrame:
    """Text version of a results table for display."""
    ci_pct = int(round(CONFIG.get("modeling.ci_level", 0.95) * 100))
    return pd.DataFrame(
        {
            "Variable": table["Variable"],
            "Component": table["Component"],
            "Reference": table["Reference"].map(format_level),
            "Comparison": table["Comparison"].map(format_level),
            f"Effect ({ci_pct}% CI)": [
                format_ci(e, lo, hi, digits)
                for e, lo, hi in zip(table["Effect"], table["CI Lower"], table["CI Upper"])
            ],
            "Statistic": table["Statistic"].map(lambda v: format_number(v, digits)),
            "df": table["df"],
            "df Denominator": table["df Denominator"].map(lambda v: format_number(v, 1)),
            "P-value": table["P-value"].map(format_p_value),
        }
    )
