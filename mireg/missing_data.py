"""
Missing-data profiling and input-table checks.

Missing cells are represented by pandas' own markers (NaN / None / pd.NA).
Coded missing values such as -99 must be converted with
`apply_missing_codes` before analysis; nothing here turns a missing cell into
a numeric sentinel.
"""

from __future__ import annotations

from typing import Any, Iterable

import numpy as np
import pandas as pd

from logger import get_logger
from mireg.errors import FormulaError

logger = get_logger(__name__)


def detect_missing_in_variable(series: pd.Series) -> dict[str, Any]:
    """
    Count missing values in a single variable.

    Returns:
        Dictionary with total_count, missing_count, missing_fraction, valid_count.
    """
    total_count = len(series)
    missing_count = int(series.isna().sum())
    fraction = missing_count / total_count if total_count > 0 else 0.0

    return {
        "total_count": total_count,
        "missing_count": missing_count,
        "missing_fraction": fraction,
        "valid_count": total_count - missing_count,
    }


def profile_missingness(df: pd.DataFrame, columns: Iterable[str] | None = None) -> pd.DataFrame:
    """
    Per-variable missingness for the variables that have any missing cells.

    Parameters:
        df: Input table (not modified)
        columns: Subset of variables to profile (default: all columns)

    Returns:
        DataFrame with columns Variable, N_Missing, Fraction_Missing, sorted by
        variable name. Variables without missing cells are omitted.
    """
    columns = list(df.columns) if columns is None else list(columns)
    validate_table(df, columns)

    rows = []
    for col in columns:
        stats = detect_missing_in_variable(df[col])
        if stats["missing_count"] > 0:
            rows.append(
                {
                    "Variable": col,
                    "N_Missing": stats["missing_count"],
                    "Fraction_Missing": stats["missing_fraction"],
                }
            )

    summary = pd.DataFrame(rows, columns=["Variable", "N_Missing", "Fraction_Missing"])
    summary = summary.sort_values("Variable", kind="mergesort").reset_index(drop=True)

    logger.debug("Missingness profile: %d of %d variables incomplete", len(summary), len(columns))
    return summary


def apply_missing_codes(
    df: pd.DataFrame,
    missing_codes: list[Any] | dict[str, Any] | None = None,
) -> pd.DataFrame:
    """
    Replace user-specified missing value codes with NaN.

    Parameters:
        df: Input DataFrame
        missing_codes: Global codes (list) or per-column codes (dict)

    Returns:
        Copy of `df` with the codes replaced by NaN
    """
    df_copy = df.copy()

    for col in df_copy.columns:
        if isinstance(missing_codes, dict):
            codes = missing_codes.get(col, [])
        else:
            codes = missing_codes or []

        if isinstance(codes, (str, bytes)) or not isinstance(codes, (list, tuple, set, np.ndarray)):
            codes = [codes]

        codes = [c for c in codes if not pd.isna(c)]
        if not codes:
            continue

        mask = df_copy[col].isin(codes)
        if mask.any():
            df_copy[col] = df_copy[col].mask(mask)
            logger.debug("Column '%s': %d coded values set to missing", col, int(mask.sum()))

    return df_copy


def validate_table(df: pd.DataFrame, columns: Iterable[str]) -> None:
    """
    Check that `df` is a non-empty DataFrame holding every column in `columns`.

    Raises:
        ValueError: If the table is None or has no rows.
        FormulaError: If a referenced column does not exist.
    """
    if df is None or not isinstance(df, pd.DataFrame) or df.empty:
        raise ValueError("DataFrame is empty or None")

    missing_cols = [c for c in columns if c not in df.columns]
    if missing_cols:
        raise FormulaError(f"Columns not found in data: {missing_cols}", variable=missing_cols[0])


def is_categorical(series: pd.Series) -> bool:
    """True for category, object, string and bool columns."""
    return not pd.api.types.is_numeric_dtype(series) or pd.api.types.is_bool_dtype(series)
