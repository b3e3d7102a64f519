"""
🎨 Formatting Utilities for pooled result tables.
Driven by central configuration from config.py
"""

from __future__ import annotations

import numpy as np
import pandas as pd

from config import CONFIG


def format_p_value(p: float) -> str:
    """
    Format a P-value using the display bounds from CONFIG.
    """
    if p is None or pd.isna(p) or not np.isfinite(p):
        return "-"

    precision = CONFIG.get("analysis.table_decimal_places", 3)
    lower_bound = CONFIG.get("analysis.pvalue_bounds_lower", 0.001)
    upper_bound = CONFIG.get("analysis.pvalue_bounds_upper", 0.999)

    if p < lower_bound:
        return CONFIG.get("analysis.pvalue_format_small", "<0.001")
    if p > upper_bound:
        return CONFIG.get("analysis.pvalue_format_large", ">0.999")
    return f"{p:.{precision}f}"


def format_number(value: float, digits: int = 2) -> str:
    if value is None or pd.isna(value):
        return "-"
    if not np.isfinite(value):
        return "Inf" if value > 0 else "-Inf"
    return f"{value:.{digits}f}"


def format_ci(estimate: float, lower: float, upper: float, digits: int = 2) -> str:
    """'1.23 (0.98 to 1.55)' style estimate with interval; '-' when there is no estimate."""
    if estimate is None or pd.isna(estimate):
        return "-"
    return f"{format_number(estimate, digits)} ({format_number(lower, digits)} to {format_number(upper, digits)})"


def format_level(value) -> str:
    """Reference/comparison level for display: numbers trimmed, missing as blank."""
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return ""
    if isinstance(value, (float, np.floating)):
        return f"{value:g}"
    return str(value)
