"""
Unit tests for missing data profiling.

Tests:
- apply_missing_codes - Convert missing codes to NaN
- detect_missing_in_variable - Count missing values
- profile_missingness - Per-variable summary of incomplete variables
- validate_table - Input table checks
"""

import numpy as np
import pandas as pd
import pytest

from mireg.errors import FormulaError
from mireg.missing_data import (
    apply_missing_codes,
    detect_missing_in_variable,
    is_categorical,
    profile_missingness,
    validate_table,
)


class TestApplyMissingCodes:
    """Tests for apply_missing_codes function."""

    def test_replaces_per_column_codes_with_nan(self):
        """Test that specified missing codes are replaced with NaN."""
        df = pd.DataFrame({"age": [25, -99, 30, -999, 40], "score": [100, 85, -99, 90, 95]})

        result = apply_missing_codes(df, {"age": [-99, -999], "score": [-99]})

        assert result["age"].isna().sum() == 2
        assert np.isnan(result.loc[1, "age"])
        assert np.isnan(result.loc[3, "age"])
        assert result["score"].isna().sum() == 1
        assert np.isnan(result.loc[2, "score"])

    def test_global_codes(self):
        df = pd.DataFrame({"value": [10, -99, 20, -99, 30], "other": [-99, 1, 2, 3, 4]})

        result = apply_missing_codes(df, [-99])

        assert result["value"].isna().sum() == 2
        assert result["other"].isna().sum() == 1

    def test_scalar_code_for_column(self):
        df = pd.DataFrame({"grade": ["A", "unknown", "B"]})
        result = apply_missing_codes(df, {"grade": "unknown"})
        assert result["grade"].isna().tolist() == [False, True, False]

    def test_preserves_original_df(self):
        """Test that original DataFrame is not modified."""
        df = pd.DataFrame({"value": [10, -99, 20]})
        original = df.copy()

        apply_missing_codes(df, [-99])

        pd.testing.assert_frame_equal(df, original)

    def test_no_codes_returns_copy(self):
        df = pd.DataFrame({"value": [1.0, np.nan]})
        result = apply_missing_codes(df)
        pd.testing.assert_frame_equal(result, df)
        assert result is not df


class TestDetectMissingInVariable:
    """Tests for detect_missing_in_variable function."""

    def test_counts_nan_values(self):
        series = pd.Series([1, np.nan, 3, np.nan, 5])

        result = detect_missing_in_variable(series)

        assert result["total_count"] == 5
        assert result["missing_count"] == 2
        assert result["valid_count"] == 3
        assert result["missing_fraction"] == pytest.approx(0.4)

    def test_counts_none_and_pd_na(self):
        series = pd.Series(["a", None, pd.NA, "b"], dtype="object")
        assert detect_missing_in_variable(series)["missing_count"] == 2

    def test_empty_series(self):
        result = detect_missing_in_variable(pd.Series([], dtype=float))
        assert result["missing_fraction"] == 0.0


class TestProfileMissingness:
    """Tests for profile_missingness function."""

    def test_only_incomplete_variables_sorted_by_name(self):
        df = pd.DataFrame(
            {
                "zeta": [1.0, np.nan, 3.0, 4.0],
                "alpha": [np.nan, np.nan, 1.0, 2.0],
                "complete": [1.0, 2.0, 3.0, 4.0],
            }
        )

        summary = profile_missingness(df)

        assert list(summary.columns) == ["Variable", "N_Missing", "Fraction_Missing"]
        assert summary["Variable"].tolist() == ["alpha", "zeta"]
        assert summary["N_Missing"].tolist() == [2, 1]
        assert summary["Fraction_Missing"].tolist() == pytest.approx([0.5, 0.25])

    def test_fractions_in_unit_interval(self, cohort_df):
        summary = profile_missingness(cohort_df)
        assert ((summary["Fraction_Missing"] > 0) & (summary["Fraction_Missing"] <= 1)).all()
        assert set(summary["Variable"]) == {"exposure", "outcome"}

    def test_column_subset(self, cohort_df):
        summary = profile_missingness(cohort_df, ["age", "exposure"])
        assert summary["Variable"].tolist() == ["exposure"]

    def test_complete_table_gives_empty_profile(self, complete_df):
        summary = profile_missingness(complete_df)
        assert summary.empty
        assert list(summary.columns) == ["Variable", "N_Missing", "Fraction_Missing"]

    def test_does_not_mutate_input(self, cohort_df):
        before = cohort_df.copy()
        profile_missingness(cohort_df)
        pd.testing.assert_frame_equal(cohort_df, before)

    def test_unknown_column(self, cohort_df):
        with pytest.raises(FormulaError):
            profile_missingness(cohort_df, ["weight"])


class TestValidateTable:
    def test_empty_table(self):
        with pytest.raises(ValueError):
            validate_table(pd.DataFrame(), [])

    def test_none_table(self):
        with pytest.raises(ValueError):
            validate_table(None, ["x"])

    def test_unknown_column_names_variable(self):
        df = pd.DataFrame({"x": [1, 2]})
        with pytest.raises(FormulaError) as exc:
            validate_table(df, ["x", "y"])
        assert exc.value.variable == "y"


class TestIsCategorical:
    @pytest.mark.parametrize(
        "series, expected",
        [
            (pd.Series([1.0, 2.0]), False),
            (pd.Series([1, 2]), False),
            (pd.Series(["a", "b"]), True),
            (pd.Series([True, False]), True),
            (pd.Series(["a", "b"], dtype="category"), True),
        ],
    )
    def test_dtypes(self, series, expected):
        assert is_categorical(series) is expected
