"""
Unit tests for mireg/results_table.py and mireg/formatting.py
"""

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from mireg.formatting import format_ci, format_level, format_number, format_p_value
from mireg.formula import Categorical, Formula, Linear, Spline
from mireg.model_fitter import build_design, fit_model
from mireg.pooling import pool_fits
from mireg.results_table import (
    RESULT_COLUMNS,
    build_results_table,
    format_results_table,
    reported_covariates,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def formula():
    return Formula("outcome", (Spline("age", 4), Linear("sex"), Categorical("stage"), Linear("sbp")))


@pytest.fixture
def pooled_linear(complete_df, formula):
    design = build_design(formula, complete_df, "linear")
    fit = fit_model(complete_df, formula, design=design)
    return pool_fits([fit]), design


class TestBuildResultsTable:
    def test_rows_in_formula_order(self, pooled_linear):
        pooled, design = pooled_linear
        table = build_results_table(pooled, design)

        assert list(table.columns) == RESULT_COLUMNS
        assert table["Variable"].tolist() == ["age", "age", "sex", "stage", "stage", "sbp"]
        assert table["Component"].tolist() == ["Effect", "Nonlinear", "Effect", "Effect", "Effect", "Effect"]

    def test_no_intercept_row(self, pooled_linear):
        pooled, design = pooled_linear
        table = build_results_table(pooled, design)
        assert "Intercept" not in table["Variable"].tolist()
        assert "Intercept" not in reported_covariates(pooled)

    def test_continuous_effect_is_quartile_contrast(self, pooled_linear, complete_df):
        pooled, design = pooled_linear
        table = build_results_table(pooled, design)
        row = table[table["Variable"] == "sbp"].iloc[0]

        q1, q3 = np.quantile(complete_df["sbp"], [0.25, 0.75])
        assert row["Reference"] == pytest.approx(q1)
        assert row["Comparison"] == pytest.approx(q3)
        assert row["Effect"] == pytest.approx(pooled.coef["sbp"] * (q3 - q1))
        assert row["CI Lower"] < row["Effect"] < row["CI Upper"]

    def test_categorical_rows(self, pooled_linear):
        pooled, design = pooled_linear
        table = build_results_table(pooled, design)
        stage = table[table["Variable"] == "stage"]

        assert stage["Reference"].tolist() == ["I", "I"]
        assert stage["Comparison"].tolist() == ["II", "III"]
        assert stage["Effect"].tolist() == pytest.approx(
            [pooled.coef["stage=II"], pooled.coef["stage=III"]]
        )
        # Both rows carry the joint 2-df test
        assert stage["df"].tolist() == [2, 2]

    def test_nonlinear_row(self, pooled_linear):
        pooled, design = pooled_linear
        table = build_results_table(pooled, design)
        row = table[table["Component"] == "Nonlinear"].iloc[0]

        assert row["Variable"] == "age"
        assert np.isnan(row["Effect"])
        assert row["df"] == 2
        assert row["Statistic"] == pytest.approx(pooled.nonlinear_tests["age"].f_statistic)
        assert row["df Denominator"] == pytest.approx(pooled.nonlinear_tests["age"].df_denominator)

    def test_linear_p_values_reproducible_from_row(self, pooled_linear):
        pooled, design = pooled_linear
        table = build_results_table(pooled, design)

        expected = stats.f.sf(table["Statistic"], table["df"], table["df Denominator"])
        np.testing.assert_allclose(table["P-value"], expected)
        sbp = pooled.term_tests["sbp"]
        assert table.loc[table["Variable"] == "sbp", "Statistic"].iloc[0] == pytest.approx(sbp.statistic)

    def test_without_nonlinear_rows(self, pooled_linear):
        pooled, design = pooled_linear
        table = build_results_table(pooled, design, include_nonlinear=False)
        assert "Nonlinear" not in table["Component"].tolist()
        assert len(table) == 5

    def test_labels(self, pooled_linear):
        pooled, design = pooled_linear
        table = build_results_table(pooled, design, labels={"sbp": "Systolic BP (mmHg)"})
        assert "Systolic BP (mmHg)" in table["Variable"].tolist()

    def test_wider_interval_for_higher_level(self, pooled_linear):
        pooled, design = pooled_linear
        narrow = build_results_table(pooled, design, ci_level=0.90)
        wide = build_results_table(pooled, design, ci_level=0.99)
        assert (wide["CI Upper"] - wide["CI Lower"]).sum() > (narrow["CI Upper"] - narrow["CI Lower"]).sum()

    def test_mismatched_design(self, pooled_linear, complete_df):
        pooled, _ = pooled_linear
        other = build_design(Formula("outcome", (Linear("bmi"),)), complete_df, "linear")
        with pytest.raises(ValueError):
            build_results_table(pooled, other)

    def test_ordinal_effects_are_odds_ratios(self, complete_df):
        df = complete_df.copy()
        df["grade"] = pd.cut(df["outcome"], bins=[-np.inf, 9.5, 11, 12.5, np.inf], labels=False)
        formula = Formula("grade", (Linear("age"), Linear("exposure")))
        design = build_design(formula, df, "ordinal")
        pooled = pool_fits([fit_model(df, formula, "ordinal", design=design)])

        table = build_results_table(pooled, design)

        # thresholds never become rows
        assert table["Variable"].tolist() == ["age", "exposure"]
        row = table[table["Variable"] == "exposure"].iloc[0]
        assert row["Reference"] == 0.0 and row["Comparison"] == 1.0
        assert row["Effect"] == pytest.approx(np.exp(pooled.coef["exposure"]))
        assert 0 < row["CI Lower"] < row["Effect"] < row["CI Upper"]

        # Single ordinal fit: chi-square form, no denominator df
        assert table["df Denominator"].isna().all()
        np.testing.assert_allclose(table["P-value"], stats.chi2.sf(table["Statistic"], table["df"]))


class TestFormatResultsTable:
    def test_text_columns(self, pooled_linear):
        pooled, design = pooled_linear
        text = format_results_table(build_results_table(pooled, design))

        assert "Effect (95% CI)" in text.columns
        assert text.loc[1, "Effect (95% CI)"] == "-"  # nonlinear row
        assert text.loc[1, "Reference"] == ""
        assert " to " in text.loc[0, "Effect (95% CI)"]


class TestFormatting:
    @pytest.mark.parametrize(
        "p_value, expected",
        [
            (0.0001, "<0.001"),
            (0.9999, ">0.999"),
            (0.045, "0.045"),
            (0.5, "0.500"),
            (np.nan, "-"),
            (None, "-"),
        ],
    )
    def test_format_p_value(self, p_value, expected):
        assert format_p_value(p_value) == expected

    def test_format_number(self):
        assert format_number(1.23456) == "1.23"
        assert format_number(np.inf) == "Inf"
        assert format_number(np.nan) == "-"

    def test_format_ci(self):
        assert format_ci(1.234, 0.98, 1.55) == "1.23 (0.98 to 1.55)"
        assert format_ci(np.nan, np.nan, np.nan) == "-"

    def test_format_level(self):
        assert format_level(120.0) == "120"
        assert format_level("III") == "III"
        assert format_level(None) == ""
