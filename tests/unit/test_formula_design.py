"""
Unit tests for mireg/formula.py and mireg/design.py

Tests formula validation, encoder freezing, design column metadata,
covariate blocks and effect contrasts.
"""

import numpy as np
import pandas as pd
import pytest

from config import CONFIG
from mireg.design import (
    INTERCEPT,
    CategoricalEncoder,
    DesignSpec,
    LinearEncoder,
    SplineEncoder,
    build_encoder,
)
from mireg.errors import FormulaError, InsufficientVariability
from mireg.formula import Categorical, Formula, Linear, Spline

pytestmark = pytest.mark.unit


@pytest.fixture
def formula():
    return Formula("outcome", (Spline("age", 4), Linear("sex"), Categorical("stage", "I"), Linear("sbp")))


class TestFormula:
    def test_str(self, formula):
        assert str(formula) == "outcome ~ rcs(age, 4) + sex + catg(stage) + sbp"

    def test_variables(self, formula):
        assert formula.covariates == ["age", "sex", "stage", "sbp"]
        assert formula.variables == ["outcome", "age", "sex", "stage", "sbp"]
        assert formula.spline_terms == [Spline("age", 4)]

    def test_spline_knots_default_from_config(self, restore_config):
        assert Spline("age").knots == 4
        CONFIG.update("modeling.default_knots", 5)
        assert Spline("age").knots == 5
        assert str(Spline("age")) == "rcs(age, 5)"

    def test_terms_list_becomes_tuple(self):
        f = Formula("y", [Linear("x")])
        assert f.terms == (Linear("x"),)

    def test_valid_against_table(self, formula, cohort_df):
        formula.validate(cohort_df)

    def test_outcome_among_covariates(self):
        with pytest.raises(FormulaError) as exc:
            Formula("y", (Linear("x"), Linear("y"))).validate()
        assert exc.value.variable == "y"

    def test_duplicate_covariate(self):
        with pytest.raises(FormulaError):
            Formula("y", (Linear("x"), Spline("x", 3))).validate()

    def test_too_few_knots(self):
        with pytest.raises(FormulaError):
            Formula("y", (Spline("x", 2),)).validate()

    def test_no_terms(self):
        with pytest.raises(FormulaError):
            Formula("y", ()).validate()

    def test_unknown_column(self, cohort_df):
        with pytest.raises(FormulaError) as exc:
            Formula("outcome", (Linear("weight"),)).validate(cohort_df)
        assert exc.value.variable == "weight"

    def test_spline_on_categorical_column(self, cohort_df):
        with pytest.raises(FormulaError):
            Formula("outcome", (Spline("sex", 3),)).validate(cohort_df)


class TestEncoders:
    def test_linear_limits_are_quartiles(self, complete_df):
        enc = LinearEncoder.fit(complete_df["sbp"])
        q1, q3 = np.quantile(complete_df["sbp"], [0.25, 0.75])
        assert enc.limits == pytest.approx((q1, q3))

    def test_binary_limits_fall_back_to_range(self):
        enc = LinearEncoder.fit(pd.Series([0.0, 0.0, 0.0, 0.0, 1.0], name="flag"))
        assert enc.limits == (0.0, 1.0)

    def test_spline_columns(self, complete_df):
        enc = SplineEncoder.fit(complete_df["age"], 4)
        kinds = [c.kind for c in enc.columns]
        assert [c.name for c in enc.columns] == ["age", "age'", "age''"]
        assert kinds == ["linear", "nonlinear", "nonlinear"]

    def test_spline_insufficient_variability(self):
        series = pd.Series([1.0, 2.0, 1.0, 2.0, 1.0, 2.0], name="score")
        with pytest.raises(InsufficientVariability) as exc:
            SplineEncoder.fit(series, 3, stage="model")
        assert exc.value.variable == "score"

    def test_categorical_levels_and_reference(self, complete_df):
        enc = CategoricalEncoder.fit(complete_df["stage"], "II")
        assert enc.levels == ["I", "II", "III"]
        assert enc.comparison_levels == ["I", "III"]
        assert [c.name for c in enc.columns] == ["stage=I", "stage=III"]

    def test_categorical_respects_category_order(self):
        series = pd.Series(
            pd.Categorical(["low", "high", "mid", "low"], categories=["low", "mid", "high"], ordered=True),
            name="grade",
        )
        enc = CategoricalEncoder.fit(series)
        assert enc.levels == ["low", "mid", "high"]
        assert enc.reference == "low"

    def test_categorical_unobserved_reference(self, complete_df):
        with pytest.raises(FormulaError):
            CategoricalEncoder.fit(complete_df["stage"], "IV")

    def test_categorical_single_level(self):
        with pytest.raises(FormulaError):
            CategoricalEncoder.fit(pd.Series(["a", "a", None], name="g"))

    def test_categorical_unseen_level_on_encode(self, complete_df):
        enc = CategoricalEncoder.fit(complete_df["stage"])
        with pytest.raises(ValueError):
            enc.encode(["I", "IV"])

    def test_linear_term_on_text_column_is_categorical(self, complete_df):
        enc = build_encoder(Linear("sex"), complete_df["sex"])
        assert isinstance(enc, CategoricalEncoder)
        assert enc.reference == "F"


class TestDesignSpec:
    def test_columns_and_kinds(self, formula, cohort_df):
        design = DesignSpec.from_formula(formula, cohort_df)

        assert design.column_names == [
            INTERCEPT,
            "age",
            "age'",
            "age''",
            "sex=M",
            "stage=II",
            "stage=III",
            "sbp",
        ]
        assert design.columns[0].is_nuisance
        assert not any(c.is_nuisance for c in design.columns[1:])
        assert design.covariates == ["age", "sex", "stage", "sbp"]

    def test_no_intercept(self, formula, cohort_df):
        design = DesignSpec.from_formula(formula, cohort_df, intercept=False)
        assert INTERCEPT not in design.column_names

    def test_blocks(self, formula, cohort_df):
        design = DesignSpec.from_formula(formula, cohort_df)
        assert design.blocks() == {"age": [1, 2, 3], "sex": [4], "stage": [5, 6], "sbp": [7]}
        assert design.nonlinear_blocks() == {"age": [2, 3]}

    def test_transform(self, formula, complete_df):
        design = DesignSpec.from_formula(formula, complete_df)
        X = design.transform(complete_df)

        assert X.shape == (len(complete_df), 8)
        assert (X[INTERCEPT] == 1.0).all()
        np.testing.assert_allclose(X["sbp"], complete_df["sbp"])
        np.testing.assert_allclose(X["sex=M"], (complete_df["sex"] == "M").astype(float))
        assert X.index.equals(complete_df.index)

    def test_transform_rejects_missing(self, formula, cohort_df, complete_df):
        design = DesignSpec.from_formula(formula, complete_df)
        df = complete_df.copy()
        df.loc[0, "sbp"] = np.nan
        with pytest.raises(ValueError):
            design.transform(df)

    def test_knots_frozen_from_original_table(self, formula, cohort_df, complete_df):
        design = DesignSpec.from_formula(formula, cohort_df)
        shifted = complete_df.copy()
        shifted["age"] = shifted["age"] + 100

        before = design.encoder("age").basis.knots
        design.transform(shifted)
        assert design.encoder("age").basis.knots == before

    def test_contrast_linear(self, formula, complete_df):
        design = DesignSpec.from_formula(formula, complete_df)
        d = design.contrast("sbp", 120.0, 150.0)
        expected = np.zeros(8)
        expected[7] = 30.0
        np.testing.assert_allclose(d, expected)

    def test_contrast_categorical(self, formula, complete_df):
        design = DesignSpec.from_formula(formula, complete_df)
        d = design.contrast("stage", "I", "III")
        np.testing.assert_allclose(d[[5, 6]], [0.0, 1.0])
        assert d[[0, 1, 2, 3, 4, 7]].sum() == 0

    def test_contrast_spline(self, formula, complete_df):
        design = DesignSpec.from_formula(formula, complete_df)
        basis = design.encoder("age").basis
        d = design.contrast("age", 50.0, 70.0)
        np.testing.assert_allclose(d[1:4], basis.transform([70.0])[0] - basis.transform([50.0])[0])
