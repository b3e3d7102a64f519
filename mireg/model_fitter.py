"""
📈 Model Fitter for Completed Tables

Fits the outcome model on one completed table:
- Linear (OLS, least squares, residual-based covariance) for continuous outcomes
- Cumulative-logit ordinal regression (maximum likelihood, inverse-information
  covariance) for ordinal outcomes

The design comes from a frozen DesignSpec so that every replicate yields the
same parameter structure. For each covariate a joint Wald test is computed
over exactly its columns (spline and multi-level terms get one multi-df
test), and spline covariates additionally get a test of their nonlinear
columns.

A design that is not of full column rank raises SingularDesignError; it is
never fixed by dropping columns.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Literal, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats
from statsmodels.miscmodels.ordinal_model import OrderedModel
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from config import CONFIG
from logger import get_logger
from mireg.design import ColumnInfo, DesignSpec
from mireg.errors import FormulaError, SingularDesignError
from mireg.formula import Formula
from mireg.missing_data import is_categorical
from mireg.multiple_imputation import CompletedTable

logger = get_logger(__name__)

Family = Literal["linear", "ordinal"]
FAMILIES = ("linear", "ordinal")
STAGE = "model"


@dataclass(frozen=True)
class WaldTest:
    """Joint Wald test over a block of coefficients."""

    statistic: float  # chi-square form, b' V^-1 b
    df: int
    p_value: float
    df_denominator: float = np.inf  # F reference when finite

    @property
    def f_statistic(self) -> float:
        return self.statistic / self.df


@dataclass
class FitResult:
    """Coefficients, covariance and per-covariate tests of one fitted replicate."""

    family: str
    coef: pd.Series
    cov: pd.DataFrame
    columns: list[ColumnInfo]
    blocks: dict[str, list[int]]
    nonlinear_blocks: dict[str, list[int]]
    n_obs: int
    df_resid: float
    scale: float
    log_likelihood: float
    term_tests: dict[str, WaldTest] = field(default_factory=dict)
    nonlinear_tests: dict[str, WaldTest] = field(default_factory=dict)
    converged: bool = True

    @property
    def term_names(self) -> list[str]:
        return list(self.coef.index)


def wald_p_value(statistic: float, df: int, df_denominator: float = np.inf) -> float:
    """Chi-square p-value, or F(df, df_denominator) on statistic/df when the denominator df is finite."""
    if np.isfinite(df_denominator):
        return float(stats.f.sf(statistic / df, df, df_denominator))
    return float(stats.chi2.sf(statistic, df))


def wald_test(
    coef: np.ndarray,
    cov: np.ndarray,
    indices: list[int],
    df_denominator: float = np.inf,
) -> WaldTest:
    """
    Joint Wald test that the coefficients at `indices` are all zero.

    Parameters:
        coef: Coefficient vector
        cov: Coefficient covariance matrix
        indices: Positions of the tested block
        df_denominator: Residual df for an F reference (inf for chi-square)
    """
    idx = np.asarray(indices, dtype=int)
    b = np.asarray(coef, dtype=float)[idx]
    V = np.asarray(cov, dtype=float)[np.ix_(idx, idx)]
    statistic = float(b @ np.linalg.solve(V, b))
    df = len(idx)
    return WaldTest(statistic, df, wald_p_value(statistic, df, df_denominator), df_denominator)


def build_design(formula: Formula, df: pd.DataFrame, family: Family) -> DesignSpec:
    """Freeze the outcome-model design; ordinal models carry no intercept column."""
    if family not in FAMILIES:
        raise ValueError(f"Unknown family '{family}'. Use one of {FAMILIES}")
    return DesignSpec.from_formula(formula, df, intercept=(family == "linear"))


def _check_full_rank(X: np.ndarray, columns: list[ColumnInfo], add_constant: bool) -> None:
    n, p = X.shape
    M = np.column_stack([np.ones(n), X]) if add_constant else X
    offset = 1 if add_constant else 0

    if n <= M.shape[1]:
        raise SingularDesignError(f"{n} observations for {M.shape[1]} design columns", stage=STAGE)

    if np.linalg.matrix_rank(M) == M.shape[1]:
        return

    # Name the first column that adds no rank
    for j in range(M.shape[1]):
        if np.linalg.matrix_rank(M[:, : j + 1]) < j + 1:
            info = columns[j - offset] if j >= offset else None
            variable = info.covariate if info is not None else None
            column = info.name if info is not None else "constant"
            raise SingularDesignError(
                f"design matrix is not of full rank (column '{column}' is collinear)",
                variable=variable,
                stage=STAGE,
            )
    raise SingularDesignError("design matrix is not of full rank", stage=STAGE)


def _fit_linear(y: pd.Series, X: pd.DataFrame):
    model = sm.OLS(y.astype(float), X).fit()
    return model, model.params, model.cov_params(), float(model.df_resid), float(np.sqrt(model.mse_resid))


def _fit_ordinal(y: pd.Series, X: pd.DataFrame):
    if isinstance(y.dtype, pd.CategoricalDtype) and y.cat.ordered:
        present = set(y.unique())
        levels = [c for c in y.cat.categories if c in present]
    else:
        levels = sorted(pd.unique(y))
    if len(levels) < 2:
        raise FormulaError("Ordinal outcome has fewer than 2 levels", variable=str(y.name), stage=STAGE)

    endog = pd.Series(pd.Categorical(y, categories=levels, ordered=True), index=y.index, name=y.name)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        model = OrderedModel(endog, X, distr="logit").fit(
            method=CONFIG.get("modeling.ordinal_method", "bfgs"),
            maxiter=CONFIG.get("modeling.ordinal_max_iter", 500),
            disp=False,
        )
    return model, model.params, model.cov_params(), np.inf, 1.0


def fit_model(
    table: Union[CompletedTable, pd.DataFrame],
    formula: Formula,
    family: Family = "linear",
    design: DesignSpec | None = None,
) -> FitResult:
    """
    Fit the outcome model on one completed table.

    Parameters:
        table: CompletedTable or DataFrame without missing values in model columns
        formula: Outcome and tagged covariate terms
        family: 'linear' or 'ordinal'
        design: Frozen design; built from `table` when omitted

    Returns:
        FitResult

    Raises:
        FormulaError: Invalid formula or outcome type for the family.
        SingularDesignError: Design not of full column rank, or non-finite covariance.
    """
    df = table.data if isinstance(table, CompletedTable) else table
    if family not in FAMILIES:
        raise ValueError(f"Unknown family '{family}'. Use one of {FAMILIES}")

    formula.validate(df)
    if design is None:
        design = build_design(formula, df, family)
    elif design.intercept != (family == "linear"):
        raise ValueError("Design intercept does not match the model family")

    y = df[formula.outcome]
    if y.isna().any():
        raise ValueError(f"Outcome '{formula.outcome}' has {int(y.isna().sum())} missing values")
    if family == "linear" and is_categorical(y):
        raise FormulaError("Linear models need a numeric outcome", variable=formula.outcome, stage=STAGE)

    X = design.transform(df)
    _check_full_rank(X.to_numpy(), design.columns, add_constant=not design.intercept)

    if family == "linear":
        model, params, cov, df_resid, scale = _fit_linear(y, X)
        columns = list(design.columns)
        converged = True
    else:
        model, params, cov, df_resid, scale = _fit_ordinal(y, X)
        thresholds = [name for name in params.index if name not in set(design.column_names)]
        columns = list(design.columns) + [ColumnInfo(name, None, "threshold") for name in thresholds]
        converged = bool(model.mle_retvals.get("converged", True))
        if not converged:
            logger.warning("Ordinal model for '%s' did not converge", formula.outcome)

    names = [c.name for c in columns]
    params = pd.Series(np.asarray(params, dtype=float), index=names)
    cov = pd.DataFrame(np.asarray(cov, dtype=float), index=names, columns=names)
    if not np.all(np.isfinite(cov.to_numpy())):
        raise SingularDesignError("coefficient covariance is not finite", stage=STAGE)

    blocks = design.blocks()
    nonlinear_blocks = design.nonlinear_blocks()
    coef_arr, cov_arr = params.to_numpy(), cov.to_numpy()
    term_tests = {name: wald_test(coef_arr, cov_arr, idx, df_resid) for name, idx in blocks.items()}
    nonlinear_tests = {name: wald_test(coef_arr, cov_arr, idx, df_resid) for name, idx in nonlinear_blocks.items()}

    return FitResult(
        family=family,
        coef=params,
        cov=cov,
        columns=columns,
        blocks=blocks,
        nonlinear_blocks=nonlinear_blocks,
        n_obs=int(model.nobs),
        df_resid=df_resid,
        scale=scale,
        log_likelihood=float(model.llf),
        term_tests=term_tests,
        nonlinear_tests=nonlinear_tests,
        converged=converged,
    )
