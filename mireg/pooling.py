"""
📊 Pooling of Multiply-Imputed Fits (Rubin's rules)

Combines M per-replicate fits into one inferential result:
- Pooled estimate: θ̄ = (1/m) Σ θ_i
- Within-imputation covariance: W̄ = (1/m) Σ V_i
- Between-imputation covariance: B = (1/(m-1)) Σ (θ_i - θ̄)(θ_i - θ̄)'
- Total covariance: T = W̄ + (1 + 1/m) B

Per-coefficient degrees of freedom follow Barnard & Rubin (1999); joint
tests over multi-column covariates use the Li, Raghunathan & Rubin (1991)
denominator df. Degrees of freedom are clamped to CONFIG['pooling.max_df']
so that identical estimates across replicates (B ≈ 0) never give an infinite
or negative df.

References:
    Rubin, D.B. (1987). Multiple Imputation for Nonresponse in Surveys.
    Barnard, J. & Rubin, D.B. (1999). Small-sample degrees of freedom with multiple imputation.
    Li, K.H., Raghunathan, T.E. & Rubin, D.B. (1991). Large-sample significance levels
        from multiply imputed data using moment-based statistics and an F reference distribution.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from scipy import stats

from config import CONFIG
from logger import get_logger
from mireg.design import ColumnInfo
from mireg.model_fitter import FitResult, wald_p_value

logger = get_logger(__name__)

_EPS = 1e-12


@dataclass
class PooledEstimate:
    """Pooled scalar estimate from multiple imputation using Rubin's rules."""

    estimate: float
    se: float
    ci_lower: float
    ci_upper: float
    df: float  # Degrees of freedom
    p_value: float
    n_imputations: int
    within_variance: float
    between_variance: float
    total_variance: float
    fmi: float  # Fraction of missing information
    lambda_: float  # Proportion of variance due to missingness


@dataclass(frozen=True)
class PooledWaldTest:
    """Pooled joint Wald test over one covariate's coefficient block."""

    statistic: float  # b' T^-1 b
    df: int
    df_denominator: float
    p_value: float
    riv: float  # Average relative increase in variance, tr(B W^-1) (1 + 1/m) / k

    @property
    def f_statistic(self) -> float:
        return self.statistic / self.df


@dataclass(frozen=True)
class ContrastEstimate:
    """Pooled linear contrast d' θ̄."""

    estimate: float
    se: float
    df: float

    def confidence_interval(self, level: float = 0.95) -> tuple[float, float]:
        t_crit = stats.t.ppf(0.5 + level / 2, self.df)
        return self.estimate - t_crit * self.se, self.estimate + t_crit * self.se


def _max_df() -> float:
    return float(CONFIG.get("pooling.max_df", 1e7))


def rubin_df(lambda_: float, m: int, df_complete: float = np.inf) -> float:
    """
    Barnard-Rubin degrees of freedom for a pooled scalar.

    Parameters:
        lambda_: (1 + 1/m) B / T, proportion of variance due to missingness
        m: Number of imputations
        df_complete: Complete-data residual df (inf for likelihood models)

    Returns:
        Positive df, at most CONFIG['pooling.max_df']
    """
    max_df = _max_df()
    if m < 2:
        return float(min(df_complete, max_df))

    lam = float(np.clip(lambda_, 0.0, 1.0))
    df_old = max_df if lam < _EPS else (m - 1) / lam**2

    if np.isfinite(df_complete):
        df_obs = (df_complete + 1) / (df_complete + 3) * df_complete * (1 - lam)
        df = df_old * df_obs / (df_old + df_obs) if df_old + df_obs > 0 else 0.0
    else:
        df = df_old

    return float(min(max(df, _EPS), max_df))


def pool_estimates(
    estimates: list[float],
    variances: list[float],
    df_complete: float = np.inf,
    ci_level: float | None = None,
) -> PooledEstimate:
    """
    Pool scalar estimates from multiple imputations using Rubin's rules.

    Args:
        estimates: Point estimates from each imputation
        variances: Variance estimates from each imputation
        df_complete: Complete-data df for the small-sample correction
        ci_level: Interval coverage (default CONFIG['modeling.ci_level'])

    Returns:
        PooledEstimate with combined estimate, SE, CI, p-value and diagnostics
    """
    m = len(estimates)
    if m != len(variances):
        raise ValueError("Number of estimates must match number of variances")
    if m == 0:
        raise ValueError("No estimates provided for pooling")

    ci_level = ci_level or CONFIG.get("modeling.ci_level", 0.95)

    theta = np.asarray(estimates, dtype=float)
    V = np.asarray(variances, dtype=float)

    theta_bar = float(np.mean(theta))
    W_bar = float(np.mean(V))
    B = float(np.var(theta, ddof=1)) if m > 1 else 0.0
    T = W_bar + (1 + 1 / m) * B
    se = float(np.sqrt(T))

    lambda_ = (1 + 1 / m) * B / T if T > 0 else 0.0
    r = (1 + 1 / m) * B / W_bar if W_bar > 0 else 0.0
    df = rubin_df(lambda_, m, df_complete)

    t_stat = theta_bar / se if se > 0 else 0.0
    p_value = float(2 * stats.t.sf(abs(t_stat), df)) if se > 0 else 1.0
    t_crit = stats.t.ppf(0.5 + ci_level / 2, df)
    fmi = (r + 2 / (df + 3)) / (r + 1) if r > 0 else 0.0

    return PooledEstimate(
        estimate=theta_bar,
        se=se,
        ci_lower=float(theta_bar - t_crit * se),
        ci_upper=float(theta_bar + t_crit * se),
        df=df,
        p_value=p_value,
        n_imputations=m,
        within_variance=W_bar,
        between_variance=B,
        total_variance=float(T),
        fmi=float(fmi),
        lambda_=float(lambda_),
    )


@dataclass
class PooledResult:
    """Pooled regression results from multiple imputation."""

    family: str
    coef: pd.Series
    within: pd.DataFrame
    between: pd.DataFrame
    total: pd.DataFrame
    df: pd.Series
    lambda_: pd.Series
    fmi: pd.Series
    columns: list[ColumnInfo]
    blocks: dict[str, list[int]]
    nonlinear_blocks: dict[str, list[int]]
    n_imputations: int
    n_obs: int
    df_complete: float
    term_tests: dict[str, PooledWaldTest] = field(default_factory=dict)
    nonlinear_tests: dict[str, PooledWaldTest] = field(default_factory=dict)
    not_converged: list[int] = field(default_factory=list)  # replicate positions

    @property
    def converged(self) -> bool:
        return not self.not_converged

    @property
    def cov(self) -> pd.DataFrame:
        return self.total

    @property
    def se(self) -> pd.Series:
        return pd.Series(np.sqrt(np.diag(self.total.to_numpy())), index=self.coef.index)

    def contrast(self, d: np.ndarray) -> ContrastEstimate:
        """Pooled estimate, SE and Rubin df of the linear contrast d' θ̄."""
        d = np.asarray(d, dtype=float)
        m = self.n_imputations
        w = float(d @ self.within.to_numpy() @ d)
        b = float(d @ self.between.to_numpy() @ d)
        t = w + (1 + 1 / m) * b
        lam = (1 + 1 / m) * b / t if t > 0 else 0.0
        return ContrastEstimate(
            estimate=float(d @ self.coef.to_numpy()),
            se=float(np.sqrt(max(t, 0.0))),
            df=rubin_df(lam, m, self.df_complete),
        )

    def coef_table(self, ci_level: float | None = None) -> pd.DataFrame:
        """Per-coefficient pooled estimate, SE, CI, p-value and FMI."""
        ci_level = ci_level or CONFIG.get("modeling.ci_level", 0.95)
        se = self.se
        t_crit = stats.t.ppf(0.5 + ci_level / 2, self.df.to_numpy())
        with np.errstate(divide="ignore", invalid="ignore"):
            t_stat = np.where(se > 0, self.coef / se, 0.0)
        return pd.DataFrame(
            {
                "Variable": self.coef.index,
                "Kind": [c.kind for c in self.columns],
                "Coefficient": self.coef.to_numpy(),
                "SE": se.to_numpy(),
                "CI Lower": self.coef.to_numpy() - t_crit * se.to_numpy(),
                "CI Upper": self.coef.to_numpy() + t_crit * se.to_numpy(),
                "df": self.df.to_numpy(),
                "P-value": 2 * stats.t.sf(np.abs(t_stat), self.df.to_numpy()),
                "FMI": self.fmi.to_numpy(),
            }
        )


def _check_structure(fits: list[FitResult]) -> None:
    first = fits[0]
    for i, fit in enumerate(fits[1:], start=2):
        if fit.family != first.family:
            raise ValueError(f"Fit {i} family '{fit.family}' differs from '{first.family}'")
        if fit.term_names != first.term_names:
            raise ValueError(f"Fit {i} has a different term structure: {fit.term_names} vs {first.term_names}")
        if fit.blocks != first.blocks:
            raise ValueError(f"Fit {i} has different covariate blocks")


def pooled_wald_test(
    coef: np.ndarray,
    within: np.ndarray,
    between: np.ndarray,
    indices: list[int],
    m: int,
    df_complete: float = np.inf,
) -> PooledWaldTest:
    """
    Joint Wald test over a coefficient block using the pooled total covariance.

    Numerator df is the block size k; the denominator df is the
    Li-Raghunathan-Rubin value based on r = (1 + 1/m) tr(B W^-1) / k,
    clamped to CONFIG['pooling.max_df'] and to the complete-data df.
    """
    idx = np.asarray(indices, dtype=int)
    k = len(idx)
    b = np.asarray(coef, dtype=float)[idx]
    W = np.asarray(within, dtype=float)[np.ix_(idx, idx)]
    B = np.asarray(between, dtype=float)[np.ix_(idx, idx)]
    T = W + (1 + 1 / m) * B if m > 1 else W

    statistic = float(b @ np.linalg.solve(T, b))
    max_df = _max_df()

    if m < 2:
        return PooledWaldTest(statistic, k, df_complete, wald_p_value(statistic, k, df_complete), 0.0)

    r = float((1 + 1 / m) * np.trace(B @ np.linalg.inv(W)) / k)
    t = k * (m - 1)
    if r < _EPS:
        v = max_df
    elif t > 4:
        v = 4 + (t - 4) * (1 + (1 - 2 / t) / r) ** 2
    else:
        v = t * (1 + 1 / k) * (1 + 1 / r) ** 2 / 2
    v = float(min(v, max_df, df_complete))

    return PooledWaldTest(statistic, k, v, float(stats.f.sf(statistic / k, k, v)), r)


def pool_fits(fits: list[FitResult]) -> PooledResult:
    """
    Pool FitResults that share one term structure.

    Args:
        fits: One FitResult per completed table, in replicate order

    Returns:
        PooledResult. With a single fit this is the identity: coefficients
        and covariance are returned unchanged and the between part is zero.

    Raises:
        ValueError: Empty list or fits with differing structure.
    """
    m = len(fits)
    if m == 0:
        raise ValueError("No fits provided for pooling")
    _check_structure(fits)

    first = fits[0]
    names = first.term_names
    df_complete = first.df_resid

    if m == 1:
        coef = first.coef.copy()
        within = first.cov.copy()
        between = pd.DataFrame(0.0, index=names, columns=names)
    else:
        coefs = np.vstack([f.coef.to_numpy() for f in fits])
        coef = pd.Series(coefs.mean(axis=0), index=names)
        within = pd.DataFrame(np.mean([f.cov.to_numpy() for f in fits], axis=0), index=names, columns=names)
        between = pd.DataFrame(np.atleast_2d(np.cov(coefs, rowvar=False, ddof=1)), index=names, columns=names)

    total = within + (1 + 1 / m) * between

    w_diag = np.diag(within.to_numpy())
    b_diag = np.diag(between.to_numpy())
    t_diag = np.diag(total.to_numpy())
    with np.errstate(divide="ignore", invalid="ignore"):
        lam = np.where(t_diag > 0, (1 + 1 / m) * b_diag / t_diag, 0.0)
        riv = np.where(w_diag > 0, (1 + 1 / m) * b_diag / w_diag, 0.0)
    df = np.array([rubin_df(l, m, df_complete) for l in lam])
    fmi = np.where(riv > 0, (riv + 2 / (df + 3)) / (riv + 1), 0.0)

    coef_arr, w_arr, b_arr = coef.to_numpy(), within.to_numpy(), between.to_numpy()
    term_tests = {
        name: pooled_wald_test(coef_arr, w_arr, b_arr, idx, m, df_complete)
        for name, idx in first.blocks.items()
    }
    nonlinear_tests = {
        name: pooled_wald_test(coef_arr, w_arr, b_arr, idx, m, df_complete)
        for name, idx in first.nonlinear_blocks.items()
    }

    not_converged = [i for i, f in enumerate(fits) if not f.converged]
    if not_converged:
        logger.warning(
            "Pooling %d of %d fits that did not converge (replicates %s)",
            len(not_converged),
            m,
            [i + 1 for i in not_converged],
        )

    logger.debug("Pooled %d fits over %d parameters", m, len(names))

    return PooledResult(
        family=first.family,
        coef=coef,
        within=within,
        between=between,
        total=total,
        df=pd.Series(df, index=names),
        lambda_=pd.Series(lam, index=names),
        fmi=pd.Series(fmi, index=names),
        columns=list(first.columns),
        blocks=dict(first.blocks),
        nonlinear_blocks=dict(first.nonlinear_blocks),
        n_imputations=m,
        n_obs=first.n_obs,
        df_complete=df_complete,
        term_tests=term_tests,
        nonlinear_tests=nonlinear_tests,
        not_converged=not_converged,
    )
