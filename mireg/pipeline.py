"""
🔗 Multiple-Imputation Regression Pipeline

fit_mult_impute() runs the whole chain for one analysis:

    profile missingness -> freeze imputation model and outcome design
    -> for each replicate: impute, fit -> pool (Rubin's rules) -> results table

Replicates run sequentially by default. With n_jobs > 1 they run in a thread
pool: each replicate owns its working table and random stream while the
imputation model and design are shared read-only. Pooling starts only after
all M fits have returned. The first replicate error is logged and re-raised.
A threading.Event may be passed to stop between replicates.
"""

from __future__ import annotations

import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

import pandas as pd

from config import CONFIG
from logger import get_logger
from mireg.design import DesignSpec
from mireg.errors import AnalysisCancelled, MIRegError
from mireg.formula import Formula
from mireg.missing_data import profile_missingness
from mireg.model_fitter import Family, FitResult, build_design, fit_model
from mireg.multiple_imputation import (
    CompletedTable,
    ImputationConfig,
    ImputationModel,
    ImputationResult,
    ImputationState,
)
from mireg.pooling import PooledResult, pool_fits
from mireg.results_table import build_results_table

logger = get_logger(__name__)


@dataclass
class MIAnalysis:
    """Everything produced by one fit_mult_impute() run."""

    formula: Formula
    family: str
    missingness: pd.DataFrame
    imputation_model: ImputationModel
    imputation: ImputationResult
    design: DesignSpec
    fits: list[FitResult]
    pooled: PooledResult
    results: pd.DataFrame
    timings: dict[str, list] = field(default_factory=dict)

    @property
    def n_imputations(self) -> int:
        return self.pooled.n_imputations

    @property
    def completed_tables(self) -> list[CompletedTable]:
        return self.imputation.completed_tables


def _run_replicate(
    model: ImputationModel,
    df: pd.DataFrame,
    replicate: int,
    formula: Formula,
    family: Family,
    design: DesignSpec,
) -> tuple[ImputationState, FitResult]:
    if model.targets:
        state = ImputationState(model, df, replicate).run()
    else:
        state = ImputationState(model, df, replicate)
    fit = fit_model(state.freeze(), formula, family, design=design)
    logger.debug("Replicate %d fitted (n=%d)", replicate + 1, fit.n_obs)
    return state, fit


def _run_sequential(n_replicates, run_one, stop_event):
    results = []
    for r in range(n_replicates):
        if stop_event is not None and stop_event.is_set():
            raise AnalysisCancelled(
                f"Cancelled after {len(results)} of {n_replicates} replicates",
                completed=[fit for _, fit in results],
            )
        results.append(run_one(r))
    return results


def _run_parallel(n_replicates, run_one, stop_event, n_jobs):
    results: dict[int, tuple] = {}

    def guarded(r):
        if stop_event is not None and stop_event.is_set():
            return None
        return run_one(r)

    with ThreadPoolExecutor(max_workers=n_jobs) as executor:
        futures = {executor.submit(guarded, r): r for r in range(n_replicates)}
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        if pending:
            # Replicates not yet started are dropped; running ones finish on shutdown
            for future in pending:
                future.cancel()
            for future in done:
                if future.exception() is not None:
                    raise future.exception()
        for future, r in futures.items():
            value = future.result()
            if value is not None:
                results[r] = value

    if len(results) < n_replicates:
        completed = [results[r][1] for r in sorted(results)]
        raise AnalysisCancelled(
            f"Cancelled after {len(completed)} of {n_replicates} replicates",
            completed=completed,
        )
    return [results[r] for r in range(n_replicates)]


def fit_mult_impute(
    df: pd.DataFrame,
    formula: Formula,
    family: Family = "linear",
    config: ImputationConfig | None = None,
    n_jobs: int | None = None,
    stop_event: threading.Event | None = None,
    labels: dict[str, str] | None = None,
    columns: list[str] | None = None,
) -> MIAnalysis:
    """
    Impute, fit and pool a regression model on an incomplete table.

    Args:
        df: Table with missing cells (never modified)
        formula: Outcome and tagged covariate terms
        family: 'linear' or 'ordinal'
        config: Imputation settings (defaults from CONFIG['imputation'])
        n_jobs: Parallel replicates (default CONFIG['performance.n_jobs'])
        stop_event: Set to stop between replicates
        labels: Display labels for the results table
        columns: Variables used for imputation (default: formula variables);
            extra names act as auxiliary predictors

    Returns:
        MIAnalysis

    Raises:
        FormulaError, InsufficientVariability, ImputationModelFitError,
        SingularDesignError: First failure in any stage.
        AnalysisCancelled: stop_event was set; carries the completed fits.
    """
    config = config or ImputationConfig()
    n_jobs = n_jobs or CONFIG.get("performance.n_jobs", 1)
    timing_mark = logger.timing_marks()

    imputation_columns = list(formula.variables)
    if columns:
        imputation_columns += [c for c in columns if c not in imputation_columns]

    logger.log_operation(
        "fit_mult_impute",
        "started",
        formula=str(formula),
        family=family,
        m=config.n_imputations,
        n_jobs=n_jobs,
    )
    logger.log_analysis("Multiple imputation regression", formula.outcome, len(formula.terms), len(df))

    try:
        formula.validate(df)
        missingness = profile_missingness(df, imputation_columns)
        for row in missingness.itertuples(index=False):
            logger.debug("Missing: %s %d (%.1f%%)", row.Variable, row.N_Missing, 100 * row.Fraction_Missing)

        with logger.track_time("build_models"):
            model = ImputationModel.build(df, config, imputation_columns)
            design = build_design(formula, df, family)

        n_replicates = config.n_imputations if model.targets else 1
        if not model.targets:
            logger.warning("No missing data in model variables; fitting the observed table once")

        def run_one(r):
            return _run_replicate(model, df, r, formula, family, design)

        with logger.track_time("replicates"):
            if n_jobs > 1 and n_replicates > 1:
                results = _run_parallel(n_replicates, run_one, stop_event, n_jobs)
            else:
                results = _run_sequential(n_replicates, run_one, stop_event)

        states = [s for s, _ in results]
        fits = [f for _, f in results]

        with logger.track_time("pooling"):
            pooled = pool_fits(fits)
            results_table = build_results_table(pooled, design, labels=labels)

    except AnalysisCancelled as e:
        logger.log_operation("fit_mult_impute", "cancelled", completed=len(e.completed))
        raise
    except (MIRegError, ValueError) as e:
        logger.log_operation("fit_mult_impute", "failed", error=str(e))
        raise

    convergence: dict[str, list[list[float]]] = {}
    for state in states:
        for name, trace in state.trace.items():
            convergence.setdefault(name, []).append(trace)

    imputation = ImputationResult(
        completed_tables=[s.freeze() for s in states],
        n_imputations=n_replicates,
        columns_imputed=model.target_names,
        convergence_data=convergence,
        original_missing_mask=df[model.columns].isna(),
    )

    logger.log_operation(
        "fit_mult_impute",
        "completed",
        m=n_replicates,
        parameters=len(pooled.coef),
        converged=pooled.converged,
        rows=len(results_table),
    )

    return MIAnalysis(
        formula=formula,
        family=family,
        missingness=missingness,
        imputation_model=model,
        imputation=imputation,
        design=design,
        fits=fits,
        pooled=pooled,
        results=results_table,
        timings=logger.get_timings(since=timing_mark),
    )
