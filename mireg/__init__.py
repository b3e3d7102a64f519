"""
Multiple-imputation regression modules.

Contains:
- missing_data: Missingness profiling, missing codes, table validation
- spline_basis: Restricted cubic spline knots and basis
- design: Frozen design specification (encoders, column metadata, contrasts)
- multiple_imputation: Chained PMM imputation with bootstrap refits
- model_fitter: Linear and cumulative-logit ordinal fits on completed tables
- pooling: Rubin's rules for coefficients, contrasts and joint Wald tests
- results_table: Tidy effect/test table from a pooled fit
- pipeline: fit_mult_impute() end-to-end run with optional parallel replicates
"""
