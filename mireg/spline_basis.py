"""
📈 Restricted Cubic Spline Basis

Builds the restricted (natural) cubic spline basis used for nonlinear
covariate effects, both in the conditional imputation models and in the
final outcome model.

For knots t_1 < ... < t_k the basis has k-1 columns: x itself and k-2
nonlinear terms

    X_j = [(x - t_j)^3_+ - (x - t_{k-1})^3_+ (t_k - t_j)/(t_k - t_{k-1})
           + (x - t_k)^3_+ (t_{k-1} - t_j)/(t_k - t_{k-1})] / (t_k - t_1)^2

so the fitted function is cubic between knots with continuous second
derivative and linear beyond the outer knots.

Knots are frozen when the basis is fitted; every later transform reuses them,
so coefficients stay comparable across imputations.

References:
    Harrell, F.E. (2015). Regression Modeling Strategies, 2nd ed., Section 2.4.5.
    Stone, C.J. & Koo, C.Y. (1985). Additive splines in statistics.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd

from mireg.errors import InsufficientVariability

# Default knot quantiles by knot count (Harrell, RMS Table 2.3)
DEFAULT_KNOT_QUANTILES: dict[int, tuple[float, ...]] = {
    3: (0.10, 0.50, 0.90),
    4: (0.05, 0.35, 0.65, 0.95),
    5: (0.05, 0.275, 0.50, 0.725, 0.95),
    6: (0.05, 0.23, 0.41, 0.59, 0.77, 0.95),
    7: (0.025, 0.1833, 0.3417, 0.50, 0.6583, 0.8167, 0.975),
}

# Below this many observations the outer knots move to the 5th extreme values
SMALL_SAMPLE_N = 100


def _observed(values) -> np.ndarray:
    x = pd.to_numeric(pd.Series(values), errors="coerce").to_numpy(dtype=float)
    return x[np.isfinite(x)]


def compute_knots(
    values: Sequence[float],
    n_knots: int,
    name: str | None = None,
    stage: str | None = None,
) -> np.ndarray:
    """
    Knot locations at the default quantiles of the observed values.

    Parameters:
        values: Numeric values; missing entries are ignored
        n_knots: Number of knots (>= 3)
        name: Variable name used in error messages
        stage: "imputation" or "model", reported in errors

    Returns:
        Strictly increasing array of `n_knots` knot locations

    Raises:
        InsufficientVariability: Fewer than `n_knots` distinct observed values,
            or quantile knots that coincide.
    """
    if n_knots < 3:
        raise ValueError(f"Restricted cubic splines need at least 3 knots (got {n_knots})")

    x = np.sort(_observed(values))
    n_distinct = len(np.unique(x))
    if n_distinct < n_knots:
        raise InsufficientVariability(
            f"{n_distinct} distinct observed values, {n_knots} knots requested",
            variable=name,
            stage=stage,
        )

    probs = DEFAULT_KNOT_QUANTILES.get(n_knots)
    if probs is None:
        probs = tuple(np.linspace(0.025, 0.975, n_knots))

    knots = np.quantile(x, probs)

    n = len(x)
    if 10 <= n < SMALL_SAMPLE_N:
        knots[0] = x[4]
        knots[-1] = x[n - 5]

    if np.any(np.diff(knots) <= 0):
        raise InsufficientVariability(
            f"knots at quantiles {list(np.round(probs, 4))} are not distinct: {list(knots)}",
            variable=name,
            stage=stage,
        )

    return knots


@dataclass(frozen=True)
class RCSBasis:
    """Frozen restricted cubic spline basis for one variable."""

    name: str
    knots: tuple

    @classmethod
    def fit(
        cls, values: Sequence[float], n_knots: int, name: str = "x", stage: str | None = None
    ) -> "RCSBasis":
        """Place knots on the observed values and freeze them."""
        knots = compute_knots(values, n_knots, name=name, stage=stage)
        return cls(name=name, knots=tuple(float(k) for k in knots))

    @property
    def n_knots(self) -> int:
        return len(self.knots)

    @property
    def n_columns(self) -> int:
        return self.n_knots - 1

    @property
    def column_names(self) -> list[str]:
        """`x`, `x'`, `x''`, ... as in rms output."""
        return [self.name + "'" * j for j in range(self.n_columns)]

    def nonlinear(self, values) -> np.ndarray:
        """The k-2 nonlinear columns for `values` (NaN propagates)."""
        x = np.asarray(values, dtype=float).reshape(-1)
        t = np.asarray(self.knots)
        k = len(t)
        norm = (t[-1] - t[0]) ** 2
        span = t[-1] - t[-2]

        def cube(u):
            return np.where(np.isnan(u), np.nan, np.maximum(u, 0.0) ** 3)

        tail_a = cube(x - t[-2])
        tail_b = cube(x - t[-1])
        cols = np.empty((len(x), k - 2))
        for j in range(k - 2):
            cols[:, j] = (
                cube(x - t[j])
                - tail_a * (t[-1] - t[j]) / span
                + tail_b * (t[-2] - t[j]) / span
            ) / norm
        return cols

    def transform(self, values) -> np.ndarray:
        """Full basis: x followed by the nonlinear columns, shape (n, k-1)."""
        x = np.asarray(values, dtype=float).reshape(-1)
        return np.column_stack([x, self.nonlinear(x)])

    def transform_frame(self, values, index=None) -> pd.DataFrame:
        return pd.DataFrame(self.transform(values), columns=self.column_names, index=index)

    def effect_curve(self, coefs: Sequence[float], values) -> np.ndarray:
        """
        Map basis coefficients back to the single fitted effect f(x).

        Parameters:
            coefs: The k-1 coefficients of this variable's basis columns
            values: Points at which to evaluate the curve
        """
        coefs = np.asarray(coefs, dtype=float)
        if coefs.shape != (self.n_columns,):
            raise ValueError(f"Expected {self.n_columns} coefficients, got {coefs.shape}")
        return self.transform(values) @ coefs

    def restate(self, coefs: Sequence[float]) -> tuple[float, np.ndarray]:
        """
        Restate the fit in unrestricted truncated-power form.

            f(x) = b * x + sum_i c_i (x - t_i)^3_+

        Returns:
            (b, c) where c has one coefficient per knot. The last two cubic
            coefficients are implied by the linearity constraints, so
            sum(c) == 0 and sum(c * t) == 0.
        """
        coefs = np.asarray(coefs, dtype=float)
        if coefs.shape != (self.n_columns,):
            raise ValueError(f"Expected {self.n_columns} coefficients, got {coefs.shape}")

        t = np.asarray(self.knots)
        norm = (t[-1] - t[0]) ** 2
        span = t[-1] - t[-2]
        beta = coefs[1:] / norm
        inner = t[:-2]

        cubic = np.zeros(len(t))
        cubic[:-2] = beta
        cubic[-2] = -np.sum(beta * (t[-1] - inner)) / span
        cubic[-1] = np.sum(beta * (t[-2] - inner)) / span
        return float(coefs[0]), cubic
