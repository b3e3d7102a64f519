"""
🧪 Pytest Configuration for mireg tests

Shared fixtures:
- cohort_df: 200-row clinical cohort with missing exposure and outcome
- complete_df: the same cohort before missing values are introduced
- ordinal_df: cohort with an ordered 0-4 outcome
"""

import numpy as np
import pandas as pd
import pytest

from config import CONFIG


def _make_cohort(n: int = 200, seed: int = 42) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    age = rng.normal(62, 11, n).round(0)
    sbp = rng.normal(135, 18, n).round(0)
    bmi = rng.normal(27, 4, n).round(1)
    creatinine = rng.lognormal(0, 0.3, n).round(2)
    sex = rng.choice(["F", "M"], n)
    stage = rng.choice(["I", "II", "III"], n, p=[0.5, 0.3, 0.2])
    exposure = rng.binomial(1, 0.4, n).astype(float)

    outcome = (
        10
        + 0.08 * (age - 60)
        + 0.002 * (age - 60) ** 2
        + 0.03 * (sbp - 135)
        + 0.5 * (sex == "M")
        + 1.5 * exposure
        + np.select([stage == "II", stage == "III"], [0.8, 1.6], 0.0)
        + rng.normal(0, 1.5, n)
    )

    return pd.DataFrame(
        {
            "outcome": outcome.round(2),
            "exposure": exposure,
            "age": age,
            "sbp": sbp,
            "bmi": bmi,
            "creatinine": creatinine,
            "sex": sex,
            "stage": stage,
        }
    )


@pytest.fixture
def complete_df():
    return _make_cohort()


@pytest.fixture
def cohort_df(complete_df):
    """Exposure 15% missing, outcome 10% missing, covariates complete."""
    rng = np.random.default_rng(7)
    df = complete_df.copy()
    n = len(df)
    df.loc[rng.choice(n, int(0.15 * n), replace=False), "exposure"] = np.nan
    df.loc[rng.choice(n, int(0.10 * n), replace=False), "outcome"] = np.nan
    return df


@pytest.fixture
def ordinal_df(complete_df):
    """Ordinal 0-4 outcome derived from the continuous one, 10% missing."""
    rng = np.random.default_rng(11)
    df = complete_df.copy()
    df["mrs"] = pd.cut(df["outcome"], bins=5, labels=False).astype(float)
    df = df.drop(columns="outcome")
    n = len(df)
    df.loc[rng.choice(n, int(0.10 * n), replace=False), "mrs"] = np.nan
    df.loc[rng.choice(n, int(0.15 * n), replace=False), "exposure"] = np.nan
    return df


@pytest.fixture
def restore_config():
    """Snapshot CONFIG and restore it after the test."""
    import copy

    snapshot = copy.deepcopy(CONFIG._config)
    yield CONFIG
    CONFIG._config = snapshot


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")


def pytest_sessionstart(session):
    print("\n" + "=" * 70)
    print("📊 Starting Test Session")
    print("=" * 70)


def pytest_sessionfinish(session, exitstatus):
    print("\n" + "=" * 70)
    print("✅ Test Session Complete")
    print("=" * 70)
