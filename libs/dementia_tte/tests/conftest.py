"""Shared test fixtures for the dementia target trial emulation library.

This module provides a small hand-built cohort with known event dates, a
simulated cohort, and simulated person-period data with time-varying
confounding for the weighting and outcome model tests.
"""

import numpy as np
import pandas as pd
import pytest
from scipy.special import expit

from dementia_tte.data.synthetic import SyntheticCohortGenerator

INDEX_DATE = pd.Timestamp("2010-01-01")
STUDY_END = pd.Timestamp("2014-12-31")


def _offset(days):
    return pd.NaT if days is None else INDEX_DATE + pd.Timedelta(days=days)


@pytest.fixture
def random_state():
    """Provide a consistent random state for reproducible tests."""
    return 42


@pytest.fixture
def tiny_cohort():
    """Nine patients with known event dates, all indexed on 2010-01-01.

    Patients 1, 2, 7 and 8 pass the default eligibility criteria:
      1: dementia on day 100
      2: starts treatment on day 45, dies on day 200
      7: dementia and death on day 50
      8: leaves the data on day 75
    Patients 3 (age 60), 4 (prior dementia), 5 (prevalent user),
    6 (short registration) and 9 (death recorded before index) are excluded.
    """
    rows = [
        # id, age, sex, registered, treat start, treat stop, dementia, death, end, prior dementia
        (1, 70.0, "F", -1800, None, None, 100, None, None, None),
        (2, 72.0, "M", -1800, 45, None, None, 200, None, None),
        (3, 60.0, "F", -1800, None, None, None, None, None, None),
        (4, 75.0, "M", -1800, None, None, None, None, None, -200),
        (5, 80.0, "F", -1800, -10, None, None, None, None, None),
        (6, 68.0, "M", -200, None, None, None, None, None, None),
        (7, 66.0, "F", -1800, None, None, 50, 50, None, None),
        (8, 70.0, "M", -1800, None, None, None, None, 75, None),
        (9, 67.0, "F", -1800, None, None, None, -5, None, None),
    ]
    records = []
    for pid, age, sex, reg, start, stop, dementia, death, end, prior in rows:
        records.append(
            {
                "patient_id": pid,
                "sex": sex,
                "birth_date": INDEX_DATE - pd.Timedelta(days=round(age * 365.25)),
                "registration_date": _offset(reg),
                "index_date": INDEX_DATE,
                "diabetes": pid % 2,
                "hypertension": int(pid in (1, 2, 5)),
                "smoking": int(pid == 8),
                "bmi": 25.0 + pid,
                "ldl": 3.0 + pid / 10,
                "age_at_index": age,
                "prior_dementia_date": _offset(prior),
                "treatment_start_date": _offset(start),
                "treatment_stop_date": _offset(stop),
                "dementia_date": _offset(dementia),
                "death_date": _offset(death),
                "end_of_data_date": _offset(end) if end is not None else STUDY_END,
            }
        )
    return pd.DataFrame(records)


@pytest.fixture
def simulated_cohort(random_state):
    """Simulated person-level cohort."""
    return SyntheticCohortGenerator(random_state=random_state).generate(800)


def simulate_person_period(n_patients=400, n_periods=10, seed=42, competing=False):
    """Person-period data with a time-varying confounder ``x``.

    Treatment starts and stops depending on ``x``, which also raises the
    outcome and censoring hazards. Treatment lowers the outcome hazard.
    """
    rng = np.random.default_rng(seed)
    rows = []
    for pid in range(n_patients):
        age = rng.normal(0, 1)
        x = rng.normal(0, 1)
        treated = 0
        for period in range(n_periods):
            x = 0.7 * x + rng.normal(0, 0.5)
            if treated == 0:
                p_treat = expit(-2.0 + 0.6 * x + 0.3 * age)
            else:
                p_treat = expit(2.0 - 0.5 * x)
            treated = int(rng.random() < p_treat)

            outcome = int(rng.random() < expit(-3.2 + 0.4 * x + 0.3 * age - 0.5 * treated))
            competing_event = 0
            if competing and not outcome:
                competing_event = int(rng.random() < expit(-3.5 + 0.4 * age))
            censored = 0
            if not outcome and not competing_event:
                censored = int(rng.random() < expit(-3.0 + 0.4 * x))

            row = {
                "id": pid,
                "period": period,
                "treatment": treated,
                "x": round(x, 4),
                "age": round(age, 4),
                "outcome": outcome,
                "censored": censored,
            }
            if competing:
                row["competing_event"] = competing_event
            rows.append(row)
            if outcome or competing_event or censored:
                break

    df = pd.DataFrame(rows)
    prior_treatment = df.groupby("id")["treatment"].cumsum() - df["treatment"]
    df["eligible"] = (prior_treatment == 0).astype(int)
    return df


@pytest.fixture
def person_period():
    """Simulated person-period data."""
    return simulate_person_period()


@pytest.fixture
def person_period_competing():
    """Simulated person-period data with a competing event column."""
    return simulate_person_period(competing=True, seed=7)


@pytest.fixture
def small_person_period():
    """Two patients with hand-checkable trial expansion.

    Patient 1 starts treatment in period 2 and has the outcome in period 3;
    patient 2 is lost to follow-up in period 1.
    """
    return pd.DataFrame(
        {
            "id": [1, 1, 1, 1, 2, 2],
            "period": [0, 1, 2, 3, 0, 1],
            "treatment": [0, 0, 1, 1, 0, 0],
            "outcome": [0, 0, 0, 1, 0, 0],
            "censored": [0, 0, 0, 0, 0, 1],
            "eligible": [1, 1, 1, 0, 1, 1],
            "age": [70.0, 70.0, 70.0, 70.0, 80.0, 80.0],
        }
    )
