"""Synthetic patient cohorts with event dates for target trial emulation.

This module simulates the person-level extract an observational study of
statin initiation and incident dementia starts from: registration and index
dates, baseline covariates, treatment start/stop dates, and dates of
dementia diagnosis, death and end of data collection.
"""

from __future__ import annotations

import logging
from datetime import date

import numpy as np
import pandas as pd
from scipy.special import expit

from ..core.base import DataValidationError

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365.25

EVENT_DATE_COLUMNS = [
    "prior_dementia_date",
    "treatment_start_date",
    "treatment_stop_date",
    "dementia_date",
    "death_date",
    "end_of_data_date",
]


class SyntheticCohortGenerator:
    """Generator for synthetic dementia cohorts with competing death.

    Dementia and death hazards are exponential in age and comorbidities.
    Treatment lowers the dementia hazard by ``treatment_hazard_ratio`` while
    a patient is on treatment, and treatment uptake depends on LDL
    cholesterol, diabetes and hypertension, so naive comparisons are
    confounded.
    """

    def __init__(
        self,
        random_state: int | None = None,
        study_start: date | str = "2005-01-01",
        study_end: date | str = "2019-12-31",
        treatment_hazard_ratio: float = 0.7,
        prevalent_user_fraction: float = 0.15,
        loss_to_follow_up_fraction: float = 0.25,
    ):
        """Initialize the cohort generator.

        Args:
            random_state: Random seed for reproducible results
            study_start: First possible index date
            study_end: Administrative end of the data
            treatment_hazard_ratio: Dementia hazard ratio while on treatment
            prevalent_user_fraction: Share of ever-users who started before index
            loss_to_follow_up_fraction: Share of patients deregistering early
        """
        self.random_state = random_state
        self.study_start = pd.Timestamp(study_start)
        self.study_end = pd.Timestamp(study_end)
        if self.study_end - self.study_start < pd.Timedelta(days=730):
            raise DataValidationError("Study window must span at least two years")
        if treatment_hazard_ratio <= 0:
            raise ValueError("treatment_hazard_ratio must be positive")

        self.treatment_hazard_ratio = treatment_hazard_ratio
        self.prevalent_user_fraction = prevalent_user_fraction
        self.loss_to_follow_up_fraction = loss_to_follow_up_fraction
        self._rng = np.random.default_rng(random_state)

    def generate(self, n_patients: int = 2000) -> pd.DataFrame:
        """Generate one row per patient with baseline data and event dates.

        Args:
            n_patients: Number of patients to simulate

        Returns:
            DataFrame with identifiers, covariates and event date columns
        """
        if n_patients <= 0:
            raise ValueError("n_patients must be positive")

        rng = self._rng
        n = n_patients

        # Index dates leave at least a year of potential follow-up
        window_days = (self.study_end - self.study_start).days - 365
        index_offset = rng.integers(0, window_days, n)
        index_date = self.study_start + pd.to_timedelta(index_offset, unit="D")

        age = rng.uniform(55, 90, n)
        birth_date = index_date - pd.to_timedelta(
            np.round(age * DAYS_PER_YEAR), unit="D"
        )
        registration_date = index_date - pd.to_timedelta(
            rng.integers(30, 3650, n), unit="D"
        )

        sex = rng.choice(["F", "M"], size=n, p=[0.55, 0.45])
        diabetes = rng.binomial(1, 0.2, n)
        hypertension = rng.binomial(1, np.clip(0.35 + 0.01 * (age - 65), 0.1, 0.8))
        smoking = rng.binomial(1, 0.15, n)
        bmi = np.round(np.clip(rng.normal(27.0, 4.5, n), 16, 50), 1)
        ldl = np.round(np.clip(rng.normal(3.4, 0.9, n), 1.0, 8.0), 2)

        cohort = pd.DataFrame(
            {
                "patient_id": np.arange(1, n + 1),
                "sex": sex,
                "birth_date": birth_date,
                "registration_date": registration_date,
                "index_date": index_date,
                "diabetes": diabetes,
                "hypertension": hypertension,
                "smoking": smoking,
                "bmi": bmi,
                "ldl": ldl,
            }
        )
        cohort["age_at_index"] = (
            (cohort["index_date"] - cohort["birth_date"]).dt.days / DAYS_PER_YEAR
        ).round(2)

        end_rel = self._simulate_end_of_data(cohort)
        start_rel, stop_rel = self._simulate_treatment(cohort)
        death_rel = self._simulate_death(cohort)
        dementia_rel = self._simulate_dementia(cohort, start_rel, stop_rel)

        # Events are only recorded while the patient is in the data
        death_rel = np.where(death_rel <= end_rel, death_rel, np.nan)
        observed_until = np.fmin(end_rel, np.where(np.isnan(death_rel), np.inf, death_rel))
        dementia_rel = np.where(dementia_rel <= observed_until, dementia_rel, np.nan)
        start_rel = np.where(start_rel <= end_rel, start_rel, np.nan)
        stop_rel = np.where(
            np.isnan(start_rel) | (stop_rel > end_rel), np.nan, stop_rel
        )

        prior_dementia_rel = self._simulate_prior_dementia(cohort)
        dementia_rel = np.where(np.isnan(prior_dementia_rel), dementia_rel, np.nan)

        # A handful of records carry a death date at or before index
        bad_death = rng.random(n) < 0.005
        death_rel = np.where(bad_death, -rng.integers(0, 30, n), death_rel)

        for col, rel in [
            ("prior_dementia_date", prior_dementia_rel),
            ("treatment_start_date", start_rel),
            ("treatment_stop_date", stop_rel),
            ("dementia_date", dementia_rel),
            ("death_date", death_rel),
            ("end_of_data_date", end_rel),
        ]:
            cohort[col] = self._to_dates(cohort["index_date"], rel)

        logger.info(
            f"Simulated {n:,} patients: "
            f"{cohort['treatment_start_date'].notna().sum():,} ever treated, "
            f"{cohort['dementia_date'].notna().sum():,} dementia, "
            f"{cohort['death_date'].notna().sum():,} deaths"
        )
        return cohort

    def _simulate_end_of_data(self, cohort: pd.DataFrame) -> np.ndarray:
        """Days from index to deregistration or the study end."""
        rng = self._rng
        n = len(cohort)
        to_study_end = (self.study_end - cohort["index_date"]).dt.days.to_numpy()
        leaves = rng.random(n) < self.loss_to_follow_up_fraction
        leave_after = np.floor(rng.exponential(1800.0, n)) + 1
        return np.where(leaves, np.minimum(leave_after, to_study_end), to_study_end).astype(
            float
        )

    def _simulate_treatment(
        self, cohort: pd.DataFrame
    ) -> tuple[np.ndarray, np.ndarray]:
        """Days from index to treatment start and stop (NaN when absent)."""
        rng = self._rng
        n = len(cohort)
        logit = (
            -1.2
            + 0.6 * (cohort["ldl"].to_numpy() - 3.4)
            + 0.4 * cohort["diabetes"].to_numpy()
            + 0.3 * cohort["hypertension"].to_numpy()
        )
        ever = rng.random(n) < expit(logit)
        prevalent = ever & (rng.random(n) < self.prevalent_user_fraction)

        start = np.where(
            prevalent,
            -rng.integers(1, 720, n).astype(float),
            np.floor(rng.exponential(540.0, n)),
        )
        start = np.where(ever, start, np.nan)

        stops = ever & (rng.random(n) < 0.4)
        stop = np.where(stops, start + np.floor(rng.exponential(720.0, n)) + 30, np.nan)
        return start, stop

    def _simulate_death(self, cohort: pd.DataFrame) -> np.ndarray:
        """Days from index to death under an exponential hazard."""
        age = cohort["age_at_index"].to_numpy()
        rate_per_year = 0.012 * np.exp(
            0.09 * (age - 65)
            + 0.3 * cohort["diabetes"].to_numpy()
            + 0.4 * cohort["smoking"].to_numpy()
        )
        years = self._rng.exponential(1.0 / rate_per_year)
        return np.floor(years * DAYS_PER_YEAR) + 1

    def _simulate_dementia(
        self, cohort: pd.DataFrame, start_rel: np.ndarray, stop_rel: np.ndarray
    ) -> np.ndarray:
        """Days from index to dementia under a piecewise exponential hazard.

        The hazard is multiplied by the treatment hazard ratio between
        treatment start (or index, for prevalent users) and treatment stop.
        """
        age = cohort["age_at_index"].to_numpy()
        rate = (
            0.01
            * np.exp(
                0.1 * (age - 65)
                + 0.25 * cohort["diabetes"].to_numpy()
                + 0.2 * cohort["hypertension"].to_numpy()
            )
            / DAYS_PER_YEAR
        )
        hr = self.treatment_hazard_ratio

        s = np.where(np.isnan(start_rel), np.inf, np.maximum(start_rel, 0.0))
        e = np.where(np.isnan(stop_rel), np.inf, np.maximum(stop_rel, 0.0))
        e = np.maximum(e, s)
        target = self._rng.exponential(1.0, len(cohort))

        with np.errstate(invalid="ignore"):
            h_at_start = rate * s
            h_at_stop = h_at_start + rate * hr * (e - s)
            before = target / rate
            during = s + (target - h_at_start) / (rate * hr)
            after = e + (target - h_at_stop) / rate
            t = np.where(
                target < h_at_start,
                before,
                np.where(target < h_at_stop, during, after),
            )
        return np.floor(t) + 1

    def _simulate_prior_dementia(self, cohort: pd.DataFrame) -> np.ndarray:
        """Days from index to a dementia diagnosis recorded before index."""
        rng = self._rng
        n = len(cohort)
        age = cohort["age_at_index"].to_numpy()
        has_prior = rng.random(n) < np.clip(0.02 + 0.003 * (age - 65), 0.005, 0.15)
        return np.where(has_prior, -rng.integers(0, 1000, n).astype(float), np.nan)

    @staticmethod
    def _to_dates(index_date: pd.Series, rel_days: np.ndarray) -> pd.Series:
        """Convert day offsets from index (NaN allowed) into dates."""
        return index_date + pd.to_timedelta(rel_days, unit="D")
