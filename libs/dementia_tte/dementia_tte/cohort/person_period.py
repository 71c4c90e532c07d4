"""Person-period (long format) data for sequential trial emulation.

Follow-up after index is split into fixed-length periods. Each row states
whether the patient was on treatment at the start of the period, whether the
outcome, loss to follow-up or a competing event occurred during the period,
and whether the patient could still enter a new trial in that period.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np
import pandas as pd

from ..core.base import DataValidationError, require_columns
from .outcomes import OUTCOMES

logger = logging.getLogger(__name__)

COMPETING_EVENT_HANDLING = ("censor", "composite", "competing")
DEFAULT_BASELINE_COVARIATES = (
    "age_at_index",
    "female",
    "diabetes",
    "hypertension",
    "smoking",
    "bmi",
    "ldl",
)


class PersonPeriodBuilder:
    """Build person-period rows from person-level time-to-event data.

    Period ``k`` covers days ``(k * L, (k + 1) * L]`` after index, where
    ``L`` is the period length. Treatment started on day ``s`` counts from
    the first period starting on or after ``s``. Patients who started
    treatment before index are never eligible to start a trial.
    """

    def __init__(
        self,
        period_length_days: int = 30,
        max_periods: int | None = None,
        outcome: str = "dementia",
        competing_event_handling: str = "censor",
        baseline_covariates: Sequence[str] = DEFAULT_BASELINE_COVARIATES,
        id_col: str = "patient_id",
    ):
        """Initialize the builder.

        Args:
            period_length_days: Length of one period in days
            max_periods: Administrative end of follow-up, in periods
            outcome: One of ``dementia``, ``death`` or ``dementia_or_death``
            competing_event_handling: For the dementia outcome, treat death as
                censoring (``censor``), part of the outcome (``composite``) or
                a separate competing event (``competing``)
            baseline_covariates: Person-level columns copied to every row
            id_col: Patient identifier column
        """
        if period_length_days <= 0:
            raise ValueError("period_length_days must be positive")
        if max_periods is not None and max_periods <= 0:
            raise ValueError("max_periods must be positive")
        if outcome not in OUTCOMES:
            raise ValueError(f"outcome must be one of {OUTCOMES}")
        if competing_event_handling not in COMPETING_EVENT_HANDLING:
            raise ValueError(
                f"competing_event_handling must be one of {COMPETING_EVENT_HANDLING}"
            )

        self.period_length_days = period_length_days
        self.max_periods = max_periods
        self.outcome = outcome
        self.competing_event_handling = competing_event_handling
        self.baseline_covariates = list(baseline_covariates)
        self.id_col = id_col

    @property
    def effective_outcome(self) -> str:
        """Outcome actually modelled once competing-event handling is applied."""
        if self.outcome == "dementia" and self.competing_event_handling == "composite":
            return "dementia_or_death"
        return self.outcome

    @property
    def censoring_reason_col(self) -> str:
        return "censoring_reason_death" if self.outcome == "death" else "censoring_reason"

    def build(self, data: pd.DataFrame) -> pd.DataFrame:
        """Expand person-level data into one row per patient per period.

        Args:
            data: Output of ``derive_time_to_event``

        Returns:
            DataFrame with ``id``, ``period``, ``treatment``, ``outcome``,
            ``censored``, ``eligible``, ``ever_treated``, ``age``, baseline
            covariates and, for competing handling, ``competing_event``
        """
        outcome = self.effective_outcome
        df = self._with_derived_covariates(data)
        require_columns(
            df,
            [
                self.id_col,
                "index_date",
                "age_at_index",
                "treatment_start_date",
                "treatment_stop_date",
                "end_of_data_date",
                "death_date",
                f"event_{outcome}",
                f"time_{outcome}_days",
                self.censoring_reason_col,
            ]
            + self.baseline_covariates,
            "person-period formatting",
        )
        if df[self.id_col].duplicated().any():
            raise DataValidationError("Person-level data must have one row per patient")

        L = self.period_length_days
        time_days = df[f"time_{outcome}_days"].to_numpy(dtype=float)
        if np.any(~np.isfinite(time_days)) or np.any(time_days <= 0):
            raise DataValidationError("Follow-up time must be positive for every patient")

        event = df[f"event_{outcome}"].to_numpy(dtype=int)
        last_period = ((time_days - 1) // L).astype(int)

        competing = np.zeros(len(df), dtype=int)
        if outcome == "dementia":
            competing = (
                (df["death_date"] <= df["index_date"] + pd.to_timedelta(time_days, unit="D"))
                & (event == 0)
            ).to_numpy(dtype=int)

        lost = (
            (df[self.censoring_reason_col] == "end_of_data").to_numpy()
            & (event == 0)
            & (competing == 0)
        ).astype(int)

        capped = np.zeros(len(df), dtype=bool)
        if self.max_periods is not None:
            capped = last_period >= self.max_periods
            last_period = np.minimum(last_period, self.max_periods - 1)
        event = np.where(capped, 0, event)
        competing = np.where(capped, 0, competing)
        lost = np.where(capped, 0, lost)

        if self.competing_event_handling == "censor":
            lost = np.maximum(lost, competing)

        n_rows = last_period + 1
        pp = df.loc[df.index.repeat(n_rows)].copy()
        pp["period"] = pp.groupby(level=0).cumcount()
        is_last = pp["period"].to_numpy() == np.repeat(last_period, n_rows)

        start_days = (pp["treatment_start_date"] - pp["index_date"]).dt.days
        stop_days = (pp["treatment_stop_date"] - pp["index_date"]).dt.days
        period_start = pp["period"] * L
        on_treatment = (start_days <= period_start) & ~(stop_days <= period_start)

        out = pd.DataFrame(
            {
                "id": pp[self.id_col].to_numpy(),
                "period": pp["period"].to_numpy(),
                "treatment": on_treatment.to_numpy(dtype=int),
                "outcome": np.where(is_last, np.repeat(event, n_rows), 0),
                "censored": np.where(is_last, np.repeat(lost, n_rows), 0),
            }
        )
        if self.competing_event_handling == "competing" and outcome == "dementia":
            out["competing_event"] = np.where(is_last, np.repeat(competing, n_rows), 0)

        # Cumulative-sum flags: trials can only start before any treatment
        cum_treatment = out.groupby("id")["treatment"].cumsum()
        prior_treatment = cum_treatment - out["treatment"]
        prevalent = (start_days < 0).to_numpy()
        out["ever_treated"] = (cum_treatment > 0).astype(int)
        out["eligible"] = ((prior_treatment == 0) & ~prevalent).astype(int)
        if prevalent.any():
            n_prevalent = out.loc[prevalent, "id"].nunique()
            logger.info(f"{n_prevalent:,} prevalent users are not eligible for any trial")

        out["age"] = (
            pp["age_at_index"].to_numpy() + period_start.to_numpy() / 365.25
        ).round(2)
        for col in self.baseline_covariates:
            out[col] = pp[col].to_numpy()

        out = out.sort_values(["id", "period"]).reset_index(drop=True)

        logger.info(
            f"Person-period data: {len(out):,} rows for {out['id'].nunique():,} "
            f"patients, {int(out['outcome'].sum()):,} outcome events, "
            f"{int(out['censored'].sum()):,} censored"
        )
        return out

    def _with_derived_covariates(self, data: pd.DataFrame) -> pd.DataFrame:
        """Add model-ready codings of person-level covariates."""
        df = data.reset_index(drop=True)
        if "female" not in df.columns and "sex" in df.columns:
            df["female"] = (df["sex"] == "F").astype(int)
        return df
