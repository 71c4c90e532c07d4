"""Validation of person-level cohort extracts.

Catches the data problems that would otherwise surface deep inside the
eligibility and outcome steps: missing columns, non-date event columns,
duplicated patients and impossible date orderings.
"""

from __future__ import annotations

import logging

import pandas as pd

from ..core.base import DataValidationError
from .synthetic import EVENT_DATE_COLUMNS

logger = logging.getLogger(__name__)

REQUIRED_COHORT_COLUMNS = [
    "patient_id",
    "birth_date",
    "registration_date",
    "index_date",
] + EVENT_DATE_COLUMNS


class CohortValidator:
    """Validator for person-level cohort data."""

    def __init__(self, id_col: str = "patient_id", max_missing_index: float = 0.0):
        """Initialize the validator.

        Args:
            id_col: Patient identifier column
            max_missing_index: Tolerated share of rows without an index date
        """
        self.id_col = id_col
        self.max_missing_index = max_missing_index
        self.warnings: list[str] = []
        self.errors: list[str] = []

    def validate(self, cohort: pd.DataFrame) -> None:
        """Run all checks and raise if any error was found.

        Raises:
            DataValidationError: If validation fails
        """
        self.warnings = []
        self.errors = []

        missing = [c for c in REQUIRED_COHORT_COLUMNS if c not in cohort.columns]
        if missing:
            raise DataValidationError(f"Cohort is missing columns: {missing}")

        self._check_identifiers(cohort)
        self._check_date_types(cohort)
        if not self.errors:
            self._check_date_order(cohort)

        for msg in self.warnings:
            logger.warning(msg)

        if self.errors:
            raise DataValidationError(
                "Cohort validation failed:\n"
                + "\n".join(f"  - {err}" for err in self.errors)
            )

    def _check_identifiers(self, cohort: pd.DataFrame) -> None:
        ids = cohort[self.id_col]
        if ids.isna().any():
            self.errors.append("Patient identifiers cannot be missing")
        n_dupes = int(ids.duplicated().sum())
        if n_dupes:
            self.errors.append(f"{n_dupes} duplicated patient identifiers")

    def _check_date_types(self, cohort: pd.DataFrame) -> None:
        for col in ["birth_date", "registration_date", "index_date"] + EVENT_DATE_COLUMNS:
            if not pd.api.types.is_datetime64_any_dtype(cohort[col]):
                self.errors.append(f"Column '{col}' must hold datetimes")

        share_missing = cohort["index_date"].isna().mean()
        if share_missing > self.max_missing_index:
            self.errors.append(f"{share_missing:.1%} of patients have no index date")
        if cohort["end_of_data_date"].isna().any():
            self.errors.append("end_of_data_date cannot be missing")

    def _check_date_order(self, cohort: pd.DataFrame) -> None:
        born_after_index = (cohort["birth_date"] >= cohort["index_date"]).sum()
        if born_after_index:
            self.errors.append(f"{born_after_index} patients born on/after index date")

        stop_before_start = (
            cohort["treatment_stop_date"] < cohort["treatment_start_date"]
        ).sum()
        if stop_before_start:
            self.errors.append(
                f"{stop_before_start} treatment stop dates precede the start date"
            )

        for col in ["dementia_date", "death_date"]:
            after_end = (cohort[col] > cohort["end_of_data_date"]).sum()
            if after_end:
                self.warnings.append(
                    f"{after_end} {col} values fall after end of data and will be ignored"
                )

        dementia_after_death = (cohort["dementia_date"] > cohort["death_date"]).sum()
        if dementia_after_death:
            self.warnings.append(
                f"{dementia_after_death} dementia diagnoses recorded after death"
            )
