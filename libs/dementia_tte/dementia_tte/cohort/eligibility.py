"""Eligibility criteria for the emulated trial population.

Criteria are applied one after another so that the number of patients
removed by each step can be reported as an attrition table.
"""

from __future__ import annotations

import logging
from typing import Any, Union

import pandas as pd
from pydantic import BaseModel, Field, field_validator, model_validator

from ..core.base import DataValidationError, require_columns

logger = logging.getLogger(__name__)

ATTRITION_COLUMNS = ["step", "n_before", "n_excluded", "n_remaining"]


class EligibilityCriteria(BaseModel):
    """Eligibility criteria for target trial participants."""

    min_age: Union[float, None] = Field(65, description="Minimum age at index")
    max_age: Union[float, None] = Field(None, description="Maximum age at index")
    lookback_days: int = Field(
        365, description="Days of registration required before index"
    )
    exclude_prior_dementia: bool = Field(
        True, description="Exclude dementia diagnosed on or before index"
    )
    exclude_prior_death: bool = Field(
        True, description="Exclude records with death on or before index"
    )
    exclude_prevalent_users: bool = Field(
        True, description="Exclude treatment started before index (new-user design)"
    )
    require_follow_up: bool = Field(
        True, description="Require end of data after index"
    )
    custom_criteria: dict[str, Any] = Field(
        default_factory=dict, description="Custom eligibility criteria"
    )

    @field_validator("min_age", "max_age")
    @classmethod
    def validate_age(cls, v: Union[float, None]) -> Union[float, None]:
        """Validate age values are reasonable."""
        if v is not None and (v < 0 or v > 120):
            raise ValueError("Age must be between 0 and 120")
        return v

    @field_validator("lookback_days")
    @classmethod
    def validate_lookback(cls, v: int) -> int:
        if v < 0:
            raise ValueError("lookback_days cannot be negative")
        return v

    @model_validator(mode="after")
    def validate_age_range(self) -> "EligibilityCriteria":
        if (
            self.min_age is not None
            and self.max_age is not None
            and self.max_age < self.min_age
        ):
            raise ValueError("max_age must not be below min_age")
        return self

    def _criteria_masks(self, data: pd.DataFrame) -> list[tuple[str, pd.Series]]:
        """Build (name, pass-mask) pairs in application order.

        Missing event dates count as "no event", so NaT comparisons that
        evaluate to False keep the patient.
        """
        require_columns(data, ["index_date"], "eligibility")
        index_date = data["index_date"]
        masks: list[tuple[str, pd.Series]] = []

        if self.min_age is not None or self.max_age is not None:
            require_columns(data, ["age_at_index"], "age criteria")
            age = data["age_at_index"]
            if self.min_age is not None:
                masks.append((f"age >= {self.min_age:g}", age >= self.min_age))
            if self.max_age is not None:
                masks.append((f"age <= {self.max_age:g}", age <= self.max_age))

        if self.lookback_days:
            require_columns(data, ["registration_date"], "lookback criteria")
            registered_days = (index_date - data["registration_date"]).dt.days
            masks.append(
                (
                    f"lookback >= {self.lookback_days} days",
                    registered_days >= self.lookback_days,
                )
            )

        if self.exclude_prior_dementia:
            require_columns(data, ["prior_dementia_date", "dementia_date"], "dementia")
            prior = (data["prior_dementia_date"] <= index_date) | (
                data["dementia_date"] <= index_date
            )
            masks.append(("no dementia before index", ~prior))

        if self.exclude_prior_death:
            require_columns(data, ["death_date"], "death")
            masks.append(("alive at index", ~(data["death_date"] <= index_date)))

        if self.exclude_prevalent_users:
            require_columns(data, ["treatment_start_date"], "new-user criterion")
            masks.append(
                (
                    "no treatment before index",
                    ~(data["treatment_start_date"] < index_date),
                )
            )

        if self.require_follow_up:
            require_columns(data, ["end_of_data_date"], "follow-up criterion")
            masks.append(
                ("follow-up after index", data["end_of_data_date"] > index_date)
            )

        for column, criteria in self.custom_criteria.items():
            if column not in data.columns:
                raise DataValidationError(
                    f"Custom criterion references unknown column '{column}'"
                )
            if isinstance(criteria, (list, tuple)):
                if len(criteria) != 2:
                    raise ValueError(
                        f"Range criterion for '{column}' needs exactly two bounds"
                    )
                mask = (data[column] >= criteria[0]) & (data[column] <= criteria[1])
                name = f"{column} in [{criteria[0]}, {criteria[1]}]"
            elif isinstance(criteria, dict):
                if "in" in criteria:
                    mask = data[column].isin(criteria["in"])
                    name = f"{column} in {criteria['in']}"
                elif "not_in" in criteria:
                    mask = ~data[column].isin(criteria["not_in"])
                    name = f"{column} not in {criteria['not_in']}"
                else:
                    raise ValueError(
                        f"Dictionary criterion for '{column}' needs 'in' or 'not_in'"
                    )
            else:
                mask = data[column] == criteria
                name = f"{column} == {criteria}"
            masks.append((name, mask))

        return masks

    def check_eligibility(self, data: pd.DataFrame) -> pd.Series:
        """Check which patients meet all eligibility criteria.

        Args:
            data: Person-level cohort data

        Returns:
            Boolean Series indicating eligibility
        """
        eligible = pd.Series(True, index=data.index)
        for _, mask in self._criteria_masks(data):
            eligible &= mask.fillna(False).astype(bool)
        return eligible

    def apply(self, data: pd.DataFrame) -> tuple[pd.DataFrame, pd.DataFrame]:
        """Filter the cohort and report attrition per criterion.

        Args:
            data: Person-level cohort data

        Returns:
            Tuple of (eligible patients, attrition table)
        """
        rows = []
        keep = pd.Series(True, index=data.index)
        for name, mask in self._criteria_masks(data):
            n_before = int(keep.sum())
            keep &= mask.fillna(False).astype(bool)
            n_remaining = int(keep.sum())
            rows.append(
                {
                    "step": name,
                    "n_before": n_before,
                    "n_excluded": n_before - n_remaining,
                    "n_remaining": n_remaining,
                }
            )

        attrition = pd.DataFrame(rows, columns=ATTRITION_COLUMNS)
        eligible = data.loc[keep].reset_index(drop=True)

        logger.info(
            f"Eligibility: {len(eligible):,}/{len(data):,} patients retained "
            f"after {len(rows)} criteria"
        )
        for row in rows:
            logger.debug(f"  {row['step']}: excluded {row['n_excluded']:,}")

        if eligible.empty:
            logger.warning("No patients meet the eligibility criteria")

        return eligible, attrition

    def get_summary(self) -> str:
        """Generate a human-readable summary of the criteria."""
        lines = ["Eligibility Criteria:"]
        if self.min_age is not None or self.max_age is not None:
            age_range = f"{self.min_age or 'any'}-{self.max_age or 'any'} years"
            lines.append(f"  - Age at index: {age_range}")
        if self.lookback_days:
            lines.append(f"  - Registered >= {self.lookback_days} days before index")
        if self.exclude_prior_dementia:
            lines.append("  - No dementia diagnosis on or before index")
        if self.exclude_prior_death:
            lines.append("  - Alive at index")
        if self.exclude_prevalent_users:
            lines.append("  - No treatment before index (new users only)")
        for column, criteria in self.custom_criteria.items():
            lines.append(f"  - {column}: {criteria}")
        return "\n".join(lines)
