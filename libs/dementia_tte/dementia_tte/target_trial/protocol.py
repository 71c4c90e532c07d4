"""Target trial analysis protocol specification and validation.

This module implements the TrialEmulationProtocol class: which columns of the
person-period data play which role, which covariates enter the switching,
censoring and outcome models, and which estimand is emulated.
"""

from __future__ import annotations

from typing import Any, Union

import pandas as pd
from pydantic import BaseModel, Field, field_validator, model_validator

ESTIMANDS = {"ITT", "PP"}
POOL_OPTIONS = {"none", "numerator", "both"}


class TrialEmulationProtocol(BaseModel):
    """Specification of a sequential target trial analysis.

    The switching models are only used for the per-protocol estimand. The
    censoring models are used whenever ``censored_col`` is set.
    """

    estimand: str = Field("ITT", description="ITT or PP")

    # Column roles in the person-period data
    id_col: str = Field("id", description="Patient identifier column")
    period_col: str = Field("period", description="Period column")
    treatment_col: str = Field("treatment", description="Binary treatment column")
    outcome_col: str = Field("outcome", description="Binary outcome column")
    eligible_col: str = Field("eligible", description="Trial eligibility column")
    censored_col: Union[str, None] = Field(
        "censored", description="Loss to follow-up column (None disables IPCW)"
    )
    competing_event_col: Union[str, None] = Field(
        None, description="Competing event column, if modelled separately"
    )

    # Weight models
    switch_numerator_covariates: list[str] = Field(
        default_factory=list, description="Baseline covariates, switch numerator"
    )
    switch_denominator_covariates: list[str] = Field(
        default_factory=list,
        description="Baseline and time-varying covariates, switch denominator",
    )
    censor_numerator_covariates: list[str] = Field(
        default_factory=list, description="Covariates, censoring numerator"
    )
    censor_denominator_covariates: list[str] = Field(
        default_factory=list, description="Covariates, censoring denominator"
    )
    pool_censor_models: str = Field(
        "none",
        description="Pool censoring models over previous treatment: none, numerator, both",
    )
    include_period_terms: bool = Field(
        True, description="Add period and period^2 to weight models"
    )
    stabilized: bool = Field(True, description="Use stabilized weights")

    # Outcome model and expansion
    outcome_covariates: list[str] = Field(
        default_factory=list, description="Baseline covariates for the outcome model"
    )
    first_period: Union[int, None] = Field(None, description="First trial period")
    last_period: Union[int, None] = Field(None, description="Last trial period")
    followup_max: Union[int, None] = Field(None, description="Maximum follow-up")

    @field_validator("estimand")
    @classmethod
    def validate_estimand(cls, v: str) -> str:
        """Validate estimand."""
        v = v.upper()
        if v not in ESTIMANDS:
            raise ValueError(f"estimand must be one of {ESTIMANDS}")
        return v

    @field_validator("pool_censor_models")
    @classmethod
    def validate_pool(cls, v: str) -> str:
        if v not in POOL_OPTIONS:
            raise ValueError(f"pool_censor_models must be one of {POOL_OPTIONS}")
        return v

    @field_validator("first_period", "last_period", "followup_max")
    @classmethod
    def validate_non_negative(cls, v: Union[int, None]) -> Union[int, None]:
        if v is not None and v < 0:
            raise ValueError("period limits must be non-negative")
        return v

    @model_validator(mode="after")
    def validate_period_window(self) -> "TrialEmulationProtocol":
        if (
            self.first_period is not None
            and self.last_period is not None
            and self.first_period > self.last_period
        ):
            raise ValueError("first_period must not exceed last_period")
        return self

    @property
    def uses_switch_weights(self) -> bool:
        return self.estimand == "PP"

    @property
    def uses_censor_weights(self) -> bool:
        return self.censored_col is not None

    def model_covariates(self) -> list[str]:
        """All covariates referenced by any model, without duplicates."""
        covariates: list[str] = []
        groups = [self.outcome_covariates]
        if self.uses_switch_weights:
            groups += [
                self.switch_numerator_covariates,
                self.switch_denominator_covariates,
            ]
        if self.uses_censor_weights:
            groups += [
                self.censor_numerator_covariates,
                self.censor_denominator_covariates,
            ]
        for group in groups:
            for col in group:
                if col not in covariates:
                    covariates.append(col)
        return covariates

    def required_columns(self) -> list[str]:
        """Columns the person-period data must contain."""
        cols = [
            self.id_col,
            self.period_col,
            self.treatment_col,
            self.outcome_col,
            self.eligible_col,
        ]
        if self.censored_col is not None:
            cols.append(self.censored_col)
        if self.competing_event_col is not None:
            cols.append(self.competing_event_col)
        return cols + [c for c in self.model_covariates() if c not in cols]

    def validate_against_data(self, data: pd.DataFrame) -> dict[str, Any]:
        """Validate protocol specification against available data.

        Args:
            data: Person-period data

        Returns:
            Dictionary with validation results
        """
        validation: dict[str, Any] = {
            "valid": True,
            "errors": [],
            "warnings": [],
            "missing_variables": [],
        }

        missing_vars = [var for var in self.required_columns() if var not in data.columns]
        if missing_vars:
            validation["valid"] = False
            validation["missing_variables"] = missing_vars
            validation["errors"].extend(
                [f"Missing variable: {var}" for var in missing_vars]
            )
            return validation

        if self.eligible_col in data.columns and data[self.eligible_col].sum() == 0:
            validation["valid"] = False
            validation["errors"].append("No eligible person-periods")

        if self.uses_switch_weights and not self.switch_denominator_covariates:
            validation["warnings"].append(
                "Per-protocol analysis without switch denominator covariates"
            )

        if self.uses_censor_weights and not self.censor_denominator_covariates:
            validation["warnings"].append(
                "Censoring weights requested without denominator covariates"
            )

        for col in self.outcome_covariates:
            if col in self.switch_denominator_covariates and col not in (
                self.switch_numerator_covariates
            ):
                validation["warnings"].append(
                    f"Outcome covariate '{col}' is only in the switch denominator"
                )

        return validation

    def get_protocol_summary(self) -> str:
        """Generate a human-readable summary of the protocol.

        Returns:
            String summary of the analysis protocol
        """
        lines = [
            "Target Trial Protocol Summary",
            "=" * 40,
            "",
            f"Estimand: {'intention-to-treat' if self.estimand == 'ITT' else 'per-protocol'}",
            f"Outcome: {self.outcome_col}",
            f"Treatment: {self.treatment_col}",
        ]

        first = self.first_period if self.first_period is not None else "first"
        last = self.last_period if self.last_period is not None else "last"
        lines.append(f"Trial periods: {first} to {last}")
        if self.followup_max is not None:
            lines.append(f"Maximum follow-up: {self.followup_max} periods")

        if self.uses_switch_weights:
            lines.extend(
                [
                    "",
                    "Treatment switching weights:",
                    f"  numerator: {', '.join(self.switch_numerator_covariates) or '1'}",
                    f"  denominator: {', '.join(self.switch_denominator_covariates) or '1'}",
                ]
            )
        if self.uses_censor_weights:
            lines.extend(
                [
                    "",
                    f"Censoring weights (pooling: {self.pool_censor_models}):",
                    f"  numerator: {', '.join(self.censor_numerator_covariates) or '1'}",
                    f"  denominator: {', '.join(self.censor_denominator_covariates) or '1'}",
                ]
            )
        if self.competing_event_col is not None:
            lines.extend(["", f"Competing event: {self.competing_event_col}"])

        lines.extend(
            [
                "",
                f"Outcome model covariates: {', '.join(self.outcome_covariates) or 'none'}",
            ]
        )
        return "\n".join(lines)
