"""Cohort construction: eligibility, outcomes and person-period data."""

from .eligibility import ATTRITION_COLUMNS, EligibilityCriteria
from .outcomes import (
    CENSORED,
    DEATH,
    DEMENTIA,
    OUTCOMES,
    derive_time_to_event,
    summarize_outcomes,
)
from .person_period import DEFAULT_BASELINE_COVARIATES, PersonPeriodBuilder

__all__ = [
    "ATTRITION_COLUMNS",
    "CENSORED",
    "DEATH",
    "DEFAULT_BASELINE_COVARIATES",
    "DEMENTIA",
    "OUTCOMES",
    "EligibilityCriteria",
    "PersonPeriodBuilder",
    "derive_time_to_event",
    "summarize_outcomes",
]
