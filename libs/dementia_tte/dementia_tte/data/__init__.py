"""Cohort simulation and validation."""

from .synthetic import EVENT_DATE_COLUMNS, SyntheticCohortGenerator
from .validation import REQUIRED_COHORT_COLUMNS, CohortValidator

__all__ = [
    "EVENT_DATE_COLUMNS",
    "REQUIRED_COHORT_COLUMNS",
    "CohortValidator",
    "SyntheticCohortGenerator",
]
