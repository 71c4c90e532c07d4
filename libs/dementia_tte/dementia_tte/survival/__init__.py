"""Descriptive survival analysis for dementia and death."""

from .competing_risks import composite_survival, cumulative_incidence

__all__ = ["composite_survival", "cumulative_incidence"]
