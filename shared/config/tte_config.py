"""Target trial emulation specific configuration."""

from datetime import date
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import SettingsConfigDict

from .base import BaseConfiguration, Environment

COMPETING_EVENT_HANDLING = {"censor", "composite", "competing"}
ESTIMANDS = {"ITT", "PP"}
ANALYSIS_WEIGHTS = {"asis", "unweighted", "p99", "weight_limits"}
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


class TrialEmulationConfig(BaseConfiguration):
    """Configuration for the dementia target trial emulation pipeline.

    Every field can be overridden with a ``TTE_``-prefixed environment
    variable, e.g. ``TTE_N_PATIENTS=5000``.
    """

    model_config = SettingsConfigDict(env_prefix="TTE_")

    # Simulation
    random_state: int = Field(default=2024, description="Seed for simulated data")
    n_patients: int = Field(default=2000, description="Number of simulated patients")
    study_start: date = Field(default=date(2005, 1, 1), description="Study start")
    study_end: date = Field(default=date(2019, 12, 31), description="Study end")

    # Eligibility
    min_age: int = Field(default=65, description="Minimum age at index")
    max_age: int | None = Field(default=None, description="Maximum age at index")
    lookback_days: int = Field(
        default=365, description="Required registration before index"
    )
    exclude_prevalent_users: bool = Field(
        default=True, description="Exclude patients treated before index"
    )

    # Person-period layout
    period_length_days: int = Field(default=30, description="Length of one period")
    max_follow_up_periods: int = Field(
        default=60, description="Administrative end of follow-up, in periods"
    )
    competing_event_handling: str = Field(
        default="censor",
        description="How death is handled for the dementia outcome",
    )

    # Analysis
    estimands: list[str] = Field(
        default_factory=lambda: ["ITT", "PP"], description="Estimands to emulate"
    )
    analysis_weights: str = Field(
        default="p99", description="Weight handling in the outcome model"
    )
    weight_limits: tuple[float, float] = Field(
        default=(0.0, 20.0), description="Bounds used with weight_limits"
    )
    confidence_level: float = Field(
        default=0.95, description="Confidence level for intervals"
    )
    n_prediction_samples: int = Field(
        default=200,
        description="Coefficient draws for cumulative incidence intervals",
    )
    prediction_horizon: int = Field(
        default=36, description="Last follow-up period for predictions"
    )

    # Output
    output_dir: Path | None = Field(
        default=None, description="Directory for CSV/JSON artefacts"
    )
    log_level: str | None = Field(
        default=None, description="Override environment-based log level"
    )

    @field_validator("competing_event_handling")
    @classmethod
    def validate_competing_event_handling(cls, v: str) -> str:
        if v not in COMPETING_EVENT_HANDLING:
            raise ValueError(
                f"competing_event_handling must be one of {COMPETING_EVENT_HANDLING}"
            )
        return v

    @field_validator("estimands")
    @classmethod
    def validate_estimands(cls, v: list[str]) -> list[str]:
        v = [e.upper() for e in v]
        unknown = set(v) - ESTIMANDS
        if unknown or not v:
            raise ValueError(f"estimands must be a non-empty subset of {ESTIMANDS}")
        return v

    @field_validator("analysis_weights")
    @classmethod
    def validate_analysis_weights(cls, v: str) -> str:
        if v not in ANALYSIS_WEIGHTS:
            raise ValueError(f"analysis_weights must be one of {ANALYSIS_WEIGHTS}")
        return v

    @field_validator("confidence_level")
    @classmethod
    def validate_confidence_level(cls, v: float) -> float:
        if not 0 < v < 1:
            raise ValueError("Confidence level must be between 0 and 1")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str | None) -> str | None:
        if v is not None and v.upper() not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {LOG_LEVELS}")
        return v.upper() if v is not None else v

    @field_validator("n_patients", "period_length_days", "max_follow_up_periods")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @model_validator(mode="after")
    def validate_ranges(self) -> "TrialEmulationConfig":
        if self.study_end <= self.study_start:
            raise ValueError("study_end must be after study_start")
        if self.max_age is not None and self.max_age < self.min_age:
            raise ValueError("max_age must not be below min_age")
        low, high = self.weight_limits
        if low < 0 or high <= low:
            raise ValueError("weight_limits must satisfy 0 <= low < high")
        return self

    def validate_configuration(self) -> list[str]:
        """Validate emulation specific configuration."""
        issues = super().validate_configuration()

        if self.environment == Environment.PRODUCTION:
            if self.output_dir is None:
                issues.append("No output_dir set; artefacts will not be written")
            if self.n_prediction_samples < 100:
                issues.append("Fewer than 100 prediction samples give unstable CIs")

        if self.prediction_horizon >= self.max_follow_up_periods:
            issues.append("prediction_horizon reaches the administrative end of follow-up")

        if self.n_patients < 500:
            issues.append("Small cohorts may leave weight models without events")

        if self.analysis_weights == "unweighted" and "PP" in self.estimands:
            issues.append("Unweighted per-protocol estimates are subject to selection bias")

        return issues
