"""End-to-end dementia target trial emulation pipeline.

Steps run in order: simulate (unless a cohort is supplied), validate,
eligibility, outcomes, descriptive competing-risk curves, person-period
formatting and one emulation per configured estimand. Every step is timed
in the pipeline metrics and logged; artefacts are written to
``config.output_dir`` when it is set.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from shared.config import TrialEmulationConfig, config_manager
from shared.observability import PipelineMetrics, get_metrics

from .cohort import (
    EligibilityCriteria,
    PersonPeriodBuilder,
    derive_time_to_event,
    summarize_outcomes,
)
from .core.base import TrialEmulationError
from .data import CohortValidator, SyntheticCohortGenerator
from .survival import composite_survival, cumulative_incidence
from .target_trial import (
    TargetTrialEmulator,
    TargetTrialResults,
    TrialEmulationProtocol,
    compare_itt_vs_pp,
)

logger = logging.getLogger(__name__)

# Baseline covariates of the numerator (and outcome) models
NUMERATOR_COVARIATES = ["age_at_index", "female"]
# Confounders of treatment initiation and loss to follow-up
DENOMINATOR_COVARIATES = [
    "age_at_index",
    "female",
    "diabetes",
    "hypertension",
    "smoking",
    "bmi",
    "ldl",
]


@dataclass
class PipelineResult:
    """Intermediate data and emulation results of one pipeline run."""

    config: TrialEmulationConfig
    cohort: pd.DataFrame
    attrition: pd.DataFrame
    outcomes: pd.DataFrame
    outcome_summary: pd.DataFrame
    person_period: pd.DataFrame
    results: dict[str, TargetTrialResults] = field(default_factory=dict)
    descriptive: dict[str, pd.DataFrame] = field(default_factory=dict)
    comparison: dict[str, Any] | None = None
    output_files: dict[str, Path] = field(default_factory=dict)
    metrics: dict[str, dict[str, float]] = field(default_factory=dict)

    def summary(self) -> dict[str, Any]:
        """JSON-serializable run summary."""
        return {
            "config": self.config.to_dict(),
            "n_cohort": len(self.cohort),
            "n_eligible": len(self.outcomes),
            "n_person_periods": len(self.person_period),
            "attrition": self.attrition.to_dict(orient="records"),
            "outcomes": self.outcome_summary.to_dict(orient="records"),
            "estimands": {name: res.to_dict() for name, res in self.results.items()},
            "comparison": self.comparison,
            "metrics": self.metrics,
        }


@contextmanager
def _step(name: str, metrics: PipelineMetrics) -> Iterator[dict[str, int]]:
    """Time a pipeline step; the caller stores the produced row count."""
    info = {"rows": 0}
    start = time.perf_counter()
    logger.info(f"Step '{name}' started")
    try:
        yield info
    except Exception as e:
        metrics.record_error(type(e).__name__, name)
        logger.error(f"Step '{name}' failed: {str(e)}")
        raise
    duration = time.perf_counter() - start
    metrics.record_step(name, duration, info["rows"])
    logger.info(f"Step '{name}' finished in {duration:.2f}s ({info['rows']:,} rows)")


def build_protocol(
    config: TrialEmulationConfig, estimand: str
) -> TrialEmulationProtocol:
    """Protocol for the statin-initiation trials under ``config``."""
    competing = (
        "competing_event" if config.competing_event_handling == "competing" else None
    )
    return TrialEmulationProtocol(
        estimand=estimand,
        competing_event_col=competing,
        switch_numerator_covariates=NUMERATOR_COVARIATES,
        switch_denominator_covariates=DENOMINATOR_COVARIATES,
        censor_numerator_covariates=NUMERATOR_COVARIATES,
        censor_denominator_covariates=DENOMINATOR_COVARIATES,
        outcome_covariates=NUMERATOR_COVARIATES,
        followup_max=config.max_follow_up_periods,
    )


def run_pipeline(
    config: TrialEmulationConfig | None = None,
    cohort: pd.DataFrame | None = None,
    metrics: PipelineMetrics | None = None,
) -> PipelineResult:
    """Run the full analysis.

    Args:
        config: Pipeline configuration; defaults to environment settings.
            Registered as ``pipeline`` with the global configuration manager
        cohort: Person-level cohort; simulated when omitted
        metrics: Metrics collector; defaults to the global instance

    Returns:
        PipelineResult with every intermediate table and the results per
        estimand

    Raises:
        TrialEmulationError: If a step fails on the data
    """
    config = config or TrialEmulationConfig()
    metrics = metrics or get_metrics()
    config_manager.register_configuration("pipeline", config)
    issues = config_manager.validate_all_configurations().get("pipeline", [])
    for issue in issues:
        logger.warning(f"Configuration: {issue}")

    if cohort is None:
        with _step("simulate", metrics) as step:
            cohort = SyntheticCohortGenerator(
                random_state=config.random_state,
                study_start=config.study_start,
                study_end=config.study_end,
            ).generate(config.n_patients)
            step["rows"] = len(cohort)

    with _step("validate", metrics) as step:
        CohortValidator().validate(cohort)
        step["rows"] = len(cohort)

    with _step("eligibility", metrics) as step:
        criteria = EligibilityCriteria(
            min_age=config.min_age,
            max_age=config.max_age,
            lookback_days=config.lookback_days,
            exclude_prevalent_users=config.exclude_prevalent_users,
        )
        eligible, attrition = criteria.apply(cohort)
        step["rows"] = len(eligible)
    if eligible.empty:
        raise TrialEmulationError("No patients meet the eligibility criteria")

    max_follow_up_days = config.max_follow_up_periods * config.period_length_days
    with _step("outcomes", metrics) as step:
        outcomes = derive_time_to_event(
            eligible,
            max_follow_up_days=max_follow_up_days,
            study_end=config.study_end,
        )
        outcomes["ever_treated"] = (
            outcomes["treatment_start_date"] <= outcomes["follow_up_end_date"]
        ).astype(int)
        outcome_summary = summarize_outcomes(outcomes, group_col="ever_treated")
        step["rows"] = len(outcomes)

    with _step("descriptive", metrics) as step:
        descriptive = {
            "dementia_cif": cumulative_incidence(
                outcomes,
                "time_dementia_months",
                "status_dementia_cr",
                event_of_interest=1,
                group_col="ever_treated",
            ),
            "death_cif": cumulative_incidence(
                outcomes,
                "time_dementia_months",
                "status_dementia_cr",
                event_of_interest=2,
                group_col="ever_treated",
            ),
            "composite_km": composite_survival(
                outcomes,
                "time_dementia_or_death_months",
                "event_dementia_or_death",
                group_col="ever_treated",
            ),
        }
        step["rows"] = sum(len(df) for df in descriptive.values())

    with _step("person_period", metrics) as step:
        builder = PersonPeriodBuilder(
            period_length_days=config.period_length_days,
            max_periods=config.max_follow_up_periods,
            outcome="dementia",
            competing_event_handling=config.competing_event_handling,
        )
        person_period = builder.build(outcomes)
        step["rows"] = len(person_period)

    result = PipelineResult(
        config=config,
        cohort=cohort,
        attrition=attrition,
        outcomes=outcomes,
        outcome_summary=outcome_summary,
        person_period=person_period,
        descriptive=descriptive,
    )

    prediction_times = range(0, config.prediction_horizon + 1)
    for estimand in config.estimands:
        name = estimand.lower()
        with _step(f"emulate_{name}", metrics) as step:
            emulator = TargetTrialEmulator(
                build_protocol(config, estimand),
                analysis_weights=config.analysis_weights,
                weight_limits=config.weight_limits,
                confidence_level=config.confidence_level,
                prediction_times=list(prediction_times),
                n_prediction_samples=config.n_prediction_samples,
                period_length_days=config.period_length_days,
                random_state=config.random_state,
            )
            try:
                res = emulator.emulate(person_period)
            except TrialEmulationError:
                metrics.record_model_fit(f"msm_{name}", status="failure")
                raise
            metrics.record_model_fit(f"msm_{name}")
            if res.weight_models is not None:
                for model in res.weight_models.models.values():
                    metrics.record_model_fit(
                        model.name, status="degenerate" if model.degenerate else "success"
                    )
            result.results[estimand] = res
            step["rows"] = res.diagnostics.n_expanded_rows if res.diagnostics else 0

    if "ITT" in result.results and "PP" in result.results:
        result.comparison = compare_itt_vs_pp(result.results["ITT"], result.results["PP"])
        logger.info(f"ITT vs PP: {result.comparison['interpretation']}")

    result.metrics = metrics.snapshot()
    if config.output_dir is not None:
        result.output_files = write_outputs(result, Path(config.output_dir))
    return result


def _json_default(value: Any) -> Any:
    if isinstance(value, (np.integer,)):
        return int(value)
    if isinstance(value, (np.floating,)):
        return float(value)
    if isinstance(value, np.ndarray):
        return value.tolist()
    return str(value)


def write_outputs(result: PipelineResult, output_dir: Path) -> dict[str, Path]:
    """Write CSV tables, text reports and a JSON run summary.

    Returns:
        Mapping of artefact name to written path
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    tables: dict[str, pd.DataFrame] = {
        "cohort": result.cohort,
        "attrition": result.attrition,
        "outcomes": result.outcomes,
        "outcome_summary": result.outcome_summary,
        "person_period": result.person_period,
    }
    tables.update(result.descriptive)

    for estimand, res in result.results.items():
        name = estimand.lower()
        tables[f"outcome_model_{name}"] = res.outcome_model_summary
        if res.expanded_data is not None:
            tables[f"expanded_{name}"] = res.expanded_data
        if res.cumulative_incidence is not None:
            tables[f"cumulative_incidence_{name}"] = res.cumulative_incidence
        if res.competing_model_summary is not None:
            tables[f"competing_model_{name}"] = res.competing_model_summary
        if res.weight_models is not None and res.weight_models.models:
            tables[f"weight_models_{name}"] = res.weight_models.to_frame()

    written: dict[str, Path] = {}
    for name, table in tables.items():
        path = output_dir / f"{name}.csv"
        table.to_csv(path, index=False)
        written[name] = path

    for estimand, res in result.results.items():
        path = output_dir / f"report_{estimand.lower()}.txt"
        res.generate_report(include_weight_models=True).save(path)
        written[f"report_{estimand.lower()}"] = path

    path = output_dir / "run_summary.json"
    with open(path, "w", encoding="utf-8") as f:
        json.dump(result.summary(), f, indent=2, default=_json_default)
    written["run_summary"] = path

    logger.info(f"Wrote {len(written)} artefacts to {output_dir}")
    return written
