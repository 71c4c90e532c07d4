"""End-to-end tests for the analysis pipeline."""

import json

import pytest

from dementia_tte import PipelineResult, TrialEmulationError, run_pipeline
from dementia_tte.pipeline import build_protocol
from shared.config import TrialEmulationConfig, config_manager
from shared.observability import PipelineMetrics


def _config(**overrides):
    settings = {
        "n_patients": 1500,
        "max_follow_up_periods": 24,
        "prediction_horizon": 12,
        "n_prediction_samples": 20,
        "random_state": 3,
    }
    settings.update(overrides)
    return TrialEmulationConfig(**settings)


@pytest.fixture(scope="module")
def pipeline_run(tmp_path_factory):
    """One full ITT and PP run shared by the tests below."""
    output_dir = tmp_path_factory.mktemp("pipeline")
    metrics = PipelineMetrics()
    result = run_pipeline(_config(output_dir=output_dir), metrics=metrics)
    return result, output_dir


class TestRunPipeline:
    """Test cases for run_pipeline."""

    def test_result_contents(self, pipeline_run):
        result, _ = pipeline_run

        assert isinstance(result, PipelineResult)
        assert len(result.cohort) == 1500
        assert set(result.results) == {"ITT", "PP"}
        assert result.attrition["n_remaining"].iloc[-1] >= len(result.outcomes) > 0
        assert result.person_period["id"].nunique() == len(result.outcomes)
        assert result.person_period["period"].max() < 24

    def test_estimands(self, pipeline_run):
        result, _ = pipeline_run

        for estimand, res in result.results.items():
            assert res.estimand == estimand
            assert res.effect.estimate > 0
            assert res.period_length_days == 30
            assert list(res.cumulative_incidence["followup_time"]) == list(range(13))
        assert "switch_d0" in result.results["PP"].weight_models.models

    def test_descriptive_curves(self, pipeline_run):
        result, _ = pipeline_run

        assert set(result.descriptive) == {"dementia_cif", "death_cif", "composite_km"}
        for table in result.descriptive.values():
            assert set(table["group"]) == {0, 1}
        dementia = result.descriptive["dementia_cif"]
        assert dementia["cumulative_incidence"].between(0, 1).all()

    def test_outcome_summary_by_treatment(self, pipeline_run):
        result, _ = pipeline_run
        summary = result.outcome_summary

        assert set(summary["ever_treated"]) == {0, 1}
        assert summary.groupby("ever_treated")["outcome"].count().eq(3).all()

    def test_comparison(self, pipeline_run):
        result, _ = pipeline_run

        assert result.comparison["followup_time"] == 12
        assert "interpretation" in result.comparison

    def test_metrics(self, pipeline_run):
        result, _ = pipeline_run
        steps = result.metrics["tte_step_rows"]

        for step in (
            "simulate",
            "validate",
            "eligibility",
            "outcomes",
            "descriptive",
            "person_period",
            "emulate_itt",
            "emulate_pp",
        ):
            assert f"step={step}" in steps
        assert steps["step=simulate"] == 1500
        fits = result.metrics["tte_models_fitted_total"]
        assert fits["model=msm_itt,status=success"] == 1
        assert fits["model=msm_pp,status=success"] == 1

    def test_output_files(self, pipeline_run):
        result, output_dir = pipeline_run

        for name in (
            "cohort",
            "attrition",
            "person_period",
            "dementia_cif",
            "outcome_model_itt",
            "cumulative_incidence_pp",
            "weight_models_pp",
            "report_itt",
            "report_pp",
            "run_summary",
        ):
            assert result.output_files[name].exists()

        summary = json.loads((output_dir / "run_summary.json").read_text(encoding="utf-8"))
        assert summary["n_cohort"] == 1500
        assert set(summary["estimands"]) == {"ITT", "PP"}
        assert summary["config"]["n_patients"] == 1500
        report = (output_dir / "report_pp.txt").read_text(encoding="utf-8")
        assert "Per-Protocol Analysis:" in report

    def test_supplied_cohort_and_competing_death(self, simulated_cohort):
        metrics = PipelineMetrics()
        config = _config(
            estimands=["ITT"],
            competing_event_handling="competing",
            max_follow_up_periods=36,
        )
        result = run_pipeline(config, cohort=simulated_cohort, metrics=metrics)

        assert "step=simulate" not in result.metrics["tte_step_rows"]
        assert "competing_event" in result.person_period.columns
        res = result.results["ITT"]
        assert res.competing_model_summary is not None
        assert result.comparison is None
        assert result.output_files == {}

    def test_no_eligible_patients(self, simulated_cohort):
        config = _config(min_age=95)

        with pytest.raises(TrialEmulationError, match="eligibility"):
            run_pipeline(config, cohort=simulated_cohort, metrics=PipelineMetrics())

    def test_configuration_registered_and_checked(self, simulated_cohort, caplog):
        config = _config(min_age=95, prediction_horizon=24)

        with pytest.raises(TrialEmulationError):
            run_pipeline(config, cohort=simulated_cohort, metrics=PipelineMetrics())

        assert config_manager.get_configuration("pipeline") is config
        assert "prediction_horizon reaches the administrative end" in caplog.text

    def test_invalid_cohort_records_error(self, simulated_cohort):
        metrics = PipelineMetrics()

        with pytest.raises(TrialEmulationError):
            run_pipeline(
                _config(),
                cohort=simulated_cohort.drop(columns="death_date"),
                metrics=metrics,
            )
        assert metrics.snapshot()["tte_errors_total"] == {
            "error_type=DataValidationError,step=validate": 1.0
        }


class TestBuildProtocol:
    """Test cases for build_protocol."""

    def test_competing_event_column(self):
        protocol = build_protocol(_config(competing_event_handling="competing"), "PP")

        assert protocol.estimand == "PP"
        assert protocol.competing_event_col == "competing_event"
        assert protocol.followup_max == 24

    def test_death_as_censoring(self):
        protocol = build_protocol(_config(), "ITT")

        assert protocol.competing_event_col is None
        assert "ldl" in protocol.censor_denominator_covariates
        assert protocol.outcome_covariates == ["age_at_index", "female"]
