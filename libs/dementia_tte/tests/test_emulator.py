"""Tests for target trial emulation and reporting."""

import numpy as np
import pytest

from dementia_tte.core.base import DataValidationError
from dementia_tte.target_trial import (
    EmulationReport,
    TargetTrialEmulator,
    TargetTrialResults,
    TrialEmulationProtocol,
    compare_itt_vs_pp,
)


def _protocol(estimand="ITT", **kwargs):
    settings = {
        "estimand": estimand,
        "switch_numerator_covariates": ["age"],
        "switch_denominator_covariates": ["age", "x"],
        "censor_numerator_covariates": ["age"],
        "censor_denominator_covariates": ["age", "x"],
        "outcome_covariates": ["age"],
    }
    settings.update(kwargs)
    return TrialEmulationProtocol(**settings)


class TestTargetTrialEmulator:
    """Test cases for TargetTrialEmulator."""

    def setup_method(self):
        self.emulator_kwargs = {
            "n_prediction_samples": 20,
            "prediction_times": [0, 3, 6, 9],
            "period_length_days": 30,
            "random_state": 11,
        }

    def test_intention_to_treat(self, person_period):
        emulator = TargetTrialEmulator(_protocol(), **self.emulator_kwargs)
        results = emulator.emulate(person_period)

        assert isinstance(results, TargetTrialResults)
        assert results.estimand == "ITT"
        assert results.effect.estimate > 0
        assert results.effect.ci_lower < results.effect.estimate < results.effect.ci_upper
        assert emulator.outcome_model_.is_fitted
        assert emulator.competing_model_ is None
        assert list(results.cumulative_incidence["followup_time"]) == [0, 3, 6, 9]
        assert not any(name.startswith("switch") for name in results.weight_models.models)

    def test_per_protocol(self, person_period):
        results = TargetTrialEmulator(_protocol("PP"), **self.emulator_kwargs).emulate(
            person_period
        )

        assert results.estimand == "PP"
        assert "switch_d0" in results.weight_models.models
        expanded = results.expanded_data
        assert (expanded["treatment"] == expanded["assigned_treatment"]).all()

    def test_per_protocol_has_fewer_rows(self, person_period):
        itt = TargetTrialEmulator(_protocol(), **self.emulator_kwargs).emulate(person_period)
        pp = TargetTrialEmulator(_protocol("PP"), **self.emulator_kwargs).emulate(person_period)

        assert pp.diagnostics.n_expanded_rows < itt.diagnostics.n_expanded_rows
        assert pp.diagnostics.n_person_trials == itt.diagnostics.n_person_trials

    def test_diagnostics(self, person_period):
        results = TargetTrialEmulator(_protocol(), **self.emulator_kwargs).emulate(person_period)
        d = results.diagnostics

        assert d.n_patients == person_period["id"].nunique()
        assert d.n_person_periods == len(person_period)
        assert d.n_expanded_rows == len(results.expanded_data)
        assert set(d.treatment_group_sizes) == {"control", "treated"}
        assert sum(d.treatment_group_sizes.values()) == d.n_person_trials
        assert sum(d.events_by_arm.values()) == d.n_events
        assert d.censoring_rate == pytest.approx(person_period["censored"].mean())
        assert d.weight_summary.n_observations == d.n_expanded_rows
        assert d.n_competing_events is None

    def test_competing_event(self, person_period_competing):
        protocol = _protocol(competing_event_col="competing_event")
        emulator = TargetTrialEmulator(protocol, **self.emulator_kwargs)
        results = emulator.emulate(person_period_competing)

        assert emulator.competing_model_.event_col_ == "competing_event"
        assert results.competing_model_summary is not None
        assert results.diagnostics.n_competing_events > 0

    def test_default_prediction_times(self, person_period):
        kwargs = dict(self.emulator_kwargs, prediction_times=None)
        results = TargetTrialEmulator(_protocol(), **kwargs).emulate(person_period)

        max_followup = results.expanded_data["followup_time"].max()
        assert list(results.cumulative_incidence["followup_time"]) == list(
            range(max_followup + 1)
        )

    def test_prediction_times_beyond_follow_up_dropped(self, person_period, caplog):
        kwargs = dict(self.emulator_kwargs, prediction_times=[0, 5, 500])
        results = TargetTrialEmulator(_protocol(), **kwargs).emulate(person_period)

        assert list(results.cumulative_incidence["followup_time"]) == [0, 5]
        assert "Dropping prediction times" in caplog.text

    def test_prediction_skipped(self, person_period):
        kwargs = dict(self.emulator_kwargs, prediction_times=[])
        results = TargetTrialEmulator(_protocol(), **kwargs).emulate(person_period)

        assert results.cumulative_incidence is None
        assert "risk_at_end" not in results.to_dict()

    def test_reproducible(self, person_period):
        first = TargetTrialEmulator(_protocol(), **self.emulator_kwargs).emulate(person_period)
        second = TargetTrialEmulator(_protocol(), **self.emulator_kwargs).emulate(person_period)

        assert first.effect.estimate == pytest.approx(second.effect.estimate)
        np.testing.assert_allclose(
            first.cumulative_incidence["cum_inc_treated_upper"],
            second.cumulative_incidence["cum_inc_treated_upper"],
        )

    def test_expanded_data_dropped(self, person_period):
        kwargs = dict(self.emulator_kwargs, keep_expanded_data=False)
        results = TargetTrialEmulator(_protocol(), **kwargs).emulate(person_period)

        assert results.expanded_data is None
        assert results.diagnostics.n_expanded_rows > 0

    def test_protocol_mismatch(self, person_period):
        emulator = TargetTrialEmulator(_protocol(), **self.emulator_kwargs)

        with pytest.raises(DataValidationError, match="Protocol validation failed"):
            emulator.emulate(person_period.drop(columns="x"))

    def test_invalid_analysis_weights(self):
        with pytest.raises(ValueError):
            TargetTrialEmulator(_protocol(), analysis_weights="trimmed")


class TestTargetTrialResults:
    """Test cases for results, reports and the ITT/PP comparison."""

    @pytest.fixture
    def results(self, person_period):
        kwargs = {
            "n_prediction_samples": 20,
            "prediction_times": [0, 4, 8],
            "period_length_days": 30,
            "random_state": 5,
        }
        itt = TargetTrialEmulator(_protocol(), **kwargs).emulate(person_period)
        pp = TargetTrialEmulator(_protocol("PP"), **kwargs).emulate(person_period)
        return itt, pp

    def test_risk_at(self, results):
        itt, _ = results
        risk = itt.risk_at(8)

        assert set(risk) == {"cum_inc_control", "cum_inc_treated", "difference"}
        assert risk["difference"] == pytest.approx(
            risk["cum_inc_treated"] - risk["cum_inc_control"]
        )
        with pytest.raises(ValueError):
            itt.risk_at(7)

    def test_to_dict(self, results):
        itt, _ = results
        out = itt.to_dict()

        assert out["estimand"] == "ITT"
        assert out["odds_ratio"] == itt.effect.estimate
        assert out["risk_at_end"]["followup_time"] == 8
        assert out["diagnostics"]["n_patients"] == itt.diagnostics.n_patients
        assert "weight_summary" in out["diagnostics"]

    def test_report_sections(self, results):
        itt, pp = results
        report = itt.generate_report(include_weight_models=True)

        assert isinstance(report, EmulationReport)
        assert list(report.sections) == [
            "protocol_specification",
            "emulation_diagnostics",
            "emulation_results",
            "cumulative_incidence",
            "weight_models",
            "interpretation_guidelines",
        ]
        text = report.to_string()
        assert text.startswith("TARGET TRIAL EMULATION REPORT")
        assert "Intention-to-Treat Analysis:" in text
        assert "Odds ratio:" in text
        assert "periods of 30 days" in text

        pp_text = pp.generate_report().to_string()
        assert "Per-Protocol Analysis:" in pp_text
        assert "Deviations are censored" in pp_text

    def test_report_without_optional_sections(self, results):
        itt, _ = results
        report = itt.generate_report(include_protocol=False, include_diagnostics=False)

        assert "protocol_specification" not in report.sections
        assert "emulation_diagnostics" not in report.sections
        assert "weight_models" not in report.sections

    def test_report_save(self, results, tmp_path):
        itt, _ = results
        report = itt.generate_report()

        txt_path = tmp_path / "report.txt"
        html_path = tmp_path / "report.html"
        report.save(txt_path)
        report.save(html_path, format="html")

        assert "TARGET TRIAL EMULATION REPORT" in txt_path.read_text(encoding="utf-8")
        html_text = html_path.read_text(encoding="utf-8")
        assert "<h2>Emulation Results</h2>" in html_text
        with pytest.raises(ValueError):
            report.save(tmp_path / "report.pdf", format="pdf")

    def test_compare_itt_vs_pp(self, results):
        itt, pp = results
        comparison = compare_itt_vs_pp(itt, pp)

        assert comparison["itt_odds_ratio"] == itt.effect.estimate
        assert comparison["ratio_of_odds_ratios"] == pytest.approx(
            pp.effect.estimate / itt.effect.estimate
        )
        assert comparison["log_difference"] == pytest.approx(
            np.log(pp.effect.estimate) - np.log(itt.effect.estimate)
        )
        assert comparison["followup_time"] == 8
        assert comparison["itt_risk_difference"] == itt.risk_at(8)["difference"]
        assert comparison["ci_width_ratio"] > 0
        assert comparison["interpretation"].startswith(("ITT", "Per-protocol"))
