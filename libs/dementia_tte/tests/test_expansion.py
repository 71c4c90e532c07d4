"""Tests for the expansion of person-period data into sequential trials."""

import numpy as np
import pytest

from dementia_tte.core.base import DataValidationError, ExpansionError
from dementia_tte.target_trial import (
    TrialEmulationProtocol,
    expand_trials,
    person_trial_summary,
    prepare_person_period,
)


class TestExpandTrials:
    """Test cases for expand_trials."""

    def _expand(self, data, **kwargs):
        protocol = TrialEmulationProtocol(outcome_covariates=["age"], **kwargs)
        return expand_trials(prepare_person_period(data, protocol), protocol)

    def test_intention_to_treat_rows(self, small_person_period):
        expanded = self._expand(small_person_period)
        patient = expanded[expanded["id"] == 1]

        # Trials start in the three eligible periods
        assert patient.groupby("trial_period").size().to_dict() == {0: 4, 1: 3, 2: 2}
        assert list(patient.groupby("trial_period")["assigned_treatment"].first()) == [0, 0, 1]
        # The outcome in period 3 is counted in every trial
        assert patient.groupby("trial_period")["outcome"].sum().eq(1).all()

    def test_followup_time(self, small_person_period):
        expanded = self._expand(small_person_period)
        trial = expanded[(expanded["id"] == 1) & (expanded["trial_period"] == 1)]

        assert list(trial["followup_time"]) == [0, 1, 2]
        assert list(trial["treatment"]) == [0, 1, 1]

    def test_per_protocol_stops_at_deviation(self, small_person_period):
        expanded = self._expand(small_person_period, estimand="PP")
        patient = expanded[expanded["id"] == 1]

        assert patient.groupby("trial_period").size().to_dict() == {0: 2, 1: 1, 2: 2}
        assert (patient["treatment"] == patient["assigned_treatment"]).all()
        # Only the treated trial keeps the outcome
        assert patient.groupby("trial_period")["outcome"].sum().to_dict() == {0: 0, 1: 0, 2: 1}

    def test_censored_periods_dropped(self, small_person_period):
        expanded = self._expand(small_person_period)
        patient = expanded[expanded["id"] == 2]

        # Lost in period 1: only the trial starting in period 0 keeps a row
        assert list(zip(patient["trial_period"], patient["followup_time"])) == [(0, 0)]

    def test_followup_max(self, small_person_period):
        expanded = self._expand(small_person_period, followup_max=1)

        assert expanded["followup_time"].max() == 1
        assert expanded[expanded["id"] == 1].groupby("trial_period").size().to_dict() == {
            0: 2,
            1: 2,
            2: 2,
        }

    def test_trial_period_window(self, small_person_period):
        expanded = self._expand(small_person_period, first_period=1, last_period=1)

        assert set(expanded["trial_period"]) == {1}

    def test_weights_accumulate_over_follow_up(self, small_person_period):
        """Switching weights from t+1, censoring weights from t."""
        protocol = TrialEmulationProtocol(outcome_covariates=["age"])
        data = prepare_person_period(small_person_period, protocol)
        data["wt_switch"] = [1.0, 2.0, 3.0, 4.0, 1.0, 1.0]
        data["wt_censor"] = [0.5, 1.0, 1.0, 1.0, 1.0, 1.0]
        expanded = expand_trials(data, protocol).set_index(
            ["id", "trial_period", "followup_time"]
        )

        assert expanded.loc[(1, 0, 0), "weight"] == pytest.approx(0.5)
        assert expanded.loc[(1, 0, 1), "weight"] == pytest.approx(2.0 * 0.5)
        assert expanded.loc[(1, 0, 3), "weight"] == pytest.approx(2.0 * 3.0 * 4.0 * 0.5)
        assert expanded.loc[(1, 1, 0), "weight"] == pytest.approx(1.0)
        assert expanded.loc[(1, 1, 2), "weight"] == pytest.approx(3.0 * 4.0)

    def test_unweighted_input_has_unit_weights(self, small_person_period):
        expanded = self._expand(small_person_period)

        assert (expanded["weight"] == 1.0).all()

    def test_output_columns(self, small_person_period):
        expanded = self._expand(small_person_period)

        assert list(expanded.columns) == [
            "id",
            "trial_period",
            "followup_time",
            "assigned_treatment",
            "treatment",
            "outcome",
            "weight",
            "age",
        ]

    def test_competing_event_carried(self, person_period_competing):
        protocol = TrialEmulationProtocol(competing_event_col="competing_event")
        expanded = expand_trials(
            prepare_person_period(person_period_competing, protocol), protocol
        )

        assert "competing_event" in expanded.columns
        assert expanded["competing_event"].sum() > 0
        assert not ((expanded["competing_event"] == 1) & (expanded["outcome"] == 1)).any()

    def test_chunking_does_not_change_result(self, person_period):
        protocol = TrialEmulationProtocol(estimand="PP")
        prepared = prepare_person_period(person_period, protocol)
        whole = expand_trials(prepared, protocol, chunk_size=10_000)
        chunked = expand_trials(prepared, protocol, chunk_size=7)

        key = ["id", "trial_period", "followup_time"]
        np.testing.assert_array_equal(
            whole.sort_values(key).to_numpy(), chunked.sort_values(key).to_numpy()
        )

    def test_no_eligible_periods(self, small_person_period):
        with pytest.raises(ExpansionError):
            self._expand(small_person_period.assign(eligible=0))

    def test_invalid_chunk_size(self, small_person_period):
        protocol = TrialEmulationProtocol()
        with pytest.raises(ValueError):
            expand_trials(small_person_period, protocol, chunk_size=0)

    def test_missing_covariate(self, small_person_period):
        protocol = TrialEmulationProtocol(outcome_covariates=["bmi"])
        with pytest.raises(DataValidationError, match="bmi"):
            expand_trials(small_person_period, protocol)


class TestPersonTrialSummary:
    """Test cases for person_trial_summary."""

    def test_one_row_per_person_trial(self, small_person_period):
        protocol = TrialEmulationProtocol()
        expanded = expand_trials(prepare_person_period(small_person_period, protocol), protocol)
        summary = person_trial_summary(expanded)

        patient = summary[summary["id"] == 1]
        assert list(patient["trial_period"]) == [0, 1, 2]
        assert list(patient["n_periods"]) == [4, 3, 2]
        assert list(patient["last_followup_time"]) == [3, 2, 1]
        assert list(patient["event"]) == [1, 1, 1]
        assert list(patient["assigned_treatment"]) == [0, 0, 1]
        assert "final_weight" in summary.columns

    def test_competing_event_column(self, person_period_competing):
        protocol = TrialEmulationProtocol(competing_event_col="competing_event")
        expanded = expand_trials(
            prepare_person_period(person_period_competing, protocol), protocol
        )
        summary = person_trial_summary(expanded, competing_event_col="competing_event")

        assert len(summary) == len(expanded.drop_duplicates(["id", "trial_period"]))
        assert summary["competing_event"].isin([0, 1]).all()
