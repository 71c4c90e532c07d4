"""Target trial emulator implementation.

This module implements the TargetTrialEmulator class that conducts the
emulation of a sequence of randomized trials using person-period data.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np
import pandas as pd

from ..core.base import DataValidationError
from ..diagnostics.weights import summarize_weights
from .expansion import expand_trials
from .msm import MarginalStructuralModel
from .preparation import prepare_person_period
from .protocol import TrialEmulationProtocol
from .results import EmulationDiagnostics, TargetTrialResults
from .weights import WeightModelFitter

logger = logging.getLogger(__name__)


class TargetTrialEmulator:
    """Sequential target trial emulator for observational person-period data.

    This class implements the sequential trials approach by:
    1. Deriving treatment history for every person-period
    2. Fitting switching and censoring weight models
    3. Expanding every eligible period into its own trial
    4. Fitting a weighted marginal structural model and predicting
       cumulative incidence under each assigned treatment
    """

    def __init__(
        self,
        protocol: TrialEmulationProtocol,
        analysis_weights: str = "p99",
        weight_limits: tuple[float, float] = (0.0, np.inf),
        confidence_level: float = 0.95,
        prediction_times: Sequence[int] | None = None,
        n_prediction_samples: int = 200,
        extreme_weight_threshold: float = 10.0,
        chunk_size: int = 500,
        period_length_days: int | None = None,
        keep_expanded_data: bool = True,
        random_state: int | None = None,
    ):
        """Initialize target trial emulator.

        Args:
            protocol: Analysis protocol
            analysis_weights: Weight handling in the outcome model
            weight_limits: Bounds used with ``analysis_weights="weight_limits"``
            confidence_level: Confidence level for intervals
            prediction_times: Follow-up times for cumulative incidence; by
                default every observed follow-up time. An empty sequence
                skips prediction.
            n_prediction_samples: Coefficient draws for prediction intervals
            extreme_weight_threshold: Weight above which weights are flagged
            chunk_size: Patients expanded at a time
            period_length_days: Period length, used for reporting only
            keep_expanded_data: Keep the expanded data on the results
            random_state: Random seed for reproducibility
        """
        self.protocol = protocol
        self.prediction_times = prediction_times
        self.n_prediction_samples = n_prediction_samples
        self.extreme_weight_threshold = extreme_weight_threshold
        self.chunk_size = chunk_size
        self.period_length_days = period_length_days
        self.keep_expanded_data = keep_expanded_data
        self.random_state = random_state

        # Fail fast on invalid outcome model settings
        self._msm_kwargs = {
            "analysis_weights": analysis_weights,
            "weight_limits": weight_limits,
            "confidence_level": confidence_level,
            "id_col": protocol.id_col,
        }
        MarginalStructuralModel(**self._msm_kwargs)

        self.outcome_model_: MarginalStructuralModel | None = None
        self.competing_model_: MarginalStructuralModel | None = None

    def emulate(self, person_period: pd.DataFrame) -> TargetTrialResults:
        """Emulate the sequence of target trials.

        Args:
            person_period: Person-period data with the protocol's columns

        Returns:
            TargetTrialResults with emulation results

        Raises:
            DataValidationError: If the protocol does not fit the data
            ModelFittingError: If a weight or outcome model fails
            ExpansionError: If no trial can be started
        """
        protocol = self.protocol
        logger.info(f"Starting {protocol.estimand} target trial emulation")

        # Step 1: Validate protocol against data
        validation = protocol.validate_against_data(person_period)
        if not validation["valid"]:
            raise DataValidationError(
                f"Protocol validation failed: {validation['errors']}"
            )
        for warning in validation["warnings"]:
            logger.warning(warning)

        # Step 2: Treatment history
        prepared = prepare_person_period(person_period, protocol)

        # Step 3: Switching and censoring weights
        weighted, weight_models = WeightModelFitter(protocol).fit_transform(prepared)

        # Step 4: Sequence of trials
        expanded = expand_trials(weighted, protocol, chunk_size=self.chunk_size)

        # Step 5: Outcome models
        self.outcome_model_ = MarginalStructuralModel(**self._msm_kwargs).fit(
            expanded, protocol.outcome_covariates, protocol.outcome_col
        )
        effect = self.outcome_model_.treatment_effect(protocol.estimand)

        self.competing_model_ = None
        if protocol.competing_event_col is not None:
            self.competing_model_ = MarginalStructuralModel(**self._msm_kwargs).fit(
                expanded, protocol.outcome_covariates, protocol.competing_event_col
            )

        # Step 6: Cumulative incidence
        cumulative_incidence = self._predict(expanded)

        # Step 7: Diagnostics
        diagnostics = self._diagnostics(prepared, expanded)

        logger.info(
            f"{protocol.estimand} odds ratio {effect.estimate:.3f} "
            f"[{effect.ci_lower:.3f}, {effect.ci_upper:.3f}]"
        )

        return TargetTrialResults(
            estimand=protocol.estimand,
            effect=effect,
            outcome_model_summary=self.outcome_model_.summary(),
            cumulative_incidence=cumulative_incidence,
            competing_model_summary=(
                self.competing_model_.summary() if self.competing_model_ else None
            ),
            weight_models=weight_models,
            protocol_summary=protocol.get_protocol_summary(),
            period_length_days=self.period_length_days,
            diagnostics=diagnostics,
            expanded_data=expanded if self.keep_expanded_data else None,
        )

    def _baseline_rows(self, expanded: pd.DataFrame) -> pd.DataFrame:
        """Trial-start rows of the earliest trial, the reference population."""
        starts = expanded[expanded["followup_time"] == 0]
        return starts[starts["trial_period"] == starts["trial_period"].min()]

    def _predict(self, expanded: pd.DataFrame) -> pd.DataFrame | None:
        max_followup = int(expanded["followup_time"].max())
        if self.prediction_times is None:
            times = list(range(max_followup + 1))
        else:
            times = [t for t in self.prediction_times if t <= max_followup]
            if len(times) < len(self.prediction_times):
                logger.warning(
                    f"Dropping prediction times beyond the last observed "
                    f"follow-up time ({max_followup})"
                )
        if not times:
            return None

        return self.outcome_model_.predict_cumulative_incidence(
            self._baseline_rows(expanded),
            times,
            competing_model=self.competing_model_,
            n_samples=self.n_prediction_samples,
            random_state=self.random_state,
        )

    def _diagnostics(
        self, prepared: pd.DataFrame, expanded: pd.DataFrame
    ) -> EmulationDiagnostics:
        protocol = self.protocol
        person_trials = expanded.drop_duplicates([protocol.id_col, "trial_period"])
        arm_labels = {0: "control", 1: "treated"}

        group_sizes = person_trials["assigned_treatment"].value_counts()
        events = expanded.groupby("assigned_treatment")[protocol.outcome_col].sum()

        censoring_rate = (
            float(prepared[protocol.censored_col].mean())
            if protocol.censored_col is not None
            else 0.0
        )
        n_competing = (
            int(expanded[protocol.competing_event_col].sum())
            if protocol.competing_event_col is not None
            else None
        )

        return EmulationDiagnostics(
            n_patients=int(prepared[protocol.id_col].nunique()),
            n_person_periods=len(prepared),
            n_trials=int(expanded["trial_period"].nunique()),
            n_person_trials=len(person_trials),
            n_expanded_rows=len(expanded),
            treatment_group_sizes={
                arm_labels[arm]: int(group_sizes.get(arm, 0)) for arm in (0, 1)
            },
            events_by_arm={arm_labels[arm]: int(events.get(arm, 0)) for arm in (0, 1)},
            n_events=int(expanded[protocol.outcome_col].sum()),
            censoring_rate=censoring_rate,
            n_competing_events=n_competing,
            weight_summary=summarize_weights(
                expanded["weight"], extreme_threshold=self.extreme_weight_threshold
            ),
        )
