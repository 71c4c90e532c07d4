"""Unit tests for logging setup and pipeline metrics."""

import logging

from shared.config import TrialEmulationConfig
from shared.observability import (
    PipelineMetrics,
    get_logger,
    get_metrics,
    reset_metrics,
    setup_logging,
)


class TestSetupLogging:
    """Test setup_logging."""

    def setup_method(self):
        root = logging.getLogger()
        self._handlers = root.handlers[:]
        self._level = root.level

    def teardown_method(self):
        root = logging.getLogger()
        root.handlers = self._handlers
        root.setLevel(self._level)

    def test_explicit_log_level(self):
        """Test an explicit log level wins over the environment."""
        setup_logging(TrialEmulationConfig(log_level="warning"))

        assert logging.getLogger().level == logging.WARNING

    def test_environment_log_level(self):
        """Test development logs at DEBUG and production at INFO."""
        setup_logging(TrialEmulationConfig(environment="development"))
        assert logging.getLogger().level == logging.DEBUG

        setup_logging(TrialEmulationConfig(environment="production"))
        assert logging.getLogger().level == logging.INFO

    def test_third_party_loggers_quieted(self):
        """Test statsmodels and lifelines only log warnings."""
        setup_logging(TrialEmulationConfig(log_level="DEBUG"))

        assert logging.getLogger("statsmodels").level == logging.WARNING
        assert logging.getLogger("lifelines").level == logging.WARNING

    def test_get_logger(self):
        """Test named loggers are returned."""
        assert get_logger("dementia_tte.pipeline").name == "dementia_tte.pipeline"


class TestPipelineMetrics:
    """Test PipelineMetrics."""

    def setup_method(self):
        self.metrics = PipelineMetrics()

    def test_record_step(self):
        """Test step durations and row counts are recorded."""
        self.metrics.record_step("eligibility", 0.5, 120)
        self.metrics.record_step("eligibility", 1.5, 100)
        snapshot = self.metrics.snapshot()

        assert snapshot["tte_step_rows"] == {"step=eligibility": 100.0}
        assert snapshot["tte_step_duration_seconds_count"] == {"step=eligibility": 2.0}
        assert snapshot["tte_step_duration_seconds_sum"] == {"step=eligibility": 2.0}

    def test_record_model_fit_and_error(self):
        """Test model fits and errors are counted by label."""
        self.metrics.record_model_fit("msm_itt")
        self.metrics.record_model_fit("censor_d0", status="degenerate")
        self.metrics.record_model_fit("censor_d0", status="degenerate")
        self.metrics.record_error("ModelFittingError", "emulate_pp")
        snapshot = self.metrics.snapshot()

        assert snapshot["tte_models_fitted_total"] == {
            "model=msm_itt,status=success": 1.0,
            "model=censor_d0,status=degenerate": 2.0,
        }
        assert snapshot["tte_errors_total"] == {
            "error_type=ModelFittingError,step=emulate_pp": 1.0
        }

    def test_instances_are_independent(self):
        """Test every instance has its own registry."""
        other = PipelineMetrics()
        self.metrics.record_model_fit("msm_itt")

        assert "tte_models_fitted_total" not in other.snapshot()

    def test_global_metrics(self):
        """Test the global instance is shared until reset."""
        first = get_metrics()
        assert get_metrics() is first

        fresh = reset_metrics()
        assert fresh is not first
        assert get_metrics() is fresh
