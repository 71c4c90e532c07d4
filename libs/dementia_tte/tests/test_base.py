"""Tests for core data models and validation helpers."""

import pandas as pd
import pytest

from dementia_tte.core.base import (
    DataValidationError,
    EffectEstimate,
    ExpansionError,
    ModelFittingError,
    TrialEmulationError,
    require_binary,
    require_columns,
)


class TestEffectEstimate:
    """Test cases for EffectEstimate."""

    def test_basic_estimate(self):
        effect = EffectEstimate(estimate=0.8, ci_lower=0.6, ci_upper=1.1, p_value=0.2)

        assert effect.confidence_interval == (0.6, 1.1)
        assert not effect.is_significant
        assert effect.method == "pooled_logistic_msm"
        assert effect.estimand == "ITT"

    def test_significance(self):
        assert EffectEstimate(estimate=0.5, ci_lower=0.3, ci_upper=0.9).is_significant
        assert EffectEstimate(estimate=2.0, ci_lower=1.2, ci_upper=3.0).is_significant
        assert not EffectEstimate(estimate=2.0).is_significant
        assert EffectEstimate(estimate=2.0).confidence_interval is None

    def test_invalid_estimates(self):
        with pytest.raises(ValueError):
            EffectEstimate(estimate=1.0, ci_lower=1.5, ci_upper=0.5)
        with pytest.raises(ValueError):
            EffectEstimate(estimate=1.0, confidence_level=1.0)
        with pytest.raises(ValueError):
            EffectEstimate(estimate=0.0)


class TestExceptions:
    """Test cases for the exception hierarchy."""

    def test_hierarchy(self):
        for exc in (DataValidationError, ModelFittingError, ExpansionError):
            assert issubclass(exc, TrialEmulationError)


class TestValidationHelpers:
    """Test cases for require_columns and require_binary."""

    def setup_method(self):
        self.df = pd.DataFrame({"a": [0, 1, 1], "b": [0.0, 1.0, None], "c": [0, 2, 1]})

    def test_require_columns(self):
        require_columns(self.df, ["a", "b"])

        with pytest.raises(DataValidationError, match=r"for weights: \['d'\]"):
            require_columns(self.df, ["a", "d"], "weights")

    def test_require_binary(self):
        require_binary(self.df, ["a", "b"])

        with pytest.raises(DataValidationError, match="'c' must be binary"):
            require_binary(self.df, ["c"])
