"""Inverse probability of treatment-switching and censoring weights.

For the per-protocol estimand, patients are artificially censored when they
deviate from the treatment assigned at trial start. Switching weights
re-weight the patients who remain, using logistic models for treatment given
the previous treatment and covariates:

    wt_switch = P(A_t = a | A_{t-1}, V) / P(A_t = a | A_{t-1}, V, L_t)

fitted separately for previously untreated (``am_1 == 0``) and previously
treated (``am_1 == 1``) person-periods. Censoring weights do the same for
loss to follow-up:

    wt_censor = P(C_t = 0 | A_{t-1}, V) / P(C_t = 0 | A_{t-1}, V, L_t)

with the numerator and/or denominator optionally pooled over ``am_1``.
Without stabilization the numerators are 1.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf

from ..core.base import ModelFittingError
from .protocol import TrialEmulationProtocol

logger = logging.getLogger(__name__)


@dataclass
class FittedWeightModel:
    """A single fitted numerator or denominator model."""

    name: str
    formula: str
    n_observations: int
    n_events: int
    coefficients: pd.Series | None = None
    standard_errors: pd.Series | None = None
    aic: float | None = None
    degenerate: bool = False


@dataclass
class WeightModelSummary:
    """All weight models fitted for one emulation."""

    models: dict[str, FittedWeightModel] = field(default_factory=dict)

    def add(self, model: FittedWeightModel) -> None:
        self.models[model.name] = model

    def to_frame(self) -> pd.DataFrame:
        """Coefficient table with one row per model term."""
        rows: list[dict[str, Any]] = []
        for model in self.models.values():
            if model.coefficients is None:
                rows.append(
                    {
                        "model": model.name,
                        "term": None,
                        "estimate": np.nan,
                        "std_error": np.nan,
                        "n_observations": model.n_observations,
                        "n_events": model.n_events,
                        "degenerate": model.degenerate,
                    }
                )
                continue
            for term, estimate in model.coefficients.items():
                rows.append(
                    {
                        "model": model.name,
                        "term": term,
                        "estimate": float(estimate),
                        "std_error": float(model.standard_errors[term]),
                        "n_observations": model.n_observations,
                        "n_events": model.n_events,
                        "degenerate": model.degenerate,
                    }
                )
        return pd.DataFrame(rows)


class WeightModelFitter:
    """Fit switching and censoring weight models on person-period data."""

    def __init__(self, protocol: TrialEmulationProtocol):
        """Initialize the fitter.

        Args:
            protocol: Analysis protocol with the weight model covariates
        """
        self.protocol = protocol
        self.summary_ = WeightModelSummary()

    def _formula(self, target: str, covariates: list[str]) -> str:
        terms = list(covariates)
        if self.protocol.include_period_terms:
            period = self.protocol.period_col
            terms += [period, f"I({period} ** 2)"]
        return f"{target} ~ {' + '.join(terms) if terms else '1'}"

    def _fit_predict(
        self, name: str, data: pd.DataFrame, target: str, covariates: list[str]
    ) -> pd.Series:
        """Fit a logistic model on ``data`` and return fitted P(target == 1).

        A target without variation cannot be modelled; its observed constant
        is returned and the model is flagged as degenerate.
        """
        formula = self._formula(target, covariates)
        y = data[target]
        n_events = int(y.sum())

        if len(data) == 0:
            self.summary_.add(FittedWeightModel(name, formula, 0, 0, degenerate=True))
            return pd.Series(dtype=float)

        if y.nunique() < 2:
            logger.warning(
                f"Weight model '{name}' has no variation in {target}; "
                f"using constant probability {float(y.iloc[0]):.0f}"
            )
            self.summary_.add(
                FittedWeightModel(name, formula, len(data), n_events, degenerate=True)
            )
            return pd.Series(float(y.iloc[0]), index=data.index)

        try:
            result = smf.glm(formula, data=data, family=sm.families.Binomial()).fit()
        except Exception as e:
            raise ModelFittingError(
                f"Failed to fit weight model '{name}' ({formula}): {str(e)}"
            ) from e

        self.summary_.add(
            FittedWeightModel(
                name=name,
                formula=formula,
                n_observations=int(result.nobs),
                n_events=n_events,
                coefficients=result.params,
                standard_errors=result.bse,
                aic=float(result.aic),
            )
        )
        logger.debug(f"Fitted weight model '{name}': {formula} (n={int(result.nobs):,})")
        return pd.Series(np.asarray(result.fittedvalues), index=data.index)

    def _switch_weights(self, df: pd.DataFrame) -> pd.Series:
        trt = self.protocol.treatment_col
        p_num = pd.Series(1.0, index=df.index)
        p_den = pd.Series(1.0, index=df.index)

        for prev in (0, 1):
            subset = df[df["am_1"] == prev]
            if subset.empty:
                continue
            p_den.loc[subset.index] = self._fit_predict(
                f"switch_d{prev}",
                subset,
                trt,
                self.protocol.switch_denominator_covariates,
            )
            if self.protocol.stabilized:
                p_num.loc[subset.index] = self._fit_predict(
                    f"switch_n{prev}",
                    subset,
                    trt,
                    self.protocol.switch_numerator_covariates,
                )

        treated = df[trt] == 1
        observed_den = p_den.where(treated, 1 - p_den)
        if self.protocol.stabilized:
            observed_num = p_num.where(treated, 1 - p_num)
        else:
            observed_num = pd.Series(1.0, index=df.index)

        df["p_switch_n"] = p_num if self.protocol.stabilized else np.nan
        df["p_switch_d"] = p_den
        return observed_num / observed_den

    def _censor_weights(self, df: pd.DataFrame) -> pd.Series:
        cens = self.protocol.censored_col
        df["_uncensored"] = 1 - df[cens]
        pool = self.protocol.pool_censor_models

        p_num = pd.Series(1.0, index=df.index)
        p_den = pd.Series(1.0, index=df.index)

        if self.protocol.stabilized:
            if pool in ("numerator", "both"):
                p_num = self._fit_predict(
                    "censor_n",
                    df,
                    "_uncensored",
                    self.protocol.censor_numerator_covariates,
                )
            else:
                for prev in (0, 1):
                    subset = df[df["am_1"] == prev]
                    if not subset.empty:
                        p_num.loc[subset.index] = self._fit_predict(
                            f"censor_n{prev}",
                            subset,
                            "_uncensored",
                            self.protocol.censor_numerator_covariates,
                        )

        if pool == "both":
            p_den = self._fit_predict(
                "censor_d",
                df,
                "_uncensored",
                self.protocol.censor_denominator_covariates,
            )
        else:
            for prev in (0, 1):
                subset = df[df["am_1"] == prev]
                if not subset.empty:
                    p_den.loc[subset.index] = self._fit_predict(
                        f"censor_d{prev}",
                        subset,
                        "_uncensored",
                        self.protocol.censor_denominator_covariates,
                    )

        df.drop(columns="_uncensored", inplace=True)
        df["p_censor_n"] = p_num if self.protocol.stabilized else np.nan
        df["p_censor_d"] = p_den
        return p_num / p_den

    def fit_transform(
        self, data: pd.DataFrame
    ) -> tuple[pd.DataFrame, WeightModelSummary]:
        """Fit the weight models and attach period-level weights.

        Args:
            data: Output of ``prepare_person_period``

        Returns:
            Tuple of (data with ``wt_switch``, ``wt_censor`` and ``wt``
            columns, summary of the fitted models)
        """
        self.summary_ = WeightModelSummary()
        df = data.copy()

        if self.protocol.uses_switch_weights:
            df["wt_switch"] = self._switch_weights(df)
        else:
            df["wt_switch"] = 1.0

        if self.protocol.uses_censor_weights:
            df["wt_censor"] = self._censor_weights(df)
        else:
            df["wt_censor"] = 1.0

        df["wt"] = df["wt_switch"] * df["wt_censor"]

        bad = ~np.isfinite(df["wt"])
        if bad.any():
            raise ModelFittingError(
                f"{int(bad.sum())} person-periods received non-finite weights; "
                "check the weight models for separation"
            )

        logger.info(
            f"Weights computed from {len(self.summary_.models)} models: "
            f"mean {df['wt'].mean():.3f}, range [{df['wt'].min():.3f}, {df['wt'].max():.3f}]"
        )
        return df, self.summary_
