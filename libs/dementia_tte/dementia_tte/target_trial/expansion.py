"""Expansion of person-period data into sequences of emulated trials.

Every period in which a patient is eligible starts a new trial. The patient
is followed in that trial through all later periods (person-trial-time
format), with follow-up stopped at the first deviation from the assigned
treatment for the per-protocol estimand.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from ..core.base import ExpansionError, require_columns
from .protocol import TrialEmulationProtocol

logger = logging.getLogger(__name__)


def _log_weights(df: pd.DataFrame, column: str) -> pd.Series:
    if column not in df.columns:
        return pd.Series(0.0, index=df.index)
    with np.errstate(divide="ignore"):
        return np.log(df[column].astype(float))


def expand_trials(
    data: pd.DataFrame,
    protocol: TrialEmulationProtocol,
    chunk_size: int = 500,
) -> pd.DataFrame:
    """Expand person-period data into person-trial-time rows.

    The weight of follow-up period ``p`` in the trial started at ``t`` is the
    product of switching weights over periods ``t+1..p`` and censoring
    weights over ``t..p``. Person-periods with loss to follow-up are dropped
    because their outcome is unobserved.

    Args:
        data: Prepared person-period data, optionally with ``wt_switch`` and
            ``wt_censor`` columns from ``WeightModelFitter``
        protocol: Analysis protocol
        chunk_size: Number of patients expanded at a time

    Returns:
        DataFrame with ``id``, ``trial_period``, ``followup_time``,
        ``assigned_treatment``, ``treatment``, ``outcome``, ``weight``,
        the competing event column if any, and outcome covariates measured
        at trial start

    Raises:
        ExpansionError: If no person-period qualifies as a trial start
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    id_col = protocol.id_col
    period_col = protocol.period_col
    trt = protocol.treatment_col
    require_columns(
        data,
        [id_col, period_col, trt, protocol.outcome_col, protocol.eligible_col]
        + protocol.outcome_covariates,
        "trial expansion",
    )

    df = data.sort_values([id_col, period_col]).reset_index(drop=True)
    df["_ls"] = _log_weights(df, "wt_switch").groupby(df[id_col]).cumsum()
    df["_lc_step"] = _log_weights(df, "wt_censor")
    df["_lc"] = df["_lc_step"].groupby(df[id_col]).cumsum()

    is_start = df[protocol.eligible_col] == 1
    if protocol.first_period is not None:
        is_start &= df[period_col] >= protocol.first_period
    if protocol.last_period is not None:
        is_start &= df[period_col] <= protocol.last_period

    start_cols = [id_col, period_col, trt, "_ls", "_lc", "_lc_step"] + [
        c for c in protocol.outcome_covariates if c not in (id_col, period_col, trt)
    ]
    starts = df.loc[is_start, start_cols].rename(
        columns={
            period_col: "trial_period",
            trt: "assigned_treatment",
            "_ls": "_ls0",
            "_lc": "_lc0",
            "_lc_step": "_lc_step0",
        }
    )
    if starts.empty:
        raise ExpansionError("No eligible person-periods to start a trial")

    follow_cols = [id_col, period_col, trt, protocol.outcome_col, "_ls", "_lc"]
    if protocol.competing_event_col is not None:
        follow_cols.append(protocol.competing_event_col)
    if protocol.censored_col is not None and protocol.censored_col in df.columns:
        follow_cols.append(protocol.censored_col)
    follow = df[follow_cols]

    ids = starts[id_col].unique()
    chunks = []
    for i in range(0, len(ids), chunk_size):
        chunk_ids = ids[i : i + chunk_size]
        chunks.append(
            _expand_chunk(
                starts[starts[id_col].isin(chunk_ids)],
                follow[follow[id_col].isin(chunk_ids)],
                protocol,
            )
        )
    expanded = pd.concat(chunks, ignore_index=True)

    out_cols = [
        id_col,
        "trial_period",
        "followup_time",
        "assigned_treatment",
        trt,
        protocol.outcome_col,
    ]
    if protocol.competing_event_col is not None:
        out_cols.append(protocol.competing_event_col)
    out_cols.append("weight")
    out_cols += [c for c in protocol.outcome_covariates if c not in out_cols]
    expanded = expanded[out_cols]

    logger.info(
        f"Expanded {len(df):,} person-periods into {len(expanded):,} rows "
        f"across {len(starts):,} person-trials ({protocol.estimand})"
    )
    return expanded


def _expand_chunk(
    starts: pd.DataFrame, follow: pd.DataFrame, protocol: TrialEmulationProtocol
) -> pd.DataFrame:
    id_col = protocol.id_col
    period_col = protocol.period_col
    trt = protocol.treatment_col

    merged = starts.merge(follow, on=id_col, how="inner")
    merged = merged[merged[period_col] >= merged["trial_period"]]
    merged = merged.sort_values([id_col, "trial_period", period_col])
    merged["followup_time"] = merged[period_col] - merged["trial_period"]

    if protocol.followup_max is not None:
        merged = merged[merged["followup_time"] <= protocol.followup_max]

    if protocol.estimand == "PP":
        deviated = (merged[trt] != merged["assigned_treatment"]).astype(int)
        n_deviations = deviated.groupby(
            [merged[id_col], merged["trial_period"]]
        ).cumsum()
        merged = merged[n_deviations == 0]

    if protocol.censored_col is not None and protocol.censored_col in merged.columns:
        merged = merged[merged[protocol.censored_col] == 0]

    log_weight = (merged["_ls"] - merged["_ls0"]) + (
        merged["_lc"] - merged["_lc0"] + merged["_lc_step0"]
    )
    merged["weight"] = np.exp(log_weight)
    return merged


def person_trial_summary(
    expanded: pd.DataFrame,
    id_col: str = "id",
    outcome_col: str = "outcome",
    competing_event_col: str | None = None,
) -> pd.DataFrame:
    """Collapse person-trial-time rows to one row per person-trial.

    Args:
        expanded: Output of :func:`expand_trials`
        id_col: Patient identifier column
        outcome_col: Outcome column
        competing_event_col: Optional competing event column

    Returns:
        DataFrame with assigned treatment, number of follow-up periods,
        event flags and the weight at the end of follow-up
    """
    require_columns(
        expanded,
        [id_col, "trial_period", "followup_time", "assigned_treatment", outcome_col],
        "person-trial summary",
    )
    ordered = expanded.sort_values([id_col, "trial_period", "followup_time"])
    agg = {
        "assigned_treatment": ("assigned_treatment", "first"),
        "n_periods": ("followup_time", "size"),
        "last_followup_time": ("followup_time", "max"),
        "event": (outcome_col, "max"),
    }
    if competing_event_col is not None:
        agg["competing_event"] = (competing_event_col, "max")
    if "weight" in ordered.columns:
        agg["final_weight"] = ("weight", "last")

    return (
        ordered.groupby([id_col, "trial_period"], sort=True)
        .agg(**agg)
        .reset_index()
    )
