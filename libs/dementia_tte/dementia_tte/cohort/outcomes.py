"""Time-to-event outcome derivation.

Derives, from event dates, the follow-up time and event indicator for
dementia, all-cause death and the composite of dementia or death, plus a
competing-risk status where death before dementia is a competing event.
"""

from __future__ import annotations

import logging
from datetime import date

import numpy as np
import pandas as pd

from ..core.base import DataValidationError, require_columns

logger = logging.getLogger(__name__)

DAYS_PER_MONTH = 30.4375
OUTCOMES = ("dementia", "death", "dementia_or_death")

# Competing-risk status codes
CENSORED = 0
DEMENTIA = 1
DEATH = 2


def _row_min(*columns: pd.Series) -> pd.Series:
    """Earliest non-missing date per row."""
    return pd.concat(columns, axis=1).min(axis=1)


def derive_time_to_event(
    data: pd.DataFrame,
    max_follow_up_days: int | None = None,
    study_end: date | str | None = None,
    strict: bool = False,
) -> pd.DataFrame:
    """Add follow-up end dates, event flags and times for each outcome.

    Args:
        data: Eligible patients with index and event dates
        max_follow_up_days: Administrative end of follow-up after index
        study_end: Calendar end of the study; defaults to the latest
            end-of-data date in the cohort
        strict: Raise instead of dropping rows without positive follow-up

    Returns:
        Copy of ``data`` with ``event_<outcome>``, ``time_<outcome>_days``,
        ``time_<outcome>_months``, ``status_dementia_cr``,
        ``follow_up_end_date``, and ``censoring_reason`` (dementia follow-up)
        and ``censoring_reason_death`` (death follow-up) columns. Only
        ``end_of_data`` marks loss to follow-up.
    """
    require_columns(
        data,
        ["index_date", "dementia_date", "death_date", "end_of_data_date"],
        "time-to-event derivation",
    )
    df = data.copy()
    index_date = df["index_date"]

    censoring_dates = [df["end_of_data_date"]]
    admin_end = None
    if max_follow_up_days is not None:
        if max_follow_up_days <= 0:
            raise ValueError("max_follow_up_days must be positive")
        admin_end = index_date + pd.Timedelta(days=max_follow_up_days)
        censoring_dates.append(admin_end)
    study_end_ts = None
    if study_end is not None:
        study_end_ts = pd.Timestamp(study_end)
        censoring_dates.append(pd.Series(study_end_ts, index=df.index))

    censor_date = _row_min(*censoring_dates)

    # Dementia follow-up stops at death; death follow-up continues past dementia
    end_dementia = _row_min(df["dementia_date"], df["death_date"], censor_date)
    end_death = _row_min(df["death_date"], censor_date)

    event_dementia = (df["dementia_date"] <= end_dementia).astype(int)
    event_death = (df["death_date"] <= end_death).astype(int)
    death_first = (df["death_date"] <= end_dementia) & (event_dementia == 0)
    event_composite = ((event_dementia == 1) | death_first).astype(int)

    df["follow_up_end_date"] = end_dementia
    df["event_dementia"] = event_dementia
    df["event_death"] = event_death
    df["event_dementia_or_death"] = event_composite

    for outcome, end in [
        ("dementia", end_dementia),
        ("death", end_death),
        ("dementia_or_death", end_dementia),
    ]:
        days = (end - index_date).dt.days
        df[f"time_{outcome}_days"] = days
        df[f"time_{outcome}_months"] = (days / DAYS_PER_MONTH).round(3)

    df["status_dementia_cr"] = np.select(
        [event_dementia == 1, death_first], [DEMENTIA, DEATH], default=CENSORED
    )

    if study_end_ts is None:
        study_end_ts = df["end_of_data_date"].max()

    def censoring_reason(end, events):
        conditions = [cond for cond, _ in events]
        reasons = [reason for _, reason in events]
        if admin_end is not None:
            conditions.append(end == admin_end)
            reasons.append("administrative")
        conditions.append((end == study_end_ts) & (df["end_of_data_date"] >= study_end_ts))
        reasons.append("study_end")
        return np.select(conditions, reasons, default="end_of_data")

    df["censoring_reason"] = censoring_reason(
        end_dementia, [(event_dementia == 1, "dementia"), (death_first, "death")]
    )
    df["censoring_reason_death"] = censoring_reason(end_death, [(event_death == 1, "death")])

    no_follow_up = df["time_dementia_days"].isna() | (df["time_dementia_days"] <= 0)
    if no_follow_up.any():
        msg = f"{int(no_follow_up.sum())} patients have no follow-up after index"
        if strict:
            raise DataValidationError(msg)
        logger.warning(f"{msg}; dropping them")
        df = df.loc[~no_follow_up].reset_index(drop=True)

    logger.info(
        f"Outcomes derived for {len(df):,} patients: "
        f"{int(df['event_dementia'].sum()):,} dementia, "
        f"{int(df['event_death'].sum()):,} deaths, "
        f"{int((df['status_dementia_cr'] == DEATH).sum()):,} deaths before dementia"
    )
    return df


def summarize_outcomes(data: pd.DataFrame, group_col: str | None = None) -> pd.DataFrame:
    """Event counts, person-time and crude rates per 1,000 person-years.

    Args:
        data: Output of :func:`derive_time_to_event`
        group_col: Optional grouping column (e.g. ever treated)

    Returns:
        One row per outcome (and group) with events, person-years and rate
    """
    require_columns(
        data,
        [f"event_{o}" for o in OUTCOMES] + [f"time_{o}_days" for o in OUTCOMES],
        "outcome summary",
    )
    groups = [(None, data)] if group_col is None else list(data.groupby(group_col))

    rows = []
    for key, frame in groups:
        for outcome in OUTCOMES:
            person_years = frame[f"time_{outcome}_days"].sum() / 365.25
            events = int(frame[f"event_{outcome}"].sum())
            row = {
                "outcome": outcome,
                "n_patients": len(frame),
                "events": events,
                "person_years": round(float(person_years), 2),
                "rate_per_1000py": round(1000 * events / person_years, 3)
                if person_years > 0
                else np.nan,
            }
            if group_col is not None:
                row = {group_col: key, **row}
            rows.append(row)
    return pd.DataFrame(rows)
