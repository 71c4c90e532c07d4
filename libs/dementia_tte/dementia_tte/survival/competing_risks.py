"""Descriptive cumulative incidence with death as a competing risk.

Aalen-Johansen curves give the cumulative incidence of dementia while
accounting for death; Kaplan-Meier curves describe the composite endpoint
of dementia or death. Both are computed per group (e.g. ever treated) on
person-level follow-up.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Sequence

import numpy as np
import pandas as pd
from lifelines import AalenJohansenFitter, KaplanMeierFitter

from ..core.base import DataValidationError, require_columns

logger = logging.getLogger(__name__)


def _groups(
    df: pd.DataFrame, group_col: str | None
) -> list[tuple[object, pd.DataFrame]]:
    if group_col is None:
        return [("all", df)]
    require_columns(df, [group_col], "grouped survival curves")
    return list(df.groupby(group_col, sort=True))


def _step_values(curve: pd.Series, times: Sequence[float]) -> np.ndarray:
    """Right-continuous step function of ``curve`` evaluated at ``times``."""
    idx = np.searchsorted(curve.index.to_numpy(dtype=float), times, side="right") - 1
    values = curve.to_numpy(dtype=float)
    # Curves start at time 0, so non-negative times always find a step
    return values[np.clip(idx, 0, None)]


def _check_durations(df: pd.DataFrame, duration_col: str, event_col: str) -> None:
    require_columns(df, [duration_col, event_col], "survival curves")
    if df.empty:
        raise DataValidationError("Cannot estimate survival curves on empty data")
    if df[duration_col].isna().any() or (df[duration_col] < 0).any():
        raise DataValidationError(f"'{duration_col}' must be non-negative and complete")


def cumulative_incidence(
    df: pd.DataFrame,
    duration_col: str,
    event_col: str,
    event_of_interest: int = 1,
    group_col: str | None = None,
    times: Sequence[float] | None = None,
    random_state: int | None = 0,
) -> pd.DataFrame:
    """Aalen-Johansen cumulative incidence of one event type.

    Args:
        df: Person-level data
        duration_col: Follow-up time column
        event_col: Event type column, 0 for censored
        event_of_interest: Event code whose incidence is estimated
        group_col: Optional grouping column
        times: Evaluate the curves at these times instead of the event times
        random_state: Seed for the jitter lifelines adds to tied times

    Returns:
        Long DataFrame with ``group``, ``time``, ``cumulative_incidence``
        and confidence limits
    """
    _check_durations(df, duration_col, event_col)

    frames = []
    for key, frame in _groups(df, group_col):
        n_events = int((frame[event_col] == event_of_interest).sum())
        if n_events == 0:
            logger.warning(
                f"No events of type {event_of_interest} in group '{key}'; "
                "cumulative incidence is zero"
            )
            grid = np.union1d([0.0], frame[duration_col].to_numpy(dtype=float))
            cif = pd.Series(0.0, index=grid)
            lower = upper = cif
        else:
            ajf = AalenJohansenFitter(seed=random_state)
            with warnings.catch_warnings():
                warnings.filterwarnings("ignore", message="Tied event times")
                ajf.fit(
                    frame[duration_col],
                    frame[event_col],
                    event_of_interest=event_of_interest,
                )

            cif = ajf.cumulative_density_.iloc[:, 0]
            ci = ajf.confidence_interval_
            lower = pd.Series(ci.iloc[:, 0].to_numpy(), index=ci.index)
            upper = pd.Series(ci.iloc[:, 1].to_numpy(), index=ci.index)

        if times is None:
            out = pd.DataFrame(
                {
                    "time": cif.index.to_numpy(dtype=float),
                    "cumulative_incidence": cif.to_numpy(dtype=float),
                    "ci_lower": lower.reindex(cif.index).to_numpy(dtype=float),
                    "ci_upper": upper.reindex(cif.index).to_numpy(dtype=float),
                }
            )
        else:
            out = pd.DataFrame(
                {
                    "time": np.asarray(times, dtype=float),
                    "cumulative_incidence": _step_values(cif, times),
                    "ci_lower": _step_values(lower, times),
                    "ci_upper": _step_values(upper, times),
                }
            )
        out.insert(0, "group", key)
        out["n_at_risk_start"] = len(frame)
        out["n_events"] = n_events
        frames.append(out)

    return pd.concat(frames, ignore_index=True)


def composite_survival(
    df: pd.DataFrame,
    duration_col: str,
    event_col: str,
    group_col: str | None = None,
    times: Sequence[float] | None = None,
) -> pd.DataFrame:
    """Kaplan-Meier survival free of the composite endpoint.

    Args:
        df: Person-level data
        duration_col: Follow-up time column
        event_col: Event column; any non-zero value counts as an event
        group_col: Optional grouping column
        times: Evaluate the curves at these times instead of the event times

    Returns:
        Long DataFrame with ``group``, ``time``, ``survival``,
        ``cumulative_incidence`` (one minus survival) and confidence limits
    """
    _check_durations(df, duration_col, event_col)

    frames = []
    for key, frame in _groups(df, group_col):
        kmf = KaplanMeierFitter()
        kmf.fit(frame[duration_col], (frame[event_col] != 0).astype(int), label=str(key))

        survival = kmf.survival_function_.iloc[:, 0]
        ci = kmf.confidence_interval_
        lower = pd.Series(ci.iloc[:, 0].to_numpy(), index=ci.index)
        upper = pd.Series(ci.iloc[:, 1].to_numpy(), index=ci.index)

        if times is None:
            grid = survival.index.to_numpy(dtype=float)
            surv, low, high = (
                survival.to_numpy(dtype=float),
                lower.to_numpy(dtype=float),
                upper.to_numpy(dtype=float),
            )
        else:
            grid = np.asarray(times, dtype=float)
            surv = _step_values(survival, times)
            low = _step_values(lower, times)
            high = _step_values(upper, times)

        out = pd.DataFrame(
            {
                "group": key,
                "time": grid,
                "survival": surv,
                "ci_lower": low,
                "ci_upper": high,
                "cumulative_incidence": 1 - surv,
            }
        )
        out["n_events"] = int((frame[event_col] != 0).sum())
        frames.append(out)

    logger.debug(f"Composite survival estimated for {len(frames)} group(s)")
    return pd.concat(frames, ignore_index=True)
