"""Treatment history variables for person-period data."""

from __future__ import annotations

import logging

import pandas as pd

from ..core.base import DataValidationError, require_binary, require_columns
from .protocol import TrialEmulationProtocol

logger = logging.getLogger(__name__)


def prepare_person_period(
    data: pd.DataFrame, protocol: TrialEmulationProtocol
) -> pd.DataFrame:
    """Validate person-period data and add treatment history columns.

    Adds ``am_1`` (treatment in the previous period, 0 in a patient's first
    period), ``first`` (first row of a patient), ``switch`` (treatment
    differs from ``am_1``), ``cum_treatment`` and ``time_on_regime``
    (periods since the current treatment regime started).

    Args:
        data: Person-period data
        protocol: Analysis protocol naming the columns

    Returns:
        Sorted copy of ``data`` with the history columns

    Raises:
        DataValidationError: If required columns are missing or invalid
    """
    require_columns(data, protocol.required_columns(), "trial emulation")

    id_col = protocol.id_col
    period_col = protocol.period_col
    trt = protocol.treatment_col

    binary_cols = [trt, protocol.outcome_col, protocol.eligible_col]
    if protocol.censored_col is not None:
        binary_cols.append(protocol.censored_col)
    if protocol.competing_event_col is not None:
        binary_cols.append(protocol.competing_event_col)
    for col in binary_cols:
        if data[col].isna().any():
            raise DataValidationError(f"Column '{col}' has missing values")
    require_binary(data, binary_cols)

    covariates = protocol.model_covariates()
    missing = data[covariates].isna().sum()
    missing = missing[missing > 0]
    if not missing.empty:
        raise DataValidationError(
            f"Model covariates have missing values: {missing.to_dict()}"
        )

    if data.duplicated([id_col, period_col]).any():
        raise DataValidationError(
            "Duplicate observations for patient-period combinations"
        )

    df = data.sort_values([id_col, period_col]).reset_index(drop=True)
    grouped = df.groupby(id_col, sort=False)

    # Rows after an outcome carry no information
    events_before = grouped[protocol.outcome_col].cumsum() - df[protocol.outcome_col]
    after_event = events_before > 0
    if after_event.any():
        logger.warning(
            f"Dropping {int(after_event.sum()):,} person-periods recorded after the outcome"
        )
        df = df.loc[~after_event].reset_index(drop=True)
        grouped = df.groupby(id_col, sort=False)

    df["am_1"] = grouped[trt].shift(fill_value=0).astype(int)
    df["first"] = grouped.cumcount() == 0
    df["switch"] = ((df[trt] != df["am_1"]) & ~df["first"]).astype(int)
    df["cum_treatment"] = grouped[trt].cumsum()

    regime = df.groupby(id_col, sort=False)["switch"].cumsum()
    df["time_on_regime"] = df.groupby([df[id_col], regime]).cumcount()

    logger.debug(
        f"Prepared {len(df):,} person-periods: {int(df['switch'].sum()):,} switches, "
        f"{int(df[protocol.eligible_col].sum()):,} eligible periods"
    )
    return df
