"""
data_loader.py

Reads the subject table and produces one validated, canonical view per outcome.

Canonical columns: time (months), event (0/1), age, dacc, dacc_split.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Union

import numpy as np
import pandas as pd

from analysis_config import DataConfig, OutcomeColumns
from exceptions import DataValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutcomeData:
    """Read-only subject table for a single outcome"""
    outcome: OutcomeColumns
    frame: pd.DataFrame

    @property
    def n_subjects(self) -> int:
        return len(self.frame)

    @property
    def n_events(self) -> int:
        return int(self.frame['event'].sum())

    @property
    def times(self) -> np.ndarray:
        return self.frame['time'].to_numpy(dtype=float)

    @property
    def events(self) -> np.ndarray:
        return self.frame['event'].to_numpy(dtype=int)


def load_subject_table(path: Union[str, Path], config: DataConfig = None) -> pd.DataFrame:
    """Read the raw delimited table"""
    config = config or DataConfig()
    path = Path(path)
    if not path.exists():
        raise DataValidationError(f"Input table not found: {path}")

    df = pd.read_csv(path, sep=config.delimiter)
    logger.info(f"Loaded {len(df)} subjects, {df.shape[1]} columns from {path}")
    return df


def _validate_numeric(df: pd.DataFrame, column: str) -> pd.Series:
    if column not in df.columns:
        raise DataValidationError(f"Required column '{column}' is missing")
    values = pd.to_numeric(df[column], errors='coerce')
    if values.isna().any():
        bad = int(values.isna().sum())
        raise DataValidationError(f"Column '{column}' has {bad} missing or non-numeric values")
    return values.astype(float)


def prepare_outcome(df: pd.DataFrame, outcome: Union[str, OutcomeColumns],
                    config: DataConfig = None) -> OutcomeData:
    """
    Validate one outcome's columns and build its canonical view

    Args:
        df: raw subject table
        outcome: outcome name or OutcomeColumns
        config: DataConfig with predictor column names

    Returns:
        OutcomeData with canonical columns
    """
    config = config or DataConfig()
    if isinstance(outcome, str):
        outcome = config.outcome(outcome)

    time = _validate_numeric(df, outcome.time_col)
    event = _validate_numeric(df, outcome.event_col)
    age = _validate_numeric(df, config.age_col)
    dacc = _validate_numeric(df, config.dacc_col)

    if (time <= 0).any():
        raise DataValidationError(
            f"Column '{outcome.time_col}' must be strictly positive "
            f"({int((time <= 0).sum())} non-positive values)"
        )
    if not event.isin([0.0, 1.0]).all():
        raise DataValidationError(f"Column '{outcome.event_col}' must be coded 0/1")

    if config.split_col in df.columns:
        split = _validate_numeric(df, config.split_col)
        if not split.isin([0.0, 1.0]).all():
            raise DataValidationError(f"Column '{config.split_col}' must be coded 0/1")
    else:
        split = (dacc > dacc.median()).astype(float)
        logger.info(f"'{config.split_col}' absent; derived dACC median split "
                    f"({int(split.sum())} high / {int((split == 0).sum())} low)")

    frame = pd.DataFrame({
        'time': time.to_numpy(),
        'event': event.astype(int).to_numpy(),
        'age': age.to_numpy(),
        'dacc': dacc.to_numpy(),
        'dacc_split': split.astype(int).to_numpy(),
    })

    if frame['event'].sum() == 0:
        raise DataValidationError(f"Outcome '{outcome.name}' has no observed events")

    logger.info(f"Outcome '{outcome.name}': {len(frame)} subjects, "
                f"{int(frame['event'].sum())} events, max follow-up {frame['time'].max():.1f} months")
    return OutcomeData(outcome=outcome, frame=frame)
