import numpy as np
import pandas as pd
import pytest

from analysis_config import AnalysisConfig, AUCConfig, PredictionErrorConfig
from data_loader import prepare_outcome


def simulate_subjects(n=150, beta_age=-0.05, beta_dacc=-0.9, seed=7):
    """Two exponential rearrest outcomes driven by centered age and dACC, administrative censoring"""
    rng = np.random.default_rng(seed)
    age = rng.normal(0.0, 8.0, n)
    dacc = rng.normal(0.0, 1.0, n)
    df = pd.DataFrame({'age_release_c': age, 'dacc_c': dacc,
                       'dacc_split': (dacc > np.median(dacc)).astype(int)})

    for outcome, base_rate in (('violent', 0.012), ('nonviolent', 0.02)):
        hazard = base_rate * np.exp(beta_age * age + beta_dacc * dacc)
        event_time = rng.exponential(1.0 / hazard)
        censor_time = rng.uniform(24.0, 60.0, n)
        observed = np.minimum(event_time, censor_time)
        df[f'time_{outcome}'] = np.maximum(np.round(observed, 1), 0.1)
        df[f'rearrest_{outcome}'] = (event_time <= censor_time).astype(int)
    return df


@pytest.fixture(scope='session')
def subjects():
    return simulate_subjects()


@pytest.fixture(scope='session')
def violent(subjects):
    return prepare_outcome(subjects, 'violent')


@pytest.fixture(scope='session')
def nonviolent(subjects):
    return prepare_outcome(subjects, 'nonviolent')


@pytest.fixture
def small_config(tmp_path):
    return AnalysisConfig(
        prediction_error=PredictionErrorConfig(n_repetitions=2),
        auc=AUCConfig(n_repetitions=2),
        seed=11,
        cache_dir=str(tmp_path / 'cache'),
        output_dir=str(tmp_path / 'output'),
    )


@pytest.fixture(scope='session')
def separated():
    """Canonical frame where every event has high dACC: the dACC partial likelihood has no maximum"""
    rng = np.random.default_rng(3)
    n, half = 40, 20
    return pd.DataFrame({
        'time': np.r_[np.arange(1.0, half + 1.0), np.arange(30.0, 30.0 + n - half)],
        'event': np.r_[np.ones(half, dtype=int), np.zeros(n - half, dtype=int)],
        'age': rng.normal(0.0, 8.0, n),
        'dacc': np.r_[np.ones(half), -np.ones(n - half)],
        'dacc_split': np.r_[np.ones(half, dtype=int), np.zeros(n - half, dtype=int)],
    })
