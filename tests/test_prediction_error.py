import numpy as np
import pandas as pd
import pytest

from analysis_config import DataConfig, PredictionErrorConfig
from data_loader import OutcomeData, prepare_outcome
from exceptions import DegenerateFoldError, HorizonError, ModelFitError
from prediction_error import REFERENCE_MODEL, PredictionErrorEstimator, evaluation_times


@pytest.fixture(scope='module')
def cv_result(violent):
    estimator = PredictionErrorEstimator(PredictionErrorConfig(n_repetitions=3))
    return estimator.estimate(violent, 'cv10', seed=42)


def test_evaluation_times_are_capped_event_times(violent):
    times = evaluation_times(violent, max_time=30.0)
    assert times.max() <= 30.0
    assert np.all(np.diff(times) > 0)
    event_times = set(violent.times[violent.events == 1])
    assert set(times) <= event_times


def test_cv_result_shape(cv_result):
    assert list(cv_result.mean_error.columns) == ['Age', 'dACC', 'Age+dACC', REFERENCE_MODEL]
    assert len(cv_result.mean_error) == len(cv_result.eval_times)
    assert cv_result.n_completed == 3
    assert cv_result.excluded == []
    assert (cv_result.mean_error.to_numpy() >= 0).all()


def test_horizon_is_well_defined(cv_result, violent):
    assert cv_result.horizon <= cv_result.eval_times[-1]
    assert cv_result.horizon <= violent.times.max()
    assert np.all(cv_result.repetition_horizons >= cv_result.horizon)


def test_dacc_improves_integrated_brier_score(cv_result):
    ibs = cv_result.ibs_table()
    assert ibs['Age+dACC'] < ibs['Age']
    improvement = cv_result.relative_improvement('Age', 'Age+dACC')
    assert improvement == pytest.approx((ibs['Age'] - ibs['Age+dACC']) / ibs['Age'])
    assert 0 < improvement < 1


def test_cutoff_beyond_horizon_rejected(cv_result):
    with pytest.raises(HorizonError):
        cv_result.ibs('Age', cutoff=cv_result.horizon + 1.0)


def test_error_table_restricted_to_cutoff(cv_result):
    cutoff = cv_result.horizon / 2
    table = cv_result.error_table(['Age', 'Age+dACC'], cutoff)
    assert list(table.columns) == ['time', 'Age', 'Age+dACC']
    assert table['time'].max() <= cutoff


def test_fixed_seed_is_deterministic(violent):
    estimator = PredictionErrorEstimator(PredictionErrorConfig(n_repetitions=2, include_reference=False))
    first = estimator.estimate(violent, 'cv10', seed=5)
    second = estimator.estimate(violent, 'cv10', seed=5)
    pd.testing.assert_frame_equal(first.mean_error, second.mean_error)


def test_outcomes_are_independent(violent, nonviolent):
    estimator = PredictionErrorEstimator(PredictionErrorConfig(n_repetitions=1, include_reference=False))
    a = estimator.estimate(violent, 'cv10', seed=5)
    b = estimator.estimate(nonviolent, 'cv10', seed=5)
    assert a.outcome == 'violent' and b.outcome == 'nonviolent'
    assert not np.array_equal(a.eval_times, b.eval_times)


def test_bootstrap_632plus(violent):
    estimator = PredictionErrorEstimator(PredictionErrorConfig(n_repetitions=4))
    result = estimator.estimate(violent, 'boot632plus', seed=8)
    assert set(result.components) == {'apparent', 'no_information', 'bootstrap_cv'}
    err = result.mean_error.to_numpy()
    assert np.isfinite(err).all()
    assert (err >= 0).all()

    apparent = result.components['apparent']
    bootcv = result.components['bootstrap_cv']
    no_info = result.components['no_information']
    low = np.minimum(apparent, np.minimum(bootcv, no_info)).to_numpy()
    high = np.maximum(apparent, np.minimum(bootcv, no_info)).to_numpy()
    assert (err >= low - 1e-12).all()
    assert (err <= high + 1e-12).all()


def test_fold_without_events_aborts(subjects):
    sparse = subjects.copy()
    sparse['rearrest_violent'] = 0
    sparse.loc[:4, 'rearrest_violent'] = 1
    sparse.loc[:4, 'time_violent'] = [5.0, 10.0, 15.0, 20.0, 25.0]
    data = prepare_outcome(sparse, 'violent')
    estimator = PredictionErrorEstimator(PredictionErrorConfig(n_repetitions=1))
    with pytest.raises(DegenerateFoldError):
        estimator.estimate(data, 'cv10', seed=1)


def test_unknown_scheme(violent):
    with pytest.raises(ValueError):
        PredictionErrorEstimator().estimate(violent, 'loocv', seed=1)


def test_non_convergent_fits_never_reach_the_average(separated):
    data = OutcomeData(outcome=DataConfig().outcome('violent'), frame=separated)
    estimator = PredictionErrorEstimator(PredictionErrorConfig(n_repetitions=2))
    with pytest.raises(ModelFitError, match='every repetition'):
        estimator.estimate(data, 'cv10', seed=1)
