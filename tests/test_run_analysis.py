import json
import os

import pandas as pd
import pytest

from analysis_config import AUCConfig, PredictionErrorConfig
from data_loader import load_subject_table, prepare_outcome
from exceptions import CacheMissError
from prediction_error import PredictionErrorEstimator
from run_analysis import main, run_outcome_pipeline
from time_dependent_auc import TimeDependentAUCEstimator


@pytest.fixture
def subject_csv(tmp_path, subjects):
    path = tmp_path / 'subjects.csv'
    subjects.to_csv(path, index=False)
    return path


def test_outcome_pipeline_writes_tables(subjects, small_config):
    report = run_outcome_pipeline(subjects, 'violent', small_config)
    out = small_config.output_path

    for name in ('km_violent_all.csv', 'km_violent_split0.csv', 'km_violent_split1.csv',
                 'cox_violent.csv', 'pec_violent_cv10.csv', 'pec_violent_boot632plus.csv',
                 'auc_violent.csv'):
        assert (out / name).exists(), name

    km = pd.read_csv(out / 'km_violent_all.csv')
    assert list(km.columns) == ['time', 'survival']
    assert km['survival'].is_monotonic_decreasing

    pec = pd.read_csv(out / 'pec_violent_cv10.csv')
    assert list(pec.columns) == ['time', 'Age', 'Age+dACC']
    assert pec['time'].max() <= report.error_results['cv10'].horizon

    assert 'months' in report.text
    assert set(report.error_results) == {'cv10', 'boot632plus'}
    assert report.auc_result is not None


def test_pipeline_reuses_cache(subjects, small_config):
    first = run_outcome_pipeline(subjects, 'nonviolent', small_config, run_auc=False, export=False)
    small_config.allow_compute = False
    second = run_outcome_pipeline(subjects, 'nonviolent', small_config, run_auc=False, export=False)
    pd.testing.assert_frame_equal(first.error_results['cv10'].mean_error,
                                  second.error_results['cv10'].mean_error)


def test_main_end_to_end(subject_csv, tmp_path):
    output_dir = tmp_path / 'out'
    code = main(['--data', str(subject_csv), '--repetitions', '2', '--seed', '5',
                 '--cache-dir', str(tmp_path / 'cache'), '--output-dir', str(output_dir),
                 '--log-level', 'WARNING'])
    assert code == 0
    summary = (output_dir / 'summary.txt').read_text()
    assert 'VIOLENT CRIMES' in summary
    assert 'NONVIOLENT CRIMES' in summary
    assert 'integrated to' in summary


def test_main_without_cache_and_compute_fails(subject_csv, tmp_path):
    code = main(['--data', str(subject_csv), '--repetitions', '2', '--no-compute', '--skip-auc',
                 '--cache-dir', str(tmp_path / 'empty'), '--output-dir', str(tmp_path / 'out')])
    assert code == 1


def test_main_missing_input(tmp_path):
    assert main(['--data', str(tmp_path / 'missing.csv'), '--output-dir', str(tmp_path)]) == 1


@pytest.mark.skipif(
    not (os.environ.get('DACC_REFERENCE_DATA') and os.environ.get('DACC_REFERENCE_VALUES')),
    reason="published subject table and reference values not available",
)
def test_reference_relative_improvements():
    """
    DACC_REFERENCE_VALUES points at a JSON file such as
    {"violent": {"cv10": 0.05, "auc": {"uno": 0.03}}, "tolerance": 0.01}
    """
    with open(os.environ['DACC_REFERENCE_VALUES']) as f:
        expected = json.load(f)
    tolerance = expected.pop('tolerance', 0.01)
    raw = load_subject_table(os.environ['DACC_REFERENCE_DATA'])

    for outcome, values in expected.items():
        data = prepare_outcome(raw, outcome)
        for scheme in ('cv10', 'boot632plus'):
            if scheme in values:
                result = PredictionErrorEstimator(PredictionErrorConfig()).estimate(data, scheme, seed=20130325)
                assert result.relative_improvement() == pytest.approx(values[scheme], abs=tolerance)
        if 'auc' in values:
            auc = TimeDependentAUCEstimator(AUCConfig()).estimate(data, seed=20130325)
            improvement = auc.relative_improvement()
            for variant, value in values['auc'].items():
                assert improvement[variant] == pytest.approx(value, abs=tolerance)


def test_changed_settings_do_not_reuse_cache(subjects, small_config):
    run_outcome_pipeline(subjects, 'violent', small_config, run_auc=False, export=False)
    small_config.allow_compute = False
    small_config.prediction_error.max_time = 30.0
    with pytest.raises(CacheMissError):
        run_outcome_pipeline(subjects, 'violent', small_config, run_auc=False, export=False)
