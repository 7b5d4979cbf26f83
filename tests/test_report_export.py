import numpy as np
import pandas as pd

from prediction_error import PredictionErrorResult
from report_export import format_brier_summary


def _result(age, combined):
    times = np.array([1.0, 2.0])
    errors = pd.DataFrame({'Age': [age, age], 'Age+dACC': [combined, combined]},
                          index=pd.Index(times, name='time'))
    return PredictionErrorResult(outcome='violent', scheme='cv10', n_repetitions=1, seed=1,
                                 eval_times=times, mean_error=errors,
                                 repetition_horizons=np.array([2.0]))


def test_lower_error_reads_as_reduction():
    line = format_brier_summary(_result(0.2, 0.1), 'Violent crimes')
    assert 'reduces the integrated Brier score by 50.00%' in line
    assert 'integrated to 2.0 months' in line


def test_higher_error_reads_as_increase():
    line = format_brier_summary(_result(0.1, 0.2), 'Violent crimes')
    assert 'increases the integrated Brier score by 100.00%' in line
    assert '-' not in line.split('by ')[1].split('%')[0]
