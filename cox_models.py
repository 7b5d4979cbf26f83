"""
cox_models.py

Proportional-hazards models for rearrest: Age, dACC and Age+dACC.

Fitting is delegated to lifelines.CoxPHFitter (Efron ties). A FittedCoxModel is
never modified after fitting; resampling refits a fresh model on every training
partition.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd
from lifelines import CoxPHFitter
from lifelines.exceptions import ConvergenceError, ConvergenceWarning
from lifelines.statistics import proportional_hazard_test

from analysis_config import MODEL_PREDICTORS
from exceptions import ModelFitError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FittedCoxModel:
    """A named Cox model fitted on one set of subjects"""
    name: str
    predictors: Tuple[str, ...]
    fitter: CoxPHFitter
    n_train: int

    @property
    def coefficients(self) -> pd.Series:
        return self.fitter.params_

    def linear_predictor(self, frame: pd.DataFrame) -> np.ndarray:
        """x'beta on the original (uncentered) covariate scale"""
        X = frame[list(self.predictors)].to_numpy(dtype=float)
        return X @ self.fitter.params_.to_numpy()

    def relative_hazard(self, frame: pd.DataFrame) -> np.ndarray:
        """exp(x'beta) relative to the training covariate means, the scale of the baseline hazard"""
        hazard = self.fitter.predict_partial_hazard(frame[list(self.predictors)])
        return np.asarray(hazard, dtype=float).ravel()

    def baseline_cumulative_hazard(self, times: Sequence[float]) -> np.ndarray:
        """Breslow baseline cumulative hazard as a right-continuous step function"""
        base = self.fitter.baseline_cumulative_hazard_
        grid = base.index.to_numpy(dtype=float)
        values = base.iloc[:, 0].to_numpy(dtype=float)
        idx = np.searchsorted(grid, np.asarray(times, dtype=float), side='right') - 1
        out = np.zeros(len(idx), dtype=float)
        mask = idx >= 0
        out[mask] = values[idx[mask]]
        return out

    def survival_at(self, frame: pd.DataFrame, times: Sequence[float]) -> np.ndarray:
        """Predicted S(t | x), shape (n_subjects, n_times)"""
        h0 = self.baseline_cumulative_hazard(times)
        return np.exp(-np.outer(self.relative_hazard(frame), h0))


def fit_cox_model(name: str, train: pd.DataFrame) -> FittedCoxModel:
    """
    Fit one named model on a training frame with canonical columns

    Raises:
        ModelFitError: partial-likelihood maximization failed to converge
    """
    predictors = MODEL_PREDICTORS[name]
    columns = list(predictors) + ['time', 'event']

    cph = CoxPHFitter()
    try:
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', category=RuntimeWarning)
            # a warning is all lifelines reports for some Newton-Raphson failures
            warnings.simplefilter('error', category=ConvergenceWarning)
            cph.fit(train[columns], duration_col='time', event_col='event')
    except (ConvergenceError, ConvergenceWarning) as e:
        raise ModelFitError(f"Cox model '{name}' failed to converge: {e}", model_name=name) from e

    return FittedCoxModel(name=name, predictors=predictors, fitter=cph, n_train=len(train))


def fit_model_set(train: pd.DataFrame, model_names: List[str]) -> Dict[str, FittedCoxModel]:
    """Fit several named models on the same subjects"""
    return {name: fit_cox_model(name, train) for name in model_names}


def summarize_models(models: Dict[str, FittedCoxModel]) -> pd.DataFrame:
    """Coefficient table for full-data fits"""
    rows = []
    for name, model in models.items():
        cph = model.fitter
        for covariate, row in cph.summary.iterrows():
            rows.append({
                'model': name,
                'covariate': covariate,
                'coef': row['coef'],
                'hazard_ratio': row['exp(coef)'],
                'hr_lower_95': row['exp(coef) lower 95%'],
                'hr_upper_95': row['exp(coef) upper 95%'],
                'se': row['se(coef)'],
                'p_value': row['p'],
                'concordance': cph.concordance_index_,
                'log_likelihood': cph.log_likelihood_,
                'aic_partial': cph.AIC_partial_,
            })
    return pd.DataFrame(rows)


def check_proportional_hazards(models: Dict[str, FittedCoxModel], frame: pd.DataFrame) -> pd.DataFrame:
    """Schoenfeld residual test per model and covariate (rank time transform)"""
    rows = []
    for name, model in models.items():
        columns = list(model.predictors) + ['time', 'event']
        result = proportional_hazard_test(model.fitter, frame[columns], time_transform='rank')
        for covariate, row in result.summary.iterrows():
            rows.append({
                'model': name,
                'covariate': covariate,
                'test_statistic': row['test_statistic'],
                'p_value': row['p'],
            })
        violations = [r['covariate'] for r in rows if r['model'] == name and r['p_value'] < 0.05]
        if violations:
            logger.warning(f"Proportional hazards questionable for {name}: {violations}")
    return pd.DataFrame(rows)

