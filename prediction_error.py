"""
prediction_error.py

Resampled prediction error (IPCW Brier score) of the Age, dACC and Age+dACC Cox
models under repeated 10-fold cross-validation or the .632+ bootstrap.

Each repetition refits every model on its training partition and scores the
held-out subjects. The censoring distribution used for the IPCW weights is the
marginal Kaplan-Meier estimate on the full data, computed once per run.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from analysis_config import RESAMPLING_SCHEMES, PredictionErrorConfig
from brier_score import (CensoringDistribution, brier_residuals, integrated_brier_score,
                         no_information_error)
from cox_models import fit_model_set
from data_loader import OutcomeData
from exceptions import DataValidationError, HorizonError
from resampling import (bootstrap_split, check_partition, kfold_splits, run_repetitions,
                        stratification_labels)
from survival_curves import kaplan_meier_curve

logger = logging.getLogger(__name__)

REFERENCE_MODEL = 'Reference'


@dataclass
class RepetitionCurve:
    """Brier curve of every model for one repetition"""
    errors: Dict[str, np.ndarray]
    horizon: float


@dataclass
class PredictionErrorResult:
    """Aggregated resampled prediction error for one outcome and scheme"""
    outcome: str
    scheme: str
    n_repetitions: int
    seed: int
    eval_times: np.ndarray
    mean_error: pd.DataFrame
    repetition_horizons: np.ndarray
    excluded: List = field(default_factory=list)
    components: Dict[str, pd.DataFrame] = field(default_factory=dict)

    @property
    def horizon(self) -> float:
        """Largest time at which every repetition had held-out subjects at risk"""
        return float(min(np.min(self.repetition_horizons), self.eval_times[-1]))

    @property
    def n_completed(self) -> int:
        return len(self.repetition_horizons)

    def _resolve_cutoff(self, cutoff: Optional[float]) -> float:
        if cutoff is None:
            return self.horizon
        if cutoff > self.horizon:
            raise HorizonError(
                f"Cutoff {cutoff} exceeds the well-defined horizon {self.horizon:.2f} "
                f"for {self.outcome}/{self.scheme}"
            )
        return float(cutoff)

    def ibs(self, model: str, cutoff: Optional[float] = None) -> float:
        cutoff = self._resolve_cutoff(cutoff)
        return integrated_brier_score(self.eval_times, self.mean_error[model].to_numpy(), cutoff)

    def ibs_table(self, cutoff: Optional[float] = None) -> pd.Series:
        cutoff = self._resolve_cutoff(cutoff)
        return pd.Series({model: self.ibs(model, cutoff) for model in self.mean_error.columns},
                         name=f'ibs_{cutoff:g}')

    def relative_improvement(self, baseline: str = 'Age', combined: str = 'Age+dACC',
                             cutoff: Optional[float] = None) -> float:
        """(IBS_baseline - IBS_combined) / IBS_baseline"""
        base = self.ibs(baseline, cutoff)
        return (base - self.ibs(combined, cutoff)) / base

    def error_table(self, models: List[str], cutoff: Optional[float] = None) -> pd.DataFrame:
        """Mean error curves restricted to time points at or below the cutoff"""
        cutoff = self._resolve_cutoff(cutoff)
        table = self.mean_error.loc[self.mean_error.index <= cutoff, models]
        return table.reset_index()


def evaluation_times(data: OutcomeData, max_time: float) -> np.ndarray:
    """Unique observed event times up to max_time"""
    times = np.unique(data.times[data.events == 1])
    times = times[times <= max_time]
    if len(times) == 0:
        raise DataValidationError(f"No events at or before {max_time} months for '{data.outcome.name}'")
    return times


def _reference_survival(train: pd.DataFrame, n_test: int, eval_times: np.ndarray) -> np.ndarray:
    curve = kaplan_meier_curve(train['time'], train['event'], label='reference')
    idx = np.searchsorted(curve['time'].to_numpy(), eval_times, side='right') - 1
    surv = curve['survival'].to_numpy()[np.clip(idx, 0, None)]
    return np.tile(surv, (n_test, 1))


def _score_split(frame: pd.DataFrame, train_idx: np.ndarray, test_idx: np.ndarray,
                 eval_times: np.ndarray, model_names: List[str], include_reference: bool,
                 censoring: CensoringDistribution) -> Dict[str, np.ndarray]:
    train = frame.iloc[train_idx]
    test = frame.iloc[test_idx]
    obs_times = test['time'].to_numpy()
    obs_events = test['event'].to_numpy()

    residuals = {}
    for name, model in fit_model_set(train, model_names).items():
        surv = model.survival_at(test, eval_times)
        residuals[name] = brier_residuals(surv, obs_times, obs_events, eval_times, censoring)
    if include_reference:
        surv = _reference_survival(train, len(test), eval_times)
        residuals[REFERENCE_MODEL] = brier_residuals(surv, obs_times, obs_events, eval_times, censoring)
    return residuals


def cv_repetition(repetition: int, seed: int, frame: pd.DataFrame, eval_times: np.ndarray,
                  model_names: List[str], n_folds: int, include_reference: bool,
                  censoring: CensoringDistribution) -> RepetitionCurve:
    """One repetition of k-fold cross-validated Brier curves"""
    events = frame['event'].to_numpy()
    splits = kfold_splits(stratification_labels(events), n_folds, seed)
    names = model_names + ([REFERENCE_MODEL] if include_reference else [])
    residuals = {name: np.empty((len(frame), len(eval_times))) for name in names}

    horizon = np.inf
    for split in splits:
        check_partition(split, events, repetition)
        fold_residuals = _score_split(frame, split.train, split.test, eval_times,
                                      model_names, include_reference, censoring)
        for name, values in fold_residuals.items():
            residuals[name][split.test] = values
        horizon = min(horizon, frame['time'].iloc[split.test].max())

    return RepetitionCurve(errors={name: r.mean(axis=0) for name, r in residuals.items()},
                           horizon=float(horizon))


def bootstrap_repetition(repetition: int, seed: int, frame: pd.DataFrame, eval_times: np.ndarray,
                         model_names: List[str], include_reference: bool,
                         censoring: CensoringDistribution) -> RepetitionCurve:
    """One bootstrap sample: fit in-bag, score out-of-bag"""
    events = frame['event'].to_numpy()
    split = bootstrap_split(len(frame), seed)
    check_partition(split, events, repetition)
    residuals = _score_split(frame, split.train, split.test, eval_times,
                             model_names, include_reference, censoring)
    return RepetitionCurve(errors={name: r.mean(axis=0) for name, r in residuals.items()},
                           horizon=float(frame['time'].iloc[split.test].max()))


class PredictionErrorEstimator:
    """
    Repeated-resampling prediction error for the fixed Cox model set

    Usage:
        estimator = PredictionErrorEstimator(PredictionErrorConfig())
        result = estimator.estimate(data, scheme='cv10', seed=1, n_jobs=4)
        result.relative_improvement('Age', 'Age+dACC')
    """

    def __init__(self, config: PredictionErrorConfig = None):
        self.config = config or PredictionErrorConfig()

    @property
    def model_names(self) -> List[str]:
        names = list(self.config.models)
        if self.config.include_reference:
            names.append(REFERENCE_MODEL)
        return names

    def estimate(self, data: OutcomeData, scheme: str, seed: int, n_jobs: int = 1) -> PredictionErrorResult:
        if scheme not in RESAMPLING_SCHEMES:
            raise ValueError(f"Unknown resampling scheme: {scheme}")

        frame = data.frame
        eval_times = evaluation_times(data, self.config.max_time)
        censoring = CensoringDistribution(data.times, data.events)
        label = f'{data.outcome.name}/{scheme}'
        logger.info(f"[{label}] {self.config.n_repetitions} repetitions over "
                    f"{len(eval_times)} evaluation times (<= {eval_times[-1]:.1f} months)")

        if scheme == 'cv10':
            run = run_repetitions(
                cv_repetition, self.config.n_repetitions, seed, n_jobs,
                task_args=(frame, eval_times, list(self.config.models), self.config.n_folds,
                           self.config.include_reference, censoring),
                label=label,
            )
        else:
            run = run_repetitions(
                bootstrap_repetition, self.config.n_repetitions, seed, n_jobs,
                task_args=(frame, eval_times, list(self.config.models),
                           self.config.include_reference, censoring),
                label=label,
            )

        curves = run.ordered()
        mean_error = self._aggregate(curves, eval_times)
        components = {}
        if scheme == 'boot632plus':
            mean_error, components = self._combine_632plus(frame, eval_times, censoring, mean_error)

        result = PredictionErrorResult(
            outcome=data.outcome.name,
            scheme=scheme,
            n_repetitions=self.config.n_repetitions,
            seed=seed,
            eval_times=eval_times,
            mean_error=mean_error,
            repetition_horizons=np.array([c.horizon for c in curves]),
            excluded=list(run.excluded),
            components=components,
        )
        logger.info(f"[{label}] horizon {result.horizon:.2f} months; IBS "
                    + ", ".join(f"{m}={v:.4f}" for m, v in result.ibs_table().items()))
        return result

    def _aggregate(self, curves: List[RepetitionCurve], eval_times: np.ndarray) -> pd.DataFrame:
        """Sum then divide, in repetition order"""
        totals = {name: np.zeros(len(eval_times)) for name in self.model_names}
        for curve in curves:
            for name in totals:
                totals[name] += curve.errors[name]
        return pd.DataFrame({name: total / len(curves) for name, total in totals.items()},
                            index=pd.Index(eval_times, name='time'))

    def _combine_632plus(self, frame: pd.DataFrame, eval_times: np.ndarray,
                         censoring: CensoringDistribution, bootcv: pd.DataFrame):
        """Efron-Tibshirani .632+ weighting of out-of-bag and apparent error"""
        obs_times = frame['time'].to_numpy()
        obs_events = frame['event'].to_numpy()

        predictions = {name: model.survival_at(frame, eval_times)
                       for name, model in fit_model_set(frame, list(self.config.models)).items()}
        if self.config.include_reference:
            predictions[REFERENCE_MODEL] = _reference_survival(frame, len(frame), eval_times)

        apparent, no_info, combined = {}, {}, {}
        for name, surv in predictions.items():
            app = brier_residuals(surv, obs_times, obs_events, eval_times, censoring).mean(axis=0)
            noinf = no_information_error(surv, obs_times, obs_events, eval_times, censoring)
            err1 = np.minimum(bootcv[name].to_numpy(), noinf)

            with np.errstate(divide='ignore', invalid='ignore'):
                overfit = (err1 - app) / (noinf - app)
            overfit = np.where((err1 > app) & (noinf > app), overfit, 0.0)
            overfit = np.clip(overfit, 0.0, 1.0)
            weight = 0.632 / (1.0 - 0.368 * overfit)

            apparent[name] = app
            no_info[name] = noinf
            combined[name] = (1.0 - weight) * app + weight * err1

        index = pd.Index(eval_times, name='time')
        components = {
            'apparent': pd.DataFrame(apparent, index=index),
            'no_information': pd.DataFrame(no_info, index=index),
            'bootstrap_cv': bootcv.copy(),
        }
        return pd.DataFrame(combined, index=index)[bootcv.columns], components
