"""
time_dependent_auc.py

Cross-validated time-dependent AUC of the Age and Age+dACC Cox models.

Four censored-data estimators are computed on every fold:

- chambless_diao: cumulative/dynamic AUC with model-based case and control
  weights, F(t | x) and S(t | x), taken from the training fit.
- hung_chiang: cumulative/dynamic AUC with inverse-probability-of-censoring
  pair weights; censoring Kaplan-Meier estimated on the test partition.
- song_zhou: incident/dynamic AUC with model-based weights; cases are weighted
  by the conditional event density exp(eta) S(t | x), controls by S(t | x).
- uno: cumulative/dynamic AUC from IPCW sensitivity and specificity with the
  censoring Kaplan-Meier estimated on the training partition
  (sksurv.metrics.cumulative_dynamic_auc).

Integrated AUC weights AUC(t) by the Kaplan-Meier event-time density of the
test responses over the time grid.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

import numpy as np
import pandas as pd
from sksurv.metrics import cumulative_dynamic_auc
from sksurv.util import Surv

from analysis_config import AUCConfig
from brier_score import CensoringDistribution
from cox_models import fit_model_set
from data_loader import OutcomeData
from resampling import check_partition, kfold_splits, run_repetitions, stratification_labels
from survival_curves import kaplan_meier_curve

logger = logging.getLogger(__name__)

AUC_VARIANTS = ('chambless_diao', 'hung_chiang', 'song_zhou', 'uno')
INCIDENT_VARIANTS = ('song_zhou',)


@dataclass
class FoldPredictions:
    """Responses and risk scores of one fold for a single fitted model"""
    train_times: np.ndarray
    train_events: np.ndarray
    train_lp: np.ndarray
    test_times: np.ndarray
    test_events: np.ndarray
    test_lp: np.ndarray
    test_survival: np.ndarray         # S(t | x) on the time grid, (n_test, n_times)
    test_relative_hazard: np.ndarray  # exp(eta) on the baseline-hazard scale


def _concordance_matrix(lp: np.ndarray) -> np.ndarray:
    """C[i, j] = 1 if subject i ranks riskier than j, 0.5 on ties, 0 on the diagonal"""
    lp = np.asarray(lp, dtype=float)
    C = (lp[:, None] > lp[None, :]).astype(float) + 0.5 * (lp[:, None] == lp[None, :])
    np.fill_diagonal(C, 0.0)
    return C


def weighted_pair_auc(case_weights: np.ndarray, control_weights: np.ndarray, lp: np.ndarray) -> np.ndarray:
    """
    AUC(t) = sum_ij w_i(t) v_j(t) C_ij / sum_{i != j} w_i(t) v_j(t)

    Args:
        case_weights, control_weights: (n_times, n_subjects)
        lp: risk scores of the same subjects
    """
    C = _concordance_matrix(lp)
    numer = np.einsum('ti,ij,tj->t', case_weights, C, control_weights)
    denom = (case_weights.sum(axis=1) * control_weights.sum(axis=1)
             - (case_weights * control_weights).sum(axis=1))
    with np.errstate(divide='ignore', invalid='ignore'):
        auc = numer / denom
    return np.where(denom > 0, auc, np.nan)


def chambless_diao_auc(pred: FoldPredictions, times: np.ndarray) -> np.ndarray:
    surv = pred.test_survival.T
    return weighted_pair_auc(1.0 - surv, surv, pred.test_lp)


def song_zhou_auc(pred: FoldPredictions, times: np.ndarray) -> np.ndarray:
    surv = pred.test_survival.T
    density = surv * pred.test_relative_hazard[None, :]
    return weighted_pair_auc(density, surv, pred.test_lp)


def hung_chiang_auc(pred: FoldPredictions, times: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    censoring = CensoringDistribution(pred.test_times, pred.test_events)
    T, D = pred.test_times, pred.test_events
    G_T = censoring.survival_left(T)
    G_t = censoring.survival(times)

    is_case = (T[None, :] <= times[:, None]) & (D[None, :] == 1)
    is_control = T[None, :] > times[:, None]
    case_w = np.where(is_case & (G_T[None, :] > eps), 1.0 / np.maximum(G_T[None, :], eps), 0.0)
    control_w = np.where(is_control, 1.0 / np.maximum(G_t[:, None], eps), 0.0)
    return weighted_pair_auc(case_w, control_w, pred.test_lp)


def uno_auc(pred: FoldPredictions, times: np.ndarray) -> np.ndarray:
    """
    sksurv cumulative/dynamic AUC; censoring weights come from the training responses

    Grid points outside the test follow-up window, or any grid once a test event
    lies beyond the training follow-up, are left undefined.
    """
    auc = np.full(len(times), np.nan)
    train_y = Surv.from_arrays(event=pred.train_events.astype(bool), time=pred.train_times)
    test_y = Surv.from_arrays(event=pred.test_events.astype(bool), time=pred.test_times)
    upper = min(pred.train_times.max(), pred.test_times.max())
    valid = (times >= pred.test_times.min()) & (times < upper)
    if not valid.any():
        return auc
    try:
        auc[valid], _ = cumulative_dynamic_auc(train_y, test_y, pred.test_lp, times[valid])
    except ValueError as e:
        logger.debug(f"Uno AUC undefined on this fold: {e}")
    return auc


ESTIMATORS = {
    'chambless_diao': chambless_diao_auc,
    'hung_chiang': hung_chiang_auc,
    'song_zhou': song_zhou_auc,
    'uno': uno_auc,
}


def integrated_auc(auc: np.ndarray, times: np.ndarray, response_times: np.ndarray,
                   response_events: np.ndarray, incident: bool = False) -> float:
    """
    Weighted average of AUC(t) over the grid

    Cumulative AUC uses w(t) = f(t) / (1 - S(t_max)); incident AUC uses the
    concordance weight w(t) = 2 f(t) S(t) / (1 - S(t_max)^2), with f the
    Kaplan-Meier event-time mass at each grid point.
    """
    curve = kaplan_meier_curve(response_times, response_events, label='response')
    idx = np.searchsorted(curve['time'].to_numpy(), times, side='right') - 1
    S = curve['survival'].to_numpy()[np.clip(idx, 0, None)]
    f = np.r_[1.0, S[:-1]] - S

    weights = 2.0 * f * S if incident else f
    finite = np.isfinite(auc) & (weights > 0)
    if not finite.any():
        return np.nan
    return float(np.sum(weights[finite] * auc[finite]) / np.sum(weights[finite]))


def fold_predictions(model, train: pd.DataFrame, test: pd.DataFrame, times: np.ndarray) -> FoldPredictions:
    return FoldPredictions(
        train_times=train['time'].to_numpy(dtype=float),
        train_events=train['event'].to_numpy(dtype=int),
        train_lp=model.linear_predictor(train),
        test_times=test['time'].to_numpy(dtype=float),
        test_events=test['event'].to_numpy(dtype=int),
        test_lp=model.linear_predictor(test),
        test_survival=model.survival_at(test, times),
        test_relative_hazard=model.relative_hazard(test),
    )


def evaluate_fold(pred: FoldPredictions, variant: str, times: np.ndarray) -> Dict[str, float]:
    """Integrated AUC of one variant, weighted by the test responses, and the last grid time it covers"""
    auc = ESTIMATORS[variant](pred, times)
    finite = np.isfinite(auc)
    return {
        'iauc': integrated_auc(auc, times, pred.test_times, pred.test_events,
                               incident=variant in INCIDENT_VARIANTS),
        'last_defined_time': float(times[finite].max()) if finite.any() else np.nan,
    }


def auc_repetition(repetition: int, seed: int, frame: pd.DataFrame, times: np.ndarray,
                   model_names: List[str], variants: List[str], n_folds: int,
                   time_strata: int) -> List[Dict]:
    """One repetition of k-fold CV; returns one row per fold, model and variant"""
    events = frame['event'].to_numpy()
    labels = stratification_labels(events, frame['time'].to_numpy(), time_strata)
    rows = []
    for split in kfold_splits(labels, n_folds, seed):
        check_partition(split, events, repetition)
        train = frame.iloc[split.train]
        test = frame.iloc[split.test]
        for name, model in fit_model_set(train, model_names).items():
            pred = fold_predictions(model, train, test, times)
            for variant in variants:
                rows.append({
                    'repetition': repetition,
                    'fold': split.fold,
                    'model': name,
                    'variant': variant,
                    **evaluate_fold(pred, variant, times),
                })
    return rows


@dataclass
class AUCResult:
    """Fold-level and aggregated integrated AUC for one outcome"""
    outcome: str
    n_repetitions: int
    seed: int
    times: np.ndarray
    folds: pd.DataFrame
    excluded: List = field(default_factory=list)

    @property
    def horizon(self) -> float:
        """Last grid time at which every fold evaluation is defined"""
        defined = self.folds['last_defined_time'].dropna()
        if defined.empty:
            return float(self.times[-1])
        return float(min(defined.min(), self.times[-1]))

    @property
    def mean_iauc(self) -> pd.DataFrame:
        """Variant x model mean over all finite fold evaluations (sum then divide)"""
        finite = self.folds[np.isfinite(self.folds['iauc'])]
        grouped = finite.groupby(['variant', 'model'])['iauc']
        means = (grouped.sum() / grouped.count()).unstack('model')
        return means.reindex([v for v in AUC_VARIANTS if v in means.index])

    def relative_improvement(self, baseline: str = 'Age', combined: str = 'Age+dACC') -> pd.Series:
        """(AUC_combined - AUC_baseline) / AUC_baseline per variant"""
        means = self.mean_iauc
        return ((means[combined] - means[baseline]) / means[baseline]).rename('relative_improvement')


class TimeDependentAUCEstimator:
    """Repeated k-fold cross-validated integrated AUC for the fixed model pair"""

    def __init__(self, config: AUCConfig = None):
        self.config = config or AUCConfig()
        unknown = [v for v in self.config.variants if v not in ESTIMATORS]
        if unknown:
            raise ValueError(f"Unknown AUC variant(s): {unknown}")

    def estimate(self, data: OutcomeData, seed: int, n_jobs: int = 1) -> AUCResult:
        times = np.asarray(self.config.times, dtype=float)
        label = f'{data.outcome.name}/auc'
        if times[-1] > data.times.max():
            logger.warning(f"[{label}] time grid ends at {times[-1]:.0f} months, beyond the "
                           f"longest follow-up {data.times.max():.1f}; later AUC(t) are undefined")

        run = run_repetitions(
            auc_repetition, self.config.n_repetitions, seed, n_jobs,
            task_args=(data.frame, times, list(self.config.models), list(self.config.variants),
                       self.config.n_folds, self.config.time_strata),
            label=label,
        )
        rows = [row for rep_rows in run.ordered() for row in rep_rows]
        result = AUCResult(outcome=data.outcome.name, n_repetitions=self.config.n_repetitions,
                           seed=seed, times=times, folds=pd.DataFrame(rows),
                           excluded=list(run.excluded))

        n_nan = int((~np.isfinite(result.folds['iauc'])).sum())
        if n_nan:
            logger.warning(f"[{label}] {n_nan} fold evaluations had undefined integrated AUC")
        logger.info(f"[{label}] mean integrated AUC (1-{result.horizon:.0f} months):\n{result.mean_iauc}")
        return result
