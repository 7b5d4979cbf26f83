"""
brier_score.py

IPCW time-dependent Brier score (Graf et al., 1999) for Cox survival predictions
and its integrated summary.
"""

import numpy as np
from scipy import integrate
from typing import Optional, Sequence


class CensoringDistribution:
    """
    Kaplan-Meier estimate G(t) of the censoring survival function

    Built directly with numpy: censoring counts at each unique observed time
    divided by the number still at risk.
    """

    def __init__(self, times: np.ndarray, events: np.ndarray):
        T = np.asarray(times, dtype=float)
        D = np.asarray(events, dtype=int)
        n = len(T)

        order = np.argsort(T, kind='mergesort')
        t_sorted = T[order]
        cens_sorted = (1 - D)[order]

        uniq, idx = np.unique(t_sorted, return_index=True)
        at_risk = n - idx
        d_c = np.add.reduceat(cens_sorted, idx)  # censored at each unique time

        with np.errstate(divide="ignore", invalid="ignore"):
            factors = 1.0 - d_c / at_risk
            factors = np.clip(factors, 0.0, 1.0)

        self.uniq = uniq
        self.G_right = np.cumprod(factors)  # right-continuous G(t)

    def _step_eval(self, x, side: str) -> np.ndarray:
        x = np.atleast_1d(np.asarray(x, dtype=float))
        idx = np.searchsorted(self.uniq, x, side=side) - 1
        out = np.ones_like(x, dtype=float)
        m = idx >= 0
        out[m] = self.G_right[idx[m]]
        return out

    def survival(self, t) -> np.ndarray:
        """G(t)"""
        return self._step_eval(t, side="right")

    def survival_left(self, t) -> np.ndarray:
        """G(t-), the censoring survival just before t"""
        return self._step_eval(t, side="left")


def brier_residuals(surv_probs: np.ndarray, obs_times: np.ndarray, obs_events: np.ndarray,
                    eval_times: Sequence[float], censoring: CensoringDistribution,
                    eps: float = 1e-12) -> np.ndarray:
    """
    Per-subject IPCW squared error at each evaluation time

    Args:
        surv_probs: predicted S(t | x_i), shape (n_subjects, n_times)
        obs_times, obs_events: observed responses of the same subjects
        eval_times: evaluation grid
        censoring: censoring distribution used for the weights

    Returns:
        Residual matrix (n_subjects, n_times); its column means are the Brier curve
    """
    T = np.asarray(obs_times, dtype=float)
    D = np.asarray(obs_events, dtype=int)
    t_grid = np.asarray(eval_times, dtype=float)
    S = np.asarray(surv_probs, dtype=float)

    G_t = np.maximum(censoring.survival(t_grid), eps)            # (k,)
    G_T_left = np.maximum(censoring.survival_left(T), eps)       # (n,)

    # Graf et al. IPCW terms
    died_by_t = (T[:, None] <= t_grid[None, :]) & (D[:, None] == 1)
    alive_at_t = T[:, None] > t_grid[None, :]

    residuals = np.zeros_like(S)
    residuals = np.where(died_by_t, S ** 2 / G_T_left[:, None], residuals)
    residuals = np.where(alive_at_t, (1.0 - S) ** 2 / G_t[None, :], residuals)
    return residuals


def brier_curve(surv_probs: np.ndarray, obs_times: np.ndarray, obs_events: np.ndarray,
                eval_times: Sequence[float], censoring: Optional[CensoringDistribution] = None) -> np.ndarray:
    """Time-dependent Brier score BS(t) on the evaluation grid"""
    if censoring is None:
        censoring = CensoringDistribution(obs_times, obs_events)
    return brier_residuals(surv_probs, obs_times, obs_events, eval_times, censoring).mean(axis=0)


def no_information_error(surv_probs: np.ndarray, obs_times: np.ndarray, obs_events: np.ndarray,
                         eval_times: Sequence[float], censoring: CensoringDistribution,
                         eps: float = 1e-12) -> np.ndarray:
    """
    Brier curve when predictions and responses are paired independently

    Averages the IPCW loss over all n x n (prediction j, response i)
    combinations, the no-information rate of the .632+ bootstrap.
    """
    T = np.asarray(obs_times, dtype=float)
    D = np.asarray(obs_events, dtype=int)
    t_grid = np.asarray(eval_times, dtype=float)
    S = np.asarray(surv_probs, dtype=float)

    mean_sq_surv = (S ** 2).mean(axis=0)             # loss of a response that has failed
    mean_sq_event = ((1.0 - S) ** 2).mean(axis=0)    # loss of a response still at risk

    G_t = np.maximum(censoring.survival(t_grid), eps)
    G_T_left = np.maximum(censoring.survival_left(T), eps)

    died_by_t = (T[:, None] <= t_grid[None, :]) & (D[:, None] == 1)
    alive_at_t = T[:, None] > t_grid[None, :]

    contrib = (died_by_t * mean_sq_surv[None, :] / G_T_left[:, None]
               + alive_at_t * mean_sq_event[None, :] / G_t[None, :])
    return contrib.mean(axis=0)


def integrated_brier_score(eval_times: Sequence[float], scores: Sequence[float], cutoff: float) -> float:
    """
    Integrated Brier score on [0, cutoff], divided by cutoff

    The curve is anchored at BS(0) = 0 and carried forward from the last grid
    point when the cutoff falls between grid points.
    """
    t = np.asarray(eval_times, dtype=float)
    s = np.asarray(scores, dtype=float)
    if cutoff <= 0:
        raise ValueError("cutoff must be positive")

    keep = (t <= cutoff) & ~np.isnan(s)
    t, s = t[keep], s[keep]
    if len(t) == 0:
        return np.nan

    if t[0] > 0:
        t = np.insert(t, 0, 0.0)
        s = np.insert(s, 0, 0.0)
    if t[-1] < cutoff:
        t = np.append(t, cutoff)
        s = np.append(s, s[-1])

    return float(integrate.trapezoid(s, t) / cutoff)
