"""
resampling.py

Partition generation and the repetition runner shared by the prediction-error
and time-dependent AUC stages.

Every repetition receives its own child of a numpy SeedSequence, so repetitions
are uncorrelated and can run in any order. Results are reduced in repetition
index order, which makes the aggregate independent of scheduling.
"""

import logging
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
from sklearn.model_selection import KFold, StratifiedKFold

from exceptions import DegenerateFoldError, ModelFitError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Split:
    """Train/test partition of subject positions"""
    fold: int
    train: np.ndarray
    test: np.ndarray


@dataclass
class RepetitionRun:
    """Per-repetition results plus the repetitions excluded for non-convergence"""
    results: Dict[int, Any] = field(default_factory=dict)
    excluded: List[Tuple[int, str]] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def n_completed(self) -> int:
        return len(self.results)

    def ordered(self) -> List[Any]:
        return [self.results[r] for r in sorted(self.results)]


def repetition_seeds(seed: int, n_repetitions: int) -> List[int]:
    """Independent integer seeds, one per repetition"""
    children = np.random.SeedSequence(seed).spawn(n_repetitions)
    return [int(child.generate_state(1)[0]) for child in children]


def stratification_labels(events: np.ndarray, times: Optional[np.ndarray] = None,
                          n_time_strata: int = 0) -> np.ndarray:
    """
    Event indicator, optionally crossed with quantile bins of follow-up time

    Event strata are encoded contiguously so StratifiedKFold deals events
    round-robin across folds.
    """
    events = np.asarray(events, dtype=int)
    if times is None or n_time_strata <= 1:
        return events
    times = np.asarray(times, dtype=float)
    edges = np.quantile(times, np.linspace(0, 1, n_time_strata + 1)[1:-1])
    bins = np.searchsorted(edges, times, side='right')
    return events * n_time_strata + bins


def kfold_splits(labels: np.ndarray, n_folds: int, seed: int) -> List[Split]:
    """Stratified shuffled k-fold partition; each subject is tested exactly once"""
    n = len(labels)
    if n < n_folds:
        raise ValueError(f"Cannot build {n_folds} folds from {n} subjects")
    _, counts = np.unique(labels, return_counts=True)
    if counts.max() < n_folds:
        # no stratum large enough to spread over every fold
        splitter = KFold(n_splits=n_folds, shuffle=True, random_state=seed % (2 ** 32))
    else:
        splitter = StratifiedKFold(n_splits=n_folds, shuffle=True, random_state=seed % (2 ** 32))
    placeholder = np.zeros((n, 1))
    return [Split(fold=i, train=train, test=test)
            for i, (train, test) in enumerate(splitter.split(placeholder, labels))]


def bootstrap_split(n: int, seed: int) -> Split:
    """Bootstrap sample (with replacement) as training set, out-of-bag subjects as test set"""
    rng = np.random.default_rng(seed)
    train = rng.integers(0, n, size=n)
    test = np.setdiff1d(np.arange(n), train)
    return Split(fold=0, train=train, test=test)


def check_partition(split: Split, events: np.ndarray, repetition: int) -> None:
    """Zero events in either side of a partition makes the repetition unusable"""
    for side, idx in (('training', split.train), ('test', split.test)):
        if len(idx) == 0 or events[idx].sum() == 0:
            raise DegenerateFoldError(
                f"Repetition {repetition}, fold {split.fold}: {side} partition has zero events "
                f"({len(idx)} subjects)",
                repetition=repetition, fold=split.fold,
            )


def run_repetitions(task: Callable, n_repetitions: int, seed: int, n_jobs: int = 1,
                    task_args: tuple = (), label: str = 'resampling') -> RepetitionRun:
    """
    Execute task(repetition, repetition_seed, *task_args) for every repetition

    ModelFitError excludes the repetition and is logged; DegenerateFoldError
    and any other exception abort the run.
    """
    seeds = repetition_seeds(seed, n_repetitions)
    run = RepetitionRun()
    start = time.time()
    report_every = max(1, n_repetitions // 10)

    def _record(rep: int, outcome: Any, error: Optional[ModelFitError]) -> None:
        if error is not None:
            run.excluded.append((rep, str(error)))
            logger.warning(f"[{label}] repetition {rep} excluded: {error}")
        else:
            run.results[rep] = outcome
        done = run.n_completed + len(run.excluded)
        if done % report_every == 0:
            logger.info(f"[{label}] {done}/{n_repetitions} repetitions "
                        f"({time.time() - start:.1f}s)")

    if n_jobs == 1:
        for rep, rep_seed in enumerate(seeds):
            try:
                outcome = task(rep, rep_seed, *task_args)
            except ModelFitError as e:
                _record(rep, None, e)
            else:
                _record(rep, outcome, None)
    else:
        with ProcessPoolExecutor(max_workers=n_jobs) as executor:
            futures = {executor.submit(task, rep, rep_seed, *task_args): rep
                       for rep, rep_seed in enumerate(seeds)}
            for future in as_completed(futures):
                rep = futures[future]
                try:
                    outcome = future.result()
                except ModelFitError as e:
                    _record(rep, None, e)
                except Exception:
                    for pending in futures:
                        pending.cancel()
                    raise
                else:
                    _record(rep, outcome, None)

    run.elapsed_seconds = time.time() - start
    run.excluded.sort()
    if run.n_completed == 0:
        raise ModelFitError(f"[{label}] every repetition failed to converge")
    logger.info(f"[{label}] finished {run.n_completed} repetitions, "
                f"{len(run.excluded)} excluded, {run.elapsed_seconds:.1f}s")
    return run
