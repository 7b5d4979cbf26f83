"""
analysis_config.py

Configuration dataclasses for the dACC rearrest re-analysis.

The violent and nonviolent analyses share predictors and differ only in their
outcome columns, so each outcome is described by an OutcomeColumns entry and the
pipeline is invoked once per outcome with no shared state.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple

# canonical column names produced by data_loader
MODEL_PREDICTORS = {
    'Age': ('age',),
    'dACC': ('dacc',),
    'Age+dACC': ('age', 'dacc'),
}

RESAMPLING_SCHEMES = ('cv10', 'boot632plus')


@dataclass(frozen=True)
class OutcomeColumns:
    """Time and event column names for one rearrest outcome"""
    name: str
    time_col: str
    event_col: str
    label: str = ''


@dataclass
class DataConfig:
    """Input table layout"""
    outcomes: Dict[str, OutcomeColumns] = field(default_factory=lambda: {
        'violent': OutcomeColumns('violent', 'time_violent', 'rearrest_violent',
                                  'Violent crimes'),
        'nonviolent': OutcomeColumns('nonviolent', 'time_nonviolent', 'rearrest_nonviolent',
                                     'Nonviolent crimes'),
    })
    age_col: str = 'age_release_c'
    dacc_col: str = 'dacc_c'
    split_col: str = 'dacc_split'
    delimiter: str = ','

    def outcome(self, name: str) -> OutcomeColumns:
        if name not in self.outcomes:
            raise KeyError(f"Unknown outcome '{name}', expected one of {sorted(self.outcomes)}")
        return self.outcomes[name]


@dataclass
class PredictionErrorConfig:
    """Resampled Brier score settings"""
    n_repetitions: int = 1000
    n_folds: int = 10
    schemes: List[str] = field(default_factory=lambda: ['cv10', 'boot632plus'])
    # last month at which the benchmark study reported rearrest
    max_time: float = 48.0
    include_reference: bool = True
    models: List[str] = field(default_factory=lambda: ['Age', 'dACC', 'Age+dACC'])
    baseline_model: str = 'Age'
    combined_model: str = 'Age+dACC'

    def __post_init__(self):
        unknown = [s for s in self.schemes if s not in RESAMPLING_SCHEMES]
        if unknown:
            raise ValueError(f"Unknown resampling scheme(s): {unknown}")
        missing = {self.baseline_model, self.combined_model} - set(self.models)
        if missing or not set(self.models) <= set(MODEL_PREDICTORS):
            raise ValueError(f"Model list {self.models} must be drawn from {list(MODEL_PREDICTORS)} "
                             f"and include {self.baseline_model} and {self.combined_model}")
        if self.n_repetitions < 1:
            raise ValueError("n_repetitions must be positive")
        if self.n_folds < 2:
            raise ValueError("n_folds must be at least 2")


@dataclass
class AUCConfig:
    """Repeated cross-validated time-dependent AUC settings"""
    n_repetitions: int = 1000
    n_folds: int = 10
    time_grid: Tuple[int, int] = (1, 44)
    variants: List[str] = field(default_factory=lambda: [
        'chambless_diao', 'hung_chiang', 'song_zhou', 'uno'
    ])
    models: List[str] = field(default_factory=lambda: ['Age', 'Age+dACC'])
    time_strata: int = 3

    @property
    def times(self):
        start, stop = self.time_grid
        return list(range(start, stop + 1))


@dataclass
class AnalysisConfig:
    """Top-level configuration for one re-analysis run"""
    data: DataConfig = field(default_factory=DataConfig)
    prediction_error: PredictionErrorConfig = field(default_factory=PredictionErrorConfig)
    auc: AUCConfig = field(default_factory=AUCConfig)
    seed: int = 20130325
    n_jobs: int = 1
    cache_dir: str = './cache'
    output_dir: str = './output'
    force_recompute: bool = False
    allow_compute: bool = True

    def __post_init__(self):
        if self.n_jobs < 1:
            raise ValueError("n_jobs must be at least 1")

    @property
    def output_path(self) -> Path:
        return Path(self.output_dir)

    @property
    def cache_path(self) -> Path:
        return Path(self.cache_dir)
