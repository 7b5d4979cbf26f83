"""
run_analysis.py

Re-analysis of dACC activity as a predictor of rearrest.

Each outcome (violent, nonviolent) goes through the same pipeline independently:
Kaplan-Meier curves, full-data Cox fits, resampled prediction error and
cross-validated time-dependent AUC, followed by table export.

Usage:
    python run_analysis.py --data dacc_rearrest.csv --repetitions 1000 --jobs 8
"""

import argparse
import logging
import sys
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

import pandas as pd

from analysis_config import RESAMPLING_SCHEMES, AnalysisConfig
from cox_models import check_proportional_hazards, fit_model_set, summarize_models
from data_loader import load_subject_table, prepare_outcome
from exceptions import AnalysisError
from prediction_error import PredictionErrorEstimator, PredictionErrorResult
from report_export import (build_outcome_report, export_auc_table, export_cox_summary,
                           export_error_table, export_survival_curves, write_summary)
from result_cache import CacheKey, ResultCache, settings_digest
from survival_curves import SurvivalCurves, estimate_survival_curves
from time_dependent_auc import AUCResult, TimeDependentAUCEstimator

logger = logging.getLogger(__name__)


@dataclass
class OutcomeReport:
    """Everything computed for one outcome"""
    outcome: str
    curves: SurvivalCurves
    cox_summary: pd.DataFrame
    ph_tests: pd.DataFrame
    error_results: Dict[str, PredictionErrorResult] = field(default_factory=dict)
    auc_result: Optional[AUCResult] = None
    text: str = ''


def run_outcome_pipeline(raw: pd.DataFrame, outcome_name: str, config: AnalysisConfig,
                         cache: ResultCache = None, run_auc: bool = True,
                         export: bool = True) -> OutcomeReport:
    """
    Full analysis for one outcome; shares no state with other outcomes

    Args:
        raw: subject table as read from disk
        outcome_name: key into config.data.outcomes
        config: AnalysisConfig
        cache: ResultCache for the resampling stages (defaults to config.cache_dir)
        run_auc: include the time-dependent AUC stage
        export: write tables to config.output_dir
    """
    cache = cache or ResultCache(config.cache_path)
    data = prepare_outcome(raw, outcome_name, config.data)
    label = data.outcome.label or outcome_name
    pe_config = config.prediction_error

    curves = estimate_survival_curves(data)
    full_models = fit_model_set(data.frame, list(pe_config.models))
    cox_summary = summarize_models(full_models)
    ph_tests = check_proportional_hazards(full_models, data.frame)

    estimator = PredictionErrorEstimator(pe_config)
    pe_settings = {'data': asdict(config.data), 'prediction_error': asdict(pe_config)}
    pe_digest = settings_digest(config.data, pe_config)
    error_results = {}
    for scheme in pe_config.schemes:
        key = CacheKey(outcome_name, scheme, pe_config.n_repetitions, config.seed, pe_digest)
        error_results[scheme] = cache.get_or_compute(
            key, lambda s=scheme: estimator.estimate(data, s, config.seed, config.n_jobs),
            force=config.force_recompute, allow_compute=config.allow_compute, settings=pe_settings,
        )

    auc_result = None
    if run_auc:
        auc_estimator = TimeDependentAUCEstimator(config.auc)
        key = CacheKey(outcome_name, 'auc_cv10', config.auc.n_repetitions, config.seed,
                       settings_digest(config.data, config.auc))
        auc_result = cache.get_or_compute(
            key, lambda: auc_estimator.estimate(data, config.seed, config.n_jobs),
            force=config.force_recompute, allow_compute=config.allow_compute,
            settings={'data': asdict(config.data), 'auc': asdict(config.auc)},
        )

    text = build_outcome_report(label, curves, cox_summary, error_results, auc_result,
                                pe_config.baseline_model, pe_config.combined_model)

    if export:
        export_survival_curves(curves, config.output_dir)
        export_cox_summary(cox_summary, outcome_name, config.output_dir)
        for result in error_results.values():
            export_error_table(result, config.output_dir,
                               pe_config.baseline_model, pe_config.combined_model)
        if auc_result is not None:
            export_auc_table(auc_result, config.output_dir)

    return OutcomeReport(outcome=outcome_name, curves=curves, cox_summary=cox_summary,
                         ph_tests=ph_tests, error_results=error_results,
                         auc_result=auc_result, text=text)


def parse_args(argv: List[str] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Survival re-analysis of dACC and rearrest")
    parser.add_argument('--data', required=True, help="Delimited subject table")
    parser.add_argument('--outcome', action='append', choices=['violent', 'nonviolent'],
                        help="Outcome(s) to analyse (default: both)")
    parser.add_argument('--repetitions', type=int, default=1000)
    parser.add_argument('--auc-repetitions', type=int, default=None,
                        help="Repetitions for the AUC stage (default: --repetitions)")
    parser.add_argument('--scheme', action='append', choices=list(RESAMPLING_SCHEMES),
                        help="Prediction error scheme(s) (default: both)")
    parser.add_argument('--max-time', type=float, default=48.0,
                        help="Last evaluation time for prediction error, months")
    parser.add_argument('--auc-horizon', type=int, default=44,
                        help="Last month of the AUC time grid")
    parser.add_argument('--seed', type=int, default=20130325)
    parser.add_argument('--jobs', type=int, default=1)
    parser.add_argument('--cache-dir', default='./cache')
    parser.add_argument('--output-dir', default='./output')
    parser.add_argument('--delimiter', default=',')
    parser.add_argument('--force', action='store_true', help="Ignore and overwrite cached results")
    parser.add_argument('--no-compute', action='store_true',
                        help="Fail instead of recomputing missing cached results")
    parser.add_argument('--skip-auc', action='store_true')
    parser.add_argument('--log-level', default='INFO')
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> AnalysisConfig:
    config = AnalysisConfig(seed=args.seed, n_jobs=args.jobs, cache_dir=args.cache_dir,
                            output_dir=args.output_dir, force_recompute=args.force,
                            allow_compute=not args.no_compute)
    config.data.delimiter = args.delimiter
    config.prediction_error.n_repetitions = args.repetitions
    config.prediction_error.max_time = args.max_time
    if args.scheme:
        config.prediction_error.schemes = list(args.scheme)
    config.auc.n_repetitions = args.auc_repetitions or args.repetitions
    config.auc.time_grid = (1, args.auc_horizon)
    return config


def main(argv: List[str] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO),
                        format='%(asctime)s %(name)s %(levelname)s %(message)s')
    config = build_config(args)
    outcomes = args.outcome or list(config.data.outcomes)

    try:
        raw = load_subject_table(args.data, config.data)
        cache = ResultCache(config.cache_path)
        reports = [run_outcome_pipeline(raw, outcome, config, cache, run_auc=not args.skip_auc)
                   for outcome in outcomes]
    except AnalysisError as e:
        logger.error(f"Analysis aborted: {e}")
        return 1

    write_summary([report.text for report in reports], config.output_dir)
    for report in reports:
        print(report.text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
