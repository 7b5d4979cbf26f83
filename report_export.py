"""
report_export.py

Plain-table export and summary strings for external plotting and reporting.
Every aggregate statement names the evaluation horizon it refers to.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd

from prediction_error import PredictionErrorResult
from survival_curves import SurvivalCurves
from time_dependent_auc import AUCResult

logger = logging.getLogger(__name__)

SCHEME_LABELS = {
    'cv10': '10-fold cross-validation',
    'boot632plus': '.632+ bootstrap',
}

VARIANT_LABELS = {
    'chambless_diao': 'Chambless-Diao',
    'hung_chiang': 'Hung-Chiang',
    'song_zhou': 'Song-Zhou',
    'uno': 'Uno',
}


def _ensure_dir(output_dir: Union[str, Path]) -> Path:
    path = Path(output_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


def export_survival_curves(curves: SurvivalCurves, output_dir: Union[str, Path]) -> List[Path]:
    """Two-column (time, survival) tables: unconditional and one per split group"""
    out = _ensure_dir(output_dir)
    paths = []
    path = out / f"km_{curves.outcome}_all.csv"
    curves.overall.to_csv(path, index=False)
    paths.append(path)
    for group, curve in curves.by_group.items():
        path = out / f"km_{curves.outcome}_split{group}.csv"
        curve.to_csv(path, index=False)
        paths.append(path)
    logger.info(f"Wrote {len(paths)} survival curve tables for {curves.outcome}")
    return paths


def export_error_table(result: PredictionErrorResult, output_dir: Union[str, Path],
                       baseline: str = 'Age', combined: str = 'Age+dACC',
                       cutoff: Optional[float] = None) -> Path:
    """(time, baseline error, combined error) at or below the cutoff"""
    out = _ensure_dir(output_dir)
    path = out / f"pec_{result.outcome}_{result.scheme}.csv"
    result.error_table([baseline, combined], cutoff).to_csv(path, index=False)
    logger.info(f"Wrote prediction error table {path}")
    return path


def export_cox_summary(summary: pd.DataFrame, outcome: str, output_dir: Union[str, Path]) -> Path:
    out = _ensure_dir(output_dir)
    path = out / f"cox_{outcome}.csv"
    summary.to_csv(path, index=False)
    return path


def export_auc_table(result: AUCResult, output_dir: Union[str, Path]) -> Path:
    out = _ensure_dir(output_dir)
    path = out / f"auc_{result.outcome}.csv"
    table = result.mean_iauc.copy()
    table['relative_improvement'] = result.relative_improvement()
    table['horizon'] = result.horizon
    table.reset_index().to_csv(path, index=False)
    return path


def format_brier_summary(result: PredictionErrorResult, label: str, baseline: str = 'Age',
                         combined: str = 'Age+dACC', cutoff: Optional[float] = None) -> str:
    """One-line relative improvement in integrated Brier score"""
    cutoff = result.horizon if cutoff is None else cutoff
    improvement = result.relative_improvement(baseline, combined, cutoff)
    # improvement is a relative reduction of the error
    verb = 'reduces' if improvement >= 0 else 'increases'
    return (f"{label}: {combined} {verb} the integrated Brier score by {100 * abs(improvement):.2f}% "
            f"relative to {baseline} ({SCHEME_LABELS[result.scheme]}, "
            f"{result.n_completed} repetitions, integrated to {cutoff:.1f} months)")


def format_auc_summary(result: AUCResult, label: str, baseline: str = 'Age',
                       combined: str = 'Age+dACC') -> List[str]:
    """One line per AUC variant"""
    lines = []
    for variant, value in result.relative_improvement(baseline, combined).items():
        verb = 'raises' if value >= 0 else 'lowers'
        lines.append(f"{label}: {combined} {verb} the {VARIANT_LABELS.get(variant, variant)} "
                     f"integrated AUC by {100 * abs(value):.2f}% relative to {baseline} "
                     f"(time grid 1-{result.times[-1]:.0f} months, defined in every fold "
                     f"through {result.horizon:.0f} months)")
    return lines


def build_outcome_report(label: str, curves: SurvivalCurves, cox_summary: pd.DataFrame,
                         error_results: Dict[str, PredictionErrorResult],
                         auc_result: Optional[AUCResult], baseline: str = 'Age',
                         combined: str = 'Age+dACC') -> str:
    """Multi-line text report for one outcome"""
    summary = []
    summary.append("=" * 60)
    summary.append(f" {label.upper()}")
    summary.append("=" * 60)

    summary.append("\nKAPLAN-MEIER:")
    for group, median in curves.median_survival.items():
        summary.append(f"   Median time to rearrest ({group}): {median:.1f} months")
    if curves.logrank is not None:
        summary.append(f"   Log-rank low vs high dACC: chi2={curves.logrank['test_statistic']:.3f}, "
                       f"p={curves.logrank['p_value']:.4f}")

    summary.append("\nCOX MODELS (full data):")
    for _, row in cox_summary.iterrows():
        summary.append(f"   {row['model']:<9} {row['covariate']:<5} HR={row['hazard_ratio']:.3f} "
                       f"[{row['hr_lower_95']:.3f}, {row['hr_upper_95']:.3f}] p={row['p_value']:.4f}")

    if error_results:
        summary.append("\nPREDICTION ERROR:")
        for result in error_results.values():
            ibs = result.ibs_table()
            summary.append(f"   {SCHEME_LABELS[result.scheme]} (horizon {result.horizon:.1f} months): "
                           + ", ".join(f"{m}={v:.4f}" for m, v in ibs.items()))
            summary.append(f"   {format_brier_summary(result, label, baseline, combined)}")
            if result.excluded:
                summary.append(f"   {len(result.excluded)} repetitions excluded (non-convergent fits)")

    if auc_result is not None:
        summary.append("\nTIME-DEPENDENT AUC:")
        for line in format_auc_summary(auc_result, label, baseline, combined):
            summary.append(f"   {line}")

    return "\n".join(summary)


def write_summary(reports: List[str], output_dir: Union[str, Path]) -> Path:
    out = _ensure_dir(output_dir)
    path = out / "summary.txt"
    path.write_text("\n\n".join(reports) + "\n")
    logger.info(f"Summary written to {path}")
    return path
