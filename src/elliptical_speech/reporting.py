"""
Reporting Module for the Elliptical Speech Analyses.

This module holds the result records produced by the three pipelines and
writes them to disk:
- TSV tables with BIDS-style JSON data dictionaries
- CSV exports of GLM coefficient tables
- JSON numerical results for reproducibility

References:
    - BIDS specification (tabular files): https://bids-specification.readthedocs.io
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import matplotlib.figure
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


@dataclass
class AnovaResult:
    """One-way ANOVA of a single rating variable against the grouping factor."""

    variable: str
    df_between: float
    df_within: float
    sum_sq_between: float
    sum_sq_within: float
    mean_sq_between: float
    mean_sq_within: float
    f_value: float
    p_value: float
    n_obs: int


@dataclass
class SurveyResults:
    """NASA-TLX summary: per-group means and one ANOVA per variable."""

    group_column: str
    n_respondents: int
    group_means: list[dict[str, Any]]
    anovas: list[AnovaResult]


@dataclass
class MixedModelSummary:
    """Fitted linear mixed-effects model for one chromophore."""

    chromophore: str
    formula: str
    n_obs: int
    n_groups: int
    converged: bool
    optimizer: str
    reference_levels: dict[str, str]
    fixed_effects: dict[str, float]
    standard_errors: dict[str, float]
    p_values: dict[str, float]
    group_variance: float
    residual_variance: float
    log_likelihood: float
    convergence_warnings: list[str] = field(default_factory=list)


@dataclass
class MarginalMean:
    """Estimated marginal mean of one cell of the EMM grid."""

    levels: dict[str, str]
    estimate: float
    se: float
    ci_lower: float
    ci_upper: float


@dataclass
class ContrastResult:
    """One planned contrast between marginal means."""

    name: str
    estimate: float
    se: float
    z_value: float
    p_value: float
    p_adjusted: float
    significant: bool


@dataclass
class MixedModelResults:
    """All mixed-model outputs of one run."""

    timestamp: str
    software_versions: dict[str, str]
    config: dict[str, Any]
    models: list[MixedModelSummary]
    marginal_means: dict[str, list[MarginalMean]]
    contrasts: dict[str, list[ContrastResult]]
    adjust: str


@dataclass
class GLMSubjectSummary:
    """First-level GLM bookkeeping for one recording."""

    subject_id: str
    session_id: str | None
    recording: str
    n_long_channels: int
    n_short_channels: int
    n_bad_channels: int
    sfreq: float
    regressors: list[str]
    n_events: dict[str, int]


def _convert_numpy_types(obj: Any) -> Any:
    """Recursively convert numpy types to Python native types."""
    if isinstance(obj, dict):
        return {str(k): _convert_numpy_types(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_convert_numpy_types(item) for item in obj]
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.floating):
        return float(obj)
    elif isinstance(obj, np.ndarray):
        return obj.tolist()
    elif isinstance(obj, Path):
        return str(obj)
    else:
        return obj


def save_numerical_results(results: Any, json_path: Path) -> Path:
    """
    Save a result dataclass (or plain mapping) to JSON.

    Enables independent verification and reanalysis without re-running the
    pipeline. NaN values are written as JSON ``NaN``.

    Args:
        results: Result dataclass instance or dictionary
        json_path: Destination file

    Returns:
        Path to JSON file
    """
    json_path.parent.mkdir(parents=True, exist_ok=True)

    results_dict = asdict(results) if hasattr(results, "__dataclass_fields__") else results
    results_dict = _convert_numpy_types(results_dict)

    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(results_dict, f, indent=2)

    logger.info(f"Numerical results saved to {json_path}")
    return json_path


def write_table(
    df: pd.DataFrame,
    tsv_path: Path,
    data_dictionary: dict[str, dict[str, str]] | None = None,
) -> tuple[Path, Path | None]:
    """
    Write a TSV table and its JSON data dictionary sidecar.

    Args:
        df: Table to save
        tsv_path: Destination (``.tsv``); the sidecar uses the same stem
        data_dictionary: Column name -> {'Description', 'Units', ...}.
            Only entries for columns present in ``df`` are written.

    Returns:
        Tuple of (tsv_path, json_path); json_path is None without a dictionary
    """
    tsv_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(tsv_path, sep="\t", index=False, float_format="%.6g", na_rep="n/a")

    json_path = None
    if data_dictionary:
        json_path = tsv_path.with_suffix(".json")
        entries = {
            column: description
            for column, description in data_dictionary.items()
            if column in df.columns
        }
        with open(json_path, "w", encoding="utf-8") as f:
            json.dump(entries, f, indent=2)

    logger.info(f"Table saved to {tsv_path} ({len(df)} rows)")
    return tsv_path, json_path


def export_csv(df: pd.DataFrame, csv_path: Path) -> Path:
    """
    Export a coefficient table as CSV (the trial-level table schema).

    Args:
        df: Table to export
        csv_path: Destination file

    Returns:
        Path to CSV file
    """
    csv_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(csv_path, index=False)
    logger.info(f"CSV exported to {csv_path} ({len(df)} rows)")
    return csv_path


def save_figure(fig: matplotlib.figure.Figure, png_path: Path, dpi: int = 300) -> Path:
    """Save a matplotlib figure and close it."""
    png_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(png_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    logger.info(f"Figure saved to {png_path}")
    return png_path


def anova_table(anovas: list[AnovaResult]) -> pd.DataFrame:
    """One row per tested variable."""
    return pd.DataFrame([asdict(result) for result in anovas])


def fixed_effects_table(summary: MixedModelSummary) -> pd.DataFrame:
    """Fixed-effect estimates of one model as a table."""
    return pd.DataFrame(
        {
            "term": list(summary.fixed_effects),
            "estimate": list(summary.fixed_effects.values()),
            "se": [summary.standard_errors[t] for t in summary.fixed_effects],
            "p_value": [summary.p_values[t] for t in summary.fixed_effects],
        }
    )


def marginal_means_table(means: list[MarginalMean]) -> pd.DataFrame:
    """EMM grid cells as a table (factor columns first)."""
    rows = []
    for mean in means:
        row: dict[str, Any] = dict(mean.levels)
        row.update(
            estimate=mean.estimate,
            se=mean.se,
            ci_lower=mean.ci_lower,
            ci_upper=mean.ci_upper,
        )
        rows.append(row)
    return pd.DataFrame(rows)


def contrast_table(contrasts: list[ContrastResult]) -> pd.DataFrame:
    """Planned contrasts as a table."""
    return pd.DataFrame([asdict(result) for result in contrasts])


SURVEY_DATA_DICTIONARY = {
    "variable": {"Description": "NASA-TLX rating scale tested", "Units": "n/a"},
    "df_between": {"Description": "Degrees of freedom of the grouping factor"},
    "df_within": {"Description": "Residual degrees of freedom"},
    "sum_sq_between": {"Description": "Sum of squares of the grouping factor"},
    "sum_sq_within": {"Description": "Residual sum of squares"},
    "mean_sq_between": {"Description": "Mean square of the grouping factor"},
    "mean_sq_within": {"Description": "Residual mean square"},
    "f_value": {"Description": "One-way ANOVA F statistic"},
    "p_value": {"Description": "P-value of the F test", "Range": "0-1"},
    "n_obs": {"Description": "Non-missing responses entering the test"},
}

LMEM_DATA_DICTIONARY = {
    "term": {"Description": "Fixed-effect column (patsy naming)"},
    "estimate": {"Description": "Estimate (model-predicted mean or contrast)", "Units": "M"},
    "se": {"Description": "Standard error of the estimate", "Units": "M"},
    "p_value": {"Description": "Two-sided Wald z-test p-value", "Range": "0-1"},
    "ci_lower": {"Description": "Lower bound of the 95% Wald confidence interval"},
    "ci_upper": {"Description": "Upper bound of the 95% Wald confidence interval"},
    "name": {"Description": "Planned contrast label"},
    "z_value": {"Description": "Wald z statistic of the contrast"},
    "p_adjusted": {
        "Description": "P-value adjusted for multiple comparisons across the battery",
        "Range": "0-1",
    },
    "significant": {"Description": "Adjusted p-value below alpha", "Units": "boolean"},
}

GLM_DATA_DICTIONARY = {
    "ID": {"Description": "Subject identifier (BIDS label without 'sub-')"},
    "Condition": {"Description": "Speech condition of the stimulus block"},
    "Vocoder": {"Description": "Number of noise-vocoder channels"},
    "ROI": {"Description": "Region of interest the channel belongs to"},
    "Chroma": {"Description": "Chromophore ('hbo' or 'hbr')"},
    "ch_name": {"Description": "fNIRS channel (source-detector pair and chromophore)"},
    "theta": {"Description": "GLM regression coefficient", "Units": "M"},
    "se": {"Description": "Standard error of theta", "Units": "M"},
    "t": {"Description": "t statistic of theta"},
    "p_value": {"Description": "Uncorrected p-value of theta", "Range": "0-1"},
}
