"""
NASA-TLX Survey Summary.

Per-session workload summaries for the elliptical speech study:
- per-group means of each rating scale (missing values ignored)
- one one-way ANOVA per scale against the grouping factor
- boxplots per scale and faceted by group

The ANOVA is an OLS fit of ``rating ~ C(group)`` with a sequential (type I)
ANOVA table, i.e. the equivalent of R's ``aov`` for a single factor. The
grouping column is always treated as categorical, even when sessions are
coded as integers.
"""

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf

from elliptical_speech.config import SurveyConfig
from elliptical_speech.reporting import AnovaResult

logger = logging.getLogger(__name__)


def load_survey_table(csv_path: Path, config: SurveyConfig) -> pd.DataFrame:
    """
    Load NASA-TLX responses and check the configured columns exist.

    Args:
        csv_path: CSV with one row per respondent and session
        config: Survey configuration (grouping column, rating columns)

    Returns:
        Survey table

    Raises:
        FileNotFoundError: If the CSV does not exist
        ValueError: If the grouping column or a rating column is missing
    """
    if not csv_path.exists():
        raise FileNotFoundError(f"Survey CSV not found: {csv_path}")

    df = pd.read_csv(csv_path)
    required = [config.group_column, *config.variables]
    missing = [column for column in required if column not in df.columns]
    if missing:
        raise ValueError(
            f"Survey table {csv_path.name} is missing columns {missing}. "
            f"Available: {list(df.columns)}"
        )

    logger.info(
        f"Loaded {len(df)} survey rows, {df[config.group_column].nunique()} "
        f"levels of '{config.group_column}'"
    )
    return df


def compute_group_means(
    df: pd.DataFrame,
    group_column: str,
    variables: tuple[str, ...] | list[str],
) -> pd.DataFrame:
    """
    Per-group means of each rating column, ignoring missing values.

    Args:
        df: Survey table
        group_column: Grouping column
        variables: Rating columns

    Returns:
        One row per group; columns ``group_column`` and ``Avg_<variable>``
    """
    means = (
        df.groupby(group_column, sort=True)[list(variables)]
        .mean()
        .add_prefix("Avg_")
        .reset_index()
    )
    logger.info(f"Computed means of {len(variables)} variables for {len(means)} groups")
    return means


def run_one_way_anova(
    df: pd.DataFrame,
    variable: str,
    group_column: str,
) -> AnovaResult:
    """
    One-way ANOVA of one rating column against the grouping factor.

    Args:
        df: Survey table
        variable: Rating column (response)
        group_column: Grouping factor

    Returns:
        AnovaResult with between/within sums of squares, F and p

    Raises:
        ValueError: If fewer than two groups have non-missing responses
    """
    data = df[[variable, group_column]].dropna()
    n_groups = data[group_column].nunique()
    if n_groups < 2:
        raise ValueError(
            f"ANOVA of '{variable}' needs at least two non-empty groups of "
            f"'{group_column}', found {n_groups}"
        )

    formula = f'Q("{variable}") ~ C(Q("{group_column}"))'
    model = smf.ols(formula, data=data).fit()
    table = sm.stats.anova_lm(model, typ=1)

    between = table.iloc[0]
    within = table.loc["Residual"]
    result = AnovaResult(
        variable=variable,
        df_between=float(between["df"]),
        df_within=float(within["df"]),
        sum_sq_between=float(between["sum_sq"]),
        sum_sq_within=float(within["sum_sq"]),
        mean_sq_between=float(between["mean_sq"]),
        mean_sq_within=float(within["mean_sq"]),
        f_value=float(between["F"]),
        p_value=float(between["PR(>F)"]),
        n_obs=int(len(data)),
    )
    logger.info(
        f"ANOVA {variable} ~ {group_column}: F({result.df_between:.0f}, "
        f"{result.df_within:.0f}) = {result.f_value:.3f}, p = {result.p_value:.4f}"
    )
    return result


def run_survey_anovas(df: pd.DataFrame, config: SurveyConfig) -> list[AnovaResult]:
    """One ANOVA per configured variable, in configuration order."""
    return [
        run_one_way_anova(df, variable, config.group_column)
        for variable in config.variables
    ]


def plot_variable_boxplot(
    df: pd.DataFrame,
    variable: str,
    group_column: str,
) -> plt.Figure:
    """
    Boxplot of one rating column, one box per group.

    Args:
        df: Survey table
        variable: Rating column
        group_column: Grouping column

    Returns:
        Matplotlib figure
    """
    groups = sorted(df[group_column].dropna().unique())
    values = [df.loc[df[group_column] == g, variable].dropna().to_numpy() for g in groups]

    fig, ax = plt.subplots(figsize=(6, 5))
    ax.boxplot(values)
    ax.set_xticks(range(1, len(groups) + 1), [str(g) for g in groups])
    ax.set_title(f"Boxplot of {variable.replace('_', ' ')} by {group_column}")
    ax.set_xlabel(group_column)
    ax.set_ylabel(variable.replace("_", " "))
    ax.spines[["top", "right"]].set_visible(False)
    fig.tight_layout()
    return fig


def plot_faceted_boxplots(
    df: pd.DataFrame,
    variables: tuple[str, ...] | list[str],
    group_column: str,
) -> plt.Figure:
    """
    All rating columns in one boxplot per group (one panel per group).

    Args:
        df: Survey table
        variables: Rating columns
        group_column: Grouping column, one panel per level

    Returns:
        Matplotlib figure
    """
    long_df = df.melt(
        id_vars=[group_column],
        value_vars=list(variables),
        var_name="Variable",
        value_name="Value",
    ).dropna(subset=["Value"])

    groups = sorted(long_df[group_column].unique())
    n_cols = min(len(groups), 3)
    n_rows = int(np.ceil(len(groups) / n_cols))
    fig, axes = plt.subplots(
        n_rows, n_cols, figsize=(5 * n_cols, 4.5 * n_rows), sharey=True, squeeze=False
    )

    for ax, group in zip(axes.flat, groups):
        subset = long_df[long_df[group_column] == group]
        values = [
            subset.loc[subset["Variable"] == v, "Value"].to_numpy() for v in variables
        ]
        ax.boxplot(values)
        ax.set_xticks(range(1, len(variables) + 1), list(variables))
        ax.set_title(f"{group_column} {group}")
        ax.set_xlabel("Variables")
        ax.tick_params(axis="x", labelrotation=45)
        for label in ax.get_xticklabels():
            label.set_horizontalalignment("right")
    for ax in axes.flat[len(groups):]:
        ax.set_visible(False)
    for ax in axes[:, 0]:
        ax.set_ylabel("Values")

    fig.suptitle("Boxplot of Multiple Variables")
    fig.tight_layout()
    return fig
