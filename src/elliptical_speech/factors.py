"""
Categorical Factor Handling.

Releveling, level filtering and leveling policies for the trial-level
observation table. Every operation verifies that the levels it is asked for
actually exist in the data: a reference level that is silently missing would
produce a differently ordered (and differently interpreted) factor encoding in
the downstream model.
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

import pandas as pd

logger = logging.getLogger(__name__)


class FactorLevelError(ValueError):
    """Raised when a requested factor level or column is absent from the data."""

    pass


def _natural_sort(levels: Iterable[Any]) -> list[Any]:
    """Sort levels numerically when every label is numeric, else as strings."""
    levels = list(levels)
    try:
        return sorted(levels, key=lambda level: float(level))
    except (TypeError, ValueError):
        return sorted(levels, key=str)


def _match_level(levels: Iterable[Any], label: Any) -> Any:
    """Return the level equal to ``label`` by value or by string form."""
    for level in levels:
        if level == label or str(level) == str(label):
            return level
    raise KeyError(label)


def level_order(series: pd.Series) -> list[Any]:
    """
    Current level order of a column.

    Args:
        series: Categorical or plain column

    Returns:
        Categories for categorical columns, naturally sorted unique values
        otherwise.
    """
    if isinstance(series.dtype, pd.CategoricalDtype):
        return list(series.cat.categories)
    return _natural_sort(series.dropna().unique())


def relevel(df: pd.DataFrame, column: str, reference: Any) -> pd.DataFrame:
    """
    Make ``reference`` the first (baseline) level of a categorical column.

    Remaining levels keep their natural order (numeric labels sort
    numerically, so vocoder levels 4 and 16 become ``[16, 4]`` when 16 is the
    reference). Unused categories are dropped before releveling.

    Args:
        df: Input table (not modified)
        column: Column to relevel
        reference: Baseline level, matched by value or string form

    Returns:
        Copy of ``df`` with ``column`` converted to a categorical whose first
        category is the reference level.

    Raises:
        FactorLevelError: If the column is missing or the reference level does
            not occur in it.

    Example:
        >>> df = relevel(df, "Vocoder", "16")
        >>> list(df["Vocoder"].cat.categories)
        [16, 4]
    """
    if column not in df.columns:
        raise FactorLevelError(
            f"Cannot relevel '{column}': column not found. "
            f"Available columns: {list(df.columns)}"
        )

    present = _natural_sort(df[column].dropna().unique())
    try:
        baseline = _match_level(present, reference)
    except KeyError:
        raise FactorLevelError(
            f"Reference level '{reference}' not found in column '{column}'. "
            f"Levels present: {present}"
        ) from None

    categories = [baseline] + [level for level in present if level != baseline]
    out = df.copy()
    out[column] = pd.Categorical(out[column], categories=categories)
    logger.debug(f"Releveled '{column}': reference='{baseline}', order={categories}")
    return out


def apply_leveling_policy(
    df: pd.DataFrame,
    reference_levels: Mapping[str, Any],
) -> pd.DataFrame:
    """
    Relevel every column named in a leveling policy.

    Args:
        df: Input table (not modified)
        reference_levels: Mapping of column -> reference level

    Returns:
        Copy of ``df`` with every policy column releveled.

    Raises:
        FactorLevelError: If any column or reference level is missing.
    """
    out = df
    for column, reference in reference_levels.items():
        out = relevel(out, column, reference)
    logger.info(
        "Applied leveling policy: "
        + ", ".join(f"{col}={ref}" for col, ref in reference_levels.items())
    )
    return out


def filter_levels(
    df: pd.DataFrame,
    column: str,
    levels: Iterable[Any],
) -> pd.DataFrame:
    """
    Keep rows whose ``column`` value is one of ``levels``.

    Retained rows are returned unchanged; the row count can only shrink.

    Args:
        df: Input table (not modified)
        column: Column to filter on
        levels: Levels to keep, matched by value or string form

    Returns:
        Filtered copy of ``df``.

    Raises:
        FactorLevelError: If the column is missing or a requested level does
            not occur in the data.
    """
    if column not in df.columns:
        raise FactorLevelError(
            f"Cannot filter on '{column}': column not found. "
            f"Available columns: {list(df.columns)}"
        )

    levels = list(levels)
    present = _natural_sort(df[column].dropna().unique())
    missing = []
    matched = []
    for level in levels:
        try:
            matched.append(_match_level(present, level))
        except KeyError:
            missing.append(level)
    if missing:
        raise FactorLevelError(
            f"Levels {missing} not found in column '{column}'. "
            f"Levels present: {present}"
        )

    mask = df[column].isin(matched)
    out = df.loc[mask].copy()
    logger.info(
        f"Filtered '{column}' to {matched}: {len(df)} -> {len(out)} rows"
    )
    return out


def ensure_factors(df: pd.DataFrame, columns: Iterable[str]) -> pd.DataFrame:
    """
    Convert columns to categoricals without changing an existing level order.

    Args:
        df: Input table (not modified)
        columns: Columns to convert

    Returns:
        Copy of ``df`` with each column categorical.
    """
    out = df.copy()
    for column in columns:
        if column not in out.columns:
            raise FactorLevelError(f"Factor column '{column}' not found")
        if not isinstance(out[column].dtype, pd.CategoricalDtype):
            out[column] = pd.Categorical(
                out[column], categories=level_order(out[column])
            )
        else:
            out[column] = out[column].cat.remove_unused_categories()
    return out
