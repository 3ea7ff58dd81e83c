"""
Estimated Marginal Means and Planned Contrasts.

Marginal means are computed over a reference grid spanning every
combination of the EMM factors (first factor varying fastest, the emmeans
convention for ``~ Condition + ROI + Vocoder``). Each grid cell is turned into
a fixed-effect design row with the model's own patsy coding, so the mean is
``L @ beta`` with covariance ``L V L'``.

Planned contrasts are weight vectors over the grid cells. They are generated
from declarative ContrastFamily definitions instead of being written out by
hand; the default families give the study's battery of 20 pairwise
comparisons:
- ii vs ee within each ROI x vocoder cell (10)
- 16 vs 4 vocoder channels within each ROI for ii (5) and for ee (5)

P-values use Wald z statistics and are adjusted across the whole battery
(Benjamini-Hochberg by default).
"""

import itertools
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd
import patsy
from scipy import stats
from statsmodels.stats.multitest import multipletests

from elliptical_speech.config import ContrastFamily
from elliptical_speech.factors import FactorLevelError, level_order
from elliptical_speech.mixed_model import FittedMixedModel
from elliptical_speech.reporting import ContrastResult, MarginalMean

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContrastSpec:
    """A named weight vector over the EMM grid cells."""

    name: str
    weights: tuple[float, ...]


def build_emm_grid(df: pd.DataFrame, factors: Sequence[str]) -> pd.DataFrame:
    """
    Reference grid of every factor-level combination.

    The first factor varies fastest. Grid columns are categoricals with the
    same level order as ``df``.

    Args:
        df: Model frame (factors already releveled)
        factors: Factors spanning the grid

    Returns:
        One row per cell
    """
    missing = [f for f in factors if f not in df.columns]
    if missing:
        raise FactorLevelError(f"EMM factors {missing} not found in model frame")

    levels = {factor: level_order(df[factor]) for factor in factors}
    rows = [
        tuple(reversed(combo))
        for combo in itertools.product(*(levels[f] for f in reversed(factors)))
    ]
    grid = pd.DataFrame(rows, columns=list(factors))
    for factor in factors:
        grid[factor] = pd.Categorical(grid[factor], categories=levels[factor])

    logger.debug(
        f"EMM grid: {len(grid)} cells over "
        + " x ".join(f"{f}({len(levels[f])})" for f in factors)
    )
    return grid


def _grid_design(fitted: FittedMixedModel, grid: pd.DataFrame) -> np.ndarray:
    """Fixed-effect design rows (L matrix) for the grid cells."""
    (design,) = patsy.build_design_matrices([fitted.design_info], grid)
    return np.asarray(design)


def _emm_estimates(
    fitted: FittedMixedModel,
    grid: pd.DataFrame,
) -> tuple[np.ndarray, np.ndarray]:
    L = _grid_design(fitted, grid)
    estimates = L @ fitted.fe_params
    covariance = L @ fitted.fe_cov @ L.T
    return estimates, covariance


def _cell_levels(grid: pd.DataFrame, index: int) -> dict[str, str]:
    return {column: str(grid.iloc[index][column]) for column in grid.columns}


def compute_marginal_means(
    fitted: FittedMixedModel,
    grid: pd.DataFrame,
    confidence: float = 0.95,
) -> list[MarginalMean]:
    """
    Estimated marginal mean of each grid cell with a Wald confidence interval.

    Args:
        fitted: Fitted mixed model
        grid: Output of build_emm_grid
        confidence: Confidence level of the intervals

    Returns:
        One MarginalMean per grid cell, in grid order
    """
    estimates, covariance = _emm_estimates(fitted, grid)
    se = np.sqrt(np.clip(np.diag(covariance), 0.0, None))
    z_crit = stats.norm.ppf(0.5 + confidence / 2.0)

    means = [
        MarginalMean(
            levels=_cell_levels(grid, i),
            estimate=float(estimates[i]),
            se=float(se[i]),
            ci_lower=float(estimates[i] - z_crit * se[i]),
            ci_upper=float(estimates[i] + z_crit * se[i]),
        )
        for i in range(len(grid))
    ]
    logger.info(f"[{fitted.chromophore}] Computed {len(means)} marginal means")
    return means


def _strip(label: str, suffix: str) -> str:
    if suffix and label.endswith(suffix):
        return label[: -len(suffix)]
    return label


def build_contrast_battery(
    grid: pd.DataFrame,
    families: Iterable[ContrastFamily],
    strip_suffix: str = "",
) -> list[ContrastSpec]:
    """
    Generate planned contrast vectors from contrast families.

    For each family, every grid cell at the ``positive`` level (and at the
    family's fixed levels) is paired with the cell that differs only in being
    at the ``negative`` level. Pairs are emitted in grid order, so the
    remaining factors are enumerated first-fastest.

    Args:
        grid: Output of build_emm_grid
        families: Contrast family definitions
        strip_suffix: Suffix removed from level labels in contrast names

    Returns:
        ContrastSpec list

    Raises:
        FactorLevelError: If a family refers to a factor or level not in the grid
        ValueError: If a generated name is duplicated
    """
    labels = grid.astype(str)
    n_cells = len(grid)
    battery: list[ContrastSpec] = []

    for family in families:
        for factor, level in [
            (family.factor, family.positive),
            (family.factor, family.negative),
            *family.fixed.items(),
        ]:
            if factor not in labels.columns:
                raise FactorLevelError(
                    f"Contrast factor '{factor}' not in EMM grid {list(labels.columns)}"
                )
            if level not in set(labels[factor]):
                raise FactorLevelError(
                    f"Contrast level '{level}' not found for factor '{factor}'. "
                    f"Levels: {sorted(set(labels[factor]))}"
                )

        others = [c for c in labels.columns if c != family.factor]
        selected = labels[family.factor] == family.positive
        for factor, level in family.fixed.items():
            selected &= labels[factor] == level

        for pos_index in np.flatnonzero(selected.to_numpy()):
            cell = labels.iloc[pos_index]
            match = labels[family.factor] == family.negative
            for column in others:
                match &= labels[column] == cell[column]
            (neg_index,) = np.flatnonzero(match.to_numpy())

            weights = np.zeros(n_cells)
            weights[pos_index] = 1.0
            weights[neg_index] = -1.0
            name = family.name_template.format(
                **{column: _strip(cell[column], strip_suffix) for column in labels.columns}
            )
            battery.append(ContrastSpec(name=name, weights=tuple(weights.tolist())))

    names = [spec.name for spec in battery]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValueError(f"Duplicate contrast names: {duplicates}")

    logger.info(f"Built {len(battery)} planned contrasts over {n_cells} cells")
    return battery


def contrast_matrix(contrasts: Sequence[ContrastSpec]) -> np.ndarray:
    """Stack contrast weights into an (n_contrasts, n_cells) matrix."""
    return np.array([spec.weights for spec in contrasts], dtype=float)


def validate_contrast_matrix(
    contrasts: Sequence[ContrastSpec],
    n_cells: int,
    atol: float = 1e-12,
) -> int:
    """
    Check that contrasts are valid difference contrasts.

    Every vector must have one weight per grid cell, at least one non-zero
    weight, weights summing to zero, and no two vectors may be identical.

    Args:
        contrasts: Contrast specifications
        n_cells: Number of EMM grid cells
        atol: Tolerance of the zero-sum check

    Returns:
        Rank of the contrast matrix (number of linearly independent comparisons)

    Raises:
        ValueError: On any violation
    """
    if not contrasts:
        raise ValueError("Contrast battery is empty")

    for spec in contrasts:
        if len(spec.weights) != n_cells:
            raise ValueError(
                f"Contrast '{spec.name}' has {len(spec.weights)} weights, "
                f"expected {n_cells}"
            )
        weights = np.asarray(spec.weights, dtype=float)
        if not np.any(weights):
            raise ValueError(f"Contrast '{spec.name}' has no non-zero weight")
        if abs(weights.sum()) > atol:
            raise ValueError(
                f"Contrast '{spec.name}' weights sum to {weights.sum():g}, expected 0"
            )

    matrix = contrast_matrix(contrasts)
    _, first_index, counts = np.unique(matrix, axis=0, return_index=True, return_counts=True)
    if np.any(counts > 1):
        repeated = [contrasts[i].name for i, c in zip(first_index, counts) if c > 1]
        raise ValueError(f"Contrasts duplicated in the battery: {repeated}")

    rank = int(np.linalg.matrix_rank(matrix))
    logger.info(f"Contrast battery valid: {len(contrasts)} vectors, rank {rank}")
    return rank


def apply_contrasts(
    fitted: FittedMixedModel,
    grid: pd.DataFrame,
    contrasts: Sequence[ContrastSpec],
    adjust: str = "fdr_bh",
    alpha: float = 0.05,
) -> list[ContrastResult]:
    """
    Estimate planned contrasts of marginal means with adjusted p-values.

    Args:
        fitted: Fitted mixed model
        grid: EMM grid the contrasts are defined over
        contrasts: Contrast specifications
        adjust: multipletests method ('fdr_bh', 'holm', ...) or 'none'
        alpha: Significance level applied to adjusted p-values

    Returns:
        One ContrastResult per contrast, in battery order
    """
    validate_contrast_matrix(contrasts, len(grid))

    estimates, covariance = _emm_estimates(fitted, grid)
    C = contrast_matrix(contrasts)
    values = C @ estimates
    se = np.sqrt(np.clip(np.diag(C @ covariance @ C.T), 0.0, None))
    with np.errstate(divide="ignore", invalid="ignore"):
        z_values = values / se
    p_values = 2.0 * stats.norm.sf(np.abs(z_values))

    if adjust == "none":
        p_adjusted = p_values.copy()
    else:
        _, p_adjusted, _, _ = multipletests(p_values, alpha=alpha, method=adjust)

    results = [
        ContrastResult(
            name=spec.name,
            estimate=float(values[i]),
            se=float(se[i]),
            z_value=float(z_values[i]),
            p_value=float(p_values[i]),
            p_adjusted=float(p_adjusted[i]),
            significant=bool(p_adjusted[i] < alpha),
        )
        for i, spec in enumerate(contrasts)
    ]

    n_significant = sum(r.significant for r in results)
    logger.info(
        f"[{fitted.chromophore}] {n_significant}/{len(results)} contrasts "
        f"significant ({adjust}, alpha={alpha})"
    )
    return results
