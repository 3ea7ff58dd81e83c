"""
Linear Mixed-Effects Model on fNIRS GLM Beta Values.

Fits the study's interaction-only model separately per chromophore:

    theta ~ -1 + ROI:Condition:Vocoder + (1 | ID)

i.e. one fixed effect per ROI x Condition x Vocoder cell (no intercept) and
a random intercept per subject. Before fitting, the trial-level table is
filtered to the two speech conditions, split by chromophore and releveled to
the configured baseline levels.

The fixed-effect design is built with patsy and kept alongside the statsmodels
result, so that marginal means and contrasts (see contrasts.py) are computed
from exactly the coding the model was fitted with.

Non-convergence is handled pre-emptively: optimizers are tried in a fixed
order with a raised iteration cap, and the first converged fit is kept.

References:
    - Bates et al. (2015). Fitting linear mixed-effects models using lme4.
      J Stat Softw 67(1).
    - statsmodels MixedLM: https://www.statsmodels.org/stable/mixed_linear.html
"""

import logging
import warnings
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from statsmodels.regression.mixed_linear_model import MixedLMResults

from elliptical_speech.config import MixedModelConfig
from elliptical_speech.factors import (
    apply_leveling_policy,
    ensure_factors,
    filter_levels,
    level_order,
)
from elliptical_speech.reporting import MixedModelSummary

logger = logging.getLogger(__name__)


@dataclass
class FittedMixedModel:
    """A fitted mixed model together with the data and coding it used."""

    result: MixedLMResults
    design_info: patsy.DesignInfo
    frame: pd.DataFrame
    chromophore: str
    optimizer: str
    convergence_warnings: list[str] = field(default_factory=list)

    @property
    def fe_names(self) -> list[str]:
        return list(self.design_info.column_names)

    @property
    def fe_params(self) -> np.ndarray:
        return np.asarray(self.result.fe_params)

    @property
    def fe_cov(self) -> np.ndarray:
        """Covariance of the fixed-effect estimates."""
        k_fe = len(self.fe_names)
        return np.asarray(self.result.cov_params())[:k_fe, :k_fe]


def format_lme4_formula(config: MixedModelConfig) -> str:
    """Full model formula in lme4 notation, for logs and reports."""
    return f"{config.fixed_formula} + (1 | {config.group_column})"


def load_trial_table(csv_path: Path, config: MixedModelConfig) -> pd.DataFrame:
    """
    Load the trial-level observation table.

    Args:
        csv_path: CSV with one row per subject x condition x ROI x vocoder x
            channel (as exported by the GLM pipeline)
        config: Mixed-model configuration

    Returns:
        Trial table

    Raises:
        FileNotFoundError: If the CSV does not exist
        ValueError: If a required column is missing
    """
    if not csv_path.exists():
        raise FileNotFoundError(f"Trial table not found: {csv_path}")

    df = pd.read_csv(csv_path)
    required = [
        config.response,
        config.group_column,
        config.condition_column,
        config.chromophore_column,
        *config.factor_columns,
    ]
    missing = sorted({column for column in required if column not in df.columns})
    if missing:
        raise ValueError(
            f"Trial table {csv_path.name} is missing columns {missing}. "
            f"Available: {list(df.columns)}"
        )

    logger.info(
        f"Loaded {len(df)} trial rows from {csv_path.name}: "
        f"{df[config.group_column].nunique()} subjects"
    )
    return df


def prepare_model_frame(
    df: pd.DataFrame,
    config: MixedModelConfig,
    chromophore: str,
) -> pd.DataFrame:
    """
    Filter, split and relevel the trial table for one chromophore model.

    Steps:
    1. Keep the configured conditions
    2. Keep one chromophore
    3. Apply the leveling policy (verified reference levels)
    4. Make the remaining EMM factors categorical
    5. Drop rows with a missing response

    Args:
        df: Trial table
        config: Mixed-model configuration
        chromophore: Chromophore label to keep (e.g. 'hbo')

    Returns:
        Model-ready frame

    Raises:
        FactorLevelError: If a condition, chromophore or reference level is
            absent from the data
    """
    frame = filter_levels(df, config.condition_column, config.conditions)
    frame = filter_levels(frame, config.chromophore_column, [chromophore])
    frame = apply_leveling_policy(frame, config.reference_levels)
    frame = ensure_factors(frame, config.emm_factors)

    n_before = len(frame)
    frame = frame.dropna(subset=[config.response]).reset_index(drop=True)
    if len(frame) < n_before:
        logger.warning(
            f"Dropped {n_before - len(frame)} rows with missing '{config.response}'"
        )

    for column in config.emm_factors:
        logger.debug(f"  {column} levels: {level_order(frame[column])}")
    return frame


def split_by_chromophore(
    df: pd.DataFrame,
    config: MixedModelConfig,
) -> dict[str, pd.DataFrame]:
    """
    Model-ready frames keyed by chromophore.

    Chromophores listed in the configuration but absent from the data are
    skipped with a warning.
    """
    present = {str(c) for c in df[config.chromophore_column].dropna().unique()}
    frames = {}
    for chromophore in config.chromophores:
        if chromophore not in present:
            logger.warning(
                f"Chromophore '{chromophore}' not found in data "
                f"(present: {sorted(present)}); skipping"
            )
            continue
        frames[chromophore] = prepare_model_frame(df, config, chromophore)
    return frames


def fit_mixed_model(
    frame: pd.DataFrame,
    config: MixedModelConfig,
    chromophore: str = "",
) -> FittedMixedModel:
    """
    Fit the random-intercept mixed model to a prepared frame.

    Optimizers are tried in configuration order (default: Powell, a
    derivative-free method, then L-BFGS) with ``max_iter`` as iteration cap;
    the first converged fit is returned. If none converges the last fit is
    returned with ``converged`` False in its summary.

    Args:
        frame: Output of prepare_model_frame
        config: Mixed-model configuration
        chromophore: Label recorded with the fit

    Returns:
        FittedMixedModel

    Raises:
        ValueError: If the frame is empty
        patsy.PatsyError: If the formula does not match the frame
    """
    if frame.empty:
        raise ValueError(f"No rows to fit for chromophore '{chromophore}'")

    endog, exog = patsy.dmatrices(
        config.fixed_formula, frame, return_type="dataframe", NA_action="raise"
    )
    groups = frame[config.group_column].to_numpy()

    logger.info(
        f"Fitting {format_lme4_formula(config)} [{chromophore}]: "
        f"{len(frame)} obs, {len(np.unique(groups))} groups, "
        f"{exog.shape[1]} fixed effects"
    )

    model = sm.MixedLM(endog.iloc[:, 0], exog, groups=groups)

    result = None
    optimizer = config.optimizers[-1]
    messages: list[str] = []
    for optimizer in config.optimizers:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            result = model.fit(reml=config.reml, method=optimizer, maxiter=config.max_iter)
        attempt_messages = [str(w.message) for w in caught]
        if result.converged:
            messages = attempt_messages
            logger.info(f"  Converged with optimizer '{optimizer}'")
            break
        messages.extend(f"[{optimizer}] {m}" for m in attempt_messages)
        logger.warning(f"  Optimizer '{optimizer}' did not converge")
    else:
        logger.warning(
            f"No optimizer in {list(config.optimizers)} converged; "
            f"keeping the '{optimizer}' fit"
        )

    for message in messages:
        logger.warning(f"  {message}")

    return FittedMixedModel(
        result=result,
        design_info=exog.design_info,
        frame=frame,
        chromophore=chromophore,
        optimizer=optimizer,
        convergence_warnings=messages,
    )


def summarize_mixed_model(
    fitted: FittedMixedModel,
    config: MixedModelConfig,
) -> MixedModelSummary:
    """
    Extract the reportable quantities of a fitted model.

    Args:
        fitted: Output of fit_mixed_model
        config: Mixed-model configuration

    Returns:
        MixedModelSummary
    """
    result = fitted.result
    names = fitted.fe_names
    bse = np.asarray(result.bse_fe)
    pvalues = np.asarray(result.pvalues)[: len(names)]

    summary = MixedModelSummary(
        chromophore=fitted.chromophore,
        formula=format_lme4_formula(config),
        n_obs=int(result.nobs),
        n_groups=int(result.model.n_groups),
        converged=bool(result.converged),
        optimizer=fitted.optimizer,
        reference_levels=dict(config.reference_levels),
        fixed_effects=dict(zip(names, fitted.fe_params.tolist())),
        standard_errors=dict(zip(names, bse.tolist())),
        p_values=dict(zip(names, pvalues.tolist())),
        group_variance=float(np.asarray(result.cov_re)[0, 0]),
        residual_variance=float(result.scale),
        log_likelihood=float(result.llf),
        convergence_warnings=list(fitted.convergence_warnings),
    )

    logger.info(
        f"[{fitted.chromophore}] logLik={summary.log_likelihood:.2f}, "
        f"group var={summary.group_variance:.3g}, "
        f"residual var={summary.residual_variance:.3g}"
    )
    return summary
