"""
Pipeline Orchestration for the Elliptical Speech Analyses.

Three independent pipelines, each load → transform → fit → summarize:

    survey: NASA-TLX ratings
        1. Load the survey table
        2. Per-session means
        3. One-way ANOVA per rating scale
        4. Boxplots
        5. Write tables, figures and metrics

    lmem: Linear mixed-effects model on GLM beta values
        1. Load the trial-level table
        2. Filter conditions, split by chromophore, relevel
        3. Fit theta ~ -1 + ROI:Condition:Vocoder + (1 | ID)
        4. Estimated marginal means
        5. Planned contrasts with multiple-comparison adjustment
        6. Write tables and metrics

    glm: fNIRS first-level GLM
        1. Discover BIDS recordings
        2. Preprocess and fit each recording
        3. Export the group coefficient table (input of the lmem pipeline)
        4. Topographic maps (and optional 3D renderings)
        5. Write per-recording design matrices and metrics

The pipelines only communicate through files on disk.

References:
    - MNE-NIRS: https://mne.tools/mne-nirs/stable/
    - statsmodels MixedLM: https://www.statsmodels.org/stable/mixed_linear.html
"""

import logging
import sys
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path

import mne
import numpy as np
import pandas as pd
import patsy
import scipy
import statsmodels

from elliptical_speech.bids_utils import (
    find_subject_recordings,
    generate_derivative_path,
    validate_output_location,
)
from elliptical_speech.config import AnalysisConfig
from elliptical_speech.contrasts import (
    apply_contrasts,
    build_contrast_battery,
    build_emm_grid,
    compute_marginal_means,
    validate_contrast_matrix,
)
from elliptical_speech.fnirs_glm import run_group_glm
from elliptical_speech.mixed_model import (
    fit_mixed_model,
    load_trial_table,
    split_by_chromophore,
    summarize_mixed_model,
)
from elliptical_speech.reporting import (
    GLM_DATA_DICTIONARY,
    LMEM_DATA_DICTIONARY,
    SURVEY_DATA_DICTIONARY,
    MixedModelResults,
    SurveyResults,
    anova_table,
    contrast_table,
    export_csv,
    fixed_effects_table,
    marginal_means_table,
    save_figure,
    save_numerical_results,
    write_table,
)
from elliptical_speech.survey import (
    compute_group_means,
    load_survey_table,
    plot_faceted_boxplots,
    plot_variable_boxplot,
    run_survey_anovas,
)
from elliptical_speech.visualization import (
    build_coefficient_evoked,
    plot_glm_topography,
    project_to_surface,
    render_sensors_and_rois,
    resolve_subjects_dir,
    save_brain_screenshot,
)


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)
mne.set_log_level("WARNING")


class PipelineError(Exception):
    """Exception raised for pipeline execution failures."""

    pass


def _stage(title: str) -> None:
    logger.info("=" * 70)
    logger.info(title)
    logger.info("=" * 70)


def _software_versions() -> dict[str, str]:
    return {
        "mne": mne.__version__,
        "numpy": np.__version__,
        "pandas": pd.__version__,
        "patsy": patsy.__version__,
        "scipy": scipy.__version__,
        "statsmodels": statsmodels.__version__,
        "python": ".".join(str(v) for v in sys.version_info[:3]),
    }


def _desc_label(text: str) -> str:
    """BIDS desc labels are alphanumeric."""
    return "".join(ch for ch in text if ch.isalnum())


def run_survey_pipeline(
    csv_path: Path | None = None,
    config: AnalysisConfig | None = None,
    output_dir: Path | None = None,
) -> SurveyResults:
    """
    Summarize the NASA-TLX survey.

    Args:
        csv_path: Survey CSV (uses config.survey_csv if None)
        config: Analysis configuration (uses defaults if None)
        output_dir: Output directory (uses config.output_root/survey if None)

    Returns:
        SurveyResults with group means and one ANOVA per rating scale

    Raises:
        FileNotFoundError: If the survey CSV does not exist
        PipelineError: If a stage fails
    """
    if config is None:
        config = AnalysisConfig.default()
        logger.info("Using default analysis configuration")
    csv_path = csv_path or config.survey_csv
    output_dir = output_dir or config.output_root / "survey"
    survey_config = config.survey

    if not csv_path.exists():
        raise FileNotFoundError(f"Survey CSV not found: {csv_path}")
    output_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Output directory: {output_dir}")

    # =========================================================================
    # STAGE 1: Load survey table
    # =========================================================================
    _stage("STAGE 1: Loading NASA-TLX survey table")
    try:
        df = load_survey_table(csv_path, survey_config)
    except ValueError as e:
        raise PipelineError(f"Survey loading failed: {e}") from e

    # =========================================================================
    # STAGE 2: Group means and ANOVAs
    # =========================================================================
    _stage(f"STAGE 2: Means and one-way ANOVAs by '{survey_config.group_column}'")
    try:
        means = compute_group_means(df, survey_config.group_column, survey_config.variables)
        anovas = run_survey_anovas(df, survey_config)
    except Exception as e:
        raise PipelineError(f"Survey statistics failed: {e}") from e

    # =========================================================================
    # STAGE 3: Boxplots
    # =========================================================================
    _stage("STAGE 3: Boxplots")
    try:
        for variable in survey_config.variables:
            fig = plot_variable_boxplot(df, variable, survey_config.group_column)
            save_figure(fig, output_dir / f"desc-{_desc_label(variable)}_boxplot.png")
        fig = plot_faceted_boxplots(df, survey_config.variables, survey_config.group_column)
        save_figure(fig, output_dir / "desc-tlx_boxplots.png")
    except Exception as e:
        raise PipelineError(f"Survey plotting failed: {e}") from e

    # =========================================================================
    # STAGE 4: Write outputs
    # =========================================================================
    _stage("STAGE 4: Writing survey outputs")
    means_dictionary = {
        survey_config.group_column: {"Description": "Grouping level (session)"},
        **{
            f"Avg_{variable}": {
                "Description": f"Mean {variable} rating, missing values ignored"
            }
            for variable in survey_config.variables
        },
    }
    write_table(means, output_dir / "desc-tlx_means.tsv", means_dictionary)
    write_table(anova_table(anovas), output_dir / "desc-tlx_anova.tsv", SURVEY_DATA_DICTIONARY)

    results = SurveyResults(
        group_column=survey_config.group_column,
        n_respondents=len(df),
        group_means=means.to_dict(orient="records"),
        anovas=anovas,
    )
    save_numerical_results(results, output_dir / "desc-tlx_metrics.json")
    return results


def run_mixed_model_pipeline(
    csv_path: Path | None = None,
    config: AnalysisConfig | None = None,
    output_dir: Path | None = None,
) -> MixedModelResults:
    """
    Fit the per-chromophore mixed models, marginal means and planned contrasts.

    Args:
        csv_path: Trial-level CSV (uses config.trials_csv if None)
        config: Analysis configuration (uses defaults if None)
        output_dir: Output directory (uses config.output_root/lmem if None)

    Returns:
        MixedModelResults

    Raises:
        FileNotFoundError: If the trial CSV does not exist
        PipelineError: If a stage fails
    """
    if config is None:
        config = AnalysisConfig.default()
        logger.info("Using default analysis configuration")
    csv_path = csv_path or config.trials_csv
    output_dir = output_dir or config.output_root / "lmem"
    model_config = config.mixed_model

    if not csv_path.exists():
        raise FileNotFoundError(f"Trial table not found: {csv_path}")
    output_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Output directory: {output_dir}")

    # =========================================================================
    # STAGE 1: Load, filter and relevel
    # =========================================================================
    _stage("STAGE 1: Loading trial-level table")
    try:
        trials = load_trial_table(csv_path, model_config)
        frames = split_by_chromophore(trials, model_config)
    except ValueError as e:
        raise PipelineError(f"Trial table preparation failed: {e}") from e
    if not frames:
        raise PipelineError(
            f"None of the chromophores {list(model_config.chromophores)} "
            f"found in {csv_path.name}"
        )

    models = []
    marginal_means = {}
    contrasts = {}
    for chromophore, frame in frames.items():
        # =====================================================================
        # STAGE 2: Fit
        # =====================================================================
        _stage(f"STAGE 2: Fitting mixed model [{chromophore}]")
        try:
            fitted = fit_mixed_model(frame, model_config, chromophore)
            summary = summarize_mixed_model(fitted, model_config)
        except Exception as e:
            raise PipelineError(f"Mixed model fit failed [{chromophore}]: {e}") from e
        models.append(summary)
        write_table(
            fixed_effects_table(summary),
            output_dir / f"desc-{chromophore}_fixedeffects.tsv",
            LMEM_DATA_DICTIONARY,
        )

        # =====================================================================
        # STAGE 3: Marginal means and contrasts
        # =====================================================================
        _stage(f"STAGE 3: Marginal means and planned contrasts [{chromophore}]")
        try:
            grid = build_emm_grid(frame, model_config.emm_factors)
            means = compute_marginal_means(fitted, grid)
        except Exception as e:
            raise PipelineError(f"Marginal means failed [{chromophore}]: {e}") from e
        marginal_means[chromophore] = means
        write_table(
            marginal_means_table(means),
            output_dir / f"desc-{chromophore}_emmeans.tsv",
            LMEM_DATA_DICTIONARY,
        )

        if chromophore not in model_config.contrast_chromophores:
            logger.info(f"No planned contrasts configured for {chromophore}")
            continue

        try:
            battery = build_contrast_battery(
                grid,
                model_config.contrast_families,
                strip_suffix=model_config.contrast_name_strip_suffix,
            )
            rank = validate_contrast_matrix(battery, len(grid))
            contrast_results = apply_contrasts(
                fitted,
                grid,
                battery,
                adjust=model_config.adjust,
                alpha=model_config.alpha,
            )
        except Exception as e:
            raise PipelineError(f"Planned contrasts failed [{chromophore}]: {e}") from e
        logger.info(f"[{chromophore}] {len(battery)} contrasts, rank {rank}")
        contrasts[chromophore] = contrast_results
        write_table(
            contrast_table(contrast_results),
            output_dir / f"desc-{chromophore}_contrasts.tsv",
            LMEM_DATA_DICTIONARY,
        )

    # =========================================================================
    # STAGE 4: Metrics
    # =========================================================================
    _stage("STAGE 4: Writing mixed-model metrics")
    results = MixedModelResults(
        timestamp=datetime.now().isoformat(),
        software_versions=_software_versions(),
        config=config.to_dict()["mixed_model"],
        models=models,
        marginal_means=marginal_means,
        contrasts=contrasts,
        adjust=model_config.adjust,
    )
    save_numerical_results(results, output_dir / "desc-lmem_metrics.json")
    return results


def _render_3d(fits: dict, config: AnalysisConfig, output_dir: Path) -> None:
    """Surface projections per recording and condition, plus one sensor view."""
    viz_config = config.visualization
    subjects_dir = resolve_subjects_dir(viz_config)
    chromophore = viz_config.chromophore

    first_info = None
    for glm_est, summary in fits.values():
        if first_info is None:
            first_info = glm_est.copy().pick(picks=chromophore).info
        for condition in config.glm.conditions:
            evoked = build_coefficient_evoked(glm_est, condition, chromophore)
            brain = project_to_surface(evoked, viz_config, subjects_dir)
            save_brain_screenshot(
                brain,
                generate_derivative_path(
                    summary.subject_id,
                    summary.session_id,
                    config.glm.task,
                    suffix=f"desc-{chromophore}{_desc_label(condition)}_surface",
                    extension=".png",
                    pipeline_name="",
                    base_dir=output_dir,
                ),
            )

    if first_info is not None:
        brain = render_sensors_and_rois(first_info, viz_config, subjects_dir)
        save_brain_screenshot(brain, output_dir / "desc-sensors_rois.png")


def run_glm_pipeline(
    bids_root: Path | None = None,
    config: AnalysisConfig | None = None,
    output_dir: Path | None = None,
) -> pd.DataFrame:
    """
    First-level GLM on every recording of a BIDS dataset.

    Args:
        bids_root: Raw BIDS dataset (uses config.bids_root if None)
        config: Analysis configuration (uses defaults if None)
        output_dir: Output directory (uses config.output_root if None)

    Returns:
        Group coefficient table in the trial-level schema

    Raises:
        FileNotFoundError: If bids_root does not exist
        RawDataWriteError: If output_dir lies inside bids_root
        PipelineError: If a stage fails
    """
    if config is None:
        config = AnalysisConfig.default()
        logger.info("Using default analysis configuration")
    bids_root = bids_root or config.bids_root
    output_dir = output_dir or config.output_root
    glm_config = config.glm

    run_config = replace(config, bids_root=bids_root, output_root=output_dir)
    validate_output_location(output_dir, bids_root)
    run_config.validate_paths()
    logger.info(f"Output directory: {output_dir}")

    # =========================================================================
    # STAGE 1: Discover recordings
    # =========================================================================
    _stage("STAGE 1: Discovering BIDS recordings")
    recordings = find_subject_recordings(bids_root, glm_config.task)
    if not recordings:
        raise PipelineError(
            f"No task-{glm_config.task} recordings found under {bids_root}"
        )

    # =========================================================================
    # STAGE 2: First-level GLM
    # =========================================================================
    _stage("STAGE 2: Preprocessing and first-level GLM")
    try:
        group, fits = run_group_glm(recordings, glm_config)
    except Exception as e:
        raise PipelineError(f"First-level GLM failed: {e}") from e

    # =========================================================================
    # STAGE 3: Group table and design matrices
    # =========================================================================
    _stage("STAGE 3: Writing coefficient tables")
    level = "channels" if glm_config.export_level == "channel" else "rois"
    export_csv(group, output_dir / f"group_glm_{level}.csv")
    for glm_est, summary in fits.values():
        write_table(
            glm_est.design.rename_axis("time").reset_index(),
            generate_derivative_path(
                summary.subject_id,
                summary.session_id,
                glm_config.task,
                suffix="desc-glm_design",
                extension=".tsv",
                pipeline_name="",
                base_dir=output_dir,
            ),
        )
    write_table(group, output_dir / f"desc-glm_{level}.tsv", GLM_DATA_DICTIONARY)

    # =========================================================================
    # STAGE 4: Figures
    # =========================================================================
    viz_config = config.visualization
    if viz_config.enabled:
        _stage("STAGE 4: Topographic maps")
        try:
            for glm_est, summary in fits.values():
                fig = plot_glm_topography(
                    glm_est, glm_config.conditions, viz_config.chromophore
                )
                save_figure(
                    fig,
                    generate_derivative_path(
                        summary.subject_id,
                        summary.session_id,
                        glm_config.task,
                        suffix=f"desc-{viz_config.chromophore}_topo",
                        extension=".png",
                        pipeline_name="",
                        base_dir=output_dir,
                    ),
                )
        except Exception as e:
            raise PipelineError(f"Topographic plotting failed: {e}") from e

        if viz_config.render_3d:
            logger.info("Rendering 3D surface projections")
            try:
                _render_3d(fits, config, output_dir)
            except Exception as e:
                logger.warning(f"3D rendering failed, skipping: {e}")

    save_numerical_results(
        {
            "timestamp": datetime.now().isoformat(),
            "software_versions": _software_versions(),
            "config": config.to_dict()["glm"],
            "recordings": [asdict(summary) for _, summary in fits.values()],
        },
        output_dir / "desc-glm_metrics.json",
    )
    return group


def main() -> None:
    """
    Command-line interface for the elliptical speech analyses.

    Usage:
        python -m elliptical_speech survey --config configs/elliptical_speech.yml
        python -m elliptical_speech lmem --input group_glm_channels.csv
        python -m elliptical_speech glm --input data/raw --output data/derivatives/elliptical-speech
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Elliptical speech fNIRS study analyses",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # NASA-TLX summary with default configuration
  python -m elliptical_speech survey --input data/NASATLX.csv

  # Mixed model and planned contrasts on the GLM beta table
  python -m elliptical_speech lmem \\
      --config configs/elliptical_speech.yml \\
      --input data/derivatives/elliptical-speech/group_glm_channels.csv

  # First-level GLM on a BIDS dataset
  python -m elliptical_speech glm --input data/raw --output data/derivatives/elliptical-speech
        """,
    )
    parser.add_argument(
        "--version",
        action="version",
        version="elliptical-speech 0.1.0",
        help="Show version and exit",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    for name, help_text, input_help in (
        ("survey", "NASA-TLX means, ANOVAs and boxplots", "Survey CSV"),
        ("lmem", "Mixed model, marginal means and planned contrasts", "Trial-level CSV"),
        ("glm", "fNIRS preprocessing and first-level GLM", "BIDS root directory"),
    ):
        subparser = subparsers.add_parser(name, help=help_text)
        subparser.add_argument(
            "--config",
            type=Path,
            default=None,
            help="Path to YAML configuration file (uses defaults if not provided)",
        )
        subparser.add_argument(
            "--input",
            type=Path,
            default=None,
            help=f"{input_help} (overrides the configuration)",
        )
        subparser.add_argument(
            "--output",
            type=Path,
            default=None,
            help="Output directory for derivatives",
        )
        subparser.add_argument(
            "--verbose",
            action="store_true",
            help="Enable verbose logging (DEBUG level)",
        )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
        logger.debug("Verbose logging enabled")

    try:
        if args.config:
            logger.info(f"Loading configuration from: {args.config}")
            config = AnalysisConfig.from_yaml(args.config)
        else:
            logger.info("Using default configuration")
            config = AnalysisConfig.default()

        if args.command == "survey":
            survey = run_survey_pipeline(args.input, config, args.output)
            _stage("SURVEY SUMMARY")
            for anova in survey.anovas:
                logger.info(
                    f"  {anova.variable}: F({anova.df_between:.0f}, "
                    f"{anova.df_within:.0f}) = {anova.f_value:.3f}, "
                    f"p = {anova.p_value:.4f}"
                )
        elif args.command == "lmem":
            lmem = run_mixed_model_pipeline(args.input, config, args.output)
            _stage("MIXED MODEL SUMMARY")
            for model in lmem.models:
                logger.info(
                    f"  {model.chromophore}: n={model.n_obs}, groups={model.n_groups}, "
                    f"converged={model.converged} ({model.optimizer})"
                )
            for chromophore, results in lmem.contrasts.items():
                significant = [r.name for r in results if r.significant]
                logger.info(
                    f"  {chromophore}: {len(significant)}/{len(results)} significant "
                    f"contrasts ({lmem.adjust}): {significant}"
                )
        else:
            group = run_glm_pipeline(args.input, config, args.output)
            _stage("GLM SUMMARY")
            logger.info(
                f"  {len(group)} coefficients from {group['ID'].nunique()} subjects"
            )
        logger.info("=" * 70)
        logger.info("Pipeline completed successfully!")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Pipeline failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
