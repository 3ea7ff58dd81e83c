"""
elliptical_speech: Analyses of the elliptical speech fNIRS study.

This package provides the three analysis pipelines of the study: the
NASA-TLX workload survey summary, the linear mixed-effects model with
planned contrasts on fNIRS GLM beta values, and the fNIRS first-level GLM
with topographic and cortical-surface figures.
"""

from elliptical_speech.bids_utils import (
    BIDSRecording,
    BIDSValidationError,
    RawDataWriteError,
    find_subject_recordings,
    generate_derivative_path,
    parse_bids_entities,
    validate_bids_path,
    validate_output_location,
)
from elliptical_speech.config import (
    AnalysisConfig,
    ContrastFamily,
    GLMConfig,
    MixedModelConfig,
    SurveyConfig,
    VisualizationConfig,
)
from elliptical_speech.contrasts import (
    ContrastSpec,
    apply_contrasts,
    build_contrast_battery,
    build_emm_grid,
    compute_marginal_means,
    validate_contrast_matrix,
)
from elliptical_speech.factors import (
    FactorLevelError,
    apply_leveling_policy,
    filter_levels,
    relevel,
)
from elliptical_speech.fnirs_glm import (
    build_design_matrix,
    channel_coefficients,
    fit_channel_glm,
    preprocess_recording,
    process_subject,
    roi_coefficients,
    run_group_glm,
)
from elliptical_speech.mixed_model import (
    FittedMixedModel,
    fit_mixed_model,
    prepare_model_frame,
    summarize_mixed_model,
)
from elliptical_speech.pipeline import (
    PipelineError,
    run_glm_pipeline,
    run_mixed_model_pipeline,
    run_survey_pipeline,
)
from elliptical_speech.survey import (
    compute_group_means,
    plot_faceted_boxplots,
    plot_variable_boxplot,
    run_one_way_anova,
)

__version__ = "0.1.0"

# Public API
__all__ = [
    # Configuration
    "AnalysisConfig",
    "SurveyConfig",
    "MixedModelConfig",
    "ContrastFamily",
    "GLMConfig",
    "VisualizationConfig",
    # BIDS Utilities
    "BIDSRecording",
    "validate_bids_path",
    "parse_bids_entities",
    "find_subject_recordings",
    "generate_derivative_path",
    "validate_output_location",
    "BIDSValidationError",
    "RawDataWriteError",
    # Factors
    "FactorLevelError",
    "relevel",
    "apply_leveling_policy",
    "filter_levels",
    # Survey
    "compute_group_means",
    "run_one_way_anova",
    "plot_variable_boxplot",
    "plot_faceted_boxplots",
    # Mixed Model
    "FittedMixedModel",
    "prepare_model_frame",
    "fit_mixed_model",
    "summarize_mixed_model",
    # Contrasts
    "ContrastSpec",
    "build_emm_grid",
    "compute_marginal_means",
    "build_contrast_battery",
    "validate_contrast_matrix",
    "apply_contrasts",
    # fNIRS GLM
    "preprocess_recording",
    "build_design_matrix",
    "fit_channel_glm",
    "channel_coefficients",
    "roi_coefficients",
    "process_subject",
    "run_group_glm",
    # Pipeline
    "PipelineError",
    "run_survey_pipeline",
    "run_mixed_model_pipeline",
    "run_glm_pipeline",
]
