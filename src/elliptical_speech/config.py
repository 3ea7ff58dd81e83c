"""
Analysis Configuration for the Elliptical Speech fNIRS Study.

This module defines the configuration dataclasses for the three analysis
pipelines of the study (NASA-TLX survey summary, linear mixed-effects model on
GLM beta values, and fNIRS first-level GLM).

The experiment's modeling assumptions (model formula, reference levels,
planned contrast families) live here as declarative data so they can be read
and audited in one place and overridden from YAML.

All section configurations use frozen dataclasses for immutability; the
top-level AnalysisConfig supports YAML serialization/deserialization.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

import yaml


TLX_VARIABLES = (
    "Mental_Demand",
    "Success",
    "Hard",
    "Physical",
    "Hurried",
    "Mental_Feel",
)

VALID_ADJUST_METHODS = {
    "fdr_bh",
    "fdr_by",
    "bonferroni",
    "holm",
    "sidak",
    "none",
}

VALID_OPTIMIZERS = {"bfgs", "lbfgs", "cg", "nm", "powell", "newton"}


@dataclass(frozen=True)
class SurveyConfig:
    """
    NASA-TLX survey summary configuration.

    Attributes:
        group_column: Column holding the grouping factor (session)
        variables: Numeric rating columns to summarize and test
    """

    group_column: str = "Session"
    variables: tuple[str, ...] = TLX_VARIABLES

    def __post_init__(self) -> None:
        """Validate survey parameters."""
        if not self.group_column or not self.group_column.strip():
            raise ValueError("group_column cannot be empty")
        object.__setattr__(self, "variables", tuple(self.variables))
        if not self.variables:
            raise ValueError("variables must name at least one rating column")
        if self.group_column in self.variables:
            raise ValueError(
                f"group_column '{self.group_column}' cannot also be a variable"
            )
        if len(set(self.variables)) != len(self.variables):
            raise ValueError(f"variables contain duplicates: {self.variables}")


@dataclass(frozen=True)
class ContrastFamily:
    """
    Declarative family of planned pairwise contrasts.

    A family compares two levels of one factor (``positive - negative``)
    separately within every combination of the remaining EMM factors.
    ``fixed`` pins other factors to a single level, e.g. ``{"Condition": "ii"}``
    restricts a vocoder comparison to the ii condition.

    Attributes:
        factor: Factor whose levels are compared
        positive: Level receiving weight +1
        negative: Level receiving weight -1
        name_template: str.format template; placeholders are factor names
        fixed: Mapping of factor -> level held constant for the family
    """

    factor: str
    positive: str
    negative: str
    name_template: str
    fixed: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate contrast family definition."""
        object.__setattr__(self, "positive", str(self.positive))
        object.__setattr__(self, "negative", str(self.negative))
        object.__setattr__(
            self, "fixed", {str(k): str(v) for k, v in dict(self.fixed).items()}
        )
        if self.positive == self.negative:
            raise ValueError(
                f"Contrast family on '{self.factor}' compares level "
                f"'{self.positive}' with itself"
            )
        if self.factor in self.fixed:
            raise ValueError(
                f"Contrast factor '{self.factor}' cannot also be fixed"
            )
        if not self.name_template:
            raise ValueError("name_template cannot be empty")


def _default_contrast_families() -> tuple[ContrastFamily, ...]:
    return (
        ContrastFamily(
            factor="Condition",
            positive="ii",
            negative="ee",
            name_template="ii_ee_{ROI}_{Vocoder}",
        ),
        ContrastFamily(
            factor="Vocoder",
            positive="16",
            negative="4",
            name_template="ii_{ROI}_16_4",
            fixed={"Condition": "ii"},
        ),
        ContrastFamily(
            factor="Vocoder",
            positive="16",
            negative="4",
            name_template="ee_{ROI}_16_4",
            fixed={"Condition": "ee"},
        ),
    )


@dataclass(frozen=True)
class MixedModelConfig:
    """
    Linear mixed-effects model configuration.

    The defaults reproduce the study's interaction-only HbO/HbR model:
    ``theta ~ -1 + ROI:Condition:Vocoder + (1 | ID)`` with reference levels
    Vocoder=16, Condition=ii, ROI=DLPFC_roi.

    Attributes:
        response: Column with the modeled amplitude (GLM beta)
        group_column: Column identifying subjects (random intercept)
        fixed_formula: patsy formula for the fixed-effect structure
        condition_column: Column holding the stimulus condition
        conditions: Conditions retained before fitting
        chromophore_column: Column holding the chromophore label
        chromophores: Chromophores fitted as separate models
        reference_levels: Leveling policy, factor -> baseline level
        emm_factors: Factors spanning the marginal-means grid; the first
            factor varies fastest
        contrast_chromophores: Chromophores for which planned contrasts run
        contrast_families: Planned contrast battery definition
        contrast_name_strip_suffix: Suffix removed from level labels in
            contrast names (``DLPFC_roi`` -> ``DLPFC``)
        optimizers: Optimizers tried in order until one converges
        max_iter: Iteration cap passed to the optimizer
        reml: Fit by restricted maximum likelihood
        adjust: Multiple-comparison adjustment (statsmodels multipletests)
        alpha: Significance level for adjusted p-values
    """

    response: str = "theta"
    group_column: str = "ID"
    fixed_formula: str = "theta ~ -1 + ROI:Condition:Vocoder"
    condition_column: str = "Condition"
    conditions: tuple[str, ...] = ("ee", "ii")
    chromophore_column: str = "Chroma"
    chromophores: tuple[str, ...] = ("hbo", "hbr")
    reference_levels: dict[str, str] = field(
        default_factory=lambda: {
            "Vocoder": "16",
            "Condition": "ii",
            "ROI": "DLPFC_roi",
        }
    )
    emm_factors: tuple[str, ...] = ("Condition", "ROI", "Vocoder")
    contrast_chromophores: tuple[str, ...] = ("hbo",)
    contrast_families: tuple[ContrastFamily, ...] = field(
        default_factory=_default_contrast_families
    )
    contrast_name_strip_suffix: str = "_roi"
    optimizers: tuple[str, ...] = ("powell", "lbfgs")
    max_iter: int = 2_000_000
    reml: bool = True
    adjust: str = "fdr_bh"
    alpha: float = 0.05

    def __post_init__(self) -> None:
        """Normalize sequences and validate model parameters."""
        for name in ("conditions", "chromophores", "emm_factors",
                     "contrast_chromophores", "optimizers"):
            object.__setattr__(self, name, tuple(getattr(self, name)))
        object.__setattr__(
            self,
            "reference_levels",
            {str(k): str(v) for k, v in dict(self.reference_levels).items()},
        )
        families = tuple(
            family if isinstance(family, ContrastFamily) else ContrastFamily(**family)
            for family in self.contrast_families
        )
        object.__setattr__(self, "contrast_families", families)

        if "~" not in self.fixed_formula:
            raise ValueError(
                f"fixed_formula must contain '~', got '{self.fixed_formula}'"
            )
        lhs = self.fixed_formula.split("~", 1)[0].strip()
        if lhs != self.response:
            raise ValueError(
                f"fixed_formula response '{lhs}' does not match "
                f"response column '{self.response}'"
            )
        if len(self.conditions) < 2:
            raise ValueError(
                f"At least two conditions are required, got {self.conditions}"
            )
        if not self.chromophores:
            raise ValueError("chromophores cannot be empty")
        unknown = set(self.contrast_chromophores) - set(self.chromophores)
        if unknown:
            raise ValueError(
                f"contrast_chromophores {sorted(unknown)} are not in "
                f"chromophores {self.chromophores}"
            )
        for family in self.contrast_families:
            referenced = {family.factor, *family.fixed}
            missing = referenced - set(self.emm_factors)
            if missing:
                raise ValueError(
                    f"Contrast family '{family.name_template}' references "
                    f"factors {sorted(missing)} outside emm_factors "
                    f"{self.emm_factors}"
                )
        if not self.optimizers:
            raise ValueError("optimizers cannot be empty")
        bad = [opt for opt in self.optimizers if opt not in VALID_OPTIMIZERS]
        if bad:
            raise ValueError(
                f"optimizers must be drawn from {sorted(VALID_OPTIMIZERS)}, got {bad}"
            )
        if self.max_iter <= 0:
            raise ValueError(f"max_iter must be positive, got {self.max_iter}")
        if self.adjust not in VALID_ADJUST_METHODS:
            raise ValueError(
                f"adjust must be one of {sorted(VALID_ADJUST_METHODS)}, "
                f"got '{self.adjust}'"
            )
        if not 0.0 < self.alpha < 1.0:
            raise ValueError(f"alpha must be in (0, 1), got {self.alpha}")

    @property
    def factor_columns(self) -> tuple[str, ...]:
        """Categorical columns named in the leveling policy and EMM grid."""
        ordered = list(self.emm_factors)
        for column in self.reference_levels:
            if column not in ordered:
                ordered.append(column)
        return tuple(ordered)


def _default_event_map() -> dict[str, str]:
    return {"1.0": "ee_16", "2.0": "ee_4", "3.0": "ii_16", "4.0": "ii_4"}


def _default_rois() -> dict[str, list[list[int]]]:
    # ROI names match the reference levels of MixedModelConfig
    return {
        "LA_roi": [[1, 1], [1, 2], [2, 1], [2, 2]],
        "RA_roi": [[3, 3], [3, 4], [4, 3], [4, 4]],
        "DLPFC_roi": [[5, 5], [5, 6], [6, 5]],
        "MFG_roi": [[6, 6], [7, 6], [7, 7]],
        "PM_roi": [[8, 8], [8, 9], [9, 8], [9, 9]],
    }


@dataclass(frozen=True)
class GLMConfig:
    """
    fNIRS first-level GLM configuration (MNE-NIRS).

    Attributes:
        task: BIDS task label of the recordings
        event_map: Renaming of raw annotation codes to condition names
        conditions: Stimulus conditions kept as regressors
        trial_factors: Names of the factors encoded in a condition name
        condition_separator: Separator between factor levels in a condition
        stim_duration_sec: Boxcar duration convolved with the HRF (seconds)
        ppf: Partial pathlength factor for the modified Beer-Lambert law
        resample_sfreq: Sampling rate after downsampling (Hz)
        sci_threshold: Scalp coupling index cutoff (None disables screening)
        short_max_dist_m: Maximum source-detector distance of short channels
        long_min_dist_m: Minimum source-detector distance of long channels
        long_max_dist_m: Maximum source-detector distance of long channels
        hrf_model: HRF model for design matrix convolution
        drift_model: Drift regressors ('cosine', 'polynomial' or None)
        high_pass_hz: Cosine drift high-pass cutoff (Hz)
        noise_model: GLM noise model for run_glm
        rois: ROI name -> list of [source, detector] pairs
        export_level: 'channel' or 'roi' rows in the group table
        weighted_roi: Inverse-variance weighting for ROI averages
    """

    task: str = "ellipticalspeech"
    event_map: dict[str, str] = field(default_factory=_default_event_map)
    conditions: tuple[str, ...] = ("ee_16", "ee_4", "ii_16", "ii_4")
    trial_factors: tuple[str, ...] = ("Condition", "Vocoder")
    condition_separator: str = "_"
    stim_duration_sec: float = 5.0
    ppf: float = 6.0
    resample_sfreq: float = 0.6
    sci_threshold: float | None = None
    short_max_dist_m: float = 0.01
    long_min_dist_m: float = 0.015
    long_max_dist_m: float = 0.045
    hrf_model: Literal["spm", "glover", "fir"] = "spm"
    drift_model: Literal["cosine", "polynomial"] | None = "cosine"
    high_pass_hz: float = 0.005
    noise_model: Literal["ar1", "ols", "auto"] = "ar1"
    rois: dict[str, list[list[int]]] = field(default_factory=_default_rois)
    export_level: Literal["channel", "roi"] = "channel"
    weighted_roi: bool = True

    def __post_init__(self) -> None:
        """Validate GLM parameters."""
        object.__setattr__(self, "conditions", tuple(self.conditions))
        object.__setattr__(self, "trial_factors", tuple(self.trial_factors))
        object.__setattr__(
            self, "event_map", {str(k): str(v) for k, v in dict(self.event_map).items()}
        )
        object.__setattr__(
            self,
            "rois",
            {
                str(name): [[int(s), int(d)] for s, d in pairs]
                for name, pairs in dict(self.rois).items()
            },
        )
        if not self.conditions:
            raise ValueError("conditions cannot be empty")
        for condition in self.conditions:
            n_parts = len(condition.split(self.condition_separator))
            if n_parts != len(self.trial_factors):
                raise ValueError(
                    f"Condition '{condition}' splits into {n_parts} parts on "
                    f"'{self.condition_separator}', expected "
                    f"{len(self.trial_factors)} for {self.trial_factors}"
                )
        if self.stim_duration_sec <= 0:
            raise ValueError(
                f"stim_duration_sec must be positive, got {self.stim_duration_sec}"
            )
        if self.ppf <= 0:
            raise ValueError(f"ppf must be positive, got {self.ppf}")
        if self.resample_sfreq <= 0:
            raise ValueError(
                f"resample_sfreq must be positive, got {self.resample_sfreq}"
            )
        if self.sci_threshold is not None and not 0.0 <= self.sci_threshold <= 1.0:
            raise ValueError(
                f"sci_threshold must be in [0, 1], got {self.sci_threshold}"
            )
        if self.short_max_dist_m >= self.long_min_dist_m:
            raise ValueError(
                f"short_max_dist_m ({self.short_max_dist_m}) must be < "
                f"long_min_dist_m ({self.long_min_dist_m})"
            )
        if self.long_min_dist_m >= self.long_max_dist_m:
            raise ValueError(
                f"long_min_dist_m ({self.long_min_dist_m}) must be < "
                f"long_max_dist_m ({self.long_max_dist_m})"
            )
        if self.high_pass_hz <= 0:
            raise ValueError(f"high_pass_hz must be positive, got {self.high_pass_hz}")
        if self.export_level not in ("channel", "roi"):
            raise ValueError(
                f"export_level must be 'channel' or 'roi', got '{self.export_level}'"
            )
        if self.export_level == "roi" and not self.rois:
            raise ValueError("export_level 'roi' requires at least one ROI definition")
        owner: dict[tuple[int, int], str] = {}
        for name, pairs in self.rois.items():
            for source, detector in pairs:
                if (source, detector) in owner:
                    raise ValueError(
                        f"Pair S{source}_D{detector} is listed in both ROI "
                        f"'{owner[(source, detector)]}' and ROI '{name}'"
                    )
                owner[(source, detector)] = name


@dataclass(frozen=True)
class VisualizationConfig:
    """
    Topographic and 3D cortical rendering options.

    Attributes:
        enabled: Whether the GLM pipeline renders figures
        render_3d: Whether to produce surface projection and 3D sensor views
        chromophore: Chromophore shown in topographic and surface plots
        subjects_dir: FreeSurfer subjects directory (None fetches fsaverage)
        subject: Template subject
        parcellation: Annotation used for anatomical ROI labels
        labels: Anatomical label names rendered with the sensors
        projection_distance_m: Sensor-to-surface projection distance
        hemi: Hemisphere(s) displayed
        views: Camera views rendered for each figure
    """

    enabled: bool = True
    render_3d: bool = False
    chromophore: Literal["hbo", "hbr"] = "hbo"
    subjects_dir: Path | None = None
    subject: str = "fsaverage"
    parcellation: str = "aparc"
    labels: tuple[str, ...] = (
        "superiortemporal-lh",
        "superiortemporal-rh",
        "rostralmiddlefrontal-lh",
        "rostralmiddlefrontal-rh",
    )
    projection_distance_m: float = 0.03
    hemi: Literal["lh", "rh", "both", "split"] = "both"
    views: tuple[str, ...] = ("lateral",)

    def __post_init__(self) -> None:
        """Validate visualization parameters."""
        if isinstance(self.subjects_dir, str):
            object.__setattr__(self, "subjects_dir", Path(self.subjects_dir))
        object.__setattr__(self, "labels", tuple(self.labels))
        object.__setattr__(self, "views", tuple(self.views))
        if self.projection_distance_m <= 0:
            raise ValueError(
                f"projection_distance_m must be positive, got "
                f"{self.projection_distance_m}"
            )
        if not self.views:
            raise ValueError("views cannot be empty")


@dataclass
class AnalysisConfig:
    """
    Complete configuration for the elliptical speech analyses.

    Aggregates all section configurations and input/output locations.
    Supports YAML serialization/deserialization for reproducibility.

    Attributes:
        survey: NASA-TLX survey summary configuration
        mixed_model: Linear mixed-effects model configuration
        glm: fNIRS first-level GLM configuration
        visualization: Plotting configuration
        survey_csv: NASA-TLX responses (CSV)
        trials_csv: Trial-level GLM beta table (CSV)
        bids_root: Root of the BIDS fNIRS dataset (read-only)
        output_root: Root path for derivative outputs
    """

    survey: SurveyConfig = field(default_factory=SurveyConfig)
    mixed_model: MixedModelConfig = field(default_factory=MixedModelConfig)
    glm: GLMConfig = field(default_factory=GLMConfig)
    visualization: VisualizationConfig = field(default_factory=VisualizationConfig)
    survey_csv: Path = field(default_factory=lambda: Path("data/NASATLX.csv"))
    trials_csv: Path = field(
        default_factory=lambda: Path(
            "data/derivatives/elliptical-speech/group_glm_channels.csv"
        )
    )
    bids_root: Path = field(default_factory=lambda: Path("data/raw"))
    output_root: Path = field(
        default_factory=lambda: Path("data/derivatives/elliptical-speech")
    )

    def __post_init__(self) -> None:
        """Convert string paths to Path objects."""
        for name in ("survey_csv", "trials_csv", "bids_root", "output_root"):
            value = getattr(self, name)
            if isinstance(value, str):
                setattr(self, name, Path(value))

    def to_dict(self) -> dict[str, Any]:
        """
        Convert configuration to a YAML-friendly dictionary.

        Returns:
            Dictionary with paths as strings and tuples as lists.
        """

        def convert(value: Any) -> Any:
            if isinstance(value, Path):
                return str(value)
            if isinstance(value, dict):
                return {k: convert(v) for k, v in value.items()}
            if isinstance(value, (list, tuple)):
                return [convert(v) for v in value]
            return value

        return convert(asdict(self))

    def to_yaml(self, file_path: Path) -> None:
        """
        Save configuration to YAML file.

        Args:
            file_path: Path to save the YAML configuration.
        """
        config_dict = self.to_dict()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "w", encoding="utf-8") as yaml_file:
            yaml.dump(
                config_dict,
                yaml_file,
                default_flow_style=False,
                sort_keys=False,
                allow_unicode=True,
            )

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> "AnalysisConfig":
        """
        Create configuration from dictionary.

        Missing sections fall back to their defaults.

        Args:
            config_dict: Dictionary with configuration values.

        Returns:
            AnalysisConfig instance.

        Raises:
            ValueError: If a section contains invalid values.
        """
        defaults = cls()
        return cls(
            survey=SurveyConfig(**config_dict.get("survey", {})),
            mixed_model=MixedModelConfig(**config_dict.get("mixed_model", {})),
            glm=GLMConfig(**config_dict.get("glm", {})),
            visualization=VisualizationConfig(**config_dict.get("visualization", {})),
            survey_csv=Path(config_dict.get("survey_csv", defaults.survey_csv)),
            trials_csv=Path(config_dict.get("trials_csv", defaults.trials_csv)),
            bids_root=Path(config_dict.get("bids_root", defaults.bids_root)),
            output_root=Path(config_dict.get("output_root", defaults.output_root)),
        )

    @classmethod
    def from_yaml(cls, file_path: Path) -> "AnalysisConfig":
        """
        Load configuration from YAML file.

        Args:
            file_path: Path to the YAML configuration file.

        Returns:
            AnalysisConfig instance.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the YAML content is invalid.
        """
        if not file_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        with open(file_path, "r", encoding="utf-8") as yaml_file:
            config_dict = yaml.safe_load(yaml_file)

        if config_dict is None:
            raise ValueError(f"Empty or invalid YAML file: {file_path}")
        if not isinstance(config_dict, dict):
            raise ValueError(
                f"Top level of {file_path} must be a mapping, "
                f"got {type(config_dict).__name__}"
            )

        return cls.from_dict(config_dict)

    @classmethod
    def default(cls) -> "AnalysisConfig":
        """
        Create a configuration with all default values.

        Returns:
            AnalysisConfig with default parameters.
        """
        return cls()

    def validate_paths(self) -> None:
        """
        Validate that the BIDS root exists and the output root can be created.

        Raises:
            FileNotFoundError: If bids_root does not exist.
        """
        if not self.bids_root.exists():
            raise FileNotFoundError(
                f"BIDS root directory does not exist: {self.bids_root}"
            )
        self.output_root.mkdir(parents=True, exist_ok=True)
