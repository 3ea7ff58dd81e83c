"""
fNIRS First-Level GLM Module.

Per-recording processing of the elliptical speech recordings following the
MNE-NIRS GLM workflow:

1. Read the recording (SNIRF file or NIRx directory)
2. Rename event codes to condition names, drop unused events, set the
   stimulus boxcar duration
3. Intensity → Optical Density (OD)
4. Optional scalp coupling index (SCI) screening on OD
5. OD → Hemoglobin (modified Beer-Lambert law)
6. Downsample
7. Split short (superficial) and long (cortical) channels
8. Design matrix: HRF-convolved stimulus regressors, drift terms, and the
   mean short-channel HbO/HbR signals as nuisance regressors
9. GLM fit on the long channels (AR(1) noise model)
10. Coefficient tables per channel or per ROI, in the trial-level schema
    consumed by the mixed-model pipeline

Condition names encode the trial factors, e.g. ``ee_16`` is Condition ``ee``
with a 16-channel Vocoder.

References:
    - Huppert (2016). Commentary on the statistical properties of noise and
      its implication on general linear models in fNIRS. Neurophotonics 3(1).
    - Santosa et al. (2020). Quantitative comparison of correction techniques
      for removing systemic physiological signal in fNIRS. Algorithms 11(5).
    - MNE-NIRS GLM tutorial: https://mne.tools/mne-nirs/stable/auto_examples/general/plot_11_hrf_measured.html
"""

import logging
from collections.abc import Sequence
from pathlib import Path

import mne
import numpy as np
import pandas as pd
from mne_nirs.channels import get_long_channels, get_short_channels, picks_pair_to_idx
from mne_nirs.experimental_design import make_first_level_design_matrix
from mne_nirs.statistics import RegressionResults, run_glm

from elliptical_speech.bids_utils import BIDSRecording
from elliptical_speech.config import GLMConfig
from elliptical_speech.reporting import GLMSubjectSummary

logger = logging.getLogger(__name__)

TRIAL_TABLE_COLUMNS = [
    "ID",
    "Condition",
    "Vocoder",
    "ROI",
    "Chroma",
    "ch_name",
    "Source",
    "Detector",
    "theta",
    "se",
    "t",
    "p_value",
]


def read_recording(path: Path) -> mne.io.BaseRaw:
    """
    Load an fNIRS recording with data preloaded.

    Args:
        path: ``.snirf`` file or NIRx recording directory

    Returns:
        Raw intensity data

    Raises:
        FileNotFoundError: If the path does not exist
    """
    if not path.exists():
        raise FileNotFoundError(f"fNIRS recording not found: {path}")

    if path.is_dir():
        raw = mne.io.read_raw_nirx(path, preload=True)
    elif path.suffix == ".snirf":
        raw = mne.io.read_raw_snirf(path, preload=True)
    else:
        raw = mne.io.read_raw(path, preload=True)

    logger.info(
        f"Loaded {path.name}: {len(raw.ch_names)} channels, "
        f"{raw.n_times} samples at {raw.info['sfreq']:.2f} Hz, "
        f"{len(raw.annotations)} annotations"
    )
    return raw


def prepare_annotations(raw: mne.io.BaseRaw, config: GLMConfig) -> mne.io.BaseRaw:
    """
    Turn raw event codes into condition-labelled stimulus blocks (in place).

    Event codes listed in ``config.event_map`` are renamed, annotations whose
    description is not a configured condition are deleted, and every
    remaining annotation gets the configured boxcar duration.

    Args:
        raw: Raw data with annotations
        config: GLM configuration

    Returns:
        The same Raw object

    Raises:
        ValueError: If none of the configured conditions occurs in the recording
    """
    annotations = raw.annotations
    mapping = {
        code: name
        for code, name in config.event_map.items()
        if code in set(annotations.description)
    }
    if mapping:
        annotations.rename(mapping)

    unwanted = np.flatnonzero(~np.isin(annotations.description, config.conditions))
    if len(unwanted):
        dropped = sorted(set(annotations.description[unwanted]))
        logger.info(f"Dropping {len(unwanted)} annotations not in conditions: {dropped}")
        annotations.delete(unwanted)

    if len(annotations) == 0:
        raise ValueError(
            f"No annotations match the conditions {list(config.conditions)} "
            f"(event_map: {config.event_map})"
        )

    annotations.set_durations(config.stim_duration_sec)

    counts = pd.Series(annotations.description).value_counts().sort_index()
    logger.info(
        "Stimulus blocks: "
        + ", ".join(f"{name}={n}" for name, n in counts.items())
        + f" (duration {config.stim_duration_sec}s)"
    )
    return raw


def convert_to_optical_density(raw_intensity: mne.io.BaseRaw) -> mne.io.BaseRaw:
    """
    Convert raw intensity to optical density (OD).

    Args:
        raw_intensity: Raw data with fnirs_cw_amplitude channels

    Returns:
        Raw data with fnirs_od channels

    Raises:
        ValueError: If channel types are not fnirs_cw_amplitude
    """
    channel_types = raw_intensity.get_channel_types()
    if not all(ch_type == "fnirs_cw_amplitude" for ch_type in channel_types):
        raise ValueError(
            "convert_to_optical_density() requires fnirs_cw_amplitude channel types. "
            f"Found: {set(channel_types)}"
        )

    logger.info(
        f"Converting {len(raw_intensity.ch_names)} intensity channels to optical density"
    )
    raw_od = mne.preprocessing.nirs.optical_density(raw_intensity)
    logger.info(
        f"Successfully converted to optical density. "
        f"Channel types: {set(raw_od.get_channel_types())}"
    )
    return raw_od


def convert_to_hemoglobin(raw_od: mne.io.BaseRaw, ppf: float = 6.0) -> mne.io.BaseRaw:
    """
    Convert optical density to HbO/HbR concentration changes.

    Uses the modified Beer-Lambert law; each wavelength pair becomes one
    ``hbo`` and one ``hbr`` channel (e.g. ``S1_D1 760`` + ``S1_D1 850`` →
    ``S1_D1 hbo`` + ``S1_D1 hbr``).

    Args:
        raw_od: Raw data with fnirs_od channels
        ppf: Partial pathlength factor

    Returns:
        Raw data with hbo and hbr channels

    Raises:
        ValueError: If channel types are not fnirs_od
    """
    channel_types = raw_od.get_channel_types()
    if not all(ch_type == "fnirs_od" for ch_type in channel_types):
        raise ValueError(
            "convert_to_hemoglobin() requires fnirs_od channel types. "
            f"Found: {set(channel_types)}"
        )

    logger.info(
        f"Converting {len(raw_od.ch_names)} OD channels to hemoglobin "
        f"concentrations using PPF={ppf}"
    )
    raw_haemo = mne.preprocessing.nirs.beer_lambert_law(raw_od, ppf=ppf)

    haemo_types = raw_haemo.get_channel_types()
    logger.info(
        f"Successfully converted to hemoglobin: {haemo_types.count('hbo')} HbO "
        f"channels, {haemo_types.count('hbr')} HbR channels"
    )
    return raw_haemo


def mark_bad_channels_by_sci(
    raw_od: mne.io.BaseRaw,
    threshold: float | None,
) -> list[str]:
    """
    Mark channels with poor scalp coupling as bad (in place).

    The scalp coupling index is the correlation of the two wavelengths of a
    source-detector pair in the cardiac band, so both wavelengths of a pair
    are marked together.

    Args:
        raw_od: Raw data with fnirs_od channels
        threshold: Minimum acceptable SCI; None disables screening

    Returns:
        Names of channels newly marked bad
    """
    if threshold is None:
        logger.debug("SCI screening disabled")
        return []

    sci = mne.preprocessing.nirs.scalp_coupling_index(raw_od)
    bads = [name for name, value in zip(raw_od.ch_names, sci) if value < threshold]
    new_bads = [name for name in bads if name not in raw_od.info["bads"]]
    raw_od.info["bads"] = list(raw_od.info["bads"]) + new_bads

    logger.info(
        f"SCI screening: mean={np.nanmean(sci):.3f}, {len(bads)}/{len(sci)} "
        f"channels below {threshold}"
    )
    if new_bads:
        logger.warning(f"Marked bad (SCI < {threshold}): {new_bads}")
    return new_bads


def preprocess_recording(raw: mne.io.BaseRaw, config: GLMConfig) -> mne.io.BaseRaw:
    """
    Intensity → OD → (SCI screening) → hemoglobin → resampled.

    Args:
        raw: Raw intensity data with stimulus annotations
        config: GLM configuration

    Returns:
        Resampled hemoglobin Raw
    """
    raw_od = convert_to_optical_density(raw)
    mark_bad_channels_by_sci(raw_od, config.sci_threshold)
    raw_haemo = convert_to_hemoglobin(raw_od, ppf=config.ppf)

    logger.info(
        f"Resampling from {raw_haemo.info['sfreq']:.2f} Hz to "
        f"{config.resample_sfreq} Hz"
    )
    raw_haemo.resample(config.resample_sfreq)
    return raw_haemo


def split_short_long_channels(
    raw_haemo: mne.io.BaseRaw,
    config: GLMConfig,
) -> tuple[mne.io.BaseRaw | None, mne.io.BaseRaw]:
    """
    Separate short-separation and long-separation channels.

    Args:
        raw_haemo: Hemoglobin Raw
        config: GLM configuration (distance limits in meters)

    Returns:
        Tuple of (short Raw or None when the montage has none, long Raw)

    Raises:
        ValueError: If no channel falls in the long-channel distance range
    """
    distances = mne.preprocessing.nirs.source_detector_distances(raw_haemo.info)
    n_short = int(np.sum(distances < config.short_max_dist_m))
    n_long = int(
        np.sum(
            (distances > config.long_min_dist_m) & (distances < config.long_max_dist_m)
        )
    )
    if n_long == 0:
        raise ValueError(
            f"No channels between {config.long_min_dist_m} and "
            f"{config.long_max_dist_m} m; distances found: "
            f"{np.unique(np.round(distances, 4)).tolist()}"
        )

    raw_short = None
    if n_short:
        raw_short = get_short_channels(raw_haemo, max_dist=config.short_max_dist_m)
    raw_long = get_long_channels(
        raw_haemo, min_dist=config.long_min_dist_m, max_dist=config.long_max_dist_m
    )

    logger.info(
        f"Identified {n_short} short channels (< {config.short_max_dist_m * 1000:.0f}mm) "
        f"and {n_long} long channels"
    )
    return raw_short, raw_long


def build_design_matrix(
    raw_long: mne.io.BaseRaw,
    raw_short: mne.io.BaseRaw | None,
    config: GLMConfig,
) -> pd.DataFrame:
    """
    First-level design matrix with short-channel nuisance regressors.

    Stimulus regressors are boxcars of ``stim_duration_sec`` convolved with
    the HRF model; drift regressors follow ``drift_model``/``high_pass_hz``.
    The mean short-channel HbO and HbR time courses are appended as
    ``ShortHbO`` and ``ShortHbR``.

    Args:
        raw_long: Long-channel hemoglobin Raw with stimulus annotations
        raw_short: Short-channel hemoglobin Raw, or None
        config: GLM configuration

    Returns:
        Design matrix (rows = samples of raw_long)
    """
    design_matrix = make_first_level_design_matrix(
        raw_long,
        stim_dur=config.stim_duration_sec,
        hrf_model=config.hrf_model,
        drift_model=config.drift_model,
        high_pass=config.high_pass_hz,
    )

    if raw_short is None:
        logger.warning(
            "No short channels available: design matrix has no "
            "ShortHbO/ShortHbR regressors"
        )
    else:
        for chroma, column in (("hbo", "ShortHbO"), ("hbr", "ShortHbR")):
            data = raw_short.copy().pick(picks=chroma).get_data()
            design_matrix[column] = np.mean(data, axis=0)

    stimulus = [c for c in design_matrix.columns if c in config.conditions]
    logger.info(
        f"Design matrix: {design_matrix.shape[0]} samples x "
        f"{design_matrix.shape[1]} regressors (stimulus: {stimulus})"
    )
    return design_matrix


def fit_channel_glm(
    raw_long: mne.io.BaseRaw,
    design_matrix: pd.DataFrame,
    noise_model: str = "ar1",
) -> RegressionResults:
    """
    Fit the first-level GLM on every long channel.

    Args:
        raw_long: Long-channel hemoglobin Raw (bad channels are excluded)
        design_matrix: Output of build_design_matrix
        noise_model: 'ar1', 'ols' or 'auto'

    Returns:
        MNE-NIRS regression results
    """
    bads = [name for name in raw_long.info["bads"] if name in raw_long.ch_names]
    if bads:
        logger.info(f"Excluding {len(bads)} bad channels from the GLM")
        raw_long = raw_long.copy().drop_channels(bads)

    logger.info(
        f"Fitting GLM ({noise_model}) on {len(raw_long.ch_names)} channels"
    )
    return run_glm(raw_long, design_matrix, noise_model=noise_model)


def split_condition_column(df: pd.DataFrame, config: GLMConfig) -> pd.DataFrame:
    """
    Replace the regressor name in ``Condition`` by the trial factor columns.

    ``ee_16`` becomes ``Condition='ee'`` and ``Vocoder='16'`` with the
    default factors.
    """
    parts = df["Condition"].astype(str).str.split(config.condition_separator, expand=True)
    out = df.copy()
    for i, factor in enumerate(config.trial_factors):
        out[factor] = parts[i]
    return out


def _roi_lookup(config: GLMConfig) -> dict[tuple[int, int], str]:
    return {
        (source, detector): name
        for name, pairs in config.rois.items()
        for source, detector in pairs
    }


def channel_coefficients(
    glm_est: RegressionResults,
    config: GLMConfig,
    subject_id: str,
) -> pd.DataFrame:
    """
    Per-channel stimulus coefficients in the trial-level schema.

    Nuisance regressors (drift, constant, short channels) are dropped. When
    ROIs are configured, each channel is labelled with its ROI and channels
    outside every ROI are dropped with a warning.

    Args:
        glm_est: First-level GLM results
        config: GLM configuration
        subject_id: Subject label written to ``ID``

    Returns:
        One row per channel x condition
    """
    df = glm_est.to_dataframe()
    df = df[df["Condition"].isin(config.conditions)].copy()
    df = split_condition_column(df, config)
    df["ID"] = subject_id

    if config.rois:
        lookup = _roi_lookup(config)
        df["ROI"] = [
            lookup.get((int(s), int(d)))
            for s, d in zip(df["Source"], df["Detector"])
        ]
        outside = sorted(df.loc[df["ROI"].isna(), "ch_name"].unique())
        if outside:
            logger.warning(
                f"sub-{subject_id}: {len(outside)} channels outside every ROI "
                f"dropped: {outside}"
            )
            df = df[df["ROI"].notna()]
    else:
        df["ROI"] = "all"

    columns = [c for c in TRIAL_TABLE_COLUMNS if c in df.columns]
    columns += [c for c in config.trial_factors if c not in columns]
    table = df[columns].reset_index(drop=True)
    logger.info(f"sub-{subject_id}: {len(table)} channel coefficients")
    return table


def roi_coefficients(
    glm_est: RegressionResults,
    config: GLMConfig,
    subject_id: str,
) -> pd.DataFrame:
    """
    ROI-averaged stimulus coefficients in the trial-level schema.

    Averages are inverse-variance weighted when ``config.weighted_roi``.

    Args:
        glm_est: First-level GLM results
        config: GLM configuration (``rois`` must be set)
        subject_id: Subject label written to ``ID``

    Returns:
        One row per ROI x condition x chromophore

    Raises:
        ValueError: If no ROI has channels in the recording
    """
    groups = {}
    for name, pairs in config.rois.items():
        picks = picks_pair_to_idx(glm_est, pairs, on_missing="ignore")
        if len(picks):
            groups[name] = picks
        else:
            logger.warning(f"sub-{subject_id}: ROI '{name}' has no channels")
    if not groups:
        raise ValueError(f"sub-{subject_id}: no configured ROI has channels")

    conditions = [c for c in config.conditions if c in glm_est.design.columns]
    df = glm_est.to_dataframe_region_of_interest(
        groups, conditions, weighted=config.weighted_roi
    )
    df = df.rename(columns={"p": "p_value"})
    df = split_condition_column(df, config)
    df["ID"] = subject_id

    columns = [c for c in TRIAL_TABLE_COLUMNS if c in df.columns]
    columns += [c for c in config.trial_factors if c not in columns]
    table = df[columns].reset_index(drop=True)
    logger.info(f"sub-{subject_id}: {len(table)} ROI coefficients")
    return table


def process_subject(
    path: Path,
    config: GLMConfig,
    subject_id: str,
    session_id: str | None = None,
) -> tuple[RegressionResults, pd.DataFrame, GLMSubjectSummary]:
    """
    Run the full first-level analysis on one recording.

    Args:
        path: Recording (SNIRF file or NIRx directory)
        config: GLM configuration
        subject_id: Subject label (without 'sub-')
        session_id: Session label (without 'ses-'), optional

    Returns:
        Tuple of (GLM results, coefficient table, bookkeeping summary)
    """
    raw = read_recording(path)
    prepare_annotations(raw, config)
    n_events = {
        str(name): int(n)
        for name, n in pd.Series(raw.annotations.description).value_counts().items()
    }

    raw_haemo = preprocess_recording(raw, config)
    raw_short, raw_long = split_short_long_channels(raw_haemo, config)
    design_matrix = build_design_matrix(raw_long, raw_short, config)
    glm_est = fit_channel_glm(raw_long, design_matrix, config.noise_model)

    if config.export_level == "roi":
        table = roi_coefficients(glm_est, config, subject_id)
    else:
        table = channel_coefficients(glm_est, config, subject_id)

    summary = GLMSubjectSummary(
        subject_id=subject_id,
        session_id=session_id,
        recording=path.name,
        n_long_channels=len(raw_long.ch_names),
        n_short_channels=0 if raw_short is None else len(raw_short.ch_names),
        n_bad_channels=len(raw_haemo.info["bads"]),
        sfreq=float(raw_haemo.info["sfreq"]),
        regressors=list(design_matrix.columns),
        n_events=n_events,
    )
    return glm_est, table, summary


def run_group_glm(
    recordings: Sequence[BIDSRecording],
    config: GLMConfig,
) -> tuple[pd.DataFrame, dict[str, tuple[RegressionResults, GLMSubjectSummary]]]:
    """
    First-level GLM over every recording, concatenated into one table.

    Args:
        recordings: Recordings to process, in order
        config: GLM configuration

    Returns:
        Tuple of (group coefficient table, per-recording GLM results and
        summaries keyed by recording file name)

    Raises:
        ValueError: If ``recordings`` is empty
    """
    if not recordings:
        raise ValueError("No recordings to process")

    tables = []
    fits: dict[str, tuple[RegressionResults, GLMSubjectSummary]] = {}
    for i, recording in enumerate(recordings, start=1):
        logger.info(
            f"[{i}/{len(recordings)}] sub-{recording.subject_id}"
            + (f" ses-{recording.session_id}" if recording.session_id else "")
        )
        glm_est, table, summary = process_subject(
            recording.path, config, recording.subject_id, recording.session_id
        )
        tables.append(table)
        fits[recording.path.name] = (glm_est, summary)

    group = pd.concat(tables, ignore_index=True)
    logger.info(
        f"Group table: {len(group)} rows from {len(recordings)} recordings "
        f"({group['ID'].nunique()} subjects)"
    )
    return group, fits
