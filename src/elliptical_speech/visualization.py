"""
GLM Visualization Module.

Figures of first-level GLM results for the elliptical speech recordings:
- 2D topographic maps of the stimulus coefficients (MNE-NIRS plot_topo)
- Projection of channel coefficients onto the fsaverage cortical surface
- 3D rendering of optodes, channels and anatomical ROIs on fsaverage

3D rendering needs a PyVista backend (install the ``viz`` extra); the 2D
topographies only need matplotlib.

References:
    - MNE-NIRS group waveform tutorial: https://mne.tools/mne-nirs/stable/auto_examples/general/plot_16_waveform_group.html
    - Fischl (2012). FreeSurfer. NeuroImage 62(2).
"""

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path

import matplotlib.pyplot as plt
import mne
import numpy as np
from mne_nirs.statistics import RegressionResults

from elliptical_speech.config import VisualizationConfig

logger = logging.getLogger(__name__)

ROI_LABEL_COLORS = ("tab:blue", "tab:orange", "tab:green", "tab:red", "tab:purple")


def plot_glm_topography(
    glm_est: RegressionResults,
    conditions: Sequence[str],
    chromophore: str = "hbo",
) -> plt.Figure:
    """
    Topographic map of the GLM coefficient of each condition.

    Args:
        glm_est: First-level GLM results
        conditions: Stimulus regressors to plot, one panel each
        chromophore: 'hbo' or 'hbr'

    Returns:
        Matplotlib figure

    Raises:
        ValueError: If a condition is not a regressor of the design
    """
    missing = [c for c in conditions if c not in glm_est.design.columns]
    if missing:
        raise ValueError(
            f"Conditions {missing} are not regressors of the design "
            f"({list(glm_est.design.columns)})"
        )

    logger.info(f"Plotting {chromophore} topography for {list(conditions)}")
    return glm_est.copy().pick(picks=chromophore).plot_topo(conditions=list(conditions))


def build_coefficient_evoked(
    glm_est: RegressionResults,
    condition: str,
    chromophore: str = "hbo",
) -> mne.EvokedArray:
    """
    Single-sample Evoked holding the coefficient of one condition per channel.

    Channel info (types and optode locations) is taken from the GLM results,
    so the Evoked can be projected onto a cortical surface.

    Args:
        glm_est: First-level GLM results
        condition: Stimulus regressor
        chromophore: 'hbo' or 'hbr'

    Returns:
        EvokedArray of shape (n_channels, 1)

    Raises:
        ValueError: If the condition has no coefficient for the chromophore
    """
    picked = glm_est.copy().pick(picks=chromophore)
    df = picked.to_dataframe()
    df = df[df["Condition"] == condition].set_index("ch_name")
    if df.empty:
        raise ValueError(f"No {chromophore} coefficients for condition '{condition}'")

    theta = df.reindex(picked.ch_names)["theta"].to_numpy(dtype=float)
    evoked = mne.EvokedArray(theta[:, np.newaxis], picked.info.copy(), tmin=0.0)
    evoked.comment = f"{condition} {chromophore}"
    logger.debug(f"Built coefficient Evoked for {condition} ({len(theta)} channels)")
    return evoked


def resolve_subjects_dir(config: VisualizationConfig) -> Path:
    """
    FreeSurfer subjects directory holding the template subject.

    Uses ``config.subjects_dir`` when set, otherwise fetches fsaverage
    through MNE (downloaded once, then cached).

    Raises:
        FileNotFoundError: If the configured directory does not exist
    """
    if config.subjects_dir is not None:
        if not config.subjects_dir.exists():
            raise FileNotFoundError(
                f"subjects_dir not found: {config.subjects_dir}"
            )
        return config.subjects_dir

    fs_dir = mne.datasets.fetch_fsaverage(verbose=False)
    subjects_dir = Path(fs_dir).parent
    logger.info(f"Using fsaverage from {subjects_dir}")
    return subjects_dir


def project_to_surface(
    evoked: mne.Evoked,
    config: VisualizationConfig,
    subjects_dir: Path,
) -> mne.viz.Brain:
    """
    Project channel values onto the cortical surface and render them.

    Values are spread to vertices within ``projection_distance_m`` of each
    channel (distance-weighted).

    Args:
        evoked: Output of build_coefficient_evoked
        config: Visualization configuration
        subjects_dir: FreeSurfer subjects directory

    Returns:
        Brain figure (close it after taking screenshots)
    """
    stc = mne.stc_near_sensors(
        evoked,
        trans="fsaverage",
        subject=config.subject,
        mode="weighted",
        distance=config.projection_distance_m,
        project=True,
        subjects_dir=subjects_dir,
    )
    lim = float(np.nanmax(np.abs(evoked.data))) or 1.0
    logger.info(f"Rendering surface projection of '{evoked.comment}'")
    return stc.plot(
        subject=config.subject,
        subjects_dir=subjects_dir,
        surface="pial",
        hemi=config.hemi,
        views=list(config.views),
        time_viewer=False,
        background="w",
        colorbar=True,
        clim=dict(kind="value", pos_lims=[0, lim / 2, lim]),
    )


def select_labels(labels: Iterable[mne.Label], names: Sequence[str]) -> list[mne.Label]:
    """
    Pick anatomical labels by name, in the requested order.

    Raises:
        ValueError: If a name matches no label
    """
    by_name = {label.name: label for label in labels}
    unknown = [name for name in names if name not in by_name]
    if unknown:
        raise ValueError(
            f"Unknown labels {unknown}. Available: {sorted(by_name)}"
        )
    return [by_name[name] for name in names]


def render_sensors_and_rois(
    info: mne.Info,
    config: VisualizationConfig,
    subjects_dir: Path,
) -> mne.viz.Brain:
    """
    3D view of optodes, channels and anatomical ROI labels on fsaverage.

    Args:
        info: Measurement info with fNIRS optode locations
        config: Visualization configuration
        subjects_dir: FreeSurfer subjects directory

    Returns:
        Brain figure (close it after taking screenshots)
    """
    brain = mne.viz.Brain(
        config.subject,
        subjects_dir=subjects_dir,
        hemi=config.hemi,
        surf="pial",
        views=list(config.views),
        background="w",
        cortex="0.5",
        alpha=0.5,
    )
    brain.add_sensors(
        info,
        trans="fsaverage",
        fnirs=["channels", "pairs", "sources", "detectors"],
    )

    if config.labels:
        labels = mne.read_labels_from_annot(
            config.subject,
            parc=config.parcellation,
            subjects_dir=subjects_dir,
            verbose=False,
        )
        selected = select_labels(labels, config.labels)
        for i, label in enumerate(selected):
            if config.hemi in ("lh", "rh") and label.hemi != config.hemi:
                continue
            brain.add_label(
                label,
                borders=False,
                color=ROI_LABEL_COLORS[i % len(ROI_LABEL_COLORS)],
                alpha=0.6,
            )
        logger.info(f"Rendered {len(selected)} anatomical labels: {list(config.labels)}")

    return brain


def save_brain_screenshot(brain: mne.viz.Brain, png_path: Path) -> Path:
    """Save the current view of a Brain figure and close it."""
    png_path.parent.mkdir(parents=True, exist_ok=True)
    brain.save_image(png_path)
    brain.close()
    logger.info(f"3D view saved to {png_path}")
    return png_path
