"""
Shared fixtures: synthetic survey, trial-level and fNIRS data.

All data is generated from fixed seeds; nothing is downloaded.
"""

import matplotlib

matplotlib.use("Agg")  # Use non-interactive backend for testing

import mne
import numpy as np
import pandas as pd
import pytest

from elliptical_speech.config import GLMConfig, MixedModelConfig, SurveyConfig

ROIS = ["DLPFC_roi", "LA_roi", "MFG_roi", "PM_roi", "RA_roi"]
SUBJECTS = ["01", "02", "03", "04", "05", "06"]
CONDITIONS = ["ee_16", "ee_4", "ii_16", "ii_4"]

# Long pairs at 30 mm, one short pair at 8 mm
OPTODES = {
    (1, 1): (np.array([-0.06, 0.02, 0.05]), np.array([-0.06, -0.01, 0.05])),
    (1, 2): (np.array([-0.06, 0.02, 0.05]), np.array([-0.03, 0.02, 0.06])),
    (2, 1): (np.array([-0.06, -0.04, 0.04]), np.array([-0.06, -0.01, 0.05])),
    (3, 3): (np.array([0.06, 0.02, 0.05]), np.array([0.06, -0.01, 0.05])),
    (4, 4): (np.array([0.0, 0.06, 0.05]), np.array([0.008, 0.06, 0.05])),
}


@pytest.fixture
def survey_config():
    return SurveyConfig()


@pytest.fixture
def tlx_df():
    """Three sessions x 8 respondents of NASA-TLX ratings with a few gaps."""
    rng = np.random.default_rng(7)
    rows = []
    for session in (1, 2, 3):
        for respondent in range(8):
            row = {"Respondent": respondent, "Session": session}
            for i, variable in enumerate(SurveyConfig().variables):
                row[variable] = float(rng.integers(1, 21) + session * (i % 2))
            rows.append(row)
    df = pd.DataFrame(rows)
    df.loc[3, "Hard"] = np.nan
    df.loc[17, "Success"] = np.nan
    return df


@pytest.fixture
def mixed_model_config():
    return MixedModelConfig()


@pytest.fixture
def trial_df():
    """
    Balanced trial-level table.

    Every subject has two channels in every ROI x Condition x Vocoder cell,
    for both chromophores, plus a 'ctrl' condition that the model drops.
    """
    rng = np.random.default_rng(2024)
    cell_effects = {
        (roi, condition, vocoder): rng.normal(0.0, 1.0)
        for roi in ROIS
        for condition in ("ee", "ii", "ctrl")
        for vocoder in (4, 16)
    }
    # A large ii vs ee difference in LA at 16 channels
    cell_effects[("LA_roi", "ii", 16)] += 6.0

    rows = []
    for subject in SUBJECTS:
        intercept = rng.normal(0.0, 0.8)
        for (roi, condition, vocoder), effect in cell_effects.items():
            for channel in range(2):
                for chroma in ("hbo", "hbr"):
                    sign = 1.0 if chroma == "hbo" else -0.5
                    rows.append(
                        {
                            "ID": subject,
                            "Condition": condition,
                            "ROI": roi,
                            "Vocoder": vocoder,
                            "Chroma": chroma,
                            "ch_name": f"S{channel + 1}_D{channel + 1} {chroma}",
                            "theta": sign * effect + intercept + rng.normal(0.0, 0.3),
                        }
                    )
    return pd.DataFrame(rows)


@pytest.fixture
def trial_csv(tmp_path, trial_df):
    path = tmp_path / "group_glm_channels.csv"
    trial_df.to_csv(path, index=False)
    return path


@pytest.fixture
def glm_config():
    return GLMConfig(
        rois={
            "LA_roi": [[1, 1], [1, 2]],
            "RA_roi": [[2, 1], [3, 3]],
        },
        resample_sfreq=1.0,
        high_pass_hz=0.01,
    )


def _set_locations(info, pairs):
    for ch, (source, detector) in zip(info["chs"], pairs):
        src, det = OPTODES[(source, detector)]
        ch["loc"][:3] = (src + det) / 2
        ch["loc"][3:6] = src
        ch["loc"][6:9] = det


def _annotations(duration_sec):
    onsets = np.arange(20.0, duration_sec - 30.0, 25.0)
    descriptions = [CONDITIONS[i % len(CONDITIONS)] for i in range(len(onsets))]
    return mne.Annotations(onsets, [5.0] * len(onsets), descriptions)


@pytest.fixture
def haemo_raw():
    """Hemoglobin Raw (1 Hz, 400 s) with three long pairs and one short pair."""
    rng = np.random.default_rng(11)
    sfreq, duration = 1.0, 400.0
    pairs = [(1, 1), (1, 2), (2, 1), (4, 4)]
    ch_names, ch_types, channel_pairs = [], [], []
    for source, detector in pairs:
        for chroma in ("hbo", "hbr"):
            ch_names.append(f"S{source}_D{detector} {chroma}")
            ch_types.append(chroma)
            channel_pairs.append((source, detector))

    n_times = int(sfreq * duration)
    data = rng.normal(0.0, 1e-7, (len(ch_names), n_times))
    info = mne.create_info(ch_names, sfreq, ch_types)
    _set_locations(info, channel_pairs)
    raw = mne.io.RawArray(data, info, verbose=False)
    raw.set_annotations(_annotations(duration))
    return raw


@pytest.fixture
def study_haemo_raw():
    """Hemoglobin Raw (1 Hz, 400 s) with one 30 mm pair in each study ROI."""
    rng = np.random.default_rng(5)
    sfreq, duration = 1.0, 400.0
    pairs = [(1, 1), (3, 3), (5, 5), (6, 6), (8, 8)]
    ch_names, ch_types, positions = [], [], []
    for i, (source, detector) in enumerate(pairs):
        x = -0.06 + 0.03 * i
        src, det = np.array([x, 0.02, 0.05]), np.array([x, -0.01, 0.05])
        for chroma in ("hbo", "hbr"):
            ch_names.append(f"S{source}_D{detector} {chroma}")
            ch_types.append(chroma)
            positions.append((src, det))

    data = rng.normal(0.0, 1e-7, (len(ch_names), int(sfreq * duration)))
    info = mne.create_info(ch_names, sfreq, ch_types)
    for ch, (src, det) in zip(info["chs"], positions):
        ch["loc"][:3] = (src + det) / 2
        ch["loc"][3:6] = src
        ch["loc"][6:9] = det
    raw = mne.io.RawArray(data, info, verbose=False)
    raw.set_annotations(_annotations(duration))
    return raw


@pytest.fixture
def intensity_raw():
    """Continuous-wave intensity Raw (5 Hz, 300 s), two wavelengths per pair."""
    rng = np.random.default_rng(3)
    sfreq, duration = 5.0, 300.0
    pairs = [(1, 1), (1, 2), (2, 1), (4, 4)]
    ch_names, channel_pairs, wavelengths = [], [], []
    for source, detector in pairs:
        for wavelength in (760, 850):
            ch_names.append(f"S{source}_D{detector} {wavelength}")
            channel_pairs.append((source, detector))
            wavelengths.append(wavelength)

    n_times = int(sfreq * duration)
    data = 1.0 + 0.01 * rng.standard_normal((len(ch_names), n_times))
    info = mne.create_info(ch_names, sfreq, "fnirs_cw_amplitude")
    _set_locations(info, channel_pairs)
    for ch, wavelength in zip(info["chs"], wavelengths):
        ch["loc"][9] = wavelength
    raw = mne.io.RawArray(data, info, verbose=False)
    raw.set_annotations(
        mne.Annotations(
            [20.0, 60.0, 100.0, 140.0, 180.0, 220.0],
            [1.0] * 6,
            ["1.0", "3.0", "2.0", "4.0", "15.0", "1.0"],
        )
    )
    return raw
