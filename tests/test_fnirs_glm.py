"""
Tests for the fNIRS first-level GLM module.

Uses synthetic Raw objects with realistic optode geometry (30 mm long
channels, one 8 mm short channel).
"""

import numpy as np
import pandas as pd
import pytest

from elliptical_speech.config import AnalysisConfig, GLMConfig
from elliptical_speech.contrasts import build_emm_grid
from elliptical_speech.fnirs_glm import (
    TRIAL_TABLE_COLUMNS,
    build_design_matrix,
    channel_coefficients,
    convert_to_hemoglobin,
    convert_to_optical_density,
    fit_channel_glm,
    mark_bad_channels_by_sci,
    prepare_annotations,
    preprocess_recording,
    read_recording,
    roi_coefficients,
    split_condition_column,
    split_short_long_channels,
)
from elliptical_speech.mixed_model import prepare_model_frame

EVENT_MAP = {"1.0": "ee_16", "2.0": "ee_4", "3.0": "ii_16", "4.0": "ii_4"}


@pytest.fixture
def fitted_glm(haemo_raw, glm_config):
    raw_short, raw_long = split_short_long_channels(haemo_raw, glm_config)
    design_matrix = build_design_matrix(raw_long, raw_short, glm_config)
    return fit_channel_glm(raw_long, design_matrix, "ar1")


def test_read_recording_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_recording(tmp_path / "sub-01_task-ellipticalspeech_nirs.snirf")


def test_prepare_annotations_renames_drops_and_sets_duration(intensity_raw):
    config = GLMConfig(event_map=EVENT_MAP, stim_duration_sec=5.0)
    prepare_annotations(intensity_raw, config)

    descriptions = list(intensity_raw.annotations.description)
    assert descriptions == ["ee_16", "ii_16", "ee_4", "ii_4", "ee_16"]
    assert np.allclose(intensity_raw.annotations.duration, 5.0)


def test_prepare_annotations_with_default_event_map(intensity_raw):
    prepare_annotations(intensity_raw, GLMConfig())
    assert list(intensity_raw.annotations.description) == [
        "ee_16",
        "ii_16",
        "ee_4",
        "ii_4",
        "ee_16",
    ]


def test_prepare_annotations_without_matching_events_raises(intensity_raw):
    config = GLMConfig(event_map={"9.0": "ee_16"})
    with pytest.raises(ValueError, match="No annotations match"):
        prepare_annotations(intensity_raw, config)


def test_optical_density_requires_intensity(haemo_raw):
    with pytest.raises(ValueError, match="fnirs_cw_amplitude"):
        convert_to_optical_density(haemo_raw)


def test_hemoglobin_requires_optical_density(intensity_raw):
    with pytest.raises(ValueError, match="fnirs_od"):
        convert_to_hemoglobin(intensity_raw)


def test_preprocess_recording_produces_resampled_hemoglobin(intensity_raw):
    config = GLMConfig(event_map=EVENT_MAP, resample_sfreq=0.6)
    prepare_annotations(intensity_raw, config)
    raw_haemo = preprocess_recording(intensity_raw, config)

    assert set(raw_haemo.get_channel_types()) == {"hbo", "hbr"}
    assert len(raw_haemo.ch_names) == len(intensity_raw.ch_names)
    assert raw_haemo.info["sfreq"] == pytest.approx(0.6)
    assert len(raw_haemo.annotations) == 5


def test_sci_screening_disabled_marks_nothing(intensity_raw):
    raw_od = convert_to_optical_density(intensity_raw)
    assert mark_bad_channels_by_sci(raw_od, None) == []
    assert raw_od.info["bads"] == []


def test_sci_screening_marks_uncoupled_channels(intensity_raw):
    # Independent noise on the two wavelengths has no cardiac coupling
    raw_od = convert_to_optical_density(intensity_raw)
    bads = mark_bad_channels_by_sci(raw_od, 0.9)
    assert set(bads) == set(raw_od.ch_names)
    assert set(raw_od.info["bads"]) == set(raw_od.ch_names)


def test_split_short_long_channels(haemo_raw, glm_config):
    raw_short, raw_long = split_short_long_channels(haemo_raw, glm_config)

    assert raw_short.ch_names == ["S4_D4 hbo", "S4_D4 hbr"]
    assert len(raw_long.ch_names) == 6
    assert all(not name.startswith("S4_D4") for name in raw_long.ch_names)


def test_split_without_short_channels_returns_none(haemo_raw, glm_config):
    raw = haemo_raw.copy().drop_channels(["S4_D4 hbo", "S4_D4 hbr"])
    raw_short, raw_long = split_short_long_channels(raw, glm_config)
    assert raw_short is None
    assert len(raw_long.ch_names) == 6


def test_design_matrix_has_condition_and_short_regressors(haemo_raw, glm_config):
    raw_short, raw_long = split_short_long_channels(haemo_raw, glm_config)
    design_matrix = build_design_matrix(raw_long, raw_short, glm_config)

    for condition in glm_config.conditions:
        assert condition in design_matrix.columns
    assert "ShortHbO" in design_matrix.columns
    assert "ShortHbR" in design_matrix.columns
    assert len(design_matrix) == raw_long.n_times

    expected = raw_short.copy().pick(picks="hbo").get_data().mean(axis=0)
    np.testing.assert_allclose(design_matrix["ShortHbO"].to_numpy(), expected)


def test_design_matrix_without_short_channels(haemo_raw, glm_config):
    _, raw_long = split_short_long_channels(haemo_raw, glm_config)
    design_matrix = build_design_matrix(raw_long, None, glm_config)

    assert "ShortHbO" not in design_matrix.columns
    assert "ee_16" in design_matrix.columns


def test_split_condition_column(glm_config):
    df = pd.DataFrame({"Condition": ["ee_16", "ii_4"], "theta": [1.0, 2.0]})
    out = split_condition_column(df, glm_config)
    assert list(out["Condition"]) == ["ee", "ii"]
    assert list(out["Vocoder"]) == ["16", "4"]
    assert list(df["Condition"]) == ["ee_16", "ii_4"]


def test_channel_coefficients_schema(fitted_glm, glm_config):
    table = channel_coefficients(fitted_glm, glm_config, "01")

    assert list(table.columns) == TRIAL_TABLE_COLUMNS
    # 3 long pairs x 2 chromophores x 4 conditions
    assert len(table) == 24
    assert set(table["ID"]) == {"01"}
    assert set(table["Condition"]) == {"ee", "ii"}
    assert set(table["Vocoder"]) == {"16", "4"}
    assert set(table["Chroma"]) == {"hbo", "hbr"}
    roi_of = dict(zip(table["ch_name"], table["ROI"]))
    assert roi_of["S1_D1 hbo"] == "LA_roi"
    assert roi_of["S1_D2 hbr"] == "LA_roi"
    assert roi_of["S2_D1 hbo"] == "RA_roi"


def test_channel_coefficients_drops_channels_outside_rois(fitted_glm):
    config = GLMConfig(rois={"LA_roi": [[1, 1]]})
    table = channel_coefficients(fitted_glm, config, "01")

    assert set(table["ROI"]) == {"LA_roi"}
    assert set(table["ch_name"]) == {"S1_D1 hbo", "S1_D1 hbr"}


def test_roi_coefficients_schema(fitted_glm, glm_config):
    table = roi_coefficients(fitted_glm, glm_config, "02")

    assert set(table["ROI"]) == {"LA_roi", "RA_roi"}
    assert set(table["ID"]) == {"02"}
    assert set(table["Condition"]) == {"ee", "ii"}
    assert {"theta", "se", "Vocoder"} <= set(table.columns)


def test_roi_coefficients_without_matching_pairs_raises(fitted_glm):
    config = GLMConfig(rois={"PM_roi": [[8, 8]]})
    with pytest.raises(ValueError, match="no configured ROI"):
        roi_coefficients(fitted_glm, config, "01")


def test_default_channel_table_feeds_default_mixed_model(study_haemo_raw):
    config = AnalysisConfig.default()
    raw_short, raw_long = split_short_long_channels(study_haemo_raw, config.glm)
    design_matrix = build_design_matrix(raw_long, raw_short, config.glm)
    glm_est = fit_channel_glm(raw_long, design_matrix, config.glm.noise_model)
    table = channel_coefficients(glm_est, config.glm, "01")

    frame = prepare_model_frame(table, config.mixed_model, "hbo")

    assert len(frame) == 20
    assert list(frame["ROI"].cat.categories) == [
        "DLPFC_roi",
        "LA_roi",
        "MFG_roi",
        "PM_roi",
        "RA_roi",
    ]
    assert list(frame["Condition"].cat.categories) == ["ii", "ee"]
    assert [str(v) for v in frame["Vocoder"].cat.categories] == ["16", "4"]
    assert len(build_emm_grid(frame, config.mixed_model.emm_factors)) == 20
