"""
Tests for the linear mixed-effects model module.

The synthetic trial table is balanced (every subject contributes the same
number of observations to every cell), so the fixed effects of the
cell-means model equal the raw cell means.
"""

import numpy as np
import pytest

from elliptical_speech.config import MixedModelConfig
from elliptical_speech.factors import FactorLevelError
from elliptical_speech.mixed_model import (
    fit_mixed_model,
    format_lme4_formula,
    load_trial_table,
    prepare_model_frame,
    split_by_chromophore,
    summarize_mixed_model,
)


@pytest.fixture
def hbo_frame(trial_df, mixed_model_config):
    return prepare_model_frame(trial_df, mixed_model_config, "hbo")


@pytest.fixture
def hbo_fit(hbo_frame, mixed_model_config):
    return fit_mixed_model(hbo_frame, mixed_model_config, "hbo")


def test_lme4_formula(mixed_model_config):
    assert (
        format_lme4_formula(mixed_model_config)
        == "theta ~ -1 + ROI:Condition:Vocoder + (1 | ID)"
    )


def test_load_trial_table_missing_file(tmp_path, mixed_model_config):
    with pytest.raises(FileNotFoundError):
        load_trial_table(tmp_path / "missing.csv", mixed_model_config)


def test_load_trial_table_missing_column(tmp_path, trial_df, mixed_model_config):
    path = tmp_path / "trials.csv"
    trial_df.drop(columns=["Vocoder"]).to_csv(path, index=False)
    with pytest.raises(ValueError, match="Vocoder"):
        load_trial_table(path, mixed_model_config)


def test_load_trial_table(trial_csv, mixed_model_config, trial_df):
    df = load_trial_table(trial_csv, mixed_model_config)
    assert len(df) == len(trial_df)


def test_prepare_model_frame_filters_and_relevels(hbo_frame, trial_df):
    expected_rows = len(
        trial_df[trial_df["Condition"].isin(["ee", "ii"]) & (trial_df["Chroma"] == "hbo")]
    )
    assert len(hbo_frame) == expected_rows
    assert set(hbo_frame["Chroma"]) == {"hbo"}
    assert list(hbo_frame["Condition"].cat.categories) == ["ii", "ee"]
    assert list(hbo_frame["Vocoder"].cat.categories) == [16, 4]
    assert hbo_frame["ROI"].cat.categories[0] == "DLPFC_roi"


def test_filtering_keeps_measurements_unchanged(hbo_frame, trial_df):
    original = trial_df[
        trial_df["Condition"].isin(["ee", "ii"]) & (trial_df["Chroma"] == "hbo")
    ]
    np.testing.assert_array_equal(hbo_frame["theta"].to_numpy(), original["theta"].to_numpy())


def test_prepare_model_frame_missing_reference_level(trial_df):
    config = MixedModelConfig(reference_levels={"ROI": "Occipital_roi"})
    with pytest.raises(FactorLevelError, match="Occipital_roi"):
        prepare_model_frame(trial_df, config, "hbo")


def test_split_by_chromophore_skips_absent(trial_df, mixed_model_config):
    frames = split_by_chromophore(trial_df[trial_df["Chroma"] == "hbo"], mixed_model_config)
    assert list(frames) == ["hbo"]


def test_fit_has_one_fixed_effect_per_cell(hbo_fit):
    assert len(hbo_fit.fe_names) == 20
    assert hbo_fit.fe_cov.shape == (20, 20)
    assert hbo_fit.result.converged


def test_reference_level_is_first_fixed_effect(hbo_fit):
    assert hbo_fit.fe_names[0] == "ROI[DLPFC_roi]:Condition[ii]:Vocoder[16]"


def test_fixed_effects_equal_cell_means(hbo_fit, hbo_frame):
    cell_means = (
        hbo_frame.assign(
            ROI=hbo_frame["ROI"].astype(str),
            Condition=hbo_frame["Condition"].astype(str),
            Vocoder=hbo_frame["Vocoder"].astype(str),
        )
        .groupby(["ROI", "Condition", "Vocoder"])["theta"]
        .mean()
    )
    for name, value in zip(hbo_fit.fe_names, hbo_fit.fe_params):
        roi, condition, vocoder = (part.split("[")[1].rstrip("]") for part in name.split(":"))
        assert value == pytest.approx(cell_means[(roi, condition, vocoder)], abs=1e-6)


def test_fit_is_deterministic(hbo_frame, mixed_model_config, hbo_fit):
    refit = fit_mixed_model(hbo_frame, mixed_model_config, "hbo")
    np.testing.assert_array_equal(refit.fe_params, hbo_fit.fe_params)


def test_fit_empty_frame_raises(hbo_frame, mixed_model_config):
    with pytest.raises(ValueError, match="No rows"):
        fit_mixed_model(hbo_frame.iloc[0:0], mixed_model_config, "hbo")


def test_summary(hbo_fit, mixed_model_config):
    summary = summarize_mixed_model(hbo_fit, mixed_model_config)

    assert summary.chromophore == "hbo"
    assert summary.n_groups == 6
    assert summary.n_obs == 240
    assert summary.optimizer in mixed_model_config.optimizers
    assert summary.group_variance >= 0.0
    assert summary.residual_variance > 0.0
    assert list(summary.fixed_effects) == hbo_fit.fe_names
    assert all(np.isfinite(list(summary.standard_errors.values())))


def test_summary_reference_levels(hbo_fit, mixed_model_config):
    summary = summarize_mixed_model(hbo_fit, mixed_model_config)
    assert summary.reference_levels == {
        "Vocoder": "16",
        "Condition": "ii",
        "ROI": "DLPFC_roi",
    }


def test_group_intercepts_absorb_subject_offsets(trial_df, mixed_model_config):
    shifted = trial_df.copy()
    shifted.loc[shifted["ID"] == "01", "theta"] += 100.0
    frame = prepare_model_frame(shifted, mixed_model_config, "hbo")
    summary = summarize_mixed_model(
        fit_mixed_model(frame, mixed_model_config, "hbo"), mixed_model_config
    )
    assert summary.group_variance > 100.0
