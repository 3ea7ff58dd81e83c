"""
Import checks for the package and every submodule.
"""

import importlib

import pytest

import elliptical_speech

MODULES = [
    "bids_utils",
    "config",
    "contrasts",
    "factors",
    "fnirs_glm",
    "mixed_model",
    "pipeline",
    "reporting",
    "survey",
    "visualization",
]


@pytest.mark.parametrize("name", MODULES)
def test_submodule_imports(name):
    module = importlib.import_module(f"elliptical_speech.{name}")
    assert module.__name__ == f"elliptical_speech.{name}"


def test_public_api_is_exported():
    for name in elliptical_speech.__all__:
        assert hasattr(elliptical_speech, name), name
    assert elliptical_speech.__version__ == "0.1.0"


def test_glm_results_type_matches_run_glm(haemo_raw, glm_config):
    from mne_nirs.statistics import RegressionResults

    from elliptical_speech.fnirs_glm import (
        build_design_matrix,
        fit_channel_glm,
        split_short_long_channels,
    )

    raw_short, raw_long = split_short_long_channels(haemo_raw, glm_config)
    design_matrix = build_design_matrix(raw_long, raw_short, glm_config)
    assert isinstance(fit_channel_glm(raw_long, design_matrix, "ols"), RegressionResults)
