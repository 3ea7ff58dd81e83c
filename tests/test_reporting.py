"""
Tests for result records and their TSV/JSON/CSV writers.
"""

import json

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from elliptical_speech.reporting import (
    GLM_DATA_DICTIONARY,
    AnovaResult,
    ContrastResult,
    MarginalMean,
    MixedModelSummary,
    anova_table,
    contrast_table,
    export_csv,
    fixed_effects_table,
    marginal_means_table,
    save_figure,
    save_numerical_results,
    write_table,
)


def _anova(variable="Hard"):
    return AnovaResult(
        variable=variable,
        df_between=2.0,
        df_within=21.0,
        sum_sq_between=10.0,
        sum_sq_within=42.0,
        mean_sq_between=5.0,
        mean_sq_within=2.0,
        f_value=2.5,
        p_value=0.106,
        n_obs=24,
    )


def test_save_numerical_results_converts_numpy_types(tmp_path):
    results = {
        "n_obs": np.int64(240),
        "converged": np.bool_(True),
        "estimate": np.float32(0.5),
        "weights": np.array([1.0, -1.0]),
        "path": tmp_path / "out",
        "nested": [{"level": np.int64(16)}],
    }
    json_path = save_numerical_results(results, tmp_path / "sub" / "metrics.json")

    loaded = json.loads(json_path.read_text())
    assert loaded == {
        "n_obs": 240,
        "converged": True,
        "estimate": 0.5,
        "weights": [1.0, -1.0],
        "path": str(tmp_path / "out"),
        "nested": [{"level": 16}],
    }


def test_save_numerical_results_accepts_dataclasses(tmp_path):
    json_path = save_numerical_results(_anova(), tmp_path / "anova.json")
    assert json.loads(json_path.read_text())["variable"] == "Hard"


def test_write_table_filters_dictionary_to_present_columns(tmp_path):
    df = pd.DataFrame({"ID": ["01"], "theta": [1.5e-7], "extra": [np.nan]})
    tsv_path, json_path = write_table(df, tmp_path / "glm.tsv", GLM_DATA_DICTIONARY)

    assert json_path == tmp_path / "glm.json"
    assert set(json.loads(json_path.read_text())) == {"ID", "theta"}
    written = pd.read_csv(tsv_path, sep="\t", dtype={"ID": str})
    assert written.loc[0, "ID"] == "01"
    assert "n/a" in tsv_path.read_text()


def test_write_table_without_dictionary(tmp_path):
    _, json_path = write_table(pd.DataFrame({"a": [1]}), tmp_path / "a.tsv")
    assert json_path is None
    assert not (tmp_path / "a.json").exists()


def test_export_csv(tmp_path):
    df = pd.DataFrame({"ID": ["01", "02"], "theta": [0.1, 0.2]})
    path = export_csv(df, tmp_path / "nested" / "group.csv")
    pd.testing.assert_frame_equal(pd.read_csv(path, dtype={"ID": str}), df)


def test_save_figure_closes_figure(tmp_path):
    fig, ax = plt.subplots()
    ax.plot([0, 1], [0, 1])
    path = save_figure(fig, tmp_path / "fig.png", dpi=50)

    assert path.exists()
    assert not plt.fignum_exists(fig.number)


def test_anova_table():
    table = anova_table([_anova("Hard"), _anova("Success")])
    assert list(table["variable"]) == ["Hard", "Success"]
    assert "f_value" in table.columns


def test_fixed_effects_table_keeps_term_order():
    summary = MixedModelSummary(
        chromophore="hbo",
        formula="theta ~ -1 + ROI:Condition:Vocoder + (1 | ID)",
        n_obs=240,
        n_groups=6,
        converged=True,
        optimizer="powell",
        reference_levels={"Vocoder": "16"},
        fixed_effects={"b": 2.0, "a": 1.0},
        standard_errors={"a": 0.1, "b": 0.2},
        p_values={"a": 0.01, "b": 0.02},
        group_variance=0.5,
        residual_variance=0.1,
        log_likelihood=-10.0,
    )
    table = fixed_effects_table(summary)
    assert list(table["term"]) == ["b", "a"]
    assert list(table["se"]) == [0.2, 0.1]


def test_marginal_means_table_puts_factors_first():
    means = [
        MarginalMean(
            levels={"Condition": "ii", "ROI": "LA_roi", "Vocoder": "16"},
            estimate=1.0,
            se=0.1,
            ci_lower=0.8,
            ci_upper=1.2,
        )
    ]
    table = marginal_means_table(means)
    assert list(table.columns) == [
        "Condition",
        "ROI",
        "Vocoder",
        "estimate",
        "se",
        "ci_lower",
        "ci_upper",
    ]


def test_contrast_table():
    results = [ContrastResult("ii_ee_LA_16", 1.0, 0.2, 5.0, 1e-6, 2e-5, True)]
    table = contrast_table(results)
    assert table.loc[0, "name"] == "ii_ee_LA_16"
    assert bool(table.loc[0, "significant"])
