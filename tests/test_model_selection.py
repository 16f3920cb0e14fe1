import json

import numpy as np
import pandas as pd
import pytest

import model_selection
from fit_glmm import GLMMFitError, ModelSettings
from model_selection import (
    add_selection_columns,
    akaike_weights,
    best_models,
    export_json,
    lr_test,
    process_recovery,
    run_sweep,
)


def test_lr_test_closed_form():
    stat, p, dfd = lr_test(-10.0, 2, -5.0, 4)
    assert stat == pytest.approx(10.0)
    assert dfd == 2.0
    # chi2 with 2 df: sf(x) = exp(-x / 2)
    assert p == pytest.approx(np.exp(-5.0))


def test_lr_test_without_extra_parameters():
    _, p, dfd = lr_test(-5.0, 4, -5.0, 4)
    assert dfd == 0.0
    assert np.isnan(p)


def test_lr_test_negative_statistic_has_no_p_value():
    stat, p, dfd = lr_test(-1159.30, 3, -1162.12, 10)
    assert stat == pytest.approx(-5.64)
    assert dfd == 7.0
    assert np.isnan(p)


def test_akaike_weights():
    w = akaike_weights([10.0, 12.0, np.nan])
    assert np.isnan(w[2])
    assert w[0] + w[1] == pytest.approx(1.0)
    assert w[0] / w[1] == pytest.approx(np.exp(1.0))
    assert np.isnan(akaike_weights([np.nan, np.inf])).all()


def _rows(ic, family="gaussian", criterion="AIC"):
    names = ["species_only", "env_quadratic", "full"]
    return pd.DataFrame({
        "scenario": "niche",
        "model": names,
        "process": ["neutral", "niche", "niche"],
        "family": family,
        "criterion": criterion,
        "IC": ic,
        "llf": [-50.0, -45.0, -40.0],
        "k_params": [3, 5, 9],
        "marginal_r2": [0.0, 0.3, 0.5],
        "conditional_r2": [0.4, 0.6, 0.8],
        "niche_share": [0.0, 0.4, 0.7],
    })


def test_selection_columns_relative_to_full():
    df = add_selection_columns(_rows([106.0, 100.0, 98.0]))

    assert df["deltaIC"].tolist() == [8.0, 2.0, 0.0]
    assert df["IC_weight"].sum() == pytest.approx(1.0)
    assert df["dIC_vs_full"].tolist() == [8.0, 2.0, 0.0]
    assert df.loc[2, "evidence_ratio_vs_full"] == pytest.approx(1.0)

    assert df.loc[0, "LR_vs_full"] == pytest.approx(20.0)
    assert df.loc[0, "df_vs_full"] == 6.0
    assert df.loc[1, "LR_vs_full"] == pytest.approx(10.0)
    assert np.isnan(df.loc[2, "LR_vs_full"])


def test_negative_lr_statistic_is_flagged(caplog):
    rows = _rows([106.0, 100.0, 98.0])
    rows["llf"] = [-38.0, -45.0, -40.0]
    with caplog.at_level("WARNING", logger="model_selection"):
        df = add_selection_columns(rows)

    assert df.loc[0, "LR_vs_full"] == pytest.approx(-4.0)
    assert np.isnan(df.loc[0, "p_vs_full"])
    assert df["lr_invalid"].tolist() == [True, False, False]
    assert df.loc[1, "p_vs_full"] < 1.0
    assert "species_only vs full" in caplog.text


def test_no_lr_test_for_bayesian_fits():
    df = add_selection_columns(_rows([106.0, 100.0, 98.0], family="poisson", criterion="-2ELBO"))
    assert df["LR_vs_full"].isna().all()
    assert df["dIC_vs_full"].notna().all()


def test_selection_without_full_model():
    df = add_selection_columns(_rows([106.0, 100.0, 98.0]).iloc[:2])
    assert df["dIC_vs_full"].isna().all()
    assert df["deltaIC"].tolist() == [6.0, 0.0]


def test_best_models_and_recovery():
    sel = pd.concat([
        add_selection_columns(_rows([106.0, 100.0, 98.0])),
        add_selection_columns(_rows([90.0, 95.0, 97.0]).assign(scenario="neutral")),
    ], ignore_index=True)

    best = best_models(sel).set_index("scenario")
    assert best.loc["niche", "model"] == "full"
    assert best.loc["neutral", "model"] == "species_only"

    rec = process_recovery(sel, {"niche": "niche", "neutral": "niche"}).set_index("scenario")
    assert bool(rec.loc["niche", "recovered"]) is True
    assert bool(rec.loc["neutral", "recovered"]) is False
    assert rec.loc["niche", "full_niche_share"] == pytest.approx(0.7)


def test_best_models_falls_back_to_marginal_r2():
    sel = _rows([np.nan, np.nan, np.nan])
    best = best_models(sel)
    assert best.shape[0] == 1
    assert best.iloc[0]["model"] == "full"


def test_run_sweep_gaussian(synthetic_frame, tmp_path):
    settings = ModelSettings(family="gaussian", optimizers=("lbfgs", "bfgs"))
    sweep = run_sweep({"toy": synthetic_frame}, settings, model_names=["species_only", "env_quadratic"])

    sel = sweep.selection
    assert sorted(sel["model"]) == ["env_quadratic", "species_only"]
    assert sel["criterion"].eq("AIC").all()
    assert sel["IC"].notna().all()
    assert sel["deltaIC"].min() == 0.0
    assert {"marginal_r2", "conditional_r2", "share_species", "niche_share"} <= set(sel.columns)
    assert sel.loc[sel["model"] == "species_only", "marginal_r2"].iloc[0] == pytest.approx(0.0)
    assert sel.loc[sel["model"] == "env_quadratic", "marginal_r2"].iloc[0] >= 0.0
    assert ((sel["conditional_r2"] >= 0) & (sel["conditional_r2"] <= 1)).all()

    assert set(sweep.fits) == {("toy", "species_only"), ("toy", "env_quadratic")}
    assert "residual" in sweep.variance_components["component"].tolist()
    assert "Intercept" in sweep.fixed_effects["term"].tolist()

    rec = process_recovery(sel, {"toy": "niche"})
    path = tmp_path / "summary.json"
    export_json(sweep, rec, settings, str(path))
    data = json.loads(path.read_text())
    assert data["meta"]["criterion"] == "AIC"
    assert data["meta"]["bayes_method"] is None
    assert "best_fit" in data["scenarios"]["toy"]


def test_run_sweep_records_failed_fits(monkeypatch, synthetic_frame):
    def failing(spec, frame, settings):
        raise GLMMFitError("All optimizers failed for model '{}'".format(spec.name))

    monkeypatch.setattr(model_selection, "fit_model", failing)
    settings = ModelSettings(family="gaussian")
    sweep = run_sweep({"toy": synthetic_frame}, settings, model_names=["species_only", "full"])

    sel = sweep.selection
    assert sel.shape[0] == 2
    assert sel["error"].str.contains("All optimizers failed").all()
    assert sel["IC"].isna().all()
    assert sweep.fits == {}
    assert sweep.fixed_effects.empty
    assert best_models(sel).empty
