#!/usr/bin/env python3
"""
Scenario x model sweep: fit, decompose, rank.

For each scenario (simulated community) and each of the six model shapes:
- fit the GLMM (fit_glmm.fit_model)
- marginal / conditional R² and variance shares (r2_decomposition.decompose)
- information criterion (AIC for gaussian ML fits, -2*ELBO for Bayesian fits)

Within each scenario:
    deltaIC      = IC - min(IC)
    IC_weight    = exp(-deltaIC / 2) / sum(...)
    dIC_vs_full  = IC - IC(full)
    LR_vs_full   = likelihood-ratio test against `full` (gaussian ML fits only;
                   variance components on the boundary make it conservative)

Process recovery: the best-ranked model is classed niche/neutral (glmm_formulas)
and compared with the process the scenario was simulated under.
"""

import json
import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from scipy.stats import chi2

from fit_glmm import GLMMFitError, ModelSettings, fit_model, fixed_effects_table, variance_components_table
from glmm_formulas import FULL_MODEL, build_formula, get_model
from r2_decomposition import decompose


LOGGER = logging.getLogger(__name__)

TOPK_PRINT = 6


@dataclass
class SweepResult:
    selection: pd.DataFrame
    fixed_effects: pd.DataFrame
    variance_components: pd.DataFrame
    fits: dict = field(default_factory=dict)


# ----------------------------
# Criteria
# ----------------------------
def lr_test(llf_small, k_small, llf_big, k_big):
    lr_stat = 2.0 * (llf_big - llf_small)
    df_diff = int(k_big - k_small)
    # a negative statistic means the larger fit stopped short of its optimum
    p = chi2.sf(lr_stat, df_diff) if df_diff > 0 and lr_stat >= 0 else np.nan
    return float(lr_stat), float(p), float(df_diff)


def akaike_weights(ic):
    ic = np.asarray(ic, dtype=float)
    weights = np.full(ic.shape, np.nan)
    ok = np.isfinite(ic)
    if not ok.any():
        return weights
    delta = ic[ok] - ic[ok].min()
    w = np.exp(-0.5 * delta)
    weights[ok] = w / w.sum()
    return weights


# ----------------------------
# Sweep
# ----------------------------
def _fit_row(scenario, spec, fit):
    return {
        "scenario": scenario,
        "model": spec.name,
        "process": spec.process,
        "family": fit.family,
        "formula": fit.formula,
        "random_terms": "+".join(spec.random),
        "optimizer": fit.optimizer,
        "converged": bool(fit.converged),
        "n_warnings": len(fit.warnings),
        "warnings": " | ".join(sorted(set(fit.warnings))),
        "error": "",
        "n": fit.n_obs,
        "k_params": fit.k_params,
        "llf": fit.llf,
        "criterion": fit.criterion,
        "IC": fit.ic,
    }


def _failed_row(scenario, spec, settings, exc):
    return {
        "scenario": scenario,
        "model": spec.name,
        "process": spec.process,
        "family": settings.family,
        "formula": build_formula(spec, settings.family),
        "random_terms": "+".join(spec.random),
        "optimizer": "",
        "converged": False,
        "n_warnings": 0,
        "warnings": "",
        "error": str(exc),
        "n": np.nan,
        "k_params": np.nan,
        "llf": np.nan,
        "criterion": "",
        "IC": np.nan,
    }


def add_selection_columns(scen_df: pd.DataFrame) -> pd.DataFrame:
    df = scen_df.copy()
    ic = df["IC"].astype(float)

    df["deltaIC"] = ic - ic.min()
    df["IC_weight"] = akaike_weights(ic.to_numpy())

    full = df[df["model"] == FULL_MODEL]
    if full.shape[0] == 1:
        full_row = full.iloc[0]
        df["IC_full"] = float(full_row["IC"])
        df["dIC_vs_full"] = ic - float(full_row["IC"])
        df["evidence_ratio_vs_full"] = np.exp(-0.5 * df["dIC_vs_full"])

        lr_cols = {"LR_vs_full": [], "p_vs_full": [], "df_vs_full": [], "lr_invalid": []}
        for _, r in df.iterrows():
            if r["family"] == "gaussian" and r["criterion"] == "AIC" and r["model"] != FULL_MODEL \
                    and np.isfinite(r["llf"]) and np.isfinite(full_row["llf"]):
                stat, p, dfd = lr_test(float(r["llf"]), int(r["k_params"]),
                                       float(full_row["llf"]), int(full_row["k_params"]))
            else:
                stat, p, dfd = np.nan, np.nan, np.nan
            invalid = bool(stat < 0)
            if invalid:
                LOGGER.warning("Scenario %s: %s vs %s has a negative LR statistic (%.2f); "
                               "the %s fit is not at its ML optimum, p-value set to NaN",
                               r.get("scenario", ""), r["model"], FULL_MODEL, stat, FULL_MODEL)
            lr_cols["LR_vs_full"].append(stat)
            lr_cols["p_vs_full"].append(p)
            lr_cols["df_vs_full"].append(dfd)
            lr_cols["lr_invalid"].append(invalid)
        for k, v in lr_cols.items():
            df[k] = v
    else:
        for col in ["IC_full", "dIC_vs_full", "evidence_ratio_vs_full", "LR_vs_full", "p_vs_full", "df_vs_full"]:
            df[col] = np.nan
        df["lr_invalid"] = False

    return df


def run_sweep(frames: dict, settings: ModelSettings, model_names=None) -> SweepResult:
    """
    frames: scenario name -> prepared model frame (simulate_metacommunity.prepare_model_frame)
    """
    model_names = list(model_names or settings.models)
    specs = [get_model(m) for m in model_names]

    rows = []
    fe_tables = []
    vc_tables = []
    fits = {}

    for scenario, frame in frames.items():
        LOGGER.info("Scenario %s: fitting %d models (%s family)", scenario, len(specs), settings.family)
        scen_rows = []

        for spec in specs:
            try:
                fit = fit_model(spec, frame, settings)
            except GLMMFitError as exc:
                LOGGER.error("Scenario %s, model %s: %s", scenario, spec.name, exc)
                scen_rows.append(_failed_row(scenario, spec, settings, exc))
                continue

            fits[(scenario, spec.name)] = fit

            row = _fit_row(scenario, spec, fit)
            r2 = decompose(fit, frame)
            for k, v in r2.items():
                if k not in ("model", "family"):
                    row[k] = v
            scen_rows.append(row)

            fe = fixed_effects_table(fit)
            fe.insert(0, "scenario", scenario)
            fe_tables.append(fe)

            vc = variance_components_table(fit)
            vc.insert(0, "scenario", scenario)
            vc_tables.append(vc)

        rows.append(add_selection_columns(pd.DataFrame(scen_rows)))

    selection = pd.concat(rows, ignore_index=True) if rows else pd.DataFrame()
    if not selection.empty:
        selection = selection.sort_values(["scenario", "IC", "model"], na_position="last").reset_index(drop=True)

    fixed_effects = pd.concat(fe_tables, ignore_index=True) if fe_tables else pd.DataFrame()
    variance_components = pd.concat(vc_tables, ignore_index=True) if vc_tables else pd.DataFrame()

    return SweepResult(selection=selection, fixed_effects=fixed_effects,
                       variance_components=variance_components, fits=fits)


# ----------------------------
# Ranking + recovery
# ----------------------------
def best_models(selection: pd.DataFrame) -> pd.DataFrame:
    """Lowest IC per scenario; scenarios without any finite IC fall back to highest marginal R²."""
    best = []
    for scenario, sub in selection.groupby("scenario", sort=False):
        ok = sub[np.isfinite(sub["IC"].astype(float))]
        if ok.shape[0] > 0:
            best.append(ok.sort_values("IC").iloc[0])
            continue
        r2 = sub.dropna(subset=["marginal_r2"]) if "marginal_r2" in sub.columns else sub.iloc[0:0]
        if r2.shape[0] > 0:
            best.append(r2.sort_values("marginal_r2", ascending=False).iloc[0])
        else:
            LOGGER.warning("Scenario %s: no usable fits to rank", scenario)
    return pd.DataFrame(best).reset_index(drop=True)


def process_recovery(selection: pd.DataFrame, expected: dict) -> pd.DataFrame:
    best = best_models(selection)
    rows = []
    for _, b in best.iterrows():
        scenario = b["scenario"]
        full = selection[(selection["scenario"] == scenario) & (selection["model"] == FULL_MODEL)]
        full_niche = float(full.iloc[0]["niche_share"]) if full.shape[0] and "niche_share" in full.columns else np.nan

        exp_process = expected.get(scenario, "")
        rows.append({
            "scenario": scenario,
            "expected_process": exp_process,
            "best_model": b["model"],
            "best_process": b["process"],
            "recovered": bool(exp_process == b["process"]) if exp_process else np.nan,
            "best_IC_weight": float(b.get("IC_weight", np.nan)),
            "best_marginal_r2": float(b.get("marginal_r2", np.nan)),
            "best_conditional_r2": float(b.get("conditional_r2", np.nan)),
            "full_niche_share": full_niche,
        })
    return pd.DataFrame(rows)


# ----------------------------
# Printing summaries
# ----------------------------
def print_top_models(sel, scenario, topk=TOPK_PRINT):
    print("\n{}".format(scenario))
    sub = sel[sel["scenario"] == scenario].sort_values("IC").head(topk)
    cols = [
        "model", "process", "criterion", "IC", "deltaIC", "IC_weight",
        "k_params", "converged", "dIC_vs_full", "p_vs_full",
    ]
    cols = [c for c in cols if c in sub.columns]
    print(sub[cols].to_string(index=False))


def print_r2_table(sel):
    cols = ["scenario", "model", "marginal_r2", "conditional_r2", "niche_share", "share_distribution"]
    cols = [c for c in cols if c in sel.columns]
    print(sel[cols].sort_values(["scenario", "model"]).to_string(index=False))


def print_recovery(rec):
    print(rec.to_string(index=False))


# ----------------------------
# JSON export
# ----------------------------
def _jsonable(v):
    if isinstance(v, (np.floating, float)):
        return None if not np.isfinite(v) else float(v)
    if isinstance(v, (np.integer,)):
        return int(v)
    if isinstance(v, (np.bool_,)):
        return bool(v)
    return v


def export_json(sweep: SweepResult, recovery: pd.DataFrame, settings: ModelSettings, path):
    out = {
        "meta": {
            "family": settings.family,
            "bayes_method": settings.bayes_method if settings.is_bayes else None,
            "optimizers": list(settings.optimizers),
            "criterion": "AIC" if settings.family == "gaussian" else "-2ELBO",
            "r2_note": "Nakagawa & Schielzeth marginal/conditional R2; random slopes weighted by mean(z^2).",
        },
        "scenarios": {},
    }

    for _, rec in recovery.iterrows():
        scenario = rec["scenario"]
        best_model = rec["best_model"]
        fit = sweep.fits.get((scenario, best_model))

        scen = {k: _jsonable(v) for k, v in rec.items() if k != "scenario"}
        if fit is not None:
            scen["best_fit"] = {
                "formula": fit.formula,
                "random_terms": list(get_model(best_model).random),
                "optimizer": fit.optimizer,
                "converged": bool(fit.converged),
                "fixed_effects": {k: _jsonable(v) for k, v in fit.fe_params.items()},
                "variance_components": {k: _jsonable(v) for k, v in fit.variance_components.items()},
                "IC": _jsonable(fit.ic),
            }
        out["scenarios"][scenario] = scen

    with open(path, "w") as f:
        json.dump(out, f, indent=2)

    print("\nWrote JSON summary:")
    print(" - {}".format(path))
