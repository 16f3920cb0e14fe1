#!/usr/bin/env python3
"""
Figures for the tutorial (PNG only, never shown).

Per scenario:
- <scenario>/landscape.png             sites coloured by environment
- <scenario>/community_heatmap.png     log1p abundance, sites sorted by env x species sorted by optimum
- <scenario>/species_responses.png     abundance vs env per species
- <scenario>/observed_vs_fitted.png    observed vs conditional fitted mean of the best model

Across scenarios:
- r2_comparison.png                    marginal / conditional R² per scenario x model
- variance_partition.png               stacked variance shares per model, one panel per scenario
- model_space_heatmap.png              deltaIC grid (scenario x model)
- top_model_weights.png                IC weights per scenario
"""

import os

import matplotlib
matplotlib.use("Agg")  # headless-safe
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from glmm_formulas import model_names


DPI = 200

SHARE_ORDER = [
    "share_fixed", "share_species", "share_species_env", "share_species_env2", "share_site", "share_distribution",
]


def _save(fig, outpath, dpi=DPI):
    os.makedirs(os.path.dirname(outpath) or ".", exist_ok=True)
    fig.tight_layout()
    fig.savefig(outpath, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return outpath


def _model_order(df):
    present = set(df["model"].unique())
    return [m for m in model_names() if m in present]


# ----------------------------
# Per-scenario data plots
# ----------------------------
def plot_landscape(landscape_df: pd.DataFrame, title, outpath, dpi=DPI):
    fig, ax = plt.subplots(figsize=(6.4, 5.6))
    sc = ax.scatter(landscape_df["x"], landscape_df["y"], c=landscape_df["env"], cmap="viridis", s=60,
                    edgecolors="0.3", linewidths=0.4)
    fig.colorbar(sc, ax=ax, label="Environment")
    ax.set_xlabel("x")
    ax.set_ylabel("y")
    ax.set_aspect("equal")
    ax.set_title(title)
    return _save(fig, outpath, dpi)


def plot_community_heatmap(long_df: pd.DataFrame, title, outpath, dpi=DPI):
    site_order = long_df.drop_duplicates("site").sort_values("env_raw")["site"].tolist()
    species_order = long_df.drop_duplicates("species").sort_values("optimum")["species"].tolist()

    mat = long_df.pivot(index="site", columns="species", values="abundance")
    mat = np.log1p(mat.reindex(index=site_order, columns=species_order))

    fig, ax = plt.subplots(figsize=(8.4, 7.2))
    sns.heatmap(mat, cmap="mako_r", ax=ax, cbar_kws={"label": "log(1 + abundance)"}, yticklabels=False)
    ax.set_xlabel("Species (sorted by niche optimum)")
    ax.set_ylabel("Sites (sorted by environment)")
    ax.set_title(title)
    return _save(fig, outpath, dpi)


def plot_species_responses(long_df: pd.DataFrame, title, outpath, dpi=DPI):
    df = long_df.sort_values("env_raw")
    fig, ax = plt.subplots(figsize=(9.2, 6.0))
    sns.lineplot(data=df, x="env_raw", y="abundance", hue="species", palette="viridis",
                 marker="o", markersize=3, linewidth=1.0, alpha=0.8, ax=ax, legend=False)
    ax.set_xlabel("Environment")
    ax.set_ylabel("Abundance")
    ax.set_title(title)
    return _save(fig, outpath, dpi)


def plot_observed_vs_fitted(observed, fitted, title, outpath, dpi=DPI):
    observed = np.asarray(observed, dtype=float)
    fitted = np.asarray(fitted, dtype=float)
    ok = np.isfinite(observed) & np.isfinite(fitted)

    fig, ax = plt.subplots(figsize=(6.2, 6.0))
    ax.scatter(fitted[ok], observed[ok], s=10, alpha=0.5, linewidths=0)
    if ok.any():
        lo = float(min(observed[ok].min(), fitted[ok].min()))
        hi = float(max(observed[ok].max(), fitted[ok].max()))
        ax.plot([lo, hi], [lo, hi], linestyle="--", color="0.3")
    ax.set_xlabel("Fitted (conditional mean)")
    ax.set_ylabel("Observed")
    ax.set_title(title)
    return _save(fig, outpath, dpi)


# ----------------------------
# Cross-scenario comparison plots
# ----------------------------
def plot_r2_comparison(sel: pd.DataFrame, outpath, dpi=DPI):
    df = sel.dropna(subset=["marginal_r2"]).melt(
        id_vars=["scenario", "model"],
        value_vars=["marginal_r2", "conditional_r2"],
        var_name="R2", value_name="value",
    )
    g = sns.catplot(data=df, x="model", y="value", hue="R2", col="scenario", kind="bar",
                    order=_model_order(df), height=4.2, aspect=1.1, sharey=True)
    g.set_axis_labels("", "R²")
    g.set_titles("{col_name}")
    for ax in g.axes.flat:
        ax.tick_params(axis="x", rotation=45)
        ax.set_ylim(0, 1)
    g.tight_layout()
    os.makedirs(os.path.dirname(outpath) or ".", exist_ok=True)
    g.savefig(outpath, dpi=dpi)
    plt.close(g.figure)
    return outpath


def plot_variance_partition(sel: pd.DataFrame, outpath, dpi=DPI):
    scenarios = sel["scenario"].unique().tolist()
    shares = [c for c in SHARE_ORDER if c in sel.columns]

    fig, axes = plt.subplots(1, len(scenarios), figsize=(4.6 * len(scenarios), 4.8), sharey=True, squeeze=False)
    colors = sns.color_palette("Set2", len(shares))

    for ax, scenario in zip(axes[0], scenarios):
        sub = sel[sel["scenario"] == scenario].set_index("model")
        order = [m for m in model_names() if m in sub.index]
        sub = sub.reindex(order)[shares].fillna(0.0)

        bottom = np.zeros(len(order))
        for color, col in zip(colors, shares):
            vals = sub[col].to_numpy(dtype=float)
            ax.bar(np.arange(len(order)), vals, bottom=bottom, color=color, label=col.replace("share_", ""))
            bottom += vals

        ax.set_xticks(np.arange(len(order)))
        ax.set_xticklabels(order, rotation=45, ha="right", fontsize=8)
        ax.set_title(scenario)
        ax.set_ylim(0, 1)

    axes[0][0].set_ylabel("Share of total variance (link scale)")
    axes[0][-1].legend(title="component", fontsize=8, loc="upper left", bbox_to_anchor=(1.02, 1.0))
    return _save(fig, outpath, dpi)


def plot_model_space_heatmap(sel: pd.DataFrame, outpath, dpi=DPI):
    mat = sel.pivot(index="scenario", columns="model", values="deltaIC")
    mat = mat.reindex(columns=_model_order(sel))

    fig, ax = plt.subplots(figsize=(9.2, 1.2 + 0.8 * mat.shape[0]))
    sns.heatmap(mat, annot=True, fmt=".1f", cmap="rocket_r", ax=ax, cbar_kws={"label": "deltaIC (vs best in scenario)"})
    ax.set_xlabel("")
    ax.set_ylabel("")
    criterion = ", ".join(sorted(set(sel["criterion"].dropna()) - {""})) or "IC"
    ax.set_title("Model-space support ({})".format(criterion))
    return _save(fig, outpath, dpi)


def plot_top_model_weights(sel: pd.DataFrame, outpath, dpi=DPI):
    df = sel.dropna(subset=["IC_weight"])
    fig, ax = plt.subplots(figsize=(10.2, 4.6))
    sns.barplot(data=df, x="model", y="IC_weight", hue="scenario", order=_model_order(df), ax=ax)
    ax.set_xlabel("")
    ax.set_ylabel("IC weight")
    ax.tick_params(axis="x", rotation=45)
    ax.set_title("Model weights by scenario")
    return _save(fig, outpath, dpi)
