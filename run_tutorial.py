#!/usr/bin/env python3
"""
Meta-community GLMM tutorial, end to end.

1) Build one landscape (coordinates, environmental gradient, dispersal kernel)
2) Simulate every configured scenario (niche / neutral / mass effects ...)
3) Fit the six GLMM shapes to each simulated community
4) Tabulate marginal / conditional R², variance shares, IC weights, LR tests
5) Check whether the best model recovers the process each scenario was simulated under
6) Plot and export

Outputs (in --outdir):
- <scenario>/community_long.csv, <scenario>/*.png, <scenario>/dynamics.gif (with --animate)
- community_summary.csv
- model_selection.csv, fixed_effects.csv, variance_components.csv, process_recovery.csv
- summary.json
- r2_comparison.png, variance_partition.png, model_space_heatmap.png, top_model_weights.png
"""

import argparse
import logging
import os
from dataclasses import replace

import pandas as pd

import plots
from animate import animate_dynamics
from glmm_formulas import get_model, response_for_family
from landscape import make_landscape
from model_selection import (
    best_models,
    export_json,
    print_r2_table,
    print_recovery,
    print_top_models,
    process_recovery,
    run_sweep,
)
from settings import (
    DEFAULT_CONFIG,
    get_config,
    landscape_params,
    model_settings,
    output_settings,
    scenario_names,
    scenario_params,
)
from simulate_metacommunity import community_long, prepare_model_frame, simulate_metacommunity, summarize_community


LOGGER = logging.getLogger(__name__)


# ------------------------ CLI / config ------------------------

def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Simulate meta-communities and compare GLMMs by R² and information criteria.")
    p.add_argument("--config", default=DEFAULT_CONFIG, help="INI file (default: %(default)s)")
    p.add_argument("--scenarios", nargs="*", default=None,
                   help="Scenario names to run (default: every [Scenario ...] section)")
    p.add_argument("--models", nargs="*", default=None, help="Subset of model shapes (default: [Model] models)")
    p.add_argument("--family", choices=["poisson", "binomial", "gaussian"], default=None,
                   help="Override [Model] family")
    p.add_argument("--outdir", default=None, help="Override [Output] outdir")
    p.add_argument("--seed", type=int, default=None, help="Override every seed (landscape + scenarios)")
    p.add_argument("--no-plots", action="store_true", help="Skip all figures")
    p.add_argument("--animate", action="store_true", help="Write a dynamics GIF per scenario")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return p.parse_args(argv)


def setup_logging(level):
    logging.basicConfig(level=getattr(logging, level), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    # optimizer chatter is captured per fit
    logging.getLogger("matplotlib").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


# ------------------------ pipeline ------------------------

def simulate_scenarios(config, names, landscape, out, seed=None):
    frames = {}
    results = {}
    summaries = []

    for name in names:
        params = scenario_params(config, name, seed=seed)
        result = simulate_metacommunity(landscape, params)
        long_df = community_long(result)

        scen_dir = os.path.join(out.outdir, name)
        os.makedirs(scen_dir, exist_ok=True)
        long_df.to_csv(os.path.join(scen_dir, "community_long.csv"), index=False)

        frames[name] = prepare_model_frame(long_df)
        results[name] = result
        summaries.append(summarize_community(result))

        if out.plots:
            plots.plot_landscape(landscape.to_frame(), "Landscape", os.path.join(scen_dir, "landscape.png"), out.dpi)
            plots.plot_community_heatmap(long_df, "{}: site x species abundance".format(name),
                                         os.path.join(scen_dir, "community_heatmap.png"), out.dpi)
            plots.plot_species_responses(long_df, "{}: species responses to the environment".format(name),
                                         os.path.join(scen_dir, "species_responses.png"), out.dpi)
        if out.animate:
            animate_dynamics(result, os.path.join(scen_dir, "dynamics.gif"), interval=out.gif_interval)

    return frames, results, pd.DataFrame(summaries)


def plot_comparisons(sweep, frames, settings, out):
    sel = sweep.selection.dropna(subset=["marginal_r2"]) if "marginal_r2" in sweep.selection.columns else sweep.selection
    if sel.empty:
        LOGGER.warning("No successful fits; skipping comparison plots")
        return

    plots.plot_r2_comparison(sel, os.path.join(out.outdir, "r2_comparison.png"), out.dpi)
    plots.plot_variance_partition(sel, os.path.join(out.outdir, "variance_partition.png"), out.dpi)
    plots.plot_model_space_heatmap(sel, os.path.join(out.outdir, "model_space_heatmap.png"), out.dpi)
    plots.plot_top_model_weights(sel, os.path.join(out.outdir, "top_model_weights.png"), out.dpi)

    response = response_for_family(settings.family)
    for _, b in best_models(sweep.selection).iterrows():
        fit = sweep.fits.get((b["scenario"], b["model"]))
        if fit is None:
            continue
        frame = frames[b["scenario"]]
        plots.plot_observed_vs_fitted(
            frame[response], fit.fitted_mean(),
            "{}: best model {} ({})".format(b["scenario"], b["model"], get_model(b["model"]).description),
            os.path.join(out.outdir, b["scenario"], "observed_vs_fitted.png"), out.dpi,
        )


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_level)

    config = get_config(args.config)
    settings = model_settings(config, family=args.family, models=args.models)
    out = output_settings(config, outdir=args.outdir)
    if args.no_plots:
        out = replace(out, plots=False)
    if args.animate:
        out = replace(out, animate=True)
    os.makedirs(out.outdir, exist_ok=True)

    names = args.scenarios or scenario_names(config)
    if not names:
        raise ValueError("No scenarios to run: add [Scenario <name>] sections to {}".format(args.config))

    landscape = make_landscape(landscape_params(config, seed=args.seed))

    print("Scenarios:", names)
    print("Models:", list(settings.models))
    print("Family:", settings.family, "| optimizers:", list(settings.optimizers))

    frames, results, community = simulate_scenarios(config, names, landscape, out, seed=args.seed)
    community.to_csv(os.path.join(out.outdir, "community_summary.csv"), index=False)
    print("\n=== Simulated communities ===")
    print(community.to_string(index=False))

    sweep = run_sweep(frames, settings)
    expected = {name: results[name].params.expected_process for name in names}
    recovery = process_recovery(sweep.selection, expected)

    sweep.selection.to_csv(os.path.join(out.outdir, "model_selection.csv"), index=False)
    sweep.fixed_effects.to_csv(os.path.join(out.outdir, "fixed_effects.csv"), index=False)
    sweep.variance_components.to_csv(os.path.join(out.outdir, "variance_components.csv"), index=False)
    recovery.to_csv(os.path.join(out.outdir, "process_recovery.csv"), index=False)

    print("\n=== Top models by information criterion ===")
    for name in names:
        print_top_models(sweep.selection, name)

    print("\n=== Marginal / conditional R² ===")
    print_r2_table(sweep.selection)

    print("\n=== Process recovery ===")
    print_recovery(recovery)

    if out.plots:
        plot_comparisons(sweep, frames, settings, out)

    export_json(sweep, recovery, settings, os.path.join(out.outdir, "summary.json"))
    print("\nSaved to:", out.outdir)
    return sweep, recovery


if __name__ == "__main__":
    main()
