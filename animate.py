#!/usr/bin/env python3
"""
Save a GIF animating meta-community dynamics through the recorded timesteps.

Each frame shows every patch at its (x, y) position:
- marker size  ~ total abundance in the patch
- marker colour = dominant (most abundant) species; empty patches are grey

Input is either a SimulationResult (from run_tutorial.py) or an .npz written by
simulate_metacommunity.save_dynamics:
    dynamics (T x P x S), recorded_steps, x, y, env, species, scenario
"""

import argparse

import numpy as np

import matplotlib
matplotlib.use("Agg")  # headless-safe
import matplotlib.pyplot as plt
from matplotlib.animation import FuncAnimation

from simulate_metacommunity import load_dynamics


MAX_MARKER = 260.0
EMPTY_COLOR = (0.8, 0.8, 0.8, 1.0)


def compute_limits(values, pad_frac=0.05):
    vmin = float(np.nanmin(values))
    vmax = float(np.nanmax(values))
    if np.isclose(vmin, vmax):
        pad = 1.0
    else:
        pad = (vmax - vmin) * pad_frac
    return vmin - pad, vmax + pad


def frame_colors(N, cmap):
    """Dominant-species colour per patch."""
    S = N.shape[1]
    dominant = np.argmax(N, axis=1)
    colors = np.array([cmap(d / max(S - 1, 1)) for d in dominant])
    colors[N.sum(axis=1) == 0] = EMPTY_COLOR
    return colors


def render_gif(dynamics, steps, x, y, out_path, title_prefix="", interval=120, dpi=120):
    dynamics = np.asarray(dynamics)
    if dynamics.ndim != 3 or dynamics.shape[0] == 0:
        raise ValueError("dynamics must be a non-empty (timesteps x patches x species) array")
    if dynamics.shape[1] != len(x) or len(x) != len(y):
        raise ValueError("dynamics patch dimension does not match coordinates")

    totals = dynamics.sum(axis=2)
    max_total = max(float(totals.max()), 1.0)
    cmap = plt.get_cmap("viridis")

    fig, ax = plt.subplots(figsize=(6.8, 6.2))
    ax.set_xlim(*compute_limits(x))
    ax.set_ylim(*compute_limits(y))
    ax.set_aspect("equal")
    ax.set_xlabel("x")
    ax.set_ylabel("y")

    scat = ax.scatter(x, y, s=np.zeros(len(x)), edgecolors="0.3", linewidths=0.3)
    title = ax.set_title("")

    def update(frame_idx):
        N = dynamics[frame_idx]
        scat.set_sizes(MAX_MARKER * totals[frame_idx] / max_total + 4.0)
        scat.set_facecolors(frame_colors(N, cmap))

        gamma = int((N.sum(axis=0) > 0).sum())
        title.set_text("{}timestep {} | gamma richness {}/{} | total N {}".format(
            title_prefix, int(steps[frame_idx]), gamma, N.shape[1], int(N.sum())))
        return scat, title

    anim = FuncAnimation(fig, update, frames=dynamics.shape[0], interval=interval, blit=False)
    fps = max(1, int(round(1000.0 / interval)))
    anim.save(out_path, writer="pillow", fps=fps, dpi=dpi)

    plt.close(fig)
    print(f"Saved GIF to: {out_path}")
    return out_path


def animate_dynamics(result, out_path, interval=120, dpi=120):
    coords = result.landscape.coords
    return render_gif(
        result.dynamics,
        result.recorded_steps,
        coords["x"].to_numpy(dtype=float),
        coords["y"].to_numpy(dtype=float),
        out_path,
        title_prefix="{} | ".format(result.params.name),
        interval=interval,
        dpi=dpi,
    )


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("npz_path", help="Dynamics file written by simulate_metacommunity.py --dynamics")
    ap.add_argument("--out", default=None, help="Output GIF (default: <npz stem>.gif)")
    ap.add_argument("--interval", type=int, default=120, help="Frame interval in ms (default: 120)")
    ap.add_argument("--dpi", type=int, default=120, help="DPI for saved GIF (default: 120)")
    args = ap.parse_args()

    data = load_dynamics(args.npz_path)
    out = args.out
    if out is None:
        out = args.npz_path[:-4] + ".gif" if args.npz_path.lower().endswith(".npz") else args.npz_path + ".gif"

    scenario = str(data["scenario"]) if "scenario" in data else ""
    render_gif(
        data["dynamics"], data["recorded_steps"], data["x"], data["y"], out,
        title_prefix="{} | ".format(scenario) if scenario else "",
        interval=args.interval, dpi=args.dpi,
    )


if __name__ == "__main__":
    main()
