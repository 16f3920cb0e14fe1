#!/usr/bin/env python3
"""
Landscape inputs for the meta-community simulator.

A landscape is a set of patches with:
- x, y coordinates (uniform in [0, size])
- one environmental value per patch, rescaled to [min_env, max_env]
- a dispersal kernel exp(-kernel_exp * distance), columns normalized so that
  column j is the destination distribution of emigrants leaving patch j

Environment types:
    linear:          gradient along x plus Gaussian noise
    autocorrelated:  Gaussian random field with exponential covariance exp(-d / env_range)
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy.spatial.distance import cdist


LOGGER = logging.getLogger(__name__)

ENV_TYPES = ["linear", "autocorrelated"]

# Added to the covariance diagonal so the Cholesky factor exists for near-duplicate patches
CHOLESKY_JITTER = 1e-8


@dataclass(frozen=True)
class LandscapeParams:
    n_patches: int = 50
    size: float = 100.0
    env_type: str = "autocorrelated"
    env_range: float = 30.0
    env_noise: float = 0.05
    min_env: float = 0.0
    max_env: float = 1.0
    kernel_exp: float = 0.1
    seed: int = 0


@dataclass
class Landscape:
    coords: pd.DataFrame
    env: np.ndarray
    disp_mat: np.ndarray

    @property
    def n_patches(self) -> int:
        return int(self.coords.shape[0])

    def to_frame(self) -> pd.DataFrame:
        df = self.coords.copy()
        df["env"] = self.env
        return df


# ----------------------------
# Coordinates + environment
# ----------------------------
def make_coordinates(n_patches: int, size: float, rng: np.random.Generator) -> pd.DataFrame:
    if n_patches < 2:
        raise ValueError("A landscape needs at least 2 patches, got {}".format(n_patches))
    if size <= 0:
        raise ValueError("Landscape size must be positive, got {}".format(size))

    return pd.DataFrame({
        "site": np.arange(n_patches, dtype=int),
        "x": rng.uniform(0.0, size, n_patches),
        "y": rng.uniform(0.0, size, n_patches),
    })


def rescale(values, lo, hi):
    values = np.asarray(values, dtype=float)
    vmin = float(np.min(values))
    vmax = float(np.max(values))
    if np.isclose(vmin, vmax):
        return np.full_like(values, 0.5 * (lo + hi))
    return lo + (values - vmin) * (hi - lo) / (vmax - vmin)


def gaussian_random_field(xy: np.ndarray, env_range: float, rng: np.random.Generator) -> np.ndarray:
    d = cdist(xy, xy)
    cov = np.exp(-d / env_range)
    cov[np.diag_indices_from(cov)] += CHOLESKY_JITTER
    chol = np.linalg.cholesky(cov)
    return chol @ rng.standard_normal(xy.shape[0])


def make_environment(coords: pd.DataFrame, params: LandscapeParams, rng: np.random.Generator) -> np.ndarray:
    if params.min_env >= params.max_env:
        raise ValueError("min_env must be < max_env (got {} and {})".format(params.min_env, params.max_env))

    if params.env_type == "linear":
        raw = coords["x"].to_numpy(dtype=float) / params.size
        raw = raw + rng.normal(0.0, params.env_noise, raw.size)
    elif params.env_type == "autocorrelated":
        if params.env_range <= 0:
            raise ValueError("env_range must be positive for an autocorrelated environment")
        raw = gaussian_random_field(coords[["x", "y"]].to_numpy(dtype=float), params.env_range, rng)
    else:
        raise ValueError("Unknown env_type '{}' (expected one of {})".format(params.env_type, ENV_TYPES))

    return rescale(raw, params.min_env, params.max_env)


# ----------------------------
# Dispersal
# ----------------------------
def dispersal_matrix(coords: pd.DataFrame, kernel_exp: float) -> np.ndarray:
    """
    Column-normalized exponential dispersal kernel with no self-dispersal.

    disp_mat[i, j] is the probability that an emigrant from patch j lands in patch i.
    """
    xy = coords[["x", "y"]].to_numpy(dtype=float)
    disp = np.exp(-kernel_exp * cdist(xy, xy))
    np.fill_diagonal(disp, 0.0)

    col_sums = disp.sum(axis=0)
    col_sums[col_sums == 0] = 1.0
    return disp / col_sums


def make_landscape(params: LandscapeParams) -> Landscape:
    rng = np.random.default_rng(params.seed)
    coords = make_coordinates(params.n_patches, params.size, rng)
    env = make_environment(coords, params, rng)
    disp_mat = dispersal_matrix(coords, params.kernel_exp)

    LOGGER.info(
        "Landscape: %d patches, env_type=%s, env in [%.2f, %.2f], kernel_exp=%.3f",
        params.n_patches, params.env_type, env.min(), env.max(), params.kernel_exp,
    )
    return Landscape(coords=coords, env=env, disp_mat=disp_mat)
