#!/usr/bin/env python3
"""
Discrete-time stochastic meta-community model (Beverton-Holt growth with
density-independent environmental filtering, competition and spatial dispersal).

Per step, for patch p and species s:
    r[p, s]   = max_r * exp(-((optimum[s] - env[p]) / (2 * niche_breadth)) ** 2)
    N_hat     = Poisson(N * r / (1 + N @ A))
    E         = Binomial(N_hat, dispersal)                 (emigrants)
    I[:, s]   = Multinomial(sum(E[:, s]), disp_mat @ E[:, s] normalized)
    N         = N_hat - E + I, then random extirpation with extirp_prob

Scenarios are parameter sets:
- niche:        narrow niche breadth, low dispersal
- neutral:      flat niches (large breadth), equal intra/inter competition
- mass_effects: narrow niche breadth, high dispersal

Species traits:
    trait = optimum + Normal(0, trait_deviation)
so trait_deviation controls how well the measured trait predicts the niche optimum.

Outputs (per scenario):
- long-format site x species abundance table
- recorded dynamics (timestep x patch x species)
"""

import argparse
import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from scipy.stats import spearmanr
from sklearn.preprocessing import StandardScaler

from landscape import Landscape


LOGGER = logging.getLogger(__name__)

EXPECTED_PROCESSES = ["niche", "neutral"]
OPTIMA_SPACINGS = ["even", "random"]

# Colonist pressure during the initialization period
SEED_LAMBDA = 0.5

GROUP_COL = "all_obs"

LONG_COLUMNS = [
    "site", "species", "x", "y", "env_raw", "trait_raw", "optimum", "abundance", "presence",
]


@dataclass(frozen=True)
class ScenarioParams:
    name: str
    n_species: int = 15
    dispersal: float = 0.01
    timesteps: int = 200
    burn_in: int = 200
    initialization: int = 100
    max_r: float = 5.0
    env_niche_breadth: float = 0.2
    optima_spacing: str = "even"
    trait_deviation: float = 0.05
    intra: float = 1.0
    min_inter: float = 0.0
    max_inter: float = 0.5
    comp_scaler: float = 0.05
    extirp_prob: float = 0.0
    record_every: int = 5
    expected_process: str = "niche"
    seed: int = 0

    def __post_init__(self):
        if self.n_species < 2:
            raise ValueError("n_species must be >= 2")
        if not 0.0 <= self.dispersal <= 1.0:
            raise ValueError("dispersal must be in [0, 1], got {}".format(self.dispersal))
        if not 0.0 <= self.extirp_prob <= 1.0:
            raise ValueError("extirp_prob must be in [0, 1], got {}".format(self.extirp_prob))
        if self.env_niche_breadth <= 0:
            raise ValueError("env_niche_breadth must be positive")
        if self.min_inter > self.max_inter:
            raise ValueError("min_inter must be <= max_inter")
        if self.timesteps < 1 or self.burn_in < 0 or self.initialization < 0:
            raise ValueError("timesteps must be >= 1; burn_in and initialization must be >= 0")
        if self.record_every < 1:
            raise ValueError("record_every must be >= 1")
        if self.optima_spacing not in OPTIMA_SPACINGS:
            raise ValueError("optima_spacing must be one of {}".format(OPTIMA_SPACINGS))
        if self.expected_process not in EXPECTED_PROCESSES:
            raise ValueError("expected_process must be one of {}".format(EXPECTED_PROCESSES))

    @property
    def total_steps(self) -> int:
        return self.initialization + self.burn_in + self.timesteps


@dataclass
class SimulationResult:
    params: ScenarioParams
    landscape: Landscape
    traits: pd.DataFrame
    abundances: np.ndarray
    dynamics: np.ndarray
    recorded_steps: np.ndarray = field(default_factory=lambda: np.array([], dtype=int))


# ----------------------------
# Species pool
# ----------------------------
def species_labels(n_species):
    return ["sp{:02d}".format(i + 1) for i in range(n_species)]


def site_labels(n_patches):
    return ["s{:03d}".format(i + 1) for i in range(n_patches)]


def species_traits(params: ScenarioParams, env_min: float, env_max: float, rng: np.random.Generator) -> pd.DataFrame:
    if params.optima_spacing == "even":
        optima = np.linspace(env_min, env_max, params.n_species)
    else:
        optima = np.sort(rng.uniform(env_min, env_max, params.n_species))

    trait = optima + rng.normal(0.0, params.trait_deviation, params.n_species)

    return pd.DataFrame({
        "species": species_labels(params.n_species),
        "optimum": optima,
        "trait": trait,
        "niche_breadth": np.full(params.n_species, params.env_niche_breadth),
    })


def competition_matrix(params: ScenarioParams, rng: np.random.Generator) -> np.ndarray:
    S = params.n_species
    A = rng.uniform(params.min_inter, params.max_inter, size=(S, S))
    np.fill_diagonal(A, params.intra)
    return A * params.comp_scaler


def growth_rates(env, optima, breadth, max_r):
    """Density-independent growth, patches x species."""
    env = np.asarray(env, dtype=float)[:, None]
    optima = np.asarray(optima, dtype=float)[None, :]
    breadth = np.asarray(breadth, dtype=float)[None, :]
    return max_r * np.exp(-((optima - env) / (2.0 * breadth)) ** 2)


# ----------------------------
# Dynamics
# ----------------------------
def disperse(N_hat, dispersal, disp_mat, rng):
    E = rng.binomial(N_hat, dispersal)
    disp_sp = E.sum(axis=0)

    I_hat = disp_mat @ E
    I = np.zeros_like(N_hat)
    for s in np.nonzero(disp_sp)[0]:
        w = I_hat[:, s]
        total = w.sum()
        if total <= 0:
            continue
        I[:, s] = rng.multinomial(int(disp_sp[s]), w / total)

    return N_hat - E + I


def step(N, r, A, params: ScenarioParams, disp_mat, rng):
    lam = N * r / (1.0 + N @ A)
    lam[lam < 0] = 0.0
    N_hat = rng.poisson(lam)

    if params.dispersal > 0:
        N_hat = disperse(N_hat, params.dispersal, disp_mat, rng)

    if params.extirp_prob > 0:
        N_hat[rng.random(N_hat.shape) < params.extirp_prob] = 0

    return N_hat


def simulate_metacommunity(landscape: Landscape, params: ScenarioParams) -> SimulationResult:
    rng = np.random.default_rng(params.seed)

    P = landscape.n_patches
    S = params.n_species

    traits = species_traits(params, float(landscape.env.min()), float(landscape.env.max()), rng)
    A = competition_matrix(params, rng)
    r = growth_rates(landscape.env, traits["optimum"], traits["niche_breadth"], params.max_r)

    N = rng.poisson(SEED_LAMBDA, size=(P, S))

    record_from = params.initialization + params.burn_in
    frames = []
    recorded = []

    for t in range(params.total_steps):
        if t < params.initialization:
            N = N + rng.poisson(SEED_LAMBDA, size=(P, S))

        N = step(N, r, A, params, landscape.disp_mat, rng)

        if t >= record_from:
            k = t - record_from
            if k % params.record_every == 0 or t == params.total_steps - 1:
                frames.append(N.copy())
                recorded.append(k)

    dynamics = np.stack(frames) if frames else np.empty((0, P, S), dtype=int)

    LOGGER.info(
        "Scenario %s: %d steps, final total abundance=%d, gamma richness=%d/%d",
        params.name, params.total_steps, int(N.sum()), int((N.sum(axis=0) > 0).sum()), S,
    )

    return SimulationResult(
        params=params,
        landscape=landscape,
        traits=traits,
        abundances=N,
        dynamics=dynamics,
        recorded_steps=np.asarray(recorded, dtype=int),
    )


# ----------------------------
# Tables
# ----------------------------
def community_long(result: SimulationResult) -> pd.DataFrame:
    """One row per site x species (site-major), final-timestep abundances."""
    P, S = result.abundances.shape
    coords = result.landscape.coords
    traits = result.traits

    df = pd.DataFrame({
        "site": np.repeat(site_labels(P), S),
        "species": np.tile(traits["species"].to_numpy(), P),
        "x": np.repeat(coords["x"].to_numpy(dtype=float), S),
        "y": np.repeat(coords["y"].to_numpy(dtype=float), S),
        "env_raw": np.repeat(result.landscape.env, S),
        "trait_raw": np.tile(traits["trait"].to_numpy(dtype=float), P),
        "optimum": np.tile(traits["optimum"].to_numpy(dtype=float), P),
        "abundance": result.abundances.reshape(-1).astype(int),
    })
    df["presence"] = (df["abundance"] > 0).astype(int)
    df.insert(0, "scenario", result.params.name)
    return df


def require_cols(df, cols, name="dataframe"):
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise ValueError(f"{name}: missing required columns: {missing}\nFound: {list(df.columns)}")


def validate_community_frame(df: pd.DataFrame, name="community"):
    require_cols(df, LONG_COLUMNS, name=name)

    counts = pd.to_numeric(df["abundance"], errors="coerce")
    if counts.isna().any():
        raise ValueError(f"{name}: abundance contains missing or non-numeric values")
    if (counts < 0).any():
        raise ValueError(f"{name}: abundance must be non-negative")
    if not np.allclose(counts, np.round(counts)):
        raise ValueError(f"{name}: abundance must be integer counts")

    for col in ["site", "species"]:
        if df[col].nunique() < 2:
            raise ValueError(f"{name}: need at least 2 levels of '{col}' for a random effect")


def prepare_model_frame(long_df: pd.DataFrame) -> pd.DataFrame:
    """
    Standardized modelling columns:
      env, trait     = z-scores of env_raw / trait_raw
      env2           = env ** 2 (used by quadratic random slopes)
      log_abundance  = log1p(abundance) (gaussian family response)
      all_obs        = constant grouping column for crossed random effects
    """
    validate_community_frame(long_df)
    df = long_df.copy()

    df["env"] = StandardScaler().fit_transform(df[["env_raw"]].astype(float)).ravel()
    if np.isclose(df["trait_raw"].std(), 0.0):
        df["trait"] = 0.0
    else:
        df["trait"] = StandardScaler().fit_transform(df[["trait_raw"]].astype(float)).ravel()
    df["env2"] = df["env"] ** 2

    df["abundance"] = df["abundance"].astype(int)
    df["presence"] = df["presence"].astype(int)
    df["log_abundance"] = np.log1p(df["abundance"].astype(float))

    df["site"] = df["site"].astype(str)
    df["species"] = df["species"].astype(str)
    df[GROUP_COL] = 1

    return df.reset_index(drop=True)


def summarize_community(result: SimulationResult) -> dict:
    N = result.abundances
    env = result.landscape.env
    totals = N.sum(axis=0)

    present = totals > 0
    weighted_env = np.full(N.shape[1], np.nan)
    weighted_env[present] = (N[:, present] * env[:, None]).sum(axis=0) / totals[present]

    optima = result.traits["optimum"].to_numpy(dtype=float)
    if present.sum() >= 3:
        rho = float(spearmanr(weighted_env[present], optima[present]).correlation)
    else:
        rho = float("nan")

    return {
        "scenario": result.params.name,
        "expected_process": result.params.expected_process,
        "n_patches": int(N.shape[0]),
        "n_species": int(N.shape[1]),
        "total_abundance": int(N.sum()),
        "mean_alpha_richness": float((N > 0).sum(axis=1).mean()),
        "gamma_richness": int(present.sum()),
        "mean_occupancy": float((N > 0).mean()),
        "env_tracking_rho": rho,
    }


# ----------------------------
# Dynamics I/O (read back by animate.py)
# ----------------------------
def save_dynamics(result: SimulationResult, path):
    np.savez_compressed(
        path,
        dynamics=result.dynamics,
        recorded_steps=result.recorded_steps,
        x=result.landscape.coords["x"].to_numpy(dtype=float),
        y=result.landscape.coords["y"].to_numpy(dtype=float),
        env=result.landscape.env,
        species=np.asarray(result.traits["species"], dtype=str),
        scenario=np.asarray(result.params.name),
    )


def load_dynamics(path) -> dict:
    with np.load(path, allow_pickle=False) as z:
        return {k: z[k] for k in z.files}


# ----------------------------
# Main
# ----------------------------
def parse_args():
    p = argparse.ArgumentParser(description="Simulate one meta-community scenario and write the long-format table.")
    p.add_argument("--config", default="metacommunity_glmm.ini")
    p.add_argument("--scenario", required=True, help="Scenario section name, e.g. niche")
    p.add_argument("-o", "--out", default=None, help="CSV path (default: <scenario>_community.csv)")
    p.add_argument("--dynamics", default=None, help="Optional .npz path for the recorded dynamics")
    return p.parse_args()


def main():
    from landscape import make_landscape
    from settings import get_config, landscape_params, scenario_params

    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    config = get_config(args.config)
    landscape = make_landscape(landscape_params(config))
    result = simulate_metacommunity(landscape, scenario_params(config, args.scenario))

    out = args.out or "{}_community.csv".format(args.scenario)
    community_long(result).to_csv(out, index=False)
    print("Wrote:", out)

    if args.dynamics:
        save_dynamics(result, args.dynamics)
        print("Wrote:", args.dynamics)

    summary = pd.DataFrame([summarize_community(result)])
    print(summary.to_string(index=False))


if __name__ == "__main__":
    main()
