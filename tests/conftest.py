import numpy as np
import pandas as pd
import pytest

from landscape import LandscapeParams, make_landscape
from simulate_metacommunity import (
    ScenarioParams,
    community_long,
    prepare_model_frame,
    simulate_metacommunity,
)


@pytest.fixture(scope="session")
def small_landscape():
    return make_landscape(LandscapeParams(n_patches=30, env_type="linear", seed=1))


@pytest.fixture(scope="session")
def niche_params():
    return ScenarioParams(
        name="niche",
        n_species=8,
        timesteps=50,
        burn_in=50,
        initialization=20,
        env_niche_breadth=0.2,
        dispersal=0.01,
        record_every=10,
        expected_process="niche",
        seed=3,
    )


@pytest.fixture(scope="session")
def niche_result(small_landscape, niche_params):
    return simulate_metacommunity(small_landscape, niche_params)


@pytest.fixture(scope="session")
def niche_frame(niche_result):
    return prepare_model_frame(community_long(niche_result))


def make_synthetic_frame(n_sites=20, n_species=8, seed=0):
    """Long table with known species intercepts and env slopes."""
    rng = np.random.default_rng(seed)
    env = rng.uniform(0, 1, n_sites)
    sp_int = rng.normal(0.0, 1.0, n_species)
    sp_slope = rng.normal(0.0, 1.0, n_species)
    trait = rng.normal(0.0, 1.0, n_species)

    rows = []
    for i in range(n_sites):
        for s in range(n_species):
            eta = 1.0 + sp_int[s] + sp_slope[s] * (env[i] - 0.5) * 2.0
            rows.append({
                "site": "s{:03d}".format(i + 1),
                "species": "sp{:02d}".format(s + 1),
                "x": float(i),
                "y": 0.0,
                "env_raw": env[i],
                "trait_raw": trait[s],
                "optimum": trait[s],
                "abundance": int(rng.poisson(np.exp(eta))),
            })
    df = pd.DataFrame(rows)
    df["presence"] = (df["abundance"] > 0).astype(int)
    return prepare_model_frame(df)


@pytest.fixture(scope="session")
def synthetic_frame():
    return make_synthetic_frame()
