import json

import pandas as pd
import pytest

import run_tutorial


INI = """
[Landscape]
n_patches = 20
env_type = linear
seed = 4

[Simulation]
n_species = 6
timesteps = 30
burn_in = 30
initialization = 10
record_every = 10
seed = 2

[Scenario niche]
env_niche_breadth = 0.2
expected_process = niche

[Scenario neutral]
env_niche_breadth = 10
min_inter = 1
max_inter = 1
expected_process = neutral

[Model]
family = gaussian
optimizers = lbfgs, bfgs, nm
models = species_only, env_quadratic

[Output]
outdir = results
dpi = 50
"""


@pytest.fixture
def ini(tmp_path):
    path = tmp_path / "tutorial.ini"
    path.write_text(INI)
    return str(path)


def test_parse_args_defaults():
    args = run_tutorial.parse_args([])
    assert args.config == "metacommunity_glmm.ini"
    assert args.scenarios is None
    assert args.no_plots is False
    assert args.log_level == "INFO"


def test_pipeline_writes_tables(ini, tmp_path):
    outdir = tmp_path / "out"
    sweep, recovery = run_tutorial.main(["--config", ini, "--outdir", str(outdir), "--no-plots"])

    for name in ["community_summary.csv", "model_selection.csv", "fixed_effects.csv",
                 "variance_components.csv", "process_recovery.csv", "summary.json"]:
        assert (outdir / name).exists(), name
    for scenario in ["niche", "neutral"]:
        assert (outdir / scenario / "community_long.csv").exists()
    assert not (outdir / "r2_comparison.png").exists()

    sel = pd.read_csv(outdir / "model_selection.csv")
    assert sel.shape[0] == 4
    assert set(sel["scenario"]) == {"niche", "neutral"}
    assert set(recovery["scenario"]) == {"niche", "neutral"}
    assert set(recovery["expected_process"]) == {"niche", "neutral"}

    data = json.loads((outdir / "summary.json").read_text())
    assert set(data["scenarios"]) == {"niche", "neutral"}


def test_pipeline_with_plots_and_animation(ini, tmp_path):
    outdir = tmp_path / "figs"
    run_tutorial.main(["--config", ini, "--outdir", str(outdir), "--scenarios", "niche",
                       "--models", "species_only", "env_quadratic", "--animate", "--seed", "8"])

    assert (outdir / "niche" / "landscape.png").exists()
    assert (outdir / "niche" / "community_heatmap.png").exists()
    assert (outdir / "niche" / "dynamics.gif").exists()
    assert (outdir / "r2_comparison.png").exists()
    assert (outdir / "model_space_heatmap.png").exists()
    assert (outdir / "niche" / "observed_vs_fitted.png").exists()


def test_unknown_scenario_is_an_error(ini, tmp_path):
    with pytest.raises(ValueError):
        run_tutorial.main(["--config", ini, "--outdir", str(tmp_path / "x"), "--scenarios", "storage", "--no-plots"])


def test_unknown_model_fails_before_simulating(ini, tmp_path):
    outdir = tmp_path / "typo"
    with pytest.raises(ValueError, match="spesies_only"):
        run_tutorial.main(["--config", ini, "--outdir", str(outdir), "--models", "spesies_only", "--no-plots"])
    assert not (outdir / "niche" / "community_long.csv").exists()
