import numpy as np
import pandas as pd
import pytest

from fit_glmm import FitSummary
from r2_decomposition import R2_DECOMPOSITIONS, decompose, distribution_variance
from glmm_formulas import model_names


def make_fit(model, family, variances, eta_fixed, residual_variance=float("nan")):
    eta_fixed = np.asarray(eta_fixed, dtype=float)
    return FitSummary(
        model=model,
        family=family,
        formula="y ~ 1",
        optimizer="bfgs",
        converged=True,
        n_obs=eta_fixed.size,
        k_params=3,
        fe_params=pd.Series([0.0], index=["Intercept"]),
        fe_se=pd.Series([0.1], index=["Intercept"]),
        variance_components=dict(variances),
        fixed_linear_predictor=eta_fixed,
        conditional_linear_predictor=eta_fixed,
        residual_variance=residual_variance,
    )


def frame(env):
    return pd.DataFrame({"env": np.asarray(env, dtype=float)})


def test_registry_covers_every_model():
    assert sorted(R2_DECOMPOSITIONS) == sorted(model_names())


def test_gaussian_species_only():
    fit = make_fit("species_only", "gaussian", {"species": 2.0}, np.ones(4), residual_variance=1.0)
    row = decompose(fit, frame([0, 0, 0, 0]))
    assert row["var_fixed"] == pytest.approx(0.0)
    assert row["marginal_r2"] == pytest.approx(0.0)
    assert row["conditional_r2"] == pytest.approx(2.0 / 3.0)
    assert row["niche_share"] == pytest.approx(0.0)


def test_random_slopes_weighted_by_covariate_moments():
    env = [-2.0, 2.0, -2.0, 2.0]  # mean(env^2) = 4, mean(env^4) = 16
    fit = make_fit(
        "env_species_slopes", "gaussian",
        {"species": 1.0, "species_env": 0.5, "species_env2": 0.25},
        [0.0, 2.0, 0.0, 2.0],  # var = 1
        residual_variance=2.0,
    )
    row = decompose(fit, frame(env))
    assert row["var_species_env"] == pytest.approx(2.0)
    assert row["var_species_env2"] == pytest.approx(4.0)
    total = 1.0 + 1.0 + 2.0 + 4.0 + 2.0
    assert row["var_total"] == pytest.approx(total)
    assert row["marginal_r2"] == pytest.approx(1.0 / total)
    assert row["conditional_r2"] == pytest.approx(8.0 / total)
    assert row["niche_share"] == pytest.approx(7.0 / 8.0)


def test_shares_sum_to_one():
    fit = make_fit(
        "full", "gaussian",
        {"species": 0.7, "species_env": 0.3, "species_env2": 0.1, "site": 0.4},
        [0.1, -0.3, 0.5, 0.2], residual_variance=0.9,
    )
    row = decompose(fit, frame([-1.0, 0.5, 1.2, -0.7]))
    shares = [v for k, v in row.items() if k.startswith("share_")]
    assert sum(shares) == pytest.approx(1.0)
    assert 0.0 <= row["marginal_r2"] <= row["conditional_r2"] <= 1.0


def test_poisson_distribution_variance():
    eta = np.full(5, np.log(2.0))
    fit = make_fit("species_only", "poisson", {"species": 0.5}, eta)
    lam = 2.0 * np.exp(0.25)
    assert distribution_variance(fit, 0.5) == pytest.approx(np.log1p(1.0 / lam))

    row = decompose(fit, frame(np.zeros(5)))
    assert row["var_distribution"] == pytest.approx(np.log1p(1.0 / lam))
    assert row["conditional_r2"] == pytest.approx(0.5 / (0.5 + np.log1p(1.0 / lam)))


def test_binomial_distribution_variance():
    fit = make_fit("site_species", "binomial", {"species": 1.0, "site": 0.5}, np.zeros(3))
    row = decompose(fit, frame(np.zeros(3)))
    assert row["var_distribution"] == pytest.approx(np.pi ** 2 / 3.0)
    assert row["conditional_r2"] == pytest.approx(1.5 / (1.5 + np.pi ** 2 / 3.0))


def test_trait_env_uses_linear_slope_only():
    fit = make_fit("trait_env", "gaussian", {"species": 1.0, "species_env": 1.0}, np.zeros(2), residual_variance=1.0)
    row = decompose(fit, frame([-3.0, 3.0]))
    assert row["var_species_env"] == pytest.approx(9.0)
    assert "var_species_env2" not in row


def test_missing_component_fails_loudly():
    fit = make_fit("full", "gaussian", {"species": 1.0}, np.zeros(2), residual_variance=1.0)
    with pytest.raises(KeyError):
        decompose(fit, frame([0.0, 1.0]))


def test_unknown_model():
    fit = make_fit("spatial_only", "gaussian", {"species": 1.0}, np.zeros(2), residual_variance=1.0)
    with pytest.raises(ValueError):
        decompose(fit, frame([0.0, 1.0]))
