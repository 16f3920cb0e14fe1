#!/usr/bin/env python3
"""
Marginal / conditional R² (Nakagawa & Schielzeth 2013; Nakagawa, Johnson &
Schielzeth 2017) for the six model shapes in glmm_formulas.

    var_fixed   = var(X beta)
    var_random  = sum of random-term variances; an uncorrelated random slope on
                  covariate z contributes sigma² * mean(z²)
    var_dist    = poisson:  log(1 + 1/lambda), lambda = exp(mean(X beta) + var_random / 2)
                  binomial: pi² / 3
                  gaussian: residual variance

    R²_marginal    = var_fixed / (var_fixed + var_random + var_dist)
    R²_conditional = (var_fixed + var_random) / (var_fixed + var_random + var_dist)

One function per model shape; each lists the random terms it expects so a
fit of the wrong shape fails loudly instead of silently dropping a term.
"""

import numpy as np

from fit_glmm import FitSummary


def fixed_variance(fit: FitSummary) -> float:
    return float(np.var(np.asarray(fit.fixed_linear_predictor, dtype=float)))


def distribution_variance(fit: FitSummary, var_random: float) -> float:
    if fit.family == "poisson":
        eta_bar = float(np.mean(fit.fixed_linear_predictor))
        lam = np.exp(eta_bar + 0.5 * var_random)
        return float(np.log1p(1.0 / lam))
    if fit.family == "binomial":
        return float(np.pi ** 2 / 3.0)
    if fit.family == "gaussian":
        return float(fit.residual_variance)
    raise ValueError("No distribution-specific variance for family '{}'".format(fit.family))


def partition(fit: FitSummary, components: dict, niche_components=()) -> dict:
    """
    Shared bookkeeping once a shape-specific function has turned its random
    terms into variance contributions on the link scale.
    """
    var_fixed = fixed_variance(fit)
    var_random = float(sum(components.values()))
    var_dist = distribution_variance(fit, var_random)
    total = var_fixed + var_random + var_dist

    row = {
        "model": fit.model,
        "family": fit.family,
        "var_fixed": var_fixed,
        "var_random": var_random,
        "var_distribution": var_dist,
        "var_total": total,
    }
    for name, value in components.items():
        row["var_{}".format(name)] = float(value)

    if total > 0:
        row["marginal_r2"] = var_fixed / total
        row["conditional_r2"] = (var_fixed + var_random) / total
        row["share_fixed"] = var_fixed / total
        row["share_distribution"] = var_dist / total
        for name, value in components.items():
            row["share_{}".format(name)] = float(value) / total
    else:
        row["marginal_r2"] = np.nan
        row["conditional_r2"] = np.nan

    explained = var_fixed + var_random
    niche = var_fixed + float(sum(components[c] for c in niche_components))
    row["niche_share"] = niche / explained if explained > 0 else np.nan

    return row


# ----------------------------
# One decomposition per model shape
# ----------------------------
def r2_species_only(fit, frame):
    components = {
        "species": fit.variance("species"),
    }
    return partition(fit, components)


def r2_site_species(fit, frame):
    components = {
        "species": fit.variance("species"),
        "site": fit.variance("site"),
    }
    return partition(fit, components)


def r2_env_quadratic(fit, frame):
    components = {
        "species": fit.variance("species"),
    }
    return partition(fit, components)


def r2_env_species_slopes(fit, frame):
    env = frame["env"].to_numpy(dtype=float)
    components = {
        "species": fit.variance("species"),
        "species_env": fit.variance("species_env") * float(np.mean(env ** 2)),
        "species_env2": fit.variance("species_env2") * float(np.mean(env ** 4)),
    }
    return partition(fit, components, niche_components=("species_env", "species_env2"))


def r2_trait_env(fit, frame):
    env = frame["env"].to_numpy(dtype=float)
    components = {
        "species": fit.variance("species"),
        "species_env": fit.variance("species_env") * float(np.mean(env ** 2)),
    }
    return partition(fit, components, niche_components=("species_env",))


def r2_full(fit, frame):
    env = frame["env"].to_numpy(dtype=float)
    components = {
        "species": fit.variance("species"),
        "species_env": fit.variance("species_env") * float(np.mean(env ** 2)),
        "species_env2": fit.variance("species_env2") * float(np.mean(env ** 4)),
        "site": fit.variance("site"),
    }
    return partition(fit, components, niche_components=("species_env", "species_env2"))


R2_DECOMPOSITIONS = {
    "species_only": r2_species_only,
    "site_species": r2_site_species,
    "env_quadratic": r2_env_quadratic,
    "env_species_slopes": r2_env_species_slopes,
    "trait_env": r2_trait_env,
    "full": r2_full,
}


def decompose(fit: FitSummary, frame) -> dict:
    if fit.model not in R2_DECOMPOSITIONS:
        raise ValueError("No R² decomposition for model '{}' (expected one of {})".format(
            fit.model, sorted(R2_DECOMPOSITIONS)))
    return R2_DECOMPOSITIONS[fit.model](fit, frame)
