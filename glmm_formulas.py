#!/usr/bin/env python3
"""
The six GLMM shapes compared in the tutorial.

All random terms are independent variance components (uncorrelated intercepts
and slopes), written as statsmodels variance-component formulas:

    species       0 + C(species)          species intercepts (mean abundance differences)
    site          0 + C(site)             site intercepts (site totals, dispersal-driven)
    species_env   0 + C(species):env      species-specific linear niche response
    species_env2  0 + C(species):env2     species-specific curvature (niche width/position)

Models:
    species_only        1                                  | species
    site_species        1                                  | species + site
    env_quadratic       env + I(env ** 2)                  | species
    env_species_slopes  env + I(env ** 2)                  | species + species_env + species_env2
    trait_env           env + I(env ** 2) + trait + env:trait | species + species_env
    full                env + I(env ** 2) + trait + env:trait | species + species_env + species_env2 + site

Every model is nested in `full`.
"""

from collections import OrderedDict
from dataclasses import dataclass


RANDOM_TERMS = OrderedDict([
    ("species", "0 + C(species)"),
    ("site", "0 + C(site)"),
    ("species_env", "0 + C(species):env"),
    ("species_env2", "0 + C(species):env2"),
])

# Random terms that carry environmental (niche) signal
NICHE_TERMS = ("species_env", "species_env2")

RESPONSES = {
    "poisson": "abundance",
    "binomial": "presence",
    "gaussian": "log_abundance",
}

FULL_MODEL = "full"


@dataclass(frozen=True)
class ModelSpec:
    name: str
    fixed: str
    random: tuple
    process: str
    description: str

    def vc_formulas(self):
        return OrderedDict((term, RANDOM_TERMS[term]) for term in self.random)

    @property
    def has_fixed_covariates(self) -> bool:
        return self.fixed.strip() != "1"


MODELS = OrderedDict((m.name, m) for m in [
    ModelSpec(
        name="species_only",
        fixed="1",
        random=("species",),
        process="neutral",
        description="Species differ only in mean abundance",
    ),
    ModelSpec(
        name="site_species",
        fixed="1",
        random=("species", "site"),
        process="neutral",
        description="Species means plus site totals, no environment",
    ),
    ModelSpec(
        name="env_quadratic",
        fixed="env + I(env ** 2)",
        random=("species",),
        process="niche",
        description="Shared unimodal response to the environment",
    ),
    ModelSpec(
        name="env_species_slopes",
        fixed="env + I(env ** 2)",
        random=("species", "species_env", "species_env2"),
        process="niche",
        description="Species-specific quadratic niche responses",
    ),
    ModelSpec(
        name="trait_env",
        fixed="env + I(env ** 2) + trait + env:trait",
        random=("species", "species_env"),
        process="niche",
        description="Trait-mediated environmental response (fourth-corner)",
    ),
    ModelSpec(
        name=FULL_MODEL,
        fixed="env + I(env ** 2) + trait + env:trait",
        random=("species", "species_env", "species_env2", "site"),
        process="niche",
        description="Trait-environment fixed effects, species niches and site totals",
    ),
])


def model_names():
    return list(MODELS.keys())


def get_model(name) -> ModelSpec:
    if name not in MODELS:
        raise ValueError("Unknown model '{}' (expected one of {})".format(name, model_names()))
    return MODELS[name]


def response_for_family(family):
    if family not in RESPONSES:
        raise ValueError("Unknown family '{}' (expected one of {})".format(family, sorted(RESPONSES)))
    return RESPONSES[family]


def build_formula(spec: ModelSpec, family):
    return "{} ~ {}".format(response_for_family(family), spec.fixed)


def is_nested_in(small: ModelSpec, big: ModelSpec) -> bool:
    fixed_small = set(_fixed_terms(small.fixed))
    fixed_big = set(_fixed_terms(big.fixed))
    return fixed_small <= fixed_big and set(small.random) <= set(big.random)


def _fixed_terms(rhs):
    terms = [t.strip().replace(" ", "") for t in rhs.split("+")]
    return [t for t in terms if t and t != "1"]
