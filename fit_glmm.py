#!/usr/bin/env python3
"""
Fit one of the six GLMM shapes to a prepared community frame.

Families:
- poisson:  PoissonBayesMixedGLM on abundance (log link)
- binomial: BinomialBayesMixedGLM on presence (logit link)
- gaussian: MixedLM on log1p(abundance), crossed variance components via a
            constant grouping column (re_formula="0")

The Bayesian fits are posterior-mode (fit_map, Laplace) or variational
(fit_vb); both report the ELBO evaluated at the fitted mean/sd, and -2*ELBO
is used as the information criterion. MixedLM fits report AIC (ML only).

Optimizers are tried in the configured order; the first converged fit wins.
Names are statsmodels-style and mapped to scipy methods for the Bayesian fits:
    bfgs -> BFGS, lbfgs -> L-BFGS-B, cg -> CG, nm -> Nelder-Mead, powell -> Powell
"""

import logging
import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from scipy.special import expit
from statsmodels.genmod.bayes_mixed_glm import BinomialBayesMixedGLM, PoissonBayesMixedGLM

from glmm_formulas import ModelSpec, build_formula, model_names
from simulate_metacommunity import GROUP_COL


LOGGER = logging.getLogger(__name__)

FAMILIES = ["poisson", "binomial", "gaussian"]
BAYES_METHODS = ["vb", "map"]

SCIPY_METHODS = {
    "bfgs": "BFGS",
    "lbfgs": "L-BFGS-B",
    "cg": "CG",
    "nm": "Nelder-Mead",
    "powell": "Powell",
}
GRADIENT_OPTIMIZERS = {"bfgs", "lbfgs", "cg"}


class GLMMFitError(RuntimeError):
    """Raised when every configured optimizer failed for a model."""


@dataclass(frozen=True)
class ModelSettings:
    family: str = "poisson"
    bayes_method: str = "vb"
    optimizers: tuple = ("bfgs", "lbfgs", "nm")
    maxiter: int = 1000
    gtol: float = 1e-5
    vcp_p: float = 1.0
    fe_p: float = 2.0
    reml: bool = False
    models: tuple = tuple(model_names())

    def __post_init__(self):
        if self.family not in FAMILIES:
            raise ValueError("family must be one of {}, got '{}'".format(FAMILIES, self.family))
        if self.bayes_method not in BAYES_METHODS:
            raise ValueError("bayes_method must be one of {}, got '{}'".format(BAYES_METHODS, self.bayes_method))
        if not self.optimizers:
            raise ValueError("at least one optimizer is required")
        unknown = [o for o in self.optimizers if o not in SCIPY_METHODS]
        if unknown:
            raise ValueError("Unknown optimizers {} (expected from {})".format(unknown, sorted(SCIPY_METHODS)))
        if not self.models:
            raise ValueError("at least one model is required")
        unknown = [m for m in self.models if m not in model_names()]
        if unknown:
            raise ValueError("Unknown models {} (expected from {})".format(unknown, model_names()))

    @property
    def is_bayes(self) -> bool:
        return self.family != "gaussian"


@dataclass
class FitSummary:
    model: str
    family: str
    formula: str
    optimizer: str
    converged: bool
    n_obs: int
    k_params: int
    fe_params: pd.Series
    fe_se: pd.Series
    variance_components: dict
    fixed_linear_predictor: np.ndarray
    conditional_linear_predictor: np.ndarray
    residual_variance: float = float("nan")
    llf: float = float("nan")
    ic: float = float("nan")
    criterion: str = ""
    warnings: list = field(default_factory=list)

    def variance(self, name) -> float:
        if name not in self.variance_components:
            raise KeyError("Model '{}' has no variance component '{}' (has {})".format(
                self.model, name, sorted(self.variance_components)))
        return float(self.variance_components[name])

    def fitted_mean(self) -> np.ndarray:
        eta = np.asarray(self.conditional_linear_predictor, dtype=float)
        if self.family == "poisson":
            return np.exp(eta)
        if self.family == "binomial":
            return expit(eta)
        return eta


# ----------------------------
# Optimizer options
# ----------------------------
def scipy_method(optimizer):
    return SCIPY_METHODS[optimizer]


def minimizer_options(optimizer, settings: ModelSettings) -> dict:
    opts = {"maxiter": int(settings.maxiter)}
    if optimizer in GRADIENT_OPTIMIZERS:
        opts["gtol"] = float(settings.gtol)
    return opts


def statsmodels_fit_kwargs(optimizer, settings: ModelSettings) -> dict:
    """MixedLM.fit keywords; statsmodels names the L-BFGS gradient tolerance pgtol."""
    kwargs = {"maxiter": int(settings.maxiter)}
    if optimizer in ("bfgs", "cg"):
        kwargs["gtol"] = float(settings.gtol)
    elif optimizer == "lbfgs":
        kwargs["pgtol"] = float(settings.gtol)
    return kwargs


# ----------------------------
# Bayesian GLMMs (poisson / binomial)
# ----------------------------
def _bayes_class(family):
    if family == "poisson":
        return PoissonBayesMixedGLM
    if family == "binomial":
        return BinomialBayesMixedGLM
    raise ValueError("No Bayesian mixed GLM for family '{}'".format(family))


def _bayes_elbo(model, res):
    sd = np.concatenate([res.fe_sd, res.vcp_sd, res.vc_sd])
    if not np.all(np.isfinite(sd)) or np.any(sd <= 0):
        return float("nan")
    return float(model.vb_elbo(res.params, sd))


def _fit_bayes(spec: ModelSpec, formula, frame, settings: ModelSettings, optimizer) -> FitSummary:
    cls = _bayes_class(settings.family)
    model = cls.from_formula(
        formula, spec.vc_formulas(), frame, vcp_p=settings.vcp_p, fe_p=settings.fe_p
    )

    opts = minimizer_options(optimizer, settings)
    if settings.bayes_method == "vb":
        res = model.fit_vb(fit_method=scipy_method(optimizer), minim_opts=opts)
    else:
        res = model.fit_map(method=scipy_method(optimizer), minim_opts=opts)

    retvals = getattr(res, "optim_retvals", None)
    converged = bool(getattr(retvals, "success", True)) and bool(np.all(np.isfinite(res.params)))

    fe_names = list(model.exog_names)
    fe_params = pd.Series(np.asarray(res.fe_mean, dtype=float), index=fe_names)
    fe_se = pd.Series(np.asarray(res.fe_sd, dtype=float), index=fe_names)

    # vcp are posterior log standard deviations
    variances = dict(zip(model.vcp_names, np.exp(2.0 * np.asarray(res.vcp_mean, dtype=float))))

    eta_fixed = np.asarray(np.dot(model.exog, res.fe_mean), dtype=float)
    eta_cond = eta_fixed + np.asarray(model.exog_vc.dot(res.vc_mean), dtype=float).ravel()

    elbo = _bayes_elbo(model, res)

    return FitSummary(
        model=spec.name,
        family=settings.family,
        formula=formula,
        optimizer=optimizer,
        converged=converged,
        n_obs=int(frame.shape[0]),
        k_params=int(len(res.fe_mean) + len(res.vcp_mean)),
        fe_params=fe_params,
        fe_se=fe_se,
        variance_components=variances,
        fixed_linear_predictor=eta_fixed,
        conditional_linear_predictor=eta_cond,
        llf=elbo,
        ic=-2.0 * elbo,
        criterion="-2ELBO",
    )


# ----------------------------
# Gaussian LMM (crossed variance components)
# ----------------------------
def _fit_gaussian(spec: ModelSpec, formula, frame, settings: ModelSettings, optimizer) -> FitSummary:
    model = smf.mixedlm(
        formula,
        frame,
        groups=GROUP_COL,
        re_formula="0",
        vc_formula=dict(spec.vc_formulas()),
    )
    res = model.fit(reml=settings.reml, method=[optimizer], **statsmodels_fit_kwargs(optimizer, settings))

    fe_params = pd.Series(np.asarray(res.fe_params, dtype=float), index=model.exog_names)
    fe_se = pd.Series(np.asarray(res.bse_fe, dtype=float), index=model.exog_names)
    variances = dict(zip(model.exog_vc.names, np.asarray(res.vcomp, dtype=float)))

    eta_fixed = np.asarray(np.dot(model.exog, fe_params.to_numpy()), dtype=float)
    eta_cond = np.asarray(res.fittedvalues, dtype=float)

    llf = float(res.llf)
    aic = float(res.aic) if not settings.reml else float("nan")

    return FitSummary(
        model=spec.name,
        family=settings.family,
        formula=formula,
        optimizer=optimizer,
        converged=bool(res.converged),
        n_obs=int(frame.shape[0]),
        k_params=int(np.asarray(res.params).size + 1),
        fe_params=fe_params,
        fe_se=fe_se,
        variance_components=variances,
        fixed_linear_predictor=eta_fixed,
        conditional_linear_predictor=eta_cond,
        residual_variance=float(res.scale),
        llf=llf,
        ic=aic,
        criterion="AIC",
    )


# ----------------------------
# Fit with optimizer fallback
# ----------------------------
def fit_model(spec: ModelSpec, frame: pd.DataFrame, settings: ModelSettings) -> FitSummary:
    formula = build_formula(spec, settings.family)
    fitter = _fit_bayes if settings.is_bayes else _fit_gaussian

    last = None
    failures = []

    for optimizer in settings.optimizers:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            try:
                summary = fitter(spec, formula, frame, settings, optimizer)
            except (np.linalg.LinAlgError, ValueError, FloatingPointError) as exc:
                failures.append("{}: {}".format(optimizer, exc))
                LOGGER.warning("%s [%s] failed with optimizer %s: %s", spec.name, settings.family, optimizer, exc)
                continue

        summary.warnings = [str(w.message) for w in caught]
        for msg in summary.warnings:
            LOGGER.warning("%s [%s/%s] warning: %s", spec.name, settings.family, optimizer, msg)

        if summary.converged:
            LOGGER.info("%s [%s] converged with %s (%s=%.2f)",
                        spec.name, settings.family, optimizer, summary.criterion, summary.ic)
            return summary

        LOGGER.warning("%s [%s] did not converge with %s; trying next optimizer",
                       spec.name, settings.family, optimizer)
        last = summary

    if last is not None:
        LOGGER.warning("%s [%s]: no optimizer converged; keeping the %s fit", spec.name, settings.family, last.optimizer)
        return last

    raise GLMMFitError("All optimizers failed for model '{}': {}".format(spec.name, "; ".join(failures)))


def fixed_effects_table(summary: FitSummary) -> pd.DataFrame:
    se = summary.fe_se.reindex(summary.fe_params.index)
    df = pd.DataFrame({
        "model": summary.model,
        "term": summary.fe_params.index,
        "estimate": summary.fe_params.to_numpy(dtype=float),
        "se": se.to_numpy(dtype=float),
    })
    df["z"] = df["estimate"] / df["se"].replace(0, np.nan)
    return df


def variance_components_table(summary: FitSummary) -> pd.DataFrame:
    rows = [{"model": summary.model, "component": k, "variance": float(v)}
            for k, v in summary.variance_components.items()]
    if summary.family == "gaussian":
        rows.append({"model": summary.model, "component": "residual", "variance": summary.residual_variance})
    return pd.DataFrame(rows)
