#!/usr/bin/env python3
"""
INI configuration for the tutorial pipeline.

Sections:
    [Landscape]           -> landscape.LandscapeParams
    [Simulation]          -> defaults for every scenario
    [Scenario <name>]     -> per-scenario overrides of [Simulation] -> ScenarioParams
    [Model]               -> fit_glmm.ModelSettings
    [Output]              -> OutputSettings
"""

import configparser
import dataclasses
import os
from dataclasses import dataclass

from fit_glmm import ModelSettings
from landscape import LandscapeParams
from simulate_metacommunity import ScenarioParams


DEFAULT_CONFIG = "metacommunity_glmm.ini"
SCENARIO_PREFIX = "Scenario "

LIST_FIELDS = {"optimizers", "models"}
TRUE_STRINGS = {"1", "yes", "true", "on"}
FALSE_STRINGS = {"0", "no", "false", "off"}


@dataclass(frozen=True)
class OutputSettings:
    outdir: str = "results"
    dpi: int = 200
    plots: bool = True
    animate: bool = False
    gif_interval: int = 120


def get_config(path=DEFAULT_CONFIG):
    if not os.path.exists(path):
        raise FileNotFoundError("Config file not found: {}".format(path))
    config = configparser.ConfigParser()
    config.read(path)
    return config


def split_list(value):
    return [s.strip() for s in str(value).split(",") if s.strip()]


def _to_bool(value):
    v = str(value).strip().lower()
    if v in TRUE_STRINGS:
        return True
    if v in FALSE_STRINGS:
        return False
    raise ValueError("Not a boolean: '{}'".format(value))


def _coerce(cls, raw, **fixed):
    """Build dataclass `cls` from string config values, converting by field type."""
    names = {f.name: f for f in dataclasses.fields(cls)}
    unknown = sorted(set(raw) - set(names))
    if unknown:
        raise ValueError("{}: unknown config keys {}".format(cls.__name__, unknown))

    kwargs = dict(fixed)
    for key, value in raw.items():
        ftype = names[key].type
        if key in LIST_FIELDS:
            kwargs[key] = tuple(split_list(value))
        elif ftype is bool:
            kwargs[key] = _to_bool(value)
        elif ftype is int:
            kwargs[key] = int(float(value))
        elif ftype is float:
            kwargs[key] = float(value)
        else:
            kwargs[key] = str(value).strip()
    return cls(**kwargs)


def _section(config, name):
    if not config.has_section(name):
        return {}
    return dict(config.items(name))


# ----------------------------
# Sections
# ----------------------------
def scenario_names(config):
    return [s[len(SCENARIO_PREFIX):].strip() for s in config.sections() if s.startswith(SCENARIO_PREFIX)]


def scenario_params(config, name, seed=None) -> ScenarioParams:
    section = SCENARIO_PREFIX + name
    if not config.has_section(section):
        raise ValueError("No [{}] section; known scenarios: {}".format(section, scenario_names(config)))

    raw = _section(config, "Simulation")
    raw.update(_section(config, section))
    if seed is not None:
        raw["seed"] = str(seed)
    return _coerce(ScenarioParams, raw, name=name)


def landscape_params(config, seed=None) -> LandscapeParams:
    raw = _section(config, "Landscape")
    if seed is not None:
        raw["seed"] = str(seed)
    return _coerce(LandscapeParams, raw)


def model_settings(config, family=None, models=None) -> ModelSettings:
    raw = _section(config, "Model")
    if family is not None:
        raw["family"] = family
    if models:
        raw["models"] = ",".join(models)
    return _coerce(ModelSettings, raw)


def output_settings(config, outdir=None) -> OutputSettings:
    raw = _section(config, "Output")
    if outdir is not None:
        raw["outdir"] = outdir
    return _coerce(OutputSettings, raw)
