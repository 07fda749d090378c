#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Invasion-Success Simulator for Trait, Environment and Propagule-Pressure Effects

Generates a synthetic dataset of invasion-success scores for invader species
across resident communities, derives a binary success outcome, and hands the
result (plus a phylogenetic correlation matrix) to a downstream hierarchical
Bayesian GLM.

--------------------------------------------------------------------
MODEL
--------------------------------------------------------------------
For a community with environmental value E and an invader with functional
distance d_f, phylogenetic distance d_p and propagule pressure PP:

    S = A(E) × Penalty(E, d_f, d_p) × PP / (1 + C(E)) × Gate(E, d_f)

    A(E)      = a0 + a1·E                                  (environmental scaling)
    d_f*(E)   = df0 + df1·E,    β_f(E) = beta_f0 + beta_f1·E
    d_p*(E)   = dp0 + dp1·E,    β_p(E) = beta_p0 + beta_p1·E
    Penalty   = exp(-β_f·Δf² - β_p·Δp² - λ·Δf·Δp),  Δf = d_f - d_f*, Δp = d_p - d_p*
    Gate      = 1 / (1 + exp(α_f·(|Δf| - df_max)))        (logistic threshold)
    C(E)      = competition index; a constant by default, or any vectorised hook.

A positive λ makes same-direction functional and phylogenetic mismatches
compound the penalty beyond independence.

--------------------------------------------------------------------
PIPELINE
--------------------------------------------------------------------
1) Inputs: E ~ U(0, 5) per community, PP ~ LogNormal(2, 0.5) per
   (community, invader), d_f, d_p ~ U(0, 10) per invader. Each stage draws from
   its own seed so reseeding one never perturbs another.
2) Scores: every (community, invader) pair is scored once, community-major.
3) Derived outputs: global median split into `invasion_success`, then
   N(0, 0.01) jitter on d_f and d_p (labels always come from un-jittered
   scores). A dense (d_p × d_f) surface can be evaluated for one community
   with the very same scoring function.

The Bayesian fit, tree simulation and plotting pipelines live elsewhere; this
module only validates and exports what they consume.
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import os
import re
from dataclasses import dataclass, field, fields, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt


logger = logging.getLogger(__name__)


# ----------------------------
# CONFIGURABLE CONSTANTS
# ----------------------------

DEFAULT_N_COMMUNITIES: int = 10
DEFAULT_N_INVADERS: int = 20
DEFAULT_MASTER_SEED: int = 42

ENV_RANGE: Tuple[float, float] = (0.0, 5.0)      # Uniform bounds for E.
TRAIT_RANGE: Tuple[float, float] = (0.0, 10.0)   # Uniform bounds for d_f and d_p.
PP_LOG_MEAN: float = 2.0                         # Mean of log(PP).
PP_LOG_SD: float = 0.5                           # SD of log(PP).
JITTER_SD: float = 0.01                          # Measurement jitter on trait columns.

GRID_POINTS: int = 100
GRID_PADDING: float = 1.0

# Dense E grid used to check an E-dependent competition hook before any draw.
COMPETITION_CHECK_POINTS: int = 201

# Column order expected by the downstream model fitter.
RECORD_COLUMNS: Tuple[str, ...] = (
    "community", "invader", "E", "d_f", "d_p", "PP", "invasiveness", "invasion_success",
)

CompetitionHook = Union[float, Callable[[np.ndarray], np.ndarray]]


class ConfigurationError(ValueError):
    """Raised when a simulation configuration is rejected before generation."""


# ----------------------------
# CONFIGURATION
# ----------------------------

@dataclass(frozen=True)
class ModelParameters:
    """Global constants of the invasion-success model, read-only for a run.

    `competition` is either the fixed competition index C or a callable C(E)
    that accepts scalars and numpy arrays alike.
    """
    a0: float = 1.0
    a1: float = 0.2
    df0: float = 5.0
    df1: float = 0.3
    beta_f0: float = 0.5
    beta_f1: float = 0.05
    dp0: float = 4.0
    dp1: float = 0.2
    beta_p0: float = 0.3
    beta_p1: float = 0.03
    lam: float = 0.1
    alpha_f: float = 10.0
    df_max: float = 3.0
    competition: CompetitionHook = 2.0

    def competition_index(self, env):
        """Evaluate C(E) for scalar or array E."""
        if callable(self.competition):
            return self.competition(env)
        return np.full_like(np.asarray(env, dtype=float), float(self.competition))


# Names accepted by `--params` and `parameter_sweep` (the hook is set in code).
PARAMETER_NAMES: Tuple[str, ...] = tuple(f.name for f in fields(ModelParameters))


@dataclass(frozen=True)
class RandomSeeds:
    """One seed per generation stage; stages never share a generator."""
    env: int
    pp: int
    traits: int
    jitter: int

    @classmethod
    def from_master(cls, seed: int) -> "RandomSeeds":
        """Spawn four independent child streams from a single master seed."""
        children = np.random.SeedSequence(seed).spawn(4)
        env, pp, traits, jitter = (int(c.generate_state(1)[0]) for c in children)
        return cls(env=env, pp=pp, traits=traits, jitter=jitter)


@dataclass(frozen=True)
class SimulationConfig:
    """Everything a run needs, supplied up front.

    Most fields map directly to CLI flags.
    """
    n_communities: int = DEFAULT_N_COMMUNITIES
    n_invaders: int = DEFAULT_N_INVADERS
    params: ModelParameters = field(default_factory=ModelParameters)
    seeds: RandomSeeds = field(default_factory=lambda: RandomSeeds.from_master(DEFAULT_MASTER_SEED))
    env_low: float = ENV_RANGE[0]
    env_high: float = ENV_RANGE[1]
    pp_log_mean: float = PP_LOG_MEAN
    pp_log_sd: float = PP_LOG_SD
    trait_low: float = TRAIT_RANGE[0]
    trait_high: float = TRAIT_RANGE[1]
    jitter_sd: float = JITTER_SD
    grid_points: int = GRID_POINTS
    grid_padding: float = GRID_PADDING


def check_competition(params: ModelParameters, env: np.ndarray, where: str) -> None:
    """Require C(E) finite and > -1 at every value in `env`."""
    c_vals = np.broadcast_to(np.asarray(params.competition_index(env), dtype=float), np.shape(env))
    if not np.all(np.isfinite(c_vals)) or np.any(c_vals <= -1.0):
        raise ConfigurationError(
            f"Competition index C(E) must be finite and > -1 on {where} "
            f"(min seen {np.nanmin(c_vals):.4g})."
        )


def validate_config(config: SimulationConfig) -> None:
    """Reject a configuration before any random draw happens.

    Checks counts, distribution settings, that every model constant is finite,
    that C(E) > -1 on a dense sample of the environmental range, and that the trait
    penalty is a bounded Gaussian (non-negative steepness, λ² ≤ 4·β_f·β_p) at
    both ends of that range. Steepness is linear in E, so the endpoints bound it.
    """
    if int(config.n_communities) <= 0:
        raise ConfigurationError(f"n_communities must be > 0, got {config.n_communities}.")
    if int(config.n_invaders) <= 0:
        raise ConfigurationError(f"n_invaders must be > 0, got {config.n_invaders}.")
    for name in ("pp_log_sd", "jitter_sd", "grid_padding"):
        val = float(getattr(config, name))
        if not math.isfinite(val) or val < 0:
            raise ConfigurationError(f"{name} must be a finite value ≥ 0, got {val}.")
    for lo_name, hi_name in (("env_low", "env_high"), ("trait_low", "trait_high")):
        lo, hi = float(getattr(config, lo_name)), float(getattr(config, hi_name))
        if not (math.isfinite(lo) and math.isfinite(hi)) or hi <= lo:
            raise ConfigurationError(f"{lo_name} must be below {hi_name}, got [{lo}, {hi}].")
    if not math.isfinite(float(config.pp_log_mean)):
        raise ConfigurationError("pp_log_mean must be finite.")
    if int(config.grid_points) < 2:
        raise ConfigurationError(f"grid_points must be ≥ 2, got {config.grid_points}.")

    p = config.params
    for name in PARAMETER_NAMES:
        if name == "competition" and callable(p.competition):
            continue
        val = float(getattr(p, name))
        if not math.isfinite(val):
            raise ConfigurationError(f"Model parameter '{name}' must be finite, got {val}.")

    env_check = np.linspace(config.env_low, config.env_high, COMPETITION_CHECK_POINTS)
    check_competition(p, env_check, f"[{config.env_low}, {config.env_high}]")

    for env in (float(config.env_low), float(config.env_high)):
        beta_f, beta_p = trait_steepness(env, p)
        if beta_f < 0 or beta_p < 0:
            raise ConfigurationError(
                f"Trait steepness must be ≥ 0; at E={env} got beta_f={beta_f:.4g}, beta_p={beta_p:.4g}."
            )
        if p.lam * p.lam > 4.0 * beta_f * beta_p:
            raise ConfigurationError(
                f"Interaction lam={p.lam} makes the trait penalty unbounded at E={env} "
                f"(needs lam² ≤ 4·beta_f·beta_p = {4.0 * beta_f * beta_p:.4g})."
            )


# ----------------------------
# INPUT GENERATION
# ----------------------------

@dataclass
class SimulationInputs:
    """Random inputs for one run.

    Arrays are sized as: env (Nc,), pp (Nc, Ni), d_f and d_p (Ni,).
    """
    communities: List[str]
    invaders: List[str]
    env: np.ndarray
    pp: np.ndarray
    d_f: np.ndarray
    d_p: np.ndarray

    def env_by_community(self) -> Dict[str, float]:
        return {c: float(e) for c, e in zip(self.communities, self.env)}

    def traits_by_invader(self) -> Dict[str, Tuple[float, float]]:
        return {inv: (float(f), float(p)) for inv, f, p in zip(self.invaders, self.d_f, self.d_p)}

    def pp_for(self, community: str, invader: str) -> float:
        return float(self.pp[self.community_index(community), self.invader_index(invader)])

    def community_index(self, community: str) -> int:
        try:
            return self.communities.index(community)
        except ValueError:
            raise KeyError(f"Unknown community '{community}'.") from None

    def invader_index(self, invader: str) -> int:
        try:
            return self.invaders.index(invader)
        except ValueError:
            raise KeyError(f"Unknown invader '{invader}'.") from None


def generate_inputs(config: SimulationConfig) -> SimulationInputs:
    """Draw E, PP and the invader traits, each from its own seeded stream."""
    validate_config(config)
    nc, ni = int(config.n_communities), int(config.n_invaders)
    logger.debug("Seed streams: %s", config.seeds)

    rng_env = np.random.default_rng(config.seeds.env)
    rng_pp = np.random.default_rng(config.seeds.pp)
    rng_traits = np.random.default_rng(config.seeds.traits)

    env = rng_env.uniform(config.env_low, config.env_high, size=nc)
    # The range check above is sampled; a hook must also hold at the drawn values.
    check_competition(config.params, env, "the generated community environments")
    pp = rng_pp.lognormal(mean=config.pp_log_mean, sigma=config.pp_log_sd, size=(nc, ni))
    d_f = rng_traits.uniform(config.trait_low, config.trait_high, size=ni)
    d_p = rng_traits.uniform(config.trait_low, config.trait_high, size=ni)

    return SimulationInputs(
        communities=[f"C{i + 1}" for i in range(nc)],
        invaders=[f"I{j + 1}" for j in range(ni)],
        env=env,
        pp=pp,
        d_f=d_f,
        d_p=d_p,
    )


# ----------------------------
# SCORING FUNCTION
# ----------------------------

def _as_output(x: np.ndarray):
    """Return a Python float for 0-d results, the array otherwise."""
    return float(x) if np.ndim(x) == 0 else x


def environmental_scaling(env, params: ModelParameters):
    """A(E) = a0 + a1·E."""
    return params.a0 + params.a1 * np.asarray(env, dtype=float)


def trait_optima(env, params: ModelParameters):
    """Optimal functional and phylogenetic distances (d_f*, d_p*) at E."""
    env = np.asarray(env, dtype=float)
    return params.df0 + params.df1 * env, params.dp0 + params.dp1 * env


def trait_steepness(env, params: ModelParameters):
    """Penalty steepness (β_f, β_p) at E."""
    env = np.asarray(env, dtype=float)
    return params.beta_f0 + params.beta_f1 * env, params.beta_p0 + params.beta_p1 * env


def trait_mismatch_penalty(env, d_f, d_p, params: ModelParameters):
    """Bivariate Gaussian penalty in distance-from-optimum space.

    exp(-β_f·Δf² - β_p·Δp² - λ·Δf·Δp). Equals 1 at the optimum.
    """
    opt_f, opt_p = trait_optima(env, params)
    beta_f, beta_p = trait_steepness(env, params)
    dev_f = np.asarray(d_f, dtype=float) - opt_f
    dev_p = np.asarray(d_p, dtype=float) - opt_p
    with np.errstate(over="ignore", invalid="ignore"):
        # Zero coefficients contribute nothing, even against an overflowed deviation.
        quad_f = np.where(beta_f == 0, 0.0, beta_f * dev_f ** 2)
        quad_p = np.where(beta_p == 0, 0.0, beta_p * dev_p ** 2)
        cross = np.where(params.lam == 0, 0.0, params.lam * dev_f * dev_p)
        exponent = -quad_f - quad_p - cross
        # inf - inf only arises from overflowed mismatch; the bounded form sends it to -inf.
        exponent = np.where(np.isnan(exponent), -np.inf, exponent)
        return np.exp(exponent)


def propagule_effect(env, pp, params: ModelParameters):
    """PP / (1 + C(E))."""
    return np.asarray(pp, dtype=float) / (1.0 + np.asarray(params.competition_index(env), dtype=float))


def threshold_gate(env, d_f, params: ModelParameters):
    """Logistic gate on absolute functional mismatch, 0.5 at exactly df_max.

    Overflow of the exponential saturates the gate to 0.
    """
    opt_f, _ = trait_optima(env, params)
    mismatch = np.abs(np.asarray(d_f, dtype=float) - opt_f)
    with np.errstate(over="ignore"):
        return 1.0 / (1.0 + np.exp(params.alpha_f * (mismatch - params.df_max)))


def invasion_score(env, d_f, d_p, pp, params: ModelParameters):
    """Invasiveness S(E, d_f, d_p, PP) ≥ 0.

    Inputs broadcast against each other, so the same call serves single
    records and dense grids. Scalars in, float out.
    """
    score = (
        environmental_scaling(env, params)
        * trait_mismatch_penalty(env, d_f, d_p, params)
        * propagule_effect(env, pp, params)
        * threshold_gate(env, d_f, params)
    )
    return _as_output(score)


def score_components(env, d_f, d_p, pp, params: ModelParameters) -> Dict[str, object]:
    """The four multiplicative factors of `invasion_score`, keyed by name."""
    return {
        "scaling": _as_output(environmental_scaling(env, params)),
        "penalty": _as_output(trait_mismatch_penalty(env, d_f, d_p, params)),
        "propagule": _as_output(propagule_effect(env, pp, params)),
        "gate": _as_output(threshold_gate(env, d_f, params)),
    }


# ----------------------------
# DATASET ASSEMBLY & POST-PROCESSING
# ----------------------------

def assemble_dataset(inputs: SimulationInputs, params: ModelParameters) -> pd.DataFrame:
    """Score every (community, invader) pair; one row each, community-major."""
    nc, ni = len(inputs.communities), len(inputs.invaders)
    env = np.repeat(inputs.env, ni)
    d_f = np.tile(inputs.d_f, nc)
    d_p = np.tile(inputs.d_p, nc)
    pp = inputs.pp.reshape(-1)

    table = pd.DataFrame({
        "community": np.repeat(inputs.communities, ni),
        "invader": np.tile(inputs.invaders, nc),
        "E": env,
        "d_f": d_f,
        "d_p": d_p,
        "PP": pp,
        "invasiveness": np.asarray(invasion_score(env, d_f, d_p, pp, params), dtype=float),
    })
    return table


def success_threshold(table: pd.DataFrame) -> float:
    """Median invasiveness over the whole table, ignoring missing values."""
    return float(table["invasiveness"].median(skipna=True))


def assign_success_labels(table: pd.DataFrame) -> pd.DataFrame:
    """Global median split: 1 if invasiveness > median, else 0 (ties get 0).

    Needs the complete table; relabel after adding or removing records.
    """
    median = success_threshold(table)
    out = table.copy()
    out["invasion_success"] = (out["invasiveness"] > median).astype(int)
    return out


def jitter_traits(table: pd.DataFrame, seed: Optional[int], sd: float = JITTER_SD) -> pd.DataFrame:
    """Add independent N(0, sd) noise to d_f and d_p of every record.

    Only labelled tables are accepted, so labels always reflect the
    un-jittered scores. Invasiveness is left untouched.
    """
    if "invasion_success" not in table.columns:
        raise ValueError("Assign success labels before jittering trait columns.")
    if sd < 0:
        raise ValueError(f"Jitter sd must be ≥ 0, got {sd}.")
    rng = np.random.default_rng(seed)
    noise = rng.normal(0.0, sd, size=(len(table), 2))
    out = table.copy()
    out["d_f"] = out["d_f"].to_numpy(dtype=float) + noise[:, 0]
    out["d_p"] = out["d_p"].to_numpy(dtype=float) + noise[:, 1]
    return out


# ----------------------------
# GRID EVALUATION
# ----------------------------

@dataclass
class GridSurface:
    """Invasiveness over a (d_p × d_f) grid for one community.

    `scores` has shape (len(d_p_grid), len(d_f_grid)): rows follow d_p,
    columns follow d_f.
    """
    community: str
    env: float
    pp: float
    d_f_grid: np.ndarray
    d_p_grid: np.ndarray
    scores: np.ndarray


def evaluate_grid(inputs: SimulationInputs,
                  params: ModelParameters,
                  community: str,
                  n_points: int = GRID_POINTS,
                  padding: float = GRID_PADDING,
                  d_f_grid: Optional[Sequence[float]] = None,
                  d_p_grid: Optional[Sequence[float]] = None,
                  pp: Optional[float] = None) -> GridSurface:
    """Evaluate `invasion_score` on a dense trait grid for one community.

    E is the community's value and PP the mean over its invaders unless `pp`
    is given. Default axes span the generator traits ± `padding`.
    """
    i = inputs.community_index(community)
    env = float(inputs.env[i])
    pp_val = float(np.mean(inputs.pp[i])) if pp is None else float(pp)

    if d_f_grid is None:
        d_f_grid = np.linspace(np.min(inputs.d_f) - padding, np.max(inputs.d_f) + padding, n_points)
    if d_p_grid is None:
        d_p_grid = np.linspace(np.min(inputs.d_p) - padding, np.max(inputs.d_p) + padding, n_points)
    d_f_grid = np.asarray(d_f_grid, dtype=float)
    d_p_grid = np.asarray(d_p_grid, dtype=float)

    df_mesh, dp_mesh = np.meshgrid(d_f_grid, d_p_grid)  # (len(d_p), len(d_f))
    scores = np.asarray(invasion_score(env, df_mesh, dp_mesh, pp_val, params), dtype=float)

    return GridSurface(
        community=community,
        env=env,
        pp=pp_val,
        d_f_grid=d_f_grid,
        d_p_grid=d_p_grid,
        scores=scores,
    )


# ----------------------------
# PIPELINE
# ----------------------------

@dataclass
class SimulationResults:
    """Outputs from a single run of the simulator.

    `raw_table` is the scored table before labelling and jitter; `table` is
    the labelled, jittered dataset handed to the model fitter.
    """
    inputs: SimulationInputs
    raw_table: pd.DataFrame
    table: pd.DataFrame
    median: float
    surface: Optional[GridSurface] = None


def run_pipeline(config: SimulationConfig, grid_community: Optional[str] = None) -> SimulationResults:
    """Generate inputs, score, label, jitter and optionally evaluate a grid."""
    inputs = generate_inputs(config)
    logger.info("Generated inputs for %d communities × %d invaders",
                len(inputs.communities), len(inputs.invaders))

    raw = assemble_dataset(inputs, config.params)
    median = success_threshold(raw)
    labelled = assign_success_labels(raw)
    logger.info("Scored %d records; median invasiveness %.4g", len(raw), median)

    table = jitter_traits(labelled, seed=config.seeds.jitter, sd=config.jitter_sd)

    surface = None
    if grid_community is not None:
        surface = evaluate_grid(inputs, config.params, grid_community,
                                n_points=config.grid_points, padding=config.grid_padding)
        logger.info("Evaluated %s grid for community %s", surface.scores.shape, grid_community)

    return SimulationResults(inputs=inputs, raw_table=raw, table=table, median=median, surface=surface)


# ----------------------------
# REPORTING
# ----------------------------

def summarize(results: SimulationResults) -> Dict:
    """Summarize the labelled dataset.

    Returns a JSON-serializable dict suitable for `--report_json`. A
    degenerate split (every label identical) is flagged, not raised.
    """
    table = results.table
    scores = table["invasiveness"].to_numpy(dtype=float)
    labels = table["invasion_success"].to_numpy(dtype=int)
    degenerate = bool(np.all(labels == labels[0]))
    if degenerate:
        logger.warning("Median split is degenerate: every record has invasion_success=%d", labels[0])

    by_community = table.groupby("community", sort=False)["invasion_success"].mean()
    env = results.inputs.env_by_community()

    return {
        "dataset": {
            "n_records": int(len(table)),
            "n_communities": len(results.inputs.communities),
            "n_invaders": len(results.inputs.invaders),
            "median_invasiveness": float(results.median),
            "success_rate": float(labels.mean()),
            "degenerate": degenerate,
        },
        "invasiveness": {
            "mean": float(np.mean(scores)),
            "std": float(np.std(scores)),
            "min": float(np.min(scores)),
            "max": float(np.max(scores)),
        },
        "communities": [
            {"community": c, "env": env[c], "success_rate": float(r)}
            for c, r in by_community.items()
        ],
    }


def print_explain_community(results: SimulationResults,
                            params: ModelParameters,
                            community: str) -> None:
    """Print the per-invader factor breakdown for one community (un-jittered)."""
    i = results.inputs.community_index(community)
    env = float(results.inputs.env[i])
    print(f"\nFactor breakdown for {community} (E={env:.3f}):")
    for j, inv in enumerate(results.inputs.invaders):
        d_f = float(results.inputs.d_f[j])
        d_p = float(results.inputs.d_p[j])
        pp = float(results.inputs.pp[i, j])
        comp = score_components(env, d_f, d_p, pp, params)
        s = invasion_score(env, d_f, d_p, pp, params)
        print(f"  - {inv:6s}  A≈{comp['scaling']:6.3f}  Penalty≈{comp['penalty']:8.2e}  "
              f"PP≈{comp['propagule']:7.3f}  Gate≈{comp['gate']:6.3f}  S={s:9.3e}")


def plot_surface(surface: GridSurface, path: str = "invasion_surface.png") -> None:
    """Filled contour of a grid surface (saved to file)."""
    plt.figure(figsize=(7, 6))
    cs = plt.contourf(surface.d_f_grid, surface.d_p_grid, surface.scores, levels=30)
    plt.colorbar(cs, label="Invasiveness")
    plt.xlabel("Functional distance d_f")
    plt.ylabel("Phylogenetic distance d_p")
    plt.title(f"Invasiveness surface, {surface.community} (E={surface.env:.2f}, PP={surface.pp:.2f})")
    plt.tight_layout()
    plt.savefig(path, dpi=144)
    plt.close()


# ----------------------------
# DOWNSTREAM HAND-OFF
# ----------------------------

def validate_phylo_corr(corr: pd.DataFrame, invaders: Sequence[str], atol: float = 1e-8) -> pd.DataFrame:
    """Check a phylogenetic correlation matrix and reorder it to `invaders`.

    The matrix must be labelled by invader names on both axes, symmetric and
    have a unit diagonal.
    """
    names = list(invaders)
    if corr.index.has_duplicates or corr.columns.has_duplicates:
        raise ValueError("Correlation matrix has duplicated labels.")
    if set(corr.index) != set(names) or set(corr.columns) != set(names):
        missing = sorted(set(names) - set(corr.index) | set(names) - set(corr.columns))
        extra = sorted((set(corr.index) | set(corr.columns)) - set(names))
        raise ValueError(f"Correlation labels must match invaders; missing={missing}, extra={extra}.")
    ordered = corr.loc[names, names].astype(float)
    mat = ordered.to_numpy()
    if not np.allclose(mat, mat.T, atol=atol):
        raise ValueError("Correlation matrix must be symmetric.")
    if not np.allclose(np.diag(mat), 1.0, atol=atol):
        raise ValueError("Correlation matrix must have a unit diagonal.")
    return ordered


def load_phylo_corr(path: str) -> pd.DataFrame:
    """Read a square correlation matrix CSV; first column holds the row labels."""
    corr = pd.read_csv(path, index_col=0)
    corr.index = corr.index.astype(str)
    corr.columns = corr.columns.astype(str)
    return corr


def export_model_inputs(table: pd.DataFrame,
                        directory: str,
                        corr: Optional[pd.DataFrame] = None) -> Dict[str, str]:
    """Write the dataset (and correlation matrix, if given) for the model fitter."""
    os.makedirs(directory, exist_ok=True)
    paths = {"data": os.path.join(directory, "invasion_data.csv")}
    table.loc[:, list(RECORD_COLUMNS)].to_csv(paths["data"], index=False)
    if corr is not None:
        invaders = list(dict.fromkeys(table["invader"]))
        paths["phylo_corr"] = os.path.join(directory, "phylo_corr.csv")
        validate_phylo_corr(corr, invaders).to_csv(paths["phylo_corr"])
    return paths


# ----------------------------
# SENSITIVITY ANALYSIS (optional)
# ----------------------------

def parameter_sweep(config: SimulationConfig,
                    name: str,
                    values: Sequence[float]) -> List[Tuple[str, Dict]]:
    """What-if analysis over one model constant.

    Seeds are held fixed so only the parameter moves. Returns list of
    (label, summary_dict).
    """
    if name not in PARAMETER_NAMES:
        raise ValueError(f"Unknown parameter '{name}'. Allowed: {PARAMETER_NAMES}")
    out: List[Tuple[str, Dict]] = []
    for v in values:
        cfg = replace(config, params=replace(config.params, **{name: float(v)}))
        res = run_pipeline(cfg)
        out.append((f"{name}={v:g}", summarize(res)))
    return out


# ----------------------------
# PARSERS
# ----------------------------

def parse_keyvals(spec: Optional[str],
                  allowed_keys: Optional[Tuple[str, ...]] = None) -> Dict[str, float]:
    """Parse comma/semicolon-separated `key=value` pairs into a float dict.

    Example: "lam=0.2,alpha_f=5". Keys are case-sensitive parameter names;
    unknown keys are rejected if `allowed_keys` is provided.
    """
    if not spec:
        return {}
    parts = re.split(r"[;,]\s*", spec.strip())
    out: Dict[str, float] = {}
    for p in parts:
        if not p:
            continue
        if "=" not in p:
            raise ValueError(f"Expected 'key=value' pairs, got '{p}'.")
        k, v = p.split("=", 1)
        key = k.strip()
        if allowed_keys and key not in allowed_keys:
            raise ValueError(f"Unknown key '{key}'. Allowed: {allowed_keys}")
        try:
            val = float(v.strip())
        except ValueError:
            raise ValueError(f"Value for '{key}' must be numeric, got '{v}'.") from None
        out[key] = val
    return out


def parse_sweep(spec: str) -> Tuple[str, List[float]]:
    """Parse a sweep like "lam=0|0.1|0.2" into (name, values)."""
    m = re.match(r"^\s*(\w+)\s*=\s*(.+)$", spec or "")
    if not m:
        raise ValueError(f"Could not parse sweep '{spec}'. Use 'name=v1|v2|...'.")
    name = m.group(1)
    if name not in PARAMETER_NAMES:
        raise ValueError(f"Unknown parameter '{name}'. Allowed: {PARAMETER_NAMES}")
    try:
        values = [float(v) for v in m.group(2).split("|") if v.strip()]
    except ValueError:
        raise ValueError(f"Sweep values for '{name}' must be numeric, got '{m.group(2)}'.") from None
    if not values:
        raise ValueError(f"Sweep for '{name}' has no values.")
    return name, values


# ----------------------------
# CLI
# ----------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "Simulate invasion-success scores for invaders across communities from "
            "environment, trait mismatch, propagule pressure and a threshold gate, "
            "then derive a median-split success label for downstream modelling."
        )
    )
    # Design
    p.add_argument("--n_communities", type=int, default=DEFAULT_N_COMMUNITIES, help="Number of communities (>0).")
    p.add_argument("--n_invaders", type=int, default=DEFAULT_N_INVADERS, help="Number of invader species (>0).")
    # Random
    p.add_argument(
        "--seed", type=int, default=DEFAULT_MASTER_SEED,
        help="Master seed; spawns independent env/PP/trait/jitter streams."
    )
    for stage in ("env", "pp", "traits", "jitter"):
        p.add_argument(f"--seed_{stage}", type=int, default=None,
                       help=f"Override the {stage} stream seed only.")
    # Model
    p.add_argument(
        "--params", type=str, default=None,
        help=(
            'Model constants, e.g. "lam=0.2,alpha_f=5,competition=1.5". '
            f"Keys: {', '.join(PARAMETER_NAMES)}."
        ),
    )
    # Outputs
    p.add_argument("--grid_community", type=str, default=None, help="Community to evaluate on a dense trait grid.")
    p.add_argument("--plot", action="store_true", help='Save the grid surface to "invasion_surface.png".')
    p.add_argument("--report_json", type=str, default=None, help="Path to save summary JSON.")
    p.add_argument("--report_csv", type=str, default=None, help="Path to save the full labelled dataset CSV.")
    p.add_argument("--phylo_corr", type=str, default=None,
                   help="CSV phylogenetic correlation matrix (invader names on both axes) to validate and export.")
    p.add_argument("--export_dir", type=str, default=None, help="Directory for model-fitter inputs.")
    p.add_argument("--explain", type=str, default=None, metavar="COMMUNITY",
                   help="Print a per-invader factor breakdown for one community.")
    p.add_argument("--sweep", type=str, default=None,
                   help='One-parameter what-if analysis, e.g. "lam=0|0.1|0.2".')
    p.add_argument("--verbose", action="store_true", help="Log pipeline stages.")
    return p


def config_from_args(args: argparse.Namespace) -> SimulationConfig:
    """Build a validated SimulationConfig from parsed CLI arguments."""
    seeds = RandomSeeds.from_master(args.seed)
    overrides = {stage: getattr(args, f"seed_{stage}") for stage in ("env", "pp", "traits", "jitter")}
    seeds = replace(seeds, **{k: v for k, v in overrides.items() if v is not None})

    params = replace(ModelParameters(), **parse_keyvals(args.params, allowed_keys=PARAMETER_NAMES))
    config = SimulationConfig(
        n_communities=int(args.n_communities),
        n_invaders=int(args.n_invaders),
        params=params,
        seeds=seeds,
    )
    validate_config(config)
    return config


def main(argv: Optional[Sequence[str]] = None):
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = config_from_args(args)
    grid_community = args.grid_community
    if args.plot and grid_community is None:
        grid_community = "C1"

    results = run_pipeline(config, grid_community=grid_community)
    summary = summarize(results)

    # Human-readable summary
    ds = summary["dataset"]
    inv = summary["invasiveness"]
    print(f"Records: {ds['n_records']} ({ds['n_communities']} communities × {ds['n_invaders']} invaders)")
    print(f"Median invasiveness: {ds['median_invasiveness']:.4g}")
    print(f"Invasiveness mean={inv['mean']:.4g}  std={inv['std']:.4g}  range=[{inv['min']:.4g}, {inv['max']:.4g}]")
    print(f"Success rate: {ds['success_rate']:.1%}" + ("  (degenerate split)" if ds["degenerate"] else ""))

    print("\nSuccess rate by community:")
    for row in summary["communities"]:
        print(f"  - {row['community']:6s} E={row['env']:5.2f}  success={row['success_rate']:.1%}")

    if args.explain:
        print_explain_community(results, config.params, args.explain)

    if results.surface is not None:
        s = results.surface
        print(f"\nGrid for {s.community}: shape={s.scores.shape}, peak invasiveness={float(np.max(s.scores)):.4g}")
        if args.plot:
            plot_surface(s, path="invasion_surface.png")
            print("Saved plot: invasion_surface.png")

    if args.report_json:
        with open(args.report_json, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2)
        print(f"Saved JSON report to: {args.report_json}")

    if args.report_csv:
        results.table.loc[:, list(RECORD_COLUMNS)].to_csv(args.report_csv, index=False)
        print(f"Saved dataset CSV to: {args.report_csv}")

    corr = None
    if args.phylo_corr:
        corr = validate_phylo_corr(load_phylo_corr(args.phylo_corr), results.inputs.invaders)
    if args.export_dir:
        paths = export_model_inputs(results.table, args.export_dir, corr=corr)
        print(f"Exported model inputs: {', '.join(paths.values())}")

    if args.sweep:
        name, values = parse_sweep(args.sweep)
        print(f"\n--- Sweep over {name} ---")
        for label, summ in parameter_sweep(config, name, values):
            d = summ["dataset"]
            print(f"{label:>16s}: median S = {d['median_invasiveness']:.4g}, "
                  f"mean S = {summ['invasiveness']['mean']:.4g}")


if __name__ == "__main__":
    main()
