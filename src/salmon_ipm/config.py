"""Run configuration for the IPM model-selection pipeline.

A single RunConfig is built per invocation (from code or from a YAML file)
and passed explicitly into the DataAligner and FitOrchestrator. Nothing in
the package reads configuration from globals.

YAML layout::

    first_year: 1978
    last_year: 2018
    age_min: 3
    age_max: 6
    harvest_model: known
    cache_dir: fits
    n_workers: 4
    rhat_threshold: 1.1
    mcmc:
      chains: 4
      n_adapt: 2000
      n_burn: 5000
      n_draws: 1000
      thin: 5
      seed: 666
    candidates:
      - covariate_id: flow_max
        summary: max_7day_mean
        lag: 1
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from salmon_ipm.errors import ModelSpecError

HARVEST_MODELS = ("known", "lognormal")
ZERO_AGE_POLICIES = ("uniform", "drop")


@dataclass
class MCMCConfig:
    """MCMC control numbers shared by every candidate."""
    chains: int = 4
    n_adapt: int = 1000           # tuning steps requested per adaptation attempt
    max_adapt_attempts: int = 5
    n_burn: int = 1000            # post-adaptation draws discarded per chain
    n_draws: int = 1000           # retained draws per chain, after thinning
    thin: int = 1
    cores: int = 1                # chains run in parallel inside one worker
    target_accept: float = 0.9
    max_divergence_rate: float = 0.05
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        for name in ("chains", "n_adapt", "max_adapt_attempts", "n_draws", "thin", "cores"):
            value = getattr(self, name)
            if value < 1:
                raise ValueError(f"{name} must be >= 1. Got {value}")
        if self.n_burn < 0:
            raise ValueError(f"n_burn must be >= 0. Got {self.n_burn}")
        if not (0.5 < self.target_accept < 1.0):
            raise ValueError(f"target_accept must be in (0.5, 1). Got {self.target_accept}")
        if not (0.0 <= self.max_divergence_rate < 1.0):
            raise ValueError(
                f"max_divergence_rate must be in [0, 1). Got {self.max_divergence_rate}"
            )


@dataclass
class CandidateConfig:
    """One covariate hypothesis: which summary of the raw series, at which lag."""
    covariate_id: str
    summary: str = "max_7day_mean"
    lag: int = 1
    summary_kwargs: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.covariate_id or self.covariate_id == "baseline":
            raise ModelSpecError(
                f"covariate_id must be a non-empty name other than 'baseline'. "
                f"Got {self.covariate_id!r}"
            )


@dataclass
class RunConfig:
    """Everything one pipeline invocation needs besides the observations."""
    age_min: int = 3
    age_max: int = 6
    first_year: Optional[int] = None
    last_year: Optional[int] = None
    harvest_model: str = "known"
    zero_age_policy: str = "uniform"
    candidates: List[CandidateConfig] = field(default_factory=list)
    mcmc: MCMCConfig = field(default_factory=MCMCConfig)
    rhat_threshold: float = 1.1
    acf_max_lag: int = 5
    delta_se_multiplier: float = 2.0
    cache_dir: str = "fits"
    n_workers: int = 1

    def __post_init__(self) -> None:
        if self.age_min < 1 or self.age_max < self.age_min:
            raise ModelSpecError(
                f"Need 1 <= age_min <= age_max. Got age_min={self.age_min}, "
                f"age_max={self.age_max}"
            )
        if self.harvest_model not in HARVEST_MODELS:
            raise ModelSpecError(
                f"harvest_model must be one of {HARVEST_MODELS}. Got {self.harvest_model!r}"
            )
        if self.zero_age_policy not in ZERO_AGE_POLICIES:
            raise ModelSpecError(
                f"zero_age_policy must be one of {ZERO_AGE_POLICIES}. "
                f"Got {self.zero_age_policy!r}"
            )
        ids = [c.covariate_id for c in self.candidates]
        if len(set(ids)) != len(ids):
            raise ModelSpecError(f"Duplicate covariate ids in candidate list: {ids}")
        if self.rhat_threshold <= 1.0:
            raise ValueError(f"rhat_threshold must be > 1. Got {self.rhat_threshold}")
        if self.n_workers < 1:
            raise ValueError(f"n_workers must be >= 1. Got {self.n_workers}")

    @property
    def n_ages(self) -> int:
        return self.age_max - self.age_min + 1

    @property
    def cache_path(self) -> Path:
        return Path(self.cache_dir)


def config_from_dict(data: Dict[str, Any]) -> RunConfig:
    """Build a RunConfig from a plain (YAML-decoded) mapping."""
    data = dict(data or {})
    mcmc = MCMCConfig(**(data.pop("mcmc", None) or {}))
    candidates = [CandidateConfig(**c) for c in (data.pop("candidates", None) or [])]
    known = set(RunConfig.__dataclass_fields__)
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown configuration keys: {unknown}")
    return RunConfig(mcmc=mcmc, candidates=candidates, **data)


def load_config(path: Union[str, Path]) -> RunConfig:
    """Load a RunConfig from a YAML file."""
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    return config_from_dict(data)
