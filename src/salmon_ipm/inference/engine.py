"""
Inference-engine boundary.

The orchestrator only talks to engines through the InferenceEngine protocol:

    adapt(n_adapt) -> bool     # one adaptation attempt, True when adapted
    burn_in(n_burn) -> None    # draws run after adaptation and discarded
    sample(n_draws, thin)      # thinned draws per chain, as InferenceData

PyMCEngine maps this onto PyMC's NUTS: adaptation is NUTS tuning, checked
with a short pilot run. Every run of one session starts from the same initial
values with the same seed, so the final run replays the tuning of the
accepted pilot exactly and its first draws are the pilot's draws. Burn-in
and thinning are applied to the draws of the final run, and the retained
draws are checked again before they are returned. Pointwise
log-likelihoods are attached to the result.
"""

import logging
import time
from typing import Dict, Optional, Protocol, Sequence, Tuple

import arviz as az
import numpy as np
import pymc as pm
from pymc.exceptions import SamplingError

from salmon_ipm.config import MCMCConfig
from salmon_ipm.errors import InferenceEngineError
from salmon_ipm.inference.model_builder import LOG_LIK_VARS

logger = logging.getLogger(__name__)

# Exceptions PyMC / PyTensor raise when sampling breaks down.
_ENGINE_FAILURES = (
    SamplingError,
    ArithmeticError,
    ValueError,
    RuntimeError,
)


class InferenceEngine(Protocol):
    """One sampling session for one candidate."""

    def adapt(self, n_adapt: int) -> bool:
        ...

    def burn_in(self, n_burn: int) -> None:
        ...

    def sample(self, n_draws: int, thin: int) -> az.InferenceData:
        ...


def divergence_rate(idata: az.InferenceData) -> float:
    """Fraction of post-tuning transitions flagged divergent."""
    if "sample_stats" not in idata.groups() or "diverging" not in idata.sample_stats:
        return 0.0
    diverging = idata.sample_stats["diverging"]
    return float(diverging.sum().item() / diverging.size)


class PyMCEngine:
    """
    NUTS sampling session for one PyMC model.

    Parameters
    ----------
    model : pm.Model
        Model from ModelBuilder.build()
    initvals : Dict[str, np.ndarray]
        Starting values from ModelBuilder.initial_values()
    config : MCMCConfig
        Chains, seed, target acceptance and divergence tolerance
    candidate : ModelCandidate, optional
        Only used for log messages
    pilot_draws : int
        Draws per chain in each adaptation check. Default 100.
    log_lik_vars : sequence of str
        Observed variables whose pointwise log-likelihood is stored
    """

    def __init__(
        self,
        model: pm.Model,
        initvals: Dict[str, np.ndarray],
        config: MCMCConfig,
        candidate=None,
        pilot_draws: int = 100,
        log_lik_vars: Sequence[str] = LOG_LIK_VARS,
    ) -> None:
        if pilot_draws < 1:
            raise ValueError(f"pilot_draws must be >= 1. Got {pilot_draws}")
        self.model = model
        self.initvals = initvals
        self.config = config
        self.label = getattr(candidate, "candidate_id", "model")
        self.pilot_draws = pilot_draws
        self.log_lik_vars = tuple(log_lik_vars)

        if config.seed is None:
            self.seed = int(np.random.default_rng().integers(2**31 - 1))
        else:
            self.seed = int(config.seed)

        self.n_tune = 0
        self.n_burn = 0
        self.attempts = 0
        self.adapted = False
        self.pilot: Optional[az.InferenceData] = None

    def _check(self, idata: az.InferenceData) -> Tuple[float, bool]:
        """Divergence rate and whether every step size is finite."""
        rate = divergence_rate(idata)
        step_ok = True
        if "step_size" in idata.sample_stats:
            step_ok = bool(np.all(np.isfinite(idata.sample_stats["step_size"].values)))
        return rate, step_ok

    def _run(self, draws: int) -> az.InferenceData:
        try:
            with self.model:
                return pm.sample(
                    draws=draws,
                    tune=self.n_tune,
                    chains=self.config.chains,
                    cores=self.config.cores,
                    initvals=self.initvals,
                    random_seed=self.seed,
                    target_accept=self.config.target_accept,
                    progressbar=False,
                    compute_convergence_checks=False,
                    discard_tuned_samples=True,
                    return_inferencedata=True,
                )
        except _ENGINE_FAILURES as e:
            raise InferenceEngineError(f"{self.label}: sampler failed: {e}") from e

    def adapt(self, n_adapt: int) -> bool:
        """
        Add ``n_adapt`` tuning steps and check adaptation with a pilot run.

        Adaptation counts as achieved when the pilot's divergence rate is
        within ``config.max_divergence_rate`` and all step sizes are finite.
        """
        self.attempts += 1
        self.n_tune += n_adapt
        pilot = self._run(self.pilot_draws)
        self.pilot = pilot

        rate, step_ok = self._check(pilot)
        self.adapted = step_ok and rate <= self.config.max_divergence_rate
        logger.info(
            "%s: adaptation attempt %d (tune=%d) divergence=%.1f%% -> %s",
            self.label, self.attempts, self.n_tune, 100 * rate,
            "adapted" if self.adapted else "not adapted",
        )
        return self.adapted

    def burn_in(self, n_burn: int) -> None:
        if not self.adapted:
            raise InferenceEngineError(f"{self.label}: burn-in requested before adaptation")
        if n_burn < 0:
            raise ValueError(f"n_burn must be >= 0. Got {n_burn}")
        self.n_burn = n_burn

    def sample(self, n_draws: int, thin: int) -> az.InferenceData:
        """
        Final run: discard burn-in, keep every ``thin``-th draw.

        Returns
        -------
        idata : az.InferenceData
            posterior, sample_stats and log_likelihood groups, n_draws per chain
        """
        if not self.adapted:
            raise InferenceEngineError(f"{self.label}: sampling requested before adaptation")

        start = time.time()
        total = self.n_burn + n_draws * thin
        idata = self._run(total)
        idata = idata.isel(draw=slice(self.n_burn, None, thin))

        rate, step_ok = self._check(idata)
        if not step_ok or rate > self.config.max_divergence_rate:
            raise InferenceEngineError(
                f"{self.label}: retained draws not usable "
                f"(divergence rate {rate:.1%}, finite step size: {step_ok})"
            )

        try:
            pm.compute_log_likelihood(
                idata,
                var_names=list(self.log_lik_vars),
                model=self.model,
                extend_inferencedata=True,
                progressbar=False,
            )
        except _ENGINE_FAILURES as e:
            raise InferenceEngineError(f"{self.label}: log-likelihood failed: {e}") from e

        logger.info(
            "%s: sampled %d chains x %d draws (burn-in %d, thin %d) in %.1fs",
            self.label, self.config.chains, n_draws, self.n_burn, thin, time.time() - start,
        )
        return idata

    def __repr__(self) -> str:
        return (
            f"PyMCEngine({self.label}, chains={self.config.chains}, "
            f"tune={self.n_tune}, burn={self.n_burn}, adapted={self.adapted})"
        )
