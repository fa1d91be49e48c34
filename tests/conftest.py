"""Shared fixtures: synthetic observations and a scripted inference engine."""

import arviz as az
import numpy as np
import pandas as pd
import pytest

from salmon_ipm.alignment.aligner import DataAligner
from salmon_ipm.config import CandidateConfig, MCMCConfig, RunConfig
from salmon_ipm.errors import InferenceEngineError
from salmon_ipm.simulation.simulator import PopulationSimulator

FIRST_YEAR = 2000
N_YRS = 15


def make_idata(n_esc, n_age, chains=2, draws=200, loc=-3.0, seed=0, years=None):
    """Posterior with a few parameters plus per-observation log-likelihoods."""
    rng = np.random.default_rng(seed)
    if years is None:
        years = np.arange(FIRST_YEAR, FIRST_YEAR + n_esc)
    posterior = {
        "alpha": rng.lognormal(np.log(2.0), 0.1, (chains, draws)),
        "beta": rng.normal(1e-4, 1e-5, (chains, draws)),
        "phi": rng.normal(0.0, 0.1, (chains, draws)),
        "mat_mean": rng.dirichlet(np.ones(4), (chains, draws)),
        "spawners": rng.lognormal(np.log(7000), 0.1, (chains, draws, len(years))),
    }
    log_likelihood = {
        "esc_obs": rng.normal(loc, 0.5, (chains, draws, n_esc)),
        "age_obs": rng.normal(2 * loc, 0.5, (chains, draws, n_age)),
    }
    return az.from_dict(
        posterior=posterior,
        log_likelihood=log_likelihood,
        coords={"year": years, "age": np.arange(3, 7)},
        dims={"spawners": ["year"], "mat_mean": ["age"]},
    )


class FakeEngine:
    def __init__(self, factory, candidate, mcmc):
        self.factory = factory
        self.candidate_id = candidate.candidate_id
        self.mcmc = mcmc
        self.attempts = 0
        self.burned = None

    def adapt(self, n_adapt):
        self.factory.adapt_calls += 1
        self.attempts += 1
        return self.attempts >= self.factory.adapt_after

    def burn_in(self, n_burn):
        self.burned = n_burn

    def sample(self, n_draws, thin):
        self.factory.sample_calls += 1
        if self.candidate_id in self.factory.fail_ids:
            raise self.factory.failure
        loc = self.factory.locs.get(self.candidate_id, -3.0)
        idata = make_idata(
            self.factory.n_esc, self.factory.n_age,
            chains=self.mcmc.chains, draws=n_draws, loc=loc,
            seed=sum(map(ord, self.candidate_id)),
        )
        if self.candidate_id in self.factory.nan_ids:
            idata.posterior["alpha"][0, 0] = np.nan
        return idata


class FakeEngineFactory:
    """Callable engine factory recording how often the engine was used."""

    def __init__(self, n_esc=N_YRS, n_age=N_YRS, adapt_after=1, fail_ids=(),
                 nan_ids=(), locs=None, failure=None):
        self.n_esc = n_esc
        self.n_age = n_age
        self.adapt_after = adapt_after
        self.fail_ids = set(fail_ids)
        self.nan_ids = set(nan_ids)
        self.locs = dict(locs or {})
        self.failure = failure or InferenceEngineError("engine crashed")
        self.created = []
        self.adapt_calls = 0
        self.sample_calls = 0

    def __call__(self, model, initvals, mcmc, candidate=None):
        engine = FakeEngine(self, candidate, mcmc)
        self.created.append(candidate.candidate_id)
        return engine


@pytest.fixture
def simulated():
    sim = PopulationSimulator(age_min=3, age_max=6, n_yrs=N_YRS, first_year=FIRST_YEAR)
    return sim.simulate(alpha=2.0, beta=1e-4, sigma_r=0.2, sigma_s=0.1, random_seed=42)


@pytest.fixture
def flow():
    years = np.arange(FIRST_YEAR - 5, FIRST_YEAR + N_YRS + 5)
    values = np.random.default_rng(7).normal(100.0, 20.0, len(years))
    return pd.Series(values, index=years)


@pytest.fixture
def config(tmp_path):
    return RunConfig(
        age_min=3,
        age_max=6,
        candidates=[
            CandidateConfig("flow_a", summary="annual", lag=1),
            CandidateConfig("flow_b", summary="annual", lag=2),
        ],
        mcmc=MCMCConfig(chains=2, n_adapt=50, max_adapt_attempts=3, n_burn=10, n_draws=200),
        cache_dir=str(tmp_path / "fits"),
    )


@pytest.fixture
def aligned(config, simulated, flow):
    return DataAligner(config).align(
        simulated.escapement,
        simulated.harvest,
        simulated.age_comp,
        covariates={"flow_a": flow, "flow_b": flow},
    )
