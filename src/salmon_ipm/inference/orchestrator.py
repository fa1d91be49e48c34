"""
Fit orchestration: adaptation, burn-in and sampling for every candidate.

Per candidate:
1. Look the candidate up in the result store; a hit skips fitting. The
   store key joins the candidate's cache key with a digest of the aligned
   data, MCMC settings and priors, so changed inputs never reuse old fits.
2. Adapt: request ``n_adapt`` tuning steps until the engine reports
   adaptation, at most ``max_adapt_attempts`` times.
3. Burn in, then collect thinned draws.
4. Reject non-finite draws, then persist the result atomically.

A failing candidate is recorded and the run moves on. Candidates are
independent, so with ``n_workers > 1`` they are fitted on separate worker
processes, each building its own model and engine session.
"""

import hashlib
import logging
import time
import traceback
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional

import arviz as az
import numpy as np

from salmon_ipm.alignment.aligner import AlignedData
from salmon_ipm.config import MCMCConfig, RunConfig
from salmon_ipm.errors import CacheCorruptionError, InferenceEngineError
from salmon_ipm.inference.engine import InferenceEngine, PyMCEngine
from salmon_ipm.inference.model_builder import ModelBuilder, ModelCandidate, PriorSpec
from salmon_ipm.inference.store import NetCDFResultStore, ResultStore

logger = logging.getLogger(__name__)

EngineFactory = Callable[..., InferenceEngine]


def _hash_array(hasher, arr) -> None:
    arr_c = np.ascontiguousarray(arr, dtype=np.float64)
    hasher.update(str(arr_c.shape).encode("utf-8"))
    hasher.update(arr_c.tobytes())


def fit_fingerprint(
    data: AlignedData,
    mcmc: MCMCConfig,
    prior_spec: PriorSpec,
    candidate: ModelCandidate,
) -> str:
    """
    Short digest of everything a fit depends on besides the candidate's name.

    Covers the aligned observations, the candidate's own covariate (not the
    other candidates'), the MCMC settings and the prior specification.
    """
    hasher = hashlib.sha256()
    for arr in (data.years, data.escapement, data.harvest, data.age_comp, data.age_obs_idx):
        _hash_array(hasher, arr)
    covariate = data.covariates.get(candidate.covariate_id)
    if covariate is not None:
        _hash_array(hasher, covariate)
    settings = {
        "ages": (data.age_min, data.age_max),
        "mcmc": asdict(mcmc),
        "priors": vars(prior_spec),
    }
    hasher.update(repr(sorted(settings.items())).encode("utf-8"))
    return hasher.hexdigest()[:12]


@dataclass
class FitResult:
    """Posterior draws for one candidate plus sampling metadata."""
    candidate: ModelCandidate
    idata: az.InferenceData
    from_cache: bool = False
    adapt_attempts: int = 0
    sampling_time: float = 0.0

    @property
    def n_chains(self) -> int:
        return int(self.idata.posterior.sizes["chain"])

    @property
    def n_draws(self) -> int:
        return int(self.idata.posterior.sizes["draw"])

    def __repr__(self) -> str:
        source = "cache" if self.from_cache else f"{self.sampling_time:.1f}s"
        return (
            f"FitResult({self.candidate.candidate_id}, chains={self.n_chains}, "
            f"draws={self.n_draws}, {source})"
        )


@dataclass
class CandidateOutcome:
    """Either a FitResult or the reason the candidate failed."""
    candidate: ModelCandidate
    result: Optional[FitResult] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.result is not None


def check_finite_draws(idata: az.InferenceData, label: str) -> None:
    """Raise InferenceEngineError if any posterior draw is NaN or infinite."""
    bad = [
        name for name, values in idata.posterior.data_vars.items()
        if not np.all(np.isfinite(values.values))
    ]
    if bad:
        raise InferenceEngineError(f"{label}: non-finite draws in {bad}")


class FitOrchestrator:
    """
    Drive the inference engine for each candidate with memoization.

    Parameters
    ----------
    config : RunConfig
        MCMC numbers, worker count and cache location
    data : AlignedData
        Aligned inputs shared by all candidates
    store : ResultStore, optional
        Result store. Default: NetCDFResultStore at ``config.cache_dir``.
    engine_factory : callable
        ``engine_factory(model, initvals, mcmc_config, candidate=...)``
        returning an InferenceEngine. Must be picklable when n_workers > 1.
    prior_spec : PriorSpec, optional
        Priors handed to the ModelBuilder
    """

    def __init__(
        self,
        config: RunConfig,
        data: AlignedData,
        store: Optional[ResultStore] = None,
        engine_factory: EngineFactory = PyMCEngine,
        prior_spec: Optional[PriorSpec] = None,
    ) -> None:
        self.config = config
        self.data = data
        self.store = store if store is not None else NetCDFResultStore(config.cache_path)
        self.engine_factory = engine_factory
        self.prior_spec = prior_spec
        self.builder = ModelBuilder(data, prior_spec)

    def store_key(self, candidate: ModelCandidate) -> str:
        """Result-store key: cache key plus a fingerprint of data and settings."""
        digest = fit_fingerprint(
            self.data, self.config.mcmc, self.builder.prior_spec, candidate
        )
        return f"{candidate.cache_key}__{digest}"

    def _load_cached(self, candidate: ModelCandidate) -> Optional[FitResult]:
        key = self.store_key(candidate)
        if not self.store.has(key):
            return None
        try:
            idata = self.store.get(key)
        except CacheCorruptionError as e:
            logger.warning("%s: %s; refitting", candidate.candidate_id, e)
            self.store.discard(key)
            return None
        logger.info("%s: loaded cached result %s", candidate.candidate_id, key)
        attrs = idata.posterior.attrs
        return FitResult(
            candidate=candidate,
            idata=idata,
            from_cache=True,
            adapt_attempts=int(attrs.get("adapt_attempts", 0)),
            sampling_time=float(attrs.get("sampling_time", 0.0)),
        )

    def _adapt(self, engine: InferenceEngine, candidate: ModelCandidate) -> int:
        mcmc = self.config.mcmc
        for attempt in range(1, mcmc.max_adapt_attempts + 1):
            if engine.adapt(mcmc.n_adapt):
                return attempt
            logger.info(
                "%s: not adapted after attempt %d/%d",
                candidate.candidate_id, attempt, mcmc.max_adapt_attempts,
            )
        raise InferenceEngineError(
            f"{candidate.candidate_id}: adaptation not achieved after "
            f"{mcmc.max_adapt_attempts} attempts of {mcmc.n_adapt} steps"
        )

    def _sample(self, candidate: ModelCandidate) -> FitResult:
        mcmc = self.config.mcmc
        model = self.builder.build(candidate)
        initvals = self.builder.initial_values(candidate)

        start = time.time()
        try:
            engine = self.engine_factory(model, initvals, mcmc, candidate=candidate)
            attempts = self._adapt(engine, candidate)
            engine.burn_in(mcmc.n_burn)
            idata = engine.sample(mcmc.n_draws, mcmc.thin)
        except InferenceEngineError:
            raise
        except (ArithmeticError, ValueError, RuntimeError) as e:
            raise InferenceEngineError(f"{candidate.candidate_id}: {type(e).__name__}: {e}") from e
        elapsed = time.time() - start

        check_finite_draws(idata, candidate.candidate_id)
        idata.posterior.attrs.update({
            "candidate_id": candidate.candidate_id,
            "cache_key": self.store_key(candidate),
            "n_burn": mcmc.n_burn,
            "thin": mcmc.thin,
            "adapt_attempts": attempts,
            "sampling_time": elapsed,
        })
        return FitResult(
            candidate=candidate,
            idata=idata,
            adapt_attempts=attempts,
            sampling_time=elapsed,
        )

    def fit_candidate(self, candidate: ModelCandidate) -> FitResult:
        """
        Fit one candidate, or return its cached result.

        Raises
        ------
        InferenceEngineError
            If sampling fails, adaptation is exhausted or draws are non-finite.
        """
        cached = self._load_cached(candidate)
        if cached is not None:
            return cached

        logger.info("%s: fitting", candidate.candidate_id)
        result = self._sample(candidate)
        self.store.put(self.store_key(candidate), result.idata)
        logger.info("%s: fit complete in %.1fs", candidate.candidate_id, result.sampling_time)
        return result

    def fit_isolated(self, candidate: ModelCandidate) -> CandidateOutcome:
        """fit_candidate, with engine failures recorded instead of raised."""
        try:
            return CandidateOutcome(candidate, result=self.fit_candidate(candidate))
        except InferenceEngineError as e:
            logger.warning("%s: fit failed: %s", candidate.candidate_id, e)
            return CandidateOutcome(candidate, error=str(e))

    def run(self, candidates: List[ModelCandidate]) -> List[CandidateOutcome]:
        """
        Fit every candidate; failures never abort the run.

        Returns
        -------
        outcomes : List[CandidateOutcome]
            One outcome per candidate, in input order.
        """
        n_workers = min(self.config.n_workers, len(candidates))
        if n_workers <= 1:
            return [self.fit_isolated(c) for c in candidates]

        logger.info("Fitting %d candidates on %d workers", len(candidates), n_workers)
        outcomes: Dict[str, CandidateOutcome] = {}
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            futures = {
                executor.submit(
                    _fit_worker,
                    (self.config, self.data, self.store, self.engine_factory,
                     self.prior_spec, candidate),
                ): candidate
                for candidate in candidates
            }
            for future in as_completed(futures):
                candidate = futures[future]
                try:
                    outcomes[candidate.cache_key] = future.result()
                except Exception as e:
                    logger.error(
                        "%s: worker crashed: %s\n%s",
                        candidate.candidate_id, e, traceback.format_exc(),
                    )
                    outcomes[candidate.cache_key] = CandidateOutcome(
                        candidate, error=f"worker crashed: {type(e).__name__}: {e}"
                    )
        return [outcomes[c.cache_key] for c in candidates]


def _fit_worker(args) -> CandidateOutcome:
    """Module-level so ProcessPoolExecutor can pickle it."""
    config, data, store, engine_factory, prior_spec, candidate = args
    orchestrator = FitOrchestrator(
        config, data, store=store, engine_factory=engine_factory, prior_spec=prior_spec
    )
    return orchestrator.fit_isolated(candidate)
