"""
Model builder: age-structured integrated population model in PyMC.

Assembles, per candidate, the process and observation model linking latent
recruits, maturation and age-specific returns to escapement and
age-composition data.

Mathematical model (b = brood year, t = calendar year, a = age):
    ln α_b = μ_α [+ γ F_b]                          # covariate candidates only
    ln R_b = ln α_b + ln S_b − β S_b + w_b           # Ricker with AR(1) error
    w_b = φ w_{b−1} + ν_b,  ν_b ~ Normal(0, σ_r)
    w_0 ~ Normal(0, σ_r / sqrt(1 − φ²))              # stationary first step
    μ ~ Dirichlet(1),  π ~ Uniform(π_lo, π_hi)
    p_b ~ Dirichlet(π μ)                             # maturation schedule
    N_{a,t} = R_{t−a} p_{t−a,a}                      # ln N ~ Normal(μ_imp, σ_imp) before first brood
    S_t = Σ_a N_{a,t} − H_t
    ln E_t ~ Normal(ln S_t, σ_s)
    O_t ~ Multinomial(Y_t, N_t / Σ_a N_{a,t})

Latent ln R is a free vector; its density comes from the innovations ν,
recovered vectorially. The map ln R → ν is lower triangular with unit
diagonal (S_b only depends on earlier broods), so no Jacobian term is needed.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
import pymc as pm
import pytensor.tensor as pt

from salmon_ipm.alignment.aligner import AlignedData
from salmon_ipm.config import CandidateConfig, RunConfig, HARVEST_MODELS
from salmon_ipm.errors import ModelSpecError

logger = logging.getLogger(__name__)

BASELINE_ID = "baseline"

# Observed variables whose pointwise log-likelihood is kept for LOO.
LOG_LIK_VARS = ("esc_obs", "age_obs")


class PriorSpec:
    """Specification of priors for model parameters."""

    def __init__(
        self,
        # Productivity and density dependence
        ln_alpha_loc: float = 0.0,
        ln_alpha_scale: float = 2.0,
        beta_scale: Optional[float] = None,
        gamma_scale: float = 1.0,
        # Process and observation error
        phi_bound: float = 0.99,
        sigma_r_scale: float = 1.0,
        sigma_s_scale: float = 0.5,
        sigma_h_scale: float = 0.5,
        # Maturation
        mat_mean_conc: float = 1.0,
        mat_conc_lower: float = 1.0,
        mat_conc_upper: float = 100.0,
        # Returns from broods before the first data year
        imputed_loc: Optional[float] = None,
        imputed_scale: float = 5.0,
        imputed_sigma_scale: float = 2.0,
    ) -> None:
        """
        Initialize prior specification.

        Parameters
        ----------
        ln_alpha_loc, ln_alpha_scale : float
            Normal prior on mean log productivity μ_α.
        beta_scale : float, optional
            HalfNormal scale for density dependence β. If None, 2 / median escapement.
        gamma_scale : float
            Normal scale for the covariate effect γ (covariate is standardized).
        phi_bound : float
            AR(1) coefficient φ ~ Uniform(-phi_bound, phi_bound).
        sigma_r_scale, sigma_s_scale, sigma_h_scale : float
            HalfNormal scales for process, escapement and harvest errors.
        mat_mean_conc : float
            Symmetric Dirichlet hyperprior concentration for mean maturation μ.
        mat_conc_lower, mat_conc_upper : float
            Uniform bounds on maturation concentration π.
        imputed_loc : float, optional
            Prior mean of μ_imp. If None, ln(median escapement / A).
        imputed_scale, imputed_sigma_scale : float
            Prior scales of μ_imp (Normal) and σ_imp (HalfNormal).
        """
        if not (0 < phi_bound < 1):
            raise ModelSpecError(f"phi_bound must be in (0, 1). Got {phi_bound}")
        if not (0 < mat_conc_lower < mat_conc_upper):
            raise ModelSpecError(
                f"Need 0 < mat_conc_lower < mat_conc_upper. "
                f"Got {mat_conc_lower}, {mat_conc_upper}"
            )
        if beta_scale is not None and beta_scale <= 0:
            raise ModelSpecError(f"beta_scale must be positive. Got {beta_scale}")

        self.ln_alpha_loc = ln_alpha_loc
        self.ln_alpha_scale = ln_alpha_scale
        self.beta_scale = beta_scale
        self.gamma_scale = gamma_scale
        self.phi_bound = phi_bound
        self.sigma_r_scale = sigma_r_scale
        self.sigma_s_scale = sigma_s_scale
        self.sigma_h_scale = sigma_h_scale
        self.mat_mean_conc = mat_mean_conc
        self.mat_conc_lower = mat_conc_lower
        self.mat_conc_upper = mat_conc_upper
        self.imputed_loc = imputed_loc
        self.imputed_scale = imputed_scale
        self.imputed_sigma_scale = imputed_sigma_scale

    def __repr__(self) -> str:
        return (
            f"PriorSpec(ln_α~N({self.ln_alpha_loc}, {self.ln_alpha_scale}), "
            f"β_scale={self.beta_scale}, φ_bound={self.phi_bound}, "
            f"σ_r={self.sigma_r_scale}, σ_s={self.sigma_s_scale}, "
            f"π∈[{self.mat_conc_lower}, {self.mat_conc_upper}])"
        )


@dataclass(frozen=True)
class ModelCandidate:
    """One competing model variant: the baseline or a single covariate."""
    candidate_id: str
    covariate_id: Optional[str] = None
    summary: Optional[str] = None
    lag: Optional[int] = None
    harvest_model: str = "known"

    @property
    def is_baseline(self) -> bool:
        return self.covariate_id is None

    @property
    def cache_key(self) -> str:
        key = f"{self.candidate_id}__{self.harvest_model}"
        if not self.is_baseline:
            key = f"{key}__{self.summary}__lag{self.lag}"
        return re.sub(r"[^A-Za-z0-9_.-]", "_", key)

    @classmethod
    def baseline(cls, harvest_model: str = "known") -> "ModelCandidate":
        return cls(candidate_id=BASELINE_ID, harvest_model=harvest_model)

    @classmethod
    def from_config(cls, cfg: CandidateConfig, harvest_model: str = "known") -> "ModelCandidate":
        return cls(
            candidate_id=cfg.covariate_id,
            covariate_id=cfg.covariate_id,
            summary=cfg.summary,
            lag=cfg.lag,
            harvest_model=harvest_model,
        )


def build_candidates(config: RunConfig) -> List[ModelCandidate]:
    """Exactly one baseline plus one candidate per configured covariate."""
    candidates = [ModelCandidate.baseline(config.harvest_model)]
    candidates.extend(
        ModelCandidate.from_config(c, config.harvest_model) for c in config.candidates
    )
    return candidates


class ModelBuilder:
    """
    Integrated population model builder.

    Construction is pure: the same aligned data, candidate and priors always
    yield the same model graph and initial values. No inference happens here.

    Attributes
    ----------
    data : AlignedData
        Aligned observations and covariates
    prior_spec : PriorSpec
        Prior specification
    """

    def __init__(self, data: AlignedData, prior_spec: Optional[PriorSpec] = None) -> None:
        if data.harvest_model not in HARVEST_MODELS:
            raise ModelSpecError(
                f"harvest_model must be one of {HARVEST_MODELS}. Got {data.harvest_model!r}"
            )
        self.data = data
        self.prior_spec = prior_spec or PriorSpec()

        observed = data.escapement[data.esc_obs_idx]
        self._esc_median = float(np.median(observed))

    def _check_candidate(self, candidate: ModelCandidate) -> None:
        if candidate.harvest_model != self.data.harvest_model:
            raise ModelSpecError(
                f"Candidate {candidate.candidate_id!r} uses harvest model "
                f"{candidate.harvest_model!r} but data were aligned for "
                f"{self.data.harvest_model!r}"
            )
        if not candidate.is_baseline and candidate.covariate_id not in self.data.covariates:
            raise ModelSpecError(
                f"Covariate {candidate.covariate_id!r} was not aligned. "
                f"Available: {sorted(self.data.covariates)}"
            )

    @property
    def beta_scale(self) -> float:
        if self.prior_spec.beta_scale is not None:
            return self.prior_spec.beta_scale
        return 2.0 / self._esc_median

    @property
    def imputed_loc(self) -> float:
        if self.prior_spec.imputed_loc is not None:
            return self.prior_spec.imputed_loc
        return float(np.log(self._esc_median / self.data.n_ages))

    def coords(self) -> Dict[str, np.ndarray]:
        d = self.data
        return {
            "year": d.years,
            "brood_year": d.brood_years,
            "age": d.ages,
            "esc_year": d.years[d.esc_obs_idx],
            "age_year": d.years[d.age_obs_idx],
        }

    def _build_productivity(self, candidate: ModelCandidate):
        """
        Log productivity per brood year.

        Returns
        -------
        ln_alpha : TensorVariable
            ln α_b, shape (n_brood,)
        beta : TensorVariable
            Density dependence
        """
        ps = self.prior_spec
        n_brood = self.data.n_brood

        mu_ln_alpha = pm.Normal("mu_ln_alpha", mu=ps.ln_alpha_loc, sigma=ps.ln_alpha_scale)
        pm.Deterministic("alpha", pt.exp(mu_ln_alpha))
        beta = pm.HalfNormal("beta", sigma=self.beta_scale)

        if candidate.is_baseline:
            ln_alpha = mu_ln_alpha * pt.ones(n_brood)
        else:
            covariate = pt.as_tensor_variable(self.data.covariates[candidate.covariate_id])
            gamma = pm.Normal("gamma", mu=0.0, sigma=ps.gamma_scale)
            ln_alpha = mu_ln_alpha + gamma * covariate
        return ln_alpha, beta

    def _build_maturation(self):
        """Hierarchical maturation schedule, shape (n_brood, A), rows sum to 1."""
        ps = self.prior_spec
        n_brood, n_ages = self.data.n_brood, self.data.n_ages

        mat_mean = pm.Dirichlet("mat_mean", a=np.full(n_ages, ps.mat_mean_conc), dims="age")
        mat_conc = pm.Uniform("mat_conc", lower=ps.mat_conc_lower, upper=ps.mat_conc_upper)
        conc = pt.ones((n_brood, 1)) * (mat_conc * mat_mean)[None, :]
        return pm.Dirichlet("mat_prob", a=conc, dims=("brood_year", "age"))

    def _build_age_returns(self, ln_rec, mat_prob):
        """Age-specific returns N[t, a] from brood recruitment and imputed cells."""
        ps = self.prior_spec
        d = self.data

        brood = d.brood_index()
        safe = np.where(brood >= 0, brood, 0)
        age_cols = np.broadcast_to(np.arange(d.n_ages), brood.shape)
        returns = pt.exp(ln_rec)[safe] * mat_prob[safe, age_cols]

        if d.n_imputed > 0:
            rows, cols = np.nonzero(d.imputed_cells)
            imp_mu = pm.Normal("imp_mu", mu=self.imputed_loc, sigma=ps.imputed_scale)
            imp_sigma = pm.HalfNormal("imp_sigma", sigma=ps.imputed_sigma_scale)
            ln_imp = pm.Normal("ln_imp", mu=imp_mu, sigma=imp_sigma, shape=d.n_imputed)
            returns = pt.set_subtensor(returns[rows, cols], pt.exp(ln_imp))

        return pm.Deterministic("age_returns", returns, dims=("year", "age"))

    def _build_harvest(self, run):
        """Spawners after harvest, for the configured harvest model."""
        ps = self.prior_spec
        d = self.data

        if d.harvest_model == "known":
            escaped = run - pt.as_tensor_variable(d.harvest)
            pm.Potential(
                "spawners_positive",
                pt.switch(pt.all(pt.gt(escaped, 0.0)), 0.0, -np.inf),
            )
            escaped = pt.maximum(escaped, 1e-8)
        else:
            h_rate = pm.Beta("h_rate", alpha=1.0, beta=1.0, dims="year")
            sigma_h = pm.HalfNormal("sigma_h", sigma=ps.sigma_h_scale)
            pm.Normal(
                "hrv_obs",
                mu=pt.log(h_rate * run),
                sigma=sigma_h,
                observed=np.log(d.harvest),
                dims="year",
            )
            escaped = run * (1.0 - h_rate)
        return pm.Deterministic("spawners", escaped, dims="year")

    def _build_process(self, ln_rec, ln_alpha, beta, spawners) -> None:
        """Ricker recruitment with AR(1) residuals; stationary first step."""
        ps = self.prior_spec
        n_brood = self.data.n_brood

        phi = pm.Uniform("phi", lower=-ps.phi_bound, upper=ps.phi_bound)
        sigma_r = pm.HalfNormal("sigma_r", sigma=ps.sigma_r_scale)

        s_brood = spawners[:n_brood]
        expected = ln_alpha + pt.log(s_brood) - beta * s_brood
        resid = pm.Deterministic("proc_resid", ln_rec - expected, dims="brood_year")

        innov_first = resid[0]
        innov_rest = resid[1:] - phi * resid[:-1]
        pm.Potential(
            "rec_first",
            pm.logp(pm.Normal.dist(mu=0.0, sigma=sigma_r / pt.sqrt(1.0 - phi ** 2)), innov_first),
        )
        pm.Potential(
            "rec_process",
            pm.logp(pm.Normal.dist(mu=0.0, sigma=sigma_r), innov_rest).sum(),
        )

    def _build_observations(self, age_returns, run, spawners) -> None:
        ps = self.prior_spec
        d = self.data

        sigma_s = pm.HalfNormal("sigma_s", sigma=ps.sigma_s_scale)
        esc_idx = np.asarray(d.esc_obs_idx)
        pm.Normal(
            "esc_obs",
            mu=pt.log(spawners[esc_idx]),
            sigma=sigma_s,
            observed=np.log(d.escapement[esc_idx]),
            dims="esc_year",
        )

        age_idx = np.asarray(d.age_obs_idx)
        props = age_returns[age_idx] / run[age_idx][:, None]
        pm.Multinomial(
            "age_obs",
            n=np.asarray(d.age_total[age_idx]),
            p=props,
            observed=np.asarray(d.age_comp[age_idx]),
            dims=("age_year", "age"),
        )

    def build(self, candidate: ModelCandidate) -> pm.Model:
        """
        Build the full PyMC model for one candidate.

        Parameters
        ----------
        candidate : ModelCandidate
            Baseline or covariate candidate.

        Returns
        -------
        model : pm.Model
            PyMC model ready for inference.

        Raises
        ------
        ModelSpecError
            If the candidate does not match the aligned data.
        """
        self._check_candidate(candidate)

        with pm.Model(coords=self.coords()) as model:
            ln_alpha, beta = self._build_productivity(candidate)
            mat_prob = self._build_maturation()

            # Density supplied by the process potentials below
            ln_rec = pm.Flat("ln_rec", dims="brood_year")
            pm.Deterministic("recruits", pt.exp(ln_rec), dims="brood_year")

            age_returns = self._build_age_returns(ln_rec, mat_prob)
            run = pm.Deterministic("run", age_returns.sum(axis=1), dims="year")
            spawners = self._build_harvest(run)

            self._build_process(ln_rec, ln_alpha, beta, spawners)
            self._build_observations(age_returns, run, spawners)

        logger.debug("Built model for %s with %d free variables",
                     candidate.candidate_id, len(model.free_RVs))
        return model

    def initial_values(self, candidate: ModelCandidate) -> Dict[str, np.ndarray]:
        """
        Starting point for every chain.

        Recruitment starts at median escapement plus the largest harvest, so
        total run exceeds harvest in every year and spawners start positive.
        """
        self._check_candidate(candidate)
        d = self.data
        level = self._esc_median + float(np.max(d.harvest))

        init: Dict[str, np.ndarray] = {
            "ln_rec": np.full(d.n_brood, np.log(level)),
            "mu_ln_alpha": np.array(max(self.prior_spec.ln_alpha_loc, 0.5)),
            "beta": np.array(0.5 / level),
            "phi": np.array(0.0),
            "sigma_r": np.array(0.5),
            "sigma_s": np.array(0.2),
            "mat_mean": np.full(d.n_ages, 1.0 / d.n_ages),
            "mat_conc": np.array(
                0.5 * (self.prior_spec.mat_conc_lower + self.prior_spec.mat_conc_upper)
            ),
            "mat_prob": np.full((d.n_brood, d.n_ages), 1.0 / d.n_ages),
        }
        if d.n_imputed > 0:
            init["ln_imp"] = np.full(d.n_imputed, np.log(level / d.n_ages))
            init["imp_mu"] = np.array(np.log(level / d.n_ages))
            init["imp_sigma"] = np.array(0.5)
        if not candidate.is_baseline:
            init["gamma"] = np.array(0.0)
        if d.harvest_model == "lognormal":
            run = level
            init["h_rate"] = np.clip(d.harvest / run, 0.01, 0.9)
            init["sigma_h"] = np.array(0.2)
        return init

    def __repr__(self) -> str:
        d = self.data
        return (
            f"ModelBuilder(n_yrs={d.n_yrs}, ages={d.age_min}-{d.age_max}, "
            f"n_brood={d.n_brood}, covariates={sorted(d.covariates)}, "
            f"prior_spec={self.prior_spec})"
        )
