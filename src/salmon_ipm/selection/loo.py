"""
Leave-one-out model comparison.

Pipeline per candidate:
1. Stack the retained per-observation log-likelihoods (escapement and age
   composition, one column per year) into a (chain, draw, obs) array.
2. Sanitize non-finite values (underflow from near-zero probabilities).
3. Relative effective sample size per observation from exp(log-lik).
4. PSIS-LOO via ArviZ: LOOIC = -2 elpd_loo, SE, effective parameters p_loo.

Candidates are then ranked ascending by LOOIC. Differences from the best
carry a standard error from the pointwise differences, and only count as
decisive when they exceed ``delta_se_multiplier`` standard errors.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

import arviz as az
import numpy as np
import pandas as pd
import xarray as xr
from numpy.typing import NDArray

from salmon_ipm.errors import NumericalUnderflowWarning
from salmon_ipm.inference.model_builder import LOG_LIK_VARS
from salmon_ipm.inference.orchestrator import CandidateOutcome

logger = logging.getLogger(__name__)

# ln of the smallest positive double; used when a column has no finite value.
UNDERFLOW_FLOOR = float(np.log(np.finfo(np.float64).tiny))

RANKING_COLUMNS = [
    "rank",
    "candidate_id",
    "covariate",
    "summary",
    "lag",
    "status",
    "error",
    "p_loo",
    "looic",
    "se_looic",
    "delta_looic",
    "se_delta",
    "decisive",
    "pareto_k_max",
    "max_rhat",
    "n_rhat_flagged",
    "converged",
]


@dataclass
class LOOResult:
    """LOO summary for one candidate."""
    looic: float
    se_looic: float
    p_loo: float
    pointwise_looic: NDArray[np.float64]
    r_eff: NDArray[np.float64]
    pareto_k: NDArray[np.float64]
    n_sanitized: int

    @property
    def n_obs(self) -> int:
        return len(self.pointwise_looic)

    @property
    def pareto_k_max(self) -> float:
        return float(np.max(self.pareto_k))

    def __repr__(self) -> str:
        return (
            f"LOOResult(looic={self.looic:.2f}, se={self.se_looic:.2f}, "
            f"p_loo={self.p_loo:.2f}, n_obs={self.n_obs})"
        )


class LOOEvaluator:
    """
    PSIS-LOO evaluation and ranking of fitted candidates.

    Parameters
    ----------
    log_lik_vars : sequence of str
        Observed variables in the ``log_likelihood`` group, concatenated in order.
    delta_se_multiplier : float
        A ΔLOOIC is decisive only if it exceeds this many SE(Δ). Default 2.
    """

    def __init__(
        self,
        log_lik_vars: Sequence[str] = LOG_LIK_VARS,
        delta_se_multiplier: float = 2.0,
    ) -> None:
        if delta_se_multiplier <= 0:
            raise ValueError(f"delta_se_multiplier must be positive. Got {delta_se_multiplier}")
        self.log_lik_vars = tuple(log_lik_vars)
        self.delta_se_multiplier = delta_se_multiplier

    def pointwise_log_lik(self, idata: az.InferenceData) -> NDArray[np.float64]:
        """
        Per-observation log-likelihood, shape (chain, draw, n_obs).

        Observation dimensions of each variable are flattened and variables
        concatenated in ``log_lik_vars`` order.
        """
        if "log_likelihood" not in idata.groups():
            raise ValueError("InferenceData has no log_likelihood group")
        blocks = []
        for name in self.log_lik_vars:
            if name not in idata.log_likelihood:
                raise ValueError(f"log_likelihood group lacks {name!r}")
            values = idata.log_likelihood[name].transpose("chain", "draw", ...).values
            blocks.append(values.reshape(values.shape[0], values.shape[1], -1))
        return np.concatenate(blocks, axis=-1).astype(np.float64)

    @staticmethod
    def sanitize(log_lik: NDArray[np.float64]) -> NDArray[np.float64]:
        """
        Replace non-finite entries column by column.

        Columns are the last axis. Each non-finite entry becomes a value 5%
        more extreme than the worst finite value of its column; a column with
        no finite value is filled with UNDERFLOW_FLOOR.

        Returns
        -------
        clean : NDArray[np.float64]
            Copy of ``log_lik`` with only finite values.
        """
        clean = np.array(log_lik, dtype=np.float64, copy=True)
        flat = clean.reshape(-1, clean.shape[-1])
        bad = ~np.isfinite(flat)
        if not bad.any():
            return clean

        for col in np.flatnonzero(bad.any(axis=0)):
            finite = flat[~bad[:, col], col]
            if finite.size == 0:
                replacement = UNDERFLOW_FLOOR
            else:
                worst = float(finite.min())
                replacement = worst - 0.05 * abs(worst)
                if replacement >= worst:
                    replacement = np.nextafter(worst, -np.inf)
            flat[bad[:, col], col] = replacement

        warnings.warn(
            f"{int(bad.sum())} non-finite log-likelihood values replaced",
            NumericalUnderflowWarning,
        )
        return clean

    @staticmethod
    def relative_eff(log_lik: NDArray[np.float64]) -> NDArray[np.float64]:
        """
        Relative effective sample size per observation.

        ESS of exp(log-lik) across chains, accounting for within-chain
        autocorrelation, divided by the total number of draws.
        """
        n_chains, n_draws, n_obs = log_lik.shape
        r_eff = np.ones(n_obs)
        for i in range(n_obs):
            col = log_lik[:, :, i]
            lik = np.exp(col - col.max())
            if np.ptp(lik) == 0:
                continue
            ess = float(az.ess(lik, method="mean"))
            if np.isfinite(ess) and ess > 0:
                r_eff[i] = ess / (n_chains * n_draws)
        return r_eff

    def evaluate(self, idata: az.InferenceData) -> LOOResult:
        """
        LOOIC, its standard error and p_loo for one fitted candidate.

        ``az.loo`` accepts a single relative efficiency, so the mean of the
        per-observation values is used for Pareto smoothing. The per-observation
        values are kept on ``LOOResult.r_eff``. The input is never modified.
        """
        raw = self.pointwise_log_lik(idata)
        n_bad = int((~np.isfinite(raw)).sum())
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", NumericalUnderflowWarning)
            log_lik = self.sanitize(raw)
        if n_bad:
            logger.debug("Sanitized %d non-finite log-likelihood values", n_bad)
        r_eff = self.relative_eff(log_lik)

        n_chains, n_draws, n_obs = log_lik.shape
        ll = xr.DataArray(
            log_lik,
            dims=("chain", "draw", "obs"),
            coords={"chain": np.arange(n_chains), "draw": np.arange(n_draws),
                    "obs": np.arange(n_obs)},
        )
        data = az.InferenceData(log_likelihood=xr.Dataset({"log_lik": ll}))
        with warnings.catch_warnings():
            # High Pareto k is reported through LOOResult.pareto_k
            warnings.simplefilter("ignore", UserWarning)
            loo = az.loo(
                data, pointwise=True, var_name="log_lik",
                reff=float(np.mean(r_eff)), scale="log",
            )

        return LOOResult(
            looic=float(-2.0 * loo["elpd_loo"]),
            se_looic=float(2.0 * loo["se"]),
            p_loo=float(loo["p_loo"]),
            pointwise_looic=-2.0 * np.asarray(loo["loo_i"].values, dtype=np.float64),
            r_eff=r_eff,
            pareto_k=np.asarray(loo["pareto_k"].values, dtype=np.float64),
            n_sanitized=n_bad,
        )

    @staticmethod
    def delta_se(best: NDArray[np.float64], other: NDArray[np.float64]) -> float:
        """Standard error of a LOOIC difference from pointwise differences."""
        if best.shape != other.shape:
            return float("nan")
        diff = other - best
        return float(np.sqrt(len(diff)) * np.std(diff, ddof=1))

    def rank(
        self,
        outcomes: Sequence[CandidateOutcome],
        diagnostics: Optional[Mapping[str, Dict]] = None,
    ) -> pd.DataFrame:
        """
        Ranking table over every attempted candidate.

        Parameters
        ----------
        outcomes : sequence of CandidateOutcome
            One per attempted candidate, failed ones included.
        diagnostics : mapping, optional
            candidate_id -> ConvergenceDiagnostics.summarize() output.

        Returns
        -------
        table : pd.DataFrame
            Successful candidates ascending by LOOIC, then failed ones
            (status "failed", metrics NaN).
        """
        diagnostics = diagnostics or {}
        rows: List[Dict] = []
        loo_by_id: Dict[str, LOOResult] = {}

        for outcome in outcomes:
            cand = outcome.candidate
            row = {
                "candidate_id": cand.candidate_id,
                "covariate": cand.covariate_id,
                "summary": cand.summary,
                "lag": cand.lag,
                "status": "ok",
                "error": None,
            }
            row.update(diagnostics.get(cand.candidate_id, {}))
            if outcome.ok:
                try:
                    res = self.evaluate(outcome.result.idata)
                except ValueError as e:
                    row.update(status="failed", error=f"LOO: {e}")
                else:
                    loo_by_id[cand.candidate_id] = res
                    row.update(
                        p_loo=res.p_loo,
                        looic=res.looic,
                        se_looic=res.se_looic,
                        pareto_k_max=res.pareto_k_max,
                    )
            else:
                row.update(status="failed", error=outcome.error)
            rows.append(row)

        table = pd.DataFrame(rows).reindex(columns=RANKING_COLUMNS)
        ok = table["status"] == "ok"
        ranked = table[ok].sort_values("looic", kind="mergesort").reset_index(drop=True)
        failed = table[~ok].reset_index(drop=True)

        if len(ranked):
            best_id = ranked.loc[0, "candidate_id"]
            best = loo_by_id[best_id]
            ranked["rank"] = np.arange(1, len(ranked) + 1)
            ranked["delta_looic"] = ranked["looic"] - best.looic
            ranked["se_delta"] = [
                0.0 if cid == best_id
                else self.delta_se(best.pointwise_looic, loo_by_id[cid].pointwise_looic)
                for cid in ranked["candidate_id"]
            ]
            ranked["decisive"] = (
                ranked["delta_looic"] > self.delta_se_multiplier * ranked["se_delta"]
            ) & (ranked["candidate_id"] != best_id)

        return pd.concat([ranked, failed], ignore_index=True).reindex(columns=RANKING_COLUMNS)
