"""
Convergence diagnostics for fitted candidates.

Key diagnostics, per monitored parameter (vector parameters per element):
- Rank-normalized split Rhat: flagged above a threshold
- Autocorrelation at lags that are multiples of the thinning interval
- Bulk ESS (effective sample size) over all chains

Diagnostics are advisory. They never block LOO evaluation; the summary is
attached to the ranking table.
"""

import logging
import warnings
from typing import Dict, List, Optional, Sequence

import arviz as az
import numpy as np
import pandas as pd
from numpy.typing import NDArray

from salmon_ipm.errors import ConvergenceWarning

logger = logging.getLogger(__name__)

MONITORED_PARAMS = (
    "alpha",
    "mu_ln_alpha",
    "beta",
    "gamma",
    "phi",
    "sigma_r",
    "sigma_s",
    "sigma_h",
    "mat_conc",
    "mat_mean",
    "imp_mu",
    "imp_sigma",
)


class ConvergenceDiagnostics:
    """
    Compute chain-mixing statistics from posterior draws.

    Parameters
    ----------
    rhat_threshold : float
        Rhat above this is flagged. Default 1.1.
    max_lag : int
        Autocorrelation reported at lags thin, 2*thin, ..., max_lag*thin. Default 5.
    params : sequence of str
        Posterior variables to monitor (missing ones are skipped).
    """

    def __init__(
        self,
        rhat_threshold: float = 1.1,
        max_lag: int = 5,
        params: Sequence[str] = MONITORED_PARAMS,
    ) -> None:
        if rhat_threshold <= 1.0:
            raise ValueError(f"rhat_threshold must be > 1. Got {rhat_threshold}")
        if max_lag < 1:
            raise ValueError(f"max_lag must be >= 1. Got {max_lag}")
        self.rhat_threshold = rhat_threshold
        self.max_lag = max_lag
        self.params = tuple(params)

    @staticmethod
    def rhat(posterior_samples: NDArray[np.float64]) -> float:
        """
        Rank-normalized split Rhat (arviz.rhat).

        Parameters
        ----------
        posterior_samples : NDArray[np.float64]
            Draws from multiple chains, shape (chains, draws).

        Returns
        -------
        rhat : float
            1.0 for well-mixed chains; larger means poorer mixing.
        """
        if posterior_samples.ndim != 2 or posterior_samples.shape[0] < 2:
            raise ValueError("Need at least 2 chains for Rhat")
        if np.ptp(posterior_samples) == 0:
            return 1.0
        return float(az.rhat(posterior_samples))

    @staticmethod
    def autocorr(posterior_samples: NDArray[np.float64], max_lag: int) -> NDArray[np.float64]:
        """
        Chain-averaged autocorrelation at lags 1..max_lag (in retained draws).

        Parameters
        ----------
        posterior_samples : NDArray[np.float64]
            Shape (chains, draws)
        max_lag : int
            Largest lag; capped at draws - 1.

        Returns
        -------
        acf : NDArray[np.float64]
            Shape (max_lag,); NaN where the lag exceeds the chain length.
        """
        acf = np.full(max_lag, np.nan)
        n_draws = posterior_samples.shape[1]
        # arviz.autocorr normalizes by lag-0 autocovariance; constant chains are uncorrelated
        per_chain = np.array([
            az.autocorr(chain) if np.ptp(chain) > 0 else np.zeros(n_draws)
            for chain in posterior_samples
        ])
        usable = min(max_lag, n_draws - 1)
        if usable > 0:
            acf[:usable] = np.nanmean(per_chain[:, 1:usable + 1], axis=0)
        return acf

    @staticmethod
    def ess(posterior_samples: NDArray[np.float64]) -> float:
        """Bulk effective sample size over all chains (arviz.ess); 1-D input is one chain."""
        draws = np.atleast_2d(posterior_samples)
        if np.ptp(draws) == 0:
            return float(draws.size)
        return float(az.ess(draws))

    def _series(self, idata: az.InferenceData):
        """Yield (label, draws) for every monitored scalar, draws shaped (chains, draws)."""
        posterior = idata.posterior
        for name in self.params:
            if name not in posterior:
                continue
            values = posterior[name].transpose("chain", "draw", ...).values
            n_chains, n_draws = values.shape[:2]
            flat = values.reshape(n_chains, n_draws, -1)
            if flat.shape[-1] == 1:
                yield name, flat[:, :, 0]
                continue
            for i in range(flat.shape[-1]):
                yield f"{name}[{i}]", flat[:, :, i]

    def compute(self, idata: az.InferenceData, thin: Optional[int] = None) -> pd.DataFrame:
        """
        Diagnostic table, one row per monitored scalar.

        Parameters
        ----------
        idata : az.InferenceData
            Fitted candidate (not modified)
        thin : int, optional
            Thinning interval used when sampling. Default: posterior attrs, else 1.

        Returns
        -------
        table : pd.DataFrame
            Columns: parameter, rhat, rhat_flag, ess, acf_lag_<k*thin>...
        """
        if thin is None:
            thin = int(idata.posterior.attrs.get("thin", 1))
        lag_cols = [f"acf_lag_{k * thin}" for k in range(1, self.max_lag + 1)]

        rows: List[Dict] = []
        for label, draws in self._series(idata):
            rhat = self.rhat(draws) if draws.shape[0] >= 2 else float("nan")
            row = {
                "parameter": label,
                "rhat": rhat,
                "rhat_flag": bool(rhat > self.rhat_threshold),
                "ess": self.ess(draws),
            }
            row.update(zip(lag_cols, self.autocorr(draws, self.max_lag)))
            rows.append(row)

        table = pd.DataFrame(rows, columns=["parameter", "rhat", "rhat_flag", "ess"] + lag_cols)
        flagged = table.loc[table["rhat_flag"].astype(bool), "parameter"].tolist()
        if flagged:
            label = idata.posterior.attrs.get("candidate_id", "candidate")
            warnings.warn(
                f"{label}: Rhat > {self.rhat_threshold} for {flagged}",
                ConvergenceWarning,
            )
            logger.warning("%s: Rhat above %.2f for %s", label, self.rhat_threshold, flagged)
        return table

    @staticmethod
    def summarize(table: pd.DataFrame) -> Dict:
        """Columns attached to the ranking table."""
        if table.empty:
            return {"max_rhat": float("nan"), "n_rhat_flagged": 0, "converged": False}
        n_flagged = int(table["rhat_flag"].sum())
        return {
            "max_rhat": float(table["rhat"].max()),
            "n_rhat_flagged": n_flagged,
            "converged": n_flagged == 0 and bool(np.isfinite(table["rhat"]).all()),
        }

    def __repr__(self) -> str:
        return (
            f"ConvergenceDiagnostics(rhat_threshold={self.rhat_threshold}, "
            f"max_lag={self.max_lag})"
        )
