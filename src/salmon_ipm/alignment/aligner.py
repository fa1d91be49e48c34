"""
Brood-year / calendar-year alignment of raw observation series.

Calendar year t (0-based, t = 0..n_yrs-1) indexes escapement, harvest and
age composition. Brood year b (b = 0..n_yrs-age_min-1) is the cohort that
spawned in calendar year first_year + b. Fish of age a returning in calendar
year t therefore come from brood b = t - a:

    N[a, t] = R[t - a] * p[t - a, a]

Cells with t - a < 0 belong to broods spawned before the first data year and
have no latent recruitment state; they are flagged in ``imputed_cells`` and
drawn from a shared hyper-distribution by the model. Broods whose return
window runs past the last data year are flagged in ``brood_complete``.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from salmon_ipm.alignment.covariates import resolve_summary
from salmon_ipm.config import CandidateConfig, RunConfig
from salmon_ipm.errors import DataAlignmentError, ModelSpecError

logger = logging.getLogger(__name__)


def _frozen(arr: NDArray) -> NDArray:
    arr = np.array(arr, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class CovariateInfo:
    """Metadata kept with each aligned covariate."""
    covariate_id: str
    summary: str
    lag: int
    raw_mean: float
    raw_std: float


@dataclass(frozen=True)
class AlignedData:
    """
    Immutable, index-aligned model inputs.

    Attributes
    ----------
    years : NDArray[np.int64]
        Calendar years, shape (n_yrs,)
    brood_years : NDArray[np.int64]
        Brood years, shape (n_brood,)
    escapement : NDArray[np.float64]
        Observed escapement, NaN for missing years, shape (n_yrs,)
    harvest : NDArray[np.float64]
        Harvest, shape (n_yrs,)
    age_comp : NDArray[np.int64]
        Age-composition counts after the zero-row policy, shape (n_yrs, A)
    age_total : NDArray[np.int64]
        Multinomial order Y_t (row sums of ``age_comp``), shape (n_yrs,)
    zero_age_years : NDArray[np.bool_]
        Years whose raw age counts summed to zero, shape (n_yrs,)
    esc_obs_idx : NDArray[np.int64]
        Calendar-year indices with observed escapement
    age_obs_idx : NDArray[np.int64]
        Calendar-year indices whose age composition enters the likelihood
    imputed_cells : NDArray[np.bool_]
        (calendar year, age) cells from broods before the first data year, shape (n_yrs, A)
    brood_complete : NDArray[np.bool_]
        Broods whose full return window lies inside the data, shape (n_brood,)
    observed_ages : NDArray[np.int64]
        Number of age classes observed per brood, shape (n_brood,)
    covariates : Dict[str, NDArray[np.float64]]
        Standardized covariate per brood year, keyed by covariate id
    covariate_info : Dict[str, CovariateInfo]
        Summary name, lag and raw scale per covariate id
    """

    age_min: int
    age_max: int
    years: NDArray[np.int64]
    brood_years: NDArray[np.int64]
    escapement: NDArray[np.float64]
    harvest: NDArray[np.float64]
    age_comp: NDArray[np.int64]
    age_total: NDArray[np.int64]
    zero_age_years: NDArray[np.bool_]
    esc_obs_idx: NDArray[np.int64]
    age_obs_idx: NDArray[np.int64]
    imputed_cells: NDArray[np.bool_]
    brood_complete: NDArray[np.bool_]
    observed_ages: NDArray[np.int64]
    harvest_model: str = "known"
    covariates: Dict[str, NDArray[np.float64]] = field(default_factory=dict)
    covariate_info: Dict[str, CovariateInfo] = field(default_factory=dict)

    @property
    def n_yrs(self) -> int:
        return len(self.years)

    @property
    def n_ages(self) -> int:
        return self.age_max - self.age_min + 1

    @property
    def n_brood(self) -> int:
        return len(self.brood_years)

    @property
    def ages(self) -> NDArray[np.int64]:
        return np.arange(self.age_min, self.age_max + 1)

    @property
    def n_imputed(self) -> int:
        return int(self.imputed_cells.sum())

    def brood_index(self) -> NDArray[np.int64]:
        """Source brood index for every (calendar year, age) cell; -1 where imputed."""
        t = np.arange(self.n_yrs)[:, None]
        b = t - self.ages[None, :]
        return np.where(b >= 0, b, -1)


class DataAligner:
    """
    Build AlignedData from raw year-indexed series.

    Parameters
    ----------
    config : RunConfig
        Run configuration (ages, year range, harvest model, candidates).
    """

    def __init__(self, config: RunConfig) -> None:
        self.config = config

    def _year_range(self, escapement: pd.Series) -> Tuple[int, int]:
        first = self.config.first_year
        last = self.config.last_year
        if first is None:
            first = int(min(escapement.index))
        if last is None:
            last = int(max(escapement.index))
        if last < first:
            raise DataAlignmentError(f"last_year {last} precedes first_year {first}")
        return first, last

    @staticmethod
    def _reindex(series, years: NDArray[np.int64], name: str) -> pd.Series:
        series = series.copy()
        series.index = pd.Index(np.asarray(series.index).astype(int))
        if series.index.has_duplicates:
            raise DataAlignmentError(f"{name} has duplicate years")
        expected = set(years.tolist())
        got = set(series.index.tolist())
        if got != expected:
            missing = sorted(expected - got)
            extra = sorted(got - expected)
            raise DataAlignmentError(
                f"{name} year range does not match {years[0]}-{years[-1]}. "
                f"Missing {missing[:10]}, unexpected {extra[:10]}"
            )
        return series.loc[years]

    def align(
        self,
        escapement: pd.Series,
        harvest: pd.Series,
        age_comp: pd.DataFrame,
        covariates: Optional[Mapping[str, pd.Series]] = None,
    ) -> AlignedData:
        """
        Align observations and covariates.

        Parameters
        ----------
        escapement : pd.Series
            Escapement counts indexed by calendar year (NaN = not surveyed).
        harvest : pd.Series
            Harvest counts indexed by calendar year.
        age_comp : pd.DataFrame
            Counts per age class (columns ordered age_min..age_max), indexed by year.
        covariates : Mapping[str, pd.Series], optional
            Raw covariate series keyed by covariate id, one per configured candidate.

        Returns
        -------
        aligned : AlignedData

        Raises
        ------
        DataAlignmentError
            Mismatched year ranges or invalid quantities.
        ModelSpecError
            Ages inconsistent with the data length or covariate lags.
        """
        cfg = self.config
        age_min, age_max, n_ages = cfg.age_min, cfg.age_max, cfg.n_ages
        first, last = self._year_range(escapement)
        years = np.arange(first, last + 1, dtype=np.int64)
        n_yrs = len(years)

        if n_yrs <= age_max:
            raise ModelSpecError(
                f"Need more than age_max={age_max} years of data. Got {n_yrs}"
            )
        n_brood = n_yrs - age_min

        esc = self._reindex(escapement, years, "escapement").to_numpy(dtype=np.float64)
        hrv = self._reindex(harvest, years, "harvest").to_numpy(dtype=np.float64)
        ages_df = self._reindex(age_comp, years, "age_comp")
        if ages_df.shape[1] != n_ages:
            raise DataAlignmentError(
                f"age_comp must have {n_ages} columns (ages {age_min}-{age_max}). "
                f"Got {ages_df.shape[1]}"
            )
        raw_ages = ages_df.to_numpy(dtype=np.float64)

        finite_esc = np.isfinite(esc)
        if not finite_esc.any():
            raise DataAlignmentError("escapement has no observed years")
        if np.any(esc[finite_esc] <= 0):
            bad = years[finite_esc][esc[finite_esc] <= 0]
            raise DataAlignmentError(f"escapement must be positive. Non-positive in {bad.tolist()}")
        if not np.all(np.isfinite(hrv)) or np.any(hrv < 0):
            raise DataAlignmentError("harvest must be finite and non-negative in every year")
        if cfg.harvest_model == "lognormal" and np.any(hrv <= 0):
            raise DataAlignmentError(
                "lognormal harvest model needs strictly positive harvest in every year"
            )
        if not np.all(np.isfinite(raw_ages)) or np.any(raw_ages < 0):
            raise DataAlignmentError("age_comp counts must be finite and non-negative")
        if not np.allclose(raw_ages, np.round(raw_ages)):
            raise DataAlignmentError("age_comp counts must be whole numbers")
        ages_int = np.round(raw_ages).astype(np.int64)

        zero_rows = ages_int.sum(axis=1) == 0
        if cfg.zero_age_policy == "uniform":
            ages_int[zero_rows] = 1
            age_obs_idx = np.arange(n_yrs)
        else:
            age_obs_idx = np.flatnonzero(~zero_rows)
        if zero_rows.any():
            logger.info(
                "Age composition empty in %s; policy=%s",
                years[zero_rows].tolist(), cfg.zero_age_policy,
            )

        t = np.arange(n_yrs)[:, None]
        a = np.arange(age_min, age_max + 1)[None, :]
        imputed = (t - a) < 0

        b = np.arange(n_brood)
        observed_ages = np.clip(n_yrs - b - age_min, 0, n_ages)
        brood_complete = observed_ages == n_ages

        cov_values, cov_info = self._align_covariates(
            covariates or {}, cfg.candidates, years[:n_brood]
        )

        aligned = AlignedData(
            age_min=age_min,
            age_max=age_max,
            years=_frozen(years),
            brood_years=_frozen(years[:n_brood]),
            escapement=_frozen(esc),
            harvest=_frozen(hrv),
            age_comp=_frozen(ages_int),
            age_total=_frozen(ages_int.sum(axis=1)),
            zero_age_years=_frozen(zero_rows),
            esc_obs_idx=_frozen(np.flatnonzero(finite_esc)),
            age_obs_idx=_frozen(age_obs_idx),
            imputed_cells=_frozen(imputed),
            brood_complete=_frozen(brood_complete),
            observed_ages=_frozen(observed_ages.astype(np.int64)),
            harvest_model=cfg.harvest_model,
            covariates=cov_values,
            covariate_info=cov_info,
        )
        logger.info(
            "Aligned %d calendar years (%d-%d), %d brood years, %d imputed cells, "
            "%d incomplete broods, %d covariates",
            n_yrs, first, last, n_brood, aligned.n_imputed,
            int((~brood_complete).sum()), len(cov_values),
        )
        return aligned

    def _align_covariates(
        self,
        raw: Mapping[str, pd.Series],
        candidates,
        brood_years: NDArray[np.int64],
    ) -> Tuple[Dict[str, NDArray[np.float64]], Dict[str, CovariateInfo]]:
        values: Dict[str, NDArray[np.float64]] = {}
        info: Dict[str, CovariateInfo] = {}
        for cand in candidates:
            values[cand.covariate_id], info[cand.covariate_id] = self._align_one(
                raw, cand, brood_years
            )
        return values, info

    def _align_one(
        self,
        raw: Mapping[str, pd.Series],
        cand: CandidateConfig,
        brood_years: NDArray[np.int64],
    ) -> Tuple[NDArray[np.float64], CovariateInfo]:
        if not (0 <= cand.lag < self.config.age_min):
            raise ModelSpecError(
                f"Covariate {cand.covariate_id!r} lag must be in [0, age_min={self.config.age_min}). "
                f"Got {cand.lag}"
            )
        if cand.covariate_id not in raw:
            raise DataAlignmentError(f"No series supplied for covariate {cand.covariate_id!r}")

        summary = resolve_summary(cand.summary, **cand.summary_kwargs)
        annual = summary(raw[cand.covariate_id])
        needed = brood_years + cand.lag
        missing = sorted(set(needed.tolist()) - set(annual.index.tolist()))
        if missing:
            raise DataAlignmentError(
                f"Covariate {cand.covariate_id!r} (lag {cand.lag}) missing years {missing[:10]}"
            )
        x = annual.loc[needed].to_numpy(dtype=np.float64)
        if not np.all(np.isfinite(x)):
            raise DataAlignmentError(f"Covariate {cand.covariate_id!r} has non-finite values")
        mean, std = float(x.mean()), float(x.std())
        if std == 0:
            raise DataAlignmentError(f"Covariate {cand.covariate_id!r} is constant")
        z = (x - mean) / std
        return _frozen(z), CovariateInfo(cand.covariate_id, cand.summary, cand.lag, mean, std)
