"""
Forward simulator for the age-structured population model.

Generates synthetic escapement, harvest and age-composition data with known
parameters, for calibration checks of the fitted model. The population is
started at Ricker equilibrium and run for a warm-up period so that the
returned window begins with returns from earlier, unobserved broods.

Simulation (brood b, calendar year t, age a):
    w_b = φ w_{b-1} + ν_b,       ν_b ~ Normal(0, σ_r)
    R_b = α_b S_b exp(-β S_b + w_b),   ln α_b = ln α + γ F_b
    p_b ~ Dirichlet(π μ)
    N_{a,t} = R_{t-a} p_{t-a,a},  S_t = (1 - h_t) Σ_a N_{a,t}
    E_t = S_t exp(ε_t),           ε_t ~ Normal(0, σ_s)
    O_t ~ Multinomial(n_age_samples, N_t / Σ_a N_{a,t})
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from numpy.typing import NDArray


@dataclass
class SimulatedData:
    """Observations ready for the DataAligner, plus the true latent states."""
    escapement: pd.Series
    harvest: pd.Series
    age_comp: pd.DataFrame
    spawners: NDArray[np.float64]
    run: NDArray[np.float64]
    recruits: NDArray[np.float64]
    mat_prob: NDArray[np.float64]
    age_returns: NDArray[np.float64]


class PopulationSimulator:
    """
    Simulator for one salmon stock.

    Attributes
    ----------
    age_min, age_max : int
        Youngest and oldest age at return
    n_yrs : int
        Calendar years of observations to generate
    first_year : int
        Calendar year of the first observation
    warmup : int
        Extra years simulated before the first observation
    """

    def __init__(
        self,
        age_min: int,
        age_max: int,
        n_yrs: int,
        first_year: int = 2000,
        warmup: int = 20,
    ) -> None:
        if age_min < 1 or age_max < age_min:
            raise ValueError(f"Need 1 <= age_min <= age_max. Got {age_min}, {age_max}")
        if n_yrs <= age_max:
            raise ValueError(f"n_yrs must exceed age_max={age_max}. Got {n_yrs}")
        if warmup < age_max:
            raise ValueError(f"warmup must be >= age_max={age_max}. Got {warmup}")

        self.age_min = age_min
        self.age_max = age_max
        self.n_ages = age_max - age_min + 1
        self.n_yrs = n_yrs
        self.first_year = first_year
        self.warmup = warmup

    def simulate(
        self,
        alpha: float = 2.0,
        beta: float = 1e-4,
        phi: float = 0.0,
        sigma_r: float = 0.2,
        sigma_s: float = 0.1,
        mat_mean: Optional[NDArray[np.float64]] = None,
        mat_conc: float = 50.0,
        harvest_rate: float = 0.0,
        n_age_samples: int = 100,
        covariate: Optional[NDArray[np.float64]] = None,
        gamma: float = 0.0,
        random_seed: Optional[int] = None,
    ) -> SimulatedData:
        """
        Simulate one realization.

        Parameters
        ----------
        alpha, beta : float
            Ricker productivity and density dependence
        phi, sigma_r : float
            AR(1) coefficient and innovation SD of log recruitment
        sigma_s : float
            SD of log escapement observation error
        mat_mean : NDArray[np.float64], optional
            Mean maturation schedule, shape (A,). Default uniform.
        mat_conc : float
            Dirichlet concentration of brood-specific maturation
        harvest_rate : float
            Fraction of the run harvested each year, in [0, 1)
        n_age_samples : int
            Fish aged per year
        covariate : NDArray[np.float64], optional
            Standardized covariate per observed brood year, shape (n_yrs - age_min,)
        gamma : float
            Covariate effect on ln α
        random_seed : int, optional
            Random seed for reproducibility.

        Returns
        -------
        data : SimulatedData
        """
        if alpha <= 1:
            raise ValueError(f"alpha must exceed 1 for a persistent stock. Got {alpha}")
        if beta <= 0:
            raise ValueError(f"beta must be positive. Got {beta}")
        if not (0 <= harvest_rate < 1):
            raise ValueError(f"harvest_rate must be in [0, 1). Got {harvest_rate}")
        if not (-1 < phi < 1):
            raise ValueError(f"phi must be in (-1, 1). Got {phi}")

        rng = np.random.default_rng(random_seed)
        A = self.n_ages
        ages = np.arange(self.age_min, self.age_max + 1)
        if mat_mean is None:
            mat_mean = np.full(A, 1.0 / A)
        mat_mean = np.asarray(mat_mean, dtype=np.float64)
        if mat_mean.shape != (A,) or not np.isclose(mat_mean.sum(), 1.0):
            raise ValueError(f"mat_mean must be a probability vector of length {A}")

        n_brood_obs = self.n_yrs - self.age_min
        ln_alpha = np.full(self.warmup + self.n_yrs, np.log(alpha))
        if covariate is not None:
            covariate = np.asarray(covariate, dtype=np.float64)
            if covariate.shape != (n_brood_obs,):
                raise ValueError(
                    f"covariate must have shape ({n_brood_obs},). Got {covariate.shape}"
                )
            ln_alpha[self.warmup:self.warmup + n_brood_obs] += gamma * covariate

        T = self.warmup + self.n_yrs
        s_eq = np.log(alpha) / beta
        N = np.zeros((T, A))
        R = np.zeros(T)
        S = np.zeros(T)
        run = np.zeros(T)
        p = rng.dirichlet(mat_conc * mat_mean, size=T)
        w = 0.0

        for t in range(T):
            for i, a in enumerate(ages):
                b = t - a
                N[t, i] = R[b] * p[b, i] if b >= 0 else s_eq * mat_mean[i]
            run[t] = N[t].sum()
            S[t] = (1.0 - harvest_rate) * run[t]
            w = phi * w + rng.normal(0.0, sigma_r)
            R[t] = np.exp(ln_alpha[t] + np.log(S[t]) - beta * S[t] + w)

        window = slice(self.warmup, T)
        years = np.arange(self.first_year, self.first_year + self.n_yrs)
        esc = S[window] * np.exp(rng.normal(0.0, sigma_s, self.n_yrs))
        hrv = run[window] - S[window]
        props = N[window] / run[window][:, None]
        ages_obs = np.array([rng.multinomial(n_age_samples, row) for row in props])

        return SimulatedData(
            escapement=pd.Series(esc, index=pd.Index(years, name="year"), name="escapement"),
            harvest=pd.Series(hrv, index=pd.Index(years, name="year"), name="harvest"),
            age_comp=pd.DataFrame(ages_obs, index=pd.Index(years, name="year"), columns=ages),
            spawners=S[window],
            run=run[window],
            recruits=R[self.warmup:self.warmup + n_brood_obs],
            mat_prob=p[self.warmup:self.warmup + n_brood_obs],
            age_returns=N[window],
        )

    def __repr__(self) -> str:
        return (
            f"PopulationSimulator(ages={self.age_min}-{self.age_max}, "
            f"n_yrs={self.n_yrs}, first_year={self.first_year}, warmup={self.warmup})"
        )
