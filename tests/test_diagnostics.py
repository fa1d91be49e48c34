"""
Tests for convergence diagnostics.

All tests use synthetic chains; no sampling.
"""

import arviz as az
import numpy as np
import pytest
from numpy.testing import assert_allclose

from salmon_ipm.errors import ConvergenceWarning
from salmon_ipm.selection.diagnostics import ConvergenceDiagnostics

from conftest import make_idata


def _ar1(phi, n_chains=4, n_draws=2000, seed=0):
    rng = np.random.default_rng(seed)
    x = np.zeros((n_chains, n_draws))
    for t in range(1, n_draws):
        x[:, t] = phi * x[:, t - 1] + rng.normal(0, 1, n_chains)
    return x


class TestRhat:

    def test_perfect_convergence(self) -> None:
        chains = np.ones((2, 100))
        assert np.isclose(ConvergenceDiagnostics.rhat(chains), 1.0, atol=0.01)

    def test_mixed_chains_near_one(self) -> None:
        rng = np.random.default_rng(1)
        chains = rng.normal(0, 1, (4, 1000))
        assert ConvergenceDiagnostics.rhat(chains) < 1.01

    def test_poor_convergence(self) -> None:
        rng = np.random.default_rng(42)
        chains = np.array([rng.normal(-5, 1, 100), rng.normal(5, 1, 100)])
        assert ConvergenceDiagnostics.rhat(chains) > 1.05

    def test_requires_multiple_chains(self) -> None:
        with pytest.raises(ValueError, match="2 chains"):
            ConvergenceDiagnostics.rhat(np.random.randn(1, 100))

    def test_rank_normalized(self) -> None:
        chains = _ar1(0.5, n_chains=3, n_draws=500, seed=4)
        assert_allclose(ConvergenceDiagnostics.rhat(chains), float(az.rhat(chains)))


class TestESS:

    def test_high_autocorrelation(self) -> None:
        x = _ar1(0.95, n_chains=1)[0]
        ess = ConvergenceDiagnostics.ess(x)
        assert 0 < ess < 0.3 * len(x)

    def test_white_noise(self) -> None:
        x = np.random.default_rng(42).normal(size=1000)
        assert ConvergenceDiagnostics.ess(x) > 500

    def test_constant(self) -> None:
        assert ConvergenceDiagnostics.ess(np.ones(1000)) == 1000

    def test_pools_chains(self) -> None:
        chains = _ar1(0.3, n_chains=4, n_draws=500, seed=5)
        ess = ConvergenceDiagnostics.ess(chains)
        assert_allclose(ess, float(az.ess(chains)))
        assert ess > ConvergenceDiagnostics.ess(chains[0])


class TestAutocorr:

    def test_ar1_decay(self) -> None:
        acf = ConvergenceDiagnostics.autocorr(_ar1(0.8), max_lag=3)
        np.testing.assert_allclose(acf, [0.8, 0.64, 0.512], atol=0.06)

    def test_lag_beyond_chain(self) -> None:
        acf = ConvergenceDiagnostics.autocorr(np.random.randn(2, 3), max_lag=5)
        assert np.isnan(acf[2:]).all()

    def test_constant_chain(self) -> None:
        acf = ConvergenceDiagnostics.autocorr(np.ones((2, 50)), max_lag=2)
        np.testing.assert_allclose(acf, 0.0)


class TestCompute:

    def test_table_layout(self) -> None:
        idata = make_idata(n_esc=5, n_age=5)
        table = ConvergenceDiagnostics(max_lag=3).compute(idata, thin=5)
        assert list(table.columns) == [
            "parameter", "rhat", "rhat_flag", "ess",
            "acf_lag_5", "acf_lag_10", "acf_lag_15",
        ]
        params = list(table["parameter"])
        assert "alpha" in params
        assert "mat_mean[3]" in params
        assert "sigma_r" not in params
        assert not table["rhat_flag"].any()

    def test_thin_read_from_attrs(self) -> None:
        idata = make_idata(n_esc=5, n_age=5)
        idata.posterior.attrs["thin"] = 2
        table = ConvergenceDiagnostics(max_lag=2).compute(idata)
        assert "acf_lag_4" in table.columns

    def test_flagged_parameter_warns(self) -> None:
        rng = np.random.default_rng(0)
        stuck = np.stack([rng.normal(0, 1, 200), rng.normal(10, 1, 200)])
        idata = az.from_dict(posterior={"phi": stuck, "beta": rng.normal(size=(2, 200))})
        checker = ConvergenceDiagnostics(rhat_threshold=1.1)
        with pytest.warns(ConvergenceWarning, match="phi"):
            table = checker.compute(idata)
        summary = checker.summarize(table)
        assert summary["n_rhat_flagged"] == 1
        assert summary["max_rhat"] > 1.1
        assert summary["converged"] is False

    def test_summary_of_converged_fit(self) -> None:
        checker = ConvergenceDiagnostics()
        summary = checker.summarize(checker.compute(make_idata(n_esc=5, n_age=5)))
        assert summary["converged"] is True
        assert summary["n_rhat_flagged"] == 0

    def test_input_not_modified(self) -> None:
        idata = make_idata(n_esc=5, n_age=5)
        before = idata.posterior["alpha"].values.copy()
        ConvergenceDiagnostics().compute(idata)
        np.testing.assert_array_equal(idata.posterior["alpha"].values, before)

    def test_invalid_threshold(self) -> None:
        with pytest.raises(ValueError):
            ConvergenceDiagnostics(rhat_threshold=0.9)
