"""Tests for LOO evaluation and candidate ranking."""

import warnings

import arviz as az
import numpy as np
import pandas as pd
import pymc as pm
import pytest
from numpy.testing import assert_allclose

from salmon_ipm.errors import NumericalUnderflowWarning
from salmon_ipm.inference.model_builder import ModelCandidate
from salmon_ipm.inference.orchestrator import CandidateOutcome, FitResult
from salmon_ipm.selection.loo import RANKING_COLUMNS, UNDERFLOW_FLOOR, LOOEvaluator

from conftest import make_idata


def _outcome(candidate_id, loc=-3.0, seed=0, error=None):
    if candidate_id == "baseline":
        cand = ModelCandidate.baseline()
    else:
        cand = ModelCandidate(candidate_id, covariate_id=candidate_id, summary="annual", lag=1)
    if error is not None:
        return CandidateOutcome(cand, error=error)
    idata = make_idata(n_esc=15, n_age=15, loc=loc, seed=seed)
    return CandidateOutcome(cand, result=FitResult(cand, idata))


class TestSanitize:

    def test_infinite_entries_replaced_more_extreme(self) -> None:
        col = np.array([-1.0, -2.5, -np.inf, -0.3, -np.inf])
        log_lik = np.stack([col, np.full(5, -1.0)], axis=-1)
        clean = LOOEvaluator.sanitize(log_lik)
        assert np.isfinite(clean).all()
        replaced = clean[[2, 4], 0]
        assert_allclose(replaced, -2.5 * 1.05)
        others = clean[[0, 1, 3], 0]
        assert (replaced < others.min()).all()
        assert_allclose(clean[:, 1], -1.0)

    def test_positive_worst_value(self) -> None:
        log_lik = np.array([[2.0], [3.0], [np.nan]])
        clean = LOOEvaluator.sanitize(log_lik)
        assert clean[2, 0] < 2.0
        assert_allclose(clean[2, 0], 1.9)

    def test_zero_worst_value_still_strictly_lower(self) -> None:
        clean = LOOEvaluator.sanitize(np.array([[0.0], [1.0], [-np.inf]]))
        assert clean[2, 0] < 0.0

    def test_all_non_finite_column(self) -> None:
        clean = LOOEvaluator.sanitize(np.array([[-np.inf, -1.0], [np.nan, -2.0]]))
        assert_allclose(clean[:, 0], UNDERFLOW_FLOOR)

    def test_three_dimensional_columns_are_last_axis(self) -> None:
        ll = np.full((2, 3, 2), -1.0)
        ll[0, 1, 0] = -4.0
        ll[1, 2, 0] = -np.inf
        clean = LOOEvaluator.sanitize(ll)
        assert_allclose(clean[1, 2, 0], -4.2)
        assert_allclose(clean[..., 1], -1.0)

    def test_replacement_warns(self) -> None:
        with pytest.warns(NumericalUnderflowWarning):
            LOOEvaluator.sanitize(np.array([[-1.0], [-np.inf]]))

    def test_input_not_modified(self) -> None:
        ll = np.array([[-1.0], [-np.inf]])
        LOOEvaluator.sanitize(ll)
        assert np.isinf(ll[1, 0])


class TestRelativeEff:

    def test_independent_draws_near_one(self) -> None:
        rng = np.random.default_rng(0)
        ll = rng.normal(-2.0, 0.3, (4, 1000, 3))
        r_eff = LOOEvaluator.relative_eff(ll)
        assert r_eff.shape == (3,)
        assert (r_eff > 0.7).all()

    def test_autocorrelated_draws_lower(self) -> None:
        rng = np.random.default_rng(0)
        x = np.zeros((4, 1000))
        for t in range(1, 1000):
            x[:, t] = 0.95 * x[:, t - 1] + rng.normal(0, 0.1, 4)
        ll = (x - 2.0)[:, :, None]
        assert LOOEvaluator.relative_eff(ll)[0] < 0.3

    def test_constant_column(self) -> None:
        assert LOOEvaluator.relative_eff(np.full((2, 50, 1), -1.0))[0] == 1.0


class TestEvaluate:

    def test_pointwise_stacks_escapement_and_age(self) -> None:
        idata = make_idata(n_esc=12, n_age=15)
        assert LOOEvaluator().pointwise_log_lik(idata).shape == (2, 200, 27)

    def test_missing_log_likelihood(self) -> None:
        idata = az.from_dict(posterior={"alpha": np.ones((2, 10))})
        with pytest.raises(ValueError, match="log_likelihood"):
            LOOEvaluator().evaluate(idata)

    def test_result_fields(self) -> None:
        res = LOOEvaluator().evaluate(make_idata(n_esc=15, n_age=15))
        assert res.n_obs == 30
        assert np.isfinite(res.looic)
        assert res.se_looic > 0
        assert res.p_loo >= 0
        assert_allclose(res.pointwise_looic.sum(), res.looic)
        assert res.r_eff.shape == (30,)
        assert ((res.r_eff > 0) & np.isfinite(res.r_eff)).all()

    def test_matches_arviz_on_sampled_model(self) -> None:
        rng = np.random.default_rng(3)
        y = rng.normal(1.0, 1.0, 20)
        with pm.Model(coords={"obs_year": np.arange(20)}) as model:
            mu = pm.Normal("mu", 0.0, 10.0)
            pm.Normal("y", mu=mu, sigma=1.0, observed=y, dims="obs_year")
        idata = az.from_dict(posterior={"mu": rng.normal(y.mean(), 0.2, (2, 300))})
        pm.compute_log_likelihood(idata, model=model, progressbar=False)

        ev = LOOEvaluator(log_lik_vars=("y",))
        res = ev.evaluate(idata)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", UserWarning)
            expected = az.loo(idata, var_name="y", reff=float(res.r_eff.mean()), scale="log")
        assert res.n_obs == 20
        assert_allclose(res.looic, -2.0 * expected["elpd_loo"])
        assert_allclose(res.se_looic, 2.0 * expected["se"])
        assert_allclose(res.p_loo, expected["p_loo"])

    def test_deterministic(self) -> None:
        idata = make_idata(n_esc=15, n_age=15)
        before = idata.log_likelihood["esc_obs"].values.copy()
        ev = LOOEvaluator()
        a, b = ev.evaluate(idata), ev.evaluate(idata)
        assert a.looic == b.looic
        assert a.se_looic == b.se_looic
        assert_allclose(idata.log_likelihood["esc_obs"].values, before)

    def test_underflow_recovered_locally(self) -> None:
        idata = make_idata(n_esc=15, n_age=15)
        idata.log_likelihood["age_obs"][0, :5, 3] = -np.inf
        with warnings.catch_warnings():
            warnings.simplefilter("error", NumericalUnderflowWarning)
            res = LOOEvaluator().evaluate(idata)
        assert res.n_sanitized == 5
        assert np.isfinite(res.looic)
        assert np.isfinite(res.pointwise_looic).all()


class TestRank:

    def test_order_and_deltas(self) -> None:
        outcomes = [
            _outcome("baseline", loc=-3.0, seed=1),
            _outcome("flow_a", loc=-2.0, seed=2),
            _outcome("flow_b", loc=-5.0, seed=3),
        ]
        table = LOOEvaluator().rank(outcomes)
        assert list(table.columns) == RANKING_COLUMNS
        assert list(table["candidate_id"]) == ["flow_a", "baseline", "flow_b"]
        assert list(table["rank"]) == [1, 2, 3]
        assert table.loc[0, "delta_looic"] == 0.0
        assert table.loc[0, "se_delta"] == 0.0
        assert (table["delta_looic"].diff().dropna() > 0).all()
        assert (table.loc[1:, "se_delta"] > 0).all()
        assert bool(table.loc[2, "decisive"])

    def test_failed_candidates_listed_last(self) -> None:
        outcomes = [
            _outcome("baseline", loc=-3.0, seed=1),
            _outcome("flow_a", error="engine crashed"),
            _outcome("flow_b", loc=-2.0, seed=3),
        ]
        table = LOOEvaluator().rank(outcomes)
        assert len(table) == 3
        assert list(table["candidate_id"]) == ["flow_b", "baseline", "flow_a"]
        failed = table.iloc[2]
        assert failed["status"] == "failed"
        assert failed["error"] == "engine crashed"
        assert pd.isna(failed["looic"])
        assert pd.isna(failed["rank"])

    def test_small_difference_not_decisive(self) -> None:
        base = _outcome("baseline", seed=1)
        other = _outcome("flow_a", seed=1)
        # alternating per-observation shifts: small total, large spread
        for name in ("esc_obs", "age_obs"):
            values = other.result.idata.log_likelihood[name].values
            values += 0.05 * (-1.0) ** np.arange(values.shape[-1]) - 0.001
        outcomes = [base, other]
        table = LOOEvaluator().rank(outcomes)
        assert not table["decisive"].any()
        assert table.loc[1, "delta_looic"] < 2 * table.loc[1, "se_delta"]

    def test_diagnostics_attached(self) -> None:
        outcomes = [_outcome("baseline", seed=1)]
        diag = {"baseline": {"max_rhat": 1.02, "n_rhat_flagged": 0, "converged": True}}
        table = LOOEvaluator().rank(outcomes, diag)
        assert table.loc[0, "max_rhat"] == 1.02
        assert bool(table.loc[0, "converged"])

    def test_rank_is_deterministic(self) -> None:
        outcomes = [_outcome("baseline", seed=1), _outcome("flow_a", loc=-2.5, seed=2)]
        ev = LOOEvaluator()
        pd.testing.assert_frame_equal(ev.rank(outcomes), ev.rank(outcomes))

    def test_delta_se_shape_mismatch(self) -> None:
        assert np.isnan(LOOEvaluator.delta_se(np.zeros(3), np.zeros(4)))
