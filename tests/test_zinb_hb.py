"""
End-to-end tests for the ZINB HB estimator.

The stand-in sampler returns fixed statistics so the whole pipeline
(partition → refinement → tables) can be checked by hand. One slow test
runs the real PyMC engine on a tiny dataset.
"""

import numpy as np
import pandas as pd
import pytest
from numpy.testing import assert_allclose

from conftest import RecordingSampler
from zinbsae import ZinbHB, zinb_hb
from zinbsae.estimation import EstimationConfig
from zinbsae.exceptions import ConfigError, InvalidInputError, SamplingError
from zinbsae.inference import STAT_COLUMNS


@pytest.fixture
def area_data() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "y": [0, 3, 0, 7, 1],
            "x1": [0.5, 1.5, 0.1, 2.0, 0.7],
            "x2": [1.0, 0.2, 0.3, 1.1, 0.9],
        }
    )


class TestZinbHB:
    """Tests for the estimator with a stand-in sampler."""

    def test_fully_sampled_end_to_end(self, area_data: pd.DataFrame) -> None:
        """Test tables and the final state after three passes."""
        sampler = RecordingSampler()
        result = zinb_hb("y ~ x1 + x2", area_data, sampler=sampler)

        assert len(sampler.calls) == 3
        last = sampler.calls[-1]["summary"]
        expected = pd.DataFrame(
            last.values("mu_eff"), index=pd.RangeIndex(5), columns=STAT_COLUMNS,
        )
        pd.testing.assert_frame_equal(result.estimates, expected)
        assert_allclose(result.estimates["MEAN"], 2100.0 + np.arange(5))
        assert_allclose(
            result.estimates["97.5%"], 2100.0 + np.arange(5) + 1.96 * 2.0,
        )
        assert result.coefficients.shape == (6, 7)

        state = result.hyperparameters
        assert_allclose(state.mu_b, [0.1, 0.2, 0.3])
        assert_allclose(state.tau_b, np.full(3, 4.0))
        assert_allclose(state.mu_g, [-0.2, -0.4, -0.6])
        assert_allclose(state.tau_g, np.full(3, 16.0))
        assert state.tau_aa == pytest.approx(4.0)
        assert state.tau_ab == pytest.approx(4.0 / 3.0)
        assert state.tau_ba == pytest.approx(4.0)
        assert state.tau_bb == pytest.approx(8.0)
        assert state.tau_ua == pytest.approx(16.0)
        assert state.tau_ub == pytest.approx(8.0)
        assert state.tau_va == pytest.approx(4.0)
        assert state.tau_vb == pytest.approx(1.0)

    def test_options_reach_sampler(self, area_data: pd.DataFrame) -> None:
        """Test that iteration options are forwarded."""
        sampler = RecordingSampler()
        zinb_hb(
            "y ~ x1 + x2", area_data, sampler=sampler,
            iter_update=4, iter_mcmc=300, burn_in=100, thin=2,
        )
        assert len(sampler.calls) == 4
        assert sampler.calls[0]["iter_mcmc"] == 300
        assert sampler.calls[0]["burn_in"] == 100
        assert sampler.calls[0]["thin"] == 2

    def test_mixed_formula(self) -> None:
        """Test that rows with missing outcomes get predicted estimates."""
        data = pd.DataFrame(
            {
                "y": [2, np.nan, 0, 5, np.nan],
                "x1": [0.1, 0.2, 0.3, 0.4, 0.5],
            },
            index=["a", "b", "c", "d", "e"],
        )
        sampler = RecordingSampler()
        result = zinb_hb("y ~ x1", data, sampler=sampler)

        assert sampler.calls[0]["spec"].variant == "mixed"
        assert list(result.estimates.index) == ["a", "b", "c", "d", "e"]
        assert_allclose(result.estimates["MEAN"], [2100, 2200, 2101, 2102, 2201])
        assert list(result.coefficients.index) == ["b[0]", "b[1]", "g[0]", "g[1]"]

    def test_fit_with_arrays(self, sampled_partition) -> None:
        """Test the array entry point with row labels."""
        sampler = RecordingSampler()
        estimator = ZinbHB(EstimationConfig(iter_update=3), sampler=sampler)
        result = estimator.fit(
            sampled_partition.y, sampled_partition.x, index=list("vwxyz"),
        )
        assert list(result.estimates.index) == list("vwxyz")
        assert list(result.random_effect_variances.index) == ["a.var.u", "a.var.v"]

    def test_iter_update_too_small_never_samples(self, area_data: pd.DataFrame) -> None:
        """Test that option errors are raised before any sampling."""
        sampler = RecordingSampler()
        with pytest.raises(ConfigError):
            zinb_hb("y ~ x1 + x2", area_data, sampler=sampler, iter_update=2)
        assert sampler.calls == []

    def test_prior_length_mismatch_never_samples(self, area_data: pd.DataFrame) -> None:
        """Test a prior vector that does not match the design."""
        sampler = RecordingSampler()
        with pytest.raises(ConfigError, match="the length must be 3"):
            zinb_hb("y ~ x1 + x2", area_data, sampler=sampler, coef_nonzero=[0.0, 1.0])
        assert sampler.calls == []

    def test_missing_covariate_never_samples(self, area_data: pd.DataFrame) -> None:
        """Test that missing covariates are rejected up front."""
        area_data.loc[2, "x1"] = np.nan
        sampler = RecordingSampler()
        with pytest.raises(InvalidInputError, match="missing values"):
            zinb_hb("y ~ x1 + x2", area_data, sampler=sampler)
        assert sampler.calls == []

    def test_sampler_failure_propagates(self, area_data: pd.DataFrame) -> None:
        """Test that an engine failure aborts the estimation."""
        sampler = RecordingSampler(fail_on_call=1, error=SamplingError("boom"))
        with pytest.raises(SamplingError, match="boom"):
            zinb_hb("y ~ x1 + x2", area_data, sampler=sampler)

    def test_default_sampler_uses_config(self) -> None:
        """Test that engine options reach the default GibbsSampler."""
        config = EstimationConfig(step="metropolis", n_adapt=10, random_seed=4, slice_iter_limit=250)
        sampler = ZinbHB(config)._make_sampler()
        assert sampler.step == "metropolis"
        assert sampler.n_adapt == 10
        assert sampler.random_seed == 4
        assert sampler.slice_iter_limit == 250

    def test_estimator_is_reusable(self, area_data: pd.DataFrame) -> None:
        """Test that consecutive fits do not share state."""
        sampler = RecordingSampler()
        estimator = ZinbHB(sampler=sampler)
        first = estimator.fit_formula("y ~ x1 + x2", area_data)
        second = estimator.fit_formula("y ~ x1", area_data)

        assert len(sampler.calls) == 6
        assert first.hyperparameters.nvar == 3
        assert second.hyperparameters.nvar == 2


@pytest.mark.slow
class TestZinbHBWithPyMC:
    """Smoke test against the real engine."""

    def test_small_mixed_run(self) -> None:
        rng = np.random.default_rng(7)
        x = rng.normal(size=12)
        y = rng.poisson(np.exp(0.5 + 0.3 * x)).astype(float)
        y[[2, 9]] = np.nan
        data = pd.DataFrame({"y": y, "x": x})

        result = zinb_hb(
            "y ~ x", data,
            iter_update=3, iter_mcmc=60, burn_in=20, n_adapt=20, random_seed=1,
        )

        assert result.estimates.shape == (12, 7)
        assert np.all(np.isfinite(result.estimates.to_numpy()))
        assert np.all(result.estimates["MEAN"] > 0)
        assert result.beta_samples is not None
        assert result.beta_samples.sizes["draw"] == 40
