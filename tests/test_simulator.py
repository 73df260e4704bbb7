"""Tests for the DCC-GARCH path simulator and the autocall payoff engine."""

import logging
import math
import pickle
from dataclasses import replace

import numpy as np
import pytest

from coe_autocall.engine import AutocallConfig, DCCParams, Discounting
from coe_autocall.engine.payoff import PathState
from coe_autocall.engine.simulator import PathSimulator, survival_curve
from coe_autocall.market.curves import FlatCurve, load_usd_curve
from coe_autocall.market.fx import fx_forward_rate

NUM_PATHS = 200


def correlation_matrix(rho: float, n: int = 4) -> np.ndarray:
    return np.full((n, n), rho) + (1.0 - rho) * np.eye(n)


@pytest.fixture
def frozen_simulator(specs, frozen_models, dcc_params):
    return PathSimulator(specs, frozen_models, dcc_params, max_workers=2)


@pytest.fixture
def single_observation_config():
    """One observation at day 126 paying 5%, BRL 10% / USD 5%, spot 5.0."""
    return AutocallConfig(
        coupons=(0.05,),
        obs_spacing_days=126,
        horizon_days=126,
        principal=100.0,
        rf_rate=0.10,
        domestic_curve=FlatCurve(0.10),
        foreign_curve=FlatCurve(0.05),
        fx_spot=5.0,
    )


# ---------------------------------------------------------------------------
# Deterministic scenarios
# ---------------------------------------------------------------------------

class TestFrozenVariance:
    def test_every_path_called_at_first_observation(self, frozen_simulator, single_observation_config):
        result = frozen_simulator.run(single_observation_config, num_paths=20, seed=1)

        expected_pv = 105.0 / fx_forward_rate(5.0, 0.10, 0.05, 0.5) * math.exp(-0.05 * 0.5) * 5.0
        np.testing.assert_array_equal(result.exercise_periods, 1)
        np.testing.assert_array_equal(result.exercise_days, 126)
        np.testing.assert_allclose(result.nominal_payoffs, 105.0)
        np.testing.assert_allclose(result.present_values, expected_pv, rtol=1e-12)
        np.testing.assert_allclose(result.survival_probabilities, [1.0, 0.0])
        assert result.autocall_probability == 1.0

    def test_falling_prices_mature_without_coupons(self, frozen_simulator, small_config):
        # negative USD rate drags every price below its strike
        config = replace(small_config, foreign_curve=FlatCurve(-0.05))
        result = frozen_simulator.run(config, num_paths=10, seed=1)

        tau = config.horizon_days / 252
        np.testing.assert_array_equal(result.exercise_periods, 0)
        np.testing.assert_allclose(result.nominal_payoffs, config.principal)
        np.testing.assert_allclose(
            result.present_values, config.principal * math.exp(-0.10 * tau), rtol=1e-12
        )
        np.testing.assert_allclose(result.survival_probabilities, 1.0)

    def test_coupon_accrual_periods(self, frozen_simulator, small_config):
        called = frozen_simulator.run_outcomes(small_config, num_paths=3, seed=1)
        assert all(o.state == PathState.EXERCISED for o in called)
        assert all(o.accrual_periods == (1,) for o in called)

        config = replace(small_config, foreign_curve=FlatCurve(-0.05))
        matured = frozen_simulator.run_outcomes(config, num_paths=3, seed=1)
        assert all(o.state == PathState.MATURED for o in matured)
        assert all(o.accrual_periods == (1, 2, 3, 4) for o in matured)
        assert all(o.coupon_accrual == pytest.approx(0.20) for o in matured)


class TestDegenerateCorrelation:
    def test_non_positive_definite_falls_back_every_step(self, specs, frozen_models, small_config, caplog):
        # pairwise -0.5 across four assets is not positive semi-definite
        bad = DCCParams(a=0.01, b=0.95, q_bar=correlation_matrix(-0.5))
        simulator = PathSimulator(specs, frozen_models, bad, max_workers=1)

        with caplog.at_level(logging.WARNING):
            result = simulator.run(small_config, num_paths=5, seed=1)

        # frozen prices drift up, so every path is called on day 21
        assert result.degenerate_correlation_steps == 5 * 21
        assert "degenerate correlation steps" in caplog.text

    def test_fallback_counted_across_worker_processes(self, specs, frozen_models, small_config, caplog):
        bad = DCCParams(a=0.01, b=0.95, q_bar=correlation_matrix(-0.5))
        simulator = PathSimulator(specs, frozen_models, bad, max_workers=2)

        with caplog.at_level(logging.WARNING):
            result = simulator.run(small_config, num_paths=6, seed=1)

        assert result.degenerate_correlation_steps == 6 * 21
        assert "degenerate correlation steps" in caplog.text

    def test_infinite_variance_nu_is_reported(self, specs, garch_models, dcc_params, caplog):
        with caplog.at_level(logging.WARNING):
            PathSimulator(specs, garch_models, dcc_params, dof=2.0)
        assert "no finite variance" in caplog.text

    def test_well_conditioned_run_has_no_degenerate_steps(self, simulator, small_config):
        assert simulator.run(small_config, num_paths=50, seed=3).degenerate_correlation_steps == 0


# ---------------------------------------------------------------------------
# Stochastic properties
# ---------------------------------------------------------------------------

class TestDeterminism:
    def test_same_seed_identical(self, simulator, small_config):
        r1 = simulator.run(small_config, num_paths=NUM_PATHS, seed=42)
        r2 = simulator.run(small_config, num_paths=NUM_PATHS, seed=42)
        np.testing.assert_array_equal(r1.present_values, r2.present_values)
        np.testing.assert_array_equal(r1.nominal_payoffs, r2.nominal_payoffs)

    def test_independent_of_worker_count(self, specs, garch_models, dcc_params, small_config):
        serial = PathSimulator(specs, garch_models, dcc_params, max_workers=1)
        parallel = PathSimulator(specs, garch_models, dcc_params, max_workers=3)
        np.testing.assert_array_equal(
            serial.run(small_config, num_paths=60, seed=9).present_values,
            parallel.run(small_config, num_paths=60, seed=9).present_values,
        )

    def test_worker_processes_keep_path_order(self, specs, garch_models, dcc_params, small_config):
        # 7 paths over 2 workers split into uneven chunks
        serial = PathSimulator(specs, garch_models, dcc_params, max_workers=1)
        parallel = PathSimulator(specs, garch_models, dcc_params, max_workers=2)
        expected = serial.run_outcomes(small_config, num_paths=7, seed=3, num_detailed_samples=2)
        outcomes = parallel.run_outcomes(small_config, num_paths=7, seed=3, num_detailed_samples=2)

        assert [o.path_id for o in outcomes] == list(range(1, 8))
        assert [o.present_value for o in outcomes] == [o.present_value for o in expected]
        assert [o.sample is not None for o in outcomes] == [True, True] + [False] * 5

    def test_interpolated_curve_runs_in_worker_processes(self, specs, garch_models, dcc_params, small_config):
        config = replace(small_config, foreign_curve=load_usd_curve())
        serial = PathSimulator(specs, garch_models, dcc_params, max_workers=1)
        parallel = PathSimulator(specs, garch_models, dcc_params, max_workers=2)
        np.testing.assert_array_equal(
            serial.run(config, num_paths=20, seed=5).present_values,
            parallel.run(config, num_paths=20, seed=5).present_values,
        )

    def test_simulator_survives_pickling(self, simulator, small_config):
        restored = pickle.loads(pickle.dumps(simulator))
        assert restored.dof == simulator.dof
        np.testing.assert_array_equal(
            restored.run(small_config, num_paths=10, seed=4).present_values,
            simulator.run(small_config, num_paths=10, seed=4).present_values,
        )

    def test_different_seed_differs(self, simulator, small_config):
        r1 = simulator.run(small_config, num_paths=NUM_PATHS, seed=1)
        r2 = simulator.run(small_config, num_paths=NUM_PATHS, seed=2)
        assert not np.array_equal(r1.exercise_periods, r2.exercise_periods)

    def test_path_seed_derivation(self, simulator, small_config):
        outcomes = simulator.run_outcomes(small_config, num_paths=5, seed=100)
        assert [o.path_id for o in outcomes] == [1, 2, 3, 4, 5]
        assert [o.seed_used for o in outcomes] == [100, 101, 102, 103, 104]


class TestPayoffProperties:
    def test_pv_never_exceeds_nominal(self, simulator, small_config):
        result = simulator.run(small_config, num_paths=NUM_PATHS, seed=5)
        assert np.all(result.present_values <= result.nominal_payoffs)

    def test_coupon_does_not_change_timing(self, simulator, small_config):
        low = simulator.run(small_config.with_flat_coupon(0.02), num_paths=NUM_PATHS, seed=8)
        high = simulator.run(small_config.with_flat_coupon(0.10), num_paths=NUM_PATHS, seed=8)

        np.testing.assert_array_equal(low.exercise_periods, high.exercise_periods)
        np.testing.assert_array_equal(low.exercise_days, high.exercise_days)
        called = low.exercise_periods > 0
        assert np.all(high.nominal_payoffs[called] > low.nominal_payoffs[called])
        np.testing.assert_array_equal(high.nominal_payoffs[~called], low.nominal_payoffs[~called])

    def test_zero_basis_matches_domestic_discounting(self, simulator, small_config):
        curve = FlatCurve(0.05)
        config = replace(small_config, domestic_curve=curve, foreign_curve=curve)
        dual = simulator.run(config, num_paths=NUM_PATHS, seed=4)
        domestic = simulator.run(config, num_paths=NUM_PATHS, seed=4, discounting=Discounting.DOMESTIC)
        np.testing.assert_allclose(dual.present_values, domestic.present_values, rtol=1e-12)

    def test_fx_spot_bump(self, simulator, small_config):
        # spot enters through both the forward and the conversion back, so it cancels
        base = simulator.run(small_config, num_paths=NUM_PATHS, seed=6)
        bumped = simulator.run(replace(small_config, fx_spot=5.5), num_paths=NUM_PATHS, seed=6)
        np.testing.assert_allclose(bumped.present_values, base.present_values, rtol=1e-12)
        assert bumped.mean_price / base.mean_price == pytest.approx(1.1, rel=0.15)

    def test_unit_volatility_multiplier_is_identity(self, simulator, small_config):
        base = simulator.run(small_config, num_paths=50, seed=2)
        same = simulator.with_volatility_multiplier(1.0).run(small_config, num_paths=50, seed=2)
        np.testing.assert_array_equal(base.present_values, same.present_values)


class TestSimulationResult:
    def test_aggregates(self, simulator, small_config):
        result = simulator.run(small_config, num_paths=NUM_PATHS, seed=11)
        assert result.num_paths == NUM_PATHS
        assert result.stderr > 0
        q05, q95 = result.confidence_interval
        assert q05 <= result.mean_price <= q95
        assert result.survival_probabilities[0] == 1.0
        assert np.all(np.diff(result.survival_probabilities) <= 0)
        assert result.exercise_probabilities.sum() == pytest.approx(result.autocall_probability)
        assert result.detailed_samples is None

    def test_detailed_samples(self, simulator, small_config):
        result = simulator.run(small_config, num_paths=20, seed=50, num_detailed_samples=3)
        samples = result.detailed_samples
        assert [s.path_id for s in samples] == [1, 2, 3]
        assert [s.seed_used for s in samples] == [50, 51, 52]
        for sample, pv in zip(samples, result.present_values):
            assert sample.final_payoff_pv == pv
            assert sample.prices_at_obs.shape == (4, 4)
            assert sample.timeline[0].startswith("Start")
            assert sample.obs_dates == (21, 42, 63, 84)

    def test_detailed_sample_timeline_on_autocall(self, frozen_simulator, small_config):
        sample = frozen_simulator.run(small_config, num_paths=1, num_detailed_samples=1).detailed_samples[0]
        assert sample.autocall_period == 1
        assert any("AUTOCALL" in line for line in sample.timeline)
        np.testing.assert_array_equal(sample.prices_at_obs[1:], 0.0)

    def test_survival_curve(self):
        np.testing.assert_allclose(survival_curve(np.array([0, 1, 2, 2, 0]), 3), [1.0, 0.8, 0.4, 0.4])

    def test_rejects_non_positive_paths(self, simulator, small_config):
        with pytest.raises(ValueError):
            simulator.run(small_config, num_paths=0)
