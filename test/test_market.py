"""Tests for market.py scenario sampling."""

import numpy as np
import pytest

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from guardrail_settings import ShockSetting, SimulationConfig
from market import (
    MarketScenarioSampler,
    Scenario,
    as_seed_sequence,
    child_seed_sequences,
    draw_returns,
)


class TestDrawReturns:
    """Tests for draw_returns function."""

    def test_normal_is_additive(self):
        z = np.array([-1.0, 0.0, 2.0])
        result = draw_returns(z, 0.05, 0.10, "normal")
        assert np.allclose(result, [-0.05, 0.05, 0.25])

    def test_normal_can_fall_below_total_loss(self):
        result = draw_returns(np.array([-20.0]), 0.04, 0.10, "normal")
        assert result[0] < -1.0

    def test_lognormal_never_reaches_total_loss(self):
        result = draw_returns(np.array([-50.0, 0.0, 50.0]), 0.04, 0.20, "lognormal")
        assert np.all(result > -1.0)

    def test_lognormal_median(self):
        # Z = 0 gives exp(mu - sigma^2 / 2) - 1
        result = draw_returns(np.array([0.0]), 0.05, 0.20, "lognormal")
        assert np.isclose(result[0], np.exp(0.05 - 0.02) - 1.0)


class TestSeedHandling:
    """Tests for seed normalisation helpers."""

    def test_int_seed_is_reproducible(self):
        a = np.random.default_rng(as_seed_sequence(7)).standard_normal(3)
        b = np.random.default_rng(as_seed_sequence(7)).standard_normal(3)
        assert np.array_equal(a, b)

    def test_seed_sequence_passes_through(self):
        seq = np.random.SeedSequence(3)
        assert as_seed_sequence(seq) is seq

    def test_generator_seed(self):
        seq = as_seed_sequence(np.random.default_rng(1))
        assert isinstance(seq, np.random.SeedSequence)

    def test_children_do_not_advance_parent(self):
        parent = np.random.SeedSequence(11)
        first = child_seed_sequences(parent, 3)
        second = child_seed_sequences(parent, 3)
        for a, b in zip(first, second):
            assert np.array_equal(a.generate_state(4), b.generate_state(4))

    def test_children_are_independent_streams(self):
        a, b = child_seed_sequences(np.random.SeedSequence(11), 2)
        assert not np.array_equal(a.generate_state(4), b.generate_state(4))

    def test_children_match_spawn(self):
        parent = np.random.SeedSequence(5)
        derived = child_seed_sequences(parent, 2)
        spawned = np.random.SeedSequence(5).spawn(2)
        for a, b in zip(derived, spawned):
            assert np.array_equal(a.generate_state(4), b.generate_state(4))


class TestScenario:
    def test_nominal_return(self):
        scenario = Scenario(real_return=0.04, inflation=0.03)
        assert np.isclose(scenario.nominal_return, 1.04 * 1.03 - 1.0)


class TestMarketScenarioSampler:
    """Tests for MarketScenarioSampler."""

    @pytest.fixture
    def config(self):
        return SimulationConfig(
            mean_return=0.04,
            return_volatility=0.10,
            inflation_mean=0.03,
            inflation_volatility=0.0,
            shocks=(ShockSetting(0, -0.15), ShockSetting(1, -0.15)),
        )

    def test_sample_is_reproducible(self, config):
        a = MarketScenarioSampler(config, 123)
        b = MarketScenarioSampler(config, 123)
        assert [a.sample(5) for _ in range(5)] == [b.sample(5) for _ in range(5)]

    def test_constant_inflation(self, config):
        sampler = MarketScenarioSampler(config, 1)
        assert all(sampler.sample(3).inflation == 0.03 for _ in range(10))
        _, inflation = sampler.sample_paths(50, 0, 5)
        assert np.all(inflation == 0.03)

    def test_stochastic_inflation(self, config):
        sampler = MarketScenarioSampler(config.replace(inflation_volatility=0.015), 1)
        _, inflation = sampler.sample_paths(20_000, 0, 1)
        assert np.std(inflation) > 0.0
        assert abs(np.mean(inflation) - 0.03) < 0.001

    def test_shock_overrides_sample(self, config):
        sampler = MarketScenarioSampler(config, 1)
        assert sampler.sample(0).real_return == -0.15
        assert sampler.sample(1).real_return == -0.15
        assert sampler.sample(2).real_return != -0.15

    def test_shock_ignored_when_not_honored(self, config):
        sampler = MarketScenarioSampler(config, 1, honor_shocks=False)
        assert sampler.sample(0).real_return != -0.15

    def test_sample_paths_shape_and_shock_columns(self, config):
        sampler = MarketScenarioSampler(config, 2)
        returns, inflation = sampler.sample_paths(100, 1, 4)
        assert returns.shape == (100, 4)
        assert inflation.shape == (100, 4)
        # Plan year 1 is column 0 when the paths start at year 1
        assert np.all(returns[:, 0] == -0.15)
        assert not np.all(returns[:, 1] == -0.15)

    def test_sample_paths_moments(self, config):
        sampler = MarketScenarioSampler(config.replace(shocks=()), 3)
        returns, _ = sampler.sample_paths(50_000, 0, 2)
        assert abs(returns.mean() - 0.04) < 0.002
        assert abs(returns.std() - 0.10) < 0.002

    def test_nominal_basis_is_deflated(self, config):
        nominal = config.replace(return_basis="nominal", return_volatility=0.0, shocks=())
        scenario = MarketScenarioSampler(nominal, 0).sample(2)
        assert np.isclose(scenario.real_return, 1.04 / 1.03 - 1.0)
        assert np.isclose(scenario.nominal_return, 0.04)

    def test_expected_scenario(self, config):
        expected = MarketScenarioSampler(config, 0).expected_scenario()
        assert expected == Scenario(real_return=0.04, inflation=0.03)
