"""Tests for the Monte Carlo Bayesian comparison."""
import numpy as np
import pytest

from experiment_platform.stats.bayesian import beta_binomial_analysis, normal_analysis
from experiment_platform.stats.hypothesis_tests import arm_stats_from_counts, arm_stats_from_values


def test_equal_arms_probability_near_half():
    ctrl = arm_stats_from_counts("c", 100, 1000)
    treat = arm_stats_from_counts("t", 100, 1000)
    result = beta_binomial_analysis(ctrl, treat, np.random.default_rng(1))
    assert result.model == "beta_binomial"
    assert result.samples == 10000
    assert abs(result.probability_better - 0.5) < 0.03
    assert result.credible_low < 0 < result.credible_high


def test_clear_winner():
    ctrl = arm_stats_from_counts("c", 40, 1000)
    treat = arm_stats_from_counts("t", 80, 1000)
    result = beta_binomial_analysis(ctrl, treat, np.random.default_rng(2))
    assert result.probability_better > 0.99
    assert result.expected_loss < 0.001
    assert result.credible_low > 0
    # posterior mean of Beta(41, 961)
    assert result.control_posterior_mean == pytest.approx(41 / 1002, abs=0.001)


def test_seeded_runs_are_reproducible():
    ctrl = arm_stats_from_counts("c", 45, 1000)
    treat = arm_stats_from_counts("t", 50, 1000)
    a = beta_binomial_analysis(ctrl, treat, np.random.default_rng(99))
    b = beta_binomial_analysis(ctrl, treat, np.random.default_rng(99))
    assert a.probability_better == b.probability_better
    assert a.credible_low == b.credible_low


def test_checkpoint_called_per_chunk():
    calls = []
    ctrl = arm_stats_from_counts("c", 10, 100)
    treat = arm_stats_from_counts("t", 12, 100)
    beta_binomial_analysis(ctrl, treat, np.random.default_rng(0), samples=10000, checkpoint=lambda: calls.append(1))
    assert len(calls) == 4


def test_normal_model_for_continuous():
    ctrl = arm_stats_from_values("c", np.array([3.0, 4.0] * 100))
    treat = arm_stats_from_values("t", np.array([4.0, 5.0] * 100))
    result = normal_analysis(ctrl, treat, np.random.default_rng(3))
    assert result.model == "normal"
    assert result.probability_better > 0.999
    assert result.credible_low == pytest.approx(1.0, abs=0.2)
