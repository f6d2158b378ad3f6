"""Experiment statistics module."""

from .srm import srm_chi_square, check_srm
from .power import required_sample_size, achieved_power
from .hypothesis_tests import welch_t_test, arm_stats_from_values, arm_stats_from_counts
from .bayesian import beta_binomial_analysis, normal_analysis, summarize_draws

__all__ = [
    "srm_chi_square",
    "check_srm",
    "required_sample_size",
    "achieved_power",
    "welch_t_test",
    "arm_stats_from_values",
    "arm_stats_from_counts",
    "beta_binomial_analysis",
    "normal_analysis",
    "summarize_draws",
]
