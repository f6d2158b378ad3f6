"""
Frequentist tests for experiment analysis.

Welch's t-test (unequal variances) on per-arm sufficient statistics, with a
confidence interval for the mean difference, absolute effect and relative
lift.
"""

import math
from typing import Optional

import numpy as np
from scipy import stats

from ..schema import ArmStats, FrequentistResult


def welch_t_test(
    control: ArmStats,
    treatment: ArmStats,
    confidence_level: float = 0.95,
) -> FrequentistResult:
    """
    Two-sided Welch's t-test of treatment mean vs control mean.

    Args:
        control: Control arm statistics (n, mean, std)
        treatment: Treatment arm statistics
        confidence_level: Confidence level for significance and the CI

    Returns:
        FrequentistResult
    """
    n_c, n_t = control.n, treatment.n
    var_c, var_t = control.variance, treatment.variance

    effect = treatment.mean - control.mean
    relative_lift: Optional[float] = effect / control.mean if control.mean != 0 else None

    se_c = var_c / n_c
    se_t = var_t / n_t
    se = math.sqrt(se_c + se_t)

    if se > 0:
        t_stat = effect / se
        # Welch-Satterthwaite
        denom = (se_c ** 2) / (n_c - 1) if n_c > 1 else 0.0
        denom += (se_t ** 2) / (n_t - 1) if n_t > 1 else 0.0
        df = (se_c + se_t) ** 2 / denom if denom > 0 else float(n_c + n_t - 2)
        p_value = float(2 * stats.t.sf(abs(t_stat), df))
        t_crit = stats.t.ppf((1 + confidence_level) / 2, df)
        ci_low = effect - t_crit * se
        ci_high = effect + t_crit * se
    else:
        # Both arms constant: the difference is exact
        df = float(n_c + n_t - 2)
        t_stat = 0.0 if effect == 0 else math.copysign(math.inf, effect)
        p_value = 1.0 if effect == 0 else 0.0
        ci_low = ci_high = effect

    return FrequentistResult(
        t_statistic=float(t_stat),
        degrees_of_freedom=float(df),
        p_value=p_value,
        is_significant=p_value < (1 - confidence_level),
        confidence_level=confidence_level,
        ci_low=float(ci_low),
        ci_high=float(ci_high),
        effect_size=float(effect),
        relative_lift=float(relative_lift) if relative_lift is not None else None,
    )


def _arm_interval(mean: float, std: float, n: int, ci_level: float):
    if n > 1 and std > 0:
        se = std / np.sqrt(n)
        t_crit = stats.t.ppf((1 + ci_level) / 2, n - 1)
        return float(mean - t_crit * se), float(mean + t_crit * se)
    return mean, mean


def arm_stats_from_values(
    variant_id: str,
    values: np.ndarray,
    ci_level: float = 0.95,
) -> ArmStats:
    """Build ArmStats from raw continuous values."""
    values = np.asarray(values, dtype=float)
    n = len(values)
    mean = float(np.mean(values)) if n else 0.0
    std = float(np.std(values, ddof=1)) if n > 1 else 0.0
    ci_low, ci_high = _arm_interval(mean, std, n, ci_level)
    return ArmStats(variant_id=variant_id, n=n, mean=mean, std=std, ci_low=ci_low, ci_high=ci_high)


def arm_stats_from_counts(
    variant_id: str,
    successes: int,
    trials: int,
    ci_level: float = 0.95,
) -> ArmStats:
    """
    Build ArmStats for a rate metric from successes / trials.

    Equivalent to arm_stats_from_values on a 0/1 vector, without materialising it.
    """
    successes = min(int(successes), int(trials))
    n = int(trials)
    if n == 0:
        return ArmStats(variant_id=variant_id, n=0, mean=0.0, std=0.0, ci_low=0.0, ci_high=0.0, successes=0)
    p = successes / n
    # Sample (ddof=1) variance of a Bernoulli vector
    std = math.sqrt(p * (1 - p) * n / (n - 1)) if n > 1 else 0.0
    ci_low, ci_high = _arm_interval(p, std, n, ci_level)
    return ArmStats(
        variant_id=variant_id, n=n, mean=p, std=std, ci_low=ci_low, ci_high=ci_high, successes=successes
    )
