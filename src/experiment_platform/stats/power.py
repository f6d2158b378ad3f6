"""
Power analysis and sample-size calculator for rate metrics.

Two-proportion normal approximation; the treatment rate is
baseline * (1 + minimum detectable relative effect).
"""

import math

import numpy as np
from scipy import stats

from ..errors import ValidationError


def _check_inputs(baseline_rate: float, minimum_detectable_effect: float, alpha: float) -> float:
    if not 0 < baseline_rate < 1:
        raise ValidationError("baseline_rate must be in (0, 1)", field_name="baseline_rate")
    if minimum_detectable_effect == 0:
        raise ValidationError("minimum_detectable_effect must be non-zero", field_name="minimum_detectable_effect")
    if not 0 < alpha < 1:
        raise ValidationError("alpha must be in (0, 1)", field_name="alpha")
    p2 = baseline_rate * (1 + minimum_detectable_effect)
    if not 0 < p2 < 1:
        raise ValidationError(
            f"Treatment rate {p2:.4f} implied by the effect is outside (0, 1)",
            field_name="minimum_detectable_effect",
        )
    return p2


def required_sample_size(
    baseline_rate: float,
    minimum_detectable_effect: float,
    power: float = 0.8,
    alpha: float = 0.05,
) -> int:
    """
    Per-arm sample size for a two-sided two-proportion test.

    Args:
        baseline_rate: Control rate (e.g., 0.04 conversion)
        minimum_detectable_effect: Relative change to detect (0.25 = +25%)
        power: Statistical power (1 - Type II)
        alpha: Type I error rate

    Returns:
        Required n per arm (rounded up)
    """
    if not 0 < power < 1:
        raise ValidationError("power must be in (0, 1)", field_name="power")
    p1 = baseline_rate
    p2 = _check_inputs(baseline_rate, minimum_detectable_effect, alpha)

    z_alpha = stats.norm.ppf(1 - alpha / 2)
    z_power = stats.norm.ppf(power)

    p_pool = (p1 + p2) / 2
    numerator = (
        z_alpha * math.sqrt(2 * p_pool * (1 - p_pool))
        + z_power * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    return int(np.ceil(numerator / (p2 - p1) ** 2))


def achieved_power(
    baseline_rate: float,
    minimum_detectable_effect: float,
    n_per_arm: int,
    alpha: float = 0.05,
) -> float:
    """
    Power reached with n_per_arm users for the given effect.

    Returns:
        Statistical power (0-1)
    """
    if n_per_arm <= 0:
        return 0.0
    p1 = baseline_rate
    p2 = _check_inputs(baseline_rate, minimum_detectable_effect, alpha)

    z_alpha = stats.norm.ppf(1 - alpha / 2)
    p_pool = (p1 + p2) / 2
    z = (
        abs(p2 - p1) * math.sqrt(n_per_arm) - z_alpha * math.sqrt(2 * p_pool * (1 - p_pool))
    ) / math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    return float(np.clip(stats.norm.cdf(z), 0, 1))
