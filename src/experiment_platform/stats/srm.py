"""
Sample Ratio Mismatch (SRM) chi-square test.

Detects if the observed users per variant deviate significantly from the
configured allocation percentages.
"""

from typing import Sequence, Tuple

import numpy as np
from scipy import stats


def srm_chi_square(
    observed: Sequence[int],
    allocation_percentages: Sequence[float],
) -> Tuple[float, float]:
    """
    Chi-square goodness-of-fit of observed counts against allocations.

    H0: users are split as configured
    H1: the split differs

    Args:
        observed: Users per variant
        allocation_percentages: Configured allocation per variant (sums to 100)

    Returns:
        Tuple of (chi2_statistic, p_value)
    """
    observed = np.asarray(observed, dtype=float)
    n_total = observed.sum()
    if n_total == 0 or len(observed) < 2:
        return 0.0, 1.0

    expected = n_total * np.asarray(allocation_percentages, dtype=float) / 100.0
    # Avoid division by zero
    expected = np.where(expected == 0, 1e-10, expected)

    chi2 = float(np.sum((observed - expected) ** 2 / expected))
    p_value = float(stats.chi2.sf(chi2, df=len(observed) - 1))
    return chi2, p_value


def check_srm(
    observed: Sequence[int],
    allocation_percentages: Sequence[float],
    alpha: float = 0.01,
) -> Tuple[bool, float, float]:
    """
    Check for sample ratio mismatch.

    Args:
        observed: Users per variant
        allocation_percentages: Configured allocation per variant
        alpha: Significance threshold (default 0.01)

    Returns:
        Tuple of (srm_passed, chi2_statistic, p_value)
    """
    chi2, p_value = srm_chi_square(observed, allocation_percentages)
    srm_passed = p_value >= alpha
    return srm_passed, chi2, p_value
