"""Tests for SRM chi-square."""
from experiment_platform.stats.srm import check_srm, srm_chi_square


def test_srm_perfect_balance():
    """500/500 should pass SRM."""
    passed, _, p = check_srm([500, 500], [50, 50])
    assert passed
    assert p > 0.9


def test_srm_extreme_imbalance():
    """900/100 should fail SRM."""
    passed, _, p = check_srm([900, 100], [50, 50])
    assert not passed
    assert p < 0.01


def test_srm_uneven_allocation():
    """A 20/80 split observed as configured passes."""
    passed, _, _ = check_srm([200, 800], [20, 80])
    assert passed


def test_srm_three_arms():
    passed, chi2, _ = check_srm([333, 333, 334], [33.33, 33.33, 33.34])
    assert passed
    assert chi2 < 1


def test_srm_no_users():
    assert srm_chi_square([0, 0], [50, 50]) == (0.0, 1.0)
