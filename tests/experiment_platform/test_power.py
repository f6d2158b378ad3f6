"""Tests for the sample-size calculator."""
import pytest

from experiment_platform.errors import ValidationError
from experiment_platform.stats.power import achieved_power, required_sample_size


def test_required_sample_size_known_value():
    """10% baseline, +20% relative effect, 80% power, alpha 0.05."""
    assert required_sample_size(0.10, 0.20) == 3841


def test_smaller_effect_needs_more_users():
    assert required_sample_size(0.04, 0.10) > required_sample_size(0.04, 0.25)


def test_more_power_needs_more_users():
    assert required_sample_size(0.05, 0.2, power=0.9) > required_sample_size(0.05, 0.2, power=0.8)


def test_achieved_power_round_trip():
    n = required_sample_size(0.10, 0.20)
    assert achieved_power(0.10, 0.20, n) == pytest.approx(0.8, abs=0.005)
    assert achieved_power(0.10, 0.20, n // 4) < 0.5
    assert achieved_power(0.10, 0.20, 0) == 0.0


@pytest.mark.parametrize("kwargs", [
    dict(baseline_rate=0.0, minimum_detectable_effect=0.1),
    dict(baseline_rate=1.2, minimum_detectable_effect=0.1),
    dict(baseline_rate=0.5, minimum_detectable_effect=0.0),
    dict(baseline_rate=0.6, minimum_detectable_effect=1.0),
    dict(baseline_rate=0.1, minimum_detectable_effect=0.1, power=1.0),
])
def test_invalid_inputs(kwargs):
    with pytest.raises(ValidationError):
        required_sample_size(**kwargs)
