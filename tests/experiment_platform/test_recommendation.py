"""Tests for the launch decision table."""
import pytest

from experiment_platform.recommendation import DecisionInputs, confidence_label, recommend
from experiment_platform.schema import Confidence, Decision


def test_launch_high_confidence():
    rec = recommend(DecisionInputs(p_value=0.001, relative_lift=0.25, probability_better=0.99))
    assert rec.decision == Decision.LAUNCH
    assert rec.confidence == Confidence.HIGH


@pytest.mark.parametrize("probability_better", [0.0, 0.5, 0.99])
def test_significant_regression_stops(probability_better):
    rec = recommend(DecisionInputs(p_value=0.01, relative_lift=-0.1, probability_better=probability_better))
    assert rec.decision == Decision.STOP


def test_stop_overrides_guardrails():
    rec = recommend(DecisionInputs(0.001, -0.2, 0.01, guardrail_violated=True))
    assert rec.decision == Decision.STOP


def test_guardrail_violation_investigates():
    rec = recommend(DecisionInputs(0.001, 0.25, 0.99, guardrail_violated=True))
    assert rec.decision == Decision.INVESTIGATE


def test_methods_disagree_investigates():
    rec = recommend(DecisionInputs(p_value=0.03, relative_lift=0.1, probability_better=0.7))
    assert rec.decision == Decision.INVESTIGATE


def test_significant_but_not_certain_continues():
    rec = recommend(DecisionInputs(p_value=0.03, relative_lift=0.1, probability_better=0.9))
    assert rec.decision == Decision.CONTINUE
    assert rec.confidence == Confidence.MEDIUM


def test_no_signal_continues_low():
    rec = recommend(DecisionInputs(p_value=0.6, relative_lift=0.01, probability_better=0.55))
    assert rec.decision == Decision.CONTINUE
    assert rec.confidence == Confidence.LOW


def test_insufficient_data_continues_low():
    rec = recommend(DecisionInputs(0.0001, 0.5, 1.0, insufficient_data=True))
    assert rec.decision == Decision.CONTINUE
    assert rec.confidence == Confidence.LOW


def test_undefined_lift_uses_effect_sign():
    rec = recommend(DecisionInputs(0.001, None, 0.999, effect_size=0.05))
    assert rec.decision == Decision.LAUNCH
    rec = recommend(DecisionInputs(0.001, None, 0.001, effect_size=-0.05))
    assert rec.decision == Decision.STOP


def test_alpha_follows_confidence_level():
    inputs = DecisionInputs(p_value=0.03, relative_lift=0.2, probability_better=0.97)
    assert recommend(inputs, alpha=0.05).decision == Decision.LAUNCH
    assert recommend(inputs, alpha=0.01).decision == Decision.CONTINUE


def test_confidence_label_levels():
    assert confidence_label(0.001, 0.995) == Confidence.HIGH
    assert confidence_label(0.001, 0.9) == Confidence.MEDIUM
    assert confidence_label(0.2, 0.96) == Confidence.MEDIUM
    assert confidence_label(0.2, 0.6) == Confidence.LOW
