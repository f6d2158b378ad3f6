"""
Launch recommendation from the frequentist and Bayesian results.

Precedence:
    STOP         significant regression (overrides guardrails)
    INVESTIGATE  treatment violates a guardrail
    LAUNCH       significant lift, P(better) >= 0.95
    INVESTIGATE  significant lift the Bayesian view does not back (P(better) < 0.8)
    CONTINUE     anything else
"""

from dataclasses import dataclass
from typing import Optional

from .config import DISAGREEMENT_PROBABILITY, LAUNCH_PROBABILITY
from .schema import Confidence, Decision


@dataclass
class DecisionInputs:
    """Everything the decision depends on, taken from one comparison."""
    p_value: float
    relative_lift: Optional[float]
    probability_better: float
    effect_size: float = 0.0
    guardrail_violated: bool = False
    insufficient_data: bool = False


@dataclass
class Recommendation:
    decision: Decision
    confidence: Confidence
    reason: str


def _direction(inputs: DecisionInputs) -> float:
    # relative lift is undefined when the control mean is 0
    if inputs.relative_lift is not None:
        return inputs.relative_lift
    return inputs.effect_size


def confidence_label(p_value: float, probability_better: float, alpha: float = 0.05) -> Confidence:
    """
    High when both methods are far past their thresholds, medium when
    either one clears its threshold, low otherwise.
    """
    certainty = max(probability_better, 1 - probability_better)
    if p_value < alpha / 5 and certainty >= 0.99:
        return Confidence.HIGH
    if p_value < alpha or certainty >= 0.95:
        return Confidence.MEDIUM
    return Confidence.LOW


def recommend(
    inputs: DecisionInputs,
    alpha: float = 0.05,
    launch_probability: float = LAUNCH_PROBABILITY,
    disagreement_probability: float = DISAGREEMENT_PROBABILITY,
) -> Recommendation:
    """
    Map one control-vs-treatment comparison to a decision and confidence.

    Args:
        inputs: p-value, lift, P(treatment better) and guardrail state
        alpha: Significance threshold (1 - confidence_level)
        launch_probability: P(better) required to launch
        disagreement_probability: P(better) below which a significant lift is suspect

    Returns:
        Recommendation
    """
    if inputs.insufficient_data:
        return Recommendation(Decision.CONTINUE, Confidence.LOW, "Not enough data in one or both arms")

    significant = inputs.p_value < alpha
    direction = _direction(inputs)
    pb = inputs.probability_better
    confidence = confidence_label(inputs.p_value, pb, alpha)

    if significant and direction < 0:
        return Recommendation(
            Decision.STOP,
            confidence,
            f"Treatment performs significantly worse than control (p={inputs.p_value:.4f})",
        )
    if inputs.guardrail_violated:
        return Recommendation(
            Decision.INVESTIGATE,
            confidence,
            "Treatment violates a guardrail metric",
        )
    if significant and direction > 0 and pb >= launch_probability:
        return Recommendation(
            Decision.LAUNCH,
            confidence,
            f"Significant improvement (p={inputs.p_value:.4f}, "
            f"{pb * 100:.1f}% probability of being better)",
        )
    if significant and direction > 0 and pb < disagreement_probability:
        return Recommendation(
            Decision.INVESTIGATE,
            confidence,
            f"Frequentist and Bayesian results disagree (p={inputs.p_value:.4f}, "
            f"P(better)={pb:.3f})",
        )
    if significant:
        reason = "Significant difference detected but needs more data for a strong conclusion"
    else:
        reason = f"No statistically significant difference detected (p={inputs.p_value:.4f})"
    return Recommendation(Decision.CONTINUE, confidence, reason)
