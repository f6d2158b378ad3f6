"""
Experiment analysis entrypoint.

Input: experiment_id, metric (default = the experiment's target_metric).
Output: one AnalysisResult per treatment variant (each compared against
control), appended to the store's analysis history.

Rate metrics are analysed from the accumulated variant counters; continuous
metrics from the raw event values.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from .config import AnalyzerConfig
from .errors import AnalysisTimeoutError, NotFoundError, ValidationError
from .recommendation import DecisionInputs, recommend
from .schema import (
    AnalysisResult,
    AnalysisStatus,
    ArmStats,
    BayesianResult,
    EventType,
    Experiment,
    FrequentistResult,
    MetricType,
    Variant,
    VariantMetricSnapshot,
)
from .stats import (
    arm_stats_from_counts,
    arm_stats_from_values,
    beta_binomial_analysis,
    check_srm,
    normal_analysis,
    welch_t_test,
)
from .store import ExperimentStore
from .tracker import evaluate_guardrails

logger = logging.getLogger(__name__)

# metric -> (successes counter, trials counter)
RATE_METRICS: Dict[str, Tuple[str, str]] = {
    "conversion_rate": ("conversions", "impressions"),
    "click_rate": ("clicks", "impressions"),
    "ctr": ("clicks", "impressions"),
    "click_to_conversion": ("conversions", "clicks"),
    "user_conversion_rate": ("conversions", "users"),
}

# metric -> event type whose values are the observations
CONTINUOUS_METRICS: Dict[str, EventType] = {
    "avg_rating": EventType.RATING,
    "revenue": EventType.CONVERSION,
}


def metric_type_for(metric_name: str) -> MetricType:
    if metric_name in RATE_METRICS:
        return MetricType.RATE
    if metric_name in CONTINUOUS_METRICS:
        return MetricType.CONTINUOUS
    raise ValidationError(
        f"Unsupported metric '{metric_name}'. "
        f"Expected one of {sorted(list(RATE_METRICS) + list(CONTINUOUS_METRICS))}",
        field_name="metric_name",
    )


def compare_arms(
    control: ArmStats,
    treatment: ArmStats,
    metric_type: MetricType,
    rng: np.random.Generator,
    config: Optional[AnalyzerConfig] = None,
    confidence_level: Optional[float] = None,
    checkpoint: Optional[Callable[[], None]] = None,
) -> Tuple[FrequentistResult, BayesianResult]:
    """
    Run both inference paths on two arms. Pure apart from the random draws.

    Returns:
        Tuple of (FrequentistResult, BayesianResult)
    """
    config = config or AnalyzerConfig()
    confidence_level = confidence_level or config.confidence_level

    frequentist = welch_t_test(control, treatment, confidence_level)
    if checkpoint:
        checkpoint()

    if metric_type == MetricType.RATE:
        bayesian = beta_binomial_analysis(
            control,
            treatment,
            rng,
            samples=config.monte_carlo_samples,
            prior_alpha=config.prior_alpha,
            prior_beta=config.prior_beta,
            checkpoint=checkpoint,
        )
    else:
        bayesian = normal_analysis(
            control, treatment, rng, samples=config.monte_carlo_samples, checkpoint=checkpoint
        )
    return frequentist, bayesian


class StatisticalAnalyzer:
    """
    Runs treatment-vs-control analyses and records them.

    Usage::

        analyzer = StatisticalAnalyzer(store, rng=np.random.default_rng(42))
        results = analyzer.analyze(experiment_id, "conversion_rate", timeout=5.0)
    """

    def __init__(
        self,
        store: ExperimentStore,
        config: Optional[AnalyzerConfig] = None,
        rng: Optional[np.random.Generator] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.config = config or AnalyzerConfig()
        self.rng = rng if rng is not None else np.random.default_rng()
        self._rng_lock = threading.Lock()
        self.clock = clock

    def _experiment(self, experiment_id: str) -> Experiment:
        experiment = self.store.get_experiment(experiment_id)
        if experiment is None:
            raise NotFoundError(f"Experiment {experiment_id} not found", details={"experiment_id": experiment_id})
        return experiment

    def _deadline_checkpoint(self, experiment_id: str, timeout: Optional[float]) -> Optional[Callable[[], None]]:
        if timeout is None:
            return None
        deadline = self.clock() + timeout

        def checkpoint() -> None:
            if self.clock() >= deadline:
                raise AnalysisTimeoutError(
                    f"Analysis of experiment {experiment_id} exceeded {timeout}s",
                    details={"experiment_id": experiment_id, "timeout": timeout},
                )

        return checkpoint

    def _arm(
        self,
        experiment_id: str,
        variant: Variant,
        metric_name: str,
        snapshots: Dict[str, VariantMetricSnapshot],
        confidence_level: float,
    ) -> ArmStats:
        if metric_name in RATE_METRICS:
            successes_field, trials_field = RATE_METRICS[metric_name]
            snapshot = snapshots.get(variant.id, VariantMetricSnapshot(experiment_id, variant.id))
            return arm_stats_from_counts(
                variant.id,
                getattr(snapshot, successes_field),
                getattr(snapshot, trials_field),
                confidence_level,
            )
        df = self.store.events_frame(
            experiment_id, variant_id=variant.id, event_type=CONTINUOUS_METRICS[metric_name]
        )
        values = df["value"].dropna().to_numpy(dtype=float) if not df.empty else np.array([])
        return arm_stats_from_values(variant.id, values, confidence_level)

    def analyze(
        self,
        experiment_id: str,
        metric_name: Optional[str] = None,
        minimum_sample_size: Optional[int] = None,
        confidence_level: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> List[AnalysisResult]:
        """
        Compare every treatment against control and append the results to history.

        Args:
            experiment_id: Experiment ID
            metric_name: Metric to analyse (defaults to the target metric)
            minimum_sample_size: Per-arm minimum (defaults to the experiment's)
            confidence_level: Confidence level (defaults to the experiment's)
            timeout: Seconds before AnalysisTimeoutError; nothing is stored on timeout

        Returns:
            List of AnalysisResult, one per treatment variant
        """
        checkpoint = self._deadline_checkpoint(experiment_id, timeout)
        with self._rng_lock:
            rng = self.rng.spawn(1)[0]  # independent stream per call
        experiment = self._experiment(experiment_id)
        metric_name = metric_name or experiment.target_metric
        metric_type = metric_type_for(metric_name)
        minimum_sample_size = minimum_sample_size if minimum_sample_size is not None else experiment.minimum_sample_size
        confidence_level = confidence_level or experiment.confidence_level
        if not 0 < confidence_level < 1:
            raise ValidationError("confidence_level must be in (0, 1)", field_name="confidence_level")
        alpha = 1 - confidence_level

        snapshots = self.store.get_snapshots(experiment_id)
        guardrails = evaluate_guardrails(
            experiment_id,
            experiment.guardrails,
            {v.id: snapshots.get(v.id, VariantMetricSnapshot(experiment_id, v.id)) for v in experiment.variants},
        )
        violated = set(guardrails.violated_variant_ids)

        srm_passed, _, srm_p = check_srm(
            [snapshots[v.id].users if v.id in snapshots else 0 for v in experiment.variants],
            [v.allocation_percentage for v in experiment.variants],
        )
        if not srm_passed:
            logger.warning(
                f"Sample ratio mismatch in experiment {experiment_id} (p={srm_p:.4g}); "
                "allocation deviates from configuration"
            )

        control = self._arm(experiment_id, experiment.control, metric_name, snapshots, confidence_level)
        results = []
        for variant in experiment.treatments:
            if checkpoint:
                checkpoint()
            treatment = self._arm(experiment_id, variant, metric_name, snapshots, confidence_level)
            result = AnalysisResult(
                experiment_id=experiment_id,
                metric_name=metric_name,
                control_variant_id=control.variant_id,
                treatment_variant_id=variant.id,
                control_stats=control,
                treatment_stats=treatment,
                guardrail_violated=variant.id in violated,
                srm_passed=srm_passed,
                srm_p_value=srm_p,
            )

            # Welch needs at least two observations per arm
            if min(control.n, treatment.n) < max(minimum_sample_size, 2):
                rec = recommend(DecisionInputs(1.0, None, 0.5, insufficient_data=True))
                result.status = AnalysisStatus.INSUFFICIENT_DATA
            else:
                frequentist, bayesian = compare_arms(
                    control, treatment, metric_type, rng, self.config, confidence_level, checkpoint
                )
                rec = recommend(
                    DecisionInputs(
                        p_value=frequentist.p_value,
                        relative_lift=frequentist.relative_lift,
                        probability_better=bayesian.probability_better,
                        effect_size=frequentist.effect_size,
                        guardrail_violated=result.guardrail_violated,
                    ),
                    alpha=alpha,
                    launch_probability=self.config.launch_probability,
                    disagreement_probability=self.config.disagreement_probability,
                )
                result.frequentist = frequentist
                result.bayesian = bayesian

            result.recommendation = rec.decision
            result.confidence = rec.confidence
            result.reason = rec.reason
            results.append(result)

        if checkpoint:
            checkpoint()
        self.store.append_analysis(results)
        for r in results:
            logger.info(
                f"Analysis {experiment_id}/{metric_name} {r.treatment_variant_id} vs control: "
                f"{r.recommendation.value} ({r.confidence.value})"
            )
        return results

    def latest_analysis(
        self,
        experiment_id: str,
        metric_name: Optional[str] = None,
    ) -> List[AnalysisResult]:
        """Most recent result per treatment variant (per metric when none is given)."""
        latest: Dict[Tuple[str, str], AnalysisResult] = {}
        for r in self.store.analysis_history(experiment_id, metric_name):
            latest[(r.metric_name, r.treatment_variant_id)] = r
        return list(latest.values())

    def analysis_history(self, experiment_id: str, metric_name: Optional[str] = None) -> List[AnalysisResult]:
        return self.store.analysis_history(experiment_id, metric_name)
