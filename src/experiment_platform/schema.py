"""
Experiment data models for the experimentation core.

Dataclass schemas for experiments, variants, assignments, telemetry events,
aggregated variant snapshots, guardrail checks and analysis results.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

# Opaque variant configuration: stored and returned exactly as given.
ConfigPayload = Union[str, bytes]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def safe_rate(numerator: float, denominator: float) -> float:
    """Ratio that is 0 (never NaN or an error) when the denominator is 0."""
    if not denominator:
        return 0.0
    return float(numerator) / float(denominator)


class ExperimentStatus(str, Enum):
    """Experiment lifecycle status."""
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class AllocationUnit(str, Enum):
    USER = "user"
    SESSION = "session"


class EventType(str, Enum):
    """Telemetry event types accepted by the tracker."""
    IMPRESSION = "impression"
    CLICK = "click"
    CONVERSION = "conversion"
    RATING = "rating"
    CUSTOM = "custom"


class ThresholdType(str, Enum):
    MIN = "min"
    MAX = "max"


class MetricType(str, Enum):
    """Metric type for analysis."""
    RATE = "rate"  # successes / trials, e.g. conversion_rate
    CONTINUOUS = "continuous"  # raw values, e.g. avg_rating


class Decision(str, Enum):
    """Launch recommendation."""
    LAUNCH = "launch"
    STOP = "stop"
    INVESTIGATE = "investigate"
    CONTINUE = "continue"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class AnalysisStatus(str, Enum):
    OK = "ok"
    INSUFFICIENT_DATA = "insufficient_data"


@dataclass
class VariantSpec:
    """Variant definition supplied at experiment creation."""
    name: str
    allocation_percentage: float
    is_control: bool = False
    config: Optional[Union[ConfigPayload, Dict[str, Any]]] = None
    description: str = ""


@dataclass
class Guardrail:
    """Secondary metric threshold monitored during an experiment."""
    metric_name: str
    threshold_type: ThresholdType
    threshold_value: float


@dataclass
class ExperimentSpec:
    """Input for creating an experiment together with its variants."""
    name: str
    target_metric: str
    variants: List[VariantSpec]
    hypothesis: str = ""
    description: str = ""
    allocation_unit: AllocationUnit = AllocationUnit.USER
    traffic_allocation_percent: float = 100.0
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    guardrails: List[Guardrail] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    minimum_sample_size: int = 100
    confidence_level: float = 0.95
    created_by: Optional[str] = None


@dataclass
class Variant:
    """A persisted variant. `config` is passed through uninterpreted."""
    id: str
    experiment_id: str
    name: str
    is_control: bool
    allocation_percentage: float
    config: Optional[ConfigPayload] = None
    description: str = ""


@dataclass
class Experiment:
    """A persisted experiment with its variants and guardrails."""
    id: str
    name: str
    target_metric: str
    status: ExperimentStatus = ExperimentStatus.DRAFT
    hypothesis: str = ""
    description: str = ""
    allocation_unit: AllocationUnit = AllocationUnit.USER
    traffic_allocation_percent: float = 100.0
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    winner_variant_id: Optional[str] = None
    conclusion: Optional[str] = None
    minimum_sample_size: int = 100
    confidence_level: float = 0.95
    tags: List[str] = field(default_factory=list)
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    variants: List[Variant] = field(default_factory=list)
    guardrails: List[Guardrail] = field(default_factory=list)

    @property
    def control(self) -> Variant:
        return next(v for v in self.variants if v.is_control)

    @property
    def treatments(self) -> List[Variant]:
        return [v for v in self.variants if not v.is_control]

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        for v in self.variants:
            if v.id == variant_id:
                return v
        return None


@dataclass
class Assignment:
    """Sticky mapping of a user to a variant. Immutable once created."""
    experiment_id: str
    user_id: str
    variant_id: str
    assigned_at: datetime = field(default_factory=utcnow)
    session_id: Optional[str] = None


@dataclass
class AssignmentResult:
    """What assign() hands back: the assignment plus the variant to serve."""
    assignment: Assignment
    variant: Variant
    created: bool = False

    @property
    def variant_id(self) -> str:
        return self.variant.id

    @property
    def config(self) -> Optional[ConfigPayload]:
        return self.variant.config


@dataclass
class Event:
    """Telemetry event. Append-only once flushed."""
    experiment_id: str
    variant_id: str
    user_id: str
    event_type: Union[EventType, str]
    value: Optional[float] = None
    occurred_at: datetime = field(default_factory=utcnow)
    payload: Optional[ConfigPayload] = None
    session_id: Optional[str] = None
    event_name: Optional[str] = None  # custom events only


# Metrics derived from snapshot counters on read; usable as guardrails.
DERIVED_METRICS = (
    "click_rate",
    "ctr",
    "conversion_rate",
    "user_conversion_rate",
    "click_to_conversion",
    "avg_rating",
    "revenue_per_conversion",
)


@dataclass
class VariantMetricSnapshot:
    """Counters accumulated per (experiment, variant). Derived rates are read-only."""
    experiment_id: str
    variant_id: str
    users: int = 0
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    rating_sum: float = 0.0
    rating_count: int = 0
    revenue_sum: float = 0.0

    @property
    def click_rate(self) -> float:
        return safe_rate(self.clicks, self.impressions)

    @property
    def conversion_rate(self) -> float:
        return safe_rate(self.conversions, self.impressions)

    @property
    def user_conversion_rate(self) -> float:
        return safe_rate(self.conversions, self.users)

    @property
    def click_to_conversion(self) -> float:
        return safe_rate(self.conversions, self.clicks)

    @property
    def avg_rating(self) -> float:
        return safe_rate(self.rating_sum, self.rating_count)

    @property
    def revenue_per_conversion(self) -> float:
        return safe_rate(self.revenue_sum, self.conversions)

    def derived(self) -> Dict[str, float]:
        return {
            "click_rate": self.click_rate,
            "ctr": self.click_rate,
            "conversion_rate": self.conversion_rate,
            "user_conversion_rate": self.user_conversion_rate,
            "click_to_conversion": self.click_to_conversion,
            "avg_rating": self.avg_rating,
            "revenue_per_conversion": self.revenue_per_conversion,
        }


@dataclass
class VariantFunnel:
    """Impression -> click -> conversion funnel for one variant."""
    variant_id: str
    impressions: int
    clicks: int
    conversions: int
    impression_to_click: float
    click_to_conversion: float
    impression_to_conversion: float


@dataclass
class GuardrailCheck:
    """One guardrail evaluated against one variant."""
    metric_name: str
    threshold_type: ThresholdType
    threshold_value: float
    variant_id: str
    observed_value: float
    violated: bool


@dataclass
class GuardrailReport:
    experiment_id: str
    checks: List[GuardrailCheck] = field(default_factory=list)

    @property
    def has_violations(self) -> bool:
        return any(c.violated for c in self.checks)

    @property
    def violated_variant_ids(self) -> List[str]:
        return sorted({c.variant_id for c in self.checks if c.violated})


@dataclass
class BatchItemError:
    index: int
    error_code: str
    message: str


@dataclass
class BatchResult:
    """Outcome of track_batch: accepted count plus one error per rejected item."""
    accepted: int = 0
    errors: List[BatchItemError] = field(default_factory=list)


@dataclass
class ArmStats:
    """Summary statistics for a single experiment arm."""
    variant_id: str
    n: int
    mean: float
    std: float
    ci_low: float
    ci_high: float
    successes: Optional[int] = None  # rate metrics only

    @property
    def variance(self) -> float:
        return self.std ** 2


@dataclass
class FrequentistResult:
    """Welch's t-test of treatment vs control."""
    t_statistic: float
    degrees_of_freedom: float
    p_value: float
    is_significant: bool
    confidence_level: float
    ci_low: float
    ci_high: float
    effect_size: float
    relative_lift: Optional[float]  # None when control mean is 0


@dataclass
class BayesianResult:
    """Monte Carlo comparison of the two posteriors."""
    model: str  # beta_binomial | normal
    probability_better: float
    expected_loss: float
    credible_low: float
    credible_high: float
    control_posterior_mean: float
    treatment_posterior_mean: float
    samples: int


@dataclass
class AnalysisResult:
    """One control-vs-treatment analysis. Immutable, appended to history."""
    experiment_id: str
    metric_name: str
    control_variant_id: str
    treatment_variant_id: str
    status: AnalysisStatus = AnalysisStatus.OK
    control_stats: Optional[ArmStats] = None
    treatment_stats: Optional[ArmStats] = None
    frequentist: Optional[FrequentistResult] = None
    bayesian: Optional[BayesianResult] = None
    recommendation: Decision = Decision.CONTINUE
    confidence: Confidence = Confidence.LOW
    reason: str = ""
    guardrail_violated: bool = False
    srm_passed: bool = True
    srm_p_value: Optional[float] = None
    analyzed_at: datetime = field(default_factory=utcnow)

    @property
    def insufficient_data(self) -> bool:
        return self.status == AnalysisStatus.INSUFFICIENT_DATA

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        d = {
            "experiment_id": self.experiment_id,
            "metric_name": self.metric_name,
            "control_variant_id": self.control_variant_id,
            "treatment_variant_id": self.treatment_variant_id,
            "status": self.status.value,
            "recommendation": self.recommendation.value,
            "confidence": self.confidence.value,
            "reason": self.reason,
            "guardrail_violated": self.guardrail_violated,
            "srm_passed": self.srm_passed,
            "srm_p_value": self.srm_p_value,
            "analyzed_at": self.analyzed_at.isoformat(),
            "control_stats": None,
            "treatment_stats": None,
            "frequentist": None,
            "bayesian": None,
        }
        for key, arm in (("control_stats", self.control_stats), ("treatment_stats", self.treatment_stats)):
            if arm:
                d[key] = {
                    "variant_id": arm.variant_id,
                    "n": arm.n,
                    "mean": arm.mean,
                    "std": arm.std,
                    "ci_low": arm.ci_low,
                    "ci_high": arm.ci_high,
                    "successes": arm.successes,
                }
        if self.frequentist:
            f = self.frequentist
            d["frequentist"] = {
                "t_statistic": f.t_statistic,
                "degrees_of_freedom": f.degrees_of_freedom,
                "p_value": f.p_value,
                "is_significant": f.is_significant,
                "confidence_level": f.confidence_level,
                "ci_low": f.ci_low,
                "ci_high": f.ci_high,
                "effect_size": f.effect_size,
                "relative_lift": f.relative_lift,
            }
        if self.bayesian:
            b = self.bayesian
            d["bayesian"] = {
                "model": b.model,
                "probability_better": b.probability_better,
                "expected_loss": b.expected_loss,
                "credible_low": b.credible_low,
                "credible_high": b.credible_high,
                "control_posterior_mean": b.control_posterior_mean,
                "treatment_posterior_mean": b.treatment_posterior_mean,
                "samples": b.samples,
            }
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AnalysisResult":
        """Rebuild a result from its to_dict() form (history reads)."""
        return cls(
            experiment_id=d["experiment_id"],
            metric_name=d["metric_name"],
            control_variant_id=d["control_variant_id"],
            treatment_variant_id=d["treatment_variant_id"],
            status=AnalysisStatus(d["status"]),
            control_stats=ArmStats(**d["control_stats"]) if d.get("control_stats") else None,
            treatment_stats=ArmStats(**d["treatment_stats"]) if d.get("treatment_stats") else None,
            frequentist=FrequentistResult(**d["frequentist"]) if d.get("frequentist") else None,
            bayesian=BayesianResult(**d["bayesian"]) if d.get("bayesian") else None,
            recommendation=Decision(d["recommendation"]),
            confidence=Confidence(d["confidence"]),
            reason=d.get("reason", ""),
            guardrail_violated=d.get("guardrail_violated", False),
            srm_passed=d.get("srm_passed", True),
            srm_p_value=d.get("srm_p_value"),
            analyzed_at=datetime.fromisoformat(d["analyzed_at"]),
        )
