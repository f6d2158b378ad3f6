"""Experimentation core for A/B testing recommendation features."""

from .schema import (
    Experiment,
    ExperimentSpec,
    ExperimentStatus,
    Variant,
    VariantSpec,
    Guardrail,
    Assignment,
    AssignmentResult,
    Event,
    EventType,
    VariantMetricSnapshot,
    AnalysisResult,
    Decision,
    Confidence,
)
from .errors import (
    ExperimentPlatformError,
    ValidationError,
    InvalidStateError,
    NotFoundError,
    AuthorizationError,
    TransientStorageError,
    AnalysisTimeoutError,
)
from .auth import Role
from .config import AnalyzerConfig, StoreConfig, TrackerConfig
from .store import ExperimentStore
from .manager import ExperimentManager
from .tracker import MetricsTracker
from .analyze import StatisticalAnalyzer
from .recommendation import recommend, DecisionInputs, Recommendation
from .stats import required_sample_size

__all__ = [
    "Experiment",
    "ExperimentSpec",
    "ExperimentStatus",
    "Variant",
    "VariantSpec",
    "Guardrail",
    "Assignment",
    "AssignmentResult",
    "Event",
    "EventType",
    "VariantMetricSnapshot",
    "AnalysisResult",
    "Decision",
    "Confidence",
    "ExperimentPlatformError",
    "ValidationError",
    "InvalidStateError",
    "NotFoundError",
    "AuthorizationError",
    "TransientStorageError",
    "AnalysisTimeoutError",
    "Role",
    "StoreConfig",
    "TrackerConfig",
    "AnalyzerConfig",
    "ExperimentStore",
    "ExperimentManager",
    "MetricsTracker",
    "StatisticalAnalyzer",
    "recommend",
    "DecisionInputs",
    "Recommendation",
    "required_sample_size",
]
