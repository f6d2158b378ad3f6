"""
Experiment lifecycle and assignment orchestration.

Lifecycle: draft -> running <-> paused -> completed, and draft/running/paused
-> archived. Assignment is sticky: the first assign() for a user persists the
hashed variant, later calls return the stored row.
"""

import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple, Union

from .assignment import assign_user
from .auth import Role, require_privileged
from .errors import InvalidStateError, NotFoundError, ValidationError
from .schema import (
    DERIVED_METRICS,
    AllocationUnit,
    Assignment,
    AssignmentResult,
    Experiment,
    ExperimentSpec,
    ExperimentStatus,
    Guardrail,
    ThresholdType,
    Variant,
    utcnow,
)
from .store import ExperimentStore

logger = logging.getLogger(__name__)

ALLOCATION_TOLERANCE = 0.01

S = ExperimentStatus
# action -> (allowed current statuses, target status)
TRANSITIONS = {
    "start": ((S.DRAFT,), S.RUNNING),
    "pause": ((S.RUNNING,), S.PAUSED),
    "resume": ((S.PAUSED,), S.RUNNING),
    "complete": ((S.RUNNING, S.PAUSED), S.COMPLETED),
    "archive": ((S.DRAFT, S.RUNNING, S.PAUSED), S.ARCHIVED),
}


def validate_spec(spec: ExperimentSpec) -> List[Guardrail]:
    """
    Check an experiment spec before anything is persisted.

    Returns:
        Guardrails with threshold types normalised to ThresholdType

    Raises:
        ValidationError: on the first problem found
    """
    if not spec.name or not spec.name.strip():
        raise ValidationError("Experiment name is required", field_name="name")
    if not spec.target_metric or not spec.target_metric.strip():
        raise ValidationError("target_metric is required", field_name="target_metric")
    if not spec.variants or len(spec.variants) < 2:
        raise ValidationError("Experiment must have at least 2 variants", field_name="variants")

    controls = [v for v in spec.variants if v.is_control]
    if len(controls) != 1:
        raise ValidationError(
            f"Experiment must have exactly one control variant (found {len(controls)})",
            field_name="variants",
        )

    names = [v.name for v in spec.variants]
    if any(not n for n in names):
        raise ValidationError("Every variant needs a name", field_name="variants")
    if len(set(names)) != len(names):
        raise ValidationError("Variant names must be unique", field_name="variants")

    for v in spec.variants:
        if v.allocation_percentage < 0 or v.allocation_percentage > 100:
            raise ValidationError(
                f"Variant '{v.name}' allocation must be within 0-100",
                field_name="allocation_percentage",
            )
    total = sum(v.allocation_percentage for v in spec.variants)
    if abs(total - 100) > ALLOCATION_TOLERANCE:
        raise ValidationError(
            f"Variant allocations must sum to 100% (currently {total}%)",
            field_name="allocation_percentage",
        )

    if not 0 <= spec.traffic_allocation_percent <= 100:
        raise ValidationError(
            "traffic_allocation_percent must be within 0-100",
            field_name="traffic_allocation_percent",
        )
    if not 0 < spec.confidence_level < 1:
        raise ValidationError("confidence_level must be in (0, 1)", field_name="confidence_level")
    if spec.minimum_sample_size < 1:
        raise ValidationError("minimum_sample_size must be positive", field_name="minimum_sample_size")
    if spec.start_date and spec.end_date and spec.end_date <= spec.start_date:
        raise ValidationError("End date must be after start date", field_name="end_date")
    try:
        AllocationUnit(spec.allocation_unit)
    except ValueError:
        raise ValidationError(
            f"Unknown allocation_unit '{spec.allocation_unit}'", field_name="allocation_unit"
        )

    guardrails = []
    for g in spec.guardrails:
        try:
            threshold_type = ThresholdType(g.threshold_type)
        except ValueError:
            raise ValidationError(
                f"Guardrail threshold_type must be 'min' or 'max', got '{g.threshold_type}'",
                field_name="guardrails",
            )
        if g.metric_name not in DERIVED_METRICS:
            raise ValidationError(
                f"Unknown guardrail metric '{g.metric_name}'; expected one of {', '.join(DERIVED_METRICS)}",
                field_name="guardrails",
            )
        guardrails.append(Guardrail(g.metric_name, threshold_type, float(g.threshold_value)))
    return guardrails


def _serialize_config(config: Any) -> Optional[Union[str, bytes]]:
    """Dict configs are frozen to JSON once; strings and bytes pass through."""
    if config is None or isinstance(config, (str, bytes)):
        return config
    try:
        return json.dumps(config, sort_keys=True)
    except TypeError as e:
        raise ValidationError(f"Variant config is not serializable: {e}", field_name="config")


class ExperimentManager:
    """
    Creates experiments, drives their lifecycle and assigns users.

    Usage::

        manager = ExperimentManager(ExperimentStore())
        exp = manager.create(spec, role=Role.EXPERIMENTER)
        manager.start(exp.id, role=Role.EXPERIMENTER)
        result = manager.assign("user-1", exp.id)
        if result:
            serve(result.config)
    """

    def __init__(self, store: ExperimentStore):
        self.store = store

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    def create(self, spec: ExperimentSpec, role: Union[Role, str]) -> Experiment:
        """Validate and persist an experiment with its variants as one unit."""
        require_privileged(role, "create experiments")
        guardrails = validate_spec(spec)

        experiment_id = str(uuid.uuid4())
        now = utcnow()
        variants = [
            Variant(
                id=str(uuid.uuid4()),
                experiment_id=experiment_id,
                name=v.name,
                is_control=v.is_control,
                allocation_percentage=float(v.allocation_percentage),
                config=_serialize_config(v.config),
                description=v.description,
            )
            for v in spec.variants
        ]
        experiment = Experiment(
            id=experiment_id,
            name=spec.name.strip(),
            target_metric=spec.target_metric.strip(),
            status=ExperimentStatus.DRAFT,
            hypothesis=spec.hypothesis,
            description=spec.description,
            allocation_unit=AllocationUnit(spec.allocation_unit),
            traffic_allocation_percent=float(spec.traffic_allocation_percent),
            start_date=spec.start_date,
            end_date=spec.end_date,
            minimum_sample_size=spec.minimum_sample_size,
            confidence_level=spec.confidence_level,
            tags=list(spec.tags),
            created_by=spec.created_by,
            created_at=now,
            updated_at=now,
            variants=sorted(variants, key=lambda v: v.id),
            guardrails=guardrails,
        )
        self.store.create_experiment(experiment)
        logger.info(f"Experiment created: {experiment.name} (ID: {experiment_id}, {len(variants)} variants)")
        return experiment

    def get(self, experiment_id: str) -> Experiment:
        experiment = self.store.get_experiment(experiment_id)
        if experiment is None:
            raise NotFoundError(f"Experiment {experiment_id} not found", details={"experiment_id": experiment_id})
        return experiment

    def list_experiments(
        self,
        status: Optional[ExperimentStatus] = None,
        include_archived: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Experiment]:
        """Newest first. Archived experiments only appear when asked for."""
        return self.store.list_experiments(status, include_archived, limit, offset)

    def get_variants(self, experiment_id: str) -> List[Variant]:
        return self.get(experiment_id).variants

    def get_assignment(self, experiment_id: str, user_id: str) -> AssignmentResult:
        experiment = self.get(experiment_id)
        assignment = self.store.get_assignment(experiment_id, user_id)
        if assignment is None:
            raise NotFoundError(
                f"User {user_id} has no assignment in experiment {experiment_id}",
                details={"experiment_id": experiment_id, "user_id": user_id},
            )
        return AssignmentResult(assignment, experiment.get_variant(assignment.variant_id))

    def active_experiments_for_user(self, user_id: str) -> List[Tuple[Experiment, Variant]]:
        """Running experiments the user is assigned to, with their variant."""
        active = []
        for assignment in self.store.assignments_for_user(user_id):
            experiment = self.store.get_experiment(assignment.experiment_id)
            if experiment and experiment.status == ExperimentStatus.RUNNING:
                active.append((experiment, experiment.get_variant(assignment.variant_id)))
        return active

    def experiment_stats(self, experiment_id: str) -> Dict[str, int]:
        """Totals across variants: users, events, impressions, conversions."""
        self.get(experiment_id)
        snapshots = self.store.get_snapshots(experiment_id).values()
        return {
            "total_users": sum(s.users for s in snapshots),
            "total_events": self.store.count_events(experiment_id),
            "impressions": sum(s.impressions for s in snapshots),
            "conversions": sum(s.conversions for s in snapshots),
        }

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def assign(
        self,
        user_id: str,
        experiment_id: str,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Optional[AssignmentResult]:
        """
        Assign a user to a variant, deterministically and stickily.

        Args:
            user_id: User id, or session id for session-allocated experiments
            experiment_id: Experiment identifier
            attributes: Optional caller context; `session_id` is recorded

        Returns:
            AssignmentResult, or None when the experiment is not running or
            the user falls outside its traffic allocation
        """
        if not user_id:
            raise ValidationError("user_id is required", field_name="user_id")
        experiment = self.get(experiment_id)
        if experiment.status != ExperimentStatus.RUNNING:
            return None

        variant = assign_user(
            user_id, experiment_id, experiment.variants, experiment.traffic_allocation_percent
        )
        if variant is None:
            logger.debug(f"User {user_id} excluded from experiment {experiment_id} (traffic allocation)")
            return None

        existing = self.store.get_assignment(experiment_id, user_id)
        if existing:
            return AssignmentResult(existing, experiment.get_variant(existing.variant_id))

        attributes = attributes or {}
        stored, created = self.store.insert_assignment(Assignment(
            experiment_id=experiment_id,
            user_id=user_id,
            variant_id=variant.id,
            assigned_at=utcnow(),
            session_id=attributes.get("session_id"),
        ))
        if created:
            logger.debug(f"User {user_id} assigned to variant {variant.name} in experiment {experiment_id}")
        return AssignmentResult(stored, experiment.get_variant(stored.variant_id), created=created)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _transition(self, experiment_id: str, action: str, role: Union[Role, str], **fields) -> Experiment:
        require_privileged(role, f"{action} experiments")
        allowed, target = TRANSITIONS[action]
        experiment = self.get(experiment_id)
        if experiment.status not in allowed:
            raise InvalidStateError(
                f"Cannot {action} experiment in {experiment.status.value} status",
                current_status=experiment.status.value,
            )
        if not self.store.transition(experiment_id, allowed, target, **fields):
            current = self.get(experiment_id).status
            raise InvalidStateError(
                f"Cannot {action} experiment in {current.value} status",
                current_status=current.value,
            )
        logger.info(f"Experiment {action}: {experiment.name} (ID: {experiment_id}) -> {target.value}")
        return self.get(experiment_id)

    def start(self, experiment_id: str, role: Union[Role, str]) -> Experiment:
        experiment = self.get(experiment_id)
        fields = {}
        if experiment.start_date is None:
            fields["start_date"] = utcnow()
        return self._transition(experiment_id, "start", role, **fields)

    def pause(self, experiment_id: str, role: Union[Role, str]) -> Experiment:
        return self._transition(experiment_id, "pause", role)

    def resume(self, experiment_id: str, role: Union[Role, str]) -> Experiment:
        return self._transition(experiment_id, "resume", role)

    def complete(
        self,
        experiment_id: str,
        role: Union[Role, str],
        winner_variant_id: Optional[str] = None,
        conclusion: Optional[str] = None,
    ) -> Experiment:
        """Close the experiment with a declared winner and a written conclusion."""
        require_privileged(role, "complete experiments")
        experiment = self.get(experiment_id)
        if not winner_variant_id:
            raise ValidationError("complete() requires winner_variant_id", field_name="winner_variant_id")
        if experiment.get_variant(winner_variant_id) is None:
            raise ValidationError(
                f"Winner {winner_variant_id} is not a variant of experiment {experiment_id}",
                field_name="winner_variant_id",
            )
        if not conclusion or not conclusion.strip():
            raise ValidationError("complete() requires a conclusion", field_name="conclusion")
        now = utcnow()
        return self._transition(
            experiment_id,
            "complete",
            role,
            winner_variant_id=winner_variant_id,
            conclusion=conclusion.strip(),
            completed_at=now,
            end_date=now,
        )

    def archive(self, experiment_id: str, role: Union[Role, str]) -> Experiment:
        return self._transition(experiment_id, "archive", role, archived_at=utcnow())
