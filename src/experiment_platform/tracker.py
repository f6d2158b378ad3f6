"""
Experiment metrics tracker.

Producers call track()/track_batch(); accepted events go into a bounded,
lock-guarded buffer. One background flusher drains it when it reaches
flush_size or flush_interval has elapsed, persisting raw events and
accumulating variant counters in a single store transaction. Storage
failures keep the events buffered and retry with backoff; they are reported
through health(), never raised to track() callers.
"""

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime
from numbers import Number
from typing import Callable, Deque, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import pandas as pd

from .config import TrackerConfig
from .errors import ExperimentPlatformError, NotFoundError, ValidationError
from .schema import (
    DERIVED_METRICS,
    BatchItemError,
    BatchResult,
    Event,
    EventType,
    Guardrail,
    GuardrailCheck,
    GuardrailReport,
    ThresholdType,
    VariantFunnel,
    VariantMetricSnapshot,
    safe_rate,
    utcnow,
)
from .store import ExperimentStore

logger = logging.getLogger(__name__)

TIME_SERIES_RULES = {"hour": "60min", "day": "D", "week": "W"}


@dataclass
class TrackerHealth:
    """Flush pipeline state, the only place asynchronous failures surface."""
    running: bool
    buffered: int
    dropped: int
    flushed: int
    consecutive_failures: int
    last_error: Optional[str]
    last_flush_at: Optional[datetime]


class EventBuffer:
    """
    Bounded FIFO shared by all producers.

    When full, the oldest events are evicted (and counted) so producers never
    block on a slow or failing store.
    """

    def __init__(self, max_size: int):
        self.max_size = max_size
        self._events: Deque[Event] = deque()
        self._lock = threading.Lock()
        self.dropped = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def _evict_overflow(self) -> int:
        evicted = 0
        while len(self._events) > self.max_size:
            self._events.popleft()
            evicted += 1
        if evicted:
            self.dropped += evicted
            logger.warning(
                f"Event buffer full ({self.max_size}); evicted {evicted} oldest events "
                f"({self.dropped} dropped in total)"
            )
        return evicted

    def accept(self, event: Event) -> int:
        """Append one event. Returns the buffer size afterwards."""
        with self._lock:
            self._events.append(event)
            self._evict_overflow()
            return len(self._events)

    def drain(self) -> List[Event]:
        with self._lock:
            events = list(self._events)
            self._events.clear()
            return events

    def requeue(self, events: Sequence[Event]) -> None:
        """Put a failed batch back in front, ahead of anything newer."""
        with self._lock:
            self._events.extendleft(reversed(events))
            self._evict_overflow()


def accumulate(events: Iterable[Event]) -> List[VariantMetricSnapshot]:
    """
    Counter deltas per (experiment, variant) for a batch of events.

    impression/click/conversion increment their counts, ratings add to
    rating_sum/rating_count, and a conversion value adds to revenue_sum.
    """
    deltas: Dict[Tuple[str, str], VariantMetricSnapshot] = {}
    for e in events:
        key = (e.experiment_id, e.variant_id)
        d = deltas.get(key)
        if d is None:
            d = deltas[key] = VariantMetricSnapshot(experiment_id=e.experiment_id, variant_id=e.variant_id)
        event_type = EventType(e.event_type)
        if event_type == EventType.IMPRESSION:
            d.impressions += 1
        elif event_type == EventType.CLICK:
            d.clicks += 1
        elif event_type == EventType.CONVERSION:
            d.conversions += 1
            if e.value is not None:
                d.revenue_sum += float(e.value)
        elif event_type == EventType.RATING and e.value is not None:
            d.rating_sum += float(e.value)
            d.rating_count += 1
    return list(deltas.values())


def funnel_for(snapshot: VariantMetricSnapshot) -> VariantFunnel:
    return VariantFunnel(
        variant_id=snapshot.variant_id,
        impressions=snapshot.impressions,
        clicks=snapshot.clicks,
        conversions=snapshot.conversions,
        impression_to_click=safe_rate(snapshot.clicks, snapshot.impressions),
        click_to_conversion=safe_rate(snapshot.conversions, snapshot.clicks),
        impression_to_conversion=safe_rate(snapshot.conversions, snapshot.impressions),
    )


def evaluate_guardrails(
    experiment_id: str,
    guardrails: Sequence[Guardrail],
    snapshots: Dict[str, VariantMetricSnapshot],
) -> GuardrailReport:
    """Every guardrail against every variant's observed derived value."""
    report = GuardrailReport(experiment_id=experiment_id)
    for g in guardrails:
        threshold_type = ThresholdType(g.threshold_type)
        for variant_id in sorted(snapshots):
            observed = snapshots[variant_id].derived()[g.metric_name]
            violated = (
                (threshold_type == ThresholdType.MIN and observed < g.threshold_value)
                or (threshold_type == ThresholdType.MAX and observed > g.threshold_value)
            )
            report.checks.append(GuardrailCheck(
                metric_name=g.metric_name,
                threshold_type=threshold_type,
                threshold_value=g.threshold_value,
                variant_id=variant_id,
                observed_value=observed,
                violated=violated,
            ))
    if report.has_violations:
        logger.warning(
            f"Guardrail violations in experiment {experiment_id}: "
            f"variants {report.violated_variant_ids}"
        )
    return report


class MetricsTracker:
    """
    Buffered event ingestion plus read-side aggregation.

    Usage::

        tracker = MetricsTracker(store)
        tracker.start()                  # background flusher
        tracker.track_impression(exp_id, variant_id, "user-1")
        ...
        tracker.shutdown()               # stop timer, final flush
    """

    def __init__(
        self,
        store: ExperimentStore,
        config: Optional[TrackerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.config = config or TrackerConfig()
        self.clock = clock
        self.buffer = EventBuffer(self.config.max_buffer_size)

        self._known: Set[Tuple[str, str]] = set()
        self._known_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._last_flush = self.clock()
        self._retry_at = 0.0
        self._consecutive_failures = 0
        self._last_error: Optional[str] = None
        self._last_flush_at: Optional[datetime] = None
        self._flushed = 0

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def _ensure_known(self, experiment_id: str, variant_id: str) -> None:
        key = (experiment_id, variant_id)
        with self._known_lock:
            if key in self._known:
                return
        if self.store.get_variant(experiment_id, variant_id) is None:
            raise NotFoundError(
                f"Variant {variant_id} not found in experiment {experiment_id}",
                details={"experiment_id": experiment_id, "variant_id": variant_id},
            )
        with self._known_lock:
            self._known.add(key)

    def _validate(self, event: Event) -> Event:
        try:
            event_type = EventType(event.event_type)
        except ValueError:
            raise ValidationError(
                f"Unknown event_type '{event.event_type}'; expected one of "
                f"{', '.join(t.value for t in EventType)}",
                field_name="event_type",
            )
        if not event.experiment_id or not event.variant_id:
            raise ValidationError("experiment_id and variant_id are required", field_name="experiment_id")
        if not event.user_id:
            raise ValidationError("user_id is required", field_name="user_id")
        if event.value is not None:
            if isinstance(event.value, bool) or not isinstance(event.value, Number) or not math.isfinite(event.value):
                raise ValidationError(f"Event value must be a finite number, got {event.value!r}", field_name="value")
        if event_type == EventType.RATING and event.value is None:
            raise ValidationError("Rating events need a numeric value", field_name="value")
        if not isinstance(event.occurred_at, datetime):
            raise ValidationError(
                f"occurred_at must be a datetime, got {type(event.occurred_at).__name__}",
                field_name="occurred_at",
            )
        if event.payload is not None and not isinstance(event.payload, (str, bytes)):
            raise ValidationError(
                f"payload must be str or bytes, got {type(event.payload).__name__}", field_name="payload"
            )
        for name in ("event_name", "session_id"):
            if getattr(event, name) is not None and not isinstance(getattr(event, name), str):
                raise ValidationError(f"{name} must be a string", field_name=name)
        self._ensure_known(event.experiment_id, event.variant_id)
        return replace(event, event_type=event_type)

    def track(self, event: Event) -> Event:
        """
        Validate and buffer one event.

        Acceptance into the buffer is success; persistence follows within the
        flush interval.

        Raises:
            ValidationError: unknown event_type or malformed fields
            NotFoundError: unknown experiment/variant pair
        """
        event = self._validate(event)
        size = self.buffer.accept(event)
        if size >= self.config.flush_size:
            self._wake.set()
        return event

    def track_batch(self, events: Sequence[Event]) -> BatchResult:
        """
        Buffer up to max_batch_size events, rejecting malformed ones per item.

        Returns:
            BatchResult with the accepted count and one error per rejected item
        """
        if len(events) > self.config.max_batch_size:
            raise ValidationError(
                f"Batch of {len(events)} exceeds the limit of {self.config.max_batch_size} events",
                field_name="events",
            )
        result = BatchResult()
        for index, event in enumerate(events):
            try:
                self.track(event)
                result.accepted += 1
            except ExperimentPlatformError as e:
                result.errors.append(BatchItemError(index=index, error_code=e.error_code, message=e.message))
        if result.errors:
            logger.info(f"Batch partially accepted: {result.accepted}/{len(events)} events")
        return result

    def track_impression(self, experiment_id: str, variant_id: str, user_id: str, **kwargs) -> Event:
        return self.track(Event(experiment_id, variant_id, user_id, EventType.IMPRESSION, **kwargs))

    def track_click(self, experiment_id: str, variant_id: str, user_id: str, **kwargs) -> Event:
        return self.track(Event(experiment_id, variant_id, user_id, EventType.CLICK, **kwargs))

    def track_conversion(
        self, experiment_id: str, variant_id: str, user_id: str, value: Optional[float] = None, **kwargs
    ) -> Event:
        return self.track(Event(experiment_id, variant_id, user_id, EventType.CONVERSION, value=value, **kwargs))

    def track_rating(self, experiment_id: str, variant_id: str, user_id: str, rating: float, **kwargs) -> Event:
        return self.track(Event(experiment_id, variant_id, user_id, EventType.RATING, value=rating, **kwargs))

    def track_custom(
        self, experiment_id: str, variant_id: str, user_id: str, event_name: str, **kwargs
    ) -> Event:
        return self.track(Event(
            experiment_id, variant_id, user_id, EventType.CUSTOM, event_name=event_name, **kwargs
        ))

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    def flush(self) -> int:
        """
        Persist everything buffered as one transaction.

        Returns:
            Number of events persisted

        Raises:
            TransientStorageError: the batch was put back in the buffer. Any
                other exception from the store is re-raised the same way,
                after the batch is put back.
        """
        with self._flush_lock:
            events = self.buffer.drain()
            self._last_flush = self.clock()
            if not events:
                return 0
            try:
                self.store.persist_events(events, accumulate(events))
            except Exception as e:
                self.buffer.requeue(events)
                self._consecutive_failures += 1
                self._last_error = str(e)
                delay = min(
                    self.config.retry_backoff_base * 2 ** (self._consecutive_failures - 1),
                    self.config.retry_backoff_max,
                )
                self._retry_at = self.clock() + delay
                logger.warning(
                    f"Flush of {len(events)} events failed (attempt {self._consecutive_failures}); "
                    f"retrying in {delay:.1f}s: {e}"
                )
                raise
            self._consecutive_failures = 0
            self._retry_at = 0.0
            self._flushed += len(events)
            self._last_flush_at = utcnow()
            logger.info(f"Flushed {len(events)} events to store")
            return len(events)

    def _flush_due(self) -> bool:
        now = self.clock()
        if now < self._retry_at:
            return False
        return (
            len(self.buffer) >= self.config.flush_size
            or now - self._last_flush >= self.config.flush_interval
            or (self._consecutive_failures > 0 and len(self.buffer) > 0)
        )

    def _seconds_until_due(self) -> float:
        now = self.clock()
        if self._consecutive_failures > 0 and len(self.buffer) > 0:
            return max(0.0, self._retry_at - now)
        return max(0.0, self.config.flush_interval - (now - self._last_flush))

    def _run(self) -> None:
        while not self._stop.is_set():
            self._wake.wait(self._seconds_until_due())
            self._wake.clear()
            if self._stop.is_set():
                break
            if self._flush_due():
                try:
                    self.flush()
                except Exception:
                    pass  # logged and requeued by flush(); the flusher keeps running

    def start(self) -> None:
        """Start the background flusher (idempotent)."""
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="metrics-flusher", daemon=True)
        self._thread.start()
        logger.info(
            f"Metrics flusher started (size={self.config.flush_size}, "
            f"interval={self.config.flush_interval}s)"
        )

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread:
            self._thread.join()
            self._thread = None

    def shutdown(self) -> None:
        """Stop the flusher and persist what is left."""
        self.stop()
        try:
            self.flush()
        except Exception:
            logger.error(f"Final flush failed; {len(self.buffer)} events still buffered")
        logger.info("Metrics tracker shutdown complete")

    def health(self) -> TrackerHealth:
        return TrackerHealth(
            running=bool(self._thread and self._thread.is_alive()),
            buffered=len(self.buffer),
            dropped=self.buffer.dropped,
            flushed=self._flushed,
            consecutive_failures=self._consecutive_failures,
            last_error=self._last_error,
            last_flush_at=self._last_flush_at,
        )

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_variant_metrics(self, experiment_id: str, variant_id: str) -> Dict[str, float]:
        """Counters plus derived rates for one variant (rates are 0 on empty denominators)."""
        snapshot = self.store.get_snapshot(experiment_id, variant_id)
        metrics = {
            "users": snapshot.users,
            "impressions": snapshot.impressions,
            "clicks": snapshot.clicks,
            "conversions": snapshot.conversions,
            "rating_sum": snapshot.rating_sum,
            "rating_count": snapshot.rating_count,
            "revenue_sum": snapshot.revenue_sum,
        }
        metrics.update(snapshot.derived())
        return metrics

    def get_experiment_metrics(self, experiment_id: str) -> Dict[str, Dict[str, float]]:
        experiment = self._experiment(experiment_id)
        out = {}
        for v in experiment.variants:
            metrics = self.get_variant_metrics(experiment_id, v.id)
            metrics["variant_name"] = v.name
            metrics["is_control"] = v.is_control
            out[v.id] = metrics
        return out

    def get_funnel(self, experiment_id: str) -> List[VariantFunnel]:
        experiment = self._experiment(experiment_id)
        snapshots = self.store.get_snapshots(experiment_id)
        return [
            funnel_for(snapshots.get(v.id, VariantMetricSnapshot(experiment_id, v.id)))
            for v in experiment.variants
        ]

    def check_guardrails(
        self,
        experiment_id: str,
        guardrails: Optional[Sequence[Guardrail]] = None,
    ) -> GuardrailReport:
        """Evaluate the experiment's guardrails (or the ones given) against every variant."""
        experiment = self._experiment(experiment_id)
        if guardrails is None:
            guardrails = experiment.guardrails
        for g in guardrails:
            if g.metric_name not in DERIVED_METRICS:
                raise ValidationError(f"Unknown guardrail metric '{g.metric_name}'", field_name="metric_name")
        snapshots = self.store.get_snapshots(experiment_id)
        for v in experiment.variants:
            snapshots.setdefault(v.id, VariantMetricSnapshot(experiment_id, v.id))
        return evaluate_guardrails(experiment_id, guardrails, snapshots)

    def compare_variants(self, experiment_id: str) -> pd.DataFrame:
        """
        Control vs each treatment on the derived metrics.

        Returns:
            DataFrame with variant_id, variant_name, metric, control, variant,
            difference, percent_change
        """
        experiment = self._experiment(experiment_id)
        snapshots = self.store.get_snapshots(experiment_id)
        empty = VariantMetricSnapshot(experiment_id, experiment.control.id)
        control = snapshots.get(experiment.control.id, empty).derived()
        rows = []
        for v in experiment.treatments:
            variant = snapshots.get(v.id, VariantMetricSnapshot(experiment_id, v.id)).derived()
            for metric in ("ctr", "conversion_rate", "avg_rating", "click_to_conversion"):
                difference = variant[metric] - control[metric]
                rows.append({
                    "variant_id": v.id,
                    "variant_name": v.name,
                    "metric": metric,
                    "control": control[metric],
                    "variant": variant[metric],
                    "difference": difference,
                    "percent_change": safe_rate(difference, control[metric]) * 100,
                })
        return pd.DataFrame(
            rows,
            columns=["variant_id", "variant_name", "metric", "control", "variant", "difference", "percent_change"],
        )

    def get_metric_time_series(
        self,
        experiment_id: str,
        variant_id: str,
        event_type: EventType,
        granularity: str = "day",
    ) -> pd.DataFrame:
        """
        Flushed events of one type bucketed by hour, day or week.

        Returns:
            DataFrame with time_bucket, event_count, value_mean
        """
        rule = TIME_SERIES_RULES.get(granularity)
        if rule is None:
            raise ValidationError(f"Unknown granularity '{granularity}'", field_name="granularity")
        df = self.store.events_frame(experiment_id, variant_id=variant_id, event_type=event_type)
        if df.empty:
            return pd.DataFrame(columns=["time_bucket", "event_count", "value_mean"])
        df["value"] = pd.to_numeric(df["value"], errors="coerce")
        resampled = df.set_index("occurred_at").resample(rule)
        out = pd.DataFrame({
            "event_count": resampled["id"].count(),
            "value_mean": resampled["value"].mean(),
        })
        return out.reset_index().rename(columns={"occurred_at": "time_bucket"})

    def get_user_journey(self, experiment_id: str, user_id: str) -> pd.DataFrame:
        """A user's flushed events in time order, for debugging."""
        return self.store.events_frame(experiment_id, user_id=user_id)

    def _experiment(self, experiment_id: str):
        experiment = self.store.get_experiment(experiment_id)
        if experiment is None:
            raise NotFoundError(f"Experiment {experiment_id} not found", details={"experiment_id": experiment_id})
        return experiment
