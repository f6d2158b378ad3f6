"""
SQLite-backed experiment store.

Reference implementation of the storage collaborator: atomic experiment +
variant inserts, a unique (experiment_id, user_id) assignment key, an
append-only event log, accumulate-only variant counters and an append-only
analysis history. One connection is shared behind a lock, so the store is
safe to use from the tracker's flusher thread and request threads at once.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import pandas as pd

from .config import db_path_from_env
from .errors import TransientStorageError
from .schema import (
    AllocationUnit,
    AnalysisResult,
    Assignment,
    Event,
    EventType,
    Experiment,
    ExperimentStatus,
    Guardrail,
    ThresholdType,
    Variant,
    VariantMetricSnapshot,
    utcnow,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS experiments (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    hypothesis TEXT DEFAULT '',
    description TEXT DEFAULT '',
    status TEXT NOT NULL DEFAULT 'draft',
    target_metric TEXT NOT NULL,
    allocation_unit TEXT NOT NULL DEFAULT 'user',
    traffic_allocation_percent REAL NOT NULL DEFAULT 100.0,
    start_date TEXT,
    end_date TEXT,
    winner_variant_id TEXT,
    conclusion TEXT,
    minimum_sample_size INTEGER DEFAULT 100,
    confidence_level REAL DEFAULT 0.95,
    tags TEXT DEFAULT '[]',
    created_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT,
    archived_at TEXT,
    CHECK (status IN ('draft', 'running', 'paused', 'completed', 'archived')),
    CHECK (traffic_allocation_percent >= 0.0 AND traffic_allocation_percent <= 100.0)
);

CREATE TABLE IF NOT EXISTS variants (
    id TEXT PRIMARY KEY,
    experiment_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    allocation_percentage REAL NOT NULL,
    is_control INTEGER NOT NULL DEFAULT 0,
    config BLOB,
    FOREIGN KEY (experiment_id) REFERENCES experiments(id),
    UNIQUE (experiment_id, name)
);

CREATE TABLE IF NOT EXISTS guardrails (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id TEXT NOT NULL,
    metric_name TEXT NOT NULL,
    threshold_type TEXT NOT NULL,
    threshold_value REAL NOT NULL,
    FOREIGN KEY (experiment_id) REFERENCES experiments(id),
    CHECK (threshold_type IN ('min', 'max'))
);

CREATE TABLE IF NOT EXISTS assignments (
    experiment_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    variant_id TEXT NOT NULL,
    assigned_at TEXT NOT NULL,
    session_id TEXT,
    PRIMARY KEY (experiment_id, user_id),
    FOREIGN KEY (variant_id) REFERENCES variants(id)
);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id TEXT NOT NULL,
    variant_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    event_name TEXT,
    value REAL,
    occurred_at TEXT NOT NULL,
    payload BLOB,
    session_id TEXT
);

CREATE TABLE IF NOT EXISTS variant_metrics (
    experiment_id TEXT NOT NULL,
    variant_id TEXT NOT NULL,
    users INTEGER NOT NULL DEFAULT 0,
    impressions INTEGER NOT NULL DEFAULT 0,
    clicks INTEGER NOT NULL DEFAULT 0,
    conversions INTEGER NOT NULL DEFAULT 0,
    rating_sum REAL NOT NULL DEFAULT 0,
    rating_count INTEGER NOT NULL DEFAULT 0,
    revenue_sum REAL NOT NULL DEFAULT 0,
    PRIMARY KEY (experiment_id, variant_id)
);

CREATE TABLE IF NOT EXISTS analysis_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id TEXT NOT NULL,
    metric_name TEXT NOT NULL,
    treatment_variant_id TEXT NOT NULL,
    analyzed_at TEXT NOT NULL,
    result TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_variants_experiment ON variants(experiment_id);
CREATE INDEX IF NOT EXISTS idx_assignments_user ON assignments(user_id);
CREATE INDEX IF NOT EXISTS idx_events_experiment ON events(experiment_id, variant_id);
CREATE INDEX IF NOT EXISTS idx_events_user ON events(experiment_id, user_id, occurred_at);
CREATE INDEX IF NOT EXISTS idx_analysis_experiment ON analysis_results(experiment_id, metric_name);
"""

_UPSERT_SNAPSHOT = """
INSERT INTO variant_metrics (
    experiment_id, variant_id, users, impressions, clicks, conversions,
    rating_sum, rating_count, revenue_sum
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(experiment_id, variant_id) DO UPDATE SET
    users = users + excluded.users,
    impressions = impressions + excluded.impressions,
    clicks = clicks + excluded.clicks,
    conversions = conversions + excluded.conversions,
    rating_sum = rating_sum + excluded.rating_sum,
    rating_count = rating_count + excluded.rating_count,
    revenue_sum = revenue_sum + excluded.revenue_sum
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class ExperimentStore:
    """
    Storage collaborator backed by a single SQLite connection.

    Usage::

        store = ExperimentStore()               # EXPERIMENTS_DB, in-memory by default
        store = ExperimentStore("experiments.db")
    """

    def __init__(self, db_path: Optional[str] = None):
        db_path = db_path if db_path is not None else db_path_from_env()
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock, self._conn:
            self._conn.executescript(_SCHEMA)
        logger.debug(f"Experiment store initialized at {db_path}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """One atomic unit: commits on success, rolls back on any error."""
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as e:
                raise TransientStorageError(f"Storage write failed: {e}") from e

    # ------------------------------------------------------------------
    # Experiments and variants
    # ------------------------------------------------------------------

    def create_experiment(self, experiment: Experiment) -> None:
        """Insert experiment, variants, guardrails and zeroed counters atomically."""
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO experiments (
                       id, name, hypothesis, description, status, target_metric,
                       allocation_unit, traffic_allocation_percent, start_date, end_date,
                       minimum_sample_size, confidence_level, tags, created_by,
                       created_at, updated_at
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    experiment.id,
                    experiment.name,
                    experiment.hypothesis,
                    experiment.description,
                    experiment.status.value,
                    experiment.target_metric,
                    experiment.allocation_unit.value,
                    experiment.traffic_allocation_percent,
                    _ts(experiment.start_date),
                    _ts(experiment.end_date),
                    experiment.minimum_sample_size,
                    experiment.confidence_level,
                    json.dumps(experiment.tags),
                    experiment.created_by,
                    _ts(experiment.created_at),
                    _ts(experiment.updated_at),
                ),
            )
            conn.executemany(
                """INSERT INTO variants (
                       id, experiment_id, name, description, allocation_percentage, is_control, config
                   ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
                [
                    (v.id, experiment.id, v.name, v.description, v.allocation_percentage,
                     1 if v.is_control else 0, v.config)
                    for v in experiment.variants
                ],
            )
            conn.executemany(
                """INSERT INTO guardrails (experiment_id, metric_name, threshold_type, threshold_value)
                   VALUES (?, ?, ?, ?)""",
                [
                    (experiment.id, g.metric_name, g.threshold_type.value, g.threshold_value)
                    for g in experiment.guardrails
                ],
            )
            conn.executemany(
                "INSERT INTO variant_metrics (experiment_id, variant_id) VALUES (?, ?)",
                [(experiment.id, v.id) for v in experiment.variants],
            )

    def _row_to_variant(self, row: sqlite3.Row) -> Variant:
        return Variant(
            id=row["id"],
            experiment_id=row["experiment_id"],
            name=row["name"],
            is_control=bool(row["is_control"]),
            allocation_percentage=row["allocation_percentage"],
            config=row["config"],
            description=row["description"] or "",
        )

    def _row_to_experiment(self, row: sqlite3.Row) -> Experiment:
        variants = [
            self._row_to_variant(r)
            for r in self._conn.execute(
                "SELECT * FROM variants WHERE experiment_id = ? ORDER BY id", (row["id"],)
            )
        ]
        guardrails = [
            Guardrail(
                metric_name=r["metric_name"],
                threshold_type=ThresholdType(r["threshold_type"]),
                threshold_value=r["threshold_value"],
            )
            for r in self._conn.execute(
                "SELECT * FROM guardrails WHERE experiment_id = ? ORDER BY id", (row["id"],)
            )
        ]
        return Experiment(
            id=row["id"],
            name=row["name"],
            target_metric=row["target_metric"],
            status=ExperimentStatus(row["status"]),
            hypothesis=row["hypothesis"] or "",
            description=row["description"] or "",
            allocation_unit=AllocationUnit(row["allocation_unit"]),
            traffic_allocation_percent=row["traffic_allocation_percent"],
            start_date=_parse_ts(row["start_date"]),
            end_date=_parse_ts(row["end_date"]),
            winner_variant_id=row["winner_variant_id"],
            conclusion=row["conclusion"],
            minimum_sample_size=row["minimum_sample_size"],
            confidence_level=row["confidence_level"],
            tags=json.loads(row["tags"] or "[]"),
            created_by=row["created_by"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            archived_at=_parse_ts(row["archived_at"]),
            variants=variants,
            guardrails=guardrails,
        )

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM experiments WHERE id = ?", (experiment_id,)
            ).fetchone()
            return self._row_to_experiment(row) if row else None

    def list_experiments(
        self,
        status: Optional[ExperimentStatus] = None,
        include_archived: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Experiment]:
        query = "SELECT * FROM experiments WHERE 1=1"
        params: list = []
        if status is not None:
            query += " AND status = ?"
            params.append(ExperimentStatus(status).value)
        elif not include_archived:
            query += " AND status != ?"
            params.append(ExperimentStatus.ARCHIVED.value)
        query += " ORDER BY created_at DESC, id LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
            return [self._row_to_experiment(r) for r in rows]

    def transition(
        self,
        experiment_id: str,
        from_statuses: Sequence[ExperimentStatus],
        to_status: ExperimentStatus,
        **fields,
    ) -> bool:
        """
        Compare-and-set status change.

        Returns False (and changes nothing) when the experiment is no longer
        in one of from_statuses, so concurrent lifecycle calls cannot both win.
        """
        updates = {"status": to_status.value, "updated_at": _ts(utcnow())}
        for key, value in fields.items():
            updates[key] = _ts(value) if isinstance(value, datetime) else value
        set_clause = ", ".join(f"{k} = ?" for k in updates)
        placeholders = ", ".join("?" for _ in from_statuses)
        with self._transaction() as conn:
            cur = conn.execute(
                f"UPDATE experiments SET {set_clause} WHERE id = ? AND status IN ({placeholders})",
                [*updates.values(), experiment_id, *[s.value for s in from_statuses]],
            )
            return cur.rowcount == 1

    def get_variant(self, experiment_id: str, variant_id: str) -> Optional[Variant]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM variants WHERE id = ? AND experiment_id = ?",
                (variant_id, experiment_id),
            ).fetchone()
            return self._row_to_variant(row) if row else None

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def get_assignment(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM assignments WHERE experiment_id = ? AND user_id = ?",
                (experiment_id, user_id),
            ).fetchone()
        if not row:
            return None
        return Assignment(
            experiment_id=row["experiment_id"],
            user_id=row["user_id"],
            variant_id=row["variant_id"],
            assigned_at=_parse_ts(row["assigned_at"]),
            session_id=row["session_id"],
        )

    def insert_assignment(self, assignment: Assignment) -> Tuple[Assignment, bool]:
        """
        Insert-if-absent on (experiment_id, user_id).

        Returns the stored assignment and whether this call created it. A
        writer that loses a race gets the winner's row back.
        """
        with self._transaction() as conn:
            cur = conn.execute(
                """INSERT INTO assignments (experiment_id, user_id, variant_id, assigned_at, session_id)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(experiment_id, user_id) DO NOTHING""",
                (
                    assignment.experiment_id,
                    assignment.user_id,
                    assignment.variant_id,
                    _ts(assignment.assigned_at),
                    assignment.session_id,
                ),
            )
            created = cur.rowcount == 1
            if created:
                conn.execute(
                    _UPSERT_SNAPSHOT,
                    (assignment.experiment_id, assignment.variant_id, 1, 0, 0, 0, 0.0, 0, 0.0),
                )
        if created:
            return assignment, True
        return self.get_assignment(assignment.experiment_id, assignment.user_id), False

    def assignments_for_user(self, user_id: str) -> List[Assignment]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM assignments WHERE user_id = ? ORDER BY assigned_at", (user_id,)
            ).fetchall()
        return [
            Assignment(
                experiment_id=r["experiment_id"],
                user_id=r["user_id"],
                variant_id=r["variant_id"],
                assigned_at=_parse_ts(r["assigned_at"]),
                session_id=r["session_id"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Events and counters
    # ------------------------------------------------------------------

    def persist_events(
        self,
        events: Sequence[Event],
        deltas: Iterable[VariantMetricSnapshot],
    ) -> int:
        """
        Append raw events and accumulate counter deltas in one transaction.

        Either the whole batch lands or none of it does.
        """
        with self._transaction() as conn:
            conn.executemany(
                """INSERT INTO events (
                       experiment_id, variant_id, user_id, event_type, event_name,
                       value, occurred_at, payload, session_id
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (
                        e.experiment_id,
                        e.variant_id,
                        e.user_id,
                        EventType(e.event_type).value,
                        e.event_name,
                        e.value,
                        _ts(e.occurred_at),
                        e.payload,
                        e.session_id,
                    )
                    for e in events
                ],
            )
            conn.executemany(
                _UPSERT_SNAPSHOT,
                [
                    (d.experiment_id, d.variant_id, d.users, d.impressions, d.clicks,
                     d.conversions, d.rating_sum, d.rating_count, d.revenue_sum)
                    for d in deltas
                ],
            )
        return len(events)

    def get_snapshots(self, experiment_id: str) -> Dict[str, VariantMetricSnapshot]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM variant_metrics WHERE experiment_id = ?", (experiment_id,)
            ).fetchall()
        return {
            r["variant_id"]: VariantMetricSnapshot(
                experiment_id=r["experiment_id"],
                variant_id=r["variant_id"],
                users=r["users"],
                impressions=r["impressions"],
                clicks=r["clicks"],
                conversions=r["conversions"],
                rating_sum=r["rating_sum"],
                rating_count=r["rating_count"],
                revenue_sum=r["revenue_sum"],
            )
            for r in rows
        }

    def get_snapshot(self, experiment_id: str, variant_id: str) -> VariantMetricSnapshot:
        snapshots = self.get_snapshots(experiment_id)
        return snapshots.get(
            variant_id, VariantMetricSnapshot(experiment_id=experiment_id, variant_id=variant_id)
        )

    def events_frame(
        self,
        experiment_id: str,
        variant_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        user_id: Optional[str] = None,
    ) -> pd.DataFrame:
        """
        Read flushed events for an experiment as a DataFrame.

        Returns:
            DataFrame with event columns; occurred_at parsed to UTC datetimes
        """
        query = "SELECT * FROM events WHERE experiment_id = ?"
        params: list = [experiment_id]
        if variant_id:
            query += " AND variant_id = ?"
            params.append(variant_id)
        if event_type:
            query += " AND event_type = ?"
            params.append(EventType(event_type).value)
        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY occurred_at, id"
        with self._lock:
            df = pd.read_sql_query(query, self._conn, params=params)
        if not df.empty:
            df["occurred_at"] = pd.to_datetime(df["occurred_at"], utc=True)
        return df

    def count_events(self, experiment_id: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM events WHERE experiment_id = ?", (experiment_id,)
            ).fetchone()
        return int(row["n"])

    # ------------------------------------------------------------------
    # Analysis history
    # ------------------------------------------------------------------

    def append_analysis(self, results: Sequence[AnalysisResult]) -> None:
        """Append results to the history. Existing rows are never updated."""
        with self._transaction() as conn:
            conn.executemany(
                """INSERT INTO analysis_results (
                       experiment_id, metric_name, treatment_variant_id, analyzed_at, result
                   ) VALUES (?, ?, ?, ?, ?)""",
                [
                    (r.experiment_id, r.metric_name, r.treatment_variant_id,
                     _ts(r.analyzed_at), json.dumps(r.to_dict()))
                    for r in results
                ],
            )

    def analysis_history(
        self,
        experiment_id: str,
        metric_name: Optional[str] = None,
    ) -> List[AnalysisResult]:
        """All stored results, oldest first."""
        query = "SELECT result FROM analysis_results WHERE experiment_id = ?"
        params: list = [experiment_id]
        if metric_name:
            query += " AND metric_name = ?"
            params.append(metric_name)
        query += " ORDER BY analyzed_at, id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [AnalysisResult.from_dict(json.loads(r["result"])) for r in rows]
