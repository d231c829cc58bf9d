"""DuckDB-backed durable store.

Holds experiment definitions and the append-only results log. Results are
never updated or deleted; the grouped aggregate over this table is the
authoritative source for reporting.

A DuckDB connection is not safe for concurrent use, so every statement
runs under one lock. Statements are short (single-row reads, single-row
inserts, one GROUP BY), which keeps the critical section small.
"""

import threading
from datetime import timezone
from pathlib import Path

import duckdb
import structlog
from pydantic import ValidationError

from src.ab.errors import InvalidExperiment
from src.collector.schemas import (
    AggregateRow,
    ExperimentDefinition,
    ExperimentStatus,
    ResultRecord,
)

logger = structlog.get_logger(__name__)


def get_connection(path: str = "data/experiments.duckdb") -> duckdb.DuckDBPyConnection:
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(path)


def init_db(conn: duckdb.DuckDBPyConnection) -> None:
    """Create tables if they don't exist."""
    # The status column overrides the status inside the definition JSON so
    # admins can pause/resume without rewriting the definition.
    conn.execute("""
        CREATE TABLE IF NOT EXISTS experiments (
            id VARCHAR NOT NULL,
            name VARCHAR NOT NULL,
            status VARCHAR NOT NULL,
            definition VARCHAR NOT NULL,
            updated_at TIMESTAMP DEFAULT current_timestamp
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS results (
            result_id VARCHAR PRIMARY KEY,
            experiment_id VARCHAR NOT NULL,
            variant_id VARCHAR NOT NULL,
            metric_id VARCHAR NOT NULL,
            value DOUBLE NOT NULL,
            subject_id VARCHAR NOT NULL,
            recorded_at TIMESTAMP NOT NULL
        )
    """)


class DuckDBResultStore:
    """Durable store for experiment definitions and metric results."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self._conn = conn
        self._lock = threading.Lock()
        init_db(conn)

    @classmethod
    def open(cls, path: str = "data/experiments.duckdb") -> "DuckDBResultStore":
        return cls(get_connection(path))

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # --- Definitions ---

    def get_experiment(self, name: str) -> ExperimentDefinition | None:
        return self._fetch_definition("name", name)

    def get_experiment_by_id(self, experiment_id: str) -> ExperimentDefinition | None:
        return self._fetch_definition("id", experiment_id)

    def _fetch_definition(self, column: str, value: str) -> ExperimentDefinition | None:
        # column is always one of two literals above, never caller input
        with self._lock:
            row = self._conn.execute(
                f"SELECT status, definition FROM experiments WHERE {column} = ?",
                [value],
            ).fetchone()
        if row is None:
            return None
        status, definition = row
        try:
            parsed = ExperimentDefinition.model_validate_json(definition)
        except ValidationError as exc:
            raise InvalidExperiment(f"Stored definition for {value!r} is invalid: {exc}") from exc
        return parsed.model_copy(update={"status": ExperimentStatus(status)})

    def save_experiment(self, definition: ExperimentDefinition) -> None:
        """Insert or replace a definition, keyed by id. Names stay unique."""
        payload = definition.model_dump_json()
        with self._lock:
            clash = self._conn.execute(
                "SELECT id FROM experiments WHERE name = ? AND id <> ?",
                [definition.name, definition.id],
            ).fetchone()
            if clash is not None:
                raise ValueError(
                    f"Experiment name {definition.name!r} already used by {clash[0]}"
                )
            exists = self._conn.execute(
                "SELECT 1 FROM experiments WHERE id = ?", [definition.id]
            ).fetchone()
            if exists:
                self._conn.execute(
                    """
                    UPDATE experiments
                    SET name = ?, status = ?, definition = ?, updated_at = current_timestamp
                    WHERE id = ?
                    """,
                    [definition.name, definition.status.value, payload, definition.id],
                )
            else:
                self._conn.execute(
                    "INSERT INTO experiments (id, name, status, definition) VALUES (?, ?, ?, ?)",
                    [definition.id, definition.name, definition.status.value, payload],
                )
        logger.info("experiment_saved", experiment=definition.name, status=definition.status.value)

    def set_status(self, name: str, status: ExperimentStatus) -> None:
        with self._lock:
            updated = self._conn.execute(
                """
                UPDATE experiments SET status = ?, updated_at = current_timestamp
                WHERE name = ? RETURNING id
                """,
                [status.value, name],
            ).fetchall()
        if not updated:
            raise KeyError(name)
        logger.info("experiment_status_changed", experiment=name, status=status.value)

    def list_experiments(self) -> list[ExperimentDefinition]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, definition FROM experiments ORDER BY name"
            ).fetchall()
        return [
            ExperimentDefinition.model_validate_json(definition).model_copy(
                update={"status": ExperimentStatus(status)}
            )
            for status, definition in rows
        ]

    # --- Results ---

    def append_result(self, record: ResultRecord) -> None:
        # Replaying the same record is a no-op
        recorded_at = record.recorded_at.astimezone(timezone.utc).replace(tzinfo=None)
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO results
                    (result_id, experiment_id, variant_id, metric_id, value, subject_id, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                [
                    record.result_id,
                    record.experiment_id,
                    record.variant_id,
                    record.metric_id,
                    record.value,
                    record.subject_id,
                    recorded_at,
                ],
            )

    def aggregate_results(self, experiment_id: str) -> list[AggregateRow]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT variant_id, metric_id, COUNT(*), SUM(value), SUM(value * value)
                FROM results
                WHERE experiment_id = ?
                GROUP BY variant_id, metric_id
                ORDER BY variant_id, metric_id
                """,
                [experiment_id],
            ).fetchall()
        return [
            AggregateRow(
                variant_id=variant_id,
                metric_id=metric_id,
                count=count,
                sum=total,
                sum_sq=total_sq,
            )
            for variant_id, metric_id, count, total, total_sq in rows
        ]

    def count_results(self, experiment_id: str) -> int:
        """Number of logged results for an experiment. Used by ops checks and tests."""
        with self._lock:
            (count,) = self._conn.execute(
                "SELECT COUNT(*) FROM results WHERE experiment_id = ?", [experiment_id]
            ).fetchone()
        return count
