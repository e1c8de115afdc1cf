"""PostgreSQL storage backend for generation records and provider tasks.

Terms:
- Migration: creating tables/indexes before normal reads/writes.
- Conditional update: an UPDATE whose WHERE clause encodes the state machine,
  so a second completion signal simply matches zero rows.
"""

from __future__ import annotations

import json
import threading
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from generation_api.app.models import (
    AuditLogEntry,
    GenerationParameters,
    GenerationRecord,
    GenerationTask,
)


class PostgresGenerationStore:
    """Thread-safe PostgreSQL-backed storage."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        """Create required tables and indexes if they do not already exist."""
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS generation_records (
                    record_id TEXT PRIMARY KEY,
                    parameters_json JSONB NOT NULL,
                    prompt TEXT NOT NULL,
                    status TEXT NOT NULL,
                    artifact_url TEXT,
                    artifact_urls_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    title TEXT,
                    error TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS generation_tasks (
                    task_id TEXT PRIMARY KEY,
                    record_id TEXT NOT NULL
                        REFERENCES generation_records(record_id) ON DELETE CASCADE,
                    status TEXT NOT NULL,
                    submitted_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_generation_tasks_status
                ON generation_tasks(status)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS generation_audit_log (
                    entry_id BIGSERIAL PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    event TEXT NOT NULL,
                    detail_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_generation_audit_log_task_id
                ON generation_audit_log(task_id)
                """)
            conn.commit()

    def create_generation(
        self,
        *,
        task_id: str,
        parameters: GenerationParameters,
        prompt: str,
    ) -> tuple[GenerationRecord, GenerationTask]:
        """Insert the pending record and its task in one transaction."""
        record_id = str(uuid.uuid4())
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO generation_records (
                    record_id,
                    parameters_json,
                    prompt,
                    status,
                    artifact_url,
                    artifact_urls_json,
                    title,
                    error,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record_id,
                    self._json_wrapper(parameters.model_dump(mode="json")),
                    prompt,
                    "pending",
                    None,
                    self._json_wrapper([]),
                    None,
                    None,
                    now,
                    now,
                ),
            )
            try:
                conn.execute(
                    """
                    INSERT INTO generation_tasks (
                        task_id,
                        record_id,
                        status,
                        submitted_at,
                        updated_at
                    ) VALUES (%s, %s, %s, %s, %s)
                    """,
                    (task_id, record_id, "pending", now, now),
                )
            except self._psycopg.errors.UniqueViolation as exc:
                conn.rollback()
                raise ValueError(f"Task {task_id} already exists") from exc
            conn.commit()

        record = self.get_record(record_id)
        task = self.get_task(task_id)
        if record is None or task is None:
            raise RuntimeError("Failed to load created generation")
        return record, task

    def get_record(self, record_id: str) -> GenerationRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM generation_records WHERE record_id = %s",
                (record_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def get_task(self, task_id: str) -> GenerationTask | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM generation_tasks WHERE task_id = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_tasks(self, *, statuses: Sequence[str] | None = None) -> list[GenerationTask]:
        with self._lock, self._connect() as conn:
            if statuses is None:
                rows = conn.execute(
                    "SELECT * FROM generation_tasks ORDER BY submitted_at"
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM generation_tasks
                    WHERE status = ANY(%s)
                    ORDER BY submitted_at
                    """,
                    (list(statuses),),
                ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def attach_artifact(
        self,
        record_id: str,
        *,
        task_id: str,
        artifact_url: str,
        artifact_urls: Sequence[str],
        title: str | None,
    ) -> bool:
        if not artifact_url:
            return False
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                UPDATE generation_records
                SET status = 'complete',
                    artifact_url = %s,
                    artifact_urls_json = %s,
                    title = COALESCE(title, %s),
                    updated_at = %s
                WHERE record_id = %s
                  AND artifact_url IS NULL
                  AND status IN ('pending', 'processing')
                RETURNING record_id
                """,
                (artifact_url, self._json_wrapper(list(artifact_urls)), title, now, record_id),
            ).fetchone()
            if row is not None:
                self._update_task_status(conn, task_id, "complete", now)
            conn.commit()
        return row is not None

    def mark_failed(self, record_id: str, *, task_id: str, error: str) -> bool:
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                UPDATE generation_records
                SET status = 'failed',
                    error = %s,
                    updated_at = %s
                WHERE record_id = %s
                  AND status IN ('pending', 'processing')
                RETURNING record_id
                """,
                (error, now, record_id),
            ).fetchone()
            if row is not None:
                self._update_task_status(conn, task_id, "failed", now)
            conn.commit()
        return row is not None

    def mark_processing(self, record_id: str, *, task_id: str) -> bool:
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                UPDATE generation_records
                SET status = 'processing',
                    updated_at = %s
                WHERE record_id = %s
                  AND status = 'pending'
                RETURNING record_id
                """,
                (now, record_id),
            ).fetchone()
            if row is not None:
                self._update_task_status(conn, task_id, "processing", now)
            conn.commit()
        return row is not None

    def append_audit(self, entry: AuditLogEntry) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO generation_audit_log (task_id, event, detail_json, created_at)
                VALUES (%s, %s, %s, %s)
                """,
                (entry.task_id, entry.event, self._json_wrapper(entry.detail), entry.time),
            )
            conn.commit()

    def list_audit(self, task_id: str) -> list[AuditLogEntry]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM generation_audit_log
                WHERE task_id = %s
                ORDER BY entry_id
                """,
                (task_id,),
            ).fetchall()
        return [
            AuditLogEntry(
                task_id=row["task_id"],
                time=self._parse_datetime(row["created_at"]),
                event=row["event"],
                detail=self._parse_json_object(row["detail_json"]),
            )
            for row in rows
        ]

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _update_task_status(conn: Any, task_id: str, status: str, now: datetime) -> None:
        conn.execute(
            "UPDATE generation_tasks SET status = %s, updated_at = %s WHERE task_id = %s",
            (status, now, task_id),
        )

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_object(raw: Any) -> dict[str, Any]:
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if isinstance(parsed, dict):
            return parsed
        return {}

    @staticmethod
    def _parse_json_list(raw: Any) -> list[str]:
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if not isinstance(parsed, list):
            return []
        return [item for item in parsed if isinstance(item, str)]

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_record(cls, row: Any) -> GenerationRecord:
        return GenerationRecord(
            id=str(row["record_id"]),
            parameters=GenerationParameters.model_validate(
                cls._parse_json_object(row["parameters_json"])
            ),
            prompt=row["prompt"],
            status=row["status"],
            artifact_url=row["artifact_url"],
            artifact_urls=cls._parse_json_list(row["artifact_urls_json"]),
            title=row["title"],
            error=row["error"],
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_task(cls, row: Any) -> GenerationTask:
        return GenerationTask(
            task_id=str(row["task_id"]),
            record_id=str(row["record_id"]),
            status=row["status"],
            submitted_at=cls._parse_datetime(row["submitted_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )
