"""In-memory storage backend for tests and local runs."""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from uuid import uuid4

from generation_api.app.models import (
    OPEN_STATUSES,
    AuditLogEntry,
    GenerationParameters,
    GenerationRecord,
    GenerationTask,
)


class InMemoryGenerationStore:
    """Dict-backed store; one lock makes every conditional write atomic."""

    def __init__(self, *, id_factory: Callable[[], str] | None = None) -> None:
        self._records: dict[str, GenerationRecord] = {}
        self._tasks: dict[str, GenerationTask] = {}
        self._audit: list[AuditLogEntry] = []
        self._lock = threading.Lock()
        self._id_factory = id_factory or (lambda: str(uuid4()))

    def migrate(self) -> None:
        return None

    def create_generation(
        self,
        *,
        task_id: str,
        parameters: GenerationParameters,
        prompt: str,
    ) -> tuple[GenerationRecord, GenerationTask]:
        now = datetime.now(UTC)
        with self._lock:
            if task_id in self._tasks:
                raise ValueError(f"Task {task_id} already exists")
            record = GenerationRecord(
                id=self._id_factory(),
                parameters=parameters,
                prompt=prompt,
                status="pending",
                created_at=now,
                updated_at=now,
            )
            task = GenerationTask(
                task_id=task_id,
                record_id=record.id,
                status="pending",
                submitted_at=now,
                updated_at=now,
            )
            self._records[record.id] = record
            self._tasks[task_id] = task
        return record.model_copy(deep=True), task.model_copy(deep=True)

    def get_record(self, record_id: str) -> GenerationRecord | None:
        with self._lock:
            record = self._records.get(record_id)
            return record.model_copy(deep=True) if record else None

    def get_task(self, task_id: str) -> GenerationTask | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def list_tasks(self, *, statuses: Sequence[str] | None = None) -> list[GenerationTask]:
        with self._lock:
            tasks = [
                task.model_copy(deep=True)
                for task in self._tasks.values()
                if statuses is None or task.status in statuses
            ]
        return sorted(tasks, key=lambda task: task.submitted_at)

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
        with self._lock:
            record = self._records.get(record_id)
            if record is None or record.artifact_url or record.status not in OPEN_STATUSES:
                return False
            now = datetime.now(UTC)
            self._records[record_id] = record.model_copy(
                update={
                    "status": "complete",
                    "artifact_url": artifact_url,
                    "artifact_urls": list(artifact_urls),
                    "title": record.title or title,
                    "updated_at": now,
                }
            )
            self._set_task_status(task_id, "complete", now)
        return True

    def mark_failed(self, record_id: str, *, task_id: str, error: str) -> bool:
        with self._lock:
            record = self._records.get(record_id)
            if record is None or record.status not in OPEN_STATUSES:
                return False
            now = datetime.now(UTC)
            self._records[record_id] = record.model_copy(
                update={"status": "failed", "error": error, "updated_at": now}
            )
            self._set_task_status(task_id, "failed", now)
        return True

    def mark_processing(self, record_id: str, *, task_id: str) -> bool:
        with self._lock:
            record = self._records.get(record_id)
            if record is None or record.status != "pending":
                return False
            now = datetime.now(UTC)
            self._records[record_id] = record.model_copy(
                update={"status": "processing", "updated_at": now}
            )
            self._set_task_status(task_id, "processing", now)
        return True

    def append_audit(self, entry: AuditLogEntry) -> None:
        with self._lock:
            self._audit.append(entry.model_copy(deep=True))

    def list_audit(self, task_id: str) -> list[AuditLogEntry]:
        with self._lock:
            return [entry.model_copy(deep=True) for entry in self._audit if entry.task_id == task_id]

    def _set_task_status(self, task_id: str, status: str, now: datetime) -> None:
        task = self._tasks.get(task_id)
        if task is not None:
            self._tasks[task_id] = task.model_copy(update={"status": status, "updated_at": now})
