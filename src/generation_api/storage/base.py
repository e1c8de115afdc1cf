"""Storage interface for generation records, provider tasks, and the audit log."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from generation_api.app.models import (
    AuditLogEntry,
    GenerationParameters,
    GenerationRecord,
    GenerationTask,
)


class GenerationStore(Protocol):
    def migrate(self) -> None: ...

    def create_generation(
        self,
        *,
        task_id: str,
        parameters: GenerationParameters,
        prompt: str,
    ) -> tuple[GenerationRecord, GenerationTask]: ...

    def get_record(self, record_id: str) -> GenerationRecord | None: ...

    def get_task(self, task_id: str) -> GenerationTask | None: ...

    def list_tasks(self, *, statuses: Sequence[str] | None = None) -> list[GenerationTask]: ...

    # The three transition writes below are conditional: they return False
    # when the record is already terminal (or, for attach, already has an artifact).
    def attach_artifact(
        self,
        record_id: str,
        *,
        task_id: str,
        artifact_url: str,
        artifact_urls: Sequence[str],
        title: str | None,
    ) -> bool: ...

    def mark_failed(self, record_id: str, *, task_id: str, error: str) -> bool: ...

    def mark_processing(self, record_id: str, *, task_id: str) -> bool: ...

    def append_audit(self, entry: AuditLogEntry) -> None: ...

    def list_audit(self, task_id: str) -> list[AuditLogEntry]: ...
