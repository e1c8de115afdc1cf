from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from generation_api.storage.base import GenerationStore

from .models import AuditLogEntry

logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only sink for dispatch and resolution events."""

    def __init__(self, store: GenerationStore) -> None:
        self.store = store

    def record(self, task_id: str, event: str, **detail: Any) -> AuditLogEntry:
        entry = AuditLogEntry(task_id=task_id, time=datetime.now(tz=UTC), event=event, detail=detail)
        self.store.append_audit(entry)
        logger.info("audit event=%s task_id=%s detail=%s", event, task_id, detail)
        return entry

    def entries(self, task_id: str) -> list[AuditLogEntry]:
        return self.store.list_audit(task_id)
