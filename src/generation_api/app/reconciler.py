"""Single writer of terminal generation state, shared by the webhook and poll paths."""

from __future__ import annotations

import logging
from typing import Literal

from generation_api.storage.base import GenerationStore

from .audit import AuditLog
from .models import TERMINAL_STATUSES, CompletionSignal
from .registry import TaskRegistry

logger = logging.getLogger(__name__)

ReconcileOutcome = Literal["applied", "duplicate", "ignored", "unknown_task"]


class Reconciler:
    """Apply a completion or failure signal to a record at most once.

    The store's conditional writes carry the state machine
    (pending -> processing -> {complete, failed}); two racing signals for the
    same task both reach the store and exactly one of them matches.
    """

    def __init__(self, *, store: GenerationStore, registry: TaskRegistry, audit: AuditLog) -> None:
        self.store = store
        self.registry = registry
        self.audit = audit

    def apply(self, task_id: str, signal: CompletionSignal, *, source: str) -> ReconcileOutcome:
        record_id = self.registry.resolve(task_id, self.store)
        if record_id is None:
            logger.warning("reconcile event=unknown_task task_id=%s source=%s", task_id, source)
            return "unknown_task"

        if signal.is_complete and signal.has_artifact:
            applied = self.store.attach_artifact(
                record_id,
                task_id=task_id,
                artifact_url=signal.primary_artifact_url or "",
                artifact_urls=list(signal.all_artifact_urls),
                title=signal.title,
            )
            if applied:
                self.audit.record(
                    task_id,
                    "completed",
                    source=source,
                    artifact_url=signal.primary_artifact_url,
                    artifact_count=len(signal.all_artifact_urls),
                )
                return "applied"
            return self._duplicate(task_id, record_id, source=source, wanted="complete")

        if signal.is_failure:
            reason = signal.reason or "provider reported failure"
            if self.store.mark_failed(record_id, task_id=task_id, error=reason):
                self.audit.record(task_id, "failed", source=source, reason=reason)
                return "applied"
            return self._duplicate(task_id, record_id, source=source, wanted="failed")

        if signal.is_processing:
            if self.store.mark_processing(record_id, task_id=task_id):
                self.audit.record(task_id, "processing", source=source)
                return "applied"
            return "ignored"

        logger.info(
            "reconcile event=non_terminal task_id=%s record_id=%s source=%s",
            task_id,
            record_id,
            source,
        )
        return "ignored"

    def _duplicate(
        self, task_id: str, record_id: str, *, source: str, wanted: str
    ) -> ReconcileOutcome:
        record = self.store.get_record(record_id)
        current = record.status if record is not None else "missing"
        if current in TERMINAL_STATUSES:
            logger.info(
                "reconcile event=duplicate task_id=%s record_id=%s source=%s wanted=%s current=%s",
                task_id,
                record_id,
                source,
                wanted,
                current,
            )
            self.audit.record(task_id, "duplicate_ignored", source=source, wanted=wanted, current=current)
            return "duplicate"
        logger.warning(
            "reconcile event=write_skipped task_id=%s record_id=%s source=%s wanted=%s current=%s",
            task_id,
            record_id,
            source,
            wanted,
            current,
        )
        return "ignored"
