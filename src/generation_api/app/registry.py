from __future__ import annotations

import logging
import threading

from generation_api.storage.base import GenerationStore

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Process-local map from provider task id to record id.

    Populated at dispatch and consulted by both completion paths. The durable
    task table is the source of truth; `resolve` falls back to it on a miss so
    a restart does not turn in-flight tasks into unknown ones.
    """

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}
        self._lock = threading.Lock()

    def register(self, task_id: str, record_id: str) -> None:
        with self._lock:
            existing = self._entries.get(task_id)
            if existing is not None and existing != record_id:
                raise ValueError(
                    f"Task {task_id} is already bound to record {existing}; ids are never reassigned"
                )
            self._entries[task_id] = record_id

    def lookup(self, task_id: str) -> str | None:
        with self._lock:
            return self._entries.get(task_id)

    def resolve(self, task_id: str, store: GenerationStore) -> str | None:
        record_id = self.lookup(task_id)
        if record_id is not None:
            return record_id
        task = store.get_task(task_id)
        if task is None:
            return None
        logger.info(
            "registry event=restored task_id=%s record_id=%s", task_id, task.record_id
        )
        self.register(task_id, task.record_id)
        return task.record_id

    def rebuild(self, store: GenerationStore) -> int:
        """Load every known task from durable storage; returns the entry count."""
        tasks = store.list_tasks()
        with self._lock:
            for task in tasks:
                self._entries.setdefault(task.task_id, task.record_id)
            count = len(self._entries)
        logger.info("registry event=rebuilt entries=%d", count)
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._entries
