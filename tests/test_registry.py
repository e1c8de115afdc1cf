from __future__ import annotations

import pytest

from generation_api.app.models import GenerationParameters
from generation_api.app.registry import TaskRegistry


def test_register_and_lookup() -> None:
    registry = TaskRegistry()

    registry.register("task-1", "rec-1")
    registry.register("task-1", "rec-1")

    assert registry.lookup("task-1") == "rec-1"
    assert registry.lookup("task-2") is None
    assert len(registry) == 1


def test_task_ids_are_never_reassigned() -> None:
    registry = TaskRegistry()
    registry.register("task-1", "rec-1")

    with pytest.raises(ValueError, match="already bound"):
        registry.register("task-1", "rec-2")


def test_resolve_falls_back_to_durable_tasks(store) -> None:
    store.create_generation(
        task_id="task-1",
        parameters=GenerationParameters(mode="voice_only", prompt="sing"),
        prompt="sing",
    )
    registry = TaskRegistry()

    assert registry.resolve("task-1", store) == "rec-1"
    assert "task-1" in registry
    assert registry.resolve("ghost", store) is None


def test_rebuild_loads_every_task(store) -> None:
    for task_id in ("task-1", "task-2"):
        store.create_generation(
            task_id=task_id,
            parameters=GenerationParameters(mode="voice_only", prompt="sing"),
            prompt="sing",
        )
    registry = TaskRegistry()

    assert registry.rebuild(store) == 2
    assert registry.lookup("task-2") == "rec-2"
