from __future__ import annotations

import logging
from typing import Any

import pytest

from generation_api.app.models import GenerationParameters
from generation_api.app.webhook import extract_task_id, find_artifacts, parse_callback


def _dispatch(orchestrator, provider_http, task_id: str = "task-1") -> str:
    provider_http.accept_submissions(task_id)
    result = orchestrator.submit_generation(GenerationParameters(mode="voice_only", prompt="sing"))
    return result.record_id


def test_parse_audio_list_callback() -> None:
    parsed = parse_callback(
        {
            "data": {
                "task_id": "task-1",
                "audio_list": [
                    {"audio_url": "", "title": "Draft"},
                    {"audio_url": "https://cdn.test/a.mp3", "title": "Dawn"},
                ],
            }
        }
    )

    assert parsed.shape == "audio_list"
    assert parsed.task_id == "task-1"
    assert parsed.signal.is_complete is True
    assert parsed.signal.primary_artifact_url == "https://cdn.test/a.mp3"
    assert parsed.signal.all_artifact_urls == ("https://cdn.test/a.mp3",)
    assert parsed.signal.title == "Dawn"


def test_parse_nested_results_callback() -> None:
    parsed = parse_callback(
        {
            "code": 200,
            "msg": "All generated successfully.",
            "data": {
                "callbackType": "complete",
                "task_id": "task-1",
                "data": [
                    {"audio_url": "https://cdn.test/1.mp3", "title": "One"},
                    {"audio_url": "https://cdn.test/2.mp3", "title": "Two"},
                ],
            },
        }
    )

    assert parsed.shape == "nested_results"
    assert parsed.signal.primary_artifact_url == "https://cdn.test/1.mp3"
    assert parsed.signal.all_artifact_urls == ("https://cdn.test/1.mp3", "https://cdn.test/2.mp3")
    assert parsed.signal.title == "One"


def test_parse_nested_results_decides_on_first_item() -> None:
    parsed = parse_callback(
        {
            "data": {
                "task_id": "task-1",
                "data": [{"audio_url": ""}, {"audio_url": "https://cdn.test/2.mp3"}],
            }
        }
    )

    assert parsed.shape == "nested_results"
    assert parsed.signal.has_artifact is False
    assert parsed.is_ambiguous is True


@pytest.mark.parametrize(
    "payload",
    [
        {"taskId": "task-1", "audio_url": "https://cdn.test/d.mp3"},
        {"data": {"taskId": "task-1", "audioUrl": "https://cdn.test/d.mp3"}},
        {"data": {"taskId": "task-1", "audioUrls": ["", "https://cdn.test/d.mp3"]}},
    ],
)
def test_parse_direct_url_callbacks(payload: dict[str, Any]) -> None:
    parsed = parse_callback(payload)

    assert parsed.shape == "direct_urls"
    assert parsed.task_id == "task-1"
    assert parsed.signal.primary_artifact_url == "https://cdn.test/d.mp3"


def test_parse_explicit_failure_envelope() -> None:
    parsed = parse_callback(
        {"code": 501, "msg": "Audio generation failed", "data": {"callbackType": "error", "task_id": "task-1"}}
    )

    assert parsed.shape == "provider_error"
    assert parsed.signal.is_failure is True
    assert "Audio generation failed" in (parsed.signal.reason or "")


@pytest.mark.parametrize("payload", [{"foo": "bar"}, ["not", "a", "dict"], None, "text"])
def test_parse_unrecognized_shapes(payload: Any) -> None:
    parsed = parse_callback(payload)

    assert parsed.shape == "unrecognized"
    assert parsed.signal.is_complete is False
    assert parsed.signal.is_failure is False


def test_extract_task_id_prefers_data_fields() -> None:
    assert extract_task_id({"data": {"taskId": " inner "}, "task_id": "outer"}) == "inner"
    assert extract_task_id({"data": {}, "taskId": "outer"}) == "outer"
    assert extract_task_id({"data": {"task_id": ""}}) is None


def test_webhook_completion_attaches_artifact(orchestrator, provider_http, store) -> None:
    record_id = _dispatch(orchestrator, provider_http)

    ack = orchestrator.handle_provider_webhook(
        {"data": {"task_id": "task-1", "audio_list": [{"audio_url": "https://cdn.test/a.mp3", "title": "Dawn"}]}}
    )

    assert ack.status == "received"
    record = store.get_record(record_id)
    assert record is not None
    assert record.status == "complete"
    assert record.artifact_url == "https://cdn.test/a.mp3"
    assert record.title == "Dawn"
    assert store.get_task("task-1").status == "complete"


@pytest.mark.parametrize(
    "payload",
    [
        {"data": {"task_id": "task-1", "audio_list": [{"audio_url": ""}]}},
        {"code": 200, "msg": "All generated successfully.", "data": {"task_id": "task-1", "data": [{"audio_url": "  "}]}},
        {"data": {"task_id": "task-1", "audio_url": ""}},
        {"task_id": "task-1", "msg": "Generation complete"},
    ],
)
def test_blank_url_completion_stays_pending(
    orchestrator,
    provider_http,
    store,
    caplog: pytest.LogCaptureFixture,
    payload: dict[str, Any],
) -> None:
    record_id = _dispatch(orchestrator, provider_http)

    ack = orchestrator.handle_provider_webhook(payload)

    assert ack.status == "received"
    record = store.get_record(record_id)
    assert record is not None
    assert record.status == "pending"
    assert record.artifact_url is None
    assert "event=ambiguous_completion" in caplog.text


def test_message_heuristic_is_logged_every_time(
    orchestrator,
    provider_http,
    caplog: pytest.LogCaptureFixture,
) -> None:
    _dispatch(orchestrator, provider_http)

    ack = orchestrator.handle_provider_webhook({"taskId": "task-1", "message": "Generation failed: content policy"})
    orchestrator.handle_provider_webhook({"taskId": "task-1", "message": "Generation failed again"})

    assert ack.status == "received"
    assert caplog.text.count("event=message_heuristic outcome=failure") == 2


def test_explicit_failure_marks_record_failed(orchestrator, provider_http, store) -> None:
    record_id = _dispatch(orchestrator, provider_http)

    orchestrator.handle_provider_webhook(
        {"code": 501, "msg": "Audio generation failed", "data": {"callbackType": "error", "task_id": "task-1"}}
    )

    assert store.get_record(record_id).status == "failed"
    assert [entry.event for entry in orchestrator.get_audit_log("task-1")] == ["dispatched", "failed"]


def test_webhook_uses_query_task_id_when_payload_has_none(orchestrator, provider_http, store) -> None:
    record_id = _dispatch(orchestrator, provider_http)

    orchestrator.handle_provider_webhook({"audio_url": "https://cdn.test/q.mp3"}, task_id="task-1")

    assert store.get_record(record_id).artifact_url == "https://cdn.test/q.mp3"


def test_duplicate_callbacks_are_no_ops(orchestrator, provider_http, store) -> None:
    record_id = _dispatch(orchestrator, provider_http)
    first = {"data": {"task_id": "task-1", "audio_list": [{"audio_url": "https://cdn.test/a.mp3"}]}}
    second = {"data": {"task_id": "task-1", "audio_list": [{"audio_url": "https://cdn.test/b.mp3"}]}}

    orchestrator.handle_provider_webhook(first)
    orchestrator.handle_provider_webhook(second)
    orchestrator.handle_provider_webhook({"code": 501, "msg": "late failure", "data": {"callbackType": "error", "task_id": "task-1"}})

    record = store.get_record(record_id)
    assert record.status == "complete"
    assert record.artifact_url == "https://cdn.test/a.mp3"
    events = [entry.event for entry in orchestrator.get_audit_log("task-1")]
    assert events == ["dispatched", "completed", "duplicate_ignored", "duplicate_ignored"]


def test_unrecognized_shape_is_logged_and_acknowledged(
    orchestrator,
    caplog: pytest.LogCaptureFixture,
) -> None:
    ack = orchestrator.handle_provider_webhook({"task_id": "task-1", "unexpected": True})

    assert ack.status == "received"
    assert "event=unrecognized_shape" in caplog.text


def test_unknown_task_callback_is_acknowledged(
    orchestrator,
    store,
    caplog: pytest.LogCaptureFixture,
) -> None:
    ack = orchestrator.handle_provider_webhook({"taskId": "ghost", "audio_url": "https://cdn.test/x.mp3"})

    assert ack.status == "received"
    assert store.list_tasks() == []
    assert "event=unknown_task" in caplog.text


def test_internal_error_is_logged_with_payload_and_acknowledged(
    orchestrator,
    provider_http,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    _dispatch(orchestrator, provider_http)

    def boom(*_args: Any, **_kwargs: Any) -> str:
        raise RuntimeError("database went away")

    monkeypatch.setattr(orchestrator.reconciler, "apply", boom)
    caplog.set_level(logging.ERROR)

    ack = orchestrator.handle_provider_webhook({"taskId": "task-1", "audio_url": "https://cdn.test/x.mp3"})

    assert ack.status == "received"
    assert "event=internal_error" in caplog.text
    assert "https://cdn.test/x.mp3" in caplog.text


def test_intermediate_stream_callback_does_not_complete_task(orchestrator, provider_http, store) -> None:
    record_id = _dispatch(orchestrator, provider_http)

    orchestrator.handle_provider_webhook(
        {
            "code": 200,
            "msg": "Text generation completed successfully.",
            "data": {
                "callbackType": "text",
                "task_id": "task-1",
                "data": [{"audio_url": "", "stream_audio_url": "https://cdn.test/stream/1"}],
            },
        }
    )

    assert store.get_record(record_id).status == "processing"
    assert store.get_record(record_id).artifact_url is None

    orchestrator.handle_provider_webhook(
        {
            "code": 200,
            "msg": "All generated successfully.",
            "data": {
                "callbackType": "complete",
                "task_id": "task-1",
                "data": [
                    {
                        "audio_url": "https://cdn.test/final.mp3",
                        "stream_audio_url": "https://cdn.test/stream/1",
                    }
                ],
            },
        }
    )

    record = store.get_record(record_id)
    assert record.status == "complete"
    assert record.artifact_url == "https://cdn.test/final.mp3"
    assert record.artifact_urls == ["https://cdn.test/final.mp3"]
    events = [entry.event for entry in orchestrator.get_audit_log("task-1")]
    assert events == ["dispatched", "processing", "completed"]


def test_first_stage_callback_is_not_terminal_even_with_audio() -> None:
    parsed = parse_callback(
        {
            "data": {
                "callbackType": "first",
                "task_id": "task-1",
                "data": [{"audio_url": "https://cdn.test/1.mp3"}],
            }
        }
    )

    assert parsed.shape == "nested_results"
    assert parsed.signal.is_processing is True
    assert parsed.signal.is_complete is False
    assert parsed.is_ambiguous is False


def test_stream_only_urls_are_not_artifacts() -> None:
    parsed = parse_callback(
        {"data": {"task_id": "task-1", "data": [{"audio_url": "", "stream_audio_url": "https://cdn.test/s"}]}}
    )

    assert parsed.signal.has_artifact is False
    assert find_artifacts({"data": {"data": [{"stream_audio_url": "https://cdn.test/s"}]}}) is None


def test_message_with_success_and_error_words_is_not_terminal(
    orchestrator,
    provider_http,
    store,
    caplog: pytest.LogCaptureFixture,
) -> None:
    record_id = _dispatch(orchestrator, provider_http)

    ack = orchestrator.handle_provider_webhook({"taskId": "task-1", "msg": "Generated successfully, no errors"})

    assert ack.status == "received"
    assert store.get_record(record_id).status == "pending"
    assert "event=message_heuristic outcome=mixed" in caplog.text
