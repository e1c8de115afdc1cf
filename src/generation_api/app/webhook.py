"""Push path: normalize provider callbacks into completion signals.

The provider has been observed sending several callback layouts. Each known
layout is a variant with its own extractor; variants are tried in a fixed
priority order and the first match decides. Blank URL strings never count as
an artifact: the provider sends "complete"-looking callbacks with empty
``audio_url`` fields before the audio actually exists. Intermediate stages
(``callbackType`` "text" or "first") and stream-only URLs never complete a task.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from .errors import AmbiguousCompletionSignal
from .models import CompletionSignal, WebhookAck
from .reconciler import Reconciler

logger = logging.getLogger(__name__)

PayloadShape = Literal[
    "audio_list",
    "nested_results",
    "direct_urls",
    "provider_error",
    "status_message",
    "unrecognized",
]

# Final-audio fields only; stream and source URLs exist before the audio is finished.
AUDIO_URL_FIELDS = ("audio_url", "audioUrl")
AUDIO_URL_LIST_FIELDS = ("audio_urls", "audioUrls")
FAILURE_WORDS = ("fail", "error")
COMPLETION_WORDS = ("success", "complete")
# Callback stages the provider sends before the final audio is ready.
INTERMEDIATE_CALLBACK_TYPES = frozenset({"text", "first"})


@dataclass(frozen=True)
class ParsedCallback:
    shape: PayloadShape
    task_id: str | None
    signal: CompletionSignal
    # True when the payload had a "complete" position, even if its URL was blank.
    looks_complete: bool = False

    @property
    def is_ambiguous(self) -> bool:
        return self.looks_complete and not self.signal.has_artifact and not self.signal.is_failure


@dataclass(frozen=True)
class _Extraction:
    urls: tuple[str, ...]
    title: str | None
    # Whether the variant decided completion; nested results decide on the first item only.
    complete: bool


def parse_callback(payload: Any) -> ParsedCallback:
    """Classify a raw callback body into exactly one variant."""
    if not isinstance(payload, dict):
        return ParsedCallback(shape="unrecognized", task_id=None, signal=CompletionSignal())
    task_id = extract_task_id(payload)

    callback_type = _callback_type(payload)
    if callback_type in INTERMEDIATE_CALLBACK_TYPES:
        shape = _present_shape(payload) or "status_message"
        logger.info(
            "webhook event=intermediate_callback task_id=%s callback_type=%s shape=%s",
            task_id,
            callback_type,
            shape,
        )
        return ParsedCallback(shape=shape, task_id=task_id, signal=CompletionSignal(is_processing=True))

    present: PayloadShape | None = None
    for shape, extractor in _ARTIFACT_EXTRACTORS:
        extraction = extractor(payload)
        if extraction is None:
            continue
        if extraction.complete:
            return ParsedCallback(
                shape=shape,
                task_id=task_id,
                signal=_completed(extraction),
                looks_complete=True,
            )
        if present is None:
            present = shape

    failure_reason = _explicit_failure(payload)
    if failure_reason is not None:
        return ParsedCallback(
            shape="provider_error",
            task_id=task_id,
            signal=CompletionSignal(is_failure=True, reason=failure_reason),
        )

    message = _status_message(payload)
    if message:
        lowered = message.lower()
        says_failure = any(word in lowered for word in FAILURE_WORDS)
        says_success = any(word in lowered for word in COMPLETION_WORDS)
        if says_failure and says_success:
            logger.warning(
                "webhook event=message_heuristic outcome=mixed task_id=%s message=%r",
                task_id,
                message,
            )
            return ParsedCallback(shape="status_message", task_id=task_id, signal=CompletionSignal())
        if says_failure:
            logger.warning(
                "webhook event=message_heuristic outcome=failure task_id=%s message=%r",
                task_id,
                message,
            )
            return ParsedCallback(
                shape="status_message",
                task_id=task_id,
                signal=CompletionSignal(is_failure=True, reason=message),
            )
        if says_success:
            logger.warning(
                "webhook event=message_heuristic outcome=complete_without_url task_id=%s message=%r",
                task_id,
                message,
            )
            return ParsedCallback(
                shape="status_message",
                task_id=task_id,
                signal=CompletionSignal(is_complete=True, reason=message),
                looks_complete=True,
            )

    if present is not None:
        return ParsedCallback(
            shape=present,
            task_id=task_id,
            signal=CompletionSignal(),
            looks_complete=True,
        )
    return ParsedCallback(shape="unrecognized", task_id=task_id, signal=CompletionSignal())


def find_artifacts(payload: Any) -> CompletionSignal | None:
    """Run only the URL-bearing variants; used to read status-check responses too."""
    if not isinstance(payload, dict):
        return None
    for _shape, extractor in _ARTIFACT_EXTRACTORS:
        extraction = extractor(payload)
        if extraction is not None and extraction.complete:
            return _completed(extraction)
    return None


def extract_task_id(payload: dict[str, Any]) -> str | None:
    data = payload.get("data")
    candidates: list[Any] = []
    if isinstance(data, dict):
        candidates.extend([data.get("task_id"), data.get("taskId")])
    candidates.extend([payload.get("task_id"), payload.get("taskId")])
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


class WebhookReceiver:
    """Accept provider callbacks; always acknowledges to avoid retry storms."""

    def __init__(self, reconciler: Reconciler) -> None:
        self.reconciler = reconciler

    def handle(self, raw_payload: Any, *, task_id: str | None = None) -> WebhookAck:
        try:
            self._handle(raw_payload, fallback_task_id=task_id)
        except AmbiguousCompletionSignal as exc:
            logger.warning(
                "webhook event=ambiguous_completion task_id=%s shape=%s payload=%s",
                exc.task_id,
                exc.shape,
                _dump(raw_payload),
            )
        except Exception:  # noqa: BLE001
            logger.exception("webhook event=internal_error payload=%s", _dump(raw_payload))
        return WebhookAck()

    def _handle(self, raw_payload: Any, *, fallback_task_id: str | None) -> None:
        parsed = parse_callback(raw_payload)
        resolved_task_id = parsed.task_id or fallback_task_id
        if parsed.shape == "unrecognized":
            logger.warning(
                "webhook event=unrecognized_shape task_id=%s payload=%s",
                resolved_task_id,
                _dump(raw_payload),
            )
            return
        if resolved_task_id is None:
            logger.warning("webhook event=missing_task_id shape=%s payload=%s", parsed.shape, _dump(raw_payload))
            return
        if parsed.is_ambiguous:
            raise AmbiguousCompletionSignal(resolved_task_id, parsed.shape)

        outcome = self.reconciler.apply(resolved_task_id, parsed.signal, source="webhook")
        logger.info(
            "webhook event=handled task_id=%s shape=%s outcome=%s",
            resolved_task_id,
            parsed.shape,
            outcome,
        )


def _audio_list(payload: dict[str, Any]) -> _Extraction | None:
    data = payload.get("data")
    items = data.get("audio_list") if isinstance(data, dict) else None
    if items is None:
        items = payload.get("audio_list")
    if not isinstance(items, list):
        return None
    urls: list[str] = []
    title: str | None = None
    for item in items:
        if not isinstance(item, dict):
            continue
        url = _first_url(item, ("audio_url", "audioUrl"))
        if url:
            urls.append(url)
            title = title or _clean(item.get("title"))
    return _Extraction(urls=tuple(urls), title=title, complete=bool(urls))


def _nested_results(payload: dict[str, Any]) -> _Extraction | None:
    data = payload.get("data")
    items = data.get("data") if isinstance(data, dict) else data
    if not isinstance(items, list) or not items:
        return None
    dict_items = [item for item in items if isinstance(item, dict)]
    if not dict_items:
        return None
    first_url = _first_url(dict_items[0], AUDIO_URL_FIELDS)
    urls = [url for url in (_first_url(item, AUDIO_URL_FIELDS) for item in dict_items) if url]
    return _Extraction(
        urls=tuple(urls),
        title=_clean(dict_items[0].get("title")),
        complete=bool(first_url),
    )


def _direct_urls(payload: dict[str, Any]) -> _Extraction | None:
    data = payload.get("data")
    scopes = [data, payload] if isinstance(data, dict) else [payload]
    found = False
    urls: list[str] = []
    title: str | None = None
    for scope in scopes:
        for name in AUDIO_URL_FIELDS:
            if name in scope:
                found = True
                url = _clean(scope.get(name))
                if url:
                    urls.append(url)
        for name in AUDIO_URL_LIST_FIELDS:
            values = scope.get(name)
            if isinstance(values, list):
                found = True
                urls.extend(url for url in (_clean(value) for value in values) if url)
        title = title or _clean(scope.get("title"))
    if not found:
        return None
    unique = tuple(dict.fromkeys(urls))
    return _Extraction(urls=unique, title=title, complete=bool(unique))


_ARTIFACT_EXTRACTORS: tuple[tuple[PayloadShape, Callable[[dict[str, Any]], _Extraction | None]], ...] = (
    ("audio_list", _audio_list),
    ("nested_results", _nested_results),
    ("direct_urls", _direct_urls),
)


def _callback_type(payload: dict[str, Any]) -> str | None:
    data = payload.get("data")
    callback_type = data.get("callbackType") if isinstance(data, dict) else None
    return callback_type.strip().lower() if isinstance(callback_type, str) else None


def _present_shape(payload: dict[str, Any]) -> PayloadShape | None:
    for shape, extractor in _ARTIFACT_EXTRACTORS:
        if extractor(payload) is not None:
            return shape
    return None


def _explicit_failure(payload: dict[str, Any]) -> str | None:
    code = payload.get("code")
    message = _status_message(payload) or "provider reported failure"
    if _callback_type(payload) == "error":
        return message
    if isinstance(code, int) and code != 200:
        return f"{message} (code {code})"
    return None


def _status_message(payload: dict[str, Any]) -> str | None:
    for key in ("msg", "message"):
        value = _clean(payload.get(key))
        if value:
            return value
    data = payload.get("data")
    if isinstance(data, dict):
        return _clean(data.get("msg")) or _clean(data.get("message"))
    return None


def _completed(extraction: _Extraction) -> CompletionSignal:
    return CompletionSignal(
        is_complete=True,
        primary_artifact_url=extraction.urls[0],
        all_artifact_urls=extraction.urls,
        title=extraction.title,
    )


def _first_url(item: dict[str, Any], fields: tuple[str, ...]) -> str | None:
    for name in fields:
        url = _clean(item.get(name))
        if url:
            return url
    return None


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _dump(payload: Any) -> str:
    try:
        return json.dumps(payload, ensure_ascii=True, default=str)
    except (TypeError, ValueError):
        return repr(payload)
