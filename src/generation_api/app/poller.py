"""Pull path: status checks against a provider whose status URL shape is undocumented.

Terms:
- Candidate template: one guessed status URL shape, e.g. ``/task/{task_id}``.
- Probing: trying candidates in order; 404 means "next", anything else
  non-successful stops the probe.
- Availability cache: remembers the outcome so later calls skip discovery. It
  only ever saves network calls; the record-state fallback always answers.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Literal

from generation_api.storage.base import GenerationStore

from .errors import GenerationTimeoutError, ProviderError, UnknownTaskError
from .models import TERMINAL_STATUSES, CompletionSignal, GenerationRecord, GenerationStatus
from .provider import EndpointNotFound, ProviderClient
from .reconciler import Reconciler
from .registry import TaskRegistry
from .webhook import find_artifacts

logger = logging.getLogger(__name__)

COMPLETE_STATES = {"complete", "completed", "success", "succeeded"}
PROCESSING_STATES = {"processing", "running", "text", "first", "text_success", "first_success"}


@dataclass(frozen=True)
class EndpointAvailability:
    probed: bool
    available: bool
    last_checked_at: float | None
    template: str | None = None


class EndpointAvailabilityCache:
    """Memoized status-endpoint availability with a freshness window."""

    def __init__(self, *, ttl_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_s = ttl_s
        self._clock = clock
        self._lock = threading.Lock()
        self._state = EndpointAvailability(probed=False, available=False, last_checked_at=None)

    def snapshot(self) -> EndpointAvailability:
        with self._lock:
            return self._state

    def is_known_unavailable(self) -> bool:
        with self._lock:
            state = self._state
            return state.probed and not state.available and self._fresh(state)

    def preferred_template(self) -> str | None:
        with self._lock:
            return self._state.template if self._state.available else None

    def mark_available(self, template: str) -> bool:
        """Record a working template; returns True when the availability state changed."""
        with self._lock:
            changed = not (self._state.probed and self._state.available)
            self._state = EndpointAvailability(
                probed=True, available=True, last_checked_at=self._clock(), template=template
            )
            return changed

    def mark_unavailable(self) -> bool:
        with self._lock:
            changed = not self._state.probed or self._state.available
            self._state = EndpointAvailability(
                probed=True, available=False, last_checked_at=self._clock()
            )
            return changed

    def _fresh(self, state: EndpointAvailability) -> bool:
        if state.last_checked_at is None:
            return False
        return (self._clock() - state.last_checked_at) < self.ttl_s


class _LogGate:
    """Allow a log line on state change, or once per interval otherwise."""

    def __init__(self, *, interval_s: float, clock: Callable[[], float]) -> None:
        self.interval_s = interval_s
        self._clock = clock
        self._lock = threading.Lock()
        self._last_state: str | None = None
        self._last_logged_at: float | None = None

    def allow(self, state: str) -> bool:
        with self._lock:
            now = self._clock()
            if (
                state != self._last_state
                or self._last_logged_at is None
                or now - self._last_logged_at >= self.interval_s
            ):
                self._last_state = state
                self._last_logged_at = now
                return True
            return False


class StatusProber:
    """Discover which candidate status URL the provider serves."""

    def __init__(
        self,
        *,
        provider: ProviderClient,
        templates: Sequence[str],
        cache: EndpointAvailabilityCache,
        log_interval_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not templates:
            raise ValueError("At least one status path template is required")
        self.provider = provider
        self.templates = list(templates)
        self.cache = cache
        self._log_gate = _LogGate(interval_s=log_interval_s, clock=clock)

    def probe(self, task_id: str) -> dict[str, Any] | None:
        """Return the first well-formed JSON status payload, or None if every candidate 404s.

        Hard failures (non-404 errors, non-JSON bodies) propagate as ProviderError.
        """
        for template in self._ordered_templates():
            url = self.provider.status_url(template, task_id)
            try:
                payload = self.provider.fetch_status(url)
            except EndpointNotFound:
                continue
            except ProviderError as exc:
                if self._log_gate.allow(f"error:{exc.kind}"):
                    logger.warning(
                        "status_probe event=hard_failure task_id=%s url=%s kind=%s reason=%s",
                        task_id,
                        url,
                        exc.kind,
                        exc,
                    )
                raise
            changed = self.cache.mark_available(template)
            if self._log_gate.allow("available") or changed:
                logger.info(
                    "status_probe event=available task_id=%s template=%s", task_id, template
                )
            return payload

        changed = self.cache.mark_unavailable()
        if self._log_gate.allow("unavailable") or changed:
            logger.warning(
                "status_probe event=unavailable task_id=%s tried=%d; relying on callbacks and record state",
                task_id,
                len(self.templates),
            )
        return None

    def _ordered_templates(self) -> list[str]:
        preferred = self.cache.preferred_template()
        if preferred is None or preferred not in self.templates:
            return list(self.templates)
        return [preferred] + [template for template in self.templates if template != preferred]


def normalize_status_payload(payload: dict[str, Any]) -> CompletionSignal:
    """Turn a status-check response into the same signal shape the webhook path uses."""
    data = payload.get("data")
    data = data if isinstance(data, dict) else {}
    raw_status = data.get("status")
    status = raw_status.strip().lower() if isinstance(raw_status, str) else ""
    artifacts = find_artifacts(payload)

    if status.endswith("failed") or "error" in status:
        reason = data.get("errorMessage") or payload.get("msg") or f"provider status {status}"
        return CompletionSignal(is_failure=True, reason=str(reason))
    if artifacts is not None and (status in COMPLETE_STATES or not status):
        return artifacts
    if status in PROCESSING_STATES:
        return CompletionSignal(is_processing=True)
    return CompletionSignal()


StatusSource = Literal["record", "provider"]


class StatusPoller:
    """Answer "is task X done" from the provider when possible, else from the record."""

    def __init__(
        self,
        *,
        store: GenerationStore,
        registry: TaskRegistry,
        reconciler: Reconciler,
        prober: StatusProber,
        sleep: Callable[[float], None] = time.sleep,
        async_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.registry = registry
        self.reconciler = reconciler
        self.prober = prober
        self._sleep = sleep
        self._async_sleep = async_sleep

    def check(self, task_id: str) -> GenerationStatus:
        record = self._load_record(task_id)
        if record.status in TERMINAL_STATUSES:
            return status_from_record(task_id, record)
        if self.prober.cache.is_known_unavailable():
            return status_from_record(task_id, record)

        try:
            payload = self.prober.probe(task_id)
        except ProviderError:
            return status_from_record(task_id, record)
        if payload is None:
            return status_from_record(task_id, record)

        signal = normalize_status_payload(payload)
        self.reconciler.apply(task_id, signal, source="poll")
        refreshed = self._load_record(task_id)
        return status_from_record(task_id, refreshed, source="provider")

    def wait_for_completion(
        self,
        task_id: str,
        *,
        max_attempts: int,
        interval_s: float,
    ) -> GenerationStatus:
        """Poll at a fixed interval; raise GenerationTimeoutError after max_attempts."""
        for attempt in range(1, max_attempts + 1):
            status = self.check(task_id)
            if status.status in TERMINAL_STATUSES:
                return status
            if attempt < max_attempts:
                self._sleep(interval_s)
        raise self._timed_out(task_id, max_attempts, interval_s)

    async def wait_for_completion_async(
        self,
        task_id: str,
        *,
        max_attempts: int,
        interval_s: float,
    ) -> GenerationStatus:
        """Same bound as wait_for_completion, but waits on the event loop.

        Each check runs in a worker thread; no thread is held between checks.
        """
        for attempt in range(1, max_attempts + 1):
            status = await asyncio.to_thread(self.check, task_id)
            if status.status in TERMINAL_STATUSES:
                return status
            if attempt < max_attempts:
                await self._async_sleep(interval_s)
        raise self._timed_out(task_id, max_attempts, interval_s)

    def _timed_out(self, task_id: str, attempts: int, interval_s: float) -> GenerationTimeoutError:
        logger.warning(
            "status_poll event=timeout task_id=%s attempts=%d interval_s=%s",
            task_id,
            attempts,
            interval_s,
        )
        return GenerationTimeoutError(task_id, attempts)

    def _load_record(self, task_id: str) -> GenerationRecord:
        record_id = self.registry.resolve(task_id, self.store)
        if record_id is None:
            logger.warning("status_poll event=unknown_task task_id=%s", task_id)
            raise UnknownTaskError(task_id)
        record = self.store.get_record(record_id)
        if record is None:
            logger.warning(
                "status_poll event=missing_record task_id=%s record_id=%s", task_id, record_id
            )
            raise UnknownTaskError(task_id)
        return record


def status_from_record(
    task_id: str,
    record: GenerationRecord,
    *,
    source: StatusSource = "record",
) -> GenerationStatus:
    urls = list(record.artifact_urls)
    if record.artifact_url and record.artifact_url not in urls:
        urls.insert(0, record.artifact_url)
    return GenerationStatus(
        task_id=task_id,
        status=record.status,
        artifact_url=record.artifact_url,
        all_artifact_urls=urls,
        source=source,
    )
