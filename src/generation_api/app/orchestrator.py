"""Orchestrator facade: one instance owns the registry, the availability cache,
and the wiring between dispatch, the two completion paths, and the reconciler.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from generation_api.storage.base import GenerationStore

from .audit import AuditLog
from .dispatcher import TaskDispatcher
from .errors import UnknownTaskError
from .models import (
    AuditLogEntry,
    GenerationParameters,
    GenerationRecord,
    GenerationStatus,
    SubmitResult,
    WebhookAck,
)
from .poller import EndpointAvailabilityCache, StatusPoller, StatusProber
from .provider import ProviderClient
from .reconciler import Reconciler
from .registry import TaskRegistry
from .settings import Settings
from .webhook import WebhookReceiver

logger = logging.getLogger(__name__)


class GenerationOrchestrator:
    def __init__(
        self,
        *,
        store: GenerationStore,
        provider: ProviderClient,
        settings: Settings,
        registry: TaskRegistry | None = None,
        cache: EndpointAvailabilityCache | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        async_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.provider = provider
        self.settings = settings
        self.registry = registry or TaskRegistry()
        self.cache = cache or EndpointAvailabilityCache(ttl_s=settings.status_cache_ttl_s, clock=clock)
        self.audit = AuditLog(store)
        self.reconciler = Reconciler(store=store, registry=self.registry, audit=self.audit)
        self.dispatcher = TaskDispatcher(
            provider=provider,
            store=store,
            registry=self.registry,
            audit=self.audit,
            model=settings.provider_model,
            callback_url=settings.resolved_callback_url(),
            prompt_max_chars=settings.prompt_max_chars,
            style_weight=settings.style_weight,
            weirdness_constraint=settings.weirdness_constraint,
            audio_weight=settings.audio_weight,
        )
        self.receiver = WebhookReceiver(self.reconciler)
        self.prober = StatusProber(
            provider=provider,
            templates=settings.status_path_templates,
            cache=self.cache,
            log_interval_s=settings.probe_log_interval_s,
            clock=clock,
        )
        self.poller = StatusPoller(
            store=store,
            registry=self.registry,
            reconciler=self.reconciler,
            prober=self.prober,
            sleep=sleep,
            async_sleep=async_sleep,
        )

    def submit_generation(self, params: GenerationParameters) -> SubmitResult:
        return self.dispatcher.submit(params)

    def get_generation_status(self, task_id: str) -> GenerationStatus:
        return self.poller.check(task_id)

    def wait_for_completion(
        self,
        task_id: str,
        *,
        max_attempts: int | None = None,
        interval_s: float | None = None,
    ) -> GenerationStatus:
        return self.poller.wait_for_completion(
            task_id,
            max_attempts=max_attempts or self.settings.poll_max_attempts,
            interval_s=self.settings.poll_interval_s if interval_s is None else interval_s,
        )

    async def wait_for_completion_async(
        self,
        task_id: str,
        *,
        max_attempts: int | None = None,
        interval_s: float | None = None,
    ) -> GenerationStatus:
        return await self.poller.wait_for_completion_async(
            task_id,
            max_attempts=max_attempts or self.settings.poll_max_attempts,
            interval_s=self.settings.poll_interval_s if interval_s is None else interval_s,
        )

    def handle_provider_webhook(self, raw_payload: Any, *, task_id: str | None = None) -> WebhookAck:
        return self.receiver.handle(raw_payload, task_id=task_id)

    def get_record_by_task(self, task_id: str) -> GenerationRecord:
        record_id = self.registry.resolve(task_id, self.store)
        record = self.store.get_record(record_id) if record_id is not None else None
        if record is None:
            raise UnknownTaskError(task_id)
        return record

    def regenerate(self, task_id: str) -> SubmitResult:
        """Submit the same parameters again; the original record is left untouched."""
        original = self.get_record_by_task(task_id)
        result = self.dispatcher.submit(original.parameters)
        self.audit.record(task_id, "regenerated", new_task_id=result.task_id, new_record_id=result.record_id)
        return result

    def get_audit_log(self, task_id: str) -> list[AuditLogEntry]:
        if self.registry.resolve(task_id, self.store) is None:
            raise UnknownTaskError(task_id)
        return self.audit.entries(task_id)

    def remaining_credits(self) -> int:
        return self.provider.remaining_credits()

    def rebuild_registry(self) -> int:
        return self.registry.rebuild(self.store)


def build_orchestrator(store: GenerationStore, settings: Settings) -> GenerationOrchestrator:
    api_key = settings.resolved_api_key()
    if not api_key:
        logger.warning("orchestrator event=missing_api_key; provider calls will be rejected")
    provider = ProviderClient(
        api_key=api_key,
        base_url=settings.provider_base_url,
        timeout_s=settings.provider_timeout_s,
    )
    return GenerationOrchestrator(store=store, provider=provider, settings=settings)
