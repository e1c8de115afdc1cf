"""FastAPI application wiring for the generation service.

Terms used in this file:
- FastAPI app: the main web application object.
- app.state: where the shared orchestrator (and its store) lives, so every
  route handler talks to the same registry and availability cache.
- Callback/webhook: the provider's POST telling us a generation finished.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from .app.errors import GenerationTimeoutError, ProviderError, UnknownTaskError
from .app.models import (
    AuditLogEntry,
    GenerationParameters,
    GenerationRecord,
    GenerationStatus,
    SubmitResult,
    WebhookAck,
)
from .app.orchestrator import GenerationOrchestrator, build_orchestrator
from .app.settings import Settings, get_settings
from .storage.base import GenerationStore
from .storage.postgres import PostgresGenerationStore

logger = logging.getLogger(__name__)


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    store_override: GenerationStore | None,
) -> None:
    if hasattr(app.state, "orchestrator"):
        return
    if store_override is None:
        database_url = settings.resolved_database_url()
        if not database_url:
            raise RuntimeError(
                "Missing database URL. Set GENERATION_DATABASE_URL or DATABASE_URL "
                "before starting the app."
            )
        store: GenerationStore = PostgresGenerationStore(database_url)
    else:
        store = store_override
    # Fail fast if the schema cannot be created.
    store.migrate()
    orchestrator = build_orchestrator(store, settings)
    orchestrator.rebuild_registry()
    app.state.store = store
    app.state.settings = settings
    app.state.orchestrator = orchestrator


def create_app(
    *,
    store: GenerationStore | None = None,
    settings_override: Settings | None = None,
    orchestrator: GenerationOrchestrator | None = None,
) -> FastAPI:
    """Application factory.

    Tests pass an in-memory store (or a fully built orchestrator); production
    builds a PostgreSQL store from settings during startup.
    """
    settings = settings_override or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(app, settings=settings, store_override=store)
        yield

    deferred = store is None and orchestrator is None
    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan if deferred else None)

    # Keep test paths reliable when lifespan is not executed by the client.
    if orchestrator is not None:
        app.state.store = orchestrator.store
        app.state.settings = orchestrator.settings
        app.state.orchestrator = orchestrator
    elif store is not None:
        _ensure_runtime_state(app, settings=settings, store_override=store)

    def _orchestrator(request: Request) -> GenerationOrchestrator:
        if not hasattr(request.app.state, "orchestrator"):
            _ensure_runtime_state(request.app, settings=settings, store_override=store)
        return request.app.state.orchestrator

    @app.exception_handler(ProviderError)
    def provider_error_handler(_request: Request, exc: ProviderError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc), "code": exc.kind})

    @app.exception_handler(UnknownTaskError)
    def unknown_task_handler(_request: Request, exc: UnknownTaskError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Unknown task", "code": exc.kind})

    @app.exception_handler(GenerationTimeoutError)
    def timeout_handler(_request: Request, exc: GenerationTimeoutError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc), "code": exc.kind})

    # Multiple health endpoints map to the same function for different probes.
    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/generations", response_model=SubmitResult)
    def submit_generation(payload: GenerationParameters, request: Request) -> SubmitResult:
        return _orchestrator(request).submit_generation(payload)

    @app.get("/generations/{task_id}", response_model=GenerationRecord)
    def get_record(task_id: str, request: Request) -> GenerationRecord:
        return _orchestrator(request).get_record_by_task(task_id)

    # Async so a long wait sleeps on the event loop instead of holding a worker thread.
    @app.get("/generations/{task_id}/status", response_model=GenerationStatus)
    async def get_status(
        task_id: str,
        request: Request,
        wait: bool = Query(default=False, description="Poll until terminal or timeout."),
    ) -> GenerationStatus:
        orchestrator = _orchestrator(request)
        if wait:
            return await orchestrator.wait_for_completion_async(task_id)
        return await run_in_threadpool(orchestrator.get_generation_status, task_id)

    @app.post("/generations/{task_id}/regenerate", response_model=SubmitResult)
    def regenerate(task_id: str, request: Request) -> SubmitResult:
        return _orchestrator(request).regenerate(task_id)

    @app.get("/generations/{task_id}/audit", response_model=list[AuditLogEntry])
    def get_audit(task_id: str, request: Request) -> list[AuditLogEntry]:
        return _orchestrator(request).get_audit_log(task_id)

    # Always 200: any non-2xx here makes the provider retry the callback.
    @app.post("/api/music-callback", response_model=WebhookAck)
    async def music_callback(
        request: Request,
        task_id: str | None = Query(default=None),
    ) -> WebhookAck:
        raw_body = await request.body()
        payload = _decode_callback_body(raw_body)
        orchestrator = _orchestrator(request)
        return await run_in_threadpool(orchestrator.handle_provider_webhook, payload, task_id=task_id)

    @app.get("/provider/credits")
    def provider_credits(request: Request) -> dict[str, int]:
        return {"credits": _orchestrator(request).remaining_credits()}

    return app


def _decode_callback_body(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body.decode("utf-8")) if raw_body else None
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("webhook event=invalid_json body=%r", raw_body[:500])
        return None


# Module-level app for `uvicorn generation_api.main:app`.
app = create_app()
