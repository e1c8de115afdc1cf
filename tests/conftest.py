from __future__ import annotations

import io
import itertools
import json
from collections.abc import Iterator
from typing import Any
from urllib import error, request

import pytest
from fastapi.testclient import TestClient

from generation_api.app import provider as provider_module
from generation_api.app.orchestrator import GenerationOrchestrator
from generation_api.app.provider import ProviderClient
from generation_api.app.settings import Settings
from generation_api.main import create_app
from generation_api.storage.memory import InMemoryGenerationStore

PROVIDER_BASE_URL = "https://provider.test/api/v1"


class _FakeHTTPResponse:
    def __init__(self, body: bytes, content_type: str) -> None:
        self._raw_body = body
        self.headers = {"Content-Type": content_type}
        self.status = 200

    def read(self) -> bytes:
        return self._raw_body

    def __enter__(self) -> _FakeHTTPResponse:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        _ = (exc_type, exc, tb)
        return False


class FakeProviderHTTP:
    """Routes urllib requests by (method, path); unrouted requests get a 404."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[dict[str, Any]]] = {}
        self.calls: list[request.Request] = []

    def add(
        self,
        method: str,
        path: str,
        *,
        payload: Any = None,
        status: int = 200,
        content_type: str = "application/json",
        body: bytes | None = None,
        raises: Exception | None = None,
    ) -> None:
        """Queue a response; the last queued response repeats once the queue drains."""
        if body is None:
            body = json.dumps(payload).encode("utf-8")
        self.routes.setdefault((method, path), []).append(
            {"status": status, "content_type": content_type, "body": body, "raises": raises}
        )

    def accept_submissions(self, *task_ids: str) -> None:
        for task_id in task_ids:
            self.add("POST", "/generate", payload={"code": 200, "msg": "success", "data": {"taskId": task_id}})

    def requests_to(self, method: str, path_prefix: str = "") -> list[request.Request]:
        return [
            req
            for req in self.calls
            if req.get_method() == method and _path(req.full_url).startswith(path_prefix)
        ]

    def __call__(self, req: request.Request, timeout: float) -> _FakeHTTPResponse:
        _ = timeout
        self.calls.append(req)
        path = _path(req.full_url)
        queue = self.routes.get((req.get_method(), path))
        if not queue:
            raise _http_error(req.full_url, 404, b'{"code": 404, "msg": "Not Found"}')
        route = queue.pop(0) if len(queue) > 1 else queue[0]
        if route["raises"] is not None:
            raise route["raises"]
        if route["status"] >= 400:
            raise _http_error(req.full_url, route["status"], route["body"])
        return _FakeHTTPResponse(route["body"], route["content_type"])

    def body_of(self, req: request.Request) -> dict[str, Any]:
        return json.loads(req.data.decode("utf-8"))


def _path(url: str) -> str:
    return url[len(PROVIDER_BASE_URL):] if url.startswith(PROVIDER_BASE_URL) else url


def _http_error(url: str, status: int, body: bytes) -> error.HTTPError:
    return error.HTTPError(url, status, "error", {}, io.BytesIO(body))


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def provider_http(monkeypatch: pytest.MonkeyPatch) -> FakeProviderHTTP:
    fake = FakeProviderHTTP()
    monkeypatch.setattr(provider_module.request, "urlopen", fake)
    return fake


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="",
        provider_api_key="test-key",
        provider_base_url=PROVIDER_BASE_URL,
        public_base_url="https://app.test",
        poll_max_attempts=60,
        poll_interval_s=5.0,
    )


@pytest.fixture
def store() -> InMemoryGenerationStore:
    counter = itertools.count(1)
    return InMemoryGenerationStore(id_factory=lambda: f"rec-{next(counter)}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def orchestrator(
    store: InMemoryGenerationStore,
    settings: Settings,
    provider_http: FakeProviderHTTP,
    clock: FakeClock,
    sleeps: list[float],
) -> GenerationOrchestrator:
    _ = provider_http

    async def record_async_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    provider = ProviderClient(
        api_key=settings.resolved_api_key(),
        base_url=settings.provider_base_url,
        timeout_s=settings.provider_timeout_s,
    )
    return GenerationOrchestrator(
        store=store,
        provider=provider,
        settings=settings,
        clock=clock,
        sleep=sleeps.append,
        async_sleep=record_async_sleep,
    )


@pytest.fixture
def client(orchestrator: GenerationOrchestrator, settings: Settings) -> Iterator[TestClient]:
    app = create_app(orchestrator=orchestrator, settings_override=settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def instrumental_params() -> dict[str, Any]:
    return {
        "mode": "instrumental_only",
        "raga": "Yaman",
        "tala": "Teentaal",
        "instruments": ["sitar", "tabla"],
        "tempo": 90,
        "mood": "calm",
    }
