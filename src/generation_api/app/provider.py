"""HTTP client for the external music-generation provider (API.box / Suno style)."""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib import error, request

from .errors import (
    ProviderMalformedResponseError,
    ProviderServerError,
    error_for_provider_status,
)

logger = logging.getLogger(__name__)


class EndpointNotFound(Exception):
    """Raised for a 404, which the status prober treats as "try the next URL"."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Endpoint not found: {url}")
        self.url = url


class ProviderClient:
    """Small provider adapter using urllib with per-call timeouts."""

    def __init__(self, *, api_key: str, base_url: str, timeout_s: float = 30.0) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    def submit(self, body: dict[str, Any]) -> str:
        """POST a generation request and return the provider task id."""
        url = f"{self.base_url}/generate"
        try:
            payload = self._request_json("POST", url, body=body)
        except EndpointNotFound as exc:
            raise ProviderServerError(
                f"Provider endpoint not found (404). Verify the base URL: {self.base_url}",
                provider_status=404,
            ) from exc
        data = payload.get("data")
        task_id = data.get("taskId") if isinstance(data, dict) else None
        if not isinstance(task_id, str) or not task_id.strip():
            raise ProviderMalformedResponseError("Provider response did not contain data.taskId")
        return task_id

    def fetch_status(self, url: str) -> dict[str, Any]:
        """GET one candidate status URL; raises EndpointNotFound on 404."""
        return self._request_json("GET", url)

    def remaining_credits(self) -> int:
        url = f"{self.base_url}/generate/credit"
        try:
            payload = self._request_json("GET", url)
        except EndpointNotFound as exc:
            raise ProviderServerError(
                "Provider credit endpoint not found (404).", provider_status=404
            ) from exc
        raw = payload.get("data")
        if raw is None:
            return 0
        try:
            return int(raw)
        except (TypeError, ValueError) as exc:
            raise ProviderMalformedResponseError(
                f"Provider returned a non-numeric credit balance: {raw!r}"
            ) from exc

    def status_url(self, template: str, task_id: str) -> str:
        return f"{self.base_url}{template.format(task_id=task_id)}"

    def _request_json(
        self,
        method: str,
        url: str,
        *,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        raw_payload = json.dumps(body).encode("utf-8") if body is not None else None
        req = request.Request(
            url=url,
            data=raw_payload,
            method=method,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                content_type = response.headers.get("Content-Type", "") or ""
                text = response.read().decode("utf-8", errors="replace")
        except error.HTTPError as exc:
            if exc.code == 404:
                raise EndpointNotFound(url) from exc
            raw_error = exc.read().decode("utf-8", errors="replace")
            logger.warning(
                "provider_request event=http_error method=%s url=%s status=%s body=%s",
                method,
                url,
                exc.code,
                raw_error[:500],
            )
            raise error_for_provider_status(exc.code, raw_error[:200]) from exc
        except error.URLError as exc:
            raise ProviderServerError(f"Provider unreachable: {exc.reason}") from exc
        except TimeoutError as exc:
            raise ProviderServerError(f"Provider request timed out after {self.timeout_s}s") from exc

        if "application/json" not in content_type.lower():
            logger.warning(
                "provider_request event=non_json method=%s url=%s content_type=%s body=%s",
                method,
                url,
                content_type,
                text[:500],
            )
            raise ProviderMalformedResponseError(
                f"Provider returned non-JSON response ({content_type or 'no content type'})."
            )
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProviderMalformedResponseError("Provider returned invalid JSON.") from exc
        if not isinstance(parsed, dict):
            raise ProviderMalformedResponseError(
                f"Provider returned unsupported JSON shape: {type(parsed)!r}"
            )

        code = parsed.get("code")
        if code is not None and code != 200:
            message = str(parsed.get("msg") or "provider reported an error")
            try:
                envelope_status = int(code)
            except (TypeError, ValueError):
                raise ProviderMalformedResponseError(
                    f"Provider returned a non-numeric code: {code!r}"
                ) from None
            raise error_for_provider_status(envelope_status, message)
        return parsed
