"""Error taxonomy for dispatch, polling, and webhook handling."""

from __future__ import annotations


class ProviderError(RuntimeError):
    """Base class for failures reported by (or while talking to) the provider."""

    kind = "provider_error"
    status_code = 502

    def __init__(self, message: str, *, provider_status: int | None = None) -> None:
        super().__init__(message)
        self.provider_status = provider_status


class ProviderAuthError(ProviderError):
    kind = "auth_failure"
    status_code = 502


class ProviderRateLimitError(ProviderError):
    kind = "rate_limited"
    status_code = 429


class ProviderMaintenanceError(ProviderError):
    kind = "maintenance"
    status_code = 503


class ProviderMalformedResponseError(ProviderError):
    kind = "malformed_response"
    status_code = 502


class ProviderServerError(ProviderError):
    kind = "server_error"
    status_code = 502


class UnknownTaskError(LookupError):
    kind = "unknown_task"
    status_code = 404

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Unknown task: {task_id}")
        self.task_id = task_id


class GenerationTimeoutError(TimeoutError):
    kind = "timeout"
    status_code = 504

    def __init__(self, task_id: str, attempts: int) -> None:
        super().__init__(f"Task {task_id} did not complete after {attempts} status checks")
        self.task_id = task_id
        self.attempts = attempts


class AmbiguousCompletionSignal(ValueError):
    """A callback that looks complete but carries no usable artifact URL.

    Raised and caught inside the webhook receiver only.
    """

    def __init__(self, task_id: str | None, shape: str) -> None:
        super().__init__(f"Completion-looking callback without audio URL task_id={task_id} shape={shape}")
        self.task_id = task_id
        self.shape = shape


def error_for_provider_status(status: int, message: str) -> ProviderError:
    """Map an HTTP status or envelope code to a distinct error kind."""
    if status == 401:
        return ProviderAuthError(
            f"Provider authentication failed. Check the API key. ({message})",
            provider_status=status,
        )
    if status in {405, 429, 430}:
        return ProviderRateLimitError(
            f"Provider rate limit or credit limit reached. Try again later. ({message})",
            provider_status=status,
        )
    if status in {455, 503}:
        return ProviderMaintenanceError(
            f"Provider is under maintenance. Try again later. ({message})",
            provider_status=status,
        )
    return ProviderServerError(
        f"Provider request failed with status {status}. ({message})",
        provider_status=status,
    )
