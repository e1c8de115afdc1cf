"""Pydantic models shared across API, dispatcher, completion paths, and storage.

Terms used in this file:
- Task: the provider-side job, identified by the provider's opaque task id.
- Record: our own row holding parameters and, eventually, the generated audio.
- Artifact: an audio URL returned by the provider once a generation finishes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field, model_validator

# Lifecycle shared by tasks and records.
GenerationStatusValue = Literal["pending", "processing", "complete", "failed"]
GenerationMode = Literal["voice_only", "instrumental_only", "full_music"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"complete", "failed"})
OPEN_STATUSES: tuple[str, ...] = ("pending", "processing")


class GenerationParameters(BaseModel):
    """Request body for POST /generations."""

    mode: GenerationMode
    # Melodic framework (raga) and rhythmic cycle (tala).
    scale: str | None = Field(default=None, validation_alias=AliasChoices("scale", "raga"))
    cycle: str | None = Field(default=None, validation_alias=AliasChoices("cycle", "tala"))
    instruments: list[str] = Field(default_factory=list)
    tempo: int | None = Field(default=None, ge=40, le=200)
    mood: str | None = None
    prompt: str | None = None
    gender: Literal["male", "female"] | None = None
    language: str | None = None

    @model_validator(mode="after")
    def _check_mode_requirements(self) -> GenerationParameters:
        has_prompt = bool(self.prompt and self.prompt.strip())
        has_structure = bool(
            self.scale and self.cycle and self.instruments and self.tempo and self.mood
        )
        if self.mode == "voice_only" and not has_prompt:
            raise ValueError("voice_only mode requires a prompt")
        if self.mode == "instrumental_only" and not has_structure:
            raise ValueError("instrumental_only mode requires scale, cycle, instruments, tempo and mood")
        if self.mode == "full_music" and not (has_structure and has_prompt):
            raise ValueError(
                "full_music mode requires scale, cycle, instruments, tempo, mood and a prompt"
            )
        return self


class GenerationRecord(BaseModel):
    """Canonical record shape returned by API/storage."""

    id: str
    parameters: GenerationParameters
    prompt: str
    status: GenerationStatusValue = "pending"
    artifact_url: str | None = None
    artifact_urls: list[str] = Field(default_factory=list)
    title: str | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime


class GenerationTask(BaseModel):
    """Provider task handle bound to one record."""

    task_id: str
    record_id: str
    status: GenerationStatusValue = "pending"
    submitted_at: datetime
    updated_at: datetime


class AuditLogEntry(BaseModel):
    task_id: str
    time: datetime
    event: str
    detail: dict[str, Any] = Field(default_factory=dict)


class SubmitResult(BaseModel):
    """Response body for POST /generations."""

    task_id: str
    record_id: str


class GenerationStatus(BaseModel):
    """Response body for GET /generations/{task_id}/status."""

    task_id: str
    status: GenerationStatusValue
    artifact_url: str | None = None
    all_artifact_urls: list[str] = Field(default_factory=list)
    # "record" when answered from durable state only, "provider" after a status call.
    source: Literal["record", "provider"] = "record"


class WebhookAck(BaseModel):
    status: Literal["received"] = "received"


@dataclass(frozen=True)
class CompletionSignal:
    """Normalized outcome from either completion path."""

    is_complete: bool = False
    is_failure: bool = False
    is_processing: bool = False
    primary_artifact_url: str | None = None
    all_artifact_urls: tuple[str, ...] = field(default_factory=tuple)
    title: str | None = None
    reason: str | None = None

    @property
    def has_artifact(self) -> bool:
        return bool(self.primary_artifact_url)
