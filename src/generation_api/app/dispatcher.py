from __future__ import annotations

import logging
from typing import Any

from generation_api.storage.base import GenerationStore

from .audit import AuditLog
from .errors import ProviderError
from .models import GenerationParameters, SubmitResult
from .provider import ProviderClient
from .registry import TaskRegistry

logger = logging.getLogger(__name__)


def parameter_summary(params: GenerationParameters) -> str:
    """Compact "Raga: x; Tala: y; ..." line built from whichever fields are set."""
    parts: list[str] = []
    if params.scale:
        parts.append(f"Raga: {params.scale}")
    if params.cycle:
        parts.append(f"Tala: {params.cycle}")
    if params.instruments:
        parts.append(f"Instruments: {', '.join(params.instruments)}")
    if params.tempo:
        parts.append(f"Tempo: {params.tempo} BPM")
    if params.mood:
        parts.append(f"Mood: {params.mood}")
    if params.language and params.language.strip() and params.mode != "instrumental_only":
        parts.append(f"Language: {params.language.strip()}")
    return "; ".join(parts)


def build_prompt(params: GenerationParameters, *, max_chars: int) -> str:
    custom = (params.prompt or "").strip()
    summary = parameter_summary(params)
    if custom:
        prompt = f"{custom} ({summary})" if summary else custom
    else:
        style = "an instrumental" if params.mode == "instrumental_only" else "a"
        prompt = (
            f"Create {style} classical composition in Raga {params.scale} "
            f"using Tala {params.cycle}, featuring {', '.join(params.instruments)}. "
            f"Tempo is {params.tempo} BPM with a {params.mood} mood."
        )
    # The provider rejects prompts over its documented maximum.
    return prompt[:max_chars].rstrip()


def build_request_body(
    params: GenerationParameters,
    *,
    prompt: str,
    model: str,
    callback_url: str,
    style_weight: float = 0.65,
    weirdness_constraint: float = 0.65,
    audio_weight: float = 0.65,
) -> dict[str, Any]:
    instrumental = params.mode == "instrumental_only"
    body: dict[str, Any] = {
        "customMode": False,
        "instrumental": instrumental,
        "prompt": prompt,
        "model": model,
        "callBackUrl": callback_url,
        "styleWeight": style_weight,
        "weirdnessConstraint": weirdness_constraint,
        "audioWeight": audio_weight,
    }
    if params.gender and not instrumental:
        body["vocalGender"] = "f" if params.gender == "female" else "m"
    return body


class TaskDispatcher:
    """Submit generation requests and persist the pending record/task pair."""

    def __init__(
        self,
        *,
        provider: ProviderClient,
        store: GenerationStore,
        registry: TaskRegistry,
        audit: AuditLog,
        model: str,
        callback_url: str,
        prompt_max_chars: int = 500,
        style_weight: float = 0.65,
        weirdness_constraint: float = 0.65,
        audio_weight: float = 0.65,
    ) -> None:
        self.provider = provider
        self.store = store
        self.registry = registry
        self.audit = audit
        self.model = model
        self.callback_url = callback_url
        self.prompt_max_chars = prompt_max_chars
        self.style_weight = style_weight
        self.weirdness_constraint = weirdness_constraint
        self.audio_weight = audio_weight

    def submit(self, params: GenerationParameters) -> SubmitResult:
        prompt = build_prompt(params, max_chars=self.prompt_max_chars)
        body = build_request_body(
            params,
            prompt=prompt,
            model=self.model,
            callback_url=self.callback_url,
            style_weight=self.style_weight,
            weirdness_constraint=self.weirdness_constraint,
            audio_weight=self.audio_weight,
        )
        try:
            task_id = self.provider.submit(body)
        except ProviderError as exc:
            logger.error(
                "dispatch event=failed mode=%s kind=%s provider_status=%s reason=%s",
                params.mode,
                exc.kind,
                exc.provider_status,
                exc,
            )
            raise

        record, task = self.store.create_generation(task_id=task_id, parameters=params, prompt=prompt)
        self.registry.register(task.task_id, record.id)
        self.audit.record(
            task.task_id,
            "dispatched",
            status="pending",
            record_id=record.id,
            mode=params.mode,
            prompt_chars=len(prompt),
        )
        logger.info(
            "dispatch event=submitted task_id=%s record_id=%s mode=%s",
            task.task_id,
            record.id,
            params.mode,
        )
        return SubmitResult(task_id=task.task_id, record_id=record.id)
