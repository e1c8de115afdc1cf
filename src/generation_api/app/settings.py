"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]

DEFAULT_STATUS_PATH_TEMPLATES = [
    "/generate/{task_id}",
    "/generate/{task_id}/details",
    "/task/{task_id}",
    "/task/{task_id}/details",
    "/music/{task_id}",
    "/music/{task_id}/details",
    "/status/{task_id}",
]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "generation-api"
    database_url: str = ""
    provider_base_url: str = "https://api.api.box/api/v1"
    provider_api_key: str = ""
    provider_model: str = "V5"
    provider_timeout_s: float = Field(default=30.0, ge=0.5)
    public_base_url: str = "http://localhost:5000"
    callback_url: str = ""
    prompt_max_chars: int = Field(default=500, ge=1)
    style_weight: float = Field(default=0.65, ge=0.0, le=1.0)
    weirdness_constraint: float = Field(default=0.65, ge=0.0, le=1.0)
    audio_weight: float = Field(default=0.65, ge=0.0, le=1.0)
    status_path_templates: list[str] = Field(
        default_factory=lambda: list(DEFAULT_STATUS_PATH_TEMPLATES)
    )
    status_cache_ttl_s: float = Field(default=300.0, ge=0.0)
    probe_log_interval_s: float = Field(default=300.0, ge=0.0)
    poll_max_attempts: int = Field(default=60, ge=1)
    poll_interval_s: float = Field(default=5.0, ge=0.0)

    model_config = SettingsConfigDict(
        env_prefix="GENERATION_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_api_key(self) -> str:
        return self.provider_api_key or os.getenv("API_BOX_API_KEY", "")

    def resolved_callback_url(self) -> str:
        if self.callback_url:
            return self.callback_url
        return f"{self.public_base_url.rstrip('/')}/api/music-callback"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
