from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process configuration. Field names double as (case-insensitive) env var names."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
        frozen=True,
    )

    # --- gemini ---
    google_api_key: str | None = None
    google_cloud_project: str | None = None
    google_cloud_location: str = "us-central1"
    gemini_model: str = "gemini-1.5-flash-002"

    # --- storage ---
    database_url: str | None = None
    session_registry_dir: str = ".sessions"
    reports_dir: str = ".reports"
    lesson_seed_path: str | None = None

    # --- identity resolution ---
    identity_max_retries: int = Field(default=3, ge=1)
    identity_backoff_base_ms: int = Field(default=100, ge=0)

    # --- turn handling ---
    generation_timeout_seconds: float = Field(default=20.0, gt=0)
    report_timeout_seconds: float = Field(default=15.0, gt=0)
    stream_word_delay_ms: int = Field(default=0, ge=0)
    model_label: str = "voice-bridge-gemini"
    personalization_default: bool = False

    # --- server ---
    elevenlabs_api_key: str | None = None
    log_level: str = "INFO"
    port: int = 8080

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.strip().upper() or "INFO"

    @property
    def identity_backoff_base(self) -> float:
        return self.identity_backoff_base_ms / 1000.0

    @property
    def stream_word_delay(self) -> float:
        return self.stream_word_delay_ms / 1000.0


def load_settings() -> Settings:
    return Settings()
