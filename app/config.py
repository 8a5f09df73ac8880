from __future__ import annotations

"""Service configuration loaded from the environment (and ``.env``)."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the workflow service.

    Notes:
        - With no ``OPENAI_API_KEY`` the meeting scribe falls back to a stub that
          produces placeholder minutes and no task proposals.
        - The default database is a local SQLite file so that suspended runs
          survive restarts without any extra infrastructure.
    """

    database_url: str = Field(
        default="sqlite+aiosqlite:///./opsflow.db",
        validation_alias="OPSFLOW_DATABASE_URL",
    )
    openai_api_key: str = Field(default="", validation_alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o-mini", validation_alias="OPENAI_MODEL")
    transcript_char_limit: int = Field(
        default=50_000,
        validation_alias="OPSFLOW_TRANSCRIPT_CHAR_LIMIT",
        description="Transcript characters sent to the scribe.",
        ge=1_000,
    )
    log_level: str = Field(default="INFO", validation_alias="OPSFLOW_LOG_LEVEL")
    worker_enabled: bool = Field(
        default=True,
        validation_alias="OPSFLOW_WORKER_ENABLED",
        description="Consume queued jobs inside the API process.",
    )
    stale_after_days: int = Field(
        default=14,
        validation_alias="OPSFLOW_STALE_AFTER_DAYS",
        description="Runs waiting for approval longer than this are reported as stale.",
        ge=1,
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")


__all__ = ["Settings"]
