"""
nima/core/config.py
───────────────────
Centralised, type-safe settings powered by pydantic-settings.
All environment variables are validated at startup; missing required
values raise an immediate, descriptive error instead of a silent None.
"""

from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    APP_ENV: str = "development"
    APP_SECRET_KEY: str = "change-me-in-production"
    APP_DEBUG: bool = False

    DATABASE_URL: str = "sqlite:///./nima.db"

    OPENAI_API_KEY: str
    OPENAI_MODEL: str = "gpt-4o"
    OPENAI_MINI_MODEL: str = "gpt-4o-mini"
    OPENAI_IMAGE_MODEL: str = "gpt-image-1"

    # Generated images and user photos
    STORAGE_DIR: str = "./storage"
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    FILE_URL_TTL_SECONDS: int = 3600

    # Credits
    FREE_WEEKLY_CREDITS: int = 5
    LOW_CREDIT_THRESHOLD: int = 2
    CREDIT_CAS_MAX_ATTEMPTS: int = 25

    # Look generation
    LOOKS_PER_BATCH: int = 3
    MIN_ITEMS_FOR_WORKFLOW: int = 4

    # Durable steps
    STEP_MAX_ATTEMPTS: int = 3
    STEP_RETRY_INITIAL_BACKOFF_SECONDS: float = 1.0
    STEP_RETRY_BACKOFF_BASE: float = 2.0
    WORKFLOW_MAX_PARALLELISM: int = 10

    EXPO_PUSH_URL: str = "https://exp.host/--/api/v2/push/send"
    HTTP_TIMEOUT_SECONDS: float = 30.0

    ALLOWED_ORIGINS: str = "http://localhost:8081,http://localhost:19006"

    @field_validator("OPENAI_API_KEY")
    @classmethod
    def openai_key_must_not_be_empty(cls, v: str) -> str:
        if not v or v.strip() == "":
            raise ValueError(
                "OPENAI_API_KEY is missing. Add it to your .env file."
            )
        return v

    @field_validator(
        "LOOKS_PER_BATCH",
        "MIN_ITEMS_FOR_WORKFLOW",
        "STEP_MAX_ATTEMPTS",
        "WORKFLOW_MAX_PARALLELISM",
        "CREDIT_CAS_MAX_ATTEMPTS",
    )
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    @property
    def storage_path(self) -> Path:
        return Path(self.STORAGE_DIR)


@lru_cache
def get_settings() -> Settings:
    """Return a cached singleton of Settings."""
    return Settings()
