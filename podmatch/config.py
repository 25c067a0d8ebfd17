"""Centralized configuration for the compatibility matching engine.

Values are read from environment variables (optionally from a .env file)
using Pydantic's `BaseSettings`. Components receive the `Settings` instance
through their constructors rather than importing module-level constants.
"""
from __future__ import annotations

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration pulled from environment variables."""

    # --- Datastore ----------------------------------------------------------
    DATABASE_URL: str = Field("sqlite:///podmatch.db", description="SQLAlchemy database URL")

    # --- LLM ----------------------------------------------------------------
    GOOGLE_API_KEY: Optional[str] = None
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = Field("gemini-2.0-flash", description="Chat model used for analysis")
    LLM_TEMPERATURE: float = Field(0.7, ge=0.0, le=2.0)

    # --- Resilience ---------------------------------------------------------
    RATE_LIMIT_REQUESTS: int = Field(50, ge=1, description="Requests allowed per rate-limit window")
    RATE_LIMIT_WINDOW_SECONDS: float = Field(60.0, gt=0)
    MAX_RETRIES: int = Field(3, ge=1)
    RETRY_BASE_DELAY: float = Field(1.0, ge=0, description="Initial backoff delay in seconds")

    # --- Caching ------------------------------------------------------------
    CACHE_BACKEND: str = Field("database", description="'database' or 'memory'")
    CACHE_TTL_SECONDS: int = Field(24 * 60 * 60, ge=1, description="TTL for cached LLM completions")
    CACHE_MAX_ENTRIES: int = Field(1000, ge=1, description="Capacity of the in-memory cache backend")
    AUTHOR_STALENESS_DAYS: int = Field(7, ge=1)
    PODCAST_STALENESS_DAYS: int = Field(30, ge=1)

    # --- Batch defaults -----------------------------------------------------
    BATCH_MAX_CONCURRENT: int = Field(5, ge=1)
    BATCH_MIN_MATCH_SCORE: float = Field(0.6, ge=0.0, le=1.0)
    BATCH_MIN_CONFIDENCE: float = Field(0.7, ge=0.0, le=1.0)
    BATCH_MAX_RESULTS: int = Field(20, ge=1)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore unknown env vars rather than error
    )

    @property
    def llm_api_key(self) -> Optional[str]:
        return self.GOOGLE_API_KEY or self.GEMINI_API_KEY


def get_settings() -> Settings:
    """Return a freshly parsed Settings instance.

    Callers are expected to build one instance at start-up and hand it to
    `MatchingEngine.from_settings`.
    """
    return Settings()  # type: ignore[call-arg]


__all__ = ["Settings", "get_settings"]
