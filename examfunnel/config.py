"""
Configuration settings for the examfunnel library.

Uses Pydantic Settings for environment variable management with .env file support.
"""
from __future__ import annotations

import sys
from functools import lru_cache
from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Library settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="EXAMFUNNEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Batch Building
    # ========================================
    max_questions_per_batch: int = Field(
        default=20,
        ge=1,
        description="Upper bound on questions delivered by one funnel run",
    )
    default_question_count: int = Field(
        default=10,
        ge=1,
        description="Count used when the caller's question count is not a number",
    )
    explore_ratio: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Share of a batch reserved for least-tested concepts",
    )
    max_backfill_attempts: int = Field(
        default=3,
        ge=0,
        description="Generation retries for targets the banks could not satisfy",
    )

    # ========================================
    # Providers
    # ========================================
    provider_timeout_seconds: float = Field(
        default=45.0,
        gt=0,
        description="Timeout applied to every bank or generation call",
    )
    generation_api_url: str = Field(
        default="http://127.0.0.1:8787",
        description="Base URL of the question generation service",
    )
    generation_api_key: str | None = Field(
        default=None,
        description="Bearer token for the generation service",
    )

    # ========================================
    # Persistence
    # ========================================
    state_db_path: Path = Field(
        default=Path.home() / ".examfunnel" / "state.db",
        description="SQLite file holding mastery state and seen fingerprints",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging verbosity level",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (None for stderr only)",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(settings: Settings | None = None) -> None:
    """
    Install loguru sinks for the host application.

    Replaces the default handler with a stderr sink at the configured level,
    plus a rotating file sink when ``log_file`` is set.
    """
    settings = settings or get_settings()

    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.log_level,
        format="<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {name} - {message}",
    )
    if settings.log_file:
        Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            settings.log_file,
            level=settings.log_level,
            rotation="10 MB",
            retention=5,
        )
