"""Configuration for the form evaluation engine.

Settings come from environment variables (optionally loaded from a .env
file). The engine itself is pure; these settings only tune the ambient
layers: logging, the data-source cache and the API defaults.
"""

import os
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

load_dotenv()


# Env var names
ENV_LOG_LEVEL = "FORMENGINE_LOG_LEVEL"
ENV_LOG_FORMAT = "FORMENGINE_LOG_FORMAT"
ENV_DEFAULT_LANGUAGE = "FORMENGINE_DEFAULT_LANGUAGE"
ENV_DEFAULT_PHASE = "FORMENGINE_DEFAULT_PHASE"
ENV_DATA_SOURCE_CACHE_SIZE = "FORMENGINE_DATA_SOURCE_CACHE_SIZE"
ENV_DATA_SOURCE_TIMEOUT = "FORMENGINE_DATA_SOURCE_TIMEOUT_SECONDS"

SUPPORTED_LANGUAGES = ("EN", "FR", "NL")
SUPPORTED_PHASES = ("submit", "followup")


class EngineSettings(BaseModel):
    """Engine settings loaded from environment."""

    log_level: str = Field(default="INFO", description="Root log level")
    log_format: str = Field(default="text", description="json or text")
    default_language: str = Field(default="EN", description="Language used when a request omits one")
    default_phase: str = Field(default="submit", description="Validation phase used when a request omits one")
    data_source_cache_size: int = Field(default=64, ge=1, description="Max memoised data-source responses")
    data_source_timeout_seconds: float = Field(default=10.0, gt=0, description="Per-fetch timeout")

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        value = (v or "text").strip().lower()
        if value not in ("json", "text"):
            raise ValueError(f"log_format must be 'json' or 'text', got '{v}'")
        return value

    @field_validator("default_language")
    @classmethod
    def validate_language(cls, v: str) -> str:
        value = (v or "EN").strip().upper()
        if value not in SUPPORTED_LANGUAGES:
            raise ValueError(f"Unsupported language '{v}'. Use one of {', '.join(SUPPORTED_LANGUAGES)}")
        return value

    @field_validator("default_phase")
    @classmethod
    def validate_phase(cls, v: str) -> str:
        value = (v or "submit").strip().lower()
        if value not in SUPPORTED_PHASES:
            raise ValueError(f"Unsupported phase '{v}'. Use one of {', '.join(SUPPORTED_PHASES)}")
        return value

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings from the current process environment."""
        return cls(
            log_level=os.getenv(ENV_LOG_LEVEL, "INFO"),
            log_format=os.getenv(ENV_LOG_FORMAT, "text"),
            default_language=os.getenv(ENV_DEFAULT_LANGUAGE, "EN"),
            default_phase=os.getenv(ENV_DEFAULT_PHASE, "submit"),
            data_source_cache_size=int(os.getenv(ENV_DATA_SOURCE_CACHE_SIZE, "64")),
            data_source_timeout_seconds=float(os.getenv(ENV_DATA_SOURCE_TIMEOUT, "10.0")),
        )


@lru_cache()
def get_settings() -> EngineSettings:
    """Get cached settings instance."""
    return EngineSettings.from_env()


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()
