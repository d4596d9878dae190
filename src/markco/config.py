"""Configuration via pydantic-settings.

Settings are read from ``MARKCO_*`` environment variables (and an optional
``.env`` file). Consumers call ``get_settings()`` to obtain a cached instance.
Tests construct ``Settings(_env_file=None, ...)`` directly for isolation.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings for the comment store, projector and CLI."""

    model_config = SettingsConfigDict(
        env_prefix="MARKCO_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    default_author: str = Field(default="user", min_length=1)
    highlight_class: str = "markco-highlight"
    resolved_class: str = "markco-resolved"
    json_indent: int = Field(default=2, ge=0)
    schema_version: int = Field(default=2, ge=1)
    lock_timeout: float = Field(default=10.0, gt=0)
    watch_debounce: float = Field(default=0.5, ge=0)
    verbose: bool = False


@lru_cache
def get_settings() -> Settings:
    """Return the cached Settings instance."""
    return Settings()
