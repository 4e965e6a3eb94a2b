"""
Centralized settings for flowspine.

Manifesto:
    Retry budgets, backoff timing and history bounds are operational knobs,
    not code. ``EngineSettings`` reads them once, validates them, and hands
    the engine a single typed object.

All fields can be set via ``FLOWSPINE_*`` environment variables (e.g.
``FLOWSPINE_MAX_ATTEMPTS=5``) or a ``.env`` file.

Tags:
    flowspine, configuration, settings, pydantic

Doc-Types:
    api-reference
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Workflow engine configuration.

    Fields
    ──────
    max_attempts          : Default attempt budget per step (first try included)
    backoff_base_seconds  : Base of the exponential backoff
    backoff_max_seconds   : Upper bound on a single backoff delay
    max_history           : Per-workflow history length before oldest entries drop
    max_workers           : Thread pool size for concurrent step dispatch
    log_level             : Structlog log level
    log_json              : JSON logs (None = auto-detect from tty)
    """

    model_config = SettingsConfigDict(
        env_prefix="FLOWSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Retry ────────────────────────────────────────────────────
    max_attempts: int = Field(default=3, ge=1, description="Attempts per step, first try included")
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=60.0, ge=0)

    # ── Bookkeeping ──────────────────────────────────────────────
    max_history: int = Field(default=1000, ge=1)

    # ── Dispatch ─────────────────────────────────────────────────
    max_workers: int = Field(default=4, ge=1)

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> EngineSettings:
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        return self


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Return the process-wide settings, read once from the environment."""
    return EngineSettings()


def clear_settings_cache() -> None:
    """Forget cached settings (for tests that patch the environment)."""
    get_settings.cache_clear()


__all__ = ["EngineSettings", "get_settings", "clear_settings_cache"]
