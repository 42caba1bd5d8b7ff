from __future__ import annotations

from pathlib import Path
from typing import Self

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.constants import LOCK_STATE_KEY, LOCK_STATE_TTL_S

# Load .env once at module import so every BaseSettings subclass sees the env vars
load_dotenv()


class ControlApiSettings(BaseSettings):
    """Remote control API connection settings. Env vars prefixed with CONTROL_API_."""

    model_config = SettingsConfigDict(env_prefix="CONTROL_API_")

    base_url: str = "http://127.0.0.1:3000"
    timeout_s: float = Field(15.0, gt=0)

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"CONTROL_API_BASE_URL must be an http(s) URL (got '{v}')")
        return v


class LifecycleSettings(BaseSettings):
    """Start/stop verification policy. Env vars prefixed with LIFECYCLE_."""

    model_config = SettingsConfigDict(env_prefix="LIFECYCLE_")

    post_start_check_delay_s: float = 3.0  # diagnostic only, never authoritative
    verify_attempts: int = 3
    verify_base_delay_s: float = 2.0  # attempt i waits base * i
    retry_verify_attempts: int = 2
    force_kill_verify_attempts: int = 1

    @model_validator(mode="after")
    def _validate(self) -> Self:
        for name in ("verify_attempts", "retry_verify_attempts", "force_kill_verify_attempts"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")
        for name in ("post_start_check_delay_s", "verify_base_delay_s"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")
        return self


class ReconcileSettings(BaseSettings):
    """Reconciliation loop settings. Env vars prefixed with RECONCILE_."""

    model_config = SettingsConfigDict(env_prefix="RECONCILE_")

    interval_s: float = Field(15.0, gt=0)
    config_freshness_s: float = Field(5.0, ge=0)  # coalescing window for config refresh


class PersistenceSettings(BaseSettings):
    """Lock-state persistence settings. Env vars prefixed with PERSISTENCE_."""

    model_config = SettingsConfigDict(env_prefix="PERSISTENCE_")

    state_path: Path = Path(".bridgectl/lock_states.json")
    key: str = LOCK_STATE_KEY
    ttl_s: float = Field(LOCK_STATE_TTL_S, gt=0)


class LoggingSettings(BaseSettings):
    """Log output settings. Env vars prefixed with LOG_."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = "INFO"
    json_output: bool = False

    @field_validator("level")
    @classmethod
    def _validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v = v.upper()
        if v not in allowed:
            msg = f"LOG_LEVEL must be one of {sorted(allowed)} (got '{v}')"
            raise ValueError(msg)
        return v


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    control_api: ControlApiSettings = Field(default_factory=ControlApiSettings)
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)
    reconcile: ReconcileSettings = Field(default_factory=ReconcileSettings)
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on invalid values."""
    return Settings()
