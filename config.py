"""
Configuration for the OPD token allocation engine.

Settings are loaded from environment variables (or a local .env file)
with pydantic-settings.
"""

import sys
from functools import lru_cache
from types import MappingProxyType
from typing import Dict, Mapping

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_PRIORITY_WEIGHTS: Dict[str, int] = {
    "emergency": 100,
    "priority": 80,
    "followup": 60,
    "online": 40,
    "walkin": 20,
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Seconds to wait for a per-slot / per-patient lock before giving up
    slot_lock_timeout: float = Field(default=2.0, gt=0, alias="SLOT_LOCK_TIMEOUT")
    conflict_retry_attempts: int = Field(default=3, ge=1, alias="CONFLICT_RETRY_ATTEMPTS")

    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=5000, alias="API_PORT")

    priority_weights: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_PRIORITY_WEIGHTS),
        alias="PRIORITY_WEIGHTS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("priority_weights")
    @classmethod
    def merge_priority_weights(cls, v: Dict[str, int]) -> Dict[str, int]:
        """Overlay overrides on the default table; emergency must stay strictly highest."""
        unknown = set(v) - set(DEFAULT_PRIORITY_WEIGHTS)
        if unknown:
            raise ValueError(f"Unknown booking sources: {sorted(unknown)}")
        merged = {**DEFAULT_PRIORITY_WEIGHTS, **v}
        emergency = merged["emergency"]
        if any(w >= emergency for s, w in merged.items() if s != "emergency"):
            raise ValueError("emergency must have the highest priority weight")
        return merged

    def priority_table(self) -> Mapping[str, int]:
        """Read-only view of the source -> weight table."""
        return MappingProxyType(dict(self.priority_weights))


@lru_cache()
def get_settings() -> Settings:
    """Get the cached settings instance."""
    return Settings()


def configure_logging(level: str) -> None:
    """Route loguru output to stderr at the given level."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
