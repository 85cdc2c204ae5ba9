"""Deployment settings read from the environment and ``.env``."""

from __future__ import annotations

from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .config import QueueConfig


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ENVIRONMENT: str = Field(default="development", description="development|production")
    LOG_LEVEL: str = Field(default="INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")

    # Store
    STORE_URL: str = Field(default="memory://", description="memory:// or a redis:// URL")
    REDIS_HOSTNAME: Optional[str] = None
    REDIS_PORT: int = Field(default=6379, ge=1, le=65535)
    REDIS_PASSWORD: Optional[str] = None
    STORE_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0)
    KEY_PREFIX: str = Field(default="soloq:")

    # Matchmaking
    GROUP_SIZE: int = Field(default=5, ge=2)
    TICK_INTERVAL_SECONDS: float = Field(default=5.0, gt=0)
    READY_CHECK_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)
    REPAIR_COOLDOWN_SECONDS: float = Field(default=60.0, ge=0)
    GATEWAY_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0)
    LEADERBOARD_SIZE: int = Field(default=10, ge=1)

    @model_validator(mode="after")
    def assemble_redis_url(self) -> "Settings":
        # Deployments configured with discrete REDIS_* variables.
        if self.REDIS_HOSTNAME and self.STORE_URL == "memory://":
            password = self.REDIS_PASSWORD or ""
            self.STORE_URL = f"redis://default:{password}@{self.REDIS_HOSTNAME}:{self.REDIS_PORT}"
        return self

    def queue_config(self) -> QueueConfig:
        return QueueConfig(
            group_size=self.GROUP_SIZE,
            tick_interval=self.TICK_INTERVAL_SECONDS,
            ready_check_timeout=self.READY_CHECK_TIMEOUT_SECONDS,
            repair_cooldown=self.REPAIR_COOLDOWN_SECONDS,
            gateway_timeout=self.GATEWAY_TIMEOUT_SECONDS,
            leaderboard_size=self.LEADERBOARD_SIZE,
        )
