from __future__ import annotations

import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_MAX_RETRIES, DEFAULT_NOTIFY_TIMEOUT, DEFAULT_TRANSITION_TOPIC


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    topic: str = DEFAULT_TRANSITION_TOPIC


class EngineConfig(BaseModel):
    """Retry and notification hand-off settings for the transition engine."""

    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff_base: float = 1.5
    retry_jitter: float = 0.5
    notify_timeout: float = DEFAULT_NOTIFY_TIMEOUT


class NotificationConfig(BaseModel):
    """Notification dispatcher settings."""

    database_url: str = "sqlite+aiosqlite:///postgate-notifications.db"
    channels: List[Literal["in_app", "email", "sms"]] = Field(
        default_factory=lambda: ["in_app"]
    )
    resend_api_key: Optional[str] = None
    resend_from: str = "Postgate <onboarding@resend.dev>"
    digest_concurrency: int = 5
    digest_batch_size: int = 100


class PostgateConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    engine: EngineConfig = EngineConfig()
    notifications: NotificationConfig = NotificationConfig()


def load_config(path: Optional[str] = None) -> PostgateConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to POSTGATE_CONFIG env
            variable or 'postgate.yaml' in the current directory.
    """

    config_path = path or os.getenv("POSTGATE_CONFIG", "postgate.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = PostgateConfig(**data)
    else:
        config = PostgateConfig()

    env_db_url = os.getenv("POSTGATE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_resend_key = os.getenv("RESEND_API_KEY")
    if env_resend_key:
        config.notifications.resend_api_key = env_resend_key
    return config
