from __future__ import annotations

import os
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .constants import (
    DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    DEFAULT_CACHE_LOOKUP_WAIT_SECONDS,
    DEFAULT_CACHE_MAX_TOTAL_BYTES,
    DEFAULT_CREDENTIAL_LIFETIME_SECONDS,
    DEFAULT_HEALTH_INTERVAL_SECONDS,
    DEFAULT_HEALTH_TIMEOUT_SECONDS,
    DEFAULT_ISSUE_TIMEOUT_SECONDS,
    MAX_CREDENTIAL_LIFETIME_SECONDS,
)


class RedisConfig(BaseModel):
    """Connection settings shared by Redis-backed components."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class CacheConfig(BaseModel):
    """Artifact cache settings."""

    backend: Literal["memory", "filesystem", "redis"] = "memory"
    root: str = ".shipyard/cache"
    max_total_bytes: int = DEFAULT_CACHE_MAX_TOTAL_BYTES
    lookup_wait_seconds: float = DEFAULT_CACHE_LOOKUP_WAIT_SECONDS
    redis: RedisConfig = RedisConfig()


class PolicyConfig(BaseModel):
    """Scopes a single environment may be granted."""

    scopes: List[str] = Field(default_factory=list)
    max_lifetime_seconds: Optional[int] = None


class TrustConfig(BaseModel):
    """Where run-identity assertions are verified."""

    jwks_url: Optional[str] = None
    audience: str = "shipyard"
    issuer: str = "shipyard-local"
    leeway: int = 30


class BrokerConfig(BaseModel):
    """Credential broker settings."""

    issuer: str = "shipyard"
    default_lifetime_seconds: int = DEFAULT_CREDENTIAL_LIFETIME_SECONDS
    max_lifetime_seconds: int = MAX_CREDENTIAL_LIFETIME_SECONDS
    issue_timeout_seconds: float = DEFAULT_ISSUE_TIMEOUT_SECONDS
    policies: Dict[str, PolicyConfig] = Field(default_factory=dict)
    trust: TrustConfig = TrustConfig()
    audit_database_url: Optional[str] = None

    @field_validator("policies", mode="before")
    @classmethod
    def _expand_scope_lists(cls, value: Any) -> Any:
        # ``staging: [deploy, rollback]`` is shorthand for ``{scopes: [...]}``
        if isinstance(value, dict):
            return {
                env: {"scopes": v} if isinstance(v, (list, tuple)) else v
                for env, v in value.items()
            }
        return value


class RolloutConfig(BaseModel):
    """Defaults applied to stages that do not set their own bounds."""

    approval_timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS
    health_timeout_seconds: float = DEFAULT_HEALTH_TIMEOUT_SECONDS
    health_interval_seconds: float = DEFAULT_HEALTH_INTERVAL_SECONDS


class NotificationConfig(BaseModel):
    """Notification sink settings."""

    backend: Literal["inmemory", "log", "redis"] = "log"
    channel: str = "shipyard:notifications"
    redis: RedisConfig = RedisConfig()


class ShipyardConfig(BaseModel):
    """Top-level configuration model."""

    cache: CacheConfig = CacheConfig()
    broker: BrokerConfig = BrokerConfig()
    rollout: RolloutConfig = RolloutConfig()
    notifications: NotificationConfig = NotificationConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> ShipyardConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SHIPYARD_CONFIG env
            variable or 'shipyard.yaml' in the current directory.
    """

    config_path = path or os.getenv("SHIPYARD_CONFIG", "shipyard.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ShipyardConfig(**data)
    else:
        config = ShipyardConfig()

    env_db_url = os.getenv("SHIPYARD_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
