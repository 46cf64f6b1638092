"""Quay configuration management.

Configuration sources (in priority order):
1. Environment variables (QUAY_ prefix)
2. Config file (config.yaml)
3. Defaults
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

GB = 1024 * 1024 * 1024
MB = 1024 * 1024


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class DatabaseConfig(BaseModel):
    """Database configuration."""

    # SQLite for development; postgresql+asyncpg:// in production
    url: str = "sqlite+aiosqlite:///./quay.db"
    echo: bool = False


class StorageConfig(BaseModel):
    """Blob storage configuration."""

    root_path: str = "/var/lib/quay/blobs"
    # Resumable sessions not completed within this window are purged
    upload_session_ttl_seconds: int = 24 * 3600


class UploadConfig(BaseModel):
    """Upload naming and batching limits."""

    # Numbered candidates tried before falling back to a timestamp suffix
    max_name_attempts: int = 1000
    max_files_per_batch: int = 10
    max_batch_size_bytes: int = 10 * GB


class PlanLimits(BaseModel):
    """Limits attached to a subscription plan."""

    storage_limit_bytes: int
    max_file_size_bytes: int


class RateLimitConfig(BaseModel):
    """Sliding-window upload rate limit (per owner)."""

    enabled: bool = True
    max_uploads: int = 10
    window_seconds: int = 300
    block_seconds: int = 600


class QuotaConfig(BaseModel):
    """Quota accounting configuration."""

    default_plan: str = "free"
    plans: dict[str, PlanLimits] = Field(
        default_factory=lambda: {
            "free": PlanLimits(storage_limit_bytes=50 * GB, max_file_size_bytes=5 * MB),
            "pro": PlanLimits(storage_limit_bytes=500 * GB, max_file_size_bytes=5 * MB),
            "business": PlanLimits(storage_limit_bytes=2048 * GB, max_file_size_bytes=5 * MB),
        }
    )
    # Cached counters may lag the database by at most this long
    usage_cache_ttl_seconds: int = 120
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    def limits_for(self, plan: str | None) -> PlanLimits:
        """Get limits for a plan, falling back to the default plan."""
        if plan and plan in self.plans:
            return self.plans[plan]
        return self.plans[self.default_plan]


class NotificationConfig(BaseModel):
    """Outbound notification configuration.

    With no webhook_url set, notifications are only logged.
    """

    webhook_url: str | None = None
    timeout_seconds: float = 5.0


class GCTaskConfig(BaseModel):
    """GC task-specific configuration."""

    enabled: bool = True


class GCConfig(BaseModel):
    """Reconciliation (garbage collection) configuration."""

    enabled: bool = True
    run_on_startup: bool = True
    interval_seconds: int = 300  # 5 minutes

    # Blobs younger than this are never treated as orphans
    orphan_blob_grace_seconds: int = 24 * 3600

    # Per-task configuration
    orphan_record: GCTaskConfig = Field(default_factory=GCTaskConfig)
    expired_upload: GCTaskConfig = Field(default_factory=GCTaskConfig)
    storage_reconcile: GCTaskConfig = Field(default_factory=GCTaskConfig)
    # Deletes blobs, so it stays off unless explicitly enabled
    orphan_blob: GCTaskConfig = Field(default_factory=lambda: GCTaskConfig(enabled=False))


class SecurityConfig(BaseModel):
    """Security configuration."""

    # Accept requests without principal headers (development only)
    allow_anonymous: bool = False
    anonymous_principal: str = "dev-user"
    anonymous_email: str = "dev@localhost"
    # PBKDF2 iterations for link passwords
    password_hash_iterations: int = 390_000
    # Principals allowed to call /v1/admin endpoints
    admin_principals: list[str] = Field(default_factory=list)


class Settings(BaseSettings):
    """Quay application settings."""

    model_config = SettingsConfigDict(
        env_prefix="QUAY_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    upload: UploadConfig = Field(default_factory=UploadConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    gc: GCConfig = Field(default_factory=GCConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment beats the YAML file, which arrives as init kwargs
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def _load_config_file() -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. QUAY_CONFIG_FILE environment variable
    2. ./config.yaml
    3. /etc/quay/config.yaml
    """
    import os

    config_paths = [
        os.environ.get("QUAY_CONFIG_FILE"),
        Path("config.yaml"),
        Path("/etc/quay/config.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    File values are passed as init kwargs; environment variables are applied
    on top by pydantic-settings.
    """
    file_config = _load_config_file()
    return Settings(**file_config)
