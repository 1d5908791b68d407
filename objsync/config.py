"""Application configuration loaded from environment variables."""

from __future__ import annotations

import ipaddress
import socket
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOOPBACK_NAMES = {"localhost", "127.0.0.1", "::1"}


class Settings(BaseSettings):
    """objsync agent settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    secret_key: str = "change-me-in-production"
    debug: bool = False
    expose_docs: bool = False
    client_id: str = Field(default_factory=socket.gethostname)

    # Metadata store
    database_url: str = "sqlite+aiosqlite:///data/db/objsync.db"
    database_echo: bool = False

    # Control surface (loopback only)
    host: str = "127.0.0.1"
    port: int = Field(default=8750, ge=1, le=65535)
    trusted_hosts: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1", "::1"])

    # Virtual paths and filters
    filter_namespace: str = Field(default="filters", pattern=r"^[A-Za-z0-9_-]+$")
    filter_cache_enabled: bool = True
    query_timeout_seconds: float = Field(default=30.0, gt=0)

    # Storage clients
    storage_timeout_seconds: int = Field(default=30, ge=1)

    # Sync defaults
    sync_default_workers: int = Field(default=4, ge=1, le=64)
    sync_default_chunk_size: int = Field(default=5 * 1024 * 1024, ge=5 * 1024 * 1024)
    sync_default_interval_seconds: int = Field(default=300, ge=1)
    sync_retry_attempts: int = Field(default=3, ge=0)
    sync_retry_base_delay: float = Field(default=0.5, ge=0)
    sync_retry_max_delay: float = Field(default=30.0, ge=0)
    sync_error_backoff_seconds: float = Field(default=5.0, ge=0)

    # Agent
    agent_enabled: bool = True
    watch_poll_seconds: float = Field(default=2.0, gt=0)
    watch_debounce_seconds: float = Field(default=1.0, ge=0)
    agent_refresh_seconds: float = Field(default=30.0, gt=0)

    # Local data
    data_dir: Path = Path("./data")

    def validate_runtime_security(self) -> None:
        """Validate security-critical production settings."""
        if self.debug:
            return

        violations: list[str] = []
        if self.secret_key == "change-me-in-production" or len(self.secret_key) < 32:
            violations.append(
                "SECRET_KEY must be overridden with a high-entropy value (>=32 chars)"
            )
        if not _is_loopback(self.host):
            violations.append("HOST must be a loopback address; the control surface is local-only")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Insecure production configuration: {joined}")

    @property
    def is_single_writer(self) -> bool:
        """True when the metadata store is the embedded SQLite variant."""
        return self.database_url.startswith("sqlite")


def _is_loopback(host: str) -> bool:
    if host in _LOOPBACK_NAMES:
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False
