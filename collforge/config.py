"""
Configuration management for collforge.

Engine-wide settings are loaded from environment variables with the
COLLFORGE_ prefix (pydantic-settings). Database connection settings are a
frozen dataclass that can be built explicitly or from the environment.

Invariants:
    - All settings have sensible defaults for local development
    - Settings are read once, at configure() time

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep DatabaseConfig.from_env() and Settings on the same variable names
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Engine configuration loaded from environment."""

    # Locale used when an operation does not name one
    default_locale: str = Field(default="en", description="Default operation locale")

    # Escalate cache/versioning side-effect failures to HookError
    strict_plugins: bool = Field(default=False, description="Plugin side-effect errors are fatal")

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_format: str = Field(default="text", description="Log format: text or json")

    # Database used when configure() receives no database
    database_url: str = Field(default="memory://", description="Database URL")

    # Cache plugin defaults
    cache_strategy: str = Field(default="lru", description="Cache strategy: lru, ttl or smart")
    cache_max_entries: int = Field(default=1000, description="Maximum cached results")
    cache_ttl_seconds: float = Field(default=300.0, description="Default cache entry TTL")
    cache_key_prefix: str = Field(default="collforge", description="Prefix of every cache key")

    model_config = {"env_prefix": "COLLFORGE_"}


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection configuration.

    Attributes:
        url: Database URL (memory://, sqlite:///path)
        expected_fingerprint: Existing schema reference; configure() fails
            with SchemaMismatchError when the resolved schema differs
        verify_stored_fingerprint: Also fail when the fingerprint recorded
            by the store differs from the resolved schema
        busy_timeout_ms: SQLite busy timeout
        wal_mode: Enable SQLite WAL mode
    """

    url: str = "memory://"
    expected_fingerprint: Optional[str] = None
    verify_stored_fingerprint: bool = False
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        """Load configuration from environment variables."""
        return cls(
            url=os.getenv("COLLFORGE_DATABASE_URL", "memory://"),
            expected_fingerprint=os.getenv("COLLFORGE_SCHEMA_FINGERPRINT"),
            verify_stored_fingerprint=os.getenv("COLLFORGE_VERIFY_FINGERPRINT", "false").lower()
            == "true",
            busy_timeout_ms=int(os.getenv("COLLFORGE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            wal_mode=os.getenv("COLLFORGE_SQLITE_WAL", "true").lower() == "true",
        )
