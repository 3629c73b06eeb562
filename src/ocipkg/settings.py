"""
Settings and configuration for ocipkg.

Centralizes configuration values and provides validation with fail-fast behavior.
Loads settings from environment variables when a store or session is built.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import platformdirs

__all__ = ["Settings", "create_settings_from_env", "default_data_dir", "default_config_dir"]

APP_NAME = "ocipkg"

MiB = 1024 * 1024


def default_data_dir() -> Path:
    """Platform user data directory holding the local package store."""
    return Path(platformdirs.user_data_dir(APP_NAME))


def default_config_dir() -> Path:
    """Platform user config directory holding ocipkg's auth.json."""
    return Path(platformdirs.user_config_dir(APP_NAME))


@dataclass(frozen=True)
class Settings:
    """
    Configuration settings for ocipkg.

    Store Settings:
        data_dir: Root directory of the local package store

    Registry Settings:
        registry_insecure: Speak plain HTTP to every registry
        registry_user: Username for registry authentication
        registry_pass: Password for registry authentication
        http_timeout_s: HTTP request timeout in seconds
        http_retry: Number of retries for transient failures (0=no retry)
        retry_backoff_s: Base of the exponential backoff between retries

    Transfer Settings:
        chunk_size: Bytes per PATCH request in chunked uploads
        chunked_threshold: Blobs at or above this size are uploaded in chunks
        max_workers: Threads used for parallel blob transfers
    """
    data_dir: Path
    registry_insecure: bool = False
    registry_user: Optional[str] = None
    registry_pass: Optional[str] = None
    http_timeout_s: float = 30.0
    http_retry: int = 3
    retry_backoff_s: float = 1.0

    chunk_size: int = 8 * MiB
    chunked_threshold: int = 32 * MiB
    max_workers: int = 4

    def __post_init__(self):
        """Validate settings on construction."""
        if not str(self.data_dir):
            raise ValueError("data_dir is required")

        if self.http_timeout_s <= 0:
            raise ValueError(f"http_timeout_s must be positive, got {self.http_timeout_s}")

        if self.http_retry < 0:
            raise ValueError(f"http_retry must be non-negative, got {self.http_retry}")

        if self.retry_backoff_s < 0:
            raise ValueError(f"retry_backoff_s must be non-negative, got {self.retry_backoff_s}")

        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")

        if self.chunked_threshold <= 0:
            raise ValueError(f"chunked_threshold must be positive, got {self.chunked_threshold}")

        if self.max_workers <= 0:
            raise ValueError(f"max_workers must be positive, got {self.max_workers}")

        # Credentials come as a pair
        if bool(self.registry_user) != bool(self.registry_pass):
            raise ValueError("registry_user and registry_pass must be given together")

    @property
    def has_credentials(self) -> bool:
        return bool(self.registry_user and self.registry_pass)


def create_settings_from_env() -> Settings:
    """
    Load settings from environment variables.

    Environment Variables:
        Store:
        - OCIPKG_DATA_DIR (default: platform user data dir)

        Registry:
        - OCIPKG_REGISTRY_INSECURE (default: false)
        - OCIPKG_REGISTRY_USERNAME (optional)
        - OCIPKG_REGISTRY_PASSWORD (optional)
        - OCIPKG_HTTP_TIMEOUT (default: 30.0)
        - OCIPKG_HTTP_RETRY (default: 3)
        - OCIPKG_RETRY_BACKOFF (default: 1.0)

        Transfer:
        - OCIPKG_CHUNK_SIZE (default: 8 MiB)
        - OCIPKG_CHUNKED_THRESHOLD (default: 32 MiB)
        - OCIPKG_MAX_WORKERS (default: 4)

    Returns:
        Settings object with validated configuration

    Raises:
        ValueError: If configuration is invalid

    Note:
        Creates a fresh Settings instance every time (no caching).
    """
    def str_to_bool(value: str) -> bool:
        return value.lower() in ('true', '1', 'yes', 'on')

    def get_float(key: str, default: float) -> float:
        value = os.getenv(key)
        return float(value) if value else default

    def get_int(key: str, default: int) -> int:
        value = os.getenv(key)
        return int(value) if value else default

    data_dir = os.getenv("OCIPKG_DATA_DIR")

    return Settings(
        data_dir=Path(data_dir) if data_dir else default_data_dir(),
        registry_insecure=str_to_bool(os.getenv("OCIPKG_REGISTRY_INSECURE", "false")),
        registry_user=os.getenv("OCIPKG_REGISTRY_USERNAME") or None,
        registry_pass=os.getenv("OCIPKG_REGISTRY_PASSWORD") or None,
        http_timeout_s=get_float("OCIPKG_HTTP_TIMEOUT", 30.0),
        http_retry=get_int("OCIPKG_HTTP_RETRY", 3),
        retry_backoff_s=get_float("OCIPKG_RETRY_BACKOFF", 1.0),
        chunk_size=get_int("OCIPKG_CHUNK_SIZE", 8 * MiB),
        chunked_threshold=get_int("OCIPKG_CHUNKED_THRESHOLD", 32 * MiB),
        max_workers=get_int("OCIPKG_MAX_WORKERS", 4),
    )
