"""
Settings and configuration for ocipkg.

Centralizes configuration values and provides validation with fail-fast behavior.
Settings are passed explicitly into the store and the distribution client;
``create_settings_from_env`` is the only place that reads process state.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

__all__ = ["Settings", "create_settings_from_env", "default_data_dir"]

DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024  # 8 MiB


def default_data_dir() -> Path:
    """Platform data directory: ``$XDG_DATA_HOME/ocipkg`` or ``~/.local/share/ocipkg``."""
    xdg = os.getenv("XDG_DATA_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return base / "ocipkg"


@dataclass(frozen=True)
class Settings:
    """
    Configuration settings for ocipkg.

    Local Store:
        data_dir: Root directory of the local image store

    Registry Settings:
        registry_user: Username for registry authentication
        registry_pass: Password for registry authentication
        registry_token: Pre-issued bearer token (skips the token exchange)
        insecure: Use plain HTTP for every registry
        http_timeout_s: HTTP request timeout in seconds
        http_retry: Attempts for idempotent requests and upload sessions (>= 1)
        chunk_size: Blobs larger than this are uploaded in PATCH chunks
        max_concurrency: Parallel blob transfers per image
        retry_backoff_s: Base of the exponential backoff between retries
    """
    data_dir: Path
    registry_user: Optional[str] = None
    registry_pass: Optional[str] = None
    registry_token: Optional[str] = None
    insecure: bool = False
    http_timeout_s: float = 30.0
    http_retry: int = 3
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_concurrency: int = 4
    retry_backoff_s: float = 0.5

    def __post_init__(self):
        """Validate settings on construction."""
        if not str(self.data_dir):
            raise ValueError("data_dir is required")

        if self.http_timeout_s <= 0:
            raise ValueError(f"http_timeout_s must be positive, got {self.http_timeout_s}")

        if self.http_retry < 1:
            raise ValueError(f"http_retry must be at least 1, got {self.http_retry}")

        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")

        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {self.max_concurrency}")

        if self.retry_backoff_s < 0:
            raise ValueError(f"retry_backoff_s must not be negative, got {self.retry_backoff_s}")

        # Credentials must be complete if partially configured
        if self.registry_user and not self.registry_pass:
            raise ValueError("registry_user specified but registry_pass is missing")
        if self.registry_pass and not self.registry_user:
            raise ValueError("registry_pass specified but registry_user is missing")

    @property
    def credentials(self) -> Optional[tuple[str, str]]:
        if self.registry_user and self.registry_pass:
            return (self.registry_user, self.registry_pass)
        return None


def create_settings_from_env() -> Settings:
    """
    Load settings from environment variables.

    Environment Variables:
        - OCIPKG_DATA_DIR (default: $XDG_DATA_HOME/ocipkg or ~/.local/share/ocipkg)
        - OCIPKG_REGISTRY_USERNAME (optional)
        - OCIPKG_REGISTRY_PASSWORD (optional)
        - OCIPKG_REGISTRY_TOKEN (optional)
        - OCIPKG_INSECURE (default: false)
        - OCIPKG_HTTP_TIMEOUT (default: 30.0)
        - OCIPKG_HTTP_RETRY (default: 3)
        - OCIPKG_CHUNK_SIZE (default: 8 MiB)
        - OCIPKG_MAX_CONCURRENCY (default: 4)
        - OCIPKG_RETRY_BACKOFF (default: 0.5)

    Returns:
        Settings object with validated configuration

    Raises:
        ValueError: If configuration is invalid

    Note:
        Creates a fresh Settings instance every time (no caching).
        This ensures test isolation and eliminates global state.
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
        registry_user=os.getenv("OCIPKG_REGISTRY_USERNAME"),
        registry_pass=os.getenv("OCIPKG_REGISTRY_PASSWORD"),
        registry_token=os.getenv("OCIPKG_REGISTRY_TOKEN"),
        insecure=str_to_bool(os.getenv("OCIPKG_INSECURE", "false")),
        http_timeout_s=get_float("OCIPKG_HTTP_TIMEOUT", 30.0),
        http_retry=get_int("OCIPKG_HTTP_RETRY", 3),
        chunk_size=get_int("OCIPKG_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
        max_concurrency=get_int("OCIPKG_MAX_CONCURRENCY", 4),
        retry_backoff_s=get_float("OCIPKG_RETRY_BACKOFF", 0.5),
    )
