"""
Runtime configuration.

Settings are read from environment variables, optionally seeded from a
``.env`` file via python-dotenv:

- ``PQLS_SERVICE_URL``: Base URL of the cryptographic service
- ``PQLS_API_KEY``: Bearer token for decrypt calls
- ``DATABASE_URL``: PostgreSQL DSN for the persistent stores
- ``PQLS_SITE_ORIGIN`` / ``PQLS_INSTALL_PATH``: Installation entropy for the identity
- ``PQLS_MAX_ATTEMPTS`` / ``PQLS_RETRY_DELAY`` / ``PQLS_BACKOFF_MULTIPLIER``: Retry policy
- ``PQLS_BATCH_SIZE`` / ``PQLS_MAX_BATCH_SIZE``: Migration batch bounds
- ``PQLS_LOG_LEVEL`` / ``PQLS_LOG_JSON``: Logging
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Union

from dotenv import load_dotenv

from .errors import ConfigError

DEFAULT_SERVICE_URL = "https://postquantumlatticeshield.netlify.app/api"

# Per-call timeout: base seconds, plus seconds per KiB, capped.
BASE_TIMEOUT = 15.0
MAX_TIMEOUT = 60.0
STATUS_TIMEOUT = 10.0
PQ_TIMEOUT_FACTOR = 1.5

ERROR_LOG_CAP = 100
ACTIVITY_LOG_CAP = 50
AUDIT_LOG_CAP = 1000

INTEGRITY_SAMPLE_SIZE = 1000
PROGRESS_EVERY = 10


@dataclass
class Settings:
    """Library settings."""

    service_url: str = DEFAULT_SERVICE_URL
    api_key: Optional[str] = None
    database_url: Optional[str] = None
    site_origin: str = "localhost"
    install_path: str = "/"
    max_attempts: int = 3
    retry_delay: float = 1.0
    backoff_multiplier: float = 2.0
    default_batch_size: int = 100
    max_batch_size: int = 1000
    log_level: str = "INFO"
    log_json: bool = False

    def __post_init__(self) -> None:
        self.service_url = self.service_url.rstrip("/")
        if not self.service_url:
            raise ConfigError("Service URL must not be empty")
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")
        if self.retry_delay < 0 or self.backoff_multiplier < 1:
            raise ConfigError("retry_delay must be >= 0 and backoff_multiplier >= 1")
        if not 1 <= self.default_batch_size <= self.max_batch_size:
            raise ConfigError(
                f"default_batch_size must be between 1 and {self.max_batch_size}"
            )

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Union[str, Path]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> Settings:
        """
        Load settings from the environment.

        Args:
            env_file: Optional .env file to load first (existing variables win)
            environ: Mapping to read instead of os.environ

        Raises:
            ConfigError: If a value cannot be parsed or is out of range
        """
        if environ is None:
            load_dotenv(env_file)
            environ = os.environ

        def get(name: str, default: str) -> str:
            return environ.get(name, default)

        try:
            return cls(
                service_url=get("PQLS_SERVICE_URL", DEFAULT_SERVICE_URL),
                api_key=environ.get("PQLS_API_KEY") or None,
                database_url=environ.get("DATABASE_URL") or None,
                site_origin=get("PQLS_SITE_ORIGIN", "localhost"),
                install_path=get("PQLS_INSTALL_PATH", os.getcwd()),
                max_attempts=int(get("PQLS_MAX_ATTEMPTS", "3")),
                retry_delay=float(get("PQLS_RETRY_DELAY", "1")),
                backoff_multiplier=float(get("PQLS_BACKOFF_MULTIPLIER", "2")),
                default_batch_size=int(get("PQLS_BATCH_SIZE", "100")),
                max_batch_size=int(get("PQLS_MAX_BATCH_SIZE", "1000")),
                log_level=get("PQLS_LOG_LEVEL", "INFO").upper(),
                log_json=get("PQLS_LOG_JSON", "false").lower() in ("1", "true", "yes"),
            )
        except ValueError as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e
