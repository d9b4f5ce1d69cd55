"""Configuration management with validation.

All settings are read from the environment once at startup and validated
before any backend client is constructed, so a misconfigured controller
fails immediately rather than on its first reconcile pass.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_WORKERS = 16
MIN_WORKERS = 1
MAX_WORKERS = 64

DEFAULT_RECONCILE_TIMEOUT_SECONDS = 300
DEFAULT_RESYNC_INTERVAL_SECONDS = 600
MIN_RESYNC_INTERVAL_SECONDS = 10

DEFAULT_BACKOFF_BASE_SECONDS = 5.0
DEFAULT_BACKOFF_MAX_SECONDS = 300.0

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0

# Conditional writes are retried from a fresh read this many times
MAX_CONFLICT_RETRIES = 5

# Spec files larger than this are rejected by the loader
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024

VALID_URL_PATTERN = r"^https?://[A-Za-z0-9.\-]+(:[0-9]+)?(/.*)?$"


@dataclass(frozen=True)
class TLSConfig:
    """Client TLS material used for mutual authentication with identity.

    All paths are optional; when absent the system trust store is used and
    no client certificate is presented.
    """

    ca_file: Path | None = None
    client_cert_file: Path | None = None
    client_key_file: Path | None = None


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    region_url: str
    identity_url: str

    # Scheduling
    workers: int = DEFAULT_WORKERS
    reconcile_timeout_seconds: float = DEFAULT_RECONCILE_TIMEOUT_SECONDS
    resync_interval_seconds: float = DEFAULT_RESYNC_INTERVAL_SECONDS
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS

    # Backend calls
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    tls: TLSConfig = field(default_factory=TLSConfig)

    # Optional directory of YAML specs loaded into the store at startup
    specs_dir: Path | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.region_url:
            errors.append("REGION_URL is required")
        elif not re.match(VALID_URL_PATTERN, self.region_url):
            errors.append(f"REGION_URL must be an http(s) URL: {self.region_url}")

        if not self.identity_url:
            errors.append("IDENTITY_URL is required")
        elif not re.match(VALID_URL_PATTERN, self.identity_url):
            errors.append(f"IDENTITY_URL must be an http(s) URL: {self.identity_url}")

        if not (MIN_WORKERS <= self.workers <= MAX_WORKERS):
            errors.append(f"WORKERS must be between {MIN_WORKERS} and {MAX_WORKERS}")

        if self.reconcile_timeout_seconds <= 0:
            errors.append("RECONCILE_TIMEOUT must be positive")

        if self.resync_interval_seconds < MIN_RESYNC_INTERVAL_SECONDS:
            errors.append(f"RESYNC_INTERVAL must be at least {MIN_RESYNC_INTERVAL_SECONDS} seconds")

        if self.backoff_base_seconds <= 0:
            errors.append("BACKOFF_BASE must be positive")
        elif self.backoff_max_seconds < self.backoff_base_seconds:
            errors.append("BACKOFF_MAX must not be smaller than BACKOFF_BASE")

        if self.request_timeout_seconds <= 0:
            errors.append("REQUEST_TIMEOUT must be positive")

        # A certificate without its key (or vice versa) cannot be loaded
        if (self.tls.client_cert_file is None) != (self.tls.client_key_file is None):
            errors.append("CLIENT_CERT_FILE and CLIENT_KEY_FILE must be set together")

        for name, path in (
            ("CA_FILE", self.tls.ca_file),
            ("CLIENT_CERT_FILE", self.tls.client_cert_file),
            ("CLIENT_KEY_FILE", self.tls.client_key_file),
        ):
            if path is not None and not path.exists():
                errors.append(f"{name} does not exist: {path}")

        if self.specs_dir is not None and not self.specs_dir.is_dir():
            errors.append(f"Specs directory does not exist: {self.specs_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            REGION_URL: Base URL of the region service
            IDENTITY_URL: Base URL of the identity service
            CA_FILE: CA bundle used to verify both services (optional)
            CLIENT_CERT_FILE: Client certificate for mTLS (optional)
            CLIENT_KEY_FILE: Client private key for mTLS (optional)
            WORKERS: Concurrent reconcile workers (default: 16)
            RECONCILE_TIMEOUT: Deadline for a single pass in seconds (default: 300)
            RESYNC_INTERVAL: Seconds between periodic re-reconciles (default: 600)
            BACKOFF_BASE: Initial retry delay in seconds (default: 5)
            BACKOFF_MAX: Maximum retry delay in seconds (default: 300)
            REQUEST_TIMEOUT: Per-request backend timeout in seconds (default: 30)
            SPECS_DIR: Directory of YAML specs to preload (optional)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_path(key: str) -> Path | None:
            value = os.environ.get(key)
            return Path(value) if value else None

        return cls(
            region_url=os.environ.get("REGION_URL", ""),
            identity_url=os.environ.get("IDENTITY_URL", ""),
            workers=get_int("WORKERS", DEFAULT_WORKERS),
            reconcile_timeout_seconds=get_float(
                "RECONCILE_TIMEOUT", DEFAULT_RECONCILE_TIMEOUT_SECONDS
            ),
            resync_interval_seconds=get_float("RESYNC_INTERVAL", DEFAULT_RESYNC_INTERVAL_SECONDS),
            backoff_base_seconds=get_float("BACKOFF_BASE", DEFAULT_BACKOFF_BASE_SECONDS),
            backoff_max_seconds=get_float("BACKOFF_MAX", DEFAULT_BACKOFF_MAX_SECONDS),
            request_timeout_seconds=get_float("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            tls=TLSConfig(
                ca_file=get_path("CA_FILE"),
                client_cert_file=get_path("CLIENT_CERT_FILE"),
                client_key_file=get_path("CLIENT_KEY_FILE"),
            ),
            specs_dir=get_path("SPECS_DIR"),
        )
