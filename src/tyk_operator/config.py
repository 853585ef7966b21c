"""Configuration management with validation.

Connection details for the Tyk gateway or dashboard and the controller's
runtime knobs are validated once at load time so that a misconfigured
operator fails at startup rather than on its first reconcile.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml


class OperatorMode(str, Enum):
    """Which Tyk management API the operator talks to."""

    CE = "ce"  # Open-source gateway, /tyk/* endpoints
    PRO = "pro"  # Dashboard, /api/* endpoints


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_REQUEUE_AFTER_SECONDS = 5
MIN_REQUEUE_AFTER_SECONDS = 1
MAX_REQUEUE_AFTER_SECONDS = 3600

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30
MIN_REQUEST_TIMEOUT_SECONDS = 1
MAX_REQUEST_TIMEOUT_SECONDS = 300

DEFAULT_WORKER_COUNT = 1
MAX_WORKER_COUNT = 32

MAX_CONFIG_FILE_SIZE_BYTES = 64 * 1024

# Input validation patterns
VALID_URL_PATTERN = r"^https?://[^\s/$.?#].[^\s]*$"
VALID_NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Remote management API
    url: str
    auth: str
    org: str = ""
    mode: OperatorMode = OperatorMode.CE
    insecure_skip_verify: bool = False

    # Namespace scope, empty means all namespaces
    namespaces: tuple[str, ...] = field(default_factory=tuple)

    # Behavior
    enable_webhooks: bool = True
    reload_enabled: bool = True
    worker_count: int = DEFAULT_WORKER_COUNT

    # Timing
    requeue_after_seconds: int = DEFAULT_REQUEUE_AFTER_SECONDS
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.url:
            errors.append("TYK_URL is required")
        elif not re.match(VALID_URL_PATTERN, self.url):
            errors.append(f"TYK_URL must be an http(s) URL: {self.url}")

        if not self.auth:
            errors.append("TYK_AUTH is required")

        # The dashboard scopes every object to an organisation
        if self.mode == OperatorMode.PRO and not self.org:
            errors.append("TYK_ORG is required when TYK_MODE is pro")

        for namespace in self.namespaces:
            if not re.match(VALID_NAMESPACE_PATTERN, namespace):
                errors.append(f"WATCH_NAMESPACE entry is not a valid namespace: {namespace}")

        if not (1 <= self.worker_count <= MAX_WORKER_COUNT):
            errors.append(f"WORKER_COUNT must be between 1 and {MAX_WORKER_COUNT}")

        if not (
            MIN_REQUEUE_AFTER_SECONDS <= self.requeue_after_seconds <= MAX_REQUEUE_AFTER_SECONDS
        ):
            errors.append(
                f"REQUEUE_AFTER_SECONDS must be between {MIN_REQUEUE_AFTER_SECONDS} "
                f"and {MAX_REQUEUE_AFTER_SECONDS} seconds"
            )

        if not (
            MIN_REQUEST_TIMEOUT_SECONDS
            <= self.request_timeout_seconds
            <= MAX_REQUEST_TIMEOUT_SECONDS
        ):
            errors.append(
                f"REQUEST_TIMEOUT_SECONDS must be between {MIN_REQUEST_TIMEOUT_SECONDS} "
                f"and {MAX_REQUEST_TIMEOUT_SECONDS} seconds"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def watches_all_namespaces(self) -> bool:
        """True when no namespace restriction is configured."""
        return not self.namespaces

    @classmethod
    def from_env(cls, config_file: Path | None = None) -> Config:
        """Load configuration from environment variables.

        Values found in ``config_file`` (a YAML mapping keyed by the same
        variable names) take precedence over the environment.

        Environment Variables:
            TYK_URL: Base URL of the gateway (ce) or dashboard (pro)
            TYK_AUTH: Gateway secret or dashboard user API key
            TYK_ORG: Organisation ID, required in pro mode
            TYK_MODE: One of ce, pro (default: ce)
            TYK_TLS_INSECURE_SKIP_VERIFY: Skip TLS verification (default: false)
            WATCH_NAMESPACE: Comma-separated namespaces to watch (default: all)
            ENABLE_WEBHOOKS: Whether admission webhooks are served (default: true)
            RELOAD_ENABLED: Ask the gateway to hot reload after syncs (default: true)
            WORKER_COUNT: Number of concurrent reconcile workers (default: 1)
            REQUEUE_AFTER_SECONDS: Delay before retrying a failed reconcile (default: 5)
            REQUEST_TIMEOUT_SECONDS: Timeout for each remote API call (default: 30)
        """
        values: dict[str, str] = dict(os.environ)
        if config_file is not None:
            values.update(load_config_file(config_file))
        return cls.from_mapping(values)

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> Config:
        """Build a configuration from a flat mapping of variable names."""

        def get_int(key: str, default: int) -> int:
            value = values.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = values.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_mode(value: str | None) -> OperatorMode:
            if not value:
                return OperatorMode.CE
            try:
                return OperatorMode(value.lower())
            except ValueError as e:
                valid = [m.value for m in OperatorMode]
                raise ConfigurationError(f"TYK_MODE must be one of {valid}: {value}") from e

        raw_namespaces = values.get("WATCH_NAMESPACE", "")
        namespaces = tuple(ns.strip() for ns in raw_namespaces.split(",") if ns.strip())

        return cls(
            url=values.get("TYK_URL", "").rstrip("/"),
            auth=values.get("TYK_AUTH", ""),
            org=values.get("TYK_ORG", ""),
            mode=get_mode(values.get("TYK_MODE")),
            insecure_skip_verify=get_bool("TYK_TLS_INSECURE_SKIP_VERIFY", False),
            namespaces=namespaces,
            enable_webhooks=get_bool("ENABLE_WEBHOOKS", True),
            reload_enabled=get_bool("RELOAD_ENABLED", True),
            worker_count=get_int("WORKER_COUNT", DEFAULT_WORKER_COUNT),
            requeue_after_seconds=get_int("REQUEUE_AFTER_SECONDS", DEFAULT_REQUEUE_AFTER_SECONDS),
            request_timeout_seconds=get_int(
                "REQUEST_TIMEOUT_SECONDS", DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
        )


def load_config_file(path: Path) -> dict[str, str]:
    """Load a YAML configuration file into a flat string mapping.

    Raises:
        ConfigurationError: If the file is missing, too large, or not a mapping.
    """
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ConfigurationError(f"Failed to stat config file {path}: {e}") from e

    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise ConfigurationError(
            f"Config file exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        raw: Any = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"Failed to read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file must contain a YAML mapping: {path}")

    result: dict[str, str] = {}
    for key, value in raw.items():
        if isinstance(value, bool):
            result[str(key)] = "true" if value else "false"
        elif isinstance(value, list):
            result[str(key)] = ",".join(str(v) for v in value)
        elif value is not None:
            result[str(key)] = str(value)
    return result
