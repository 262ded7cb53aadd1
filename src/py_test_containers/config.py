"""Configuration for test container sessions."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from py_test_containers.errors import ConfigurationError

DEFAULT_REAPER_IMAGE = "testcontainers/ryuk:0.9.0"
DEFAULT_DOCKER_SOCKET = "/var/run/docker.sock"
DEFAULT_SESSION_LABEL = "org.testcontainers.session-id"

# Reaper control port inside its container
REAPER_PORT = 8080


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def _parse_seconds(name: str, value: Any) -> float:
    try:
        seconds = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be a number of seconds, got {value!r}") from e
    if seconds <= 0:
        raise ConfigurationError(f"{name} must be positive, got {seconds}")
    return seconds


@dataclass
class ManagerConfig:
    """Configuration for TestContainerManager.

    Loaded from environment variables and/or YAML config files.
    """

    # Reaper
    reaper_image: str = DEFAULT_REAPER_IMAGE
    reaper_privileged: bool = True
    reaper_startup_timeout: float = 30.0

    # Host path of the engine socket, bind-mounted into the reaper
    docker_socket: str = DEFAULT_DOCKER_SOCKET

    # Label carrying the session id on every created resource
    session_label: str = DEFAULT_SESSION_LABEL

    # Timeouts
    request_timeout: float = 30.0
    upload_timeout: float = 300.0
    probe_timeout: float = 5.0

    @classmethod
    def from_env(cls) -> ManagerConfig:
        """Load configuration from environment variables.

        Raises:
            ConfigurationError: If a variable holds an invalid value.
        """
        config = cls()

        if image := os.environ.get("TESTCONTAINERS_RYUK_CONTAINER_IMAGE"):
            config.reaper_image = image
        if privileged := os.environ.get("TESTCONTAINERS_RYUK_PRIVILEGED"):
            config.reaper_privileged = _parse_bool("TESTCONTAINERS_RYUK_PRIVILEGED", privileged)
        if startup := os.environ.get("TESTCONTAINERS_RYUK_STARTUP_TIMEOUT"):
            config.reaper_startup_timeout = _parse_seconds(
                "TESTCONTAINERS_RYUK_STARTUP_TIMEOUT", startup
            )

        if socket := os.environ.get("TESTCONTAINERS_DOCKER_SOCKET_OVERRIDE"):
            config.docker_socket = socket

        if timeout := os.environ.get("TESTCONTAINERS_REQUEST_TIMEOUT"):
            config.request_timeout = _parse_seconds("TESTCONTAINERS_REQUEST_TIMEOUT", timeout)
        if upload := os.environ.get("TESTCONTAINERS_UPLOAD_TIMEOUT"):
            config.upload_timeout = _parse_seconds("TESTCONTAINERS_UPLOAD_TIMEOUT", upload)
        if probe := os.environ.get("TESTCONTAINERS_PROBE_TIMEOUT"):
            config.probe_timeout = _parse_seconds("TESTCONTAINERS_PROBE_TIMEOUT", probe)

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> ManagerConfig:
        """Load configuration from YAML file.

        Raises:
            ConfigurationError: If the file is not a mapping or holds invalid values.
        """
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read config file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")

        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> ManagerConfig:
        """Create config from dictionary."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        config = cls(**data)
        for name in ("reaper_startup_timeout", "request_timeout", "upload_timeout", "probe_timeout"):
            setattr(config, name, _parse_seconds(name, getattr(config, name)))
        if not isinstance(config.reaper_privileged, bool):
            config.reaper_privileged = _parse_bool(
                "reaper_privileged", str(config.reaper_privileged)
            )
        return config
