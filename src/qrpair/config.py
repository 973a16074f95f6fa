"""Configuration management for qrpair."""

import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml


DEFAULT_VERIFY_PATH = "/api/mobile/verify"


def default_device_name() -> str:
    """Name shown for this device in the web application."""
    return f"qrpair on {socket.gethostname()}"


@dataclass
class HttpConfig:
    """HTTP client configuration."""

    request_timeout: float = 10.0  # seconds
    verify_path: str = DEFAULT_VERIFY_PATH


@dataclass
class StorageConfig:
    """Credential storage configuration."""

    directory: str = "~/.config/qrpair"


@dataclass
class Config:
    """Client configuration."""

    device_name: str = field(default_factory=default_device_name)
    log_level: str = "INFO"
    log_file: str | None = None
    http: HttpConfig = field(default_factory=HttpConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return Path.home() / ".config" / "qrpair" / "config.yaml"


def _default_file_reader(path: Path) -> dict[str, Any] | None:
    """Default file reader that loads YAML from disk."""
    if not path.exists():
        return None
    try:
        content = path.read_text()
        if not content.strip():
            return None
        return yaml.safe_load(content)
    except yaml.YAMLError:
        return None


def load_config(
    path: Path | None = None,
    file_reader: Callable[[Path], dict[str, Any] | None] | None = None,
) -> Config:
    """Load configuration from file.

    Args:
        path: Path to config file. If None, uses default path.
        file_reader: Injectable file reader for testing.

    Returns:
        Config object with values from file or defaults.
    """
    config_path = get_config_path(path)
    reader = file_reader or _default_file_reader

    data = reader(config_path)

    if not isinstance(data, dict):
        return Config()

    http_data = data.get("http") or {}
    http_config = HttpConfig(
        request_timeout=float(
            http_data.get("request_timeout", HttpConfig.request_timeout)
        ),
        verify_path=http_data.get("verify_path", HttpConfig.verify_path),
    )

    storage_data = data.get("storage") or {}
    storage_config = StorageConfig(
        directory=storage_data.get("directory", StorageConfig.directory),
    )

    return Config(
        device_name=data.get("device_name") or default_device_name(),
        log_level=data.get("log_level", Config.log_level),
        log_file=data.get("log_file", Config.log_file),
        http=http_config,
        storage=storage_config,
    )
