"""Configuration management for the user management service."""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

from .database import resolve_database_path

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_LOG_LEVEL = "info"

_LOG_LEVELS = {"critical", "error", "warning", "info", "debug"}


@dataclass(frozen=True)
class ServiceSettings:
    """Runtime settings for the HTTP service."""

    database_path: Path
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = DEFAULT_LOG_LEVEL

    def merged(self, data: Dict[str, object], base_path: Path | None = None) -> "ServiceSettings":
        """Return a copy overlaid with values from a parsed YAML document."""
        database = _section(data, "database")
        server = _section(data, "server")
        logging_section = _section(data, "logging")

        updated = self
        if database.get("path"):
            raw_path = Path(str(database["path"])).expanduser()
            if not raw_path.is_absolute() and base_path is not None:
                raw_path = base_path / raw_path
            updated = replace(updated, database_path=raw_path.resolve(strict=False))
        if server.get("host"):
            updated = replace(updated, host=str(server["host"]))
        if server.get("port") is not None:
            updated = replace(updated, port=_parse_port(server["port"], "server.port"))
        if logging_section.get("level"):
            updated = replace(updated, log_level=_parse_log_level(logging_section["level"], "logging.level"))
        return updated


def _section(data: Dict[str, object], key: str) -> Dict[str, object]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Configuration section '{key}' must be a mapping")
    return value


def _parse_port(value: object, key: str) -> int:
    try:
        port = int(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"Invalid value for {key}: {value!r}") from exc
    if not 0 < port < 65536:
        raise ValueError(f"Invalid value for {key}: {value!r}")
    return port


def _parse_log_level(value: object, key: str) -> str:
    level = str(value).strip().lower()
    if level not in _LOG_LEVELS:
        raise ValueError(f"Invalid value for {key}: {value!r}")
    return level


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "service.yaml").resolve(strict=False)
    return candidate


def load_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ServiceSettings:
    """Build settings from defaults, an optional YAML file and the environment.

    Environment variables take precedence over the file.  A missing file is
    not an error; an explicitly requested one that does not exist is.
    """
    env = os.environ if environ is None else environ

    explicit = config_path is not None or bool(env.get("USERS_CONFIG"))
    path = config_path or resolve_config_path(env.get("USERS_CONFIG"))

    settings = ServiceSettings(database_path=resolve_database_path(None))
    if path.is_file():
        with path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")
        settings = settings.merged(raw, base_path=path.parent)
    elif explicit:
        raise ValueError(f"Configuration file {path} does not exist")

    if env.get("USERS_DB_PATH"):
        settings = replace(settings, database_path=resolve_database_path(env["USERS_DB_PATH"]))
    if env.get("USERS_HOST"):
        settings = replace(settings, host=env["USERS_HOST"].strip())
    if env.get("USERS_PORT"):
        settings = replace(settings, port=_parse_port(env["USERS_PORT"], "USERS_PORT"))
    if env.get("USERS_LOG_LEVEL"):
        settings = replace(settings, log_level=_parse_log_level(env["USERS_LOG_LEVEL"], "USERS_LOG_LEVEL"))

    return settings


__all__ = ["ServiceSettings", "load_settings", "resolve_config_path"]
