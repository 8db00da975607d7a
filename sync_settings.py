"""
Configuration for the Valheim mod sync engine.

Settings are layered, lowest precedence first:

    1. built-in defaults (below)
    2. a JSON config file passed with ``--config``
    3. ``<config stem>.local.json`` next to that file, for deployment-specific
       values that should stay out of version control
    4. command-line flags

Example config file:

{
    "installation_root": "/opt/valheim-server",
    "manifest_path": "/root/mods.json",
    "api_delay_seconds": 1,
    "download_delay_seconds": 4
}

The two delays have hard lower bounds. Thunderstore is a shared community
service; values below the bound are raised to it with a warning.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from errors import ConfigError

APP_VERSION = "1.0.0"

DEFAULT_INSTALLATION_ROOT = Path("/opt/valheim-server")
DEFAULT_REGISTRY_BASE_URL = "https://thunderstore.io/api/experimental/package"
DEFAULT_LOG_FILE = Path("/var/log/valheim-update.log")

MIN_API_DELAY_SECONDS = 1.0
MIN_DOWNLOAD_DELAY_SECONDS = 2.0

FRAMEWORK_MARKER_RELPATH = Path("BepInEx") / "core" / "BepInEx.dll"
PLUGINS_RELPATH = Path("BepInEx") / "plugins"
BACKUP_DIRNAME = "mod-backup"

_log = logging.getLogger(__name__)


class SyncSettings(BaseModel):
    """Validated settings shared by every component of a sync run.

    ``plugins_dir``, ``backup_dir`` and ``framework_marker`` default to paths
    derived from ``installation_root`` when left unset.
    """

    model_config = ConfigDict(extra="forbid")

    installation_root: Path = DEFAULT_INSTALLATION_ROOT
    plugins_dir: Path | None = None
    backup_dir: Path | None = None
    framework_marker: Path | None = None
    manifest_path: Path = Path("~/mods.json")
    registry_base_url: str = DEFAULT_REGISTRY_BASE_URL
    api_delay_seconds: float = 1.0
    download_delay_seconds: float = 4.0
    request_timeout: float | None = 60.0
    recheck_deprecated: bool = False
    log_file: Path = DEFAULT_LOG_FILE
    user_agent: str = f"valheim-mod-sync/{APP_VERSION}"

    @field_validator("registry_base_url")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"registry_base_url must be an http(s) URL, got {v!r}")
        return v

    @field_validator("api_delay_seconds")
    @classmethod
    def _bound_api_delay(cls, v: float) -> float:
        if v < MIN_API_DELAY_SECONDS:
            _log.warning(
                "api_delay_seconds=%s is below the minimum of %s, using the minimum",
                v, MIN_API_DELAY_SECONDS,
            )
            return MIN_API_DELAY_SECONDS
        return v

    @field_validator("download_delay_seconds")
    @classmethod
    def _bound_download_delay(cls, v: float) -> float:
        if v < MIN_DOWNLOAD_DELAY_SECONDS:
            _log.warning(
                "download_delay_seconds=%s is below the minimum of %s, using the minimum",
                v, MIN_DOWNLOAD_DELAY_SECONDS,
            )
            return MIN_DOWNLOAD_DELAY_SECONDS
        return v

    @field_validator("request_timeout")
    @classmethod
    def _positive_timeout(cls, v: float | None) -> float | None:
        if v is not None and v <= 0:
            raise ValueError("request_timeout must be positive or null")
        return v

    @model_validator(mode="after")
    def _derive_paths(self) -> SyncSettings:
        # Defaults skip field validation, so "~" is expanded here
        self.installation_root = self.installation_root.expanduser()
        self.manifest_path = self.manifest_path.expanduser()
        self.log_file = self.log_file.expanduser()
        if self.plugins_dir is None:
            self.plugins_dir = self.installation_root / PLUGINS_RELPATH
        else:
            self.plugins_dir = self.plugins_dir.expanduser()
        if self.backup_dir is None:
            self.backup_dir = self.plugins_dir.parent / BACKUP_DIRNAME
        else:
            self.backup_dir = self.backup_dir.expanduser()
        if self.framework_marker is None:
            self.framework_marker = self.installation_root / FRAMEWORK_MARKER_RELPATH
        else:
            self.framework_marker = self.framework_marker.expanduser()
        # A backup inside plugins would itself be scanned as an unmanaged mod
        if self.backup_dir.resolve().is_relative_to(self.plugins_dir.resolve()):
            raise ValueError("backup_dir must differ from plugins_dir and lie outside it")
        return self


def _read_json_object(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return data


def local_override_path(config_path: Path) -> Path:
    """``settings.json`` -> ``settings.local.json`` in the same directory."""
    return config_path.with_name(f"{config_path.stem}.local{config_path.suffix or '.json'}")


def load_settings(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> SyncSettings:
    """Build ``SyncSettings`` from defaults, config files and overrides.

    ``None`` values in ``overrides`` are ignored so unset CLI flags do not
    mask file values. Raises ``ConfigError`` on any invalid input.
    """
    values: dict[str, Any] = {}

    if config_path is not None:
        config_path = Path(config_path).expanduser()
        if not config_path.is_file():
            raise ConfigError(f"Config file not found: {config_path}")
        values.update(_read_json_object(config_path))

        local_path = local_override_path(config_path)
        if local_path.is_file():
            _log.info("Applying local config overrides from %s", local_path)
            values.update(_read_json_object(local_path))

    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value

    try:
        return SyncSettings.model_validate(values)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
