"""
Mod manifest (``mods.json``) schema and store.

The manifest is the declarative list of Thunderstore packages the server
should run, plus the state the sync engine tracks for each of them:

{
    "mods": [
        {
            "namespace": "Advize",
            "name": "PlantEverything",
            "version": "1.20.0",
            "deprecated": false,
            "versionHistory": [
                {"version": "1.20.0", "installedDate": "2025-11-02T03:00:12Z"},
                {"version": "1.19.2", "installedDate": "2025-09-14T03:00:08Z"}
            ]
        }
    ]
}

``versionHistory`` is most-recent-first and append-only: a version string is
recorded once, the first time it is installed.  ``deprecatedDate`` is written
once, when the registry first reports the package as deprecated.

Keys the engine does not know about (notes, comments) are kept on rewrite.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from errors import ConfigError

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

_log = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """UTC ISO-8601 with a ``Z`` suffix, e.g. ``2025-11-02T03:00:12Z``."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)


def mod_folder_name(namespace: str, name: str, version: str) -> str:
    """Plugins-directory folder name for one installed package version."""
    return f"{namespace}-{name}-{version}"


class VersionRecord(BaseModel):
    """One installed version of a mod and when it was first installed."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    version: str
    installed_date: str = Field(alias="installedDate")


class ModEntry(BaseModel):
    """A single (namespace, name) package tracked by the manifest."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    namespace: str
    name: str
    version: str
    deprecated: bool = False
    deprecated_date: str | None = Field(default=None, alias="deprecatedDate")
    version_history: list[VersionRecord] = Field(default_factory=list, alias="versionHistory")

    @field_validator("namespace", "name", "version")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        if "/" in v or "\\" in v:
            raise ValueError(f"must not contain path separators: {v!r}")
        return v

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    @property
    def label(self) -> str:
        return f"{self.namespace}-{self.name}"

    @property
    def folder_name(self) -> str:
        return mod_folder_name(self.namespace, self.name, self.version)

    def has_version_record(self, version: str) -> bool:
        return any(rec.version == version for rec in self.version_history)

    def record_version(self, version: str, timestamp: str) -> bool:
        """Set the current version; prepend a history record if it is new.

        Returns True when a history record was added.
        """
        self.version = version
        if self.has_version_record(version):
            return False
        self.version_history.insert(0, VersionRecord(version=version, installed_date=timestamp))
        return True

    def mark_deprecated(self, timestamp: str) -> bool:
        """Flag the entry as deprecated. Returns False if it already was."""
        if self.deprecated:
            if self.deprecated_date is None:
                self.deprecated_date = timestamp
            return False
        self.deprecated = True
        self.deprecated_date = timestamp
        return True


class ModManifest(BaseModel):
    """Parsed contents of ``mods.json``."""

    model_config = ConfigDict(extra="allow")

    mods: list[ModEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _no_duplicate_entries(self) -> ModManifest:
        seen = set()
        for entry in self.mods:
            if entry.key in seen:
                raise ValueError(f"Duplicate mod entry: {entry.label!r}")
            seen.add(entry.key)
        return self

    def find(self, namespace: str, name: str) -> ModEntry | None:
        for entry in self.mods:
            if entry.namespace == namespace and entry.name == name:
                return entry
        return None

    def managed_folder_names(self) -> set[str]:
        """Folder names that may legitimately exist in the plugins directory."""
        return {entry.folder_name for entry in self.mods if not entry.deprecated}

    def to_json(self) -> str:
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def parse_manifest(data: str | bytes) -> ModManifest:
    """Parse raw JSON into a ModManifest.

    Raises ``pydantic.ValidationError`` if the data is invalid.
    Raises ``json.JSONDecodeError`` if the data is not valid JSON.
    """
    return ModManifest.model_validate(json.loads(data))


class ManifestStore:
    """Loads ``mods.json`` and applies field-level mutations to it.

    Every mutation re-reads the whole file, changes one entry and writes the
    result back through a temporary file that replaces the original in a
    single rename, so an interrupted run never leaves a truncated manifest.
    Only one writer is expected at a time.
    """

    def __init__(self, path: str | Path, clock: Callable[[], datetime] | None = None):
        self.path = Path(path).expanduser()
        self._clock = clock or utc_now
        self.manifest: ModManifest | None = None

    def load(self) -> ModManifest:
        if not self.path.is_file():
            raise ConfigError(f"Mod manifest not found: {self.path}")
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Could not read mod manifest {self.path}: {exc}") from exc
        try:
            self.manifest = parse_manifest(raw)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Mod manifest {self.path} is not valid JSON: {exc}") from exc
        except ValidationError as exc:
            raise ConfigError(f"Mod manifest {self.path} is malformed: {exc}") from exc
        return self.manifest

    def find_entry(self, namespace: str, name: str) -> ModEntry | None:
        if self.manifest is None:
            self.load()
        return self.manifest.find(namespace, name)

    def now(self) -> str:
        return format_timestamp(self._clock())

    def apply_version_update(
        self,
        namespace: str,
        name: str,
        new_version: str,
        timestamp: str | None = None,
    ) -> ModEntry:
        timestamp = timestamp or self.now()

        def mutate(entry: ModEntry) -> None:
            added = entry.record_version(new_version, timestamp)
            if added:
                _log.info("  Recorded %s version %s in manifest history", entry.label, new_version)

        return self._mutate(namespace, name, mutate)

    def apply_deprecation(
        self,
        namespace: str,
        name: str,
        timestamp: str | None = None,
    ) -> ModEntry:
        timestamp = timestamp or self.now()

        def mutate(entry: ModEntry) -> None:
            if not entry.mark_deprecated(timestamp):
                _log.info("  %s was already marked deprecated", entry.label)

        return self._mutate(namespace, name, mutate)

    def save(self, manifest: ModManifest | None = None):
        if manifest is None:
            manifest = self.manifest
        if manifest is None:
            raise ConfigError("No manifest loaded to save")
        self._write_atomic(manifest.to_json())
        self.manifest = manifest

    def _mutate(self, namespace: str, name: str, mutate: Callable[[ModEntry], None]) -> ModEntry:
        manifest = self.load()
        entry = manifest.find(namespace, name)
        if entry is None:
            raise ConfigError(
                f"Mod {namespace}-{name} is no longer listed in {self.path}"
            )
        mutate(entry)
        self.save(manifest)
        return entry

    def _write_atomic(self, text: str):
        directory = self.path.parent
        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=directory, prefix=f".{self.path.name}.", suffix=".tmp"
            )
        except OSError as exc:
            raise ConfigError(f"Could not write mod manifest {self.path}: {exc}") from exc

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
                fh.flush()
                os.fsync(fh.fileno())
            if self.path.exists():
                shutil.copymode(self.path, tmp_path)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise ConfigError(f"Could not write mod manifest {self.path}: {exc}") from exc
