"""
Filesystem side of the mod sync: the BepInEx plugins directory and its backup.

Every installed package lives in its own folder, ``{namespace}-{name}-{version}``,
directly under the plugins directory.  Folders are never deleted: anything
that has to leave the plugins directory (unmanaged, superseded or deprecated
mods) is moved verbatim into the backup directory, where hand-edited mod
configuration can be recovered from.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Callable

import py7zr
import rarfile

from errors import FilesystemError
from mod_manifest import mod_folder_name, utc_now

ARCHIVE_FORMATS = ("zip", "7z", "rar")
SCRATCH_PREFIX = ".modsync-"

_log = logging.getLogger(__name__)


# ── Archive handling ──────────────────────────────────────────────────


def detect_archive_format(filepath: Path) -> str | None:
    """Identify an archive by its content; download URLs carry no extension."""
    if zipfile.is_zipfile(filepath):
        return "zip"
    if py7zr.is_7zfile(filepath):
        return "7z"
    if rarfile.is_rarfile(filepath):
        return "rar"
    return None


def _extract_archive(filepath: Path, fmt: str, dest: Path):
    if fmt == "zip":
        with zipfile.ZipFile(filepath, "r") as zf:
            for info in zf.infolist():
                # Archives built on Windows sometimes use backslash separators
                info.filename = info.filename.replace("\\", "/")
                zf.extract(info, dest)
    elif fmt == "7z":
        with py7zr.SevenZipFile(filepath, "r") as sz:
            sz.extractall(path=dest)
    elif fmt == "rar":
        with rarfile.RarFile(filepath, "r") as rf:
            rf.extractall(dest)
    else:
        raise ValueError(f"Unsupported archive format: {fmt}")


# ── Reconciler ────────────────────────────────────────────────────────


class PluginReconciler:
    """Inspects and mutates the plugins directory.

    ``plugins_dir`` holds one folder per installed package version;
    ``backup_dir`` receives every folder moved out of it.
    """

    def __init__(
        self,
        plugins_dir: str | Path,
        backup_dir: str | Path,
        clock: Callable[[], datetime] | None = None,
    ):
        self.plugins_dir = Path(plugins_dir)
        self.backup_dir = Path(backup_dir)
        self._clock = clock or utc_now

    # ── Inspection ────────────────────────────────────────────────────

    def installed_folders(self) -> list[Path]:
        if not self.plugins_dir.is_dir():
            return []
        return sorted(p for p in self.plugins_dir.iterdir() if p.is_dir())

    def list_unmanaged(self, managed_folder_names: set[str]) -> set[str]:
        """Top-level folders of the plugins directory that no entry accounts for."""
        return {p.name for p in self.installed_folders() if p.name not in managed_folder_names}

    def folder_path(self, namespace: str, name: str, version: str) -> Path:
        return self.plugins_dir / mod_folder_name(namespace, name, version)

    def is_installed(self, namespace: str, name: str, version: str) -> bool:
        """The expected folder exists and is not empty."""
        folder = self.folder_path(namespace, name, version)
        if not folder.is_dir():
            return False
        return any(folder.iterdir())

    # ── Quarantine ────────────────────────────────────────────────────

    def _set_aside_existing_backup(self, dest: Path):
        stamp = self._clock().strftime("%Y%m%dT%H%M%SZ")
        aside = dest.with_name(f"{dest.name}.{stamp}")
        counter = 1
        while aside.exists():
            aside = dest.with_name(f"{dest.name}.{stamp}.{counter}")
            counter += 1
        dest.rename(aside)
        _log.info("    Older backup %s kept as %s", dest.name, aside.name)

    def quarantine(self, folder_path: str | Path) -> Path:
        """Move a folder into the backup directory, keeping its name."""
        folder_path = Path(folder_path)
        dest = self.backup_dir / folder_path.name
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            if dest.exists():
                self._set_aside_existing_backup(dest)
            # Same filesystem: a plain rename. Otherwise shutil falls back to copy + remove.
            shutil.move(str(folder_path), str(dest))
        except OSError as exc:
            raise FilesystemError(
                f"Could not move {folder_path.name} to {self.backup_dir}: {exc}"
            ) from exc
        _log.info("    Moved %s to %s/", folder_path.name, self.backup_dir.name)
        return dest

    def replace_version(self, namespace: str, name: str) -> list[Path]:
        """Quarantine every installed version of a package."""
        prefix = f"{namespace}-{name}-"
        moved = []
        for folder in self.installed_folders():
            if folder.name.startswith(prefix) and len(folder.name) > len(prefix):
                moved.append(self.quarantine(folder))
        return moved

    # ── Install ───────────────────────────────────────────────────────

    def install(self, namespace: str, name: str, version: str, archive_bytes: bytes) -> Path:
        """Extract a package archive into ``{namespace}-{name}-{version}``.

        The archive is unpacked in a scratch directory beside the plugins
        directory and renamed into place only once extraction succeeded.
        """
        target = self.folder_path(namespace, name, version)
        if target.exists():
            raise FilesystemError(f"Install target already exists: {target.name}")

        try:
            self.plugins_dir.mkdir(parents=True, exist_ok=True)
            scratch_parent = self.plugins_dir.parent
            with tempfile.TemporaryDirectory(dir=scratch_parent, prefix=SCRATCH_PREFIX) as tmpdir:
                tmppath = Path(tmpdir)
                archive_path = tmppath / "package.archive"
                archive_path.write_bytes(archive_bytes)

                fmt = detect_archive_format(archive_path)
                if fmt is None:
                    raise FilesystemError(
                        f"Downloaded package for {namespace}-{name} is not a supported archive"
                    )

                extract_dir = tmppath / "extract"
                extract_dir.mkdir()
                _log.info("  Extracting %s archive...", fmt)
                try:
                    _extract_archive(archive_path, fmt, extract_dir)
                except Exception as exc:
                    raise FilesystemError(
                        f"Failed to extract {namespace}-{name} {version}: {exc}"
                    ) from exc

                if not any(extract_dir.iterdir()):
                    raise FilesystemError(f"Archive for {namespace}-{name} {version} is empty")

                try:
                    shutil.move(str(extract_dir), str(target))
                except OSError:
                    if target.exists():
                        shutil.rmtree(target, ignore_errors=True)
                    raise
        except FilesystemError:
            raise
        except OSError as exc:
            raise FilesystemError(
                f"Failed to install {namespace}-{name} {version}: {exc}"
            ) from exc

        _log.info("  Mod installed successfully: %s v%s", name, version)
        return target

    def cleanup_scratch(self) -> int:
        """Remove scratch directories left behind by a killed run."""
        parent = self.plugins_dir.parent
        if not parent.is_dir():
            return 0
        removed = 0
        for leftover in parent.glob(f"{SCRATCH_PREFIX}*"):
            if leftover.is_dir():
                shutil.rmtree(leftover, ignore_errors=True)
                removed += 1
                _log.info("Removed leftover scratch directory %s", leftover.name)
        return removed
