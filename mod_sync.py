"""
Valheim Mod Sync - reconciliation of mods.json, Thunderstore and BepInEx/plugins.

Workflow of one run:
    1. check_environment() verifies the installation root and framework marker
    2. the manifest is loaded once; folders it does not account for are
       moved out of the plugins directory
    3. every entry is checked against the registry and brought up to date,
       one entry at a time

A failing entry is logged and skipped; only an unreadable manifest or an
unusable installation root aborts the run.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from errors import ConfigError, FilesystemError, NetworkError, ParseError
from mod_manifest import ManifestStore, ModEntry, ModManifest
from plugin_reconciler import PluginReconciler
from registry_client import RegistryClient, RemotePackageInfo
from sync_settings import SyncSettings

_log = logging.getLogger(__name__)


def log_section(title: str):
    _log.info("============================================")
    _log.info(title)
    _log.info("============================================")


class SyncAction(str, Enum):
    FETCH_FAILED = "fetch_failed"
    DEPRECATE = "deprecate"
    UP_TO_DATE = "up_to_date"
    INSTALL = "install"
    SKIP_DEPRECATED = "skip_deprecated"


def decide_action(
    entry: ModEntry,
    info: RemotePackageInfo | None,
    installed: bool,
) -> SyncAction:
    """Pick what to do with one manifest entry.

    ``installed`` tells whether ``{namespace}-{name}-{latest_version}`` is
    present in the plugins directory.  A missing folder forces a reinstall
    even when the manifest already records the latest version.
    """
    if info is None:
        return SyncAction.FETCH_FAILED
    if info.is_deprecated:
        return SyncAction.DEPRECATE
    if entry.deprecated:
        # Deprecation is terminal; an upstream un-deprecation is not followed.
        return SyncAction.SKIP_DEPRECATED
    if info.latest_version == entry.version and installed:
        return SyncAction.UP_TO_DATE
    return SyncAction.INSTALL


@dataclass
class EntryOutcome:
    namespace: str
    name: str
    action: SyncAction
    version: str
    succeeded: bool = True
    error: str | None = None
    backed_up: list[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        return f"{self.namespace}-{self.name}"


@dataclass
class SyncReport:
    unmanaged_quarantined: list[str] = field(default_factory=list)
    outcomes: list[EntryOutcome] = field(default_factory=list)

    def count(self, action: SyncAction) -> int:
        return sum(1 for o in self.outcomes if o.action == action and o.succeeded)

    @property
    def failures(self) -> list[EntryOutcome]:
        return [o for o in self.outcomes if not o.succeeded]

    def summary(self) -> str:
        return (
            f"{len(self.outcomes)} mod(s): "
            f"{self.count(SyncAction.INSTALL)} installed/updated, "
            f"{self.count(SyncAction.UP_TO_DATE)} up to date, "
            f"{self.count(SyncAction.DEPRECATE)} deprecated, "
            f"{self.count(SyncAction.SKIP_DEPRECATED)} skipped as deprecated, "
            f"{len(self.failures)} failed; "
            f"{len(self.unmanaged_quarantined)} unmanaged folder(s) moved to backup"
        )


@dataclass
class EnvironmentStatus:
    installation_root: Path
    installation_root_writable: bool
    framework_present: bool
    plugins_dir: Path


def check_environment(settings: SyncSettings) -> EnvironmentStatus:
    """Verify what the engine needs from the server installation.

    The installation root must exist and be writable.  The BepInEx marker is
    only looked at, never created: without it the server will not load the
    mods, but syncing them is still meaningful.
    """
    root = settings.installation_root
    if not root.is_dir():
        raise ConfigError(f"Installation root does not exist: {root}")
    if not os.access(root, os.W_OK):
        raise ConfigError(f"Installation root is not writable: {root}")

    framework_present = settings.framework_marker.is_file()
    if framework_present:
        _log.info("BepInEx found at %s", settings.framework_marker)
    else:
        _log.warning(
            "WARNING: BepInEx marker not found at %s; mods will be synced but "
            "not loaded until the framework is installed",
            settings.framework_marker,
        )

    try:
        settings.plugins_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigError(f"Could not create plugins directory {settings.plugins_dir}: {exc}") from exc

    return EnvironmentStatus(
        installation_root=root,
        installation_root_writable=True,
        framework_present=framework_present,
        plugins_dir=settings.plugins_dir,
    )


class ModSync:
    """
    Reconciliation controller.

    Collaborators are built from ``settings`` unless injected, which is how
    the tests swap in a fake registry.
    """

    def __init__(
        self,
        settings: SyncSettings,
        store: ManifestStore | None = None,
        registry: RegistryClient | None = None,
        reconciler: PluginReconciler | None = None,
    ):
        self.settings = settings
        self.store = store or ManifestStore(settings.manifest_path)
        self.registry = registry or RegistryClient(settings)
        self.reconciler = reconciler or PluginReconciler(settings.plugins_dir, settings.backup_dir)

    # ── Run ───────────────────────────────────────────────────────────

    def run(self) -> SyncReport:
        log_section("Installing/Updating Mods")
        manifest = self.store.load()
        report = SyncReport()

        self.reconciler.plugins_dir.mkdir(parents=True, exist_ok=True)
        self.reconciler.cleanup_scratch()
        report.unmanaged_quarantined = self.cleanup_unmanaged(manifest)

        if not manifest.mods:
            _log.info("No mods found in %s", self.store.path)
            return report

        _log.info("Found %d mods in configuration", len(manifest.mods))
        for entry in manifest.mods:
            report.outcomes.append(self.sync_entry(entry))

        for failed in report.failures:
            _log.error("FAILED: %s: %s", failed.label, failed.error)
        _log.info("Sync complete: %s", report.summary())
        return report

    def cleanup_unmanaged(self, manifest: ModManifest) -> list[str]:
        _log.info("Checking for unmanaged mods...")
        managed = manifest.managed_folder_names()
        moved = []
        for folder_name in sorted(self.reconciler.list_unmanaged(managed)):
            _log.warning("  WARNING: Unmanaged mod found: %s (not in manifest)", folder_name)
            try:
                self.reconciler.quarantine(self.reconciler.plugins_dir / folder_name)
            except FilesystemError as exc:
                _log.error("  ERROR: %s", exc)
                continue
            moved.append(folder_name)
        if not moved:
            _log.info("  No unmanaged mods found")
        return moved

    # ── Per entry ─────────────────────────────────────────────────────

    def sync_entry(self, entry: ModEntry) -> EntryOutcome:
        ns, name = entry.namespace, entry.name
        _log.info("Processing mod: %s (current version: %s)", entry.label, entry.version)

        if entry.deprecated and not self.settings.recheck_deprecated:
            _log.info("  Marked deprecated since %s, not checking registry", entry.deprecated_date)
            return EntryOutcome(ns, name, SyncAction.SKIP_DEPRECATED, entry.version)

        try:
            info = self.registry.fetch_package_info(ns, name)
        except (NetworkError, ParseError) as exc:
            _log.error("  ERROR: %s", exc)
            return EntryOutcome(
                ns, name, SyncAction.FETCH_FAILED, entry.version, succeeded=False, error=str(exc)
            )

        installed = self.reconciler.is_installed(ns, name, info.latest_version)
        action = decide_action(entry, info, installed)
        outcome = EntryOutcome(ns, name, action, entry.version)

        try:
            if action == SyncAction.DEPRECATE:
                outcome.backed_up = self._deprecate(entry)
            elif action == SyncAction.SKIP_DEPRECATED:
                _log.warning(
                    "  %s is no longer deprecated upstream; it stays deprecated here. "
                    "Clear the flag in the manifest to reinstall it.",
                    entry.label,
                )
            elif action == SyncAction.UP_TO_DATE:
                _log.info("  Mod is up to date")
            else:
                outcome.backed_up = self._install(entry, info)
                outcome.version = info.latest_version
        except (NetworkError, FilesystemError) as exc:
            _log.error("  ERROR: %s: %s", entry.label, exc)
            outcome.succeeded = False
            outcome.error = str(exc)
        return outcome

    def _deprecate(self, entry: ModEntry) -> list[str]:
        _log.warning("  WARNING: Mod is deprecated on Thunderstore")
        _log.warning("  Backing up and removing deprecated mod...")
        moved = self.reconciler.replace_version(entry.namespace, entry.name)
        updated = self.store.apply_deprecation(entry.namespace, entry.name)
        _log.info("  Marked %s as deprecated (%s)", entry.label, updated.deprecated_date)
        return [p.name for p in moved]

    def _install(self, entry: ModEntry, info: RemotePackageInfo) -> list[str]:
        _log.info("  Latest version: %s", info.latest_version)
        _log.info("  Installed version: %s", entry.version)
        if info.latest_version != entry.version:
            _log.info("  Version mismatch! Downloading update...")
        else:
            _log.info("  Mod not installed. Downloading...")

        # Download before touching the plugins directory, so a network
        # failure leaves the current version in place.
        archive = self.registry.download(info.download_url)

        _log.info("  Backing up and removing old versions...")
        moved = self.reconciler.replace_version(entry.namespace, entry.name)
        self.reconciler.install(entry.namespace, entry.name, info.latest_version, archive)

        self.store.apply_version_update(entry.namespace, entry.name, info.latest_version)
        _log.info("  Updated %s to version %s in manifest", entry.label, info.latest_version)
        return [p.name for p in moved]
