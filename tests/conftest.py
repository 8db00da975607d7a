"""
Shared fixtures and helpers for the Valheim Mod Sync test suite.
"""

import io
import json
import logging
import zipfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from errors import NetworkError
from registry_client import parse_package_info
from sync_settings import SyncSettings

FIXED_NOW = datetime(2026, 10, 19, 3, 0, 0, tzinfo=timezone.utc)
FIXED_STAMP = "2026-10-19T03:00:00Z"


def make_zip_bytes(members: dict[str, bytes | str]) -> bytes:
    """Build a zip archive in memory, like a Thunderstore package download."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for member, data in members.items():
            zf.writestr(member, data)
    return buf.getvalue()


def package_zip(name: str, version: str) -> bytes:
    return make_zip_bytes(
        {
            "manifest.json": json.dumps({"name": name, "version_number": version}),
            "README.md": f"# {name}\n",
            f"plugins/{name}.dll": b"MZ" + version.encode("ascii"),
        }
    )


def write_manifest(path: Path, mods: list[dict]) -> Path:
    path.write_text(json.dumps({"mods": mods}, indent=2), encoding="utf-8")
    return path


def read_manifest(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


def make_mod_folder(plugins_dir: Path, folder_name: str, content: str = "config") -> Path:
    folder = plugins_dir / folder_name
    folder.mkdir(parents=True)
    (folder / "settings.cfg").write_text(content, encoding="utf-8")
    return folder


class FakeRegistry:
    """Stands in for RegistryClient; records every call it receives."""

    def __init__(self):
        # Raw package API payloads, parsed on every fetch like the real client
        self.packages: dict[tuple[str, str], dict] = {}
        self.archives: dict[str, bytes] = {}
        self.failing_downloads: set[str] = set()
        self.fetches: list[tuple[str, str]] = []
        self.downloads: list[str] = []

    def publish(self, namespace, name, version, *, deprecated=False, archive=None):
        url = f"https://thunderstore.test/package/download/{namespace}/{name}/{version}/"
        self.packages[(namespace, name)] = {
            "namespace": namespace,
            "name": name,
            "is_deprecated": deprecated,
            "latest": {"version_number": version, "download_url": url},
        }
        self.archives[url] = archive if archive is not None else package_zip(name, version)
        return url

    def fetch_package_info(self, namespace, name):
        self.fetches.append((namespace, name))
        try:
            payload = self.packages[(namespace, name)]
        except KeyError:
            raise NetworkError(f"404 Not Found for {namespace}-{name}") from None
        return parse_package_info(payload)

    def download(self, url):
        self.downloads.append(url)
        if url in self.failing_downloads:
            raise NetworkError(f"Failed to download {url}: 503 Service Unavailable")
        return self.archives[url]


@pytest.fixture
def server_root(tmp_path):
    """Return a fresh installation root with BepInEx/plugins and the framework marker."""
    root = tmp_path / "valheim-server"
    (root / "BepInEx" / "plugins").mkdir(parents=True)
    core = root / "BepInEx" / "core"
    core.mkdir()
    (core / "BepInEx.dll").write_bytes(b"dll")
    return root


@pytest.fixture
def settings(server_root, tmp_path):
    return SyncSettings(
        installation_root=server_root,
        manifest_path=tmp_path / "mods.json",
        log_file=tmp_path / "logs" / "valheim-update.log",
    )


@pytest.fixture
def fake_registry():
    return FakeRegistry()


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
