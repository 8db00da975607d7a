"""
Tests for PluginReconciler: unmanaged detection, quarantine and installation.
"""

import io
import zipfile

import pytest

from errors import FilesystemError
from plugin_reconciler import PluginReconciler, detect_archive_format
from tests.conftest import FIXED_NOW, make_mod_folder, make_zip_bytes, package_zip


# ── helpers ──────────────────────────────────────────────────────────────────

@pytest.fixture
def dirs(tmp_path):
    """Return (plugins_dir, backup_dir); only the plugins directory exists."""
    plugins = tmp_path / "BepInEx" / "plugins"
    plugins.mkdir(parents=True)
    return plugins, tmp_path / "BepInEx" / "mod-backup"


def make_reconciler(plugins_dir, backup_dir):
    return PluginReconciler(plugins_dir, backup_dir, clock=lambda: FIXED_NOW)


# ── inspection ───────────────────────────────────────────────────────────────

def test_list_unmanaged_ignores_managed_and_plain_files(dirs):
    plugins, backup = dirs
    make_mod_folder(plugins, "Advize-PlantEverything-1.20.0")
    make_mod_folder(plugins, "Someone-HandInstalled-0.3.1")
    (plugins / "loose.dll").write_bytes(b"dll")
    reconciler = make_reconciler(plugins, backup)

    assert reconciler.list_unmanaged({"Advize-PlantEverything-1.20.0"}) == {
        "Someone-HandInstalled-0.3.1"
    }


def test_list_unmanaged_without_plugins_dir(tmp_path):
    reconciler = make_reconciler(tmp_path / "missing", tmp_path / "backup")
    assert reconciler.list_unmanaged(set()) == set()


def test_is_installed_requires_non_empty_folder(dirs):
    plugins, backup = dirs
    reconciler = make_reconciler(plugins, backup)

    assert not reconciler.is_installed("Advize", "PlantEverything", "1.20.0")
    (plugins / "Advize-PlantEverything-1.20.0").mkdir()
    assert not reconciler.is_installed("Advize", "PlantEverything", "1.20.0")
    (plugins / "Advize-PlantEverything-1.20.0" / "manifest.json").write_text("{}")
    assert reconciler.is_installed("Advize", "PlantEverything", "1.20.0")


# ── quarantine ───────────────────────────────────────────────────────────────

def test_quarantine_moves_folder_and_creates_backup_dir(dirs):
    plugins, backup = dirs
    folder = make_mod_folder(plugins, "Someone-HandInstalled-0.3.1", content="edited")
    reconciler = make_reconciler(plugins, backup)

    dest = reconciler.quarantine(folder)

    assert dest == backup / "Someone-HandInstalled-0.3.1"
    assert not folder.exists()
    assert (dest / "settings.cfg").read_text() == "edited"


def test_quarantine_keeps_older_backup_with_same_name(dirs):
    plugins, backup = dirs
    make_mod_folder(backup, "Advize-PlantEverything-1.20.0", content="old edits")
    folder = make_mod_folder(plugins, "Advize-PlantEverything-1.20.0", content="new edits")
    reconciler = make_reconciler(plugins, backup)

    reconciler.quarantine(folder)

    assert (backup / "Advize-PlantEverything-1.20.0" / "settings.cfg").read_text() == "new edits"
    aside = backup / "Advize-PlantEverything-1.20.0.20261019T030000Z"
    assert (aside / "settings.cfg").read_text() == "old edits"


def test_quarantine_missing_folder_is_filesystem_error(dirs):
    plugins, backup = dirs
    reconciler = make_reconciler(plugins, backup)

    with pytest.raises(FilesystemError, match="Could not move"):
        reconciler.quarantine(plugins / "Ghost-Mod-1.0.0")


def test_replace_version_moves_every_version_of_the_package(dirs):
    plugins, backup = dirs
    make_mod_folder(plugins, "Advize-PlantEverything-1.19.2")
    make_mod_folder(plugins, "Advize-PlantEverything-1.20.0")
    make_mod_folder(plugins, "Advize-PlantEverythingPlus-2.0.0")
    make_mod_folder(plugins, "Azumatt-AzuCraftyBoxes-1.8.3")
    reconciler = make_reconciler(plugins, backup)

    moved = reconciler.replace_version("Advize", "PlantEverything")

    assert sorted(p.name for p in moved) == [
        "Advize-PlantEverything-1.19.2",
        "Advize-PlantEverything-1.20.0",
    ]
    assert sorted(p.name for p in plugins.iterdir()) == [
        "Advize-PlantEverythingPlus-2.0.0",
        "Azumatt-AzuCraftyBoxes-1.8.3",
    ]


# ── install ──────────────────────────────────────────────────────────────────

def test_install_extracts_into_versioned_folder(dirs):
    plugins, backup = dirs
    reconciler = make_reconciler(plugins, backup)

    target = reconciler.install(
        "Advize", "PlantEverything", "1.21.0", package_zip("PlantEverything", "1.21.0")
    )

    assert target == plugins / "Advize-PlantEverything-1.21.0"
    assert (target / "manifest.json").exists()
    assert (target / "plugins" / "PlantEverything.dll").read_bytes() == b"MZ1.21.0"
    assert reconciler.is_installed("Advize", "PlantEverything", "1.21.0")


def test_install_normalizes_backslash_paths(dirs):
    plugins, backup = dirs
    reconciler = make_reconciler(plugins, backup)
    archive = make_zip_bytes({"plugins\\Windows.dll": b"dll", "manifest.json": "{}"})

    target = reconciler.install("Some", "Windows", "1.0.0", archive)

    assert (target / "plugins" / "Windows.dll").exists()


def test_install_corrupt_archive_leaves_nothing_behind(dirs):
    plugins, backup = dirs
    reconciler = make_reconciler(plugins, backup)

    with pytest.raises(FilesystemError, match="not a supported archive"):
        reconciler.install("Advize", "PlantEverything", "1.21.0", b"<html>rate limited</html>")

    assert list(plugins.iterdir()) == []
    assert [p.name for p in plugins.parent.iterdir()] == ["plugins"]


def test_install_truncated_zip_leaves_nothing_behind(dirs):
    plugins, backup = dirs
    reconciler = make_reconciler(plugins, backup)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("plugins/Big.dll", b"x" * 10000)
    data = bytearray(buf.getvalue())
    # Corrupt the compressed payload but keep the central directory intact
    data[40:60] = b"\xff" * 20

    with pytest.raises(FilesystemError):
        reconciler.install("Big", "Mod", "1.0.0", bytes(data))

    assert list(plugins.iterdir()) == []


def test_install_empty_archive_is_filesystem_error(dirs):
    plugins, backup = dirs
    reconciler = make_reconciler(plugins, backup)

    with pytest.raises(FilesystemError, match="empty"):
        reconciler.install("Empty", "Mod", "1.0.0", make_zip_bytes({}))
    assert list(plugins.iterdir()) == []


def test_install_refuses_existing_target(dirs):
    plugins, backup = dirs
    make_mod_folder(plugins, "Advize-PlantEverything-1.21.0")
    reconciler = make_reconciler(plugins, backup)

    with pytest.raises(FilesystemError, match="already exists"):
        reconciler.install(
            "Advize", "PlantEverything", "1.21.0", package_zip("PlantEverything", "1.21.0")
        )


def test_cleanup_scratch_removes_leftovers(dirs):
    plugins, backup = dirs
    leftover = plugins.parent / ".modsync-abc123"
    (leftover / "extract").mkdir(parents=True)
    reconciler = make_reconciler(plugins, backup)

    assert reconciler.cleanup_scratch() == 1
    assert not leftover.exists()


def test_detect_archive_format(tmp_path):
    zip_path = tmp_path / "pkg"
    zip_path.write_bytes(make_zip_bytes({"a.txt": "a"}))
    junk_path = tmp_path / "junk"
    junk_path.write_bytes(b"not an archive")

    assert detect_archive_format(zip_path) == "zip"
    assert detect_archive_format(junk_path) is None
