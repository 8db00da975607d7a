"""
Error kinds raised by the mod sync components.

Only ``ConfigError`` is fatal to a run; the others are raised for a single
manifest entry and caught at the entry boundary in ``mod_sync``.
"""


class ModSyncError(Exception):
    """Base class for every error raised by the sync engine."""


class ConfigError(ModSyncError):
    """Manifest or configuration missing, unreadable or invalid."""


class NetworkError(ModSyncError):
    """Registry or download endpoint unreachable, or a non-2xx response."""


class ParseError(ModSyncError):
    """Registry response is missing a required field."""


class FilesystemError(ModSyncError):
    """Extraction or folder move failed."""
