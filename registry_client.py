"""
Thunderstore registry client.

Only two calls are made against the registry:

    GET {registry_base_url}/{namespace}/{name}/   -> package metadata
    GET {download_url}                            -> package archive (.zip)

Both are followed by a fixed pause so a sync run never hammers the shared
service, whatever the size of the manifest.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests

from errors import NetworkError, ParseError
from sync_settings import SyncSettings

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemotePackageInfo:
    """Latest published state of one package, as reported by the registry."""

    latest_version: str
    download_url: str
    is_deprecated: bool = False


def _required_str(payload: dict[str, Any], *path: str) -> str:
    node: Any = payload
    for key in path:
        if not isinstance(node, dict):
            node = None
            break
        node = node.get(key)
    if node is None or (isinstance(node, str) and not node.strip()):
        raise ParseError(f"Registry response has no {'.'.join(path)}")
    return str(node).strip()


def _version_str(payload: dict[str, Any]) -> str:
    # The version becomes part of a folder name under the plugins directory
    version = _required_str(payload, "latest", "version_number")
    if "/" in version or "\\" in version or version in (".", ".."):
        raise ParseError(f"Registry reported an unusable version number: {version!r}")
    return version


def parse_package_info(payload: Any) -> RemotePackageInfo:
    """Extract RemotePackageInfo from a decoded package API response.

    ``latest.version_number`` and ``latest.download_url`` are required; a
    missing ``is_deprecated`` means the package is not deprecated.
    """
    if not isinstance(payload, dict):
        raise ParseError("Registry response is not a JSON object")
    return RemotePackageInfo(
        latest_version=_version_str(payload),
        download_url=_required_str(payload, "latest", "download_url"),
        is_deprecated=payload.get("is_deprecated") is True,
    )


class RegistryClient:
    def __init__(
        self,
        settings: SyncSettings,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = settings.registry_base_url
        self.api_delay = settings.api_delay_seconds
        self.download_delay = settings.download_delay_seconds
        self.timeout = settings.request_timeout
        self._sleep = sleep
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": settings.user_agent})

    def package_url(self, namespace: str, name: str) -> str:
        return f"{self.base_url}/{namespace}/{name}/"

    def fetch_package_info(self, namespace: str, name: str) -> RemotePackageInfo:
        url = self.package_url(namespace, name)
        _log.info("  Checking API: %s", url)
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise NetworkError(
                f"Failed to fetch package info for {namespace}-{name}: {exc}"
            ) from exc

        # The call reached the registry; pause before anything else hits it.
        _log.debug("  Waiting %s second(s) before next API request", self.api_delay)
        self._sleep(self.api_delay)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ParseError(
                f"Registry response for {namespace}-{name} is not valid JSON: {exc}"
            ) from exc
        try:
            return parse_package_info(payload)
        except ParseError as exc:
            raise ParseError(f"{exc} for {namespace}-{name}") from exc

    def download(self, url: str) -> bytes:
        _log.info("  Download URL: %s", url)
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.content
        except requests.RequestException as exc:
            raise NetworkError(f"Failed to download {url}: {exc}") from exc
        finally:
            _log.debug("  Waiting %s second(s) before next download", self.download_delay)
            self._sleep(self.download_delay)

        if not data:
            raise NetworkError(f"Download from {url} returned an empty body")
        _log.info("  Download completed (%d bytes)", len(data))
        return data
