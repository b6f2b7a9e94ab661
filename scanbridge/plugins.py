"""
Local cache of analyzer plugin resources.

Each plugin version gets its own directory, ``{cache}/{plugin key}/{version}``.
A directory that already holds files is reused as-is; nothing is ever evicted.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Protocol

logger = logging.getLogger(__name__)


class PluginInstallError(Exception):
    """A plugin could not be installed into the local cache."""


@dataclass(frozen=True)
class Plugin:
    """A server plugin and the static resource that carries its analyzer."""
    key: str
    version: str
    static_resource_name: str


class EmbeddedFileSource(Protocol):
    def try_download_embedded_file(self, plugin_key: str, resource_name: str, target_dir: Path) -> bool:
        ...


class PluginResourceCache:
    """Deterministic plugin directories under a base directory."""

    def __init__(self, basedir: Path):
        if not basedir:
            raise ValueError("basedir is required")
        self.basedir = Path(basedir)

    def get_resource_specific_dir(self, plugin: Plugin) -> Path:
        return self.basedir / plugin.key / plugin.version


def _is_archive(path: Path) -> bool:
    return path.suffix.lower() == ".zip"


def _cached_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.rglob("*") if p.is_file() and not _is_archive(p))


class EmbeddedAnalyzerInstaller:
    """Installs analyzer assemblies from the server into the plugin cache."""

    def __init__(self, server: EmbeddedFileSource, cache_dir: Path):
        self.server = server
        self.cache = PluginResourceCache(cache_dir)
        logger.debug("Analyzer plugin cache: %s", self.cache.basedir)

    def install_assemblies(self, plugins: Iterable[Plugin]) -> set[str]:
        """
        Return the files of every plugin, downloading only cache misses.

        A plugin whose resource is missing on the server contributes nothing.
        Paths are de-duplicated case-insensitively.
        """
        plugins = list(plugins)
        if not plugins:
            logger.info("No analyzer plugins to install.")
            return set()

        files: dict[str, str] = {}
        for plugin in plugins:
            for path in self._install(plugin):
                files.setdefault(str(path).lower(), str(path))
        return set(files.values())

    def _install(self, plugin: Plugin) -> list[Path]:
        target_dir = self.cache.get_resource_specific_dir(plugin)

        cached = _cached_files(target_dir)
        if cached:
            logger.debug("Using cached files for plugin %s %s", plugin.key, plugin.version)
            return cached

        logger.info("Installing analyzer plugin %s %s...", plugin.key, plugin.version)
        try:
            target_dir.parent.mkdir(parents=True, exist_ok=True)
            staging_dir = Path(tempfile.mkdtemp(dir=target_dir.parent, prefix=f".{plugin.version}-"))
        except OSError as e:
            raise PluginInstallError(
                f"The plugin cache directory '{target_dir.parent}' could not be created: {e}"
            ) from e

        try:
            found = self.server.try_download_embedded_file(plugin.key, plugin.static_resource_name, staging_dir)
            if not found:
                logger.warning(
                    "The embedded resource '%s' of plugin '%s' was not found on the server.",
                    plugin.static_resource_name,
                    plugin.key,
                )
                return []

            resource = staging_dir / plugin.static_resource_name
            if _is_archive(resource):
                logger.debug("Extracting %s", resource)
                try:
                    with zipfile.ZipFile(resource) as archive:
                        archive.extractall(staging_dir)
                except zipfile.BadZipFile as e:
                    raise PluginInstallError(
                        f"The resource '{plugin.static_resource_name}' of plugin '{plugin.key}' is not a valid zip archive."
                    ) from e

            # Leftovers of an earlier run hold no usable files
            if target_dir.exists():
                shutil.rmtree(target_dir)
            os.replace(staging_dir, target_dir)
        except OSError as e:
            raise PluginInstallError(f"The plugin files could not be installed in '{target_dir}': {e}") from e
        finally:
            if staging_dir.exists():
                shutil.rmtree(staging_dir, ignore_errors=True)

        return _cached_files(target_dir)
