"""
Cache of the Java runtime used to run the external analysis.

Layout::

    {home}/cache/{sha}/{filename}_extracted/{java path}

The java executable being present is the only thing that makes a hit.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol, Union

logger = logging.getLogger(__name__)


class UnsupportedArchiveError(ValueError):
    """The archive format has no unpacker."""


@dataclass(frozen=True)
class JreDescriptor:
    """Identifies one JRE archive and where java lives inside it."""
    filename: str
    sha: str
    java_path: str

    def extracted_dir(self, home: Path) -> Path:
        return cache_dir(home) / self.sha / f"{self.filename}_extracted"

    def java_executable(self, home: Path) -> Path:
        return self.extracted_dir(home) / self.java_path


def cache_dir(home: Path) -> Path:
    return Path(home) / "cache"


@dataclass(frozen=True)
class JreCacheHit:
    executable_path: Path


@dataclass(frozen=True)
class JreCacheMiss:
    pass


@dataclass(frozen=True)
class JreCacheFailure:
    reason: str


JreCacheResult = Union[JreCacheHit, JreCacheMiss, JreCacheFailure]


class FileSystem(Protocol):
    def directory_exists(self, path: Path) -> bool:
        ...

    def create_directory(self, path: Path) -> None:
        ...

    def file_exists(self, path: Path) -> bool:
        ...


class LocalFileSystem:
    def directory_exists(self, path: Path) -> bool:
        return Path(path).is_dir()

    def create_directory(self, path: Path) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)

    def file_exists(self, path: Path) -> bool:
        return Path(path).is_file()


class ZipUnpack:
    def unpack(self, archive: Path, destination: Path) -> None:
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(destination)


class UnpackProvider:
    """Pick an unpacker from the archive file name."""

    def get_unpack_for_archive(self, archive: str | Path) -> ZipUnpack:
        name = str(archive)
        if name.lower().endswith(".zip"):
            return ZipUnpack()
        raise UnsupportedArchiveError(f"The archive format of '{name}' is not supported.")


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(64 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


class JreCache:
    """Look up and populate the JRE cache."""

    def __init__(self, filesystem: FileSystem | None = None, unpack_provider: UnpackProvider | None = None):
        self.filesystem = filesystem or LocalFileSystem()
        self.unpack_provider = unpack_provider or UnpackProvider()

    def _ensure_directory(self, path: Path, home: Path) -> JreCacheFailure | None:
        try:
            if not self.filesystem.directory_exists(path):
                self.filesystem.create_directory(path)
        except OSError as e:
            logger.debug("Creating %s failed: %s", path, e)
            return JreCacheFailure(f"The JRE cache directory in '{cache_dir(home)}' could not be created.")
        return None

    def is_jre_cached(self, home: Path, descriptor: JreDescriptor) -> JreCacheResult:
        home = Path(home)
        for directory in (home, cache_dir(home)):
            failure = self._ensure_directory(directory, home)
            if failure is not None:
                return failure

        extracted = descriptor.extracted_dir(home)
        if not self.filesystem.directory_exists(extracted):
            logger.debug("JRE cache miss: %s", extracted)
            return JreCacheMiss()

        java = descriptor.java_executable(home)
        if not self.filesystem.file_exists(java):
            return JreCacheFailure(
                f"The java executable in the JRE cache could not be found at the expected location '{java}'."
            )
        logger.debug("JRE cache hit: %s", java)
        return JreCacheHit(java)

    def download_jre(
        self,
        home: Path,
        descriptor: JreDescriptor,
        fetch: Callable[[Path], None],
    ) -> JreCacheResult:
        """
        Download, verify and unpack a JRE into the cache.

        ``fetch`` writes the archive to the path it is given. The extracted
        directory only appears once unpacking has succeeded.
        """
        result = self.is_jre_cached(home, descriptor)
        if not isinstance(result, JreCacheMiss):
            return result

        try:
            unpack = self.unpack_provider.get_unpack_for_archive(descriptor.filename)
        except UnsupportedArchiveError as e:
            return JreCacheFailure(str(e))

        sha_dir = cache_dir(home) / descriptor.sha
        failure = self._ensure_directory(sha_dir, Path(home))
        if failure is not None:
            return failure

        archive = sha_dir / descriptor.filename
        if not archive.is_file():
            fd, tmp_name = tempfile.mkstemp(dir=sha_dir, suffix=".download")
            os.close(fd)
            tmp_archive = Path(tmp_name)
            try:
                logger.info("Downloading JRE %s...", descriptor.filename)
                fetch(tmp_archive)
                actual = _sha256(tmp_archive)
                if actual.lower() != descriptor.sha.lower():
                    return JreCacheFailure(
                        f"The checksum of the downloaded file does not match the expected checksum. "
                        f"Expected: '{descriptor.sha}', actual: '{actual}'."
                    )
                os.replace(tmp_archive, archive)
            except OSError as e:
                return JreCacheFailure(f"The JRE could not be downloaded to '{sha_dir}': {e}")
            finally:
                tmp_archive.unlink(missing_ok=True)

        tmp_dir = Path(tempfile.mkdtemp(dir=sha_dir, suffix=".extracting"))
        try:
            unpack.unpack(archive, tmp_dir)
            os.replace(tmp_dir, descriptor.extracted_dir(home))
        except (OSError, zipfile.BadZipFile) as e:
            return JreCacheFailure(f"The JRE archive '{archive}' could not be unpacked: {e}")
        finally:
            if tmp_dir.exists():
                shutil.rmtree(tmp_dir, ignore_errors=True)

        return self.is_jre_cached(home, descriptor)
