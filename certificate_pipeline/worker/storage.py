"""
Artifact storage abstraction for generated documents and uploaded templates.

file:// support (local filesystem) today; object storage slots in behind the
same interface without touching the pipeline.

Design principle: treat storage as a URI, not a boolean. Everything outside
this module only ever sees locator strings.
"""
from __future__ import annotations

import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Union
from urllib.parse import unquote, urlparse

from ..errors import ArtifactPersistError

# Artifact kind -> directory under the store root
KIND_DIRECTORIES = {
    "template": "templates",
    "certificate_source": "docx",
    "transcript_source": "docx",
    "certificate_distributable": "pdf",
    "transcript_distributable": "pdf",
}


def ensure_dir(path: Union[str, Path]) -> None:
    """Create directory if missing (mkdir -p equivalent)."""
    os.makedirs(path, exist_ok=True)


def write_atomic(path: Union[str, Path], data: bytes) -> None:
    """Write data to a temporary file then atomically rename to target path.

    The temporary file lives in the target directory so the final
    ``os.replace`` never crosses a filesystem boundary.
    """
    dir_path = os.path.dirname(os.fspath(path))
    ensure_dir(dir_path)
    fd, tmp_path = tempfile.mkstemp(dir=dir_path, prefix=".partial-")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if os.path.getsize(tmp_path) != len(data):
            raise OSError(f"short write: expected {len(data)} bytes at {tmp_path}")
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


class ArtifactStore(ABC):
    """Abstract base class for artifact storage."""

    @abstractmethod
    def persist(self, kind: str, data: Union[bytes, Path], filename: str) -> str:
        """Durably store ``data`` and return its locator.

        The locator only becomes valid once the full content is in place.
        """

    @abstractmethod
    def resolve(self, locator: str) -> BinaryIO:
        """Open a stored artifact for reading."""

    @abstractmethod
    def exists(self, locator: str) -> bool:
        """Whether ``locator`` points at a stored artifact."""

    @abstractmethod
    def size(self, locator: str) -> int:
        """Size in bytes of a stored artifact (0 if missing)."""

    @abstractmethod
    def get_uri(self) -> str:
        """Get the root URI of this store."""

    def read_bytes(self, locator: str) -> bytes:
        with self.resolve(locator) as stream:
            return stream.read()

    def local_copy(self, locator: str, dest_dir: Path) -> Path:
        """Copy an artifact into ``dest_dir`` for tools that need a real file."""
        dest_dir.mkdir(parents=True, exist_ok=True)
        name = os.path.basename(unquote(urlparse(locator).path)) or "artifact"
        target = dest_dir / name
        with self.resolve(locator) as src, open(target, "wb") as dst:
            shutil.copyfileobj(src, dst)
        return target


class FileArtifactStore(ArtifactStore):
    """Local filesystem artifact store (file:// URIs).

    Structure:
        {root}/
        ├── templates/   # Uploaded DOCX templates
        ├── docx/        # Rendered source documents
        └── pdf/         # Converted distributable documents
    """

    def __init__(self, base_path: Path):
        """Initialize with the absolute root directory of the store."""
        self.base_path = base_path.resolve()
        self._ensure_base_structure()

    def _ensure_base_structure(self) -> None:
        """Create the base directory structure."""
        self.base_path.mkdir(parents=True, exist_ok=True)
        for directory in set(KIND_DIRECTORIES.values()):
            (self.base_path / directory).mkdir(exist_ok=True)

    def _path_for(self, locator: str) -> Path:
        parsed = urlparse(locator)
        if parsed.scheme != "file":
            raise ValueError(f"Not a file:// locator: {locator}")
        path = Path(unquote(parsed.path)).resolve()
        if path != self.base_path and self.base_path not in path.parents:
            raise ValueError(f"Locator outside artifact root: {locator}")
        return path

    def persist(self, kind: str, data: Union[bytes, Path], filename: str) -> str:
        if kind not in KIND_DIRECTORIES:
            raise ValueError(f"Unknown artifact kind: {kind}")
        if os.path.basename(filename) != filename or filename in ("", ".", ".."):
            raise ValueError(f"Invalid artifact filename: {filename!r}")

        target = self.base_path / KIND_DIRECTORIES[kind] / filename
        try:
            payload = data.read_bytes() if isinstance(data, Path) else data
            write_atomic(target, payload)
        except OSError as e:
            raise ArtifactPersistError(f"Failed to persist {kind} artifact {filename}: {e}") from e
        return target.as_uri()

    def resolve(self, locator: str) -> BinaryIO:
        return open(self._path_for(locator), "rb")

    def exists(self, locator: str) -> bool:
        try:
            return self._path_for(locator).is_file()
        except ValueError:
            return False

    def size(self, locator: str) -> int:
        if not self.exists(locator):
            return 0
        return self._path_for(locator).stat().st_size

    def get_uri(self) -> str:
        return self.base_path.as_uri()


def _file_uri_to_path(uri: str) -> Path:
    parsed = urlparse(uri)
    # file://./var/certificates parses with netloc "." (relative root)
    if parsed.netloc in ("", "localhost"):
        return Path(unquote(parsed.path))
    return Path(parsed.netloc + unquote(parsed.path))


def create_artifact_store(uri: str) -> ArtifactStore:
    """Factory function to create the appropriate ArtifactStore from a URI.

    Args:
        uri: Root URI (e.g., "file:///var/lib/certificates" or "s3://bucket/prefix")

    Returns:
        ArtifactStore instance for the given URI scheme

    Raises:
        ValueError: If URI scheme is not supported
    """
    parsed = urlparse(uri)

    if parsed.scheme == "file":
        return FileArtifactStore(_file_uri_to_path(uri))

    elif parsed.scheme == "s3":
        raise NotImplementedError(f"S3 artifact storage is not implemented yet. URI: {uri}")

    else:
        raise ValueError(
            f"Unsupported storage scheme: {parsed.scheme}. "
            f"Supported: file://"
        )
