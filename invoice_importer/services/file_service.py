"""Storage of uploaded statement files."""

import uuid
from pathlib import Path
from typing import Protocol

from invoice_importer.core.settings import Settings
from invoice_importer.core.utils import ensure_dir


class StorageBackend(Protocol):
    """Anything that can store and return bytes by key."""

    def write(self, key: str, data: bytes) -> str:
        """Store ``data`` under ``key`` and return the location to read it back from."""

    def read(self, key: str) -> bytes:
        """Return the bytes stored at a location returned by ``write``."""


class LocalFileBackend:
    """Storage backend writing into a directory on local disk."""

    def __init__(self, directory: str | Path) -> None:
        """Initialize the backend, creating ``directory`` if needed."""
        self.directory = Path(directory)
        ensure_dir(self.directory)

    def write(self, key: str, data: bytes) -> str:
        """Write ``data`` to ``directory/key`` and return the full path."""
        path = self.directory / key
        path.write_bytes(data)
        return str(path)

    def read(self, key: str) -> bytes:
        """Read a file previously written by this backend."""
        return Path(key).read_bytes()


class FileService:
    """Stores uploads under generated unique names."""

    def __init__(self, backend: StorageBackend) -> None:
        """Initialize FileService with a storage backend."""
        self.backend = backend

    def save_upload(self, original_file_name: str | None, data: bytes) -> str:
        """Store an upload under a random name keeping its extension; return where it went."""
        extension = Path(original_file_name or "").suffix.lower()
        return self.backend.write(f"{uuid.uuid4()}{extension}", data)

    def get_file(self, path: str) -> bytes:
        """Return the content of a stored upload."""
        return self.backend.read(path)


def build_file_service(settings: Settings) -> FileService:
    """Create the FileService for the configured storage backend."""
    if settings.storage_backend == "s3":
        from invoice_importer.services.s3_file_service import S3FileService

        return FileService(S3FileService(settings))
    return FileService(LocalFileBackend(settings.upload_directory))
