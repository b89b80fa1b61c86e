"""Binary storage adapters.

Every upload lands at a fresh, write-once location, so storing a new version
of a file can never clobber the bytes of an earlier one.
"""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .errors import StorageError
from .utils import checksum_hexdigest, new_id, safe_path_component

logger = logging.getLogger(__name__)

DISK_SCHEME = "disk://"
MEMORY_SCHEME = "memory://"


@dataclass(frozen=True)
class StoredFile:
    content_ref: str
    size: int
    checksum: str
    checksum_algorithm: str


class StorageAdapter(Protocol):
    def upload(self, data: bytes, *, original_filename: str, resource_id: str) -> StoredFile: ...

    def read(self, content_ref: str) -> bytes: ...


def _check_size(data: bytes, max_bytes: int | None) -> None:
    if max_bytes is not None and len(data) > max_bytes:
        raise StorageError(f"upload of {len(data)} bytes exceeds the {max_bytes} byte limit")


class MemoryStorageAdapter:
    def __init__(self, *, checksum_algorithm: str = "sha256", max_bytes: int | None = None) -> None:
        self.checksum_algorithm = checksum_algorithm
        self.max_bytes = max_bytes
        self._blobs: dict[str, bytes] = {}

    def upload(self, data: bytes, *, original_filename: str, resource_id: str) -> StoredFile:
        _check_size(data, self.max_bytes)
        content_ref = f"{MEMORY_SCHEME}{resource_id}/{new_id()}"
        self._blobs[content_ref] = bytes(data)
        return StoredFile(
            content_ref=content_ref,
            size=len(data),
            checksum=checksum_hexdigest(data, self.checksum_algorithm),
            checksum_algorithm=self.checksum_algorithm,
        )

    def read(self, content_ref: str) -> bytes:
        try:
            return self._blobs[content_ref]
        except KeyError as exc:
            raise StorageError(f"no stored content for {content_ref}") from exc

    def corrupt(self, content_ref: str, data: bytes) -> None:
        """Overwrite stored bytes in place; used to exercise fixity audits."""
        if content_ref not in self._blobs:
            raise StorageError(f"no stored content for {content_ref}")
        self._blobs[content_ref] = data


class DiskStorageAdapter:
    """Stores each upload at ``<root>/<resource_id>/<token>/<filename>`` and makes it read-only."""

    def __init__(self, root: Path, *, checksum_algorithm: str = "sha256", max_bytes: int | None = None) -> None:
        self.root = root
        self.checksum_algorithm = checksum_algorithm
        self.max_bytes = max_bytes
        self.root.mkdir(parents=True, exist_ok=True)

    def upload(self, data: bytes, *, original_filename: str, resource_id: str) -> StoredFile:
        """Write *data* to a new location.

        Raises:
            StorageError: If the payload is too large or the write fails.
        """
        _check_size(data, self.max_bytes)
        relative = Path(
            safe_path_component(resource_id),
            new_id(),
            safe_path_component(Path(original_filename).name or "file"),
        )
        path = self.root / relative
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("xb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            path.chmod(stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)
        except OSError as exc:
            raise StorageError(f"could not store {original_filename}: {exc}", resource_id=resource_id) from exc
        logger.debug("Stored %d bytes at %s", len(data), path)
        return StoredFile(
            content_ref=f"{DISK_SCHEME}{relative.as_posix()}",
            size=len(data),
            checksum=checksum_hexdigest(data, self.checksum_algorithm),
            checksum_algorithm=self.checksum_algorithm,
        )

    def path_for(self, content_ref: str) -> Path:
        if not content_ref.startswith(DISK_SCHEME):
            raise StorageError(f"{content_ref} is not a disk reference")
        path = (self.root / content_ref[len(DISK_SCHEME):]).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"{content_ref} resolves outside the storage root")
        return path

    def read(self, content_ref: str) -> bytes:
        path = self.path_for(content_ref)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(f"could not read {content_ref}: {exc}") from exc
