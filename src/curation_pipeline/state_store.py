from __future__ import annotations

import fcntl
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Protocol, TypeVar

from pydantic import ValidationError

from .canonical import dump_resource, load_resource
from .errors import NotFoundError, StorageError
from .models import PermissionTemplate, Resource
from .result import Failure, Result, Success
from .utils import safe_path_component

logger = logging.getLogger(__name__)

ResourceT = TypeVar("ResourceT", bound=Resource)


class ObjectStore(Protocol):
    """Opaque persistence boundary used by steps, actors and jobs."""

    def find(self, resource_id: str) -> Resource: ...

    def exists(self, resource_id: str) -> bool: ...

    def save(self, resource: ResourceT) -> Result[ResourceT, StorageError]: ...

    def delete(self, resource_id: str) -> Result[str, StorageError]: ...

    def find_all(self, model: type[ResourceT]) -> list[ResourceT]: ...

    def find_permission_template(self, admin_set_id: str) -> PermissionTemplate | None: ...


# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar of *path*.

    The sidecar keeps the lock handle stable while the data file itself is
    replaced with ``os.replace``.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to a temp file in the same directory, then rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_text(path: Path, label: str) -> str:
    """Read a stored record, failing clearly on empty or non-UTF-8 content.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains invalid UTF-8.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


# ---------------------------------------------------------------------------
# Shared save/delete semantics
# ---------------------------------------------------------------------------


class _BaseObjectStore:
    """Save/delete rules common to every backend.

    * Mutable resources use optimistic concurrency: a save succeeds only when
      the caller's ``lock_version`` matches the stored one, and bumps it.
    * Frozen resources (file nodes, version records, ...) are write-once.

    Backends supply ``_guard`` (per-record critical section), ``_read``,
    ``_write``, ``_remove`` and ``_iter_resources``.
    """

    @contextmanager
    def _guard(self, resource_id: str) -> Iterator[None]:
        raise NotImplementedError

    def _read(self, resource_id: str) -> Resource | None:
        raise NotImplementedError

    def _write(self, resource: Resource) -> None:
        raise NotImplementedError

    def _remove(self, resource_id: str) -> bool:
        raise NotImplementedError

    def _iter_resources(self) -> Iterator[Resource]:
        raise NotImplementedError

    def find(self, resource_id: str) -> Resource:
        """Load a resource by id.

        Raises:
            NotFoundError: If no resource with this id is stored.
        """
        resource = self._read(resource_id)
        if resource is None:
            raise NotFoundError(resource_id)
        resource.mark_persisted()
        return resource

    def exists(self, resource_id: str) -> bool:
        return self._read(resource_id) is not None

    def find_all(self, model: type[ResourceT]) -> list[ResourceT]:
        found: list[ResourceT] = []
        for resource in self._iter_resources():
            if isinstance(resource, model):
                resource.mark_persisted()
                found.append(resource)
        return sorted(found, key=lambda item: item.id)

    def find_permission_template(self, admin_set_id: str) -> PermissionTemplate | None:
        for template in self.find_all(PermissionTemplate):
            if template.source_id == admin_set_id:
                return template
        return None

    def save(self, resource: ResourceT) -> Result[ResourceT, StorageError]:
        """Persist *resource*, marking it persisted and bumping its ``lock_version``.

        Returns:
            ``Success(resource)`` with the same instance, or ``Failure(StorageError)``
            on a write conflict, a write-once violation or an I/O failure.
        """
        immutable = resource.is_immutable()
        try:
            with self._guard(resource.id):
                current = self._read(resource.id)
                if current is not None:
                    if immutable:
                        return Failure(
                            StorageError(
                                f"{type(resource).__name__} {resource.id} is write-once",
                                resource_id=resource.id,
                                conflict=True,
                            )
                        )
                    if type(current) is not type(resource):
                        return Failure(
                            StorageError(
                                f"id {resource.id} already holds a {type(current).__name__}",
                                resource_id=resource.id,
                                conflict=True,
                            )
                        )
                    if current.lock_version != resource.lock_version:
                        return Failure(
                            StorageError(
                                f"stale write for {resource.id}: stored lock_version "
                                f"{current.lock_version}, got {resource.lock_version}",
                                resource_id=resource.id,
                                conflict=True,
                            )
                        )
                stored = resource if immutable else resource.model_copy(update={"lock_version": resource.lock_version + 1})
                self._write(stored)
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("Save of %s failed: %s", resource.id, exc)
            return Failure(StorageError(f"save of {resource.id} failed: {exc}", resource_id=resource.id))

        if not immutable:
            resource.lock_version += 1
        resource.mark_persisted()
        logger.info("Saved %s %s (lock_version=%d)", type(resource).__name__, resource.id, resource.lock_version)
        return Success(resource)

    def delete(self, resource_id: str) -> Result[str, StorageError]:
        try:
            with self._guard(resource_id):
                removed = self._remove(resource_id)
        except OSError as exc:
            return Failure(StorageError(f"delete of {resource_id} failed: {exc}", resource_id=resource_id))
        if not removed:
            return Failure(StorageError(f"cannot delete missing resource {resource_id}", resource_id=resource_id))
        logger.info("Deleted %s", resource_id)
        return Success(resource_id)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class InMemoryObjectStore(_BaseObjectStore):
    """Process-local store. Holds deep copies so callers never share instances with it."""

    def __init__(self) -> None:
        self._records: dict[str, Resource] = {}
        self._lock = threading.RLock()

    @contextmanager
    def _guard(self, resource_id: str) -> Iterator[None]:
        with self._lock:
            yield

    def _read(self, resource_id: str) -> Resource | None:
        with self._lock:
            record = self._records.get(resource_id)
            return record.model_copy(deep=True) if record is not None else None

    def _write(self, resource: Resource) -> None:
        self._records[resource.id] = resource.model_copy(deep=True)

    def _remove(self, resource_id: str) -> bool:
        return self._records.pop(resource_id, None) is not None

    def _iter_resources(self) -> Iterator[Resource]:
        with self._lock:
            snapshot = [record.model_copy(deep=True) for record in self._records.values()]
        yield from snapshot

    def __len__(self) -> int:
        return len(self._records)


class FilesystemObjectStore(_BaseObjectStore):
    """One canonical-JSON envelope per resource under ``<root>/resources``.

    Writes are atomic (temp file then rename) and each record's
    read-check-write runs under an exclusive ``fcntl`` lock, so several
    processes can share a root without losing updates silently.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.resources_dir = self.root / "resources"
        self.resources_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, resource_id: str) -> Path:
        return self.resources_dir / f"{safe_path_component(resource_id)}.json"

    @contextmanager
    def _guard(self, resource_id: str) -> Iterator[None]:
        with _locked_file(self.path_for(resource_id)):
            yield

    def _read(self, resource_id: str) -> Resource | None:
        path = self.path_for(resource_id)
        if not path.is_file():
            return None
        return self._load(path)

    @staticmethod
    def _load(path: Path) -> Resource:
        text = _safe_read_text(path, "resource")
        try:
            return load_resource(text)
        except ValidationError as exc:
            raise ValueError(f"resource at {path} failed validation: {exc}") from exc

    def _write(self, resource: Resource) -> None:
        _atomic_write_text(self.path_for(resource.id), dump_resource(resource))

    def _remove(self, resource_id: str) -> bool:
        path = self.path_for(resource_id)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def _iter_resources(self) -> Iterator[Resource]:
        for path in sorted(self.resources_dir.glob("*.json")):
            yield self._load(path)
