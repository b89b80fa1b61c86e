from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Literal

from .errors import NotFoundError, StorageError
from .models import FileNode, FileSet, FileUse, User, VersionRecord
from .state_store import ObjectStore
from .storage import StorageAdapter
from .utils import utc_now
from .versioning import VersioningService

if TYPE_CHECKING:
    from .jobs import JobDispatcher

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class FileUpload:
    """An incoming binary payload plus the metadata the caller knows about it."""

    data: bytes
    original_filename: str
    mime_type: str = DEFAULT_MIME_TYPE

    @classmethod
    def from_path(cls, path: Path, mime_type: str | None = None) -> FileUpload:
        guessed, _ = mimetypes.guess_type(path.name)
        return cls(
            data=path.read_bytes(),
            original_filename=path.name,
            mime_type=mime_type or guessed or DEFAULT_MIME_TYPE,
        )


class FileActor:
    """Ingests binaries into one file set under one relation on behalf of one user.

    ``ingest_file`` answers a saved ``FileNode`` or ``False``; failures are
    logged rather than raised.  Characterization runs later through the job
    dispatcher.
    """

    def __init__(
        self,
        file_set: FileSet,
        relation: FileUse | str,
        user: User | str | None,
        *,
        store: ObjectStore,
        storage_adapter: StorageAdapter,
        versioning: VersioningService | None = None,
        jobs: JobDispatcher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.file_set = file_set
        self.relation = FileUse(relation)
        self.user = user
        self.store = store
        self.storage_adapter = storage_adapter
        self.versioning = versioning or VersioningService(store, clock=clock)
        self.jobs = jobs
        self.clock = clock

    @property
    def user_key(self) -> str | None:
        return self.user.user_key if isinstance(self.user, User) else self.user

    def ingest_file(self, upload: FileUpload) -> FileNode | Literal[False]:
        try:
            node = self._attach(upload)
        except Exception:
            logger.exception(
                "Ingest of %s into %s (%s) failed",
                upload.original_filename,
                self.file_set.id,
                self.relation.value,
            )
            return False

        version = self.versioning.create(node, self.user)
        if version.is_failure():
            logger.error("Could not record a version for %s: %s", node.id, version.error)
        self._enqueue("characterize", self.file_set.id, node.id)
        return node

    def _attach(self, upload: FileUpload) -> FileNode:
        """Store the bytes and a node, then append the node to the stored file set.

        The file set is re-read before the append so writes made since the
        actor was built (derivative jobs, other actors) are kept; the actor's
        copy is refreshed in place from what was saved.
        """
        stored = self.storage_adapter.upload(
            upload.data,
            original_filename=upload.original_filename,
            resource_id=self.file_set.id,
        )
        node = FileNode(
            file_set_id=self.file_set.id,
            use=self.relation,
            content_ref=stored.content_ref,
            original_filename=upload.original_filename,
            mime_type=upload.mime_type,
            size=stored.size,
            checksum=stored.checksum,
            checksum_algorithm=stored.checksum_algorithm,
            created_at=self.clock(),
        )
        self.store.save(node).unwrap()

        current = self._current_file_set()
        current.file_ids = [*current.file_ids, node.id]
        current.date_modified = node.created_at
        saved = self.store.save(current)
        if saved.is_failure():
            self.store.delete(node.id)
            raise saved.error
        for name in FileSet.model_fields:
            setattr(self.file_set, name, getattr(current, name))
        self.file_set.mark_persisted()
        return node

    def _current_file_set(self) -> FileSet:
        if not self.file_set.persisted:
            return self.file_set.model_copy(deep=True)
        found = self.store.find(self.file_set.id)
        if not isinstance(found, FileSet):
            raise NotFoundError(self.file_set.id, "FileSet")
        return found

    def _enqueue(self, job_type: str, *args: Any) -> None:
        if self.jobs is None:
            return
        try:
            self.jobs.enqueue(job_type, *args)
        except Exception:
            logger.exception("Could not enqueue %s for %s", job_type, args)
        else:
            logger.info("Enqueued %s for %s", job_type, args)

    def versions(self) -> list[VersionRecord]:
        return self.versioning.versions_for(self.file_set.id, self.relation)

    def revert_to(self, version_id: str) -> FileNode | Literal[False]:
        """Ingest the content of an earlier version as the newest version.

        Earlier version records and their nodes stay untouched.
        """
        try:
            record = self.versioning.find(version_id)
            if record.file_set_id != self.file_set.id or record.use != self.relation:
                raise NotFoundError(version_id, "VersionRecord")
            node = self.store.find(record.file_node_id)
            if not isinstance(node, FileNode):
                raise NotFoundError(record.file_node_id, "FileNode")
            data = self.storage_adapter.read(node.content_ref)
        except (NotFoundError, StorageError) as exc:
            logger.warning("Cannot revert %s to %s: %s", self.file_set.id, version_id, exc)
            return False
        return self.ingest_file(FileUpload(data=data, original_filename=node.original_filename, mime_type=node.mime_type))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FileActor):
            return NotImplemented
        return (self.file_set.id, self.relation, self.user_key) == (other.file_set.id, other.relation, other.user_key)

    def __hash__(self) -> int:
        return hash((self.file_set.id, self.relation, self.user_key))

    def __repr__(self) -> str:
        return f"FileActor(file_set={self.file_set.id!r}, relation={self.relation.value!r}, user={self.user_key!r})"
