"""Background jobs scheduled after ingest.

Callers only ever see ``JobDispatcher.enqueue``.  ``InlineJobDispatcher`` runs
handlers immediately and logs their failures; ``RecordingJobDispatcher`` just
remembers what was enqueued.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

from .errors import NotFoundError, StorageError
from .file_actor import DEFAULT_MIME_TYPE, FileActor, FileUpload
from .models import Characterization, FileNode, FileSet, FileUse, FixityCheck
from .state_store import ObjectStore
from .storage import StorageAdapter
from .utils import checksum_hexdigest, utc_now
from .versioning import VersioningService

logger = logging.getLogger(__name__)

CHARACTERIZE = "characterize"
CREATE_DERIVATIVES = "create_derivatives"
FIXITY_AUDIT = "fixity_audit"


class JobDispatcher(Protocol):
    def enqueue(self, job_type: str, *args: Any) -> None: ...


@dataclass(frozen=True)
class EnqueuedJob:
    job_type: str
    args: tuple[Any, ...]


class RecordingJobDispatcher:
    def __init__(self) -> None:
        self.jobs: list[EnqueuedJob] = []

    def enqueue(self, job_type: str, *args: Any) -> None:
        self.jobs.append(EnqueuedJob(job_type=job_type, args=args))

    def of_type(self, job_type: str) -> list[EnqueuedJob]:
        return [job for job in self.jobs if job.job_type == job_type]


class InlineJobDispatcher:
    """Runs each job synchronously in the caller's thread.

    A failing handler is logged and recorded in ``failed``; the exception
    never reaches whoever enqueued the job.
    """

    def __init__(self, handlers: Mapping[str, Callable[..., Any]] | None = None) -> None:
        self.handlers: dict[str, Callable[..., Any]] = dict(handlers or {})
        self.failed: list[EnqueuedJob] = []

    def register(self, job_type: str, handler: Callable[..., Any]) -> None:
        self.handlers[job_type] = handler

    def enqueue(self, job_type: str, *args: Any) -> None:
        handler = self.handlers.get(job_type)
        if handler is None:
            logger.warning("No handler registered for job %s; dropping %s", job_type, args)
            return
        try:
            handler(*args)
        except Exception:
            logger.exception("Job %s failed for %s", job_type, args)
            self.failed.append(EnqueuedJob(job_type=job_type, args=args))


def characterization_id(file_node_id: str) -> str:
    return f"characterization-{file_node_id}"


def _find_file_node(store: ObjectStore, file_node_id: str) -> FileNode:
    node = store.find(file_node_id)
    if not isinstance(node, FileNode):
        raise NotFoundError(file_node_id, "FileNode")
    return node


def _count_lines(data: bytes) -> int:
    if not data:
        return 0
    return data.count(b"\n") + (0 if data.endswith(b"\n") else 1)


class CharacterizeJob:
    """Records size, mime type and (for text) line count, then schedules derivatives.

    Safe to run more than once per node: an existing characterization is
    returned without scheduling derivatives again.
    """

    def __init__(
        self,
        *,
        store: ObjectStore,
        storage_adapter: StorageAdapter,
        jobs: JobDispatcher,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.storage_adapter = storage_adapter
        self.jobs = jobs
        self.clock = clock

    def __call__(self, file_set_id: str, file_node_id: str) -> Characterization:
        record_id = characterization_id(file_node_id)
        if self.store.exists(record_id):
            logger.info("Node %s already characterized", file_node_id)
            return self.store.find(record_id)

        node = _find_file_node(self.store, file_node_id)
        data = self.storage_adapter.read(node.content_ref)
        mime_type = node.mime_type
        if mime_type == DEFAULT_MIME_TYPE:
            mime_type = mimetypes.guess_type(node.original_filename)[0] or DEFAULT_MIME_TYPE
        record = Characterization(
            id=record_id,
            file_node_id=node.id,
            mime_type=mime_type,
            size=len(data),
            line_count=_count_lines(data) if mime_type.startswith("text/") else None,
            characterized_at=self.clock(),
        )
        self.store.save(record).unwrap()
        logger.info("Characterized %s as %s (%d bytes)", node.id, mime_type, record.size)
        self.jobs.enqueue(CREATE_DERIVATIVES, file_set_id, file_node_id)
        return record


class CreateDerivativesJob:
    """Derives an ``extracted_text`` file from plain-text originals.

    Other mime types have no derivative and are skipped.
    """

    def __init__(
        self,
        *,
        store: ObjectStore,
        storage_adapter: StorageAdapter,
        versioning: VersioningService | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.storage_adapter = storage_adapter
        self.versioning = versioning or VersioningService(store, clock=clock)
        self.clock = clock

    def __call__(self, file_set_id: str, file_node_id: str) -> FileNode | None:
        node = _find_file_node(self.store, file_node_id)
        if node.use != FileUse.ORIGINAL_FILE:
            return None
        try:
            characterization = self.store.find(characterization_id(file_node_id))
            mime_type = characterization.mime_type
        except NotFoundError:
            mime_type = node.mime_type
        if mime_type != "text/plain":
            logger.debug("No derivatives for %s (%s)", node.id, mime_type)
            return None

        file_set = self.store.find(file_set_id)
        if not isinstance(file_set, FileSet):
            raise NotFoundError(file_set_id, "FileSet")
        text = self.storage_adapter.read(node.content_ref).decode("utf-8", errors="replace")
        source_version = next(
            (record for record in self.versioning.versions_for(file_set_id, node.use) if record.file_node_id == node.id),
            None,
        )
        actor = FileActor(
            file_set,
            FileUse.EXTRACTED_TEXT,
            source_version.created_by if source_version is not None else None,
            store=self.store,
            storage_adapter=self.storage_adapter,
            versioning=self.versioning,
            clock=self.clock,
        )
        derived = actor.ingest_file(
            FileUpload(
                data=text.encode("utf-8"),
                original_filename=f"{Path(node.original_filename).stem}.txt",
                mime_type="text/plain",
            )
        )
        if derived is False:
            raise StorageError(f"could not store extracted text for {node.id}", resource_id=file_set_id)
        return derived


class FixityAuditJob:
    """Recomputes a stored node's checksum and records the outcome as a ``FixityCheck``."""

    def __init__(
        self,
        *,
        store: ObjectStore,
        storage_adapter: StorageAdapter,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.storage_adapter = storage_adapter
        self.clock = clock

    def __call__(self, file_node_id: str) -> FixityCheck:
        node = _find_file_node(self.store, file_node_id)
        try:
            actual: str | None = checksum_hexdigest(
                self.storage_adapter.read(node.content_ref),
                node.checksum_algorithm,
            )
        except StorageError as exc:
            logger.warning("Content for %s is unreadable: %s", node.id, exc)
            actual = None
        check = FixityCheck(
            file_node_id=node.id,
            content_ref=node.content_ref,
            algorithm=node.checksum_algorithm,
            expected=node.checksum,
            actual=actual,
            passed=actual == node.checksum,
            checked_at=self.clock(),
        )
        self.store.save(check).unwrap()
        if check.passed:
            logger.info("Fixity check passed for %s", node.id)
        else:
            logger.warning("Fixity check failed for %s: expected %s, got %s", node.id, check.expected, check.actual)
        return check


def fixity_history(store: ObjectStore, file_node_id: str) -> list[FixityCheck]:
    """Fixity checks recorded for one node, oldest first."""
    checks = [check for check in store.find_all(FixityCheck) if check.file_node_id == file_node_id]
    return sorted(checks, key=lambda check: check.checked_at)


def register_default_jobs(
    dispatcher: InlineJobDispatcher,
    *,
    store: ObjectStore,
    storage_adapter: StorageAdapter,
    versioning: VersioningService | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> InlineJobDispatcher:
    """Wire characterize, derivative and fixity handlers into *dispatcher*."""
    versioning = versioning or VersioningService(store, clock=clock)
    dispatcher.register(
        CHARACTERIZE,
        CharacterizeJob(store=store, storage_adapter=storage_adapter, jobs=dispatcher, clock=clock),
    )
    dispatcher.register(
        CREATE_DERIVATIVES,
        CreateDerivativesJob(store=store, storage_adapter=storage_adapter, versioning=versioning, clock=clock),
    )
    dispatcher.register(FIXITY_AUDIT, FixityAuditJob(store=store, storage_adapter=storage_adapter, clock=clock))
    return dispatcher
