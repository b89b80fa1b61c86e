from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Callable

from .canonical import canonical_digest
from .errors import NotFoundError, StorageError
from .models import FileNode, FileUse, User, VersionRecord
from .result import Failure, Result
from .state_store import ObjectStore
from .utils import utc_now

logger = logging.getLogger(__name__)

_LABEL_PATTERN = re.compile(r"^version(\d+)$")


def node_signature(node: FileNode) -> str:
    """SHA-256 over the canonical JSON of the node's content metadata."""
    return canonical_digest(
        {
            "file_node_id": node.id,
            "file_set_id": node.file_set_id,
            "use": node.use,
            "content_ref": node.content_ref,
            "checksum": node.checksum,
            "checksum_algorithm": node.checksum_algorithm,
            "size": node.size,
            "mime_type": node.mime_type,
        }
    )


def _label_number(label: str) -> int:
    match = _LABEL_PATTERN.match(label)
    return int(match.group(1)) if match else 0


class VersioningService:
    """Mints immutable version records, numbered per file set and use."""

    def __init__(self, store: ObjectStore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self.clock = clock

    def versions_for(self, file_set_id: str, use: FileUse) -> list[VersionRecord]:
        """Version records for one file set and use, oldest first."""
        records = [
            record
            for record in self.store.find_all(VersionRecord)
            if record.file_set_id == file_set_id and record.use == use
        ]
        return sorted(records, key=lambda record: (_label_number(record.label), record.created_at))

    def latest(self, file_set_id: str, use: FileUse) -> VersionRecord | None:
        records = self.versions_for(file_set_id, use)
        return records[-1] if records else None

    def find(self, version_id: str) -> VersionRecord:
        """Raises NotFoundError if *version_id* is not a version record."""
        record = self.store.find(version_id)
        if not isinstance(record, VersionRecord):
            raise NotFoundError(version_id, "VersionRecord")
        return record

    def create(self, node: FileNode, user: User | str | None) -> Result[VersionRecord, StorageError]:
        """Record a new version for a saved file node.

        Args:
            node: The file node the version points at. It must already be stored.
            user: Acting identity, recorded as ``created_by``.

        Returns:
            ``Success(VersionRecord)``, or ``Failure(StorageError)`` if the node
            is not stored or the record cannot be written.
        """
        if not self.store.exists(node.id):
            return Failure(StorageError(f"cannot version unsaved file node {node.id}", resource_id=node.id))
        previous = self.latest(node.file_set_id, node.use)
        number = _label_number(previous.label) + 1 if previous is not None else 1
        record = VersionRecord(
            file_node_id=node.id,
            file_set_id=node.file_set_id,
            use=node.use,
            label=f"version{number}",
            created_by=user.user_key if isinstance(user, User) else user,
            created_at=self.clock(),
            signature=node_signature(node),
        )
        result = self.store.save(record)
        if result.is_success():
            logger.info("Sealed %s of %s/%s for node %s", record.label, node.file_set_id, node.use.value, node.id)
        return result
