from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator

from .utils import new_id


class Visibility(str, Enum):
    OPEN = "open"
    AUTHENTICATED = "authenticated"
    RESTRICTED = "restricted"


class FileUse(str, Enum):
    """Relation of a file node to its owning file set."""

    ORIGINAL_FILE = "original_file"
    EXTRACTED_TEXT = "extracted_text"
    THUMBNAIL = "thumbnail"
    PRESERVATION_FILE = "preservation_file"


class AgentType(str, Enum):
    USER = "user"
    GROUP = "group"


class Access(str, Enum):
    MANAGE = "manage"
    DEPOSIT = "deposit"
    VIEW = "view"


PUBLIC_GROUP = "public"
REGISTERED_GROUP = "registered"
ADMIN_GROUP = "admin"


class ValidationIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    message: str


class User(BaseModel):
    """An acting identity, keyed by ``user_key`` (usually an email address)."""

    model_config = ConfigDict(frozen=True)

    user_key: str
    groups: tuple[str, ...] = ()
    admin: bool = False

    @field_validator("user_key")
    @classmethod
    def _user_key_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("user_key must be non-empty")
        return stripped

    @property
    def all_groups(self) -> frozenset[str]:
        """Explicit groups plus the implicit ``registered`` (and ``admin``) groups."""
        groups = set(self.groups) | {REGISTERED_GROUP}
        if self.admin:
            groups.add(ADMIN_GROUP)
        return frozenset(groups)


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


class Resource(BaseModel):
    """Base class for everything the object store persists.

    ``persisted`` and ``errors`` are runtime state rather than stored
    attributes: the store flips ``persisted`` on a successful save or load,
    and ``is_valid()`` refreshes ``errors``.
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    SYSTEM_FIELDS: ClassVar[frozenset[str]] = frozenset({"id", "lock_version"})

    id: str = Field(default_factory=new_id)
    lock_version: int = Field(default=0, ge=0)

    _persisted: bool = PrivateAttr(default=False)
    _errors: list[ValidationIssue] = PrivateAttr(default_factory=list)

    @property
    def persisted(self) -> bool:
        return self._persisted

    def mark_persisted(self) -> None:
        self._persisted = True

    def mark_unpersisted(self) -> None:
        self._persisted = False

    @property
    def errors(self) -> list[ValidationIssue]:
        return self._errors

    def record_errors(self, issues: list[ValidationIssue]) -> None:
        self._errors = list(issues)

    @classmethod
    def is_immutable(cls) -> bool:
        return bool(cls.model_config.get("frozen", False))

    @classmethod
    def assignable_attributes(cls) -> frozenset[str]:
        return frozenset(cls.model_fields) - cls.SYSTEM_FIELDS

    def validation_issues(self) -> list[ValidationIssue]:
        """Requiredness checks beyond what the field types enforce."""
        return []

    def is_valid(self) -> bool:
        self._errors = self.validation_issues()
        return not self._errors


def _blank(values: list[str]) -> bool:
    return not any(value.strip() for value in values)


class AccessControlled(Resource):
    depositor: str | None = None
    visibility: Visibility | None = None
    edit_users: list[str] = Field(default_factory=list)
    edit_groups: list[str] = Field(default_factory=list)
    read_users: list[str] = Field(default_factory=list)
    read_groups: list[str] = Field(default_factory=list)


class Work(AccessControlled):
    """A curation concern: descriptive metadata plus ordered members."""

    RELATIONSHIP_FIELDS: ClassVar[frozenset[str]] = frozenset({"member_ids", "member_of_ids"})

    title: list[str] = Field(default_factory=list)
    creator: list[str] = Field(default_factory=list)
    contributor: list[str] = Field(default_factory=list)
    description: list[str] = Field(default_factory=list)
    keyword: list[str] = Field(default_factory=list)
    subject: list[str] = Field(default_factory=list)
    publisher: list[str] = Field(default_factory=list)
    language: list[str] = Field(default_factory=list)
    license: list[str] = Field(default_factory=list)
    rights_statement: list[str] = Field(default_factory=list)
    resource_type: list[str] = Field(default_factory=list)
    source: list[str] = Field(default_factory=list)
    identifier: list[str] = Field(default_factory=list)
    related_url: list[str] = Field(default_factory=list)
    date_created: list[str] = Field(default_factory=list)

    admin_set_id: str | None = None
    member_ids: list[str] = Field(default_factory=list)
    member_of_ids: list[str] = Field(default_factory=list)
    date_uploaded: datetime | None = None
    date_modified: datetime | None = None

    _staged_parents: list["Work"] = PrivateAttr(default_factory=list)

    def stage_parent(self, parent: "Work") -> None:
        """Hold a parent whose ``member_ids`` gained this work until the work is saved."""
        self._staged_parents = [staged for staged in self._staged_parents if staged.id != parent.id]
        self._staged_parents.append(parent)

    def take_staged_parents(self) -> list["Work"]:
        parents, self._staged_parents = self._staged_parents, []
        return parents

    @field_validator("related_url")
    @classmethod
    def _urls_are_http(cls, values: list[str]) -> list[str]:
        for value in values:
            if not value.startswith(("http://", "https://")):
                raise ValueError(f"related_url entries must be http(s) URLs, got: {value!r}")
        return values

    def validation_issues(self) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        if _blank(self.title):
            issues.append(ValidationIssue(field="title", message="Your work must have a title."))
        if not self.depositor:
            issues.append(ValidationIssue(field="depositor", message="Your work must have a depositor."))
        return issues


class FileSet(AccessControlled):
    """Groups the file nodes (original, derivatives, versions) of one logical file."""

    title: list[str] = Field(default_factory=list)
    label: str | None = None
    file_ids: list[str] = Field(default_factory=list)
    date_uploaded: datetime | None = None
    date_modified: datetime | None = None

    def validation_issues(self) -> list[ValidationIssue]:
        if not self.depositor:
            return [ValidationIssue(field="depositor", message="Your file set must have a depositor.")]
        return []


class AdminSet(Resource):
    title: list[str] = Field(default_factory=list)
    description: list[str] = Field(default_factory=list)

    def validation_issues(self) -> list[ValidationIssue]:
        if _blank(self.title):
            return [ValidationIssue(field="title", message="Your admin set must have a title.")]
        return []


class PermissionTemplateAccess(BaseModel):
    model_config = ConfigDict(frozen=True)

    agent_type: AgentType
    agent_id: str
    access: Access


class PermissionTemplate(Resource):
    """Access grants inherited by every work filed under ``source_id``."""

    source_id: str
    visibility: Visibility | None = None
    access_grants: list[PermissionTemplateAccess] = Field(default_factory=list)

    def agent_ids_for(self, *, agent_type: AgentType, access: Access) -> list[str]:
        return [
            grant.agent_id
            for grant in self.access_grants
            if grant.agent_type == agent_type and grant.access == access
        ]

    @property
    def manage_users(self) -> list[str]:
        return self.agent_ids_for(agent_type=AgentType.USER, access=Access.MANAGE)

    @property
    def manage_groups(self) -> list[str]:
        return self.agent_ids_for(agent_type=AgentType.GROUP, access=Access.MANAGE)

    @property
    def deposit_users(self) -> list[str]:
        return self.agent_ids_for(agent_type=AgentType.USER, access=Access.DEPOSIT)

    @property
    def deposit_groups(self) -> list[str]:
        return self.agent_ids_for(agent_type=AgentType.GROUP, access=Access.DEPOSIT)

    @property
    def view_users(self) -> list[str]:
        return self.agent_ids_for(agent_type=AgentType.USER, access=Access.VIEW)

    @property
    def view_groups(self) -> list[str]:
        return self.agent_ids_for(agent_type=AgentType.GROUP, access=Access.VIEW)


# ---------------------------------------------------------------------------
# Write-once records
# ---------------------------------------------------------------------------


class FileNode(Resource):
    """One stored binary tagged with its use. Never rewritten once saved."""

    model_config = ConfigDict(frozen=True)

    file_set_id: str
    use: FileUse
    content_ref: str
    original_filename: str
    mime_type: str = "application/octet-stream"
    size: int = Field(ge=0)
    checksum: str
    checksum_algorithm: str = "sha256"
    created_at: datetime


class VersionRecord(Resource):
    model_config = ConfigDict(frozen=True)

    file_node_id: str
    file_set_id: str
    use: FileUse
    label: str
    created_by: str | None
    created_at: datetime
    signature: str


class Characterization(Resource):
    model_config = ConfigDict(frozen=True)

    file_node_id: str
    mime_type: str
    size: int = Field(ge=0)
    line_count: int | None = None
    characterized_at: datetime


class FixityCheck(Resource):
    model_config = ConfigDict(frozen=True)

    file_node_id: str
    content_ref: str
    algorithm: str
    expected: str
    actual: str | None
    passed: bool
    checked_at: datetime


RESOURCE_MODELS: dict[str, type[Resource]] = {
    model.__name__: model
    for model in (
        Work,
        FileSet,
        AdminSet,
        PermissionTemplate,
        FileNode,
        VersionRecord,
        Characterization,
        FixityCheck,
    )
}
