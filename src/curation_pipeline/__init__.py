from importlib.metadata import PackageNotFoundError, version

from .ability import Ability
from .actors import AbstractActor, ActorStack, ApplyOrderActor, BaseWorkActor, DryCreateActor, Environment, Terminator
from .canonical import canonical_digest, dump_resource, load_resource, to_canonical_json
from .errors import (
    AuthorizationError,
    CurationError,
    MissingDependencyError,
    NotFoundError,
    StorageError,
    WorkValidationError,
)
from .file_actor import FileActor, FileUpload
from .jobs import (
    CharacterizeJob,
    CreateDerivativesJob,
    FixityAuditJob,
    InlineJobDispatcher,
    JobDispatcher,
    RecordingJobDispatcher,
    register_default_jobs,
)
from .models import (
    AdminSet,
    Characterization,
    FileNode,
    FileSet,
    FileUse,
    FixityCheck,
    PermissionTemplate,
    PermissionTemplateAccess,
    User,
    ValidationIssue,
    VersionRecord,
    Visibility,
    Work,
)
from .result import Failure, Result, Success, UnwrapError
from .settings import RuntimeSettings
from .state_store import FilesystemObjectStore, InMemoryObjectStore, ObjectStore
from .storage import DiskStorageAdapter, MemoryStorageAdapter, StorageAdapter, StoredFile
from .transactions import Step, Transaction
from .versioning import VersioningService
from .work_steps import CREATE_WORK_STEPS, build_create_work_transaction, find_or_create_default_admin_set


def get_version() -> str:
    try:
        return version("curation-pipeline")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "Ability",
    "AbstractActor",
    "ActorStack",
    "AdminSet",
    "ApplyOrderActor",
    "AuthorizationError",
    "BaseWorkActor",
    "Characterization",
    "CharacterizeJob",
    "CreateDerivativesJob",
    "CurationError",
    "DiskStorageAdapter",
    "DryCreateActor",
    "Environment",
    "Failure",
    "FileActor",
    "FileNode",
    "FileSet",
    "FileUpload",
    "FileUse",
    "FilesystemObjectStore",
    "FixityAuditJob",
    "FixityCheck",
    "InMemoryObjectStore",
    "InlineJobDispatcher",
    "JobDispatcher",
    "MemoryStorageAdapter",
    "MissingDependencyError",
    "NotFoundError",
    "ObjectStore",
    "PermissionTemplate",
    "PermissionTemplateAccess",
    "RecordingJobDispatcher",
    "Result",
    "RuntimeSettings",
    "Step",
    "StorageAdapter",
    "StorageError",
    "StoredFile",
    "Success",
    "Terminator",
    "Transaction",
    "UnwrapError",
    "User",
    "ValidationIssue",
    "VersionRecord",
    "VersioningService",
    "Visibility",
    "Work",
    "WorkValidationError",
    "CREATE_WORK_STEPS",
    "build_create_work_transaction",
    "canonical_digest",
    "dump_resource",
    "find_or_create_default_admin_set",
    "load_resource",
    "register_default_jobs",
    "to_canonical_json",
]
