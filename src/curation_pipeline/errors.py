"""Failure values returned on the railway.

Each class carries a ``kind`` tag so callers can branch on the failure
category without isinstance ladders.  Transactions return these wrapped in
``Failure``; they are only raised by object-store lookups (``NotFoundError``)
or by ``Failure.unwrap()``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar, Sequence

if TYPE_CHECKING:
    from .models import ValidationIssue


class CurationError(RuntimeError):
    """Base class for every failure the pipeline can report."""

    kind: ClassVar[str] = "error"


class WorkValidationError(CurationError):
    """A resource's attributes failed type, shape or requiredness checks."""

    kind: ClassVar[str] = "validation"

    def __init__(self, issues: Sequence[ValidationIssue]) -> None:
        self.issues = list(issues)
        summary = "; ".join(f"{issue.field}: {issue.message}" for issue in self.issues) or "invalid resource"
        super().__init__(summary)

    @property
    def fields(self) -> list[str]:
        """Offending field names, in first-seen order."""
        seen: list[str] = []
        for issue in self.issues:
            if issue.field not in seen:
                seen.append(issue.field)
        return seen

    def messages(self) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = {}
        for issue in self.issues:
            grouped.setdefault(issue.field, []).append(issue.message)
        return grouped


class AuthorizationError(CurationError):
    """The acting identity lacks rights for an action on a target."""

    kind: ClassVar[str] = "authorization"

    def __init__(self, action: str, target_id: str | None, user_key: str | None = None) -> None:
        self.action = action
        self.target_id = target_id
        self.user_key = user_key
        who = user_key or "anonymous"
        super().__init__(f"{who} is not permitted to {action} {target_id or 'resource'}")


class MissingDependencyError(CurationError):
    """A referenced admin set or permission template does not exist."""

    kind: ClassVar[str] = "missing_dependency"

    def __init__(self, dependency: str, reference: str | None) -> None:
        self.dependency = dependency
        self.reference = reference
        super().__init__(f"missing {dependency} for {reference!r}")


class StorageError(CurationError):
    """An object-store or binary-store call failed, including write conflicts."""

    kind: ClassVar[str] = "storage"

    def __init__(self, message: str, *, resource_id: str | None = None, conflict: bool = False) -> None:
        self.resource_id = resource_id
        self.conflict = conflict
        super().__init__(message)


class NotFoundError(CurationError, LookupError):
    """A referenced resource id does not resolve."""

    kind: ClassVar[str] = "not_found"

    def __init__(self, resource_id: str, model: str | None = None) -> None:
        self.resource_id = resource_id
        self.model = model
        label = model or "resource"
        super().__init__(f"{label} not found: {resource_id}")
