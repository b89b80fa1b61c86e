"""Steps of the create-work transaction.

Order matters: depositor and attributes first, then admin set and the grants
inherited from its permission template, then defaults, parent works and
timestamps.  ``persist`` is the only step that writes the work.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping

from pydantic import ValidationError

from .ability import Ability
from .errors import AuthorizationError, MissingDependencyError, NotFoundError, StorageError, WorkValidationError
from .models import (
    ADMIN_GROUP,
    REGISTERED_GROUP,
    Access,
    AdminSet,
    AgentType,
    PermissionTemplate,
    PermissionTemplateAccess,
    User,
    ValidationIssue,
    Visibility,
    Work,
)
from .result import Failure, Result, Success
from .settings import RuntimeSettings
from .state_store import ObjectStore
from .transactions import Step, Transaction
from .utils import merge_unique, utc_now

logger = logging.getLogger(__name__)

CREATE_WORK_STEPS: tuple[str, ...] = (
    "assign_depositor",
    "apply_attributes",
    "ensure_admin_set",
    "apply_permission_template",
    "set_default_visibility",
    "add_to_works",
    "stamp_timestamps",
    "persist",
)


def find_or_create_default_admin_set(
    store: ObjectStore,
    *,
    admin_set_id: str,
    title: str,
) -> Result[AdminSet, StorageError]:
    """Return the default admin set, creating it and its permission template if absent.

    The default template lets any registered user deposit and the ``admin``
    group manage.
    """
    try:
        admin_set = store.find(admin_set_id)
    except NotFoundError:
        admin_set = AdminSet(id=admin_set_id, title=[title])
        saved = store.save(admin_set)
        if saved.is_failure():
            return saved
        logger.info("Created default admin set %s", admin_set_id)
    if not isinstance(admin_set, AdminSet):
        return Failure(StorageError(f"{admin_set_id} is not an admin set", resource_id=admin_set_id))

    if store.find_permission_template(admin_set_id) is None:
        template = PermissionTemplate(
            source_id=admin_set_id,
            access_grants=[
                PermissionTemplateAccess(agent_type=AgentType.GROUP, agent_id=REGISTERED_GROUP, access=Access.DEPOSIT),
                PermissionTemplateAccess(agent_type=AgentType.GROUP, agent_id=ADMIN_GROUP, access=Access.MANAGE),
            ],
        )
        saved_template = store.save(template)
        if saved_template.is_failure():
            return saved_template
    return Success(admin_set)


class AssignDepositor:
    """Depositor from the step argument, else the acting user, else the work's own."""

    def __call__(self, work: Work, *, depositor: User | str | None = None, ability: Ability | None = None) -> Result[Work, Any]:
        user_key = depositor.user_key if isinstance(depositor, User) else depositor
        if not user_key and ability is not None:
            user_key = ability.user_key
        if not user_key:
            user_key = work.depositor
        if not user_key:
            issues = [ValidationIssue(field="depositor", message="No depositor could be resolved.")]
            work.record_errors(issues)
            return Failure(WorkValidationError(issues))
        work.depositor = user_key
        work.edit_users = merge_unique(work.edit_users, [user_key])
        return Success(work)


class ApplyAttributes:
    """Merge caller-supplied attributes, all or nothing."""

    def __call__(self, work: Work, *, attributes: Mapping[str, Any] | None = None) -> Result[Work, Any]:
        if not attributes:
            return Success(work)
        allowed = type(work).assignable_attributes()
        unknown = sorted(set(attributes) - allowed)
        if unknown:
            issues = [ValidationIssue(field=name, message="is not a recognized attribute") for name in unknown]
            work.record_errors(issues)
            return Failure(WorkValidationError(issues))

        merged = {**work.model_dump(), **dict(attributes)}
        try:
            candidate = type(work).model_validate(merged)
        except ValidationError as exc:
            issues = [
                ValidationIssue(field=str(error["loc"][0]) if error["loc"] else "base", message=error["msg"])
                for error in exc.errors()
            ]
            work.record_errors(issues)
            return Failure(WorkValidationError(issues))

        for name in attributes:
            setattr(work, name, getattr(candidate, name))
        return Success(work)


class EnsureAdminSet:
    def __init__(self, store: ObjectStore, *, default_admin_set_id: str, default_admin_set_title: str) -> None:
        self.store = store
        self.default_admin_set_id = default_admin_set_id
        self.default_admin_set_title = default_admin_set_title

    def __call__(self, work: Work) -> Result[Work, Any]:
        if not work.admin_set_id:
            found = find_or_create_default_admin_set(
                self.store,
                admin_set_id=self.default_admin_set_id,
                title=self.default_admin_set_title,
            )
            if found.is_failure():
                return found
            work.admin_set_id = found.value.id
            return Success(work)

        if not self.store.exists(work.admin_set_id):
            return Failure(MissingDependencyError("admin set", work.admin_set_id))
        if self.store.find_permission_template(work.admin_set_id) is None:
            return Failure(MissingDependencyError("permission template", work.admin_set_id))
        return Success(work)


class ApplyPermissionTemplate:
    """Copy manage grants to edit access and view grants to read access, additively."""

    def __init__(self, store: ObjectStore) -> None:
        self.store = store

    def __call__(self, work: Work, *, ability: Ability | None = None) -> Result[Work, Any]:
        template = self.store.find_permission_template(work.admin_set_id) if work.admin_set_id else None
        if template is None:
            return Failure(MissingDependencyError("permission template", work.admin_set_id))
        if ability is not None and not ability.can("deposit", work.admin_set_id):
            return Failure(AuthorizationError("deposit", work.admin_set_id, ability.user_key))

        work.edit_users = merge_unique(work.edit_users, template.manage_users)
        work.edit_groups = merge_unique(work.edit_groups, template.manage_groups)
        work.read_users = merge_unique(work.read_users, template.view_users)
        work.read_groups = merge_unique(work.read_groups, template.view_groups)
        return Success(work)


class SetDefaultVisibility:
    def __init__(self, store: ObjectStore, *, default_visibility: Visibility) -> None:
        self.store = store
        self.default_visibility = default_visibility

    def __call__(self, work: Work) -> Result[Work, Any]:
        if work.visibility is not None:
            return Success(work)
        template = self.store.find_permission_template(work.admin_set_id) if work.admin_set_id else None
        work.visibility = template.visibility if template and template.visibility else self.default_visibility
        return Success(work)


class AddToWorks:
    """Make the work a member of existing parent works.

    Parents gain the work on ``member_ids`` in memory only; ``Persist``
    writes them once the work itself is saved.
    """

    def __init__(self, store: ObjectStore) -> None:
        self.store = store

    def __call__(self, work: Work, *, work_ids: Iterable[str] = ()) -> Result[Work, Any]:
        parent_ids = list(dict.fromkeys(work_ids))
        parents: list[Work] = []
        for parent_id in parent_ids:
            try:
                parent = self.store.find(parent_id)
            except NotFoundError as exc:
                return Failure(exc)
            if not isinstance(parent, Work):
                return Failure(NotFoundError(parent_id, "Work"))
            parents.append(parent)
        for parent in parents:
            if work.id not in parent.member_ids:
                parent.member_ids = [*parent.member_ids, work.id]
                work.stage_parent(parent)
        work.member_of_ids = merge_unique(work.member_of_ids, parent_ids)
        return Success(work)


class StampTimestamps:
    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self.clock = clock

    def __call__(self, work: Work) -> Result[Work, Any]:
        now = self.clock()
        if work.date_uploaded is None:
            work.date_uploaded = now
        work.date_modified = now
        return Success(work)


class Persist:
    """Save the work, then any parents ``add_to_works`` attached it to.

    A parent that changed since it was loaded is re-read and the member
    appended again once; a second conflict fails the step.
    """

    def __init__(self, store: ObjectStore) -> None:
        self.store = store

    def __call__(self, work: Work) -> Result[Work, Any]:
        if not work.is_valid():
            return Failure(WorkValidationError(work.errors))
        saved = self.store.save(work)
        if saved.is_failure():
            return saved
        for parent in work.take_staged_parents():
            attached = self._save_parent(parent, work.id)
            if attached.is_failure():
                logger.error("Saved %s but could not add it to %s: %s", work.id, parent.id, attached.error)
                return attached
        return saved

    def _save_parent(self, parent: Work, member_id: str) -> Result[Work, Any]:
        saved = self.store.save(parent)
        if saved.is_success() or not saved.error.conflict:
            return saved
        try:
            fresh = self.store.find(parent.id)
        except NotFoundError as exc:
            return Failure(exc)
        if not isinstance(fresh, Work):
            return Failure(NotFoundError(parent.id, "Work"))
        if member_id not in fresh.member_ids:
            fresh.member_ids = [*fresh.member_ids, member_id]
        return self.store.save(fresh)


def build_create_work_transaction(
    store: ObjectStore,
    *,
    settings: RuntimeSettings | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Transaction:
    """Assemble the create-work transaction against *store*.

    Args:
        store: Object store used for admin set lookups and the final save.
        settings: Supplies the default admin set and visibility; defaults to
            ``RuntimeSettings()``.
        clock: Time source for ``date_uploaded`` / ``date_modified``.
    """
    settings = settings or RuntimeSettings()
    return Transaction(
        [
            Step("assign_depositor", AssignDepositor()),
            Step("apply_attributes", ApplyAttributes()),
            Step(
                "ensure_admin_set",
                EnsureAdminSet(
                    store,
                    default_admin_set_id=settings.default_admin_set_id,
                    default_admin_set_title=settings.default_admin_set_title,
                ),
            ),
            Step("apply_permission_template", ApplyPermissionTemplate(store)),
            Step("set_default_visibility", SetDefaultVisibility(store, default_visibility=settings.visibility)),
            Step("add_to_works", AddToWorks(store)),
            Step("stamp_timestamps", StampTimestamps(clock)),
            Step("persist", Persist(store)),
        ]
    )
