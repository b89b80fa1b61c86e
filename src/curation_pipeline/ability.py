from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .errors import NotFoundError
from .models import (
    PUBLIC_GROUP,
    AccessControlled,
    AdminSet,
    Characterization,
    FileNode,
    FixityCheck,
    PermissionTemplate,
    Resource,
    User,
    VersionRecord,
    Visibility,
)

if TYPE_CHECKING:
    from .state_store import ObjectStore

logger = logging.getLogger(__name__)

ACTIONS = frozenset({"read", "edit", "deposit", "destroy"})


class Ability:
    """Permission context for one acting identity.

    ``can(action, target)`` accepts a resource or a resource id. Ids that do
    not resolve are answered with ``False`` so callers cannot distinguish a
    missing object from a forbidden one.
    """

    def __init__(self, user: User | None, store: ObjectStore) -> None:
        self.user = user
        self.store = store

    @property
    def user_key(self) -> str | None:
        return self.user.user_key if self.user is not None else None

    @property
    def admin(self) -> bool:
        return self.user is not None and self.user.admin

    def cannot(self, action: str, target: Resource | str) -> bool:
        return not self.can(action, target)

    def can(self, action: str, target: Resource | str) -> bool:
        if action not in ACTIONS:
            raise ValueError(f"unknown action {action!r}; expected one of {sorted(ACTIONS)}")
        if isinstance(target, str):
            try:
                target = self.store.find(target)
            except NotFoundError:
                logger.debug("Permission check on unknown id %s denied", target)
                return False
        if self.admin:
            return True

        if isinstance(target, (FileNode, VersionRecord)):
            return self._can_via_file_set(action, target.file_set_id)
        if isinstance(target, (Characterization, FixityCheck)):
            try:
                node = self.store.find(target.file_node_id)
            except NotFoundError:
                return False
            return self.can(action, node)
        if isinstance(target, AdminSet):
            return self._can_admin_set(action, target)
        if isinstance(target, PermissionTemplate):
            return self._can_admin_set("edit" if action != "read" else "read", target.source_id)
        if isinstance(target, AccessControlled):
            return self._can_access_controlled(action, target)
        return False

    def _groups(self) -> frozenset[str]:
        groups = {PUBLIC_GROUP}
        if self.user is not None:
            groups |= self.user.all_groups
        return frozenset(groups)

    def _can_access_controlled(self, action: str, target: AccessControlled) -> bool:
        user_key = self.user_key
        groups = self._groups()
        owns = user_key is not None and (target.depositor == user_key or user_key in target.edit_users)
        can_edit = owns or bool(groups & set(target.edit_groups))
        if action in {"edit", "destroy", "deposit"}:
            return can_edit
        if can_edit:
            return True
        if target.visibility == Visibility.OPEN:
            return True
        if target.visibility == Visibility.AUTHENTICATED and user_key is not None:
            return True
        return (user_key is not None and user_key in target.read_users) or bool(groups & set(target.read_groups))

    def _can_admin_set(self, action: str, admin_set: AdminSet | str) -> bool:
        admin_set_id = admin_set if isinstance(admin_set, str) else admin_set.id
        template = self.store.find_permission_template(admin_set_id)
        if template is None:
            return False
        user_key = self.user_key
        groups = self._groups()

        def granted(users: list[str], grant_groups: list[str]) -> bool:
            return (user_key is not None and user_key in users) or bool(groups & set(grant_groups))

        manage = granted(template.manage_users, template.manage_groups)
        if action in {"edit", "destroy"}:
            return manage
        deposit = manage or granted(template.deposit_users, template.deposit_groups)
        if action == "deposit":
            return deposit
        return deposit or granted(template.view_users, template.view_groups)

    def _can_via_file_set(self, action: str, file_set_id: str) -> bool:
        try:
            file_set = self.store.find(file_set_id)
        except NotFoundError:
            return False
        return self.can(action, file_set)
