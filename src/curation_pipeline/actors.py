"""Actor stack for work create/update/destroy requests.

Each actor holds an explicit ``next_actor`` and answers every verb with a
boolean.  An actor either vetoes (returns ``False`` without forwarding),
handles the call itself, or does its part and forwards the same
``Environment`` down the stack.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from .ability import Ability
from .errors import NotFoundError
from .models import User, Work
from .state_store import ObjectStore
from .transactions import Transaction
from .utils import utc_now
from .work_steps import ApplyAttributes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Environment:
    """One request: the work being acted on, the acting ability and raw attributes."""

    curation_concern: Work
    current_ability: Ability
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    @property
    def user(self) -> User | None:
        return self.current_ability.user


class AbstractActor:
    """Forwards every verb to ``next_actor``; subclasses override what they handle."""

    def __init__(self, next_actor: AbstractActor) -> None:
        self.next_actor = next_actor

    def create(self, env: Environment) -> bool:
        return self.next_actor.create(env)

    def update(self, env: Environment) -> bool:
        return self.next_actor.update(env)

    def destroy(self, env: Environment) -> bool:
        return self.next_actor.destroy(env)


class Terminator:
    """Bottom of every stack: accepts all verbs."""

    def create(self, env: Environment) -> bool:
        return True

    def update(self, env: Environment) -> bool:
        return True

    def destroy(self, env: Environment) -> bool:
        return True


class ActorStack:
    """Builder for a chain of actors, declared front (outermost) to back.

    Usage::

        stack = (
            ActorStack()
            .use(ApplyOrderActor, store=store)
            .use(BaseWorkActor, store=store)
            .build(Terminator())
        )
        stack.create(env)
    """

    def __init__(self) -> None:
        self._layers: list[tuple[type[AbstractActor], dict[str, Any]]] = []

    def use(self, actor_class: type[AbstractActor], **options: Any) -> ActorStack:
        self._layers.append((actor_class, options))
        return self

    def build(self, terminator: Any | None = None) -> Any:
        actor: Any = terminator if terminator is not None else Terminator()
        for actor_class, options in reversed(self._layers):
            actor = actor_class(actor, **options)
        return actor


class BaseWorkActor(AbstractActor):
    """Persists the work: assigns plain attributes, stamps and saves.

    Relationship attributes (``member_ids``, ``member_of_ids``) are left to the
    actors that own them.
    """

    def __init__(
        self,
        next_actor: AbstractActor,
        *,
        store: ObjectStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(next_actor)
        self.store = store
        self.clock = clock

    def create(self, env: Environment) -> bool:
        return self._save(env) and self.next_actor.create(env)

    def update(self, env: Environment) -> bool:
        return self._save(env) and self.next_actor.update(env)

    def destroy(self, env: Environment) -> bool:
        work = env.curation_concern
        if env.current_ability.cannot("destroy", work):
            logger.warning("%s may not destroy %s", env.current_ability.user_key, work.id)
            return False
        result = self.store.delete(work.id)
        if result.is_failure():
            logger.warning("Destroy of %s failed: %s", work.id, result.error)
            return False
        work.mark_unpersisted()
        return self.next_actor.destroy(env)

    def _save(self, env: Environment) -> bool:
        work = env.curation_concern
        plain = {
            name: value
            for name, value in env.attributes.items()
            if name not in Work.RELATIONSHIP_FIELDS
        }
        applied = ApplyAttributes()(work, attributes=plain)
        if applied.is_failure():
            logger.warning("Rejected attributes for %s: %s", work.id, applied.error)
            return False
        now = self.clock()
        if work.date_uploaded is None:
            work.date_uploaded = now
        work.date_modified = now
        if not work.is_valid():
            logger.warning("Work %s is invalid: %s", work.id, [issue.message for issue in work.errors])
            return False
        result = self.store.save(work)
        if result.is_failure():
            logger.warning("Save of %s failed: %s", work.id, result.error)
            return False
        return True


class ApplyOrderActor(AbstractActor):
    """Sets a work's ordered members from ``env.attributes["member_ids"]``.

    Every newly added id must resolve to something the acting user can edit.
    One bad id rejects the whole request and the member list is left as it
    was.
    """

    def __init__(self, next_actor: AbstractActor, *, store: ObjectStore) -> None:
        super().__init__(next_actor)
        self.store = store

    def create(self, env: Environment) -> bool:
        return self._apply_order(env) and self.next_actor.create(env)

    def update(self, env: Environment) -> bool:
        return self._apply_order(env) and self.next_actor.update(env)

    def _apply_order(self, env: Environment) -> bool:
        if "member_ids" not in env.attributes:
            return True
        member_ids = env.attributes["member_ids"] or []
        work = env.curation_concern
        if isinstance(member_ids, (str, bytes)) or not isinstance(member_ids, Iterable):
            logger.warning("Rejected ordering for %s: member_ids must be a list of ids, got %r", work.id, member_ids)
            return False
        requested = list(dict.fromkeys(member_ids))
        current = set(work.member_ids)
        for member_id in requested:
            if member_id in current:
                continue
            if not self._can_attach(env.current_ability, member_id):
                logger.warning(
                    "Rejected ordering for %s: %s cannot attach %s",
                    work.id,
                    env.current_ability.user_key,
                    member_id,
                )
                return False
        detached = [member_id for member_id in work.member_ids if member_id not in requested]
        if detached:
            logger.info("Detaching %s from %s", ", ".join(detached), work.id)
        work.member_ids = requested
        return True

    def _can_attach(self, ability: Ability, member_id: str) -> bool:
        try:
            member = self.store.find(member_id)
        except NotFoundError:
            return False
        return ability.can("edit", member)


class DryCreateActor(AbstractActor):
    """Runs ``create`` through a transaction instead of the rest of the stack.

    ``update`` and ``destroy`` are forwarded untouched.  On failure the
    configured ``error_handler`` receives the error exactly once and the
    actor answers ``False`` whatever the handler returns.
    """

    def __init__(
        self,
        next_actor: AbstractActor,
        *,
        transaction: Transaction,
        error_handler: Callable[[Any], Any] = lambda error: None,
    ) -> None:
        super().__init__(next_actor)
        self.transaction = transaction
        self.error_handler = error_handler

    def create(self, env: Environment) -> bool:
        step_args = {
            name: {"ability": env.current_ability}
            for name in ("assign_depositor", "apply_permission_template")
            if name in self.transaction.step_names
        }
        result = self.transaction.call(env.curation_concern, step_args=step_args)
        if result.is_success():
            return True
        self.error_handler(result.error)
        return False
