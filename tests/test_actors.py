from datetime import UTC, datetime
from typing import Any

import pytest

from curation_pipeline.ability import Ability
from curation_pipeline.actors import (
    AbstractActor,
    ActorStack,
    ApplyOrderActor,
    BaseWorkActor,
    DryCreateActor,
    Environment,
    Terminator,
)
from curation_pipeline.errors import WorkValidationError
from curation_pipeline.models import User, Visibility, Work
from curation_pipeline.settings import RuntimeSettings
from curation_pipeline.state_store import InMemoryObjectStore
from curation_pipeline.work_steps import build_create_work_transaction

FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
OWNER = User(user_key="moomin@example.com")
STRANGER = User(user_key="stinky@example.com")


class RecordingActor:
    """Stand-in for the rest of a stack: records verbs and answers ``outcome``."""

    def __init__(self, outcome: bool = True) -> None:
        self.outcome = outcome
        self.calls: list[tuple[str, Environment]] = []

    def create(self, env: Environment) -> bool:
        self.calls.append(("create", env))
        return self.outcome

    def update(self, env: Environment) -> bool:
        self.calls.append(("update", env))
        return self.outcome

    def destroy(self, env: Environment) -> bool:
        self.calls.append(("destroy", env))
        return self.outcome


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


def _saved_work(store: InMemoryObjectStore, work_id: str, depositor: User) -> Work:
    work = Work(id=work_id, title=[work_id], depositor=depositor.user_key, visibility=Visibility.RESTRICTED)
    return store.save(work).unwrap()


@pytest.fixture
def parent(store: InMemoryObjectStore) -> Work:
    for member_id in ("A", "B", "C"):
        _saved_work(store, member_id, OWNER)
    _saved_work(store, "hidden", STRANGER)
    parent = Work(id="parent", title=["Parent"], depositor=OWNER.user_key, member_ids=["A", "B"])
    return store.save(parent).unwrap()


def _env(store: InMemoryObjectStore, work: Work, user: User | None = OWNER, **attributes: Any) -> Environment:
    return Environment(curation_concern=work, current_ability=Ability(user, store), attributes=attributes)


# ---------------------------------------------------------------------------
# Actor stack
# ---------------------------------------------------------------------------


def test_stack_runs_actors_front_to_back(store: InMemoryObjectStore, parent: Work) -> None:
    seen: list[str] = []

    class Tagging(AbstractActor):
        def __init__(self, next_actor: Any, *, tag: str) -> None:
            super().__init__(next_actor)
            self.tag = tag

        def update(self, env: Environment) -> bool:
            seen.append(self.tag)
            return self.next_actor.update(env)

    tail = RecordingActor()
    stack = ActorStack().use(Tagging, tag="first").use(Tagging, tag="second").build(tail)
    env = _env(store, parent)

    assert stack.update(env) is True
    assert seen == ["first", "second"]
    assert tail.calls == [("update", env)]


def test_terminator_accepts_every_verb(store: InMemoryObjectStore, parent: Work) -> None:
    env = _env(store, parent)
    terminator = Terminator()
    assert terminator.create(env) and terminator.update(env) and terminator.destroy(env)


def test_environment_attributes_are_read_only(store: InMemoryObjectStore, parent: Work) -> None:
    env = _env(store, parent, member_ids=["A"])
    with pytest.raises(TypeError):
        env.attributes["member_ids"] = ["B"]  # type: ignore[index]
    assert env.user == OWNER


# ---------------------------------------------------------------------------
# ApplyOrderActor
# ---------------------------------------------------------------------------


def test_order_actor_reconciles_members_in_request_order(store: InMemoryObjectStore, parent: Work) -> None:
    stack = ActorStack().use(ApplyOrderActor, store=store).build(Terminator())

    assert stack.update(_env(store, parent, member_ids=["C", "B", "C"])) is True
    assert parent.member_ids == ["C", "B"]


def test_order_actor_detaches_removed_members(store: InMemoryObjectStore, parent: Work) -> None:
    stack = ActorStack().use(ApplyOrderActor, store=store).build(Terminator())

    assert stack.update(_env(store, parent, member_ids=["B", "C"])) is True
    assert parent.member_ids == ["B", "C"]
    assert "A" not in parent.member_ids


def test_order_actor_rejects_members_the_user_cannot_edit(store: InMemoryObjectStore, parent: Work) -> None:
    tail = RecordingActor()
    stack = ActorStack().use(ApplyOrderActor, store=store).build(tail)

    assert stack.update(_env(store, parent, member_ids=["B", "hidden"])) is False
    assert parent.member_ids == ["A", "B"]
    assert tail.calls == []


def test_order_actor_rejects_unknown_member_ids(store: InMemoryObjectStore, parent: Work) -> None:
    stack = ActorStack().use(ApplyOrderActor, store=store).build(Terminator())

    assert stack.create(_env(store, parent, member_ids=["B", "C", "ghost"])) is False
    assert parent.member_ids == ["A", "B"]


def test_order_actor_rejects_a_bare_string_of_member_ids(store: InMemoryObjectStore, parent: Work) -> None:
    tail = RecordingActor()
    stack = ActorStack().use(ApplyOrderActor, store=store).build(tail)

    assert stack.update(_env(store, parent, member_ids="AB")) is False
    assert parent.member_ids == ["A", "B"]
    assert tail.calls == []


def test_order_actor_keeps_existing_members_without_rechecking(store: InMemoryObjectStore, parent: Work) -> None:
    parent.member_ids = ["hidden", "A"]
    stack = ActorStack().use(ApplyOrderActor, store=store).build(Terminator())

    assert stack.update(_env(store, parent, member_ids=["A", "hidden"])) is True
    assert parent.member_ids == ["A", "hidden"]


def test_order_actor_forwards_unchanged_without_member_ids(store: InMemoryObjectStore, parent: Work) -> None:
    tail = RecordingActor()
    stack = ActorStack().use(ApplyOrderActor, store=store).build(tail)
    env = _env(store, parent, title=["Renamed"])

    assert stack.update(env) is True
    assert parent.member_ids == ["A", "B"]
    assert tail.calls == [("update", env)]


def test_order_actor_does_not_roll_back_when_downstream_vetoes(store: InMemoryObjectStore, parent: Work) -> None:
    stack = ActorStack().use(ApplyOrderActor, store=store).build(RecordingActor(outcome=False))

    assert stack.update(_env(store, parent, member_ids=["C"])) is False
    assert parent.member_ids == ["C"]
    assert store.find("parent").member_ids == ["A", "B"]


def test_order_then_persist_saves_the_final_list(store: InMemoryObjectStore, parent: Work) -> None:
    stack = (
        ActorStack()
        .use(ApplyOrderActor, store=store)
        .use(BaseWorkActor, store=store, clock=lambda: FIXED_NOW)
        .build(Terminator())
    )

    assert stack.update(_env(store, parent, member_ids=["B", "C"], keyword=["ordered"])) is True
    stored = store.find("parent")
    assert stored.member_ids == ["B", "C"]
    assert stored.keyword == ["ordered"]
    assert stored.date_modified == FIXED_NOW


# ---------------------------------------------------------------------------
# BaseWorkActor
# ---------------------------------------------------------------------------


def test_base_work_actor_rejects_invalid_attributes(store: InMemoryObjectStore, parent: Work) -> None:
    stack = ActorStack().use(BaseWorkActor, store=store).build(Terminator())

    assert stack.update(_env(store, parent, colour=["blue"])) is False
    assert stack.update(_env(store, parent, title=[])) is False
    assert store.find("parent").title == ["Parent"]


def test_base_work_actor_destroys_only_with_rights(store: InMemoryObjectStore, parent: Work) -> None:
    stack = ActorStack().use(BaseWorkActor, store=store).build(Terminator())

    assert stack.destroy(_env(store, parent, user=STRANGER)) is False
    assert store.exists("parent")

    assert stack.destroy(_env(store, parent)) is True
    assert not store.exists("parent")
    assert parent.persisted is False


# ---------------------------------------------------------------------------
# DryCreateActor
# ---------------------------------------------------------------------------


def _dry_create_stack(store: InMemoryObjectStore, tail: RecordingActor, error_handler: Any):
    transaction = build_create_work_transaction(store, settings=RuntimeSettings(), clock=lambda: FIXED_NOW)
    return ActorStack().use(DryCreateActor, transaction=transaction, error_handler=error_handler).build(tail)


@pytest.mark.parametrize("handler_returns", [None, True, False, "truthy"])
def test_dry_create_failure_calls_handler_once_and_returns_false(
    store: InMemoryObjectStore, handler_returns: Any
) -> None:
    received: list[Exception] = []

    def handler(error: Exception) -> Any:
        received.append(error)
        return handler_returns

    tail = RecordingActor()
    stack = _dry_create_stack(store, tail, handler)
    work = Work()

    assert stack.create(_env(store, work)) is False
    assert len(received) == 1
    assert isinstance(received[0], WorkValidationError)
    assert received[0].fields == ["title"]
    assert tail.calls == []
    assert work.persisted is False


def test_dry_create_success_replaces_the_rest_of_the_stack(store: InMemoryObjectStore) -> None:
    received: list[Exception] = []
    tail = RecordingActor()
    stack = _dry_create_stack(store, tail, received.append)
    work = Work(title=["Moominvalley in November"])

    assert stack.create(_env(store, work)) is True
    assert received == []
    assert tail.calls == []
    assert work.persisted is True
    assert work.depositor == OWNER.user_key


def test_dry_create_threads_the_ability_into_the_template_check(store: InMemoryObjectStore) -> None:
    received: list[Exception] = []
    stack = _dry_create_stack(store, RecordingActor(), received.append)
    work = Work(title=["Anonymous"], depositor=OWNER.user_key)

    assert stack.create(_env(store, work, user=None)) is False
    assert len(received) == 1
    assert received[0].kind == "authorization"
    assert not store.exists(work.id)


def test_dry_create_forwards_update_and_destroy(store: InMemoryObjectStore, parent: Work) -> None:
    tail = RecordingActor(outcome=False)
    stack = _dry_create_stack(store, tail, lambda error: None)
    env = _env(store, parent)

    assert stack.update(env) is False
    assert stack.destroy(env) is False
    assert [verb for verb, _ in tail.calls] == ["update", "destroy"]
