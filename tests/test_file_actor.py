from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from curation_pipeline.errors import StorageError
from curation_pipeline.file_actor import FileActor, FileUpload
from curation_pipeline.jobs import RecordingJobDispatcher
from curation_pipeline.models import FileNode, FileSet, FileUse, User, VersionRecord
from curation_pipeline.result import Failure
from curation_pipeline.state_store import FilesystemObjectStore, InMemoryObjectStore
from curation_pipeline.storage import DiskStorageAdapter, MemoryStorageAdapter, StoredFile
from curation_pipeline.versioning import VersioningService, node_signature

OWNER = User(user_key="moomin@example.com")


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class FailingStorage:
    def upload(self, data: bytes, *, original_filename: str, resource_id: str) -> StoredFile:
        raise StorageError("disk full")

    def read(self, content_ref: str) -> bytes:
        raise StorageError("disk full")


class ExplodingDispatcher:
    def enqueue(self, job_type: str, *args: Any) -> None:
        raise RuntimeError("queue is down")


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def file_set(store: InMemoryObjectStore) -> FileSet:
    return store.save(FileSet(id="fs-1", depositor=OWNER.user_key, title=["Map"])).unwrap()


@pytest.fixture
def jobs() -> RecordingJobDispatcher:
    return RecordingJobDispatcher()


def _actor(store: InMemoryObjectStore, file_set: FileSet, jobs: Any, storage: Any | None = None, **kwargs: Any) -> FileActor:
    clock = Clock()
    return FileActor(
        file_set,
        kwargs.pop("relation", FileUse.ORIGINAL_FILE),
        kwargs.pop("user", OWNER),
        store=store,
        storage_adapter=storage if storage is not None else MemoryStorageAdapter(),
        versioning=VersioningService(store, clock=clock),
        jobs=jobs,
        clock=clock,
    )


def test_ingest_saves_node_attaches_it_and_versions_it(
    store: InMemoryObjectStore, file_set: FileSet, jobs: RecordingJobDispatcher
) -> None:
    actor = _actor(store, file_set, jobs)

    node = actor.ingest_file(FileUpload(data=b"hello", original_filename="hello.txt", mime_type="text/plain"))

    assert isinstance(node, FileNode)
    assert node.use == FileUse.ORIGINAL_FILE
    assert node.size == 5
    assert node.checksum == "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"
    assert file_set.file_ids == [node.id]
    assert store.find("fs-1").file_ids == [node.id]
    [version] = actor.versions()
    assert version.file_node_id == node.id
    assert version.created_by == OWNER.user_key
    assert version.label == "version1"
    assert version.signature == node_signature(node)


def test_sequential_ingests_produce_distinct_immutable_versions(
    store: InMemoryObjectStore, file_set: FileSet, jobs: RecordingJobDispatcher
) -> None:
    actor = _actor(store, file_set, jobs)

    first = actor.ingest_file(FileUpload(data=b"draft", original_filename="map.txt"))
    second = actor.ingest_file(FileUpload(data=b"final", original_filename="map.txt"))

    assert first is not False and second is not False
    assert first.id != second.id
    assert first.content_ref != second.content_ref
    versions = actor.versions()
    assert [version.label for version in versions] == ["version1", "version2"]
    assert [version.file_node_id for version in versions] == [first.id, second.id]
    assert len({version.id for version in versions}) == 2
    for version in versions:
        assert store.find(version.id) == version
    assert store.find(first.id).checksum == first.checksum
    assert file_set.file_ids == [first.id, second.id]

    rewrite = store.save(versions[0])
    assert rewrite.is_failure()
    assert rewrite.error.conflict is True
    assert store.find(versions[0].id).file_node_id == first.id


def test_ingest_enqueues_characterization(
    store: InMemoryObjectStore, file_set: FileSet, jobs: RecordingJobDispatcher
) -> None:
    node = _actor(store, file_set, jobs).ingest_file(FileUpload(data=b"x", original_filename="x.bin"))

    assert [(job.job_type, job.args) for job in jobs.jobs] == [("characterize", ("fs-1", node.id))]


def test_dispatcher_errors_do_not_fail_the_ingest(store: InMemoryObjectStore, file_set: FileSet) -> None:
    node = _actor(store, file_set, ExplodingDispatcher()).ingest_file(FileUpload(data=b"x", original_filename="x.bin"))

    assert isinstance(node, FileNode)
    assert file_set.file_ids == [node.id]


def test_storage_failure_returns_false_and_leaves_file_set_alone(
    store: InMemoryObjectStore, file_set: FileSet, jobs: RecordingJobDispatcher
) -> None:
    actor = _actor(store, file_set, jobs, storage=FailingStorage())

    assert actor.ingest_file(FileUpload(data=b"x", original_filename="x.bin")) is False
    assert file_set.file_ids == []
    assert store.find_all(FileNode) == []
    assert store.find_all(VersionRecord) == []
    assert jobs.jobs == []


def test_oversized_upload_is_rejected(store: InMemoryObjectStore, file_set: FileSet, jobs: RecordingJobDispatcher) -> None:
    actor = _actor(store, file_set, jobs, storage=MemoryStorageAdapter(max_bytes=4))

    assert actor.ingest_file(FileUpload(data=b"too large", original_filename="big.bin")) is False
    assert file_set.file_ids == []


class ConflictingFileSetStore(InMemoryObjectStore):
    """Loses every file set write to a concurrent writer."""

    def save(self, resource):
        if isinstance(resource, FileSet) and resource.persisted:
            return Failure(StorageError(f"stale write for {resource.id}", resource_id=resource.id, conflict=True))
        return super().save(resource)


def test_file_set_conflict_returns_false_and_discards_the_node(jobs: RecordingJobDispatcher) -> None:
    store = ConflictingFileSetStore()
    file_set = store.save(FileSet(id="fs-1", depositor=OWNER.user_key)).unwrap()

    actor = _actor(store, file_set, jobs)

    assert actor.ingest_file(FileUpload(data=b"x", original_filename="x.bin")) is False
    assert file_set.file_ids == []
    assert store.find_all(FileNode) == []
    assert store.find("fs-1").file_ids == []


def test_ingest_keeps_file_set_changes_made_since_the_actor_was_built(
    store: InMemoryObjectStore, file_set: FileSet, jobs: RecordingJobDispatcher
) -> None:
    actor = _actor(store, file_set, jobs)
    first = actor.ingest_file(FileUpload(data=b"one", original_filename="one.bin"))

    elsewhere = store.find("fs-1")
    elsewhere.label = "renamed elsewhere"
    store.save(elsewhere).unwrap()
    second = actor.ingest_file(FileUpload(data=b"two", original_filename="two.bin"))

    assert isinstance(second, FileNode)
    stored = store.find("fs-1")
    assert stored.file_ids == [first.id, second.id]
    assert stored.label == "renamed elsewhere"
    assert file_set.label == "renamed elsewhere"
    assert file_set.lock_version == stored.lock_version
    assert [version.label for version in actor.versions()] == ["version1", "version2"]


def test_revert_to_reingests_earlier_content_as_a_new_version(
    store: InMemoryObjectStore, file_set: FileSet, jobs: RecordingJobDispatcher
) -> None:
    storage = MemoryStorageAdapter()
    actor = _actor(store, file_set, jobs, storage=storage)
    first = actor.ingest_file(FileUpload(data=b"draft", original_filename="map.txt"))
    actor.ingest_file(FileUpload(data=b"final", original_filename="map.txt"))
    first_version = actor.versions()[0]

    reverted = actor.revert_to(first_version.id)

    assert isinstance(reverted, FileNode)
    assert reverted.id != first.id
    assert reverted.checksum == first.checksum
    assert storage.read(reverted.content_ref) == b"draft"
    assert [version.label for version in actor.versions()] == ["version1", "version2", "version3"]
    assert store.find(first_version.id) == first_version


def test_revert_to_rejects_versions_of_other_relations(
    store: InMemoryObjectStore, file_set: FileSet, jobs: RecordingJobDispatcher
) -> None:
    storage = MemoryStorageAdapter()
    original = _actor(store, file_set, jobs, storage=storage)
    original.ingest_file(FileUpload(data=b"draft", original_filename="map.txt"))
    thumbnail = _actor(store, file_set, jobs, storage=storage, relation=FileUse.THUMBNAIL)

    assert thumbnail.revert_to(original.versions()[0].id) is False
    assert thumbnail.revert_to("no-such-version") is False


def test_versions_are_numbered_per_relation(
    store: InMemoryObjectStore, file_set: FileSet, jobs: RecordingJobDispatcher
) -> None:
    storage = MemoryStorageAdapter()
    _actor(store, file_set, jobs, storage=storage).ingest_file(FileUpload(data=b"a", original_filename="a.tif"))
    thumbnail = _actor(store, file_set, jobs, storage=storage, relation="thumbnail")
    thumbnail.ingest_file(FileUpload(data=b"t", original_filename="a.jpg"))

    assert [version.label for version in thumbnail.versions()] == ["version1"]
    assert len(file_set.file_ids) == 2


def test_file_actor_equality_uses_file_set_relation_and_user(
    store: InMemoryObjectStore, file_set: FileSet, jobs: RecordingJobDispatcher
) -> None:
    left = _actor(store, file_set, jobs)
    right = _actor(store, file_set, RecordingJobDispatcher(), user=OWNER.user_key)
    thumbnail = _actor(store, file_set, jobs, relation=FileUse.THUMBNAIL)
    stranger = _actor(store, file_set, jobs, user="stinky@example.com")

    assert left == right
    assert hash(left) == hash(right)
    assert left != thumbnail
    assert left != stranger
    assert len({left, right, thumbnail}) == 2


def test_ingest_into_filesystem_store_and_disk_storage(tmp_path: Path, jobs: RecordingJobDispatcher) -> None:
    store = FilesystemObjectStore(tmp_path / "store")
    storage = DiskStorageAdapter(tmp_path / "binaries")
    file_set = store.save(FileSet(id="fs-disk", depositor=OWNER.user_key)).unwrap()
    source = tmp_path / "notes.txt"
    source.write_text("line one\nline two\n", encoding="utf-8")

    node = _actor(store, file_set, jobs, storage=storage).ingest_file(FileUpload.from_path(source))

    assert isinstance(node, FileNode)
    assert node.mime_type == "text/plain"
    assert node.content_ref.startswith("disk://")
    assert storage.read(node.content_ref) == source.read_bytes()
    assert store.find("fs-disk").file_ids == [node.id]
    assert len(VersioningService(store).versions_for("fs-disk", FileUse.ORIGINAL_FILE)) == 1
