"""Entry point for `python -m curation_pipeline` and the `curation-pipeline` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Sequence

from curation_pipeline.ability import Ability
from curation_pipeline.errors import NotFoundError, WorkValidationError
from curation_pipeline.file_actor import FileActor, FileUpload
from curation_pipeline.jobs import FIXITY_AUDIT, InlineJobDispatcher, fixity_history, register_default_jobs
from curation_pipeline.models import FileNode, FileSet, FileUse, User, Visibility, Work
from curation_pipeline.settings import RuntimeSettings
from curation_pipeline.state_store import FilesystemObjectStore
from curation_pipeline.storage import DiskStorageAdapter
from curation_pipeline.versioning import VersioningService
from curation_pipeline.work_steps import build_create_work_transaction


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create works and ingest files into a curation store")
    parser.add_argument("--store-root", type=Path, default=None, help="Object store directory (overrides CURATION_STORE_ROOT)")
    parser.add_argument("--binary-root", type=Path, default=None, help="Binary storage directory (overrides CURATION_BINARY_ROOT)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser("create-work", help="Run the create-work transaction")
    create.add_argument("--user", required=True, help="Acting user key")
    create.add_argument("--group", action="append", default=[], help="Group of the acting user (repeatable)")
    create.add_argument("--admin", action="store_true", help="Act as an administrator")
    create.add_argument("--title", action="append", default=[], help="Work title (repeatable)")
    create.add_argument("--creator", action="append", default=[], help="Creator (repeatable)")
    create.add_argument("--keyword", action="append", default=[], help="Keyword (repeatable)")
    create.add_argument("--admin-set-id", default=None, help="Admin set to file the work under")
    create.add_argument(
        "--visibility",
        type=lambda value: value.lower(),
        default=None,
        choices=[item.value for item in Visibility],
        help="Explicit visibility (defaults to CURATION_DEFAULT_VISIBILITY)",
    )
    create.add_argument("--member-of", action="append", default=[], help="Parent work id (repeatable)")

    ingest = subparsers.add_parser("ingest-file", help="Ingest a file into a file set")
    ingest.add_argument("file_set_id", help="Target file set id (created if absent)")
    ingest.add_argument("path", type=Path, help="File to ingest")
    ingest.add_argument("--user", required=True, help="Acting user key")
    ingest.add_argument(
        "--relation",
        default=FileUse.ORIGINAL_FILE.value,
        choices=[item.value for item in FileUse],
        help="Use of the ingested file within the file set",
    )
    ingest.add_argument("--mime-type", default=None, help="Mime type (guessed from the filename if omitted)")

    versions = subparsers.add_parser("versions", help="List versions recorded for a file set")
    versions.add_argument("file_set_id")
    versions.add_argument("--relation", default=FileUse.ORIGINAL_FILE.value, choices=[item.value for item in FileUse])

    audit = subparsers.add_parser("audit", help="Re-verify checksums of every file in a file set")
    audit.add_argument("file_set_id")
    return parser.parse_args(argv)


def _create_work(args: argparse.Namespace, settings: RuntimeSettings, store: FilesystemObjectStore) -> int:
    user = User(user_key=args.user, groups=tuple(args.group), admin=args.admin)
    ability = Ability(user, store)
    attributes = {"title": args.title, "creator": args.creator, "keyword": args.keyword}
    work = Work(admin_set_id=args.admin_set_id, visibility=args.visibility)
    transaction = build_create_work_transaction(store, settings=settings).with_step_args(
        apply_attributes={"attributes": attributes},
        add_to_works={"work_ids": args.member_of},
    )
    result = transaction.call(
        work,
        step_args={"assign_depositor": {"ability": ability}, "apply_permission_template": {"ability": ability}},
    )
    if result.is_failure():
        error = result.error
        if isinstance(error, WorkValidationError):
            for field, messages in error.messages().items():
                for message in messages:
                    logging.error("%s: %s", field, message)
        else:
            logging.error("Work creation failed (%s): %s", error.kind, error)
        return 1
    print(json.dumps(work.model_dump(mode="json"), indent=2))
    return 0


def _ingest_file(
    args: argparse.Namespace,
    store: FilesystemObjectStore,
    storage: DiskStorageAdapter,
) -> int:
    if not args.path.is_file():
        logging.error("File does not exist: %s", args.path)
        return 1
    try:
        file_set = store.find(args.file_set_id)
    except NotFoundError:
        file_set = FileSet(id=args.file_set_id, depositor=args.user, edit_users=[args.user], title=[args.path.name])
    if not isinstance(file_set, FileSet):
        logging.error("%s is not a file set", args.file_set_id)
        return 1

    versioning = VersioningService(store)
    jobs = register_default_jobs(InlineJobDispatcher(), store=store, storage_adapter=storage, versioning=versioning)
    actor = FileActor(
        file_set,
        args.relation,
        args.user,
        store=store,
        storage_adapter=storage,
        versioning=versioning,
        jobs=jobs,
    )
    node = actor.ingest_file(FileUpload.from_path(args.path, mime_type=args.mime_type))
    if node is False:
        logging.error("Ingest of %s failed", args.path)
        return 1
    print(f"file_node_id={node.id}")
    print(f"checksum={node.checksum_algorithm}:{node.checksum}")
    return 0


def _list_versions(args: argparse.Namespace, store: FilesystemObjectStore) -> int:
    records = VersioningService(store).versions_for(args.file_set_id, FileUse(args.relation))
    if not records:
        logging.warning("No versions recorded for %s (%s)", args.file_set_id, args.relation)
    for record in records:
        print(f"{record.label}\t{record.id}\t{record.file_node_id}\t{record.created_by or '-'}\t{record.created_at.isoformat()}")
    return 0


def _audit(args: argparse.Namespace, store: FilesystemObjectStore, storage: DiskStorageAdapter) -> int:
    try:
        file_set = store.find(args.file_set_id)
    except NotFoundError as exc:
        logging.error("%s", exc)
        return 1
    if not isinstance(file_set, FileSet):
        logging.error("%s is not a file set", args.file_set_id)
        return 1

    jobs = register_default_jobs(InlineJobDispatcher(), store=store, storage_adapter=storage)
    failed = 0
    for file_node_id in file_set.file_ids:
        jobs.enqueue(FIXITY_AUDIT, file_node_id)
        history = fixity_history(store, file_node_id)
        node = store.find(file_node_id)
        passed = bool(history) and history[-1].passed
        label = node.original_filename if isinstance(node, FileNode) else file_node_id
        print(f"{'PASS' if passed else 'FAIL'}\t{file_node_id}\t{label}")
        if not passed:
            failed += 1
    return 1 if failed else 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    cwd = Path.cwd()
    store_root = args.store_root if args.store_root is not None else settings.store_path(cwd)
    binary_root = args.binary_root if args.binary_root is not None else settings.binary_path(cwd)
    try:
        store = FilesystemObjectStore(store_root)
        storage = DiskStorageAdapter(
            binary_root,
            checksum_algorithm=settings.checksum_algorithm,
            max_bytes=settings.max_upload_bytes,
        )
    except OSError as exc:
        logging.error("Unable to open storage: %s", exc)
        return 1

    if args.command == "create-work":
        return _create_work(args, settings, store)
    if args.command == "ingest-file":
        return _ingest_file(args, store, storage)
    if args.command == "versions":
        return _list_versions(args, store)
    return _audit(args, store, storage)


if __name__ == "__main__":
    raise SystemExit(main())
