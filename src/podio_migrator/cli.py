"""
Command-line interface for the Podio migration tool.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Callable

from .config import PodioConfig
from .context import AppContext
from .exceptions import InvalidJobStateError, MigrationError
from .models import ACTIVE_STATUSES, CleanupRequest, ItemFilters, MigrationJob, MigrationRequest
from .utils import setup_logging

logger: logging.Logger = logging.getLogger(__name__)

# Final statuses a foreground command treats as success
_OK_STATUSES = frozenset({"completed", "paused", "waiting_approval"})
_POLL_SECONDS = 1.0


def _add_migrate_parser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("migrate", help="Migrate items from one app to another")
    _ = parser.add_argument("source_app", type=int, help="Source app id")
    _ = parser.add_argument("target_app", type=int, help="Target app id")
    _ = parser.add_argument("--mode", choices=["create", "update", "upsert"], default="create")
    _ = parser.add_argument(
        "--match-field",
        action="append",
        default=[],
        help='Match field as "source:target" or a single external id used in both apps. '
        "Given twice, the first is the source field and the second the target field.",
    )
    _ = parser.add_argument(
        "--map",
        action="append",
        default=[],
        dest="field_map",
        help='Field mapping entry "source:target", by external id or, when every entry is numeric, by field id. '
        "Can be specified multiple times. Without any, a mapping is suggested from the app schemas.",
    )
    _ = parser.add_argument("--batch-size", type=int, default=500)
    _ = parser.add_argument("--concurrency", type=int, default=5)
    _ = parser.add_argument("--created-from", help="Only items created on or after this date")
    _ = parser.add_argument("--created-to", help="Only items created on or before this date")
    _ = parser.add_argument("--last-edit-from", help="Only items last edited on or after this date")
    _ = parser.add_argument("--last-edit-to", help="Only items last edited on or before this date")
    _ = parser.add_argument("--tag", action="append", default=[], help="Only items with this tag (repeatable)")
    _ = parser.add_argument("--dry-run", action="store_true", help="Report what would happen without writing")
    _ = parser.add_argument("--duplicate-behavior", choices=["skip", "error", "update"], default="skip")
    _ = parser.add_argument("--transfer-files", action="store_true", help="Copy files of created items")
    _ = parser.add_argument("--max-items", type=int, help="Stop after this many source items")
    _ = parser.add_argument("--stop-on-error", action="store_true", help="Stop the job at the first failed item")
    _ = parser.add_argument(
        "--no-prefetch",
        action="store_true",
        help="Look up every match with a filter request instead of pre-fetching the target app",
    )


def _add_cleanup_parser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("cleanup", help="Detect and delete duplicate items in one app")
    _ = parser.add_argument("app", type=int, help="App id")
    _ = parser.add_argument("match_field", help="External id of the field that identifies duplicates")
    _ = parser.add_argument("--mode", choices=["manual", "automated"], default="manual")
    _ = parser.add_argument("--keep", choices=["oldest", "newest"], default="oldest")
    _ = parser.add_argument("--dry-run", action="store_true", help="Only report duplicate groups")
    _ = parser.add_argument("--concurrency", type=int, default=5)
    _ = parser.add_argument("--max-groups", type=int)
    _ = parser.add_argument(
        "--allow-unsupported-type", action="store_true", help="Allow matching on field types without stable equality"
    )
    _ = parser.add_argument("--yes", "-y", action="store_true", help="Approve all groups without asking (manual mode)")


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Migrate and de-duplicate Podio items")
    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    _ = parser.add_argument(
        "--pass-prefix", help="Path prefix in the pass utility for credentials missing from the environment"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    _add_migrate_parser(subparsers)
    _add_cleanup_parser(subparsers)

    for name, help_text in (
        ("status", "Show a job record"),
        ("resume", "Resume a paused job from its checkpoint"),
        ("retry", "Retry the failed items of a finished migration job"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        _ = sub.add_argument("job_id")

    list_parser = subparsers.add_parser("list", help="List jobs, newest first")
    _ = list_parser.add_argument("--type", choices=["migration", "cleanup"], dest="job_type")
    _ = list_parser.add_argument("--status")

    stale_parser = subparsers.add_parser("cleanup-stale", help="Mark jobs without heartbeat as failed")
    _ = stale_parser.add_argument("--timeout", type=float, default=60.0, help="Heartbeat timeout in seconds")

    return parser.parse_args(argv)


def parse_match_fields(values: list[str]) -> tuple[str | None, str | None]:
    """Turn ``--match-field`` occurrences into a (source, target) pair."""
    if not values:
        return None, None
    if len(values) == 1:
        source, sep, target = values[0].partition(":")
        return (source, target) if sep else (source, source)
    if len(values) == 2:
        return values[0], values[1]
    msg = f"--match-field given {len(values)} times; expected at most 2"
    raise MigrationError(msg)


def parse_field_map(values: list[str]) -> dict[str, str] | None:
    if not values:
        return None
    mapping: dict[str, str] = {}
    for entry in values:
        source, sep, target = entry.partition(":")
        if not sep or not source or not target:
            msg = f'Invalid --map entry "{entry}", expected "source:target"'
            raise MigrationError(msg)
        mapping[source] = target
    return mapping


def build_migration_request(args: argparse.Namespace) -> MigrationRequest:
    source_match, target_match = parse_match_fields(args.match_field)
    filters = ItemFilters(
        created_from=args.created_from,
        created_to=args.created_to,
        last_edit_from=args.last_edit_from,
        last_edit_to=args.last_edit_to,
        tags=list(args.tag),
    )
    has_filters = any([filters.created_from, filters.created_to, filters.last_edit_from, filters.last_edit_to])
    return MigrationRequest(
        source_app_id=args.source_app,
        target_app_id=args.target_app,
        mode=args.mode,
        source_match_field=source_match,
        target_match_field=target_match,
        field_mapping=parse_field_map(args.field_map),
        batch_size=args.batch_size,
        concurrency=args.concurrency,
        filters=filters if has_filters or filters.tags else None,
        dry_run=args.dry_run,
        duplicate_behavior=args.duplicate_behavior,
        transfer_files=args.transfer_files,
        stop_on_error=args.stop_on_error,
        max_items=args.max_items,
        use_prefetch_cache=not args.no_prefetch,
    )


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))  # noqa: T201


def _summary(job: MigrationJob) -> str:
    p = job.progress
    return (
        f"{job.job_id} {job.job_type:<9} {job.status:<16} {p.processed}/{p.total} processed, "
        f"{p.successful} ok, {p.failed} failed, {p.skipped} skipped ({job.created_at})"
    )


def run_in_foreground(context: AppContext, job_id: str, *, on_interrupt: Callable[[str], None]) -> MigrationJob:
    """Wait for a job, turning Ctrl-C into ``on_interrupt`` (a pause or cancel request)."""
    manager = context.jobs
    interrupted = False
    while True:
        try:
            job = manager.wait(job_id, timeout=_POLL_SECONDS)
        except KeyboardInterrupt:
            if interrupted:
                raise
            interrupted = True
            logger.warning(f"Interrupted, stopping job {job_id} after the current batch (Ctrl-C again to abort)")
            try:
                on_interrupt(job_id)
            except InvalidJobStateError as e:
                logger.warning(str(e))
            continue
        if job.status not in ACTIVE_STATUSES:
            return job


def _finish(job: MigrationJob) -> int:
    print(_summary(job))  # noqa: T201
    for error in job.errors:
        logger.error(f"{error.code or 'ERROR'}: {error.message}")
    if job.status == "paused":
        logger.info(f"Job paused. Resume with: podio-migrator resume {job.job_id}")
    if job.failed_items and job.mode != "update":
        logger.info(f"{len(job.failed_items)} items failed. Retry with: podio-migrator retry {job.job_id}")
    return 0 if job.status in _OK_STATUSES else 1


def cmd_migrate(context: AppContext, args: argparse.Namespace) -> int:
    request = build_migration_request(args)
    manager = context.jobs
    if request.dry_run:
        preview = manager.dry_run(request)
        _print_json(preview.to_dict())
        return 0
    job_id = manager.start_migration(request)
    logger.info(f"Started migration job {job_id}")
    return _finish(run_in_foreground(context, job_id, on_interrupt=manager.pause))


def cmd_cleanup(context: AppContext, args: argparse.Namespace) -> int:
    request = CleanupRequest(
        app_id=args.app,
        match_field=args.match_field,
        mode=args.mode,
        keep_strategy=args.keep,
        dry_run=args.dry_run,
        concurrency=args.concurrency,
        max_groups=args.max_groups,
        allow_unsupported_match_type=args.allow_unsupported_type,
    )
    manager = context.jobs
    job_id = manager.start_cleanup(request)
    logger.info(f"Started cleanup job {job_id}")
    job = run_in_foreground(context, job_id, on_interrupt=manager.cancel)

    if job.duplicate_groups and (job.status == "waiting_approval" or request.dry_run):
        _print_json([g.to_dict() for g in job.duplicate_groups])
    if job.status != "waiting_approval":
        return _finish(job)
    # the detection worker may still be shutting down
    job = manager.wait(job_id)

    to_delete = sum(len(g.delete_item_ids) for g in job.duplicate_groups)
    if job.duplicate_groups and not args.yes:
        answer = input(f"Delete {to_delete} items in {len(job.duplicate_groups)} groups? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            logger.info(f"Not approved. Job {job_id} stays waiting for approval")
            return 0
    manager.approve_and_execute(job_id, list(job.duplicate_groups))
    return _finish(run_in_foreground(context, job_id, on_interrupt=manager.cancel))


def cmd_status(context: AppContext, args: argparse.Namespace) -> int:
    _print_json(context.jobs.get_status(args.job_id).to_dict())
    return 0


def cmd_list(context: AppContext, args: argparse.Namespace) -> int:
    for job in context.jobs.list_jobs(job_type=args.job_type, status=args.status):
        print(_summary(job))  # noqa: T201
    return 0


def cmd_resume(context: AppContext, args: argparse.Namespace) -> int:
    manager = context.jobs
    job_id = manager.resume(args.job_id)
    return _finish(run_in_foreground(context, job_id, on_interrupt=manager.pause))


def cmd_retry(context: AppContext, args: argparse.Namespace) -> int:
    manager = context.jobs
    job_id = manager.retry_failed(args.job_id)
    return _finish(run_in_foreground(context, job_id, on_interrupt=manager.cancel))


def cmd_cleanup_stale(context: AppContext, args: argparse.Namespace) -> int:
    cleaned = context.jobs.cleanup_stale_jobs(timeout=args.timeout)
    for job_id in cleaned:
        print(job_id)  # noqa: T201
    logger.info(f"{len(cleaned)} stale jobs marked failed")
    return 0


COMMANDS: dict[str, Callable[[AppContext, argparse.Namespace], int]] = {
    "migrate": cmd_migrate,
    "cleanup": cmd_cleanup,
    "status": cmd_status,
    "list": cmd_list,
    "resume": cmd_resume,
    "retry": cmd_retry,
    "cleanup-stale": cmd_cleanup_stale,
}


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)

    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose)

    try:
        config = PodioConfig.from_env(pass_prefix=args.pass_prefix)
        context = AppContext(config)
        exit_code = COMMANDS[args.command](context, args)
    except Exception:
        logger.exception(f"Command '{args.command}' failed")
        sys.exit(1)
    sys.exit(exit_code)
