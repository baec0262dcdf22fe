"""Command-line utilities for inspecting and tidying stored interviews."""

from __future__ import annotations

import argparse
import asyncio
from typing import Awaitable, Callable, List, Optional

from .config import AppSettings
from .models import InterviewStatus, utcnow
from .store import InterviewStore, create_store

CommandHandler = Callable[[InterviewStore, argparse.Namespace], Awaitable[None]]


def run_interviews_cli(
    settings: AppSettings,
    argv: Optional[List[str]] = None,
    *,
    store: Optional[InterviewStore] = None,
) -> None:
    """Entry point for interview-record CLI commands."""

    parser = argparse.ArgumentParser(
        prog="benefits-interview interviews",
        description="List, inspect and clean up stored interview records.",
    )
    subparsers = parser.add_subparsers(dest="command")
    subparsers.required = True

    list_parser = subparsers.add_parser(
        "list",
        help="Show interview records, most recently updated first",
    )
    list_parser.add_argument(
        "-n",
        "--limit",
        type=int,
        default=20,
        help="Maximum number of records to display (default: 20)",
    )
    list_parser.add_argument(
        "--status",
        choices=[status.value for status in InterviewStatus],
        help="Filter records by status",
    )
    list_parser.set_defaults(func=_handle_list)

    show_parser = subparsers.add_parser(
        "show",
        help="Display a single interview by session id",
    )
    show_parser.add_argument("session_id", help="Interview session identifier")
    show_parser.set_defaults(func=_handle_show)

    checkpoints_parser = subparsers.add_parser(
        "checkpoints",
        help="List the checkpoints saved for an interview",
    )
    checkpoints_parser.add_argument(
        "session_id", help="Interview session identifier"
    )
    checkpoints_parser.set_defaults(func=_handle_checkpoints)

    abandon_parser = subparsers.add_parser(
        "abandon",
        help="Mark an in-progress interview as abandoned",
    )
    abandon_parser.add_argument("session_id", help="Interview session identifier")
    abandon_parser.set_defaults(func=_handle_abandon)

    cleanup_parser = subparsers.add_parser(
        "cleanup",
        help="Delete in-progress interviews that never received a message",
    )
    cleanup_parser.set_defaults(func=_handle_cleanup)

    args = parser.parse_args(argv)
    handler: CommandHandler = args.func
    asyncio.run(
        _run_with_store(store or create_store(settings.redis_url), handler, args)
    )


async def _run_with_store(
    store: InterviewStore,
    handler: CommandHandler,
    args: argparse.Namespace,
) -> None:
    try:
        await handler(store, args)
    finally:
        await store.close()


async def _handle_list(store: InterviewStore, args: argparse.Namespace) -> None:
    status = InterviewStatus(args.status) if args.status else None
    records = (await store.list_records(status=status))[: args.limit]
    if not records:
        print("No interviews found.")
        return
    print(f"Showing {len(records)} interviews:")
    for record in records:
        print(
            f" - {record.session_id} | {record.status.value} | "
            f"{record.last_updated.isoformat()} | "
            f"{record.exchange_count} exchanges"
        )


async def _handle_show(store: InterviewStore, args: argparse.Namespace) -> None:
    record = await store.get_by_session(args.session_id)
    if record is None:
        print(f"Interview '{args.session_id}' not found.")
        return
    print(f"Interview ID: {record.id}")
    print(f"Session: {record.session_id}")
    print(f"Status: {record.status.value}")
    print(f"Started: {record.started_at.isoformat()}")
    if record.completed_at:
        print(f"Completed: {record.completed_at.isoformat()}")
    print(f"Current section: {record.current_section or '-'}")
    completed = ", ".join(record.completed_sections) or "-"
    print(f"Completed sections: {completed}")
    if record.applicant_name:
        print(f"Applicant: {record.applicant_name}")
    if record.household_size is not None:
        print(f"Household size: {record.household_size}")
    if record.monthly_income is not None:
        print(f"Monthly income: ${record.monthly_income}")
    if record.flags:
        print(f"Flags: {', '.join(record.flags)}")
    if record.summary:
        print(f"Completion reason: {record.summary.get('reason')}")
    if record.transcript:
        print("\nTranscript:\n")
        print(record.transcript)


async def _handle_checkpoints(
    store: InterviewStore,
    args: argparse.Namespace,
) -> None:
    record = await store.get_by_session(args.session_id)
    if record is None:
        print(f"Interview '{args.session_id}' not found.")
        return
    checkpoints = await store.list_checkpoints(record.id)
    if not checkpoints:
        print("No checkpoints saved.")
        return
    print(f"Found {len(checkpoints)} checkpoint(s):")
    for checkpoint in checkpoints:
        sections = ", ".join(checkpoint.completed_sections) or "-"
        print(
            f" - {checkpoint.id} | {checkpoint.created_at.isoformat()} | "
            f"{len(checkpoint.transcript_snapshot)} entries | "
            f"section={checkpoint.current_section} | covered={sections}"
        )


async def _handle_abandon(
    store: InterviewStore,
    args: argparse.Namespace,
) -> None:
    record = await store.get_by_session(args.session_id)
    if record is None:
        print(f"Interview '{args.session_id}' not found.")
        return
    if record.status.is_terminal:
        print(f"Interview '{args.session_id}' is already {record.status.value}.")
        return
    await store.update(
        args.session_id,
        status=InterviewStatus.ABANDONED,
        completed_at=utcnow(),
    )
    print(f"Interview '{args.session_id}' marked as abandoned.")


async def _handle_cleanup(
    store: InterviewStore,
    args: argparse.Namespace,
) -> None:
    del args
    records = await store.list_records(status=InterviewStatus.IN_PROGRESS)
    removed = 0
    for record in records:
        if record.transcript or record.exchange_count:
            continue
        if await store.delete(record.id):
            removed += 1
    print(f"Removed {removed} empty interview(s).")
