"""Command line entry-point for the benefits interview engine."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .api import run_api_server
from .config import AppSettings
from .coverage_oracle import CoverageOracleClient
from .interviews_cli import run_interviews_cli
from .models import Role
from .sessions import SessionRegistry, SessionStatus
from .store import InterviewStore, create_store

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="benefits-interview",
        description=(
            "Track section coverage and completion for benefits interviews"
        ),
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Python logging level (default: WARNING)",
    )
    subparsers = parser.add_subparsers(dest="command")
    subparsers.required = True

    serve_parser = subparsers.add_parser(
        "serve",
        help="Run the HTTP API with uvicorn",
    )
    serve_parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host interface for the API server (default: 127.0.0.1)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8081,
        help="TCP port for the API server (default: 8081)",
    )
    serve_parser.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origin",
        help="CORS origin(s) to allow. Defaults to '*' if not provided.",
    )

    replay_parser = subparsers.add_parser(
        "replay",
        help="Feed a JSONL transcript through a session",
    )
    replay_parser.add_argument(
        "path",
        type=Path,
        help="File with one {\"role\", \"content\"} object per line",
    )
    replay_parser.add_argument(
        "--session-id",
        help="Session id to record under (default: the file name)",
    )
    replay_parser.add_argument(
        "--end",
        action="store_true",
        help="Request a manual end once the transcript has been replayed",
    )
    return parser.parse_args(argv)


def run_cli(argv: Optional[list[str]] = None) -> None:
    """Entry-point invoked from ``python -m benefits_interview``."""

    arg_list = list(argv) if argv is not None else sys.argv[1:]
    if arg_list and arg_list[0] == "interviews":
        settings = AppSettings.load()
        run_interviews_cli(settings, arg_list[1:])
        return

    args = _parse_args(arg_list)
    logging.basicConfig(level=args.log_level.upper())
    try:
        settings = AppSettings.load()
    except RuntimeError as exc:
        logger.error("Failed to load AppSettings: %s", exc)
        raise SystemExit(1) from exc

    if args.command == "serve":
        run_api_server(
            settings,
            host=args.host,
            port=args.port,
            allow_origins=args.allow_origin,
            log_level=args.log_level.lower(),
        )
        return

    session_id = args.session_id or args.path.stem
    try:
        events = list(read_events(args.path))
    except (OSError, ValueError) as exc:
        raise SystemExit(f"Unable to read {args.path}: {exc}") from exc
    status = asyncio.run(
        replay_transcript(
            settings,
            session_id,
            events,
            store=create_store(settings.redis_url),
            oracle=CoverageOracleClient.from_settings(settings.model),
            end=args.end,
        )
    )
    _print_status(status)


def read_events(path: Path) -> Iterator[Tuple[Role, str]]:
    """Yield ``(role, content)`` pairs from a JSONL transcript file."""

    with path.open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
                role = Role.from_string(payload.get("role"))
            except (json.JSONDecodeError, AttributeError, ValueError) as exc:
                raise ValueError(f"line {line_number}: {exc}") from exc
            yield role, str(payload.get("content", ""))


async def replay_transcript(
    settings: AppSettings,
    session_id: str,
    events: List[Tuple[Role, str]],
    *,
    store: InterviewStore,
    oracle: CoverageOracleClient,
    end: bool = False,
) -> SessionStatus:
    """Run events through a fresh session and return its final status."""

    registry = SessionRegistry(settings, store, oracle, watch_idle=False)
    try:
        session = await registry.open(session_id)
        for role, content in events:
            await session.handle_event(role, content)
            if session.completed:
                break
        await session.debouncer.wait_idle()
        if end and not session.completed:
            await session.request_manual_end(True)
        return session.status()
    finally:
        await registry.aclose()


def _print_status(status: SessionStatus) -> None:
    print(f"Session: {status.session_id}")
    print(f"Messages: {status.message_count}")
    print(f"Coverage: {status.percentage}%")
    print(status.status_text)
    if status.coverage_degraded:
        print("Coverage check unavailable; showing keyword estimate.")
    if status.completed:
        print(f"Completed: {status.completion_reason}")
    if status.last_error:
        print(f"Last error: {status.last_error}")


if __name__ == "__main__":  # pragma: no cover - manual execution hook
    run_cli()
