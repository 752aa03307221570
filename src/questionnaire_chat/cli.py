"""Command line entry-point for the questionnaire chat client."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from .config import AppSettings
from .library import SubmissionError
from .models import CATEGORIES
from .reconciliation import LoadState
from .sessions import QuestionnaireSession
from .transcript import Message
from .workspace import QuestionnaireWorkspace

CommandHandler = Callable[[QuestionnaireWorkspace, argparse.Namespace], Awaitable[int]]


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="questionnaire-chat",
        description=(
            "Load, complete, and edit compliance questionnaires from the "
            "command line"
        ),
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    subparsers = parser.add_subparsers(dest="command")
    subparsers.required = True

    list_parser = subparsers.add_parser(
        "list",
        help="Show questionnaires from the backend (or the local cache)",
    )
    list_parser.set_defaults(func=_handle_list)

    show_parser = subparsers.add_parser(
        "show",
        help="Load a questionnaire, fill missing answers, and print the chat",
    )
    show_parser.add_argument("id", help="Questionnaire identifier")
    show_parser.add_argument(
        "--category",
        choices=list(CATEGORIES),
        help="Only show questions in this category",
    )
    show_parser.set_defaults(func=_handle_show)

    create_parser = subparsers.add_parser(
        "create",
        help="Create a questionnaire from a file with one question per line",
    )
    create_parser.add_argument("--title", required=True, help="Questionnaire title")
    create_parser.add_argument(
        "--questions-file",
        required=True,
        type=Path,
        help="Text file with one question per line ('-' for stdin)",
    )
    create_parser.set_defaults(func=_handle_create)

    edit_parser = subparsers.add_parser(
        "edit",
        help="Replace the answer for one question",
    )
    edit_parser.add_argument("id", help="Questionnaire identifier")
    edit_parser.add_argument("index", type=int, help="Zero-based question index")
    edit_parser.add_argument("text", help="New answer text")
    edit_parser.set_defaults(func=_handle_edit)

    regenerate_parser = subparsers.add_parser(
        "regenerate",
        help="Generate a fresh AI answer for one question",
    )
    regenerate_parser.add_argument("id", help="Questionnaire identifier")
    regenerate_parser.add_argument("index", type=int, help="Zero-based question index")
    regenerate_parser.set_defaults(func=_handle_regenerate)

    delete_parser = subparsers.add_parser(
        "delete",
        help="Delete a questionnaire remotely and from the local cache",
    )
    delete_parser.add_argument("id", help="Questionnaire identifier")
    delete_parser.set_defaults(func=_handle_delete)

    serve_parser = subparsers.add_parser(
        "serve",
        help="Serve the HTTP API with uvicorn",
    )
    serve_parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host interface for the server (default: 127.0.0.1)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8090,
        help="TCP port for the server (default: 8090)",
    )
    return parser.parse_args(argv)


def run_cli(argv: Optional[List[str]] = None) -> None:
    """Entry-point invoked from ``python -m questionnaire_chat``."""

    arg_list = list(argv) if argv is not None else sys.argv[1:]
    args = _parse_args(arg_list)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        settings = AppSettings.load()
    except RuntimeError as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc

    if args.command == "serve":
        from .api import run_api_server

        run_api_server(settings, host=args.host, port=args.port)
        return

    handler: CommandHandler = args.func
    exit_code = asyncio.run(_run(settings, handler, args))
    if exit_code:
        raise SystemExit(exit_code)


async def _run(
    settings: AppSettings,
    handler: CommandHandler,
    args: argparse.Namespace,
) -> int:
    async with QuestionnaireWorkspace(settings) as workspace:
        return await handler(workspace, args)


async def _handle_list(
    workspace: QuestionnaireWorkspace,
    args: argparse.Namespace,
) -> int:
    summaries = await workspace.library.list()
    if not summaries:
        print("No questionnaires found.")
        return 0
    print(f"Showing {len(summaries)} questionnaires:")
    for summary in summaries:
        print(
            f" - {summary.id} | {summary.name} | {summary.status.value} | "
            f"{summary.progress}% | {summary.question_count} questions "
            f"({summary.source})"
        )
    return 0


async def _open(
    workspace: QuestionnaireWorkspace,
    questionnaire_id: str,
) -> Optional[QuestionnaireSession]:
    # Wait for generation before printing.
    session = await workspace.open_session(questionnaire_id, wait=True)
    if session.load_state is LoadState.NOT_FOUND or session.record is None:
        print(f"Questionnaire '{questionnaire_id}' not found.")
        print("Available questionnaires:")
        await _handle_list(workspace, argparse.Namespace())
        return None
    return session


def _print_messages(messages: List[Message]) -> None:
    for message in messages:
        label = {"user": "Q", "assistant": "A", "system": "*"}[message.role]
        header = f"[{label}]"
        if message.category:
            header = f"{header} ({message.category})"
        print("\n" + "-" * 40)
        print(header)
        print(message.content)
        if message.suggestions:
            print("Suggestions: " + " | ".join(message.suggestions))


async def _handle_show(
    workspace: QuestionnaireWorkspace,
    args: argparse.Namespace,
) -> int:
    session = await _open(workspace, args.id)
    if session is None:
        return 1
    _print_messages(session.transcript(args.category))
    return 0


async def _handle_create(
    workspace: QuestionnaireWorkspace,
    args: argparse.Namespace,
) -> int:
    if str(args.questions_file) == "-":
        raw_questions = sys.stdin.read()
    else:
        try:
            raw_questions = args.questions_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            print(f"Could not read questions file {args.questions_file}: {exc}")
            return 2
    try:
        record = workspace.library.create_from_submission(args.title, raw_questions)
    except SubmissionError as exc:
        print(str(exc))
        return 2
    print(f"Created questionnaire {record.id} with {record.total_count} questions.")
    return 0


async def _handle_edit(
    workspace: QuestionnaireWorkspace,
    args: argparse.Namespace,
) -> int:
    session = await _open(workspace, args.id)
    if session is None:
        return 1
    try:
        session.begin_edit(args.index)
    except IndexError as exc:
        print(str(exc))
        return 2
    result = await session.save_edit(args.index, args.text)
    if result is None:
        return 1
    print(result.message.content)
    return 0


async def _handle_regenerate(
    workspace: QuestionnaireWorkspace,
    args: argparse.Namespace,
) -> int:
    session = await _open(workspace, args.id)
    if session is None:
        return 1
    try:
        result = await session.regenerate(args.index)
    except IndexError as exc:
        print(str(exc))
        return 2
    if result is None:
        return 1
    print(result.message.content)
    return 0


async def _handle_delete(
    workspace: QuestionnaireWorkspace,
    args: argparse.Namespace,
) -> int:
    workspace.close_session(args.id)
    removed = await workspace.library.delete(args.id)
    if removed:
        print(f"Deleted questionnaire {args.id}.")
    else:
        print(f"Questionnaire {args.id} was not in the local cache.")
    return 0


if __name__ == "__main__":  # pragma: no cover - manual execution hook
    run_cli()
