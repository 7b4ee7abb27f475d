"""Tally CLI - decisions and responsibilities from chat exports."""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Annotated, NoReturn
from uuid import UUID

import aiosqlite
import typer

from tally.capture import ChatExportWatcher
from tally.config import get_settings
from tally.processing.candidates import truncate
from tally.processing.pipeline import EnrichmentResult, IngestResult, Pipeline
from tally.storage import (
    Chat,
    ChatSummary,
    Database,
    DecisionStatus,
    DecisionView,
    Responsibility,
    ResponsibilityStatus,
    init_database,
)


STATUS_ICONS: dict[DecisionStatus, str] = {
    DecisionStatus.FINAL: "✓",
    DecisionStatus.TENTATIVE: "~",
    DecisionStatus.OPEN: "○",
    DecisionStatus.SUPERSEDED: "↺",
    DecisionStatus.CONFLICTED: "!",
}

app = typer.Typer(
    name="tally",
    help="Track decisions and responsibilities from chat exports.",
    add_completion=False,
)


def fail(message: str) -> NoReturn:
    """Print an error and exit with status 1."""
    typer.echo(typer.style("✗ ", fg=typer.colors.RED, bold=True) + message, err=True)
    sys.exit(1)


def success(message: str) -> None:
    typer.echo(typer.style("✓ ", fg=typer.colors.GREEN, bold=True) + message)


async def open_database() -> Database:
    """Initialize the database configured for this process."""
    return await init_database(get_settings().db_path)


@app.callback()
def main() -> None:
    """Configure logging for every command."""
    try:
        settings = get_settings()
    except ValueError as e:
        fail(f"Invalid configuration: {e}")
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )


def format_confidence(confidence: int) -> str:
    """Format confidence with color based on value."""
    text = f"{confidence}%"
    if confidence >= 80:
        return typer.style(text, fg=typer.colors.GREEN, bold=True)
    elif confidence >= 60:
        return typer.style(text, fg=typer.colors.GREEN)
    elif confidence >= 40:
        return typer.style(text, fg=typer.colors.YELLOW)
    return typer.style(text, fg=typer.colors.WHITE)


def format_decision(view: DecisionView) -> str:
    """Format a decision version for display."""
    version = view.version
    icon = STATUS_ICONS.get(version.status, "?")
    header = (
        typer.style(f"{icon} ", bold=True)
        + f"{truncate(version.title, 60)} • v{version.version_no} • "
        + f"{version.status.value} • {format_confidence(version.confidence)}"
    )
    lines = [header]
    if version.needs_review:
        lines.append(typer.style("  Needs review: conflicting outcomes", fg=typer.colors.RED))
    if version.outcome:
        lines.append(f"  {truncate(version.outcome, 70)}")
    lines.append(
        f"  Thread: {view.thread.thread_key} • {len(version.evidence)} evidence message(s)"
    )
    return "\n".join(lines)


def format_responsibility(item: Responsibility) -> str:
    """Format a responsibility for display."""
    if item.status == ResponsibilityStatus.COMPLETED:
        status = typer.style("[COMPLETED]", fg=typer.colors.GREEN)
    elif item.status == ResponsibilityStatus.OVERDUE:
        status = typer.style("[OVERDUE]", fg=typer.colors.RED)
    else:
        status = typer.style("[OPEN]", fg=typer.colors.YELLOW)

    due = f" • due {item.due_date.isoformat()}" if item.due_date else ""
    lines = [f"{status} {truncate(item.task_text, 60)} • {item.owner}{due}"]
    if item.description:
        lines.append(f"  {truncate(item.description, 70)}")
    lines.append(f"  ID: {item.id}")
    return "\n".join(lines)


def print_ingest_result(result: IngestResult) -> None:
    success(
        f"Imported {result.messages_parsed} messages "
        f"({result.new_messages} new, {result.duplicate_messages} duplicates)"
    )
    typer.echo(f"   Chat ID: {result.chat_id}")
    typer.echo(
        f"   Decisions: {result.decisions_detected} detected, {result.decisions_new} new"
    )
    typer.echo(
        f"   Responsibilities: {result.responsibilities_detected} detected, "
        f"{result.responsibilities_new} new"
    )
    if result.candidates_dropped:
        typer.echo(f"   Dropped without evidence: {result.candidates_dropped}")


def print_enrichment_result(result: EnrichmentResult) -> None:
    success(f"Enriched {result.messages_analyzed} messages via {result.source}")
    typer.echo(
        f"   Decisions: {result.decisions_detected} detected, {result.decisions_new} new"
    )
    typer.echo(
        f"   Responsibilities: {result.responsibilities_detected} detected, "
        f"{result.responsibilities_new} new"
    )
    if result.inferred_items_dropped:
        typer.echo(f"   Malformed inferred items dropped: {result.inferred_items_dropped}")


@app.command("import")
def import_chat(
    file: Annotated[
        Path,
        typer.Argument(help="Chat export (.txt) to import"),
    ],
    chat: Annotated[
        str,
        typer.Option("--chat", "-c", help="Name of the chat to import into"),
    ],
) -> None:
    """Import a chat export and detect decisions and responsibilities.

    Examples:
        tally import "WhatsApp Chat with Team.txt" --chat team
    """
    if not file.is_file():
        fail(f"File does not exist: {file}")

    async def run() -> IngestResult:
        db = await open_database()
        return await Pipeline(db).ingest_file(file, chat_name=chat)

    try:
        result = asyncio.run(run())
    except UnicodeDecodeError as e:
        fail(f"File is not UTF-8 text: {e}")
    except (ValueError, aiosqlite.Error) as e:
        fail(f"Import failed: {e}")

    if result.messages_parsed == 0:
        typer.echo(
            typer.style("No messages found; is this a chat export?", fg=typer.colors.YELLOW)
        )
    print_ingest_result(result)


@app.command()
def enrich(
    chat_id: Annotated[UUID, typer.Argument(help="Chat to enrich")],
) -> None:
    """Merge inferred candidates from the configured providers into a chat.

    Falls back to deterministic results if no provider is available.
    """

    async def run() -> EnrichmentResult:
        db = await open_database()
        return await Pipeline(db).enrich_chat(chat_id)

    try:
        result = asyncio.run(run())
    except (ValueError, aiosqlite.Error) as e:
        fail(f"Enrichment failed: {e}")

    print_enrichment_result(result)


@app.command()
def chats() -> None:
    """List chats."""

    async def run() -> list[Chat]:
        db = await open_database()
        return await db.list_chats()

    results = asyncio.run(run())
    if not results:
        typer.echo(typer.style("No chats yet", fg=typer.colors.YELLOW))
        return

    typer.echo(f"\n{typer.style('Chats:', bold=True)}\n")
    for item in results:
        typer.echo(f"{item.name} • {item.created_at:%Y-%m-%d} • {item.id}")


@app.command()
def summary(
    chat_id: Annotated[UUID, typer.Argument(help="Chat to summarize")],
) -> None:
    """Show the latest import and record counts of a chat."""

    async def run() -> ChatSummary | None:
        db = await open_database()
        return await db.chat_summary(chat_id)

    result = asyncio.run(run())
    if result is None:
        fail(f"Chat not found: {chat_id}")

    typer.echo(f"\n{typer.style('Summary:', bold=True)} {chat_id}\n")
    if result.last_import_at is None:
        typer.echo(typer.style("No imports yet", fg=typer.colors.YELLOW))
    else:
        typer.echo(f"Last import: {result.last_import_at:%Y-%m-%d %H:%M}")
        typer.echo(
            f"   {result.messages_parsed_latest} parsed, {result.new_messages_latest} new, "
            f"{result.duplicates_skipped_latest} duplicates"
        )
    typer.echo(
        f"Messages: {result.message_count} "
        f"({result.messages_since_last_import} since last import)"
    )
    typer.echo(f"Decisions: {result.decision_count}")
    typer.echo(f"Open responsibilities: {result.open_responsibilities}")


@app.command()
def decisions(
    chat_id: Annotated[UUID, typer.Argument(help="Chat to list decisions for")],
    history: Annotated[
        bool,
        typer.Option("--history", help="Show every version, not only the latest"),
    ] = False,
    status: Annotated[
        DecisionStatus | None,
        typer.Option("--status", "-s", help="Filter by status"),
    ] = None,
    query: Annotated[
        str | None,
        typer.Option("-q", "--query", help="Text to search in title and outcome"),
    ] = None,
    min_confidence: Annotated[
        int,
        typer.Option("--min-confidence", min=0, max=100, help="Lowest confidence"),
    ] = 0,
    max_confidence: Annotated[
        int,
        typer.Option("--max-confidence", min=0, max=100, help="Highest confidence"),
    ] = 100,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of results"),
    ] = 50,
) -> None:
    """List the latest decision of each thread in a chat.

    Examples:
        tally decisions <chat-id>
        tally decisions <chat-id> --status final -q supabase
        tally decisions <chat-id> --history
        tally decisions <chat-id> --min-confidence 40 --max-confidence 70
    """
    if min_confidence > max_confidence:
        fail("--min-confidence must not exceed --max-confidence")

    async def run() -> list[DecisionView]:
        db = await open_database()
        return await db.list_decisions(
            chat_id,
            include_history=history,
            status=status,
            query=query,
            min_confidence=min_confidence,
            max_confidence=max_confidence,
            limit=limit,
        )

    results = asyncio.run(run())
    if not results:
        typer.echo(typer.style("No decisions found", fg=typer.colors.YELLOW))
        return

    typer.echo(f"\n{typer.style('Decisions:', bold=True)}\n")
    for view in results:
        typer.echo(format_decision(view))
        typer.echo()


@app.command()
def responsibilities(
    chat_id: Annotated[UUID, typer.Argument(help="Chat to list responsibilities for")],
    status: Annotated[
        ResponsibilityStatus | None,
        typer.Option("--status", "-s", help="Filter by status"),
    ] = None,
    owner: Annotated[
        str | None,
        typer.Option("--owner", "-o", help="Filter by owner"),
    ] = None,
    query: Annotated[
        str | None,
        typer.Option("-q", "--query", help="Text to search in the task"),
    ] = None,
) -> None:
    """List responsibilities of a chat."""

    async def run() -> list[Responsibility]:
        db = await open_database()
        return await db.list_responsibilities(chat_id, status=status, owner=owner, query=query)

    results = asyncio.run(run())
    if not results:
        typer.echo(typer.style("No responsibilities found", fg=typer.colors.YELLOW))
        return

    typer.echo(f"\n{typer.style('Responsibilities:', bold=True)}\n")
    for item in results:
        typer.echo(format_responsibility(item))
        typer.echo()


@app.command()
def done(
    responsibility_id: Annotated[UUID, typer.Argument(help="Responsibility to complete")],
) -> None:
    """Mark a responsibility as completed."""

    async def run() -> bool:
        db = await open_database()
        return await db.complete_responsibility(responsibility_id)

    if not asyncio.run(run()):
        fail(f"Responsibility not found: {responsibility_id}")
    success(f"Completed {responsibility_id}")


@app.command()
def clear(
    chat_id: Annotated[UUID, typer.Argument(help="Chat to delete")],
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Do not ask for confirmation"),
    ] = False,
) -> None:
    """Delete a chat with all its messages, decisions and responsibilities."""
    if not yes:
        typer.confirm(f"Delete chat {chat_id} and everything recorded in it?", abort=True)

    async def run() -> bool:
        db = await open_database()
        return await db.purge_chat(chat_id)

    if not asyncio.run(run()):
        fail(f"Chat not found: {chat_id}")
    success(f"Deleted chat {chat_id}")


@app.command()
def watch(
    path: Annotated[
        Path,
        typer.Argument(help="Directory to watch for chat exports"),
    ],
    chat: Annotated[
        str,
        typer.Option("--chat", "-c", help="Name of the chat to import into"),
    ],
    process_existing: Annotated[
        bool,
        typer.Option(
            "--process-existing/--no-process-existing",
            help="Import existing exports on startup",
        ),
    ] = True,
) -> None:
    """Watch a directory and import new or updated chat exports.

    Examples:
        tally watch ~/Exports --chat team
    """
    if not path.exists():
        fail(f"Path does not exist: {path}")
    if not path.is_dir():
        fail(f"Path is not a directory: {path}")

    stats = {"imported": 0, "failed": 0}

    def on_export(file_path: Path) -> None:
        typer.echo(typer.style("📄 ", bold=True) + f"Importing: {file_path.name}")

        async def run() -> IngestResult:
            db = await open_database()
            return await Pipeline(db).ingest_file(file_path, chat_name=chat)

        try:
            result = asyncio.run(run())
        except Exception:
            stats["failed"] += 1
            raise
        stats["imported"] += 1
        print_ingest_result(result)

    watcher = ChatExportWatcher(watch_path=path, callback=on_export)

    stop_requested = False

    def signal_handler(signum: int, frame: object) -> None:
        nonlocal stop_requested
        if stop_requested:
            # Force exit on second Ctrl+C
            sys.exit(1)
        stop_requested = True
        typer.echo("\n" + typer.style("Stopping watcher...", fg=typer.colors.YELLOW))
        watcher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    typer.echo(typer.style("👁️  ", bold=True) + f"Watching {path} for chat exports")
    typer.echo(f"   Chat: {chat}")
    typer.echo("   Press Ctrl+C to stop\n")

    try:
        watcher.start()
        if process_existing:
            count = watcher.process_existing()
            if count:
                typer.echo(
                    typer.style("ℹ️  ", bold=True) + f"Imported {count} existing file(s)\n"
                )

        while watcher.is_running() and not stop_requested:
            signal.pause()
    finally:
        watcher.stop()

    typer.echo(
        f"\n{typer.style('Summary:', bold=True)} "
        f"Imported {stats['imported']}, Failed {stats['failed']}"
    )


if __name__ == "__main__":
    app()
