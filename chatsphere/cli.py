"""Command line interface for conversation sync.

Wires settings, local state, the drive client and the orchestrator together
and exposes the orchestrator operations as commands.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, AsyncIterator

import cyclopts
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from chatsphere.config import Settings, get_settings
from chatsphere.storage.local import LocalDiskStorage
from chatsphere.storage.state import LocalConversationState
from chatsphere.sync.auth import StaticTokenProvider
from chatsphere.sync.exceptions import MalformedDataError, SyncError
from chatsphere.sync.journal import SyncJournal
from chatsphere.sync.metadata import LLMMetadataGenerator
from chatsphere.sync.orchestrator import SyncOrchestrator, SyncResult, SyncStatus
from chatsphere.sync.remote import ConversationRemote
from chatsphere.sync.store_client import DriveClient

app = cyclopts.App(name="chatsphere", help="Sync chat conversations with a remote drive")

_STATUS_STYLES = {
    SyncStatus.FAILED: "red",
    SyncStatus.UNAVAILABLE: "yellow",
    SyncStatus.IN_FLIGHT: "yellow",
    SyncStatus.LOADING: "yellow",
    SyncStatus.SKIPPED: "dim",
    SyncStatus.UNCHANGED: "dim",
    SyncStatus.EMPTY: "dim",
}


def _get_console() -> Console:
    """Get a Rich console for output."""
    return Console()


def _local_state(settings: Settings) -> LocalConversationState:
    return LocalConversationState(LocalDiskStorage(settings.state_dir))


@asynccontextmanager
async def build_orchestrator(
    settings: Settings, with_titles: bool = False
) -> AsyncIterator[SyncOrchestrator]:
    """Assemble an orchestrator from settings; closes the HTTP client on exit."""
    storage = LocalDiskStorage(settings.state_dir)
    client = DriveClient(
        storage,
        base_url=settings.graph_api_base,
        folders=settings.remote_folders,
        timeout=settings.request_timeout,
    )
    generator = LLMMetadataGenerator(model=settings.metadata_model) if with_titles else None
    orchestrator = SyncOrchestrator(
        LocalConversationState(storage),
        ConversationRemote(client),
        StaticTokenProvider(settings.access_token),
        metadata_generator=generator,
        journal=SyncJournal(settings.data_dir),
    )
    try:
        yield orchestrator
        await orchestrator.wait_for_background()
    finally:
        await client.aclose()


def _print_result(console: Console, action: str, result: SyncResult) -> None:
    style = _STATUS_STYLES.get(result.status, "green")
    line = Text.assemble(
        (f"{action}: ", "cyan"),
        (result.status.value, f"{style} bold"),
    )
    if result.conversation_id:
        line.append(f"  {result.conversation_id}", "white")
    console.print(line)
    if result.error:
        console.print(f"[red]Error: {result.error}[/red]")


def _run(action: str, operation, with_titles: bool = False) -> SyncResult:
    """Run an orchestrator coroutine factory and print its result."""
    settings = get_settings()
    console = _get_console()

    async def runner() -> SyncResult:
        async with build_orchestrator(settings, with_titles=with_titles) as orchestrator:
            if not await orchestrator.check_availability():
                return SyncResult(
                    SyncStatus.UNAVAILABLE,
                    orchestrator.local.active_id,
                    error="Set CHATSPHERE_ACCESS_TOKEN to enable sync",
                )
            return await operation(orchestrator)

    result = asyncio.run(runner())
    _print_result(console, action, result)
    return result


@app.command
def status():
    """Show the active conversation and recent sync activity."""
    settings = get_settings()
    console = _get_console()
    state = _local_state(settings)
    journal = SyncJournal(settings.data_dir)

    conversation = state.load_conversation()
    visible = state.visible_conversation()
    last_sync = journal.last_success("sync")
    stats = journal.statistics()

    console.print(
        Panel(
            Text.assemble(
                ("Conversation: ", "cyan"),
                (state.active_id or "(not synced yet)", "white"),
                ("\nTitle: ", "cyan"),
                (state.title or "New Conversation", "white"),
                ("\nMessages: ", "cyan"),
                (f"{len(visible)} visible, {len(conversation) - len(visible)} deleted", "white"),
                ("\nSync token: ", "cyan"),
                ("configured" if settings.access_token else "missing", "white"),
                ("\nLast sync: ", "cyan"),
                (last_sync.timestamp.isoformat() if last_sync else "never", "white"),
                ("\nFailures (24h): ", "cyan"),
                (str(stats["recent_failures"]), "white"),
            ),
            title="ChatSphere Sync",
            border_style="blue",
        )
    )

    recent = journal.recent(limit=5)
    if recent:
        table = Table(title="Recent Operations")
        table.add_column("Time", style="dim")
        table.add_column("Operation", style="cyan")
        table.add_column("Conversation")
        table.add_column("Status")
        for entry in recent:
            style = {"failed": "red", "skipped": "dim"}.get(entry.status, "green")
            table.add_row(
                entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                entry.op_type,
                entry.conversation_id or "",
                f"[{style}]{entry.status}[/{style}]",
            )
        console.print(table)


@app.command
def sync(
    *,
    title: Annotated[
        bool, cyclopts.Parameter(help="Generate a title after syncing")
    ] = False,
):
    """Load remote state once, then upload local changes."""

    async def operation(orchestrator: SyncOrchestrator) -> SyncResult:
        loaded = await orchestrator.load_initial()
        if not loaded.ok:
            return loaded
        result = loaded if loaded.status is SyncStatus.UPLOADED else await orchestrator.sync()
        if title and result.ok:
            await orchestrator.generate_and_update_title()
        return result

    _run("Sync", operation, with_titles=title)


@app.command(name="list")
def list_conversations():
    """List remote conversations, most recently updated first."""
    console = _get_console()
    settings = get_settings()
    active_id = _local_state(settings).active_id

    async def operation(orchestrator: SyncOrchestrator) -> SyncResult:
        token = await orchestrator.auth.get_access_token()
        index = await orchestrator.remote.fetch_index(token)
        table = Table(title="Conversations")
        table.add_column("", width=1)
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Updated")
        table.add_column("Tags")
        for entry in index.sorted_by_recency():
            table.add_row(
                "*" if entry.id == active_id else "",
                entry.id,
                entry.name,
                entry.updated_at or "",
                ", ".join(entry.tags),
            )
        console.print(table)
        return SyncResult(SyncStatus.LOADED, active_id)

    try:
        _run("List", operation)
    except SyncError as e:
        console.print(f"[red]Could not list conversations: {e}[/red]")


@app.command
def switch(
    conversation_id: Annotated[str, cyclopts.Parameter(help="Conversation to activate")],
):
    """Save the current conversation and switch to another one."""
    _run("Switch", lambda o: o.switch_conversation(conversation_id))


@app.command
def new(
    name: Annotated[str, cyclopts.Parameter(help="Conversation name")] = "New Conversation",
):
    """Create an empty remote conversation and switch to it."""
    _run("Create", lambda o: o.create_conversation(name))


@app.command
def rename(
    conversation_id: Annotated[str, cyclopts.Parameter(help="Conversation to rename")],
    name: Annotated[str, cyclopts.Parameter(help="New name")],
):
    """Rename a conversation; automatic titles stop for it."""
    _run("Rename", lambda o: o.rename_conversation(conversation_id, name))


@app.command
def delete(
    conversation_id: Annotated[str, cyclopts.Parameter(help="Conversation to delete")],
):
    """Delete a remote conversation."""
    _run("Delete", lambda o: o.delete_conversation(conversation_id))


@app.command
def reset():
    """Start a fresh conversation; the old one is saved remotely."""
    _run("Reset", lambda o: o.reset_current_conversation())


@app.command
def title():
    """Generate a title for the active conversation."""
    _run("Title", lambda o: o.generate_and_update_title(), with_titles=True)


@app.command(name="export")
def export_conversation(
    path: Annotated[Path, cyclopts.Parameter(help="Destination JSON file")],
):
    """Write the local conversation to a version 1.2 document."""
    console = _get_console()
    written = _local_state(get_settings()).export_to(path)
    console.print(f"[green]✓ Exported conversation to {written}[/green]")


@app.command(name="import")
def import_conversation(
    path: Annotated[Path, cyclopts.Parameter(help="Legacy or versioned JSON file")],
):
    """Replace the local conversation with an exported document."""
    console = _get_console()
    try:
        document = _local_state(get_settings()).import_from(path)
    except MalformedDataError as e:
        console.print(f"[red]Cannot import {path}: {e}[/red]")
        return
    console.print(
        f"[green]✓ Imported {len(document.conversation)} message(s) from {path}[/green]"
    )


load_dotenv()


def main():
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app()
