from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from typing import TypeVar

import typer
from rich import print
from rich.markup import escape

from . import __version__
from .app import NOT_CONFIGURED, NotesApp
from .config import QuickNotesConfig, get_config_path, load_config
from .render import created_label, note_count_text
from .status import reads_as_error
from .viewer import start_viewer

app = typer.Typer(help="quicknotes: magic-link notes synced to a hosted backend")

T = TypeVar("T")


@app.callback()
def main(
    log_level: str = typer.Option(
        None,
        "--log-level",
        help="Logging level (default: QUICKNOTES_LOG_LEVEL or WARNING)",
    ),
) -> None:
    level = (log_level or os.getenv("QUICKNOTES_LOG_LEVEL") or "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _config_or_exit() -> QuickNotesConfig:
    config = load_config()
    if not config.backend_configured:
        print(f"[yellow]{NOT_CONFIGURED}[/yellow]")
        raise typer.Exit(code=1)
    return config


def _with_app(
    action: Callable[[NotesApp], Awaitable[T]],
    *,
    url: str | None = None,
) -> tuple[NotesApp, T]:
    config = _config_or_exit()

    async def _run() -> tuple[NotesApp, T]:
        notes_app = NotesApp.from_config(config)
        await notes_app.start(url)
        try:
            return notes_app, await action(notes_app)
        finally:
            await notes_app.close()

    return asyncio.run(_run())


def _report(notes_app: NotesApp, ok: bool) -> None:
    message = escape(notes_app.status)
    if not ok:
        print(f"[red]{message or 'Failed'}[/red]")
        raise typer.Exit(code=1)
    if message:
        print(f"[green]{message}[/green]")


def _require_signed_in(notes_app: NotesApp) -> None:
    if notes_app.state.principal is None:
        print("[yellow]Not signed in (run `quicknotes login EMAIL`).[/yellow]")
        raise typer.Exit(code=1)


async def _noop(_notes_app: NotesApp) -> None:
    return None


@app.command()
def login(email: str = typer.Argument(..., help="Address that receives the magic link")) -> None:
    """Send a magic sign-in link."""

    notes_app, ok = _with_app(lambda a: a.request_magic_link(email))
    _report(notes_app, ok)
    if ok:
        print("Open the link, then run `quicknotes callback URL` with the address it lands on.")


@app.command()
def callback(url: str = typer.Argument(..., help="Address the magic link redirected to")) -> None:
    """Finish sign-in from a magic-link redirect URL."""

    notes_app, _ = _with_app(_noop, url=url)
    _require_signed_in(notes_app)
    principal = notes_app.state.principal
    assert principal is not None
    print(f"[green]Signed in as {escape(principal.label)}[/green]")


@app.command()
def whoami() -> None:
    """Show the signed-in account."""

    notes_app, _ = _with_app(_noop)
    _require_signed_in(notes_app)
    principal = notes_app.state.principal
    assert principal is not None
    print(f"{escape(principal.label)} ({principal.id})")


@app.command("list")
def list_notes() -> None:
    """List your notes, newest first."""

    notes_app, _ = _with_app(_noop)
    _require_signed_in(notes_app)
    if notes_app.status and reads_as_error(notes_app.status):
        print(f"[red]{escape(notes_app.status)}[/red]")
        raise typer.Exit(code=1)
    notes = notes_app.state.notes
    print(f"[bold]{note_count_text(len(notes))}[/bold]")
    for note in notes:
        print(f"- [cyan]{note.id}[/cyan] {escape(note.title)} [dim]{created_label(note.created)}[/dim]")
        for line in note.content.splitlines():
            print(f"    {escape(line)}")


@app.command()
def add(
    title: str = typer.Option(..., help="Note title"),
    content: str = typer.Option(..., help="Note body"),
) -> None:
    """Create a note."""

    async def _add(notes_app: NotesApp) -> bool:
        if not notes_app.open_editor():
            return False
        return await notes_app.submit_note(title, content)

    notes_app, ok = _with_app(_add)
    _report(notes_app, ok)


@app.command()
def edit(
    note_id: str = typer.Argument(..., help="Note id"),
    title: str = typer.Option(None, help="New title (default: keep)"),
    content: str = typer.Option(None, help="New body (default: keep)"),
) -> None:
    """Edit a note's title or body."""

    async def _edit(notes_app: NotesApp) -> bool:
        if not notes_app.open_editor(note_id):
            return False
        note = notes_app.state.find_note(note_id)
        assert note is not None
        return await notes_app.submit_note(
            note.title if title is None else title,
            note.content if content is None else content,
        )

    notes_app, ok = _with_app(_edit)
    _report(notes_app, ok)


@app.command()
def delete(
    note_id: str = typer.Argument(..., help="Note id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete a note."""

    async def _delete(notes_app: NotesApp) -> bool:
        if notes_app.state.principal is None:
            return await notes_app.delete_note(note_id)
        note = notes_app.state.find_note(note_id)
        if note is None:
            notes_app.state.status.set("Note not found.")
            return False
        if not yes and not typer.confirm(f'Delete "{note.title}"? This cannot be undone.'):
            notes_app.state.status.set("Delete cancelled.")
            return True
        return await notes_app.delete_note(note_id)

    notes_app, ok = _with_app(_delete)
    _report(notes_app, ok)


@app.command()
def logout() -> None:
    """Sign out (locally even when the backend is unreachable)."""

    notes_app, _ = _with_app(lambda a: a.sign_out())
    # Local sign-out always happens; the status says how the remote half went.
    _report(notes_app, True)


@app.command()
def serve(
    host: str = typer.Option(None, help="Host to bind the page (default: config viewer_host)"),
    port: int = typer.Option(None, help="Port to bind the page (default: config viewer_port)"),
) -> None:
    """Serve the notes page locally."""

    config = load_config()
    bind_host = host or config.viewer_host
    bind_port = port or config.viewer_port
    if not config.backend_configured:
        print(f"[yellow]{NOT_CONFIGURED}[/yellow]")
    print(f"[green]QuickNotes on http://{bind_host}:{bind_port}[/green]")
    try:
        start_viewer(config, host=bind_host, port=bind_port)
    except KeyboardInterrupt:
        return
    except OSError as exc:
        print(f"[red]Could not start viewer: {escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc


@app.command("config")
def show_config() -> None:
    """Print the effective configuration."""

    config = load_config()
    data = asdict(config)
    if data.get("anon_key"):
        data["anon_key"] = "***"
    print(f"[dim]{get_config_path()}[/dim]")
    print(json.dumps(data, indent=2))


@app.command()
def version() -> None:
    """Print version."""

    print(__version__)


if __name__ == "__main__":
    app()
