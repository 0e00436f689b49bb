from __future__ import annotations

import datetime as dt
from dataclasses import asdict, dataclass
from html import escape
from typing import Any

from .state import AppState
from .status import reads_as_error


@dataclass(frozen=True, slots=True)
class NoteView:
    id: str
    title: str
    content: str
    created: int
    created_label: str


@dataclass(frozen=True, slots=True)
class EditorView:
    heading: str
    note_id: str | None
    title: str
    content: str


@dataclass(frozen=True, slots=True)
class PageView:
    signed_in: bool
    user_label: str
    can_create: bool
    notes: tuple[NoteView, ...]
    empty: bool
    count_text: str
    status: str
    editor: EditorView | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def note_count_text(count: int) -> str:
    return "1 note" if count == 1 else f"{count} notes"


def created_label(created_ms: int) -> str:
    stamp = dt.datetime.fromtimestamp(created_ms / 1000, tz=dt.UTC)
    return stamp.strftime("%Y-%m-%d %H:%M UTC")


def _editor_view(state: AppState) -> EditorView | None:
    if not state.editor_open:
        return None
    note = state.find_note(state.editing_note_id) if state.editing_note_id else None
    if note is None:
        return EditorView(heading="Create Note", note_id=None, title="", content="")
    return EditorView(heading="Edit Note", note_id=note.id, title=note.title, content=note.content)


def render_page(state: AppState) -> PageView:
    principal = state.principal
    notes = tuple(
        NoteView(
            id=note.id,
            title=note.title,
            content=note.content,
            created=note.created,
            created_label=created_label(note.created),
        )
        for note in state.notes
    )
    return PageView(
        signed_in=principal is not None,
        user_label=principal.label if principal is not None else "-",
        can_create=principal is not None,
        notes=notes,
        empty=not notes,
        count_text=note_count_text(len(notes)),
        status=state.status.text,
        editor=_editor_view(state),
    )


# Hands an implicit-flow fragment to the server, then drops it from the address bar.
_FRAGMENT_FORWARDER = """<script>
(function () {
  var hash = window.location.hash;
  if (hash.indexOf("access_token=") === -1) return;
  fetch("/api/auth/callback", {
    method: "POST",
    headers: {"Content-Type": "application/json"},
    body: JSON.stringify({url: window.location.href})
  }).finally(function () { window.location.replace(window.location.pathname); });
})();
</script>"""

_STYLE = """<style>
body { font-family: system-ui, sans-serif; max-width: 44rem; margin: 2rem auto; padding: 0 1rem; }
header { display: flex; justify-content: space-between; align-items: center; }
.status { min-height: 1.5rem; color: #1f6f5c; }
.status.error { color: #b3261e; }
.note-item { list-style: none; border: 1px solid #ddd; border-radius: 8px; padding: .75rem; margin: .5rem 0; }
.note-actions form { display: inline; }
.empty { color: #777; }
textarea { width: 100%; min-height: 6rem; }
</style>"""


def _auth_section(view: PageView) -> str:
    if view.signed_in:
        return (
            '<section id="authSignedIn">'
            f'<span id="userEmail">{escape(view.user_label)}</span> '
            '<form method="post" action="/signout"><button type="submit">Sign out</button></form>'
            "</section>"
        )
    return (
        '<section id="authSignedOut">'
        '<form method="post" action="/auth">'
        '<input type="email" name="email" placeholder="you@example.com" required> '
        '<button type="submit">Send magic link</button>'
        "</form></section>"
    )


def _editor_section(editor: EditorView | None) -> str:
    if editor is None:
        return ""
    hidden = ""
    if editor.note_id:
        hidden = f'<input type="hidden" name="id" value="{escape(editor.note_id)}">'
    return (
        '<section id="noteModal">'
        f"<h2>{escape(editor.heading)}</h2>"
        '<form method="post" action="/notes">'
        f"{hidden}"
        f'<p><input name="title" value="{escape(editor.title)}" placeholder="Title"></p>'
        f'<p><textarea name="content" placeholder="Content">{escape(editor.content)}</textarea></p>'
        '<button type="submit">Save</button>'
        "</form>"
        '<form method="post" action="/notes/cancel"><button type="submit">Cancel</button></form>'
        "</section>"
    )


def _notes_section(view: PageView) -> str:
    if view.empty:
        return '<p id="empty" class="empty">No notes yet.</p><ul id="noteList"></ul>'
    items: list[str] = []
    for note in view.notes:
        note_id = escape(note.id)
        items.append(
            '<li class="note-item">'
            f'<h3 class="note-title">{escape(note.title)}</h3>'
            f'<p class="note-content">{escape(note.content)}</p>'
            f"<small>{escape(note.created_label)}</small>"
            '<div class="note-actions">'
            '<form method="post" action="/notes/edit">'
            f'<input type="hidden" name="id" value="{note_id}">'
            '<button type="submit" title="Edit">Edit</button></form> '
            '<form method="post" action="/notes/delete" '
            f"onsubmit=\"return confirm('Delete this note? This cannot be undone.');\">"
            f'<input type="hidden" name="id" value="{note_id}">'
            '<button type="submit" title="Delete">Delete</button></form>'
            "</div></li>"
        )
    return f'<ul id="noteList">{"".join(items)}</ul>'


def render_html(view: PageView) -> str:
    status_class = "status"
    if view.status and reads_as_error(view.status):
        status_class = "status error"
    create_disabled = "" if view.can_create else " disabled"
    return (
        "<!doctype html>\n"
        '<html lang="en"><head><meta charset="utf-8">'
        '<meta name="viewport" content="width=device-width, initial-scale=1">'
        f"<title>QuickNotes</title>{_STYLE}</head><body>"
        f"<header><h1>QuickNotes</h1>{_auth_section(view)}</header>"
        f'<p id="authMsg" class="{status_class}" role="status">{escape(view.status)}</p>'
        '<form method="post" action="/notes/new">'
        f'<button id="createNoteBtn" type="submit"{create_disabled}>New note</button>'
        f'</form> <span id="count">{escape(view.count_text)}</span>'
        f"{_editor_section(view.editor)}"
        f"{_notes_section(view)}"
        f"{_FRAGMENT_FORWARDER}"
        "</body></html>\n"
    )
