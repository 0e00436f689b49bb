from __future__ import annotations

from dataclasses import dataclass, field

from .models import Note, Principal
from .status import StatusLine


@dataclass
class AppState:
    """Everything the page shows, owned by the reconciler and shared by reference."""

    status: StatusLine = field(default_factory=StatusLine)
    principal: Principal | None = None
    notes: list[Note] = field(default_factory=list)
    editing_note_id: str | None = None
    editor_open: bool = False
    reconciling: bool = False

    @property
    def signed_in(self) -> bool:
        return self.principal is not None

    def find_note(self, note_id: str) -> Note | None:
        for note in self.notes:
            if note.id == note_id:
                return note
        return None

    def replace_notes(self, notes: list[Note]) -> None:
        self.notes = list(notes)

    def prepend_note(self, note: Note) -> None:
        self.notes.insert(0, note)

    def update_note(self, note_id: str, *, title: str, content: str) -> Note | None:
        note = self.find_note(note_id)
        if note is None:
            return None
        note.title = title
        note.content = content
        return note

    def remove_note(self, note_id: str) -> bool:
        before = len(self.notes)
        self.notes = [note for note in self.notes if note.id != note_id]
        return len(self.notes) != before

    def open_editor(self, note_id: str | None = None) -> None:
        self.editor_open = True
        self.editing_note_id = note_id

    def close_editor(self) -> None:
        self.editor_open = False
        self.editing_note_id = None
