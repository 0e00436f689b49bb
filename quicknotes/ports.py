from __future__ import annotations

from collections.abc import Callable
from typing import Literal, Protocol

from .models import Note, Principal, RedirectCredential, Session

SessionEvent = Literal["INITIAL_SESSION", "SIGNED_IN", "TOKEN_REFRESHED", "SIGNED_OUT"]
SessionListener = Callable[[SessionEvent, Session | None], None]


class IdentityProvider(Protocol):
    """
    Passwordless identity backend. Every network operation may fail or hang;
    callers decide how long to wait.
    """

    @property
    def supports_code_exchange(self) -> bool:
        ...

    @property
    def current_session(self) -> Session | None:
        ...

    async def request_magic_link(self, email: str, redirect_to: str) -> None:
        ...

    async def get_current_session(self) -> Session | None:
        ...

    async def ensure_fresh_session(self) -> Session | None:
        ...

    def on_session_change(self, callback: SessionListener) -> Callable[[], None]:
        ...

    async def exchange_redirect_credential(self, credential: RedirectCredential) -> Session:
        ...

    async def sign_out(self) -> None:
        ...

    def clear_session(self, *, notify: bool = True) -> None:
        ...


class NoteStore(Protocol):
    """
    Remote note rows, always filtered by the owning principal.
    """

    async def list(self, principal: Principal) -> list[Note]:
        ...

    async def insert(self, principal: Principal, note: Note) -> None:
        ...

    async def update(self, principal: Principal, note: Note) -> None:
        ...

    async def delete(self, principal: Principal, note_id: str) -> None:
        ...
