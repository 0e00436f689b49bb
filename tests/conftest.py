from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from quicknotes.config import CONFIG_ENV_OVERRIDES, QuickNotesConfig
from quicknotes.models import Note, Principal, RedirectCredential, Session


@pytest.fixture(autouse=True)
def _isolate_quicknotes_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for env_var in CONFIG_ENV_OVERRIDES.values():
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.delenv("QUICKNOTES_LOG_LEVEL", raising=False)
    monkeypatch.setenv("QUICKNOTES_CONFIG", str(tmp_path / "config.json"))
    monkeypatch.setenv("QUICKNOTES_SESSION_PATH", str(tmp_path / "session.json"))


class ManualHandle:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    def __init__(self) -> None:
        self.handles: list[ManualHandle] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> ManualHandle:
        handle = ManualHandle(delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def live(self) -> list[ManualHandle]:
        return [handle for handle in self.handles if not handle.cancelled]

    def fire(self) -> None:
        handles, self.handles = self.live, []
        for handle in handles:
            handle.callback()


class FakeIdentity:
    supports_code_exchange = True

    def __init__(self, session: Session | None = None) -> None:
        self.current_session = session
        self.listeners: list[Callable] = []
        self.magic_links: list[tuple[str, str]] = []
        self.magic_link_error: Exception | None = None
        self.exchange_error: Exception | None = None
        self.exchanged: list[RedirectCredential] = []
        self.sign_out_calls = 0
        self.sign_out_error: Exception | None = None
        self.sign_out_gate: asyncio.Event | None = None
        self.refresh_checks = 0
        self.refresh_error: Exception | None = None

    async def request_magic_link(self, email: str, redirect_to: str) -> None:
        if self.magic_link_error is not None:
            raise self.magic_link_error
        self.magic_links.append((email, redirect_to))

    async def get_current_session(self) -> Session | None:
        return self.current_session

    async def ensure_fresh_session(self) -> Session | None:
        self.refresh_checks += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.current_session

    def on_session_change(self, callback: Callable) -> Callable[[], None]:
        self.listeners.append(callback)
        return lambda: self.listeners.remove(callback)

    def emit(self, event: str, session: Session | None) -> None:
        self.current_session = session
        for listener in list(self.listeners):
            listener(event, session)

    async def exchange_redirect_credential(self, credential: RedirectCredential) -> Session:
        self.exchanged.append(credential)
        if self.exchange_error is not None:
            raise self.exchange_error
        session = make_session("u-redirect", "redirect@example.com")
        self.current_session = session
        return session

    async def sign_out(self) -> None:
        self.sign_out_calls += 1
        if self.sign_out_gate is not None:
            await self.sign_out_gate.wait()
        if self.sign_out_error is not None:
            raise self.sign_out_error

    def clear_session(self, *, notify: bool = True) -> None:
        self.current_session = None
        if notify:
            self.emit("SIGNED_OUT", None)


class FakeStore:
    def __init__(self, notes: dict[str, list[Note]] | None = None) -> None:
        self.notes: dict[str, list[Note]] = notes or {}
        self.calls: list[tuple[str, str]] = []
        self.errors: dict[str, Exception] = {}
        self.list_gate: asyncio.Event | None = None

    def _fail(self, op: str) -> None:
        error = self.errors.get(op)
        if error is not None:
            raise error

    async def list(self, principal: Principal) -> list[Note]:
        self.calls.append(("list", principal.id))
        if self.list_gate is not None:
            await self.list_gate.wait()
        self._fail("list")
        rows = self.notes.get(principal.id, [])
        return [Note(n.id, n.title, n.content, n.created) for n in rows]

    async def insert(self, principal: Principal, note: Note) -> None:
        self.calls.append(("insert", note.id))
        self._fail("insert")
        self.notes.setdefault(principal.id, []).insert(
            0, Note(note.id, note.title, note.content, note.created)
        )

    async def update(self, principal: Principal, note: Note) -> None:
        self.calls.append(("update", note.id))
        self._fail("update")
        for row in self.notes.get(principal.id, []):
            if row.id == note.id:
                row.title = note.title
                row.content = note.content

    async def delete(self, principal: Principal, note_id: str) -> None:
        self.calls.append(("delete", note_id))
        self._fail("delete")
        rows = self.notes.get(principal.id, [])
        self.notes[principal.id] = [row for row in rows if row.id != note_id]


def make_session(user_id: str = "u1", email: str | None = "u1@example.com") -> Session:
    return Session(
        access_token=f"access-{user_id}",
        refresh_token=f"refresh-{user_id}",
        principal=Principal(id=user_id, email=email),
        expires_at=None,
    )


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def config() -> QuickNotesConfig:
    return QuickNotesConfig(
        backend_url="https://backend.example.com",
        anon_key="anon-key",
        sign_out_timeout_s=0.05,
    )


@pytest.fixture
def session_factory() -> Callable[..., Session]:
    return make_session


@pytest.fixture
def fake_identity_cls() -> type[FakeIdentity]:
    return FakeIdentity


@pytest.fixture
def fake_store_cls() -> type[FakeStore]:
    return FakeStore
