from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .config import QuickNotesConfig
from .deadline import race_deadline
from .errors import AuthQueryError, DeadlineExceeded, QuickNotesError, StoreWriteError
from .http_client import TRANSPORT_ERRORS
from .identity import GoTrueIdentityProvider
from .ids import fetch_note_id
from .models import Note, Session, now_ms
from .note_store import RestNoteStore
from .ports import IdentityProvider, NoteStore
from .reconciler import SessionReconciler
from .redirect import recover_session_from_url
from .render import PageView, render_page
from .state import AppState
from .status import Scheduler, StatusLine

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "Sign-in unavailable: no backend configured."
SIGNED_OUT = "Signed out successfully."
SIGNED_OUT_TIMEOUT = "Signed out (network timeout, using local fallback)."
SIGNED_OUT_NETWORK_ERROR = "Signed out (network error, using local fallback)."

_FAILURES = (QuickNotesError, *TRANSPORT_ERRORS)


@dataclass(frozen=True)
class SessionChanged:
    session: Session | None


@dataclass(frozen=True)
class RequestMagicLink:
    email: str


@dataclass(frozen=True)
class OpenEditor:
    note_id: str | None = None


@dataclass(frozen=True)
class CloseEditor:
    pass


@dataclass(frozen=True)
class SubmitNote:
    title: str
    content: str


@dataclass(frozen=True)
class DeleteNote:
    note_id: str


@dataclass(frozen=True)
class SignOut:
    pass


@dataclass(frozen=True)
class LoadPage:
    url: str


Action = RequestMagicLink | OpenEditor | CloseEditor | SubmitNote | DeleteNote | SignOut | LoadPage

_STOP = object()


class NotesApp:
    """Owns the page state and serializes every change through one event channel.

    Session changes (from the identity provider) and UI actions (from the
    viewer or CLI) are two producers on the same queue; ``run`` is its only
    consumer. The action coroutines can also be awaited directly when nothing
    else is driving the app, as the one-shot CLI commands do.
    """

    def __init__(
        self,
        config: QuickNotesConfig,
        identity: IdentityProvider | None = None,
        store: NoteStore | None = None,
        *,
        id_factory: Callable[[], Awaitable[str]] | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self.config = config
        self.identity = identity
        self.store = store
        self._id_factory = id_factory or (lambda: fetch_note_id(config))
        status = StatusLine(
            auto_hide_s=config.status_auto_hide_s,
            scheduler=scheduler,
            on_change=lambda _message: self._render(),
        )
        self.state = AppState(status=status)
        self.reconciler = SessionReconciler(
            self.state,
            store,
            render=self._render,
            post=self._post_session,
        )
        self.last_view: PageView | None = None
        self._render_listeners: list[Callable[[PageView], None]] = []
        self._channel: asyncio.Queue[tuple[Any, asyncio.Future | None]] = asyncio.Queue()
        self._unsubscribe: Callable[[], None] | None = None

    @classmethod
    def from_config(cls, config: QuickNotesConfig, **kwargs: Any) -> NotesApp:
        if not config.backend_configured:
            return cls(config, **kwargs)
        identity = GoTrueIdentityProvider(config)

        def _access_token() -> str | None:
            session = identity.current_session
            return session.access_token if session is not None else None

        return cls(config, identity, RestNoteStore(config, _access_token), **kwargs)

    @property
    def status(self) -> str:
        return self.state.status.text

    def on_render(self, callback: Callable[[PageView], None]) -> None:
        self._render_listeners.append(callback)

    def _render(self) -> None:
        view = render_page(self.state)
        self.last_view = view
        for listener in list(self._render_listeners):
            listener(view)

    def view(self) -> PageView:
        return render_page(self.state)

    # -- lifecycle -----------------------------------------------------------

    async def start(self, url: str | None = None) -> str | None:
        """Page load: redirect recovery, first reconciliation, then subscribe."""

        if self.identity is None:
            logger.info("backend not configured; running local only")
            self.state.principal = None
            self.state.replace_notes([])
            self._render()
            return url
        clean_url = await recover_session_from_url(self.identity, url)
        try:
            session = await self.identity.get_current_session()
        except (AuthQueryError, *TRANSPORT_ERRORS) as exc:
            logger.warning("session query failed, continuing signed out: %s", exc)
            session = None
        await self.reconciler.reconcile(session)
        self._unsubscribe = self.identity.on_session_change(self.reconciler.notify)
        return clean_url

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.stop()

    # -- event channel -------------------------------------------------------

    def _post_session(self, session: Session | None) -> None:
        self._channel.put_nowait((SessionChanged(session), None))

    def post(self, action: Action) -> None:
        self._channel.put_nowait((action, None))

    async def dispatch(self, action: Action) -> Any:
        done = asyncio.get_running_loop().create_future()
        self._channel.put_nowait((action, done))
        return await done

    def stop(self) -> None:
        self._channel.put_nowait((_STOP, None))

    async def run(self) -> None:
        while True:
            event, done = await self._channel.get()
            if event is _STOP:
                if done is not None and not done.done():
                    done.set_result(None)
                return
            try:
                result = await self._handle(event)
            except Exception as exc:
                logger.exception("event %s failed", type(event).__name__, exc_info=exc)
                if done is not None and not done.done():
                    done.set_exception(exc)
                continue
            if done is not None and not done.done():
                done.set_result(result)

    async def _handle(self, event: Any) -> Any:
        if isinstance(event, SessionChanged):
            # The newest known session wins over whatever the event carried.
            latest = await self._fresh_session()
            return await self.reconciler.reconcile(latest)
        if isinstance(event, RequestMagicLink):
            return await self.request_magic_link(event.email)
        if isinstance(event, OpenEditor):
            return self.open_editor(event.note_id)
        if isinstance(event, CloseEditor):
            self.close_editor()
            return True
        if isinstance(event, SubmitNote):
            return await self.submit_note(event.title, event.content)
        if isinstance(event, DeleteNote):
            return await self.delete_note(event.note_id)
        if isinstance(event, SignOut):
            return await self.sign_out()
        if isinstance(event, LoadPage):
            return await self.load_page(event.url)
        raise TypeError(f"unknown event: {event!r}")

    async def _fresh_session(self) -> Session | None:
        if self.identity is None:
            return None
        try:
            return await self.identity.ensure_fresh_session()
        except _FAILURES as exc:
            logger.warning("token refresh failed before reload: %s", exc)
            return self.identity.current_session

    # -- actions -------------------------------------------------------------

    async def load_page(self, url: str) -> str | None:
        if self.identity is None:
            return url
        return await recover_session_from_url(self.identity, url)

    async def request_magic_link(self, email: str) -> bool:
        email = (email or "").strip()
        if not email:
            return False
        if self.identity is None:
            self.state.status.set(NOT_CONFIGURED)
            return False
        self.state.status.set("Sending magic link...", auto_hide=False)
        try:
            await self.identity.request_magic_link(email, self.config.redirect_url)
        except _FAILURES as exc:
            logger.error("sign-in error: %s", exc)
            self.state.status.set(f"Error: {exc}", auto_hide=False)
            return False
        self.state.status.set("Check your email for the login link.")
        return True

    async def sign_out(self) -> bool:
        if self.identity is None:
            self.state.status.set(NOT_CONFIGURED)
            return False
        self.state.status.set("Signing out...", auto_hide=False)
        outcome = SIGNED_OUT
        try:
            await race_deadline(
                self.identity.sign_out(),
                self.config.sign_out_timeout_s,
                label="sign-out",
            )
        except DeadlineExceeded as exc:
            logger.warning("network sign-out timed out, using local fallback: %s", exc)
            outcome = SIGNED_OUT_TIMEOUT
        except _FAILURES as exc:
            logger.warning("network sign-out failed, using local fallback: %s", exc)
            outcome = SIGNED_OUT_NETWORK_ERROR
        self.identity.clear_session(notify=False)
        self.state.principal = None
        self.state.close_editor()
        self.state.replace_notes([])
        self._render()
        self.state.status.set(outcome)
        return outcome == SIGNED_OUT

    def open_editor(self, note_id: str | None = None) -> bool:
        if self.state.principal is None:
            action = "edit" if note_id else "create"
            self.state.status.set(f"Please sign in to {action} notes.")
            return False
        if note_id is not None and self.state.find_note(note_id) is None:
            self.state.status.set("Note not found.")
            return False
        self.state.open_editor(note_id)
        self._render()
        return True

    def close_editor(self) -> None:
        self.state.close_editor()
        self._render()

    async def submit_note(self, title: str, content: str) -> bool:
        principal = self.state.principal
        if principal is None or self.store is None:
            self.state.status.set("Please sign in to create notes.")
            return False
        if self.state.reconciling:
            logger.info("note submit ignored: reconciliation in flight")
            return False
        title = (title or "").strip()
        content = (content or "").strip()
        if not title or not content:
            self.state.status.set("Title and content are required.")
            return False

        editing_id = self.state.editing_note_id
        self.state.status.set("Updating note..." if editing_id else "Saving note...", auto_hide=False)
        try:
            if self.identity is not None:
                await self.identity.ensure_fresh_session()
            if editing_id:
                note = self.state.update_note(editing_id, title=title, content=content)
                if note is None:
                    raise StoreWriteError("note not found")
                self._render()
                await self.store.update(principal, note)
            else:
                note = Note(id=await self._id_factory(), title=title, content=content, created=now_ms())
                self.state.prepend_note(note)
                self._render()
                await self.store.insert(principal, note)
        except _FAILURES as exc:
            logger.error("note save failed: %s", exc)
            self.state.status.set(f"Save failed: {exc}", auto_hide=False)
            return False

        self.state.close_editor()
        self._render()
        self.state.status.set("Note updated successfully!" if editing_id else "Note saved successfully!")
        return True

    async def delete_note(self, note_id: str) -> bool:
        principal = self.state.principal
        if principal is None or self.store is None:
            self.state.status.set("Please sign in to delete notes.")
            return False
        try:
            if self.identity is not None:
                await self.identity.ensure_fresh_session()
            await self.store.delete(principal, note_id)
        except _FAILURES as exc:
            logger.error("delete failed: %s", exc)
            self.state.status.set(f"Delete failed: {exc}", auto_hide=False)
            return False
        self.state.remove_note(note_id)
        if self.state.editing_note_id == note_id:
            self.state.close_editor()
        self._render()
        self.state.status.set("Note deleted successfully!")
        return True
