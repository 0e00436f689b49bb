from __future__ import annotations

import enum
import logging
from collections.abc import Callable

from .errors import StoreReadError
from .http_client import TRANSPORT_ERRORS
from .models import Session
from .ports import NoteStore, SessionEvent
from .state import AppState

logger = logging.getLogger(__name__)

LOADING_MESSAGE = "Loading notes..."


class ReconcilerState(enum.Enum):
    IDLE = "idle"
    RECONCILING = "reconciling"


class SessionReconciler:
    """Brings principal and notes in line with the latest session value.

    At most one pass runs at a time. A trigger that arrives during a pass is
    dropped; the next accepted trigger carries the newest session.
    """

    def __init__(
        self,
        state: AppState,
        store: NoteStore | None,
        *,
        render: Callable[[], None],
        post: Callable[[Session | None], None] | None = None,
    ) -> None:
        self.state = state
        self.store = store
        self._render = render
        self._post = post
        self.passes = 0
        self.dropped = 0

    @property
    def phase(self) -> ReconcilerState:
        return ReconcilerState.RECONCILING if self.state.reconciling else ReconcilerState.IDLE

    def notify(self, event: SessionEvent, session: Session | None) -> None:
        """Session-change listener: forwards the trigger unless a pass is running."""

        if self.state.reconciling:
            self.dropped += 1
            logger.debug("session event %s dropped: reconciliation in flight", event)
            return
        logger.debug("session event %s accepted", event)
        if self._post is not None:
            self._post(session)

    async def reconcile(self, session: Session | None) -> bool:
        if self.state.reconciling:
            self.dropped += 1
            logger.debug("reconcile dropped: already reconciling")
            return False
        self.state.reconciling = True
        self.passes += 1
        try:
            await self._apply(session)
        finally:
            self.state.reconciling = False
        return True

    async def _apply(self, session: Session | None) -> None:
        state = self.state
        state.principal = session.principal if session is not None else None
        if state.principal is None:
            state.close_editor()
        self._render()

        if state.principal is not None and self.store is not None:
            state.status.set(LOADING_MESSAGE, auto_hide=False)
            self._render()
            try:
                notes = await self.store.list(state.principal)
            except (StoreReadError, *TRANSPORT_ERRORS) as exc:
                logger.error("failed to load notes: %s", exc)
                state.replace_notes([])
                state.status.set(f"Load failed: {exc}", auto_hide=False)
            else:
                state.replace_notes(notes)
                state.status.clear()
        else:
            state.replace_notes([])
            state.status.clear()

        self._render()
