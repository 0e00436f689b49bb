from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from .config import QuickNotesConfig
from .errors import QuickNotesError, StoreReadError, StoreWriteError
from .http_client import TRANSPORT_ERRORS, build_url, error_reason, request_json
from .models import Note, Principal, note_from_row, note_to_row

logger = logging.getLogger(__name__)

LIST_COLUMNS = "id,title,content,created"


class RestNoteStore:
    """Note rows behind a PostgREST ``/rest/v1/<table>`` endpoint.

    Every request filters on ``user_id`` even though row-level security on the
    server enforces the same scoping.
    """

    def __init__(
        self,
        config: QuickNotesConfig,
        access_token: Callable[[], str | None],
    ) -> None:
        if not config.backend_url or not config.anon_key:
            raise ValueError("backend_url and anon_key are required")
        self.config = config
        self._access_token = access_token

    def _headers(self, *, prefer: str | None = None) -> dict[str, str]:
        assert self.config.anon_key is not None
        token = self._access_token() or self.config.anon_key
        headers = {"apikey": self.config.anon_key, "Authorization": f"Bearer {token}"}
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _call(
        self,
        method: str,
        params: dict[str, str],
        *,
        body: Any = None,
        prefer: str | None = None,
        error_cls: type[QuickNotesError],
    ) -> Any:
        assert self.config.backend_url is not None
        url = build_url(self.config.backend_url, f"rest/v1/{self.config.notes_table}", params)
        try:
            status, payload = await asyncio.to_thread(
                request_json,
                method,
                url,
                headers=self._headers(prefer=prefer),
                body=body,
                timeout_s=self.config.request_timeout_s,
            )
        except TRANSPORT_ERRORS as exc:
            raise error_cls(str(exc) or type(exc).__name__) from exc
        if status >= 400:
            raise error_cls(error_reason(status, payload))
        return payload

    async def list(self, principal: Principal) -> list[Note]:
        payload = await self._call(
            "GET",
            {
                "select": LIST_COLUMNS,
                "user_id": f"eq.{principal.id}",
                "order": "created.desc",
            },
            error_cls=StoreReadError,
        )
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise StoreReadError("unexpected list response")
        notes: list[Note] = []
        for row in payload:
            try:
                notes.append(note_from_row(row))
            except (KeyError, TypeError, ValueError) as exc:
                raise StoreReadError(f"malformed note row: {exc}") from exc
        logger.info("loaded %d notes", len(notes))
        return notes

    async def insert(self, principal: Principal, note: Note) -> None:
        await self._call(
            "POST",
            {},
            body=[note_to_row(principal, note)],
            prefer="return=minimal",
            error_cls=StoreWriteError,
        )
        logger.info("note inserted: %s", note.id)

    async def update(self, principal: Principal, note: Note) -> None:
        await self._call(
            "PATCH",
            {"id": f"eq.{note.id}", "user_id": f"eq.{principal.id}"},
            body={"title": note.title, "content": note.content},
            prefer="return=minimal",
            error_cls=StoreWriteError,
        )
        logger.info("note updated: %s", note.id)

    async def delete(self, principal: Principal, note_id: str) -> None:
        await self._call(
            "DELETE",
            {"id": f"eq.{note_id}", "user_id": f"eq.{principal.id}"},
            prefer="return=minimal",
            error_cls=StoreWriteError,
        )
        logger.info("note deleted: %s", note_id)
