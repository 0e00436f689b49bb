from __future__ import annotations

import datetime as dt
import time
from dataclasses import dataclass
from typing import Any, TypedDict


@dataclass(frozen=True, slots=True)
class Principal:
    id: str
    email: str | None = None

    @property
    def label(self) -> str:
        return self.email or self.id


@dataclass(frozen=True, slots=True)
class Session:
    access_token: str
    refresh_token: str
    principal: Principal
    expires_at: int | None = None

    def is_expired(self, *, now: float | None = None, margin_s: int = 10) -> bool:
        if self.expires_at is None:
            return False
        current = time.time() if now is None else now
        return self.expires_at <= current + margin_s

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "user": {"id": self.principal.id, "email": self.principal.email},
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Session:
        """Build a session from a token-endpoint response or a persisted session."""

        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token")
        user = payload.get("user")
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("session missing access_token")
        if not isinstance(refresh_token, str) or not refresh_token:
            raise ValueError("session missing refresh_token")
        if not isinstance(user, dict) or not user.get("id"):
            raise ValueError("session missing user")
        email = user.get("email")
        expires_at = payload.get("expires_at")
        if expires_at is None and payload.get("expires_in") is not None:
            expires_at = int(time.time()) + int(payload["expires_in"])
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            principal=Principal(id=str(user["id"]), email=str(email) if email else None),
            expires_at=int(expires_at) if expires_at is not None else None,
        )


@dataclass(slots=True)
class Note:
    id: str
    title: str
    content: str
    created: int


class NoteRow(TypedDict, total=False):
    id: str
    user_id: str
    title: str
    content: str
    created: str


def now_ms() -> int:
    return int(time.time() * 1000)


def to_wire_timestamp(created_ms: int) -> str:
    stamp = dt.datetime.fromtimestamp(created_ms / 1000, tz=dt.UTC)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def from_wire_timestamp(value: str) -> int:
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(raw)
    except ValueError as exc:
        raise ValueError(f"invalid timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return int(round(parsed.timestamp() * 1000))


def note_from_row(row: dict[str, Any]) -> Note:
    return Note(
        id=str(row["id"]),
        title=str(row.get("title") or ""),
        content=str(row.get("content") or ""),
        created=from_wire_timestamp(str(row["created"])),
    )


def note_to_row(principal: Principal, note: Note) -> NoteRow:
    return {
        "id": note.id,
        "user_id": principal.id,
        "title": note.title,
        "content": note.content,
        "created": to_wire_timestamp(note.created),
    }


@dataclass(frozen=True, slots=True)
class TokenPairCredential:
    access_token: str
    refresh_token: str
    expires_at: int | None = None


@dataclass(frozen=True, slots=True)
class CodeCredential:
    code: str


RedirectCredential = TokenPairCredential | CodeCredential
