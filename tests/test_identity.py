from __future__ import annotations

import asyncio
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import pytest

from quicknotes import identity as identity_module
from quicknotes import note_store as note_store_module
from quicknotes.app import NotesApp
from quicknotes.config import QuickNotesConfig
from quicknotes.errors import AuthExchangeError, AuthQueryError, AuthRequestError
from quicknotes.identity import GoTrueIdentityProvider
from quicknotes.models import CodeCredential, Principal, Session, TokenPairCredential
from quicknotes.note_store import RestNoteStore
from quicknotes.ports import IdentityProvider
from quicknotes.session_store import SessionStore


class _Backend:
    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.requests: list[dict] = []

    def __call__(self, method, url, *, headers=None, body=None, timeout_s=10.0):
        parsed = urlparse(url)
        self.requests.append(
            {
                "method": method,
                "path": parsed.path,
                "params": {k: v[0] for k, v in parse_qs(parsed.query).items()},
                "headers": headers or {},
                "body": body,
            }
        )
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _token_response(user_id: str = "u1") -> dict:
    return {
        "access_token": f"at-{user_id}",
        "refresh_token": f"rt-{user_id}",
        "expires_in": 3600,
        "user": {"id": user_id, "email": f"{user_id}@example.com"},
    }


def _provider(tmp_path: Path, monkeypatch, backend: _Backend, *, auth_flow: str = "implicit"):
    monkeypatch.setattr(identity_module, "request_json", backend)
    config = QuickNotesConfig(
        backend_url="https://backend.example.com",
        anon_key="anon",
        auth_flow=auth_flow,
        session_path=str(tmp_path / "session.json"),
    )
    return GoTrueIdentityProvider(config)


def test_requires_backend_settings() -> None:
    with pytest.raises(ValueError):
        GoTrueIdentityProvider(QuickNotesConfig())


def test_provider_covers_identity_protocol() -> None:
    members = [name for name in vars(IdentityProvider) if not name.startswith("_")]

    assert "ensure_fresh_session" in members
    for name in members:
        assert hasattr(GoTrueIdentityProvider, name), name


@pytest.mark.asyncio
async def test_magic_link_implicit_flow(tmp_path, monkeypatch) -> None:
    backend = _Backend((200, {}))
    provider = _provider(tmp_path, monkeypatch, backend)

    await provider.request_magic_link("a@example.com", "http://127.0.0.1:38989")

    request = backend.requests[0]
    assert request["method"] == "POST"
    assert request["path"] == "/auth/v1/otp"
    assert request["params"] == {"redirect_to": "http://127.0.0.1:38989"}
    assert request["body"] == {"email": "a@example.com", "create_user": True}
    assert request["headers"]["apikey"] == "anon"
    assert request["headers"]["Authorization"] == "Bearer anon"


@pytest.mark.asyncio
async def test_magic_link_pkce_flow_stores_verifier(tmp_path, monkeypatch) -> None:
    backend = _Backend((200, {}))
    provider = _provider(tmp_path, monkeypatch, backend, auth_flow="pkce")

    await provider.request_magic_link("a@example.com", "http://h")

    body = backend.requests[0]["body"]
    assert body["code_challenge_method"] == "s256"
    assert body["code_challenge"]
    assert provider.session_store.load_code_verifier()


@pytest.mark.asyncio
async def test_magic_link_error_carries_reason(tmp_path, monkeypatch) -> None:
    backend = _Backend((429, {"msg": "For security purposes, you can only request this once every 60 seconds"}))
    provider = _provider(tmp_path, monkeypatch, backend)

    with pytest.raises(AuthRequestError, match="once every 60 seconds"):
        await provider.request_magic_link("a@example.com", "http://h")


@pytest.mark.asyncio
async def test_transport_failure_becomes_auth_error(tmp_path, monkeypatch) -> None:
    backend = _Backend(ConnectionRefusedError("refused"))
    provider = _provider(tmp_path, monkeypatch, backend)

    with pytest.raises(AuthRequestError, match="refused"):
        await provider.request_magic_link("a@example.com", "http://h")


@pytest.mark.asyncio
async def test_token_pair_exchange_signs_in_and_notifies(tmp_path, monkeypatch) -> None:
    backend = _Backend((200, {"id": "u1", "email": "u1@example.com"}))
    provider = _provider(tmp_path, monkeypatch, backend)
    events: list = []
    provider.on_session_change(lambda event, session: events.append((event, session)))

    session = await provider.exchange_redirect_credential(
        TokenPairCredential(access_token="at", refresh_token="rt", expires_at=2_000_000_000)
    )
    await asyncio.sleep(0)

    assert session.principal == Principal("u1", "u1@example.com")
    assert backend.requests[0]["path"] == "/auth/v1/user"
    assert backend.requests[0]["headers"]["Authorization"] == "Bearer at"
    assert provider.current_session == session
    assert provider.session_store.load_session() == session
    assert events == [("SIGNED_IN", session)]


@pytest.mark.asyncio
async def test_code_exchange_uses_stored_verifier(tmp_path, monkeypatch) -> None:
    backend = _Backend((200, _token_response()))
    provider = _provider(tmp_path, monkeypatch, backend, auth_flow="pkce")
    provider.session_store.save_code_verifier("verifier-1")

    session = await provider.exchange_redirect_credential(CodeCredential("code-1"))

    request = backend.requests[0]
    assert request["path"] == "/auth/v1/token"
    assert request["params"] == {"grant_type": "pkce"}
    assert request["body"] == {"auth_code": "code-1", "code_verifier": "verifier-1"}
    assert session.principal.id == "u1"
    assert provider.session_store.load_code_verifier() is None


@pytest.mark.asyncio
async def test_code_exchange_needs_pkce_and_verifier(tmp_path, monkeypatch) -> None:
    implicit = _provider(tmp_path, monkeypatch, _Backend())
    with pytest.raises(AuthExchangeError, match="pkce"):
        await implicit.exchange_redirect_credential(CodeCredential("code-1"))

    pkce = _provider(tmp_path, monkeypatch, _Backend(), auth_flow="pkce")
    with pytest.raises(AuthExchangeError, match="verifier"):
        await pkce.exchange_redirect_credential(CodeCredential("code-1"))


@pytest.mark.asyncio
async def test_current_session_loads_persisted(tmp_path, monkeypatch) -> None:
    provider = _provider(tmp_path, monkeypatch, _Backend())
    stored = Session("at", "rt", Principal("u1"), expires_at=None)
    provider.session_store.save_session(stored)

    assert await provider.get_current_session() == stored
    assert provider.current_session == stored


@pytest.mark.asyncio
async def test_expired_session_is_refreshed(tmp_path, monkeypatch) -> None:
    backend = _Backend((200, _token_response("u1")))
    provider = _provider(tmp_path, monkeypatch, backend)
    provider.session_store.save_session(Session("old", "rt-old", Principal("u1"), expires_at=1))

    session = await provider.get_current_session()

    assert backend.requests[0]["params"] == {"grant_type": "refresh_token"}
    assert backend.requests[0]["body"] == {"refresh_token": "rt-old"}
    assert session.access_token == "at-u1"
    assert provider.session_store.load_session() == session


@pytest.mark.asyncio
async def test_failed_refresh_clears_session(tmp_path, monkeypatch) -> None:
    backend = _Backend((400, {"error": "invalid_grant", "error_description": "Refresh Token Not Found"}))
    provider = _provider(tmp_path, monkeypatch, backend)
    provider.session_store.save_session(Session("old", "rt-old", Principal("u1"), expires_at=1))

    with pytest.raises(AuthQueryError, match="Refresh Token Not Found"):
        await provider.get_current_session()

    assert provider.current_session is None
    assert provider.session_store.load_session() is None


@pytest.mark.asyncio
async def test_offline_refresh_keeps_stored_session(tmp_path, monkeypatch) -> None:
    backend = _Backend(OSError("network unreachable"))
    provider = _provider(tmp_path, monkeypatch, backend)
    expired = Session("old", "rt-old", Principal("u1"), expires_at=1)
    provider.session_store.save_session(expired)

    with pytest.raises(AuthQueryError, match="network unreachable"):
        await provider.get_current_session()

    assert provider.current_session is None
    assert provider.session_store.load_session() == expired


@pytest.mark.asyncio
async def test_ensure_fresh_session_refreshes_expired_token(tmp_path, monkeypatch) -> None:
    backend = _Backend((200, _token_response("u1")))
    provider = _provider(tmp_path, monkeypatch, backend)
    provider._session = Session("at-old", "rt-old", Principal("u1"), expires_at=1)
    events: list[str] = []
    provider.on_session_change(lambda event, session: events.append(event))

    session = await provider.ensure_fresh_session()
    await asyncio.sleep(0)

    assert session.access_token == "at-u1"
    assert backend.requests[0]["params"] == {"grant_type": "refresh_token"}
    assert backend.requests[0]["body"] == {"refresh_token": "rt-old"}
    assert provider.session_store.load_session().access_token == "at-u1"
    assert events == ["TOKEN_REFRESHED"]


@pytest.mark.asyncio
async def test_ensure_fresh_session_leaves_live_token_alone(tmp_path, monkeypatch) -> None:
    backend = _Backend()
    provider = _provider(tmp_path, monkeypatch, backend)
    live = Session("at", "rt", Principal("u1"))
    provider._session = live

    assert await provider.ensure_fresh_session() == live
    assert backend.requests == []


@pytest.mark.asyncio
async def test_rejected_refresh_signs_out(tmp_path, monkeypatch) -> None:
    backend = _Backend((401, {"msg": "Invalid Refresh Token"}))
    provider = _provider(tmp_path, monkeypatch, backend)
    expired = Session("at-old", "rt-old", Principal("u1"), expires_at=1)
    provider._session = expired
    provider.session_store.save_session(expired)
    events: list[str] = []
    provider.on_session_change(lambda event, session: events.append(event))

    with pytest.raises(AuthQueryError) as excinfo:
        await provider.ensure_fresh_session()
    await asyncio.sleep(0)

    assert excinfo.value.rejected is True
    assert provider.current_session is None
    assert provider.session_store.load_session() is None
    assert events == ["SIGNED_OUT"]


@pytest.mark.asyncio
async def test_expired_token_refreshed_before_write(tmp_path, monkeypatch, scheduler) -> None:
    backend = _Backend((200, _token_response("u1")), (201, None))
    provider = _provider(tmp_path, monkeypatch, backend)
    monkeypatch.setattr(note_store_module, "request_json", backend)
    provider._session = Session("at-old", "rt-old", Principal("u1"), expires_at=1)

    async def _ids() -> str:
        return "n1"

    def _token() -> str | None:
        session = provider.current_session
        return session.access_token if session is not None else None

    app = NotesApp(
        provider.config,
        provider,
        RestNoteStore(provider.config, _token),
        id_factory=_ids,
        scheduler=scheduler,
    )
    app.state.principal = Principal("u1")
    app.open_editor()

    assert await app.submit_note("Title", "Body") is True

    assert [r["path"] for r in backend.requests] == ["/auth/v1/token", "/rest/v1/notes"]
    assert backend.requests[1]["headers"]["Authorization"] == "Bearer at-u1"
    assert app.status == "Note saved successfully!"


@pytest.mark.asyncio
async def test_sign_out_is_network_only(tmp_path, monkeypatch) -> None:
    backend = _Backend((204, None))
    provider = _provider(tmp_path, monkeypatch, backend)
    session = Session("at", "rt", Principal("u1"))
    provider.session_store.save_session(session)
    await provider.get_current_session()

    await provider.sign_out()

    assert backend.requests[0]["path"] == "/auth/v1/logout"
    assert backend.requests[0]["headers"]["Authorization"] == "Bearer at"
    assert provider.current_session == session


@pytest.mark.asyncio
async def test_sign_out_without_session_skips_network(tmp_path, monkeypatch) -> None:
    backend = _Backend()
    provider = _provider(tmp_path, monkeypatch, backend)

    await provider.sign_out()

    assert backend.requests == []


@pytest.mark.asyncio
async def test_clear_session_notify_flag(tmp_path, monkeypatch) -> None:
    provider = _provider(tmp_path, monkeypatch, _Backend())
    provider.session_store.save_session(Session("at", "rt", Principal("u1")))
    await provider.get_current_session()
    events: list = []
    unsubscribe = provider.on_session_change(lambda event, session: events.append(event))

    provider.clear_session(notify=False)
    await asyncio.sleep(0)
    assert events == []
    assert provider.session_store.load_session() is None

    provider.clear_session()
    await asyncio.sleep(0)
    assert events == ["SIGNED_OUT"]

    unsubscribe()
    provider.clear_session()
    await asyncio.sleep(0)
    assert events == ["SIGNED_OUT"]
