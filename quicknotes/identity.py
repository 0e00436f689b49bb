from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import secrets
from collections.abc import Callable
from typing import Any

from .config import QuickNotesConfig
from .errors import AuthExchangeError, AuthQueryError, AuthRequestError, QuickNotesError
from .http_client import TRANSPORT_ERRORS, build_url, error_reason, request_json
from .models import (
    CodeCredential,
    Principal,
    RedirectCredential,
    Session,
    TokenPairCredential,
)
from .ports import SessionEvent, SessionListener
from .session_store import SessionStore

logger = logging.getLogger(__name__)


def _pkce_pair() -> tuple[str, str]:
    verifier = secrets.token_urlsafe(48)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


class GoTrueIdentityProvider:
    """Magic-link auth against a GoTrue-compatible ``/auth/v1`` API.

    The session is persisted through ``SessionStore`` so a later process
    starts signed in, the same way a browser keeps its login in local storage.
    """

    def __init__(
        self,
        config: QuickNotesConfig,
        *,
        session_store: SessionStore | None = None,
    ) -> None:
        if not config.backend_url or not config.anon_key:
            raise ValueError("backend_url and anon_key are required")
        self.config = config
        self.session_store = session_store or SessionStore(config.session_file)
        self._session: Session | None = None
        self._listeners: list[SessionListener] = []

    @property
    def supports_code_exchange(self) -> bool:
        return self.config.auth_flow == "pkce"

    @property
    def current_session(self) -> Session | None:
        return self._session

    def _headers(self, access_token: str | None = None) -> dict[str, str]:
        assert self.config.anon_key is not None
        return {
            "apikey": self.config.anon_key,
            "Authorization": f"Bearer {access_token or self.config.anon_key}",
        }

    async def _call(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        body: Any = None,
        access_token: str | None = None,
        error_cls: type[QuickNotesError],
    ) -> Any:
        assert self.config.backend_url is not None
        url = build_url(self.config.backend_url, f"auth/v1/{path}", params)
        try:
            status, payload = await asyncio.to_thread(
                request_json,
                method,
                url,
                headers=self._headers(access_token),
                body=body,
                timeout_s=self.config.request_timeout_s,
            )
        except TRANSPORT_ERRORS as exc:
            raise error_cls(str(exc) or type(exc).__name__) from exc
        if status >= 400:
            raise error_cls(error_reason(status, payload), status=status)
        return payload

    def on_session_change(self, callback: SessionListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def _emit(self, event: SessionEvent, session: Session | None) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("no running loop, session event %s not delivered", event)
            return
        for listener in list(self._listeners):
            loop.call_soon(listener, event, session)

    def _set_session(self, session: Session, event: SessionEvent) -> Session:
        self._session = session
        self.session_store.save_session(session)
        self._emit(event, session)
        return session

    async def request_magic_link(self, email: str, redirect_to: str) -> None:
        body: dict[str, Any] = {"email": email, "create_user": True}
        if self.supports_code_exchange:
            verifier, challenge = _pkce_pair()
            self.session_store.save_code_verifier(verifier)
            body["code_challenge"] = challenge
            body["code_challenge_method"] = "s256"
        await self._call(
            "POST",
            "otp",
            params={"redirect_to": redirect_to},
            body=body,
            error_cls=AuthRequestError,
        )
        logger.info("magic link requested for %s", email)

    async def refresh_session(self, refresh_token: str) -> Session:
        payload = await self._call(
            "POST",
            "token",
            params={"grant_type": "refresh_token"},
            body={"refresh_token": refresh_token},
            error_cls=AuthQueryError,
        )
        try:
            session = Session.from_payload(payload if isinstance(payload, dict) else {})
        except ValueError as exc:
            raise AuthQueryError(f"invalid refresh response: {exc}") from exc
        return self._set_session(session, "TOKEN_REFRESHED")

    async def _refresh_expired(self, session: Session, *, notify: bool) -> Session:
        try:
            return await self.refresh_session(session.refresh_token)
        except AuthQueryError as exc:
            if not exc.rejected:
                # Offline or backend unreachable: keep the refresh token for a later run.
                logger.warning("session refresh failed, keeping stored session: %s", exc)
                raise
            logger.info("refresh token rejected (%s), clearing session", exc.status)
            self.clear_session(notify=notify)
            raise

    async def get_current_session(self) -> Session | None:
        session = self._session or self.session_store.load_session()
        if session is None:
            return None
        if session.is_expired():
            logger.info("persisted session expired, refreshing")
            return await self._refresh_expired(session, notify=False)
        self._session = session
        return session

    async def ensure_fresh_session(self) -> Session | None:
        """Refresh the in-memory session if its access token has expired.

        A successful refresh emits ``TOKEN_REFRESHED``; a rejected refresh
        token signs the principal out with ``SIGNED_OUT``.
        """
        session = self._session
        if session is None or not session.is_expired():
            return session
        logger.info("access token expired, refreshing")
        return await self._refresh_expired(session, notify=True)

    async def _fetch_principal(self, access_token: str) -> Principal:
        payload = await self._call(
            "GET", "user", access_token=access_token, error_cls=AuthExchangeError
        )
        if not isinstance(payload, dict) or not payload.get("id"):
            raise AuthExchangeError("user lookup returned no id")
        email = payload.get("email")
        return Principal(id=str(payload["id"]), email=str(email) if email else None)

    async def exchange_redirect_credential(self, credential: RedirectCredential) -> Session:
        if isinstance(credential, TokenPairCredential):
            principal = await self._fetch_principal(credential.access_token)
            session = Session(
                access_token=credential.access_token,
                refresh_token=credential.refresh_token,
                principal=principal,
                expires_at=credential.expires_at,
            )
            return self._set_session(session, "SIGNED_IN")
        if isinstance(credential, CodeCredential):
            if not self.supports_code_exchange:
                raise AuthExchangeError("code exchange requires the pkce auth flow")
            verifier = self.session_store.load_code_verifier()
            if not verifier:
                raise AuthExchangeError("no pending code verifier for this sign-in")
            payload = await self._call(
                "POST",
                "token",
                params={"grant_type": "pkce"},
                body={"auth_code": credential.code, "code_verifier": verifier},
                error_cls=AuthExchangeError,
            )
            self.session_store.clear_code_verifier()
            try:
                session = Session.from_payload(payload if isinstance(payload, dict) else {})
            except ValueError as exc:
                raise AuthExchangeError(f"invalid token response: {exc}") from exc
            return self._set_session(session, "SIGNED_IN")
        raise AuthExchangeError(f"unsupported credential: {type(credential).__name__}")

    async def sign_out(self) -> None:
        # Captured up front: a late completion must not depend on later state.
        session = self._session
        if session is None:
            return
        await self._call(
            "POST",
            "logout",
            access_token=session.access_token,
            error_cls=AuthQueryError,
        )
        logger.info("remote sign-out completed for %s", session.principal.id)

    def clear_session(self, *, notify: bool = True) -> None:
        self._session = None
        self.session_store.clear_session()
        if notify:
            self._emit("SIGNED_OUT", None)
