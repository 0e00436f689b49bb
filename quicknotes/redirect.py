from __future__ import annotations

import logging
import time
from urllib.parse import parse_qs, urlparse, urlunparse

from .errors import QuickNotesError
from .http_client import TRANSPORT_ERRORS
from .models import CodeCredential, RedirectCredential, TokenPairCredential
from .ports import IdentityProvider

logger = logging.getLogger(__name__)


def _first(params: dict[str, list[str]], key: str) -> str | None:
    values = params.get(key)
    if not values:
        return None
    value = values[0].strip()
    return value or None


def _expires_at(fragment: dict[str, list[str]]) -> int | None:
    raw_at = _first(fragment, "expires_at")
    raw_in = _first(fragment, "expires_in")
    try:
        if raw_at is not None:
            return int(raw_at)
        if raw_in is not None:
            return int(time.time()) + int(raw_in)
    except ValueError:
        return None
    return None


def parse_redirect_credential(url: str) -> RedirectCredential | None:
    parsed = urlparse(url)
    fragment = parse_qs(parsed.fragment, keep_blank_values=False)
    access_token = _first(fragment, "access_token")
    refresh_token = _first(fragment, "refresh_token")
    if access_token and refresh_token:
        return TokenPairCredential(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=_expires_at(fragment),
        )
    code = _first(parse_qs(parsed.query), "code")
    if code:
        return CodeCredential(code=code)
    return None


def scrub_url(url: str) -> str:
    parsed = urlparse(url)
    return urlunparse((parsed.scheme, parsed.netloc, parsed.path or "/", "", "", ""))


async def recover_session_from_url(identity: IdentityProvider, url: str | None) -> str | None:
    """Consume one-time auth artifacts in ``url`` and return the URL to show next.

    Never raises: a failed exchange leaves the caller signed out.
    """

    if not url:
        return url
    try:
        credential = parse_redirect_credential(url)
    except ValueError as exc:
        logger.warning("session recovery skipped: unparseable url", exc_info=exc)
        return url
    if credential is None:
        return url
    if isinstance(credential, CodeCredential) and not identity.supports_code_exchange:
        logger.info("auth code present but provider has no code exchange")
        return url
    try:
        session = await identity.exchange_redirect_credential(credential)
    except (QuickNotesError, *TRANSPORT_ERRORS) as exc:
        logger.warning("redirect credential exchange failed: %s", exc)
    else:
        logger.info("session recovered from redirect for %s", session.principal.id)
    return scrub_url(url)
