from __future__ import annotations

import asyncio
import logging
import secrets
import time

from .config import QuickNotesConfig
from .http_client import TRANSPORT_ERRORS, build_url, request_json

logger = logging.getLogger(__name__)

_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"
_RANDOM_BITS = 54


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("negative value")
    if value == 0:
        return "0"
    out: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        out.append(_DIGITS[rem])
    return "".join(reversed(out))


def new_note_id(*, now_ms: int | None = None) -> str:
    """Time-ordered id: base-36 epoch millis followed by a random base-36 suffix."""

    millis = int(time.time() * 1000) if now_ms is None else now_ms
    return to_base36(millis) + to_base36(secrets.randbits(_RANDOM_BITS))


async def fetch_note_id(config: QuickNotesConfig) -> str:
    if not config.uid_service_url:
        return new_note_id()
    url = build_url(config.uid_service_url, "uid")
    try:
        status, payload = await asyncio.to_thread(
            request_json, "GET", url, timeout_s=config.request_timeout_s
        )
    except TRANSPORT_ERRORS as exc:
        logger.warning("uid service unreachable, using local id", exc_info=exc)
        return new_note_id()
    value = payload.get("id") if isinstance(payload, dict) else None
    if status != 200 or not isinstance(value, str) or not value:
        logger.warning("uid service returned %s, using local id", status)
        return new_note_id()
    return value
