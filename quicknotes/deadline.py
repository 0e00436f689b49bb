from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from .errors import DeadlineExceeded

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Abandoned calls stay referenced until they finish so the loop does not drop them.
_ABANDONED: set[asyncio.Future] = set()


def _settle_abandoned(label: str):
    def _done(task: asyncio.Future) -> None:
        _ABANDONED.discard(task)
        if task.cancelled():
            logger.debug("%s: abandoned call cancelled", label)
            return
        exc = task.exception()
        if exc is not None:
            logger.info("%s: abandoned call failed: %s", label, exc)
            return
        logger.info("%s: abandoned call completed after deadline", label)

    return _done


async def race_deadline(aw: Awaitable[T], timeout_s: float, *, label: str) -> T:
    """Await ``aw`` for at most ``timeout_s`` seconds.

    On expiry the call is not cancelled: it keeps running in the background,
    its outcome is logged and discarded, and ``DeadlineExceeded`` is raised.
    """

    task = asyncio.ensure_future(aw)
    done, _ = await asyncio.wait({task}, timeout=timeout_s)
    if task in done:
        return task.result()
    _ABANDONED.add(task)
    task.add_done_callback(_settle_abandoned(label))
    raise DeadlineExceeded(f"{label} timed out", timeout_s=timeout_s)


def pending_abandoned() -> int:
    return len(_ABANDONED)
