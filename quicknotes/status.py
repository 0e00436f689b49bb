from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)

DEFAULT_AUTO_HIDE_S = 3.0
_PERSISTENT_MARKERS = ("error", "failed")


class _Handle(Protocol):
    def cancel(self) -> None: ...


Scheduler = Callable[[float, Callable[[], None]], _Handle]


def _loop_scheduler(delay: float, callback: Callable[[], None]) -> _Handle:
    return asyncio.get_running_loop().call_later(delay, callback)


def reads_as_error(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _PERSISTENT_MARKERS)


class StatusLine:
    """Single status region; info messages expire, loading and error text persists."""

    def __init__(
        self,
        *,
        auto_hide_s: float = DEFAULT_AUTO_HIDE_S,
        scheduler: Scheduler | None = None,
        on_change: Callable[[str], None] | None = None,
    ) -> None:
        self.auto_hide_s = auto_hide_s
        self._scheduler = scheduler or _loop_scheduler
        self._on_change = on_change
        self._message = ""
        self._auto_hide = False
        self._handle: _Handle | None = None

    @property
    def text(self) -> str:
        return self._message

    @property
    def visible(self) -> bool:
        return bool(self._message)

    @property
    def expires(self) -> bool:
        return self._handle is not None

    def set(self, message: str | None, auto_hide: bool = True) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._message = message or ""
        self._auto_hide = auto_hide
        if self._message and auto_hide and not reads_as_error(self._message):
            expected = self._message
            self._handle = self._scheduler(self.auto_hide_s, lambda: self._expire(expected))
        if self._on_change is not None:
            self._on_change(self._message)

    def clear(self) -> None:
        self.set("")

    def _expire(self, expected: str) -> None:
        self._handle = None
        # A newer message may have replaced the one this timer belonged to.
        if self._message != expected:
            return
        logger.debug("status expired: %s", expected)
        self._message = ""
        if self._on_change is not None:
            self._on_change("")
