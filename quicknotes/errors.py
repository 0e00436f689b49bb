from __future__ import annotations


class QuickNotesError(Exception):
    """Base class for failures surfaced by the identity provider and note store."""

    def __init__(self, reason: str, *, status: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        # HTTP status when the backend answered; None for transport failures.
        self.status = status

    @property
    def rejected(self) -> bool:
        return self.status is not None and 400 <= self.status < 500


class AuthRequestError(QuickNotesError):
    """Magic-link request was rejected or could not be sent."""


class AuthQueryError(QuickNotesError):
    """The current session could not be read or refreshed."""


class AuthExchangeError(QuickNotesError):
    """A redirect credential could not be exchanged for a session."""


class StoreReadError(QuickNotesError):
    pass


class StoreWriteError(QuickNotesError):
    pass


class DeadlineExceeded(QuickNotesError):
    def __init__(self, reason: str, *, timeout_s: float) -> None:
        super().__init__(reason)
        self.timeout_s = timeout_s
