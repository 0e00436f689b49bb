from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from .models import Session

logger = logging.getLogger(__name__)


class SessionStore:
    """JSON file holding the signed-in session and a pending PKCE verifier."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("session file unreadable, ignoring", exc_info=exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        if not data:
            try:
                self.path.unlink()
            except FileNotFoundError:
                return
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
        os.chmod(self.path, 0o600)

    def load_session(self) -> Session | None:
        raw = self._read().get("session")
        if not isinstance(raw, dict):
            return None
        try:
            return Session.from_payload(raw)
        except (TypeError, ValueError) as exc:
            logger.warning("persisted session malformed, ignoring", exc_info=exc)
            return None

    def save_session(self, session: Session) -> None:
        data = self._read()
        data["session"] = session.to_dict()
        self._write(data)

    def clear_session(self) -> None:
        data = self._read()
        data.pop("session", None)
        self._write(data)

    def load_code_verifier(self) -> str | None:
        value = self._read().get("code_verifier")
        return value if isinstance(value, str) and value else None

    def save_code_verifier(self, verifier: str) -> None:
        data = self._read()
        data["code_verifier"] = verifier
        self._write(data)

    def clear_code_verifier(self) -> None:
        data = self._read()
        data.pop("code_verifier", None)
        self._write(data)
