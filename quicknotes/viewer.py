from __future__ import annotations

import asyncio
import logging
import os
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import urlparse

from .app import (
    Action,
    CloseEditor,
    DeleteNote,
    LoadPage,
    NotesApp,
    OpenEditor,
    RequestMagicLink,
    SignOut,
    SubmitNote,
)
from .config import QuickNotesConfig
from .ids import new_note_id
from .render import PageView, render_html
from .viewer_http import (
    read_form_body,
    read_json_body,
    reject_cross_origin,
    send_html_response,
    send_json_response,
    send_redirect,
    send_text_response,
)

logger = logging.getLogger(__name__)


def form_action(path: str, form: dict[str, str]) -> Action | None:
    if path == "/auth":
        return RequestMagicLink(form.get("email", ""))
    if path == "/signout":
        return SignOut()
    if path == "/notes":
        return SubmitNote(form.get("title", ""), form.get("content", ""))
    if path == "/notes/new":
        return OpenEditor()
    if path == "/notes/edit":
        note_id = form.get("id", "").strip()
        return OpenEditor(note_id) if note_id else None
    if path == "/notes/cancel":
        return CloseEditor()
    if path == "/notes/delete":
        note_id = form.get("id", "").strip()
        return DeleteNote(note_id) if note_id else None
    return None


def build_viewer_handler(
    app: NotesApp,
    loop: asyncio.AbstractEventLoop,
    *,
    wait_s: float,
):
    def _on_loop(coro: Any) -> Any:
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout=wait_s)

    async def _snapshot() -> PageView:
        return app.view()

    class ViewerHandler(BaseHTTPRequestHandler):
        def log_message(self, format: str, *args: object) -> None:  # noqa: A003
            if os.environ.get("QUICKNOTES_VIEWER_LOGS") == "1":
                super().log_message(format, *args)

        def _page_url(self) -> str:
            host = self.headers.get("Host") or f"{app.config.viewer_host}:{app.config.viewer_port}"
            return f"http://{host}{self.path}"

        def _await(self, coro: Any, label: str) -> tuple[bool, Any]:
            """Wait for ``coro`` on the app loop; ``(False, None)`` if it overran."""
            try:
                return True, _on_loop(coro)
            except FutureTimeoutError:
                logger.warning("viewer %s still running after %.1fs", label, wait_s)
                return False, None

        def _send_busy(self, *, as_json: bool) -> None:
            if as_json:
                send_json_response(self, {"error": "busy"}, status=503)
            else:
                send_text_response(self, "Busy, try again shortly.", status=503)

        def do_GET(self) -> None:  # noqa: N802
            parsed = urlparse(self.path)
            if parsed.path == "/ping":
                send_text_response(self, "ok")
                return
            if parsed.path == "/uid":
                send_json_response(self, {"id": new_note_id()})
                return
            if parsed.path == "/api/state":
                done, view = self._await(_snapshot(), "state read")
                if not done:
                    self._send_busy(as_json=True)
                    return
                send_json_response(self, view.to_dict())
                return
            if parsed.path != "/":
                self.send_response(404)
                self.end_headers()
                return
            if parsed.query:
                # The exchange keeps running on the loop; the page picks it up once done.
                _, clean = self._await(app.dispatch(LoadPage(self._page_url())), "redirect recovery")
                send_redirect(self, urlparse(clean or "/").path or "/")
                return
            done, view = self._await(_snapshot(), "page render")
            if not done:
                self._send_busy(as_json=False)
                return
            send_html_response(self, render_html(view))

        def do_POST(self) -> None:  # noqa: N802
            if reject_cross_origin(self, missing_origin_policy="reject_if_unsafe"):
                return
            parsed = urlparse(self.path)
            if parsed.path == "/api/auth/callback":
                payload = read_json_body(self) or {}
                url = payload.get("url")
                if not isinstance(url, str) or not url:
                    send_json_response(self, {"error": "url required"}, status=400)
                    return
                done, _ = self._await(app.dispatch(LoadPage(url)), "auth callback")
                if not done:
                    self._send_busy(as_json=True)
                    return
                send_json_response(self, {"ok": True})
                return
            action = form_action(parsed.path, read_form_body(self))
            if action is None:
                self.send_response(404)
                self.end_headers()
                return
            self._await(app.dispatch(action), f"action {type(action).__name__}")
            send_redirect(self, "/")

    return ViewerHandler


async def serve_app(
    config: QuickNotesConfig,
    *,
    host: str,
    port: int,
    app: NotesApp | None = None,
    ready: threading.Event | None = None,
) -> None:
    """Run the page on ``host:port`` until the app's event channel is stopped."""

    app = app or NotesApp.from_config(config)
    await app.start()
    loop = asyncio.get_running_loop()
    wait_s = config.request_timeout_s + config.sign_out_timeout_s + 2.0
    server = HTTPServer((host, port), build_viewer_handler(app, loop, wait_s=wait_s))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info("viewer listening on http://%s:%s", host, server.server_address[1])
    if ready is not None:
        ready.set()
    try:
        await app.run()
    finally:
        server.shutdown()
        server.server_close()
        await app.close()


def start_viewer(config: QuickNotesConfig, *, host: str, port: int) -> None:
    asyncio.run(serve_app(config, host=host, port=port))
