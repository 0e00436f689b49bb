from __future__ import annotations

import json
from http.server import BaseHTTPRequestHandler
from typing import Any, Literal
from urllib.parse import parse_qs, urlparse

_ALLOWED_ORIGIN_HOSTS = {"127.0.0.1", "localhost", "::1"}

MAX_BODY_BYTES = 256 * 1024


def _is_allowed_loopback_origin_url(url: str, *, allow_path: bool = False) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme != "http":
        return False
    if parsed.username is not None or parsed.password is not None:
        return False
    try:
        hostname = parsed.hostname
        _ = parsed.port
    except ValueError:
        return False
    if hostname not in _ALLOWED_ORIGIN_HOSTS:
        return False
    if allow_path:
        return True
    return (
        parsed.path in ("", "/") and not parsed.params and not parsed.query and not parsed.fragment
    )


def _is_unsafe_missing_origin(handler: BaseHTTPRequestHandler) -> bool:
    sec_fetch_site = (handler.headers.get("Sec-Fetch-Site") or "").strip().lower()
    if sec_fetch_site and sec_fetch_site not in {"same-origin", "same-site", "none"}:
        return True
    referer = handler.headers.get("Referer")
    if not referer:
        return False
    return not _is_allowed_loopback_origin_url(referer, allow_path=True)


def send_json_response(
    handler: BaseHTTPRequestHandler,
    payload: dict,
    status: int = 200,
) -> None:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def send_html_response(handler: BaseHTTPRequestHandler, html: str, status: int = 200) -> None:
    body = html.encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "text/html; charset=utf-8")
    handler.send_header("Cache-Control", "no-store")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def send_text_response(handler: BaseHTTPRequestHandler, text: str, status: int = 200) -> None:
    body = text.encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "text/plain; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def send_redirect(handler: BaseHTTPRequestHandler, location: str) -> None:
    handler.send_response(303)
    handler.send_header("Location", location)
    handler.send_header("Content-Length", "0")
    handler.end_headers()


def _read_body(handler: BaseHTTPRequestHandler) -> str:
    length = int(handler.headers.get("Content-Length", "0") or 0)
    if length <= 0 or length > MAX_BODY_BYTES:
        return ""
    return handler.rfile.read(length).decode("utf-8", errors="replace")


def read_json_body(handler: BaseHTTPRequestHandler) -> dict[str, Any] | None:
    raw = _read_body(handler)
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def read_form_body(handler: BaseHTTPRequestHandler) -> dict[str, str]:
    raw = _read_body(handler)
    if not raw:
        return {}
    parsed = parse_qs(raw, keep_blank_values=True)
    return {key: values[0] for key, values in parsed.items() if values}


MissingOriginPolicy = Literal["allow", "reject", "reject_if_unsafe"]


def reject_cross_origin(
    handler: BaseHTTPRequestHandler,
    *,
    missing_origin_policy: MissingOriginPolicy = "allow",
) -> bool:
    origin = handler.headers.get("Origin")
    if not origin:
        if missing_origin_policy == "allow":
            return False
        if missing_origin_policy == "reject":
            send_json_response(handler, {"error": "forbidden"}, status=403)
            return True
        if missing_origin_policy == "reject_if_unsafe":
            if _is_unsafe_missing_origin(handler):
                send_json_response(handler, {"error": "forbidden"}, status=403)
                return True
            return False
        send_json_response(handler, {"error": "forbidden"}, status=403)
        return True
    if _is_allowed_loopback_origin_url(origin):
        return False
    send_json_response(handler, {"error": "forbidden"}, status=403)
    return True
