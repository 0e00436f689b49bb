from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/quicknotes/config.json").expanduser()
DEFAULT_SESSION_PATH = "~/.config/quicknotes/session.json"
DEFAULT_VIEWER_HOST = "127.0.0.1"
DEFAULT_VIEWER_PORT = 38989

AUTH_FLOWS = ("implicit", "pkce")

CONFIG_ENV_OVERRIDES = {
    "backend_url": "QUICKNOTES_BACKEND_URL",
    "anon_key": "QUICKNOTES_ANON_KEY",
    "client_enabled": "QUICKNOTES_CLIENT_ENABLED",
    "site_url": "QUICKNOTES_SITE_URL",
    "auth_flow": "QUICKNOTES_AUTH_FLOW",
    "notes_table": "QUICKNOTES_NOTES_TABLE",
    "session_path": "QUICKNOTES_SESSION_PATH",
    "request_timeout_s": "QUICKNOTES_REQUEST_TIMEOUT_S",
    "sign_out_timeout_s": "QUICKNOTES_SIGN_OUT_TIMEOUT_S",
    "status_auto_hide_s": "QUICKNOTES_STATUS_AUTO_HIDE_S",
    "uid_service_url": "QUICKNOTES_UID_SERVICE_URL",
    "viewer_host": "QUICKNOTES_VIEWER_HOST",
    "viewer_port": "QUICKNOTES_VIEWER_PORT",
}

_INT_KEYS = {"viewer_port"}
_FLOAT_KEYS = {"request_timeout_s", "sign_out_timeout_s", "status_auto_hide_s"}
_BOOL_KEYS = {"client_enabled"}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("QUICKNOTES_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def strip_json_comments(text: str) -> str:
    lines: list[str] = []
    for line in text.splitlines():
        result: list[str] = []
        in_string = False
        escape_next = False
        i = 0
        while i < len(line):
            char = line[i]
            if escape_next:
                result.append(char)
                escape_next = False
                i += 1
                continue
            if char == "\\" and in_string:
                result.append(char)
                escape_next = True
                i += 1
                continue
            if char == '"':
                in_string = not in_string
                result.append(char)
                i += 1
                continue
            if not in_string and char == "/" and i + 1 < len(line) and line[i + 1] == "/":
                break
            result.append(char)
            i += 1
        lines.append("".join(result))
    return "\n".join(lines)


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(strip_json_comments(raw))
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class QuickNotesConfig:
    backend_url: str | None = None
    anon_key: str | None = None
    client_enabled: bool = True
    site_url: str | None = None
    auth_flow: str = "implicit"
    notes_table: str = "notes"
    session_path: str = DEFAULT_SESSION_PATH
    request_timeout_s: float = 10.0
    sign_out_timeout_s: float = 8.0
    status_auto_hide_s: float = 3.0
    uid_service_url: str | None = None
    viewer_host: str = DEFAULT_VIEWER_HOST
    viewer_port: int = DEFAULT_VIEWER_PORT

    @property
    def backend_configured(self) -> bool:
        return bool(self.client_enabled and self.backend_url and self.anon_key)

    @property
    def redirect_url(self) -> str:
        if self.site_url:
            return self.site_url.rstrip("/")
        return f"http://{self.viewer_host}:{self.viewer_port}"

    @property
    def session_file(self) -> Path:
        return Path(self.session_path).expanduser()


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.lower() in {"1", "true", "yes", "on"}:
        return True
    if value.lower() in {"0", "false", "off", "no"}:
        return False
    return default


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    if parsed <= 0:
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    return parsed


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def _coerce_auth_flow(value: object, default: str) -> str:
    if value is None:
        return default
    lowered = str(value).strip().lower()
    if lowered in AUTH_FLOWS:
        return lowered
    warnings.warn(f"Invalid auth_flow: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def _apply_value(cfg: QuickNotesConfig, key: str, value: object) -> None:
    if key in _INT_KEYS:
        setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
        return
    if key in _FLOAT_KEYS:
        setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
        return
    if key in _BOOL_KEYS:
        setattr(cfg, key, _coerce_bool(value, getattr(cfg, key), key=key))
        return
    if key == "auth_flow":
        cfg.auth_flow = _coerce_auth_flow(value, cfg.auth_flow)
        return
    if isinstance(value, str):
        value = value.strip() or None
    if key in {"notes_table", "session_path", "viewer_host"} and value is None:
        return
    setattr(cfg, key, value)


def _apply_dict(cfg: QuickNotesConfig, data: dict[str, Any]) -> QuickNotesConfig:
    for key, value in data.items():
        if not hasattr(cfg, key) or key.startswith("_"):
            continue
        _apply_value(cfg, key, value)
    return cfg


def _apply_env(cfg: QuickNotesConfig) -> QuickNotesConfig:
    for key, value in get_env_overrides().items():
        _apply_value(cfg, key, value)
    return cfg


def load_config(path: Path | None = None) -> QuickNotesConfig:
    cfg = QuickNotesConfig()
    config_path = get_config_path(path)
    if config_path.exists():
        try:
            data = read_config_file(config_path)
        except ValueError:
            warnings.warn(f"Ignoring invalid config file {config_path}", RuntimeWarning, stacklevel=2)
            data = {}
        cfg = _apply_dict(cfg, data)
    cfg = _apply_env(cfg)
    return cfg
