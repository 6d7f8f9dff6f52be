from __future__ import annotations

import tomllib
from dataclasses import asdict, dataclass, replace
from typing import Any

from .constants import DEFAULT_HOST, DEFAULT_PORT, NAME_MAX_CHARS


@dataclass(frozen=True)
class RelayRuntimeConfig:
    config_path: str | None = None
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    max_sessions: int = 0
    name_timeout_s: float = 0.0
    name_max_chars: int = NAME_MAX_CHARS
    tcp_nodelay: bool = True
    log_level: str = "INFO"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None
    log_chat_lines: bool = False


_INT_KEYS = ("port", "max_sessions", "name_max_chars")
_FLOAT_KEYS = ("name_timeout_s",)
_BOOL_KEYS = ("tcp_nodelay", "log_console", "log_chat_lines")


def load_toml(path: str) -> dict:
    with open(path, "rb") as f:
        return tomllib.load(f)


def apply_config_data(cfg: RelayRuntimeConfig, data: dict) -> RelayRuntimeConfig:
    """Overlay values from a parsed config file onto ``cfg``.

    Keys may live at the top level or under ``[server]``; the ``[logging]``
    table maps onto the ``log_*`` fields. Unknown keys are ignored.
    """
    if not isinstance(data, dict):
        raise ValueError("config file must contain a table")

    server = data.get("server")
    if isinstance(server, dict):
        data = {**data, **server}

    log_table = data.get("logging")
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        for key in ("level", "console", "file", "format", "datefmt", "chat_lines"):
            if key in log_table:
                mapped[f"log_{key}"] = log_table.get(key)
        data = {**data, **mapped}

    allowed = set(asdict(cfg).keys())
    # This identifies where the config came from; do not let the file override it.
    allowed.discard("config_path")
    updates: dict[str, Any] = {k: v for k, v in data.items() if k in allowed}

    for key in _INT_KEYS:
        if key in updates:
            if isinstance(updates[key], bool) or not isinstance(updates[key], int):
                raise ValueError(f"{key} must be an integer")
    for key in _FLOAT_KEYS:
        if key in updates:
            if isinstance(updates[key], bool) or not isinstance(
                updates[key], (int, float)
            ):
                raise ValueError(f"{key} must be a number")
            updates[key] = float(updates[key])
    for key in _BOOL_KEYS:
        if key in updates and not isinstance(updates[key], bool):
            raise ValueError(f"{key} must be true or false")

    if "port" in updates and not 0 <= updates["port"] <= 65535:
        raise ValueError("port must be between 0 and 65535")

    if "log_file" in updates and updates["log_file"] == "":
        updates["log_file"] = None
    if "log_datefmt" in updates and updates["log_datefmt"] == "":
        updates["log_datefmt"] = None
    return replace(cfg, **updates) if updates else cfg


def load_config_file(cfg: RelayRuntimeConfig, path: str) -> RelayRuntimeConfig:
    cfg = apply_config_data(cfg, load_toml(path))
    return replace(cfg, config_path=path)
