"""Process-level settings for the sidecar.

Settings cover diagnostics and defaults only. Request data (prompt, credential,
working directory) always arrives over the protocol, never from here.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv
from platformdirs import PlatformDirs

APP_NAME = "agent-sidecar"
ENV_PREFIX = "SIDECAR_"

DEFAULT_MODEL = "claude-sonnet-4-6"
DEFAULT_LOG_MAX_BYTES = 5_000_000
DEFAULT_LOG_BACKUPS = 3
DEFAULT_HISTORY_LIMIT = 100


def _dirs() -> PlatformDirs:
    return PlatformDirs(appname=APP_NAME, appauthor=False)


def config_dir() -> Path:
    path = Path(_dirs().user_config_path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def log_dir() -> Path:
    path = Path(_dirs().user_log_path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def env_file() -> Path:
    return config_dir() / ".env"


def parse_level(value: str | None, default: int) -> int:
    if not value:
        return default
    if value.isdigit():
        return int(value)
    return logging.getLevelNamesMapping().get(value.upper(), default)


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class LogSettings:
    level: int = logging.INFO
    stderr: bool = True
    json: bool = False
    directory: Path | None = None
    file_name: str = "sidecar.log"
    max_bytes: int = DEFAULT_LOG_MAX_BYTES
    backup_count: int = DEFAULT_LOG_BACKUPS


@dataclass(frozen=True)
class SidecarSettings:
    default_model: str = DEFAULT_MODEL
    history_limit: int = DEFAULT_HISTORY_LIMIT
    log: LogSettings = field(default_factory=LogSettings)


def load_settings(environ: dict[str, str] | None = None) -> SidecarSettings:
    """Build settings from the environment.

    The `.env` file in the user config directory is loaded first without
    overriding variables that are already set.
    """

    if environ is None:
        load_dotenv(env_file(), override=False)
        environ = dict(os.environ)

    def get(name: str) -> str | None:
        return environ.get(f"{ENV_PREFIX}{name}")

    log_directory = get("LOG_DIR")
    log = LogSettings(
        level=parse_level(get("LOG_LEVEL"), logging.INFO),
        stderr=_parse_bool(get("LOG_STDERR"), True),
        json=_parse_bool(get("LOG_JSON"), False),
        directory=Path(log_directory) if log_directory else None,
        max_bytes=_parse_int(get("LOG_MAX_BYTES"), DEFAULT_LOG_MAX_BYTES),
        backup_count=_parse_int(get("LOG_BACKUPS"), DEFAULT_LOG_BACKUPS),
    )
    default_model = (get("DEFAULT_MODEL") or "").strip() or DEFAULT_MODEL
    history_limit = _parse_int(get("HISTORY_LIMIT"), DEFAULT_HISTORY_LIMIT)
    return SidecarSettings(default_model=default_model, history_limit=history_limit, log=log)
