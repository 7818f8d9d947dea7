from __future__ import annotations

import logging
import os
from pathlib import Path

import pytest

from agent_sidecar.options import PROVIDER_KEY_ENV
from agent_sidecar.settings import ENV_PREFIX


@pytest.fixture(autouse=True)
def _isolate_home(tmp_path_factory, monkeypatch):
    """Force tests to use a temporary HOME/XDG dirs so settings and logs stay out of the real profile."""
    base = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(base))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(base / ".config"))
    monkeypatch.setenv("XDG_STATE_HOME", str(base / ".local" / "state"))
    monkeypatch.setenv("XDG_DATA_HOME", str(base / ".local" / "share"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(base / ".cache"))
    monkeypatch.setattr(Path, "home", lambda: base)


@pytest.fixture(autouse=True)
def _clear_sidecar_env(monkeypatch):
    """Drop sidecar settings and provider keys inherited from the developer's shell."""
    for name in list(os.environ):
        if name.startswith(ENV_PREFIX) or name in PROVIDER_KEY_ENV.values():
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """configure_logging replaces root handlers; put pytest's back afterwards."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
