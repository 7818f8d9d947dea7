from __future__ import annotations

import pytest

from agent_sidecar.errors import SessionStateError
from agent_sidecar.registry import SessionRegistry
from agent_sidecar.stream_session import StreamSession
from tests.utils import FakeEngine, make_config, make_writer


def _session(session_id: str) -> StreamSession:
    _, out = make_writer()
    return StreamSession(session_id, make_config(), FakeEngine(), out)


def test_add_get_remove() -> None:
    registry = SessionRegistry()
    session = _session("s1")

    registry.add(session)

    assert "s1" in registry
    assert registry.get("s1") is session
    assert len(registry) == 1
    assert list(registry) == ["s1"]
    assert registry.remove("s1") is session
    assert registry.get("s1") is None
    assert registry.remove("s1") is None


def test_duplicate_id_keeps_existing_session() -> None:
    registry = SessionRegistry()
    first = _session("s1")
    registry.add(first)

    with pytest.raises(SessionStateError, match="stream session 's1' already exists"):
        registry.add(_session("s1"))

    assert registry.get("s1") is first


def test_close_all_empties_registry() -> None:
    registry = SessionRegistry()
    sessions = [_session(f"s{i}") for i in range(3)]
    for session in sessions:
        registry.add(session)

    assert registry.close_all() == 3
    assert len(registry) == 0
    assert all(session.closed for session in sessions)
