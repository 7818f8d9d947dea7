"""Session id → StreamSession lookup."""

from __future__ import annotations

from typing import Iterator

from agent_sidecar.errors import SessionStateError
from agent_sidecar.stream_session import StreamSession


class SessionRegistry:
    """Open stream sessions keyed by caller-supplied id.

    Only the broker mutates the registry; `add` and `remove` are the only
    mutations.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, StreamSession] = {}

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))

    def get(self, session_id: str) -> StreamSession | None:
        return self._sessions.get(session_id)

    def add(self, session: StreamSession) -> None:
        if session.session_id in self._sessions:
            raise SessionStateError(f"stream session '{session.session_id}' already exists")
        self._sessions[session.session_id] = session

    def remove(self, session_id: str) -> StreamSession | None:
        return self._sessions.pop(session_id, None)

    def close_all(self) -> int:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            session.close()
        return len(sessions)
