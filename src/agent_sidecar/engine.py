"""Interface to the agent engine that actually produces responses."""

from __future__ import annotations

from typing import Any, AsyncIterator, Protocol

from agent_sidecar.options import SessionOptions


class Conversation(Protocol):
    """One exchange with the engine.

    `send` queues a turn; `stream` yields that turn's events until a terminal
    one (`result` or `error`) has been produced.
    """

    @property
    def conversation_id(self) -> str: ...

    async def send(self, text: str) -> None: ...

    def stream(self) -> AsyncIterator[Any]: ...

    def close(self) -> None: ...


class AgentEngine(Protocol):
    async def create_conversation(self, options: SessionOptions) -> Conversation: ...

    async def resume_conversation(self, conversation_id: str, options: SessionOptions) -> Conversation: ...
