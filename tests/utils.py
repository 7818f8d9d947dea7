from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Iterable

from agent_sidecar.config import RequestConfig, parse_request_config
from agent_sidecar.errors import ConversationClosedError, ConversationNotFoundError
from agent_sidecar.options import SessionOptions
from agent_sidecar.transport import MessageWriter

# Placed in a scripted event list, makes the fake stream wait for `FakeEngine.release`.
PAUSE = object()


def make_config(**overrides: Any) -> RequestConfig:
    raw: dict[str, Any] = {"prompt": "hello", "apiKey": "sk-test", "cwd": "/tmp"}
    raw.update(overrides)
    return parse_request_config(raw)


def assistant(text: str) -> dict[str, Any]:
    return {"type": "assistant", "message": {"role": "assistant", "content": [{"type": "text", "text": text}]}}


def echo_events(text: str) -> list[Any]:
    return [assistant(f"echo: {text}"), {"type": "result", "subtype": "success", "result": f"echo: {text}"}]


class FakeWriter:
    """Collects bytes written by MessageWriter."""

    def __init__(self) -> None:
        self.buffer = bytearray()
        self.drains = 0

    def write(self, data: bytes) -> None:
        self.buffer.extend(data)

    async def drain(self) -> None:
        self.drains += 1

    def lines(self) -> list[dict[str, Any]]:
        return [json.loads(line) for line in self.buffer.decode("utf-8").splitlines() if line]


def make_writer() -> tuple[FakeWriter, MessageWriter]:
    raw = FakeWriter()
    return raw, MessageWriter(raw)


def for_request(lines: Iterable[dict[str, Any]], request_id: str) -> list[dict[str, Any]]:
    return [line for line in lines if line.get("requestId") == request_id]


def kinds(lines: Iterable[dict[str, Any]]) -> list[str]:
    out = []
    for line in lines:
        if line["type"] == "system":
            out.append(f"system:{line['subtype']}")
        elif line["type"] == "agent_response":
            out.append(f"response:{line['content']}:{line['done']}")
        elif line["type"] == "error":
            out.append(f"error:{line['message']}")
        else:
            out.append(line["type"])
    return out


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


class FakeConversation:
    def __init__(self, conversation_id: str, engine: "FakeEngine", options: SessionOptions) -> None:
        self.conversation_id = conversation_id
        self.engine = engine
        self.options = options
        self.sent: list[str] = []
        self.closed = False

    async def send(self, text: str) -> None:
        if self.closed:
            raise ConversationClosedError("conversation is closed")
        if self.engine.send_error is not None:
            raise self.engine.send_error
        self.sent.append(text)

    async def stream(self):
        text = self.sent[-1]
        self.engine.started.append(text)
        try:
            for item in self.engine.script(text):
                if item is PAUSE:
                    while not self.engine.release.is_set() and not self.closed:
                        await asyncio.sleep(0.001)
                    continue
                if self.closed:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self.engine.finished.append(text)

    def close(self) -> None:
        self.closed = True


class FakeEngine:
    """Scripted AgentEngine.

    `script(text)` returns the events for a turn; entries may be exceptions
    (raised in place) or PAUSE.
    """

    def __init__(
        self,
        script: Callable[[str], list[Any]] = echo_events,
        *,
        create_error: BaseException | None = None,
        send_error: BaseException | None = None,
    ) -> None:
        self.script = script
        self.create_error = create_error
        self.send_error = send_error
        self.release = asyncio.Event()
        self.conversations: list[FakeConversation] = []
        self.resumed: list[str] = []
        self.started: list[str] = []
        self.finished: list[str] = []
        self.known_ids: set[str] = set()

    async def create_conversation(self, options: SessionOptions) -> FakeConversation:
        if self.create_error is not None:
            raise self.create_error
        conversation = FakeConversation(f"conv-{len(self.conversations) + 1}", self, options)
        self.conversations.append(conversation)
        self.known_ids.add(conversation.conversation_id)
        return conversation

    async def resume_conversation(self, conversation_id: str, options: SessionOptions) -> FakeConversation:
        if conversation_id not in self.known_ids:
            raise ConversationNotFoundError(f"no conversation found for '{conversation_id}'")
        self.resumed.append(conversation_id)
        conversation = FakeConversation(conversation_id, self, options)
        self.conversations.append(conversation)
        return conversation
