"""Map agent-engine events onto the protocol's outbound vocabulary.

Engine events are opaque mappings. Only `type` and the text blocks of
assistant messages are inspected; everything else is forwarded verbatim as
`agent_event`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

TERMINAL_EVENT_TYPES = frozenset({"result", "error"})


@dataclass(frozen=True)
class Translation:
    fragment: str
    terminal: bool


def event_type(event: Any) -> str | None:
    if isinstance(event, Mapping):
        value = event.get("type")
        return value if isinstance(value, str) else None
    return None


def assistant_text(event: Any) -> str:
    """Concatenate the text blocks of an assistant-authored event."""

    if event_type(event) != "assistant":
        return ""
    message = event.get("message")
    if not isinstance(message, Mapping):
        return ""
    blocks = message.get("content")
    if not isinstance(blocks, list):
        return ""
    return "".join(
        block["text"]
        for block in blocks
        if isinstance(block, Mapping) and block.get("type") == "text" and isinstance(block.get("text"), str)
    )


def is_terminal(event: Any) -> bool:
    return event_type(event) in TERMINAL_EVENT_TYPES


def translate_event(event: Any) -> Translation:
    return Translation(fragment=assistant_text(event), terminal=is_terminal(event))
