"""The emit sequence shared by one-shot requests and stream-session turns."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable

from agent_sidecar.engine import Conversation
from agent_sidecar.events import translate_event
from agent_sidecar.log_utils import log_event
from agent_sidecar.protocol import (
    ABORTED_MESSAGE,
    AgentEvent,
    AgentResponse,
    ErrorMessage,
    RequestComplete,
    SystemNotice,
)
from agent_sidecar.transport import MessageWriter

logger = logging.getLogger("sidecar")

INIT_START = "init_start"
SDK_READY = "sdk_ready"


def describe_error(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


async def forward_event(out: MessageWriter, request_id: str, event: Any) -> bool:
    """Forward one engine event; returns True when it ends the turn.

    The raw event always goes out before any text derived from it.
    """

    translation = translate_event(event)
    await out.emit(AgentEvent(request_id=request_id, event=event))
    if translation.fragment:
        await out.emit(AgentResponse(request_id=request_id, content=translation.fragment, done=False))
    return translation.terminal


async def run_turn(
    out: MessageWriter,
    request_id: str,
    text: str,
    acquire: Callable[[], Awaitable[Conversation]],
    *,
    cancel_event: asyncio.Event | None = None,
) -> None:
    """Run one turn: init_start, send, sdk_ready, forwarded events, final empty response.

    Engine failures are reported as a single `error`. The caller emits
    `request_complete` once it has released its resources.
    """

    try:
        await out.emit(SystemNotice(request_id=request_id, subtype=INIT_START))
        conversation = await acquire()
        await conversation.send(text)
        await out.emit(SystemNotice(request_id=request_id, subtype=SDK_READY))

        stream = conversation.stream()
        try:
            async for event in stream:
                if cancel_event is not None and cancel_event.is_set():
                    log_event(logger, "turn.aborted")
                    await out.emit(ErrorMessage(request_id=request_id, message=ABORTED_MESSAGE))
                    break
                if await forward_event(out, request_id, event):
                    break
        finally:
            closer = getattr(stream, "aclose", None)
            if callable(closer):
                with contextlib.suppress(Exception):
                    await closer()
    except Exception as exc:  # noqa: BLE001 - every engine failure ends this turn only
        log_event(logger, "turn.failed", level=logging.WARNING, error=describe_error(exc))
        await out.emit(ErrorMessage(request_id=request_id, message=describe_error(exc)))
    await out.emit(AgentResponse(request_id=request_id, content="", done=True))


async def reject(out: MessageWriter, request_id: str, message: str) -> None:
    """Answer a request that never started: one `error`, then `request_complete`."""

    await out.emit(ErrorMessage(request_id=request_id, message=message))
    await out.emit(RequestComplete(request_id=request_id))
