"""Lifecycle of one-shot `agent_request`s."""

from __future__ import annotations

import asyncio
import logging

from agent_sidecar.config import RequestConfig
from agent_sidecar.engine import AgentEngine, Conversation
from agent_sidecar.log_utils import log_context, log_event
from agent_sidecar.options import build_initial_prompt, build_session_options
from agent_sidecar.protocol import RequestComplete
from agent_sidecar.settings import SidecarSettings
from agent_sidecar.transport import MessageWriter
from agent_sidecar.turns import reject, run_turn

logger = logging.getLogger("sidecar")


class RequestController:
    """Runs one-shot requests, each with its own cancellation token.

    Tokens are registered when a request starts and removed right before its
    `request_complete` goes out, so a late `cancel` finds nothing and is a
    no-op.
    """

    def __init__(
        self,
        engine: AgentEngine,
        out: MessageWriter,
        settings: SidecarSettings | None = None,
    ) -> None:
        self._engine = engine
        self._out = out
        self._settings = settings
        self._cancel_events: dict[str, asyncio.Event] = {}

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._cancel_events

    def __len__(self) -> int:
        return len(self._cancel_events)

    def start(self, request_id: str, config: RequestConfig) -> asyncio.Task[None]:
        if request_id in self._cancel_events:
            log_event(logger, "request.duplicate", level=logging.WARNING, request_id=request_id)
            return asyncio.create_task(reject(self._out, request_id, f"request '{request_id}' is already running"))
        cancel_event = asyncio.Event()
        self._cancel_events[request_id] = cancel_event
        return asyncio.create_task(self._run(request_id, config, cancel_event), name=f"request:{request_id}")

    def cancel(self, request_id: str) -> bool:
        """Signal a running request. Unknown or finished ids are ignored."""

        event = self._cancel_events.get(request_id)
        if event is None:
            log_event(logger, "request.cancel.ignored", level=logging.DEBUG, request_id=request_id)
            return False
        log_event(logger, "request.cancel", request_id=request_id)
        event.set()
        return True

    def cancel_all(self) -> int:
        for event in self._cancel_events.values():
            event.set()
        return len(self._cancel_events)

    async def _run(self, request_id: str, config: RequestConfig, cancel_event: asyncio.Event) -> None:
        conversation: Conversation | None = None

        async def acquire() -> Conversation:
            nonlocal conversation
            options = build_session_options(config, self._settings)
            conversation = await self._engine.create_conversation(options)
            return conversation

        with log_context(request_id=request_id):
            log_event(logger, "request.start", cwd=config.cwd, model=config.model)
            try:
                await run_turn(
                    self._out,
                    request_id,
                    build_initial_prompt(config),
                    acquire,
                    cancel_event=cancel_event,
                )
            finally:
                if conversation is not None:
                    try:
                        conversation.close()
                    except Exception:  # noqa: BLE001
                        logger.warning("Failed to close conversation", exc_info=True)
                self._cancel_events.pop(request_id, None)
                await self._out.emit(RequestComplete(request_id=request_id))
                log_event(logger, "request.complete", aborted=cancel_event.is_set())
