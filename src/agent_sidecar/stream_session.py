"""Resumable multi-turn conversations with strictly serialised turns."""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import deque
from dataclasses import dataclass

from agent_sidecar.config import RequestConfig
from agent_sidecar.engine import AgentEngine, Conversation
from agent_sidecar.errors import SessionStateError
from agent_sidecar.log_utils import log_context, log_event
from agent_sidecar.options import build_initial_prompt, build_session_options
from agent_sidecar.protocol import RequestComplete
from agent_sidecar.settings import SidecarSettings
from agent_sidecar.transport import MessageWriter
from agent_sidecar.turns import reject, run_turn

logger = logging.getLogger("sidecar")

CLOSED_MESSAGE = "stream session is closed"


class SessionState(str, enum.Enum):
    OPEN = "open"
    TURN_ACTIVE = "turn_active"
    CLOSED = "closed"


@dataclass
class _PendingTurn:
    request_id: str
    text: str
    done: asyncio.Future[None]


class StreamSession:
    """One caller-identified conversation.

    Turns go through a FIFO queue drained by a single pump task, so a turn
    starts only after the previous turn's `request_complete` was written. The
    session is the only owner of its conversation handle. The handle is
    opened lazily by the first turn (resuming `resume_id` when given).
    """

    def __init__(
        self,
        session_id: str,
        config: RequestConfig,
        engine: AgentEngine,
        out: MessageWriter,
        *,
        resume_id: str | None = None,
        settings: SidecarSettings | None = None,
    ) -> None:
        self.session_id = session_id
        self._config = config
        self._engine = engine
        self._out = out
        self._resume_id = resume_id
        self._options = build_session_options(config, settings, resumable=True)
        self._conversation: Conversation | None = None
        self._pending: deque[_PendingTurn] = deque()
        self._pump: asyncio.Task[None] | None = None
        self._active_request: str | None = None
        self._closed = False

    @property
    def state(self) -> SessionState:
        if self._closed:
            return SessionState.CLOSED
        if self._active_request is not None:
            return SessionState.TURN_ACTIVE
        return SessionState.OPEN

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def conversation(self) -> Conversation | None:
        return self._conversation

    @property
    def pending_turns(self) -> int:
        return len(self._pending)

    async def start(self, request_id: str, config: RequestConfig | None = None) -> None:
        """Send the composed initial prompt as the first turn."""

        await self.send_turn(request_id, build_initial_prompt(config or self._config))

    async def send_turn(self, request_id: str, text: str) -> None:
        """Queue a turn and wait until its `request_complete` has been written."""

        turn = _PendingTurn(request_id, text, asyncio.get_running_loop().create_future())
        self._pending.append(turn)
        if self._pump is None or self._pump.done():
            self._pump = asyncio.create_task(self._drain_queue(), name=f"session:{self.session_id}")
        await asyncio.shield(turn.done)

    def close(self) -> None:
        """Mark the session closed and release the conversation; queued turns fail fast."""

        if self._closed:
            return
        self._closed = True
        log_event(logger, "session.close", session_id=self.session_id, queued=len(self._pending))
        conversation, self._conversation = self._conversation, None
        if conversation is not None:
            try:
                conversation.close()
            except Exception:  # noqa: BLE001
                logger.warning("Failed to close conversation for session %s", self.session_id, exc_info=True)

    async def _drain_queue(self) -> None:
        while self._pending:
            turn = self._pending.popleft()
            try:
                await self._process(turn)
            except Exception as exc:  # noqa: BLE001 - surfaced to the awaiting caller
                logger.error("Stream session %s failed turn %s", self.session_id, turn.request_id, exc_info=True)
                if not turn.done.done():
                    turn.done.set_exception(exc)
            else:
                if not turn.done.done():
                    turn.done.set_result(None)

    async def _process(self, turn: _PendingTurn) -> None:
        with log_context(session_id=self.session_id, request_id=turn.request_id):
            if self._closed:
                log_event(logger, "session.turn.rejected", reason="closed")
                await reject(self._out, turn.request_id, CLOSED_MESSAGE)
                return
            log_event(logger, "session.turn.start")
            self._active_request = turn.request_id
            try:
                await run_turn(self._out, turn.request_id, turn.text, self._open_conversation)
            finally:
                self._active_request = None
            await self._out.emit(RequestComplete(request_id=turn.request_id))
            log_event(logger, "session.turn.complete")

    async def _open_conversation(self) -> Conversation:
        if self._conversation is not None:
            return self._conversation
        if self._closed:
            raise SessionStateError(CLOSED_MESSAGE)
        if self._resume_id:
            log_event(logger, "session.resume", resume_id=self._resume_id)
            conversation = await self._engine.resume_conversation(self._resume_id, self._options)
        else:
            conversation = await self._engine.create_conversation(self._options)
        if self._closed:
            conversation.close()
            raise SessionStateError(CLOSED_MESSAGE)
        self._conversation = conversation
        return conversation
