"""The stdin read loop: decode, dispatch, drain on shutdown."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Coroutine

from agent_sidecar.engine import AgentEngine
from agent_sidecar.errors import InvalidConfigError, ProtocolError, SessionStateError
from agent_sidecar.log_utils import log_event
from agent_sidecar.protocol import (
    AgentRequest,
    Cancel,
    ErrorMessage,
    InboundMessage,
    Ping,
    Pong,
    RequestComplete,
    Shutdown,
    SidecarReady,
    StreamEnd,
    StreamMessage,
    StreamStart,
    parse,
)
from agent_sidecar.registry import SessionRegistry
from agent_sidecar.request_controller import RequestController
from agent_sidecar.settings import SidecarSettings
from agent_sidecar.stream_session import StreamSession
from agent_sidecar.transport import LineReader, MessageWriter

logger = logging.getLogger("sidecar")


class Broker:
    """Reads control lines and hands work to requests and stream sessions.

    Dispatch never awaits: every unit of work runs in its own task, tracked in
    the in-flight set, so the loop is always free to read the next line (a
    `ping` is answered even while many requests are streaming). The broker owns
    the session registry, the request controller, the in-flight tasks and
    the request ids they serve.
    """

    def __init__(
        self,
        reader: LineReader,
        out: MessageWriter,
        engine: AgentEngine,
        *,
        settings: SidecarSettings | None = None,
    ) -> None:
        self._reader = reader
        self._out = out
        self._engine = engine
        self._settings = settings
        self._sessions = SessionRegistry()
        self._requests = RequestController(engine, out, settings)
        self._in_flight: set[asyncio.Task[Any]] = set()
        self._active_ids: set[str] = set()
        self._shutdown = asyncio.Event()
        self._accepting = True

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    @property
    def requests(self) -> RequestController:
        return self._requests

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def draining(self) -> bool:
        return not self._accepting

    async def run(self) -> None:
        """Announce readiness, serve until shutdown or EOF, then drain."""

        await self._out.emit(SidecarReady())
        log_event(logger, "sidecar.ready")
        try:
            while not self._shutdown.is_set():
                line = await self._next_line()
                if line is None:
                    break
                self.handle_line(line)
        finally:
            await self.drain()

    def request_shutdown(self, reason: str = "signal") -> None:
        if not self._shutdown.is_set():
            log_event(logger, "sidecar.shutdown.requested", reason=reason)
        self._shutdown.set()

    def handle_line(self, line: str) -> None:
        if not self._accepting:
            log_event(logger, "protocol.dropped", level=logging.WARNING, reason="draining")
            return
        try:
            message = parse(line)
        except InvalidConfigError as exc:
            log_event(logger, "protocol.invalid_config", level=logging.WARNING, request_id=exc.request_id, error=str(exc))
            if exc.request_id is not None:
                self._reject(exc.request_id, str(exc))
            return
        except ProtocolError as exc:
            log_event(logger, "protocol.unparseable", level=logging.WARNING, error=str(exc))
            return
        self.dispatch(message)

    def dispatch(self, message: InboundMessage) -> None:
        if isinstance(message, Ping):
            self._out.send(Pong(id=message.id))
        elif isinstance(message, Shutdown):
            self.request_shutdown("message")
        elif isinstance(message, Cancel):
            self._requests.cancel(message.request_id)
        elif isinstance(message, (AgentRequest, StreamStart, StreamMessage)):
            if self._claim(message.request_id):
                self._start_work(message)
        elif isinstance(message, StreamEnd):
            session = self._sessions.remove(message.session_id)
            if session is not None:
                session.close()

    def _claim(self, request_id: str) -> bool:
        """Reserve an id for new work; ids already in flight are answered with an error."""

        if request_id not in self._active_ids:
            return True
        log_event(logger, "request.duplicate", level=logging.WARNING, request_id=request_id)
        self._reject(request_id, f"request '{request_id}' is already running")
        return False

    def _start_work(self, message: AgentRequest | StreamStart | StreamMessage) -> None:
        if isinstance(message, AgentRequest):
            self._track(self._requests.start(message.request_id, message.config), message.request_id)
        elif isinstance(message, StreamStart):
            self._start_session(message)
        else:
            session = self._sessions.get(message.session_id)
            if session is None:
                self._reject(message.request_id, f"no stream session found for '{message.session_id}'")
                return
            self._spawn(session.send_turn(message.request_id, message.user_message), message.request_id)

    def _start_session(self, message: StreamStart) -> None:
        session = StreamSession(
            message.session_id,
            message.config,
            self._engine,
            self._out,
            resume_id=message.resume_session_id,
            settings=self._settings,
        )
        try:
            self._sessions.add(session)
        except SessionStateError as exc:
            self._reject(message.request_id, str(exc))
            return
        log_event(logger, "session.open", session_id=message.session_id, resume_id=message.resume_session_id)
        self._spawn(session.start(message.request_id), message.request_id)

    async def drain(self) -> None:
        """Stop accepting input, close sessions, cancel requests, await in-flight work."""

        self._accepting = False
        closed = self._sessions.close_all()
        cancelled = self._requests.cancel_all()
        log_event(logger, "sidecar.drain", sessions=closed, requests=cancelled, in_flight=len(self._in_flight))
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
        try:
            await self._out.drain()
        except (ConnectionError, OSError):
            logger.warning("stdout closed before drain finished", exc_info=True)
        log_event(logger, "sidecar.stopped")

    def _reject(self, request_id: str, message: str) -> None:
        self._out.send(ErrorMessage(request_id=request_id, message=message))
        self._out.send(RequestComplete(request_id=request_id))

    def _spawn(self, coro: Coroutine[Any, Any, None], request_id: str) -> None:
        self._track(asyncio.create_task(coro, name=f"request:{request_id}"), request_id)

    def _track(self, task: asyncio.Task[Any], request_id: str) -> None:
        self._in_flight.add(task)
        self._active_ids.add(request_id)
        task.add_done_callback(lambda _task: self._active_ids.discard(request_id))
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._in_flight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Task %s failed", task.get_name(), exc_info=exc)

    async def _next_line(self) -> str | None:
        """Wait for the next stdin line; None on EOF or shutdown."""

        read = asyncio.ensure_future(self._reader.readline())
        stop = asyncio.ensure_future(self._shutdown.wait())
        try:
            done, _pending = await asyncio.wait({read, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            read.cancel()
            raise
        finally:
            stop.cancel()

        if read not in done:
            read.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await read
            return None
        try:
            raw = read.result()
        except ValueError as exc:
            # Line longer than the reader's buffer limit; the reader discards it.
            log_event(logger, "protocol.line_too_long", level=logging.WARNING, error=str(exc))
            return ""
        if not raw:
            log_event(logger, "sidecar.stdin.closed")
            return None
        return raw.decode("utf-8", errors="replace")
