"""Shared stdout writer and stdio stream setup."""

from __future__ import annotations

from typing import Any, Protocol

from agent_sidecar.protocol import OutboundMessage, encode


class LineReader(Protocol):
    async def readline(self) -> bytes: ...


class MessageWriter:
    """Write outbound messages as newline-terminated JSON lines.

    `send` only appends to the transport buffer, so messages leave in exactly
    the order they were produced. `emit` additionally waits for the buffer to
    drain.
    """

    def __init__(self, writer: Any) -> None:
        self._writer = writer

    def send(self, message: OutboundMessage) -> None:
        line = encode(message)
        self._writer.write(f"{line}\n".encode("utf-8"))

    async def emit(self, message: OutboundMessage) -> None:
        self.send(message)
        await self.drain()

    async def drain(self) -> None:
        drain = getattr(self._writer, "drain", None)
        if drain is not None:
            await drain()


async def open_stdio() -> tuple[Any, MessageWriter]:
    """Return an asyncio reader for stdin and a message writer for stdout."""

    from acp import stdio_streams  # Imported lazily to keep the import light for tests

    reader, writer = await stdio_streams()
    return reader, MessageWriter(writer)
