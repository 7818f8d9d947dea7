"""Line-delimited JSON control protocol spoken over stdin/stdout.

Inbound (stdin): ping, shutdown, cancel, agent_request, stream_start,
stream_message, stream_end. Outbound (stdout): sidecar_ready, pong, system,
agent_event, agent_response, error, request_complete.

Wire keys are camelCase (`requestId`, `sessionId`, `userMessage`); snake_case
spellings are accepted on input as well.
"""

from __future__ import annotations

import json
import time
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError

from agent_sidecar.config import RequestConfig, parse_request_config
from agent_sidecar.errors import InvalidConfigError, ProtocolError

Identifier = Annotated[str, Field(min_length=1)]

ABORTED_MESSAGE = "Request aborted"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class _ConfigMixin(WireModel):
    @field_validator("config", mode="before", check_fields=False)
    @classmethod
    def _validate_config(cls, value: Any) -> RequestConfig:
        try:
            return parse_request_config(value)
        except InvalidConfigError as exc:
            raise PydanticCustomError("invalid_config", "{reason}", {"reason": str(exc)}) from exc


# -- inbound -----------------------------------------------------------------


class Ping(WireModel):
    type: Literal["ping"] = "ping"
    id: Any = None


class Shutdown(WireModel):
    type: Literal["shutdown"] = "shutdown"


class Cancel(WireModel):
    type: Literal["cancel"] = "cancel"
    request_id: Identifier


class AgentRequest(_ConfigMixin):
    type: Literal["agent_request"] = "agent_request"
    request_id: Identifier
    config: RequestConfig


class StreamStart(_ConfigMixin):
    type: Literal["stream_start"] = "stream_start"
    request_id: Identifier
    session_id: Identifier
    config: RequestConfig
    resume_session_id: str | None = None


class StreamMessage(WireModel):
    type: Literal["stream_message"] = "stream_message"
    request_id: Identifier
    session_id: Identifier
    user_message: str


class StreamEnd(WireModel):
    type: Literal["stream_end"] = "stream_end"
    session_id: Identifier


InboundMessage = Union[Ping, Shutdown, Cancel, AgentRequest, StreamStart, StreamMessage, StreamEnd]

INBOUND_TYPES: dict[str, type[WireModel]] = {
    "ping": Ping,
    "shutdown": Shutdown,
    "cancel": Cancel,
    "agent_request": AgentRequest,
    "stream_start": StreamStart,
    "stream_message": StreamMessage,
    "stream_end": StreamEnd,
}


# -- outbound ----------------------------------------------------------------


class SidecarReady(WireModel):
    type: Literal["sidecar_ready"] = "sidecar_ready"


class Pong(WireModel):
    """Answer to a ping; `id` is echoed back exactly as it arrived."""

    type: Literal["pong"] = "pong"
    id: Any = None


class SystemNotice(WireModel):
    type: Literal["system"] = "system"
    request_id: str
    subtype: str
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))


class AgentEvent(WireModel):
    type: Literal["agent_event"] = "agent_event"
    request_id: str
    event: Any


class AgentResponse(WireModel):
    type: Literal["agent_response"] = "agent_response"
    request_id: str
    content: str
    done: bool


class ErrorMessage(WireModel):
    type: Literal["error"] = "error"
    request_id: str
    message: str


class RequestComplete(WireModel):
    type: Literal["request_complete"] = "request_complete"
    request_id: str


OutboundMessage = Union[
    SidecarReady, Pong, SystemNotice, AgentEvent, AgentResponse, ErrorMessage, RequestComplete
]


# -- codec -------------------------------------------------------------------


def encode(message: OutboundMessage) -> str:
    """Serialise an outbound message to one line of JSON (without the newline).

    Optional fields left as None are omitted. The opaque `event` payload of
    `agent_event` is written verbatim; values JSON cannot represent are
    rendered with str().
    """

    payload = message.model_dump(by_alias=True, exclude={"event"})
    payload = {key: value for key, value in payload.items() if value is not None}
    if isinstance(message, AgentEvent):
        payload["event"] = message.event
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)


def _request_id_of(payload: dict[str, Any]) -> str | None:
    value = payload.get("requestId", payload.get("request_id"))
    return value if isinstance(value, str) and value else None


def parse(line: str) -> InboundMessage:
    """Parse one inbound line, raising ProtocolError when it is not a valid message.

    A message whose envelope is fine but whose configuration is not raises
    InvalidConfigError with `request_id` set, so the caller can still answer it.
    """

    text = line.strip()
    if not text:
        raise ProtocolError("empty line")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"invalid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ProtocolError("expected a JSON object")

    kind = payload.get("type")
    model = INBOUND_TYPES.get(kind) if isinstance(kind, str) else None
    if model is None:
        raise ProtocolError(f"unrecognized message type: {kind!r}")

    try:
        return model.model_validate(payload)  # type: ignore[return-value]
    except ValidationError as exc:
        errors = exc.errors()
        if errors and all(err["loc"][:1] == ("config",) for err in errors):
            first = errors[0]
            reason = first["msg"] if first["type"] == "invalid_config" else "Invalid config: expected object"
            raise InvalidConfigError(reason, request_id=_request_id_of(payload)) from exc
        fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in errors)
        raise ProtocolError(f"invalid {kind} message: {fields}") from exc


def decode(line: str) -> InboundMessage | None:
    """Parse one inbound line, returning None instead of raising."""

    try:
        return parse(line)
    except ProtocolError:
        return None


__all__ = [
    "ABORTED_MESSAGE",
    "AgentEvent",
    "AgentRequest",
    "AgentResponse",
    "Cancel",
    "ErrorMessage",
    "InboundMessage",
    "OutboundMessage",
    "Ping",
    "Pong",
    "RequestComplete",
    "Shutdown",
    "SidecarReady",
    "StreamEnd",
    "StreamMessage",
    "StreamStart",
    "SystemNotice",
    "decode",
    "encode",
    "parse",
]
