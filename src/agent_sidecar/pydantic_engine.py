"""Default agent engine built on pydantic-ai.

Each conversation wraps a `pydantic_ai.Agent` plus its message history.
`stream()` runs `Agent.run_stream_events` for the queued turn and yields
engine events shaped as plain dicts:

- `{"type": "assistant", "message": {"role": "assistant", "content": [{"type": "text", "text": ...}]}}`
- `{"type": "thinking", "thinking": ...}`
- `{"type": "tool_use", "id": ..., "name": ..., "input": {...}}`
- `{"type": "tool_result", "tool_use_id": ..., "name": ..., "content": ..., "is_error": bool}`
- `{"type": "result", "subtype": "success", "session_id": ..., "result": ..., "usage": {...}}` (terminal)

Histories of resumable conversations live in memory, bounded and least
recently used first out. `resume_conversation` looks them up there.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections import OrderedDict, deque
from typing import Any, AsyncIterator, Callable

from pydantic_ai import Agent as PydanticAgent  # type: ignore
from pydantic_ai.messages import (  # type: ignore
    FunctionToolCallEvent,
    FunctionToolResultEvent,
    ModelMessage,
    ModelResponse,
    PartDeltaEvent,
    PartStartEvent,
    RetryPromptPart,
    TextPart,
    TextPartDelta,
    ThinkingPart,
    ThinkingPartDelta,
)
from pydantic_ai.models import Model  # type: ignore
from pydantic_ai.models.anthropic import AnthropicModel  # type: ignore
from pydantic_ai.models.google import GoogleModel  # type: ignore
from pydantic_ai.models.openai import OpenAIChatModel  # type: ignore
from pydantic_ai.models.test import TestModel  # type: ignore
from pydantic_ai.providers.anthropic import AnthropicProvider  # type: ignore
from pydantic_ai.providers.google import GoogleProvider  # type: ignore
from pydantic_ai.providers.openai import OpenAIProvider  # type: ignore
from pydantic_ai.providers.openrouter import OpenRouterProvider  # type: ignore
from pydantic_ai.run import AgentRunResultEvent  # type: ignore
from pydantic_core import to_jsonable_python

from agent_sidecar.errors import ConversationClosedError, ConversationNotFoundError
from agent_sidecar.log_utils import log_event
from agent_sidecar.options import PROVIDER_KEY_ENV, SessionOptions
from agent_sidecar.prompt import build_instructions
from agent_sidecar.settings import DEFAULT_HISTORY_LIMIT
from agent_sidecar.tools import register_tools

logger = logging.getLogger("sidecar")

ModelFactory = Callable[[SessionOptions], Any]


def build_model(options: SessionOptions) -> Model:
    """Build a pydantic-ai model for the session, reading the credential from `options.env`."""

    provider = options.provider
    name = options.model_name
    if provider == "test":
        return TestModel(call_tools=[])

    key_var = PROVIDER_KEY_ENV.get(provider)
    if key_var is None:
        raise ValueError(f"Unsupported model provider: {provider}")
    key = options.env.get(key_var)
    if not key:
        raise RuntimeError(f"{key_var} is required for {provider} models")

    if provider == "anthropic":
        return AnthropicModel(name, provider=AnthropicProvider(api_key=key))
    if provider == "openai":
        return OpenAIChatModel(name, provider=OpenAIProvider(api_key=key))
    if provider == "google":
        return GoogleModel(name, provider=GoogleProvider(api_key=key))
    return OpenAIChatModel(name, provider=OpenRouterProvider(api_key=key))


def assistant_event(text: str) -> dict[str, Any]:
    return {
        "type": "assistant",
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
    }


def convert_event(event: Any) -> dict[str, Any] | None:
    """Convert a pydantic-ai stream event into an engine event (None when it carries nothing)."""

    if isinstance(event, PartStartEvent):
        part = event.part
        if isinstance(part, TextPart) and part.content:
            return assistant_event(part.content)
        if isinstance(part, ThinkingPart) and part.content:
            return {"type": "thinking", "thinking": part.content}
        return None
    if isinstance(event, PartDeltaEvent):
        delta = event.delta
        if isinstance(delta, TextPartDelta) and delta.content_delta:
            return assistant_event(delta.content_delta)
        if isinstance(delta, ThinkingPartDelta) and delta.content_delta:
            return {"type": "thinking", "thinking": delta.content_delta}
        return None
    if isinstance(event, FunctionToolCallEvent):
        part = event.part
        return {
            "type": "tool_use",
            "id": part.tool_call_id,
            "name": part.tool_name,
            "input": part.args_as_dict(),
        }
    if isinstance(event, FunctionToolResultEvent):
        result = event.result
        if isinstance(result, RetryPromptPart):
            content: Any = result.model_response()
            is_error = True
        else:
            content = to_jsonable_python(result.content, fallback=str)
            is_error = False
        return {
            "type": "tool_result",
            "tool_use_id": result.tool_call_id,
            "name": result.tool_name,
            "content": content,
            "is_error": is_error,
        }
    return None


def _usage_dict(result: Any) -> dict[str, int]:
    """Token totals for a finished run.

    `usage` is read as an attribute. Where it is still a method, the totals
    are summed from the per-response usage in the run's messages instead.
    """

    usage = getattr(result, "usage", None)
    if callable(usage):
        responses = [message for message in result.all_messages() if isinstance(message, ModelResponse)]
        return {
            "input_tokens": sum(int(getattr(r.usage, "input_tokens", 0) or 0) for r in responses),
            "output_tokens": sum(int(getattr(r.usage, "output_tokens", 0) or 0) for r in responses),
        }
    if usage is None:
        return {}
    return {
        "input_tokens": int(getattr(usage, "input_tokens", 0) or 0),
        "output_tokens": int(getattr(usage, "output_tokens", 0) or 0),
    }


class PydanticAIConversation:
    def __init__(
        self,
        conversation_id: str,
        agent: PydanticAgent[SessionOptions, str],
        options: SessionOptions,
        history: list[ModelMessage],
        on_history: Callable[[str, list[ModelMessage]], None],
    ) -> None:
        self._conversation_id = conversation_id
        self._agent = agent
        self._options = options
        self._history = history
        self._on_history = on_history
        self._pending: deque[str] = deque()
        self._closed = False

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, text: str) -> None:
        if self._closed:
            raise ConversationClosedError("conversation is closed")
        self._pending.append(text)

    async def stream(self) -> AsyncIterator[dict[str, Any]]:
        if self._closed:
            raise ConversationClosedError("conversation is closed")
        if not self._pending:
            return
        prompt = self._pending.popleft()
        log_event(logger, "engine.run.start", conversation_id=self._conversation_id, model=self._options.model)
        events = self._agent.run_stream_events(
            prompt,
            message_history=self._history or None,
            deps=self._options,
        )
        if asyncio.iscoroutine(events):
            events = await events
        async with contextlib.AsyncExitStack() as stack:
            # Newer pydantic-ai releases hand back an async context manager
            # that has to be entered before it yields events.
            if hasattr(events, "__aenter__"):
                events = await stack.enter_async_context(events)
            try:
                async for event in events:
                    if self._closed:
                        log_event(logger, "engine.run.closed", conversation_id=self._conversation_id)
                        return
                    if isinstance(event, AgentRunResultEvent):
                        result = event.result
                        self._history = list(result.all_messages())
                        if self._options.resumable:
                            self._on_history(self._conversation_id, self._history)
                        yield {
                            "type": "result",
                            "subtype": "success",
                            "session_id": self._conversation_id,
                            "result": str(result.output),
                            "usage": _usage_dict(result),
                        }
                        return
                    converted = convert_event(event)
                    if converted is not None:
                        yield converted
            finally:
                closer = getattr(events, "aclose", None)
                if callable(closer):
                    with contextlib.suppress(Exception):
                        await closer()

    def close(self) -> None:
        self._closed = True


class PydanticAIEngine:
    """AgentEngine backed by pydantic-ai agents with read-only workspace tools.

    Only resumable conversations (those opened by stream sessions) leave a
    history behind. At most `max_histories` are kept; the least recently
    used one is forgotten first.
    """

    def __init__(
        self,
        *,
        model_factory: ModelFactory | None = None,
        tools: bool = True,
        max_histories: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self._model_factory = model_factory or build_model
        self._tools = tools
        self._max_histories = max(max_histories, 0)
        self._histories: OrderedDict[str, list[ModelMessage]] = OrderedDict()

    @property
    def history_count(self) -> int:
        return len(self._histories)

    async def create_conversation(self, options: SessionOptions) -> PydanticAIConversation:
        conversation_id = str(uuid.uuid4())
        log_event(logger, "engine.conversation.create", conversation_id=conversation_id, model=options.model)
        return PydanticAIConversation(conversation_id, self._build_agent(options), options, [], self._remember)

    async def resume_conversation(self, conversation_id: str, options: SessionOptions) -> PydanticAIConversation:
        history = self._histories.get(conversation_id)
        if history is None:
            raise ConversationNotFoundError(f"no conversation found for '{conversation_id}'")
        self._histories.move_to_end(conversation_id)
        log_event(logger, "engine.conversation.resume", conversation_id=conversation_id, messages=len(history))
        return PydanticAIConversation(
            conversation_id,
            self._build_agent(options),
            options,
            list(history),
            self._remember,
        )

    def _remember(self, conversation_id: str, history: list[ModelMessage]) -> None:
        if self._max_histories == 0:
            return
        self._histories[conversation_id] = list(history)
        self._histories.move_to_end(conversation_id)
        while len(self._histories) > self._max_histories:
            forgotten, _ = self._histories.popitem(last=False)
            log_event(logger, "engine.history.evicted", conversation_id=forgotten)

    def _build_agent(self, options: SessionOptions) -> PydanticAgent[SessionOptions, str]:
        agent: PydanticAgent[SessionOptions, str] = PydanticAgent(
            self._model_factory(options),
            deps_type=SessionOptions,
            instructions=build_instructions(options),
        )
        if self._tools:
            register_tools(agent)
        return agent
