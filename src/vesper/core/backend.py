"""Model backend contract and adapters."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from typing import Any, Protocol

from loguru import logger
from republic import LLM, Tool

from vesper.config import Settings
from vesper.errors import UnknownProviderError
from vesper.types import ModelResponse, ToolCall

Message = dict[str, Any]
ToolSchema = dict[str, Any]

REQUEST_MARKER = "Current request: "


class ModelBackend(Protocol):
    """``complete(history, tools) -> {text, tool_calls}``, provider agnostic."""

    async def complete(self, messages: Sequence[Message], tools: Sequence[ToolSchema]) -> ModelResponse: ...


class EchoBackend:
    """Offline backend that answers with the user's request.

    Useful for wiring checks and for running without credentials.
    """

    name = "echo"

    async def complete(self, messages: Sequence[Message], tools: Sequence[ToolSchema]) -> ModelResponse:
        for message in reversed(messages):
            if message.get("role") != "user":
                continue
            content = str(message.get("content") or "")
            _, marker, request = content.rpartition(REQUEST_MARKER)
            return ModelResponse(text=request if marker else content)
        return ModelResponse(text="")


class RepublicBackend:
    """Hosted or local models through the Republic LLM client."""

    def __init__(self, llm: LLM, *, max_tokens: int) -> None:
        self._llm = llm
        self._max_tokens = max_tokens

    @classmethod
    def from_settings(cls, settings: Settings) -> RepublicBackend:
        llm = LLM(
            model=settings.model,
            api_key=settings.api_key,
            api_base=settings.api_base,
        )
        return cls(llm, max_tokens=settings.max_tokens)

    @property
    def model(self) -> str:
        return f"{self._llm.provider}:{self._llm.model}"

    async def complete(self, messages: Sequence[Message], tools: Sequence[ToolSchema]) -> ModelResponse:
        republic_tools = [
            Tool(
                name=schema["name"],
                description=schema.get("description", ""),
                parameters=schema.get("parameters", {"type": "object", "properties": {}}),
                handler=None,
            )
            for schema in tools
        ]
        response = await asyncio.to_thread(
            self._llm.chat.raw,
            messages=list(messages),
            tools=republic_tools,
            max_tokens=self._max_tokens,
        )
        return parse_chat_response(response)


def parse_chat_response(response: Any) -> ModelResponse:
    """Convert an OpenAI-style chat completion into a ``ModelResponse``."""
    if isinstance(response, str):
        return ModelResponse(text=response)
    choices = getattr(response, "choices", None)
    if not choices:
        return ModelResponse()
    message = getattr(choices[0], "message", None)
    if message is None:
        return ModelResponse()
    text = getattr(message, "content", "") or ""
    calls: list[ToolCall] = []
    for idx, tool_call in enumerate(getattr(message, "tool_calls", None) or []):
        function = getattr(tool_call, "function", None)
        if function is None:
            continue
        name = getattr(function, "name", "") or ""
        calls.append(
            ToolCall(
                name=name,
                parameters=parse_arguments(getattr(function, "arguments", None)),
                call_id=getattr(tool_call, "id", None) or f"call_{idx}",
            )
        )
    return ModelResponse(text=text, tool_calls=tuple(calls))


def parse_arguments(arguments: object) -> dict[str, Any]:
    if arguments is None:
        return {}
    if isinstance(arguments, dict):
        return dict(arguments)
    raw = str(arguments).strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"malformed tool arguments: {raw[:80]}") from exc
    if not isinstance(parsed, dict):
        raise ValueError(f"tool arguments must be an object, got {type(parsed).__name__}")
    return parsed


def build_backend(settings: Settings) -> ModelBackend:
    if settings.model.casefold() == EchoBackend.name:
        return EchoBackend()
    provider, separator, model = settings.model.partition(":")
    if not separator or not provider or not model:
        raise UnknownProviderError(f"Model must look like provider:model, got {settings.model!r}")
    logger.info("backend.build provider={} model={}", provider, model)
    return RepublicBackend.from_settings(settings)
