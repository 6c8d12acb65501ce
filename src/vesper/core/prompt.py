"""Conversation assembly for backend calls."""

from __future__ import annotations

import json
from collections.abc import Sequence

from vesper.core.backend import REQUEST_MARKER, Message
from vesper.tools.gateway import format_tool_result
from vesper.types import MemoryEntry, ToolCall, ToolResult

CONTEXT_HEADER = "Context from previous conversations:"
DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant with access to tools. "
    "Use tools when they help answer the request, and answer in plain language once you have what you need. "
    "If a tool call is denied or fails, tell the user what you attempted and why it did not work."
)


def render_context(entries: Sequence[MemoryEntry]) -> str:
    if not entries:
        return ""
    lines = [CONTEXT_HEADER]
    for entry in entries:
        lines.append(f"[{entry.created_at:%H:%M}] {entry.role.value}: {entry.content}")
    return "\n".join(lines)


def build_request(prompt: str, context: Sequence[MemoryEntry]) -> str:
    block = render_context(context)
    request = f"{REQUEST_MARKER}{prompt}"
    return f"{block}\n\n{request}" if block else request


class Conversation:
    """OpenAI-style message list for one turn."""

    def __init__(self, system_prompt: str | None = None) -> None:
        self._messages: list[Message] = []
        system = "\n\n".join(part for part in (DEFAULT_SYSTEM_PROMPT, system_prompt) if part and part.strip())
        self._messages.append({"role": "system", "content": system})

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def add_user(self, content: str) -> None:
        self._messages.append({"role": "user", "content": content})

    def add_tool_calls(self, text: str, calls: Sequence[ToolCall]) -> None:
        self._messages.append({
            "role": "assistant",
            "content": text or None,
            "tool_calls": [
                {
                    "id": call.call_id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.parameters, ensure_ascii=False)},
                }
                for call in calls
            ],
        })

    def add_tool_result(self, call: ToolCall, result: ToolResult) -> None:
        self._messages.append({
            "role": "tool",
            "tool_call_id": call.call_id,
            "name": call.name,
            "content": format_tool_result(result),
        })
