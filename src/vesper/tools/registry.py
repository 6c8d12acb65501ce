"""Name-keyed tool registry."""

from __future__ import annotations

import builtins
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from vesper.errors import DuplicateToolError

ToolHandler = Callable[[Any], object] | Callable[[Any], Awaitable[object]]


@dataclass(frozen=True)
class ToolSpec:
    """Declaration and runtime handle of one tool.

    ``input_model`` is the parameter schema; its JSON schema is what the model
    sees and its validation is what the gateway enforces.
    """

    name: str
    description: str
    input_model: type[BaseModel]
    handler: ToolHandler
    requires_confirmation: bool = False
    describe: Callable[[Any], str] | None = None

    @property
    def parameter_schema(self) -> dict[str, Any]:
        return self.input_model.model_json_schema()

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handler)

    def validate(self, parameters: dict[str, Any]) -> BaseModel:
        return self.input_model.model_validate(parameters)

    def describe_action(self, params: BaseModel) -> str:
        if self.describe is not None:
            return self.describe(params)
        rendered = ", ".join(f"{key}={value!r}" for key, value in params.model_dump().items())
        return f"{self.name}({rendered})"


class ToolRegistry:
    """Registry for the tools a turn may call, built once at startup."""

    def __init__(self, allowed: set[str] | None = None) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._allowed = allowed

    def register(self, spec: ToolSpec) -> None:
        if self._allowed is not None and not {spec.name, self.to_model_name(spec.name)} & self._allowed:
            return
        if spec.name in self._tools:
            raise DuplicateToolError(f"Tool already registered: {spec.name}")
        model_name = self.to_model_name(spec.name)
        for existing in self._tools.values():
            if self.to_model_name(existing.name) == model_name:
                raise DuplicateToolError(f"Duplicate model tool name after conversion: {model_name}")
        self._tools[spec.name] = spec

    def resolve(self, name: str) -> ToolSpec | None:
        """Look a tool up by its registered name or its model-facing name."""
        spec = self._tools.get(name)
        if spec is not None:
            return spec
        for candidate in self._tools.values():
            if self.to_model_name(candidate.name) == name:
                return candidate
        return None

    def specs(self) -> builtins.list[ToolSpec]:
        return sorted(self._tools.values(), key=lambda item: item.name)

    def names(self) -> builtins.list[str]:
        return [spec.name for spec in self.specs()]

    @staticmethod
    def to_model_name(name: str) -> str:
        return name.replace(".", "_")

    def compact_rows(self) -> builtins.list[str]:
        rows: builtins.list[str] = []
        for spec in self.specs():
            marker = " [confirm]" if spec.requires_confirmation else ""
            rows.append(f"{spec.name}: {spec.description}{marker}")
        return rows

    def detail(self, name: str) -> str:
        spec = self.resolve(name)
        if spec is None:
            raise KeyError(name)
        return (
            f"name: {spec.name}\n"
            f"model name: {self.to_model_name(spec.name)}\n"
            f"description: {spec.description}\n"
            f"requires_confirmation: {spec.requires_confirmation}\n"
            f"schema: {spec.parameter_schema}"
        )

    def schemas(self) -> builtins.list[dict[str, Any]]:
        """Tool declarations in the function-calling shape model backends expect."""
        return [
            {
                "name": self.to_model_name(spec.name),
                "description": spec.description,
                "parameters": spec.parameter_schema,
            }
            for spec in self.specs()
        ]
