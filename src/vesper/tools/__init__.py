"""Tool registry, builtin tools and the confirmation-gated gateway."""

from .builtin import Workspace, register_builtin_tools
from .gateway import TerminalConfirmer, ToolGateway, format_tool_result, is_affirmative, render_confirmation
from .registry import ToolRegistry, ToolSpec

__all__ = [
    "TerminalConfirmer",
    "ToolGateway",
    "ToolRegistry",
    "ToolSpec",
    "Workspace",
    "format_tool_result",
    "is_affirmative",
    "register_builtin_tools",
    "render_confirmation",
]
