"""Vesper - a terminal agent that remembers."""

from .core import Runtime, TurnController, build_runtime
from .types import Phase, PhaseEvent, Turn

__version__ = "0.1.0"

__all__ = ["Phase", "PhaseEvent", "Runtime", "Turn", "TurnController", "build_runtime"]
