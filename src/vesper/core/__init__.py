"""Turn pipeline: controller, backends, worker pool and runtime wiring."""

from .backend import EchoBackend, ModelBackend, RepublicBackend, build_backend, parse_chat_response
from .controller import PhaseTracker, TurnConfig, TurnController
from .pool import TurnPool
from .runtime import Runtime, build_runtime

__all__ = [
    "EchoBackend",
    "ModelBackend",
    "PhaseTracker",
    "RepublicBackend",
    "Runtime",
    "TurnConfig",
    "TurnController",
    "TurnPool",
    "build_backend",
    "build_runtime",
    "parse_chat_response",
]
