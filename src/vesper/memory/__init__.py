"""Memory store and embedding backends."""

from .embeddings import Embedder, HashEmbedder, OpenAIEmbedder, build_embedder, cosine_similarity
from .store import MemoryStats, MemoryStore, SessionInfo

__all__ = [
    "Embedder",
    "HashEmbedder",
    "MemoryStats",
    "MemoryStore",
    "OpenAIEmbedder",
    "SessionInfo",
    "build_embedder",
    "cosine_similarity",
]
