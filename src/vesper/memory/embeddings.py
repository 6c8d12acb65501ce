"""Embedding backends for memory retrieval."""

from __future__ import annotations

import hashlib
import math
import re
from collections.abc import Sequence
from typing import Protocol

from loguru import logger
from openai import AsyncOpenAI, OpenAIError

from vesper.config import Settings
from vesper.errors import ApiKeyNotConfiguredError, EmbeddingError, UnknownProviderError

DEFAULT_HASH_DIMENSION = 384
DEFAULT_OPENAI_MODEL = "text-embedding-3-small"
DEFAULT_OLLAMA_MODEL = "nomic-embed-text"
DEFAULT_OLLAMA_BASE = "http://localhost:11434/v1"
WORD_PATTERN = re.compile(r"\w+")

OPENAI_DIMENSIONS: dict[str, int] = {
    "text-embedding-3-large": 3072,
    "text-embedding-3-small": 1536,
    "text-embedding-ada-002": 1536,
}
OLLAMA_DIMENSIONS: dict[str, int] = {
    "nomic-embed-text": 768,
    "all-minilm": 384,
    "mxbai-embed-large": 1024,
}


class Embedder(Protocol):
    """Opaque ``embed(text) -> vector`` with a fixed dimensionality."""

    @property
    def dimension(self) -> int: ...

    async def embed(self, text: str) -> list[float]: ...


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def normalize(vector: Sequence[float]) -> list[float]:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0.0:
        return list(vector)
    return [value / norm for value in vector]


class HashEmbedder:
    """Deterministic feature-hashing embedder.

    Words and character trigrams are hashed into signed buckets, so texts that
    share vocabulary land close together. Not semantic, but stable across
    processes and free of network access.
    """

    def __init__(self, dimension: int = DEFAULT_HASH_DIMENSION) -> None:
        if dimension < 1:
            raise ValueError("dimension must be positive")
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        return self.embed_sync(text)

    def embed_sync(self, text: str) -> list[float]:
        vector = [0.0] * self._dimension
        if not text.strip():
            return vector
        for feature, weight in _features(text.casefold()):
            digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "little") % self._dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign * weight
        return normalize(vector)


def _features(text: str) -> list[tuple[str, float]]:
    features: list[tuple[str, float]] = []
    for word in WORD_PATTERN.findall(text):
        features.append((f"w:{word}", 1.0))
        padded = f"^{word}$"
        for idx in range(len(padded) - 2):
            features.append((f"t:{padded[idx : idx + 3]}", 0.25))
    return features


class OpenAIEmbedder:
    """Embedder backed by an OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(self, client: AsyncOpenAI, model: str, dimension: int) -> None:
        self._client = client
        self._model = model
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model(self) -> str:
        return self._model

    async def embed(self, text: str) -> list[float]:
        if not text.strip():
            logger.warning("embedding.empty_text model={}", self._model)
            return [0.0] * self._dimension
        try:
            response = await self._client.embeddings.create(model=self._model, input=text)
        except OpenAIError as exc:
            raise EmbeddingError(f"embedding request failed: {exc!s}") from exc
        if not response.data:
            raise EmbeddingError("embedding response contained no vectors")
        vector = [float(value) for value in response.data[0].embedding]
        if len(vector) != self._dimension:
            raise EmbeddingError(
                f"embedding dimension mismatch: model {self._model} returned {len(vector)}, expected {self._dimension}"
            )
        return vector


def build_embedder(settings: Settings) -> Embedder:
    """Create the embedder selected by ``settings.embedding_provider``."""
    provider = settings.embedding_provider
    if provider == "hash":
        return HashEmbedder(settings.embedding_dimension)
    if provider == "openai":
        if not settings.api_key:
            raise ApiKeyNotConfiguredError("OpenAI embeddings need an API key. Set VESPER_API_KEY.")
        model = settings.embedding_model or DEFAULT_OPENAI_MODEL
        client = AsyncOpenAI(api_key=settings.api_key, base_url=settings.api_base)
        return OpenAIEmbedder(client, model, OPENAI_DIMENSIONS.get(model, 1536))
    if provider == "ollama":
        model = settings.embedding_model or DEFAULT_OLLAMA_MODEL
        client = AsyncOpenAI(api_key="ollama", base_url=settings.api_base or DEFAULT_OLLAMA_BASE)
        return OpenAIEmbedder(client, model, OLLAMA_DIMENSIONS.get(model, 768))
    raise UnknownProviderError(f"Unsupported embedding provider: {provider}. Supported providers: hash, openai, ollama")
