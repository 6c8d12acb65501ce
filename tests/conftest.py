from __future__ import annotations

import io
import os
from dataclasses import dataclass, field
from pathlib import Path

import pytest
from rich.console import Console

from vesper.memory import MemoryStore
from vesper.progress import ProgressBroadcaster


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for key in list(os.environ):
        if key.startswith("VESPER_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("VESPER_HOME", str(tmp_path / "home"))
    # Keep a developer's .env out of the settings under test.
    monkeypatch.chdir(tmp_path)


@dataclass
class KeywordEmbedder:
    """Three-dimensional embedder keyed on a few words, for predictable similarity."""

    dimension: int = 3
    calls: list[str] = field(default_factory=list)

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        lowered = text.casefold()
        vector = [
            1.0 if "cat" in lowered else 0.0,
            1.0 if "dog" in lowered else 0.0,
            1.0 if "fish" in lowered else 0.0,
        ]
        if not any(vector) and lowered.strip():
            vector = [0.1, 0.1, 0.1]
        return vector


@pytest.fixture
def embedder() -> KeywordEmbedder:
    return KeywordEmbedder()


@pytest.fixture
def store(tmp_path: Path, embedder: KeywordEmbedder) -> MemoryStore:
    return MemoryStore(tmp_path / "store", embedder)


@pytest.fixture
def broadcaster() -> ProgressBroadcaster:
    return ProgressBroadcaster(Console(file=io.StringIO(), force_terminal=False, width=120))
