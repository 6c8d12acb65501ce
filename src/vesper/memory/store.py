"""Session-partitioned, append-only memory store."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Generic, TypeVar
from urllib.parse import quote, unquote

from loguru import logger

from vesper.errors import EmbeddingDimensionError, InvalidInputError, StorageError
from vesper.memory.embeddings import Embedder, cosine_similarity
from vesper.types import MemoryEntry, Role, Turn

LOG_FILE_SUFFIX = ".jsonl"
MANIFEST_FILE = "store.json"

T = TypeVar("T")


@dataclass(frozen=True)
class SessionInfo:
    session_id: str
    entry_count: int
    first_entry: datetime
    last_entry: datetime


@dataclass(frozen=True)
class MemoryStats:
    total_entries: int
    sessions: int
    embedding_dimension: int


class SessionLog(Generic[T]):
    """One append-only JSONL file, read incrementally."""

    def __init__(
        self,
        path: Path,
        *,
        decode: Callable[[object], T | None],
        encode: Callable[[T], dict[str, object]],
    ) -> None:
        self.path = path
        self._decode = decode
        self._encode = encode
        self._lock = threading.Lock()
        self._read_records: list[T] = []
        self._read_offset = 0

    def _reset(self) -> None:
        self._read_records = []
        self._read_offset = 0

    def read(self) -> list[T]:
        with self._lock:
            return self._read_locked()

    def _read_locked(self) -> list[T]:
        if not self.path.exists():
            self._reset()
            return []

        file_size = self.path.stat().st_size
        if file_size < self._read_offset:
            # The file was truncated or replaced, so cached records are stale.
            self._reset()

        with self.path.open("r", encoding="utf-8") as handle:
            handle.seek(self._read_offset)
            for raw_line in handle:
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("memory.log.corrupt_line path={}", self.path)
                    continue
                record = self._decode(payload)
                if record is not None:
                    self._read_records.append(record)
            self._read_offset = handle.tell()

        return list(self._read_records)

    def append(self, record: T) -> None:
        with self._lock:
            # Keep cache and offset in sync before writing.
            self._read_locked()
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(self._encode(record), ensure_ascii=False) + "\n")
                self._read_records.append(record)
                self._read_offset = handle.tell()


class MemoryStore:
    """Durable turn history with similarity-based retrieval.

    Entries live in one JSONL file per session under ``<home>/memory``; the
    persisted turn log lives next to it under ``<home>/turns``. There is no
    update or delete: history is immutable.
    """

    def __init__(self, home: Path, embedder: Embedder) -> None:
        self._memory_root = home / "memory"
        self._turn_root = home / "turns"
        self._embedder = embedder
        self._entry_logs: dict[str, SessionLog[MemoryEntry]] = {}
        self._turn_logs: dict[str, SessionLog[Turn]] = {}
        self._lock = threading.Lock()
        try:
            self._memory_root.mkdir(parents=True, exist_ok=True)
            self._turn_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"cannot create memory directory {self._memory_root}: {exc!s}") from exc
        self._check_dimension()

    @property
    def embedder(self) -> Embedder:
        return self._embedder

    @property
    def dimension(self) -> int:
        return self._embedder.dimension

    async def embed(self, text: str) -> list[float]:
        return await self._embedder.embed(text)

    async def record(
        self,
        session_id: str,
        role: Role,
        content: str,
        *,
        embedding: Sequence[float] | None = None,
    ) -> MemoryEntry:
        """Embed ``content`` (unless an embedding is given) and append it to the session."""
        _require_session(session_id)
        vector = list(embedding) if embedding is not None else await self._embedder.embed(content)
        self._require_dimension(len(vector), "entry")
        entry = MemoryEntry(session_id=session_id, role=Role(role), content=content, embedding=tuple(vector))
        try:
            self._entry_log(session_id).append(entry)
        except OSError as exc:
            raise StorageError(f"cannot append memory entry for session {session_id}: {exc!s}") from exc
        logger.debug("memory.record session={} role={} id={}", session_id, entry.role.value, entry.id)
        return entry

    async def retrieve(self, session_id: str, query_embedding: Sequence[float], k: int) -> list[MemoryEntry]:
        """Return up to ``k`` entries of ``session_id``, most similar first.

        Equal similarities put the more recent entry first. An unknown session
        yields an empty list.
        """
        _require_session(session_id)
        self._require_dimension(len(query_embedding), "query")
        if k <= 0:
            return []
        entries = self._read_entries(session_id)
        scored = [
            (cosine_similarity(query_embedding, entry.embedding), entry.created_at, index, entry)
            for index, entry in enumerate(entries)
            if entry.session_id == session_id
        ]
        scored.sort(key=lambda item: (item[0], item[1], item[2]), reverse=True)
        selected = [item[3] for item in scored[:k]]
        logger.debug("memory.retrieve session={} candidates={} selected={}", session_id, len(entries), len(selected))
        return selected

    def history(self, session_id: str, limit: int | None = None) -> list[MemoryEntry]:
        """Return the session's entries in the order they were recorded."""
        _require_session(session_id)
        entries = self._read_entries(session_id)
        if limit is None:
            return entries
        return entries[-limit:] if limit > 0 else []

    def session_exists(self, session_id: str) -> bool:
        return bool(session_id) and bool(self._read_entries(session_id))

    def list_sessions(self) -> list[SessionInfo]:
        sessions: list[SessionInfo] = []
        for session_id in self._session_ids():
            entries = self._read_entries(session_id)
            if not entries:
                continue
            stamps = [entry.created_at for entry in entries]
            sessions.append(
                SessionInfo(
                    session_id=session_id,
                    entry_count=len(entries),
                    first_entry=min(stamps),
                    last_entry=max(stamps),
                )
            )
        sessions.sort(key=lambda info: info.last_entry, reverse=True)
        return sessions

    def stats(self) -> MemoryStats:
        sessions = self.list_sessions()
        return MemoryStats(
            total_entries=sum(info.entry_count for info in sessions),
            sessions=len(sessions),
            embedding_dimension=self.dimension,
        )

    def record_turn(self, turn: Turn) -> None:
        _require_session(turn.session_id)
        try:
            self._turn_log(turn.session_id).append(turn)
        except OSError as exc:
            raise StorageError(f"cannot append turn for session {turn.session_id}: {exc!s}") from exc

    def turns(self, session_id: str) -> list[Turn]:
        _require_session(session_id)
        try:
            return self._turn_log(session_id).read()
        except OSError as exc:
            raise StorageError(f"cannot read turns for session {session_id}: {exc!s}") from exc

    def _read_entries(self, session_id: str) -> list[MemoryEntry]:
        try:
            return self._entry_log(session_id).read()
        except OSError as exc:
            raise StorageError(f"cannot read memory for session {session_id}: {exc!s}") from exc

    def _session_ids(self) -> list[str]:
        names = {
            unquote(path.name.removesuffix(LOG_FILE_SUFFIX)) for path in self._memory_root.glob(f"*{LOG_FILE_SUFFIX}")
        }
        return sorted(name for name in names if name)

    def _entry_log(self, session_id: str) -> SessionLog[MemoryEntry]:
        with self._lock:
            if session_id not in self._entry_logs:
                self._entry_logs[session_id] = SessionLog(
                    _log_path(self._memory_root, session_id),
                    decode=MemoryEntry.from_payload,
                    encode=MemoryEntry.to_payload,
                )
            return self._entry_logs[session_id]

    def _turn_log(self, session_id: str) -> SessionLog[Turn]:
        with self._lock:
            if session_id not in self._turn_logs:
                self._turn_logs[session_id] = SessionLog(
                    _log_path(self._turn_root, session_id),
                    decode=Turn.from_payload,
                    encode=Turn.to_payload,
                )
            return self._turn_logs[session_id]

    def _require_dimension(self, size: int, what: str) -> None:
        if size != self.dimension:
            raise EmbeddingDimensionError(f"{what} embedding dimension mismatch: expected {self.dimension}, got {size}")

    def _check_dimension(self) -> None:
        """Refuse to open a store whose vectors were produced by a different embedder."""
        manifest_path = self._memory_root / MANIFEST_FILE
        stored: int | None = None
        if manifest_path.exists():
            try:
                manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                raise StorageError(f"cannot read memory manifest {manifest_path}: {exc!s}") from exc
            value = manifest.get("embedding_dimension") if isinstance(manifest, dict) else None
            stored = value if isinstance(value, int) else None

        if stored is None:
            for path in sorted(self._memory_root.glob(f"*{LOG_FILE_SUFFIX}")):
                entry = MemoryEntry.from_payload(_first_payload(path))
                if entry is not None:
                    stored = len(entry.embedding)
                    break

        if stored is not None and stored != self.dimension:
            raise EmbeddingDimensionError(
                f"memory store at {self._memory_root} holds {stored}-dimensional embeddings "
                f"but the configured embedder produces {self.dimension}"
            )
        if not manifest_path.exists():
            try:
                manifest_path.write_text(json.dumps({"embedding_dimension": self.dimension}), encoding="utf-8")
            except OSError as exc:
                raise StorageError(f"cannot write memory manifest {manifest_path}: {exc!s}") from exc
        logger.info("memory.store.open root={} dimension={}", self._memory_root, self.dimension)


def _log_path(root: Path, session_id: str) -> Path:
    return root / f"{quote(session_id, safe='')}{LOG_FILE_SUFFIX}"


def _first_payload(path: Path) -> object | None:
    with path.open("r", encoding="utf-8") as handle:
        for raw_line in handle:
            line = raw_line.strip()
            if not line:
                continue
            try:
                return json.loads(line)
            except json.JSONDecodeError:
                continue
    return None


def _require_session(session_id: str) -> None:
    if not session_id or not session_id.strip():
        raise InvalidInputError("session id must not be empty")
