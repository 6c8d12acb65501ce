"""Built-in tool definitions."""

from __future__ import annotations

import asyncio
import contextlib
import json
import re
import shutil
from pathlib import Path
from typing import Literal
from urllib import error as urllib_error
from urllib import parse as urllib_parse
from urllib.request import Request, urlopen

import html2markdown
from loguru import logger
from pydantic import BaseModel, Field

from vesper.errors import ToolInputError, ToolIoError, ToolPermissionError, ToolTimeoutError
from vesper.logging_utils import current_session
from vesper.tools.registry import ToolRegistry, ToolSpec

MAX_SEARCH_MATCHES = 50
MAX_LIST_ENTRIES = 200
MAX_READ_BYTES = 1_000_000
MAX_FETCH_BYTES = 1_000_000
MAX_FETCH_CHARS = 20_000
WEB_REQUEST_TIMEOUT_SECONDS = 20
WEB_USER_AGENT = "vesper-web-tools/1.0"
WEB_SEARCH_ENDPOINT = "https://api.duckduckgo.com/"
SKIPPED_DIRS = frozenset({".git", "node_modules", "__pycache__", ".venv", "target"})

DANGEROUS_COMMAND_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("rm -rf /", re.compile(r"\brm\s+-[a-z]*r[a-z]*f[a-z]*\s+/(\s|$|\*)|\brm\s+-[a-z]*f[a-z]*r[a-z]*\s+/(\s|$|\*)")),
    ("fork bomb", re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:")),
    ("dd if=/dev/zero", re.compile(r"\bdd\s+if=/dev/(zero|random|urandom)")),
    ("mkfs", re.compile(r"\bmkfs(\.\w+)?\b")),
    ("format", re.compile(r"(^|[;&|]\s*)format\s+\w")),
    ("> /dev/", re.compile(r">\s*/dev/(?!null\b)")),
    ("shutdown", re.compile(r"\b(shutdown|reboot|halt|poweroff)\b")),
)


class BashInput(BaseModel):
    """Run a shell command."""

    command: str = Field(..., min_length=1, description="Shell command to run")
    working_directory: str | None = Field(default=None, description="Working directory, relative to the workspace")


class ReadInput(BaseModel):
    """Read a file with optional offset and limit."""

    path: str = Field(..., description="Path to the file")
    offset: int = Field(default=0, ge=0, description="Line offset (0-based)")
    limit: int | None = Field(default=None, ge=1, description="Maximum number of lines to read")


class WriteInput(BaseModel):
    """Write content to a file."""

    path: str = Field(..., description="Path to the file")
    content: str = Field(..., description="File contents")


class EditInput(BaseModel):
    """Replace text in a file."""

    path: str = Field(..., description="Path to the file")
    old: str = Field(..., min_length=1, description="Text to replace")
    new: str = Field(..., description="Replacement text")
    all: bool = Field(default=False, description="Replace all occurrences")


class ListInput(BaseModel):
    """List directory entries."""

    path: str = Field(default=".", description="Directory to list")
    recursive: bool = Field(default=False, description="Descend into subdirectories")


class SearchInput(BaseModel):
    """Search for a regex pattern in files."""

    pattern: str = Field(..., min_length=1, description="Regex pattern")
    path: str = Field(default=".", description="Base path")
    glob: str = Field(default="*", description="File name filter, e.g. '*.py'")


class FetchInput(BaseModel):
    """Fetch a web page as text."""

    url: str = Field(..., description="URL to fetch")


class WebSearchInput(BaseModel):
    """Search the web."""

    query: str = Field(..., min_length=1, description="Search query")
    max_results: int = Field(default=5, ge=1, le=20, description="Maximum number of results")


class ReadLogsInput(BaseModel):
    """Read recent log records."""

    session_id: str | None = Field(default=None, description="Session to read, the current one when omitted")
    limit: int = Field(default=50, ge=1, le=1000, description="Maximum number of records")
    level: Literal["error", "warning", "info", "debug", "trace"] | None = Field(
        default=None, description="Minimum level to include"
    )


class Workspace:
    """Filesystem root every path-taking tool is confined to."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def resolve(self, raw_path: str) -> Path:
        path = Path(raw_path).expanduser()
        candidate = path if path.is_absolute() else self.root / path
        resolved = candidate.resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise ToolPermissionError(f"path escapes the workspace: {raw_path}")
        return resolved

    def contains(self, path: Path) -> bool:
        resolved = path.resolve()
        return resolved == self.root or self.root in resolved.parents


def check_command(command: str) -> None:
    """Reject shell commands matching a known destructive pattern."""
    lowered = command.casefold()
    for label, pattern in DANGEROUS_COMMAND_PATTERNS:
        if pattern.search(lowered):
            raise ToolPermissionError(f"command contains potentially dangerous pattern: {label}")


def check_glob(pattern: str) -> None:
    """Reject file filters that could walk out of the search base."""
    if Path(pattern).is_absolute() or ".." in Path(pattern).parts:
        raise ToolPermissionError(f"glob must stay inside the workspace: {pattern}")


def create_bash_tool(workspace: Workspace) -> ToolSpec:
    """Create the bash tool bound to the workspace."""

    async def _handler(params: BashInput) -> str:
        check_command(params.command)
        working_dir = workspace.resolve(params.working_directory) if params.working_directory else workspace.root
        bash_executable = shutil.which("bash") or "sh"
        try:
            process = await asyncio.create_subprocess_exec(
                bash_executable,
                "-c",
                params.command,
                cwd=working_dir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise ToolIoError(f"cannot start shell: {exc!s}") from exc

        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise

        output = stdout.decode("utf-8", errors="replace").strip() or "(empty)"
        if process.returncode != 0:
            return f"exit={process.returncode}\n{output}"
        return output

    return ToolSpec(
        name="bash",
        description="Run a shell command in the workspace",
        input_model=BashInput,
        handler=_handler,
        requires_confirmation=True,
        describe=lambda params: f"Execute command: {params.command}",
    )


def create_read_tool(workspace: Workspace) -> ToolSpec:
    """Create the read tool bound to the workspace."""

    def _handler(params: ReadInput) -> str:
        file_path = workspace.resolve(params.path)
        if not file_path.is_file():
            raise ToolIoError(f"file not found: {params.path}")
        try:
            raw = file_path.read_bytes()[:MAX_READ_BYTES]
        except OSError as exc:
            raise ToolIoError(str(exc)) from exc
        if b"\x00" in raw[:8192]:
            return f"(binary file, {file_path.stat().st_size} bytes)"

        lines = raw.decode("utf-8", errors="replace").splitlines()
        offset = params.offset
        limit = len(lines) if params.limit is None else params.limit
        selected = lines[offset : offset + limit]
        return "\n".join(f"{idx:4}| {line}" for idx, line in enumerate(selected, start=offset + 1))

    return ToolSpec(
        name="fs.read",
        description="Read a file with optional offset and limit",
        input_model=ReadInput,
        handler=_handler,
    )


def create_write_tool(workspace: Workspace) -> ToolSpec:
    """Create the write tool bound to the workspace."""

    def _handler(params: WriteInput) -> str:
        file_path = workspace.resolve(params.path)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(params.content, encoding="utf-8")
        except OSError as exc:
            raise ToolIoError(str(exc)) from exc
        return f"wrote {len(params.content)} characters to {params.path}"

    return ToolSpec(
        name="fs.write",
        description="Write content to a file",
        input_model=WriteInput,
        handler=_handler,
        requires_confirmation=True,
        describe=lambda params: f"Write file: {params.path} ({len(params.content)} characters)",
    )


def create_edit_tool(workspace: Workspace) -> ToolSpec:
    """Create the edit tool bound to the workspace."""

    def _handler(params: EditInput) -> str:
        file_path = workspace.resolve(params.path)
        try:
            content = file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeError) as exc:
            raise ToolIoError(str(exc)) from exc

        count = content.count(params.old)
        if count == 0:
            raise ToolInputError("old text not found")
        if count > 1 and not params.all:
            raise ToolInputError(f"old text appears {count} times, must be unique (use all=true)")

        updated = content.replace(params.old, params.new) if params.all else content.replace(params.old, params.new, 1)
        try:
            file_path.write_text(updated, encoding="utf-8")
        except OSError as exc:
            raise ToolIoError(str(exc)) from exc
        return f"replaced {count if params.all else 1} occurrence(s) in {params.path}"

    return ToolSpec(
        name="fs.edit",
        description="Replace text in a file",
        input_model=EditInput,
        handler=_handler,
        requires_confirmation=True,
        describe=lambda params: f"Edit file: {params.path}",
    )


def create_list_tool(workspace: Workspace) -> ToolSpec:
    """Create the directory listing tool bound to the workspace."""

    def _handler(params: ListInput) -> str:
        base = workspace.resolve(params.path)
        if not base.is_dir():
            raise ToolIoError(f"not a directory: {params.path}")
        candidates = base.rglob("*") if params.recursive else base.iterdir()
        rows: list[str] = []
        for path in sorted(candidates):
            if SKIPPED_DIRS.intersection(path.relative_to(base).parts) or not workspace.contains(path):
                continue
            suffix = "/" if path.is_dir() else ""
            rows.append(f"{path.relative_to(workspace.root)}{suffix}")
            if len(rows) >= MAX_LIST_ENTRIES:
                rows.append(f"... (truncated at {MAX_LIST_ENTRIES} entries)")
                break
        return "\n".join(rows) if rows else "(empty)"

    return ToolSpec(
        name="fs.list",
        description="List files in a directory",
        input_model=ListInput,
        handler=_handler,
    )


def create_search_tool(workspace: Workspace) -> ToolSpec:
    """Create the code search tool bound to the workspace."""

    def _handler(params: SearchInput) -> str:
        base = workspace.resolve(params.path)
        try:
            regex = re.compile(params.pattern)
        except re.error as exc:
            raise ToolInputError(f"invalid pattern: {exc!s}") from exc

        check_glob(params.glob)

        matches: list[str] = []
        for file_path in sorted(base.rglob(params.glob)):
            if not file_path.is_file() or SKIPPED_DIRS.intersection(file_path.relative_to(base).parts):
                continue
            if not workspace.contains(file_path):
                continue
            try:
                text = file_path.read_text(encoding="utf-8")
            except (OSError, UnicodeError):
                continue
            for idx, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    matches.append(f"{file_path.relative_to(workspace.root)}:{idx}:{line}")
                    if len(matches) >= MAX_SEARCH_MATCHES:
                        return "\n".join(matches)
        return "\n".join(matches) if matches else "none"

    return ToolSpec(
        name="code.search",
        description="Search for a regex pattern in workspace files",
        input_model=SearchInput,
        handler=_handler,
    )


def _normalize_url(raw_url: str) -> str | None:
    normalized = raw_url.strip()
    if not normalized:
        return None

    parsed = urllib_parse.urlparse(normalized)
    if parsed.scheme and parsed.netloc:
        if parsed.scheme not in {"http", "https"}:
            return None
        return normalized

    if parsed.scheme == "" and parsed.netloc == "" and parsed.path:
        with_scheme = f"https://{normalized}"
        parsed = urllib_parse.urlparse(with_scheme)
        if parsed.netloc:
            return with_scheme

    return None


def create_fetch_tool() -> ToolSpec:
    """Create the web fetch tool."""

    def _handler(params: FetchInput) -> str:
        url = _normalize_url(params.url)
        if url is None:
            raise ToolInputError(f"unsupported url: {params.url}")
        request = Request(  # noqa: S310 - scheme is validated by _normalize_url.
            url,
            headers={
                "User-Agent": WEB_USER_AGENT,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            },
        )
        body, charset = _open(request, url)
        markdown = html2markdown.convert(body.decode(charset, errors="replace")).strip()
        if not markdown:
            raise ToolIoError(f"empty response body: {url}")
        if len(markdown) > MAX_FETCH_CHARS:
            return markdown[:MAX_FETCH_CHARS] + "\n... (truncated)"
        return markdown

    return ToolSpec(
        name="web.fetch",
        description="Fetch a URL and convert HTML to markdown",
        input_model=FetchInput,
        handler=_handler,
    )


def create_web_search_tool() -> ToolSpec:
    """Create the web search tool backed by the DuckDuckGo instant answer API."""

    def _handler(params: WebSearchInput) -> str:
        query = urllib_parse.urlencode({"q": params.query, "format": "json", "no_html": 1, "skip_disambig": 1})
        endpoint = f"{WEB_SEARCH_ENDPOINT}?{query}"
        request = Request(endpoint, headers={"User-Agent": WEB_USER_AGENT})  # noqa: S310
        body, charset = _open(request, endpoint)
        try:
            data = json.loads(body.decode(charset, errors="replace"))
        except json.JSONDecodeError as exc:
            raise ToolIoError(f"invalid json response: {exc!s}") from exc
        results = _search_results(data, params.max_results)
        if not results:
            fallback = f"https://duckduckgo.com/?{urllib_parse.urlencode({'q': params.query})}"
            return f"No instant results for {params.query!r}. Search manually at {fallback}"
        return _format_search_results(results)

    return ToolSpec(
        name="web.search",
        description="Search the web and return titles, URLs and snippets",
        input_model=WebSearchInput,
        handler=_handler,
    )


def _open(request: Request, url: str) -> tuple[bytes, str]:
    try:
        with urlopen(request, timeout=WEB_REQUEST_TIMEOUT_SECONDS) as response:  # noqa: S310
            body = response.read(MAX_FETCH_BYTES)
            charset = response.headers.get_content_charset() or "utf-8"
    except TimeoutError as exc:
        raise ToolTimeoutError(f"request timed out after {WEB_REQUEST_TIMEOUT_SECONDS}s: {url}") from exc
    except urllib_error.URLError as exc:
        if isinstance(exc.reason, TimeoutError):
            raise ToolTimeoutError(f"request timed out after {WEB_REQUEST_TIMEOUT_SECONDS}s: {url}") from exc
        raise ToolIoError(f"request failed: {exc!s}") from exc
    except OSError as exc:
        raise ToolIoError(f"request failed: {exc!s}") from exc
    return body, charset


def _search_results(data: object, limit: int) -> list[dict[str, str]]:
    if not isinstance(data, dict):
        return []
    results: list[dict[str, str]] = []
    abstract = data.get("Abstract")
    abstract_url = data.get("AbstractURL")
    if abstract and abstract_url:
        results.append({
            "title": str(data.get("AbstractSource") or "DuckDuckGo"),
            "url": str(abstract_url),
            "snippet": str(abstract),
        })
    topics = data.get("RelatedTopics")
    for topic in topics if isinstance(topics, list) else []:
        if len(results) >= limit:
            break
        if not isinstance(topic, dict) or not topic.get("Text") or not topic.get("FirstURL"):
            continue
        results.append({"title": "Related topic", "url": str(topic["FirstURL"]), "snippet": str(topic["Text"])})
    return results[:limit]


def _format_search_results(results: list[dict[str, str]]) -> str:
    lines: list[str] = []
    for idx, item in enumerate(results, start=1):
        lines.append(f"{idx}. {item['title']}")
        lines.append(f"   {item['url']}")
        lines.append(f"   {item['snippet']}")
    return "\n".join(lines)


def create_read_logs_tool(log_file: Path | None) -> ToolSpec:
    """Create the log reader over the structured log file."""

    def _handler(params: ReadLogsInput) -> str:
        if log_file is None:
            raise ToolInputError("no log file is configured")
        if not log_file.is_file():
            return "none"
        session_id = params.session_id or current_session()
        threshold = logger.level(params.level.upper()).no if params.level else 0
        try:
            lines = log_file.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            raise ToolIoError(str(exc)) from exc

        rows: list[str] = []
        for line in reversed(lines):
            try:
                record = json.loads(line)["record"]
            except (json.JSONDecodeError, KeyError, TypeError):
                continue
            session = record.get("extra", {}).get("session", "-")
            if session_id != "-" and session != session_id:
                continue
            if record["level"]["no"] < threshold:
                continue
            rows.append(f"{record['time']['repr']} [{record['level']['name']}] {session} {record['message']}")
            if len(rows) >= params.limit:
                break
        return "\n".join(rows) if rows else "none"

    return ToolSpec(
        name="logs.read",
        description="Read recent log records, newest first, for a session",
        input_model=ReadLogsInput,
        handler=_handler,
    )


def register_builtin_tools(
    registry: ToolRegistry, workspace: Workspace, *, log_file: Path | None = None
) -> ToolRegistry:
    for spec in (
        create_bash_tool(workspace),
        create_read_tool(workspace),
        create_write_tool(workspace),
        create_edit_tool(workspace),
        create_list_tool(workspace),
        create_search_tool(workspace),
        create_fetch_tool(),
        create_web_search_tool(),
        create_read_logs_tool(log_file),
    ):
        registry.register(spec)
    return registry
