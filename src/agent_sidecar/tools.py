"""Read-only workspace tools for the default engine.

Both tools resolve paths against the session's working directory and refuse
anything that escapes it.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable

import pathspec
from pydantic_ai import RunContext

from agent_sidecar.log_utils import log_event
from agent_sidecar.options import SessionOptions

logger = logging.getLogger("sidecar")

MAX_LIST_ENTRIES = 500
MAX_LIST_CHARS = 20_000
MAX_READ_CHARS = 100_000

_DEFAULT_IGNORES = {
    ".git",
    ".hg",
    ".svn",
    ".cache",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    ".venv",
    "venv",
    "__pycache__",
    "node_modules",
}


def _resolve(root: str, target: str) -> Path | None:
    base = Path(root).resolve()
    candidate = (base / target).resolve()
    if candidate != base and base not in candidate.parents:
        return None
    return candidate


def read_file(cwd: str, path: str, start: int | None = None, lines: int | None = None) -> dict[str, Any]:
    resolved = _resolve(cwd, path)
    if resolved is None:
        return {"content": None, "error": f"'{path}' is outside the workspace."}
    if not resolved.exists():
        return {"content": None, "error": f"File '{path}' does not exist."}
    if not resolved.is_file():
        return {"content": None, "error": f"'{path}' is not a file."}

    try:
        file_lines = resolved.read_text(encoding="utf-8", errors="replace").splitlines(keepends=True)
    except OSError as exc:
        return {"content": None, "error": f"Error reading file: {exc}"}

    if start is not None:
        begin = max(start - 1, 0)
        file_lines = file_lines[begin:] if lines is None else file_lines[begin : begin + lines]
    content = "".join(file_lines)
    if len(content) > MAX_READ_CHARS:
        return {"content": content[:MAX_READ_CHARS] + "\n[truncated]", "error": None, "truncated": True}
    return {"content": content, "error": None}


def _gitignore_matcher(root: Path) -> Callable[[Path, bool], bool]:
    gitignore = root / ".gitignore"
    patterns: list[str] = []
    if gitignore.is_file():
        try:
            patterns = [
                line.strip()
                for line in gitignore.read_text(encoding="utf-8").splitlines()
                if line.strip() and not line.strip().startswith("#")
            ]
        except OSError:
            patterns = []
    spec = pathspec.PathSpec.from_lines("gitwildmatch", patterns) if patterns else None

    def _match(path: Path, is_dir: bool) -> bool:
        if any(part in _DEFAULT_IGNORES for part in path.parts):
            return True
        if spec is None:
            return False
        return spec.match_file(str(path) + ("/" if is_dir else ""))

    return _match


def list_files(cwd: str, directory: str = ".", recursive: bool = True) -> dict[str, Any]:
    root = _resolve(cwd, directory)
    if root is None:
        return {"content": None, "error": f"'{directory}' is outside the workspace."}
    if not root.is_dir():
        return {"content": None, "error": f"Directory '{directory}' does not exist."}

    ignored = _gitignore_matcher(root)
    items: list[str] = []
    if recursive:
        for current, dirs, files in os.walk(root):
            rel_root = Path(current).relative_to(root)
            dirs[:] = sorted(d for d in dirs if not ignored(rel_root / d, True))
            items.extend(f"{rel_root / d} [dir]" for d in dirs)
            for name in files:
                rel = rel_root / name
                if not ignored(rel, False):
                    items.append(f"{rel} [file]")
    else:
        for entry in root.iterdir():
            rel = Path(entry.name)
            if not ignored(rel, entry.is_dir()):
                items.append(f"{rel} [{'dir' if entry.is_dir() else 'file'}]")

    items.sort()
    truncated = len(items) > MAX_LIST_ENTRIES
    content = "\n".join(items[:MAX_LIST_ENTRIES])
    if len(content) > MAX_LIST_CHARS:
        content = content[:MAX_LIST_CHARS]
        truncated = True
    result: dict[str, Any] = {"content": content, "error": None}
    if truncated:
        result["content"] = f"{content}\n[truncated]"
        result["truncated"] = True
    return result


def register_tools(agent: Any) -> None:
    @agent.tool(name="read_file")
    async def read_file_tool(
        ctx: RunContext[SessionOptions],
        path: str,
        start: int | None = None,
        lines: int | None = None,
    ) -> dict[str, Any]:
        """Read a text file from the workspace, optionally a range of lines (1-based start)."""
        log_event(logger, "tool.read_file", path=path, start=start, lines=lines)
        return read_file(ctx.deps.cwd, path, start=start, lines=lines)

    @agent.tool(name="list_files")
    async def list_files_tool(
        ctx: RunContext[SessionOptions],
        directory: str = ".",
        recursive: bool = True,
    ) -> dict[str, Any]:
        """List files and directories in the workspace, honouring .gitignore."""
        log_event(logger, "tool.list_files", directory=directory, recursive=recursive)
        return list_files(ctx.deps.cwd, directory=directory, recursive=recursive)
