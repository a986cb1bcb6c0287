"""Built-in workspace tools: ``read_file``, ``list_dir`` and ``grep_search``.

All three are scoped to one workspace root. Paths may be absolute or relative
to the root; anything resolving outside the root is refused. Results are
plain text, capped in size so a single call cannot flood the conversation.
Failures are reported as ``Error: ...`` text rather than raised, except for
programming errors which the loop turns into tool-error text anyway.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from .base import BuiltinTool, ToolCatalog

MAX_READ_BYTES = 32_000
MAX_LINE_CHARS = 2000
MAX_LIST_ENTRIES = 50
MAX_GREP_RESULTS = 50
MAX_GREP_DEPTH = 10
SKIP_DIRS = frozenset({"node_modules", "__pycache__"})


def _resolve(root: Path, raw: str) -> Path:
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute():
        candidate = root / candidate
    candidate = candidate.resolve()
    if candidate != root and root not in candidate.parents:
        raise PermissionError(f"Path is outside the workspace: {raw}")
    return candidate


def read_file(
    root: Path, file_path: str, offset: int | None = None, limit: int | None = None
) -> str:
    path = _resolve(root, file_path)
    if not path.is_file():
        return f"Error: File not found: {file_path}"
    size = path.stat().st_size
    if size > MAX_READ_BYTES * 4 and not (offset and limit):
        return f"File is too large ({size} bytes). Please specify offset and limit."

    lines = path.read_text(encoding="utf-8", errors="replace").split("\n")
    start = max((offset or 1) - 1, 0)
    end = start + limit if limit else len(lines)
    numbered = []
    for i, line in enumerate(lines[start:end], start=start + 1):
        if len(line) > MAX_LINE_CHARS:
            line = line[:MAX_LINE_CHARS] + "..."
        numbered.append(f"{i:>6}→{line}")
    body = "\n".join(numbered)
    return (
        f'<file name="{path}" start_line="{start + 1}" end_line="{min(end, len(lines))}" '
        f'full_length="{len(lines)}">\n{body}\n</file>'
    )


def list_dir(root: Path, DirectoryPath: str = ".") -> str:  # noqa: N803
    path = _resolve(root, DirectoryPath)
    if not path.is_dir():
        return f"Error: Directory not found: {DirectoryPath}"
    entries = sorted(path.iterdir(), key=lambda p: p.name)
    out = [f"{path}/"]
    for entry in entries[:MAX_LIST_ENTRIES]:
        if entry.is_dir():
            try:
                out.append(f"\t{entry.name}/ ({sum(1 for _ in entry.iterdir())} items)")
            except OSError:
                out.append(f"\t{entry.name}/ (access denied)")
        else:
            try:
                out.append(f"\t{entry.name} ({entry.stat().st_size} bytes)")
            except OSError:
                out.append(f"\t{entry.name} (unknown size)")
    if len(entries) > MAX_LIST_ENTRIES:
        out.append(f"\t... and {len(entries) - MAX_LIST_ENTRIES} more items")
    return "\n".join(out)


def _included(name: str, includes: list[str] | None) -> bool:
    if not includes:
        return True
    for pattern in includes:
        if pattern.startswith("*.") and name.endswith(pattern[1:]):
            return True
        if not pattern.startswith("*.") and pattern in name:
            return True
    return False


def _walk(directory: Path, depth: int = 0) -> list[Path]:
    if depth > MAX_GREP_DEPTH:
        return []
    files: list[Path] = []
    try:
        children = sorted(directory.iterdir(), key=lambda p: p.name)
    except OSError:
        return files
    for child in children:
        if child.name.startswith(".") or child.name in SKIP_DIRS:
            continue
        if child.is_dir():
            files.extend(_walk(child, depth + 1))
        elif child.is_file():
            files.append(child)
    return files


def grep_search(
    root: Path,
    SearchPath: str,  # noqa: N803
    Query: str,  # noqa: N803
    CaseSensitive: bool = False,  # noqa: N803
    IsRegex: bool = False,  # noqa: N803
    Includes: list[str] | None = None,  # noqa: N803
    MatchPerLine: bool = False,  # noqa: N803
) -> str:
    target = _resolve(root, SearchPath)
    flags = 0 if CaseSensitive else re.IGNORECASE
    pattern = re.compile(Query if IsRegex else re.escape(Query), flags)

    if target.is_file():
        files = [target]
    else:
        files = [f for f in _walk(target) if _included(f.name, Includes)]
    matches: list[str] = []
    for file in files:
        try:
            lines = file.read_text(encoding="utf-8").split("\n")
        except (OSError, UnicodeDecodeError):
            continue
        for i, line in enumerate(lines):
            if not pattern.search(line):
                continue
            if MatchPerLine:
                lo, hi = max(0, i - 2), min(len(lines), i + 3)
                context = "\n".join(
                    f"{'>' if n == i else ' '}{n + 1}: {lines[n][:200]}" for n in range(lo, hi)
                )
                matches.append(f"{file}:{i + 1}\n{context}")
            else:
                matches.append(f"{file}:{i + 1}")

    if not matches:
        return f'No matches found for "{Query}" in {SearchPath}'
    shown = "\n\n".join(matches[:MAX_GREP_RESULTS])
    extra = len(matches) - MAX_GREP_RESULTS
    tail = f"\n\n... and {extra} more" if extra > 0 else ""
    return f"Found {len(matches)} matches:\n{shown}{tail}"


def workspace_tools(root: str | Path) -> ToolCatalog:
    """Build the catalog of built-in tools bound to ``root``."""
    base = Path(root).resolve()

    def _read(**kw: Any) -> str:
        return read_file(base, **kw)

    def _list(**kw: Any) -> str:
        return list_dir(base, **kw)

    def _grep(**kw: Any) -> str:
        return grep_search(base, **kw)

    return ToolCatalog(
        [
            BuiltinTool(
                "read_file",
                "Reads a file at the specified path. Returns file content with line numbers. "
                "Use offset and limit for large files. Lines longer than 2000 chars are truncated.",
                {
                    "type": "object",
                    "properties": {
                        "file_path": {"type": "string", "description": "Path of the file to read"},
                        "offset": {"type": "integer", "description": "1-indexed start line"},
                        "limit": {"type": "integer", "description": "Number of lines to read"},
                    },
                    "required": ["file_path"],
                },
                _read,
            ),
            BuiltinTool(
                "list_dir",
                "Lists files and directories in a given path. Returns names with sizes.",
                {
                    "type": "object",
                    "properties": {
                        "DirectoryPath": {"type": "string", "description": "Directory to list"},
                    },
                    "required": ["DirectoryPath"],
                },
                _list,
                idempotent_listing=True,
            ),
            BuiltinTool(
                "grep_search",
                "Searches for a pattern in files under a directory (or in one file). "
                "Set IsRegex for regex patterns and Includes to filter file names.",
                {
                    "type": "object",
                    "properties": {
                        "SearchPath": {"type": "string"},
                        "Query": {"type": "string"},
                        "CaseSensitive": {"type": "boolean"},
                        "IsRegex": {"type": "boolean"},
                        "Includes": {"type": "array", "items": {"type": "string"}},
                        "MatchPerLine": {"type": "boolean"},
                    },
                    "required": ["SearchPath", "Query"],
                },
                _grep,
            ),
        ]
    )


__all__ = ["grep_search", "list_dir", "read_file", "workspace_tools"]
