"""Workspace helpers used to fill prompt variables."""

from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path

IGNORED_NAMES = frozenset(
    {
        "node_modules",
        ".git",
        ".vscode",
        "__pycache__",
        ".pytest_cache",
        "dist",
        "build",
        "out",
        ".next",
        "coverage",
        ".nyc_output",
    }
)
MAX_ENTRIES_PER_DIR = 15


def workspace_layout(root: str | Path, max_depth: int = 3) -> str:
    """Render a tree of ``root`` for the system prompt.

    Directories sort before files, ignored and dot-prefixed names are
    skipped, and each directory shows at most ``MAX_ENTRIES_PER_DIR``
    entries followed by a ``[+N more items]`` marker.
    """
    lines: list[str] = []

    def walk(directory: Path, prefix: str, depth: int) -> None:
        if depth > max_depth:
            lines.append(f"{prefix}[...]")
            return
        try:
            children = list(directory.iterdir())
        except OSError:
            return
        children = [
            c for c in children if c.name not in IGNORED_NAMES and not c.name.startswith(".")
        ]
        children.sort(key=lambda c: (not c.is_dir(), c.name.lower()))
        shown = children[:MAX_ENTRIES_PER_DIR]
        has_more = len(children) > MAX_ENTRIES_PER_DIR
        for i, child in enumerate(shown):
            last = i == len(shown) - 1 and not has_more
            marker = "└── " if last else "├── "
            if child.is_dir():
                lines.append(f"{prefix}{marker}{child.name}/")
                walk(child, prefix + ("    " if last else "│   "), depth + 1)
            else:
                lines.append(f"{prefix}{marker}{child.name}")
        if has_more:
            lines.append(f"{prefix}└── [+{len(children) - MAX_ENTRIES_PER_DIR} more items]")

    walk(Path(root), "", 0)
    return "\n".join(lines)


def format_current_date(now: datetime | None = None) -> str:
    """Human-readable local timestamp, e.g. ``Oct 17, 2026, 3:04 PM UTC``."""
    moment = (now or datetime.now()).astimezone()
    hour = moment.hour % 12 or 12
    suffix = "AM" if moment.hour < 12 else "PM"
    return (
        f"{moment:%b} {moment.day}, {moment.year}, "
        f"{hour}:{moment.minute:02d} {suffix} {moment.tzname() or ''}"
    ).rstrip()


def user_os() -> str:
    """OS name as shown to the model (``windows``, ``linux``, ``darwin``)."""
    return "windows" if sys.platform.startswith("win") else sys.platform


__all__ = ["IGNORED_NAMES", "format_current_date", "user_os", "workspace_layout"]
