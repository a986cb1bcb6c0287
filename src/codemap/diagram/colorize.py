"""Deterministic subgraph fills for accepted Mermaid diagrams.

The model is never asked for colours. After a diagram validates, any fill it
did emit is stripped and each subgraph gets ``style <id> fill:<placeholder>``
from a fixed palette in first-appearance order. Renderers swap the
placeholders for theme colours, so palette order must stay stable.
"""

from __future__ import annotations

import re

SUBGRAPH_FILL_PALETTE: tuple[str, ...] = (
    "#a5d8ff",
    "#ffd8a8",
    "#d0bfff",
    "#b2f2bb",
    "#fcc2d7",
    "#ffec99",
    "#99e9f2",
    "#eebefa",
)

_SUBGRAPH = re.compile(r'^\s*subgraph\s+([^\s\[]+)\s*(?:\[[^\]]*\]|\["[^"]*"\])?\s*$', re.I)
_STYLE = re.compile(r"^\s*(style|classDef)\s+(\S+)\s+(.+?)\s*$", re.I)
_FILL = re.compile(r"^(fill|fill-opacity)\s*:", re.I)


def subgraph_ids(diagram: str) -> list[str]:
    """Subgraph ids in first-appearance order, without duplicates."""
    ids: list[str] = []
    for line in diagram.replace("\r\n", "\n").split("\n"):
        m = _SUBGRAPH.match(line)
        if not m:
            continue
        ident = m.group(1).strip()
        if len(ident) > 2 and ident.startswith('"') and ident.endswith('"'):
            ident = ident[1:-1].strip()
        if ident and ident not in ids:
            ids.append(ident)
    return ids


def _strip_fill(line: str) -> str | None:
    # None means the directive had only fill settings and is dropped.
    m = _STYLE.match(line)
    if not m:
        return line
    keyword, target, styles = m.groups()
    kept = [p.strip() for p in styles.split(",") if p.strip() and not _FILL.match(p.strip())]
    if not kept:
        return None
    return f"{keyword} {target} {','.join(kept)}"


def colorize_diagram(diagram: str) -> str:
    """Strip model fills and append one palette fill per subgraph.

    Re-colorizing an already colorized diagram gives the same output.
    """
    normalized = diagram.replace("\r\n", "\n").strip()
    if not normalized:
        return normalized
    ids = subgraph_ids(normalized)
    kept = [s for s in (_strip_fill(line) for line in normalized.split("\n")) if s is not None]
    sanitized = "\n".join(kept).strip()
    if not ids:
        return sanitized
    styles = [
        f"style {ident} fill:{SUBGRAPH_FILL_PALETTE[i % len(SUBGRAPH_FILL_PALETTE)]}"
        for i, ident in enumerate(ids)
    ]
    return (sanitized + "\n\n" + "\n".join(styles)).strip()


__all__ = ["SUBGRAPH_FILL_PALETTE", "colorize_diagram", "subgraph_ids"]
